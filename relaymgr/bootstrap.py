"""User data scripts that install the relay and publish its management endpoint.

Every script runs the relay installer in the background, reads the
``apiUrl:`` and ``certSha256:`` lines the installer appends to its access
file, and writes them to the provider's tag channel. If the installer exits
without producing both lines, an ``install-error`` entry is published instead.
"""

import re
import shlex
from textwrap import dedent

from .config import Settings
from .types import ProviderName

MARKER = "relaymgr"
WATCHTOWER_REFRESH_SECONDS = 30
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_/-]+$")


def sanitize_token(token: str) -> str:
    """Reject tokens that could break out of the shell export.

    :raises ValueError: If the token has characters outside [A-Za-z0-9_/-]
    """
    if not TOKEN_PATTERN.match(token):
        raise ValueError("Access token contains invalid characters")
    return token


def export_commands(env: dict[str, str | None]) -> str:
    lines = []
    for key, value in env.items():
        if value:
            lines.append(f"export {key}={shlex.quote(str(value))}")
    return "\n".join(lines)


def install_environment(
    server_name: str, settings: Settings, extra: dict[str, str | None] | None = None
) -> dict[str, str | None]:
    env = dict(extra or {})
    if settings.container_image:
        env["SB_IMAGE"] = settings.container_image
        env["WATCHTOWER_REFRESH_SECONDS"] = str(WATCHTOWER_REFRESH_SECONDS)
    env["SENTRY_API_URL"] = settings.sentry_api_url
    env["SB_METRICS_URL"] = settings.metrics_url
    env["SB_DEFAULT_SERVER_NAME"] = server_name
    return env


COMMON_BODY = dedent("""
    export RELAY_DIR="${{RELAY_DIR:-${{HOME:-/root}}/relay}}"
    mkdir -p "$RELAY_DIR"
    exec 2>&1 >"$RELAY_DIR/install-output"

    export ACCESS_CONFIG="$RELAY_DIR/access.txt"
    > "$ACCESS_CONFIG"

    function finish {{
      local code=$?
      if ! grep -q apiUrl "$ACCESS_CONFIG" || ! grep -q certSha256 "$ACCESS_CONFIG"; then
        publish install-error "INSTALL_SCRIPT_FAILED: $code"
      fi
    }}
    trap finish EXIT

    curl -sSL {install_url} -o "$RELAY_DIR/install_server.sh"
    bash "$RELAY_DIR/install_server.sh" &
    install_pid=$!

    tail -f "$ACCESS_CONFIG" --pid=$install_pid | while IFS=: read -r key value; do
      case "$key" in
        apiUrl|certSha256) publish "$key" "$value" ;;
      esac
    done
    wait $install_pid
""")

DIGITALOCEAN_PUBLISH = dedent("""
    readonly DO_METADATA_URL="http://169.254.169.254/metadata/v1"
    function publish() {
      local key="$1" value="$2" tag
      if [[ "$key" == "certSha256" ]]; then
        tag="kv:${key}:${value}"
      else
        tag="kv:${key}:$(echo -n "$value" | xxd -p -c 255)"
      fi
      local auth="Authorization: Bearer ${DO_ACCESS_TOKEN}"
      local droplet_id="$(curl -s ${DO_METADATA_URL}/id)"
      curl -s -X POST -H 'Content-Type: application/json' -H "$auth" \\
        -d "{\\"name\\":\\"${tag}\\"}" https://api.digitalocean.com/v2/tags
      curl -s -X POST -H 'Content-Type: application/json' -H "$auth" \\
        -d "{\\"resources\\":[{\\"resource_id\\":\\"${droplet_id}\\",\\"resource_type\\":\\"droplet\\"}]}" \\
        "https://api.digitalocean.com/v2/tags/${tag}/resources"
    }
    export SB_PUBLIC_IP="$(curl -s ${DO_METADATA_URL}/interfaces/public/0/ipv4/address)"
""")

GCP_PUBLISH = dedent("""
    readonly GCE_METADATA_URL="http://metadata.google.internal/computeMetadata/v1/instance"
    function publish() {
      curl -s -X PUT -H "Metadata-Flavor: Google" --data "$2" \\
        "${GCE_METADATA_URL}/guest-attributes/${GUEST_ATTRIBUTE_NAMESPACE}/$1"
    }
    export SB_PUBLIC_IP="$(curl -s -H "Metadata-Flavor: Google" \\
      ${GCE_METADATA_URL}/network-interfaces/0/access-configs/0/external-ip)"
""")

LIGHTSAIL_PUBLISH = dedent("""
    apt-get update -qq && apt-get install -y -qq awscli
    function publish() {
      AWS_ACCESS_KEY_ID="$ACCESS_KEY" AWS_SECRET_ACCESS_KEY="$SECRET_KEY" \\
        aws lightsail tag-resource --region "$REGION" --resource-name "$SERVER_NAME" \\
        --tags "key=$1,value=$2"
    }
    export SB_PUBLIC_IP="$(curl -s http://169.254.169.254/latest/meta-data/public-ipv4)"
""")


def build_install_script(
    provider: ProviderName,
    *,
    server_name: str,
    settings: Settings,
    access_token: str | None = None,
    instance_name: str | None = None,
    region: str | None = None,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
) -> str:
    """Render the user data for a new server.

    :param provider: Cloud the script will run on
    :param server_name: Default display name passed to the installer
    :param settings: Source of the image, metrics and sentry overrides
    :param access_token: DigitalOcean only: token used to tag the droplet
    :param instance_name: Lightsail only: resource name to tag
    :param region: Lightsail only: region of the instance
    :param access_key_id: Lightsail only: key used to tag the instance
    :param secret_access_key: Lightsail only: secret for access_key_id
    :return: Bash script starting with '#!/bin/bash -eu'
    :raises ValueError: If the DigitalOcean token has invalid characters
    """
    if provider == "digitalocean":
        extra = {"DO_ACCESS_TOKEN": sanitize_token(access_token or "")}
        publish = DIGITALOCEAN_PUBLISH
    elif provider == "gcp":
        extra = {"GUEST_ATTRIBUTE_NAMESPACE": MARKER}
        publish = GCP_PUBLISH
    elif provider == "lightsail":
        extra = {
            "SERVER_NAME": instance_name,
            "REGION": region,
            "ACCESS_KEY": access_key_id,
            "SECRET_KEY": secret_access_key,
        }
        publish = LIGHTSAIL_PUBLISH
    else:
        raise ValueError(f"Unknown provider: '{provider}'")

    env = install_environment(server_name, settings, extra)
    body = COMMON_BODY.format(install_url=shlex.quote(settings.install_script_url))
    return "\n".join(
        ["#!/bin/bash -eu", "", export_commands(env), publish.strip(), body.strip(), ""]
    )
