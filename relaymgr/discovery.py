"""Discovery of the management endpoint published by the guest install script."""

import time
from typing import Callable

from .errors import InstallFailedError, NotFoundError, TimedOutError
from .poller import CancelToken, sleep_or_cancel
from .types import API_URL_TAG, CERT_SHA256_TAG, INSTALL_ERROR_TAG, BootstrapSecrets
from .utils import log


def normalize_fingerprint(value: str) -> str:
    """Uppercase hex SHA-256 with any ':' separators removed."""
    return value.strip().replace(":", "").upper()


def normalize_api_url(value: str) -> str:
    value = value.strip()
    return value if value.endswith("/") else f"{value}/"


def extract_bootstrap_secrets(tags: dict[str, str] | None) -> BootstrapSecrets | None:
    """Build secrets from a tag map, or None unless both keys are present.

    :param tags: Normalized tag map of an instance
    :return: BootstrapSecrets when apiUrl and certSha256 are both non-empty
    """
    if not tags:
        return None
    api_url = tags.get(API_URL_TAG)
    fingerprint = tags.get(CERT_SHA256_TAG)
    if not api_url or not fingerprint:
        return None
    return BootstrapSecrets(
        management_api_url=normalize_api_url(api_url),
        certificate_fingerprint=normalize_fingerprint(fingerprint),
    )


def discover_bootstrap_secrets(
    instance_ref: str,
    fetch_tags: Callable[[str], dict[str, str] | None],
    *,
    interval: float = 5.0,
    timeout: float | None = None,
    cancel: CancelToken | None = None,
) -> BootstrapSecrets:
    """Poll an instance's tag channel until the install script publishes its secrets.

    A NotFoundError from ``fetch_tags`` means the channel does not exist yet
    and is treated like an empty tag map.

    :param instance_ref: Provider reference passed to fetch_tags
    :param fetch_tags: Callable returning the normalized tag map
    :param interval: Seconds between fetches
    :param timeout: Give up after this many seconds (None waits forever)
    :param cancel: Token checked between fetches
    :return: Both secrets, never a partial result
    :raises InstallFailedError: If the guest reports an install error
    :raises TimedOutError: If the deadline passes first
    :raises InstallCanceledError: If the token is cancelled
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    log(f"Waiting for '{instance_ref}' to publish its management endpoint...")
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            tags = fetch_tags(instance_ref)
        except NotFoundError:
            tags = None
        if tags and tags.get(INSTALL_ERROR_TAG):
            raise InstallFailedError(
                f"Install script failed on '{instance_ref}': {tags[INSTALL_ERROR_TAG]}"
            )
        secrets = extract_bootstrap_secrets(tags)
        if secrets is not None:
            log(f"Management endpoint published: '{secrets.management_api_url}'")
            return secrets
        if deadline is not None and time.monotonic() + interval > deadline:
            raise TimedOutError(
                f"'{instance_ref}' did not publish its management endpoint within {timeout}s"
            )
        sleep_or_cancel(interval, cancel)
