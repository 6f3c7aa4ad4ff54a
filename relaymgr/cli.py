#!/usr/bin/env python3
"""Create and manage relay servers on cloud providers.

Usage: uv run relaymgr <noun> <verb> [options]

Examples:
    uv run relaymgr account connect digitalocean --token dop_v1_...
    uv run relaymgr server locations digitalocean
    uv run relaymgr server create digitalocean nyc3 "My relay"
    uv run relaymgr server list
"""

from concurrent.futures import ThreadPoolExecutor, wait

import boto3
import cyclopts
from rich import print

from .accounts import AccountRegistry, credential_from_env
from .config import Settings, load_settings
from .display import DisplayRecordRepository, ManualServerRepository, provider_of
from .errors import AuthAmbiguousError, CreateServerError, RelayError
from .manager import FailureDecision, ServerManager
from .providers import get_account
from .retry import AuthRetryPolicy
from .store import JsonStore
from .types import (
    DigitalOceanCredential,
    GcpCredential,
    LightsailCredential,
    ProviderName,
)
from .utils import error, log, setup_logging, warn

app = cyclopts.App(
    name="relaymgr", help="Create and manage relay servers on cloud providers", sort_key=None
)

account_app = cyclopts.App(name="account", help="Connect cloud provider accounts", sort_key=1)
server_app = cyclopts.App(name="server", help="Create and manage servers", sort_key=2)

app.command(account_app)
app.command(server_app)


def _load() -> tuple[Settings, JsonStore]:
    settings = load_settings()
    setup_logging(settings.log_level)
    return settings, JsonStore(settings.store_path)


def _retry_policy(registry: AccountRegistry, provider: ProviderName) -> AuthRetryPolicy:
    def decide(e: AuthAmbiguousError) -> bool:
        print(f"[yellow]{provider} rejected the request:[/yellow] {e}")
        print("Your credentials may have expired, or the request was blocked.")
        answer = input("Retry? Answer 'no' to sign out and clear stored credentials (yes/no): ")
        return answer.strip().lower() in ("y", "yes")

    return AuthRetryPolicy(decide, lambda: registry.disconnect(provider))


def _ask_failure_decision(e: CreateServerError) -> FailureDecision:
    print(f"[red]Server creation failed at step '{e.step}':[/red] {e.cause}")
    if e.host is None:
        answer = input("Try again? (yes/no): ")
        return "retry" if answer.strip().lower() in ("y", "yes") else "keep"
    answer = input("Delete this server and try again, just delete it, or keep it? (retry/delete/keep): ")
    answer = answer.strip().lower()
    if answer == "retry":
        return "retry"
    return "keep" if answer == "keep" else "destroy"


def _manager(store: JsonStore, settings: Settings) -> ServerManager:
    registry = AccountRegistry(store)
    accounts = {}
    for provider in registry.providers():
        credential = registry.credential_for(provider)
        if credential is None:
            continue
        accounts[provider] = get_account(
            credential, settings, retry_policy=_retry_policy(registry, provider)
        )
    return ServerManager(
        accounts,
        DisplayRecordRepository(store),
        ManualServerRepository(store),
        notify=lambda message: print(f"[yellow]{message}[/yellow]"),
        on_creation_failure=_ask_failure_decision,
    )


@account_app.command(name="connect")
def connect_account(
    provider: ProviderName,
    *,
    token: str | None = None,
    refresh_token: str | None = None,
    project_id: str | None = None,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
):
    """Store credentials for a cloud provider and check they work.

    :param provider: digitalocean, gcp or lightsail
    :param token: DigitalOcean API token (default: DIGITALOCEAN_TOKEN)
    :param refresh_token: GCP OAuth refresh token (default: GCP_REFRESH_TOKEN)
    :param project_id: GCP project id (default: GCP_PROJECT_ID)
    :param access_key_id: AWS access key id (default: boto3 credential chain)
    :param secret_access_key: AWS secret access key (default: boto3 credential chain)
    """
    settings, store = _load()
    credential = credential_from_env(provider)
    if provider == "digitalocean" and token:
        credential = DigitalOceanCredential(token=token)
    elif provider == "gcp" and refresh_token and project_id:
        credential = GcpCredential(refresh_token=refresh_token, project_id=project_id)
    elif provider == "lightsail":
        if access_key_id and secret_access_key:
            credential = LightsailCredential(access_key_id, secret_access_key)
        else:
            found = boto3.Session().get_credentials()
            if found is not None:
                frozen = found.get_frozen_credentials()
                credential = LightsailCredential(frozen.access_key, frozen.secret_key)

    if credential is None:
        error(f"No credentials given for '{provider}'. See: relaymgr account connect --help")

    try:
        name = get_account(credential, settings).get_display_name()
    except RelayError as e:
        error(f"Could not connect to {provider}: {e}")
    AccountRegistry(store).connect(credential)
    log(f"Connected to {provider} as '{name}'")


@account_app.command(name="disconnect")
def disconnect_account(provider: ProviderName):
    """Forget the stored credentials for a provider.

    :param provider: digitalocean, gcp or lightsail
    """
    _, store = _load()
    if not AccountRegistry(store).disconnect(provider):
        warn(f"No {provider} account connected")


@account_app.command(name="list")
def list_accounts():
    """List connected accounts."""
    _, store = _load()
    registry = AccountRegistry(store)
    providers = registry.providers()
    if not providers:
        log("No accounts connected")
        return
    for provider in providers:
        print(f"  {provider}: {registry.credential_for(provider)!r}")


@server_app.command(name="locations")
def list_locations(provider: ProviderName):
    """List the regions or zones a provider can create servers in.

    :param provider: digitalocean, gcp or lightsail
    """
    settings, store = _load()
    try:
        locations = _manager(store, settings).account(provider).list_locations()
    except (KeyError, RelayError) as e:
        error(str(e))
    if not locations:
        log(f"No locations available on {provider}")
        return

    max_id = max(len(loc.id) for loc in locations)
    print(f"  {'ID'.ljust(max_id)}  LOCATION")
    print(f"  {'-' * max_id}  --------")
    for loc in sorted(locations, key=lambda loc: loc.id):
        country = f" ({loc.country_code})" if loc.country_code else ""
        print(f"  {loc.id.ljust(max_id)}  {loc.display_name}{country}")


@server_app.command(name="create")
def create_server(provider: ProviderName, location: str, name: str):
    """Create a server and wait until it is installed. Ctrl-C cancels and deletes it.

    :param provider: digitalocean, gcp or lightsail
    :param location: Location id from 'server locations'
    :param name: Display name for the server
    """
    settings, store = _load()
    manager = _manager(store, settings)
    if provider not in manager.accounts:
        error(f"No {provider} account connected. Run: relaymgr account connect {provider}")

    log(f"Creating server '{name}' on '{provider}' in '{location}'...")
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(manager.create_server, provider, location, name)
        try:
            while not wait([future], timeout=0.5).done:
                pass
            record = future.result()
        except KeyboardInterrupt:
            warn("Cancelling, deleting anything already created...")
            manager.cancel_creation(provider)
            try:
                record = future.result()
            except RelayError as e:
                error(f"Cleanup failed: {e}")
        except RelayError as e:
            error(str(e))

    if record is None:
        return
    log("Server ready!")
    print(f"  Name: {record['name']}")
    print(f"  Management API: {record['id']}")


@server_app.command(name="list")
def list_servers(*, cached: bool = False):
    """List servers. Without --cached, first syncs with every connected account.

    :param cached: Show the local list without contacting providers
    """
    settings, store = _load()
    manager = _manager(store, settings)
    records = manager.repository.list_records() if cached else manager.sync_servers()
    if not records:
        log("No servers")
        return

    last = manager.repository.get_last_displayed()
    max_name = max(len(r["name"]) for r in records)
    print(f"  {'NAME'.ljust(max_name)}  {'PROVIDER'.ljust(12)}  MANAGEMENT API")
    print(f"  {'-' * max_name}  {'-' * 12}  --------------")
    for r in records:
        source = provider_of(r) or "manual"
        marker = " *" if r["id"] == last else ""
        print(f"  {r['name'].ljust(max_name)}  {source.ljust(12)}  {r['id']}{marker}")


@server_app.command(name="sync")
def sync_servers():
    """Reconcile the local server list with every connected account."""
    settings, store = _load()
    records = _manager(store, settings).sync_servers()
    log(f"{len(records)} servers listed")


@server_app.command(name="delete")
def delete_server(server_id: str, *, force: bool = False):
    """Delete a cloud-managed server.

    :param server_id: Management API URL of the server
    :param force: Skip confirmation prompt
    """
    settings, store = _load()
    manager = _manager(store, settings)
    record = manager.repository.find(server_id)
    if record is None:
        error(f"No server '{server_id}'. Run: relaymgr server list")

    print("[yellow]Server to delete:[/yellow]")
    print(f"  Name: {record['name']}")
    print(f"  Provider: {provider_of(record) or 'manual'}")
    print(f"  Management API: {record['id']}")

    if not force:
        confirm = input("Delete this server? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return

    try:
        manager.delete_server(server_id)
    except (KeyError, ValueError, RelayError) as e:
        error(str(e))


@server_app.command(name="rename")
def rename_server(server_id: str, name: str):
    """Rename a server.

    :param server_id: Management API URL of the server
    :param name: New display name
    """
    settings, store = _load()
    try:
        _manager(store, settings).rename_server(server_id, name)
    except (KeyError, RelayError) as e:
        error(str(e))
    log(f"Renamed to '{name}'")


@server_app.command(name="add-manual")
def add_manual_server(api_url: str, cert_sha256: str):
    """Add a server installed elsewhere by its management URL and certificate fingerprint.

    :param api_url: Management API URL printed by the installer
    :param cert_sha256: certSha256 value printed by the installer
    """
    settings, store = _load()
    try:
        record = _manager(store, settings).add_manual_server(api_url, cert_sha256)
    except (ValueError, RelayError) as e:
        error(str(e))
    log(f"Added '{record['name']}'")


@server_app.command(name="forget")
def forget_server(server_id: str):
    """Remove a manually added server from the list without touching it.

    :param server_id: Management API URL of the server
    """
    settings, store = _load()
    try:
        _manager(store, settings).forget_server(server_id)
    except (ValueError, RelayError) as e:
        error(str(e))


def main():
    app()


if __name__ == "__main__":
    main()
