"""Orchestration of server creation, deletion and cache sync across accounts."""

from typing import Callable, Literal, Mapping

from .discovery import normalize_api_url, normalize_fingerprint
from .display import (
    DisplayRecordRepository,
    ManualServerRepository,
    make_record,
    provider_of,
    reconcile,
)
from .errors import (
    CreateServerError,
    InstallCanceledError,
    NotFoundError,
    RelayError,
    UnreachableServerError,
)
from .providers import CloudAccount
from .server import ManagedServer, ManagementApiClient
from .types import DisplayRecord, ProviderName
from .utils import log, warn

FailureDecision = Literal["retry", "destroy", "keep"]


def _default_failure_decision(error: CreateServerError) -> FailureDecision:
    return "destroy"


class ServerManager:
    """Keeps the display records in step with every connected account.

    :param accounts: Connected accounts by provider
    :param repository: Display record cache
    :param manual_servers: Fingerprints of manually added servers
    :param notify: Shows a message to the user (default: log it)
    :param on_creation_failure: Asked what to do with a half-created server
    :param api_factory: Builds management API clients for manual servers
    """

    def __init__(
        self,
        accounts: Mapping[ProviderName, CloudAccount],
        repository: DisplayRecordRepository,
        manual_servers: ManualServerRepository,
        *,
        notify: Callable[[str], None] = log,
        on_creation_failure: Callable[[CreateServerError], FailureDecision] = _default_failure_decision,
        api_factory: Callable[[str, str], ManagementApiClient] = ManagementApiClient,
    ):
        self.accounts = dict(accounts)
        self.repository = repository
        self.manual_servers = manual_servers
        self.notify = notify
        self.on_creation_failure = on_creation_failure
        self.api_factory = api_factory

    def account(self, provider: ProviderName) -> CloudAccount:
        """:raises KeyError: If no account is connected for the provider"""
        if provider not in self.accounts:
            raise KeyError(f"No {provider} account connected")
        return self.accounts[provider]

    def _notify_removed(self, removed: list[DisplayRecord]) -> None:
        names = ", ".join(f"'{r['name']}'" for r in removed)
        self.notify(f"Removed servers that no longer exist in the cloud: {names}")

    def sync_servers(self, *, refresh_names: bool = True) -> list[DisplayRecord]:
        """List every account and reconcile the display records.

        Accounts whose listing fails keep their cached records untouched.

        :param refresh_names: Read each server's name from its management API
        :return: The reconciled records
        """
        live: list[ManagedServer] = []
        complete: list[ProviderName] = []
        for provider, account in self.accounts.items():
            try:
                servers = account.list_servers()
            except RelayError as e:
                warn(f"Could not list {provider} servers: {e}")
                continue
            if refresh_names:
                for server in servers:
                    server.refresh_name()
            live.extend(servers)
            complete.append(provider)

        records = reconcile(
            live,
            self.repository.list_records(),
            providers=complete,
            notify=self._notify_removed,
        )
        self.repository.replace_all(records)
        return records

    def _remember(self, server: ManagedServer) -> DisplayRecord:
        record = server.to_display_record()
        if self.repository.find(record["id"]) is None:
            self.repository.add(record)
        self.repository.set_last_displayed(record["id"])
        return record

    def create_server(
        self, provider: ProviderName, location_id: str, name: str
    ) -> DisplayRecord | None:
        """Create a server and record it.

        :return: The new display record, or None if creation was cancelled
        :raises CreateServerError: If creation failed and was not retried, or the
            half-created server could not be deleted
        """
        account = self.account(provider)
        while True:
            try:
                server = account.create_server(location_id, name)
            except InstallCanceledError:
                self.notify(f"Creation of '{name}' was cancelled")
                return None
            except UnreachableServerError as e:
                self.notify(f"Server '{name}' was created but is not answering yet")
                return self._remember(e.server)
            except CreateServerError as e:
                decision = self.on_creation_failure(e)
                if decision != "keep" and e.host is not None:
                    log(f"Deleting partially created server '{name}'...")
                    try:
                        e.host.delete()
                    except RelayError as cleanup_error:
                        warn(f"Could not delete server '{e.host.get_id()}': {cleanup_error}")
                        raise e from cleanup_error
                if decision != "retry":
                    raise
                continue
            return self._remember(server)

    def cancel_creation(self, provider: ProviderName) -> bool:
        return self.account(provider).cancel_creation()

    def _find_record(self, record_id: str) -> DisplayRecord:
        record = self.repository.find(record_id)
        if record is None:
            raise NotFoundError(f"No server '{record_id}'")
        return record

    def delete_server(self, record_id: str) -> None:
        """Delete a cloud-managed server and its display record.

        :raises ValueError: If the record is a manually added server
        """
        record = self._find_record(record_id)
        if not record["isManaged"]:
            raise ValueError(f"'{record['name']}' was added manually; forget it instead")
        provider = provider_of(record)
        instance_id = record["cloudProviderId"].split(":", 1)[1]
        try:
            self.account(provider).delete_server(instance_id)
        except NotFoundError:
            warn(f"'{record['name']}' was already gone from {provider}")
        self.repository.remove(record_id)
        log(f"Deleted server '{record['name']}'")

    def _managed_server(self, record: DisplayRecord) -> ManagedServer:
        account = self.account(provider_of(record))
        for from_cache_only in (True, False):
            for server in account.list_servers(from_cache_only=from_cache_only):
                if server.management_api_url == record["id"]:
                    return server
        raise NotFoundError(f"Server '{record['name']}' not found on {provider_of(record)}")

    def rename_server(self, record_id: str, name: str) -> None:
        record = self._find_record(record_id)
        if record["isManaged"]:
            self._managed_server(record).rename(name)
        else:
            fingerprint = self.manual_servers.fingerprint_for(record_id)
            if fingerprint is None:
                raise NotFoundError(f"No certificate fingerprint stored for '{record_id}'")
            self.api_factory(record_id, fingerprint).rename(name)
        self.repository.rename(record_id, name)

    def add_manual_server(self, api_url: str, fingerprint: str) -> DisplayRecord:
        """Add a server by its management URL and certificate fingerprint.

        :raises ValueError: If the server is already listed
        """
        api_url = normalize_api_url(api_url)
        fingerprint = normalize_fingerprint(fingerprint)
        if self.repository.find(api_url) is not None:
            raise ValueError(f"Server '{api_url}' is already listed")
        info = self.api_factory(api_url, fingerprint).get_server_info()
        self.manual_servers.add(api_url, fingerprint)
        record = make_record(api_url, info.get("name") or api_url, is_managed=False)
        self.repository.add(record)
        self.repository.set_last_displayed(api_url)
        return record

    def forget_server(self, record_id: str) -> None:
        """Remove a manually added server from the list; the server keeps running."""
        record = self._find_record(record_id)
        if record["isManaged"]:
            raise ValueError(f"'{record['name']}' is cloud-managed; delete it instead")
        self.manual_servers.remove(record_id)
        self.repository.remove(record_id)
