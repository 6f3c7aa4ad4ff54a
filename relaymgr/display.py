"""Display records: the locally cached list of servers shown to the user."""

from typing import Callable, Iterable, Protocol

from .store import JsonStore
from .types import DisplayRecord, ProviderName
from .utils import logger

DISPLAY_SERVERS_KEY = "displayServers"
LAST_DISPLAYED_SERVER_KEY = "lastDisplayedServer"
MANUAL_SERVERS_KEY = "manualServers"


class LiveServer(Protocol):
    provider: ProviderName
    management_api_url: str
    name: str
    instance_id: str


def cloud_provider_id(provider: ProviderName, instance_id: str) -> str:
    return f"{provider}:{instance_id}"


def provider_of(record: DisplayRecord) -> str | None:
    cloud_id = record.get("cloudProviderId")
    if not cloud_id:
        return None
    return cloud_id.split(":", 1)[0]


def make_record(
    record_id: str,
    name: str,
    *,
    is_managed: bool,
    cloud_id: str | None = None,
    is_synced: bool = False,
) -> DisplayRecord:
    return {
        "id": record_id,
        "name": name,
        "isManaged": is_managed,
        "cloudProviderId": cloud_id,
        "isSynced": is_synced,
    }


def record_for_server(server: LiveServer) -> DisplayRecord:
    return make_record(
        server.management_api_url,
        server.name,
        is_managed=True,
        cloud_id=cloud_provider_id(server.provider, server.instance_id),
        is_synced=True,
    )


def reconcile(
    live_servers: Iterable[LiveServer],
    cache: Iterable[DisplayRecord],
    *,
    providers: Iterable[str] | None = None,
    notify: Callable[[list[DisplayRecord]], None] | None = None,
) -> list[DisplayRecord]:
    """Merge the cached display records with the servers the providers report.

    Live servers are matched to cached records by management API URL. Matched
    records take the live name and are marked synced; unmatched servers get a
    new synced record. Cached cloud-managed records whose server was not seen
    are orphaned and dropped. Manual records are always kept.

    The inputs are not modified.

    :param live_servers: Full listing of every account in ``providers``
    :param cache: Current display records
    :param providers: Providers whose listing is complete. Managed records of
        any other provider are kept untouched. None means all providers.
    :param notify: Called once with the removed records, if there are any
    :return: Reconciled records, cached order first, new servers appended
    """
    provider_set = set(providers) if providers is not None else None
    records = [dict(r) for r in cache]
    by_id = {r["id"]: r for r in records}
    seen = set()

    for server in live_servers:
        record_id = server.management_api_url
        if record_id in seen:
            continue
        seen.add(record_id)
        record = by_id.get(record_id)
        if record is None:
            record = record_for_server(server)
            records.append(record)
            by_id[record_id] = record
            continue
        if record["name"] != server.name:
            record["name"] = server.name
        record["isManaged"] = True
        record["cloudProviderId"] = cloud_provider_id(server.provider, server.instance_id)
        record["isSynced"] = True

    def is_orphan(record: DisplayRecord) -> bool:
        if not record.get("isManaged") or record["id"] in seen:
            return False
        return provider_set is None or provider_of(record) in provider_set

    removed = [r for r in records if is_orphan(r)]
    result = [r for r in records if not is_orphan(r)]
    if removed and notify is not None:
        notify(removed)
    return result


class DisplayRecordRepository:
    """Display records and the last displayed server id, persisted in a JsonStore.

    Records always load with ``isSynced`` False; only a reconciliation pass
    marks them synced.
    """

    def __init__(self, store: JsonStore):
        self.store = store
        self._records: list[DisplayRecord] = [
            make_record(
                r["id"],
                r["name"],
                is_managed=bool(r.get("isManaged")),
                cloud_id=r.get("cloudProviderId"),
            )
            for r in store.get(DISPLAY_SERVERS_KEY, [])
        ]

    def list_records(self) -> list[DisplayRecord]:
        return [dict(r) for r in self._records]

    def find(self, record_id: str) -> DisplayRecord | None:
        return next((dict(r) for r in self._records if r["id"] == record_id), None)

    def add(self, record: DisplayRecord) -> None:
        """Append a record.

        :raises ValueError: If id or name is missing, or the id is already stored
        """
        if not record.get("id") or not record.get("name"):
            raise ValueError(f"Display record needs an id and a name: {record}")
        if any(r["id"] == record["id"] for r in self._records):
            raise ValueError(f"Display record '{record['id']}' already exists")
        self._records.append(dict(record))
        self._save()

    def remove(self, record_id: str) -> DisplayRecord | None:
        record = self.find(record_id)
        if record is None:
            return None
        self._records = [r for r in self._records if r["id"] != record_id]
        self._save()
        if self.get_last_displayed() == record_id:
            self.clear_last_displayed()
        return record

    def rename(self, record_id: str, name: str) -> None:
        """:raises KeyError: If no record has this id"""
        for record in self._records:
            if record["id"] == record_id:
                record["name"] = name
                self._save()
                return
        raise KeyError(record_id)

    def replace_all(self, records: list[DisplayRecord]) -> None:
        self._records = [dict(r) for r in records]
        self._save()

    def get_last_displayed(self) -> str | None:
        return self.store.get(LAST_DISPLAYED_SERVER_KEY)

    def set_last_displayed(self, record_id: str) -> None:
        self.store.set(LAST_DISPLAYED_SERVER_KEY, record_id)

    def clear_last_displayed(self) -> None:
        self.store.remove(LAST_DISPLAYED_SERVER_KEY)

    def _save(self) -> None:
        self.store.set(DISPLAY_SERVERS_KEY, [dict(r) for r in self._records])
        logger.debug(f"Saved {len(self._records)} display records")


class ManualServerRepository:
    """Certificate fingerprints of servers added by URL rather than created here."""

    def __init__(self, store: JsonStore):
        self.store = store

    def _load(self) -> dict[str, str]:
        return dict(self.store.get(MANUAL_SERVERS_KEY, {}))

    def add(self, api_url: str, fingerprint: str) -> None:
        servers = self._load()
        servers[api_url] = fingerprint
        self.store.set(MANUAL_SERVERS_KEY, servers)

    def fingerprint_for(self, api_url: str) -> str | None:
        return self._load().get(api_url)

    def remove(self, api_url: str) -> None:
        servers = self._load()
        if servers.pop(api_url, None) is not None:
            self.store.set(MANUAL_SERVERS_KEY, servers)
