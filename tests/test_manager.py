import pytest

from relaymgr.display import DisplayRecordRepository, ManualServerRepository, make_record
from relaymgr.errors import (
    ApiError,
    CreateServerError,
    InstallCanceledError,
    NetworkError,
    NotFoundError,
    UnreachableServerError,
)
from relaymgr.manager import ServerManager
from relaymgr.server import ManagedServer
from relaymgr.types import BootstrapSecrets, CreationState, InstanceDescriptor, Location


class FakeApi:
    def __init__(self, name="Relay"):
        self.name = name

    def get_server_info(self):
        return {"name": self.name}

    def rename(self, name):
        self.name = name


class FakeHost:
    def __init__(self, delete_error=None):
        self.deleted = 0
        self.delete_error = delete_error

    def get_id(self):
        return "101"

    def delete(self):
        self.deleted += 1
        if self.delete_error is not None:
            raise self.delete_error


def live(url, name="Relay", provider="digitalocean", instance_id="1"):
    instance = InstanceDescriptor(
        id=instance_id, name="relay-3f9a1c", state="running", location=Location("nyc3", "New York", "US")
    )
    secrets = BootstrapSecrets(management_api_url=url, certificate_fingerprint="ABCDEF")
    return ManagedServer(provider, instance, FakeHost(), secrets, api=FakeApi(name))


class FakeAccount:
    def __init__(self, provider_name="digitalocean", servers=(), outcomes=(), listing_error=None):
        self.provider_name = provider_name
        self.servers = list(servers)
        self.outcomes = list(outcomes)
        self.listing_error = listing_error
        self.deleted = []

    def list_servers(self, from_cache_only=False):
        if self.listing_error is not None:
            raise self.listing_error
        return list(self.servers)

    def create_server(self, location_id, name):
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def delete_server(self, server_id):
        self.deleted.append(server_id)
        if server_id not in [s.instance_id for s in self.servers]:
            raise NotFoundError(f"no server {server_id}")

    def cancel_creation(self):
        return False


def creation_error(host=None):
    return CreateServerError(
        "Creating 'relay' failed", state=CreationState.INSTANCE_CREATING, step="create_droplet", host=host
    )


@pytest.fixture
def notes():
    return []


def make_manager(store, notes, *accounts, **kwargs):
    return ServerManager(
        {account.provider_name: account for account in accounts},
        DisplayRecordRepository(store),
        ManualServerRepository(store),
        notify=notes.append,
        **kwargs,
    )


def managed(url, name, provider="digitalocean", instance_id="9"):
    return make_record(url, name, is_managed=True, cloud_id=f"{provider}:{instance_id}")


def test_sync_removes_orphans_and_adds_new_servers(store, notes):
    manager = make_manager(store, notes, FakeAccount(servers=[live("https://a/", "Office")]))
    manager.repository.add(managed("https://old/", "Old relay"))
    manager.repository.add(make_record("https://m/", "Home", is_managed=False))

    records = manager.sync_servers()

    assert [(r["id"], r["name"]) for r in records] == [("https://m/", "Home"), ("https://a/", "Office")]
    assert manager.repository.list_records() == records
    assert len(notes) == 1
    assert "'Old relay'" in notes[0]


def test_sync_keeps_records_of_accounts_that_failed_to_list(store, notes):
    manager = make_manager(
        store,
        notes,
        FakeAccount(servers=[]),
        FakeAccount("gcp", listing_error=NetworkError("offline")),
    )
    manager.repository.add(managed("https://do/", "DO relay"))
    manager.repository.add(managed("https://gcp/", "GCP relay", provider="gcp"))

    records = manager.sync_servers()

    assert [r["id"] for r in records] == ["https://gcp/"]


def test_create_server_records_and_selects_it(store, notes):
    manager = make_manager(store, notes, FakeAccount(outcomes=[live("https://a/", "Relay")]))
    record = manager.create_server("digitalocean", "nyc3", "Relay")
    assert record["id"] == "https://a/"
    assert record["isManaged"]
    assert manager.repository.find("https://a/") is not None
    assert manager.repository.get_last_displayed() == "https://a/"


def test_failed_creation_deleted_then_retried(store, notes):
    host = FakeHost()
    decisions = []

    def decide(error):
        decisions.append(error.step)
        return "retry"

    manager = make_manager(
        store,
        notes,
        FakeAccount(outcomes=[creation_error(host), live("https://a/")]),
        on_creation_failure=decide,
    )
    record = manager.create_server("digitalocean", "nyc3", "Relay")
    assert record["id"] == "https://a/"
    assert decisions == ["create_droplet"]
    assert host.deleted == 1


def test_failed_creation_kept_on_request(store, notes):
    host = FakeHost()
    manager = make_manager(
        store, notes, FakeAccount(outcomes=[creation_error(host)]), on_creation_failure=lambda e: "keep"
    )
    with pytest.raises(CreateServerError):
        manager.create_server("digitalocean", "nyc3", "Relay")
    assert host.deleted == 0


def test_failed_creation_destroyed_by_default(store, notes):
    host = FakeHost()
    manager = make_manager(store, notes, FakeAccount(outcomes=[creation_error(host)]))
    with pytest.raises(CreateServerError):
        manager.create_server("digitalocean", "nyc3", "Relay")
    assert host.deleted == 1
    assert manager.repository.list_records() == []


def test_failed_cleanup_still_reports_the_failing_step(store, notes):
    host = FakeHost(delete_error=ApiError(500, "droplet is locked"))
    decisions = []

    def decide(error):
        decisions.append(error.step)
        return "retry"

    manager = make_manager(
        store,
        notes,
        FakeAccount(outcomes=[creation_error(host), live("https://a/")]),
        on_creation_failure=decide,
    )
    with pytest.raises(CreateServerError) as exc_info:
        manager.create_server("digitalocean", "nyc3", "Relay")

    assert exc_info.value.step == "create_droplet"
    assert isinstance(exc_info.value.__cause__, ApiError)
    assert decisions == ["create_droplet"]
    assert manager.repository.list_records() == []


def test_cancelled_creation_is_not_an_error(store, notes):
    manager = make_manager(
        store, notes, FakeAccount(outcomes=[InstallCanceledError("Server creation was cancelled")])
    )
    assert manager.create_server("digitalocean", "nyc3", "Relay") is None
    assert manager.repository.list_records() == []
    assert "cancelled" in notes[0]


def test_unreachable_server_is_still_recorded(store, notes):
    server = live("https://a/")
    manager = make_manager(
        store, notes, FakeAccount(outcomes=[UnreachableServerError("not answering", server=server)])
    )
    record = manager.create_server("digitalocean", "nyc3", "Relay")
    assert record["id"] == "https://a/"
    assert manager.repository.find("https://a/") is not None


def test_delete_managed_server(store, notes):
    account = FakeAccount(servers=[live("https://a/", instance_id="101")])
    manager = make_manager(store, notes, account)
    manager.repository.add(managed("https://a/", "Relay", instance_id="101"))

    manager.delete_server("https://a/")

    assert account.deleted == ["101"]
    assert manager.repository.find("https://a/") is None


def test_delete_tolerates_server_already_gone(store, notes):
    account = FakeAccount()
    manager = make_manager(store, notes, account)
    manager.repository.add(managed("https://a/", "Relay"))
    manager.delete_server("https://a/")
    assert manager.repository.list_records() == []


def test_delete_refuses_manual_server(store, notes):
    manager = make_manager(store, notes, FakeAccount())
    manager.repository.add(make_record("https://m/", "Home", is_managed=False))
    with pytest.raises(ValueError):
        manager.delete_server("https://m/")
    with pytest.raises(NotFoundError):
        manager.delete_server("https://missing/")


def test_add_rename_and_forget_manual_server(store, notes):
    api = FakeApi("Home relay")
    opened = []

    def api_factory(api_url, fingerprint):
        opened.append((api_url, fingerprint))
        return api

    manager = make_manager(store, notes, api_factory=api_factory)

    record = manager.add_manual_server("https://198.51.100.1:8081/Xk2", "ab:cd:ef")
    assert record == make_record("https://198.51.100.1:8081/Xk2/", "Home relay", is_managed=False)
    assert manager.manual_servers.fingerprint_for(record["id"]) == "ABCDEF"
    with pytest.raises(ValueError):
        manager.add_manual_server("https://198.51.100.1:8081/Xk2/", "ABCDEF")

    manager.rename_server(record["id"], "Kitchen")
    assert opened[-1] == (record["id"], "ABCDEF")
    assert api.name == "Kitchen"
    assert manager.repository.find(record["id"])["name"] == "Kitchen"

    manager.forget_server(record["id"])
    assert manager.repository.list_records() == []
    assert manager.manual_servers.fingerprint_for(record["id"]) is None


def test_rename_managed_server(store, notes):
    server = live("https://a/", "Relay")
    manager = make_manager(store, notes, FakeAccount(servers=[server]))
    manager.repository.add(managed("https://a/", "Relay"))

    manager.rename_server("https://a/", "Office")

    assert server.api.name == "Office"
    assert manager.repository.find("https://a/")["name"] == "Office"


def test_forget_refuses_managed_server(store, notes):
    manager = make_manager(store, notes, FakeAccount())
    manager.repository.add(managed("https://a/", "Relay"))
    with pytest.raises(ValueError):
        manager.forget_server("https://a/")


def test_unknown_provider(store, notes):
    manager = make_manager(store, notes)
    with pytest.raises(KeyError):
        manager.account("gcp")
