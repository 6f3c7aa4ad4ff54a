from dataclasses import dataclass

import pytest

from relaymgr.display import (
    DISPLAY_SERVERS_KEY,
    DisplayRecordRepository,
    ManualServerRepository,
    make_record,
    provider_of,
    reconcile,
)
from relaymgr.store import JsonStore


@dataclass
class LiveServer:
    management_api_url: str
    name: str
    provider: str = "digitalocean"
    instance_id: str = "1"


def managed(record_id, name=None, provider="digitalocean", instance_id="1"):
    return make_record(
        record_id, name or record_id, is_managed=True, cloud_id=f"{provider}:{instance_id}"
    )


def manual(record_id, name="Manual"):
    return make_record(record_id, name, is_managed=False)


class Notifications:
    def __init__(self):
        self.calls = []

    def __call__(self, removed):
        self.calls.append([r["id"] for r in removed])


def test_orphans_are_removed_and_named():
    live = [LiveServer("https://a/", "A"), LiveServer("https://b/", "B", instance_id="2")]
    cache = [managed("https://a/", "A"), managed("https://c/", "C", instance_id="3")]
    notify = Notifications()

    result = reconcile(live, cache, notify=notify)

    assert [(r["id"], r["isSynced"]) for r in result] == [("https://a/", True), ("https://b/", True)]
    assert notify.calls == [["https://c/"]]


def test_live_name_and_instance_id_refresh_the_record():
    cache = [managed("https://a/", "Old name", instance_id="1")]
    result = reconcile([LiveServer("https://a/", "New name", instance_id="9")], cache)
    assert result[0]["name"] == "New name"
    assert result[0]["cloudProviderId"] == "digitalocean:9"


def test_inputs_are_not_modified():
    cache = [managed("https://a/", "Old")]
    reconcile([LiveServer("https://a/", "New")], cache)
    assert cache[0]["name"] == "Old"
    assert cache[0]["isSynced"] is False


def test_idempotent():
    live = [LiveServer("https://a/", "A"), LiveServer("https://b/", "B")]
    cache = [managed("https://a/", "A"), managed("https://c/", "C"), manual("https://m/")]
    notify = Notifications()

    once = reconcile(live, cache, notify=notify)
    twice = reconcile(live, once, notify=notify)

    assert twice == once
    assert notify.calls == [["https://c/"]]


def test_manual_records_are_never_orphaned():
    cache = [manual("https://m/"), managed("https://a/")]
    notify = Notifications()
    result = reconcile([], cache, notify=notify)
    assert [r["id"] for r in result] == ["https://m/"]
    assert notify.calls == [["https://a/"]]


def test_output_is_cache_plus_new_minus_orphans():
    live = [LiveServer("https://b/", "B"), LiveServer("https://d/", "D")]
    cache = [manual("https://m/"), managed("https://a/"), managed("https://b/")]
    result = reconcile(live, cache)
    assert {r["id"] for r in result} == {"https://m/", "https://b/", "https://d/"}


def test_duplicate_live_servers_make_one_record():
    live = [LiveServer("https://a/", "A"), LiveServer("https://a/", "A")]
    assert len(reconcile(live, [])) == 1


def test_only_listed_providers_are_checked_for_orphans():
    cache = [
        managed("https://do/", provider="digitalocean"),
        managed("https://gcp/", provider="gcp"),
    ]
    notify = Notifications()
    result = reconcile([], cache, providers=["digitalocean"], notify=notify)
    assert [r["id"] for r in result] == ["https://gcp/"]
    assert notify.calls == [["https://do/"]]


def test_no_notification_when_nothing_removed():
    notify = Notifications()
    reconcile([LiveServer("https://a/", "A")], [managed("https://a/")], notify=notify)
    assert notify.calls == []


def test_provider_of():
    assert provider_of(managed("https://a/", provider="lightsail")) == "lightsail"
    assert provider_of(manual("https://m/")) is None


def test_repository_persists_records_and_resets_synced(tmp_path):
    store = JsonStore(tmp_path / "store.json")
    repository = DisplayRecordRepository(store)
    record = managed("https://a/", "A")
    record["isSynced"] = True
    repository.add(record)
    repository.set_last_displayed("https://a/")

    reloaded = DisplayRecordRepository(JsonStore(tmp_path / "store.json"))
    assert reloaded.list_records() == [managed("https://a/", "A")]
    assert reloaded.get_last_displayed() == "https://a/"


def test_repository_rejects_invalid_and_duplicate_records(store):
    repository = DisplayRecordRepository(store)
    repository.add(manual("https://m/"))
    with pytest.raises(ValueError):
        repository.add(manual("https://m/", "Again"))
    with pytest.raises(ValueError):
        repository.add(make_record("", "No id", is_managed=False))


def test_repository_rename_and_remove(store):
    repository = DisplayRecordRepository(store)
    repository.add(manual("https://m/"))
    repository.set_last_displayed("https://m/")

    repository.rename("https://m/", "Renamed")
    assert repository.find("https://m/")["name"] == "Renamed"
    with pytest.raises(KeyError):
        repository.rename("https://missing/", "x")

    assert repository.remove("https://m/")["name"] == "Renamed"
    assert repository.list_records() == []
    assert repository.get_last_displayed() is None
    assert store.get(DISPLAY_SERVERS_KEY) == []


def test_returned_records_are_copies(store):
    repository = DisplayRecordRepository(store)
    repository.add(manual("https://m/"))
    repository.list_records()[0]["name"] = "changed"
    assert repository.find("https://m/")["name"] == "Manual"


def test_manual_server_fingerprints(store):
    servers = ManualServerRepository(store)
    servers.add("https://m/", "ABCDEF")
    assert servers.fingerprint_for("https://m/") == "ABCDEF"
    servers.remove("https://m/")
    assert servers.fingerprint_for("https://m/") is None
