"""Shared fixtures, plus a session-scoped live server for integration tests."""

from uuid import uuid4

import boto3
import pytest

from relaymgr.accounts import credential_from_env
from relaymgr.config import Settings, load_settings
from relaymgr.errors import RelayError
from relaymgr.providers import get_account
from relaymgr.store import JsonStore
from relaymgr.types import LightsailCredential

DEFAULT_LOCATIONS = {
    "digitalocean": "nyc3",
    "gcp": "us-central1-a",
    "lightsail": "us-east-1",
}


def pytest_addoption(parser):
    parser.addoption(
        "--provider",
        default="digitalocean",
        help="Cloud provider for integration tests (default: digitalocean)",
    )
    parser.addoption(
        "--location",
        default=None,
        help="Region or zone for integration tests (default: per provider)",
    )
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run tests that create real cloud servers",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-integration"):
        return
    skip = pytest.mark.skip(reason="creates real cloud servers, use --run-integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def settings(tmp_path):
    """Settings that never sleep and skip the management API health check."""
    return Settings(
        home=tmp_path,
        operation_poll_interval=0,
        discovery_poll_interval=0,
        operation_timeout=5,
        discovery_timeout=5,
        health_check_retries=0,
        health_check_delay=0,
    )


@pytest.fixture
def store():
    return JsonStore()


@pytest.fixture(scope="session")
def provider_name(request):
    return request.config.getoption("--provider")


@pytest.fixture(scope="session")
def location_id(request, provider_name):
    return request.config.getoption("--location") or DEFAULT_LOCATIONS[provider_name]


@pytest.fixture(scope="session")
def live_account(provider_name):
    credential = credential_from_env(provider_name)
    if credential is None and provider_name == "lightsail":
        found = boto3.Session().get_credentials()
        if found is not None:
            frozen = found.get_frozen_credentials()
            credential = LightsailCredential(frozen.access_key, frozen.secret_key)
    if credential is None:
        pytest.skip(f"No {provider_name} credentials in the environment")
    return get_account(credential, load_settings())


@pytest.fixture(scope="session")
def live_server(live_account, location_id):
    """Create a real server, yield it, delete it on teardown."""
    name = f"test-relaymgr-{uuid4().hex[:8]}"
    print(f"\n[INFO] Creating '{name}' in '{location_id}'...")
    server = live_account.create_server(location_id, name)
    try:
        yield server
    finally:
        try:
            server.host.delete()
        except RelayError as e:
            print(f"[WARN] Could not delete '{name}': {e}")
