import pytest

from relaymgr.discovery import (
    discover_bootstrap_secrets,
    extract_bootstrap_secrets,
    normalize_api_url,
    normalize_fingerprint,
)
from relaymgr.errors import InstallCanceledError, InstallFailedError, NotFoundError, TimedOutError
from relaymgr.poller import CancelToken
from relaymgr.types import BootstrapSecrets

API_URL = "https://203.0.113.7:8081/Xk2"
FINGERPRINT = "ab:cd:ef:01"


def scripted_tags(*responses):
    """fetch_tags returning (or raising) each response in turn."""
    remaining = list(responses)
    calls = []

    def fetch(instance_ref):
        calls.append(instance_ref)
        response = remaining.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    return fetch, calls


def test_normalize():
    assert normalize_fingerprint(" ab:cd:EF ") == "ABCDEF"
    assert normalize_api_url("https://a:1/x") == "https://a:1/x/"
    assert normalize_api_url("https://a:1/x/") == "https://a:1/x/"


@pytest.mark.parametrize(
    "tags",
    [None, {}, {"apiUrl": API_URL}, {"certSha256": FINGERPRINT}, {"apiUrl": "", "certSha256": "AB"}],
)
def test_partial_tags_are_not_secrets(tags):
    assert extract_bootstrap_secrets(tags) is None


def test_waits_until_both_values_are_published():
    fetch, calls = scripted_tags(
        {},
        {"apiUrl": API_URL},
        {"apiUrl": API_URL, "certSha256": FINGERPRINT, "relaymgr": "true"},
    )
    secrets = discover_bootstrap_secrets("droplet-1", fetch, interval=0)
    assert secrets == BootstrapSecrets(
        management_api_url=f"{API_URL}/", certificate_fingerprint="ABCDEF01"
    )
    assert len(calls) == 3


def test_not_found_means_not_yet():
    fetch, calls = scripted_tags(
        NotFoundError("no guest attributes"),
        NotFoundError("no guest attributes"),
        {"apiUrl": API_URL, "certSha256": FINGERPRINT},
    )
    secrets = discover_bootstrap_secrets("us-central1-a/relay", fetch, interval=0)
    assert secrets.management_api_url == f"{API_URL}/"
    assert len(calls) == 3


def test_install_error_tag_fails():
    fetch, _ = scripted_tags({}, {"install-error": "INSTALL_SCRIPT_FAILED: 1"})
    with pytest.raises(InstallFailedError) as exc_info:
        discover_bootstrap_secrets("relay", fetch, interval=0)
    assert "INSTALL_SCRIPT_FAILED" in str(exc_info.value)
    assert exc_info.value.step == "discover_secrets"


def test_times_out():
    fetch, _ = scripted_tags(*[{}] * 5)
    with pytest.raises(TimedOutError):
        discover_bootstrap_secrets("relay", fetch, interval=0.05, timeout=0)


def test_cancel_stops_polling_without_failing():
    token = CancelToken()
    calls = []

    def fetch(instance_ref):
        calls.append(instance_ref)
        token.cancel()
        return {"apiUrl": API_URL}

    with pytest.raises(InstallCanceledError):
        discover_bootstrap_secrets("relay", fetch, interval=0, cancel=token)
    assert len(calls) == 1
