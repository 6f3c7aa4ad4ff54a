import httpx
import pytest

from relaymgr.errors import ApiError, AuthAmbiguousError, NetworkError
from relaymgr.retry import AuthRetryPolicy


class Recorder:
    """decide/clear_credentials callbacks that record how they were used."""

    def __init__(self, answers=()):
        self.answers = list(answers)
        self.prompts = []
        self.cleared = 0

    def decide(self, error):
        self.prompts.append(error)
        return self.answers.pop(0)

    def clear(self):
        self.cleared += 1


def failing(*errors, result="ok"):
    remaining = list(errors)
    attempts = []

    def operation():
        attempts.append(1)
        if remaining:
            raise remaining.pop(0)
        return result

    return operation, attempts


def test_success_does_not_prompt():
    recorder = Recorder()
    policy = AuthRetryPolicy(recorder.decide, recorder.clear)
    assert policy.wrap(lambda: 42) == 42
    assert recorder.prompts == []


def test_retry_decision_reruns_and_reprompts():
    recorder = Recorder(answers=[True, True])
    policy = AuthRetryPolicy(recorder.decide, recorder.clear)
    operation, attempts = failing(AuthAmbiguousError("expired"), AuthAmbiguousError("expired"))
    assert policy.wrap(operation) == "ok"
    assert len(attempts) == 3
    assert len(recorder.prompts) == 2
    assert recorder.cleared == 0


def test_abandon_clears_credentials_and_raises():
    recorder = Recorder(answers=[False])
    policy = AuthRetryPolicy(recorder.decide, recorder.clear)
    operation, attempts = failing(AuthAmbiguousError("expired"))
    with pytest.raises(AuthAmbiguousError):
        policy.wrap(operation)
    assert len(attempts) == 1
    assert recorder.cleared == 1


def test_http_401_is_auth_ambiguous():
    request = httpx.Request("GET", "https://api.digitalocean.com/v2/account")
    response = httpx.Response(401, json={"id": "unauthorized", "message": "Unable to authenticate you"}, request=request)
    raw = httpx.HTTPStatusError("401", request=request, response=response)
    recorder = Recorder(answers=[False])
    policy = AuthRetryPolicy(recorder.decide, recorder.clear)
    operation, _ = failing(raw)
    with pytest.raises(AuthAmbiguousError) as exc_info:
        policy.wrap(operation)
    assert exc_info.value.__cause__ is raw
    assert "Unable to authenticate you" in str(recorder.prompts[0])


def test_network_error_is_raised_without_prompt():
    recorder = Recorder()
    policy = AuthRetryPolicy(recorder.decide, recorder.clear)
    operation, attempts = failing(httpx.ConnectError("connection refused"))
    with pytest.raises(NetworkError):
        policy.wrap(operation)
    assert len(attempts) == 1
    assert recorder.prompts == []
    assert recorder.cleared == 0


def test_api_error_is_raised_without_prompt():
    recorder = Recorder()
    policy = AuthRetryPolicy(recorder.decide, recorder.clear)
    operation, _ = failing(ApiError(422, "Region is unavailable"))
    with pytest.raises(ApiError) as exc_info:
        policy.wrap(operation)
    assert exc_info.value.status_code == 422
    assert recorder.prompts == []


def test_wrap_runs_the_operation_and_returns_its_result():
    recorder = Recorder(answers=[True])
    policy = AuthRetryPolicy(recorder.decide, recorder.clear)
    seen = []

    def add(a, b):
        seen.append((a, b))
        if len(seen) == 1:
            raise AuthAmbiguousError("blocked")
        return a + b

    assert policy.wrap(lambda: add(2, b=3)) == 5
    assert seen == [(2, 3), (2, 3)]
