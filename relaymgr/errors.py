"""Error taxonomy shared by provider clients, accounts and the CLI."""

import httpx
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    HTTPClientError,
    NoCredentialsError,
    ReadTimeoutError,
)

from .types import CreationState

AWS_AUTH_ERROR_CODES = {
    "AccessDeniedException",
    "AuthFailure",
    "ExpiredToken",
    "ExpiredTokenException",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
}
AWS_NOT_FOUND_ERROR_CODES = {"NotFoundException", "DoesNotExist"}


class RelayError(Exception):
    """Base class for all relaymgr errors."""


class NetworkError(RelayError):
    """The request never produced a response."""


class AuthAmbiguousError(RelayError):
    """Credentials are invalid, expired, or the request was blocked."""


class ApiError(RelayError):
    def __init__(self, status_code: int, message: str, payload=None):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.payload = payload


class NotFoundError(ApiError):
    def __init__(self, message: str = "not found", payload=None):
        super().__init__(404, message, payload)


class OperationFailedError(RelayError):
    def __init__(self, operation_id: str, payload=None):
        super().__init__(f"Operation '{operation_id}' failed: {payload}")
        self.operation_id = operation_id
        self.payload = payload


class TimedOutError(RelayError):
    pass


class InstallCanceledError(RelayError):
    """Server creation was cancelled by the user."""


class CreationInProgressError(RelayError):
    """The account already has a creation session in progress."""


class CreateServerError(RelayError):
    """Server creation failed at a given state and step.

    ``host`` is the partially created host, or None when no instance exists
    yet. ``cause`` is the classified error that stopped creation.
    """

    def __init__(
        self,
        message: str,
        *,
        state: CreationState,
        step: str,
        host=None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.state = state
        self.step = step
        self.host = host
        self.cause = cause


class InstallFailedError(CreateServerError):
    """An instance exists but never finished installing."""

    def __init__(
        self,
        message: str,
        *,
        state: CreationState = CreationState.BOOTSTRAPPING,
        step: str = "discover_secrets",
        host=None,
        cause: Exception | None = None,
    ):
        super().__init__(message, state=state, step=step, host=host, cause=cause)


class CertificateMismatchError(RelayError):
    """The management API presented a certificate with an unexpected fingerprint."""


class UnreachableServerError(RelayError):
    """The management API did not answer; ``server`` can be retried."""

    def __init__(self, message: str, server=None):
        super().__init__(message)
        self.server = server


def _response_message(response: httpx.Response) -> tuple[str, object]:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase, None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            return str(err.get("message", err)), payload
        if isinstance(err, str):
            return payload.get("error_description") or err, payload
        if "message" in payload:
            return str(payload["message"]), payload
    return response.reason_phrase, payload


def raise_for_response(response: httpx.Response) -> None:
    """Raise the taxonomy error matching a non-2xx response.

    :param response: Completed httpx response
    :raises AuthAmbiguousError: On 401
    :raises NotFoundError: On 404
    :raises ApiError: On any other non-2xx status
    """
    if response.is_success:
        return
    message, payload = _response_message(response)
    if response.status_code == 401:
        raise AuthAmbiguousError(message)
    if response.status_code == 404:
        raise NotFoundError(message, payload)
    raise ApiError(response.status_code, message, payload)


def classify_error(exc: BaseException) -> BaseException:
    """Map a raw httpx/botocore exception into the relaymgr taxonomy.

    Errors already in the taxonomy, and anything unrecognised, are returned
    unchanged.

    :param exc: Exception raised by a remote call
    :return: Classified exception (not raised)
    """
    if isinstance(exc, RelayError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            raise_for_response(exc.response)
        except RelayError as classified:
            return classified
        return exc
    if isinstance(exc, httpx.TransportError):
        return NetworkError(str(exc) or type(exc).__name__)
    if isinstance(exc, NoCredentialsError):
        return AuthAmbiguousError(str(exc))
    if isinstance(
        exc,
        (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, HTTPClientError),
    ):
        return NetworkError(str(exc))
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        message = error.get("Message", str(exc))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 400)
        if code in AWS_AUTH_ERROR_CODES or status in (401, 403):
            return AuthAmbiguousError(f"{code}: {message}")
        if code in AWS_NOT_FOUND_ERROR_CODES or status == 404:
            return NotFoundError(message, exc.response)
        return ApiError(status, f"{code}: {message}", exc.response)
    return exc


def aws_error_code(error: ApiError) -> str | None:
    """:return: The AWS error code of an ApiError classified from a botocore ClientError"""
    if isinstance(error.payload, dict):
        return error.payload.get("Error", {}).get("Code")
    return None
