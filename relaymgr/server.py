"""Managed servers and the relay management API."""

import hashlib
import ssl
from typing import Protocol

import httpx

from .config import HEALTH_CHECK_DELAY, HEALTH_CHECK_RETRIES
from .display import record_for_server
from .errors import (
    ApiError,
    CertificateMismatchError,
    NetworkError,
    RelayError,
    UnreachableServerError,
    raise_for_response,
)
from .poller import CancelToken, sleep_or_cancel
from .types import (
    BootstrapSecrets,
    DisplayRecord,
    InstanceDescriptor,
    MonthlyCost,
    ProviderName,
    TransferLimit,
)
from .utils import log, logger, warn

MANAGEMENT_API_TIMEOUT = 10.0


class ManagedServerHost(Protocol):
    def get_id(self) -> str: ...

    def get_region(self) -> str: ...

    def get_monthly_cost(self) -> MonthlyCost | None: ...

    def get_monthly_transfer_limit(self) -> TransferLimit | None: ...

    def delete(self) -> None: ...


def _unverified_context() -> ssl.SSLContext:
    # Self-signed certificate: trust comes from the pinned fingerprint
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class ManagementApiClient:
    """HTTPS client for a relay's management API, pinned to its certificate fingerprint.

    :param api_url: Management API URL ending with '/'
    :param fingerprint: Uppercase hex SHA-256 of the server certificate
    :param transport: Optional httpx transport, for tests
    :param pin_certificate: Check the peer certificate on every response
    """

    def __init__(
        self,
        api_url: str,
        fingerprint: str,
        *,
        transport: httpx.BaseTransport | None = None,
        pin_certificate: bool = True,
    ):
        self.api_url = api_url
        self.fingerprint = fingerprint
        hooks = {"response": [self._check_certificate]} if pin_certificate else {}
        self._http = httpx.Client(
            base_url=api_url,
            verify=_unverified_context(),
            transport=transport,
            timeout=MANAGEMENT_API_TIMEOUT,
            event_hooks=hooks,
        )

    def _check_certificate(self, response: httpx.Response) -> None:
        stream = response.extensions.get("network_stream")
        ssl_object = stream.get_extra_info("ssl_object") if stream is not None else None
        if ssl_object is None:
            raise CertificateMismatchError(f"No TLS session with '{self.api_url}'")
        der = ssl_object.getpeercert(binary_form=True)
        actual = hashlib.sha256(der).hexdigest().upper()
        if actual != self.fingerprint:
            raise CertificateMismatchError(
                f"Certificate of '{self.api_url}' has fingerprint {actual[:16]}..., "
                f"expected {self.fingerprint[:16]}..."
            )

    def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        try:
            response = self._http.request(method, path, json=json)
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {self.api_url}{path}: {e}") from e
        raise_for_response(response)
        return response.json() if response.content else {}

    def get_server_info(self) -> dict:
        return self._request("GET", "server")

    def rename(self, name: str) -> None:
        self._request("PUT", "name", json={"name": name})

    def is_healthy(self) -> bool:
        try:
            self.get_server_info()
            return True
        except (NetworkError, ApiError) as e:
            logger.debug(f"Health check of '{self.api_url}' failed: {e}")
            return False

    def close(self) -> None:
        self._http.close()


class ManagedServer:
    """A live cloud instance with its host and published management endpoint.

    Rebuilt from the provider on every listing; there is no identity beyond
    the instance id.
    """

    def __init__(
        self,
        provider: ProviderName,
        instance: InstanceDescriptor,
        host: ManagedServerHost,
        secrets: BootstrapSecrets,
        *,
        api: ManagementApiClient | None = None,
    ):
        self.provider = provider
        self.instance = instance
        self.host = host
        self.secrets = secrets
        self.name = instance.name
        self._api = api

    def __repr__(self) -> str:
        return f"ManagedServer({self.provider}, '{self.name}', '{self.management_api_url}')"

    @property
    def instance_id(self) -> str:
        return self.instance.id

    @property
    def management_api_url(self) -> str:
        return self.secrets.management_api_url

    @property
    def api(self) -> ManagementApiClient:
        if self._api is None:
            self._api = ManagementApiClient(
                self.secrets.management_api_url, self.secrets.certificate_fingerprint
            )
        return self._api

    def refresh_name(self) -> str:
        """Read the display name the relay reports, keeping the instance name on failure."""
        try:
            self.name = self.api.get_server_info().get("name") or self.name
        except RelayError as e:
            warn(f"Could not read name of '{self.management_api_url}': {e}")
        return self.name

    def rename(self, name: str) -> None:
        self.api.rename(name)
        self.name = name

    def wait_until_healthy(
        self,
        retries: int = HEALTH_CHECK_RETRIES,
        delay: float = HEALTH_CHECK_DELAY,
        cancel: CancelToken | None = None,
    ) -> None:
        """Poll the management API until it answers.

        :raises UnreachableServerError: If every attempt fails
        :raises InstallCanceledError: If the token is cancelled between attempts
        """
        for i in range(retries):
            if self.api.is_healthy():
                log(f"Management API at '{self.management_api_url}' is up")
                return
            warn(f"Cannot reach '{self.management_api_url}' ({i + 1}/{retries})")
            if i < retries - 1:
                sleep_or_cancel(delay, cancel)
        raise UnreachableServerError(
            f"Server '{self.name}' did not answer at '{self.management_api_url}'",
            server=self,
        )

    def to_display_record(self) -> DisplayRecord:
        return record_for_server(self)
