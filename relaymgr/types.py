"""Type definitions for relaymgr."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, TypedDict

ProviderName = Literal["digitalocean", "gcp", "lightsail"]
PROVIDER_NAMES: tuple[ProviderName, ...] = ("digitalocean", "gcp", "lightsail")

LifecycleState = Literal[
    "pending", "running", "error", "stopping", "terminated", "unknown"
]
OperationStatus = Literal["pending", "succeeded", "failed"]

# Canonical keys of the bootstrap tag channel
API_URL_TAG = "apiUrl"
CERT_SHA256_TAG = "certSha256"
INSTALL_ERROR_TAG = "install-error"


@dataclass(frozen=True)
class Location:
    """A normalized region or zone."""

    id: str
    display_name: str
    country_code: str | None = None


@dataclass
class InstanceDescriptor:
    """Provider instance normalized across clouds.

    ``tags`` holds the bootstrap side channel under the canonical keys
    ``apiUrl``, ``certSha256`` and ``install-error``.
    """

    id: str
    name: str
    state: LifecycleState
    location: Location
    ip_address: str | None = None
    created_at: str | None = None
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AsyncOperation:
    id: str
    status: OperationStatus
    target_resource_id: str | None = None
    detail: dict | None = None


@dataclass(frozen=True)
class BootstrapSecrets:
    """Management endpoint published by the guest install script."""

    management_api_url: str
    certificate_fingerprint: str


@dataclass(frozen=True)
class MonthlyCost:
    usd: float


@dataclass(frozen=True)
class TransferLimit:
    terabytes: float


class DisplayRecord(TypedDict):
    """Display record persisted in the local cache."""

    id: str  # management API URL
    name: str
    isManaged: bool
    cloudProviderId: str | None
    isSynced: bool


class CreationState(str, Enum):
    REQUESTED = "requested"
    INSTANCE_CREATING = "instance_creating"
    NETWORK_CONFIGURED = "network_configured"
    ADDRESS_ASSIGNED = "address_assigned"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    FAILED = "failed"


def _redact(secret: str) -> str:
    return f"{secret[:4]}..." if secret else ""


@dataclass(frozen=True)
class DigitalOceanCredential:
    token: str
    provider: ProviderName = field(default="digitalocean", init=False)

    def __repr__(self) -> str:
        return f"DigitalOceanCredential(token='{_redact(self.token)}')"

    def to_dict(self) -> dict:
        return {"provider": self.provider, "token": self.token}


@dataclass(frozen=True)
class GcpCredential:
    refresh_token: str
    project_id: str
    provider: ProviderName = field(default="gcp", init=False)

    def __repr__(self) -> str:
        return (
            f"GcpCredential(refresh_token='{_redact(self.refresh_token)}', "
            f"project_id='{self.project_id}')"
        )

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "refresh_token": self.refresh_token,
            "project_id": self.project_id,
        }


@dataclass(frozen=True)
class LightsailCredential:
    access_key_id: str
    secret_access_key: str
    provider: ProviderName = field(default="lightsail", init=False)

    def __repr__(self) -> str:
        return f"LightsailCredential(access_key_id='{_redact(self.access_key_id)}')"

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "access_key_id": self.access_key_id,
            "secret_access_key": self.secret_access_key,
        }


Credential = DigitalOceanCredential | GcpCredential | LightsailCredential


def credential_from_dict(data: dict) -> Credential:
    """Rebuild a stored credential.

    :param data: Dict written by a credential's ``to_dict()``
    :return: Credential for the stored provider
    :raises ValueError: If the provider is unknown
    """
    provider = data.get("provider")
    if provider == "digitalocean":
        return DigitalOceanCredential(token=data["token"])
    if provider == "gcp":
        return GcpCredential(
            refresh_token=data["refresh_token"], project_id=data["project_id"]
        )
    if provider == "lightsail":
        return LightsailCredential(
            access_key_id=data["access_key_id"],
            secret_access_key=data["secret_access_key"],
        )
    raise ValueError(f"Unknown provider: '{provider}'")
