"""relaymgr - Create and manage relay servers on DigitalOcean, Google Cloud and Lightsail."""

from .cli import app
from .display import DisplayRecordRepository, reconcile
from .errors import (
    ApiError,
    AuthAmbiguousError,
    CreateServerError,
    InstallCanceledError,
    InstallFailedError,
    NetworkError,
    RelayError,
    UnreachableServerError,
)
from .manager import ServerManager
from .providers import (
    CloudAccount,
    DigitalOceanAccount,
    GcpAccount,
    LightsailAccount,
    get_account,
)
from .types import (
    BootstrapSecrets,
    CreationState,
    DisplayRecord,
    InstanceDescriptor,
    Location,
    ProviderName,
)
from .utils import error, log, warn

__all__ = [
    "DigitalOceanAccount",
    "GcpAccount",
    "LightsailAccount",
    "CloudAccount",
    "get_account",
    "ServerManager",
    "DisplayRecordRepository",
    "reconcile",
    "app",
    "log",
    "warn",
    "error",
    "ApiError",
    "AuthAmbiguousError",
    "CreateServerError",
    "InstallCanceledError",
    "InstallFailedError",
    "NetworkError",
    "RelayError",
    "UnreachableServerError",
    "BootstrapSecrets",
    "CreationState",
    "DisplayRecord",
    "InstanceDescriptor",
    "Location",
    "ProviderName",
]
