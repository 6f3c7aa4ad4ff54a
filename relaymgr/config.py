"""Settings loaded from the environment and an optional .env file."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_HOME = "~/.relaymgr"
OPERATION_POLL_INTERVAL = 1.0
DISCOVERY_POLL_INTERVAL = 5.0
OPERATION_TIMEOUT = 300.0
DISCOVERY_TIMEOUT = 600.0
HEALTH_CHECK_RETRIES = 6
HEALTH_CHECK_DELAY = 5.0
INSTALL_SCRIPT_URL = (
    "https://raw.githubusercontent.com/Jigsaw-Code/outline-server/master/"
    "src/server_manager/install_scripts/install_server.sh"
)


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{value}'")


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be a whole number, got '{value}'")


@dataclass
class Settings:
    home: Path
    container_image: str | None = None
    metrics_url: str | None = None
    sentry_api_url: str | None = None
    operation_poll_interval: float = OPERATION_POLL_INTERVAL
    discovery_poll_interval: float = DISCOVERY_POLL_INTERVAL
    operation_timeout: float | None = OPERATION_TIMEOUT
    discovery_timeout: float | None = DISCOVERY_TIMEOUT
    health_check_retries: int = HEALTH_CHECK_RETRIES
    health_check_delay: float = HEALTH_CHECK_DELAY
    gcp_oauth_client_id: str | None = None
    gcp_oauth_client_secret: str | None = None
    install_script_url: str = INSTALL_SCRIPT_URL
    log_level: str = "INFO"

    @property
    def store_path(self) -> Path:
        return self.home / "store.json"


def load_settings(home: str | Path | None = None) -> Settings:
    """Load settings from RELAYMGR_* and related environment variables.

    :param home: Override for the data directory (default: RELAYMGR_HOME or ~/.relaymgr)
    :return: Populated Settings
    """
    load_dotenv()
    home_path = Path(home or os.getenv("RELAYMGR_HOME", DEFAULT_HOME)).expanduser()
    return Settings(
        home=home_path,
        container_image=os.getenv("SB_IMAGE") or None,
        metrics_url=os.getenv("SB_METRICS_URL") or None,
        sentry_api_url=os.getenv("SENTRY_API_URL") or None,
        operation_poll_interval=_getenv_float(
            "RELAYMGR_OPERATION_POLL_INTERVAL", OPERATION_POLL_INTERVAL
        ),
        discovery_poll_interval=_getenv_float(
            "RELAYMGR_DISCOVERY_POLL_INTERVAL", DISCOVERY_POLL_INTERVAL
        ),
        operation_timeout=_getenv_float("RELAYMGR_OPERATION_TIMEOUT", OPERATION_TIMEOUT),
        discovery_timeout=_getenv_float("RELAYMGR_DISCOVERY_TIMEOUT", DISCOVERY_TIMEOUT),
        health_check_retries=_getenv_int("RELAYMGR_HEALTH_CHECK_RETRIES", HEALTH_CHECK_RETRIES),
        health_check_delay=_getenv_float("RELAYMGR_HEALTH_CHECK_DELAY", HEALTH_CHECK_DELAY),
        gcp_oauth_client_id=os.getenv("GCP_OAUTH_CLIENT_ID") or None,
        gcp_oauth_client_secret=os.getenv("GCP_OAUTH_CLIENT_SECRET") or None,
        install_script_url=os.getenv("RELAYMGR_INSTALL_SCRIPT_URL", INSTALL_SCRIPT_URL),
        log_level=os.getenv("RELAYMGR_LOG_LEVEL", "INFO"),
    )
