"""Connected cloud accounts and their stored credentials."""

import os

from dotenv import load_dotenv

from .store import JsonStore
from .types import (
    Credential,
    DigitalOceanCredential,
    GcpCredential,
    ProviderName,
    credential_from_dict,
)
from .utils import log

ACCOUNTS_KEY = "accounts-storage"


class AccountRegistry:
    """One stored credential per provider."""

    def __init__(self, store: JsonStore):
        self.store = store

    def _load(self) -> dict:
        return dict(self.store.get(ACCOUNTS_KEY, {}))

    def connect(self, credential: Credential) -> None:
        accounts = self._load()
        accounts[credential.provider] = credential.to_dict()
        self.store.set(ACCOUNTS_KEY, accounts)
        log(f"Connected {credential.provider} account {credential!r}")

    def disconnect(self, provider: ProviderName) -> bool:
        """Forget the stored credential for a provider.

        :return: True if a credential was removed
        """
        accounts = self._load()
        if accounts.pop(provider, None) is None:
            return False
        self.store.set(ACCOUNTS_KEY, accounts)
        log(f"Cleared stored credentials for '{provider}'")
        return True

    def credential_for(self, provider: ProviderName) -> Credential | None:
        data = self._load().get(provider)
        return credential_from_dict(data) if data else None

    def providers(self) -> list[ProviderName]:
        return sorted(self._load())


def credential_from_env(provider: ProviderName) -> Credential | None:
    """Read a credential from DIGITALOCEAN_TOKEN or GCP_REFRESH_TOKEN/GCP_PROJECT_ID.

    Lightsail credentials are resolved by boto3 from the usual AWS sources
    when the CLI connects, so they are not read here.
    """
    load_dotenv()
    if provider == "digitalocean":
        token = os.getenv("DIGITALOCEAN_TOKEN")
        return DigitalOceanCredential(token=token) if token else None
    if provider == "gcp":
        refresh_token = os.getenv("GCP_REFRESH_TOKEN")
        project_id = os.getenv("GCP_PROJECT_ID")
        if refresh_token and project_id:
            return GcpCredential(refresh_token=refresh_token, project_id=project_id)
    return None
