"""Cloud accounts for DigitalOcean, Google Cloud and Amazon Lightsail.

Every account implements the same CloudAccount contract. The creation state
machine, the single creation session per account, cancellation and failure
reporting live in BaseCloudAccount; subclasses only drive their provider's
steps up to the point where the guest starts publishing its secrets.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .bootstrap import MARKER, build_install_script
from .clients import (
    DigitalOceanClient,
    GcpClient,
    LightsailClient,
    droplet_to_instance,
    gcp_instance_ip,
    gcp_instance_to_descriptor,
    lightsail_instance_to_descriptor,
)
from .config import Settings
from .discovery import discover_bootstrap_secrets, extract_bootstrap_secrets
from .errors import (
    ApiError,
    CreateServerError,
    CreationInProgressError,
    InstallCanceledError,
    InstallFailedError,
    NotFoundError,
    RelayError,
    UnreachableServerError,
    aws_error_code,
    classify_error,
)
from .locations import gcp_region_of_zone
from .poller import CancelToken, wait_until_terminal
from .retry import AuthRetryPolicy
from .server import ManagedServer, ManagedServerHost
from .types import (
    AsyncOperation,
    CreationState,
    Credential,
    DigitalOceanCredential,
    GcpCredential,
    InstanceDescriptor,
    LightsailCredential,
    Location,
    MonthlyCost,
    ProviderName,
    TransferLimit,
)
from .utils import get_local_ssh_key, log, logger, make_valid_name, unique_resource_name, warn


class CloudAccount(Protocol):
    provider_name: ProviderName

    def get_display_name(self) -> str: ...

    def list_locations(self) -> list[Location]: ...

    def create_server(self, location_id: str, name: str) -> ManagedServer: ...

    def list_servers(self, from_cache_only: bool = False) -> list[ManagedServer]: ...

    def delete_server(self, server_id: str) -> None: ...

    def cancel_creation(self) -> bool: ...


@dataclass
class CreationSession:
    """The single in-flight server creation of an account."""

    location_id: str
    name: str
    state: CreationState = CreationState.REQUESTED
    step: str = "requested"
    host: ManagedServerHost | None = None
    instance: InstanceDescriptor | None = None
    cancel: CancelToken = field(default_factory=CancelToken)


class BaseCloudAccount:
    provider_name: ProviderName

    def __init__(self, settings: Settings, *, retry_policy: AuthRetryPolicy | None = None):
        self.settings = settings
        self.retry_policy = retry_policy
        self._session_lock = threading.Lock()
        self._session: CreationSession | None = None
        self._servers: list[ManagedServer] = []

    @property
    def creation_session(self) -> CreationSession | None:
        return self._session

    def remote(self, fn: Callable, *args, **kwargs):
        """Call a provider API through the account's retry policy."""
        if self.retry_policy is None:
            try:
                return fn(*args, **kwargs)
            except RelayError:
                raise
            except Exception as e:
                classified = classify_error(e)
                if classified is e:
                    raise
                raise classified from e
        return self.retry_policy.wrap(lambda: fn(*args, **kwargs))

    def remote_ignoring_missing(self, fn: Callable, *args, **kwargs):
        """Like remote(), but a NotFoundError counts as success and returns None."""
        try:
            return self.remote(fn, *args, **kwargs)
        except NotFoundError:
            logger.debug(f"Already gone: {getattr(fn, '__name__', fn)}{args}")
            return None

    def wait_for(
        self,
        operation_id: str,
        fetch_status: Callable[[str], AsyncOperation],
        cancel: CancelToken | None = None,
    ) -> AsyncOperation:
        return wait_until_terminal(
            operation_id,
            lambda op_id: self.remote(fetch_status, op_id),
            interval=self.settings.operation_poll_interval,
            timeout=self.settings.operation_timeout,
            cancel=cancel,
        )

    def _begin_session(self, location_id: str, name: str) -> CreationSession:
        with self._session_lock:
            if self._session is not None:
                raise CreationInProgressError(
                    f"'{self._session.name}' is already being created on {self.provider_name}"
                )
            self._session = CreationSession(location_id=location_id, name=name)
            return self._session

    def _end_session(self, session: CreationSession) -> None:
        with self._session_lock:
            if self._session is session:
                self._session = None

    def step(self, session: CreationSession, state: CreationState, step: str) -> None:
        """Enter a creation step, stopping first if the session was cancelled."""
        session.cancel.raise_if_cancelled()
        session.state = state
        session.step = step
        log(f"[{self.provider_name}] {state.value}: {step}")

    def cancel_creation(self) -> bool:
        """Cancel the creation in progress.

        The creating thread stops at its next step or poll, deletes whatever
        host it already created and clears the session.

        :return: True if a session was cancelled
        """
        with self._session_lock:
            session = self._session
        if session is None:
            return False
        log(f"Cancelling creation of '{session.name}' on {self.provider_name}")
        session.cancel.cancel()
        return True

    def create_server(self, location_id: str, name: str) -> ManagedServer:
        """Create a server and return once it is installed and answering.

        :param location_id: Region or zone id from list_locations()
        :param name: Display name for the new server
        :return: The ready server
        :raises CreationInProgressError: If this account is already creating a server
        :raises InstallCanceledError: If cancel_creation() was called
        :raises UnreachableServerError: If the server installed but never answered
        :raises InstallFailedError: If a step failed after the instance was created
        :raises CreateServerError: If a step failed before the instance was created
        """
        session = self._begin_session(location_id, name)
        try:
            return self._run_creation(session)
        except UnreachableServerError:
            raise
        except Exception as e:
            if session.cancel.cancelled or isinstance(e, InstallCanceledError):
                if isinstance(e, InstallCanceledError):
                    canceled = e
                else:
                    canceled = InstallCanceledError(f"Creation of '{name}' was cancelled")
                try:
                    self._discard_host(session)
                except Exception as cleanup_error:
                    warn(f"Could not delete partially created server '{name}': {cleanup_error}")
                    raise canceled from cleanup_error
                if canceled is e:
                    raise
                raise canceled from e
            raise self._creation_failure(session, e) from e
        finally:
            self._end_session(session)

    def _run_creation(self, session: CreationSession) -> ManagedServer:
        instance_ref = self.provision(session)

        self.step(session, CreationState.BOOTSTRAPPING, "discover_secrets")
        secrets = discover_bootstrap_secrets(
            instance_ref,
            lambda ref: self.remote(self.fetch_tags, ref),
            interval=self.settings.discovery_poll_interval,
            timeout=self.settings.discovery_timeout,
            cancel=session.cancel,
        )

        self.step(session, CreationState.BOOTSTRAPPING, "refresh_instance")
        session.instance = self.remote(self.get_instance, instance_ref)
        server = ManagedServer(self.provider_name, session.instance, session.host, secrets)
        # Instance names are mangled to fit provider rules; the relay is installed with session.name
        server.name = session.name

        if self.settings.health_check_retries > 0:
            self.step(session, CreationState.BOOTSTRAPPING, "health_check")
            try:
                server.wait_until_healthy(
                    retries=self.settings.health_check_retries,
                    delay=self.settings.health_check_delay,
                    cancel=session.cancel,
                )
            except UnreachableServerError:
                self._servers.append(server)
                raise
        session.cancel.raise_if_cancelled()
        session.state = CreationState.READY
        session.step = "ready"
        self._servers.append(server)
        log(f"Server '{session.name}' is ready at '{server.management_api_url}'")
        return server

    def _discard_host(self, session: CreationSession) -> None:
        if session.host is None:
            return
        log(f"Deleting partially created server '{session.name}'...")
        session.host.delete()

    def _creation_failure(self, session: CreationSession, exc: Exception) -> CreateServerError:
        failed_state = session.state
        session.state = CreationState.FAILED
        cause = classify_error(exc)
        message = (
            f"Creating '{session.name}' on {self.provider_name} failed at "
            f"'{session.step}' ({failed_state.value}): {cause}"
        )
        warn(message)
        if session.instance is None:
            return CreateServerError(
                message, state=failed_state, step=session.step, host=session.host, cause=cause
            )
        return InstallFailedError(
            message, state=failed_state, step=session.step, host=session.host, cause=cause
        )

    def list_servers(self, from_cache_only: bool = False) -> list[ManagedServer]:
        """List installed servers on this account.

        :param from_cache_only: Return the result of the last full listing
        :return: Servers whose guest has published its secrets
        """
        if not from_cache_only:
            self._servers = self.remote(self.fetch_servers)
        return list(self._servers)

    def delete_server(self, server_id: str) -> None:
        """Delete a server by instance id or management API URL.

        :raises NotFoundError: If no listed server matches
        """
        server = self._find_server(server_id)
        if server is None:
            self.list_servers()
            server = self._find_server(server_id)
        if server is None:
            raise NotFoundError(f"No {self.provider_name} server '{server_id}'")
        server.host.delete()
        self._servers = [s for s in self._servers if s is not server]

    def _find_server(self, server_id: str) -> ManagedServer | None:
        return next(
            (
                s
                for s in self._servers
                if server_id in (s.instance_id, s.management_api_url)
            ),
            None,
        )

    def make_server(self, instance: InstanceDescriptor, host: ManagedServerHost) -> ManagedServer | None:
        secrets = extract_bootstrap_secrets(instance.tags)
        if secrets is None:
            logger.debug(f"'{instance.name}' has not published its secrets yet")
            return None
        return ManagedServer(self.provider_name, instance, host, secrets)

    # Provider hooks

    def provision(self, session: CreationSession) -> str:
        """Run the provider steps up to the address assignment.

        Must set ``session.host`` as soon as a deletable resource exists and
        ``session.instance`` once the instance exists.

        :return: Reference accepted by fetch_tags() and get_instance()
        """
        raise NotImplementedError

    def fetch_tags(self, instance_ref: str) -> dict[str, str]:
        raise NotImplementedError

    def get_instance(self, instance_ref: str) -> InstanceDescriptor:
        raise NotImplementedError

    def fetch_servers(self) -> list[ManagedServer]:
        raise NotImplementedError


class DigitalOceanHost:
    """A droplet with its reserved IP and cloud firewall."""

    def __init__(self, account: "DigitalOceanAccount", droplet: dict):
        self.account = account
        self.droplet = droplet
        self.reserved_ip: str | None = None
        self.firewall_id: str | None = None
        self._deleted = False

    def get_id(self) -> str:
        return str(self.droplet["id"])

    def get_region(self) -> str:
        return self.droplet["region"]["slug"]

    def get_monthly_cost(self) -> MonthlyCost | None:
        size = self.droplet.get("size")
        return MonthlyCost(usd=float(size["price_monthly"])) if size else None

    def get_monthly_transfer_limit(self) -> TransferLimit | None:
        size = self.droplet.get("size")
        return TransferLimit(terabytes=float(size["transfer"])) if size else None

    def _reserved_ips(self) -> list[str]:
        if self.reserved_ip:
            return [self.reserved_ip]
        return [
            ip["ip"]
            for ip in self.account.remote(self.account.client.list_reserved_ips)
            if (ip.get("droplet") or {}).get("id") == self.droplet["id"]
        ]

    def _firewall_ids(self) -> list[str]:
        if self.firewall_id:
            return [self.firewall_id]
        name = firewall_name(self.droplet["id"])
        return [
            fw["id"]
            for fw in self.account.remote(self.account.client.list_firewalls)
            if fw.get("name") == name
        ]

    def delete(self) -> None:
        """Release the reserved IP, then delete the droplet and its firewall."""
        if self._deleted:
            return
        account, client = self.account, self.account.client
        for ip in self._reserved_ips():
            log(f"Releasing reserved IP '{ip}'...")
            account.remote_ignoring_missing(client.delete_reserved_ip, ip)
        log(f"Deleting droplet '{self.get_id()}'...")
        account.remote_ignoring_missing(client.delete_droplet, self.get_id())
        for firewall_id in self._firewall_ids():
            account.remote_ignoring_missing(client.delete_firewall, firewall_id)
        self._deleted = True


def firewall_name(droplet_id) -> str:
    return f"relay-{droplet_id}"


class DigitalOceanAccount(BaseCloudAccount):
    provider_name: ProviderName = "digitalocean"
    DROPLET_SIZE = "s-1vcpu-1gb"
    DROPLET_IMAGE = "ubuntu-22-04-x64"

    def __init__(
        self,
        credential: DigitalOceanCredential,
        settings: Settings,
        *,
        client: DigitalOceanClient | None = None,
        retry_policy: AuthRetryPolicy | None = None,
    ):
        super().__init__(settings, retry_policy=retry_policy)
        self.credential = credential
        self.client = client or DigitalOceanClient(credential)

    def get_display_name(self) -> str:
        account = self.remote(self.client.get_account)
        return account.get("email") or account.get("uuid", "")

    def list_locations(self) -> list[Location]:
        return self.remote(self.client.list_locations)

    def _ensure_ssh_key(self) -> list[int]:
        local_key = get_local_ssh_key()
        if local_key is None:
            return []
        key_content, fingerprint = local_key
        existing = next(
            (k for k in self.client.list_ssh_keys() if k["fingerprint"] == fingerprint), None
        )
        if existing:
            log(f"Found matching SSH key in DigitalOcean: '{existing['name']}'")
            return [existing["id"]]
        log("Uploading SSH key to DigitalOcean...")
        key = self.client.create_ssh_key(f"relaymgr-{fingerprint[-8:]}", key_content)
        return [key["id"]]

    def _droplet_status(self, droplet_id: str) -> AsyncOperation:
        droplet = self.client.get_droplet(droplet_id)
        status = droplet.get("status")
        if status == "active":
            return AsyncOperation(id=droplet_id, status="succeeded", target_resource_id=droplet_id)
        if status == "new":
            return AsyncOperation(id=droplet_id, status="pending", target_resource_id=droplet_id)
        return AsyncOperation(
            id=droplet_id, status="failed", target_resource_id=droplet_id, detail={"status": status}
        )

    def provision(self, session: CreationSession) -> str:
        self.step(session, CreationState.INSTANCE_CREATING, "register_ssh_key")
        ssh_key_ids = self.remote(self._ensure_ssh_key)

        self.step(session, CreationState.INSTANCE_CREATING, "create_droplet")
        user_data = build_install_script(
            "digitalocean",
            server_name=session.name,
            settings=self.settings,
            access_token=self.credential.token,
        )
        droplet = self.remote(
            self.client.create_droplet,
            make_valid_name(session.name) or "relay",
            session.location_id,
            size=self.DROPLET_SIZE,
            image=self.DROPLET_IMAGE,
            user_data=user_data,
            tags=[MARKER],
            ssh_key_ids=ssh_key_ids,
        )
        droplet_id = str(droplet["id"])
        host = DigitalOceanHost(self, droplet)
        session.host = host
        session.instance = droplet_to_instance(droplet)

        self.step(session, CreationState.INSTANCE_CREATING, "wait_droplet_active")
        self.wait_for(droplet_id, self._droplet_status, cancel=session.cancel)

        self.step(session, CreationState.NETWORK_CONFIGURED, "create_firewall")
        firewall = self.remote(
            self.client.create_firewall, firewall_name(droplet["id"]), [droplet["id"]]
        )
        host.firewall_id = firewall["id"]

        self.step(session, CreationState.ADDRESS_ASSIGNED, "create_reserved_ip")
        reserved_ip, action_id = self.remote(self.client.create_reserved_ip, droplet["id"])
        host.reserved_ip = reserved_ip["ip"]
        if action_id:
            self.step(session, CreationState.ADDRESS_ASSIGNED, "wait_reserved_ip")
            self.wait_for(action_id, self.client.fetch_operation, cancel=session.cancel)
        return droplet_id

    def fetch_tags(self, instance_ref: str) -> dict[str, str]:
        return self.get_instance(instance_ref).tags

    def get_instance(self, instance_ref: str) -> InstanceDescriptor:
        return droplet_to_instance(self.client.get_droplet(instance_ref))

    def fetch_servers(self) -> list[ManagedServer]:
        servers = []
        for droplet in self.client.list_droplets(MARKER):
            server = self.make_server(droplet_to_instance(droplet), DigitalOceanHost(self, droplet))
            if server is not None:
                servers.append(server)
        return servers


class GcpHost:
    """A GCE instance with its static address and firewall rule."""

    def __init__(self, account: "GcpAccount", zone: str, name: str):
        self.account = account
        self.zone = zone
        self.name = name
        self.instance_id: str | None = None
        self._deleted = False

    def get_id(self) -> str:
        return self.instance_id or self.name

    def get_region(self) -> str:
        return self.zone

    def get_monthly_cost(self) -> MonthlyCost | None:
        return None

    def get_monthly_transfer_limit(self) -> TransferLimit | None:
        return None

    def delete(self) -> None:
        """Delete the static address, the instance and the firewall rule."""
        if self._deleted:
            return
        account, client = self.account, self.account.client
        region = gcp_region_of_zone(self.zone)
        for label, fn, args in [
            ("static address", client.delete_address, (region, self.name)),
            ("instance", client.delete_instance, (self.zone, self.name)),
            ("firewall rule", client.delete_firewall, (self.name,)),
        ]:
            log(f"Deleting {label} '{self.name}'...")
            operation = account.remote_ignoring_missing(fn, *args)
            if operation and operation.get("selfLink"):
                account.wait_for(operation["selfLink"], client.fetch_operation)
        self._deleted = True


class GcpAccount(BaseCloudAccount):
    provider_name: ProviderName = "gcp"
    MACHINE_TYPE = "e2-micro"

    def __init__(
        self,
        credential: GcpCredential,
        settings: Settings,
        *,
        client: GcpClient | None = None,
        retry_policy: AuthRetryPolicy | None = None,
    ):
        super().__init__(settings, retry_policy=retry_policy)
        self.credential = credential
        self.client = client or GcpClient(
            credential,
            client_id=settings.gcp_oauth_client_id,
            client_secret=settings.gcp_oauth_client_secret,
        )

    def get_display_name(self) -> str:
        return self.credential.project_id

    def list_locations(self) -> list[Location]:
        return self.remote(self.client.list_locations)

    def _wait(self, operation: dict, session: CreationSession) -> None:
        self.wait_for(operation["selfLink"], self.client.fetch_operation, cancel=session.cancel)

    def provision(self, session: CreationSession) -> str:
        zone = session.location_id
        name = unique_resource_name(session.name)
        host = GcpHost(self, zone, name)

        self.step(session, CreationState.INSTANCE_CREATING, "create_firewall")
        operation = self.remote(self.client.insert_firewall, name, name)
        session.host = host
        self._wait(operation, session)

        self.step(session, CreationState.INSTANCE_CREATING, "create_instance")
        user_data = build_install_script("gcp", server_name=session.name, settings=self.settings)
        operation = self.remote(
            self.client.insert_instance,
            zone,
            name,
            machine_type=self.MACHINE_TYPE,
            user_data=user_data,
            label=MARKER,
        )
        self._wait(operation, session)

        self.step(session, CreationState.NETWORK_CONFIGURED, "read_ephemeral_ip")
        instance = self.remote(self.client.get_instance, zone, name)
        host.instance_id = str(instance["id"])
        session.instance = gcp_instance_to_descriptor(instance)
        ip = gcp_instance_ip(instance)
        if not ip:
            raise RelayError(f"Instance '{name}' has no external IP")

        self.step(session, CreationState.ADDRESS_ASSIGNED, "promote_static_address")
        operation = self.remote(
            self.client.insert_address, gcp_region_of_zone(zone), name, ip
        )
        self._wait(operation, session)
        return f"{zone}/{name}"

    def fetch_tags(self, instance_ref: str) -> dict[str, str]:
        zone, name = instance_ref.split("/", 1)
        return self.client.get_guest_attributes(zone, name, MARKER)

    def get_instance(self, instance_ref: str) -> InstanceDescriptor:
        zone, name = instance_ref.split("/", 1)
        tags = self.fetch_tags(instance_ref)
        return gcp_instance_to_descriptor(self.client.get_instance(zone, name), tags)

    def fetch_servers(self) -> list[ManagedServer]:
        servers = []
        for instance in self.client.list_instances(MARKER):
            zone = instance["zone"].rsplit("/", 1)[-1]
            try:
                tags = self.client.get_guest_attributes(zone, instance["name"], MARKER)
            except NotFoundError:
                tags = {}
            host = GcpHost(self, zone, instance["name"])
            host.instance_id = str(instance["id"])
            server = self.make_server(gcp_instance_to_descriptor(instance, tags), host)
            if server is not None:
                servers.append(server)
        return servers


def static_ip_name(instance_name: str) -> str:
    return f"{instance_name}-ip"


class LightsailHost:
    """A Lightsail instance with its static IP."""

    def __init__(
        self,
        account: "LightsailAccount",
        region: str,
        name: str,
        bundle_id: str | None = None,
        arn: str | None = None,
    ):
        self.account = account
        self.region = region
        self.name = name
        self.arn = arn
        self.bundle_id = bundle_id
        self._bundle: dict | None = None
        self._deleted = False

    def get_id(self) -> str:
        """:return: The instance ARN, or its name until the instance has been read back"""
        return self.arn or self.name

    def get_region(self) -> str:
        return self.region

    def _get_bundle(self) -> dict | None:
        if self._bundle is None and self.bundle_id:
            self._bundle = self.account.remote(
                self.account.client.get_bundle, self.region, self.bundle_id
            )
        return self._bundle

    def get_monthly_cost(self) -> MonthlyCost | None:
        bundle = self._get_bundle()
        return MonthlyCost(usd=float(bundle["price"])) if bundle else None

    def get_monthly_transfer_limit(self) -> TransferLimit | None:
        bundle = self._get_bundle()
        return TransferLimit(terabytes=bundle["transferPerMonthInGb"] / 1000) if bundle else None

    def _wait_all(self, operations: list[dict] | None) -> None:
        if not operations:
            return
        account, client = self.account, self.account.client
        account.wait_for(
            operations[0]["id"], lambda op_id: client.fetch_operation(self.region, op_id)
        )

    def _detach_static_ip(self, ip_name: str) -> list[dict] | None:
        account = self.account
        try:
            return account.remote_ignoring_missing(account.client.detach_static_ip, self.region, ip_name)
        except ApiError as e:
            # Lightsail rejects detaching an IP that was allocated but never attached
            if aws_error_code(e) != "InvalidInputException":
                raise
            logger.debug(f"Static IP '{ip_name}' is not attached")
            return None

    def delete(self) -> None:
        """Detach and release the static IP, then delete the instance."""
        if self._deleted:
            return
        account, client = self.account, self.account.client
        ip_name = static_ip_name(self.name)
        log(f"Releasing static IP '{ip_name}'...")
        self._wait_all(self._detach_static_ip(ip_name))
        self._wait_all(account.remote_ignoring_missing(client.release_static_ip, self.region, ip_name))
        log(f"Deleting instance '{self.name}'...")
        account.remote_ignoring_missing(client.delete_instance, self.region, self.name)
        self._deleted = True


class LightsailAccount(BaseCloudAccount):
    provider_name: ProviderName = "lightsail"
    BLUEPRINT_ID = "ubuntu_22_04"
    BUNDLE_ID = "micro_2_0"

    def __init__(
        self,
        credential: LightsailCredential,
        settings: Settings,
        *,
        client: LightsailClient | None = None,
        retry_policy: AuthRetryPolicy | None = None,
    ):
        super().__init__(settings, retry_policy=retry_policy)
        self.credential = credential
        self.client = client or LightsailClient(credential)

    def get_display_name(self) -> str:
        return self.remote(self.client.get_caller_identity).get("Arn", "")

    def list_locations(self) -> list[Location]:
        return self.remote(self.client.list_locations)

    def _wait(self, region: str, operations: list[dict], session: CreationSession) -> None:
        self.wait_for(
            operations[0]["id"],
            lambda op_id: self.client.fetch_operation(region, op_id),
            cancel=session.cancel,
        )

    def provision(self, session: CreationSession) -> str:
        region = session.location_id
        name = unique_resource_name(session.name)

        self.step(session, CreationState.INSTANCE_CREATING, "create_instance")
        user_data = build_install_script(
            "lightsail",
            server_name=session.name,
            settings=self.settings,
            instance_name=name,
            region=region,
            access_key_id=self.credential.access_key_id,
            secret_access_key=self.credential.secret_access_key,
        )
        operations = self.remote(
            self.client.create_instance,
            region,
            name,
            blueprint_id=self.BLUEPRINT_ID,
            bundle_id=self.BUNDLE_ID,
            user_data=user_data,
            tag_key=MARKER,
        )
        session.host = LightsailHost(self, region, name, self.BUNDLE_ID)
        self._wait(region, operations, session)
        session.instance = self.get_instance(f"{region}/{name}")
        session.host.arn = session.instance.id

        self.step(session, CreationState.NETWORK_CONFIGURED, "open_public_ports")
        operation = self.remote(self.client.open_all_ports, region, name)
        self._wait(region, [operation], session)

        self.step(session, CreationState.ADDRESS_ASSIGNED, "allocate_static_ip")
        ip_name = static_ip_name(name)
        self._wait(region, self.remote(self.client.allocate_static_ip, region, ip_name), session)

        self.step(session, CreationState.ADDRESS_ASSIGNED, "attach_static_ip")
        self._wait(
            region, self.remote(self.client.attach_static_ip, region, ip_name, name), session
        )
        return f"{region}/{name}"

    def fetch_tags(self, instance_ref: str) -> dict[str, str]:
        return self.get_instance(instance_ref).tags

    def get_instance(self, instance_ref: str) -> InstanceDescriptor:
        region, name = instance_ref.split("/", 1)
        return lightsail_instance_to_descriptor(self.client.get_instance(region, name))

    def fetch_servers(self) -> list[ManagedServer]:
        servers = []
        for location in self.client.list_locations():
            for instance in self.client.list_instances(location.id):
                if not any(t["key"] == MARKER for t in instance.get("tags", [])):
                    continue
                host = LightsailHost(
                    self, location.id, instance["name"], instance.get("bundleId"), instance["arn"]
                )
                server = self.make_server(lightsail_instance_to_descriptor(instance), host)
                if server is not None:
                    servers.append(server)
        return servers


def get_account(
    credential: Credential,
    settings: Settings,
    *,
    retry_policy: AuthRetryPolicy | None = None,
) -> BaseCloudAccount:
    """Build the CloudAccount for a stored credential."""
    if isinstance(credential, DigitalOceanCredential):
        return DigitalOceanAccount(credential, settings, retry_policy=retry_policy)
    if isinstance(credential, GcpCredential):
        return GcpAccount(credential, settings, retry_policy=retry_policy)
    if isinstance(credential, LightsailCredential):
        return LightsailAccount(credential, settings, retry_policy=retry_policy)
    raise ValueError(f"Unsupported credential: {credential!r}")
