"""Provider API clients for DigitalOcean, Google Compute Engine and Lightsail.

Each client maps raw requests and responses for one provider. Callers get
provider JSON (or normalized InstanceDescriptor / Location / AsyncOperation
values) back, and every failure is raised as a relaymgr taxonomy error.
"""

import time
from datetime import datetime

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ApiError, AuthAmbiguousError, NetworkError, classify_error, raise_for_response
from .locations import digitalocean_location, gcp_location, lightsail_location
from .types import (
    API_URL_TAG,
    CERT_SHA256_TAG,
    INSTALL_ERROR_TAG,
    AsyncOperation,
    DigitalOceanCredential,
    GcpCredential,
    InstanceDescriptor,
    LifecycleState,
    LightsailCredential,
    Location,
)
from .utils import hex_decode, log, logger, redact, warn

DIGITALOCEAN_API_URL = "https://api.digitalocean.com/v2/"
GCP_COMPUTE_API_URL = "https://compute.googleapis.com/compute/v1/"
GCP_TOKEN_URL = "https://oauth2.googleapis.com/token"
HTTP_TIMEOUT = 30.0

DROPLET_CREATE_RETRIES = 10
DROPLET_CREATE_RETRY_DELAY = 5

# Tag keys are matched case-insensitively on DigitalOcean
DIGITALOCEAN_TAG_KEYS = {
    "apiurl": API_URL_TAG,
    "certsha256": CERT_SHA256_TAG,
    "install-error": INSTALL_ERROR_TAG,
}


class RestClient:
    """JSON-over-HTTPS client built on httpx."""

    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.BaseTransport | None = None,
        timeout: float = HTTP_TIMEOUT,
    ):
        self._http = httpx.Client(base_url=base_url, transport=transport, timeout=timeout)

    def _auth_headers(self) -> dict:
        return {}

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self._http.request(
                method, path, headers=self._auth_headers(), **kwargs
            )
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path}: {e}") from e

    def request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
    ) -> dict:
        response = self._send(method, path, json=json, params=params)
        raise_for_response(response)
        if not response.content:
            return {}
        return response.json()

    def close(self) -> None:
        self._http.close()


def parse_digitalocean_tags(tags: list[str]) -> dict[str, str]:
    """Decode ``kv:<key>:<hex value>`` droplet tags into the canonical tag map.

    certSha256 values are already a hex digest and are kept as published.
    """
    result = {}
    for tag in tags:
        parts = tag.split(":", 2)
        if len(parts) != 3 or parts[0] != "kv":
            continue
        key = DIGITALOCEAN_TAG_KEYS.get(parts[1].lower())
        if key is None:
            continue
        value = parts[2]
        if key == CERT_SHA256_TAG:
            result[key] = value
            continue
        try:
            result[key] = hex_decode(value)
        except ValueError:
            warn(f"Ignoring undecodable droplet tag '{tag[:40]}'")
    return result


DIGITALOCEAN_STATES: dict[str, LifecycleState] = {
    "new": "pending",
    "active": "running",
    "off": "stopping",
    "archive": "terminated",
}


def droplet_to_instance(droplet: dict) -> InstanceDescriptor:
    ip = next(
        (
            n["ip_address"]
            for n in droplet.get("networks", {}).get("v4", [])
            if n.get("type") == "public"
        ),
        None,
    )
    return InstanceDescriptor(
        id=str(droplet["id"]),
        name=droplet["name"],
        state=DIGITALOCEAN_STATES.get(droplet.get("status", ""), "unknown"),
        location=digitalocean_location(droplet["region"]["slug"]),
        ip_address=ip,
        created_at=droplet.get("created_at"),
        tags=parse_digitalocean_tags(droplet.get("tags", [])),
    )


class DigitalOceanClient(RestClient):
    """DigitalOcean v2 REST API with a bearer token."""

    def __init__(
        self,
        credential: DigitalOceanCredential,
        *,
        transport: httpx.BaseTransport | None = None,
        retry_delay: float = DROPLET_CREATE_RETRY_DELAY,
    ):
        super().__init__(DIGITALOCEAN_API_URL, transport=transport)
        self.credential = credential
        self.retry_delay = retry_delay

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.credential.token}"}

    def get_account(self) -> dict:
        return self.request("GET", "account")["account"]

    def list_regions(self) -> list[dict]:
        return self.request("GET", "regions")["regions"]

    def list_ssh_keys(self) -> list[dict]:
        return self.request("GET", "account/keys", params={"per_page": 200})["ssh_keys"]

    def create_ssh_key(self, name: str, public_key: str) -> dict:
        body = {"name": name, "public_key": public_key}
        return self.request("POST", "account/keys", json=body)["ssh_key"]

    def create_droplet(
        self,
        name: str,
        region: str,
        *,
        size: str,
        image: str,
        user_data: str,
        tags: list[str],
        ssh_key_ids: list[int] | None = None,
    ) -> dict:
        """Create a droplet, retrying while DigitalOcean is still finalizing a new account.

        :return: Droplet JSON
        :raises ApiError: If creation fails for any other reason, or keeps failing
        """
        body = {
            "name": name,
            "region": region,
            "size": size,
            "image": image,
            "ssh_keys": ssh_key_ids or [],
            "user_data": user_data,
            "tags": tags,
            "ipv6": True,
        }
        for attempt in range(1, DROPLET_CREATE_RETRIES + 1):
            log(f"Requesting droplet creation ({attempt}/{DROPLET_CREATE_RETRIES})...")
            try:
                return self.request("POST", "droplets", json=body)["droplet"]
            except ApiError as e:
                if "finalizing" not in e.message.lower() or attempt == DROPLET_CREATE_RETRIES:
                    raise
                warn(f"DigitalOcean account still finalizing, retrying in {self.retry_delay}s")
                time.sleep(self.retry_delay)

    def get_droplet(self, droplet_id: str) -> dict:
        return self.request("GET", f"droplets/{droplet_id}")["droplet"]

    def list_droplets(self, tag: str) -> list[dict]:
        droplets = []
        page = 1
        while True:
            data = self.request(
                "GET", "droplets", params={"tag_name": tag, "per_page": 200, "page": page}
            )
            droplets.extend(data.get("droplets", []))
            if not data.get("links", {}).get("pages", {}).get("next"):
                return droplets
            page += 1

    def delete_droplet(self, droplet_id: str) -> None:
        self.request("DELETE", f"droplets/{droplet_id}")

    def create_firewall(self, name: str, droplet_ids: list[int]) -> dict:
        """Create a cloud firewall that allows all traffic in both directions."""
        everywhere = {"addresses": ["0.0.0.0/0", "::/0"]}
        inbound = [
            {"protocol": "tcp", "ports": "all", "sources": everywhere},
            {"protocol": "udp", "ports": "all", "sources": everywhere},
            {"protocol": "icmp", "sources": everywhere},
        ]
        outbound = [
            {"protocol": "tcp", "ports": "all", "destinations": everywhere},
            {"protocol": "udp", "ports": "all", "destinations": everywhere},
            {"protocol": "icmp", "destinations": everywhere},
        ]
        body = {
            "name": name,
            "inbound_rules": inbound,
            "outbound_rules": outbound,
            "droplet_ids": droplet_ids,
        }
        return self.request("POST", "firewalls", json=body)["firewall"]

    def list_firewalls(self) -> list[dict]:
        return self.request("GET", "firewalls", params={"per_page": 200})["firewalls"]

    def delete_firewall(self, firewall_id: str) -> None:
        self.request("DELETE", f"firewalls/{firewall_id}")

    def create_reserved_ip(self, droplet_id: int) -> tuple[dict, str | None]:
        """Reserve an IP assigned to a droplet.

        :return: (reserved_ip JSON, id of the assign action or None)
        """
        data = self.request("POST", "reserved_ips", json={"droplet_id": droplet_id})
        actions = data.get("links", {}).get("actions", [])
        action_id = str(actions[0]["id"]) if actions else None
        return data["reserved_ip"], action_id

    def list_reserved_ips(self) -> list[dict]:
        return self.request("GET", "reserved_ips", params={"per_page": 200})["reserved_ips"]

    def delete_reserved_ip(self, ip: str) -> None:
        self.request("DELETE", f"reserved_ips/{ip}")

    def get_action(self, action_id: str) -> dict:
        return self.request("GET", f"actions/{action_id}")["action"]

    def fetch_operation(self, action_id: str) -> AsyncOperation:
        action = self.get_action(action_id)
        status = {"completed": "succeeded", "errored": "failed"}.get(
            action.get("status"), "pending"
        )
        resource_id = action.get("resource_id")
        return AsyncOperation(
            id=str(action["id"]),
            status=status,
            target_resource_id=str(resource_id) if resource_id is not None else None,
            detail=action,
        )

    def list_locations(self) -> list[Location]:
        return [
            digitalocean_location(region["slug"])
            for region in self.list_regions()
            if region.get("available")
        ]


GCP_STATES: dict[str, LifecycleState] = {
    "PROVISIONING": "pending",
    "STAGING": "pending",
    "RUNNING": "running",
    "STOPPING": "stopping",
    "SUSPENDING": "stopping",
    "SUSPENDED": "terminated",
    "TERMINATED": "terminated",
}


def gcp_instance_ip(instance: dict) -> str | None:
    interfaces = instance.get("networkInterfaces") or [{}]
    configs = interfaces[0].get("accessConfigs") or [{}]
    return configs[0].get("natIP")


def gcp_instance_to_descriptor(instance: dict, tags: dict[str, str] | None = None) -> InstanceDescriptor:
    zone = instance["zone"].rsplit("/", 1)[-1]
    return InstanceDescriptor(
        id=str(instance["id"]),
        name=instance["name"],
        state=GCP_STATES.get(instance.get("status", ""), "unknown"),
        location=gcp_location(zone),
        ip_address=gcp_instance_ip(instance),
        created_at=instance.get("creationTimestamp"),
        tags=dict(tags or {}),
    )


class GcpClient(RestClient):
    """Compute Engine v1 REST API authorized by an OAuth refresh token.

    Access tokens are exchanged lazily and refreshed once when a request is
    answered with 401.
    """

    def __init__(
        self,
        credential: GcpCredential,
        *,
        client_id: str | None,
        client_secret: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        super().__init__(GCP_COMPUTE_API_URL, transport=transport)
        self.credential = credential
        self.client_id = client_id
        self.client_secret = client_secret
        self._access_token: str | None = None

    @property
    def project_path(self) -> str:
        return f"projects/{self.credential.project_id}"

    def refresh_access_token(self) -> str:
        """Exchange the refresh token for a new access token.

        :raises AuthAmbiguousError: If Google rejects the refresh token
        """
        data = {
            "refresh_token": self.credential.refresh_token,
            "grant_type": "refresh_token",
        }
        if self.client_id:
            data["client_id"] = self.client_id
        if self.client_secret:
            data["client_secret"] = self.client_secret
        try:
            response = self._http.post(GCP_TOKEN_URL, data=data)
        except httpx.TransportError as e:
            raise NetworkError(f"POST {GCP_TOKEN_URL}: {e}") from e
        if response.status_code in (400, 401):
            raise AuthAmbiguousError(
                f"Refresh token '{redact(self.credential.refresh_token)}' was rejected"
            )
        raise_for_response(response)
        self._access_token = response.json()["access_token"]
        logger.debug("Refreshed GCP access token")
        return self._access_token

    def _auth_headers(self) -> dict:
        if self._access_token is None:
            self.refresh_access_token()
        return {"Authorization": f"Bearer {self._access_token}"}

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        response = super()._send(method, path, **kwargs)
        if response.status_code == 401:
            self.refresh_access_token()
            response = super()._send(method, path, **kwargs)
        return response

    def list_zones(self) -> list[dict]:
        return self.request("GET", f"{self.project_path}/zones").get("items", [])

    def insert_firewall(self, name: str, target_tag: str) -> dict:
        body = {
            "name": name,
            "direction": "INGRESS",
            "priority": 1000,
            "targetTags": [target_tag],
            "allowed": [{"IPProtocol": "all"}],
            "sourceRanges": ["0.0.0.0/0"],
        }
        return self.request("POST", f"{self.project_path}/global/firewalls", json=body)

    def delete_firewall(self, name: str) -> dict:
        return self.request("DELETE", f"{self.project_path}/global/firewalls/{name}")

    def insert_instance(
        self,
        zone: str,
        name: str,
        *,
        machine_type: str,
        user_data: str,
        label: str,
    ) -> dict:
        body = {
            "name": name,
            "machineType": f"zones/{zone}/machineTypes/{machine_type}",
            "disks": [
                {
                    "boot": True,
                    "initializeParams": {
                        "sourceImage": "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts",
                    },
                }
            ],
            "networkInterfaces": [
                {"network": "global/networks/default", "accessConfigs": [{}]}
            ],
            "labels": {label: "true"},
            "tags": {"items": [name]},
            "metadata": {
                "items": [
                    {"key": "enable-guest-attributes", "value": "TRUE"},
                    {"key": "user-data", "value": user_data},
                ]
            },
        }
        return self.request(
            "POST", f"{self.project_path}/zones/{zone}/instances", json=body
        )

    def get_instance(self, zone: str, name: str) -> dict:
        return self.request("GET", f"{self.project_path}/zones/{zone}/instances/{name}")

    def list_instances(self, label: str) -> list[dict]:
        """List instances in every zone carrying ``label=true``."""
        instances = []
        params = {"filter": f"labels.{label}=true"}
        while True:
            data = self.request(
                "GET", f"{self.project_path}/aggregated/instances", params=params
            )
            for scope in data.get("items", {}).values():
                instances.extend(scope.get("instances", []))
            if not data.get("nextPageToken"):
                return instances
            params = {**params, "pageToken": data["nextPageToken"]}

    def delete_instance(self, zone: str, name: str) -> dict:
        return self.request("DELETE", f"{self.project_path}/zones/{zone}/instances/{name}")

    def get_guest_attributes(self, zone: str, name: str, namespace: str) -> dict[str, str]:
        """Guest attributes under ``namespace/`` as a key -> value map.

        :raises NotFoundError: If the guest has not published any attribute yet
        """
        data = self.request(
            "GET",
            f"{self.project_path}/zones/{zone}/instances/{name}/getGuestAttributes",
            params={"queryPath": f"{namespace}/"},
        )
        items = data.get("queryValue", {}).get("items", [])
        return {item["key"]: item["value"] for item in items if "key" in item}

    def insert_address(self, region: str, name: str, address: str) -> dict:
        """Promote an ephemeral IP to a static regional address."""
        return self.request(
            "POST",
            f"{self.project_path}/regions/{region}/addresses",
            json={"name": name, "address": address},
        )

    def delete_address(self, region: str, name: str) -> dict:
        return self.request(
            "DELETE", f"{self.project_path}/regions/{region}/addresses/{name}"
        )

    def fetch_operation(self, self_link: str) -> AsyncOperation:
        """Fetch a zonal, regional or global operation by its selfLink."""
        operation = self.request("GET", self_link)
        status = "pending"
        if operation.get("status") == "DONE":
            status = "failed" if operation.get("error") else "succeeded"
        return AsyncOperation(
            id=operation.get("selfLink", self_link),
            status=status,
            target_resource_id=operation.get("targetId"),
            detail=operation.get("error") or operation,
        )

    def list_locations(self) -> list[Location]:
        return [
            gcp_location(zone["name"])
            for zone in self.list_zones()
            if zone.get("status", "UP") == "UP"
        ]


LIGHTSAIL_STATES: dict[str, LifecycleState] = {
    "pending": "pending",
    "running": "running",
    "stopping": "stopping",
    "stopped": "stopping",
    "shutting-down": "stopping",
    "terminated": "terminated",
}
LIGHTSAIL_DEFAULT_REGION = "us-east-1"


def lightsail_instance_to_descriptor(instance: dict) -> InstanceDescriptor:
    created_at = instance.get("createdAt")
    if isinstance(created_at, datetime):
        created_at = created_at.isoformat()
    return InstanceDescriptor(
        id=instance["arn"],
        name=instance["name"],
        state=LIGHTSAIL_STATES.get(instance.get("state", {}).get("name", ""), "unknown"),
        location=lightsail_location(instance["location"]["regionName"]),
        ip_address=instance.get("publicIpAddress"),
        created_at=created_at,
        tags={t["key"]: t.get("value", "") for t in instance.get("tags", [])},
    )


class LightsailClient:
    """Amazon Lightsail through boto3, one client per region."""

    def __init__(self, credential: LightsailCredential, *, session: boto3.Session | None = None):
        self.credential = credential
        self._session = session or boto3.Session(
            aws_access_key_id=credential.access_key_id,
            aws_secret_access_key=credential.secret_access_key,
        )
        self._clients: dict[str, object] = {}

    def client(self, region: str):
        if region not in self._clients:
            self._clients[region] = self._session.client("lightsail", region_name=region)
        return self._clients[region]

    def _call(self, region: str, method: str, **kwargs) -> dict:
        try:
            return getattr(self.client(region), method)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e) from e

    def get_caller_identity(self) -> dict:
        try:
            return self._session.client("sts").get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e) from e

    def get_regions(self) -> list[dict]:
        return self._call(LIGHTSAIL_DEFAULT_REGION, "get_regions")["regions"]

    def create_instance(
        self,
        region: str,
        name: str,
        *,
        blueprint_id: str,
        bundle_id: str,
        user_data: str,
        tag_key: str,
    ) -> list[dict]:
        """Create one instance in the region's first availability zone.

        :return: Operations started by the request
        """
        return self._call(
            region,
            "create_instances",
            instanceNames=[name],
            availabilityZone=f"{region}a",
            blueprintId=blueprint_id,
            bundleId=bundle_id,
            userData=user_data,
            tags=[{"key": tag_key, "value": "true"}],
        )["operations"]

    def get_instance(self, region: str, name: str) -> dict:
        return self._call(region, "get_instance", instanceName=name)["instance"]

    def list_instances(self, region: str) -> list[dict]:
        instances = []
        kwargs = {}
        while True:
            data = self._call(region, "get_instances", **kwargs)
            instances.extend(data.get("instances", []))
            token = data.get("nextPageToken")
            if not token:
                return instances
            kwargs = {"pageToken": token}

    def delete_instance(self, region: str, name: str) -> list[dict]:
        return self._call(region, "delete_instance", instanceName=name)["operations"]

    def open_all_ports(self, region: str, name: str) -> dict:
        return self._call(
            region,
            "open_instance_public_ports",
            instanceName=name,
            portInfo={"fromPort": 0, "toPort": 65535, "protocol": "all"},
        )["operation"]

    def allocate_static_ip(self, region: str, ip_name: str) -> list[dict]:
        return self._call(region, "allocate_static_ip", staticIpName=ip_name)["operations"]

    def attach_static_ip(self, region: str, ip_name: str, instance_name: str) -> list[dict]:
        return self._call(
            region, "attach_static_ip", staticIpName=ip_name, instanceName=instance_name
        )["operations"]

    def detach_static_ip(self, region: str, ip_name: str) -> list[dict]:
        return self._call(region, "detach_static_ip", staticIpName=ip_name)["operations"]

    def release_static_ip(self, region: str, ip_name: str) -> list[dict]:
        return self._call(region, "release_static_ip", staticIpName=ip_name)["operations"]

    def get_bundle(self, region: str, bundle_id: str) -> dict | None:
        bundles = self._call(region, "get_bundles", includeInactive=False)["bundles"]
        return next((b for b in bundles if b["bundleId"] == bundle_id), None)

    def fetch_operation(self, region: str, operation_id: str) -> AsyncOperation:
        operation = self._call(region, "get_operation", operationId=operation_id)["operation"]
        status = {"Succeeded": "succeeded", "Failed": "failed"}.get(
            operation.get("status"), "pending"
        )
        return AsyncOperation(
            id=operation["id"],
            status=status,
            target_resource_id=operation.get("resourceName"),
            detail=operation,
        )

    def list_locations(self) -> list[Location]:
        return [lightsail_location(region["name"]) for region in self.get_regions()]
