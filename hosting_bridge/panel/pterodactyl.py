"""
Pterodactyl Panel Adapter
=========================

Implements ResourcePanel over the Pterodactyl application API, plus the
client API for subuser access grants, power signals and live resource usage.

API Documentation: https://dashflo.net/docs/api/pterodactyl/v1/
Authentication: Bearer token (application key ``ptla_...``, client key ``ptlc_...``)
"""

import logging
from typing import List, Optional, Dict, Any

import httpx

from .base import (
    ResourcePanel,
    PanelAccount,
    Allocation,
    FeatureLimits,
    InstanceLimits,
    InstanceSpec,
    PanelInstance,
    PowerSignal,
    ResourceUsage,
)
from ..errors import (
    DependencyConflict,
    DependencyTimeout,
    DependencyUnavailable,
    ResourceNotFound,
)

logger = logging.getLogger(__name__)

# Phrases in a 422 body that mean "duplicate", not "bad payload"
CONFLICT_HINTS = ("already", "taken", "exists", "in use")

ALLOCATIONS_PER_PAGE = 100


def _error_detail(response: httpx.Response) -> str:
    """Pull the first human-readable detail out of a Pterodactyl error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    errors = body.get("errors") if isinstance(body, dict) else None
    if errors:
        return "; ".join(e.get("detail", e.get("code", "")) for e in errors)
    return str(body)[:200]


class PterodactylPanel(ResourcePanel):
    """
    Pterodactyl panel adapter.

    Usage:
        panel = PterodactylPanel(
            api_url="https://panel.example.com",
            api_key="ptla_...",
        )
        accounts = await panel.find_accounts_by_email("user@example.com")
    """

    SERVICE_NAME = "pterodactyl"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        client_api_key: str = "",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the adapter.

        Args:
            api_url: Panel root URL (without /api)
            api_key: Application API key
            client_api_key: Client API key of an admin, used for subuser grants
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.api_url = api_url.rstrip("/")
        self.client_api_key = client_api_key
        self.client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    # =========================================
    # HTTP
    # =========================================

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated API request and map failures onto the error taxonomy."""
        try:
            response = await self.client.request(
                method=method,
                url=endpoint,
                json=data,
                params=params,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise DependencyTimeout(self.SERVICE_NAME, f"{method} {endpoint} timed out: {e}")
        except httpx.RequestError as e:
            raise DependencyUnavailable(self.SERVICE_NAME, f"{method} {endpoint} failed: {e}")

        if response.is_success:
            if response.content:
                return response.json()
            return {}

        detail = _error_detail(response)
        status = response.status_code
        logger.debug(f"Pterodactyl {method} {endpoint} -> {status}: {detail}")

        if status == 409 or (
            status == 422 and any(hint in detail.lower() for hint in CONFLICT_HINTS)
        ):
            raise DependencyConflict(
                self.SERVICE_NAME,
                f"{method} {endpoint} conflict: {detail}",
                details={"status_code": status},
            )

        raise DependencyUnavailable(
            self.SERVICE_NAME,
            f"{method} {endpoint} returned HTTP {status}: {detail}",
            status_code=status,
        )

    # =========================================
    # ACCOUNTS
    # =========================================

    @staticmethod
    def _parse_account(obj: Dict[str, Any]) -> PanelAccount:
        attrs = obj.get("attributes", obj)
        return PanelAccount(
            id=int(attrs["id"]),
            email=attrs.get("email", ""),
            username=attrs.get("username", ""),
        )

    async def find_accounts_by_email(self, email: str) -> List[PanelAccount]:
        response = await self._make_request(
            "GET", "/api/application/users", params={"filter[email]": email}
        )
        accounts = [self._parse_account(u) for u in response.get("data", [])]
        # filter[email] is a partial match on some panel versions
        return [a for a in accounts if a.email.lower() == email.lower()]

    async def create_account(
        self,
        email: str,
        username: str,
        password: str,
        first_name: str,
        last_name: str,
    ) -> PanelAccount:
        response = await self._make_request("POST", "/api/application/users", data={
            "email": email,
            "username": username,
            "first_name": first_name,
            "last_name": last_name,
            "password": password,
            "root_admin": False,
            "language": "en",
        })
        account = self._parse_account(response)
        logger.info(f"Created panel account {account.username} (#{account.id})")
        return account

    # =========================================
    # CAPACITY
    # =========================================

    async def count_instances(self, node_id: int) -> int:
        response = await self._make_request(
            "GET", f"/api/application/nodes/{node_id}", params={"include": "servers"}
        )
        attrs = response.get("attributes", {})
        servers = attrs.get("relationships", {}).get("servers", {}).get("data", [])
        return len(servers)

    async def list_free_allocations(self, node_id: int) -> List[Allocation]:
        free: List[Allocation] = []
        page = 1
        while True:
            response = await self._make_request(
                "GET",
                f"/api/application/nodes/{node_id}/allocations",
                params={"page": page, "per_page": ALLOCATIONS_PER_PAGE},
            )
            for item in response.get("data", []):
                attrs = item.get("attributes", item)
                if attrs.get("assigned"):
                    continue
                free.append(Allocation(
                    id=int(attrs["id"]),
                    ip=attrs.get("ip", ""),
                    port=int(attrs["port"]),
                    alias=attrs.get("alias") or attrs.get("ip_alias") or None,
                    assigned=False,
                ))

            pagination = response.get("meta", {}).get("pagination", {})
            if page >= pagination.get("total_pages", 1):
                break
            page += 1
        return free

    # =========================================
    # INSTANCES
    # =========================================

    @staticmethod
    def _parse_instance(obj: Dict[str, Any]) -> PanelInstance:
        attrs = obj.get("attributes", obj)
        owner = attrs.get("user")
        limits = attrs.get("limits")
        features = attrs.get("feature_limits")
        allocation = attrs.get("allocation")
        return PanelInstance(
            id=int(attrs["id"]),
            uuid=attrs.get("uuid", ""),
            identifier=attrs.get("identifier", ""),
            name=attrs.get("name", ""),
            owner_id=int(owner) if owner is not None else None,
            limits=InstanceLimits(
                memory=int(limits.get("memory") or 0),
                disk=int(limits.get("disk") or 0),
                swap=int(limits.get("swap") or 0),
                io=int(limits.get("io") or 500),
                cpu=int(limits.get("cpu") or 0),
                threads=limits.get("threads") or None,
            ) if limits else None,
            feature_limits=FeatureLimits(
                databases=int(features.get("databases") or 0),
                allocations=int(features.get("allocations") or 0),
                backups=int(features.get("backups") or 0),
            ) if features else None,
            allocation_id=int(allocation) if allocation is not None else None,
            # Panel 1.x reports ``suspended``; later releases use ``status``
            suspended=bool(attrs.get("suspended")) or attrs.get("status") == "suspended",
        )

    async def create_instance(self, spec: InstanceSpec) -> PanelInstance:
        response = await self._make_request(
            "POST", "/api/application/servers", data=spec.to_payload()
        )
        instance = self._parse_instance(response)
        logger.info(f"Created panel server {instance}")
        return instance

    async def get_instance(self, instance_id: int) -> PanelInstance:
        try:
            response = await self._make_request("GET", f"/api/application/servers/{instance_id}")
        except DependencyUnavailable as e:
            if e.status_code == 404:
                raise ResourceNotFound(f"Server {instance_id} does not exist") from e
            raise
        return self._parse_instance(response)

    async def update_instance_owner(self, instance: PanelInstance, account_id: int) -> None:
        await self._make_request(
            "PATCH",
            f"/api/application/servers/{instance.id}/details",
            data={"name": instance.name, "user": account_id},
        )

    async def update_build(
        self,
        instance: PanelInstance,
        limits: InstanceLimits,
        feature_limits: FeatureLimits,
    ) -> PanelInstance:
        """
        Replace the build configuration of a server.

        The panel expects the full build on every PATCH, so ``limits`` and
        ``feature_limits`` must already be merged with the current values.
        """
        data = limits.to_dict()
        data["threads"] = limits.threads
        data["allocation"] = instance.allocation_id
        data["feature_limits"] = feature_limits.to_dict()
        response = await self._make_request(
            "PATCH", f"/api/application/servers/{instance.id}/build", data=data
        )
        updated = self._parse_instance(response)
        logger.info(
            f"Updated build of server {updated}: {limits.memory} MB RAM, "
            f"{limits.disk} MB disk, {limits.cpu}% CPU"
        )
        return updated

    # =========================================
    # CLIENT API
    # =========================================

    def _client_headers(self, purpose: str) -> Dict[str, str]:
        if not self.client_api_key:
            raise DependencyUnavailable(
                self.SERVICE_NAME, f"Client API key not configured; cannot {purpose}"
            )
        return {"Authorization": f"Bearer {self.client_api_key}"}

    async def grant_access(self, instance: PanelInstance, email: str, permissions: List[str]) -> None:
        headers = self._client_headers("add subuser")
        try:
            await self._make_request(
                "POST",
                f"/api/client/servers/{instance.identifier}/users",
                data={"email": email, "permissions": permissions},
                headers=headers,
            )
        except DependencyConflict:
            logger.info(f"{email} already has access to {instance.identifier}")

    async def send_power_signal(self, identifier: str, signal: PowerSignal) -> None:
        headers = self._client_headers("send power signal")
        await self._make_request(
            "POST",
            f"/api/client/servers/{identifier}/power",
            data={"signal": signal.value},
            headers=headers,
        )
        logger.info(f"Sent {signal.value} to server {identifier}")

    async def get_resource_usage(self, identifier: str) -> ResourceUsage:
        headers = self._client_headers("read resource usage")
        response = await self._make_request(
            "GET", f"/api/client/servers/{identifier}/resources", headers=headers
        )
        attrs = response.get("attributes", {})
        resources = attrs.get("resources", {})
        return ResourceUsage(
            state=attrs.get("current_state", "unknown"),
            cpu_percent=float(resources.get("cpu_absolute") or 0),
            memory_bytes=int(resources.get("memory_bytes") or 0),
            disk_bytes=int(resources.get("disk_bytes") or 0),
            uptime_ms=int(resources.get("uptime") or 0),
        )
