"""
Resource Panel Base Classes and Interfaces
==========================================

Defines the abstract interface the provisioning workflow drives.
The Pterodactyl adapter implements it; tests substitute an in-memory fake.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any


# Subuser permissions granted when the owner cannot be corrected.
# Console, power, files and backups.
ACCESS_PERMISSIONS = [
    "control.console",
    "control.start",
    "control.stop",
    "control.restart",
    "file.create",
    "file.read",
    "file.read-content",
    "file.update",
    "file.delete",
    "file.archive",
    "file.sftp",
    "backup.create",
    "backup.read",
    "backup.restore",
    "allocation.read",
    "startup.read",
]


@dataclass
class PanelAccount:
    """A panel user."""
    id: int
    email: str
    username: str

    def __str__(self) -> str:
        return f"{self.username} <{self.email}> (#{self.id})"


@dataclass
class Allocation:
    """A network endpoint on a node."""
    id: int
    ip: str
    port: int
    alias: Optional[str] = None
    assigned: bool = False

    @property
    def host(self) -> str:
        return self.alias or self.ip

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class InstanceLimits:
    memory: int
    disk: int
    swap: int = 0
    io: int = 500
    cpu: int = 0
    threads: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        limits: Dict[str, Any] = {
            "memory": self.memory,
            "swap": self.swap,
            "disk": self.disk,
            "io": self.io,
            "cpu": self.cpu,
        }
        if self.threads:
            limits["threads"] = self.threads
        return limits


@dataclass
class FeatureLimits:
    databases: int = 0
    allocations: int = 1
    backups: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "databases": self.databases,
            "allocations": self.allocations,
            "backups": self.backups,
        }


@dataclass
class InstanceSpec:
    """Everything the panel needs to create one instance."""
    name: str
    egg_id: int
    docker_image: str
    startup: str
    limits: InstanceLimits
    feature_limits: FeatureLimits = field(default_factory=FeatureLimits)
    environment: Dict[str, Any] = field(default_factory=dict)
    owner_id: Optional[int] = None
    allocation_id: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        """Application API ``POST /servers`` body."""
        return {
            "name": self.name,
            "user": self.owner_id,
            "egg": self.egg_id,
            "docker_image": self.docker_image,
            "startup": self.startup,
            "environment": self.environment,
            "limits": self.limits.to_dict(),
            "feature_limits": self.feature_limits.to_dict(),
            "allocation": {"default": self.allocation_id},
        }


@dataclass
class PanelInstance:
    """A server as reported by the panel."""
    id: int
    uuid: str
    identifier: str
    name: str
    owner_id: Optional[int] = None
    limits: Optional[InstanceLimits] = None
    feature_limits: Optional[FeatureLimits] = None
    allocation_id: Optional[int] = None
    suspended: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "uuid": self.uuid,
            "identifier": self.identifier,
            "name": self.name,
            "ownerId": self.owner_id,
            "allocationId": self.allocation_id,
            "suspended": self.suspended,
            "limits": self.limits.to_dict() if self.limits else None,
            "featureLimits": self.feature_limits.to_dict() if self.feature_limits else None,
        }

    def __str__(self) -> str:
        return f"{self.name} (#{self.id}, {self.identifier})"


class PowerSignal(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"


@dataclass
class ResourceUsage:
    """Live state of a running instance, from the client API."""
    state: str
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    disk_bytes: int = 0
    uptime_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.state,
            "cpu": self.cpu_percent,
            "memory": self.memory_bytes,
            "disk": self.disk_bytes,
            "uptime": self.uptime_ms,
        }


class ResourcePanel(ABC):
    """
    Abstract interface for a game-server panel.

    All methods are coroutines. Failures are raised as ProvisioningError
    subclasses from hosting_bridge.errors:

    - DependencyTimeout when the call exceeded its timeout
    - DependencyConflict when the panel rejected a write as a duplicate
    - ResourceNotFound when a server lookup by id finds nothing
    - DependencyUnavailable for everything else
    """

    SERVICE_NAME: str = "panel"

    @abstractmethod
    async def find_accounts_by_email(self, email: str) -> List[PanelAccount]:
        """Exact-match account lookup."""
        pass

    @abstractmethod
    async def create_account(
        self,
        email: str,
        username: str,
        password: str,
        first_name: str,
        last_name: str,
    ) -> PanelAccount:
        """Create an account. Raises DependencyConflict if email/username is taken."""
        pass

    @abstractmethod
    async def count_instances(self, node_id: int) -> int:
        """Number of instances currently placed on a node."""
        pass

    @abstractmethod
    async def list_free_allocations(self, node_id: int) -> List[Allocation]:
        """Unassigned allocations on a node, in panel order."""
        pass

    @abstractmethod
    async def create_instance(self, spec: InstanceSpec) -> PanelInstance:
        """Create an instance owned by ``spec.owner_id`` on ``spec.allocation_id``."""
        pass

    @abstractmethod
    async def get_instance(self, instance_id: int) -> PanelInstance:
        """Read back an instance."""
        pass

    @abstractmethod
    async def update_instance_owner(self, instance: PanelInstance, account_id: int) -> None:
        """Reassign an instance to another account."""
        pass

    @abstractmethod
    async def grant_access(self, instance: PanelInstance, email: str, permissions: List[str]) -> None:
        """Add ``email`` as a subuser of the instance."""
        pass

    # Management

    @abstractmethod
    async def update_build(
        self,
        instance: PanelInstance,
        limits: InstanceLimits,
        feature_limits: FeatureLimits,
    ) -> PanelInstance:
        """Replace an instance's resource limits. Returns the updated instance."""
        pass

    @abstractmethod
    async def send_power_signal(self, identifier: str, signal: PowerSignal) -> None:
        pass

    @abstractmethod
    async def get_resource_usage(self, identifier: str) -> ResourceUsage:
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass
