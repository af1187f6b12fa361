"""
Resource Panel Abstraction Layer
================================

The provisioning workflow talks to a game-server panel only through
ResourcePanel.

Supported Panels:
- Pterodactyl (application API + client API, httpx)
"""

from .base import (
    ResourcePanel,
    PanelAccount,
    Allocation,
    InstanceSpec,
    InstanceLimits,
    FeatureLimits,
    PanelInstance,
    PowerSignal,
    ResourceUsage,
    ACCESS_PERMISSIONS,
)
from .pterodactyl import PterodactylPanel

__all__ = [
    "ResourcePanel",
    "PanelAccount",
    "Allocation",
    "InstanceSpec",
    "InstanceLimits",
    "FeatureLimits",
    "PanelInstance",
    "PowerSignal",
    "ResourceUsage",
    "ACCESS_PERMISSIONS",
    "PterodactylPanel",
]
