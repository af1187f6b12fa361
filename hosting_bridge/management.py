"""
Hosting Bridge Server Management
================================

Operations on servers that already exist on the panel:

- Read a server's current build
- Move a server onto one of the fixed plans
- Apply a custom resource update
- Power signals and live status for bot containers

Calls go straight to the panel. Nothing here touches billing metadata.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, List

from .catalog import SERVER_PLANS
from .errors import DependencyUnavailable, InvalidInput
from .panel.base import PanelInstance, PowerSignal, ResourcePanel, ResourceUsage

logger = logging.getLogger(__name__)

# Fields a custom resource update may change
LIMIT_FIELDS = ("memory", "disk", "cpu")
FEATURE_FIELDS = ("databases", "backups")


def valid_resource_changes(changes: Dict[str, Any]) -> Dict[str, int]:
    """Keep only known fields holding positive integers."""
    valid = {}
    for key, value in changes.items():
        if key not in LIMIT_FIELDS + FEATURE_FIELDS:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            continue
        valid[key] = value
    return valid


class InstanceManager:
    """
    Post-provisioning operations on panel servers.

    Usage:
        manager = InstanceManager(panel)
        server = await manager.upgrade_plan(42, "premium")
    """

    def __init__(self, panel: ResourcePanel):
        self.panel = panel

    def list_plans(self) -> Dict[str, Dict[str, int]]:
        return {plan_id: plan.to_dict() for plan_id, plan in SERVER_PLANS.items()}

    @staticmethod
    def available_plans() -> List[str]:
        return list(SERVER_PLANS)

    async def get_server(self, instance_id: int) -> PanelInstance:
        """
        Read a server and its build.

        Raises:
            ResourceNotFound: No server with this id
        """
        return await self.panel.get_instance(instance_id)

    async def _current_build(self, instance_id: int) -> PanelInstance:
        instance = await self.panel.get_instance(instance_id)
        if instance.limits is None or instance.feature_limits is None:
            raise DependencyUnavailable(
                self.panel.SERVICE_NAME, f"Server {instance_id} reported no build limits"
            )
        return instance

    async def upgrade_plan(self, instance_id: int, plan_id: str) -> PanelInstance:
        """
        Replace a server's limits with a fixed plan.

        Allocation count and CPU thread pinning are carried over from the
        current build.

        Args:
            instance_id: Panel server id
            plan_id: Key of SERVER_PLANS

        Returns:
            The server as the panel reports it after the update

        Raises:
            InvalidInput: Unknown plan id
            ResourceNotFound: No server with this id
        """
        plan = SERVER_PLANS.get(plan_id)
        if plan is None:
            raise InvalidInput(
                f"Unknown plan {plan_id!r}",
                details={"available_plans": self.available_plans()},
            )

        instance = await self._current_build(instance_id)
        features = replace(
            instance.feature_limits, databases=plan.databases, backups=plan.backups
        )
        updated = await self.panel.update_build(
            instance, plan.limits(threads=instance.limits.threads), features
        )
        logger.info(f"Server {instance_id} moved to plan {plan_id}",
                    extra={"instance_id": instance_id})
        return updated

    async def update_resources(self, instance_id: int, changes: Dict[str, Any]) -> PanelInstance:
        """
        Change selected limits of a server, keeping the rest of its build.

        Only memory, disk, cpu, databases and backups can be changed, and
        only to positive integers; anything else in ``changes`` is ignored.

        Raises:
            InvalidInput: Nothing valid left to change
            ResourceNotFound: No server with this id
        """
        valid = valid_resource_changes(changes)
        if not valid:
            raise InvalidInput(f"No valid resource changes for server {instance_id}: {changes!r}")

        instance = await self._current_build(instance_id)
        limits = replace(
            instance.limits, **{k: v for k, v in valid.items() if k in LIMIT_FIELDS}
        )
        features = replace(
            instance.feature_limits, **{k: v for k, v in valid.items() if k in FEATURE_FIELDS}
        )
        updated = await self.panel.update_build(instance, limits, features)
        logger.info(f"Server {instance_id} resources updated: {valid}",
                    extra={"instance_id": instance_id})
        return updated

    async def power(self, identifier: str, signal: PowerSignal) -> None:
        await self.panel.send_power_signal(identifier, signal)

    async def status(self, identifier: str) -> ResourceUsage:
        return await self.panel.get_resource_usage(identifier)
