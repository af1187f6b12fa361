"""
Hosting Bridge Capacity Gate
============================

Refuses new instances on a node that is at its configured ceiling.

The check is advisory: two runs can both see N-1 and both proceed. The
panel's allocation uniqueness is the final arbiter.
"""

import logging
from dataclasses import dataclass

from .errors import CapacityExceeded
from .panel.base import ResourcePanel

logger = logging.getLogger(__name__)


@dataclass
class CapacityStatus:
    node_id: int
    current: int
    maximum: int

    @property
    def available(self) -> int:
        return max(0, self.maximum - self.current)


class CapacityGate:
    """Compares a node's instance count with its ceiling."""

    def __init__(self, panel: ResourcePanel):
        self.panel = panel

    async def check_capacity(self, node_id: int, maximum: int) -> CapacityStatus:
        """
        Raises:
            CapacityExceeded: When the node already holds ``maximum`` or more instances
        """
        current = await self.panel.count_instances(node_id)
        if current >= maximum:
            logger.warning(f"Node {node_id} at capacity: {current}/{maximum}")
            raise CapacityExceeded(node_id, current, maximum)
        logger.debug(f"Node {node_id} capacity {current}/{maximum}")
        return CapacityStatus(node_id=node_id, current=current, maximum=maximum)
