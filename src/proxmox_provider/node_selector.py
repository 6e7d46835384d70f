"""Placement of new VMs on cluster nodes."""

import re
from typing import Any

import structlog

from .cancellation import CancelToken
from .errors import NoNodesAvailableError, NodeSelectionError
from .models import NodeStatus
from .proxmox_api import ProxmoxClient

logger = structlog.get_logger(__name__)

MACHINE_REQUEST_TAG_PREFIX = "machine-request."
ONLINE = "online"


def request_set_tag(request_set_id: str) -> str:
    """Tag put on every VM that belongs to a machine request set."""
    return MACHINE_REQUEST_TAG_PREFIX + request_set_id


def vm_tags(vm: dict[str, Any]) -> list[str]:
    """Split the API tag string (``;`` separated, sometimes ``,`` or spaces)."""
    return [tag for tag in re.split(r"[;, ]+", str(vm.get("tags") or "")) if tag]


def has_request_set_tag(vm: dict[str, Any], request_set_id: str) -> bool:
    return request_set_tag(request_set_id) in vm_tags(vm)


def memory_free_ratio(node: dict[str, Any]) -> float:
    total = int(node.get("maxmem") or 0)
    if total <= 0:
        return 0.0
    used = int(node.get("mem") or 0)
    return (total - used) / total


def pick_node(statuses: list[NodeStatus]) -> NodeStatus:
    """Pick the node with fewest sibling VMs, then the most free memory.

    The sort is stable, so full ties keep their input order.
    """
    if not statuses:
        raise NoNodesAvailableError()
    ranked = sorted(statuses, key=lambda s: (s.same_request_set_vms, -s.memory_free))
    return ranked[0]


class NodeSelector:
    """Chooses the node for a new VM from live cluster data."""

    def __init__(self, client: ProxmoxClient) -> None:
        self.client = client

    def select(
        self,
        node_override: str = "",
        request_set_id: str | None = None,
        cancel: CancelToken | None = None,
    ) -> str:
        """Return the node name to place the VM on.

        Raises:
            NoNodesAvailableError: If the cluster reports no usable nodes
            NodeSelectionError: If ``node_override`` is unknown or offline
        """
        cancel = cancel or CancelToken()
        cancel.raise_if_cancelled()
        nodes = self.client.list_nodes()
        if not nodes:
            raise NoNodesAvailableError()

        if node_override:
            return self._validate_override(nodes, node_override)

        statuses = self.node_statuses(nodes, request_set_id, cancel)
        picked = pick_node(statuses)
        logger.info(
            "auto-selected node for the Proxmox VM",
            node=picked.name,
            memory_free=round(picked.memory_free, 3),
            same_request_set_vms=picked.same_request_set_vms,
        )
        return picked.name

    def node_statuses(
        self,
        nodes: list[dict[str, Any]],
        request_set_id: str | None,
        cancel: CancelToken,
    ) -> list[NodeStatus]:
        """Build load snapshots for every node the cluster reports."""
        statuses = []
        for node in nodes:
            name = node["node"]
            siblings = 0
            if request_set_id:
                cancel.raise_if_cancelled()
                siblings = sum(
                    1 for vm in self.client.list_vms(name) if has_request_set_tag(vm, request_set_id)
                )

            statuses.append(NodeStatus(name, memory_free_ratio(node), siblings))
        return statuses

    def _validate_override(self, nodes: list[dict[str, Any]], wanted: str) -> str:
        for node in nodes:
            if node["node"] != wanted:
                continue
            status = node.get("status", "unknown")
            if status != ONLINE:
                raise NodeSelectionError(
                    wanted, f"specified node {wanted!r} is not online (status: {status})"
                )
            logger.info("using configured node for the Proxmox VM", node=wanted)
            return wanted

        raise NodeSelectionError(wanted, f"specified node {wanted!r} not found in cluster")
