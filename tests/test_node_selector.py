"""Tests for node placement."""

from unittest.mock import MagicMock

import pytest

from proxmox_provider.cancellation import CancelToken
from proxmox_provider.errors import NoNodesAvailableError, NodeSelectionError, OperationCancelled
from proxmox_provider.models import NodeStatus
from proxmox_provider.node_selector import (
    NodeSelector,
    has_request_set_tag,
    memory_free_ratio,
    pick_node,
    request_set_tag,
    vm_tags,
)


def _nodes(*specs: tuple[str, float, int]) -> list[NodeStatus]:
    return [NodeStatus(name, free, count) for name, free, count in specs]


class TestPickNode:
    """Tests for the two-key ranking."""

    def test_single_node(self) -> None:
        assert pick_node(_nodes(("A", 0.0, 7))).name == "A"

    def test_more_free_memory_wins(self) -> None:
        assert pick_node(_nodes(("A", 0.0, 0), ("B", 1.0, 0))).name == "B"

    def test_fewer_siblings_beats_more_memory(self) -> None:
        assert pick_node(_nodes(("A", 1.0, 10), ("B", 0.5, 0))).name == "B"

    def test_memory_breaks_sibling_tie(self) -> None:
        assert pick_node(_nodes(("A", 0.5, 5), ("B", 1.0, 5), ("C", 0.1, 5))).name == "B"

    def test_mixed_counts(self) -> None:
        nodes = _nodes(("A", 0.1, 2), ("B", 0.05, 1), ("C", 0.04, 1), ("D", 1.0, 5))
        assert pick_node(nodes).name == "B"

    def test_full_tie_keeps_input_order(self) -> None:
        assert pick_node(_nodes(("A", 0.5, 1), ("B", 0.5, 1))).name == "A"
        assert pick_node(_nodes(("B", 0.5, 1), ("A", 0.5, 1))).name == "B"

    def test_empty(self) -> None:
        with pytest.raises(NoNodesAvailableError, match="no nodes available"):
            pick_node([])


class TestTags:
    """Tests for request set tag helpers."""

    def test_request_set_tag(self) -> None:
        assert request_set_tag("workers") == "machine-request.workers"

    def test_vm_tags_splits_separators(self) -> None:
        assert vm_tags({"tags": "machine-request.workers;prod,x"}) == ["machine-request.workers", "prod", "x"]
        assert vm_tags({}) == []

    def test_membership_is_exact(self) -> None:
        assert has_request_set_tag({"tags": "machine-request.workers"}, "workers")
        assert not has_request_set_tag({"tags": "machine-request.workers-2"}, "workers")

    def test_memory_free_ratio(self) -> None:
        assert memory_free_ratio({"maxmem": 100, "mem": 25}) == 0.75
        assert memory_free_ratio({"maxmem": 0, "mem": 0}) == 0.0


class TestNodeSelector:
    """Tests for NodeSelector against a mocked cluster."""

    def test_empty_cluster(self, mock_client: MagicMock) -> None:
        mock_client.list_nodes.return_value = []

        with pytest.raises(NoNodesAvailableError):
            NodeSelector(mock_client).select()

    def test_override_is_used(self, mock_client: MagicMock) -> None:
        mock_client.list_nodes.return_value = [
            {"node": "pve1", "status": "online", "maxmem": 100, "mem": 90},
            {"node": "pve2", "status": "online", "maxmem": 100, "mem": 10},
        ]

        assert NodeSelector(mock_client).select("pve1") == "pve1"
        mock_client.list_vms.assert_not_called()

    def test_override_not_found(self, mock_client: MagicMock) -> None:
        mock_client.list_nodes.return_value = [{"node": "pve1", "status": "online"}]

        with pytest.raises(NodeSelectionError, match="'pve9' not found in cluster") as exc:
            NodeSelector(mock_client).select("pve9")
        assert exc.value.node == "pve9"

    def test_override_offline(self, mock_client: MagicMock) -> None:
        mock_client.list_nodes.return_value = [{"node": "pve1", "status": "offline"}]

        with pytest.raises(NodeSelectionError, match="not online"):
            NodeSelector(mock_client).select("pve1")

    def test_auto_select_spreads_request_set(self, mock_client: MagicMock) -> None:
        mock_client.list_nodes.return_value = [
            {"node": "pve1", "status": "online", "maxmem": 100, "mem": 10},
            {"node": "pve2", "status": "online", "maxmem": 100, "mem": 80},
        ]
        vms = {
            "pve1": [{"vmid": 100, "tags": "machine-request.workers"}],
            "pve2": [{"vmid": 101, "tags": "other"}],
        }
        mock_client.list_vms.side_effect = lambda node: vms[node]

        assert NodeSelector(mock_client).select(request_set_id="workers") == "pve2"

    def test_auto_select_without_request_set(self, mock_client: MagicMock) -> None:
        mock_client.list_nodes.return_value = [
            {"node": "pve1", "status": "online", "maxmem": 100, "mem": 90},
            {"node": "pve2", "status": "online", "maxmem": 100, "mem": 10},
        ]

        assert NodeSelector(mock_client).select() == "pve2"
        mock_client.list_vms.assert_not_called()

    def test_ranks_every_reported_node(self, mock_client: MagicMock) -> None:
        mock_client.list_nodes.return_value = [
            {"node": "pve1", "status": "offline", "maxmem": 100, "mem": 0},
            {"node": "pve2", "status": "online", "maxmem": 100, "mem": 50},
        ]

        assert NodeSelector(mock_client).select() == "pve1"

    def test_node_with_unknown_status_is_picked(self, mock_client: MagicMock) -> None:
        mock_client.list_nodes.return_value = [{"node": "pve1", "status": "unknown"}]

        assert NodeSelector(mock_client).select() == "pve1"

    def test_cancelled(self, mock_client: MagicMock) -> None:
        token = CancelToken()
        token.cancel("shutdown")

        with pytest.raises(OperationCancelled, match="shutdown"):
            NodeSelector(mock_client).select(cancel=token)
        mock_client.list_nodes.assert_not_called()
