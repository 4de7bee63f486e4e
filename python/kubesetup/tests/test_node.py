"""Tests for node addresses and cluster topology.

Covers:
- NodeAddress.parse: users, hosts, IPv6 brackets, rejects
- normalize_node_list: comma splitting and trimming
- ClusterTopology: roles, HA detection, duplicate hosts
"""

import pytest

from kubesetup.models.errors import ValidationError
from kubesetup.models.node import ClusterTopology, NodeAddress, NodeRole, normalize_node_list


class TestNodeAddress:
    """Tests for NodeAddress.parse and its derived properties."""

    def test_default_user(self):
        node = NodeAddress.parse("10.0.0.1")

        assert node.user == "root"
        assert node.host == "10.0.0.1"
        assert node.port == 22
        assert str(node) == "root@10.0.0.1"

    def test_explicit_user_and_port(self):
        node = NodeAddress.parse("ubuntu@cp-1.example.com", port=2222)

        assert node.user == "ubuntu"
        assert node.host == "cp-1.example.com"
        assert node.port == 2222
        assert node.sudo_prefix == "sudo -n "
        assert not node.is_root

    def test_root_has_no_sudo_prefix(self):
        assert NodeAddress.parse("root@10.0.0.1").sudo_prefix == ""

    def test_bracketed_ipv6(self):
        node = NodeAddress.parse("admin@[fd00::1]")

        assert node.is_ipv6
        assert node.ssh_host == "fd00::1"
        assert node.scp_host == "[fd00::1]"

    def test_unbracketed_ipv6_rejected(self):
        with pytest.raises(ValidationError, match="must be bracketed"):
            NodeAddress.parse("fd00::1")

    @pytest.mark.parametrize(
        "raw",
        ["bad user@10.0.0.1", "@10.0.0.1", "root@host;rm", "root@-host", "root@[zz::1]", "-oProxy@host"],
    )
    def test_malformed_addresses_rejected(self, raw):
        with pytest.raises(ValidationError):
            NodeAddress.parse(raw)

    def test_validation_error_is_value_error(self):
        """Callers that catch ValueError also see address failures."""
        with pytest.raises(ValueError):
            NodeAddress.parse("root@")


class TestNormalizeNodeList:
    """Tests for comma-separated node list handling."""

    def test_splits_and_trims(self):
        assert normalize_node_list(" a, b,,c ,") == ["a", "b", "c"]

    def test_accepts_sequences(self):
        assert normalize_node_list(["a,b", "c"]) == ["a", "b", "c"]

    def test_none_is_empty(self):
        assert normalize_node_list(None) == []


class TestClusterTopology:
    """Tests for ClusterTopology construction and roles."""

    def test_roles_follow_position(self):
        topology = ClusterTopology.from_lists("cp1,cp2", "w1")

        roles = [(str(n), r) for n, r in topology.nodes_with_roles()]
        assert roles == [
            ("root@cp1", NodeRole.FIRST_CONTROL_PLANE),
            ("root@cp2", NodeRole.ADDITIONAL_CONTROL_PLANE),
            ("root@w1", NodeRole.WORKER),
        ]
        assert topology.is_ha
        assert topology.first_control_plane.host == "cp1"

    def test_single_control_plane_is_not_ha(self):
        assert not ClusterTopology.from_lists("cp1", "w1,w2").is_ha

    def test_empty_control_planes_rejected(self):
        with pytest.raises(ValidationError, match="control-plane"):
            ClusterTopology.from_lists(" , ", "w1")

    def test_duplicate_host_rejected(self):
        with pytest.raises(ValidationError, match="duplicate host"):
            ClusterTopology.from_lists("10.0.0.1", "ubuntu@10.0.0.1")

    @pytest.mark.parametrize(
        "cps,workers",
        [("Node1.example.com", "node1.EXAMPLE.com"), ("[FE80::1]", "[fe80::1]")],
    )
    def test_duplicate_host_ignores_case(self, cps, workers):
        with pytest.raises(ValidationError, match="duplicate host"):
            ClusterTopology.from_lists(cps, workers)

    def test_invalid_default_user_rejected(self):
        with pytest.raises(ValidationError, match="default SSH user"):
            ClusterTopology.from_lists("cp1", default_user="1-bad user")

    def test_default_user_and_port_applied(self):
        topology = ClusterTopology.from_lists("cp1", "admin@w1", default_user="ubuntu", port=2200)

        assert topology.control_planes[0].user == "ubuntu"
        assert topology.workers[0].user == "admin"
        assert all(n.port == 2200 for n in topology.all_nodes)

    def test_role_of_unknown_node(self):
        topology = ClusterTopology.from_lists("cp1")

        with pytest.raises(ValidationError):
            topology.role_of(NodeAddress.parse("other"))
