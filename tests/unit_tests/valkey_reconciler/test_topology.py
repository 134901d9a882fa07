import pytest

from valkey_reconciler.errors import UnhealthyClusterError
from valkey_reconciler.parser import parse_cluster_topology
from valkey_reconciler.slots import SlotRange, desired_slot_ranges
from valkey_reconciler.structs import Address, ClusterNode, MasterRole, ReplicaRole, Shard
from valkey_reconciler.topology import (
    ClusterTopology,
    canonical_master_ordinal,
    desired_topology,
    is_same_topology_shape,
    replica_ordinal,
)


HOST = "valkey-demo-{}.valkey-demo-headless.default.svc.cluster.local"


def node_line(node_id, ordinal, flags, master_id="-", link="connected", slots=""):
    addr = f"10.0.0.{ordinal}:6379@16379,{HOST.format(ordinal)}"
    line = f"{node_id} {addr} {flags} {master_id} 0 0 {ordinal + 1} {link}"
    if slots:
        line = f"{line} {slots}"
    return line


def make_topology(*lines):
    return parse_cluster_topology("\n".join(lines))


def healthy_topology():
    ranges = desired_slot_ranges(3)
    return make_topology(
        node_line("m0", 0, "myself,master", slots=str(ranges[0])),
        node_line("m1", 1, "master", slots=str(ranges[1])),
        node_line("m2", 2, "master", slots=str(ranges[2])),
        node_line("r3", 3, "slave", "m0"),
        node_line("r4", 4, "slave", "m1"),
        node_line("r5", 5, "slave", "m2"),
    )


def test_replica_ordinal_and_canonical_master():
    assert replica_ordinal(0, 0, 3, 2) == 3
    assert replica_ordinal(2, 1, 3, 2) == 8
    assert canonical_master_ordinal(3, 3, 2) == 0
    assert canonical_master_ordinal(8, 3, 2) == 2
    assert canonical_master_ordinal(9, 3, 2) is None
    assert canonical_master_ordinal(1, 3, 2) is None
    assert canonical_master_ordinal(5, 3, 0) is None


def test_desired_topology():
    topology = desired_topology(2, 2)

    assert [m.index for m in topology.masters] == [0, 1]
    assert [r.index for r in topology.replicas] == [2, 3, 4, 5]
    assert [m.slot_ranges for m in topology.masters] == [((0, 8191),), ((8192, 16383),)]
    assert [r.node_id for r in topology.replicas_of("master-1")] == ["replica-1-0", "replica-1-1"]
    assert topology.nodes["replica-1-1"].index == 5
    assert topology.node_count() == 6
    assert topology.replicas_per_master() == 2
    topology.check_health()


def test_same_shape__ids_and_hosts_ignored():
    assert is_same_topology_shape(healthy_topology(), desired_topology(3, 1))
    assert is_same_topology_shape(desired_topology(3, 1), healthy_topology())


def test_same_shape__different_slot_ranges():
    topology = make_topology(
        node_line("m0", 0, "master", slots="0-5000"),
        node_line("m1", 1, "master", slots="5001-10922"),
        node_line("m2", 2, "master", slots="10923-16383"),
        node_line("r3", 3, "slave", "m0"),
        node_line("r4", 4, "slave", "m1"),
        node_line("r5", 5, "slave", "m2"),
    )

    assert not is_same_topology_shape(topology, desired_topology(3, 1))


def test_same_shape__different_replica_count():
    assert not is_same_topology_shape(desired_topology(3, 1), desired_topology(3, 2))
    assert not is_same_topology_shape(desired_topology(3, 1), desired_topology(2, 1))


def test_same_shape__different_replica_master():
    ranges = desired_slot_ranges(3)
    topology = make_topology(
        node_line("m0", 0, "master", slots=str(ranges[0])),
        node_line("m1", 1, "master", slots=str(ranges[1])),
        node_line("m2", 2, "master", slots=str(ranges[2])),
        node_line("r3", 3, "slave", "m1"),
        node_line("r4", 4, "slave", "m0"),
        node_line("r5", 5, "slave", "m2"),
    )

    assert not is_same_topology_shape(topology, desired_topology(3, 1))


def test_same_shape__nodes_without_index_never_match():
    topology = ClusterTopology()
    master = ClusterNode("a", Address("10.0.0.1", 6379), MasterRole((SlotRange(0, 16383),)))
    topology.add_node(master)
    other = ClusterTopology()
    other.add_node(ClusterNode("b", Address("10.0.0.1", 6379), MasterRole((SlotRange(0, 16383),))))

    assert not is_same_topology_shape(topology, other)


def test_shards_ordered_by_safety_index():
    topology = make_topology(
        node_line("m3", 3, "master", slots="0-8191"),
        node_line("m1", 1, "master", slots="8192-16383"),
        node_line("r0", 0, "slave", "m3"),
        node_line("r2", 2, "slave", "m1"),
    )

    assert topology.shards() == [Shard(0, "m3"), Shard(1, "m1")]
    assert [n.node_id for n in topology.shard_members(Shard(0, "m3"))] == ["m3", "r0"]
    assert [n.node_id for n in topology.ordered_nodes()] == ["r0", "m1", "r2", "m3"]
    assert topology.master_of(topology.nodes["r2"]) is topology.nodes["m1"]
    assert topology.find_by_host(HOST.format(2)) is topology.nodes["r2"]
    assert topology.find_by_host("nope") is None


def test_fqdns():
    topology = make_topology(
        node_line("m0", 0, "master", slots="0-16383"),
        "r1 10.0.0.1:6379@16379 slave m0 0 0 2 connected",
    )

    assert sorted(topology.fqdns()) == sorted([HOST.format(0), "10.0.0.1"])
    assert healthy_topology().fqdns().count(HOST.format(5)) == 1
    assert ClusterTopology().fqdns() == []


def test_check_health__ok():
    topology = healthy_topology()

    topology.check_health()
    assert topology.is_healthy()


@pytest.mark.parametrize(
    "lines, message",
    [
        (
            [
                node_line("m0", 0, "myself,master", slots="0-16383"),
                node_line("r1", 1, "slave,fail", "m0"),
            ],
            "fail",
        ),
        (
            [
                node_line("m0", 0, "myself,master", slots="0-16383"),
                node_line("r1", 1, "slave", "m0", link="disconnected"),
            ],
            "disconnected",
        ),
        (
            [
                node_line("m0", 0, "myself,master", slots="0-16383"),
                node_line("r2", 2, "slave", "m0"),
            ],
            "missing node index",
        ),
        (
            [
                node_line("m0", 0, "myself,master", slots="0-16383"),
                node_line("r1", 1, "slave", "gone"),
            ],
            "unknown master",
        ),
        (
            [
                node_line("m0", 0, "master", slots="0-8191"),
                node_line("m1", 1, "master", slots="8192-16383"),
                node_line("r2", 2, "slave", "m0"),
            ],
            "replicas",
        ),
    ],
)
def test_check_health__unhealthy(lines, message):
    topology = make_topology(*lines)

    with pytest.raises(UnhealthyClusterError, match=message):
        topology.check_health()
    assert not topology.is_healthy()


def test_replica_role_equality():
    assert ReplicaRole("m0") == ReplicaRole("m0")
    assert MasterRole() == MasterRole(())
