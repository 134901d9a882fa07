import pytest
from fake_cluster import FakeCluster, command_kwargs, fetch_topology, make_env

from valkey_reconciler.commands import ScaleDownCommand
from valkey_reconciler.errors import UnhealthyClusterError
from valkey_reconciler.topology import desired_topology, is_same_topology_shape


def assert_only_safe_members(cluster, total_nodes):
    assert sorted(n.ordinal for n in cluster.members()) == list(range(total_nodes))


async def test_remove_shard():
    cluster = FakeCluster.build(3, 1)
    env = make_env(2, 1)
    m2 = cluster.node(2).node_id
    cmd = ScaleDownCommand(env, **command_kwargs(env, cluster))

    await cmd.run()

    assert cluster.events == [
        ("del-node", 5, "replica"),
        ("rebalance", {cluster.node(0).node_id: 1.0, cluster.node(1).node_id: 1.0, m2: 0.0}),
        ("del-node", 2, "master"),
        ("add-node", 2),
        ("replicate", 2, 0),
        ("replicate", 3, 1),
        ("del-node", 4, "replica"),
    ]
    topology = await fetch_topology(cluster)
    assert is_same_topology_shape(topology, desired_topology(2, 1))
    assert_only_safe_members(cluster, env.total_nodes)


async def test_promote_shard_member_in_safe_spot():
    cluster = FakeCluster.build(2, 1)
    # masters at ordinals 1 and 2, replicas 0 -> 2 and 3 -> 1
    cluster.failover(cluster.node(2))
    cluster.events.clear()
    env = make_env(1, 1)
    cmd = ScaleDownCommand(env, **command_kwargs(env, cluster))

    await cmd.run()

    assert cluster.events[:3] == [
        ("del-node", 3, "replica"),
        ("rebalance", {cluster.node(1).node_id: 0.0, cluster.node(2).node_id: 1.0}),
        ("del-node", 1, "master"),
    ]
    assert cluster.events[3:] == [
        ("failover", 0, 2),
        ("add-node", 1),
        ("replicate", 1, 0),
        ("del-node", 2, "replica"),
    ]
    topology = await fetch_topology(cluster)
    assert is_same_topology_shape(topology, desired_topology(1, 1))
    assert_only_safe_members(cluster, env.total_nodes)


async def test_remove_replicas():
    cluster = FakeCluster.build(2, 2)
    env = make_env(2, 1)
    cmd = ScaleDownCommand(env, **command_kwargs(env, cluster))

    await cmd.run()

    deleted = [e for e in cluster.events if e[0] == "del-node"]
    assert deleted == [
        ("del-node", 3, "replica"),
        ("del-node", 5, "replica"),
        ("del-node", 4, "replica"),
    ]
    assert all(e[0] != "rebalance" for e in cluster.events)
    topology = await fetch_topology(cluster)
    assert is_same_topology_shape(topology, desired_topology(2, 1))
    assert_only_safe_members(cluster, env.total_nodes)


async def test_make_room_for_masters():
    cluster = FakeCluster.build(1, 1)
    env = make_env(2, 0)
    cmd = ScaleDownCommand(env, **command_kwargs(env, cluster))

    await cmd.run()

    assert cluster.events == [("del-node", 1, "replica")]
    assert [n.ordinal for n in cluster.members()] == [0]


async def test_nothing_to_remove(caplog):
    cluster = FakeCluster.build(2, 1)
    env = make_env(2, 1)
    cmd = ScaleDownCommand(env, **command_kwargs(env, cluster))

    with caplog.at_level("INFO", "valkey_reconciler"):
        await cmd.run()

    assert cluster.events == []
    assert "No need to scale down nodes" in caplog.text


async def test_rerun_is_noop():
    cluster = FakeCluster.build(3, 1)
    env = make_env(2, 1)

    await ScaleDownCommand(env, **command_kwargs(env, cluster)).run()
    cluster.events.clear()
    await ScaleDownCommand(env, **command_kwargs(env, cluster)).run()

    assert cluster.events == []


async def test_unhealthy_cluster():
    cluster = FakeCluster.build(2, 1)
    cluster.node(3).master_id = cluster.node(0).node_id
    env = make_env(1, 1)
    cmd = ScaleDownCommand(env, **command_kwargs(env, cluster))

    with pytest.raises(UnhealthyClusterError):
        await cmd.run()

    assert cluster.events == []
