import pytest
from fake_cluster import FakeCluster, command_kwargs, fetch_topology, make_env

from valkey_reconciler.commands import ScaleUpCommand
from valkey_reconciler.errors import InconsistentStateError, UnhealthyClusterError
from valkey_reconciler.slots import desired_slot_ranges
from valkey_reconciler.topology import desired_topology, is_same_topology_shape


async def test_add_master_and_replica():
    cluster = FakeCluster.build(2, 1)
    cluster.resize(6)
    env = make_env(3, 1)
    kwargs = command_kwargs(env, cluster)
    cmd = ScaleUpCommand(env, **kwargs)

    await cmd.run()

    m4 = cluster.node(4)
    assert cluster.events == [
        ("add-node", 4),
        ("add-node", 5),
        ("replicate", 5, 4),
        ("rebalance", {}),
    ]
    kwargs["statefulset"].wait_ready.assert_awaited_once_with(6, poll_interval=env.poll_interval)

    topology = await fetch_topology(cluster)
    assert topology.is_healthy()
    assert [m.index for m in sorted(topology.masters, key=lambda n: n.index)] == [0, 1, 4]
    assert cluster.node(5).master_id == m4.node_id
    ranges = desired_slot_ranges(3)
    assert [cluster.node(i).slots for i in (0, 1, 4)] == [[r] for r in ranges]


async def test_add_replicas():
    cluster = FakeCluster.build(1, 0)
    cluster.resize(3)
    env = make_env(1, 2)
    cmd = ScaleUpCommand(env, **command_kwargs(env, cluster))

    await cmd.run()

    topology = await fetch_topology(cluster)
    assert is_same_topology_shape(topology, desired_topology(1, 2))
    assert cluster.events[-1] == ("rebalance", {})


async def test_nothing_to_add():
    cluster = FakeCluster.build(3, 1)
    env = make_env(3, 1)
    cmd = ScaleUpCommand(env, **command_kwargs(env, cluster))

    await cmd.run()

    assert cluster.events == [("rebalance", {})]
    assert is_same_topology_shape(await fetch_topology(cluster), desired_topology(3, 1))


async def test_more_masters_than_desired():
    cluster = FakeCluster.build(3, 0)
    env = make_env(2, 0)
    cmd = ScaleUpCommand(env, **command_kwargs(env, cluster))

    with pytest.raises(InconsistentStateError):
        await cmd.run()

    assert cluster.events == []


async def test_unhealthy_cluster():
    cluster = FakeCluster.build(2, 1)
    # both replicas follow master 0
    cluster.node(3).master_id = cluster.node(0).node_id
    env = make_env(2, 1)
    cmd = ScaleUpCommand(env, **command_kwargs(env, cluster))

    with pytest.raises(UnhealthyClusterError):
        await cmd.run()

    assert cluster.events == []


async def test_new_master_pod_already_member(mocker):
    cluster = FakeCluster.build(2, 1)
    cluster.resize(6)
    env = make_env(3, 1)
    # ordinal 2 already serves as a replica
    mocker.patch.object(ScaleUpCommand, "_free_ordinals", return_value=[2])
    cmd = ScaleUpCommand(env, **command_kwargs(env, cluster))

    with pytest.raises(InconsistentStateError, match="already part of the cluster"):
        await cmd.run()

    assert cluster.events == []


async def test_master_with_excess_replicas():
    cluster = FakeCluster.build(3, 1)
    cluster.resize(9)
    # master 0 owns all three replicas
    cluster.node(4).master_id = cluster.node(0).node_id
    cluster.node(5).master_id = cluster.node(0).node_id
    env = make_env(3, 2)
    cmd = ScaleUpCommand(env, **command_kwargs(env, cluster))

    with pytest.raises(InconsistentStateError, match="more replicas than desired"):
        await cmd.run()

    assert cluster.events == []
