import asyncio
from unittest import mock

import pytest
from fake_cluster import FakeCluster

from valkey_reconciler.abc import AbcNodeClient
from valkey_reconciler.errors import (
    ConvergenceTimeoutError,
    NodeConnectionError,
    ReconcilerError,
    TopologyError,
)
from valkey_reconciler.parser import parse_cluster_topology
from valkey_reconciler.structs import Address, Shard
from valkey_reconciler.waiters import ConvergenceWaiter, contains_all


def create_node_mock(addr, **replies):
    mocked = mock.AsyncMock(AbcNodeClient)
    mocked.addr = addr
    for name, reply in replies.items():
        getattr(mocked, name).side_effect = reply
    return mocked


def addrs(count):
    return [Address(f"valkey-demo-{i}.svc", 6379) for i in range(count)]


def test_contains_all():
    text = "abc node-1 slave m0\nnode-2 myself,slave m1"

    assert contains_all(text, [["node-1 slave m0"], ["node-2 slave m1", "node-2 myself,slave m1"]])
    assert not contains_all(text, [["node-1 slave m0"], ["node-3"]])
    assert contains_all(text, [])


async def test_all_nodes_cluster_info_state():
    replies = {}

    async def connector(addr):
        replies[addr] = iter(["cluster_known_nodes:5", "cluster_known_nodes:4"])
        return create_node_mock(addr, cluster_info=lambda: next(replies[addr]))

    waiter = ConvergenceWaiter(connector, timeout=5, poll_interval=0.001)

    await waiter.all_nodes_cluster_info_state(addrs(4), "cluster_known_nodes:4")

    assert len(replies) == 4


async def test_query_errors_are_retried():
    node = create_node_mock(
        addrs(1)[0],
        cluster_nodes=[ReconcilerError("loading"), "", "node-1 slave m0"],
    )
    connector = mock.AsyncMock(return_value=node)
    waiter = ConvergenceWaiter(connector, timeout=5, poll_interval=0.001)

    await waiter.cluster_nodes_contain(addrs(1)[0], ["node-1 slave m0"])

    assert node.cluster_nodes.await_count == 3
    node.close.assert_awaited_once()


async def test_timeout():
    node = create_node_mock(addrs(1)[0], cluster_info=lambda: "cluster_known_nodes:5")
    waiter = ConvergenceWaiter(mock.AsyncMock(return_value=node), timeout=0.05, poll_interval=0.001)

    with pytest.raises(ConvergenceTimeoutError) as exc_info:
        await waiter.all_nodes_cluster_info_state(addrs(1), "cluster_known_nodes:4")

    assert isinstance(exc_info.value, asyncio.TimeoutError)
    assert exc_info.value.timeout == 0.05
    assert "cluster_known_nodes:4" in exc_info.value.what
    node.close.assert_awaited_once()


async def test_cluster_info_state__value_prefix():
    node = create_node_mock(
        addrs(1)[0],
        cluster_info=lambda: "cluster_state:ok\r\ncluster_known_nodes:12\r\n",
    )
    waiter = ConvergenceWaiter(mock.AsyncMock(return_value=node), timeout=0.05, poll_interval=0.001)

    with pytest.raises(ConvergenceTimeoutError):
        await waiter.all_nodes_cluster_info_state(addrs(1), "cluster_known_nodes:1")


async def test_fail_fast():
    nodes = []
    failing = addrs(3)[2]

    async def connector(addr):
        if addr == failing:
            await asyncio.sleep(0.01)
            raise NodeConnectionError(addr, "refused")
        node = create_node_mock(addr, cluster_nodes=lambda: "never matches")
        nodes.append(node)
        return node

    waiter = ConvergenceWaiter(connector, timeout=30, poll_interval=0.001)
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(NodeConnectionError):
        await waiter.all_nodes_cluster_nodes_contain(addrs(3), ["unreachable"])

    assert loop.time() - started < 5
    assert len(nodes) == 2
    for node in nodes:
        node.close.assert_awaited_once()


async def test_concurrency_bound():
    active = 0
    max_active = 0

    async def connector(addr):
        nonlocal active, max_active
        active += 1
        max_active = max(max_active, active)

        async def close():
            nonlocal active
            active -= 1

        async def cluster_info():
            await asyncio.sleep(0.01)
            return "cluster_state:ok"

        return create_node_mock(addr, cluster_info=cluster_info, close=close)

    waiter = ConvergenceWaiter(connector, timeout=5, poll_interval=0.001, concurrency=10)

    await waiter.all_nodes_cluster_info_state(addrs(25), "cluster_state:ok")

    assert max_active == 10
    assert active == 0


async def test_empty_addrs():
    connector = mock.AsyncMock()
    waiter = ConvergenceWaiter(connector, timeout=5)

    await waiter.all_nodes_cluster_info_state([], "cluster_state:ok")

    connector.assert_not_awaited()


def test_invalid_concurrency():
    with pytest.raises(ValueError):
        ConvergenceWaiter(mock.AsyncMock(), concurrency=0)


async def test_statefulset_ready_timeout():
    statefulset = mock.NonCallableMock()

    async def wait_ready(expected_replicas, *, poll_interval):
        await asyncio.sleep(10)

    statefulset.wait_ready = wait_ready
    waiter = ConvergenceWaiter(mock.AsyncMock(), timeout=0.02)

    with pytest.raises(ConvergenceTimeoutError):
        await waiter.statefulset_ready(statefulset, 3)


async def test_promote_original_shard_leader(cluster_client_factory):
    cluster = FakeCluster.build(2, 1)
    # ordinal 2 took over master 0
    cluster.failover(cluster.node(2))
    client = cluster_client_factory([cluster.addr(0)], cluster.connect)
    topology = await client.get_topology()
    shard = topology.shards()[0]
    waiter = ConvergenceWaiter(cluster.connect, timeout=5, poll_interval=0.001)

    new_master, old_master = await waiter.promote_original_shard_leader(client, topology, shard)

    assert new_master == cluster.host(0)
    assert old_master == cluster.host(2)
    assert cluster.node(0).is_master
    assert cluster.node(2).master_id == cluster.node(0).node_id
    assert cluster.events[-1] == ("failover", 0, 2)


async def test_promote_original_shard_leader__already_leader(cluster_client_factory):
    cluster = FakeCluster.build(2, 1)
    client = cluster_client_factory([cluster.addr(0)], cluster.connect)
    topology = await client.get_topology()
    waiter = ConvergenceWaiter(cluster.connect, timeout=5)

    result = await waiter.promote_original_shard_leader(client, topology, topology.shards()[0])

    assert result == (cluster.host(0), None)
    assert cluster.events == []


async def test_promote_original_shard_leader__unknown_master():
    topology = parse_cluster_topology("")
    waiter = ConvergenceWaiter(mock.AsyncMock(), timeout=5)

    with pytest.raises(TopologyError):
        await waiter.promote_original_shard_leader(
            mock.NonCallableMock(), topology, Shard(0, "nope")
        )


@pytest.mark.parametrize(
    "master_host, replica_host",
    [
        ("valkey-demo-0.svc", "badhost.svc"),
        ("badhost.svc", "valkey-demo-2.svc"),
    ],
)
async def test_promote_original_shard_leader__member_without_ordinal(master_host, replica_host):
    topology = parse_cluster_topology(
        f"m0 10.0.0.0:6379@16379,{master_host} master - 0 0 1 connected 0-16383\n"
        f"r2 10.0.0.2:6379@16379,{replica_host} slave m0 0 0 1 connected\n"
    )
    cluster = mock.NonCallableMock()
    waiter = ConvergenceWaiter(mock.AsyncMock(), timeout=5)

    with pytest.raises(TopologyError, match="no ordinal"):
        await waiter.promote_original_shard_leader(cluster, topology, Shard(0, "m0"))

    cluster.node.assert_not_called()
