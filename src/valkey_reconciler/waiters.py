import asyncio
import contextlib
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Tuple

from async_timeout import timeout as atimeout

from valkey_reconciler.client import ClusterClient
from valkey_reconciler.errors import ConvergenceTimeoutError, ReconcilerError, TopologyError
from valkey_reconciler.k8s import StatefulSetClient
from valkey_reconciler.log import logger
from valkey_reconciler.parser import parse_info
from valkey_reconciler.structs import Address, Shard
from valkey_reconciler.topology import ClusterTopology
from valkey_reconciler.typedef import NodeConnector


__all__ = (
    "Matching",
    "contains_all",
    "ConvergenceWaiter",
)


# outer sequence is "and" matched, strings of an inner sequence are "or" matched
Matching = Sequence[Sequence[str]]

PROMOTE_POLL_INTERVAL = 0.2


def contains_all(text: str, matching: Matching) -> bool:
    for variants in matching:
        if not any(v in text for v in variants):
            return False
    return True


class ConvergenceWaiter:
    """Deadline bounded polling of cluster nodes until they agree on a state.

    Every public wait runs under its own deadline and raises
    ``ConvergenceTimeoutError`` when it expires. Fan-out waits poll at most
    ``concurrency`` nodes at once, the first failed node cancels the rest.
    """

    def __init__(
        self,
        connector: NodeConnector,
        *,
        timeout: float = 300.0,
        poll_interval: float = 2.0,
        concurrency: int = 10,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self._connector = connector
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._concurrency = concurrency

    @property
    def timeout(self) -> float:
        return self._timeout

    @contextlib.asynccontextmanager
    async def _deadline(self, what: str) -> AsyncIterator[None]:
        try:
            async with atimeout(self._timeout):
                yield
        except ConvergenceTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            raise ConvergenceTimeoutError(what, self._timeout) from e

    async def _poll_node(
        self,
        addr: Address,
        query: str,
        predicate: Callable[[str], bool],
    ) -> None:
        # connection errors are fatal, query errors are retried until deadline
        client = await self._connector(addr)
        try:
            while True:
                try:
                    reply = await getattr(client, query)()
                except ReconcilerError as e:
                    logger.debug("Polling %s failed: %s", addr, e)
                else:
                    if predicate(reply):
                        return
                await asyncio.sleep(self._poll_interval)
        finally:
            await client.close()

    async def _fan_out(
        self,
        addrs: Sequence[Address],
        poll: Callable[[Address], Awaitable[None]],
    ) -> None:
        if not addrs:
            return

        semaphore = asyncio.Semaphore(self._concurrency)

        async def worker(addr: Address) -> None:
            async with semaphore:
                logger.debug("Checking %s...", addr)
                await poll(addr)
                logger.info("✓ %s correct", addr)

        tasks: List[asyncio.Task] = [asyncio.ensure_future(worker(addr)) for addr in addrs]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is not None:
                    raise task.exception()  # type: ignore
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cluster_nodes_contain(self, addr: Address, *matching: Sequence[str]) -> None:
        logger.info("Waiting for matching strings on %s...", addr)
        async with self._deadline(f"{addr} cluster nodes to contain {list(matching)}"):
            await self._poll_node(addr, "cluster_nodes", lambda r: contains_all(r, matching))
        logger.info("✓ Node has matching strings")

    async def all_nodes_cluster_nodes_contain(
        self,
        addrs: Sequence[Address],
        *matching: Sequence[str],
    ) -> None:
        logger.info("Waiting for matching strings across all given nodes...")
        logger.info("Nodes to check: %s", ", ".join(map(str, addrs)))
        for variants in matching:
            logger.info("  %s", list(variants))

        async def poll(addr: Address) -> None:
            await self._poll_node(addr, "cluster_nodes", lambda r: contains_all(r, matching))

        async with self._deadline(f"{len(addrs)} nodes cluster nodes to contain {list(matching)}"):
            await self._fan_out(addrs, poll)
        logger.info("✓ All nodes have matching strings and are consistent")

    async def all_nodes_cluster_info_state(self, addrs: Sequence[Address], state: str) -> None:
        logger.info("Waiting for cluster info %r across all given nodes...", state)
        logger.info("Nodes to check: %s", ", ".join(map(str, addrs)))

        key, _, value = state.partition(":")

        async def poll(addr: Address) -> None:
            await self._poll_node(addr, "cluster_info", lambda r: parse_info(r).get(key) == value)

        async with self._deadline(f"{len(addrs)} nodes cluster info to report {state!r}"):
            await self._fan_out(addrs, poll)
        logger.info("✓ All nodes are consistent and are in the desired cluster info state")

    async def statefulset_ready(self, sts: StatefulSetClient, expected_replicas: int) -> None:
        async with self._deadline(f"statefulset to have {expected_replicas} ready replicas"):
            await sts.wait_ready(expected_replicas, poll_interval=self._poll_interval)

    async def promote_original_shard_leader(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
        shard: Shard,
    ) -> Tuple[str, Optional[str]]:
        """Fail over a shard to its lowest ordinal member.

        Returns hosts of the new master and the demoted one, the latter is
        ``None`` if the master already had the lowest ordinal. Returns only
        after both nodes report their new roles.
        """

        master = topology.nodes.get(shard.master_id)
        if master is None or not master.is_master:
            raise TopologyError(f"master {shard.master_id} not found in topology")

        members = topology.shard_members(shard)
        unordered = [n.node_id for n in members if n.index is None]
        if unordered:
            raise TopologyError(f"shard {shard.index} members have no ordinal: {unordered}")

        leader = min(members, key=lambda n: n.index or 0)
        if leader.node_id == master.node_id:
            return master.host, None
        if leader.addr is None or master.addr is None:
            raise TopologyError(f"shard {shard.index} members have no address")

        logger.info("Promoting %s to master of shard %d", leader.host, shard.index)
        new_master = await cluster.node(leader.addr)
        old_master = await cluster.node(master.addr)
        await new_master.cluster_failover()

        async with self._deadline(f"{leader.host} to take over {master.host}"):
            while True:
                try:
                    new_info = parse_info(await new_master.info("replication"))
                    old_info = parse_info(await old_master.info("replication"))
                except ReconcilerError as e:
                    logger.debug("Polling replication info failed: %s", e)
                else:
                    if (
                        new_info.get("role") == "master"
                        and old_info.get("role") == "slave"
                        and old_info.get("master_host") == leader.host
                    ):
                        break
                await asyncio.sleep(PROMOTE_POLL_INTERVAL)

        logger.info("✓ %s is master, %s is replica", leader.host, master.host)
        return leader.host, master.host
