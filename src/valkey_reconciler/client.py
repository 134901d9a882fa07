import asyncio
import functools
from typing import Dict, List, Optional, Sequence

from aioredis_cluster.aioredis import RedisError, create_connection

from valkey_reconciler.abc import AbcNodeClient
from valkey_reconciler.errors import NodeConnectionError, ReconcilerError
from valkey_reconciler.log import logger
from valkey_reconciler.parser import parse_cluster_topology, parse_info
from valkey_reconciler.structs import Address
from valkey_reconciler.topology import ClusterTopology
from valkey_reconciler.typedef import NodeConnector


__all__ = (
    "NodeClient",
    "ClusterClient",
    "create_node_client",
    "make_connector",
    "log_cluster_info",
    "log_cluster_nodes",
)


VERBATIM_PREFIX = "txt:"


def _ensure_str(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = str(value)
    if value.startswith(VERBATIM_PREFIX):
        value = value[len(VERBATIM_PREFIX) :]
    return value


class NodeClient(AbcNodeClient):
    def __init__(self, conn, addr: Address) -> None:
        self._conn = conn
        self._addr = addr

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._addr}>"

    @property
    def addr(self) -> Address:
        return self._addr

    async def execute(self, *args) -> str:
        try:
            result = await self._conn.execute(*args, encoding="utf-8")
        except (RedisError, OSError) as e:
            raise ReconcilerError(f"{self._addr}: {' '.join(map(str, args))} failed: {e}") from e
        return _ensure_str(result)

    async def cluster_nodes(self) -> str:
        return await self.execute(b"CLUSTER", b"NODES")

    async def cluster_info(self) -> str:
        return await self.execute(b"CLUSTER", b"INFO")

    async def info(self, section: str) -> str:
        return await self.execute(b"INFO", section)

    async def cluster_replicate(self, master_id: str) -> None:
        await self.execute(b"CLUSTER", b"REPLICATE", master_id)

    async def cluster_failover(self) -> None:
        await self.execute(b"CLUSTER", b"FAILOVER")

    async def close(self) -> None:
        self._conn.close()
        await self._conn.wait_closed()


async def create_node_client(
    addr: Address,
    *,
    username: Optional[str] = None,
    password: Optional[str] = None,
    connect_timeout: float = 5.0,
) -> NodeClient:
    try:
        conn = await create_connection(
            (addr.host, addr.port),
            username=username,
            password=password,
            timeout=connect_timeout,
        )
    except asyncio.TimeoutError as e:
        raise NodeConnectionError(addr, "connect timed out") from e
    except (RedisError, OSError) as e:
        raise NodeConnectionError(addr, repr(e)) from e

    return NodeClient(conn, addr)


def make_connector(
    *,
    username: Optional[str] = None,
    password: Optional[str] = None,
    connect_timeout: float = 5.0,
) -> NodeConnector:
    return functools.partial(
        create_node_client,
        username=username,
        password=password,
        connect_timeout=connect_timeout,
    )


class ClusterClient:
    """Keeps connections to a set of cluster members.

    ``refresh`` swaps the member list between phases, it is not safe to call
    while other coroutines query through this client.
    """

    def __init__(self, startup_nodes: Sequence[Address], connector: NodeConnector) -> None:
        if len(startup_nodes) < 1:
            raise ValueError("startup_nodes must be one at least")

        self._addrs: List[Address] = list(startup_nodes)
        self._connector = connector
        self._nodes: Dict[Address, AbcNodeClient] = {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} addrs:{len(self._addrs)}>"

    @property
    def addrs(self) -> List[Address]:
        return list(self._addrs)

    @property
    def seed(self) -> Address:
        return self._addrs[0]

    async def node(self, addr: Address) -> AbcNodeClient:
        if addr not in self._nodes:
            self._nodes[addr] = await self._connector(addr)
        return self._nodes[addr]

    async def refresh(self, addrs: Optional[Sequence[Address]] = None) -> None:
        await self.close()
        if addrs:
            self._addrs = list(addrs)

    async def close(self) -> None:
        nodes, self._nodes = self._nodes, {}
        for client in nodes.values():
            try:
                await client.close()
            except Exception as e:
                logger.warning("Unable to close connection to %s: %r", client.addr, e)

    async def _first_reply(self, method: str) -> str:
        last_err: Optional[BaseException] = None
        for addr in self._addrs:
            try:
                client = await self.node(addr)
                return await getattr(client, method)()
            except ReconcilerError as e:
                last_err = e
                logger.warning("Unable to query %s: %s", addr, e)
                self._nodes.pop(addr, None)
                continue

        if last_err is None:
            raise ReconcilerError("no cluster nodes to query")
        raise last_err

    async def cluster_nodes(self) -> str:
        return await self._first_reply("cluster_nodes")

    async def cluster_info(self) -> str:
        return await self._first_reply("cluster_info")

    async def get_topology(self) -> ClusterTopology:
        return parse_cluster_topology(await self.cluster_nodes())


async def log_cluster_info(client: ClusterClient) -> None:
    try:
        info = parse_info(await client.cluster_info())
    except ReconcilerError as e:
        logger.warning("Unable to get cluster info: %s", e)
        return
    logger.info("Cluster info:")
    for key, value in info.items():
        logger.info("  %s: %s", key, value)


async def log_cluster_nodes(client: ClusterClient) -> None:
    try:
        nodes = await client.cluster_nodes()
    except ReconcilerError as e:
        logger.warning("Unable to get cluster nodes: %s", e)
        return
    logger.info("Cluster nodes:")
    for line in nodes.strip().splitlines():
        logger.info("  %s", line)
