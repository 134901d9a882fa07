from typing import List, Optional

from valkey_reconciler.cli import ValkeyCli
from valkey_reconciler.client import ClusterClient, make_connector
from valkey_reconciler.config import Env
from valkey_reconciler.errors import ReconcilerError, TopologyError
from valkey_reconciler.k8s import StatefulSetClient
from valkey_reconciler.log import logger
from valkey_reconciler.parser import parse_info
from valkey_reconciler.structs import Address, ClusterNode
from valkey_reconciler.topology import ClusterTopology
from valkey_reconciler.typedef import NodeConnector
from valkey_reconciler.waiters import ConvergenceWaiter


__all__ = [
    "BaseCommand",
    "replica_matching",
    "master_matching",
    "surviving_addrs",
]


def replica_matching(host: str, master_id: Optional[str] = None) -> List[str]:
    if master_id is None:
        return [f"{host} slave", f"{host} myself,slave"]
    return [f"{host} slave {master_id}", f"{host} myself,slave {master_id}"]


def master_matching(host: str) -> List[str]:
    return [f"{host} master", f"{host} myself,master"]


class BaseCommand:
    name: str = ""

    def __init__(
        self,
        env: Env,
        *,
        connector: Optional[NodeConnector] = None,
        cli: Optional[ValkeyCli] = None,
        statefulset: Optional[StatefulSetClient] = None,
        waiter: Optional[ConvergenceWaiter] = None,
    ) -> None:
        self.env = env
        if connector is None:
            connector = make_connector(username=env.admin_user, password=env.admin_password)
        self.connector = connector
        if cli is None:
            cli = ValkeyCli(
                username=env.admin_user,
                password=env.admin_password,
                binary=env.cli_binary,
            )
        self.cli = cli
        if statefulset is None:
            statefulset = StatefulSetClient(env.namespace, env.statefulset_name)
        self.statefulset = statefulset
        if waiter is None:
            waiter = ConvergenceWaiter(
                connector,
                timeout=env.wait_timeout,
                poll_interval=env.poll_interval,
                concurrency=env.wait_concurrency,
            )
        self.waiter = waiter

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.env.namespace}/{self.env.cluster_name}>"

    async def run(self) -> None:
        raise NotImplementedError

    def cluster_client(self, addrs: List[Address]) -> ClusterClient:
        return ClusterClient(addrs, self.connector)

    async def _is_member(self, addr: Address) -> bool:
        try:
            node = await self.connector(addr)
        except ReconcilerError as e:
            logger.warning("Skip %s: %s", addr, e)
            return False
        try:
            info = parse_info(await node.cluster_info())
        except ReconcilerError as e:
            logger.warning("Skip %s: %s", addr, e)
            return False
        finally:
            await node.close()

        return info.get("cluster_size", "0") != "0"

    async def discover_members(self) -> List[Address]:
        """Addresses of StatefulSet pods which are part of the cluster, by ordinal"""

        pods_count = await self.statefulset.replica_count()
        members = [addr for addr in self.env.pod_addrs(pods_count) if await self._is_member(addr)]
        if not members:
            raise TopologyError(f"no cluster members found among {pods_count} pods")

        logger.info("Cluster members: %s", ", ".join(map(str, members)))
        return members

    def log_configuration(self) -> None:
        env = self.env
        logger.info("Configuration:")
        logger.info("  Masters: %d", env.masters)
        logger.info("  Replicas per master: %d", env.replicas_per_master)
        logger.info("  Total nodes: %d", env.total_nodes)
        logger.info("  Cluster name: %s", env.cluster_name)
        logger.info("  Namespace: %s", env.namespace)


def surviving_addrs(topology: ClusterTopology, removed: List[ClusterNode]) -> List[Address]:
    removed_ids = {node.node_id for node in removed}
    return [
        node.addr
        for node in topology.ordered_nodes()
        if node.node_id not in removed_ids and node.addr is not None
    ]
