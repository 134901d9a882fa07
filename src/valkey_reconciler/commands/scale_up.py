from typing import Dict, List

from valkey_reconciler.client import ClusterClient, log_cluster_info, log_cluster_nodes
from valkey_reconciler.commands.base import BaseCommand, replica_matching
from valkey_reconciler.errors import InconsistentStateError
from valkey_reconciler.log import logger
from valkey_reconciler.structs import Address
from valkey_reconciler.topology import ClusterTopology, log_topology


class ScaleUpCommand(BaseCommand):
    """Grow the cluster to the desired masters and replicas per master.

    New masters are added one by one, each acknowledged by every known node
    before the next. Free pods then become replicas of masters short of
    replicas, and finally slots are rebalanced across all masters.
    """

    name = "scale-up"

    async def run(self) -> None:
        env = self.env
        logger.info("=== Valkey Cluster Scaling Up ===")
        self.log_configuration()

        await self.waiter.statefulset_ready(self.statefulset, env.total_nodes)

        cluster = self.cluster_client(await self.discover_members())
        try:
            await log_cluster_info(cluster)
            await log_cluster_nodes(cluster)

            topology = await cluster.get_topology()

            current_masters = len(topology.masters)
            if current_masters < env.masters:
                topology = await self._add_masters(cluster, topology)
            elif current_masters > env.masters:
                raise InconsistentStateError(
                    "current cluster has more masters than desired during scale up. "
                    f"desired masters: {env.masters}, current cluster masters: {current_masters}"
                )

            if topology.node_count() < env.total_nodes:
                topology = await self._add_replicas(cluster, topology)

            await self._finalize(cluster, topology)
        finally:
            await cluster.close()

        logger.info("=== Scale Up Complete ===")

    def _free_ordinals(self, topology: ClusterTopology) -> List[int]:
        used = {node.index for node in topology.ordered_nodes()}
        return [i for i in range(self.env.total_nodes) if i not in used]

    async def _add_masters(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
    ) -> ClusterTopology:
        logger.info("Adding new masters...")

        to_add = self.env.masters - len(topology.masters)
        free = self._free_ordinals(topology)
        if len(free) < to_add:
            raise InconsistentStateError(
                f"expected {to_add} free nodes for new masters, got {len(free)}"
            )

        addrs = topology.addrs()
        matching = [[node.host] for node in topology.ordered_nodes()]

        for ordinal in free[:to_add]:
            addr = self.env.pod_addr(ordinal)
            live = await cluster.get_topology()
            if live.find_by_host(addr.host) is not None:
                raise InconsistentStateError(
                    f"pod {addr.host} is already part of the cluster. "
                    "expected pod to not be part of cluster"
                )

            logger.info("  Adding master %s...", addr.host)
            await self.cli.add_node(addr, cluster.seed)

            addrs.append(addr)
            matching.append([addr.host])
            await self.waiter.all_nodes_cluster_nodes_contain(addrs, *matching)
            logger.info("  ✓ Master %s added", addr.host)

        await cluster.refresh(addrs)
        topology = await cluster.get_topology()
        log_topology(topology)
        logger.info("✓ Masters added")
        return topology

    async def _add_replicas(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
    ) -> ClusterTopology:
        env = self.env

        logger.info("Finding free nodes...")
        free = self._free_ordinals(topology)
        expected_free = env.total_nodes - topology.node_count()
        if len(free) < expected_free:
            raise InconsistentStateError(f"expected {expected_free} free nodes, got {len(free)}")
        for ordinal in free:
            logger.info("  %s", env.pod_fqdn(ordinal))
        logger.info("✓ Found free nodes")

        logger.info("Adding/checking replicas...")
        addrs = topology.addrs()
        added: Dict[Address, str] = {}

        for master in topology.masters:
            missing = env.replicas_per_master - len(topology.replicas_of(master.node_id))
            if missing < 0:
                raise InconsistentStateError(
                    f"master {master.host} has more replicas than desired "
                    f"({env.replicas_per_master})"
                )

            for _ in range(missing):
                if not free:
                    raise InconsistentStateError("not enough free nodes to add replicas")
                addr = env.pod_addr(free.pop(0))

                logger.info("  Adding replica %s for master %s...", addr.host, master.node_id)
                await self.cli.add_node(addr, cluster.seed)

                # replica must learn the master id via gossip before it can follow it
                await self.waiter.cluster_nodes_contain(addr, [master.node_id])
                replica = await self.connector(addr)
                try:
                    await replica.cluster_replicate(master.node_id)
                finally:
                    await replica.close()

                addrs.append(addr)
                await self.waiter.all_nodes_cluster_nodes_contain(
                    addrs, replica_matching(addr.host, master.node_id)
                )
                added[addr] = master.node_id
                logger.info("✓ Replica %s added for master %s", addr.host, master.node_id)

        if added:
            await self._wait_entire_cluster(added)
            await cluster.refresh(addrs)
            topology = await cluster.get_topology()
            log_topology(topology)

        logger.info("✓ Replicas added or checked")
        return topology

    async def _wait_entire_cluster(self, added: Dict[Address, str]) -> None:
        all_addrs = self.env.pod_addrs()
        matching = [[addr.host] for addr in all_addrs]
        matching += [replica_matching(addr.host, master_id) for addr, master_id in added.items()]
        await self.waiter.all_nodes_cluster_nodes_contain(all_addrs, *matching)

    async def _finalize(self, cluster: ClusterClient, topology: ClusterTopology) -> None:
        if not topology.is_healthy():
            logger.error("Cluster is unhealthy with a proper amount of nodes")
            await log_cluster_nodes(cluster)
            topology.check_health()

        logger.info("Rebalancing slots...")
        await self.cli.rebalance(cluster.seed, use_empty_masters=True, replace=True)
        logger.info("✓ Slots rebalanced")

        await log_cluster_nodes(cluster)
