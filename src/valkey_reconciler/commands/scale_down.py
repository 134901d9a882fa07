from typing import List, Sequence

from valkey_reconciler.client import ClusterClient, log_cluster_info, log_cluster_nodes
from valkey_reconciler.commands.base import (
    BaseCommand,
    master_matching,
    replica_matching,
    surviving_addrs,
)
from valkey_reconciler.errors import InconsistentStateError, TopologyError
from valkey_reconciler.log import logger
from valkey_reconciler.structs import Address, ClusterNode, Shard
from valkey_reconciler.topology import ClusterTopology, canonical_master_ordinal, log_topology


class ScaleDownCommand(BaseCommand):
    """Shrink the cluster so that only pods with ordinals below the desired
    node count carry data.

    Every phase re-fetches the topology it works on, so an interrupted run is
    continued by running the command again.
    """

    name = "scale-down"

    async def run(self) -> None:
        env = self.env
        logger.info("=== Valkey Cluster Scaling Down ===")

        cluster = self.cluster_client(await self.discover_members())
        try:
            topology = await cluster.get_topology()
            topology.check_health()

            await log_cluster_info(cluster)
            await log_cluster_nodes(cluster)

            current_masters = len(topology.masters)
            current_replicas_per_master = topology.replicas_per_master()
            original_node_count = topology.node_count()

            logger.info("Current cluster information:")
            logger.info("  Masters: %d", current_masters)
            logger.info("  Replicas: %d", len(topology.replicas))
            logger.info("  Total nodes: %d", original_node_count)
            logger.info("  Replicas per master: %d", current_replicas_per_master)
            logger.info("Desired total nodes: %d", env.total_nodes)

            if current_masters > env.masters:
                topology = await self._remove_shards(cluster, topology)
            elif current_masters < env.masters:
                topology = await self._make_room_for_masters(cluster, topology)

            if current_replicas_per_master > env.replicas_per_master:
                topology = await self._remove_replicas_from_masters(cluster, topology)

            if original_node_count <= env.total_nodes:
                logger.info("No need to scale down nodes")
                await log_cluster_info(cluster)
                await log_cluster_nodes(cluster)
                logger.info("=== Scale Down Complete ===")
                return

            topology = await self._move_masters_to_safe_spots(cluster, topology)
            topology = await self._fill_safe_spots(cluster, topology)
            topology = await self._rehome_replicas(cluster, topology)
            await self._remove_danger_zone_nodes(cluster, topology)

            await log_cluster_nodes(cluster)
        finally:
            await cluster.close()

        logger.info("=== Scale Down Complete ===")

    @property
    def last_safe_index(self) -> int:
        return self.env.total_nodes - 1

    async def _forget_nodes(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
        removed: Sequence[ClusterNode],
    ) -> ClusterTopology:
        left = surviving_addrs(topology, list(removed))
        await self.waiter.all_nodes_cluster_info_state(left, f"cluster_known_nodes:{len(left)}")
        await cluster.refresh(left)
        return await cluster.get_topology()

    async def _remove_shards(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
    ) -> ClusterTopology:
        logger.info("Removing shards...")

        shards = topology.shards()[self.env.masters :]
        logger.info("Shards to remove:")
        for shard in shards:
            logger.info("  [%d] master %s", shard.index, shard.master_id)

        # least safe shard first
        for shard in reversed(shards):
            topology = await self._remove_shard(cluster, topology, shard)

        log_topology(topology)
        logger.info("✓ Shards removed")
        await log_cluster_nodes(cluster)
        return topology

    async def _remove_shard(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
        shard: Shard,
    ) -> ClusterTopology:
        master = topology.nodes.get(shard.master_id)
        if master is None or not master.is_master:
            raise TopologyError(f"master {shard.master_id} not found in topology")
        replicas = topology.replicas_of(master.node_id)
        removed = [master] + replicas

        left = surviving_addrs(topology, removed)
        if not left:
            raise InconsistentStateError(
                f"no nodes would be left after removing shard {shard.index}"
            )
        via = left[0]

        for replica in replicas:
            logger.info("  Removing replica %s...", replica.host)
            await self.cli.del_node(via, replica.node_id)

        weights = {
            m.node_id: 0.0 if m.node_id == master.node_id else 1.0 for m in topology.masters
        }
        logger.info("  Moving slots away from master %s...", master.host)
        await self.cli.rebalance(via, use_empty_masters=True, weights=weights, replace=True)

        logger.info("  Removing master %s...", master.host)
        await self.cli.del_node(via, master.node_id)

        return await self._forget_nodes(cluster, topology, removed)

    async def _promote_and_wait(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
        shard: Shard,
        addrs: Sequence[Address],
    ) -> None:
        new_master_host, old_master_host = await self.waiter.promote_original_shard_leader(
            cluster, topology, shard
        )
        if old_master_host is None:
            return

        await self.waiter.all_nodes_cluster_nodes_contain(
            addrs,
            master_matching(new_master_host),
            replica_matching(old_master_host),
        )

    async def _make_room_for_masters(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
    ) -> ClusterTopology:
        logger.info("Making room for new masters in safe spots...")

        env = self.env
        current_masters = len(topology.masters)
        ordered = topology.ordered_nodes()
        if env.masters > len(ordered):
            to_remove = ordered[current_masters:]
        else:
            to_remove = ordered[current_masters : env.masters]
        left = surviving_addrs(topology, to_remove)

        logger.info("Nodes to remove:")
        for node in to_remove:
            logger.info("  %s", node.host)

        for node in to_remove:
            current = await cluster.get_topology()
            live = current.nodes.get(node.node_id)
            if live is not None and live.is_master:
                logger.info("Node %s is a master, moving master to a safe spot...", node.host)
                shard = next((s for s in current.shards() if s.master_id == node.node_id), None)
                if shard is None:
                    raise TopologyError(f"shard for master {node.node_id} not found in topology")
                await self._promote_and_wait(cluster, current, shard, left)
                logger.info("✓ Master moved to safe spot")

            await self.cli.del_node(left[0], node.node_id)

        topology = await self._forget_nodes(cluster, topology, to_remove)
        log_topology(topology)
        logger.info("✓ Nodes removed")
        return topology

    async def _remove_replicas_from_masters(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
    ) -> ClusterTopology:
        logger.info("Removing replicas...")

        desired = self.env.replicas_per_master
        removed: List[ClusterNode] = []
        for master in topology.masters:
            replicas = topology.replicas_of(master.node_id)
            if len(replicas) <= desired:
                continue
            removed.extend(replicas[desired:])

        left = surviving_addrs(topology, removed)
        for node in removed:
            logger.info("  Removing replica %s of %s", node.host, node.master_id)
            await self.cli.del_node(left[0], node.node_id)

        topology = await self._forget_nodes(cluster, topology, removed)
        log_topology(topology)
        logger.info("✓ Replicas removed")
        return topology

    def _canonical_master(self, topology: ClusterTopology, ordinal: int):
        master_ordinal = canonical_master_ordinal(
            ordinal, self.env.masters, self.env.replicas_per_master
        )
        if master_ordinal is None:
            return None
        for master in topology.masters:
            if master.index == master_ordinal:
                return master
        return None

    async def _fill_safe_spots(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
    ) -> ClusterTopology:
        """Attach free pods of the safe window as replicas of their canonical master"""

        used = {node.index for node in topology.ordered_nodes()}
        free = [i for i in range(self.env.total_nodes) if i not in used]
        if not free:
            return topology

        logger.info("Filling free safe spots...")
        addrs = topology.addrs()
        for ordinal in free:
            master = self._canonical_master(topology, ordinal)
            if master is None:
                logger.warning("No master for safe spot %d, leave it free", ordinal)
                continue

            addr = self.env.pod_addr(ordinal)
            logger.info("  Adding replica %s for master %s...", addr.host, master.host)
            await self.cli.add_node(addr, cluster.seed)
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

        await cluster.refresh(addrs)
        topology = await cluster.get_topology()
        log_topology(topology)
        logger.info("✓ Safe spots filled")
        return topology

    async def _rehome_replicas(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
    ) -> ClusterTopology:
        """Point safe replicas to their canonical master"""

        addrs = topology.addrs()
        modified = False
        for replica in list(topology.replicas):
            index = replica.index
            if index is None or index > self.last_safe_index or replica.addr is None:
                continue
            target = self._canonical_master(topology, index)
            if target is None or target.node_id == replica.master_id:
                continue
            logger.info("Moving replica %s to master %s...", replica.host, target.host)
            node = await cluster.node(replica.addr)
            await node.cluster_replicate(target.node_id)
            await self.waiter.all_nodes_cluster_nodes_contain(
                addrs, replica_matching(replica.host, target.node_id)
            )
            modified = True

        if not modified:
            return topology

        topology = await cluster.get_topology()
        log_topology(topology)
        logger.info("✓ Replicas moved to their masters")
        return topology

    async def _move_masters_to_safe_spots(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
    ) -> ClusterTopology:
        logger.info("Moving masters to safe spots...")

        addrs = topology.addrs()
        modified = False
        for shard in topology.shards():
            master = topology.nodes[shard.master_id]
            if master.index is not None and master.index <= self.last_safe_index:
                continue
            if shard.index > self.last_safe_index:
                raise InconsistentStateError(
                    f"shard of master {master.host} has no member in a safe spot"
                )

            logger.info("Moving master %s to safe spot...", master.host)
            await self._promote_and_wait(cluster, topology, shard, addrs)
            logger.info("✓ Master moved to safe spot")
            modified = True

        if not modified:
            logger.info("No need to move masters to safe spots. Masters are already in safe spots")
            return topology

        topology = await cluster.get_topology()
        log_topology(topology)
        logger.info("✓ Masters moved to safe spots")
        return topology

    async def _remove_danger_zone_nodes(
        self,
        cluster: ClusterClient,
        topology: ClusterTopology,
    ) -> ClusterTopology:
        logger.info("Removing nodes in danger zones...")

        doomed = [
            node
            for node in topology.ordered_nodes()
            if node.index is None or node.index > self.last_safe_index
        ]
        left = surviving_addrs(topology, doomed)
        for node in doomed:
            if node.is_master:
                raise InconsistentStateError(f"master {node.host} is still in a danger zone")
            logger.info("  %s", node.host)
            await self.cli.del_node(left[0], node.node_id)

        topology = await self._forget_nodes(cluster, topology, doomed)
        log_topology(topology)
        logger.info("✓ Nodes removed from danger zones")
        return topology
