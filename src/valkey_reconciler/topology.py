from typing import Dict, List, Optional, Sequence, Set

from valkey_reconciler.errors import UnhealthyClusterError
from valkey_reconciler.log import logger
from valkey_reconciler.slots import SlotRangeTracker, desired_slot_ranges
from valkey_reconciler.structs import (
    UNHEALTHY_FLAGS,
    Address,
    ClusterNode,
    LinkState,
    MasterRole,
    MigrationRoute,
    ReplicaRole,
    Shard,
)


__all__ = (
    "ClusterTopology",
    "desired_topology",
    "replica_ordinal",
    "canonical_master_ordinal",
    "match_nodes",
    "is_same_topology_shape",
    "log_topology",
)


DEFAULT_PORT = 6379


class ClusterTopology:
    """Snapshot of cluster membership.

    Built either from a desired spec (``desired_topology``) or from
    ``CLUSTER NODES`` output (``parse_cluster_topology``). Never mutated
    after construction; fetch a new one after every cluster change.
    """

    def __init__(self) -> None:
        self.nodes: Dict[str, ClusterNode] = {}
        self.masters: List[ClusterNode] = []
        self.replicas: List[ClusterNode] = []
        self.migrations: Dict[MigrationRoute, SlotRangeTracker] = {}

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} nodes:{len(self.nodes)}, masters:{len(self.masters)}, "
            f"replicas:{len(self.replicas)}, migrations:{len(self.migrations)}>"
        )

    def add_node(self, node: ClusterNode) -> None:
        self.nodes[node.node_id] = node
        if isinstance(node.role, MasterRole):
            self.masters.append(node)
        elif isinstance(node.role, ReplicaRole):
            self.replicas.append(node)

    def fqdns(self) -> List[str]:
        return [node.host for node in self.nodes.values()]

    def addrs(self) -> List[Address]:
        return [node.addr for node in self.ordered_nodes() if node.addr is not None]

    def node_count(self) -> int:
        return len(self.masters) + len(self.replicas)

    def ordered_nodes(self) -> List[ClusterNode]:
        """Masters and replicas ordered by deployment ordinal"""

        nodes = self.masters + self.replicas
        return sorted(nodes, key=_index_key)

    def replicas_of(self, master_id: str) -> List[ClusterNode]:
        return sorted(
            (r for r in self.replicas if r.master_id == master_id),
            key=_index_key,
        )

    def master_of(self, replica: ClusterNode) -> Optional[ClusterNode]:
        if replica.master_id is None:
            return None
        master = self.nodes.get(replica.master_id)
        if master is None or not master.is_master:
            return None
        return master

    def find_by_host(self, host: str) -> Optional[ClusterNode]:
        for node in self.nodes.values():
            if node.host == host:
                return node
        return None

    def shards(self) -> List[Shard]:
        """Shards ordered by safety index, lowest (safest) first"""

        shards: List[Shard] = []
        for master in self.masters:
            indices = [master.index] + [r.index for r in self.replicas_of(master.node_id)]
            known = [i for i in indices if i is not None]
            lowest = min(known) if known else _NO_INDEX
            shards.append(Shard(lowest, master.node_id))
        shards.sort()
        return shards

    def shard_members(self, shard: Shard) -> List[ClusterNode]:
        master = self.nodes[shard.master_id]
        return [master] + self.replicas_of(master.node_id)

    def check_health(self) -> None:
        """Raise UnhealthyClusterError if the cluster is not in a stable shape."""

        expected_index = 0
        for node in self.ordered_nodes():
            for flag in node.flags:
                if flag in UNHEALTHY_FLAGS:
                    raise UnhealthyClusterError(f"node {node.node_id} is in {flag.value} state")
            if node.link_state is LinkState.DISCONNECTED:
                raise UnhealthyClusterError(f"node {node.node_id} is disconnected")

            if node.index != expected_index:
                raise UnhealthyClusterError(
                    f"missing node index. expected {expected_index}, got {node.index}"
                )
            expected_index += 1

        for replica in self.replicas:
            if self.master_of(replica) is None:
                raise UnhealthyClusterError(
                    f"replica {replica.node_id} refers to unknown master {replica.master_id}"
                )

        replicas_per_master: Optional[int] = None
        for master in self.masters:
            count = len(self.replicas_of(master.node_id))
            if replicas_per_master is None:
                replicas_per_master = count
            elif count != replicas_per_master:
                raise UnhealthyClusterError(
                    f"master {master.host or master.node_id} has {count} replicas, "
                    f"expected {replicas_per_master}"
                )

    def is_healthy(self) -> bool:
        try:
            self.check_health()
        except UnhealthyClusterError:
            return False
        return True

    def replicas_per_master(self) -> int:
        if not self.masters:
            return 0
        return len(self.replicas) // len(self.masters)


_NO_INDEX = 1 << 31


def _index_key(node: ClusterNode) -> int:
    index = node.index
    if index is None:
        return _NO_INDEX
    return index


def replica_ordinal(
    master_ordinal: int,
    replica_num: int,
    masters: int,
    replicas_per_master: int,
) -> int:
    return masters + master_ordinal * replicas_per_master + replica_num


def canonical_master_ordinal(ordinal: int, masters: int, replicas_per_master: int) -> Optional[int]:
    """Master ordinal the replica at ``ordinal`` belongs to in the desired layout."""

    if replicas_per_master <= 0 or ordinal < masters:
        return None
    master_ordinal = (ordinal - masters) // replicas_per_master
    if master_ordinal >= masters:
        return None
    return master_ordinal


def desired_topology(
    masters: int,
    replicas_per_master: int,
    *,
    host_template: str = "node-{ordinal}",
    port: int = DEFAULT_PORT,
) -> ClusterTopology:
    """Analytic topology for ``masters`` shards of ``replicas_per_master`` replicas.

    Masters live at ordinals ``0..masters-1``; replica ``j`` of master ``i``
    lives at ``masters + i * replicas_per_master + j``. Node ids are
    ``master-i`` and ``replica-i-j``, they never match a live cluster.
    """

    topology = ClusterTopology()
    slot_ranges = desired_slot_ranges(masters)

    for i in range(masters):
        master_id = f"master-{i}"
        topology.add_node(
            ClusterNode(
                node_id=master_id,
                addr=Address(host_template.format(ordinal=i), port),
                role=MasterRole((slot_ranges[i],)),
                connected=True,
            )
        )
        for j in range(replicas_per_master):
            ordinal = replica_ordinal(i, j, masters, replicas_per_master)
            topology.add_node(
                ClusterNode(
                    node_id=f"replica-{i}-{j}",
                    addr=Address(host_template.format(ordinal=ordinal), port),
                    role=ReplicaRole(master_id),
                    connected=True,
                )
            )

    return topology


def match_nodes(
    node: ClusterNode,
    topology: ClusterTopology,
    other: ClusterNode,
    other_topology: ClusterTopology,
) -> bool:
    """Structural identity of two nodes from two topologies.

    Ids and hostnames are ignored: masters match on ordinal and slot ranges,
    replicas on ordinal and their master's ordinal.
    """

    if node.index is None or node.index != other.index:
        return False

    if isinstance(node.role, MasterRole) and isinstance(other.role, MasterRole):
        return list(node.role.slot_ranges) == list(other.role.slot_ranges)

    if isinstance(node.role, ReplicaRole) and isinstance(other.role, ReplicaRole):
        master = topology.nodes.get(node.role.master_id)
        other_master = other_topology.nodes.get(other.role.master_id)
        if master is None or other_master is None:
            return False
        return master.index is not None and master.index == other_master.index

    return False


def _match_all(
    nodes: Sequence[ClusterNode],
    topology: ClusterTopology,
    other_nodes: Sequence[ClusterNode],
    other_topology: ClusterTopology,
) -> bool:
    if len(nodes) != len(other_nodes):
        return False

    matched: Set[int] = set()
    for node in nodes:
        for pos, other in enumerate(other_nodes):
            if pos in matched:
                continue
            if match_nodes(node, topology, other, other_topology):
                matched.add(pos)
                break
        else:
            return False
    return True


def is_same_topology_shape(topology: ClusterTopology, other: ClusterTopology) -> bool:
    """Whether both topologies describe the same structure regardless of node ids"""

    return (
        _match_all(topology.masters, topology, other.masters, other)
        and _match_all(topology.replicas, topology, other.replicas, other)
        and topology.migrations == other.migrations
    )


def log_topology(topology: ClusterTopology) -> None:
    logger.info("Cluster topology:")
    logger.info("  Masters:")
    for master in topology.masters:
        ranges = " ".join(str(r) for r in master.slot_ranges)
        logger.info("    %s %s", master.host or master.node_id, ranges)
    logger.info("  Replicas:")
    for replica in topology.replicas:
        master = topology.master_of(replica)
        logger.info(
            "    %s -> %s",
            replica.host or replica.node_id,
            master.host if master is not None else replica.master_id,
        )
    logger.info("  Shards: %s", " ".join(f"[{s.index}]" for s in topology.shards()))
    for route, tracker in topology.migrations.items():
        logger.info("  Migration %s: %s", route, tracker)
