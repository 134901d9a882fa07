from typing import Dict, List, Optional, Tuple

from valkey_reconciler.errors import InvalidSlotRangeError
from valkey_reconciler.log import logger
from valkey_reconciler.slots import TOTAL_SLOTS, SlotRange, SlotRangeTracker
from valkey_reconciler.structs import (
    Address,
    ClusterNode,
    LinkState,
    MasterRole,
    MigrationRoute,
    NodeFlag,
    NodeRole,
    ReplicaRole,
    SlotMigration,
    SlotMigrationState,
)
from valkey_reconciler.topology import ClusterTopology


__all__ = [
    "parse_info",
    "parse_node_address",
    "parse_node_slots",
    "parse_cluster_node_line",
    "parse_cluster_topology",
]


MIN_NODE_FIELDS = 8
MIGRATION_DELIMITER = "->-"
IMPORT_DELIMITER = "-<-"


def parse_info(info: str) -> Dict[str, str]:
    """Parse ``key:value`` lines of INFO / CLUSTER INFO replies."""

    ret: Dict[str, str] = {}
    for line in info.strip().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, value = line.split(":", 1)
        ret[key] = value
    return ret


def _parse_slot(raw: str) -> Optional[int]:
    if not raw.isascii() or not raw.isdigit():
        return None
    slot = int(raw)
    if slot >= TOTAL_SLOTS:
        return None
    return slot


def parse_node_slots(tokens: List[str]) -> Tuple[List[SlotRange], List[SlotMigration]]:
    """
    @see: https://valkey.io/commands/cluster-nodes/#serialization-format
    @see: https://valkey.io/commands/cluster-nodes/#special-slot-entries

    Malformed and out of range tokens are skipped.
    """

    slots: List[SlotRange] = []
    migrations: List[SlotMigration] = []

    for token in tokens:
        if token.startswith("[") and token.endswith("]"):
            inner = token[1:-1]
            if MIGRATION_DELIMITER in inner:
                raw_slot, node_id = inner.split(MIGRATION_DELIMITER, 1)
                state = SlotMigrationState.MIGRATING
            elif IMPORT_DELIMITER in inner:
                raw_slot, node_id = inner.split(IMPORT_DELIMITER, 1)
                state = SlotMigrationState.IMPORTING
            else:
                continue
            slot = _parse_slot(raw_slot)
            if slot is not None and node_id:
                migrations.append(SlotMigration(slot, node_id, state))
            continue

        if "-" in token:
            parts = token.split("-")
            if len(parts) != 2:
                continue
            start, end = _parse_slot(parts[0]), _parse_slot(parts[1])
            if start is None or end is None or start > end:
                continue
            slots.append(SlotRange(start, end))
            continue

        slot = _parse_slot(token)
        if slot is not None:
            slots.append(SlotRange(slot, slot))

    return slots, migrations


def parse_node_address(raw: str) -> Optional[Address]:
    """``ip:port@cport[,hostname]`` -> Address(hostname or ip, port)"""

    base, _, extra = raw.partition(",")
    hostname = extra.split(",", 1)[0]
    client_addr = base.split("@", 1)[0]
    ip, sep, raw_port = client_addr.rpartition(":")
    if not sep or not raw_port.isascii() or not raw_port.isdigit():
        return None

    host = hostname or ip
    if not host:
        return None
    return Address(host, int(raw_port))


def parse_cluster_node_line(line: str) -> Optional[ClusterNode]:
    fields = line.split()
    if len(fields) < MIN_NODE_FIELDS:
        return None

    node_id, raw_addr, raw_flags, master_id = fields[:4]
    link_state = fields[7]

    flags = tuple(NodeFlag(f) for f in raw_flags.split(",") if f)
    role: Optional[NodeRole] = None
    migrations: List[SlotMigration] = []
    if NodeFlag.MASTER in flags:
        slot_ranges, migrations = parse_node_slots(fields[MIN_NODE_FIELDS:])
        role = MasterRole(tuple(slot_ranges))
    elif NodeFlag.SLAVE in flags or NodeFlag.REPLICA in flags:
        role = ReplicaRole(master_id)

    return ClusterNode(
        node_id=node_id,
        addr=parse_node_address(raw_addr),
        role=role,
        connected=link_state == LinkState.CONNECTED.value,
        flags=flags,
        link_state=LinkState(link_state),
        migrations=tuple(migrations),
    )


def _collect_migrations(topology: ClusterTopology) -> None:
    for node in topology.masters:
        for migration in node.migrations:
            peer = topology.nodes.get(migration.node_id)
            if peer is None:
                continue
            if migration.state is SlotMigrationState.MIGRATING:
                source, destination = node.index, peer.index
            else:
                source, destination = peer.index, node.index
            if source is None or destination is None:
                continue

            route = MigrationRoute(source, destination)
            tracker = topology.migrations.setdefault(route, SlotRangeTracker())
            if tracker.has_slot(migration.slot):
                # both sides of one migration are visible
                continue
            try:
                tracker.add_slot(migration.slot)
            except InvalidSlotRangeError:
                logger.warning("Skip invalid migration marker %r of %s", migration, node.node_id)


def parse_cluster_topology(output: str) -> ClusterTopology:
    """Build topology from ``CLUSTER NODES`` output.

    Lines with less than eight fields are skipped, malformed slot tokens
    are dropped. Never raises on malformed input.
    """

    topology = ClusterTopology()

    for line in output.strip().splitlines():
        node = parse_cluster_node_line(line)
        if node is None:
            if line.strip():
                logger.debug("Skip malformed cluster nodes line: %r", line)
            continue
        topology.add_node(node)

    topology.masters.sort(key=_sort_key)
    topology.replicas.sort(key=_sort_key)
    _collect_migrations(topology)

    return topology


def _sort_key(node: ClusterNode) -> Tuple[int, int]:
    index = node.index
    if index is None:
        return (1, 0)
    return (0, index)
