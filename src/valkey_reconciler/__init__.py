from ._version import __version__
from .client import ClusterClient, NodeClient, create_node_client
from .commands import InitCommand, ScaleDownCommand, ScaleUpCommand
from .config import ClusterSpec, Env
from .errors import (
    CliError,
    CliNotFoundError,
    ConfigError,
    ConvergenceTimeoutError,
    InconsistentStateError,
    InvalidSlotRangeError,
    KubernetesError,
    MasterCountMismatchError,
    NodeConnectionError,
    NodeIndexError,
    ReconcilerError,
    SlotOverlapError,
    TopologyError,
    UnhealthyClusterError,
)
from .parser import parse_cluster_topology
from .planner import SlotsReconcilePlan, calculate_slots_to_reconcile
from .slots import TOTAL_SLOTS, SlotBitset, SlotRange, SlotRangeTracker, desired_slot_ranges
from .structs import Address, ClusterNode, MasterRole, MigrationRoute, ReplicaRole, Shard
from .topology import ClusterTopology, desired_topology, is_same_topology_shape

__all__ = [
    "__version__",
    # Slot space
    "TOTAL_SLOTS",
    "SlotRange",
    "SlotRangeTracker",
    "SlotBitset",
    "desired_slot_ranges",
    # Topology
    "Address",
    "ClusterNode",
    "MasterRole",
    "ReplicaRole",
    "MigrationRoute",
    "Shard",
    "ClusterTopology",
    "desired_topology",
    "is_same_topology_shape",
    "parse_cluster_topology",
    # Planner
    "SlotsReconcilePlan",
    "calculate_slots_to_reconcile",
    # Clients
    "NodeClient",
    "ClusterClient",
    "create_node_client",
    # Commands
    "InitCommand",
    "ScaleUpCommand",
    "ScaleDownCommand",
    # Config
    "ClusterSpec",
    "Env",
    # Errors
    "ReconcilerError",
    "ConfigError",
    "InvalidSlotRangeError",
    "SlotOverlapError",
    "NodeIndexError",
    "TopologyError",
    "MasterCountMismatchError",
    "UnhealthyClusterError",
    "InconsistentStateError",
    "ConvergenceTimeoutError",
    "NodeConnectionError",
    "CliError",
    "CliNotFoundError",
    "KubernetesError",
]
