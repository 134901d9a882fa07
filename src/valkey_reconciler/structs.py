import dataclasses
import enum
from typing import Any, NamedTuple, Optional, Tuple, Union

from valkey_reconciler.errors import NodeIndexError
from valkey_reconciler.slots import SlotRange


__all__ = (
    "Address",
    "NodeFlag",
    "LinkState",
    "MasterRole",
    "ReplicaRole",
    "NodeRole",
    "SlotMigrationState",
    "SlotMigration",
    "ClusterNode",
    "MigrationRoute",
    "Shard",
)


class Address(NamedTuple):
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    def find_index(self) -> Optional[int]:
        """Deployment ordinal trailing the first hostname label.

        ``valkey-demo-3.valkey-demo-headless.ns.svc`` -> ``3``
        ``valkey-abc.svc`` -> ``None``
        """

        label = self.host.split(".", 1)[0]
        _, sep, tail = label.rpartition("-")
        if not sep or not tail.isascii() or not tail.isdigit():
            return None
        return int(tail)

    def index(self) -> int:  # type: ignore[override]
        """Deployment ordinal of the host, raises NodeIndexError if missing.

        Shadows ``tuple.index``: positional lookup of a field value is not
        available on addresses.
        """

        index = self.find_index()
        if index is None:
            raise NodeIndexError(self.host)
        return index


@enum.unique
class NodeFlag(enum.Enum):
    UNKNOWN = "unknown"
    MYSELF = "myself"
    MASTER = "master"
    SLAVE = "slave"
    REPLICA = "replica"
    PFAIL = "fail?"
    FAIL = "fail"
    HANDSHAKE = "handshake"
    NOADDR = "noaddr"
    NOFAILOVER = "nofailover"
    NOFLAGS = "noflags"

    @classmethod
    def _missing_(cls, value: Any) -> "NodeFlag":
        return cls.UNKNOWN


UNHEALTHY_FLAGS = frozenset({NodeFlag.FAIL, NodeFlag.PFAIL, NodeFlag.HANDSHAKE, NodeFlag.NOADDR})


@enum.unique
class LinkState(enum.Enum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"

    @classmethod
    def _missing_(cls, value: Any) -> "LinkState":
        return cls.UNKNOWN


@dataclasses.dataclass(frozen=True)
class MasterRole:
    slot_ranges: Tuple[SlotRange, ...] = ()


@dataclasses.dataclass(frozen=True)
class ReplicaRole:
    master_id: str


NodeRole = Union[MasterRole, ReplicaRole]


@enum.unique
class SlotMigrationState(enum.Enum):
    MIGRATING = "migrating"
    IMPORTING = "importing"


class SlotMigration(NamedTuple):
    slot: int
    # destination for migrating, source for importing
    node_id: str
    state: SlotMigrationState


@dataclasses.dataclass
class ClusterNode:
    node_id: str
    addr: Optional[Address] = None
    role: Optional[NodeRole] = None
    connected: bool = False
    flags: Tuple[NodeFlag, ...] = ()
    link_state: LinkState = LinkState.UNKNOWN
    migrations: Tuple[SlotMigration, ...] = ()

    @property
    def index(self) -> Optional[int]:
        if self.addr is None:
            return None
        return self.addr.find_index()

    @property
    def host(self) -> str:
        if self.addr is None:
            return ""
        return self.addr.host

    @property
    def is_master(self) -> bool:
        return isinstance(self.role, MasterRole)

    @property
    def is_replica(self) -> bool:
        return isinstance(self.role, ReplicaRole)

    @property
    def slot_ranges(self) -> Tuple[SlotRange, ...]:
        if isinstance(self.role, MasterRole):
            return self.role.slot_ranges
        return ()

    @property
    def master_id(self) -> Optional[str]:
        if isinstance(self.role, ReplicaRole):
            return self.role.master_id
        return None

    def has_flag(self, flag: NodeFlag) -> bool:
        return flag in self.flags


class MigrationRoute(NamedTuple):
    """Slot move between two masters identified by deployment ordinal."""

    source: int
    destination: int

    def __str__(self) -> str:
        return f"{self.source}->{self.destination}"


class Shard(NamedTuple):
    # lowest ordinal among the master and its replicas
    index: int
    master_id: str
