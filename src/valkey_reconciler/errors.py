import asyncio
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from valkey_reconciler.structs import Address


__all__ = [
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


class ReconcilerError(Exception):
    """Base class for all reconciler exceptions."""


class ConfigError(ReconcilerError):
    """Raises while desired cluster spec or environment is invalid"""


class InvalidSlotRangeError(ReconcilerError, ValueError):
    """Raises than slot range is out of slot space or reversed"""

    def __init__(self, start: int, end: int, msg: Optional[str] = None) -> None:
        if msg is None:
            msg = f"invalid slot range: [{start}-{end}]"
        super().__init__(msg)

        self.start = start
        self.end = end


class SlotOverlapError(InvalidSlotRangeError):
    """Raises than slot range overlaps with already tracked range"""

    def __init__(self, start: int, end: int, other_start: int, other_end: int) -> None:
        super().__init__(
            start,
            end,
            f"slot overlap detected: [{start}-{end}] overlaps "
            f"with existing [{other_start}-{other_end}]",
        )

        self.other_start = other_start
        self.other_end = other_end


class NodeIndexError(ReconcilerError, ValueError):
    """Raises than hostname has no trailing deployment ordinal"""

    def __init__(self, host: str) -> None:
        super().__init__(f"unable to derive node index from host {host!r}")

        self.host = host


class TopologyError(ReconcilerError):
    """Structural precondition violation"""


class MasterCountMismatchError(TopologyError):
    def __init__(self, current: int, desired: int) -> None:
        super().__init__(
            f"current topology has {current} masters, desired topology has {desired} masters"
        )

        self.current = current
        self.desired = desired


class UnhealthyClusterError(TopologyError):
    """Raises while cluster topology is not healthy"""


class InconsistentStateError(TopologyError):
    """Cluster drifted in a direction the running operation never produces.

    Logic error, retrying without external correction repeats it.
    """


class ConvergenceTimeoutError(ReconcilerError, asyncio.TimeoutError):
    """Raises than nodes did not converge before deadline"""

    def __init__(self, what: str, timeout: float) -> None:
        super().__init__(f"timed out after {timeout:.1f}s waiting for {what}")

        self.what = what
        self.timeout = timeout


class NodeConnectionError(ReconcilerError):
    def __init__(self, addr: "Address", reason: str = "") -> None:
        msg = f"unable to connect to {addr}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)

        self.addr = addr


class CliError(ReconcilerError):
    """Raises than valkey-cli command failed"""

    def __init__(self, args: Sequence[str], returncode: Optional[int], msg: str = "") -> None:
        if not msg:
            msg = f"valkey-cli {' '.join(args)} exited with code {returncode}"
        super().__init__(msg)

        self.args_ = tuple(args)
        self.returncode = returncode


class CliNotFoundError(CliError):
    def __init__(self, binary: str) -> None:
        super().__init__((), None, f"{binary} is not installed")

        self.binary = binary


class KubernetesError(ReconcilerError):
    pass
