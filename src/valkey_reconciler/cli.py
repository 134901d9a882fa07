import asyncio
import shutil
from typing import List, Mapping, Optional, Sequence

from valkey_reconciler.config import DEFAULT_CLI
from valkey_reconciler.errors import CliError, CliNotFoundError
from valkey_reconciler.log import logger
from valkey_reconciler.structs import Address


__all__ = [
    "ValkeyCli",
]


def _format_float(value: float) -> str:
    return f"{value:g}"


class ValkeyCli:
    """``valkey-cli --cluster`` operations.

    Every call blocks until the tool exits. The password is passed last and
    never logged.
    """

    def __init__(
        self,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        binary: str = DEFAULT_CLI,
    ) -> None:
        if username and not password:
            raise ValueError("password is required when username is set")

        self._username = username
        self._password = password
        self._binary = binary

    def __repr__(self) -> str:
        return f"<{type(self).__name__} binary:{self._binary!r}>"

    def _auth_args(self) -> List[str]:
        if self._username:
            return ["--user", self._username]
        return []

    async def _run(self, args: List[str]) -> None:
        binary = shutil.which(self._binary)
        if binary is None:
            raise CliNotFoundError(self._binary)

        logger.info("Command: %s %s", self._binary, " ".join(args))
        full_args = list(args)
        if self._password:
            full_args += ["-a", self._password]

        proc = await asyncio.create_subprocess_exec(binary, *full_args)
        returncode = await proc.wait()
        if returncode != 0:
            raise CliError(args, returncode)

    async def add_node(self, new_addr: Address, via_addr: Address) -> None:
        args = [
            "--cluster",
            "add-node",
            str(new_addr),
            str(via_addr),
            "--cluster-yes",
        ]
        args += self._auth_args()
        await self._run(args)

    async def del_node(self, via_addr: Address, node_id: str) -> None:
        if not node_id:
            raise ValueError("node_id is required")

        args = ["--cluster", "del-node", str(via_addr), node_id, "--cluster-yes"]
        args += self._auth_args()
        await self._run(args)

    async def create_cluster(self, addrs: Sequence[Address], replicas_per_master: int) -> None:
        if not addrs:
            raise ValueError("no nodes provided")
        if replicas_per_master < 0:
            raise ValueError("replicas per master must be greater than or equal to 0")

        args = ["--cluster", "create"]
        args += [str(addr) for addr in addrs]
        args += ["--cluster-replicas", str(replicas_per_master), "--cluster-yes"]
        args += self._auth_args()
        await self._run(args)

    async def rebalance(
        self,
        via_addr: Address,
        *,
        use_empty_masters: bool = False,
        weights: Optional[Mapping[str, float]] = None,
        replace: bool = False,
    ) -> None:
        """
        :param weights: node id -> weight, zero drains every slot from a master
        """

        args = ["--cluster", "rebalance", str(via_addr), "--cluster-yes"]
        args += self._auth_args()

        if use_empty_masters:
            args.append("--cluster-use-empty-masters")
        if weights:
            args.append("--cluster-weight")
            args += [f"{node_id}={_format_float(w)}" for node_id, w in weights.items()]
        if replace:
            args.append("--cluster-replace")

        await self._run(args)
