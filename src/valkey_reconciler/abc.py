from abc import ABC, abstractmethod

from valkey_reconciler.structs import Address


__all__ = [
    "AbcNodeClient",
]


class AbcNodeClient(ABC):
    """Single-node connection used for cluster queries and node-local commands"""

    @property
    @abstractmethod
    def addr(self) -> Address:
        pass

    @abstractmethod
    async def cluster_nodes(self) -> str:
        pass

    @abstractmethod
    async def cluster_info(self) -> str:
        pass

    @abstractmethod
    async def info(self, section: str) -> str:
        pass

    @abstractmethod
    async def cluster_replicate(self, master_id: str) -> None:
        pass

    @abstractmethod
    async def cluster_failover(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass
