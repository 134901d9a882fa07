from typing import List, Mapping, Optional, Tuple

import attr
from kubernetes.utils import parse_quantity

from valkey_reconciler.errors import ConfigError
from valkey_reconciler.structs import Address


__all__ = [
    "PERSISTENCE_MODES",
    "ClusterSpec",
    "Env",
    "statefulset_name",
    "statefulset_pod_name",
    "headless_service_fqdn",
    "pod_fqdn",
]


PERSISTENCE_MODES = frozenset({"rdb", "aof"})

DEFAULT_ADMIN_USER = "admin"
DEFAULT_CLIENT_PORT = 6379
DEFAULT_CLI = "valkey-cli"


def statefulset_name(cluster_name: str) -> str:
    return f"valkey-{cluster_name}"


def statefulset_pod_name(cluster_name: str, index: int) -> str:
    return f"valkey-{cluster_name}-{index}"


def headless_service_fqdn(cluster_name: str, namespace: str) -> str:
    return f"valkey-{cluster_name}-headless.{namespace}.svc.cluster.local"


def pod_fqdn(cluster_name: str, namespace: str, index: int) -> str:
    return (
        f"{statefulset_pod_name(cluster_name, index)}."
        f"{headless_service_fqdn(cluster_name, namespace)}"
    )


@attr.s(slots=True, frozen=True)
class ClusterSpec:
    """Desired cluster shape."""

    masters: int = attr.ib()
    replicas_per_master: int = attr.ib()
    storage_per_node: Optional[str] = attr.ib(default=None)
    persistence: Tuple[str, ...] = attr.ib(default=(), converter=tuple)

    @property
    def total_nodes(self) -> int:
        return self.masters + self.masters * self.replicas_per_master

    def validate(self) -> "ClusterSpec":
        if self.masters <= 0:
            raise ConfigError("masters must be greater than zero")
        if self.replicas_per_master < 0:
            raise ConfigError("replicas per master must not be negative")
        if self.storage_per_node:
            try:
                parse_quantity(self.storage_per_node)
            except ValueError as e:
                raise ConfigError(f"storage per node is invalid: {e}") from e
        for mode in self.persistence:
            if mode not in PERSISTENCE_MODES:
                raise ConfigError(f"persistence contains unsupported mode {mode!r}")
        return self


def _require(environ: Mapping[str, str], key: str) -> str:
    value = environ.get(key, "").strip()
    if not value:
        raise ConfigError(f"{key} environment variable is not set")
    return value


def _int(environ: Mapping[str, str], key: str, default: Optional[int] = None) -> int:
    raw = environ.get(key, "").strip()
    if not raw:
        if default is None:
            raise ConfigError(f"{key} environment variable is not set")
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} environment variable must be an integer, got {raw!r}")


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} environment variable must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{key} environment variable must be > 0")
    return value


def _list(environ: Mapping[str, str], key: str) -> List[str]:
    raw = environ.get(key, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@attr.s(slots=True, frozen=True)
class Env:
    WAIT_TIMEOUT = 300.0
    POLL_INTERVAL = 2.0
    WAIT_CONCURRENCY = 10

    cluster_name: str = attr.ib()
    namespace: str = attr.ib()
    spec: ClusterSpec = attr.ib()
    admin_password: str = attr.ib(repr=False)
    admin_user: str = attr.ib(default=DEFAULT_ADMIN_USER)
    client_port: int = attr.ib(default=DEFAULT_CLIENT_PORT)
    cli_binary: str = attr.ib(default=DEFAULT_CLI)
    wait_timeout: float = attr.ib(default=WAIT_TIMEOUT)
    poll_interval: float = attr.ib(default=POLL_INTERVAL)
    wait_concurrency: int = attr.ib(default=WAIT_CONCURRENCY)

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> "Env":
        spec = ClusterSpec(
            masters=_int(environ, "MASTERS"),
            replicas_per_master=_int(environ, "REPLICAS_PER_MASTER"),
            storage_per_node=environ.get("STORAGE_PER_NODE") or None,
            persistence=_list(environ, "PERSISTENCE_MODES"),
        ).validate()

        return cls(
            cluster_name=_require(environ, "CLUSTER_NAME"),
            namespace=_require(environ, "NAMESPACE"),
            spec=spec,
            admin_password=_require(environ, "ADMIN_PASSWORD"),
            admin_user=environ.get("ADMIN_USER") or DEFAULT_ADMIN_USER,
            cli_binary=environ.get("VALKEY_CLI") or DEFAULT_CLI,
            wait_timeout=_float(environ, "WAIT_TIMEOUT", cls.WAIT_TIMEOUT),
            poll_interval=_float(environ, "POLL_INTERVAL", cls.POLL_INTERVAL),
        )

    @property
    def masters(self) -> int:
        return self.spec.masters

    @property
    def replicas_per_master(self) -> int:
        return self.spec.replicas_per_master

    @property
    def total_nodes(self) -> int:
        return self.spec.total_nodes

    @property
    def statefulset_name(self) -> str:
        return statefulset_name(self.cluster_name)

    def pod_fqdn(self, index: int) -> str:
        return pod_fqdn(self.cluster_name, self.namespace, index)

    def pod_addr(self, index: int) -> Address:
        return Address(self.pod_fqdn(index), self.client_port)

    def pod_addrs(self, count: Optional[int] = None) -> List[Address]:
        if count is None:
            count = self.total_nodes
        return [self.pod_addr(i) for i in range(count)]
