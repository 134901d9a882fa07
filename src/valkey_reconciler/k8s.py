import asyncio
import functools
from typing import Any, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from valkey_reconciler.errors import KubernetesError
from valkey_reconciler.log import logger


__all__ = [
    "StatefulSetClient",
    "is_statefulset_ready",
]


def is_statefulset_ready(sts: Any, expected_replicas: int) -> bool:
    status = sts.status
    ready = (status.ready_replicas or 0) == expected_replicas
    updated = (status.updated_replicas or 0) == expected_replicas
    rollout_complete = status.current_revision == status.update_revision
    return ready and updated and rollout_complete


class StatefulSetClient:
    """Read-only view of the StatefulSet running cluster pods.

    The sync kubernetes client runs in the default executor.
    """

    def __init__(self, namespace: str, name: str, *, apps_api: Optional[Any] = None) -> None:
        self._namespace = namespace
        self._name = name
        self._apps_api = apps_api

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._namespace}/{self._name}>"

    def _get_apps_api(self):
        if self._apps_api is None:
            try:
                config.load_incluster_config()
            except ConfigException as e:
                raise KubernetesError(f"failed to get in-cluster config: {e}") from e
            self._apps_api = client.AppsV1Api()
        return self._apps_api

    async def read(self) -> Any:
        api = self._get_apps_api()
        loop = asyncio.get_running_loop()
        call = functools.partial(
            api.read_namespaced_stateful_set,
            name=self._name,
            namespace=self._namespace,
        )
        try:
            return await loop.run_in_executor(None, call)
        except ApiException as e:
            raise KubernetesError(
                f"failed to get statefulset {self._namespace}/{self._name}: {e.reason}"
            ) from e

    async def replica_count(self) -> int:
        sts = await self.read()
        return sts.spec.replicas or 0

    async def wait_ready(self, expected_replicas: int, *, poll_interval: float = 2.0) -> None:
        """Poll until ready, updated and rollout complete. Caller bounds the wait."""

        logger.info("Waiting for StatefulSet to be fully ready...")
        while True:
            sts = await self.read()
            if is_statefulset_ready(sts, expected_replicas):
                break

            status = sts.status
            logger.info(
                "Waiting for StatefulSet... (ready: %d/%d, updated: %d/%d, rollout complete: %s)",
                status.ready_replicas or 0,
                expected_replicas,
                status.updated_replicas or 0,
                expected_replicas,
                status.current_revision == status.update_revision,
            )
            await asyncio.sleep(poll_interval)

        logger.info("✓ StatefulSet is fully ready and updated")
