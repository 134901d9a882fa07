from valkey_reconciler.client import log_cluster_info, log_cluster_nodes
from valkey_reconciler.commands.base import BaseCommand
from valkey_reconciler.errors import ReconcilerError
from valkey_reconciler.log import logger


class InitCommand(BaseCommand):
    name = "init"

    async def run(self) -> None:
        env = self.env
        logger.info("=== Valkey Cluster Initialization ===")
        self.log_configuration()

        await self.waiter.statefulset_ready(self.statefulset, env.total_nodes)

        logger.info("Building node list...")
        addrs = env.pod_addrs()
        logger.info("Nodes: %s", ", ".join(map(str, addrs)))

        cluster = self.cluster_client(addrs[:1])
        try:
            try:
                info = await cluster.cluster_info()
            except ReconcilerError as e:
                logger.warning("Unable to get cluster info: %s", e)
                info = ""

            if "cluster_state:ok" in info:
                logger.info("Cluster already initialized; skipping initialization.")
                return

            logger.info("Creating Valkey cluster...")
            await self.cli.create_cluster(addrs, env.replicas_per_master)
            logger.info("✓ Cluster created successfully!")

            await log_cluster_info(cluster)
            await log_cluster_nodes(cluster)
        finally:
            await cluster.close()

        logger.info("=== Initialization Complete ===")
