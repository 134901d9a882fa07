import pytest
import pytest_asyncio

from valkey_reconciler.client import ClusterClient


@pytest.fixture
def environ():
    return {
        "CLUSTER_NAME": "demo",
        "NAMESPACE": "default",
        "MASTERS": "3",
        "REPLICAS_PER_MASTER": "1",
        "ADMIN_PASSWORD": "secret",
    }


@pytest_asyncio.fixture
async def cluster_client_factory():
    clients = []

    def factory(startup_nodes, connector):
        client = ClusterClient(startup_nodes, connector)
        clients.append(client)
        return client

    try:
        yield factory
    finally:
        for client in clients:
            await client.close()
