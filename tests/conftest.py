import json
import logging
import os
import tempfile
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport


HOT_WALLET = "0x28c6c06298d514db089934071355e5743bf21d60"
COLD_WALLET = "0x0000000000000000000000000000000000000001"
USDT = "0xdac17f958d2ee523a2206206994597c13d831ec7"

# Set test environment variables before imports
os.environ['CONFIG_FILE'] = os.path.join(tempfile.gettempdir(), 'balance-watcher-missing.yaml')
os.environ['ENV_FILE'] = os.path.join(tempfile.gettempdir(), 'balance-watcher-missing.env')
os.environ['DATA_DIR'] = tempfile.mkdtemp(prefix='balance-watcher-')
os.environ.pop('REDIS_HOST', None)
os.environ.pop('TELEGRAM', None)
os.environ['NETWORKS'] = json.dumps([
    {
        "name": "testnet",
        "chain_id": 1,
        "rpc_nodes": ["https://rpc1.test", "https://rpc2.test", "https://rpc3.test"],
        "addresses": [{"alias": "hot", "address": HOT_WALLET, "min_balance": "1.0"}],
        "tokens": [{"alias": "USDT", "contract": USDT}],
    }
])

from core.environment.config import AlertSettings  # noqa: E402
from core.exceptions import ReadFailedException  # noqa: E402
from monitoring.cycle import CollectionCycle  # noqa: E402
from monitoring.entities import MonitoredEntity  # noqa: E402
from monitoring.storage import (  # noqa: E402
    AlertStateStore,
    BaselineStore,
    InMemoryBackend,
    SnapshotStore,
)
from monitoring.throttle import AlertThrottleEngine  # noqa: E402


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("balance_watcher.tests")


@pytest.fixture
def make_entity():
    """
    Factory for monitored entities.

    Returns
    -------
    Callable[..., MonitoredEntity]
        Builds an entity; native unless a contract is given
    """
    def factory(
        network: str = "testnet",
        alias: str = "hot",
        address: str = HOT_WALLET,
        contract: str | None = None,
        asset: str | None = None,
        threshold: str | None = None
    ) -> MonitoredEntity:
        return MonitoredEntity(
            network=network,
            chain_id=1,
            alias=alias,
            address=address,
            asset=asset or ("USDT" if contract else "ETH"),
            contract=contract,
            threshold=Decimal(threshold) if threshold is not None else None,
        )
    return factory


class FakeReader:
    """
    Balance reader returning scripted balances.

    ``balances`` maps entity key to a Decimal or to an exception
    raised as the read failure cause.
    """

    def __init__(self, balances: dict | None = None):
        self.balances = balances or {}
        self.reads: list[str] = []

    def set(self, entity: MonitoredEntity, value) -> None:
        self.balances[entity.key] = Decimal(value) if isinstance(value, str) else value

    async def read(self, entity: MonitoredEntity) -> Decimal:
        self.reads.append(entity.key)
        value = self.balances[entity.key]
        if isinstance(value, Exception):
            raise ReadFailedException(entity.key, value)
        return value


@pytest.fixture
def fake_reader() -> FakeReader:
    return FakeReader()


@pytest.fixture
def stores(logger):
    """
    In-memory snapshot, alert state and baseline stores.
    """
    return {
        "snapshots": SnapshotStore(InMemoryBackend(), logger),
        "alerts": AlertStateStore(InMemoryBackend(), logger),
        "baseline": BaselineStore(InMemoryBackend(), logger),
    }


@pytest.fixture
def make_cycle(fake_reader, stores, logger):
    """
    Factory for a collection cycle over in-memory stores.
    """
    def factory(entities: list[MonitoredEntity], alert_settings: AlertSettings | None = None) -> CollectionCycle:
        return CollectionCycle(
            entities=entities,
            reader=fake_reader,
            snapshots=stores["snapshots"],
            throttle=AlertThrottleEngine(stores["alerts"], logger),
            baseline=stores["baseline"],
            alert_settings=alert_settings or AlertSettings(),
            concurrency=2,
            logger=logger,
        )
    return factory


@pytest_asyncio.fixture
async def client():
    """
    Fixture for async test client.

    The application lifespan is not run, so no collection cycle is
    scheduled and state is empty.

    Yields
    ------
    AsyncClient
        Async HTTP client for testing
    """
    from main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
