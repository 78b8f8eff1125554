from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.environment.config import AlertSettings
from core.exceptions import PersistenceException
from core.redis.providers import CacheService
from monitoring.cycle import CollectionCycle
from monitoring.entities import (
    BalanceChangedEvent,
    LowBalanceEvent,
    ReadFailedEvent,
    RecoveredEvent,
)
from monitoring.reader import BalanceReader
from monitoring.storage import (
    AlertStateStore,
    BaselineStore,
    InMemoryBackend,
    SnapshotStore,
)
from monitoring.throttle import AlertThrottleEngine
from monitoring.transport import Endpoint, TransportPool, TransportRegistry

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
COLD_WALLET = "0x0000000000000000000000000000000000000001"


class TestCollectionCycle:
    """
    Unit tests for a collection cycle over a scripted reader.
    """

    @pytest.mark.asyncio
    async def test_first_cycle_records_without_change_events(self, make_cycle, make_entity, fake_reader, stores):
        entity = make_entity()
        fake_reader.set(entity, "1.5")
        cycle = make_cycle([entity])

        events = await cycle.run(T0)

        assert events == []
        assert stores["snapshots"].get(entity).balance == Decimal("1.5")
        assert stores["baseline"].balances[entity.key].balance == Decimal("1.5")
        assert cycle.last_run == T0
        assert stores["snapshots"].dirty is False

    @pytest.mark.asyncio
    async def test_balance_change_event(self, make_cycle, make_entity, fake_reader):
        entity = make_entity()
        cycle = make_cycle([entity])
        fake_reader.set(entity, "1.5")
        await cycle.run(T0)

        fake_reader.set(entity, "1.2")
        events = await cycle.run(T0 + timedelta(minutes=1))

        assert len(events) == 1
        event = events[0]
        assert isinstance(event, BalanceChangedEvent)
        assert event.old == Decimal("1.5")
        assert event.new == Decimal("1.2")
        assert event.delta == Decimal("-0.3")

    @pytest.mark.asyncio
    async def test_unchanged_balance_emits_nothing(self, make_cycle, make_entity, fake_reader, stores):
        entity = make_entity()
        cycle = make_cycle([entity])
        fake_reader.set(entity, "1.5")
        await cycle.run(T0)

        assert await cycle.run(T0 + timedelta(minutes=1)) == []
        assert stores["snapshots"].get(entity).last_updated == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_read_failure_keeps_previous_snapshot(self, make_cycle, make_entity, fake_reader, stores):
        failing = make_entity()
        healthy = make_entity(alias="cold", address=COLD_WALLET)
        cycle = make_cycle([failing, healthy])
        fake_reader.set(failing, "1")
        fake_reader.set(healthy, "2")
        await cycle.run(T0)

        fake_reader.set(failing, ConnectionError("connection reset"))
        fake_reader.set(healthy, "3")
        events = await cycle.run(T0 + timedelta(minutes=1))

        assert [type(event) for event in events] == [ReadFailedEvent, BalanceChangedEvent]
        assert events[0].cause == "connection reset"
        assert stores["snapshots"].get(failing).balance == Decimal("1")
        assert stores["snapshots"].get(failing).last_updated == T0
        assert stores["snapshots"].get(healthy).balance == Decimal("3")

    @pytest.mark.asyncio
    async def test_events_follow_configuration_order(self, make_cycle, make_entity, fake_reader):
        entities = [
            make_entity(alias=f"wallet{i}", address=f"0x{i:040x}", threshold="10")
            for i in range(1, 6)
        ]
        for entity in entities:
            fake_reader.set(entity, "1")
        cycle = make_cycle(entities)

        events = await cycle.run(T0)

        assert [event.entity.alias for event in events] == [entity.alias for entity in entities]
        assert all(isinstance(event, LowBalanceEvent) for event in events)

    @pytest.mark.asyncio
    async def test_low_balance_and_recovery(self, make_cycle, make_entity, fake_reader):
        entity = make_entity(threshold="1.0")
        cycle = make_cycle([entity])

        fake_reader.set(entity, "0.5")
        first = await cycle.run(T0)
        fake_reader.set(entity, "1.5")
        second = await cycle.run(T0 + timedelta(minutes=1))

        assert [type(event) for event in first] == [LowBalanceEvent]
        assert [type(event) for event in second] == [BalanceChangedEvent, RecoveredEvent]

    @pytest.mark.asyncio
    async def test_notification_toggles(self, make_cycle, make_entity, fake_reader, stores):
        entity = make_entity(threshold="1.0")
        cycle = make_cycle([entity], AlertSettings(balance_change=False, low_balance=False))
        fake_reader.set(entity, "2")
        await cycle.run(T0)

        fake_reader.set(entity, "0.5")
        events = await cycle.run(T0 + timedelta(minutes=1))

        assert events == []
        assert stores["snapshots"].get(entity).balance == Decimal("0.5")
        assert stores["alerts"].all() == {}

    @pytest.mark.asyncio
    async def test_failed_flush_is_retried_next_cycle(self, make_entity, fake_reader, logger):
        class FlakyBackend(InMemoryBackend):
            def __init__(self):
                super().__init__()
                self.failures = 1

            def save(self, data):
                if self.failures:
                    self.failures -= 1
                    raise PersistenceException("balances.json", "disk full")
                super().save(data)

        backend = FlakyBackend()
        snapshots = SnapshotStore(backend, logger)
        entity = make_entity()
        fake_reader.set(entity, "1")
        cycle = CollectionCycle(
            entities=[entity],
            reader=fake_reader,
            snapshots=snapshots,
            throttle=AlertThrottleEngine(AlertStateStore(InMemoryBackend(), logger), logger),
            baseline=BaselineStore(InMemoryBackend(), logger),
            alert_settings=AlertSettings(),
            concurrency=1,
            logger=logger,
        )

        await cycle.run(T0)
        assert snapshots.dirty is True
        assert backend.data is None

        await cycle.run(T0 + timedelta(minutes=1))
        assert snapshots.dirty is False
        assert entity.key in backend.data


def failing_client() -> MagicMock:
    web3 = MagicMock()
    web3.eth.get_balance = AsyncMock(side_effect=ConnectionError("connection refused"))
    return web3


def healthy_client(balance: int) -> MagicMock:
    web3 = MagicMock()
    web3.eth.get_balance = AsyncMock(return_value=balance)
    return web3


def pool(name: str, clients: list[MagicMock], logger) -> TransportPool:
    endpoints = [Endpoint(f"https://{name}-{i}.test", client) for i, client in enumerate(clients)]
    return TransportPool(name, endpoints, active_count=2, timeout=1.0, logger=logger)


class TestNetworkIsolation:

    @pytest.mark.asyncio
    async def test_unreachable_network_does_not_affect_others(self, make_entity, stores, logger):
        """
        Every endpoint of one network failing yields read failures for
        that network only.
        """
        down = [make_entity(network="down"), make_entity(network="down", alias="cold", address=COLD_WALLET)]
        up = [make_entity(network="up")]
        transports = TransportRegistry({
            "down": pool("down", [failing_client() for _ in range(3)], logger),
            "up": pool("up", [healthy_client(2 * 10 ** 18)], logger),
        })
        cycle = CollectionCycle(
            entities=down + up,
            reader=BalanceReader(transports, CacheService(None, logger), logger),
            snapshots=stores["snapshots"],
            throttle=AlertThrottleEngine(stores["alerts"], logger),
            baseline=stores["baseline"],
            alert_settings=AlertSettings(),
            concurrency=2,
            logger=logger,
        )

        events = await cycle.run(T0)

        assert [type(event) for event in events] == [ReadFailedEvent, ReadFailedEvent]
        assert {event.entity.network for event in events} == {"down"}
        assert stores["snapshots"].get(up[0]).balance == Decimal("2")
        assert stores["snapshots"].get(down[0]) is None
