import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from core.environment.config import AlertSettings
from core.exceptions import PersistenceException, ReadFailedException
from monitoring.entities import (
    BalanceChangedEvent,
    MonitoredEntity,
    NotificationEvent,
    ReadFailedEvent,
)
from monitoring.reader import BalanceReader
from monitoring.storage import BaselineStore, SnapshotStore
from monitoring.throttle import AlertThrottleEngine


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CollectionCycle:
    """
    One polling round over every monitored entity.

    Networks are collected concurrently; within a network at most
    ``concurrency`` reads are in flight and events keep configuration
    order. A failed read produces a ``ReadFailedEvent`` and never
    stops the other entities.

    Parameters
    ----------
    entities : list[MonitoredEntity]
        Entities in configuration order
    reader : BalanceReader
        Balance reader
    snapshots : SnapshotStore
        Last known balances
    throttle : AlertThrottleEngine
        Low balance alert engine
    baseline : BaselineStore
        Daily diff baseline
    alert_settings : AlertSettings
        Enabled notification kinds
    concurrency : int
        Maximum parallel reads per network
    logger : logging.Logger
        Logger instance
    clock : Callable[[], datetime]
        Source of the current time
    """

    def __init__(
        self,
        entities: list[MonitoredEntity],
        reader: BalanceReader,
        snapshots: SnapshotStore,
        throttle: AlertThrottleEngine,
        baseline: BaselineStore,
        alert_settings: AlertSettings,
        concurrency: int,
        logger: logging.Logger,
        clock: Callable[[], datetime] = utcnow
    ):
        self.entities = entities
        self.reader = reader
        self.snapshots = snapshots
        self.throttle = throttle
        self.baseline = baseline
        self.alert_settings = alert_settings
        self.concurrency = max(1, concurrency)
        self.logger = logger
        self.clock = clock
        self.last_run: datetime | None = None

    def networks(self) -> dict[str, list[MonitoredEntity]]:
        grouped: dict[str, list[MonitoredEntity]] = {}
        for entity in self.entities:
            grouped.setdefault(entity.network, []).append(entity)
        return grouped

    async def run(self, now: datetime | None = None) -> list[NotificationEvent]:
        """
        Collect every entity once and persist the results.

        Parameters
        ----------
        now : datetime | None
            Cycle time; the clock is used when omitted

        Returns
        -------
        list[NotificationEvent]
            Events produced by the cycle, grouped by network in
            configuration order
        """
        now = now or self.clock()
        results = await asyncio.gather(
            *(self._collect_network(entities, now) for entities in self.networks().values())
        )
        events = [event for network_events in results for event in network_events]

        seeded = self.baseline.seed(self.snapshots.all())
        if seeded:
            self.logger.info(f"Seeded daily baseline for {seeded} entit{'y' if seeded == 1 else 'ies'}")

        await self.flush()
        self.last_run = now

        failures = sum(1 for event in events if isinstance(event, ReadFailedEvent))
        self.logger.info(
            f"Collection cycle completed: {len(self.entities)} entities, "
            f"{len(events)} events, {failures} read failures"
        )
        return events

    async def flush(self) -> bool:
        """
        Flush all stores, logging failures.

        A failed store stays dirty and is retried by the next flush.

        Returns
        -------
        bool
            True if every store is persisted
        """
        ok = True
        for store in (self.snapshots, self.throttle.store, self.baseline):
            try:
                await store.flush()
            except PersistenceException as e:
                ok = False
                self.logger.error(f"State flush failed, will retry next cycle: {e.message}")
        return ok

    async def _collect_network(
        self,
        entities: list[MonitoredEntity],
        now: datetime
    ) -> list[NotificationEvent]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def collect(entity: MonitoredEntity) -> list[NotificationEvent]:
            async with semaphore:
                return await self._collect_entity(entity, now)

        per_entity = await asyncio.gather(*(collect(entity) for entity in entities))
        return [event for entity_events in per_entity for event in entity_events]

    async def _collect_entity(self, entity: MonitoredEntity, now: datetime) -> list[NotificationEvent]:
        try:
            balance = await self.reader.read(entity)
        except ReadFailedException as e:
            self.logger.warning(f"[{entity.network}] Failed to read {entity.alias} {entity.asset}: {e.cause!r}")
            return [ReadFailedEvent(entity=entity, cause=str(e.cause) or repr(e.cause))]

        events = []
        diff = self.snapshots.diff(entity, balance)
        if diff.changed and self.alert_settings.balance_change:
            events.append(BalanceChangedEvent(entity=entity, old=diff.previous, new=balance))
        self.snapshots.put(entity, balance, now)

        if entity.threshold is not None and self.alert_settings.low_balance:
            alert = self.throttle.evaluate(entity, balance, entity.threshold, now)
            if alert is not None:
                events.append(alert)
        return events
