import asyncio
import copy
import json
import logging
import os
import tempfile
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from core.exceptions import PersistenceException
from monitoring.entities import (
    AlertState,
    BalanceDiff,
    BalanceSnapshot,
    ChangeKind,
    DailyDiffRecord,
    MonitoredEntity,
)


class StateBackend(Protocol):
    """
    Durable storage of one JSON document.
    """

    location: str

    def load(self) -> Any | None:
        ...

    def save(self, data: Any) -> None:
        ...

    def version(self) -> float | None:
        ...


class JsonFileBackend:
    """
    JSON document stored in a file with atomic whole-file replace.

    A write goes to a temporary file in the same directory, is
    fsynced and then renamed over the target, so readers and a
    crashed process only ever see the previous or the new document.

    Parameters
    ----------
    path : Path
        Target file path
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.location = str(self.path)

    def load(self) -> Any | None:
        """
        Read the document.

        Returns
        -------
        Any | None
            Parsed document, or None if the file does not exist

        Raises
        ------
        PersistenceException
            If the file exists but cannot be read or parsed
        """
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceException(self.location, str(e)) from e

    def save(self, data: Any) -> None:
        """
        Atomically replace the document.

        Raises
        ------
        PersistenceException
            If the document could not be written; the previous
            document is left untouched
        """
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp_path = f.name
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise PersistenceException(self.location, str(e)) from e

    def version(self) -> float | None:
        try:
            return self.path.stat().st_mtime
        except FileNotFoundError:
            return None


class InMemoryBackend:
    """
    Backend keeping the document in memory, for tests and dry runs.
    """

    def __init__(self, data: Any | None = None):
        self.location = "memory"
        self.data = copy.deepcopy(data)
        self.saves = 0

    def load(self) -> Any | None:
        return copy.deepcopy(self.data)

    def save(self, data: Any) -> None:
        self.data = copy.deepcopy(data)
        self.saves += 1

    def version(self) -> float | None:
        return float(self.saves)


class _KeyedStateStore:
    """
    Map of entity key to a pydantic record, flushed as one document.

    Mutations mark the store dirty; ``flush`` writes the whole map
    through the backend. A failed flush keeps the store dirty so the
    next flush retries, with the in-memory map staying authoritative.
    """

    record_type = None

    def __init__(self, backend: StateBackend, logger: logging.Logger):
        self.backend = backend
        self.logger = logger
        self._items = self._load()
        self._version = 0
        self._flushed_version = 0

    def _load(self) -> dict:
        data = self.backend.load()
        if data is None:
            self.logger.info(f"No state at {self.backend.location}, starting empty")
            return {}
        if not isinstance(data, dict):
            raise PersistenceException(self.backend.location, "expected a JSON object")
        try:
            return {
                key: self.record_type.model_validate(value)
                for key, value in data.items()
            }
        except ValidationError as e:
            raise PersistenceException(self.backend.location, str(e)) from e

    def _touch(self) -> None:
        self._version += 1

    @property
    def dirty(self) -> bool:
        return self._version != self._flushed_version

    def __len__(self) -> int:
        return len(self._items)

    async def flush(self) -> bool:
        """
        Write pending changes to the backend.

        Returns
        -------
        bool
            True if a write happened, False if there was nothing to write

        Raises
        ------
        PersistenceException
            If the write failed
        """
        if not self.dirty:
            return False
        version = self._version
        data = {key: record.model_dump(mode="json") for key, record in self._items.items()}
        await asyncio.to_thread(self.backend.save, data)
        self._flushed_version = version
        return True


class SnapshotStore(_KeyedStateStore):
    """
    Last known balance per entity.
    """

    record_type = BalanceSnapshot

    def get(self, entity: MonitoredEntity) -> BalanceSnapshot | None:
        return self._items.get(entity.key)

    def put(self, entity: MonitoredEntity, balance: Decimal, timestamp: datetime) -> None:
        """
        Replace the snapshot of an entity.

        Parameters
        ----------
        entity : MonitoredEntity
            Entity the balance belongs to
        balance : Decimal
            Observed balance
        timestamp : datetime
            Observation time
        """
        self._items[entity.key] = BalanceSnapshot(balance=balance, last_updated=timestamp)
        self._touch()

    def diff(self, entity: MonitoredEntity, new_balance: Decimal) -> BalanceDiff:
        """
        Compare a new balance with the stored snapshot.

        Parameters
        ----------
        entity : MonitoredEntity
            Entity to compare
        new_balance : Decimal
            Newly observed balance

        Returns
        -------
        BalanceDiff
            Kind of change and signed delta
        """
        previous = self.get(entity)
        if previous is None:
            return BalanceDiff(kind=ChangeKind.NO_PRIOR_DATA)

        delta = new_balance - previous.balance
        if delta > 0:
            kind = ChangeKind.INCREASED
        elif delta < 0:
            kind = ChangeKind.DECREASED
        else:
            kind = ChangeKind.UNCHANGED
        return BalanceDiff(kind=kind, previous=previous.balance, delta=delta)

    def all(self) -> dict[str, BalanceSnapshot]:
        return dict(self._items)


class AlertStateStore(_KeyedStateStore):
    """
    Low balance alert state per entity.
    """

    record_type = AlertState

    def get(self, entity: MonitoredEntity) -> AlertState:
        return self._items.get(entity.key, AlertState())

    def set(self, entity: MonitoredEntity, state: AlertState) -> None:
        if self._items.get(entity.key) == state:
            return
        self._items[entity.key] = state
        self._touch()

    def all(self) -> dict[str, AlertState]:
        return dict(self._items)


class BaselineStore:
    """
    Frozen start-of-day copy of the snapshots.

    The baseline changes only when the daily report rolls it, except
    that entities seen for the first time are seeded into it.

    Parameters
    ----------
    backend : StateBackend
        Storage of the baseline document
    logger : logging.Logger
        Logger instance
    """

    def __init__(self, backend: StateBackend, logger: logging.Logger):
        self.backend = backend
        self.logger = logger
        self.last_report_date: date | None = None
        self.balances: dict[str, BalanceSnapshot] = {}
        self._dirty = False
        self._load()

    def _load(self) -> None:
        data = self.backend.load()
        if data is None:
            return
        try:
            raw_date = data.get("last_report_date")
            self.last_report_date = date.fromisoformat(raw_date) if raw_date else None
            self.balances = {
                key: BalanceSnapshot.model_validate(value)
                for key, value in data.get("balances", {}).items()
            }
        except (AttributeError, ValueError, ValidationError) as e:
            raise PersistenceException(self.backend.location, str(e)) from e

    @property
    def dirty(self) -> bool:
        return self._dirty

    def seed(self, snapshots: dict[str, BalanceSnapshot]) -> int:
        """
        Add snapshots of entities missing from the baseline.

        Returns
        -------
        int
            Number of seeded entities
        """
        missing = {key: value for key, value in snapshots.items() if key not in self.balances}
        if missing:
            self.balances.update(missing)
            self._dirty = True
        return len(missing)

    def roll(self, snapshots: dict[str, BalanceSnapshot], day: date) -> None:
        """
        Replace the baseline with the current snapshots.

        Parameters
        ----------
        snapshots : dict[str, BalanceSnapshot]
            Current snapshots
        day : date
            Calendar day of the daily report
        """
        self.balances = dict(snapshots)
        self.last_report_date = day
        self._dirty = True

    def diff(
        self,
        entities: list[MonitoredEntity],
        snapshots: dict[str, BalanceSnapshot]
    ) -> list[DailyDiffRecord]:
        """
        Compute per-entity change since the baseline.

        Parameters
        ----------
        entities : list[MonitoredEntity]
            Entities to report, in report order
        snapshots : dict[str, BalanceSnapshot]
            Current snapshots

        Returns
        -------
        list[DailyDiffRecord]
            One record per entity; delta is None when either side
            is unknown
        """
        records = []
        for entity in entities:
            current = snapshots.get(entity.key)
            baseline = self.balances.get(entity.key)
            records.append(
                DailyDiffRecord(
                    entity=entity,
                    baseline=baseline.balance if baseline else None,
                    current=current.balance if current else None,
                    delta=current.balance - baseline.balance if current and baseline else None,
                )
            )
        return records

    async def flush(self) -> bool:
        if not self._dirty:
            return False
        data = {
            "last_report_date": self.last_report_date.isoformat() if self.last_report_date else None,
            "balances": {key: value.model_dump(mode="json") for key, value in self.balances.items()},
        }
        # Cleared before the write: a seed or roll during the write marks it dirty again.
        self._dirty = False
        try:
            await asyncio.to_thread(self.backend.save, data)
        except PersistenceException:
            self._dirty = True
            raise
        return True


class RecipientRegistry:
    """
    Registered notification recipients.

    The list is maintained by the external command layer; it is read
    at startup and re-read whenever the backend reports a new version.

    Parameters
    ----------
    backend : StateBackend
        Storage of the recipient list
    logger : logging.Logger
        Logger instance
    """

    def __init__(self, backend: StateBackend, logger: logging.Logger):
        self.backend = backend
        self.logger = logger
        self._version = None
        self._recipients: list[str] = []
        self._reload()

    def recipients(self) -> list[str]:
        """
        Get current recipients, re-reading the list if it changed.
        """
        if self.backend.version() != self._version:
            try:
                self._reload()
            except PersistenceException as e:
                self.logger.warning(f"Keeping previous recipients, reload failed: {e.message}")
        return list(self._recipients)

    def _reload(self) -> None:
        version = self.backend.version()
        data = self.backend.load()
        if data is None:
            data = []
        if not isinstance(data, list):
            raise PersistenceException(self.backend.location, "expected a JSON list")
        self._recipients = [str(item) for item in data]
        self._version = version
        self.logger.info(f"Loaded {len(self._recipients)} notification recipient(s)")
