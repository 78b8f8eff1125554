import logging
from datetime import datetime, timedelta
from decimal import Decimal

from monitoring.entities import AlertState, LowBalanceEvent, MonitoredEntity, RecoveredEvent
from monitoring.storage import AlertStateStore

# Minimum time since the previous alert, indexed by consecutive_alert_count.
ALERT_SCHEDULE: tuple[timedelta, ...] = (
    timedelta(0),
    timedelta(minutes=10),
    timedelta(hours=1),
    timedelta(hours=5),
    timedelta(hours=20),
)
MAX_ALERT_COUNT = len(ALERT_SCHEDULE) - 1


def required_wait(consecutive_alert_count: int) -> timedelta:
    """
    Get the minimum wait before the next alert.

    Parameters
    ----------
    consecutive_alert_count : int
        Alerts already fired in the current episode

    Returns
    -------
    timedelta
        Required time since the previous alert
    """
    return ALERT_SCHEDULE[min(consecutive_alert_count, MAX_ALERT_COUNT)]


class AlertThrottleEngine:
    """
    Decides when low balance alerts fire.

    The first observation below threshold fires immediately; while
    the balance stays low, each further alert waits longer according
    to ``ALERT_SCHEDULE``. Returning to or above the threshold emits a
    single recovered event and resets the state.

    Parameters
    ----------
    store : AlertStateStore
        Persisted alert state
    logger : logging.Logger
        Logger instance
    """

    def __init__(self, store: AlertStateStore, logger: logging.Logger):
        self.store = store
        self.logger = logger

    def evaluate(
        self,
        entity: MonitoredEntity,
        balance: Decimal,
        threshold: Decimal,
        now: datetime
    ) -> LowBalanceEvent | RecoveredEvent | None:
        """
        Update the alert state of an entity with a new balance.

        Parameters
        ----------
        entity : MonitoredEntity
            Entity the balance belongs to
        balance : Decimal
            Observed balance
        threshold : Decimal
            Configured low balance threshold
        now : datetime
            Observation time

        Returns
        -------
        LowBalanceEvent | RecoveredEvent | None
            Event to emit, or None when nothing fires
        """
        state = self.store.get(entity)

        if balance >= threshold:
            if not state.currently_below_threshold:
                return None
            self.store.set(entity, AlertState())
            self.logger.info(f"[{entity.network}] {entity.alias} {entity.asset} recovered: {balance}")
            return RecoveredEvent(entity=entity, balance=balance)

        if not state.currently_below_threshold:
            count = 0
        else:
            count = state.consecutive_alert_count
            if state.last_alert_time is not None and now - state.last_alert_time < required_wait(count):
                return None

        alert_number = min(count + 1, MAX_ALERT_COUNT)
        self.store.set(
            entity,
            AlertState(
                consecutive_alert_count=alert_number,
                last_alert_time=now,
                currently_below_threshold=True,
            ),
        )
        return LowBalanceEvent(
            entity=entity,
            balance=balance,
            threshold=threshold,
            alert_number=alert_number,
        )
