import asyncio
import logging
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from monitoring.cycle import CollectionCycle
from monitoring.entities import DailyDiffReadyEvent, NotificationEvent
from monitoring.notifier import NotificationSink
from monitoring.storage import BaselineStore


class DailyReportTrigger:
    """
    Fires once per calendar day at or after a wall-clock time.

    The trigger is evaluated on every polling tick, so a report missed
    while the process was down fires on the first tick after the
    trigger time, and still only once for that day.

    Parameters
    ----------
    trigger_time : time
        Local wall-clock time of the report
    tz : ZoneInfo | None
        Time zone of ``trigger_time``; system local time when None
    last_fired_date : date | None
        Day of the last report
    """

    def __init__(self, trigger_time: time, tz: ZoneInfo | None = None, last_fired_date: date | None = None):
        self.trigger_time = trigger_time
        self.tz = tz
        self.last_fired_date = last_fired_date

    def local_now(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz) if self.tz else now.astimezone()

    def due(self, now: datetime) -> date | None:
        """
        Check whether the report is due.

        Parameters
        ----------
        now : datetime
            Current time

        Returns
        -------
        date | None
            Local day the report is due for, or None
        """
        local = self.local_now(now)
        if local.time() < self.trigger_time:
            return None
        if self.last_fired_date is not None and self.last_fired_date >= local.date():
            return None
        return local.date()

    def mark_fired(self, day: date) -> None:
        self.last_fired_date = day


class BalanceScheduler:
    """
    Drives collection cycles and the daily diff report.

    Parameters
    ----------
    cycle : CollectionCycle
        Collection cycle to run
    baseline : BaselineStore
        Daily diff baseline
    sinks : list[NotificationSink]
        Consumers of produced events
    interval_secs : int
        Polling interval
    daily_trigger : DailyReportTrigger | None
        Daily report trigger, None when reports are disabled
    logger : logging.Logger
        Logger instance
    """

    JOB_ID = "collection_cycle"

    def __init__(
        self,
        cycle: CollectionCycle,
        baseline: BaselineStore,
        sinks: list[NotificationSink],
        interval_secs: int,
        daily_trigger: DailyReportTrigger | None,
        logger: logging.Logger
    ):
        self.cycle = cycle
        self.baseline = baseline
        self.sinks = sinks
        self.interval_secs = interval_secs
        self.daily_trigger = daily_trigger
        self.logger = logger
        self.scheduler = AsyncIOScheduler()
        self._tick_lock = asyncio.Lock()

    def start(self) -> None:
        """
        Start polling; the first cycle runs immediately.

        A slow cycle delays the next one: the job never overlaps
        itself and missed runs are coalesced.
        """
        self.scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.interval_secs,
            id=self.JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self.scheduler.start()
        self.logger.info(f"Balance monitoring started, interval {self.interval_secs}s")

    async def shutdown(self) -> None:
        """
        Stop polling and flush state.

        A tick already in progress is allowed to finish first, so the
        final flush sees its results.
        """
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        async with self._tick_lock:
            await self.cycle.flush()
        self.logger.info("Balance monitoring stopped")

    async def tick(self, now: datetime | None = None) -> list[NotificationEvent]:
        """
        Run one cycle, the daily report if due, and publish events.

        Parameters
        ----------
        now : datetime | None
            Tick time; the cycle clock is used when omitted

        Returns
        -------
        list[NotificationEvent]
            Published events
        """
        async with self._tick_lock:
            now = now or self.cycle.clock()
            events = await self.cycle.run(now)

            report = self.daily_report(now)
            if report is not None:
                events.append(report)
                await self.cycle.flush()

            await self.publish(events)
            return events

    def daily_report(self, now: datetime) -> DailyDiffReadyEvent | None:
        """
        Produce the daily diff report if due and roll the baseline.

        Parameters
        ----------
        now : datetime
            Current time

        Returns
        -------
        DailyDiffReadyEvent | None
            Report event, or None when no report is due
        """
        if self.daily_trigger is None:
            return None
        day = self.daily_trigger.due(now)
        if day is None:
            return None

        snapshots = self.cycle.snapshots.all()
        previous_date = self.baseline.last_report_date
        event = DailyDiffReadyEvent(
            records=self.baseline.diff(self.cycle.entities, snapshots),
            baseline_date=previous_date.isoformat() if previous_date else None,
        )
        self.baseline.roll(snapshots, day)
        self.daily_trigger.mark_fired(day)
        self.logger.info(f"Daily report for {day.isoformat()} produced, baseline rolled")
        return event

    async def publish(self, events: list[NotificationEvent]) -> None:
        if not events:
            return
        for sink in self.sinks:
            try:
                await sink.publish(events)
            except Exception as e:
                self.logger.error(f"Notification sink {type(sink).__name__} failed: {e!r}")
