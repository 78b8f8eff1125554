from dishka import Provider, Scope, provide, FromComponent
from typing import Annotated
import logging

from core.environment.config import Settings
from core.redis.providers import CacheService
from monitoring.cycle import CollectionCycle
from monitoring.entities import MonitoredEntity, build_entities
from monitoring.notifier import LoggingSink, NotificationSink, TelegramSink
from monitoring.reader import BalanceReader
from monitoring.scheduler import BalanceScheduler, DailyReportTrigger
from monitoring.storage import (
    AlertStateStore,
    BaselineStore,
    JsonFileBackend,
    RecipientRegistry,
    SnapshotStore,
)
from monitoring.throttle import AlertThrottleEngine
from monitoring.transport import TransportPool, TransportRegistry
from monitoring.usecases import (
    GetAlertStatesUseCase,
    GetBalancesUseCase,
    GetDailyReportUseCase,
    GetTransportHealthUseCase,
)


class MonitoringProvider(Provider):
    """
    Provider for balance monitoring dependencies.

    Stores are loaded from ``data_dir`` when first resolved; a
    corrupt state file fails startup.
    """

    component = "monitoring"

    @provide(scope=Scope.APP)
    def get_entities(
        self,
        settings: Annotated[Settings, FromComponent("environment")]
    ) -> list[MonitoredEntity]:
        """
        Provide monitored entities derived from configuration.

        Parameters
        ----------
        settings : Settings
            Application settings

        Returns
        -------
        list[MonitoredEntity]
            Entities in configuration order
        """
        return build_entities(settings.networks)

    @provide(scope=Scope.APP)
    def get_transports(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> TransportRegistry:
        """
        Provide fallback transports, one pool per network.

        Parameters
        ----------
        settings : Settings
            Application settings
        logger : logging.Logger
            Logger instance

        Returns
        -------
        TransportRegistry
            Transport pools keyed by network name
        """
        return TransportRegistry({
            network.name: TransportPool.from_config(network, settings, logger)
            for network in settings.networks
        })

    @provide(scope=Scope.APP)
    def get_balance_reader(
        self,
        transports: Annotated[TransportRegistry, FromComponent("monitoring")],
        cache_service: Annotated[CacheService, FromComponent("cache")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> BalanceReader:
        return BalanceReader(
            transports=transports,
            cache_service=cache_service,
            logger=logger
        )

    @provide(scope=Scope.APP)
    def get_snapshot_store(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> SnapshotStore:
        return SnapshotStore(JsonFileBackend(settings.balances_path), logger)

    @provide(scope=Scope.APP)
    def get_alert_state_store(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> AlertStateStore:
        return AlertStateStore(JsonFileBackend(settings.alert_states_path), logger)

    @provide(scope=Scope.APP)
    def get_baseline_store(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> BaselineStore:
        return BaselineStore(JsonFileBackend(settings.baseline_path), logger)

    @provide(scope=Scope.APP)
    def get_recipient_registry(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> RecipientRegistry:
        return RecipientRegistry(JsonFileBackend(settings.recipients_path), logger)

    @provide(scope=Scope.APP)
    def get_throttle_engine(
        self,
        alert_store: Annotated[AlertStateStore, FromComponent("monitoring")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> AlertThrottleEngine:
        return AlertThrottleEngine(store=alert_store, logger=logger)

    @provide(scope=Scope.APP)
    def get_collection_cycle(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        entities: Annotated[list[MonitoredEntity], FromComponent("monitoring")],
        reader: Annotated[BalanceReader, FromComponent("monitoring")],
        snapshots: Annotated[SnapshotStore, FromComponent("monitoring")],
        throttle: Annotated[AlertThrottleEngine, FromComponent("monitoring")],
        baseline: Annotated[BaselineStore, FromComponent("monitoring")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> CollectionCycle:
        """
        Provide the collection cycle.

        Reads per network are bounded by the active transport count.

        Returns
        -------
        CollectionCycle
            Collection cycle instance
        """
        return CollectionCycle(
            entities=entities,
            reader=reader,
            snapshots=snapshots,
            throttle=throttle,
            baseline=baseline,
            alert_settings=settings.alerts,
            concurrency=settings.active_transport_count,
            logger=logger
        )

    @provide(scope=Scope.APP)
    def get_sinks(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        registry: Annotated[RecipientRegistry, FromComponent("monitoring")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> list[NotificationSink]:
        """
        Provide notification sinks.

        Events are always logged; Telegram delivery is added when
        configured.

        Returns
        -------
        list[NotificationSink]
            Notification sinks
        """
        sinks = [LoggingSink(logger)]
        if settings.telegram is not None:
            sinks.append(TelegramSink(settings.telegram, registry, logger))
        return sinks

    @provide(scope=Scope.APP)
    def get_scheduler(
        self,
        settings: Annotated[Settings, FromComponent("environment")],
        cycle: Annotated[CollectionCycle, FromComponent("monitoring")],
        baseline: Annotated[BaselineStore, FromComponent("monitoring")],
        sinks: Annotated[list[NotificationSink], FromComponent("monitoring")],
        logger: Annotated[logging.Logger, FromComponent("logger")]
    ) -> BalanceScheduler:
        """
        Provide the scheduler.

        The daily trigger resumes from the baseline's last report day.

        Returns
        -------
        BalanceScheduler
            Scheduler instance
        """
        report = settings.daily_report
        trigger = None
        if report is not None and report.enabled:
            trigger = DailyReportTrigger(
                trigger_time=report.trigger_time,
                tz=report.tzinfo,
                last_fired_date=baseline.last_report_date
            )
        return BalanceScheduler(
            cycle=cycle,
            baseline=baseline,
            sinks=sinks,
            interval_secs=settings.interval_secs,
            daily_trigger=trigger,
            logger=logger
        )

    @provide(scope=Scope.REQUEST)
    def get_balances_use_case(
        self,
        cycle: Annotated[CollectionCycle, FromComponent("monitoring")],
        snapshots: Annotated[SnapshotStore, FromComponent("monitoring")]
    ) -> GetBalancesUseCase:
        return GetBalancesUseCase(cycle=cycle, snapshots=snapshots)

    @provide(scope=Scope.REQUEST)
    def get_alert_states_use_case(
        self,
        entities: Annotated[list[MonitoredEntity], FromComponent("monitoring")],
        alert_store: Annotated[AlertStateStore, FromComponent("monitoring")]
    ) -> GetAlertStatesUseCase:
        return GetAlertStatesUseCase(entities=entities, alert_store=alert_store)

    @provide(scope=Scope.REQUEST)
    def get_daily_report_use_case(
        self,
        entities: Annotated[list[MonitoredEntity], FromComponent("monitoring")],
        baseline: Annotated[BaselineStore, FromComponent("monitoring")],
        snapshots: Annotated[SnapshotStore, FromComponent("monitoring")]
    ) -> GetDailyReportUseCase:
        return GetDailyReportUseCase(entities=entities, baseline=baseline, snapshots=snapshots)

    @provide(scope=Scope.REQUEST)
    def get_transport_health_use_case(
        self,
        transports: Annotated[TransportRegistry, FromComponent("monitoring")]
    ) -> GetTransportHealthUseCase:
        return GetTransportHealthUseCase(transports=transports)
