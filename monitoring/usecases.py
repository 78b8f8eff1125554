from monitoring.cycle import CollectionCycle
from monitoring.entities import MonitoredEntity
from monitoring.schemas import (
    AlertStateResponse,
    AlertStatesResponse,
    BalanceResponse,
    BalancesResponse,
    EndpointHealthResponse,
    EntityResponse,
    ReportRecordResponse,
    ReportResponse,
    TransportsResponse,
)
from monitoring.storage import AlertStateStore, BaselineStore, SnapshotStore
from monitoring.transport import TransportRegistry


class GetBalancesUseCase:
    """
    Use case for listing last known balances.

    Parameters
    ----------
    cycle : CollectionCycle
        Collection cycle, for its entities and last run time
    snapshots : SnapshotStore
        Last known balances
    """

    def __init__(self, cycle: CollectionCycle, snapshots: SnapshotStore):
        self.cycle = cycle
        self.snapshots = snapshots

    async def __call__(self, network: str | None = None) -> BalancesResponse:
        """
        Execute use case.

        Parameters
        ----------
        network : str | None
            Restrict to one network

        Returns
        -------
        BalancesResponse
            Balances in configuration order
        """
        balances = []
        for entity in self.cycle.entities:
            if network is not None and entity.network != network:
                continue
            snapshot = self.snapshots.get(entity)
            balances.append(
                BalanceResponse(
                    entity=EntityResponse.from_entity(entity),
                    balance=snapshot.balance if snapshot else None,
                    last_updated=snapshot.last_updated if snapshot else None,
                )
            )
        return BalancesResponse(
            balances=balances,
            last_cycle=self.cycle.last_run,
            total=len(balances),
        )


class GetAlertStatesUseCase:
    """
    Use case for listing alert state of thresholded entities.
    """

    def __init__(self, entities: list[MonitoredEntity], alert_store: AlertStateStore):
        self.entities = entities
        self.alert_store = alert_store

    async def __call__(self) -> AlertStatesResponse:
        alerts = [
            AlertStateResponse(
                entity=EntityResponse.from_entity(entity),
                **self.alert_store.get(entity).model_dump(),
            )
            for entity in self.entities
            if entity.threshold is not None
        ]
        return AlertStatesResponse(alerts=alerts, total=len(alerts))


class GetDailyReportUseCase:
    """
    Use case for the on-demand diff report.

    Reads the frozen baseline without rolling it, so the scheduled
    daily report is unaffected.

    Parameters
    ----------
    entities : list[MonitoredEntity]
        Monitored entities
    baseline : BaselineStore
        Daily diff baseline
    snapshots : SnapshotStore
        Last known balances
    """

    def __init__(
        self,
        entities: list[MonitoredEntity],
        baseline: BaselineStore,
        snapshots: SnapshotStore
    ):
        self.entities = entities
        self.baseline = baseline
        self.snapshots = snapshots

    async def __call__(self) -> ReportResponse:
        records = self.baseline.diff(self.entities, self.snapshots.all())
        baseline_date = self.baseline.last_report_date
        return ReportResponse(
            baseline_date=baseline_date.isoformat() if baseline_date else None,
            records=[
                ReportRecordResponse(
                    entity=EntityResponse.from_entity(record.entity),
                    baseline=record.baseline,
                    current=record.current,
                    delta=record.delta,
                )
                for record in records
            ],
        )


class GetTransportHealthUseCase:
    """
    Use case for RPC endpoint health of a network.
    """

    def __init__(self, transports: TransportRegistry):
        self.transports = transports

    async def __call__(self, network: str) -> TransportsResponse:
        pool = self.transports.get(network)
        return TransportsResponse(
            network=network,
            active_count=pool.active_count,
            endpoints=[EndpointHealthResponse(**item) for item in pool.health()],
        )
