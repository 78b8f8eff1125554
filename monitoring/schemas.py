from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from monitoring.entities import MonitoredEntity


class EntityResponse(BaseModel):
    """
    Identity and display attributes of a monitored entity.

    Attributes
    ----------
    key : str
        Entity key used in state files
    network : str
        Network name
    chain_id : int
        Chain id of the network
    alias : str
        Address alias
    address : str
        Monitored address
    asset : str
        Asset symbol
    contract : str | None
        Token contract, None for the native coin
    threshold : Decimal | None
        Low balance threshold
    """
    key: str
    network: str
    chain_id: int
    alias: str
    address: str
    asset: str
    contract: str | None
    threshold: Decimal | None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_entity(cls, entity: MonitoredEntity) -> "EntityResponse":
        return cls(key=entity.key, **entity.model_dump())


class BalanceResponse(BaseModel):
    """
    Last known balance of an entity; balance is null until first read.
    """
    entity: EntityResponse
    balance: Decimal | None
    last_updated: datetime | None


class BalancesResponse(BaseModel):
    balances: list[BalanceResponse]
    last_cycle: datetime | None
    total: int


class AlertStateResponse(BaseModel):
    """
    Low balance alert state of a thresholded entity.
    """
    entity: EntityResponse
    consecutive_alert_count: int
    last_alert_time: datetime | None
    currently_below_threshold: bool


class AlertStatesResponse(BaseModel):
    alerts: list[AlertStateResponse]
    total: int


class ReportRecordResponse(BaseModel):
    entity: EntityResponse
    baseline: Decimal | None
    current: Decimal | None
    delta: Decimal | None


class ReportResponse(BaseModel):
    """
    Balance changes since the frozen daily baseline.

    Attributes
    ----------
    baseline_date : str | None
        Day of the last daily report, None if none was produced yet
    records : list[ReportRecordResponse]
        Per-entity changes
    """
    baseline_date: str | None
    records: list[ReportRecordResponse]


class EndpointHealthResponse(BaseModel):
    url: str
    active: bool
    healthy: bool
    consecutive_failures: int
    consecutive_successes: int
    last_used: datetime | None


class TransportsResponse(BaseModel):
    network: str
    active_count: int
    endpoints: list[EndpointHealthResponse]
