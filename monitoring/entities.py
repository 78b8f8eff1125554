from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.environment.config import NetworkConfig

NATIVE = "native"


class MonitoredEntity(BaseModel):
    """
    Entity representing one monitored balance.

    Identity is ``(network, address, contract or native)``; alias,
    asset and threshold are display and policy attributes taken from
    configuration and are not part of the key.

    Attributes
    ----------
    network : str
        Network name
    chain_id : int
        Chain id of the network
    alias : str
        Display name of the monitored address
    address : str
        Monitored address (lowercase)
    asset : str
        Asset symbol: native coin symbol or token alias
    contract : str | None
        Token contract address, None for the native coin
    threshold : Decimal | None
        Low balance threshold
    """
    network: str
    chain_id: int
    alias: str
    address: str
    asset: str
    contract: str | None = None
    threshold: Decimal | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> str:
        return f"{self.network}:{self.address}:{self.contract or NATIVE}".lower()

    @property
    def is_native(self) -> bool:
        return self.contract is None


def build_entities(networks: list[NetworkConfig]) -> list[MonitoredEntity]:
    """
    Derive monitored entities from network configuration.

    For every network the order is: each address followed by the
    tokens read for it, in configuration order. A token without a
    holder address is read for every address of its network.

    Parameters
    ----------
    networks : list[NetworkConfig]
        Configured networks

    Returns
    -------
    list[MonitoredEntity]
        Entities in configuration order
    """
    entities = []
    for network in networks:
        for address in network.addresses:
            entities.append(
                MonitoredEntity(
                    network=network.name,
                    chain_id=network.chain_id,
                    alias=address.alias,
                    address=address.address,
                    asset=network.native_symbol,
                    threshold=address.min_balance,
                )
            )
            for token in network.tokens:
                if token.address is not None and token.address != address.address:
                    continue
                entities.append(
                    MonitoredEntity(
                        network=network.name,
                        chain_id=network.chain_id,
                        alias=address.alias,
                        address=address.address,
                        asset=token.alias,
                        contract=token.contract,
                        threshold=token.min_balance,
                    )
                )
    return entities


class BalanceSnapshot(BaseModel):
    """
    Last successfully observed balance of an entity.
    """
    balance: Decimal
    last_updated: datetime

    model_config = ConfigDict(frozen=True)


class AlertState(BaseModel):
    """
    Low balance alert state of an entity.

    Attributes
    ----------
    consecutive_alert_count : int
        Alerts fired in the current below-threshold episode
    last_alert_time : datetime | None
        Time of the previous alert
    currently_below_threshold : bool
        Whether the last observed balance was below threshold
    """
    consecutive_alert_count: int = Field(default=0, ge=0)
    last_alert_time: datetime | None = None
    currently_below_threshold: bool = False

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_reset(self) -> "AlertState":
        if not self.currently_below_threshold and self.consecutive_alert_count != 0:
            raise ValueError("consecutive_alert_count must be 0 when balance is not below threshold")
        return self


class ChangeKind(str, Enum):
    NO_PRIOR_DATA = "no_prior_data"
    UNCHANGED = "unchanged"
    INCREASED = "increased"
    DECREASED = "decreased"


class BalanceDiff(BaseModel):
    """
    Result of comparing a new balance with the stored snapshot.

    ``delta`` is signed (negative for a decrease) and is only set
    when a previous balance exists.
    """
    kind: ChangeKind
    previous: Decimal | None = None
    delta: Decimal | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def changed(self) -> bool:
        return self.kind in (ChangeKind.INCREASED, ChangeKind.DECREASED)


class DailyDiffRecord(BaseModel):
    """
    Change of one entity's balance since the frozen baseline.
    """
    entity: MonitoredEntity
    baseline: Decimal | None = None
    current: Decimal | None = None
    delta: Decimal | None = None


class BalanceChangedEvent(BaseModel):
    kind: Literal["balance_changed"] = "balance_changed"
    entity: MonitoredEntity
    old: Decimal
    new: Decimal

    @property
    def delta(self) -> Decimal:
        return self.new - self.old


class LowBalanceEvent(BaseModel):
    kind: Literal["low_balance"] = "low_balance"
    entity: MonitoredEntity
    balance: Decimal
    threshold: Decimal
    alert_number: int


class RecoveredEvent(BaseModel):
    kind: Literal["recovered"] = "recovered"
    entity: MonitoredEntity
    balance: Decimal


class ReadFailedEvent(BaseModel):
    kind: Literal["read_failed"] = "read_failed"
    entity: MonitoredEntity
    cause: str


class DailyDiffReadyEvent(BaseModel):
    kind: Literal["daily_diff_ready"] = "daily_diff_ready"
    records: list[DailyDiffRecord]
    baseline_date: str | None = None


NotificationEvent = Annotated[
    Union[
        BalanceChangedEvent,
        LowBalanceEvent,
        RecoveredEvent,
        ReadFailedEvent,
        DailyDiffReadyEvent,
    ],
    Field(discriminator="kind"),
]
