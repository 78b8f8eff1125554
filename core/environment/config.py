import os
import re
from datetime import time
from decimal import Decimal
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(value: str) -> str:
    """
    Validate a 20-byte hex address and return it lowercased.

    Parameters
    ----------
    value : str
        Address as written in configuration

    Returns
    -------
    str
        Lowercase address

    Raises
    ------
    ValueError
        If the value is not a 0x-prefixed 40 hex digit string
    """
    if not isinstance(value, str) or not ADDRESS_PATTERN.match(value):
        raise ValueError(f"Invalid address format: {value!r}")
    return value.lower()


class AddressConfig(BaseModel):
    """
    Monitored address.

    Attributes
    ----------
    alias : str
        Display name
    address : str
        Address, stored lowercase
    min_balance : Decimal | None
        Native balance threshold for low balance alerts
    """
    alias: str = Field(..., min_length=1)
    address: str
    min_balance: Decimal | None = Field(default=None, ge=0)

    model_config = ConfigDict(frozen=True)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return normalize_address(v)


class TokenConfig(BaseModel):
    """
    Monitored ERC-20 token.

    Attributes
    ----------
    alias : str
        Token display name (used as the asset symbol)
    contract : str
        Token contract address
    address : str | None
        Holder address; when omitted the token is read for every
        address configured on the network
    min_balance : Decimal | None
        Token balance threshold for low balance alerts
    """
    alias: str = Field(..., min_length=1)
    contract: str
    address: str | None = None
    min_balance: Decimal | None = Field(default=None, ge=0)

    model_config = ConfigDict(frozen=True)

    @field_validator("contract")
    @classmethod
    def validate_contract(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("address")
    @classmethod
    def validate_holder(cls, v: str | None) -> str | None:
        return normalize_address(v) if v is not None else None


class NetworkConfig(BaseModel):
    """
    Network with its RPC endpoints and monitored addresses.
    """
    name: str = Field(..., min_length=1)
    chain_id: int = Field(..., gt=0)
    rpc_nodes: list[str] = Field(..., min_length=1)
    addresses: list[AddressConfig] = Field(..., min_length=1)
    tokens: list[TokenConfig] = Field(default_factory=list)
    native_symbol: str = "ETH"

    model_config = ConfigDict(frozen=True)

    @field_validator("rpc_nodes")
    @classmethod
    def validate_rpc_nodes(cls, v: list[str]) -> list[str]:
        for url in v:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"Invalid RPC URL {url!r}: only http(s) endpoints are supported")
        return v


class AlertSettings(BaseModel):
    """Toggles for notification kinds."""
    balance_change: bool = True
    low_balance: bool = True


class DailyReportConfig(BaseModel):
    """
    Daily diff report schedule.

    Attributes
    ----------
    enabled : bool
        Whether the daily report is produced
    time : str
        Wall-clock trigger time, "HH:MM" (24-hour)
    timezone : str | None
        IANA zone name; system local time when omitted
    """
    enabled: bool = True
    time: str = "09:00"
    timezone: str | None = None

    @field_validator("time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        try:
            hours, minutes = v.split(":")
            time(int(hours), int(minutes))
        except ValueError:
            raise ValueError(f"Invalid report time {v!r}, expected HH:MM")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone {v!r}")
        return v

    @property
    def trigger_time(self) -> time:
        hours, minutes = self.time.split(":")
        return time(int(hours), int(minutes))

    @property
    def tzinfo(self) -> ZoneInfo | None:
        return ZoneInfo(self.timezone) if self.timezone else None


class TelegramConfig(BaseModel):
    """Telegram Bot API delivery settings."""
    bot_token: str = Field(..., min_length=1)
    api_url: str = "https://api.telegram.org"
    show_full_address: bool = False


class Settings(BaseSettings):
    """
    Application settings using Pydantic Settings.

    Values are read from init arguments, environment variables,
    the ``.env`` file and the YAML file named by ``CONFIG_FILE``
    (``config.yaml`` by default), in that order of priority.

    Attributes
    ----------
    networks : list[NetworkConfig]
        Networks to monitor
    interval_secs : int
        Polling interval of the collection cycle
    active_transport_count : int
        Size of the active RPC endpoint subset per network
    rpc_timeout_secs : float
        Timeout of a single RPC attempt
    recovery_successes : int
        Consecutive successes that restore an unhealthy endpoint
    reprobe_every : int
        Every n-th query starts with an unhealthy endpoint
    data_dir : Path
        Directory holding persisted state files
    alerts : AlertSettings
        Enabled notification kinds
    daily_report : DailyReportConfig | None
        Daily diff report schedule
    telegram : TelegramConfig | None
        Telegram delivery; notifications are only logged when omitted
    redis_host : str | None
        Redis host for the token metadata cache (disabled when unset)
    redis_port : int
        Redis port
    redis_db : int
        Redis database number
    redis_password : str | None
        Redis password
    log_level : str
        Root logging level
    api_host : str
        Status API bind host
    api_port : int
        Status API port
    """

    networks: list[NetworkConfig] = Field(..., min_length=1)
    interval_secs: int = Field(default=60, gt=0)
    active_transport_count: int = Field(default=3, ge=1)
    rpc_timeout_secs: float = Field(default=10.0, gt=0)
    recovery_successes: int = Field(default=1, ge=1)
    reprobe_every: int = Field(default=10, ge=1)
    data_dir: Path = Path("data")

    alerts: AlertSettings = Field(default_factory=AlertSettings)
    daily_report: DailyReportConfig | None = None
    telegram: TelegramConfig | None = None

    redis_host: str | None = None
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None

    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE", ".env"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        yaml_file=os.getenv("CONFIG_FILE", "config.yaml"),
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )

    @model_validator(mode="after")
    def validate_unique_networks(self) -> "Settings":
        names = [network.name.lower() for network in self.networks]
        if len(names) != len(set(names)):
            raise ValueError("network names must be unique, ignoring case")
        return self

    def get_network(self, name: str) -> NetworkConfig | None:
        """
        Get network configuration by name.

        Parameters
        ----------
        name : str
            Network name

        Returns
        -------
        NetworkConfig | None
            Network configuration, or None if not configured
        """
        for network in self.networks:
            if network.name == name:
                return network
        return None

    @property
    def balances_path(self) -> Path:
        return self.data_dir / "balances.json"

    @property
    def alert_states_path(self) -> Path:
        return self.data_dir / "alert_states.json"

    @property
    def baseline_path(self) -> Path:
        return self.data_dir / "baseline.json"

    @property
    def recipients_path(self) -> Path:
        return self.data_dir / "recipients.json"
