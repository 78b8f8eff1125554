import asyncio
import html
import logging
from decimal import Decimal
from typing import Protocol

import aiohttp

from core.environment.config import TelegramConfig
from monitoring.entities import (
    BalanceChangedEvent,
    DailyDiffReadyEvent,
    LowBalanceEvent,
    MonitoredEntity,
    NotificationEvent,
    ReadFailedEvent,
    RecoveredEvent,
)
from monitoring.storage import RecipientRegistry

TELEGRAM_MESSAGE_LIMIT = 4096


class NotificationSink(Protocol):
    async def publish(self, events: list[NotificationEvent]) -> None:
        ...


def format_amount(value: Decimal | None) -> str:
    """
    Render a decimal amount without exponent or trailing zeros.
    """
    if value is None:
        return "n/a"
    text = f"{value:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("", "-0"):
        text = "0"
    return text


def format_signed(value: Decimal) -> str:
    return f"+{format_amount(value)}" if value > 0 else format_amount(value)


def percent_change(old: Decimal, new: Decimal) -> Decimal | None:
    if old == 0:
        return None
    return (new - old) / old * 100


def shorten_address(address: str) -> str:
    """
    Shorten an address for display (0xabcd...1234).
    """
    if len(address) > 10:
        return f"{address[:6]}...{address[-4:]}"
    return address


def describe_entity(entity: MonitoredEntity) -> str:
    return f"[{entity.network}] {entity.alias} {entity.asset}"


class LoggingSink:
    """
    Writes every event to the service log.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    async def publish(self, events: list[NotificationEvent]) -> None:
        for event in events:
            match event:
                case BalanceChangedEvent():
                    pct = percent_change(event.old, event.new)
                    pct_text = f" ({pct:+.2f}%)" if pct is not None and abs(pct) >= Decimal("0.01") else ""
                    self.logger.info(
                        f"{'📈' if event.delta > 0 else '📉'} {describe_entity(event.entity)}: "
                        f"{format_signed(event.delta)}{pct_text} | "
                        f"{format_amount(event.old)} → {format_amount(event.new)}"
                    )
                case LowBalanceEvent():
                    self.logger.warning(
                        f"⚠️ {describe_entity(event.entity)} low balance "
                        f"{format_amount(event.balance)} < {format_amount(event.threshold)} "
                        f"(alert #{event.alert_number})"
                    )
                case RecoveredEvent():
                    self.logger.info(
                        f"✅ {describe_entity(event.entity)} recovered: {format_amount(event.balance)}"
                    )
                case ReadFailedEvent():
                    self.logger.warning(f"❌ {describe_entity(event.entity)} read failed: {event.cause}")
                case DailyDiffReadyEvent():
                    self.logger.info(f"📊 Daily report ready: {len(event.records)} entities")
                    for record in event.records:
                        delta = format_signed(record.delta) if record.delta is not None else "n/a"
                        self.logger.info(
                            f"   {describe_entity(record.entity)}: {delta} "
                            f"({format_amount(record.baseline)} → {format_amount(record.current)})"
                        )


class MessageFormatter:
    """
    Renders events as Telegram HTML messages.

    Parameters
    ----------
    show_full_address : bool
        Show full addresses instead of the shortened form
    """

    def __init__(self, show_full_address: bool = False):
        self.show_full_address = show_full_address

    def format(self, event: NotificationEvent) -> str:
        match event:
            case BalanceChangedEvent():
                return self._balance_changed(event)
            case LowBalanceEvent():
                return (
                    f"⚠️ <b>Low Balance</b> (alert #{event.alert_number})\n\n"
                    f"{self._header(event.entity)}"
                    f"💰 <b>{html.escape(event.entity.asset)}</b>: <b>{format_amount(event.balance)}</b>\n"
                    f"Threshold: {format_amount(event.threshold)}\n"
                )
            case RecoveredEvent():
                return (
                    f"✅ <b>Balance Recovered</b>\n\n"
                    f"{self._header(event.entity)}"
                    f"💰 <b>{html.escape(event.entity.asset)}</b>: <b>{format_amount(event.balance)}</b>\n"
                )
            case ReadFailedEvent():
                return (
                    f"❌ <b>Balance Read Failed</b>\n\n"
                    f"{self._header(event.entity)}"
                    f"💰 <b>{html.escape(event.entity.asset)}</b>\n"
                    f"<code>{html.escape(event.cause)}</code>\n"
                )
            case DailyDiffReadyEvent():
                return self._daily_report(event)
        raise ValueError(f"Unsupported event: {event!r}")

    def _address(self, address: str) -> str:
        return address if self.show_full_address else shorten_address(address)

    def _header(self, entity: MonitoredEntity) -> str:
        return (
            f"🌐 {html.escape(entity.network)}\n"
            f"📍 <b>{html.escape(entity.alias)}</b>\n"
            f"<code>{self._address(entity.address)}</code>\n\n"
        )

    def _balance_changed(self, event: BalanceChangedEvent) -> str:
        emoji = "📈" if event.delta > 0 else "📉"
        pct = percent_change(event.old, event.new)
        change = f"{emoji} <b>{format_signed(event.delta)}</b>"
        if pct is not None and abs(pct) >= Decimal("0.01"):
            change += f" ({pct:+.2f}%)"
        return (
            f"🔔 <b>Balance Alert</b>\n\n"
            f"{self._header(event.entity)}"
            f"💰 <b>{html.escape(event.entity.asset)}</b>\n"
            f"{change}\n"
            f"{format_amount(event.old)} → {format_amount(event.new)}\n"
        )

    def _daily_report(self, event: DailyDiffReadyEvent) -> str:
        since = f" since {event.baseline_date}" if event.baseline_date else ""
        lines = [f"📊 <b>Daily Report</b>{since}", ""]
        current_header = None
        for record in event.records:
            entity = record.entity
            header = (entity.network, entity.alias)
            if header != current_header:
                if current_header is not None:
                    lines.append("")
                lines.append(f"📍 <b>{html.escape(entity.alias)}</b> ({html.escape(entity.network)})")
                lines.append(f"<code>{self._address(entity.address)}</code>")
                current_header = header
            if record.delta is None:
                change = "no data"
            elif record.delta == 0:
                change = "no change"
            else:
                change = f"{'📈' if record.delta > 0 else '📉'} {format_signed(record.delta)}"
            lines.append(
                f"💵 {html.escape(entity.asset)}: <b>{format_amount(record.current)}</b> ({change})"
            )
        return "\n".join(lines) + "\n"


def split_message(text: str, limit: int = TELEGRAM_MESSAGE_LIMIT) -> list[str]:
    """
    Split a message on line boundaries to fit the Telegram limit.
    """
    chunks = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return chunks


class TelegramSink:
    """
    Delivers events to registered recipients via the Telegram Bot API.

    Delivery failures are logged per recipient and never raised:
    one unreachable chat must not block the others.

    Parameters
    ----------
    config : TelegramConfig
        Bot token and display settings
    registry : RecipientRegistry
        Registered recipients
    logger : logging.Logger
        Logger instance
    """

    def __init__(self, config: TelegramConfig, registry: RecipientRegistry, logger: logging.Logger):
        self.config = config
        self.registry = registry
        self.logger = logger
        self.formatter = MessageFormatter(show_full_address=config.show_full_address)

    @property
    def send_url(self) -> str:
        return f"{self.config.api_url.rstrip('/')}/bot{self.config.bot_token}/sendMessage"

    async def publish(self, events: list[NotificationEvent]) -> None:
        recipients = self.registry.recipients()
        if not recipients:
            self.logger.debug(f"No Telegram recipients registered, dropping {len(events)} event(s)")
            return

        messages = [
            chunk
            for event in events
            for chunk in split_message(self.formatter.format(event))
        ]

        timeout = aiohttp.ClientTimeout(total=15)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            for message in messages:
                for recipient in recipients:
                    await self._send(session, recipient, message)

    async def _send(self, session: aiohttp.ClientSession, recipient: str, text: str) -> bool:
        """
        Send one message to one recipient.

        Returns
        -------
        bool
            True if the Bot API accepted the message
        """
        payload = {
            "chat_id": recipient,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            async with session.post(self.send_url, json=payload) as response:
                if response.status != 200:
                    body = await response.text()
                    self.logger.warning(
                        f"Telegram delivery to {recipient} failed: HTTP {response.status} {body[:200]}"
                    )
                    return False
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Telegram delivery to {recipient} failed: {e!r}")
            return False
