"""Render alert events as Markdown chat messages."""

from __future__ import annotations

from decimal import Decimal

from chainwatch.chains.metadata import chain_info
from chainwatch.models import AlertEvent, Direction, MonitoredEntity


def shorten(value: str, *, head: int = 10, tail: int = 8) -> str:
    """Abbreviate long identifiers as ``head...tail``."""

    if len(value) <= head + tail + 3:
        return value
    return f"{value[:head]}...{value[-tail:]}"


def format_amount(amount: Decimal) -> str:
    text = format(amount.normalize(), "f")
    return text if text not in {"-0", ""} else "0"


def format_alert(entity: MonitoredEntity, event: AlertEvent) -> str:
    """Return the alert text sent to ``entity.destination``."""

    emoji = "📥" if event.direction is Direction.IN else "📤"
    link = chain_info(event.chain).tx_link(event.tx_id)
    return (
        f"{emoji} **Alert: {event.chain.value.upper()}**\n\n"
        f"Label: {entity.label}\n"
        f"Address: `{shorten(entity.address)}`\n"
        f"Direction: {event.direction.value.upper()}\n"
        f"Amount: {format_amount(event.amount)} {event.asset}\n"
        f"Tx: `{shorten(event.tx_id)}`\n\n"
        f"🔗 [View on Explorer]({link})"
    )


__all__ = ["format_alert", "format_amount", "shorten"]
