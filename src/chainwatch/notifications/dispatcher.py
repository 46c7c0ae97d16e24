"""Delivery channels used by the poll pipeline.

Dispatchers report failure by returning ``False``; they never raise and never
retry. Undelivered alerts stay pending in the ledger and are re-attempted on a
later cycle.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

LOGGER = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    """Protocol describing a best-effort alert channel."""

    name: str

    def deliver(self, destination: str, text: str) -> bool:  # pragma: no cover - Protocol
        ...


class TelegramDispatcher:
    """Send alerts through the Telegram Bot API ``sendMessage`` method."""

    name = "telegram"

    def __init__(
        self,
        bot_token: str,
        *,
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        if not bot_token:
            raise ValueError("Telegram bot token is required")
        self._url = f"{api_base.rstrip('/')}/bot{bot_token}/sendMessage"
        self._client = client or httpx.Client(timeout=timeout)

    def deliver(self, destination: str, text: str) -> bool:
        payload = {"chat_id": destination, "text": text, "parse_mode": "Markdown"}
        try:
            response = self._client.post(self._url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            LOGGER.warning("Telegram returned HTTP %s for chat %s", exc.response.status_code, destination)
            return False
        except httpx.HTTPError as exc:
            LOGGER.warning("Telegram request failed for chat %s: %s", destination, exc)
            return False
        except ValueError:
            LOGGER.warning("Telegram returned a non-JSON body for chat %s", destination)
            return False

        if not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description") if isinstance(body, dict) else None
            LOGGER.warning("Telegram rejected message for chat %s: %s", destination, description or "unknown error")
            return False
        return True

    def close(self) -> None:
        self._client.close()


class LogDispatcher:
    """Write alerts to the log instead of a chat channel (local development)."""

    name = "log"

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or LOGGER

    def deliver(self, destination: str, text: str) -> bool:
        self._logger.info("Alert for %s:\n%s", destination, text)
        return True


__all__ = ["LogDispatcher", "NotificationDispatcher", "TelegramDispatcher"]
