"""Observability helpers: logging setup, structured events and StatsD counters."""

from __future__ import annotations

import json
import logging
import socket
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping

from chainwatch.settings import Settings, get_settings

_LOGGER = logging.getLogger("chainwatch.observability")
_STATSD_LOCK = threading.Lock()
_SHARED_STATSD: "_StatsdBackend | None" = None
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    """Install the process-wide log format at the configured level."""

    resolved = settings or get_settings()
    level = getattr(logging, resolved.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)


class Observability:
    """Emit structured pipeline events and StatsD-compatible metrics."""

    def __init__(
        self,
        *,
        settings: Settings,
        component: str | None = None,
        statsd: "_StatsdBackend | None" = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.component = component or "core"
        self._logger = logger or _LOGGER
        self._structured_logging = bool(settings.observability.structured_logging)
        self._statsd = statsd

    def emit_event(self, event: str, **fields: Any) -> None:
        """Log ``event`` with ``fields``, as JSON when structured logging is on."""

        payload = {
            "event": event,
            "component": self.component,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **fields,
        }
        if self._structured_logging:
            self._logger.info(json.dumps(payload, default=_serialize))
        else:
            self._logger.info("%s | %s", event, payload)

    def increment(self, metric: str, *, value: float = 1.0, tags: Mapping[str, str] | None = None) -> None:
        if self._statsd:
            self._statsd.send(metric, value, metric_type="c", tags=tags)

    def record_timing(self, metric: str, value_ms: float, *, tags: Mapping[str, str] | None = None) -> None:
        if self._statsd:
            self._statsd.send(metric, value_ms, metric_type="ms", tags=tags)


def get_observability(*, component: str | None = None, settings: Settings | None = None) -> Observability:
    """Return an :class:`Observability` instance for the requested component."""

    resolved = settings or get_settings()
    return Observability(settings=resolved, component=component, statsd=_shared_statsd(resolved))


def reset_observability_cache() -> None:
    """Drop the shared StatsD client (used in tests)."""

    global _SHARED_STATSD
    with _STATSD_LOCK:
        _SHARED_STATSD = None


@dataclass(slots=True)
class _StatsdBackend:
    """Minimal StatsD client using UDP sockets."""

    host: str
    port: int
    prefix: str
    _address: tuple = field(init=False, repr=False)
    _socket: socket.socket = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._address = (self.host, self.port)
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def send(self, metric: str, value: float, *, metric_type: str, tags: Mapping[str, str] | None) -> None:
        scoped = f"{self.prefix}.{metric}" if self.prefix else metric
        payload = f"{scoped}:{_format_number(value)}|{metric_type}"
        if tags:
            tag_block = ",".join(f"{key}:{val}" for key, val in sorted(tags.items()) if val is not None)
            if tag_block:
                payload = f"{payload}|#{tag_block}"
        try:
            self._socket.sendto(payload.encode("utf-8"), self._address)
        except OSError:  # pragma: no cover - metrics are best effort
            _LOGGER.debug("StatsD send failed for metric %s", metric, exc_info=True)


def _shared_statsd(settings: Settings) -> _StatsdBackend | None:
    global _SHARED_STATSD
    with _STATSD_LOCK:
        if _SHARED_STATSD is None and settings.observability.statsd_host:
            _SHARED_STATSD = _StatsdBackend(
                host=settings.observability.statsd_host,
                port=settings.observability.statsd_port,
                prefix=settings.observability.statsd_prefix,
            )
        return _SHARED_STATSD


def _serialize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _format_number(value: float) -> str:
    formatted = f"{value:.6f}".rstrip("0").rstrip(".")
    return formatted or "0"


__all__ = ["Observability", "configure_logging", "get_observability", "reset_observability_cache"]
