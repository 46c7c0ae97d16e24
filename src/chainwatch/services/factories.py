"""Factory helpers that instantiate stores, readers and dispatchers from settings.

Every builder accepts an optional :class:`~chainwatch.settings.Settings` so
tests and jobs can wire components explicitly; by default the cached
process settings are used.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Union

from sqlalchemy.orm import sessionmaker

from chainwatch.chains.evm import EvmReader
from chainwatch.chains.metadata import chain_info, parse_chain
from chainwatch.chains.rpc import JsonRpcClient
from chainwatch.chains.solana import SolanaReader
from chainwatch.models import Chain, ChainFamily
from chainwatch.notifications.dispatcher import LogDispatcher, NotificationDispatcher, TelegramDispatcher
from chainwatch.observability import get_observability
from chainwatch.settings import Settings, get_settings
from chainwatch.store.alert_ledger import AlertLedger
from chainwatch.store.cursor_store import CursorStore
from chainwatch.store.registry import EntityRegistry
from chainwatch.store.sql import METADATA, build_engine
from chainwatch.store.sql import session_factory as build_sql_session_factory
from chainwatch.worker.cycle import BlockChainCycle, SignatureChainCycle
from chainwatch.worker.scheduler import ChainScheduler

ChainReader = Union[EvmReader, SolanaReader]

_FACTORY_LOCK = threading.Lock()
_SESSION_FACTORY: sessionmaker | None = None


class ChainNotConfiguredError(RuntimeError):
    """Raised when a chain is used without an RPC endpoint configured."""


def _build_session_factory(settings: Settings | None = None) -> sessionmaker:
    engine = build_engine(settings=settings)
    if engine.dialect.name == "sqlite":
        # Local SQLite databases are created on first use; Postgres goes through Alembic.
        METADATA.create_all(engine)
    return build_sql_session_factory(engine=engine)


def _session_factory(settings: Settings | None = None) -> sessionmaker:
    """Return one sessionmaker per process so every store shares an engine."""

    global _SESSION_FACTORY
    if settings is not None:
        return _build_session_factory(settings)
    with _FACTORY_LOCK:
        if _SESSION_FACTORY is None:
            _SESSION_FACTORY = _build_session_factory()
        return _SESSION_FACTORY


def build_entity_registry(
    settings: Settings | None = None, *, session_factory: sessionmaker | None = None
) -> EntityRegistry:
    resolved = settings or get_settings()
    return EntityRegistry(
        session_factory=session_factory or _session_factory(settings),
        max_per_user=resolved.limits.max_tracked_per_user,
        max_total=resolved.limits.max_tracked_total,
    )


def build_cursor_store(settings: Settings | None = None, *, session_factory: sessionmaker | None = None) -> CursorStore:
    return CursorStore(session_factory=session_factory or _session_factory(settings))


def build_alert_ledger(settings: Settings | None = None, *, session_factory: sessionmaker | None = None) -> AlertLedger:
    return AlertLedger(session_factory=session_factory or _session_factory(settings))


def build_dispatcher(settings: Settings | None = None) -> NotificationDispatcher:
    """Return the configured alert channel.

    Raises:
        ValueError: The Telegram backend is selected without a bot token.
    """

    resolved = settings or get_settings()
    notifications = resolved.notifications
    if notifications.backend == "log":
        return LogDispatcher()
    if notifications.backend == "telegram":
        if not notifications.telegram_bot_token:
            raise ValueError("TELEGRAM_BOT_TOKEN is required for the telegram notification backend")
        return TelegramDispatcher(
            notifications.telegram_bot_token,
            api_base=notifications.telegram_api_base,
            timeout=notifications.timeout_seconds,
        )
    raise NotImplementedError(f"Unsupported notification backend '{notifications.backend}'")


def build_reader(chain: Chain | str, settings: Settings | None = None) -> ChainReader:
    """Instantiate the chain reader for ``chain`` using its configured endpoint."""

    resolved_chain = parse_chain(chain)
    resolved = settings or get_settings()
    url = resolved.rpc.url_for(resolved_chain.value)
    if not url:
        raise ChainNotConfiguredError(f"No RPC endpoint configured for {resolved_chain.value}")
    rpc = JsonRpcClient(url, timeout=resolved.rpc.timeout_seconds)
    poller = resolved.poller
    if chain_info(resolved_chain).family is ChainFamily.SIGNATURE:
        return SolanaReader(
            rpc,
            chain=resolved_chain,
            page_size=poller.signature_page_size,
            max_backfill_pages=poller.max_backfill_pages,
            max_fanout=poller.max_fanout,
        )
    return EvmReader(
        resolved_chain,
        rpc,
        max_blocks_per_scan=poller.max_blocks_per_scan,
        max_fanout=poller.max_fanout,
        check_lookback_blocks=poller.check_lookback_blocks,
    )


class ChainReaders:
    """Lazily built, cached readers keyed by chain."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self._readers: Dict[Chain, ChainReader] = {}
        self._lock = threading.Lock()

    def __call__(self, chain: Chain | str) -> ChainReader:
        resolved = parse_chain(chain)
        with self._lock:
            reader = self._readers.get(resolved)
            if reader is None:
                reader = build_reader(resolved, self._settings)
                self._readers[resolved] = reader
            return reader


def build_scheduler(
    chain: Chain | str,
    settings: Settings | None = None,
    *,
    registry: EntityRegistry | None = None,
    cursors: CursorStore | None = None,
    ledger: AlertLedger | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> ChainScheduler:
    """Wire the cycle and scheduler for one chain."""

    resolved_chain = parse_chain(chain)
    resolved = settings or get_settings()
    poller = resolved.poller
    common = dict(
        registry=registry or build_entity_registry(settings),
        cursors=cursors or build_cursor_store(settings),
        ledger=ledger or build_alert_ledger(settings),
        dispatcher=dispatcher or build_dispatcher(settings),
        observability=get_observability(component=f"poller.{resolved_chain.value}", settings=resolved),
        redelivery_limit=poller.redelivery_batch_limit,
    )
    reader = build_reader(resolved_chain, settings)
    if chain_info(resolved_chain).family is ChainFamily.SIGNATURE:
        cycle = SignatureChainCycle(resolved_chain, reader, max_fanout=poller.max_fanout, **common)
        interval = poller.solana_poll_interval_seconds
    else:
        cycle = BlockChainCycle(resolved_chain, reader, **common)
        interval = poller.evm_poll_interval_seconds
    return ChainScheduler(
        cycle,
        interval_seconds=interval,
        backoff_multiplier=poller.backoff_multiplier,
        max_backoff_seconds=poller.max_backoff_seconds,
        jitter_ratio=poller.jitter_ratio,
    )


def build_schedulers(chains: List[Chain] | None = None, settings: Settings | None = None) -> List[ChainScheduler]:
    """Build schedulers for ``chains`` (default: every chain with an endpoint).

    Stores and the dispatcher are shared across the returned schedulers.
    """

    resolved = settings or get_settings()
    selected = chains or [chain for chain in Chain if resolved.rpc.url_for(chain.value)]
    factory = _session_factory(settings)
    registry = build_entity_registry(settings, session_factory=factory)
    cursors = build_cursor_store(settings, session_factory=factory)
    ledger = build_alert_ledger(settings, session_factory=factory)
    dispatcher = build_dispatcher(settings)
    return [
        build_scheduler(
            chain,
            settings,
            registry=registry,
            cursors=cursors,
            ledger=ledger,
            dispatcher=dispatcher,
        )
        for chain in selected
    ]


__all__ = [
    "ChainNotConfiguredError",
    "ChainReader",
    "ChainReaders",
    "build_alert_ledger",
    "build_cursor_store",
    "build_dispatcher",
    "build_entity_registry",
    "build_reader",
    "build_scheduler",
    "build_schedulers",
]
