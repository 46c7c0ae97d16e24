"""One poll cycle per chain: scan, filter, record, alert, advance.

A cycle walks ``Idle -> Scanning -> Filtering -> Alerting -> Advancing``.
Qualifying activity is written to the alert ledger before any delivery is
attempted, and cursors move only after the ledger writes for the scanned
range have committed. An unexpected failure surfaces as :class:`CycleError`
carrying the stage it happened in; the next cycle starts again from the
stored cursors and the ledger absorbs the replay.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from chainwatch.chains.evm import EvmReader
from chainwatch.chains.solana import SignatureScan, SolanaReader
from chainwatch.models import ActivityRecord, AlertEvent, Chain, MonitoredEntity
from chainwatch.notifications.dispatcher import NotificationDispatcher
from chainwatch.notifications.formatter import format_alert
from chainwatch.observability import Observability
from chainwatch.store.alert_ledger import AlertLedger
from chainwatch.store.cursor_store import CursorRegressionError, CursorStore
from chainwatch.store.registry import EntityRegistry
from chainwatch.worker.matching import AddressIndex, qualifies

LOGGER = logging.getLogger(__name__)


class CycleStage(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    FILTERING = "filtering"
    ALERTING = "alerting"
    ADVANCING = "advancing"


class CycleError(RuntimeError):
    """Raised when a cycle aborts; cursors are left as they were."""

    def __init__(self, chain: Chain, stage: CycleStage, message: str) -> None:
        super().__init__(f"{chain.value} cycle failed during {stage.value}: {message}")
        self.chain = chain
        self.stage = stage


@dataclass(slots=True)
class CycleReport:
    """Counters describing what a single cycle did."""

    chain: Chain
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    stage: CycleStage = CycleStage.IDLE
    skipped_reason: str | None = None
    entities: int = 0
    cursor_before: str | None = None
    cursor_after: str | None = None
    records_seen: int = 0
    below_threshold: int = 0
    below_floor: int = 0
    alerts_created: int = 0
    duplicates: int = 0
    delivered: int = 0
    delivery_failures: int = 0
    redelivered: int = 0
    entity_errors: int = 0
    skipped_blocks: List[int] = field(default_factory=list)
    failed_signatures: int = 0

    def as_fields(self) -> Dict[str, object]:
        return {
            "chain": self.chain.value,
            "stage": self.stage.value,
            "skipped_reason": self.skipped_reason,
            "entities": self.entities,
            "cursor_before": self.cursor_before,
            "cursor_after": self.cursor_after,
            "records_seen": self.records_seen,
            "below_threshold": self.below_threshold,
            "below_floor": self.below_floor,
            "alerts_created": self.alerts_created,
            "duplicates": self.duplicates,
            "delivered": self.delivered,
            "delivery_failures": self.delivery_failures,
            "redelivered": self.redelivered,
            "entity_errors": self.entity_errors,
            "skipped_blocks": len(self.skipped_blocks),
            "failed_signatures": self.failed_signatures,
        }


Delivery = Tuple[AlertEvent, MonitoredEntity]


class _ChainCycle:
    """Shared ledger and delivery plumbing for both chain families."""

    def __init__(
        self,
        chain: Chain,
        *,
        registry: EntityRegistry,
        cursors: CursorStore,
        ledger: AlertLedger,
        dispatcher: NotificationDispatcher,
        observability: Observability | None = None,
        redelivery_limit: int = 25,
    ) -> None:
        self.chain = chain
        self.registry = registry
        self.cursors = cursors
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.observability = observability
        self.redelivery_limit = max(0, redelivery_limit)

    def run(self) -> CycleReport:
        """Execute one cycle and return its report.

        Raises:
            CycleError: Any unexpected failure, tagged with the stage it hit.
        """

        report = CycleReport(chain=self.chain)
        started = time.perf_counter()
        try:
            self._run(report)
        except Exception as exc:
            LOGGER.exception("%s cycle aborted during %s", self.chain.value, report.stage.value)
            self._emit("poll_cycle.failed", chain=self.chain.value, stage=report.stage.value, error=str(exc))
            raise CycleError(self.chain, report.stage, str(exc)) from exc

        report.stage = CycleStage.IDLE
        report.finished_at = datetime.now(timezone.utc)
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._emit("poll_cycle.completed", duration_ms=round(elapsed_ms, 2), **report.as_fields())
        if self.observability:
            tags = {"chain": self.chain.value}
            self.observability.record_timing("poll_cycle.duration", elapsed_ms, tags=tags)
            self.observability.increment("alerts.created", value=report.alerts_created, tags=tags)
            self.observability.increment("alerts.delivery_failed", value=report.delivery_failures, tags=tags)
        return report

    def _run(self, report: CycleReport) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _emit(self, event: str, **fields) -> None:
        if self.observability:
            self.observability.emit_event(event, **fields)

    def _record(self, record: ActivityRecord, entity: MonitoredEntity, report: CycleReport) -> Optional[Delivery]:
        result = self.ledger.record_if_new(self.chain, record.tx_id, entity.entity_id, record)
        if not result.created:
            report.duplicates += 1
            return None
        report.alerts_created += 1
        return result.event, entity

    def _deliver(self, event: AlertEvent, entity: MonitoredEntity, report: CycleReport) -> bool:
        text = format_alert(entity, event)
        try:
            ok = self.dispatcher.deliver(entity.destination, text)
            error = None if ok else f"{self.dispatcher.name} delivery failed"
        except Exception as exc:
            LOGGER.exception("Dispatcher raised while delivering event %s", event.event_id)
            ok, error = False, str(exc)

        if ok:
            self.ledger.mark_delivered(event.event_id)
            report.delivered += 1
            LOGGER.info("Sent alert for %s (%s)", entity.label, event.tx_id[:10])
            return True
        self.ledger.record_delivery_failure(event.event_id, error or "delivery failed")
        report.delivery_failures += 1
        LOGGER.warning("Alert delivery failed for event %s: %s", event.event_id, error)
        return False

    def _alert(self, fresh: Iterable[Delivery], report: CycleReport) -> None:
        """Deliver new events once, then older undelivered ones for this chain."""

        report.stage = CycleStage.ALERTING
        attempted = set()
        for event, entity in fresh:
            attempted.add(event.event_id)
            self._deliver(event, entity, report)
        self._redeliver(attempted, report)

    def _redeliver(self, exclude: Iterable[str], report: CycleReport) -> None:
        if not self.redelivery_limit:
            return
        pending = self.ledger.pending_deliveries(self.chain, limit=self.redelivery_limit, exclude=exclude)
        for item in pending:
            if self._deliver(item.event, item.entity, report):
                report.redelivered += 1


def _registration_floor(entity: MonitoredEntity) -> int | None:
    try:
        return int(entity.cursor) if entity.cursor else None
    except ValueError:
        return None


class BlockChainCycle(_ChainCycle):
    """Cycle for a block-family chain sharing one cursor across entities."""

    def __init__(self, chain: Chain, reader: EvmReader, **kwargs) -> None:
        super().__init__(chain, **kwargs)
        self.reader = reader

    def _run(self, report: CycleReport) -> None:
        report.stage = CycleStage.SCANNING
        head = self.reader.latest_block()
        cursor, created = self.cursors.ensure_chain_cursor(self.chain, head)
        report.cursor_before = str(cursor.last_block_number)
        if created:
            report.skipped_reason = "cursor_seeded"
            report.cursor_after = report.cursor_before
            return

        index = AddressIndex(self.chain, self.registry.list_active(self.chain))
        report.entities = len(index)
        if not index:
            report.skipped_reason = "no_entities"
            report.cursor_after = report.cursor_before
            LOGGER.info("No tracked addresses for %s", self.chain.value)
            return

        scan = self.reader.scan(cursor.last_block_number, head, index.addresses)
        report.skipped_blocks = list(scan.skipped_heights)
        report.records_seen = len(scan.records)

        report.stage = CycleStage.FILTERING
        fresh: List[Delivery] = []
        for record in scan.records:
            for entity in index.entities_for(record.address):
                floor = _registration_floor(entity)
                if floor is not None and record.block_height is not None and record.block_height <= floor:
                    report.below_floor += 1
                    continue
                if not qualifies(record.amount, entity.min_amount):
                    report.below_threshold += 1
                    continue
                delivery = self._record(record, entity, report)
                if delivery:
                    fresh.append(delivery)

        self._alert(fresh, report)

        report.stage = CycleStage.ADVANCING
        stored = max(scan.reached_height, cursor.last_block_number)
        if scan.reached_height > cursor.last_block_number:
            try:
                self.cursors.advance_chain_cursor(self.chain, scan.reached_height)
                LOGGER.info("Updated %s cursor to block %s", self.chain.value, scan.reached_height)
            except CursorRegressionError as exc:
                # Another poller already scanned past this window.
                stored = exc.current
                LOGGER.info("%s cursor already at block %s; keeping it", self.chain.value, exc.current)
        report.cursor_after = str(stored)


class SignatureChainCycle(_ChainCycle):
    """Cycle for a signature-family chain with one cursor per entity.

    Entity scans run concurrently up to ``max_fanout``; recording, alerting
    and cursor updates happen afterwards, one entity at a time. A failure for
    one entity is logged and counted without touching the others.
    """

    def __init__(self, chain: Chain, reader: SolanaReader, *, max_fanout: int = 4, **kwargs) -> None:
        super().__init__(chain, **kwargs)
        self.reader = reader
        self.max_fanout = max(1, max_fanout)

    def _scan_entities(self, entities: List[MonitoredEntity]) -> Dict[int, SignatureScan | Exception]:
        def _scan(entity: MonitoredEntity) -> Tuple[int, SignatureScan | Exception]:
            try:
                return entity.entity_id, self.reader.scan(entity.address, entity.cursor)
            except Exception as exc:
                return entity.entity_id, exc

        if len(entities) == 1 or self.max_fanout == 1:
            return dict(_scan(entity) for entity in entities)
        with ThreadPoolExecutor(max_workers=min(self.max_fanout, len(entities))) as pool:
            return dict(pool.map(_scan, entities))

    def _process_entity(self, entity: MonitoredEntity, scan: SignatureScan, report: CycleReport) -> List[Delivery]:
        fresh: List[Delivery] = []
        for record in scan.records:
            if not qualifies(record.amount, entity.min_amount):
                report.below_threshold += 1
                continue
            delivery = self._record(record, entity, report)
            if delivery:
                fresh.append(delivery)
        return fresh

    def _run(self, report: CycleReport) -> None:
        report.stage = CycleStage.SCANNING
        entities = self.registry.list_active(self.chain)
        report.entities = len(entities)
        if not entities:
            report.skipped_reason = "no_entities"
            LOGGER.info("No tracked addresses for %s", self.chain.value)
            return

        scans = self._scan_entities(entities)
        attempted: List[Delivery] = []
        for entity in entities:
            outcome = scans.get(entity.entity_id)
            if isinstance(outcome, Exception) or outcome is None:
                report.entity_errors += 1
                LOGGER.error("Error polling %s (entity %s): %s", entity.label, entity.entity_id, outcome)
                continue
            report.records_seen += len(outcome.records)
            report.failed_signatures += len(outcome.failed_signatures)
            try:
                report.stage = CycleStage.FILTERING
                fresh = self._process_entity(entity, outcome, report)
                report.stage = CycleStage.ALERTING
                for event, owner in fresh:
                    self._deliver(event, owner, report)
                attempted.extend(fresh)
                report.stage = CycleStage.ADVANCING
                if outcome.new_cursor and outcome.new_cursor != entity.cursor:
                    self.cursors.advance_entity_cursor(entity.entity_id, outcome.new_cursor)
                    LOGGER.info("Updated cursor for %s", entity.label)
            except Exception:
                report.entity_errors += 1
                LOGGER.exception("Error processing %s (entity %s)", entity.label, entity.entity_id)

        if report.entity_errors == len(entities):
            report.stage = CycleStage.SCANNING
            raise RuntimeError(f"all {len(entities)} entities failed")

        report.stage = CycleStage.ALERTING
        self._redeliver({event.event_id for event, _ in attempted}, report)


__all__ = [
    "BlockChainCycle",
    "CycleError",
    "CycleReport",
    "CycleStage",
    "SignatureChainCycle",
]
