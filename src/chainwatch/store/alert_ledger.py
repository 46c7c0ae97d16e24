"""Deduplicating ledger of alert events and their delivery state."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from chainwatch.chains.metadata import parse_chain
from chainwatch.models import ActivityRecord, AlertEvent, Chain, Direction, MonitoredEntity
from chainwatch.store import sql as sql_schema
from chainwatch.store.sql import as_utc, utcnow
from chainwatch.store.sql import session_factory as default_session_factory

LOGGER = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


@dataclass(slots=True)
class LedgerResult:
    """Outcome of :meth:`AlertLedger.record_if_new`."""

    created: bool
    event: AlertEvent


@dataclass(slots=True)
class PendingDelivery:
    """An undelivered event together with the entity it alerts about."""

    event: AlertEvent
    entity: MonitoredEntity


def _row_to_event(row) -> AlertEvent:
    return AlertEvent(
        event_id=row.event_id,
        chain=Chain(row.chain),
        tx_id=row.tx_id,
        entity_id=row.entity_id,
        timestamp=as_utc(row.timestamp),
        direction=Direction(row.direction),
        amount=Decimal(row.amount),
        asset=row.asset,
        counterparty=row.counterparty,
        delivered=bool(row.delivered),
        delivered_at=as_utc(row.delivered_at),
        delivery_attempts=row.delivery_attempts,
        last_error=row.last_error,
        created_at=as_utc(row.created_at),
    )


class AlertLedger:
    """At-most-once alert bookkeeping keyed by (chain, tx_id, entity_id).

    Uniqueness is enforced by the ``uq_alert_events_chain_tx_entity``
    constraint, so repeated cycles and concurrent pollers can call
    :meth:`record_if_new` freely.
    """

    def __init__(self, *, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory or default_session_factory()

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _find(self, chain: Chain, tx_id: str, entity_id: int) -> Optional[AlertEvent]:
        table = sql_schema.alert_events
        with self._session_scope() as session:
            row = session.execute(
                sa.select(table).where(
                    table.c.chain == chain.value,
                    table.c.tx_id == tx_id,
                    table.c.entity_id == entity_id,
                )
            ).first()
        return _row_to_event(row) if row else None

    def record_if_new(self, chain: Chain | str, tx_id: str, entity_id: int, details: ActivityRecord) -> LedgerResult:
        """Insert an undelivered event unless one exists for the triple.

        When the event already exists the stored row is returned unchanged
        with ``created=False``.
        """

        resolved = parse_chain(chain)
        existing = self._find(resolved, tx_id, entity_id)
        if existing is not None:
            return LedgerResult(created=False, event=existing)

        event = AlertEvent(
            event_id=str(uuid.uuid4()),
            chain=resolved,
            tx_id=tx_id,
            entity_id=entity_id,
            timestamp=details.timestamp,
            direction=details.direction,
            amount=details.amount,
            asset=details.asset,
            counterparty=details.counterparty,
            delivered=False,
            delivered_at=None,
            delivery_attempts=0,
            last_error=None,
            created_at=utcnow(),
        )
        try:
            with self._session_scope() as session:
                session.execute(
                    sa.insert(sql_schema.alert_events).values(
                        event_id=event.event_id,
                        chain=resolved.value,
                        tx_id=tx_id,
                        entity_id=entity_id,
                        timestamp=event.timestamp,
                        direction=event.direction.value,
                        amount=event.amount,
                        asset=event.asset,
                        counterparty=event.counterparty,
                        delivered=False,
                        delivery_attempts=0,
                        created_at=event.created_at,
                    )
                )
        except IntegrityError:
            stored = self._find(resolved, tx_id, entity_id)
            if stored is None:
                raise
            LOGGER.debug("Alert for %s/%s/%s recorded concurrently", resolved.value, tx_id, entity_id)
            return LedgerResult(created=False, event=stored)

        LOGGER.info(
            "Recorded alert event_id=%s chain=%s tx=%s entity=%s", event.event_id, resolved.value, tx_id, entity_id
        )
        return LedgerResult(created=True, event=event)

    def get(self, event_id: str) -> Optional[AlertEvent]:
        table = sql_schema.alert_events
        with self._session_scope() as session:
            row = session.execute(sa.select(table).where(table.c.event_id == event_id)).first()
        return _row_to_event(row) if row else None

    def mark_delivered(self, event_id: str) -> bool:
        """Flag the event delivered. Returns False when it already was."""

        table = sql_schema.alert_events
        with self._session_scope() as session:
            result = session.execute(
                sa.update(table)
                .where(table.c.event_id == event_id, table.c.delivered.is_(False))
                .values(
                    delivered=True,
                    delivered_at=utcnow(),
                    delivery_attempts=table.c.delivery_attempts + 1,
                    last_error=None,
                )
            )
            return result.rowcount > 0

    def record_delivery_failure(self, event_id: str, error: str) -> None:
        table = sql_schema.alert_events
        with self._session_scope() as session:
            session.execute(
                sa.update(table)
                .where(table.c.event_id == event_id, table.c.delivered.is_(False))
                .values(
                    delivery_attempts=table.c.delivery_attempts + 1,
                    last_error=(error or "delivery failed")[:MAX_ERROR_LENGTH],
                )
            )

    def pending_deliveries(
        self,
        chain: Chain | str | None = None,
        *,
        limit: int = 25,
        exclude: Iterable[str] = (),
    ) -> List[PendingDelivery]:
        """Return undelivered events for active entities.

        Events with the fewest delivery attempts come first, then the oldest,
        so a destination that keeps failing cannot hold every slot of the batch.
        """

        events = sql_schema.alert_events
        entities = sql_schema.monitored_entities
        users = sql_schema.users
        stmt = (
            sa.select(
                events,
                entities.c.user_id.label("entity_user_id"),
                entities.c.address.label("entity_address"),
                entities.c.label.label("entity_label"),
                entities.c.min_amount.label("entity_min_amount"),
                entities.c.cursor.label("entity_cursor"),
                entities.c.created_at.label("entity_created_at"),
                users.c.external_id,
            )
            .select_from(
                events.join(entities, events.c.entity_id == entities.c.entity_id).join(
                    users, entities.c.user_id == users.c.user_id
                )
            )
            .where(events.c.delivered.is_(False), entities.c.is_active.is_(True))
        )
        if chain is not None:
            stmt = stmt.where(events.c.chain == parse_chain(chain).value)
        skipped = list(exclude)
        if skipped:
            stmt = stmt.where(events.c.event_id.not_in(skipped))
        stmt = stmt.order_by(events.c.delivery_attempts.asc(), events.c.created_at.asc()).limit(max(0, limit))

        with self._session_scope() as session:
            rows = session.execute(stmt).fetchall()

        pending: List[PendingDelivery] = []
        for row in rows:
            entity = MonitoredEntity(
                entity_id=row.entity_id,
                user_id=row.entity_user_id,
                destination=row.external_id,
                chain=Chain(row.chain),
                address=row.entity_address,
                label=row.entity_label,
                min_amount=Decimal(row.entity_min_amount),
                is_active=True,
                cursor=row.entity_cursor,
                created_at=as_utc(row.entity_created_at),
            )
            pending.append(PendingDelivery(event=_row_to_event(row), entity=entity))
        return pending

    def list_for_entity(self, entity_id: int, *, limit: int = 50) -> List[AlertEvent]:
        """Return the most recent events for ``entity_id``, newest first."""

        table = sql_schema.alert_events
        with self._session_scope() as session:
            rows = session.execute(
                sa.select(table)
                .where(table.c.entity_id == entity_id)
                .order_by(table.c.timestamp.desc(), table.c.created_at.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_event(row) for row in rows]


__all__ = ["AlertLedger", "LedgerResult", "PendingDelivery"]
