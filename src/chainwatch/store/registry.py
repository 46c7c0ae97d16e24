"""Registry of monitored (user, chain, address) entities."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from chainwatch.chains.metadata import normalize_address, parse_chain
from chainwatch.models import Chain, MonitoredEntity
from chainwatch.store import sql as sql_schema
from chainwatch.store.sql import as_utc, utcnow
from chainwatch.store.sql import session_factory as default_session_factory

LOGGER = logging.getLogger(__name__)


class RegistrationError(ValueError):
    """Base class for rejected registrations."""


class RegistrationLimitError(RegistrationError):
    """Raised when the per-user or system-wide active entity cap is reached."""


class DuplicateRegistrationError(RegistrationError):
    """Raised when the user already tracks the address on the chain."""


def _entity_select() -> sa.Select:
    entities = sql_schema.monitored_entities
    return sa.select(entities, sql_schema.users.c.external_id).select_from(
        entities.join(sql_schema.users, entities.c.user_id == sql_schema.users.c.user_id)
    )


def _row_to_entity(row) -> MonitoredEntity:
    return MonitoredEntity(
        entity_id=row.entity_id,
        user_id=row.user_id,
        destination=row.external_id,
        chain=Chain(row.chain),
        address=row.address,
        label=row.label,
        min_amount=Decimal(row.min_amount),
        is_active=bool(row.is_active),
        cursor=row.cursor,
        created_at=as_utc(row.created_at),
    )


class EntityRegistry:
    """Create, list and soft-delete monitored entities.

    Limits are checked inside the registration transaction; the partial unique
    index on active (user, chain, address) rows backs the duplicate check when
    two registrations race.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker | None = None,
        max_per_user: int = 20,
        max_total: int = 200,
    ) -> None:
        self._session_factory = session_factory or default_session_factory()
        self.max_per_user = max_per_user
        self.max_total = max_total
        self._lock = threading.Lock()

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

    def _ensure_user(self, session: Session, external_id: str) -> int:
        users = sql_schema.users
        user_id = session.execute(sa.select(users.c.user_id).where(users.c.external_id == external_id)).scalar()
        if user_id is not None:
            return user_id
        result = session.execute(sa.insert(users).values(external_id=external_id, created_at=utcnow()))
        return result.inserted_primary_key[0]

    def register(
        self,
        *,
        user_external_id: str,
        chain: Chain | str,
        address: str,
        label: str,
        min_amount: Decimal = Decimal(0),
        cursor: str | None = None,
    ) -> MonitoredEntity:
        """Persist a new active entity for ``user_external_id``.

        Raises:
            RegistrationLimitError: The user or the system already tracks the maximum.
            DuplicateRegistrationError: The address is already tracked by the user.
        """

        resolved = parse_chain(chain)
        normalized = normalize_address(resolved, address)
        entities = sql_schema.monitored_entities
        timestamp = utcnow()

        with self._lock:
            try:
                with self._session_scope() as session:
                    user_id = self._ensure_user(session, user_external_id)
                    active = entities.c.is_active.is_(True)

                    user_count = session.execute(
                        sa.select(sa.func.count()).select_from(entities).where(entities.c.user_id == user_id, active)
                    ).scalar_one()
                    if user_count >= self.max_per_user:
                        raise RegistrationLimitError(
                            f"Tracking limit reached ({self.max_per_user} addresses per user)"
                        )
                    total_count = session.execute(
                        sa.select(sa.func.count()).select_from(entities).where(active)
                    ).scalar_one()
                    if total_count >= self.max_total:
                        raise RegistrationLimitError("System-wide tracking limit reached")

                    existing = session.execute(
                        sa.select(entities.c.entity_id).where(
                            entities.c.user_id == user_id,
                            entities.c.chain == resolved.value,
                            entities.c.address == normalized,
                            active,
                        )
                    ).first()
                    if existing:
                        raise DuplicateRegistrationError(
                            f"Address already tracked on {resolved.value.upper()}"
                        )

                    result = session.execute(
                        sa.insert(entities).values(
                            user_id=user_id,
                            chain=resolved.value,
                            address=normalized,
                            label=label,
                            min_amount=min_amount,
                            is_active=True,
                            cursor=cursor,
                            created_at=timestamp,
                            updated_at=timestamp,
                        )
                    )
                    entity_id = result.inserted_primary_key[0]
            except IntegrityError as exc:
                raise DuplicateRegistrationError(f"Address already tracked on {resolved.value.upper()}") from exc

        LOGGER.info(
            "Registered entity entity_id=%s chain=%s user=%s", entity_id, resolved.value, user_external_id
        )
        return MonitoredEntity(
            entity_id=entity_id,
            user_id=user_id,
            destination=user_external_id,
            chain=resolved,
            address=normalized,
            label=label,
            min_amount=min_amount,
            is_active=True,
            cursor=cursor,
            created_at=timestamp,
        )

    def deactivate(self, user_external_id: str, entity_id: int) -> bool:
        """Soft-delete ``entity_id`` if it is active and owned by the user."""

        entities = sql_schema.monitored_entities
        owner = sa.select(sql_schema.users.c.user_id).where(sql_schema.users.c.external_id == user_external_id)
        with self._session_scope() as session:
            result = session.execute(
                sa.update(entities)
                .where(
                    entities.c.entity_id == entity_id,
                    entities.c.user_id == owner.scalar_subquery(),
                    entities.c.is_active.is_(True),
                )
                .values(is_active=False, updated_at=utcnow())
            )
            removed = result.rowcount > 0
        if removed:
            LOGGER.info("Deactivated entity entity_id=%s user=%s", entity_id, user_external_id)
        return removed

    def list_active(self, chain: Chain | str | None = None) -> List[MonitoredEntity]:
        """Return active entities, optionally restricted to ``chain``."""

        entities = sql_schema.monitored_entities
        stmt = _entity_select().where(entities.c.is_active.is_(True))
        if chain is not None:
            stmt = stmt.where(entities.c.chain == parse_chain(chain).value)
        with self._session_scope() as session:
            rows = session.execute(stmt.order_by(entities.c.entity_id.asc())).fetchall()
        return [_row_to_entity(row) for row in rows]

    def list_for_user(self, user_external_id: str) -> List[MonitoredEntity]:
        entities = sql_schema.monitored_entities
        stmt = _entity_select().where(
            sql_schema.users.c.external_id == user_external_id,
            entities.c.is_active.is_(True),
        )
        with self._session_scope() as session:
            rows = session.execute(stmt.order_by(entities.c.created_at.desc(), entities.c.entity_id.desc())).fetchall()
        return [_row_to_entity(row) for row in rows]

    def get(self, entity_id: int) -> Optional[MonitoredEntity]:
        """Return the entity regardless of its active flag."""

        stmt = _entity_select().where(sql_schema.monitored_entities.c.entity_id == entity_id)
        with self._session_scope() as session:
            row = session.execute(stmt).first()
        return _row_to_entity(row) if row else None


__all__ = [
    "DuplicateRegistrationError",
    "EntityRegistry",
    "RegistrationError",
    "RegistrationLimitError",
]
