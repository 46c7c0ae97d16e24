"""Progress cursors: one per block-family chain, one per signature-family entity."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from chainwatch.chains.metadata import parse_chain
from chainwatch.models import Chain, ChainCursor
from chainwatch.store import sql as sql_schema
from chainwatch.store.sql import as_utc, utcnow
from chainwatch.store.sql import session_factory as default_session_factory

LOGGER = logging.getLogger(__name__)


class CursorRegressionError(RuntimeError):
    """Raised when a chain cursor would move backwards."""

    def __init__(self, chain: Chain, current: int, requested: int) -> None:
        super().__init__(f"Refusing to move {chain.value} cursor from {current} back to {requested}")
        self.chain = chain
        self.current = current
        self.requested = requested


class CursorStore:
    """Read and advance scan cursors.

    Chain cursors only move forward: the update is conditional on the stored
    height being lower, so two pollers racing on the same chain cannot undo
    each other's progress.
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

    def get_chain_cursor(self, chain: Chain | str) -> Optional[ChainCursor]:
        resolved = parse_chain(chain)
        table = sql_schema.chain_cursors
        with self._session_scope() as session:
            row = session.execute(sa.select(table).where(table.c.chain == resolved.value)).first()
        if row is None:
            return None
        return ChainCursor(chain=resolved, last_block_number=row.last_block_number, updated_at=as_utc(row.updated_at))

    def ensure_chain_cursor(self, chain: Chain | str, seed: int) -> Tuple[ChainCursor, bool]:
        """Create the cursor at ``seed`` unless one exists.

        Returns:
            The stored cursor and whether this call created it.
        """

        resolved = parse_chain(chain)
        existing = self.get_chain_cursor(resolved)
        if existing is not None:
            return existing, False

        timestamp = utcnow()
        try:
            with self._session_scope() as session:
                session.execute(
                    sa.insert(sql_schema.chain_cursors).values(
                        chain=resolved.value, last_block_number=seed, updated_at=timestamp
                    )
                )
        except IntegrityError:
            LOGGER.info("Cursor for %s was seeded concurrently", resolved.value)
            return self.get_chain_cursor(resolved), False

        LOGGER.info("Seeded %s cursor at block %s", resolved.value, seed)
        return ChainCursor(chain=resolved, last_block_number=seed, updated_at=timestamp), True

    def advance_chain_cursor(self, chain: Chain | str, height: int) -> ChainCursor:
        """Move the chain cursor forward to ``height``.

        Advancing to the current height is a no-op.

        Raises:
            CursorRegressionError: ``height`` is below the stored value.
            LookupError: The cursor has never been seeded.
        """

        resolved = parse_chain(chain)
        table = sql_schema.chain_cursors
        timestamp = utcnow()
        with self._session_scope() as session:
            result = session.execute(
                sa.update(table)
                .where(table.c.chain == resolved.value, table.c.last_block_number < height)
                .values(last_block_number=height, updated_at=timestamp)
            )
            advanced = result.rowcount > 0
        if advanced:
            return ChainCursor(chain=resolved, last_block_number=height, updated_at=timestamp)

        current = self.get_chain_cursor(resolved)
        if current is None:
            raise LookupError(f"No cursor stored for {resolved.value}")
        if current.last_block_number > height:
            raise CursorRegressionError(resolved, current.last_block_number, height)
        return current

    def get_entity_cursor(self, entity_id: int) -> Optional[str]:
        table = sql_schema.monitored_entities
        with self._session_scope() as session:
            return session.execute(sa.select(table.c.cursor).where(table.c.entity_id == entity_id)).scalar()

    def advance_entity_cursor(self, entity_id: int, cursor: str) -> None:
        """Store ``cursor`` for ``entity_id``; signature cursors carry no ordering."""

        table = sql_schema.monitored_entities
        with self._session_scope() as session:
            session.execute(
                sa.update(table).where(table.c.entity_id == entity_id).values(cursor=cursor, updated_at=utcnow())
            )


__all__ = ["CursorRegressionError", "CursorStore"]
