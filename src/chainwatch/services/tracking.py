"""Registration workflow for monitored wallets."""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, List, Optional

from chainwatch.chains.metadata import chain_info, parse_chain, validate_address
from chainwatch.models import AlertEvent, Chain, ChainFamily, MonitoredEntity
from chainwatch.services import factories
from chainwatch.store.alert_ledger import AlertLedger
from chainwatch.store.registry import EntityRegistry

LOGGER = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 100


class TrackingValidationError(ValueError):
    """Raised for malformed labels or thresholds."""


class EntityNotFoundError(LookupError):
    """Raised when an entity does not exist or belongs to another user."""


def parse_min_amount(value: Any) -> Decimal:
    """Coerce a user-supplied threshold; missing or blank means zero."""

    if value is None or (isinstance(value, str) and not value.strip()):
        return Decimal(0)
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise TrackingValidationError("minAmount must be a number") from exc
    if not amount.is_finite():
        raise TrackingValidationError("minAmount must be a finite number")
    if amount < 0:
        raise TrackingValidationError("minAmount must be >= 0")
    return amount


class TrackingService:
    """Validate and persist tracking registrations.

    New entities get their cursor seeded from the chain head so the poller
    never back-fills history: the newest signature for signature chains, the
    head block height for block chains (activity at or below that height is
    ignored for the entity).
    """

    def __init__(
        self,
        *,
        registry: Optional[EntityRegistry] = None,
        ledger: Optional[AlertLedger] = None,
        reader_for: Optional[Callable[[Chain], Any]] = None,
    ) -> None:
        self._registry = registry or factories.build_entity_registry()
        self._ledger = ledger or factories.build_alert_ledger()
        self._reader_for = reader_for or factories.ChainReaders()

    def _seed_cursor(self, chain: Chain, address: str) -> str | None:
        reader = self._reader_for(chain)
        if chain_info(chain).family is ChainFamily.SIGNATURE:
            return reader.latest_signature(address)
        return str(reader.latest_block())

    def add(
        self,
        *,
        user_id: str,
        chain: str | Chain,
        address: str,
        label: str,
        min_amount: Any = None,
    ) -> MonitoredEntity:
        """Register ``address`` for ``user_id``.

        Raises:
            UnsupportedChainError: ``chain`` is not supported.
            InvalidAddressError: ``address`` does not match the chain format.
            TrackingValidationError: Label or threshold is malformed.
            RegistrationError: Limits reached or address already tracked.
            RpcError: The chain head could not be read for cursor seeding.
        """

        resolved = parse_chain(chain)
        normalized = validate_address(resolved, address)
        clean_label = (label or "").strip()
        if not clean_label:
            raise TrackingValidationError("label is required")
        if len(clean_label) > MAX_LABEL_LENGTH:
            raise TrackingValidationError(f"label must be at most {MAX_LABEL_LENGTH} characters")
        threshold = parse_min_amount(min_amount)

        cursor = self._seed_cursor(resolved, normalized)
        entity = self._registry.register(
            user_external_id=str(user_id),
            chain=resolved,
            address=normalized,
            label=clean_label,
            min_amount=threshold,
            cursor=cursor,
        )
        LOGGER.info("Now tracking %s on %s for user %s", clean_label, resolved.value.upper(), user_id)
        return entity

    def list_tracked(self, user_id: str) -> List[MonitoredEntity]:
        return self._registry.list_for_user(str(user_id))

    def remove(self, user_id: str, entity_id: int) -> None:
        if not self._registry.deactivate(str(user_id), int(entity_id)):
            raise EntityNotFoundError("Tracked address not found")

    def alerts(self, user_id: str, entity_id: int, *, limit: int = 50) -> List[AlertEvent]:
        """Return recent alert history for an entity owned by ``user_id``."""

        entity = self._registry.get(int(entity_id))
        if entity is None or entity.destination != str(user_id):
            raise EntityNotFoundError("Tracked address not found")
        return self._ledger.list_for_entity(entity.entity_id, limit=limit)


__all__ = ["EntityNotFoundError", "TrackingService", "TrackingValidationError", "parse_min_amount"]
