"""Unit tests for address matching and threshold rules."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from chainwatch.models import Chain, MonitoredEntity
from chainwatch.worker.matching import AddressIndex, qualifies

WATCHED = "0x" + "ab" * 20
NOW = datetime(2026, 10, 18, tzinfo=timezone.utc)


def _entity(entity_id: int, address: str, minimum: str, chain: Chain = Chain.ETH, active: bool = True):
    return MonitoredEntity(
        entity_id=entity_id,
        user_id=entity_id,
        destination=str(entity_id),
        chain=chain,
        address=address,
        label=f"wallet-{entity_id}",
        min_amount=Decimal(minimum),
        is_active=active,
        cursor=None,
        created_at=NOW,
    )


def test_qualifies_is_inclusive():
    assert qualifies(Decimal("0.1"), Decimal("0.1"))
    assert qualifies(Decimal("0"), Decimal("0"))
    assert not qualifies(Decimal("0.09999999"), Decimal("0.1"))


def test_index_groups_entities_by_normalized_address():
    index = AddressIndex(
        Chain.ETH,
        [
            _entity(1, WATCHED.upper().replace("0X", "0x"), "0"),
            _entity(2, WATCHED, "1"),
            _entity(3, "0x" + "cd" * 20, "0", active=False),
            _entity(4, WATCHED, "0", chain=Chain.BASE),
        ],
    )

    assert len(index) == 2
    assert index.addresses == [WATCHED]
    assert [entity.entity_id for entity in index.entities_for(WATCHED.upper().replace("0X", "0x"))] == [1, 2]
    assert index.entities_for("0x" + "ef" * 20) == []


def test_empty_index_is_falsy():
    assert not AddressIndex(Chain.SOL, [])
