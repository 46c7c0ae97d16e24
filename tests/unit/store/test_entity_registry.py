"""Unit tests for the monitored entity registry."""

from __future__ import annotations

from decimal import Decimal

import pytest

from chainwatch.models import Chain
from chainwatch.store.registry import DuplicateRegistrationError, EntityRegistry, RegistrationLimitError

EVM_ADDRESS = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"
SOL_ADDRESS = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


def _evm(index: int) -> str:
    return "0x" + f"{index:040x}"


def test_register_normalizes_and_persists(registry):
    entity = registry.register(
        user_external_id="1001",
        chain="ETH",
        address=EVM_ADDRESS,
        label="Exchange hot wallet",
        min_amount=Decimal("0.5"),
        cursor="19000000",
    )

    assert entity.chain is Chain.ETH
    assert entity.address == EVM_ADDRESS.lower()
    assert entity.destination == "1001"

    stored = registry.get(entity.entity_id)
    assert stored is not None
    assert stored.address == EVM_ADDRESS.lower()
    assert stored.min_amount == Decimal("0.5")
    assert stored.cursor == "19000000"
    assert stored.is_active is True
    assert stored.created_at.tzinfo is not None


def test_duplicate_registration_is_rejected_case_insensitively(registry):
    registry.register(user_external_id="1001", chain=Chain.ETH, address=EVM_ADDRESS, label="one")

    with pytest.raises(DuplicateRegistrationError, match="Address already tracked on ETH"):
        registry.register(user_external_id="1001", chain=Chain.ETH, address=EVM_ADDRESS.lower(), label="two")

    # Same address on another chain or for another user is a separate entity.
    registry.register(user_external_id="1001", chain=Chain.BASE, address=EVM_ADDRESS, label="base")
    registry.register(user_external_id="2002", chain=Chain.ETH, address=EVM_ADDRESS, label="other user")
    assert len(registry.list_active(Chain.ETH)) == 2


def test_deactivated_entity_can_be_registered_again(registry):
    entity = registry.register(user_external_id="1001", chain=Chain.SOL, address=SOL_ADDRESS, label="treasury")

    assert registry.deactivate("1001", entity.entity_id) is True
    assert registry.deactivate("1001", entity.entity_id) is False
    assert registry.list_for_user("1001") == []
    assert registry.get(entity.entity_id).is_active is False

    again = registry.register(user_external_id="1001", chain=Chain.SOL, address=SOL_ADDRESS, label="treasury")
    assert again.entity_id != entity.entity_id


def test_deactivate_requires_ownership(registry):
    entity = registry.register(user_external_id="1001", chain=Chain.ETH, address=EVM_ADDRESS, label="mine")
    assert registry.deactivate("2002", entity.entity_id) is False
    assert registry.get(entity.entity_id).is_active is True


def test_per_user_limit(session_factory):
    registry = EntityRegistry(session_factory=session_factory, max_per_user=2, max_total=10)
    registry.register(user_external_id="1001", chain=Chain.ETH, address=_evm(1), label="a")
    registry.register(user_external_id="1001", chain=Chain.ETH, address=_evm(2), label="b")

    with pytest.raises(RegistrationLimitError, match=r"Tracking limit reached \(2 addresses per user\)"):
        registry.register(user_external_id="1001", chain=Chain.ETH, address=_evm(3), label="c")

    registry.register(user_external_id="2002", chain=Chain.ETH, address=_evm(3), label="c")


def test_system_wide_limit(session_factory):
    registry = EntityRegistry(session_factory=session_factory, max_per_user=5, max_total=2)
    registry.register(user_external_id="1001", chain=Chain.ETH, address=_evm(1), label="a")
    registry.register(user_external_id="2002", chain=Chain.ETH, address=_evm(2), label="b")

    with pytest.raises(RegistrationLimitError, match="System-wide tracking limit reached"):
        registry.register(user_external_id="3003", chain=Chain.ETH, address=_evm(3), label="c")


def test_limits_count_only_active_entities(session_factory):
    registry = EntityRegistry(session_factory=session_factory, max_per_user=1, max_total=10)
    first = registry.register(user_external_id="1001", chain=Chain.ETH, address=_evm(1), label="a")
    registry.deactivate("1001", first.entity_id)

    registry.register(user_external_id="1001", chain=Chain.ETH, address=_evm(2), label="b")


def test_list_for_user_and_chain_filters(registry):
    eth = registry.register(user_external_id="1001", chain=Chain.ETH, address=_evm(1), label="eth")
    sol = registry.register(user_external_id="1001", chain=Chain.SOL, address=SOL_ADDRESS, label="sol")
    registry.register(user_external_id="2002", chain=Chain.ETH, address=_evm(2), label="other")

    assert [entity.entity_id for entity in registry.list_for_user("1001")] == [sol.entity_id, eth.entity_id]
    assert [entity.label for entity in registry.list_active("sol")] == ["sol"]
    assert [entity.label for entity in registry.list_active()] == ["eth", "sol", "other"]
    assert registry.get(9999) is None
