"""Unit tests for the on-demand wallet check service."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from chainwatch.chains.metadata import InvalidAddressError
from chainwatch.models import ActivityRecord, Chain, Direction, RiskLevel
from chainwatch.services.check import RECENT_ACTIVITY_LIMIT, CheckService

EVM_ADDRESS = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"
NOW = datetime(2026, 10, 18, tzinfo=timezone.utc)


class _StubReader:
    def __init__(self, records):
        self.records = records
        self.calls = []

    def recent_activity(self, address, *, limit):
        self.calls.append((address, limit))
        return list(self.records)


def _records(count: int):
    return [
        ActivityRecord(
            tx_id=f"0x{index:02x}",
            chain=Chain.BASE,
            address=EVM_ADDRESS.lower(),
            direction=Direction.IN,
            amount=Decimal("1.2345"),
            asset="ETH",
            timestamp=NOW - timedelta(days=200 + index),
        )
        for index in range(count)
    ]


def test_check_scores_recent_activity():
    reader = _StubReader(_records(3))
    service = CheckService(reader_for=lambda chain: reader, clock=lambda: NOW)

    result = service.check_address("base", EVM_ADDRESS)

    assert reader.calls == [(EVM_ADDRESS.lower(), RECENT_ACTIVITY_LIMIT)]
    assert result.chain is Chain.BASE
    assert result.assessment.level is RiskLevel.LOW
    assert result.assessment.reasons == ["3 transactions analyzed"]
    assert result.explorer_link == f"https://basescan.org/address/{EVM_ADDRESS.lower()}"
    assert len(result.recent_activity) == 3


def test_check_without_activity():
    service = CheckService(reader_for=lambda chain: _StubReader([]), clock=lambda: NOW)
    result = service.check_address(Chain.ETH, EVM_ADDRESS)
    assert result.assessment.score == 0
    assert result.assessment.reasons == ["No recent activity detected"]
    assert result.recent_activity == []


def test_check_truncates_to_limit():
    reader = _StubReader(_records(RECENT_ACTIVITY_LIMIT + 5))
    result = CheckService(reader_for=lambda chain: reader, clock=lambda: NOW).check_address("eth", EVM_ADDRESS)
    assert len(result.recent_activity) == RECENT_ACTIVITY_LIMIT


def test_check_rejects_bad_address_without_rpc():
    def reader_for(chain):
        raise AssertionError("reader must not be built for invalid input")

    with pytest.raises(InvalidAddressError):
        CheckService(reader_for=reader_for).check_address("sol", EVM_ADDRESS)
