"""Heuristic risk scoring over a window of address activity.

The engine is a pure function of its input (plus an injectable ``now`` for
the wallet-age signal). Five independent signals contribute capped points:

- velocity: mean gap between records
- spike: largest amount against the mean amount
- age: how recently the earliest record happened
- pattern: share of round-number amounts
- flow: outbound volume against inbound volume

Every signal sorts or aggregates internally, so the result does not depend
on the order of the input list.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from chainwatch.models import ActivityRecord, Direction, RiskAssessment, RiskLevel

NO_ACTIVITY_REASON = "No recent activity detected"

# Thresholds and points (tuneable)
VELOCITY_HIGH = (10, 5.0, 25)  # min records, mean gap minutes, points
VELOCITY_ELEVATED = (5, 30.0, 15)
SPIKE_LARGE = (Decimal(10), Decimal(1), 20)  # ratio to mean, absolute floor, points
SPIKE_UNUSUAL = (Decimal(5), Decimal("0.5"), 10)
AGE_NEW = (10, 7.0, 20)  # min records, max age days, points
AGE_RECENT = (15, 30.0, 10)
PATTERN_MIN_RECORDS = 5
PATTERN_ROUND_RATIO = 0.7
PATTERN_POINTS = 15
FLOW_MIN_RECORDS = 3
FLOW_LAYERING_RATIO = Decimal("0.8")
FLOW_LAYERING_POINTS = 20
FLOW_DISTRIBUTION_POINTS = 15

Signal = Tuple[int, Optional[str]]


def _velocity(activity: Sequence[ActivityRecord]) -> Signal:
    if len(activity) < 2:
        return 0, None
    timestamps = sorted(record.timestamp for record in activity)
    span_seconds = (timestamps[-1] - timestamps[0]).total_seconds()
    mean_gap_minutes = span_seconds / (len(timestamps) - 1) / 60

    min_records, max_gap, points = VELOCITY_HIGH
    if len(activity) >= min_records and mean_gap_minutes < max_gap:
        return points, "Very high transaction velocity (potential bot activity)"
    min_records, max_gap, points = VELOCITY_ELEVATED
    if len(activity) >= min_records and mean_gap_minutes < max_gap:
        return points, "High transaction frequency detected"
    return 0, None


def _spike(activity: Sequence[ActivityRecord]) -> Signal:
    if len(activity) < 3:
        return 0, None
    amounts = [record.amount for record in activity]
    mean = sum(amounts, Decimal(0)) / len(amounts)
    peak = max(amounts)

    ratio, floor, points = SPIKE_LARGE
    if peak > mean * ratio and peak > floor:
        return points, f"Large transaction spike detected ({peak:.4f} vs avg {mean:.4f})"
    ratio, floor, points = SPIKE_UNUSUAL
    if peak > mean * ratio and peak > floor:
        return points, "Unusual transaction size variation"
    return 0, None


def _age(activity: Sequence[ActivityRecord], now: datetime) -> Signal:
    earliest = min(record.timestamp for record in activity)
    age_days = (now - earliest).total_seconds() / 86400

    min_records, max_days, points = AGE_NEW
    if len(activity) >= min_records and age_days < max_days:
        return points, "New wallet with high activity (potential throwaway)"
    min_records, max_days, points = AGE_RECENT
    if len(activity) >= min_records and age_days < max_days:
        return points, "Recently created wallet with significant activity"
    return 0, None


def _is_round(amount: Decimal) -> bool:
    """True when ``amount`` is integral or has at most two decimal places."""

    return amount.normalize().as_tuple().exponent >= -2


def _pattern(activity: Sequence[ActivityRecord]) -> Signal:
    if len(activity) < PATTERN_MIN_RECORDS:
        return 0, None
    round_count = sum(1 for record in activity if _is_round(record.amount))
    if round_count / len(activity) > PATTERN_ROUND_RATIO:
        return PATTERN_POINTS, "Many round-number transactions (possible automation)"
    return 0, None


def _flow(activity: Sequence[ActivityRecord]) -> Signal:
    if len(activity) < FLOW_MIN_RECORDS:
        return 0, None
    inbound = [record.amount for record in activity if record.direction is Direction.IN]
    outbound = [record.amount for record in activity if record.direction is not Direction.IN]
    total_in = sum(inbound, Decimal(0))
    total_out = sum(outbound, Decimal(0))

    if total_in > 0 and total_out > total_in * FLOW_LAYERING_RATIO and len(outbound) >= 3:
        return FLOW_LAYERING_POINTS, "Rapid outflow pattern detected (possible layering)"
    if len(outbound) > 5 and not inbound:
        return FLOW_DISTRIBUTION_POINTS, "Only outflows detected (possible funds distribution)"
    return 0, None


def risk_level(score: int) -> RiskLevel:
    """Map a 0-100 score to its tier."""

    if score >= 70:
        return RiskLevel.CRITICAL
    if score >= 50:
        return RiskLevel.HIGH
    if score >= 25:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def score(activity: Sequence[ActivityRecord], *, now: datetime | None = None) -> RiskAssessment:
    """Score ``activity`` and explain the contributing signals.

    Args:
        activity: Activity window for a single address, in any order.
        now: Reference time for the age signal; defaults to the current UTC time.

    Returns:
        :class:`RiskAssessment` with a 0-100 score, its tier and reasons. The
        first reason summarises how many records were analysed.
    """

    if not activity:
        return RiskAssessment(score=0, level=RiskLevel.LOW, reasons=[NO_ACTIVITY_REASON])

    reference = now or datetime.now(timezone.utc)
    total = 0
    reasons: List[str] = []
    for points, reason in (
        _velocity(activity),
        _spike(activity),
        _age(activity, reference),
        _pattern(activity),
        _flow(activity),
    ):
        total += points
        if reason:
            reasons.append(reason)

    final = round(min(100, max(0, total)))
    reasons.insert(0, f"{len(activity)} transactions analyzed")
    return RiskAssessment(score=final, level=risk_level(final), reasons=reasons)


__all__ = ["NO_ACTIVITY_REASON", "risk_level", "score"]
