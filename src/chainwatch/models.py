"""Domain types shared by the chain readers, stores and poll pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List


class Chain(str, Enum):
    """Supported blockchains."""

    ETH = "eth"
    BASE = "base"
    AVAX = "avax"
    SOL = "sol"


class ChainFamily(str, Enum):
    """Data-source semantics exposed by a chain."""

    BLOCK = "block"
    SIGNATURE = "signature"


class Direction(str, Enum):
    """Transfer direction relative to the monitored address."""

    IN = "in"
    OUT = "out"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(slots=True)
class ActivityRecord:
    """One native-asset movement seen from the perspective of ``address``."""

    tx_id: str
    chain: Chain
    address: str
    direction: Direction
    amount: Decimal
    asset: str
    timestamp: datetime
    counterparty: str | None = None
    block_height: int | None = None


@dataclass(slots=True)
class MonitoredEntity:
    """A (user, chain, address) tracking registration."""

    entity_id: int
    user_id: int
    destination: str
    chain: Chain
    address: str
    label: str
    min_amount: Decimal
    is_active: bool
    cursor: str | None
    created_at: datetime


@dataclass(slots=True)
class ChainCursor:
    """Last fully scanned block height for a block-family chain."""

    chain: Chain
    last_block_number: int
    updated_at: datetime


@dataclass(slots=True)
class AlertEvent:
    """Durable record of one qualifying activity matched to one entity."""

    event_id: str
    chain: Chain
    tx_id: str
    entity_id: int
    timestamp: datetime
    direction: Direction
    amount: Decimal
    asset: str
    counterparty: str | None
    delivered: bool
    delivered_at: datetime | None
    delivery_attempts: int
    last_error: str | None
    created_at: datetime


@dataclass(slots=True)
class RiskAssessment:
    """Output of the risk scoring engine."""

    score: int
    level: RiskLevel
    reasons: List[str] = field(default_factory=list)


__all__ = [
    "ActivityRecord",
    "AlertEvent",
    "Chain",
    "ChainCursor",
    "ChainFamily",
    "Direction",
    "MonitoredEntity",
    "RiskAssessment",
    "RiskLevel",
]
