"""Stateless wallet check: recent activity plus a heuristic risk score."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from chainwatch import risk
from chainwatch.chains.metadata import chain_info, parse_chain, validate_address
from chainwatch.models import ActivityRecord, Chain, RiskAssessment
from chainwatch.services.factories import ChainReaders

RECENT_ACTIVITY_LIMIT = 20


@dataclass(slots=True)
class CheckResult:
    chain: Chain
    address: str
    assessment: RiskAssessment
    explorer_link: str
    recent_activity: List[ActivityRecord] = field(default_factory=list)


class CheckService:
    """Read recent activity through the chain readers and score it.

    Nothing is persisted and no cursor is touched.
    """

    def __init__(
        self,
        *,
        reader_for: Optional[Callable[[Chain], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._reader_for = reader_for or ChainReaders()
        self._clock = clock

    def check_address(self, chain: str | Chain, address: str) -> CheckResult:
        resolved = parse_chain(chain)
        normalized = validate_address(resolved, address)
        reader = self._reader_for(resolved)
        activity = reader.recent_activity(normalized, limit=RECENT_ACTIVITY_LIMIT)[:RECENT_ACTIVITY_LIMIT]
        now = self._clock() if self._clock else None
        return CheckResult(
            chain=resolved,
            address=normalized,
            assessment=risk.score(activity, now=now),
            explorer_link=chain_info(resolved).address_link(normalized),
            recent_activity=activity,
        )


__all__ = ["CheckResult", "CheckService", "RECENT_ACTIVITY_LIMIT"]
