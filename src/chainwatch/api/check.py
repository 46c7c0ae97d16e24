"""On-demand wallet check API router."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from chainwatch.api.auth import require_token
from chainwatch.chains.metadata import InvalidAddressError, UnsupportedChainError
from chainwatch.chains.rpc import RpcError
from chainwatch.models import ActivityRecord
from chainwatch.services.check import CheckService
from chainwatch.services.factories import ChainNotConfiguredError

router = APIRouter(prefix="/check", tags=["check"], dependencies=[Depends(require_token)])
LOGGER = logging.getLogger(__name__)


class CheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chain: str = Field(min_length=1)
    address: str = Field(min_length=1, validation_alias="targetAddress")


class ActivityItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hash: str
    timestamp: datetime
    direction: str
    amount: Decimal
    asset: str
    counterparty: Optional[str] = None
    block_height: Optional[int] = Field(default=None, alias="blockHeight")

    @classmethod
    def from_record(cls, record: ActivityRecord) -> "ActivityItem":
        return cls(
            hash=record.tx_id,
            timestamp=record.timestamp,
            direction=record.direction.value,
            amount=record.amount,
            asset=record.asset,
            counterparty=record.counterparty,
            block_height=record.block_height,
        )


class CheckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    risk_score: int = Field(alias="riskScore")
    risk_level: str = Field(alias="riskLevel")
    reasons: List[str]
    recent_activity: List[ActivityItem] = Field(alias="recentActivity")
    explorer_link: str = Field(alias="explorerLink")


@lru_cache(maxsize=1)
def get_check_service() -> CheckService:
    """Dependency provider returning the shared CheckService instance."""

    return CheckService()


@router.post("", response_model=CheckResponse)
def check_wallet(payload: CheckRequest, service: CheckService = Depends(get_check_service)) -> CheckResponse:
    """Return recent activity and a heuristic risk score for an address."""

    try:
        result = service.check_address(payload.chain, payload.address)
    except (UnsupportedChainError, InvalidAddressError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (RpcError, ChainNotConfiguredError) as exc:
        LOGGER.warning("Check failed for %s on %s: %s", payload.address, payload.chain, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Chain RPC unavailable") from exc

    return CheckResponse(
        risk_score=result.assessment.score,
        risk_level=result.assessment.level.value,
        reasons=result.assessment.reasons,
        recent_activity=[ActivityItem.from_record(record) for record in result.recent_activity],
        explorer_link=result.explorer_link,
    )
