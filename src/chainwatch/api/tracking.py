"""Tracking registration API router."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from chainwatch.api.auth import require_token
from chainwatch.chains.metadata import InvalidAddressError, UnsupportedChainError
from chainwatch.chains.rpc import RpcError
from chainwatch.models import AlertEvent, MonitoredEntity
from chainwatch.services.factories import ChainNotConfiguredError
from chainwatch.services.tracking import EntityNotFoundError, TrackingService, TrackingValidationError
from chainwatch.store.registry import DuplicateRegistrationError, RegistrationLimitError

router = APIRouter(prefix="/tracking", tags=["tracking"], dependencies=[Depends(require_token)])
LOGGER = logging.getLogger(__name__)


class TrackedAddress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    chain: str
    address: str
    label: str
    min_amount: Decimal = Field(alias="minAmount")
    created_at: datetime = Field(alias="createdAt")

    @classmethod
    def from_entity(cls, entity: MonitoredEntity) -> "TrackedAddress":
        return cls(
            id=entity.entity_id,
            chain=entity.chain.value,
            address=entity.address,
            label=entity.label,
            min_amount=entity.min_amount,
            created_at=entity.created_at,
        )


class TrackedListResponse(BaseModel):
    tracked: List[TrackedAddress]
    count: int


class AddTrackingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    user_id: str = Field(min_length=1, validation_alias="telegramUserId")
    chain: str = Field(min_length=1)
    address: str = Field(min_length=1)
    label: str = Field(min_length=1)
    min_amount: Optional[str] = Field(default=None, validation_alias="minAmount")


class AddTrackingResponse(BaseModel):
    success: bool = True
    tracked: TrackedAddress
    message: str


class RemoveTrackingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    user_id: str = Field(min_length=1, validation_alias="telegramUserId")
    entity_id: int = Field(validation_alias="trackedId")


class RemoveTrackingResponse(BaseModel):
    success: bool = True
    message: str = "Tracking removed"


class AlertSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    chain: str
    tx_id: str = Field(alias="txId")
    timestamp: datetime
    direction: str
    amount: Decimal
    asset: str
    counterparty: Optional[str] = None
    delivered: bool
    delivery_attempts: int = Field(alias="deliveryAttempts")

    @classmethod
    def from_event(cls, event: AlertEvent) -> "AlertSummary":
        return cls(
            id=event.event_id,
            chain=event.chain.value,
            tx_id=event.tx_id,
            timestamp=event.timestamp,
            direction=event.direction.value,
            amount=event.amount,
            asset=event.asset,
            counterparty=event.counterparty,
            delivered=event.delivered,
            delivery_attempts=event.delivery_attempts,
        )


class AlertListResponse(BaseModel):
    alerts: List[AlertSummary]
    count: int


@lru_cache(maxsize=1)
def get_tracking_service() -> TrackingService:
    """Dependency provider returning the shared TrackingService instance."""

    return TrackingService()


@router.get("/view-tracked", response_model=TrackedListResponse)
def view_tracked(
    user_id: str = Query(..., alias="telegramUserId", min_length=1),
    service: TrackingService = Depends(get_tracking_service),
) -> TrackedListResponse:
    tracked = [TrackedAddress.from_entity(entity) for entity in service.list_tracked(user_id)]
    return TrackedListResponse(tracked=tracked, count=len(tracked))


@router.post("/add-new", response_model=AddTrackingResponse)
def add_new(
    payload: AddTrackingRequest,
    service: TrackingService = Depends(get_tracking_service),
) -> AddTrackingResponse:
    try:
        entity = service.add(
            user_id=payload.user_id,
            chain=payload.chain,
            address=payload.address,
            label=payload.label,
            min_amount=payload.min_amount,
        )
    except (UnsupportedChainError, InvalidAddressError, TrackingValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (RegistrationLimitError, DuplicateRegistrationError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (RpcError, ChainNotConfiguredError) as exc:
        LOGGER.warning("Cursor seeding failed for %s: %s", payload.chain, exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Chain RPC unavailable") from exc

    return AddTrackingResponse(
        tracked=TrackedAddress.from_entity(entity),
        message=f"Now tracking {entity.label} on {entity.chain.value.upper()}",
    )


@router.post("/remove", response_model=RemoveTrackingResponse)
def remove(
    payload: RemoveTrackingRequest,
    service: TrackingService = Depends(get_tracking_service),
) -> RemoveTrackingResponse:
    try:
        service.remove(payload.user_id, payload.entity_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return RemoveTrackingResponse()


@router.get("/{entity_id}/alerts", response_model=AlertListResponse)
def list_alerts(
    entity_id: int,
    user_id: str = Query(..., alias="telegramUserId", min_length=1),
    limit: int = Query(50, ge=1, le=200),
    service: TrackingService = Depends(get_tracking_service),
) -> AlertListResponse:
    try:
        events = service.alerts(user_id, entity_id, limit=limit)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    alerts = [AlertSummary.from_event(event) for event in events]
    return AlertListResponse(alerts=alerts, count=len(alerts))
