"""Lab intake and administrative endpoints for demand records."""

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from demand_engine.aggregate.store import DemandStore, DemandSummary
from demand_engine.api.deps import get_demand_store, http_error, require_admin_api_key
from demand_engine.errors import DemandEngineError

router = APIRouter(
    prefix="/api/lab",
    tags=["lab"],
    dependencies=[Depends(require_admin_api_key)],
)

Status = Literal["collecting_votes", "threshold_reached", "queued", "testing", "complete"]


class AdvanceRequest(BaseModel):
    """Move a record to the next lifecycle status."""
    to_status: Status
    actor: Optional[str] = None
    notes: Optional[str] = None
    linked_product_id: Optional[str] = None


class LinkRequest(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=64)


class OverrideRequest(BaseModel):
    """Force a status, bypassing lifecycle ordering."""
    to_status: Status
    actor: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class CorrectionRequest(BaseModel):
    weighted_total: float
    actor: str = Field(..., min_length=1)
    reason: Optional[str] = None


class ThresholdRequest(BaseModel):
    funding_threshold: float
    actor: str = Field(..., min_length=1)


class ExclusionRequest(BaseModel):
    excluded: bool
    actor: str = Field(..., min_length=1)
    reason: Optional[str] = None


class LabRecordResponse(BaseModel):
    """Record state after a lab or admin action."""
    barcode: str
    status: str
    weighted_total: float
    funding_threshold: float
    funding_progress_percent: int
    urgency_tier: str
    unique_voters: int


class StatusHistoryResponse(BaseModel):
    from_status: Optional[str]
    to_status: str
    changed_at: datetime
    actor: Optional[str]
    notes: Optional[str]
    is_override: bool

    class Config:
        from_attributes = True


def _response(summary: DemandSummary) -> LabRecordResponse:
    return LabRecordResponse(
        barcode=summary.barcode,
        status=summary.status,
        weighted_total=summary.weighted_total,
        funding_threshold=summary.funding_threshold,
        funding_progress_percent=summary.funding_progress_percent,
        urgency_tier=summary.urgency_tier,
        unique_voters=summary.unique_voters,
    )


@router.post("/{barcode}/advance", response_model=LabRecordResponse)
async def advance_status(
    barcode: str,
    request: AdvanceRequest,
    store: DemandStore = Depends(get_demand_store),
):
    """Advance a record one lifecycle step (queued, testing, complete)."""
    try:
        summary = await store.advance_status(
            barcode,
            request.to_status,
            actor=request.actor,
            notes=request.notes,
            linked_product_id=request.linked_product_id,
        )
    except DemandEngineError as e:
        raise http_error(e)
    return _response(summary)


@router.post("/{barcode}/link", response_model=LabRecordResponse)
async def link_product(
    barcode: str,
    request: LinkRequest,
    store: DemandStore = Depends(get_demand_store),
):
    """Link the tested product to a completed record."""
    try:
        summary = await store.link_product(barcode, request.product_id)
    except DemandEngineError as e:
        raise http_error(e)
    return _response(summary)


@router.post("/{barcode}/override", response_model=LabRecordResponse)
async def override_status(
    barcode: str,
    request: OverrideRequest,
    store: DemandStore = Depends(get_demand_store),
):
    """Force a status; recorded in history as an override."""
    try:
        summary = await store.override_status(
            barcode, request.to_status, actor=request.actor, reason=request.reason
        )
    except DemandEngineError as e:
        raise http_error(e)
    return _response(summary)


@router.post("/{barcode}/correction", response_model=LabRecordResponse)
async def correct_weighted_total(
    barcode: str,
    request: CorrectionRequest,
    store: DemandStore = Depends(get_demand_store),
):
    """Correct the weighted total (the only way it can go down)."""
    try:
        summary = await store.correct_weighted_total(
            barcode, request.weighted_total, actor=request.actor, reason=request.reason
        )
    except DemandEngineError as e:
        raise http_error(e)
    return _response(summary)


@router.post("/{barcode}/threshold", response_model=LabRecordResponse)
async def set_funding_threshold(
    barcode: str,
    request: ThresholdRequest,
    store: DemandStore = Depends(get_demand_store),
):
    try:
        summary = await store.set_funding_threshold(
            barcode, request.funding_threshold, actor=request.actor
        )
    except DemandEngineError as e:
        raise http_error(e)
    return _response(summary)


@router.post("/{barcode}/exclusion", response_model=LabRecordResponse)
async def set_queue_exclusion(
    barcode: str,
    request: ExclusionRequest,
    store: DemandStore = Depends(get_demand_store),
):
    """Exclude a record from (or restore it to) the testing queue."""
    try:
        summary = await store.set_queue_exclusion(
            barcode, request.excluded, actor=request.actor, reason=request.reason
        )
    except DemandEngineError as e:
        raise http_error(e)
    return _response(summary)


@router.get("/{barcode}/history", response_model=List[StatusHistoryResponse])
async def get_status_history(
    barcode: str,
    store: DemandStore = Depends(get_demand_store),
):
    """Lifecycle history for a record, oldest first."""
    try:
        history = await store.get_status_history(barcode)
    except DemandEngineError as e:
        raise http_error(e)
    return [StatusHistoryResponse.model_validate(h) for h in history]
