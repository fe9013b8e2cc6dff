"""Demand event intake and public demand views."""

from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from demand_engine.aggregate.events import DemandEvent, ProductText, VoterContext
from demand_engine.aggregate.queue import DemandQueue
from demand_engine.aggregate.store import DemandStore, DemandSummary
from demand_engine.api.deps import get_demand_queue, get_demand_store, http_error
from demand_engine.errors import DemandEngineError

router = APIRouter(prefix="/api/demand", tags=["demand"])


class ProductInfo(BaseModel):
    """Catalog metadata supplied with an event."""
    product_name: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None


class DemandEventRequest(BaseModel):
    """Request model for one demand event."""
    barcode: str = Field(..., min_length=1, max_length=64)
    event_type: str
    voter_key: str = Field(..., min_length=1, max_length=128)
    is_member: bool = False
    user_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    submission_id: Optional[str] = None
    notify_on_complete: bool = False
    product: ProductInfo = Field(default_factory=ProductInfo)


class DemandEventResponse(BaseModel):
    """Response model for an applied event."""
    success: bool
    vote_registered: bool
    duplicate: bool
    barcode: str
    event_type: Optional[str]  # as counted, member_scan from non-members becomes scan
    status: str
    total_votes: int
    your_vote_rank: Optional[int]
    weighted_total: float
    funding_progress: int
    funding_threshold: float
    urgency_tier: str
    weight_applied: float
    message: str


class DemandRecordResponse(BaseModel):
    """Public view of a demand record."""
    barcode: str
    product_name: Optional[str]
    brand: Optional[str]
    image_url: Optional[str]
    category: Optional[str]
    weighted_total: float
    search_count: int
    scan_count: int
    member_scan_count: int
    photo_contribution_count: int
    unique_voters: int
    funding_threshold: float
    funding_progress_percent: int
    status: str
    urgency_tier: str
    scans_last_24h: int
    scans_last_7d: int
    velocity_score: float
    queue_position: Optional[int]
    threshold_reached_at: Optional[datetime]
    linked_product_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class QueueResponse(BaseModel):
    """Response model for the testing queue."""
    total: int
    items: List[DemandRecordResponse]


class ContributorResponse(BaseModel):
    sequence_number: int
    voter_key: str
    contributed_at: datetime

    class Config:
        from_attributes = True


class PhotoContributorResponse(BaseModel):
    voter_key: str
    submission_id: str
    contributed_at: datetime
    bonus_weight: float

    class Config:
        from_attributes = True


class ContributorsResponse(BaseModel):
    """Response model for a record's contributor ledger."""
    barcode: str
    first_scout_key: Optional[str]
    first_scout_at: Optional[datetime]
    contributors: List[ContributorResponse]
    photo_contributors: List[PhotoContributorResponse]


class InvestigationResponse(BaseModel):
    """One record a voter has contributed to."""
    barcode: str
    product_name: Optional[str]
    brand: Optional[str]
    status: str
    funding_progress_percent: int
    your_vote_rank: int
    contributed_at: datetime
    queue_position: Optional[int]


def vote_message(summary: DemandSummary) -> str:
    """Human-readable confirmation for an applied event."""
    if summary.duplicate:
        return "You have already contributed photos to this product."
    if not summary.accepted:
        return "Testing for this product is complete."
    if summary.event_type == "photo_contribution":
        if not summary.weight_applied:
            return "Thanks for the photos! Your vote on this product is already counted."
        return "Thanks for the photos! Your contribution moves this product up the list."
    if summary.funding_progress_percent >= 100:
        return "This product has reached its funding goal! Testing will begin soon."
    if summary.funding_progress_percent >= 75:
        return f"Almost there! This product is {summary.funding_progress_percent}% funded for testing."
    if summary.event_type == "member_scan":
        return f"Your premium vote counts 20x! You're voter #{summary.sequence_number}."
    if summary.event_type == "scan":
        return f"Vote registered! Your scan counts 5x. You're voter #{summary.sequence_number}."
    return f"Vote registered! You're voter #{summary.sequence_number} for this product."


@router.post("/events", response_model=DemandEventResponse)
async def submit_event(
    request: DemandEventRequest,
    store: DemandStore = Depends(get_demand_store),
):
    """Apply one demand event (search, scan, member scan or photo contribution)."""
    try:
        event = DemandEvent(
            barcode=request.barcode,
            event_type=request.event_type,
            voter=VoterContext(
                voter_key=request.voter_key,
                is_member=request.is_member,
                user_id=request.user_id,
            ),
            timestamp=request.timestamp or datetime.utcnow(),
            product=ProductText(**request.product.model_dump()),
            submission_id=request.submission_id,
            notify_on_complete=request.notify_on_complete,
        )
        summary = await store.apply_event(event)
    except DemandEngineError as e:
        raise http_error(e)

    return DemandEventResponse(
        success=True,
        vote_registered=summary.accepted and not summary.duplicate,
        duplicate=summary.duplicate,
        barcode=summary.barcode,
        event_type=summary.event_type,
        status=summary.status,
        total_votes=summary.unique_voters,
        your_vote_rank=summary.sequence_number,
        weighted_total=summary.weighted_total,
        funding_progress=summary.funding_progress_percent,
        funding_threshold=summary.funding_threshold,
        urgency_tier=summary.urgency_tier,
        weight_applied=summary.weight_applied,
        message=vote_message(summary),
    )


@router.get("/queue", response_model=QueueResponse)
async def get_queue(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    queue: DemandQueue = Depends(get_demand_queue),
):
    """Testing queue, highest priority first."""
    records, total = await queue.get_queue(limit=limit, offset=offset)
    return QueueResponse(
        total=total,
        items=[DemandRecordResponse.model_validate(r) for r in records],
    )


@router.get("/requests", response_model=List[DemandRecordResponse])
async def list_requests(
    sort: Literal["most_voted", "newest", "almost_funded"] = "most_voted",
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    queue: DemandQueue = Depends(get_demand_queue),
):
    """Products still collecting votes."""
    return await queue.list_requests(sort=sort, limit=limit, offset=offset)


@router.get("/voters/{voter_key}/investigations", response_model=List[InvestigationResponse])
async def get_investigations(
    voter_key: str,
    queue: DemandQueue = Depends(get_demand_queue),
):
    """Records a voter has contributed to, with their current queue positions."""
    investigations = await queue.get_voter_investigations(voter_key)
    return [
        InvestigationResponse(
            barcode=item.record.barcode,
            product_name=item.record.product_name,
            brand=item.record.brand,
            status=item.record.status,
            funding_progress_percent=item.record.funding_progress_percent,
            your_vote_rank=item.sequence_number,
            contributed_at=item.contributed_at,
            queue_position=item.queue_position,
        )
        for item in investigations
    ]


@router.get("/{barcode}", response_model=DemandRecordResponse)
async def get_record(
    barcode: str,
    store: DemandStore = Depends(get_demand_store),
):
    """Public view of one demand record."""
    try:
        return await store.get_record(barcode)
    except DemandEngineError as e:
        raise http_error(e)


@router.get("/{barcode}/contributors", response_model=ContributorsResponse)
async def get_contributors(
    barcode: str,
    store: DemandStore = Depends(get_demand_store),
):
    """Contributor ledger for a record, in arrival order."""
    try:
        record, contributors, photos = await store.get_contributors(barcode)
    except DemandEngineError as e:
        raise http_error(e)

    return ContributorsResponse(
        barcode=record.barcode,
        first_scout_key=record.first_scout_key,
        first_scout_at=record.first_scout_at,
        contributors=[ContributorResponse.model_validate(c) for c in contributors],
        photo_contributors=[PhotoContributorResponse.model_validate(p) for p in photos],
    )
