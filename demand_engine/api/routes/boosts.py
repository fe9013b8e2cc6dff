"""Category boost API endpoints."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from demand_engine.aggregate.boosts import BoostRegistry, list_boosts, validate_multiplier
from demand_engine.api.deps import get_boost_registry, get_database, require_admin_api_key
from demand_engine.db.models import CategoryBoost

router = APIRouter(prefix="/api/boosts", tags=["boosts"])


class BoostCreate(BaseModel):
    """Request model for creating a category boost."""
    category_label: str = Field(..., min_length=1, max_length=128)
    headline: Optional[str] = None
    description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    multiplier: float = 2.0
    is_active: bool = True
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    @field_validator("multiplier")
    @classmethod
    def check_multiplier(cls, v: float) -> float:
        return validate_multiplier(v)


class BoostUpdate(BaseModel):
    """Request model for updating a category boost."""
    category_label: Optional[str] = None
    headline: Optional[str] = None
    description: Optional[str] = None
    keywords: Optional[List[str]] = None
    multiplier: Optional[float] = None
    is_active: Optional[bool] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    @field_validator("multiplier")
    @classmethod
    def check_multiplier(cls, v: Optional[float]) -> Optional[float]:
        return v if v is None else validate_multiplier(v)


class BoostResponse(BaseModel):
    """Response model for a category boost."""
    id: int
    category_label: str
    headline: Optional[str]
    description: Optional[str]
    keywords: List[str]
    multiplier: float
    is_active: bool
    starts_at: Optional[datetime]
    ends_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class ActiveBoostResponse(BaseModel):
    """A boost currently in effect."""
    category_label: str
    keywords: List[str]
    multiplier: float
    ends_at: Optional[datetime]


def _check_window(starts_at: Optional[datetime], ends_at: Optional[datetime]):
    if starts_at and ends_at and ends_at < starts_at:
        raise HTTPException(status_code=422, detail="ends_at must be after starts_at")


@router.get("/active", response_model=List[ActiveBoostResponse])
async def get_active_boosts(registry: BoostRegistry = Depends(get_boost_registry)):
    """Boosts in effect right now, highest multiplier first."""
    live = await registry.get_live(datetime.utcnow())
    return [
        ActiveBoostResponse(
            category_label=b.category_label,
            keywords=list(b.keywords),
            multiplier=b.multiplier,
            ends_at=b.ends_at,
        )
        for b in live
    ]


@router.get("", response_model=List[BoostResponse], dependencies=[Depends(require_admin_api_key)])
async def get_boosts(db: AsyncSession = Depends(get_database)):
    """List all category boosts."""
    return await list_boosts(db)


@router.post(
    "",
    response_model=BoostResponse,
    status_code=201,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_boost(
    boost_data: BoostCreate,
    db: AsyncSession = Depends(get_database),
    registry: BoostRegistry = Depends(get_boost_registry),
):
    """Create a category boost."""
    _check_window(boost_data.starts_at, boost_data.ends_at)

    boost = CategoryBoost(**boost_data.model_dump())
    db.add(boost)
    await db.commit()
    await db.refresh(boost)

    registry.invalidate()
    return boost


@router.patch(
    "/{boost_id}",
    response_model=BoostResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_boost(
    boost_id: int,
    boost_data: BoostUpdate,
    db: AsyncSession = Depends(get_database),
    registry: BoostRegistry = Depends(get_boost_registry),
):
    """Update a category boost."""
    boost = await db.get(CategoryBoost, boost_id)
    if not boost:
        raise HTTPException(status_code=404, detail="Boost not found")

    for field, value in boost_data.model_dump(exclude_unset=True).items():
        setattr(boost, field, value)
    _check_window(boost.starts_at, boost.ends_at)

    await db.commit()
    await db.refresh(boost)

    registry.invalidate()
    return boost


@router.delete("/{boost_id}", status_code=204, dependencies=[Depends(require_admin_api_key)])
async def delete_boost(
    boost_id: int,
    db: AsyncSession = Depends(get_database),
    registry: BoostRegistry = Depends(get_boost_registry),
):
    """Delete a category boost."""
    boost = await db.get(CategoryBoost, boost_id)
    if not boost:
        raise HTTPException(status_code=404, detail="Boost not found")

    await db.delete(boost)
    await db.commit()
    registry.invalidate()
