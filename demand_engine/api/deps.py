"""FastAPI dependencies."""

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from demand_engine.aggregate.boosts import BoostRegistry
from demand_engine.aggregate.queue import DemandQueue
from demand_engine.aggregate.store import DemandStore
from demand_engine.config import settings
from demand_engine.db.session import get_db
from demand_engine.errors import (
    ConcurrencyConflict,
    DemandEngineError,
    InvalidCorrection,
    InvalidEvent,
    InvalidEventType,
    InvalidStatusTransition,
    UnknownBarcode,
)
from demand_engine.worker.tasks import task_runner


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


def _require_initialized(service):
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Demand engine is starting up",
        )
    return service


def get_demand_store() -> DemandStore:
    return _require_initialized(task_runner.store)


def get_demand_queue() -> DemandQueue:
    return _require_initialized(task_runner.queue)


def get_boost_registry() -> BoostRegistry:
    return _require_initialized(task_runner.boost_registry)


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key")
) -> None:
    """
    Dependency to require admin API key for protected endpoints.

    Args:
        x_admin_api_key: Admin API key from X-Admin-API-Key header

    Raises:
        HTTPException: 503 if no key is configured, 403 if invalid
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured",
        )

    if x_admin_api_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key",
        )


def http_error(error: DemandEngineError) -> HTTPException:
    """Translate an engine error into the HTTP response callers see."""
    if isinstance(error, UnknownBarcode):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConcurrencyConflict):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Record is busy, retry shortly",
            headers={"Retry-After": str(error.retry_after or 1)},
        )
    if isinstance(error, InvalidStatusTransition):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, (InvalidEventType, InvalidEvent, InvalidCorrection)):
        return HTTPException(status_code=422, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))
