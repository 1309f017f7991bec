"""
Status API routes - Liveness and dependency status.

Public endpoints (no auth). /v1/status is cached for 10 seconds to prevent abuse.

/v1/status reports three components:
    postgresql   - round trip to the primary
    stripe       - the configured secret key is accepted by the processor
    reservations - pending purchases still holding a unit after the stall window
                   (an authorization attempt died between reserving and the processor)
"""

import asyncio
import time
from datetime import UTC, datetime, timedelta
from enum import Enum

import httpx
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from voucherflow.config import settings
from voucherflow.db.models import Purchase
from voucherflow.db.session import WRITE, get_read_db, session_scope
from voucherflow.models.api import HealthResponse, PurchaseStatus

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

CHECK_TIMEOUT = 5.0  # seconds
DEGRADED_LATENCY_THRESHOLD = 1000  # ms

# Cheapest authenticated read; proves the key works, not just that DNS resolves
STRIPE_KEY_CHECK_URL = "https://api.stripe.com/v1/balance"

_status_cache: dict[str, tuple[datetime, "ServiceStatusResponse"]] = {}
_CACHE_TTL_SECONDS = 10


class StatusLevel(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class ProviderStatus(BaseModel):
    """Status of a single component."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """Response for /v1/status endpoint."""

    service: str = "voucherflow"
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    providers: dict[str, ProviderStatus]


def _timed(start: float, timestamp: str, message: str | None = None) -> ProviderStatus:
    latency_ms = int((time.perf_counter() - start) * 1000)
    if latency_ms > DEGRADED_LATENCY_THRESHOLD:
        return ProviderStatus(
            status=StatusLevel.DEGRADED,
            latency_ms=latency_ms,
            last_check=timestamp,
            message="High latency",
        )
    return ProviderStatus(
        status=StatusLevel.OPERATIONAL, latency_ms=latency_ms, last_check=timestamp, message=message
    )


def _outage(timestamp: str, message: str, latency_ms: int | None = None) -> ProviderStatus:
    return ProviderStatus(
        status=StatusLevel.OUTAGE, latency_ms=latency_ms, last_check=timestamp, message=message
    )


async def check_postgresql() -> ProviderStatus:
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        async with session_scope(WRITE) as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("postgresql_health_check_failed", error=str(e))
        return _outage(timestamp, "Connection failed")

    return _timed(start, timestamp)


async def check_stripe() -> ProviderStatus:
    """Check that the processor accepts the configured secret key."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        async with httpx.AsyncClient(timeout=CHECK_TIMEOUT) as client:
            response = await client.get(STRIPE_KEY_CHECK_URL, auth=(settings.stripe_api_key, ""))
    except httpx.TimeoutException:
        return _outage(timestamp, "Timeout", latency_ms=int(CHECK_TIMEOUT * 1000))
    except httpx.HTTPError as e:
        logger.warning("stripe_health_check_failed", error=str(e))
        return _outage(timestamp, "Connection failed")

    if response.status_code == 200:
        return _timed(start, timestamp)
    if response.status_code in (401, 403):
        # Reachable, but no payment can be authorized with this key
        logger.error("stripe_api_key_rejected", status_code=response.status_code)
        return _outage(timestamp, "API key rejected")

    return ProviderStatus(
        status=StatusLevel.DEGRADED,
        latency_ms=int((time.perf_counter() - start) * 1000),
        last_check=timestamp,
        message=f"Unexpected status: {response.status_code}",
    )


async def check_reservations() -> ProviderStatus:
    """Count pending purchases that have held a unit past the stall window."""
    start = time.perf_counter()
    now = datetime.now(UTC)
    timestamp = now.isoformat()
    cutoff = now - timedelta(minutes=settings.stalled_reservation_minutes)

    stmt = select(func.count()).where(
        Purchase.status == PurchaseStatus.PENDING.value,
        Purchase.inventory_reserved.is_(True),
        Purchase.updated_at < cutoff,
    )
    try:
        async with session_scope(WRITE) as db:
            stalled = (await db.execute(stmt)).scalar_one()
    except Exception as e:
        logger.warning("reservation_check_failed", error=str(e))
        return _outage(timestamp, "Query failed")

    if stalled:
        logger.warning("stalled_reservations", count=stalled)
        return ProviderStatus(
            status=StatusLevel.DEGRADED,
            latency_ms=int((time.perf_counter() - start) * 1000),
            last_check=timestamp,
            message=f"{stalled} units held by stalled authorizations",
        )
    return _timed(start, timestamp)


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    """Worst component status wins."""
    statuses = [p.status for p in providers.values()]

    if StatusLevel.OUTAGE in statuses:
        return StatusLevel.OUTAGE
    if StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


@router.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status() -> ServiceStatusResponse:
    """Component status, checked concurrently and cached briefly."""
    cache_key = "status"
    now = datetime.now(UTC)

    if cache_key in _status_cache:
        cached_time, cached_response = _status_cache[cache_key]
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("status_cache_hit", age_seconds=age_seconds)
            return cached_response

    postgresql_status, stripe_status, reservation_status = await asyncio.gather(
        check_postgresql(), check_stripe(), check_reservations()
    )
    providers = {
        "postgresql": postgresql_status,
        "stripe": stripe_status,
        "reservations": reservation_status,
    }

    response = ServiceStatusResponse(
        status=calculate_overall_status(providers),
        timestamp=now.isoformat(),
        version=settings.api_version,
        providers=providers,
    )

    _status_cache[cache_key] = (now, response)
    return response


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse | JSONResponse:
    """Load balancer probe; 503 when the database is unreachable."""
    timestamp = datetime.now(UTC).isoformat()
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("health_check_failed", error=str(exc))
        return JSONResponse(
            status_code=503,
            content=HealthResponse(
                status="unhealthy", database="disconnected", timestamp=timestamp
            ).model_dump(),
        )

    return HealthResponse(status="healthy", database="connected", timestamp=timestamp)
