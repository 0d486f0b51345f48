"""
Discrepancy API Endpoints

REST API for the reconciliation engine:
- GET /api/discrepancies/status - Module status
- POST /api/discrepancies/runs - Reconcile one platform
- POST /api/discrepancies/runs/batch - Reconcile several platforms independently
- GET /api/discrepancies/history/{platform} - Discrepancy history for a platform
"""

import asyncio
import secrets
import logging
from typing import Optional, List
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Header, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from vaultaudit.database.discrepancy_models import DiscrepancyType
from vaultaudit.reconciliation.errors import (
    ReconciliationError,
    FetchError,
    ConflictError,
    PersistenceError,
    StaleRunTimeError,
)
from vaultaudit.reconciliation.services.history_store import (
    DiscrepancyHistoryStore,
    DiscrepancyRecord,
    HistoryStatus,
)
from vaultaudit.reconciliation.services.reconciliation_service import ReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/discrepancies", tags=["Discrepancies"])


# ==================== Request/Response Models ====================

class RunRequest(BaseModel):
    """Request to reconcile one platform."""
    platform: str = Field(..., min_length=1, max_length=255, description="Platform name")
    at: Optional[datetime] = Field(default=None, description="Run time (timezone-aware); defaults to now")


class BatchRunRequest(BaseModel):
    """Request to reconcile several platforms."""
    platforms: List[str] = Field(..., min_length=1, description="Platform names")
    at: Optional[datetime] = Field(default=None, description="Shared run time; defaults to now")


class RunSummaryResponse(BaseModel):
    """Counts for a committed run."""
    run_id: str
    platform: str
    run_at: datetime
    created: int
    updated: int
    resolved: int


class PlatformOutcomeResponse(BaseModel):
    """One platform's result within a batch."""
    platform: str
    ok: bool
    summary: Optional[RunSummaryResponse] = None
    error: Optional[str] = None
    error_message: Optional[str] = None


class BatchRunResponse(BaseModel):
    run_at: datetime
    succeeded: int
    failed: int
    outcomes: List[PlatformOutcomeResponse]


class HistoryResponse(BaseModel):
    platform: str
    count: int
    records: List[DiscrepancyRecord]


# ==================== Dependencies ====================

def get_reconciliation_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.reconciliation_engine


async def get_db(request: Request):
    """Dependency to get a read session"""
    async with request.app.state.session_factory() as session:
        yield session


def verify_internal_auth(
    request: Request,
    x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key")
):
    """Verify internal API key authentication."""
    valid_keys = request.app.state.settings.internal_api_keys

    if not valid_keys:
        logger.warning("No internal API keys configured")
        raise HTTPException(status_code=503, detail="Internal authentication not configured")

    if not x_internal_api_key:
        raise HTTPException(status_code=401, detail="Missing X-Internal-Api-Key header")

    if not any(secrets.compare_digest(x_internal_api_key, key) for key in valid_keys):
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


def _http_error(error: ReconciliationError) -> HTTPException:
    if isinstance(error, FetchError):
        status_code = 502
    elif isinstance(error, (ConflictError, StaleRunTimeError)):
        status_code = 409
    elif isinstance(error, PersistenceError):
        status_code = 503
    else:
        # InvariantViolation and anything unclassified
        status_code = 500
    return HTTPException(status_code=status_code, detail=error.to_dict())


def _summary_response(summary) -> RunSummaryResponse:
    return RunSummaryResponse(**summary.to_dict())


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get discrepancy module status.
    """
    return {
        "module": "discrepancies",
        "status": "operational",
        "discrepancy_types": [t.value for t in DiscrepancyType],
        "matching_policy": "account_id (exact)",
        "concurrency": "per-platform runs serialize (blocking)",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.post("/runs", response_model=RunSummaryResponse, summary="Reconcile one platform")
async def run_reconciliation(
    request: RunRequest,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Reconcile a platform's vault and platform inventories.

    This will:
    1. Fetch both inventories from the account source
    2. Compute not-vaulted and orphaned accounts
    3. Open, advance or resolve discrepancy history records
    4. Commit all changes for the platform atomically

    Requires internal API key authentication.
    """
    try:
        summary = await engine.run(request.platform, request.at)
    except ReconciliationError as e:
        raise _http_error(e)
    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=504,
            detail={"platform": request.platform, "error": "TimeoutError", "message": "Run timed out"}
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _summary_response(summary)


@router.post("/runs/batch", response_model=BatchRunResponse, summary="Reconcile several platforms")
async def run_reconciliation_batch(
    request: BatchRunRequest,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Reconcile each platform independently. A failing platform is reported
    in its outcome and never affects the others.
    """
    try:
        at = request.at or datetime.now(timezone.utc)
        outcomes = await engine.run_many(request.platforms, at)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    responses = [
        PlatformOutcomeResponse(
            platform=o.platform,
            ok=o.ok,
            summary=_summary_response(o.summary) if o.summary else None,
            error=o.error,
            error_message=o.error_message,
        )
        for o in outcomes
    ]
    succeeded = sum(1 for o in outcomes if o.ok)

    return BatchRunResponse(
        run_at=at,
        succeeded=succeeded,
        failed=len(outcomes) - succeeded,
        outcomes=responses
    )


@router.get("/history/{platform}", response_model=HistoryResponse, summary="Discrepancy history")
async def get_history(
    platform: str,
    discrepancy_type: Optional[DiscrepancyType] = Query(None, description="NOT_VAULTED or ORPHANED"),
    status: HistoryStatus = Query(HistoryStatus.ALL, description="open, resolved or all"),
    account_id: Optional[str] = Query(None),
    limit: int = Query(500, ge=1, le=5000),
    db: AsyncSession = Depends(get_db),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    List discrepancy history rows for a platform, ordered by type, account
    and first detection.
    """
    store = DiscrepancyHistoryStore(db)
    records = await store.get_history(
        platform,
        discrepancy_type=discrepancy_type,
        account_id=account_id,
        status=status,
        limit=limit
    )
    return HistoryResponse(platform=platform, count=len(records), records=records)
