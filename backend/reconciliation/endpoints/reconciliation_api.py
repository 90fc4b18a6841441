"""
Reconciliation API Endpoints

REST API for goal reconciliation:
- POST /api/reconciliation/goals/{goal_id}/match - Match one goal
- POST /api/reconciliation/batch - Re-match one chunk of goals
- POST /api/reconciliation/review - Tag a bank record or ledger group
- POST /api/reconciliation/review/bulk - Tag several records at once
- POST /api/reconciliation/manual-matches - Create a manual match
- POST /api/reconciliation/manual-matches/remove - Remove manual matches
- GET /api/reconciliation/reversals/{bank_id}/candidates - Reversal candidates
- POST /api/reconciliation/reversals - Link a reversal pair
- DELETE /api/reconciliation/reversals/{bank_id} - Unlink a reversal pair
- GET /api/reconciliation/reversals/{bank_id}/partner - Reversal partner
- POST /api/reconciliation/resolution/detect - Run one resolution sweep chunk
- GET /api/reconciliation/resolution/stats - Resolution counts per tag
- GET /api/reconciliation/resolution/report - Resolved records
- GET /api/reconciliation/goals/{goal_id}/summary - Goal totals and review status
- GET /api/reconciliation/goals/{goal_id}/instruments - Per-instrument totals
- GET /api/reconciliation/status-counts - Bank records by status
- GET /api/reconciliation/status - Module status
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Header, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.connection import get_db
from reconciliation.errors import (
    ConsistencyError,
    NotFoundError,
    PersistenceError,
    ReconciliationError,
    ValidationError,
)
from reconciliation.models import DateRange, RecordSource, ReviewTag
from reconciliation.repositories.base import ReconciliationRepository
from reconciliation.repositories.sql import SqlReconciliationRepository
from reconciliation.services.manual_match_service import ManualMatchService
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.resolution_service import DEFAULT_SWEEP_BATCH_SIZE, VarianceResolutionService
from reconciliation.services.reversal_service import ReversalService
from reconciliation.services.summary_service import ReconciliationSummaryService
from sentry_integration import set_reconciliation_context
from utils.validation_errors import (
    raise_conflict,
    raise_invalid_parameter,
    raise_not_found,
    raise_validation_error,
    validate_date_range,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request Models ====================

class DateRangeRequest(BaseModel):
    start_date: date = Field(..., description="First transaction date (inclusive)")
    end_date: date = Field(..., description="Last transaction date (inclusive)")


class MatchGoalRequest(DateRangeRequest):
    """Request to match one goal."""
    persist: bool = Field(default=True, description="Write match annotations back to bank records")


class BatchMatchingRequest(DateRangeRequest):
    """Request to re-match one chunk of goals."""
    batch_size: Optional[int] = Field(default=None, ge=1, le=1000, description="Goals per chunk; RECON_BATCH_SIZE when omitted")
    offset: int = Field(default=0, ge=0)
    max_concurrency: int = Field(default=1, ge=1, le=16)


class ReviewRequest(BaseModel):
    """Request to tag one bank record or ledger group."""
    record_id: str = Field(..., description="Bank record id, or grouping key for LEDGER")
    source: RecordSource = Field(default=RecordSource.BANK)
    tag: Optional[ReviewTag] = Field(default=None, description="Review tag; omit to clear")
    notes: Optional[str] = None


class BulkReviewRequest(BaseModel):
    """Request to tag several bank records and ledger groups."""
    bank_ids: List[str] = Field(default_factory=list)
    group_keys: List[str] = Field(default_factory=list)
    tag: Optional[ReviewTag] = None
    notes: Optional[str] = None


class ManualMatchRequest(BaseModel):
    """Request to link bank records to ledger groups by hand."""
    bank_ids: List[str] = Field(..., min_length=1)
    group_keys: List[str] = Field(..., min_length=1)


class RemoveManualMatchRequest(BaseModel):
    """Request to clear manual matches by bank id or group key."""
    bank_ids: List[str] = Field(default_factory=list)
    group_keys: List[str] = Field(default_factory=list)


class LinkReversalRequest(BaseModel):
    """Request to pair a transaction with its reversal."""
    bank_id: str
    reversal_bank_id: str


class ResolutionSweepRequest(BaseModel):
    """Request to run one chunk of the variance resolution sweep."""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    batch_size: int = Field(default=DEFAULT_SWEEP_BATCH_SIZE, ge=1, le=10000)
    bank_cursor: Optional[str] = None
    group_cursor: Optional[str] = None
    batch_id: Optional[str] = None


# ==================== Authentication ====================

def verify_internal_auth(x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key")):
    """Verify internal API key authentication."""
    valid_keys = get_settings().internal_api_keys

    if not valid_keys:
        logger.warning("No internal API keys configured")
        raise HTTPException(status_code=503, detail="Internal authentication not configured")

    if not x_internal_api_key:
        raise HTTPException(status_code=401, detail="Missing X-Internal-Api-Key header")

    if x_internal_api_key not in valid_keys:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


# ==================== Dependencies ====================

async def get_repository(db: AsyncSession = Depends(get_db)) -> ReconciliationRepository:
    return SqlReconciliationRepository(db)


def get_reconciliation_service(repository: ReconciliationRepository = Depends(get_repository)) -> ReconciliationService:
    return ReconciliationService(repository)


def get_manual_match_service(repository: ReconciliationRepository = Depends(get_repository)) -> ManualMatchService:
    return ManualMatchService(repository)


def get_reversal_service(repository: ReconciliationRepository = Depends(get_repository)) -> ReversalService:
    return ReversalService(repository)


def get_resolution_service(repository: ReconciliationRepository = Depends(get_repository)) -> VarianceResolutionService:
    return VarianceResolutionService(repository)


def get_summary_service(repository: ReconciliationRepository = Depends(get_repository)) -> ReconciliationSummaryService:
    return ReconciliationSummaryService(repository)


# ==================== Helpers ====================

def _date_range(start_date: Optional[date], end_date: Optional[date]) -> DateRange:
    start_date, end_date = validate_date_range(start_date, end_date)
    return DateRange(start_date, end_date)


def _optional_date_range(start_date: Optional[date], end_date: Optional[date]) -> Optional[DateRange]:
    if start_date is None and end_date is None:
        return None
    return _date_range(start_date, end_date)


def raise_for_reconciliation_error(error: ReconciliationError):
    """
    Convert an engine error into an HTTPException.

    NotFoundError -> 404, ConsistencyError -> 409, ValidationError -> 422,
    PersistenceError -> 503.
    """
    if isinstance(error, NotFoundError):
        raise_not_found(error.resource, error.identifier)
    if isinstance(error, ConsistencyError):
        raise_conflict(str(error))
    if isinstance(error, ValidationError):
        if error.field:
            raise_invalid_parameter(error.field, error.message)
        raise_validation_error(error.message)
    if isinstance(error, PersistenceError):
        logger.error(f"Reconciliation storage failure: {error}")
        raise HTTPException(status_code=503, detail="Reconciliation storage unavailable")
    raise HTTPException(status_code=500, detail=str(error))


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status.

    Returns the active tolerance configuration.
    """
    from reconciliation.tolerance import get_tolerance_config

    config = get_tolerance_config()
    return {
        "module": "reconciliation",
        "status": "operational",
        "tolerances": {
            "amount_percentage": str(config.amount_percentage),
            "amount_fixed_floor": str(config.amount_fixed_floor),
            "date_window_days": config.date_window_days,
            "instrument_distribution_percentage": str(config.instrument_distribution_percentage),
            "split_search_limit": config.split_search_limit,
            "excluded_channels": list(config.excluded_channels),
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.post("/goals/{goal_id}/match", summary="Match one goal")
async def match_goal(
    goal_id: str,
    request: MatchGoalRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Match a goal's bank records against its ledger groups.

    Manual matches are kept; every other bank record in the range is
    re-matched and its annotation rewritten.

    Requires internal API key authentication.
    """
    date_range = _date_range(request.start_date, request.end_date)
    set_reconciliation_context(goal_id=goal_id)

    try:
        result = await service.match_goal(goal_id, date_range, persist=request.persist, actor=x_user_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)

    return result.to_dict()


@router.post("/batch", summary="Batch matching")
async def run_matching_batch(
    request: BatchMatchingRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Re-match one chunk of goals.

    Call again with `next_offset` while `has_more` is true.

    Requires internal API key authentication.
    """
    date_range = _date_range(request.start_date, request.end_date)

    try:
        result = await service.run_matching_batch(
            date_range,
            batch_size=request.batch_size,
            offset=request.offset,
            max_concurrency=request.max_concurrency,
            actor=x_user_id
        )
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)

    return result.to_dict()


@router.post("/review", summary="Review one record")
async def review_record(
    request: ReviewRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Tag a bank record, or every posting of a ledger group, for review.

    Requires internal API key authentication.
    """
    try:
        return await service.review_record(
            request.record_id,
            request.tag,
            notes=request.notes,
            actor=x_user_id,
            source=request.source
        )
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.post("/review/bulk", summary="Review several records")
async def bulk_review(
    request: BulkReviewRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Apply one review tag to several bank records and ledger groups.

    Nothing is written if any id is unknown.

    Requires internal API key authentication.
    """
    if not request.bank_ids and not request.group_keys:
        raise_validation_error("Provide at least one bank_id or group_key")

    try:
        return await service.bulk_review(
            request.bank_ids,
            request.group_keys,
            request.tag,
            notes=request.notes,
            actor=x_user_id
        )
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.post("/manual-matches", summary="Create manual match")
async def create_manual_match(
    request: ManualMatchRequest,
    service: ManualMatchService = Depends(get_manual_match_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Link bank records to ledger groups by hand.

    The selection must belong to one goal, contain no manually matched
    record, and have totals that agree.

    Requires internal API key authentication.
    """
    try:
        return await service.create_manual_match(request.bank_ids, request.group_keys, actor=x_user_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.post("/manual-matches/remove", summary="Remove manual matches")
async def remove_manual_match(
    request: RemoveManualMatchRequest,
    service: ManualMatchService = Depends(get_manual_match_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Clear manual matches selected by bank id or referenced group key.

    Requires internal API key authentication.
    """
    if not request.bank_ids and not request.group_keys:
        raise_validation_error("Provide at least one bank_id or group_key")

    try:
        cleared = await service.remove_manual_match(request.bank_ids, request.group_keys, actor=x_user_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)

    return {"cleared_bank_ids": cleared, "count": len(cleared)}


@router.get("/reversals/{bank_id}/candidates", summary="Reversal candidates")
async def find_reversal_candidates(
    bank_id: str,
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    service: ReversalService = Depends(get_reversal_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Unmatched, unpaired records on the same goal that exactly undo bank_id.

    Requires internal API key authentication.
    """
    date_range = _optional_date_range(start_date, end_date)

    try:
        candidates = await service.find_reversal_candidates(bank_id, date_range)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)

    return {
        "bank_id": bank_id,
        "candidates": [c.to_dict() for c in candidates],
        "count": len(candidates)
    }


@router.post("/reversals", summary="Link reversal pair")
async def link_reversal(
    request: LinkReversalRequest,
    service: ReversalService = Depends(get_reversal_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Pair a bank record with the record that reverses it.

    Requires internal API key authentication.
    """
    try:
        return await service.link_reversal(request.bank_id, request.reversal_bank_id, actor=x_user_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.delete("/reversals/{bank_id}", summary="Unlink reversal pair")
async def unlink_reversal(
    bank_id: str,
    service: ReversalService = Depends(get_reversal_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Break a reversal pair. Both records return to unmatched.

    Requires internal API key authentication.
    """
    try:
        unlinked = await service.unlink_reversal(bank_id, actor=x_user_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)

    return {"unlinked_bank_ids": unlinked}


@router.get("/reversals/{bank_id}/partner", summary="Reversal partner")
async def get_reversal_partner(
    bank_id: str,
    service: ReversalService = Depends(get_reversal_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Get the record paired with bank_id, or null when it is not paired.

    Requires internal API key authentication.
    """
    try:
        partner = await service.get_reversal_partner(bank_id)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)

    return {"bank_id": bank_id, "partner": partner.to_dict() if partner else None}


@router.post("/resolution/detect", summary="Run resolution sweep")
async def run_resolution_sweep(
    request: ResolutionSweepRequest,
    service: VarianceResolutionService = Depends(get_resolution_service),
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Resolve one chunk of tagged records whose variance has cleared.

    Pass back `bank_cursor`, `group_cursor` and `batch_id` while
    `has_more` is true.

    Requires internal API key authentication.
    """
    date_range = _optional_date_range(request.start_date, request.end_date)

    try:
        result = await service.run_resolution_sweep(
            date_range=date_range,
            batch_size=request.batch_size,
            bank_cursor=request.bank_cursor,
            group_cursor=request.group_cursor,
            batch_id=request.batch_id,
            actor=x_user_id
        )
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)

    return result.to_dict()


@router.get("/resolution/stats", summary="Resolution statistics")
async def get_resolution_stats(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    service: VarianceResolutionService = Depends(get_resolution_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Total, resolved and pending counts per auto-resolvable tag.

    Requires internal API key authentication.
    """
    date_range = _optional_date_range(start_date, end_date)

    try:
        return await service.get_resolution_stats(date_range)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.get("/resolution/report", summary="Resolved records")
async def get_resolved_report(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    goal_id: Optional[str] = Query(default=None),
    original_tag: Optional[ReviewTag] = Query(default=None),
    service: VarianceResolutionService = Depends(get_resolution_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Resolved records with the reason and sweep batch that resolved them.

    Requires internal API key authentication.
    """
    date_range = _optional_date_range(start_date, end_date)

    try:
        rows = await service.get_resolved_report(date_range, goal_id=goal_id, original_tag=original_tag)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)

    return {"resolved": rows, "count": len(rows)}


@router.get("/goals/{goal_id}/summary", summary="Goal summary")
async def get_goal_summary(
    goal_id: str,
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    service: ReconciliationSummaryService = Depends(get_summary_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Bank vs ledger deposit and withdrawal totals for one goal.

    Requires internal API key authentication.
    """
    date_range = _date_range(start_date, end_date)

    try:
        return await service.get_goal_summary(goal_id, date_range)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.get("/goals/{goal_id}/instruments", summary="Instrument summary")
async def get_instrument_summary(
    goal_id: str,
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    service: ReconciliationSummaryService = Depends(get_summary_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Net bank vs ledger amount per instrument for one goal.

    Requires internal API key authentication.
    """
    date_range = _date_range(start_date, end_date)

    try:
        return await service.get_instrument_summary(goal_id, date_range)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)


@router.get("/status-counts", summary="Status counts")
async def get_status_counts(
    goal_id: Optional[str] = Query(default=None),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    service: ReconciliationSummaryService = Depends(get_summary_service),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Bank records by reconciliation status, review state and review tag.

    Requires internal API key authentication.
    """
    date_range = _optional_date_range(start_date, end_date)

    try:
        return await service.get_status_counts(goal_id, date_range)
    except ReconciliationError as e:
        raise_for_reconciliation_error(e)
