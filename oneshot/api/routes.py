"""
API Routes - FastAPI endpoints for product unlocks and testing demand.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from oneshot.api.dependencies import get_read_store, get_record_store
from oneshot.db.session import get_read_db
from oneshot.db.store import RecordStore
from oneshot.exceptions import (
    ConcurrencyError,
    DatabaseError,
    DemandRecordNotFoundError,
    DeviceBannedError,
    InvalidSignalTypeError,
    ProductNotFoundError,
)
from oneshot.models.api import (
    BrowseEntry,
    BrowseResponse,
    BrowseSort,
    ContributionRequest,
    ContributionResponse,
    DemandSnapshotResponse,
    HealthResponse,
    InvestigationEntry,
    InvestigationsResponse,
    LeaderboardEntry,
    LeaderboardResponse,
    QueueResponse,
    SignalRequest,
    SignalResponse,
    SignalType,
    UnlockOutcome,
    UnlockRequest,
    UnlockResponse,
    UnlockStatusResponse,
)
from oneshot.models.domain import DemandSnapshot, SignalIntent, SignalResult, UnlockIntent
from oneshot.observability.metrics import metrics
from oneshot.services.credit_reservation import CreditReservationService
from oneshot.services.demand import DemandAggregator
from oneshot.services.scoring import parse_signal_type

logger = get_logger(__name__)
router = APIRouter()

_UNLOCK_MESSAGES = {
    UnlockOutcome.GRANTED: "Product unlocked.",
    UnlockOutcome.ALREADY_UNLOCKED: "Product already unlocked.",
    UnlockOutcome.UPGRADE_REQUIRED: (
        "You have used your free unlock. Subscribe for unlimited access."
    ),
}


def snapshot_response(snapshot: DemandSnapshot) -> DemandSnapshotResponse:
    """Map a demand snapshot to its API shape."""
    return DemandSnapshotResponse(
        product_key=snapshot.product_key,
        product_name=snapshot.product_name,
        brand=snapshot.brand,
        weighted_score=snapshot.weighted_score,
        search_signals=snapshot.search_signals,
        possession_signals=snapshot.possession_signals,
        verified_possession_signals=snapshot.verified_possession_signals,
        unique_voters=snapshot.unique_voters,
        total_contributors=snapshot.total_contributors,
        funding_threshold=snapshot.funding_threshold,
        funding_progress_pct=snapshot.funding_progress_pct,
        status=snapshot.status,
        threshold_reached_at=snapshot.threshold_reached_at,
        scans_last_24h=snapshot.scans_last_24h,
        scans_last_7d=snapshot.scans_last_7d,
        velocity_score=snapshot.velocity_score,
        urgency_flag=snapshot.urgency_flag,
    )


def _signal_message(signal_type: SignalType, result: SignalResult) -> str:
    progress = result.snapshot.funding_progress_pct
    if progress >= 100:
        return "This product has reached its funding goal! Testing will begin soon."
    if progress >= 75:
        return f"Almost there! This product is {progress}% funded for testing."
    if signal_type == SignalType.SEARCH:
        return f"Vote registered! You're voter #{result.voter_rank} for this product."
    if signal_type == SignalType.MEMBER_SCAN:
        return (
            f"Your premium vote counts {result.weight_applied:g}x! "
            f"You're voter #{result.voter_rank}."
        )
    return (
        f"Vote registered! Your scan counts {result.weight_applied:g}x. "
        f"You're voter #{result.voter_rank}."
    )


def _internal_error(exc: Exception, operation: str) -> HTTPException:
    metrics.record_error(type(exc).__name__, operation)
    logger.error("request_failed", operation=operation, error=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Database error",
    )


# ============================================================================
# Product Unlocks
# ============================================================================


@router.post("/v1/products/{product_id}/unlock", response_model=UnlockResponse)
async def unlock_product(
    product_id: int,
    request: UnlockRequest,
    store: RecordStore = Depends(get_record_store),
) -> UnlockResponse:
    """
    Unlock a product's full results for a device.

    Non-subscribers spend their single free credit; subscribers unlock
    without limit. Running out of credit is a normal response with
    requires_upgrade=true, not an error.
    """
    service = CreditReservationService(store)

    try:
        intent = UnlockIntent(
            product_id=product_id,
            device_id=request.device_id,
            is_subscriber=request.is_subscriber,
            account_id=request.account_id,
            email=request.email,
            session_id=request.session_id,
            referral_source=request.referral_source,
            source_product_id=request.source_product_id,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    try:
        result = await service.request_unlock(intent)

    except ProductNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found",
        ) from exc

    except DeviceBannedError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Device is banned from unlocking products",
        ) from exc

    except (DatabaseError, ConcurrencyError) as exc:
        raise _internal_error(exc, "unlock_product") from exc

    return UnlockResponse(
        success=not result.requires_upgrade,
        outcome=result.outcome,
        already_unlocked=result.already_unlocked,
        requires_upgrade=result.requires_upgrade,
        grant_type=result.grant_type,
        product_id=result.product_id,
        product_name=result.product_name,
        credits_used=result.credits_used,
        message=_UNLOCK_MESSAGES[result.outcome],
    )


@router.get("/v1/products/{product_id}/unlock/status", response_model=UnlockStatusResponse)
async def get_unlock_status(
    product_id: int,
    device_id: str | None = Query(None, min_length=1, max_length=255),
    account_id: str | None = Query(None, min_length=1, max_length=255),
    is_subscriber: bool = Query(False),
    store: RecordStore = Depends(get_read_store),
) -> UnlockStatusResponse:
    """
    Check whether a device or account has unlocked a product.

    Read operation - uses the read replica.
    """
    if not device_id and not account_id and not is_subscriber:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="device_id or account_id is required",
        )

    service = CreditReservationService(store)
    try:
        unlock_status = await service.check_unlock_status(
            product_id, device_id=device_id, account_id=account_id, is_subscriber=is_subscriber
        )
    except DatabaseError as exc:
        raise _internal_error(exc, "get_unlock_status") from exc

    return UnlockStatusResponse(
        product_id=product_id,
        is_unlocked=unlock_status.is_unlocked,
        grant_type=unlock_status.grant_type,
    )


# ============================================================================
# Testing Demand
# ============================================================================


@router.post("/v1/demand/signals", response_model=SignalResponse)
async def record_signal(
    request: SignalRequest,
    store: RecordStore = Depends(get_record_store),
) -> SignalResponse:
    """
    Record interest in an untested product.

    Weights: search 1x, scan 5x, member scan 20x. Signals are not
    deduplicated; unique voters are counted by fingerprint.
    """
    try:
        signal_type = parse_signal_type(request.signal_type)
    except InvalidSignalTypeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid signal type: {exc.signal_type}",
        ) from exc

    subscriber_id = None
    if request.notify_on_complete:
        subscriber_id = request.subscriber_id or request.fingerprint

    try:
        intent = SignalIntent(
            product_key=request.product_key,
            signal_type=signal_type,
            fingerprint=request.fingerprint,
            is_verified_member=request.is_verified_member,
            product_name=request.product_name,
            brand=request.brand,
            subscriber_id=subscriber_id,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    aggregator = DemandAggregator(store)
    try:
        result = await aggregator.record_signal(intent)
    except (DatabaseError, ConcurrencyError) as exc:
        raise _internal_error(exc, "record_signal") from exc

    return SignalResponse(
        is_new_voter=result.is_new_voter,
        voter_rank=result.voter_rank,
        message=_signal_message(signal_type, result),
        demand=snapshot_response(result.snapshot),
    )


@router.post("/v1/demand/{product_key}/contributions", response_model=ContributionResponse)
async def record_contribution(
    product_key: str,
    request: ContributionRequest,
    store: RecordStore = Depends(get_record_store),
) -> ContributionResponse:
    """Photo contribution bounty. Original voters add no bonus weight."""
    aggregator = DemandAggregator(store)

    try:
        result = await aggregator.record_contribution(
            product_key,
            fingerprint=request.fingerprint,
            submission_id=request.submission_id,
            user_id=request.user_id,
        )
    except DemandRecordNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No demand record for this product. Vote first before contributing photos.",
        ) from exc
    except (DatabaseError, ConcurrencyError) as exc:
        raise _internal_error(exc, "record_contribution") from exc

    if not result.accepted:
        message = "You have already contributed photos to this product."
    elif result.bounty_awarded:
        message = f"Bounty earned! Your photos added +{result.bonus_weight:g} votes to this request."
    else:
        message = "Photos added! Since you're the original voter, no bounty bonus applies."

    return ContributionResponse(
        success=result.accepted,
        bounty_awarded=result.bounty_awarded,
        bonus_weight=result.bonus_weight,
        weighted_score=result.snapshot.weighted_score,
        funding_progress_pct=result.snapshot.funding_progress_pct,
        message=message,
    )


@router.get("/v1/demand/queue", response_model=QueueResponse)
async def get_sourcing_queue(
    limit: int = Query(20, ge=1, le=500),
    store: RecordStore = Depends(get_read_store),
) -> QueueResponse:
    """Products ranked for sourcing: urgency, then velocity."""
    aggregator = DemandAggregator(store)
    try:
        product_keys = [key async for key in aggregator.rank_queue(limit)]
    except DatabaseError as exc:
        raise _internal_error(exc, "get_sourcing_queue") from exc

    return QueueResponse(product_keys=product_keys, limit=limit)


@router.get("/v1/demand/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    limit: int = Query(10, ge=1),
    store: RecordStore = Depends(get_read_store),
) -> LeaderboardResponse:
    """Most wanted untested products by weighted score."""
    aggregator = DemandAggregator(store)
    try:
        page = await aggregator.leaderboard(limit)
    except DatabaseError as exc:
        raise _internal_error(exc, "get_leaderboard") from exc

    return LeaderboardResponse(
        leaderboard=[
            LeaderboardEntry(
                rank=index + 1,
                product_key=entry.product_key,
                product_name=entry.product_name or "Unknown Product",
                brand=entry.brand,
                unique_voters=entry.unique_voters,
                weighted_score=entry.weighted_score,
                funding_progress_pct=entry.funding_progress_pct,
                status=entry.status,
            )
            for index, entry in enumerate(page.entries)
        ],
        total=page.total,
    )


@router.get("/v1/demand/browse", response_model=BrowseResponse)
async def browse_demand(
    sort: BrowseSort = Query(BrowseSort.MOST_VOTED),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    store: RecordStore = Depends(get_read_store),
) -> BrowseResponse:
    """Products still collecting votes, sorted by votes, age or funding."""
    aggregator = DemandAggregator(store)
    try:
        result = await aggregator.browse(sort, page, limit)
    except DatabaseError as exc:
        raise _internal_error(exc, "browse_demand") from exc

    return BrowseResponse(
        products=[
            BrowseEntry(
                product_key=entry.product_key,
                product_name=entry.product_name or "Unknown Product",
                brand=entry.brand,
                unique_voters=entry.unique_voters,
                total_contributors=entry.total_contributors,
                weighted_score=entry.weighted_score,
                funding_progress_pct=entry.funding_progress_pct,
                funding_threshold=entry.funding_threshold,
                status=entry.status,
                created_at=entry.created_at,
            )
            for entry in result.entries
        ],
        total=result.total,
        page=result.page,
        total_pages=result.total_pages,
    )


@router.get("/v1/demand/investigations", response_model=InvestigationsResponse)
async def get_my_investigations(
    x_fingerprint: str | None = Header(None, max_length=255),
    store: RecordStore = Depends(get_read_store),
) -> InvestigationsResponse:
    """
    Every product the calling device has voted on.

    The device is identified by the X-Fingerprint header.
    """
    if not x_fingerprint or not x_fingerprint.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Fingerprint header required",
        )

    aggregator = DemandAggregator(store)
    try:
        result = await aggregator.my_investigations(x_fingerprint)
    except DatabaseError as exc:
        raise _internal_error(exc, "get_my_investigations") from exc

    return InvestigationsResponse(
        investigations=[
            InvestigationEntry(
                product_key=item.snapshot.product_key,
                product_name=item.snapshot.product_name or "Unknown Product",
                brand=item.snapshot.brand,
                status=item.status,
                queue_position=item.queue_position,
                funding_progress_pct=item.snapshot.funding_progress_pct,
                scout_number=item.scout_number,
                total_scouts=item.snapshot.unique_voters,
                is_first_scout=item.is_first_scout,
                did_contribute_photos=item.did_contribute_photos,
                is_trending=item.is_trending,
                scans_last_24h=item.snapshot.scans_last_24h,
                created_at=item.snapshot.created_at,
                updated_at=item.snapshot.updated_at,
            )
            for item in result.entries
        ],
        total_investigations=len(result.entries),
        results_ready=result.results_ready,
    )


@router.get("/v1/demand/{product_key}", response_model=DemandSnapshotResponse)
async def get_demand(
    product_key: str,
    store: RecordStore = Depends(get_read_store),
) -> DemandSnapshotResponse:
    """Current demand for one product."""
    aggregator = DemandAggregator(store)
    try:
        snapshot = await aggregator.get_snapshot(product_key)
    except DemandRecordNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No demand record for this product",
        ) from exc
    except DatabaseError as exc:
        raise _internal_error(exc, "get_demand") from exc

    return snapshot_response(snapshot)


# ============================================================================
# Health Check
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
