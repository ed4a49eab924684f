"""
Admin API routes for operators and the testing-queue scheduler.

Protected by the X-Admin-Key header.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from structlog import get_logger

from oneshot.api.dependencies import (
    get_notification_dispatcher,
    get_record_store,
    require_admin_key,
)
from oneshot.api.routes import snapshot_response
from oneshot.db.store import RecordStore
from oneshot.exceptions import (
    ConcurrencyError,
    DatabaseError,
    DemandRecordNotFoundError,
    DeviceNotFoundError,
    InvalidStatusTransitionError,
    ProductNotFoundError,
)
from oneshot.models.api import (
    AdminGrantRequest,
    BanDeviceRequest,
    DemandSnapshotResponse,
    DemandStatus,
    DeviceCreditResponse,
    FundingThresholdRequest,
    ScoreCorrectionRequest,
    StatusChangeResponse,
    StatusHistoryResponse,
    StatusTransitionRequest,
    UnlockResponse,
)
from oneshot.models.domain import DeviceCreditData, StatusChange
from oneshot.observability.metrics import metrics
from oneshot.services.credit_reservation import CreditReservationService
from oneshot.services.demand import DemandAggregator
from oneshot.services.notifications import NotificationDispatcher, notify_completion

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


def _device_response(device: DeviceCreditData) -> DeviceCreditResponse:
    return DeviceCreditResponse(
        device_id=device.device_id,
        credits_used=device.credits_used,
        is_banned=device.is_banned,
        ban_reason=device.ban_reason,
        linked_account_id=device.linked_account_id,
        emails_seen=list(device.emails_seen),
        suspicious_activity=device.suspicious_activity,
        first_seen_at=device.first_seen_at,
        last_seen_at=device.last_seen_at,
    )


def _change_response(change: StatusChange) -> StatusChangeResponse:
    return StatusChangeResponse(
        product_key=change.product_key,
        from_status=change.from_status,
        to_status=change.to_status,
        changed_at=change.changed_at,
        notes=change.notes,
    )


def _server_error(exc: Exception, operation: str) -> HTTPException:
    metrics.record_error(type(exc).__name__, operation)
    logger.error("admin_request_failed", operation=operation, error=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Database error",
    )


# ============================================================================
# Devices
# ============================================================================


@router.get("/devices/{device_id}", response_model=DeviceCreditResponse)
async def get_device(
    device_id: str,
    store: RecordStore = Depends(get_record_store),
) -> DeviceCreditResponse:
    """Get a device's credit record."""
    service = CreditReservationService(store)
    try:
        device = await service.get_device(device_id)
    except DeviceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found",
        ) from exc
    except DatabaseError as exc:
        raise _server_error(exc, "get_device") from exc

    return _device_response(device)


@router.post("/devices/{device_id}/ban", response_model=DeviceCreditResponse)
async def ban_device(
    device_id: str,
    request: BanDeviceRequest,
    store: RecordStore = Depends(get_record_store),
) -> DeviceCreditResponse:
    """Ban a device from unlocking products."""
    service = CreditReservationService(store)
    try:
        device = await service.ban_device(device_id, request.reason)
    except DeviceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found",
        ) from exc
    except DatabaseError as exc:
        raise _server_error(exc, "ban_device") from exc

    return _device_response(device)


@router.post("/devices/{device_id}/unban", response_model=DeviceCreditResponse)
async def unban_device(
    device_id: str,
    store: RecordStore = Depends(get_record_store),
) -> DeviceCreditResponse:
    """Lift a device ban."""
    service = CreditReservationService(store)
    try:
        device = await service.unban_device(device_id)
    except DeviceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found",
        ) from exc
    except DatabaseError as exc:
        raise _server_error(exc, "unban_device") from exc

    return _device_response(device)


@router.post("/unlocks", response_model=UnlockResponse)
async def grant_unlock(
    request: AdminGrantRequest,
    store: RecordStore = Depends(get_record_store),
) -> UnlockResponse:
    """Grant an unlock without spending a credit."""
    if not request.device_id and not request.account_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="device_id or account_id is required",
        )

    service = CreditReservationService(store)
    try:
        result = await service.grant_unlock(
            request.product_id, device_id=request.device_id, account_id=request.account_id
        )
    except ProductNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found",
        ) from exc
    except DatabaseError as exc:
        raise _server_error(exc, "grant_unlock") from exc

    return UnlockResponse(
        success=True,
        outcome=result.outcome,
        already_unlocked=result.already_unlocked,
        grant_type=result.grant_type,
        product_id=result.product_id,
        product_name=result.product_name,
        message="Unlock granted." if result.granted else "Product already unlocked.",
    )


# ============================================================================
# Demand Pipeline
# ============================================================================


@router.post("/demand/{product_key}/status", response_model=StatusChangeResponse)
async def transition_status(
    product_key: str,
    request: StatusTransitionRequest,
    store: RecordStore = Depends(get_record_store),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> StatusChangeResponse:
    """
    Advance a product to the next testing status.

    Only the immediate successor is accepted. Moving to complete notifies the
    product's subscribers once.
    """
    aggregator = DemandAggregator(store)
    try:
        change = await aggregator.transition_status(product_key, request.status, request.notes)
        if change.to_status == DemandStatus.COMPLETE:
            notified = await notify_completion(aggregator, dispatcher, product_key)
            logger.info("completion_notifications_sent", product_key=product_key, count=notified)

    except DemandRecordNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No demand record for this product",
        ) from exc

    except InvalidStatusTransitionError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot move from {exc.current} to {exc.requested}",
        ) from exc

    except ConcurrencyError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Status changed concurrently, retry",
        ) from exc

    except DatabaseError as exc:
        raise _server_error(exc, "transition_status") from exc

    return _change_response(change)


@router.post("/demand/{product_key}/correction", response_model=DemandSnapshotResponse)
async def correct_score(
    product_key: str,
    request: ScoreCorrectionRequest,
    store: RecordStore = Depends(get_record_store),
) -> DemandSnapshotResponse:
    """Overwrite a product's weighted score (abuse cleanup)."""
    aggregator = DemandAggregator(store)
    try:
        snapshot = await aggregator.correct_score(
            product_key, request.weighted_score, request.reason
        )
    except DemandRecordNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No demand record for this product",
        ) from exc
    except DatabaseError as exc:
        raise _server_error(exc, "correct_score") from exc

    return snapshot_response(snapshot)


@router.post("/demand/{product_key}/threshold", response_model=DemandSnapshotResponse)
async def set_funding_threshold(
    product_key: str,
    request: FundingThresholdRequest,
    store: RecordStore = Depends(get_record_store),
) -> DemandSnapshotResponse:
    """Set how much weighted demand a product needs before it is funded."""
    aggregator = DemandAggregator(store)
    try:
        snapshot = await aggregator.set_funding_threshold(product_key, request.funding_threshold)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except DemandRecordNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No demand record for this product",
        ) from exc
    except ConcurrencyError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Threshold changed concurrently, retry",
        ) from exc
    except DatabaseError as exc:
        raise _server_error(exc, "set_funding_threshold") from exc

    return snapshot_response(snapshot)


@router.get("/demand/{product_key}/history", response_model=StatusHistoryResponse)
async def get_status_history(
    product_key: str,
    store: RecordStore = Depends(get_record_store),
) -> StatusHistoryResponse:
    """Full status history, oldest first."""
    aggregator = DemandAggregator(store)
    try:
        history = await aggregator.get_status_history(product_key)
    except DemandRecordNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No demand record for this product",
        ) from exc
    except DatabaseError as exc:
        raise _server_error(exc, "get_status_history") from exc

    return StatusHistoryResponse(
        product_key=product_key,
        status=history[-1].to_status,
        history=[_change_response(change) for change in history],
    )
