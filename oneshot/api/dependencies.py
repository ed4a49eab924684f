"""
FastAPI Dependencies - Record store wiring and operator authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from oneshot.config import settings
from oneshot.db.session import get_read_db, get_write_db
from oneshot.db.store import RecordStore
from oneshot.services.notifications import LogNotificationDispatcher, NotificationDispatcher

logger = get_logger(__name__)

_dispatcher = LogNotificationDispatcher()


# ============================================================================
# Record Stores
# ============================================================================


async def get_record_store(db: AsyncSession = Depends(get_write_db)) -> RecordStore:
    """Record store on the primary database (writes)."""
    return RecordStore(db)


async def get_read_store(db: AsyncSession = Depends(get_read_db)) -> RecordStore:
    """Record store on the read replica (falls back to primary)."""
    return RecordStore(db)


def get_notification_dispatcher() -> NotificationDispatcher:
    """Dispatcher for results-ready notifications."""
    return _dispatcher


# ============================================================================
# Operator Authentication
# ============================================================================


async def require_admin_key(
    x_admin_key: str | None = Header(None, description="Operator API key"),
) -> None:
    """
    FastAPI dependency guarding operator endpoints with the X-Admin-Key header.

    Raises:
        HTTPException 503 if no admin key is configured
        HTTPException 401 if the header is missing or wrong
    """
    if not settings.admin_api_key:
        logger.error("admin_key_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is not configured",
        )

    if x_admin_key is None or not secrets.compare_digest(x_admin_key, settings.admin_api_key):
        logger.warning("admin_key_rejected", provided=x_admin_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
