"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class GrantType(str, Enum):
    """How a product unlock was granted."""

    FREE_CREDIT = "free_credit"
    SUBSCRIPTION = "subscription"
    ADMIN_GRANT = "admin_grant"


class UnlockOutcome(str, Enum):
    """Result of an unlock request."""

    GRANTED = "granted"
    ALREADY_UNLOCKED = "already_unlocked"
    UPGRADE_REQUIRED = "upgrade_required"


class SignalType(str, Enum):
    """Kinds of demand signal for an untested product."""

    SEARCH = "search"
    SCAN = "scan"  # Unverified proof of possession (barcode scan)
    MEMBER_SCAN = "member_scan"  # Verified member possession


class DemandStatus(str, Enum):
    """Testing pipeline status, in forward order."""

    COLLECTING_VOTES = "collecting_votes"
    THRESHOLD_REACHED = "threshold_reached"
    QUEUED = "queued"
    SOURCING = "sourcing"
    TESTING = "testing"
    RESULTS_REVIEW = "results_review"
    COMPLETE = "complete"


class UrgencyFlag(str, Enum):
    """Velocity classification of a demand record."""

    NORMAL = "normal"
    TRENDING = "trending"
    URGENT = "urgent"


class InvestigationStatus(str, Enum):
    """Pipeline status as shown to a voter."""

    WAITING = "waiting"
    TESTING = "testing"
    COMPLETE = "complete"


class BrowseSort(str, Enum):
    """Sort orders for browsing products still collecting votes."""

    MOST_VOTED = "most_voted"
    NEWEST = "newest"
    ALMOST_FUNDED = "almost_funded"


def _validate_email(v: str | None) -> str | None:
    if v is not None and not _EMAIL_PATTERN.match(v):
        raise ValueError("Invalid email format")
    return v


# ============================================================================
# Unlock Models
# ============================================================================


class UnlockRequest(BaseModel):
    """POST /v1/products/{product_id}/unlock request body."""

    device_id: str = Field(..., min_length=1, max_length=255)
    is_subscriber: bool = Field(
        default=False, description="Caller is a paying subscriber (resolved upstream)"
    )
    account_id: str | None = Field(None, min_length=1, max_length=255)
    email: str | None = Field(None, max_length=255)

    # Funnel context
    session_id: str | None = Field(None, max_length=255)
    referral_source: str | None = Field(None, max_length=100)
    source_product_id: int | None = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        """Reject malformed email addresses."""
        return _validate_email(v)


class UnlockResponse(BaseModel):
    """POST /v1/products/{product_id}/unlock response."""

    success: bool
    outcome: UnlockOutcome
    already_unlocked: bool = False
    requires_upgrade: bool = False
    grant_type: GrantType | None = None
    product_id: int
    product_name: str | None = None
    credits_used: int = 0
    message: str


class UnlockStatusResponse(BaseModel):
    """GET /v1/products/{product_id}/unlock/status response."""

    product_id: int
    is_unlocked: bool
    grant_type: GrantType | None = None


# ============================================================================
# Demand Models
# ============================================================================


class SignalRequest(BaseModel):
    """POST /v1/demand/signals request body."""

    product_key: str = Field(..., min_length=1, max_length=64, description="Barcode (UPC/EAN)")
    signal_type: str = Field(default=SignalType.SCAN.value, max_length=50)
    fingerprint: str | None = Field(None, min_length=1, max_length=255)
    is_verified_member: bool = False

    # Optional product info from the client
    product_name: str | None = Field(None, max_length=255)
    brand: str | None = Field(None, max_length=255)

    # Notify when testing completes
    notify_on_complete: bool = False
    subscriber_id: str | None = Field(None, max_length=255)


class DemandSnapshotResponse(BaseModel):
    """Current state of a demand record."""

    product_key: str
    product_name: str | None = None
    brand: str | None = None
    weighted_score: float
    search_signals: int
    possession_signals: int
    verified_possession_signals: int
    unique_voters: int
    total_contributors: int
    funding_threshold: float
    funding_progress_pct: int
    status: DemandStatus
    threshold_reached_at: datetime | None = None
    scans_last_24h: int
    scans_last_7d: int
    velocity_score: float
    urgency_flag: UrgencyFlag


class SignalResponse(BaseModel):
    """POST /v1/demand/signals response."""

    success: bool = True
    vote_registered: bool = True
    is_new_voter: bool
    voter_rank: int
    message: str
    demand: DemandSnapshotResponse


class ContributionRequest(BaseModel):
    """POST /v1/demand/{product_key}/contributions request body."""

    fingerprint: str = Field(..., min_length=1, max_length=255)
    submission_id: int = Field(..., gt=0)
    user_id: str | None = Field(None, max_length=255)


class ContributionResponse(BaseModel):
    """POST /v1/demand/{product_key}/contributions response."""

    success: bool
    bounty_awarded: bool
    bonus_weight: float
    weighted_score: float
    funding_progress_pct: int
    message: str


class QueueResponse(BaseModel):
    """GET /v1/demand/queue response."""

    product_keys: list[str]
    limit: int


class LeaderboardEntry(BaseModel):
    """Single leaderboard row."""

    rank: int
    product_key: str
    product_name: str
    brand: str | None = None
    unique_voters: int
    weighted_score: float
    funding_progress_pct: int
    status: DemandStatus


class LeaderboardResponse(BaseModel):
    """GET /v1/demand/leaderboard response."""

    leaderboard: list[LeaderboardEntry]
    total: int


class BrowseEntry(BaseModel):
    """Single row of the public vote queue."""

    product_key: str
    product_name: str
    brand: str | None = None
    unique_voters: int
    total_contributors: int
    weighted_score: float
    funding_progress_pct: int
    funding_threshold: float
    status: DemandStatus
    created_at: datetime


class BrowseResponse(BaseModel):
    """GET /v1/demand/browse response."""

    products: list[BrowseEntry]
    total: int
    page: int
    total_pages: int


class InvestigationEntry(BaseModel):
    """One product a voter has backed."""

    product_key: str
    product_name: str
    brand: str | None = None
    status: InvestigationStatus
    queue_position: int | None = None
    funding_progress_pct: int
    scout_number: int
    total_scouts: int
    is_first_scout: bool
    did_contribute_photos: bool
    is_trending: bool
    scans_last_24h: int
    created_at: datetime
    updated_at: datetime


class InvestigationsResponse(BaseModel):
    """GET /v1/demand/investigations response."""

    investigations: list[InvestigationEntry]
    total_investigations: int
    results_ready: int


# ============================================================================
# Admin Models
# ============================================================================


class BanDeviceRequest(BaseModel):
    """POST /admin/devices/{device_id}/ban request body."""

    reason: str = Field(..., min_length=1, max_length=500)


class DeviceCreditResponse(BaseModel):
    """Device credit record as seen by operators."""

    device_id: str
    credits_used: int
    is_banned: bool
    ban_reason: str | None = None
    linked_account_id: str | None = None
    emails_seen: list[str]
    suspicious_activity: bool
    first_seen_at: datetime
    last_seen_at: datetime | None = None


class AdminGrantRequest(BaseModel):
    """POST /admin/unlocks request body."""

    product_id: int
    device_id: str | None = Field(None, min_length=1, max_length=255)
    account_id: str | None = Field(None, min_length=1, max_length=255)


class StatusTransitionRequest(BaseModel):
    """POST /admin/demand/{product_key}/status request body."""

    status: DemandStatus
    notes: str | None = Field(None, max_length=1000)


class StatusChangeResponse(BaseModel):
    """Single status history entry."""

    product_key: str
    from_status: DemandStatus | None = None
    to_status: DemandStatus
    changed_at: datetime
    notes: str | None = None


class StatusHistoryResponse(BaseModel):
    """GET /admin/demand/{product_key}/history response."""

    product_key: str
    status: DemandStatus
    history: list[StatusChangeResponse]


class ScoreCorrectionRequest(BaseModel):
    """POST /admin/demand/{product_key}/correction request body."""

    weighted_score: float = Field(..., ge=0)
    reason: str = Field(..., min_length=1, max_length=500)


class FundingThresholdRequest(BaseModel):
    """POST /admin/demand/{product_key}/threshold request body."""

    funding_threshold: float = Field(..., gt=0)


# ============================================================================
# Health Check
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
