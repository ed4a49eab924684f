"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime

from oneshot.models.api import (
    DemandStatus,
    GrantType,
    InvestigationStatus,
    SignalType,
    UnlockOutcome,
    UrgencyFlag,
)

DEVICE_SUBJECT_PREFIX = "device:"
ACCOUNT_SUBJECT_PREFIX = "account:"


def device_subject(device_id: str) -> str:
    """Subject key for a device identity."""
    return f"{DEVICE_SUBJECT_PREFIX}{device_id}"


def account_subject(account_id: str) -> str:
    """Subject key for an account identity."""
    return f"{ACCOUNT_SUBJECT_PREFIX}{account_id}"


@dataclass(frozen=True)
class UnlockIntent:
    """Unlock request before any state change - immutable intent."""

    product_id: int
    device_id: str
    is_subscriber: bool
    account_id: str | None = None
    email: str | None = None
    session_id: str | None = None
    referral_source: str | None = None
    source_product_id: int | None = None

    def __post_init__(self) -> None:
        """Validate unlock intent fields."""
        if not self.device_id or not self.device_id.strip():
            raise ValueError("device_id cannot be empty")
        if self.account_id is not None and not self.account_id.strip():
            raise ValueError("account_id cannot be blank")

    @property
    def subject_key(self) -> str:
        """Subject the grant is recorded against (account wins over device)."""
        if self.account_id:
            return account_subject(self.account_id)
        return device_subject(self.device_id)

    @property
    def wants_account_link(self) -> bool:
        """Caller supplied an account or email to associate with the device."""
        return bool(self.account_id or self.email)


@dataclass(frozen=True)
class UnlockResult:
    """Outcome of an unlock request."""

    outcome: UnlockOutcome
    product_id: int
    grant_type: GrantType | None
    credits_used: int
    product_name: str | None = None

    @property
    def granted(self) -> bool:
        return self.outcome == UnlockOutcome.GRANTED

    @property
    def already_unlocked(self) -> bool:
        return self.outcome == UnlockOutcome.ALREADY_UNLOCKED

    @property
    def requires_upgrade(self) -> bool:
        return self.outcome == UnlockOutcome.UPGRADE_REQUIRED


@dataclass(frozen=True)
class UnlockStatus:
    """Read-only unlock state for a subject and product."""

    is_unlocked: bool
    grant_type: GrantType | None


@dataclass(frozen=True)
class DeviceCreditData:
    """Immutable device credit snapshot."""

    device_id: str
    credits_used: int
    is_banned: bool
    ban_reason: str | None
    linked_account_id: str | None
    emails_seen: tuple[str, ...]
    suspicious_activity: bool
    first_seen_at: datetime
    last_seen_at: datetime | None


@dataclass(frozen=True)
class SignalIntent:
    """Demand signal before accumulation - immutable intent."""

    product_key: str
    signal_type: SignalType
    fingerprint: str | None
    is_verified_member: bool
    product_name: str | None = None
    brand: str | None = None
    subscriber_id: str | None = None

    def __post_init__(self) -> None:
        """Validate signal fields."""
        if not self.product_key or not self.product_key.strip():
            raise ValueError("product_key cannot be empty")


@dataclass(frozen=True)
class VelocityMetrics:
    """Rolling-window velocity derived from scan timestamps."""

    scans_last_24h: int
    scans_last_7d: int
    velocity_score: float
    urgency_flag: UrgencyFlag
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class DemandSnapshot:
    """Immutable view of a demand record after an operation."""

    product_key: str
    product_name: str | None
    brand: str | None
    weighted_score: float
    search_signals: int
    possession_signals: int
    verified_possession_signals: int
    unique_voters: int
    total_contributors: int
    funding_threshold: float
    funding_progress_pct: int
    status: DemandStatus
    threshold_reached_at: datetime | None
    scans_last_24h: int
    scans_last_7d: int
    velocity_score: float
    urgency_flag: UrgencyFlag
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class SignalResult:
    """Outcome of recording a signal."""

    snapshot: DemandSnapshot
    is_new_voter: bool
    voter_rank: int
    weight_applied: float


@dataclass(frozen=True)
class ContributionResult:
    """Outcome of a photo contribution."""

    accepted: bool
    bonus_weight: float
    snapshot: DemandSnapshot

    @property
    def bounty_awarded(self) -> bool:
        return self.accepted and self.bonus_weight > 0


@dataclass(frozen=True)
class StatusChange:
    """One entry of a demand record's status history."""

    product_key: str
    from_status: DemandStatus | None
    to_status: DemandStatus
    changed_at: datetime
    notes: str | None = None


@dataclass(frozen=True)
class LeaderboardPage:
    """Top demand records by weighted score."""

    entries: tuple[DemandSnapshot, ...]
    total: int


@dataclass(frozen=True)
class BrowsePage:
    """One page of products still collecting votes."""

    entries: tuple[DemandSnapshot, ...]
    total: int
    page: int
    total_pages: int


@dataclass(frozen=True)
class Investigation:
    """A product one voter has backed, seen from that voter's side."""

    snapshot: DemandSnapshot
    status: InvestigationStatus
    queue_position: int | None
    scout_number: int
    did_contribute_photos: bool

    @property
    def is_first_scout(self) -> bool:
        return self.scout_number == 1

    @property
    def is_trending(self) -> bool:
        return self.snapshot.urgency_flag != UrgencyFlag.NORMAL


@dataclass(frozen=True)
class InvestigationsPage:
    """Everything a voter has backed, most recently active first."""

    entries: tuple[Investigation, ...]

    @property
    def results_ready(self) -> int:
        return sum(1 for e in self.entries if e.status == InvestigationStatus.COMPLETE)
