"""
Demand Scoring - Pure policy functions for the demand aggregator.

Signal weights, funding progress, velocity and urgency classification, and the
forward-only status transition table. No I/O here.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from oneshot.config import Settings, settings
from oneshot.exceptions import InvalidSignalTypeError, InvalidStatusTransitionError
from oneshot.models.api import (
    BrowseSort,
    DemandStatus,
    InvestigationStatus,
    SignalType,
    UrgencyFlag,
)
from oneshot.models.domain import VelocityMetrics

# Forward-only pipeline. Each status accepts exactly one successor.
NEXT_STATUS: dict[DemandStatus, DemandStatus] = {
    DemandStatus.COLLECTING_VOTES: DemandStatus.THRESHOLD_REACHED,
    DemandStatus.THRESHOLD_REACHED: DemandStatus.QUEUED,
    DemandStatus.QUEUED: DemandStatus.SOURCING,
    DemandStatus.SOURCING: DemandStatus.TESTING,
    DemandStatus.TESTING: DemandStatus.RESULTS_REVIEW,
    DemandStatus.RESULTS_REVIEW: DemandStatus.COMPLETE,
}

# Records the sourcing scheduler may still pick from
RANKABLE_STATUSES = (
    DemandStatus.COLLECTING_VOTES,
    DemandStatus.THRESHOLD_REACHED,
    DemandStatus.QUEUED,
)

LEADERBOARD_STATUSES = (
    DemandStatus.COLLECTING_VOTES,
    DemandStatus.THRESHOLD_REACHED,
)

# (field, descending); product_key breaks ties
BROWSE_ORDER: dict[BrowseSort, tuple[tuple[str, bool], ...]] = {
    BrowseSort.MOST_VOTED: (("weighted_score", True), ("product_key", False)),
    BrowseSort.NEWEST: (("created_at", True), ("product_key", False)),
    BrowseSort.ALMOST_FUNDED: (("funding_progress_pct", True), ("product_key", False)),
}

_VOTER_STATUS: dict[DemandStatus, InvestigationStatus] = {
    DemandStatus.COLLECTING_VOTES: InvestigationStatus.WAITING,
    DemandStatus.THRESHOLD_REACHED: InvestigationStatus.WAITING,
    DemandStatus.COMPLETE: InvestigationStatus.COMPLETE,
}

URGENCY_RANK: dict[UrgencyFlag, int] = {
    UrgencyFlag.NORMAL: 0,
    UrgencyFlag.TRENDING: 1,
    UrgencyFlag.URGENT: 2,
}

# Per-signal counter column on DemandRecord
SEARCH_COUNTER = "search_signals"
POSSESSION_COUNTER = "possession_signals"
VERIFIED_POSSESSION_COUNTER = "verified_possession_signals"

_SHORT_WINDOW_MULTIPLIER = 5
_HUNDRED = Decimal(100)


def parse_signal_type(raw: str) -> SignalType:
    """Resolve a wire signal type, rejecting anything outside the closed set."""
    try:
        return SignalType(raw)
    except ValueError as exc:
        raise InvalidSignalTypeError(raw) from exc


def is_verified_possession(signal_type: SignalType, is_verified_member: bool) -> bool:
    """A member scan, or any scan by a verified member, proves possession."""
    if signal_type == SignalType.MEMBER_SCAN:
        return True
    return signal_type == SignalType.SCAN and is_verified_member


def signal_weight(
    signal_type: SignalType, is_verified_member: bool, cfg: Settings = settings
) -> float:
    """Weight a signal adds to a record's weighted score."""
    if signal_type == SignalType.SEARCH:
        return cfg.weight_search
    if is_verified_possession(signal_type, is_verified_member):
        return cfg.weight_verified_possession
    return cfg.weight_possession


def signal_counter(signal_type: SignalType, is_verified_member: bool) -> str:
    """Name of the per-signal counter a signal increments."""
    if signal_type == SignalType.SEARCH:
        return SEARCH_COUNTER
    if is_verified_possession(signal_type, is_verified_member):
        return VERIFIED_POSSESSION_COUNTER
    return POSSESSION_COUNTER


def funding_progress(weighted_score: float, funding_threshold: float) -> int:
    """
    Percentage of the funding threshold reached, 0-100.

    Rounds half up (4.5 -> 5) rather than Python's banker's rounding. Scores
    are converted through ``str`` so binary float noise does not move a value
    across the .5 boundary.
    """
    if funding_threshold <= 0:
        raise ValueError("funding_threshold must be positive")

    ratio = _HUNDRED * Decimal(str(weighted_score)) / Decimal(str(funding_threshold))
    capped = min(_HUNDRED, max(Decimal(0), ratio))
    return int(capped.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def classify_urgency(
    scans_last_24h: int, scans_last_7d: int, cfg: Settings = settings
) -> UrgencyFlag:
    """Urgent is checked before trending; either window alone is enough."""
    if scans_last_24h >= cfg.urgent_scans_24h or scans_last_7d >= cfg.urgent_scans_7d:
        return UrgencyFlag.URGENT
    if scans_last_24h >= cfg.trending_scans_24h or scans_last_7d >= cfg.trending_scans_7d:
        return UrgencyFlag.TRENDING
    return UrgencyFlag.NORMAL


def compute_velocity(
    timestamps: Iterable[datetime],
    weighted_score: float,
    now: datetime,
    cfg: Settings = settings,
) -> VelocityMetrics:
    """
    Count signal timestamps in the short and long windows and classify urgency.

    velocity_score = scans_last_24h * 5 + scans_last_7d + weighted_score
    """
    short_cutoff = now - timedelta(hours=cfg.velocity_short_window_hours)
    long_cutoff = now - timedelta(days=cfg.velocity_long_window_days)

    scans_last_24h = 0
    scans_last_7d = 0
    for ts in timestamps:
        if ts > long_cutoff:
            scans_last_7d += 1
            if ts > short_cutoff:
                scans_last_24h += 1

    return VelocityMetrics(
        scans_last_24h=scans_last_24h,
        scans_last_7d=scans_last_7d,
        velocity_score=scans_last_24h * _SHORT_WINDOW_MULTIPLIER + scans_last_7d + weighted_score,
        urgency_flag=classify_urgency(scans_last_24h, scans_last_7d, cfg),
    )


def validate_transition(
    product_key: str, current: DemandStatus, requested: DemandStatus
) -> None:
    """Only the immediate successor of the current status is accepted."""
    if NEXT_STATUS.get(current) != requested:
        raise InvalidStatusTransitionError(product_key, current.value, requested.value)


def investigation_status(status: DemandStatus) -> InvestigationStatus:
    """Collapse the pipeline into waiting, testing and complete for voters."""
    return _VOTER_STATUS.get(status, InvestigationStatus.TESTING)
