"""
Demand Aggregator - Weighted interest signals for untested products.

NO DICTIONARIES - All operations use strongly typed domain models.

Signals accumulate first: counters and weighted score are atomically
incremented and committed before any derived field is touched. Derivation
(funding progress, velocity, urgency) runs afterwards and its failures are
logged and counted, never surfaced to the caller.
"""

from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta
from typing import Any

from structlog import get_logger

from oneshot.config import Settings, settings
from oneshot.db.models import (
    DemandContributor,
    DemandRecord,
    DemandSignalEvent,
    DemandStatusChange,
    DemandSubscriber,
    DemandVoter,
    utc_now,
)
from oneshot.db.store import RecordStore
from oneshot.exceptions import ConcurrencyError, DemandRecordNotFoundError, OneShotError
from oneshot.models.api import BrowseSort, DemandStatus, UrgencyFlag
from oneshot.models.domain import (
    BrowsePage,
    ContributionResult,
    DemandSnapshot,
    Investigation,
    InvestigationsPage,
    LeaderboardPage,
    SignalIntent,
    SignalResult,
    StatusChange,
)
from oneshot.observability.metrics import metrics
from oneshot.observability.tracing import trace_operation
from oneshot.services.scoring import (
    BROWSE_ORDER,
    LEADERBOARD_STATUSES,
    RANKABLE_STATUSES,
    URGENCY_RANK,
    compute_velocity,
    funding_progress,
    investigation_status,
    signal_counter,
    signal_weight,
    validate_transition,
)

logger = get_logger(__name__)

_QUEUE_ORDER = (("urgency_rank", True), ("velocity_score", True), ("product_key", False))
_LEADERBOARD_ORDER = (("weighted_score", True), ("product_key", False))
_HISTORY_ORDER = (("changed_at", False), ("id", False))


def _snapshot(record: DemandRecord) -> DemandSnapshot:
    return DemandSnapshot(
        product_key=record.product_key,
        product_name=record.product_name,
        brand=record.brand,
        weighted_score=record.weighted_score,
        search_signals=record.search_signals,
        possession_signals=record.possession_signals,
        verified_possession_signals=record.verified_possession_signals,
        unique_voters=record.unique_voters,
        total_contributors=record.total_contributors,
        funding_threshold=record.funding_threshold,
        funding_progress_pct=record.funding_progress_pct,
        status=DemandStatus(record.status),
        threshold_reached_at=record.threshold_reached_at,
        scans_last_24h=record.scans_last_24h,
        scans_last_7d=record.scans_last_7d,
        velocity_score=record.velocity_score,
        urgency_flag=UrgencyFlag(record.urgency_flag),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _status_change(row: DemandStatusChange) -> StatusChange:
    return StatusChange(
        product_key=row.product_key,
        from_status=DemandStatus(row.from_status) if row.from_status else None,
        to_status=DemandStatus(row.to_status),
        changed_at=row.changed_at,
        notes=row.notes,
    )


class DemandAggregator:
    """Records weighted demand and drives the testing status pipeline."""

    def __init__(
        self,
        store: RecordStore,
        clock: Callable[[], datetime] = utc_now,
        cfg: Settings = settings,
    ) -> None:
        """Initialize with a record store and an injectable UTC clock."""
        self.store = store
        self.clock = clock
        self.cfg = cfg

    # ========================================================================
    # Signals
    # ========================================================================

    async def record_signal(self, intent: SignalIntent) -> SignalResult:
        """
        Record one demand signal. Not deduplicated.

        The threshold transition is applied inside the accumulating
        transaction with a compare-and-set on status, so concurrent crossings
        produce exactly one history entry.
        """
        key = intent.product_key
        weight = signal_weight(intent.signal_type, intent.is_verified_member, self.cfg)
        counter = signal_counter(intent.signal_type, intent.is_verified_member)
        now = self.clock()

        with trace_operation(
            "record_signal", product_key=key, signal_type=intent.signal_type.value
        ) as span:
            await self._ensure_record(key, intent.product_name, intent.brand, now)

            totals = await self.store.increment(
                DemandRecord,
                key,
                {counter: 1, "weighted_score": weight},
                returning=("unique_voters", "funding_threshold", "status"),
            )
            if totals is None:
                raise ConcurrencyError(f"demand_record:{key}")

            self.store.add(
                DemandSignalEvent(
                    product_key=key, signal_type=intent.signal_type.value, recorded_at=now
                )
            )
            await self.store.prune(
                DemandSignalEvent,
                where={"product_key": key},
                ts_field="recorded_at",
                cutoff=now - timedelta(days=self.cfg.velocity_long_window_days),
                keep_latest=self.cfg.max_scan_timestamps,
            )

            is_new_voter = False
            voter_rank = int(totals["unique_voters"])
            if intent.fingerprint:
                # The increment above holds the record's row lock until commit
                is_new_voter = await self.store.create_if_absent(
                    DemandVoter(
                        product_key=key,
                        fingerprint=intent.fingerprint,
                        voter_number=voter_rank + 1,
                        first_voted_at=now,
                    ),
                    unique=("product_key", "fingerprint"),
                )
                if is_new_voter:
                    voters = await self.store.increment(DemandRecord, key, {"unique_voters": 1})
                    if voters is not None:
                        voter_rank = int(voters["unique_voters"])

            if intent.subscriber_id:
                await self.store.create_if_absent(
                    DemandSubscriber(
                        product_key=key, subscriber_id=intent.subscriber_id, created_at=now
                    ),
                    unique=("product_key", "subscriber_id"),
                )

            await self._check_threshold(key, totals, now)
            await self.store.commit()
            metrics.record_signal(intent.signal_type.value)

            await self._derive(
                key, float(totals["weighted_score"]), float(totals["funding_threshold"]), now
            )
            snapshot = await self.get_snapshot(key)
            span.set_attribute("weighted_score", snapshot.weighted_score)

        logger.info(
            "signal_recorded",
            product_key=key,
            signal_type=intent.signal_type.value,
            weight=weight,
            weighted_score=snapshot.weighted_score,
            is_new_voter=is_new_voter,
        )
        return SignalResult(
            snapshot=snapshot,
            is_new_voter=is_new_voter,
            voter_rank=voter_rank,
            weight_applied=weight,
        )

    async def record_contribution(
        self,
        product_key: str,
        fingerprint: str,
        submission_id: int,
        user_id: str | None = None,
    ) -> ContributionResult:
        """
        Record a photo contribution for an existing demand record.

        One contribution per fingerprint. The bounty weight is added only when
        the contributor is not one of the product's voters.
        """
        record = await self.store.get(DemandRecord, product_key)
        if record is None:
            raise DemandRecordNotFoundError(product_key)

        now = self.clock()
        is_original_voter = (
            await self.store.find_any(
                DemandVoter, {"product_key": product_key, "fingerprint": fingerprint}
            )
            is not None
        )
        bonus = 0.0 if is_original_voter else self.cfg.weight_photo_bounty

        accepted = await self.store.create_if_absent(
            DemandContributor(
                product_key=product_key,
                fingerprint=fingerprint,
                user_id=user_id,
                submission_id=submission_id,
                bonus_weight=bonus,
                contributed_at=now,
            ),
            unique=("product_key", "fingerprint"),
        )
        if not accepted:
            logger.info(
                "contribution_duplicate", product_key=product_key, fingerprint=fingerprint
            )
            return ContributionResult(
                accepted=False, bonus_weight=0.0, snapshot=_snapshot(record)
            )

        deltas: dict[str, int | float] = {"total_contributors": 1}
        if bonus:
            deltas["weighted_score"] = bonus
        totals = await self.store.increment(
            DemandRecord,
            product_key,
            deltas,
            returning=("weighted_score", "funding_threshold", "status"),
        )
        if totals is None:
            raise ConcurrencyError(f"demand_record:{product_key}")

        await self._check_threshold(product_key, totals, now)
        await self.store.commit()
        metrics.record_contribution(bonus > 0)

        await self._derive(
            product_key, float(totals["weighted_score"]), float(totals["funding_threshold"]), now
        )
        logger.info(
            "contribution_recorded",
            product_key=product_key,
            submission_id=submission_id,
            bonus_weight=bonus,
        )
        return ContributionResult(
            accepted=True, bonus_weight=bonus, snapshot=await self.get_snapshot(product_key)
        )

    # ========================================================================
    # Status Pipeline
    # ========================================================================

    async def transition_status(
        self, product_key: str, target: DemandStatus, notes: str | None = None
    ) -> StatusChange:
        """
        Move a record to the immediate successor of its current status.

        Raises:
            DemandRecordNotFoundError: No record for the product key
            InvalidStatusTransitionError: Target is not the next status
            ConcurrencyError: Status changed underneath this call
        """
        record = await self.store.get(DemandRecord, product_key)
        if record is None:
            raise DemandRecordNotFoundError(product_key)

        current = DemandStatus(record.status)
        validate_transition(product_key, current, target)

        now = self.clock()
        values: dict[str, Any] = {"status": target.value}
        if target == DemandStatus.THRESHOLD_REACHED and record.threshold_reached_at is None:
            values["threshold_reached_at"] = now

        if not await self.store.update(
            DemandRecord, product_key, values, expected={"status": current.value}
        ):
            raise ConcurrencyError(f"demand_record:{product_key}")

        self.store.add(
            DemandStatusChange(
                product_key=product_key,
                from_status=current.value,
                to_status=target.value,
                changed_at=now,
                notes=notes,
            )
        )
        await self.store.commit()

        metrics.record_status_transition(target.value)
        logger.info(
            "demand_status_changed",
            product_key=product_key,
            from_status=current.value,
            to_status=target.value,
        )
        return StatusChange(
            product_key=product_key,
            from_status=current,
            to_status=target,
            changed_at=now,
            notes=notes,
        )

    async def correct_score(
        self, product_key: str, weighted_score: float, reason: str
    ) -> DemandSnapshot:
        """Administrative correction. The only path that may lower a score."""
        record = await self.store.get(DemandRecord, product_key)
        if record is None:
            raise DemandRecordNotFoundError(product_key)

        previous = record.weighted_score
        now = self.clock()
        await self.store.update(
            DemandRecord,
            product_key,
            {
                "weighted_score": weighted_score,
                "funding_progress_pct": funding_progress(weighted_score, record.funding_threshold),
            },
        )
        await self._check_threshold(
            product_key,
            {
                "weighted_score": weighted_score,
                "funding_threshold": record.funding_threshold,
                "status": record.status,
            },
            now,
        )
        await self.store.commit()
        await self._derive(product_key, weighted_score, record.funding_threshold, now)

        logger.warning(
            "demand_score_corrected",
            product_key=product_key,
            previous_score=previous,
            weighted_score=weighted_score,
            reason=reason,
        )
        return await self.get_snapshot(product_key)

    async def set_funding_threshold(self, product_key: str, threshold: float) -> DemandSnapshot:
        """
        Change a record's funding threshold and recompute its progress.

        Progress is overwritten, not raised, so a higher threshold lowers it.
        Lowering the threshold to or below the current score applies the
        collecting_votes -> threshold_reached transition.

        Raises:
            ValueError: Threshold is not positive
            DemandRecordNotFoundError: No record for the product key
            ConcurrencyError: Threshold changed underneath this call
        """
        if threshold <= 0:
            raise ValueError("funding_threshold must be greater than zero")

        record = await self.store.get(DemandRecord, product_key)
        if record is None:
            raise DemandRecordNotFoundError(product_key)

        previous = record.funding_threshold
        weighted_score = record.weighted_score
        now = self.clock()

        if not await self.store.update(
            DemandRecord,
            product_key,
            {
                "funding_threshold": threshold,
                "funding_progress_pct": funding_progress(weighted_score, threshold),
            },
            expected={"funding_threshold": previous},
        ):
            raise ConcurrencyError(f"demand_record:{product_key}")

        await self._check_threshold(
            product_key,
            {
                "weighted_score": weighted_score,
                "funding_threshold": threshold,
                "status": record.status,
            },
            now,
        )
        await self.store.commit()

        logger.info(
            "demand_threshold_changed",
            product_key=product_key,
            previous_threshold=previous,
            funding_threshold=threshold,
        )
        return await self.get_snapshot(product_key)

    async def mark_completion_notified(self, product_key: str) -> bool:
        """Flag a completed record as notified. False if already flagged."""
        marked = await self.store.update(
            DemandRecord,
            product_key,
            {"completion_notified": True},
            expected={"status": DemandStatus.COMPLETE.value, "completion_notified": False},
        )
        await self.store.commit()
        return marked

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_snapshot(self, product_key: str) -> DemandSnapshot:
        record = await self.store.get(DemandRecord, product_key)
        if record is None:
            raise DemandRecordNotFoundError(product_key)
        return _snapshot(record)

    async def get_status_history(self, product_key: str) -> list[StatusChange]:
        """Status history in chronological order, oldest first."""
        if await self.store.get(DemandRecord, product_key) is None:
            raise DemandRecordNotFoundError(product_key)

        rows = await self.store.find_all(
            DemandStatusChange, where={"product_key": product_key}, order_by=_HISTORY_ORDER
        )
        return [_status_change(row) for row in rows]

    async def list_subscribers(self, product_key: str) -> list[str]:
        rows = await self.store.find_all(
            DemandSubscriber,
            where={"product_key": product_key},
            order_by=(("created_at", False),),
        )
        return [row.subscriber_id for row in rows]

    async def rank_queue(self, limit: int) -> AsyncIterator[str]:
        """
        Yield product keys for the sourcing scheduler.

        Ordered by urgency (urgent first), then velocity score descending, then
        product key. Reads the store one page at a time, resuming each page
        after the last ranking key read, so a key is yielded at most once per
        pass even while signals reorder the queue. Each call starts a fresh pass.
        """
        statuses = [s.value for s in RANKABLE_STATUSES]
        remaining = limit
        cursor: tuple[Any, ...] | None = None
        seen: set[str] = set()

        while remaining > 0:
            page_size = min(self.cfg.queue_page_size, remaining)
            page = await self.store.find_all(
                DemandRecord,
                where_in={"status": statuses},
                order_by=_QUEUE_ORDER,
                after=cursor,
                limit=page_size,
            )
            for record in page:
                if record.product_key in seen:
                    continue
                seen.add(record.product_key)
                remaining -= 1
                yield record.product_key

            if len(page) < page_size:
                return
            last = page[-1]
            cursor = (last.urgency_rank, last.velocity_score, last.product_key)

    async def leaderboard(self, limit: int = 10) -> LeaderboardPage:
        """Most wanted products still collecting votes or awaiting the queue."""
        limit = max(1, min(limit, self.cfg.leaderboard_max_limit))
        statuses = [s.value for s in LEADERBOARD_STATUSES]

        records = await self.store.find_all(
            DemandRecord,
            where_in={"status": statuses},
            order_by=_LEADERBOARD_ORDER,
            limit=limit,
        )
        total = await self.store.count(DemandRecord, where_in={"status": statuses})
        return LeaderboardPage(entries=tuple(_snapshot(r) for r in records), total=total)

    async def browse(
        self, sort: BrowseSort = BrowseSort.MOST_VOTED, page: int = 1, limit: int = 20
    ) -> BrowsePage:
        """Page through products still collecting votes or awaiting the queue."""
        page = max(1, page)
        limit = max(1, min(limit, self.cfg.browse_max_limit))
        statuses = [s.value for s in LEADERBOARD_STATUSES]

        records = await self.store.find_all(
            DemandRecord,
            where_in={"status": statuses},
            order_by=BROWSE_ORDER[sort],
            offset=(page - 1) * limit,
            limit=limit,
        )
        total = await self.store.count(DemandRecord, where_in={"status": statuses})
        return BrowsePage(
            entries=tuple(_snapshot(r) for r in records),
            total=total,
            page=page,
            total_pages=-(-total // limit),
        )

    async def my_investigations(self, fingerprint: str) -> InvestigationsPage:
        """
        Products one voter fingerprint has backed, most recently active first.

        Queue position is the record's place in the sourcing queue, or None
        once it has left it. Scout number is the order in which the voter
        joined the product.
        """
        votes = await self.store.find_all(
            DemandVoter,
            where={"fingerprint": fingerprint},
            order_by=(("first_voted_at", True),),
            limit=self.cfg.investigations_max,
        )
        if not votes:
            return InvestigationsPage(entries=())

        keys = [vote.product_key for vote in votes]
        scout_numbers = {vote.product_key: vote.voter_number for vote in votes}
        records = await self.store.find_all(
            DemandRecord,
            where_in={"product_key": keys},
            order_by=(("updated_at", True), ("product_key", False)),
        )
        contributions = await self.store.find_all(
            DemandContributor,
            where={"fingerprint": fingerprint},
            where_in={"product_key": keys},
        )
        contributed = {row.product_key for row in contributions}

        positions: dict[str, int] = {}
        async for product_key in self.rank_queue(self.cfg.investigation_queue_depth):
            positions[product_key] = len(positions) + 1

        entries = tuple(
            Investigation(
                snapshot=_snapshot(record),
                status=investigation_status(DemandStatus(record.status)),
                queue_position=positions.get(record.product_key),
                scout_number=scout_numbers[record.product_key],
                did_contribute_photos=record.product_key in contributed,
            )
            for record in records
        )
        return InvestigationsPage(entries=entries)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _ensure_record(
        self, product_key: str, product_name: str | None, brand: str | None, now: datetime
    ) -> None:
        """Create the record with its initial history entry, or fill missing product info."""
        created = await self.store.create_if_absent(
            DemandRecord(
                product_key=product_key,
                product_name=product_name,
                brand=brand,
                funding_threshold=self.cfg.default_funding_threshold,
                status=DemandStatus.COLLECTING_VOTES.value,
                created_at=now,
                updated_at=now,
            ),
            unique=("product_key",),
        )
        if created:
            self.store.add(
                DemandStatusChange(
                    product_key=product_key,
                    from_status=None,
                    to_status=DemandStatus.COLLECTING_VOTES.value,
                    changed_at=now,
                    notes="Demand record created",
                )
            )
            logger.info("demand_record_created", product_key=product_key)
            return

        if product_name:
            await self.store.update(
                DemandRecord, product_key, {"product_name": product_name}, {"product_name": None}
            )
        if brand:
            await self.store.update(DemandRecord, product_key, {"brand": brand}, {"brand": None})

    async def _check_threshold(
        self, product_key: str, totals: Any, now: datetime
    ) -> bool:
        """Apply collecting_votes -> threshold_reached at most once."""
        if totals["status"] != DemandStatus.COLLECTING_VOTES.value:
            return False
        if float(totals["weighted_score"]) < float(totals["funding_threshold"]):
            return False

        crossed = await self.store.update(
            DemandRecord,
            product_key,
            {"status": DemandStatus.THRESHOLD_REACHED.value, "threshold_reached_at": now},
            expected={"status": DemandStatus.COLLECTING_VOTES.value},
        )
        if crossed:
            self.store.add(
                DemandStatusChange(
                    product_key=product_key,
                    from_status=DemandStatus.COLLECTING_VOTES.value,
                    to_status=DemandStatus.THRESHOLD_REACHED.value,
                    changed_at=now,
                    notes="Funding threshold reached",
                )
            )
            metrics.record_status_transition(DemandStatus.THRESHOLD_REACHED.value)
            logger.info(
                "demand_threshold_reached",
                product_key=product_key,
                weighted_score=float(totals["weighted_score"]),
            )
        return crossed

    async def _derive(
        self, product_key: str, weighted_score: float, funding_threshold: float, now: datetime
    ) -> None:
        """Recompute derived fields. Raw counters are already committed."""
        try:
            await self.store.raise_to(
                DemandRecord,
                product_key,
                "funding_progress_pct",
                funding_progress(weighted_score, funding_threshold),
            )

            timestamps = await self.store.recent_timestamps(
                DemandSignalEvent,
                where={"product_key": product_key},
                ts_field="recorded_at",
                since=now - timedelta(days=self.cfg.velocity_long_window_days),
                limit=self.cfg.max_scan_timestamps,
            )
            velocity = compute_velocity(timestamps, weighted_score, now, self.cfg)
            await self.store.update(
                DemandRecord,
                product_key,
                {
                    "scans_last_24h": velocity.scans_last_24h,
                    "scans_last_7d": velocity.scans_last_7d,
                    "velocity_score": velocity.velocity_score,
                    "urgency_flag": velocity.urgency_flag.value,
                    "urgency_rank": URGENCY_RANK[velocity.urgency_flag],
                },
            )
            await self.store.commit()
        except (OneShotError, ValueError, ArithmeticError) as exc:
            await self.store.rollback()
            metrics.record_derivation_failure()
            logger.error(
                "demand_derivation_failed",
                product_key=product_key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
