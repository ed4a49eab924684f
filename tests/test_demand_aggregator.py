"""
Tests for DemandAggregator.

Covers signal accumulation, derived fields, the threshold transition,
photo contributions, the status pipeline, and the ranking reads.
"""

import asyncio
from datetime import timedelta

import pytest

from oneshot.db.models import DemandRecord, DemandStatusChange, DemandSubscriber
from oneshot.exceptions import (
    ConcurrencyError,
    DemandRecordNotFoundError,
    InvalidStatusTransitionError,
)
from oneshot.models.api import (
    BrowseSort,
    DemandStatus,
    InvestigationStatus,
    SignalType,
    UrgencyFlag,
)
from oneshot.models.domain import SignalIntent
from oneshot.services.demand import DemandAggregator
from tests.conftest import BASE_TIME, make_settings


def signal(
    product_key: str = "0001",
    signal_type: SignalType = SignalType.SCAN,
    fingerprint: str | None = None,
    is_verified_member: bool = False,
    **kwargs,
) -> SignalIntent:
    return SignalIntent(
        product_key=product_key,
        signal_type=signal_type,
        fingerprint=fingerprint,
        is_verified_member=is_verified_member,
        **kwargs,
    )


def seed_record(store, product_key: str, **fields) -> DemandRecord:
    record = DemandRecord(product_key=product_key, **fields)
    store.seed(record)
    return record


async def advance_to(aggregator: DemandAggregator, product_key: str, target: DemandStatus) -> None:
    order = list(DemandStatus)
    current = DemandStatus((await aggregator.get_snapshot(product_key)).status)
    for status in order[order.index(current) + 1 : order.index(target) + 1]:
        await aggregator.transition_status(product_key, status)


class TestRecordSignal:
    """Tests for signal accumulation."""

    @pytest.mark.asyncio
    async def test_weighted_walkthrough(self, aggregator):
        """Five scans and one member scan: score 45, progress 5%."""
        for _ in range(5):
            await aggregator.record_signal(signal("0001"))
        result = await aggregator.record_signal(signal("0001", SignalType.MEMBER_SCAN))

        snapshot = result.snapshot
        assert snapshot.weighted_score == 45
        assert snapshot.funding_progress_pct == 5
        assert snapshot.possession_signals == 5
        assert snapshot.verified_possession_signals == 1
        assert snapshot.search_signals == 0
        assert snapshot.status == DemandStatus.COLLECTING_VOTES
        assert result.weight_applied == 20

    @pytest.mark.asyncio
    async def test_verified_member_scan_counts_as_verified(self, aggregator):
        """A plain scan from a verified member carries the verified weight."""
        result = await aggregator.record_signal(signal("0001", is_verified_member=True))

        assert result.weight_applied == 20
        assert result.snapshot.verified_possession_signals == 1

    @pytest.mark.asyncio
    async def test_search_signal(self, aggregator):
        """Search adds weight 1 to the search counter."""
        result = await aggregator.record_signal(signal("0001", SignalType.SEARCH))

        assert result.snapshot.search_signals == 1
        assert result.snapshot.weighted_score == 1

    @pytest.mark.asyncio
    async def test_first_signal_creates_record_with_history(self, aggregator, store):
        """The first signal creates the record and one history entry."""
        await aggregator.record_signal(signal("0001", product_name="Oat Milk", brand="Oatly"))

        history = await aggregator.get_status_history("0001")
        assert len(history) == 1
        assert history[0].from_status is None
        assert history[0].to_status == DemandStatus.COLLECTING_VOTES
        snapshot = await aggregator.get_snapshot("0001")
        assert snapshot.product_name == "Oat Milk"
        assert snapshot.brand == "Oatly"
        assert snapshot.funding_threshold == 1000

    @pytest.mark.asyncio
    async def test_product_info_filled_once(self, aggregator):
        """Missing product info is filled later; existing info is kept."""
        await aggregator.record_signal(signal("0001"))
        await aggregator.record_signal(signal("0001", product_name="Oat Milk"))
        await aggregator.record_signal(signal("0001", product_name="Renamed", brand="Oatly"))

        snapshot = await aggregator.get_snapshot("0001")
        assert snapshot.product_name == "Oat Milk"
        assert snapshot.brand == "Oatly"

    @pytest.mark.asyncio
    async def test_unique_voters_by_fingerprint(self, aggregator):
        """Signals are never deduplicated but voters are counted once."""
        first = await aggregator.record_signal(signal("0001", fingerprint="fp-a"))
        repeat = await aggregator.record_signal(signal("0001", fingerprint="fp-a"))
        second = await aggregator.record_signal(signal("0001", fingerprint="fp-b"))
        anonymous = await aggregator.record_signal(signal("0001"))

        assert (first.is_new_voter, first.voter_rank) == (True, 1)
        assert (repeat.is_new_voter, repeat.voter_rank) == (False, 1)
        assert (second.is_new_voter, second.voter_rank) == (True, 2)
        assert (anonymous.is_new_voter, anonymous.voter_rank) == (False, 2)
        assert anonymous.snapshot.possession_signals == 4
        assert anonymous.snapshot.unique_voters == 2

    @pytest.mark.asyncio
    async def test_subscriber_registered_once(self, aggregator, store):
        """Repeat subscriptions for the same product are collapsed."""
        await aggregator.record_signal(signal("0001", subscriber_id="user-1"))
        await aggregator.record_signal(signal("0001", subscriber_id="user-1"))
        await aggregator.record_signal(signal("0001", subscriber_id="user-2"))

        assert await aggregator.list_subscribers("0001") == ["user-1", "user-2"]
        assert len(store.rows(DemandSubscriber)) == 2

    def test_empty_product_key_rejected(self):
        """SignalIntent refuses a blank product key."""
        with pytest.raises(ValueError, match="product_key"):
            signal(" ")


class TestThresholdTransition:
    """Tests for collecting_votes -> threshold_reached."""

    @pytest.mark.asyncio
    async def test_crossing_in_one_call(self, store, clock):
        """One signal crossing the threshold adds exactly one history entry."""
        aggregator = DemandAggregator(
            store,
            clock=clock,
            cfg=make_settings(default_funding_threshold=100, weight_verified_possession=100),
        )
        await aggregator.record_signal(signal("0002", SignalType.SEARCH))
        before = await aggregator.get_status_history("0002")

        result = await aggregator.record_signal(signal("0002", SignalType.MEMBER_SCAN))

        history = await aggregator.get_status_history("0002")
        assert len(history) == len(before) + 1
        assert history[-1].from_status == DemandStatus.COLLECTING_VOTES
        assert history[-1].to_status == DemandStatus.THRESHOLD_REACHED
        assert result.snapshot.status == DemandStatus.THRESHOLD_REACHED
        assert result.snapshot.threshold_reached_at == clock()
        assert result.snapshot.funding_progress_pct == 100

    @pytest.mark.asyncio
    async def test_exact_threshold_crosses(self, store, clock):
        """Reaching the threshold exactly counts as crossing."""
        aggregator = DemandAggregator(
            store, clock=clock, cfg=make_settings(default_funding_threshold=10)
        )
        await aggregator.record_signal(signal("0002"))
        result = await aggregator.record_signal(signal("0002"))

        assert result.snapshot.weighted_score == 10
        assert result.snapshot.status == DemandStatus.THRESHOLD_REACHED

    @pytest.mark.asyncio
    async def test_concurrent_crossings_record_one_transition(self, store, clock):
        """Many concurrent signals past the threshold produce one transition."""
        aggregator = DemandAggregator(
            store, clock=clock, cfg=make_settings(default_funding_threshold=10)
        )

        await asyncio.gather(*(aggregator.record_signal(signal("0002")) for _ in range(12)))

        transitions = [
            row
            for row in store.rows(DemandStatusChange)
            if row.to_status == DemandStatus.THRESHOLD_REACHED.value
        ]
        assert len(transitions) == 1
        snapshot = await aggregator.get_snapshot("0002")
        assert snapshot.weighted_score == 60
        assert snapshot.possession_signals == 12
        assert snapshot.status == DemandStatus.THRESHOLD_REACHED
        assert len(store.rows(DemandRecord)) == 1

    @pytest.mark.asyncio
    async def test_signals_after_threshold_keep_status(self, store, clock):
        """Later signals keep accumulating without another transition."""
        aggregator = DemandAggregator(
            store, clock=clock, cfg=make_settings(default_funding_threshold=5)
        )
        await aggregator.record_signal(signal("0002"))
        clock.advance(minutes=5)
        result = await aggregator.record_signal(signal("0002"))

        assert result.snapshot.weighted_score == 10
        assert result.snapshot.status == DemandStatus.THRESHOLD_REACHED
        assert result.snapshot.threshold_reached_at < clock()
        assert len(await aggregator.get_status_history("0002")) == 2


class TestVelocity:
    """Tests for velocity and urgency derivation."""

    @pytest.mark.asyncio
    async def test_velocity_score_formula(self, aggregator):
        """velocity = 24h * 5 + 7d + weighted score."""
        for _ in range(3):
            result = await aggregator.record_signal(signal("0001", SignalType.SEARCH))

        snapshot = result.snapshot
        assert snapshot.scans_last_24h == 3
        assert snapshot.scans_last_7d == 3
        assert snapshot.velocity_score == 3 * 5 + 3 + 3
        assert snapshot.urgency_flag == UrgencyFlag.NORMAL

    @pytest.mark.asyncio
    async def test_windows_age_out(self, aggregator, clock):
        """Older timestamps leave the 24h window, then the 7d window."""
        await aggregator.record_signal(signal("0001", SignalType.SEARCH))
        clock.advance(days=2)
        result = await aggregator.record_signal(signal("0001", SignalType.SEARCH))
        assert (result.snapshot.scans_last_24h, result.snapshot.scans_last_7d) == (1, 2)

        clock.advance(days=8)
        result = await aggregator.record_signal(signal("0001", SignalType.SEARCH))
        assert (result.snapshot.scans_last_24h, result.snapshot.scans_last_7d) == (1, 1)

    @pytest.mark.asyncio
    async def test_urgency_classification(self, store, clock):
        """Short-window volume promotes a record to trending, then urgent."""
        aggregator = DemandAggregator(
            store, clock=clock, cfg=make_settings(trending_scans_24h=2, urgent_scans_24h=3)
        )
        await aggregator.record_signal(signal("0001"))
        trending = await aggregator.record_signal(signal("0001"))
        urgent = await aggregator.record_signal(signal("0001"))

        assert trending.snapshot.urgency_flag == UrgencyFlag.TRENDING
        assert urgent.snapshot.urgency_flag == UrgencyFlag.URGENT
        assert store.rows(DemandRecord)[0].urgency_rank == 2

    @pytest.mark.asyncio
    async def test_timestamps_capped(self, store, clock):
        """Only the newest max_scan_timestamps events are retained."""
        aggregator = DemandAggregator(store, clock=clock, cfg=make_settings(max_scan_timestamps=3))
        for _ in range(5):
            clock.advance(minutes=1)
            result = await aggregator.record_signal(signal("0001", SignalType.SEARCH))

        assert result.snapshot.scans_last_7d == 3
        assert result.snapshot.search_signals == 5

    @pytest.mark.asyncio
    async def test_derivation_failure_keeps_counters(self, aggregator, store):
        """A failure after accumulation is logged; counters stay committed."""
        store.fail_on.add("recent_timestamps")

        result = await aggregator.record_signal(signal("0001"))

        assert result.snapshot.weighted_score == 5
        assert result.snapshot.possession_signals == 1
        assert result.snapshot.scans_last_24h == 0
        assert store.rollbacks == 1


class TestContributions:
    """Tests for photo contributions."""

    @pytest.mark.asyncio
    async def test_original_voter_gets_no_bonus(self, aggregator):
        """Voters contributing photos add no bounty weight."""
        await aggregator.record_signal(signal("0001", fingerprint="fp-voter"))

        result = await aggregator.record_contribution("0001", "fp-voter", submission_id=7)

        assert result.accepted
        assert result.bonus_weight == 0
        assert not result.bounty_awarded
        assert result.snapshot.weighted_score == 5
        assert result.snapshot.total_contributors == 1

    @pytest.mark.asyncio
    async def test_new_contributor_earns_bounty(self, aggregator):
        """Non-voters add the bounty weight once."""
        await aggregator.record_signal(signal("0001", fingerprint="fp-voter"))

        result = await aggregator.record_contribution("0001", "fp-photo", submission_id=8)
        duplicate = await aggregator.record_contribution("0001", "fp-photo", submission_id=9)

        assert result.bounty_awarded
        assert result.bonus_weight == 10
        assert result.snapshot.weighted_score == 15
        assert not duplicate.accepted
        assert duplicate.snapshot.weighted_score == 15
        assert duplicate.snapshot.total_contributors == 1

    @pytest.mark.asyncio
    async def test_contribution_requires_record(self, aggregator):
        """Contributions need an existing demand record."""
        with pytest.raises(DemandRecordNotFoundError):
            await aggregator.record_contribution("9999", "fp", submission_id=1)

    @pytest.mark.asyncio
    async def test_bounty_can_cross_threshold(self, store, clock):
        """A bounty pushing the score over the threshold triggers the transition."""
        aggregator = DemandAggregator(
            store, clock=clock, cfg=make_settings(default_funding_threshold=15)
        )
        await aggregator.record_signal(signal("0001", fingerprint="fp-voter"))

        result = await aggregator.record_contribution("0001", "fp-photo", submission_id=3)

        assert result.snapshot.status == DemandStatus.THRESHOLD_REACHED
        assert result.snapshot.funding_progress_pct == 100


class TestStatusPipeline:
    """Tests for the forward-only status transitions."""

    @pytest.mark.asyncio
    async def test_full_pipeline(self, aggregator):
        """Walking every status writes one history entry per step, in order."""
        await aggregator.record_signal(signal("0001"))

        await advance_to(aggregator, "0001", DemandStatus.COMPLETE)

        history = await aggregator.get_status_history("0001")
        assert [h.to_status for h in history] == list(DemandStatus)
        assert history[1].from_status == DemandStatus.COLLECTING_VOTES
        snapshot = await aggregator.get_snapshot("0001")
        assert snapshot.status == DemandStatus.COMPLETE
        assert snapshot.threshold_reached_at is not None

    @pytest.mark.asyncio
    async def test_skipping_a_status_is_rejected(self, aggregator):
        """Only the immediate successor is accepted."""
        await aggregator.record_signal(signal("0001"))

        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            await aggregator.transition_status("0001", DemandStatus.SOURCING)

        assert exc_info.value.current == "collecting_votes"
        assert exc_info.value.requested == "sourcing"
        assert len(await aggregator.get_status_history("0001")) == 1

    @pytest.mark.asyncio
    async def test_backwards_is_rejected(self, aggregator):
        """Statuses never move backwards."""
        await aggregator.record_signal(signal("0001"))
        await advance_to(aggregator, "0001", DemandStatus.QUEUED)

        with pytest.raises(InvalidStatusTransitionError):
            await aggregator.transition_status("0001", DemandStatus.THRESHOLD_REACHED)

    @pytest.mark.asyncio
    async def test_complete_is_terminal(self, aggregator):
        """Nothing follows complete."""
        await aggregator.record_signal(signal("0001"))
        await advance_to(aggregator, "0001", DemandStatus.COMPLETE)

        with pytest.raises(InvalidStatusTransitionError):
            await aggregator.transition_status("0001", DemandStatus.COMPLETE)

    @pytest.mark.asyncio
    async def test_concurrent_transition_conflict(self, aggregator):
        """Two concurrent identical transitions: one wins, one conflicts."""
        await aggregator.record_signal(signal("0001"))

        results = await asyncio.gather(
            aggregator.transition_status("0001", DemandStatus.THRESHOLD_REACHED),
            aggregator.transition_status("0001", DemandStatus.THRESHOLD_REACHED),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, ConcurrencyError)) == 1
        assert len(await aggregator.get_status_history("0001")) == 2

    @pytest.mark.asyncio
    async def test_transition_notes_recorded(self, aggregator):
        """Operator notes land in the history entry."""
        await aggregator.record_signal(signal("0001"))

        change = await aggregator.transition_status(
            "0001", DemandStatus.THRESHOLD_REACHED, notes="Sponsor funded"
        )

        assert change.notes == "Sponsor funded"
        assert (await aggregator.get_status_history("0001"))[-1].notes == "Sponsor funded"

    @pytest.mark.asyncio
    async def test_unknown_record(self, aggregator):
        """Transitions and history need an existing record."""
        with pytest.raises(DemandRecordNotFoundError):
            await aggregator.transition_status("9999", DemandStatus.THRESHOLD_REACHED)
        with pytest.raises(DemandRecordNotFoundError):
            await aggregator.get_status_history("9999")

    @pytest.mark.asyncio
    async def test_mark_completion_notified_once(self, aggregator):
        """The notified flag can be claimed once, and only when complete."""
        await aggregator.record_signal(signal("0001"))
        assert await aggregator.mark_completion_notified("0001") is False

        await advance_to(aggregator, "0001", DemandStatus.COMPLETE)

        assert await aggregator.mark_completion_notified("0001") is True
        assert await aggregator.mark_completion_notified("0001") is False


class TestScoreCorrection:
    """Tests for administrative score correction."""

    @pytest.mark.asyncio
    async def test_correction_can_lower_score(self, aggregator):
        """Correction is the one path that lowers score and progress."""
        for _ in range(10):
            await aggregator.record_signal(signal("0001", SignalType.MEMBER_SCAN))

        snapshot = await aggregator.correct_score("0001", 10, reason="bot traffic")

        assert snapshot.weighted_score == 10
        assert snapshot.funding_progress_pct == 1

    @pytest.mark.asyncio
    async def test_correction_can_cross_threshold(self, aggregator):
        """Raising a score past the threshold applies the transition."""
        await aggregator.record_signal(signal("0001"))

        snapshot = await aggregator.correct_score("0001", 1500, reason="offline votes")

        assert snapshot.status == DemandStatus.THRESHOLD_REACHED
        assert snapshot.funding_progress_pct == 100

    @pytest.mark.asyncio
    async def test_correction_recomputes_velocity(self, aggregator):
        """Velocity follows the corrected score so the queue order is current."""
        for _ in range(10):
            await aggregator.record_signal(signal("0001", SignalType.MEMBER_SCAN))
        assert (await aggregator.get_snapshot("0001")).velocity_score == 10 * 5 + 10 + 200

        snapshot = await aggregator.correct_score("0001", 10, reason="bot traffic")

        assert snapshot.velocity_score == 10 * 5 + 10 + 10

    @pytest.mark.asyncio
    async def test_correction_unknown_record(self, aggregator):
        """Correcting a missing record raises DemandRecordNotFoundError."""
        with pytest.raises(DemandRecordNotFoundError):
            await aggregator.correct_score("9999", 1, reason="typo")


class TestFundingThreshold:
    """Tests for per-product funding thresholds."""

    @pytest.mark.asyncio
    async def test_two_thresholds_in_one_deployment(self, aggregator):
        """A 1000 and a 100 threshold record progress independently."""
        for _ in range(5):
            await aggregator.record_signal(signal("0001"))
        await aggregator.record_signal(signal("0001", SignalType.MEMBER_SCAN))

        await aggregator.record_signal(signal("0002", SignalType.MEMBER_SCAN))
        lowered = await aggregator.set_funding_threshold("0002", 100)
        assert lowered.funding_threshold == 100
        assert lowered.funding_progress_pct == 20
        before = await aggregator.get_status_history("0002")

        for _ in range(4):
            result = await aggregator.record_signal(signal("0002", SignalType.MEMBER_SCAN))

        first = await aggregator.get_snapshot("0001")
        assert (first.funding_threshold, first.weighted_score, first.funding_progress_pct) == (
            1000,
            45,
            5,
        )
        assert first.status == DemandStatus.COLLECTING_VOTES

        second = result.snapshot
        assert second.weighted_score == 100
        assert second.status == DemandStatus.THRESHOLD_REACHED
        assert second.threshold_reached_at is not None
        history = await aggregator.get_status_history("0002")
        assert len(history) == len(before) + 1
        assert history[-1].to_status == DemandStatus.THRESHOLD_REACHED

    @pytest.mark.asyncio
    async def test_raising_threshold_lowers_progress(self, aggregator):
        """Progress is recomputed against the new threshold, even downwards."""
        for _ in range(10):
            await aggregator.record_signal(signal("0001", SignalType.MEMBER_SCAN))

        snapshot = await aggregator.set_funding_threshold("0001", 4000)

        assert snapshot.funding_progress_pct == 5
        assert snapshot.status == DemandStatus.COLLECTING_VOTES

    @pytest.mark.asyncio
    async def test_lowering_below_score_crosses_once(self, aggregator, clock):
        """Dropping the threshold under the current score applies the transition."""
        for _ in range(10):
            await aggregator.record_signal(signal("0001"))

        snapshot = await aggregator.set_funding_threshold("0001", 50)
        again = await aggregator.set_funding_threshold("0001", 40)

        assert snapshot.status == DemandStatus.THRESHOLD_REACHED
        assert snapshot.funding_progress_pct == 100
        assert snapshot.threshold_reached_at == clock()
        assert again.status == DemandStatus.THRESHOLD_REACHED
        statuses = [c.to_status for c in await aggregator.get_status_history("0001")]
        assert statuses.count(DemandStatus.THRESHOLD_REACHED) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("threshold", [0, -5])
    async def test_non_positive_rejected(self, aggregator, threshold):
        """Thresholds must be greater than zero."""
        await aggregator.record_signal(signal("0001"))

        with pytest.raises(ValueError, match="greater than zero"):
            await aggregator.set_funding_threshold("0001", threshold)

    @pytest.mark.asyncio
    async def test_unknown_record(self, aggregator):
        with pytest.raises(DemandRecordNotFoundError):
            await aggregator.set_funding_threshold("9999", 100)

    @pytest.mark.asyncio
    async def test_concurrent_changes_one_wins(self, aggregator):
        """Two operators changing the same threshold: the second is refused."""
        await aggregator.record_signal(signal("0001"))

        results = await asyncio.gather(
            aggregator.set_funding_threshold("0001", 500),
            aggregator.set_funding_threshold("0001", 200),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, ConcurrencyError)]
        assert len(errors) == 1
        assert (await aggregator.get_snapshot("0001")).funding_threshold == 500


class TestRankQueue:
    """Tests for the sourcing queue."""

    @pytest.fixture
    def ranked_store(self, store):
        seed_record(store, "a-normal-fast", urgency_rank=0, velocity_score=900.0)
        seed_record(store, "b-urgent-slow", urgency_rank=2, velocity_score=10.0)
        seed_record(store, "c-trending", urgency_rank=1, velocity_score=50.0)
        seed_record(store, "d-urgent-fast", urgency_rank=2, velocity_score=80.0)
        seed_record(store, "e-urgent-fast", urgency_rank=2, velocity_score=80.0)
        seed_record(
            store, "f-queued", urgency_rank=0, velocity_score=1.0, status="queued"
        )
        seed_record(
            store, "g-sourcing", urgency_rank=2, velocity_score=999.0, status="sourcing"
        )
        return store

    @pytest.mark.asyncio
    async def test_urgency_then_velocity_then_key(self, ranked_store, aggregator):
        """Urgent first, then velocity descending, ties broken by product key."""
        keys = [key async for key in aggregator.rank_queue(10)]

        assert keys == [
            "d-urgent-fast",
            "e-urgent-fast",
            "b-urgent-slow",
            "c-trending",
            "a-normal-fast",
            "f-queued",
        ]

    @pytest.mark.asyncio
    async def test_paged_reads_match_single_read(self, ranked_store, clock):
        """Small pages yield the same sequence as one large page."""
        paged = DemandAggregator(ranked_store, clock=clock, cfg=make_settings(queue_page_size=2))
        whole = DemandAggregator(ranked_store, clock=clock, cfg=make_settings(queue_page_size=50))

        assert [k async for k in paged.rank_queue(5)] == [k async for k in whole.rank_queue(5)]

    @pytest.mark.asyncio
    async def test_limit_respected(self, ranked_store, aggregator):
        """No more than limit keys are yielded."""
        keys = [key async for key in aggregator.rank_queue(2)]

        assert keys == ["d-urgent-fast", "e-urgent-fast"]

    @pytest.mark.asyncio
    async def test_reordering_between_pages_never_repeats(self, ranked_store, clock):
        """A record that drops down the queue mid-pass is not yielded twice."""
        paged = DemandAggregator(ranked_store, clock=clock, cfg=make_settings(queue_page_size=2))
        records = {r.product_key: r for r in ranked_store.rows(DemandRecord)}
        keys = paged.rank_queue(10)

        first_page = [await anext(keys), await anext(keys)]
        records["d-urgent-fast"].urgency_rank = 0
        records["d-urgent-fast"].velocity_score = 1.0
        rest = [key async for key in keys]

        assert first_page == ["d-urgent-fast", "e-urgent-fast"]
        assert rest == ["b-urgent-slow", "c-trending", "a-normal-fast", "f-queued"]

    @pytest.mark.asyncio
    async def test_each_call_starts_fresh(self, ranked_store, aggregator):
        """Iterating twice gives the same result."""
        first = [key async for key in aggregator.rank_queue(3)]
        second = [key async for key in aggregator.rank_queue(3)]

        assert first == second


class TestLeaderboard:
    """Tests for the most-wanted leaderboard."""

    @pytest.mark.asyncio
    async def test_top_by_weighted_score(self, store, aggregator):
        """Entries are ordered by weighted score; pipeline records are excluded."""
        seed_record(store, "low", weighted_score=5.0)
        seed_record(store, "high", weighted_score=500.0, status="threshold_reached")
        seed_record(store, "mid", weighted_score=50.0)
        seed_record(store, "testing", weighted_score=5000.0, status="testing")

        page = await aggregator.leaderboard(2)

        assert [e.product_key for e in page.entries] == ["high", "mid"]
        assert page.total == 3

    @pytest.mark.asyncio
    async def test_limit_clamped(self, store, aggregator):
        """Limits below 1 return one entry; above the maximum are capped."""
        for i in range(60):
            seed_record(store, f"p{i:02d}", weighted_score=float(i))

        assert len((await aggregator.leaderboard(0)).entries) == 1
        assert len((await aggregator.leaderboard(1000)).entries) == 50


class TestBrowse:
    """Tests for the public vote queue."""

    @pytest.fixture
    def browse_store(self, store):
        seed_record(
            store, "old-popular", weighted_score=400.0, funding_progress_pct=40,
            created_at=BASE_TIME - timedelta(days=3),
        )
        seed_record(
            store, "new-quiet", weighted_score=10.0, funding_progress_pct=1,
            created_at=BASE_TIME,
        )
        seed_record(
            store, "nearly-there", weighted_score=90.0, funding_threshold=100.0,
            funding_progress_pct=90, created_at=BASE_TIME - timedelta(days=1),
        )
        seed_record(store, "in-testing", weighted_score=9000.0, status="testing")
        return store

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("sort", "expected"),
        [
            (BrowseSort.MOST_VOTED, ["old-popular", "nearly-there", "new-quiet"]),
            (BrowseSort.NEWEST, ["new-quiet", "nearly-there", "old-popular"]),
            (BrowseSort.ALMOST_FUNDED, ["nearly-there", "old-popular", "new-quiet"]),
        ],
    )
    async def test_sort_orders(self, browse_store, aggregator, sort, expected):
        """Each sort orders records still collecting votes; pipeline records are excluded."""
        page = await aggregator.browse(sort)

        assert [e.product_key for e in page.entries] == expected
        assert page.total == 3

    @pytest.mark.asyncio
    async def test_paging(self, browse_store, aggregator):
        """Pages are numbered from 1 and report the page count."""
        first = await aggregator.browse(BrowseSort.MOST_VOTED, page=1, limit=2)
        second = await aggregator.browse(BrowseSort.MOST_VOTED, page=2, limit=2)

        assert [e.product_key for e in first.entries] == ["old-popular", "nearly-there"]
        assert [e.product_key for e in second.entries] == ["new-quiet"]
        assert (second.page, second.total_pages) == (2, 2)

    @pytest.mark.asyncio
    async def test_limits_clamped(self, store, aggregator):
        """Page below 1 becomes 1; limit is capped at the maximum."""
        for i in range(60):
            seed_record(store, f"p{i:02d}", weighted_score=float(i))

        page = await aggregator.browse(page=0, limit=1000)

        assert page.page == 1
        assert len(page.entries) == 50
        assert page.total_pages == 2

    @pytest.mark.asyncio
    async def test_empty(self, aggregator):
        page = await aggregator.browse()

        assert (page.entries, page.total, page.total_pages) == ((), 0, 0)


class TestMyInvestigations:
    """Tests for the per-voter view of backed products."""

    @pytest.mark.asyncio
    async def test_voter_view(self, aggregator, clock):
        """Scout number, photos, trending, queue position and results ready."""
        await aggregator.record_signal(signal("0001", fingerprint="fp-a"))
        clock.advance(minutes=1)
        await aggregator.record_signal(signal("0002", fingerprint="fp-b"))
        await aggregator.record_signal(signal("0002", fingerprint="fp-a"))
        for _ in range(20):
            await aggregator.record_signal(signal("0002"))
        await aggregator.record_contribution("0002", fingerprint="fp-a", submission_id=7)
        await aggregator.record_signal(signal("0003", fingerprint="fp-c"))
        await advance_to(aggregator, "0001", DemandStatus.COMPLETE)

        page = await aggregator.my_investigations("fp-a")

        assert [e.snapshot.product_key for e in page.entries] == ["0002", "0001"]
        trending, done = page.entries

        assert trending.status == InvestigationStatus.WAITING
        assert trending.scout_number == 2
        assert trending.is_first_scout is False
        assert trending.did_contribute_photos is True
        assert trending.is_trending is True
        assert trending.queue_position == 1
        assert trending.snapshot.unique_voters == 2

        assert done.status == InvestigationStatus.COMPLETE
        assert done.scout_number == 1
        assert done.is_first_scout is True
        assert done.did_contribute_photos is False
        assert done.is_trending is False
        assert done.queue_position is None

        assert page.results_ready == 1

    @pytest.mark.asyncio
    async def test_pipeline_statuses_collapse_to_testing(self, aggregator):
        """Queued through results review all read as testing."""
        await aggregator.record_signal(signal("0001", fingerprint="fp-a"))
        await advance_to(aggregator, "0001", DemandStatus.SOURCING)

        page = await aggregator.my_investigations("fp-a")

        assert page.entries[0].status == InvestigationStatus.TESTING
        assert page.entries[0].queue_position is None
        assert page.results_ready == 0

    @pytest.mark.asyncio
    async def test_unknown_fingerprint(self, aggregator):
        """A fingerprint with no votes has no investigations."""
        await aggregator.record_signal(signal("0001", fingerprint="fp-a"))

        page = await aggregator.my_investigations("fp-nobody")

        assert page.entries == ()
        assert page.results_ready == 0
