"""
Tests for RecordStore.

Runs the store against a mocked AsyncSession and inspects the SQL it issues.
"""

from datetime import UTC, datetime

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from oneshot.db.models import DemandRecord, DemandSignalEvent, DeviceCredit, UnlockGrant
from oneshot.db.store import RecordStore, column_values
from oneshot.exceptions import DatabaseError


def compiled(db_session, call_index: int = 0) -> str:
    stmt = db_session.execute.await_args_list[call_index].args[0]
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestColumnValues:
    """Tests for column_values."""

    def test_only_set_columns(self):
        """Unset columns are omitted so database defaults apply."""
        grant = UnlockGrant(subject_key="device:d", product_id=1, grant_type="free_credit")

        values = column_values(grant)

        assert values == {"subject_key": "device:d", "product_id": 1, "grant_type": "free_credit"}


class TestReads:
    """Tests for read primitives."""

    @pytest.mark.asyncio
    async def test_get_by_key_column(self, db_session):
        """get filters on the model's key column."""
        device = DeviceCredit(device_id="d")
        db_session.execute.return_value.scalar_one_or_none.return_value = device
        store = RecordStore(db_session)

        result = await store.get(DeviceCredit, "d")

        assert result is device
        assert "device_credits.device_id = " in compiled(db_session)

    @pytest.mark.asyncio
    async def test_find_any_without_criteria(self, db_session):
        """Empty criteria never reach the database."""
        store = RecordStore(db_session)

        assert await store.find_any(UnlockGrant, {}, {}) is None
        db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_find_any_ors_criteria(self, db_session):
        """Criteria sets are OR-ed."""
        store = RecordStore(db_session)

        await store.find_any(
            UnlockGrant,
            {"product_id": 1, "device_id": "d"},
            {"product_id": 1, "account_id": "a"},
        )

        assert " OR " in compiled(db_session)

    @pytest.mark.asyncio
    async def test_find_all_orders_and_pages(self, db_session):
        """find_all applies order, offset and limit."""
        store = RecordStore(db_session)

        await store.find_all(
            DemandRecord,
            where_in={"status": ["collecting_votes"]},
            order_by=(("urgency_rank", True), ("product_key", False)),
            offset=10,
            limit=5,
        )

        sql = compiled(db_session)
        assert "ORDER BY demand_records.urgency_rank DESC, demand_records.product_key ASC" in sql
        assert "LIMIT" in sql
        assert "OFFSET" in sql

    @pytest.mark.asyncio
    async def test_find_all_keyset_cursor(self, db_session):
        """after resumes strictly past the cursor, honouring each field's direction."""
        store = RecordStore(db_session)

        await store.find_all(
            DemandRecord,
            order_by=(("urgency_rank", True), ("velocity_score", True), ("product_key", False)),
            after=(1, 50.0, "c"),
            limit=2,
        )

        sql = compiled(db_session)
        assert "demand_records.urgency_rank < " in sql
        assert "demand_records.velocity_score < " in sql
        assert "demand_records.product_key > " in sql
        assert sql.count(" OR ") == 2
        assert "OFFSET" not in sql

    @pytest.mark.asyncio
    async def test_find_all_cursor_length_mismatch(self, db_session):
        """A cursor must carry one value per ordering field."""
        store = RecordStore(db_session)

        with pytest.raises(ValueError, match="keyset cursor"):
            await store.find_all(
                DemandRecord, order_by=(("urgency_rank", True),), after=(1, 2.0)
            )
        db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_count(self, db_session):
        """count returns the scalar count."""
        db_session.execute.return_value.scalar_one.return_value = 4
        store = RecordStore(db_session)

        assert await store.count(DemandRecord, where={"status": "queued"}) == 4


class TestWrites:
    """Tests for write primitives."""

    @pytest.mark.asyncio
    async def test_create_if_absent_created(self, db_session):
        """A returned id means this call inserted the row."""
        db_session.execute.return_value.scalar_one_or_none.return_value = "new-id"
        store = RecordStore(db_session)

        created = await store.create_if_absent(
            DeviceCredit(device_id="d"), unique=("device_id",)
        )

        assert created is True
        assert "ON CONFLICT (device_id) DO NOTHING" in compiled(db_session)

    @pytest.mark.asyncio
    async def test_create_if_absent_conflict(self, db_session):
        """No returned id means the row already existed."""
        store = RecordStore(db_session)

        assert await store.create_if_absent(DeviceCredit(device_id="d"), ("device_id",)) is False

    @pytest.mark.asyncio
    async def test_increment_is_single_update(self, db_session):
        """increment issues UPDATE ... SET f = f + d RETURNING."""
        db_session.execute.return_value.first.return_value = (2, "collecting_votes")
        store = RecordStore(db_session)

        row = await store.increment(
            DemandRecord, "0001", {"possession_signals": 1}, returning=("status",)
        )

        assert row == {"possession_signals": 2, "status": "collecting_votes"}
        sql = compiled(db_session)
        assert "possession_signals=(demand_records.possession_signals +" in sql
        assert "RETURNING" in sql

    @pytest.mark.asyncio
    async def test_increment_missing_row(self, db_session):
        """No matching row returns None."""
        store = RecordStore(db_session)

        assert await store.increment(DeviceCredit, "ghost", {"credits_used": 1}) is None

    @pytest.mark.asyncio
    async def test_update_compare_and_set(self, db_session):
        """expected values become extra WHERE conditions; rowcount decides the result."""
        db_session.execute.return_value.rowcount = 1
        store = RecordStore(db_session)

        changed = await store.update(
            DemandRecord, "0001", {"status": "queued"}, expected={"status": "threshold_reached"}
        )

        assert changed is True
        assert "demand_records.status = " in compiled(db_session).split("WHERE", 1)[1]

    @pytest.mark.asyncio
    async def test_update_no_match(self, db_session):
        """Zero rowcount means the compare-and-set lost."""
        store = RecordStore(db_session)

        assert await store.update(DemandRecord, "0001", {"status": "queued"}) is False

    @pytest.mark.asyncio
    async def test_raise_to_uses_greatest(self, db_session):
        """raise_to never lowers the stored value."""
        store = RecordStore(db_session)

        await store.raise_to(DemandRecord, "0001", "funding_progress_pct", 40)

        assert "greatest(demand_records.funding_progress_pct" in compiled(db_session)

    @pytest.mark.asyncio
    async def test_prune_issues_two_deletes(self, db_session):
        """prune deletes expired rows, then overflow beyond keep_latest."""
        store = RecordStore(db_session)

        await store.prune(
            DemandSignalEvent,
            where={"product_key": "0001"},
            ts_field="recorded_at",
            cutoff=datetime(2026, 10, 12, tzinfo=UTC),
            keep_latest=500,
        )

        assert db_session.execute.await_count == 2
        assert "recorded_at <" in compiled(db_session, 0)
        assert "OFFSET" in compiled(db_session, 1)

    def test_add_stages_record(self, db_session):
        """add delegates to the session."""
        store = RecordStore(db_session)
        event = DemandSignalEvent(product_key="0001", signal_type="scan")

        store.add(event)

        db_session.add.assert_called_once_with(event)


class TestErrorTranslation:
    """Tests for SQLAlchemy error translation."""

    @pytest.mark.asyncio
    async def test_execute_failure(self, db_session):
        """SQLAlchemy errors surface as DatabaseError."""
        db_session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))
        store = RecordStore(db_session)

        with pytest.raises(DatabaseError, match="get failed"):
            await store.get(DeviceCredit, "d")

    @pytest.mark.asyncio
    async def test_commit_failure(self, db_session):
        """Commit failures are translated too."""
        db_session.commit.side_effect = IntegrityError("COMMIT", {}, Exception("violation"))
        store = RecordStore(db_session)

        with pytest.raises(DatabaseError) as exc_info:
            await store.commit()

        assert isinstance(exc_info.value.__cause__, IntegrityError)

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, db_session):
        """Non-SQLAlchemy errors are not wrapped."""
        db_session.execute.side_effect = RuntimeError("bug")
        store = RecordStore(db_session)

        with pytest.raises(RuntimeError):
            await store.count(DemandRecord)

    @pytest.mark.asyncio
    async def test_rollback(self, db_session):
        """rollback delegates to the session."""
        store = RecordStore(db_session)

        await store.rollback()

        db_session.rollback.assert_awaited_once()
