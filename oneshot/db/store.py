"""
Record Store - Keyed persistence primitives shared by the services.

Every operation addresses rows through the model's ``__key__`` column. The
increment primitive is a single ``UPDATE ... SET f = f + d ... RETURNING``
statement, so concurrent callers on the same key are linearized by the
database row lock rather than by application-level read-then-write.

All SQLAlchemy failures are surfaced as DatabaseError.
"""

import functools
from collections.abc import Awaitable, Callable, Collection, Mapping, Sequence
from datetime import datetime
from typing import Any, ParamSpec, TypeVar

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from oneshot.db.models import Base
from oneshot.exceptions import DatabaseError

logger = get_logger(__name__)

M = TypeVar("M", bound=Base)
P = ParamSpec("P")
R = TypeVar("R")

# (field name, descending)
OrderBy = Sequence[tuple[str, bool]]


def _translate_errors(func_: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
    """Convert SQLAlchemy failures into DatabaseError."""

    @functools.wraps(func_)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await func_(*args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("record_store_error", operation=func_.__name__, error=str(exc))
            raise DatabaseError(f"{func_.__name__} failed: {exc}") from exc

    return wrapper


def column_values(record: Base) -> dict[str, Any]:
    """Explicitly set column values of an unsaved ORM instance."""
    values: dict[str, Any] = {}
    for attr in record.__mapper__.column_attrs:
        value = getattr(record, attr.key)
        if value is not None:
            values[attr.key] = value
    return values


class RecordStore:
    """Keyed record store over an async SQLAlchemy session."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize record store with database session."""
        self.session = session

    @staticmethod
    def _column(model: type[Base], field: str) -> Any:
        return getattr(model, field)

    def _key(self, model: type[Base]) -> Any:
        return self._column(model, model.__key__)

    def _equals(self, model: type[Base], where: Mapping[str, Any] | None) -> list[Any]:
        return [self._column(model, f) == v for f, v in (where or {}).items()]

    def _after(self, model: type[Base], order_by: OrderBy, cursor: Sequence[Any]) -> Any:
        """Rows sorting strictly after ``cursor`` under ``order_by``."""
        if len(cursor) != len(order_by):
            raise ValueError("keyset cursor must have one value per order_by field")

        branches = []
        for index, (field, descending) in enumerate(order_by):
            column = self._column(model, field)
            ties = [
                self._column(model, f) == v
                for (f, _), v in zip(order_by[:index], cursor[:index], strict=True)
            ]
            beyond = column < cursor[index] if descending else column > cursor[index]
            branches.append(and_(*ties, beyond))
        return or_(*branches)

    # ========================================================================
    # Reads
    # ========================================================================

    @_translate_errors
    async def get(self, model: type[M], key: Any) -> M | None:
        """Get a record by its key column."""
        stmt = select(model).where(self._key(model) == key).execution_options(
            populate_existing=True
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @_translate_errors
    async def find_any(self, model: type[M], *criteria: Mapping[str, Any]) -> M | None:
        """
        Find the first record matching any of the criteria sets.

        Each criteria set is an AND of equalities; sets are OR-ed together.
        Empty sets are ignored.
        """
        clauses = [and_(*self._equals(model, c)) for c in criteria if c]
        if not clauses:
            return None
        stmt = select(model).where(or_(*clauses)).limit(1)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    @_translate_errors
    async def find_all(
        self,
        model: type[M],
        *,
        where: Mapping[str, Any] | None = None,
        where_in: Mapping[str, Collection[Any]] | None = None,
        order_by: OrderBy = (),
        after: Sequence[Any] | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[M]:
        """
        List records filtered by equality and membership.

        ``after`` is a keyset cursor: the ``order_by`` values of the last row
        already read. Only rows strictly after it in that ordering are returned.
        """
        stmt = select(model).where(*self._equals(model, where))
        for field, values in (where_in or {}).items():
            stmt = stmt.where(self._column(model, field).in_(list(values)))
        if after is not None:
            stmt = stmt.where(self._after(model, order_by, after))
        for field, descending in order_by:
            column = self._column(model, field)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    @_translate_errors
    async def count(
        self,
        model: type[Base],
        *,
        where: Mapping[str, Any] | None = None,
        where_in: Mapping[str, Collection[Any]] | None = None,
    ) -> int:
        """Count records filtered by equality and membership."""
        stmt = select(func.count()).select_from(model).where(*self._equals(model, where))
        for field, values in (where_in or {}).items():
            stmt = stmt.where(self._column(model, field).in_(list(values)))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    @_translate_errors
    async def recent_timestamps(
        self,
        model: type[Base],
        *,
        where: Mapping[str, Any],
        ts_field: str,
        since: datetime,
        limit: int,
    ) -> list[datetime]:
        """Newest-first timestamps at or after ``since``, at most ``limit``."""
        column = self._column(model, ts_field)
        stmt = (
            select(column)
            .where(*self._equals(model, where), column >= since)
            .order_by(column.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Writes
    # ========================================================================

    def add(self, record: Base) -> None:
        """Stage an unconditional insert (history rows, events)."""
        self.session.add(record)

    @_translate_errors
    async def create_if_absent(self, record: Base, unique: Sequence[str]) -> bool:
        """
        Insert the record unless a row with the same unique columns exists.

        Returns True when this call created the row.
        """
        model = type(record)
        stmt = (
            pg_insert(model)
            .values(**column_values(record))
            .on_conflict_do_nothing(index_elements=list(unique))
            .returning(model.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @_translate_errors
    async def increment(
        self,
        model: type[Base],
        key: Any,
        deltas: Mapping[str, int | float],
        returning: Sequence[str] = (),
    ) -> Mapping[str, Any] | None:
        """
        Atomically add deltas to numeric fields and read back the new values.

        Returns the incremented fields plus any extra ``returning`` fields, or
        None when no row has the key.
        """
        fields = list(deltas) + [f for f in returning if f not in deltas]
        stmt = (
            update(model)
            .where(self._key(model) == key)
            .values({f: self._column(model, f) + d for f, d in deltas.items()})
            .returning(*(self._column(model, f) for f in fields))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return dict(zip(fields, row, strict=True))

    @_translate_errors
    async def update(
        self,
        model: type[Base],
        key: Any,
        values: Mapping[str, Any],
        expected: Mapping[str, Any] | None = None,
    ) -> bool:
        """
        Update fields of a keyed record.

        With ``expected`` the update only applies while those fields still hold
        the given values (compare-and-set). Returns True when a row changed.
        """
        stmt = (
            update(model)
            .where(self._key(model) == key, *self._equals(model, expected))
            .values(dict(values))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    @_translate_errors
    async def raise_to(self, model: type[Base], key: Any, field: str, value: int | float) -> None:
        """Set field to max(current, value) so concurrent writers never regress it."""
        column = self._column(model, field)
        stmt = (
            update(model)
            .where(self._key(model) == key)
            .values({field: func.greatest(column, value)})
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    @_translate_errors
    async def prune(
        self,
        model: type[Base],
        *,
        where: Mapping[str, Any],
        ts_field: str,
        cutoff: datetime,
        keep_latest: int,
    ) -> None:
        """Delete rows older than cutoff, then all but the newest ``keep_latest``."""
        column = self._column(model, ts_field)
        filters = self._equals(model, where)
        await self.session.execute(delete(model).where(*filters, column < cutoff))

        overflow = (
            select(model.id)
            .where(*filters)
            .order_by(column.desc())
            .offset(keep_latest)
            .scalar_subquery()
        )
        await self.session.execute(delete(model).where(model.id.in_(overflow)))

    @_translate_errors
    async def commit(self) -> None:
        """Commit the current transaction."""
        await self.session.commit()

    async def rollback(self) -> None:
        """Roll back the current transaction."""
        await self.session.rollback()
