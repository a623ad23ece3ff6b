"""Append-only membership intervals between an owner and its members.

Each row records one stay: `added_at` when the member joined, and
`removed_at` when it left (NULL while it is still there).  Rows are closed,
never deleted, so the membership of an owner can be answered for any
instant with a single predicate:

    added_at <= as_of AND (removed_at IS NULL OR removed_at >= as_of)

Both ends are inclusive: a membership closed at exactly `as_of` still
counts as present at `as_of`.  This is what makes a released pallet's
snapshot (queried at `released_at`) contain the units whose rows were
closed by the release itself.

Open/close re-check the existence condition inside the caller's
transaction; callers serialize concurrent writers with row locks on the
owner and member rows before calling in.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.exceptions import ConflictError, InvalidStateError


class IntervalLedger:
    """Interval bookkeeping over any model with added_at / removed_at."""

    def __init__(self, model, owner_attr: str, member_attr: str):
        self.model = model
        self.owner_col = getattr(model, owner_attr)
        self.member_col = getattr(model, member_attr)
        self.owner_attr = owner_attr
        self.member_attr = member_attr

    # ── Predicates ───────────────────────────────────────────

    def active_clause(self, as_of: Any):
        """Interval-contains-instant predicate.

        `as_of` may be a datetime or a SQL expression (e.g. a column of a
        joined owner table), so every view is derived from this one rule.
        """
        m = self.model
        return and_(
            m.added_at <= as_of,
            or_(m.removed_at.is_(None), m.removed_at >= as_of),
        )

    def open_clause(self):
        return self.model.removed_at.is_(None)

    def at_clause(self, as_of: Any):
        # None reads "now" as the open end of the timeline
        if as_of is None:
            return self.open_clause()
        return self.active_clause(as_of)

    # ── Reads ────────────────────────────────────────────────

    async def active_at(
        self, db: AsyncSession, owner_id: Any, as_of: datetime | None
    ) -> list[Any]:
        """Members whose interval on `owner_id` contains `as_of`."""
        result = await db.execute(
            select(self.member_col)
            .where(self.owner_col == owner_id, self.at_clause(as_of))
            .order_by(self.model.added_at, self.member_col)
        )
        return list(dict.fromkeys(result.scalars().all()))

    async def open_members(self, db: AsyncSession, owner_id: Any) -> list[Any]:
        result = await db.execute(
            select(self.member_col)
            .where(self.owner_col == owner_id, self.open_clause())
            .order_by(self.model.added_at, self.member_col)
        )
        return list(result.scalars().all())

    async def count_open(self, db: AsyncSession, owner_id: Any) -> int:
        return len(await self.open_members(db, owner_id))

    async def get_open(self, db: AsyncSession, owner_id: Any, member_id: Any):
        result = await db.execute(
            select(self.model).where(
                self.owner_col == owner_id,
                self.member_col == member_id,
                self.open_clause(),
            )
        )
        return result.scalar_one_or_none()

    async def is_open(self, db: AsyncSession, owner_id: Any, member_id: Any) -> bool:
        return await self.get_open(db, owner_id, member_id) is not None

    async def open_owner_of(self, db: AsyncSession, member_id: Any) -> Any | None:
        """The owner currently holding `member_id`, if any."""
        result = await db.execute(
            select(self.owner_col).where(
                self.member_col == member_id, self.open_clause()
            )
        )
        return result.scalars().first()

    # ── Writes ───────────────────────────────────────────────

    async def open(
        self, db: AsyncSession, owner_id: Any, member_id: Any, at: datetime
    ) -> Any:
        """Start a new interval; fails if one is already open for the pair."""
        if await self.is_open(db, owner_id, member_id):
            raise ConflictError(
                f"{member_id} already has an open interval on {owner_id}",
                details={self.owner_attr: owner_id, self.member_attr: member_id},
            )
        row = self.model(**{
            self.owner_attr: owner_id,
            self.member_attr: member_id,
            "added_at": at,
            "removed_at": None,
        })
        db.add(row)
        await db.flush()
        return row.id

    async def close(
        self, db: AsyncSession, owner_id: Any, member_id: Any, at: datetime
    ) -> None:
        """End the open interval for the pair; fails if none is open."""
        row = await self.get_open(db, owner_id, member_id)
        if row is None:
            raise InvalidStateError(
                f"{member_id} has no open interval on {owner_id}",
                details={self.owner_attr: owner_id, self.member_attr: member_id},
            )
        row.removed_at = at
        await db.flush()

    async def close_all(self, db: AsyncSession, owner_id: Any, at: datetime) -> int:
        """Close every open interval of `owner_id` with the same timestamp."""
        result = await db.execute(
            update(self.model)
            .where(self.owner_col == owner_id, self.open_clause())
            .values(removed_at=at)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount
