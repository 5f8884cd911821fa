# ==== AGGREGATE STORE ACCESSOR ==== #

"""
Repositories over the Team and Expense tables.

Services never build queries themselves; they go through these classes,
which operate on a caller-owned AsyncSession so several repository calls
share one transaction. The team aggregate is written only through
compare_and_set(), a conditional UPDATE guarded by the row version.
"""

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Row, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from teamspend.storage.models import Expense, Team


# ==== QUERY PARAMETERS ==== #


SORTABLE_COLUMNS = {
    "date": Expense.date,
    "amount": Expense.amount,
    "createdAt": Expense.created_at,
    "category": Expense.category,
    "status": Expense.status,
    "description": Expense.description,
}


@dataclass
class ExpenseFilters:
    """Filter, sort and pagination parameters for expense listings."""
    team_id: Optional[int] = None
    status: Optional[str] = None
    category: Optional[str] = None
    start_date: Optional[dt.datetime] = None
    end_date: Optional[dt.datetime] = None
    search: Optional[str] = None
    page: int = 1
    limit: int = 50
    sort_by: str = "date"
    sort_order: str = "desc"

    @property
    def offset(self) -> int:
        return (max(self.page, 1) - 1) * self.limit


# ==== TEAM REPOSITORY ==== #


class TeamRepository:
    """Team persistence operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, team_id: int) -> Optional[Team]:
        return await self.session.get(Team, team_id)

    async def get_by_name(self, name: str) -> Optional[Team]:
        result = await self.session.execute(select(Team).where(Team.name == name))
        return result.scalar_one_or_none()

    async def list_all(self) -> Sequence[Team]:
        result = await self.session.execute(
            select(Team).order_by(Team.created_at.desc(), Team.id.desc())
        )
        return result.scalars().all()

    async def list_ids(self) -> List[int]:
        result = await self.session.execute(select(Team.id).order_by(Team.id))
        return list(result.scalars().all())

    async def add(self, team: Team) -> Team:
        self.session.add(team)
        await self.session.flush()
        await self.session.refresh(team)
        return team

    async def save(self, team: Team) -> Team:
        await self.session.flush()
        await self.session.refresh(team)
        return team

    async def delete(self, team: Team) -> None:
        await self.session.delete(team)
        await self.session.flush()

    async def read_aggregate(self, team_id: int) -> Optional[Row]:
        """Read the aggregate columns straight from the table.

        Bypasses the session identity map so a retried transaction always
        sees the committed version.
        """
        result = await self.session.execute(
            select(
                Team.id,
                Team.name,
                Team.budget,
                Team.members,
                Team.current_spending,
                Team.eighty_percent_sent,
                Team.hundred_percent_sent,
                Team.version,
            ).where(Team.id == team_id)
        )
        return result.one_or_none()

    async def compare_and_set(
        self,
        team_id: int,
        seen_version: int,
        values: Dict[str, Any]
    ) -> bool:
        """Write aggregate columns only if the row still has ``seen_version``.

        Args:
            team_id: Team to update
            seen_version: Version read at the start of the transaction
            values: Column values to write; the version is bumped implicitly

        Returns:
            bool: False when another writer got there first
        """
        stmt = (
            update(Team)
            .where(and_(Team.id == team_id, Team.version == seen_version))
            .values(
                version=Team.version + 1,
                updated_at=dt.datetime.now(dt.timezone.utc),
                **values
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def release_latch(self, team_id: int, latch_column: str) -> bool:
        """Clear an alert latch that is currently set.

        Returns:
            bool: True if the latch was set and is now cleared
        """
        column = getattr(Team, latch_column)
        stmt = (
            update(Team)
            .where(and_(Team.id == team_id, column.is_(True)))
            .values({latch_column: False, "version": Team.version + 1})
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1


# ==== EXPENSE REPOSITORY ==== #


class ExpenseRepository:
    """Expense persistence operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, expense_id: int) -> Optional[Expense]:
        return await self.session.get(Expense, expense_id)

    async def get_with_team_name(self, expense_id: int) -> Optional[Tuple[Expense, str]]:
        result = await self.session.execute(
            select(Expense, Team.name)
            .join(Team, Team.id == Expense.team_id)
            .where(Expense.id == expense_id)
        )
        row = result.one_or_none()
        return (row[0], row[1]) if row else None

    async def add(self, expense: Expense) -> Expense:
        self.session.add(expense)
        await self.session.flush()
        await self.session.refresh(expense)
        return expense

    async def save(self, expense: Expense) -> Expense:
        await self.session.flush()
        await self.session.refresh(expense)
        return expense

    async def delete(self, expense: Expense) -> None:
        await self.session.delete(expense)
        await self.session.flush()

    async def team_ids_for(self, expense_ids: Sequence[int]) -> Dict[int, int]:
        """Map each existing expense id to its team id."""
        if not expense_ids:
            return {}
        result = await self.session.execute(
            select(Expense.id, Expense.team_id).where(Expense.id.in_(list(expense_ids)))
        )
        return {row.id: row.team_id for row in result}

    async def sum_approved(self, team_id: int) -> float:
        result = await self.session.execute(
            select(func.coalesce(func.sum(Expense.amount), 0.0)).where(
                and_(Expense.team_id == team_id, Expense.status == "approved")
            )
        )
        return float(result.scalar_one())

    async def count_for_team(self, team_id: int) -> int:
        result = await self.session.execute(
            select(func.count(Expense.id)).where(Expense.team_id == team_id)
        )
        return int(result.scalar_one())

    async def approved_for_team(self, team_id: int) -> Sequence[Expense]:
        result = await self.session.execute(
            select(Expense)
            .where(and_(Expense.team_id == team_id, Expense.status == "approved"))
            .order_by(Expense.date.asc())
        )
        return result.scalars().all()

    async def recent_for_team(
        self,
        team_id: int,
        since: dt.datetime,
        limit: int
    ) -> Sequence[Expense]:
        """Most recent expenses of a team, used as duplicate candidates."""
        result = await self.session.execute(
            select(Expense)
            .where(and_(Expense.team_id == team_id, Expense.date >= since))
            .order_by(Expense.date.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def search(self, filters: ExpenseFilters) -> Tuple[List[Tuple[Expense, str]], int]:
        """Filter, sort and paginate expenses.

        Returns:
            Tuple of (expense, team name) rows for the requested page and the
            total number of matching expenses
        """
        conditions = []
        if filters.team_id is not None:
            conditions.append(Expense.team_id == filters.team_id)
        if filters.status:
            conditions.append(Expense.status == filters.status)
        if filters.category:
            conditions.append(Expense.category == filters.category)
        if filters.start_date:
            conditions.append(Expense.date >= filters.start_date)
        if filters.end_date:
            conditions.append(Expense.date <= filters.end_date)
        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(
                or_(Expense.description.ilike(pattern), Expense.category.ilike(pattern))
            )

        total_result = await self.session.execute(
            select(func.count(Expense.id)).where(*conditions)
        )
        total = int(total_result.scalar_one())

        sort_column = SORTABLE_COLUMNS.get(filters.sort_by, Expense.date)
        ordering = sort_column.asc() if filters.sort_order == "asc" else sort_column.desc()

        result = await self.session.execute(
            select(Expense, Team.name)
            .join(Team, Team.id == Expense.team_id)
            .where(*conditions)
            .order_by(ordering, Expense.id.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        return [(row[0], row[1]) for row in result.all()], total
