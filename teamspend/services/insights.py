# ==== SPENDING INSIGHTS SERVICE ==== #

"""
Spending insights and budget forecasts for a team.

Figures are computed locally from approved expenses; the advisory model
only adds the narrative. Results are cached in Redis for a few minutes.
"""

import datetime as dt
from collections import defaultdict
from typing import Dict, Optional, Sequence

from teamspend.settings import settings
from teamspend.observability.logging import get_logger
from teamspend.schemas.advisory import BudgetForecastResponse, SpendingInsightsResponse
from teamspend.services.advisory import AdvisoryAdapter, get_advisory_adapter
from teamspend.services.budget_ledger import BudgetLedger
from teamspend.services.errors import NotFoundError, ValidationFailedError
from teamspend.services.money import round2
from teamspend.storage.db import get_session
from teamspend.storage.models import Expense
from teamspend.storage.redis import cache_get_json, cache_set_json
from teamspend.storage.repository import ExpenseRepository, TeamRepository


logger = get_logger(__name__)

RECENT_EXPENSES_IN_PROMPT = 10
MIN_EXPENSES_FOR_FORECAST = 5


def category_breakdown(expenses: Sequence[Expense]) -> Dict[str, float]:
    totals: Dict[str, float] = defaultdict(float)
    for expense in expenses:
        totals[expense.category] += expense.amount
    return {category: round2(amount) for category, amount in totals.items()}


def monthly_spending(expenses: Sequence[Expense]) -> Dict[str, float]:
    """Approved spending per calendar month, keyed ``YYYY-MM`` in order."""
    totals: Dict[str, float] = defaultdict(float)
    for expense in expenses:
        totals[expense.date.strftime("%Y-%m")] += expense.amount
    return {month: round2(totals[month]) for month in sorted(totals)}


class InsightsService:
    """Builds insight and forecast views, caching them briefly."""

    def __init__(self, advisory: Optional[AdvisoryAdapter] = None):
        self.advisory = advisory or get_advisory_adapter()

    async def spending_insights(self, team_id: int) -> SpendingInsightsResponse:
        """
        Raises:
            NotFoundError: Team does not exist
            ValidationFailedError: Team has no approved expenses
        """
        cache_key = f"insights:{team_id}"
        cached = await cache_get_json(cache_key, cache_type="insights")
        if cached is not None:
            return SpendingInsightsResponse.model_validate(cached)

        team_name, budget, expenses = await self._load(team_id)
        if not expenses:
            raise ValidationFailedError("No expenses to analyze")

        total_spent = round2(sum(e.amount for e in expenses))
        utilization = round2(BudgetLedger.utilization(total_spent, budget))
        breakdown = category_breakdown(expenses)
        recent = sorted(expenses, key=lambda e: e.date, reverse=True)[:RECENT_EXPENSES_IN_PROMPT]

        narrative = await self.advisory.spending_insights({
            "budget": budget,
            "total_spent": total_spent,
            "utilization": utilization,
            "category_breakdown": breakdown,
            "recent": [
                {
                    "amount": e.amount,
                    "description": e.description,
                    "category": e.category,
                    "date": e.date.strftime("%Y-%m-%d"),
                }
                for e in recent
            ],
        })

        response = SpendingInsightsResponse(
            team_id=team_id,
            team_name=team_name,
            budget=budget,
            total_spent=total_spent,
            budget_utilization=utilization,
            expense_count=len(expenses),
            category_breakdown=breakdown,
            insights=narrative,
            generated_at=dt.datetime.now(dt.timezone.utc),
        )
        await self._store(cache_key, response, narrative is not None)
        return response

    async def budget_forecast(self, team_id: int) -> BudgetForecastResponse:
        """
        Raises:
            NotFoundError: Team does not exist
            ValidationFailedError: Fewer than five approved expenses
        """
        cache_key = f"forecast:{team_id}"
        cached = await cache_get_json(cache_key, cache_type="forecast")
        if cached is not None:
            return BudgetForecastResponse.model_validate(cached)

        team_name, budget, expenses = await self._load(team_id)
        if len(expenses) < MIN_EXPENSES_FOR_FORECAST:
            raise ValidationFailedError(
                "Insufficient data for forecasting",
                detail=f"At least {MIN_EXPENSES_FOR_FORECAST} approved expenses are needed"
            )

        current_spending = round2(sum(e.amount for e in expenses))
        monthly = monthly_spending(expenses)
        average = round2(sum(monthly.values()) / len(monthly))

        forecast = await self.advisory.budget_forecast({
            "budget": budget,
            "current_spending": current_spending,
            "monthly_spending": monthly,
            "average_monthly_spending": average,
        })

        response = BudgetForecastResponse(
            team_id=team_id,
            team_name=team_name,
            budget=budget,
            current_spending=current_spending,
            current_utilization=round2(BudgetLedger.utilization(current_spending, budget)),
            monthly_spending=monthly,
            average_monthly_spending=average,
            forecast=forecast,
            generated_at=dt.datetime.now(dt.timezone.utc),
        )
        await self._store(cache_key, response, forecast is not None)
        return response

    # ==== INTERNAL HELPER METHODS ==== #

    async def _load(self, team_id: int):
        async with get_session() as session:
            team = await TeamRepository(session).get(team_id)
            if team is None:
                raise NotFoundError("Team not found")
            expenses = await ExpenseRepository(session).approved_for_team(team_id)
            return team.name, team.budget, list(expenses)

    async def _store(self, key: str, response, complete: bool) -> None:
        # Answers without a narrative are not cached so the next call asks the model again
        if not complete:
            logger.debug("Skipping cache for degraded advisory answer", key=key)
            return
        await cache_set_json(key, response.model_dump(mode="json"), settings.ADVISORY_CACHE_TTL_SECONDS)
