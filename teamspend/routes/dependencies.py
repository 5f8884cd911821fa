"""FastAPI dependency providers for the service layer."""

from datetime import datetime
from typing import Optional

from fastapi import Depends, Query

from teamspend.schemas.expense import ExpenseCategory, ExpenseStatus
from teamspend.services.advisory import AdvisoryAdapter, get_advisory_adapter
from teamspend.services.budget_ledger import BudgetLedger, get_budget_ledger
from teamspend.services.bulk_coordinator import BulkCoordinator
from teamspend.services.expense_state_machine import ExpenseStateMachine
from teamspend.services.insights import InsightsService
from teamspend.services.notifications import NotificationDispatcher, get_notification_dispatcher
from teamspend.services.team_service import TeamService
from teamspend.storage.repository import SORTABLE_COLUMNS, ExpenseFilters


def get_expense_state_machine(
    ledger: BudgetLedger = Depends(get_budget_ledger),
    advisory: AdvisoryAdapter = Depends(get_advisory_adapter),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher)
) -> ExpenseStateMachine:
    return ExpenseStateMachine(ledger=ledger, advisory=advisory, notifier=notifier)


def get_bulk_coordinator(
    state_machine: ExpenseStateMachine = Depends(get_expense_state_machine)
) -> BulkCoordinator:
    return BulkCoordinator(state_machine)


def get_team_service(ledger: BudgetLedger = Depends(get_budget_ledger)) -> TeamService:
    return TeamService(ledger=ledger)


def get_insights_service(
    advisory: AdvisoryAdapter = Depends(get_advisory_adapter)
) -> InsightsService:
    return InsightsService(advisory=advisory)


def expense_filters(
    status: Optional[ExpenseStatus] = Query(None, description="Filter by status"),
    category: Optional[ExpenseCategory] = Query(None, description="Filter by category"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    sort_by: str = Query("date", alias="sortBy", pattern=f"^({'|'.join(SORTABLE_COLUMNS)})$"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$")
) -> ExpenseFilters:
    """Listing parameters shared by the expense and team-expense endpoints."""
    return ExpenseFilters(
        status=status.value if status else None,
        category=category.value if category else None,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
