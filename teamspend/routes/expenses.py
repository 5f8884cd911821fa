# ==== EXPENSE ROUTES MODULE ==== #

"""
Expense routes: submission, listing, edits and decisions, bulk decisions,
CSV export, and the per-team insight and forecast views.

Literal paths (bulk-action, export) and the two-segment team views are
declared before ``/{expense_id}`` so they are matched first.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from teamspend.observability.tracing import get_tracer
from teamspend.routes.dependencies import (
    expense_filters,
    get_bulk_coordinator,
    get_expense_state_machine,
    get_insights_service
)
from teamspend.schemas.advisory import BudgetForecastResponse, SpendingInsightsResponse
from teamspend.schemas.expense import (
    BulkActionRequest,
    BulkActionResponse,
    ExpenseCreate,
    ExpenseCreateResponse,
    ExpenseExportRequest,
    ExpenseListResponse,
    ExpenseResponse,
    ExpenseUpdate
)
from teamspend.schemas.team import MessageResponse
from teamspend.services.bulk_coordinator import BulkCoordinator
from teamspend.services.expense_state_machine import ExpenseStateMachine
from teamspend.services.insights import InsightsService
from teamspend.services.report_export import export_expenses
from teamspend.storage.repository import ExpenseFilters


router = APIRouter()
tracer = get_tracer(__name__)


# ==== COLLECTION ENDPOINTS ==== #


@router.post("", response_model=ExpenseCreateResponse, status_code=201)
async def create_expense(
    payload: ExpenseCreate,
    state_machine: ExpenseStateMachine = Depends(get_expense_state_machine)
) -> ExpenseCreateResponse:
    """
    Submit an expense.

    The expense starts pending. Category suggestion and duplicate detection
    are best-effort; when the advisory provider is unavailable the expense
    is created without them.
    """
    with tracer.start_as_current_span("create_expense") as span:
        span.set_attribute("team_id", payload.team)
        return await state_machine.create(payload)


@router.get("", response_model=ExpenseListResponse)
async def list_expenses(
    team: Optional[int] = Query(None, description="Filter by team id"),
    search: Optional[str] = Query(None, description="Case-insensitive match on description or category"),
    filters: ExpenseFilters = Depends(expense_filters),
    state_machine: ExpenseStateMachine = Depends(get_expense_state_machine)
) -> ExpenseListResponse:
    """List expenses with filters, sorting and pagination."""
    filters.team_id = team
    filters.search = search or None
    return await state_machine.search(filters)


@router.post("/bulk-action", response_model=BulkActionResponse)
async def bulk_action(
    payload: BulkActionRequest,
    coordinator: BulkCoordinator = Depends(get_bulk_coordinator)
) -> BulkActionResponse:
    """
    Approve or reject many expenses at once.

    Fails without changing anything when any id is unknown.
    """
    return await coordinator.bulk_decision(payload.expense_ids, payload.action, payload.approved_by)


@router.post("/export")
async def export_csv(
    payload: ExpenseExportRequest,
    state_machine: ExpenseStateMachine = Depends(get_expense_state_machine)
) -> Response:
    """Export the filtered expense list as CSV with a total row."""
    content = await export_expenses(state_machine, payload)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="expenses.csv"'}
    )


# ==== TEAM ANALYTICS ENDPOINTS ==== #


@router.get("/{team_id}/insights", response_model=SpendingInsightsResponse)
async def spending_insights(
    team_id: int,
    insights: InsightsService = Depends(get_insights_service)
) -> SpendingInsightsResponse:
    """Spending breakdown of a team's approved expenses with advisory narrative."""
    return await insights.spending_insights(team_id)


@router.get("/{team_id}/forecast", response_model=BudgetForecastResponse)
async def budget_forecast(
    team_id: int,
    insights: InsightsService = Depends(get_insights_service)
) -> BudgetForecastResponse:
    """Monthly spending history with an advisory forecast of budget overrun."""
    return await insights.budget_forecast(team_id)


# ==== SINGLE EXPENSE ENDPOINTS ==== #


@router.get("/{expense_id}", response_model=ExpenseResponse)
async def get_expense(
    expense_id: int,
    state_machine: ExpenseStateMachine = Depends(get_expense_state_machine)
) -> ExpenseResponse:
    return await state_machine.get(expense_id)


@router.put("/{expense_id}", response_model=ExpenseResponse)
async def update_expense(
    expense_id: int,
    payload: ExpenseUpdate,
    state_machine: ExpenseStateMachine = Depends(get_expense_state_machine)
) -> ExpenseResponse:
    """
    Edit an expense and/or change its status.

    Moving into or out of approved adjusts the team's current spending, as
    does changing the amount of an approved expense. Recording a decision
    and editing fields in the same request is rejected.
    """
    with tracer.start_as_current_span("update_expense") as span:
        span.set_attribute("expense_id", expense_id)
        return await state_machine.update(expense_id, payload)


@router.delete("/{expense_id}", response_model=MessageResponse)
async def delete_expense(
    expense_id: int,
    state_machine: ExpenseStateMachine = Depends(get_expense_state_machine)
) -> MessageResponse:
    await state_machine.delete(expense_id)
    return MessageResponse(message="Expense deleted successfully")
