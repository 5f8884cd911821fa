# ==== TEAM ROUTES MODULE ==== #

"""
Team routes: CRUD, budget status, team expense listing and reconciliation.
"""

from typing import List

from fastapi import APIRouter, Depends

from teamspend.observability.tracing import get_tracer
from teamspend.routes.dependencies import expense_filters, get_expense_state_machine, get_team_service
from teamspend.schemas.expense import ExpenseListResponse
from teamspend.schemas.team import (
    BudgetStatusResponse,
    MessageResponse,
    ReconcileResponse,
    TeamCreate,
    TeamResponse,
    TeamUpdate
)
from teamspend.services.expense_state_machine import ExpenseStateMachine
from teamspend.services.team_service import TeamService
from teamspend.storage.repository import ExpenseFilters


router = APIRouter()
tracer = get_tracer(__name__)


@router.post("", response_model=TeamResponse, status_code=201)
async def create_team(
    payload: TeamCreate,
    teams: TeamService = Depends(get_team_service)
) -> TeamResponse:
    return await teams.create(payload)


@router.get("", response_model=List[TeamResponse])
async def list_teams(teams: TeamService = Depends(get_team_service)) -> List[TeamResponse]:
    """List teams, newest first."""
    return await teams.list_all()


@router.get("/{team_id}", response_model=TeamResponse)
async def get_team(
    team_id: int,
    teams: TeamService = Depends(get_team_service)
) -> TeamResponse:
    """Get a team; current spending is recomputed from approved expenses."""
    return await teams.get(team_id)


@router.put("/{team_id}", response_model=TeamResponse)
async def update_team(
    team_id: int,
    payload: TeamUpdate,
    teams: TeamService = Depends(get_team_service)
) -> TeamResponse:
    return await teams.update(team_id, payload)


@router.delete("/{team_id}", response_model=MessageResponse)
async def delete_team(
    team_id: int,
    teams: TeamService = Depends(get_team_service)
) -> MessageResponse:
    """Delete a team that no expense references."""
    await teams.delete(team_id)
    return MessageResponse(message="Team deleted successfully")


@router.get("/{team_id}/budget-status", response_model=BudgetStatusResponse)
async def budget_status(
    team_id: int,
    teams: TeamService = Depends(get_team_service)
) -> BudgetStatusResponse:
    """
    Budget position of a team.

    Recomputes spending and evaluates threshold alerts, so an alert missed
    earlier (for example because delivery failed) is retried here.
    """
    with tracer.start_as_current_span("budget_status") as span:
        span.set_attribute("team_id", team_id)
        return await teams.budget_status(team_id)


@router.get("/{team_id}/expenses", response_model=ExpenseListResponse)
async def list_team_expenses(
    team_id: int,
    filters: ExpenseFilters = Depends(expense_filters),
    teams: TeamService = Depends(get_team_service),
    state_machine: ExpenseStateMachine = Depends(get_expense_state_machine)
) -> ExpenseListResponse:
    return await teams.list_expenses(team_id, filters, state_machine)


@router.post("/{team_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_team(
    team_id: int,
    teams: TeamService = Depends(get_team_service)
) -> ReconcileResponse:
    """Overwrite cached spending with the recomputed total and report the drift."""
    return await teams.reconcile(team_id)
