# ==== TEAM SERVICE ==== #

"""
Team management and budget status.

Reads that report spending (get team, budget status) recompute the
aggregate from approved expenses first, so a drifted cache never reaches
a caller.
"""

from typing import List, Optional

from teamspend.observability.logging import get_logger
from teamspend.schemas.expense import ExpenseListResponse
from teamspend.schemas.team import (
    BudgetAlerts,
    BudgetStatusResponse,
    ReconcileResponse,
    TeamCreate,
    TeamResponse,
    TeamUpdate
)
from teamspend.services.budget_ledger import BudgetLedger, LedgerUpdate, get_budget_ledger
from teamspend.services.errors import NotFoundError, ValidationFailedError
from teamspend.services.expense_state_machine import ExpenseStateMachine
from teamspend.services.money import round2
from teamspend.settings import settings
from teamspend.storage.db import get_session
from teamspend.storage.models import Team
from teamspend.storage.repository import ExpenseFilters, ExpenseRepository, TeamRepository


logger = get_logger(__name__)


def reconcile_response(update: LedgerUpdate) -> ReconcileResponse:
    return ReconcileResponse(
        team_id=update.team_id,
        previous_spending=update.previous_spending,
        current_spending=update.current_spending,
        drift=update.drift,
        alert_dispatched=update.alert,
    )


class TeamService:
    """Team CRUD plus the budget views built on the ledger."""

    def __init__(self, ledger: Optional[BudgetLedger] = None):
        self.ledger = ledger or get_budget_ledger()

    async def create(self, payload: TeamCreate) -> TeamResponse:
        """
        Raises:
            ValidationFailedError: Name already taken
        """
        async with get_session() as session:
            repo = TeamRepository(session)
            if await repo.get_by_name(payload.name) is not None:
                raise ValidationFailedError("Team name already exists")

            team = await repo.add(
                Team(
                    name=payload.name,
                    budget=round2(payload.budget),
                    members=[m.model_dump(mode="json") for m in payload.members],
                    current_spending=0.0,
                    eighty_percent_sent=False,
                    hundred_percent_sent=False,
                    version=0,
                )
            )
            response = TeamResponse.from_model(team)

        logger.info("Team created", team_id=response.id, name=response.name, budget=response.budget)
        return response

    async def list_all(self) -> List[TeamResponse]:
        async with get_session() as session:
            teams = await TeamRepository(session).list_all()
            return [TeamResponse.from_model(t) for t in teams]

    async def get(self, team_id: int) -> TeamResponse:
        """Get a team with its spending recomputed from approved expenses."""
        async def _apply(session) -> TeamResponse:
            await self.ledger.recompute(session, team_id)
            team = await TeamRepository(session).get(team_id)
            return TeamResponse.from_model(team)

        return await self.ledger.run_locked(team_id, "get_team", _apply)

    async def update(self, team_id: int, changes: TeamUpdate) -> TeamResponse:
        """
        Edit name, budget or members.

        Budget edits bump the version so a concurrent ledger write re-reads
        the new budget before evaluating alerts.

        Raises:
            NotFoundError: Team does not exist
            ValidationFailedError: New name already taken
        """
        async def _apply(session) -> TeamResponse:
            repo = TeamRepository(session)
            team = await repo.get(team_id)
            if team is None:
                raise NotFoundError("Team not found")

            provided = changes.model_fields_set
            if "name" in provided and changes.name and changes.name != team.name:
                if await repo.get_by_name(changes.name) is not None:
                    raise ValidationFailedError("Team name already exists")
                team.name = changes.name
            if "budget" in provided and changes.budget is not None:
                team.budget = round2(changes.budget)
            if "members" in provided and changes.members is not None:
                team.members = [m.model_dump(mode="json") for m in changes.members]
            team.version = team.version + 1

            team = await repo.save(team)
            return TeamResponse.from_model(team)

        response = await self.ledger.run_locked(team_id, "update_team", _apply)
        logger.info("Team updated", team_id=team_id, fields=sorted(changes.model_fields_set))
        return response

    async def delete(self, team_id: int) -> None:
        """
        Raises:
            NotFoundError: Team does not exist
            ValidationFailedError: Expenses still reference the team
        """
        async def _apply(session) -> None:
            repo = TeamRepository(session)
            team = await repo.get(team_id)
            if team is None:
                raise NotFoundError("Team not found")

            count = await ExpenseRepository(session).count_for_team(team_id)
            if count > 0:
                raise ValidationFailedError(
                    f"Cannot delete team with {count} associated expenses"
                )
            await repo.delete(team)

        await self.ledger.run_locked(team_id, "delete_team", _apply)
        logger.info("Team deleted", team_id=team_id)

    async def budget_status(self, team_id: int) -> BudgetStatusResponse:
        """
        Recompute spending, evaluate alerts and report the budget position.

        A zero budget reports 0% utilization; such a team is over budget as
        soon as it has any approved spending but never crosses a threshold.
        """
        update = await self.ledger.run_locked(
            team_id,
            "budget_status",
            lambda session: self.ledger.recompute(session, team_id, evaluate_alerts=True)
        )
        if update.alert is not None:
            await self.ledger.dispatch_alert(update)

        utilization = round2(update.utilization)
        return BudgetStatusResponse(
            team_id=update.team_id,
            team_name=update.team_name,
            budget=update.budget,
            current_spending=update.current_spending,
            remaining_budget=round2(update.budget - update.current_spending),
            utilization_percentage=utilization,
            is_over_budget=update.current_spending > update.budget,
            is_near_budget=update.utilization >= settings.BUDGET_WARN_PERCENT,
            alert_status=BudgetAlerts(
                eighty_percent_sent=update.eighty_percent_sent,
                hundred_percent_sent=update.hundred_percent_sent,
            ),
        )

    async def list_expenses(
        self,
        team_id: int,
        filters: ExpenseFilters,
        state_machine: ExpenseStateMachine
    ) -> ExpenseListResponse:
        """List one team's expenses, newest first unless asked otherwise."""
        async with get_session() as session:
            if await TeamRepository(session).get(team_id) is None:
                raise NotFoundError("Team not found")

        filters.team_id = team_id
        return await state_machine.search(filters)

    async def reconcile(self, team_id: int) -> ReconcileResponse:
        return reconcile_response(await self.ledger.reconcile(team_id))
