# ==== EXPENSE STATE MACHINE ==== #

"""
Expense lifecycle and its effect on the team budget.

Status moves between pending, approved and rejected. The ledger delta of a
write depends only on whether the expense counted as approved before the
write and whether it counts after it:

    delta = (new amount if approved now else 0) - (old amount if approved before else 0)

so re-applying the current status is free and an amount edit on an approved
expense moves the aggregate by the difference. The status change, the field
edits and the ledger write commit in one transaction; alerts and decision
notices go out after it committed.
"""

import datetime as dt
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from teamspend.settings import settings
from teamspend.observability.logging import get_logger
from teamspend.observability.metrics import expense_transitions_total
from teamspend.observability.tracing import get_tracer
from teamspend.schemas.base import Pagination
from teamspend.schemas.expense import (
    AISuggestion,
    DuplicateWarning,
    ExpenseCreate,
    ExpenseCreateResponse,
    ExpenseListResponse,
    ExpenseResponse,
    ExpenseStatus,
    ExpenseUpdate,
    Person
)
from teamspend.services.advisory import AdvisoryAdapter, DuplicateCandidate, get_advisory_adapter
from teamspend.services.budget_ledger import BudgetLedger, LedgerUpdate, get_budget_ledger
from teamspend.services.errors import InvalidTransitionError, NotFoundError, ValidationFailedError
from teamspend.services.money import round2
from teamspend.services.notifications import (
    DecisionNotice,
    NotificationDispatcher,
    get_notification_dispatcher
)
from teamspend.storage.db import get_session
from teamspend.storage.models import Expense
from teamspend.storage.repository import ExpenseFilters, ExpenseRepository, TeamRepository


logger = get_logger(__name__)
tracer = get_tracer(__name__)

DECISIONS = (ExpenseStatus.APPROVED, ExpenseStatus.REJECTED)
EDITABLE_FIELDS = ("description", "amount", "category", "date")


def as_utc(value: dt.datetime) -> dt.datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


@dataclass
class TransitionOutcome:
    """What one committed expense write did."""
    expense: ExpenseResponse
    previous_status: ExpenseStatus
    status_changed: bool
    decision: bool
    ledger: Optional[LedgerUpdate] = None


# ==== STATE MACHINE ==== #


class ExpenseStateMachine:
    """Creates, edits, transitions and deletes expenses."""

    def __init__(
        self,
        ledger: Optional[BudgetLedger] = None,
        advisory: Optional[AdvisoryAdapter] = None,
        notifier: Optional[NotificationDispatcher] = None
    ):
        self.ledger = ledger or get_budget_ledger()
        self.advisory = advisory or get_advisory_adapter()
        self.notifier = notifier or get_notification_dispatcher()

    # --► CREATE

    async def create(self, payload: ExpenseCreate) -> ExpenseCreateResponse:
        """
        Create a pending expense annotated with advisory suggestions.

        Advisory calls happen before any write and outside any team lock; when
        the provider gives nothing the expense is created without annotations.

        Raises:
            ValidationFailedError: Referenced team does not exist
        """
        incurred = as_utc(payload.date) if payload.date else dt.datetime.now(dt.timezone.utc)
        since = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=settings.DUPLICATE_LOOKBACK_DAYS)

        async with get_session() as session:
            team = await TeamRepository(session).get(payload.team)
            if team is None:
                raise ValidationFailedError("Team not found", detail=f"Team {payload.team} does not exist")
            recent = await ExpenseRepository(session).recent_for_team(
                payload.team, since, settings.DUPLICATE_CANDIDATE_LIMIT
            )
            candidates = [
                DuplicateCandidate(description=e.description, amount=e.amount, date=e.date)
                for e in recent
            ]

        with tracer.start_as_current_span("expense_advisory") as span:
            suggested = await self.advisory.suggest_category(payload.description, payload.amount)
            verdict = await self.advisory.detect_duplicate(payload.description, payload.amount, candidates)
            span.set_attribute("suggested", suggested is not None)
            span.set_attribute("duplicate_checked", verdict is not None)

        is_duplicate = bool(verdict and verdict.is_duplicate)
        async with get_session() as session:
            expense = await ExpenseRepository(session).add(
                Expense(
                    team_id=payload.team,
                    description=payload.description,
                    amount=round2(payload.amount),
                    category=payload.category.value,
                    ai_suggested_category=suggested.value if suggested else None,
                    date=incurred,
                    status=ExpenseStatus.PENDING.value,
                    submitted_by_name=payload.submitted_by.name,
                    submitted_by_email=payload.submitted_by.email,
                    is_duplicate=is_duplicate,
                    duplicate_reason=verdict.reason if is_duplicate else None,
                )
            )
            response = ExpenseResponse.from_model(expense, team_name=team.name)

        logger.info(
            "Expense created",
            expense_id=response.id,
            team_id=payload.team,
            amount=response.amount,
            ai_suggested_category=suggested.value if suggested else None,
            is_duplicate=is_duplicate
        )
        return ExpenseCreateResponse(
            expense=response,
            ai_suggestion=AISuggestion(category=suggested) if suggested else None,
            duplicate_warning=DuplicateWarning(
                is_duplicate=verdict.is_duplicate,
                confidence=verdict.confidence,
                reason=verdict.reason
            ) if verdict else None,
        )

    # --► READ

    async def get(self, expense_id: int) -> ExpenseResponse:
        async with get_session() as session:
            found = await ExpenseRepository(session).get_with_team_name(expense_id)
            if found is None:
                raise NotFoundError("Expense not found")
            expense, team_name = found
            return ExpenseResponse.from_model(expense, team_name=team_name)

    async def search(self, filters: ExpenseFilters) -> ExpenseListResponse:
        async with get_session() as session:
            rows, total = await ExpenseRepository(session).search(filters)
            expenses = [ExpenseResponse.from_model(e, team_name=name) for e, name in rows]

        return ExpenseListResponse(
            expenses=expenses,
            pagination=Pagination(
                total=total,
                page=filters.page,
                limit=filters.limit,
                pages=math.ceil(total / filters.limit) if filters.limit else 0,
            ),
        )

    # --► UPDATE AND TRANSITION

    async def update(self, expense_id: int, changes: ExpenseUpdate) -> ExpenseResponse:
        """
        Apply field edits and/or a status change to one expense.

        Args:
            expense_id: Expense to change
            changes: Only fields present in the request are applied

        Returns:
            ExpenseResponse: Expense as committed

        Raises:
            NotFoundError: Expense does not exist
            InvalidTransitionError: Decision combined with field edits, or an
                approver given without a decision
            LedgerUnavailableError: Team aggregate stayed contended
        """
        outcome = await self._commit(expense_id, changes)
        await self._after_commit(outcome)
        return outcome.expense

    async def transition(
        self,
        expense_id: int,
        target: ExpenseStatus,
        approver: Optional[Person] = None
    ) -> TransitionOutcome:
        """Move one expense to ``target`` and run the post-commit side effects."""
        outcome = await self._commit(
            expense_id,
            ExpenseUpdate(status=target, approved_by=approver if target in DECISIONS else None)
        )
        await self._after_commit(outcome)
        return outcome

    # --► DELETE

    async def delete(self, expense_id: int) -> None:
        """
        Delete an expense, taking an approved amount off the team first.

        Raises:
            NotFoundError: Expense does not exist
        """
        team_id = await self._team_of(expense_id)

        async def _apply(session) -> float:
            repo = ExpenseRepository(session)
            expense = await repo.get(expense_id)
            if expense is None:
                raise NotFoundError("Expense not found")

            released = 0.0
            if expense.status == ExpenseStatus.APPROVED.value and expense.amount:
                released = expense.amount
                await self.ledger.apply_delta(session, team_id, -released)
            await repo.delete(expense)
            return released

        released = await self.ledger.run_locked(team_id, "delete_expense", _apply)
        logger.info("Expense deleted", expense_id=expense_id, team_id=team_id, released=released)

    # ==== INTERNAL HELPER METHODS ==== #

    async def _team_of(self, expense_id: int) -> int:
        async with get_session() as session:
            expense = await ExpenseRepository(session).get(expense_id)
            if expense is None:
                raise NotFoundError("Expense not found")
            return expense.team_id

    async def _commit(self, expense_id: int, changes: ExpenseUpdate) -> TransitionOutcome:
        provided = changes.model_fields_set
        edits: Dict[str, Any] = {
            name: getattr(changes, name)
            for name in EDITABLE_FIELDS
            if name in provided and getattr(changes, name) is not None
        }
        target = changes.status

        if changes.approved_by is not None and target not in DECISIONS:
            raise InvalidTransitionError(
                "approvedBy can only be set together with an approval decision"
            )

        team_id = await self._team_of(expense_id)

        async def _apply(session) -> TransitionOutcome:
            repo = ExpenseRepository(session)
            found = await repo.get_with_team_name(expense_id)
            if found is None:
                raise NotFoundError("Expense not found")
            expense, team_name = found

            previous = ExpenseStatus(expense.status)
            status_changed = target is not None and target != previous
            decision = status_changed and target in DECISIONS
            if decision and edits:
                raise InvalidTransitionError(
                    "Cannot edit expense fields while recording an approval decision",
                    detail=f"Fields {sorted(edits)} were sent with status {target.value}"
                )

            was_approved = previous is ExpenseStatus.APPROVED
            old_amount = expense.amount

            for name, value in edits.items():
                if name == "amount":
                    value = round2(value)
                elif name == "category":
                    value = value.value
                elif name == "date":
                    value = as_utc(value)
                setattr(expense, name, value)

            if status_changed:
                expense.status = target.value
                if decision:
                    approver = changes.approved_by or Person(
                        name=settings.SYSTEM_APPROVER_NAME,
                        email=settings.SYSTEM_APPROVER_EMAIL
                    )
                    expense.approved_by_name = approver.name
                    expense.approved_by_email = approver.email
                    expense.approved_at = dt.datetime.now(dt.timezone.utc)
                else:
                    expense.approved_by_name = None
                    expense.approved_by_email = None
                    expense.approved_at = None

            now_approved = ExpenseStatus(expense.status) is ExpenseStatus.APPROVED
            delta = round2(
                (expense.amount if now_approved else 0.0) - (old_amount if was_approved else 0.0)
            )

            ledger_update = None
            if delta != 0:
                ledger_update = await self.ledger.apply_delta(
                    session, expense.team_id, delta, evaluate_alerts=delta > 0
                )

            await repo.save(expense)
            return TransitionOutcome(
                expense=ExpenseResponse.from_model(expense, team_name=team_name),
                previous_status=previous,
                status_changed=status_changed,
                decision=decision,
                ledger=ledger_update,
            )

        with tracer.start_as_current_span("expense_update") as span:
            span.set_attribute("expense_id", expense_id)
            span.set_attribute("target_status", target.value if target else "")
            outcome = await self.ledger.run_locked(team_id, "update_expense", _apply)

        if outcome.status_changed:
            expense_transitions_total.labels(
                from_status=outcome.previous_status.value,
                to_status=outcome.expense.status.value
            ).inc()
        logger.info(
            "Expense updated",
            expense_id=expense_id,
            team_id=team_id,
            from_status=outcome.previous_status.value,
            to_status=outcome.expense.status.value,
            edited=sorted(edits),
            delta=outcome.ledger.drift if outcome.ledger else 0.0
        )
        return outcome

    async def _after_commit(self, outcome: TransitionOutcome) -> None:
        """Dispatch the claimed alert, then notify the submitter of a decision."""
        if outcome.ledger is not None and outcome.ledger.alert is not None:
            await self.ledger.dispatch_alert(outcome.ledger)

        if outcome.decision:
            expense = outcome.expense
            await self.notifier.send_expense_decision(
                DecisionNotice(
                    expense_id=expense.id,
                    amount=expense.amount,
                    description=expense.description,
                    category=expense.category.value,
                    date=expense.date,
                    approved=expense.status is ExpenseStatus.APPROVED,
                    submitter_name=expense.submitted_by.name,
                    submitter_email=expense.submitted_by.email,
                    approver_name=expense.approved_by.name if expense.approved_by else settings.SYSTEM_APPROVER_NAME,
                )
            )
