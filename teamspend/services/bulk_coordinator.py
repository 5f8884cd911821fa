# ==== BULK DECISION COORDINATOR ==== #

"""
Apply one approve/reject decision to a batch of expenses.

Every id must exist before anything is written. Expenses of one team are
decided one after another; different teams run concurrently since they
never share a ledger lock. Items that still fail after the ledger's own
conflict retries, or whose team group breaks off with an unexpected
error, are reported back instead of aborting the batch.
"""

import asyncio
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Set

from teamspend.observability.logging import get_logger
from teamspend.observability.metrics import bulk_decisions_total
from teamspend.observability.tracing import get_tracer
from teamspend.schemas.expense import BulkAction, BulkActionResponse, ExpenseStatus, Person
from teamspend.services.errors import LedgerUnavailableError, NotFoundError, ValidationFailedError
from teamspend.services.expense_state_machine import ExpenseStateMachine
from teamspend.storage.db import get_session
from teamspend.storage.repository import ExpenseRepository


logger = get_logger(__name__)
tracer = get_tracer(__name__)

ACTION_TARGETS = {
    BulkAction.APPROVE: ExpenseStatus.APPROVED,
    BulkAction.REJECT: ExpenseStatus.REJECTED,
}


class BulkCoordinator:
    """Fans a decision out over expenses, grouped by team."""

    def __init__(self, state_machine: ExpenseStateMachine):
        self.state_machine = state_machine

    async def bulk_decision(
        self,
        expense_ids: Sequence[int],
        action: BulkAction,
        approver: Optional[Person] = None
    ) -> BulkActionResponse:
        """
        Approve or reject every expense in ``expense_ids``.

        Args:
            expense_ids: Expenses to decide; duplicates are ignored
            action: Decision to record
            approver: Approver identity, system approver when omitted

        Returns:
            BulkActionResponse: Count of decided expenses and ids that failed

        Raises:
            ValidationFailedError: Some ids do not exist; nothing was changed
        """
        ids = list(dict.fromkeys(expense_ids))
        target = ACTION_TARGETS[action]

        async with get_session() as session:
            team_of = await ExpenseRepository(session).team_ids_for(ids)

        missing = [i for i in ids if i not in team_of]
        if missing:
            bulk_decisions_total.labels(action=action.value, outcome="rejected_batch").inc()
            raise ValidationFailedError(
                "Some expenses not found",
                detail=f"Unknown expense ids: {missing}"
            )

        by_team: Dict[int, List[int]] = defaultdict(list)
        for expense_id in ids:
            by_team[team_of[expense_id]].append(expense_id)

        decided: Set[int] = set()
        groups = list(by_team.values())

        with tracer.start_as_current_span("bulk_decision") as span:
            span.set_attribute("action", action.value)
            span.set_attribute("expense_count", len(ids))
            span.set_attribute("team_count", len(by_team))

            results = await asyncio.gather(
                *(self._decide_team(team_ids, target, approver, decided) for team_ids in groups),
                return_exceptions=True
            )

        failed: List[int] = []
        for team_ids, result in zip(groups, results):
            if isinstance(result, BaseException):
                undecided = [i for i in team_ids if i not in decided]
                logger.error(
                    "Bulk team group aborted",
                    expense_ids=undecided,
                    target=target.value,
                    error=repr(result)
                )
                failed.extend(undecided)
            else:
                failed.extend(result)

        updated = len(decided)

        bulk_decisions_total.labels(action=action.value, outcome="succeeded").inc(updated)
        if failed:
            bulk_decisions_total.labels(action=action.value, outcome="failed").inc(len(failed))
        logger.info(
            "Bulk decision finished",
            action=action.value,
            requested=len(ids),
            updated=updated,
            failed_ids=failed
        )
        return BulkActionResponse(
            message=f"{updated} expenses {target.value} successfully",
            updated_count=updated,
            failed_ids=failed,
        )

    async def _decide_team(
        self,
        expense_ids: List[int],
        target: ExpenseStatus,
        approver: Optional[Person],
        decided: Set[int]
    ) -> List[int]:
        failed: List[int] = []
        for expense_id in expense_ids:
            try:
                await self.state_machine.transition(expense_id, target, approver)
                decided.add(expense_id)
            except (LedgerUnavailableError, NotFoundError) as e:
                failed.append(expense_id)
                logger.warning(
                    "Bulk item failed",
                    expense_id=expense_id,
                    target=target.value,
                    error=str(e)
                )
        return failed
