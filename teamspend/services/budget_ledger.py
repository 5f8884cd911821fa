# ==== BUDGET LEDGER ==== #

"""
Budget ledger for team spending aggregates.

The ledger owns ``teams.current_spending`` and the two threshold alert
latches. Every write goes through a compare-and-set on ``teams.version``,
and in-process writers on the same team are additionally serialized by a
per-team asyncio.Lock. A lost compare-and-set raises LedgerConflictError;
run_locked() retries the whole unit of work in a fresh session and turns
exhausted retries into LedgerUnavailableError.

Alerts are claimed inside the same write that moves the spending (the latch
flips to true together with the new amount) and dispatched only after the
transaction committed. A failed dispatch releases the latch again so the
alert stays eligible for the next evaluation.
"""

import asyncio
import weakref
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from teamspend.settings import settings
from teamspend.observability.logging import get_logger
from teamspend.observability.metrics import (
    budget_alerts_total,
    ledger_conflicts_exhausted_total,
    ledger_conflicts_total,
    ledger_deltas_total,
    ledger_drift_corrections_total,
    team_utilization_percent
)
from teamspend.observability.tracing import get_tracer
from teamspend.resilience.retry_policies import create_ledger_retry_policy, retry_async_operation
from teamspend.schemas.team import AlertType
from teamspend.services.errors import LedgerConflictError, LedgerUnavailableError, NotFoundError
from teamspend.services.money import round2
from teamspend.services.notifications import (
    BudgetAlertNotice,
    NotificationDispatcher,
    get_notification_dispatcher
)
from teamspend.storage.db import get_session
from teamspend.storage.repository import ExpenseRepository, TeamRepository


logger = get_logger(__name__)
tracer = get_tracer(__name__)

T = TypeVar("T")


# ==== LEDGER RESULT ==== #


@dataclass
class LedgerUpdate:
    """Team aggregate as written by one ledger operation."""
    team_id: int
    team_name: str
    budget: float
    previous_spending: float
    current_spending: float
    utilization: float
    eighty_percent_sent: bool
    hundred_percent_sent: bool
    alert: Optional[AlertType] = None
    recipients: List[str] = field(default_factory=list)

    @property
    def drift(self) -> float:
        return round2(self.current_spending - self.previous_spending)


# ==== BUDGET LEDGER ==== #


class BudgetLedger:
    """Keeps team spending consistent with approved expenses and gates alerts."""

    def __init__(self, notifier: Optional[NotificationDispatcher] = None):
        self._notifier = notifier
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()
        self.retry_policy = create_ledger_retry_policy()

    @property
    def notifier(self) -> NotificationDispatcher:
        if self._notifier is None:
            self._notifier = get_notification_dispatcher()
        return self._notifier

    def team_lock(self, team_id: int) -> asyncio.Lock:
        """Lock serializing read-modify-write sequences on one team."""
        lock = self._locks.get(team_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[team_id] = lock
        return lock

    # --► PURE BUDGET MATH

    @staticmethod
    def utilization(spending: float, budget: float) -> float:
        """Percentage of budget consumed; a zero budget counts as 0%."""
        if budget <= 0:
            return 0.0
        return spending / budget * 100

    @staticmethod
    def evaluate_alerts(
        utilization: float,
        eighty_percent_sent: bool,
        hundred_percent_sent: bool
    ) -> Optional[AlertType]:
        """
        Pick at most one alert to fire for the given utilization.

        Thresholds are inclusive. The hundred-percent alert wins while its
        latch is clear; once it is latched the warning alert is still
        eligible, so a jump straight past the limit sends the warning on
        the next evaluation.

        Returns:
            Optional[AlertType]: Alert whose latch should be claimed, if any
        """
        if utilization >= settings.BUDGET_LIMIT_PERCENT and not hundred_percent_sent:
            return AlertType.HUNDRED_PERCENT
        if utilization >= settings.BUDGET_WARN_PERCENT and not eighty_percent_sent:
            return AlertType.EIGHTY_PERCENT
        return None

    # --► AGGREGATE WRITES (CALLER OWNS THE SESSION)

    async def apply_delta(
        self,
        session: AsyncSession,
        team_id: int,
        signed_amount: float,
        evaluate_alerts: bool = False
    ) -> LedgerUpdate:
        """
        Add ``signed_amount`` to a team's current spending.

        The result is floored at zero. Must run inside run_locked() so a lost
        compare-and-set is retried with a fresh read.

        Args:
            session: Session of the surrounding unit of work
            team_id: Team whose aggregate moves
            signed_amount: Positive when an expense enters approved, negative when it leaves
            evaluate_alerts: Claim a threshold alert in the same write

        Returns:
            LedgerUpdate: Aggregate after the write

        Raises:
            NotFoundError: Team does not exist
            LedgerConflictError: Another writer changed the team concurrently
        """
        row = await TeamRepository(session).read_aggregate(team_id)
        if row is None:
            raise NotFoundError("Team not found")

        new_spending = max(0.0, round2(row.current_spending + signed_amount))
        update = await self._write(session, row, new_spending, evaluate_alerts)

        direction = "increase" if signed_amount > 0 else "decrease" if signed_amount < 0 else "zero"
        ledger_deltas_total.labels(direction=direction).inc()
        logger.info(
            "Ledger delta applied",
            team_id=team_id,
            delta=signed_amount,
            old_spending=row.current_spending,
            new_spending=new_spending,
            utilization=round(update.utilization, 2),
            alert_claimed=update.alert.value if update.alert else None
        )
        return update

    async def recompute(
        self,
        session: AsyncSession,
        team_id: int,
        evaluate_alerts: bool = False
    ) -> LedgerUpdate:
        """
        Overwrite the cached spending with the sum of approved expenses.

        The row is only written when the cache drifted or an alert is claimed.

        Raises:
            NotFoundError: Team does not exist
            LedgerConflictError: Another writer changed the team concurrently
        """
        row = await TeamRepository(session).read_aggregate(team_id)
        if row is None:
            raise NotFoundError("Team not found")

        total = round2(await ExpenseRepository(session).sum_approved(team_id))
        utilization = self.utilization(total, row.budget)
        alert = None
        if evaluate_alerts:
            alert = self.evaluate_alerts(utilization, row.eighty_percent_sent, row.hundred_percent_sent)

        if total == round2(row.current_spending) and alert is None:
            return self._snapshot(row, total, utilization, None)

        update = await self._write(session, row, total, evaluate_alerts)
        if update.drift != 0:
            ledger_drift_corrections_total.inc()
            logger.warning(
                "Spending drift corrected",
                team_id=team_id,
                old_spending=row.current_spending,
                new_spending=total,
                drift=update.drift
            )
        return update

    # --► UNIT OF WORK

    async def run_locked(
        self,
        team_id: int,
        operation_name: str,
        fn: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        """
        Run ``fn`` in its own transaction under the team lock, retrying conflicts.

        Each attempt gets a fresh session, so everything ``fn`` wrote in a
        losing attempt is rolled back before the retry.

        Raises:
            LedgerUnavailableError: Conflict retries were exhausted
        """
        with tracer.start_as_current_span(f"ledger_{operation_name}") as span:
            span.set_attribute("team_id", team_id)
            async with self.team_lock(team_id):
                try:
                    return await retry_async_operation(
                        self._in_transaction,
                        self.retry_policy,
                        operation_name,
                        fn
                    )
                except LedgerConflictError as e:
                    ledger_conflicts_exhausted_total.labels(operation=operation_name).inc()
                    span.set_status(trace.Status(trace.StatusCode.ERROR, "conflict retries exhausted"))
                    logger.error(
                        "Ledger conflict retries exhausted",
                        team_id=team_id,
                        operation=operation_name,
                        seen_version=e.seen_version
                    )
                    raise LedgerUnavailableError(
                        "Team budget is being updated concurrently, try again",
                        detail=str(e)
                    ) from e

    async def _in_transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with get_session() as session:
            return await fn(session)

    # --► ALERT DISPATCH

    async def dispatch_alert(self, update: LedgerUpdate) -> bool:
        """
        Deliver the alert claimed by ``update`` and settle its latch.

        Must be called after the claiming transaction committed. On failure
        the latch is released and ``update`` is changed to match. A failed
        release is logged and counted; the latch then stays set.

        Returns:
            bool: True if the alert was delivered
        """
        if update.alert is None:
            return False

        alert = update.alert
        delivered = await self.notifier.send_budget_alert(
            BudgetAlertNotice(
                team_id=update.team_id,
                team_name=update.team_name,
                budget=update.budget,
                spending=update.current_spending,
                utilization=round(update.utilization, 2),
                alert_type=alert,
                recipients=update.recipients,
            )
        )
        if delivered:
            budget_alerts_total.labels(alert_type=alert.value, outcome="sent").inc()
            logger.info("Budget alert sent", team_id=update.team_id, alert_type=alert.value)
            return True

        try:
            async with get_session() as session:
                released = await TeamRepository(session).release_latch(update.team_id, alert.latch_column)
        except SQLAlchemyError as e:
            budget_alerts_total.labels(alert_type=alert.value, outcome="release_failed").inc()
            logger.error(
                "Budget alert not delivered and latch release failed",
                team_id=update.team_id,
                alert_type=alert.value,
                error=str(e)
            )
            return False

        setattr(update, alert.latch_column, False)
        budget_alerts_total.labels(alert_type=alert.value, outcome="released").inc()
        logger.warning(
            "Budget alert not delivered, latch released",
            team_id=update.team_id,
            alert_type=alert.value,
            released=released
        )
        return False

    # --► RECONCILIATION

    async def reconcile(self, team_id: int) -> LedgerUpdate:
        """Recompute one team's spending, evaluate alerts and dispatch any claimed one."""
        update = await self.run_locked(
            team_id,
            "reconcile",
            lambda session: self.recompute(session, team_id, evaluate_alerts=True)
        )
        if update.alert is not None and not await self.dispatch_alert(update):
            update.alert = None
        return update

    async def reconcile_all(self) -> List[LedgerUpdate]:
        """Reconcile every team, one at a time."""
        async with get_session() as session:
            team_ids = await TeamRepository(session).list_ids()

        results = []
        for team_id in team_ids:
            try:
                results.append(await self.reconcile(team_id))
            except NotFoundError:
                # Deleted after the id listing
                continue
        logger.info("Reconciled all teams", team_count=len(results))
        return results

    # ==== INTERNAL HELPER METHODS ==== #

    async def _write(
        self,
        session: AsyncSession,
        row,
        new_spending: float,
        evaluate_alerts: bool
    ) -> LedgerUpdate:
        utilization = self.utilization(new_spending, row.budget)
        alert = None
        if evaluate_alerts:
            alert = self.evaluate_alerts(utilization, row.eighty_percent_sent, row.hundred_percent_sent)

        values = {"current_spending": new_spending}
        if alert is not None:
            values[alert.latch_column] = True

        if not await TeamRepository(session).compare_and_set(row.id, row.version, values):
            ledger_conflicts_total.labels(operation="write").inc()
            logger.debug("Ledger compare-and-set lost", team_id=row.id, seen_version=row.version)
            raise LedgerConflictError(row.id, row.version)

        team_utilization_percent.labels(team_id=str(row.id)).set(utilization)
        return self._snapshot(row, new_spending, utilization, alert)

    def _snapshot(self, row, spending: float, utilization: float, alert: Optional[AlertType]) -> LedgerUpdate:
        return LedgerUpdate(
            team_id=row.id,
            team_name=row.name,
            budget=row.budget,
            previous_spending=row.current_spending,
            current_spending=spending,
            utilization=utilization,
            eighty_percent_sent=row.eighty_percent_sent or alert is AlertType.EIGHTY_PERCENT,
            hundred_percent_sent=row.hundred_percent_sent or alert is AlertType.HUNDRED_PERCENT,
            alert=alert,
            recipients=[m["email"] for m in (row.members or []) if m.get("email")],
        )


# ==== GLOBAL INSTANCE ==== #

_budget_ledger: Optional[BudgetLedger] = None


def get_budget_ledger() -> BudgetLedger:
    """Get the shared budget ledger instance."""
    global _budget_ledger
    if _budget_ledger is None:
        _budget_ledger = BudgetLedger()
    return _budget_ledger
