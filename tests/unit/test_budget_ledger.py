# ==== BUDGET LEDGER TESTS ==== #

"""
Unit tests for the budget ledger.

Covers the alert threshold rules, delta application with its zero floor,
compare-and-set conflict handling, reconciliation of a drifted cache and
latch release when an alert cannot be delivered.
"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from teamspend.schemas.team import AlertType
from teamspend.services.budget_ledger import BudgetLedger
from teamspend.services.errors import LedgerUnavailableError, NotFoundError
from teamspend.services.team_service import TeamService
from teamspend.settings import settings
from teamspend.storage.repository import TeamRepository


# ==== PURE BUDGET MATH ==== #


@pytest.mark.unit
class TestAlertEvaluation:
    """Threshold selection from utilization and latch state."""

    @pytest.mark.parametrize("utilization,eighty_sent,hundred_sent,expected", [
        (0.0, False, False, None),
        (79.99, False, False, None),
        (80.0, False, False, AlertType.EIGHTY_PERCENT),
        (95.0, False, False, AlertType.EIGHTY_PERCENT),
        (95.0, True, False, None),
        (100.0, False, False, AlertType.HUNDRED_PERCENT),
        (110.0, True, False, AlertType.HUNDRED_PERCENT),
        (110.0, False, True, AlertType.EIGHTY_PERCENT),
        (110.0, True, True, None),
    ])
    def test_evaluate_alerts(self, utilization, eighty_sent, hundred_sent, expected):
        assert BudgetLedger.evaluate_alerts(utilization, eighty_sent, hundred_sent) is expected

    def test_limit_alert_takes_precedence_over_warning(self):
        """With both latches clear, a jump past 100% picks the hundred-percent alert first."""
        assert BudgetLedger.evaluate_alerts(150.0, False, False) is AlertType.HUNDRED_PERCENT

    def test_warning_still_due_once_limit_is_latched(self):
        assert BudgetLedger.evaluate_alerts(150.0, False, True) is AlertType.EIGHTY_PERCENT

    @pytest.mark.parametrize("spending,budget,expected", [
        (0.0, 1000.0, 0.0),
        (800.0, 1000.0, 80.0),
        (1100.0, 1000.0, 110.0),
        (500.0, 0.0, 0.0),
    ])
    def test_utilization(self, spending, budget, expected):
        assert BudgetLedger.utilization(spending, budget) == pytest.approx(expected)


# ==== DELTA APPLICATION ==== #


@pytest.mark.unit
class TestApplyDelta:
    """apply_delta inside run_locked."""

    @pytest.mark.asyncio
    async def test_increase_and_decrease(self, ledger, make_team, read_team):
        team_id = await make_team(budget=1000.0)

        await ledger.run_locked(team_id, "test", lambda s: ledger.apply_delta(s, team_id, 250.0))
        update = await ledger.run_locked(team_id, "test", lambda s: ledger.apply_delta(s, team_id, -100.0))

        assert update.previous_spending == 250.0
        assert update.current_spending == 150.0
        assert update.drift == -100.0
        team = await read_team(team_id)
        assert team.current_spending == 150.0
        assert team.version == 2

    @pytest.mark.asyncio
    async def test_spending_is_floored_at_zero(self, ledger, make_team, read_team):
        team_id = await make_team()

        update = await ledger.run_locked(team_id, "test", lambda s: ledger.apply_delta(s, team_id, -75.0))

        assert update.current_spending == 0.0
        assert (await read_team(team_id)).current_spending == 0.0

    @pytest.mark.asyncio
    async def test_alert_claimed_in_same_write(self, ledger, make_team, read_team):
        team_id = await make_team(budget=1000.0)

        update = await ledger.run_locked(
            team_id, "test", lambda s: ledger.apply_delta(s, team_id, 850.0, evaluate_alerts=True)
        )

        assert update.alert is AlertType.EIGHTY_PERCENT
        assert update.eighty_percent_sent is True
        assert update.recipients == ["ana@example.com", "ben@example.com"]
        team = await read_team(team_id)
        assert team.current_spending == 850.0
        assert team.eighty_percent_sent is True
        assert team.hundred_percent_sent is False

    @pytest.mark.asyncio
    async def test_no_alert_without_evaluation(self, ledger, make_team, read_team):
        team_id = await make_team(budget=100.0)

        update = await ledger.run_locked(team_id, "test", lambda s: ledger.apply_delta(s, team_id, 150.0))

        assert update.alert is None
        assert (await read_team(team_id)).hundred_percent_sent is False

    @pytest.mark.asyncio
    async def test_unknown_team(self, ledger, database):
        with pytest.raises(NotFoundError):
            await ledger.run_locked(999, "test", lambda s: ledger.apply_delta(s, 999, 10.0))


# ==== CONFLICT HANDLING ==== #


@pytest.mark.unit
class TestConflicts:
    """Compare-and-set conflicts and their retry budget."""

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_unavailable(self, ledger, make_team, read_team, monkeypatch):
        team_id = await make_team()
        calls = []

        async def always_lose(self, team_id, seen_version, values):
            calls.append(seen_version)
            return False

        monkeypatch.setattr(TeamRepository, "compare_and_set", always_lose)

        with pytest.raises(LedgerUnavailableError) as exc_info:
            await ledger.run_locked(team_id, "test", lambda s: ledger.apply_delta(s, team_id, 10.0))

        assert exc_info.value.status_code == 503
        assert len(calls) == settings.LEDGER_MAX_RETRIES
        assert (await read_team(team_id)).current_spending == 0.0

    @pytest.mark.asyncio
    async def test_conflict_then_success_applies_once(self, ledger, make_team, read_team, monkeypatch):
        team_id = await make_team()
        original = TeamRepository.compare_and_set
        calls = []

        async def lose_twice(self, team_id, seen_version, values):
            calls.append(seen_version)
            if len(calls) <= 2:
                return False
            return await original(self, team_id, seen_version, values)

        monkeypatch.setattr(TeamRepository, "compare_and_set", lose_twice)

        update = await ledger.run_locked(team_id, "test", lambda s: ledger.apply_delta(s, team_id, 40.0))

        assert len(calls) == 3
        assert update.current_spending == 40.0
        assert (await read_team(team_id)).current_spending == 40.0

    @pytest.mark.asyncio
    async def test_concurrent_deltas_on_one_ledger(self, ledger, make_team, read_team):
        team_id = await make_team(budget=100000.0)

        await asyncio.gather(*(
            ledger.run_locked(team_id, "test", lambda s: ledger.apply_delta(s, team_id, 25.0))
            for _ in range(20)
        ))

        team = await read_team(team_id)
        assert team.current_spending == 500.0
        assert team.version == 20

    @pytest.mark.asyncio
    async def test_concurrent_deltas_from_two_ledgers(self, notifier, make_team, read_team):
        """Two ledgers do not share locks, so only the version check keeps them consistent."""
        team_id = await make_team(budget=100000.0)
        first = BudgetLedger(notifier=notifier)
        second = BudgetLedger(notifier=notifier)

        async def add_many(ledger):
            for _ in range(5):
                await ledger.run_locked(team_id, "test", lambda s: ledger.apply_delta(s, team_id, 10.0))

        await asyncio.gather(add_many(first), add_many(second))

        assert (await read_team(team_id)).current_spending == 100.0


# ==== RECONCILIATION ==== #


@pytest.mark.unit
class TestReconcile:
    """Recompute cached spending from approved expenses."""

    @pytest.mark.asyncio
    async def test_drift_is_corrected(self, ledger, make_team, make_expense, read_team):
        team_id = await make_team(budget=1000.0)
        await make_expense(team_id, amount=120.0, status="approved")
        await make_expense(team_id, amount=80.0, status="approved")
        await make_expense(team_id, amount=300.0, status="pending")
        await make_expense(team_id, amount=45.0, status="rejected")

        update = await ledger.reconcile(team_id)

        assert update.previous_spending == 0.0
        assert update.current_spending == 200.0
        assert update.drift == 200.0
        assert (await read_team(team_id)).current_spending == 200.0

    @pytest.mark.asyncio
    async def test_consistent_cache_is_not_rewritten(self, ledger, make_team, read_team):
        team_id = await make_team()

        update = await ledger.reconcile(team_id)

        assert update.drift == 0.0
        assert (await read_team(team_id)).version == 0

    @pytest.mark.asyncio
    async def test_reconcile_dispatches_due_alert(self, ledger, transport, make_team, make_expense, read_team):
        team_id = await make_team(name="Research", budget=500.0)
        await make_expense(team_id, amount=520.0, status="approved")

        update = await ledger.reconcile(team_id)

        assert update.alert is AlertType.HUNDRED_PERCENT
        assert transport.subjects() == ["URGENT: Research has exceeded budget limit"]
        team = await read_team(team_id)
        assert team.hundred_percent_sent is True
        assert team.eighty_percent_sent is False

    @pytest.mark.asyncio
    async def test_reconcile_all_covers_every_team(self, ledger, make_team, make_expense):
        first = await make_team(name="Alpha")
        second = await make_team(name="Beta")
        await make_expense(second, amount=60.0, status="approved")

        updates = await ledger.reconcile_all()

        by_team = {u.team_id: u for u in updates}
        assert set(by_team) == {first, second}
        assert by_team[first].drift == 0.0
        assert by_team[second].drift == 60.0


# ==== ALERT DISPATCH ==== #


@pytest.mark.unit
class TestAlertDispatch:
    """Delivery outcome settles the latch."""

    @pytest.mark.asyncio
    async def test_failed_delivery_releases_latch(self, ledger, transport, make_team, read_team):
        team_id = await make_team(budget=1000.0)
        transport.fail = True

        update = await ledger.run_locked(
            team_id, "test", lambda s: ledger.apply_delta(s, team_id, 900.0, evaluate_alerts=True)
        )
        delivered = await ledger.dispatch_alert(update)

        assert delivered is False
        assert update.eighty_percent_sent is False
        team = await read_team(team_id)
        assert team.eighty_percent_sent is False
        assert team.current_spending == 900.0

    @pytest.mark.asyncio
    async def test_failed_latch_release_does_not_raise(
        self, ledger, transport, monkeypatch, make_team, read_team
    ):
        team_id = await make_team(budget=1000.0)
        transport.fail = True

        async def broken_release(self, team_id, latch_column):
            raise OperationalError("UPDATE teams", {}, Exception("database is locked"))

        monkeypatch.setattr(TeamRepository, "release_latch", broken_release)

        update = await ledger.run_locked(
            team_id, "test", lambda s: ledger.apply_delta(s, team_id, 900.0, evaluate_alerts=True)
        )
        delivered = await ledger.dispatch_alert(update)

        assert delivered is False
        assert update.eighty_percent_sent is True
        team = await read_team(team_id)
        assert team.current_spending == 900.0
        assert team.eighty_percent_sent is True

    @pytest.mark.asyncio
    async def test_released_alert_is_sent_on_next_status_check(
        self, ledger, transport, make_team, make_expense, read_team
    ):
        team_id = await make_team(name="Ops", budget=1000.0)
        await make_expense(team_id, amount=900.0, status="approved")
        transport.fail = True
        update = await ledger.run_locked(
            team_id, "test", lambda s: ledger.apply_delta(s, team_id, 900.0, evaluate_alerts=True)
        )
        await ledger.dispatch_alert(update)

        transport.fail = False
        status = await TeamService(ledger=ledger).budget_status(team_id)

        assert status.alert_status.eighty_percent_sent is True
        assert transport.subjects("Budget Alert") == ["Budget Alert: Ops has reached 80% of budget"]
        assert (await read_team(team_id)).eighty_percent_sent is True

    @pytest.mark.asyncio
    async def test_team_without_members_keeps_alert_eligible(self, ledger, transport, make_team, read_team):
        team_id = await make_team(budget=100.0, members=[])

        update = await ledger.run_locked(
            team_id, "test", lambda s: ledger.apply_delta(s, team_id, 100.0, evaluate_alerts=True)
        )
        delivered = await ledger.dispatch_alert(update)

        assert delivered is False
        assert transport.sent == []
        assert (await read_team(team_id)).hundred_percent_sent is False

    @pytest.mark.asyncio
    async def test_nothing_to_dispatch(self, ledger, transport, make_team):
        team_id = await make_team()
        update = await ledger.run_locked(team_id, "test", lambda s: ledger.apply_delta(s, team_id, 10.0))

        assert await ledger.dispatch_alert(update) is False
        assert transport.sent == []
