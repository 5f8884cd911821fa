# ==== EXPENSE API INTEGRATION TESTS ==== #

"""
End-to-end tests of the expense endpoints over the ASGI app.

Requests go through routing, validation, the services and a real SQLite
database; only email delivery and the advisory provider are faked.
"""

import datetime as dt

import pytest

from teamspend.services.expense_state_machine import ExpenseStateMachine
from teamspend.storage import redis as redis_module


SUBMITTER = {"name": "Cleo Submitter", "email": "cleo@example.com"}
APPROVER = {"name": "Ana Lead", "email": "ana@example.com"}


class FakeRedis:
    """Minimal async Redis stand-in keeping values in a dict."""

    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        return True


async def submit(client, team_id, amount=100.0, description="Taxi to client office", category="Travel"):
    response = await client.post("/api/expenses", json={
        "team": team_id,
        "description": description,
        "amount": amount,
        "category": category,
        "date": "2024-09-03T10:00:00Z",
        "submittedBy": SUBMITTER,
    })
    assert response.status_code == 201, response.text
    return response.json()["expense"]["id"]


# ==== SUBMISSION AND READS ==== #


@pytest.mark.integration
class TestExpenseCrud:

    @pytest.mark.asyncio
    async def test_submit_expense(self, client, make_team):
        team_id = await make_team()

        response = await client.post("/api/expenses", json={
            "team": team_id,
            "description": "Flight to Berlin",
            "amount": 320.0,
            "category": "Travel",
            "submittedBy": SUBMITTER,
        })

        assert response.status_code == 201
        body = response.json()
        assert body["expense"]["status"] == "pending"
        assert body["expense"]["teamName"] == "Platform"
        assert body["expense"]["submittedBy"] == SUBMITTER
        assert body["expense"]["approvedBy"] is None
        assert body["aiSuggestion"] == {"category": "Travel"}
        assert body["duplicateWarning"]["isDuplicate"] is False

    @pytest.mark.asyncio
    async def test_submit_for_unknown_team(self, client):
        response = await client.post("/api/expenses", json={
            "team": 999,
            "description": "Flight",
            "amount": 10.0,
            "category": "Travel",
            "submittedBy": SUBMITTER,
        })

        assert response.status_code == 400
        assert response.json()["message"] == "Team not found"

    @pytest.mark.asyncio
    async def test_invalid_payload_uses_error_envelope(self, client, make_team):
        team_id = await make_team()

        response = await client.post(
            "/api/expenses",
            json={"team": team_id, "description": "", "amount": -5, "category": "Snacks", "submittedBy": SUBMITTER},
            headers={"X-Correlation-Id": "req-123"},
        )

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["correlation_id"] == "req-123"
        assert {tuple(err["loc"])[-1] for err in body["detail"]} >= {"description", "amount", "category"}

    @pytest.mark.asyncio
    async def test_non_finite_amount_rejected(self, client, make_team, read_expense):
        team_id = await make_team()
        body = (
            '{"team": %d, "description": "Huge invoice", "amount": 1e999, "category": "Travel",'
            ' "submittedBy": {"name": "Cleo Submitter", "email": "cleo@example.com"}}' % team_id
        )

        response = await client.post("/api/expenses", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert [err["loc"][-1] for err in response.json()["detail"]] == ["amount"]

        expense_id = await submit(client, team_id)
        edited = await client.put(
            f"/api/expenses/{expense_id}", content='{"amount": NaN}', headers={"Content-Type": "application/json"}
        )
        assert edited.status_code == 422
        assert (await read_expense(expense_id)).amount == 100.0

    @pytest.mark.asyncio
    async def test_get_and_delete(self, client, make_team):
        team_id = await make_team()
        expense_id = await submit(client, team_id)

        fetched = await client.get(f"/api/expenses/{expense_id}")
        assert fetched.status_code == 200
        assert fetched.json()["description"] == "Taxi to client office"

        deleted = await client.delete(f"/api/expenses/{expense_id}")
        assert deleted.json() == {"message": "Expense deleted successfully"}

        missing = await client.get(f"/api/expenses/{expense_id}")
        assert missing.status_code == 404
        assert missing.json()["code"] == "NOT_FOUND"
        assert missing.json()["message"] == "Expense not found"

    @pytest.mark.asyncio
    async def test_list_filters_and_pagination(self, client, make_team, make_expense):
        team_id = await make_team()
        other = await make_team(name="Design")
        for amount in (30.0, 10.0, 20.0):
            await make_expense(team_id, amount=amount, status="approved")
        await make_expense(team_id, amount=99.0, description="Hotel night", category="Travel")
        await make_expense(other, amount=5.0, status="approved", category="Meals")

        response = await client.get("/api/expenses", params={
            "team": team_id, "status": "approved", "sortBy": "amount", "sortOrder": "asc", "limit": 2,
        })
        body = response.json()
        assert [e["amount"] for e in body["expenses"]] == [10.0, 20.0]
        assert body["pagination"] == {"total": 3, "page": 1, "limit": 2, "pages": 2}

        second_page = await client.get("/api/expenses", params={
            "team": team_id, "status": "approved", "sortBy": "amount", "sortOrder": "asc", "limit": 2, "page": 2,
        })
        assert [e["amount"] for e in second_page.json()["expenses"]] == [30.0]

        searched = await client.get("/api/expenses", params={"search": "HOTEL"})
        assert [e["description"] for e in searched.json()["expenses"]] == ["Hotel night"]

        meals = await client.get("/api/expenses", params={"category": "Meals"})
        assert [e["teamName"] for e in meals.json()["expenses"]] == ["Design"]

    @pytest.mark.asyncio
    async def test_unknown_sort_column_rejected(self, client, database):
        response = await client.get("/api/expenses", params={"sortBy": "amount; drop table"})
        assert response.status_code == 422


# ==== DECISIONS ==== #


@pytest.mark.integration
class TestExpenseDecisions:

    @pytest.mark.asyncio
    async def test_approve_updates_team_spending(self, client, transport, make_team):
        team_id = await make_team(budget=1000.0)
        expense_id = await submit(client, team_id, amount=250.0)

        response = await client.put(f"/api/expenses/{expense_id}", json={"status": "approved", "approvedBy": APPROVER})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "approved"
        assert body["approvedBy"]["name"] == "Ana Lead"
        assert body["approvedBy"]["approvedAt"]
        team = (await client.get(f"/api/teams/{team_id}")).json()
        assert team["currentSpending"] == 250.0
        assert transport.subjects("Expense Approved") == ["Expense Approved: $250.00 - Taxi to client office"]

    @pytest.mark.asyncio
    async def test_decision_with_edit_rejected(self, client, make_team):
        team_id = await make_team()
        expense_id = await submit(client, team_id)

        response = await client.put(
            f"/api/expenses/{expense_id}", json={"status": "approved", "amount": 10.0}
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_TRANSITION"

    @pytest.mark.asyncio
    async def test_crossing_thresholds_sends_alerts(self, client, transport, make_team, read_team):
        team_id = await make_team(name="Growth", budget=1000.0)
        first = await submit(client, team_id, amount=800.0)
        second = await submit(client, team_id, amount=300.0, description="Conference tickets")

        await client.put(f"/api/expenses/{first}", json={"status": "approved", "approvedBy": APPROVER})
        await client.put(f"/api/expenses/{second}", json={"status": "approved", "approvedBy": APPROVER})

        assert transport.subjects("Budget Alert") == ["Budget Alert: Growth has reached 80% of budget"]
        assert transport.subjects("URGENT") == ["URGENT: Growth has exceeded budget limit"]
        team = await read_team(team_id)
        assert team.current_spending == 1100.0
        assert team.eighty_percent_sent and team.hundred_percent_sent

    @pytest.mark.asyncio
    async def test_bulk_approve(self, client, make_team, read_team):
        platform = await make_team()
        design = await make_team(name="Design")
        ids = [
            await submit(client, platform, amount=100.0),
            await submit(client, platform, amount=50.0),
            await submit(client, design, amount=25.0),
        ]

        response = await client.post("/api/expenses/bulk-action", json={
            "expenseIds": ids + [ids[0]],
            "action": "approve",
            "approvedBy": APPROVER,
        })

        assert response.status_code == 200
        assert response.json() == {
            "message": "3 expenses approved successfully",
            "updatedCount": 3,
            "failedIds": [],
        }
        assert (await read_team(platform)).current_spending == 150.0
        assert (await read_team(design)).current_spending == 25.0

    @pytest.mark.asyncio
    async def test_bulk_reject_message(self, client, make_team):
        team_id = await make_team()
        expense_id = await submit(client, team_id)

        response = await client.post("/api/expenses/bulk-action", json={"expenseIds": [expense_id], "action": "reject"})

        assert response.json()["message"] == "1 expenses rejected successfully"

    @pytest.mark.asyncio
    async def test_bulk_reports_group_broken_by_unexpected_error(self, client, monkeypatch, make_team, read_team):
        platform = await make_team()
        design = await make_team(name="Design")
        broken = await submit(client, platform, amount=100.0)
        queued = await submit(client, platform, amount=50.0)
        healthy = await submit(client, design, amount=25.0)
        original = ExpenseStateMachine.transition

        async def flaky_transition(self, expense_id, target, approver=None):
            if expense_id == broken:
                raise RuntimeError("storage went away")
            return await original(self, expense_id, target, approver)

        monkeypatch.setattr(ExpenseStateMachine, "transition", flaky_transition)

        response = await client.post("/api/expenses/bulk-action", json={
            "expenseIds": [broken, queued, healthy],
            "action": "approve",
            "approvedBy": APPROVER,
        })

        assert response.status_code == 200
        assert response.json() == {
            "message": "1 expenses approved successfully",
            "updatedCount": 1,
            "failedIds": [broken, queued],
        }
        assert (await read_team(platform)).current_spending == 0.0
        assert (await read_team(design)).current_spending == 25.0

    @pytest.mark.asyncio
    async def test_bulk_with_unknown_id_changes_nothing(self, client, make_team, read_team, read_expense):
        team_id = await make_team()
        expense_id = await submit(client, team_id, amount=80.0)

        response = await client.post("/api/expenses/bulk-action", json={
            "expenseIds": [expense_id, 4242],
            "action": "approve",
        })

        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Some expenses not found"
        assert "4242" in body["detail"]
        assert (await read_expense(expense_id)).status == "pending"
        assert (await read_team(team_id)).current_spending == 0.0


# ==== EXPORT AND ANALYTICS ==== #


@pytest.mark.integration
class TestExportAndAnalytics:

    @pytest.mark.asyncio
    async def test_csv_export_with_total(self, client, make_team, make_expense):
        team_id = await make_team()
        await make_expense(team_id, amount=120.5, status="approved", description="Taxi, airport")
        await make_expense(team_id, amount=79.5, status="pending", description="Lunch")

        response = await client.post("/api/expenses/export", json={"team": team_id})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0] == "Description,Amount,Category,Date,Status,Team"
        assert '"Taxi, airport",120.50,Travel' in response.text
        assert lines[-1] == "Total,200.00,,,,"
        assert len(lines) == 4

    @pytest.mark.asyncio
    async def test_insights_require_approved_expenses(self, client, make_team):
        team_id = await make_team()

        response = await client.get(f"/api/expenses/{team_id}/insights")

        assert response.status_code == 400
        assert response.json()["message"] == "No expenses to analyze"

    @pytest.mark.asyncio
    async def test_insights_for_unknown_team(self, client, database):
        response = await client.get("/api/expenses/31337/insights")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_insights_are_cached(self, client, advisory_client, make_team, make_expense, monkeypatch):
        cache = FakeRedis()
        monkeypatch.setattr(redis_module, "get_redis_client", lambda: cache)
        team_id = await make_team(budget=1000.0)
        await make_expense(team_id, amount=300.0, status="approved", category="Travel")
        await make_expense(team_id, amount=100.0, status="approved", category="Meals")

        first = await client.get(f"/api/expenses/{team_id}/insights")
        calls_after_first = len(advisory_client.calls)
        second = await client.get(f"/api/expenses/{team_id}/insights")

        assert first.status_code == 200
        body = first.json()
        assert body["totalSpent"] == 400.0
        assert body["budgetUtilization"] == 40.0
        assert body["categoryBreakdown"] == {"Travel": 300.0, "Meals": 100.0}
        assert body["expenseCount"] == 2
        assert f"insights:{team_id}" in cache.store
        assert second.json()["totalSpent"] == 400.0
        assert len(advisory_client.calls) == calls_after_first

    @pytest.mark.asyncio
    async def test_forecast_needs_history(self, client, make_team, make_expense):
        team_id = await make_team()
        for _ in range(4):
            await make_expense(team_id, amount=10.0, status="approved")

        response = await client.get(f"/api/expenses/{team_id}/forecast")

        assert response.status_code == 400
        assert response.json()["message"] == "Insufficient data for forecasting"

    @pytest.mark.asyncio
    async def test_forecast(self, client, make_team, make_expense):
        team_id = await make_team(budget=1000.0)
        for month, amount in ((7, 100.0), (8, 150.0), (8, 50.0), (9, 120.0), (9, 80.0)):
            await make_expense(
                team_id,
                amount=amount,
                status="approved",
                date=dt.datetime(2024, month, 10, tzinfo=dt.timezone.utc),
            )

        response = await client.get(f"/api/expenses/{team_id}/forecast")

        assert response.status_code == 200
        body = response.json()
        assert body["monthlySpending"] == {"2024-07": 100.0, "2024-08": 200.0, "2024-09": 200.0}
        assert body["averageMonthlySpending"] == 166.67
        assert body["currentSpending"] == 500.0
        assert body["currentUtilization"] == 50.0
