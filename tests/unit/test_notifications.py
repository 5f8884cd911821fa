"""Unit tests for notification rendering and delivery."""

import datetime as dt
import json

import httpx
import pytest
import respx

from teamspend.schemas.team import AlertType
from teamspend.services.notifications import (
    BudgetAlertNotice,
    DecisionNotice,
    HttpEmailTransport,
    LogOnlyTransport,
    NotificationDispatcher
)


EMAIL_URL = "http://mock-email-service/emails"


def alert_notice(alert_type=AlertType.EIGHTY_PERCENT, team_name="Platform", recipients=None):
    return BudgetAlertNotice(
        team_id=1,
        team_name=team_name,
        budget=1000.0,
        spending=850.0 if alert_type is AlertType.EIGHTY_PERCENT else 1100.0,
        utilization=85.0 if alert_type is AlertType.EIGHTY_PERCENT else 110.0,
        alert_type=alert_type,
        recipients=["ana@example.com", "ben@example.com"] if recipients is None else recipients,
    )


def decision_notice(approved=True, description="Taxi to client office"):
    return DecisionNotice(
        expense_id=7,
        amount=1234.5,
        description=description,
        category="Travel",
        date=dt.datetime(2024, 9, 3, tzinfo=dt.timezone.utc),
        approved=approved,
        submitter_name="Cleo Submitter",
        submitter_email="cleo@example.com",
        approver_name="Ana Lead",
    )


@pytest.mark.unit
class TestDispatcher:
    """Subjects, bodies and delivery outcome."""

    @pytest.mark.asyncio
    async def test_warning_alert(self, notifier, transport):
        assert await notifier.send_budget_alert(alert_notice()) is True

        message = transport.sent[0]
        assert message["subject"] == "Budget Alert: Platform has reached 80% of budget"
        assert message["to"] == ["ana@example.com", "ben@example.com"]
        assert "85.0%" in message["html"]
        assert "$150.00" in message["html"]

    @pytest.mark.asyncio
    async def test_limit_alert(self, notifier, transport):
        assert await notifier.send_budget_alert(alert_notice(AlertType.HUNDRED_PERCENT)) is True

        message = transport.sent[0]
        assert message["subject"] == "URGENT: Platform has exceeded budget limit"
        assert "Over Budget By:" in message["html"]
        assert "$100.00" in message["html"]

    @pytest.mark.asyncio
    async def test_alert_without_recipients_fails(self, notifier, transport):
        assert await notifier.send_budget_alert(alert_notice(recipients=[])) is False
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_decision_notice(self, notifier, transport):
        assert await notifier.send_expense_decision(decision_notice(approved=False)) is True

        message = transport.sent[0]
        assert message["to"] == ["cleo@example.com"]
        assert message["subject"] == "Expense Rejected: $1,234.50 - Taxi to client office"
        assert "2024-09-03" in message["html"]

    @pytest.mark.asyncio
    async def test_user_text_is_escaped(self, notifier, transport):
        await notifier.send_budget_alert(alert_notice(team_name="<script>x</script>"))
        await notifier.send_expense_decision(decision_notice(description="<b>Dinner</b>"))

        assert "<script>" not in transport.sent[0]["html"]
        assert "&lt;script&gt;" in transport.sent[0]["html"]
        assert "&lt;b&gt;Dinner&lt;/b&gt;" in transport.sent[1]["html"]

    @pytest.mark.asyncio
    async def test_transport_failure_reported_as_false(self, notifier, transport):
        transport.fail = True

        assert await notifier.send_budget_alert(alert_notice()) is False
        assert await notifier.send_expense_decision(decision_notice()) is False

    def test_log_only_transport_without_api_key(self):
        assert isinstance(NotificationDispatcher().transport, LogOnlyTransport)


@pytest.mark.unit
class TestHttpEmailTransport:
    """Resend-style HTTP delivery."""

    @pytest.fixture
    def http_transport(self):
        return HttpEmailTransport(
            base_url="http://mock-email-service",
            api_key="email-key",
            sender="TeamSpend <noreply@teamspend.local>",
            timeout=1.0,
            min_interval=0,
        )

    @respx.mock
    @pytest.mark.asyncio
    async def test_posts_message(self, http_transport):
        route = respx.post(EMAIL_URL).mock(return_value=httpx.Response(200, json={"id": "msg_1"}))
        dispatcher = NotificationDispatcher(transport=http_transport)

        assert await dispatcher.send_expense_decision(decision_notice()) is True

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer email-key"
        payload = json.loads(request.content)
        assert payload["to"] == ["cleo@example.com"]
        assert payload["from"] == "TeamSpend <noreply@teamspend.local>"
        assert payload["subject"].startswith("Expense Approved")

    @respx.mock
    @pytest.mark.asyncio
    async def test_provider_error_is_a_failed_delivery(self, http_transport):
        respx.post(EMAIL_URL).mock(return_value=httpx.Response(422, json={"message": "invalid"}))
        dispatcher = NotificationDispatcher(transport=http_transport)

        assert await dispatcher.send_budget_alert(alert_notice()) is False
