# ==== NOTIFICATION DISPATCHER ==== #

"""
Email notifications for budget alerts and expense decisions.

The dispatcher renders HTML bodies from Jinja2 templates and hands them to
a transport. HttpEmailTransport posts to a Resend-style HTTP API; without an
API key LogOnlyTransport is used and messages are only logged. Dispatch
methods report success as a bool and never raise, because callers treat
notifications as best-effort.
"""

import datetime as dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from teamspend.settings import settings
from teamspend.observability.logging import get_logger
from teamspend.observability.metrics import notifications_total
from teamspend.observability.tracing import get_tracer
from teamspend.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerError
from teamspend.resilience.rate_limiter import RequestSpacer
from teamspend.resilience.retry_policies import create_http_retry_policy, retry_async_operation
from teamspend.schemas.team import AlertType
from teamspend.services.errors import NotificationError


logger = get_logger(__name__)
tracer = get_tracer(__name__)

EMAIL_TEMPLATES_DIR = Path(__file__).parent / "templates" / "email"


# ==== NOTIFICATION PAYLOADS ==== #


@dataclass
class BudgetAlertNotice:
    """Threshold crossing to announce to every team member."""
    team_id: int
    team_name: str
    budget: float
    spending: float
    utilization: float
    alert_type: AlertType
    recipients: List[str] = field(default_factory=list)


@dataclass
class DecisionNotice:
    """Approval or rejection to announce to the submitter."""
    expense_id: int
    amount: float
    description: str
    category: str
    date: dt.datetime
    approved: bool
    submitter_name: str
    submitter_email: str
    approver_name: str


# ==== TRANSPORTS ==== #


class LogOnlyTransport:
    """Transport that logs messages instead of sending them."""

    async def send(self, to: List[str], subject: str, html: str) -> None:
        logger.info("Email not sent, no provider configured", to=to, subject=subject)


class HttpEmailTransport:
    """Resend-style HTTP email API transport."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: Optional[float] = None,
        min_interval: Optional[float] = None
    ):
        self.base_url = (base_url or settings.EMAIL_API_BASE_URL).rstrip("/")
        self.api_key = api_key or settings.EMAIL_API_KEY
        self.sender = sender or settings.EMAIL_FROM
        self.timeout = timeout or settings.EMAIL_TIMEOUT_SECONDS
        self.spacer = RequestSpacer(
            settings.EMAIL_MIN_REQUEST_INTERVAL_SECONDS if min_interval is None else min_interval
        )
        self.breaker = CircuitBreaker(
            "email",
            failure_threshold=5,
            recovery_timeout=60.0,
            expected_exception=httpx.HTTPError
        )
        self.retry_policy = create_http_retry_policy("email")

    async def send(self, to: List[str], subject: str, html: str) -> None:
        """
        Send one message.

        Raises:
            NotificationError: Delivery failed after retries or breaker is open
        """
        payload = {"from": self.sender, "to": to, "subject": subject, "html": html}
        try:
            async with self.spacer.slot():
                await self.breaker.call(
                    retry_async_operation, self._post, self.retry_policy, "send_email", payload
                )
        except (httpx.HTTPError, CircuitBreakerError) as e:
            raise NotificationError(f"Email delivery failed: {e}") from e

    async def _post(self, payload: dict) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/emails",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"}
            )
            response.raise_for_status()


# ==== DISPATCHER ==== #


class NotificationDispatcher:
    """Renders and delivers budget alerts and decision notices."""

    def __init__(self, transport=None):
        self.transport = transport or (
            HttpEmailTransport() if settings.EMAIL_API_KEY else LogOnlyTransport()
        )
        self.templates = Environment(
            loader=FileSystemLoader(str(EMAIL_TEMPLATES_DIR)),
            autoescape=select_autoescape(default=True),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    async def send_budget_alert(self, notice: BudgetAlertNotice) -> bool:
        """
        Send a budget threshold alert to all team members.

        A team without member emails cannot be alerted; that counts as a
        failed dispatch so the alert stays eligible.

        Returns:
            bool: True if the alert was delivered
        """
        if notice.alert_type is AlertType.HUNDRED_PERCENT:
            subject = f"URGENT: {notice.team_name} has exceeded budget limit"
        else:
            subject = f"Budget Alert: {notice.team_name} has reached 80% of budget"

        if not notice.recipients:
            notifications_total.labels(kind="budget_alert", outcome="no_recipients").inc()
            logger.warning("Budget alert has no recipients", team_id=notice.team_id)
            return False

        html = self.templates.get_template("budget_alert.html.j2").render(
            team_name=notice.team_name,
            budget=notice.budget,
            spending=notice.spending,
            utilization=notice.utilization,
            alert_type=notice.alert_type.value,
        )
        return await self._deliver("budget_alert", notice.recipients, subject, html)

    async def send_expense_decision(self, notice: DecisionNotice) -> bool:
        """
        Tell the submitter their expense was approved or rejected.

        Returns:
            bool: True if the notice was delivered
        """
        verdict = "Approved" if notice.approved else "Rejected"
        subject = f"Expense {verdict}: ${notice.amount:,.2f} - {notice.description}"
        html = self.templates.get_template("expense_decision.html.j2").render(
            submitter_name=notice.submitter_name,
            approver_name=notice.approver_name,
            approved=notice.approved,
            amount=notice.amount,
            description=notice.description,
            category=notice.category,
            date=notice.date,
        )
        return await self._deliver("expense_decision", [notice.submitter_email], subject, html)

    async def _deliver(self, kind: str, to: List[str], subject: str, html: str) -> bool:
        with tracer.start_as_current_span(f"notify_{kind}") as span:
            span.set_attribute("recipients", len(to))
            try:
                await self.transport.send(to, subject, html)
            except NotificationError as e:
                notifications_total.labels(kind=kind, outcome="failed").inc()
                logger.error("Notification delivery failed", kind=kind, subject=subject, error=str(e))
                return False

            notifications_total.labels(kind=kind, outcome="sent").inc()
            logger.info("Notification delivered", kind=kind, subject=subject, recipients=len(to))
            return True


# ==== GLOBAL INSTANCE ==== #

_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get the shared notification dispatcher instance."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher
