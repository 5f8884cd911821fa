# ==== SHARED TEST FIXTURES AND CONFIGURATION ==== #

"""
Shared test fixtures for TeamSpend.

Each test that needs storage gets its own SQLite file database. External
collaborators are replaced by in-memory fakes: a transport that records
emails instead of sending them and an advisory client that answers from a
script. The service singletons are swapped for instances built on those
fakes, so both direct service calls and API requests go through them.
"""

import asyncio
import os
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport


# ==== FORCE ENVIRONMENT SETUP BEFORE ANY IMPORTS ==== #

os.environ.update({
    "APP_ENV": "test",
    "DATABASE_URL": "sqlite+aiosqlite:///./.teamspend-test.db",
    "AI_PROVIDER_BASE_URL": "http://mock-ai-service",
    "AI_API_KEY": "test-key-12345",
    "AI_MODEL": "mock-model",
    "AI_TIMEOUT_SECONDS": "1",
    "AI_RETRY_MAX_ATTEMPTS": "3",
    "AI_RETRY_BASE_DELAY": "0.01",
    "AI_RETRY_MAX_DELAY": "0.02",
    "AI_MIN_REQUEST_INTERVAL_SECONDS": "0",
    "AI_RATE_LIMIT_COOLDOWN_SECONDS": "60",
    "LEDGER_MAX_RETRIES": "10",
    "LEDGER_RETRY_BASE_DELAY": "0.001",
    "LEDGER_RETRY_MAX_DELAY": "0.01",
    "LOG_LEVEL": "WARNING",
})
os.environ.pop("REDIS_URL", None)
os.environ.pop("EMAIL_API_KEY", None)

from teamspend.main import create_app  # noqa: E402
from teamspend.resilience.circuit_breaker import CircuitBreaker  # noqa: E402
from teamspend.resilience.rate_limiter import CooldownGate, RequestSpacer  # noqa: E402
from teamspend.services import advisory as advisory_module  # noqa: E402
from teamspend.services import budget_ledger as ledger_module  # noqa: E402
from teamspend.services import notifications as notifications_module  # noqa: E402
from teamspend.services.advisory import AdvisoryAdapter  # noqa: E402
from teamspend.services.budget_ledger import BudgetLedger  # noqa: E402
from teamspend.services.errors import NotificationError  # noqa: E402
from teamspend.services.expense_state_machine import ExpenseStateMachine  # noqa: E402
from teamspend.services.notifications import NotificationDispatcher  # noqa: E402
from teamspend.storage.db import close_database, create_schema, get_session, init_database  # noqa: E402
from teamspend.storage.models import Expense, Team, utcnow  # noqa: E402
from teamspend.storage.repository import ExpenseRepository, TeamRepository  # noqa: E402


# ==== FAKE COLLABORATORS ==== #


class RecordingTransport:
    """Email transport that keeps messages in memory."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    async def send(self, to, subject: str, html: str) -> None:
        if self.fail:
            raise NotificationError("transport down")
        self.sent.append({"to": list(to), "subject": subject, "html": html})

    def subjects(self, prefix: str = "") -> List[str]:
        return [m["subject"] for m in self.sent if m["subject"].startswith(prefix)]


CATEGORY_ANSWER = '{"category": "Travel"}'
NOT_DUPLICATE_ANSWER = '{"isDuplicate": false, "confidence": 0.1, "reason": null}'


class ScriptedAdvisoryClient:
    """Advisory client answering from a responder function.

    The default responder suggests Travel and never flags duplicates.
    """

    def __init__(self, responder: Optional[Callable[[str, str], Any]] = None, enabled: bool = True):
        self.responder = responder or self.default_responder
        self.enabled = enabled
        self.calls: List[str] = []

    @staticmethod
    def default_responder(prompt: str, system_prompt: str) -> str:
        if "categorizing" in system_prompt:
            return CATEGORY_ANSWER
        if "duplicate" in system_prompt:
            return NOT_DUPLICATE_ANSWER
        return "{}"

    async def complete(self, prompt: str, system_prompt: str) -> str:
        self.calls.append(system_prompt)
        answer = self.responder(prompt, system_prompt)
        if asyncio.iscoroutine(answer):
            answer = await answer
        if isinstance(answer, BaseException):
            raise answer
        return answer


def build_adapter(client, timeout: float = 1.0, breaker: Optional[CircuitBreaker] = None) -> AdvisoryAdapter:
    return AdvisoryAdapter(
        client=client,
        spacer=RequestSpacer(0),
        cooldown=CooldownGate(60),
        breaker=breaker or CircuitBreaker("advisory-test", failure_threshold=50, recovery_timeout=60),
        timeout=timeout,
    )


# ==== DATABASE FIXTURES ==== #


@pytest_asyncio.fixture
async def database(tmp_path):
    """Fresh SQLite database with the schema created."""
    await close_database()
    init_database(f"sqlite+aiosqlite:///{tmp_path / 'teamspend.db'}")
    await create_schema()
    yield
    await close_database()


# ==== SERVICE FIXTURES ==== #


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def notifier(transport):
    return NotificationDispatcher(transport=transport)


@pytest.fixture
def ledger(notifier):
    return BudgetLedger(notifier=notifier)


@pytest.fixture
def advisory_client():
    return ScriptedAdvisoryClient()


@pytest.fixture
def advisory(advisory_client):
    return build_adapter(advisory_client)


@pytest.fixture
def scripted_client():
    """ScriptedAdvisoryClient class, for tests that need their own script."""
    return ScriptedAdvisoryClient


@pytest.fixture
def make_adapter():
    """Build an adapter with no request spacing around a given client."""
    return build_adapter


@pytest.fixture(autouse=True)
def services(monkeypatch, notifier, ledger, advisory):
    """Point the service singletons at the fakes for this test."""
    monkeypatch.setattr(notifications_module, "_dispatcher", notifier)
    monkeypatch.setattr(ledger_module, "_budget_ledger", ledger)
    monkeypatch.setattr(advisory_module, "_advisory_adapter", advisory)


@pytest.fixture
def state_machine(ledger, advisory, notifier):
    return ExpenseStateMachine(ledger=ledger, advisory=advisory, notifier=notifier)


# ==== APPLICATION FIXTURES ==== #


@pytest_asyncio.fixture
async def client(database):
    """HTTP client bound to a fresh application instance."""
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ==== DATA FIXTURES ==== #


DEFAULT_MEMBERS = [
    {"name": "Ana Lead", "email": "ana@example.com", "role": "admin"},
    {"name": "Ben Dev", "email": "ben@example.com", "role": "member"},
]


@pytest.fixture
def make_team(database):
    """Insert a team directly and return its id."""
    async def _make(name: str = "Platform", budget: float = 1000.0, members=None) -> int:
        async with get_session() as session:
            team = await TeamRepository(session).add(
                Team(
                    name=name,
                    budget=budget,
                    members=DEFAULT_MEMBERS if members is None else members,
                    current_spending=0.0,
                    eighty_percent_sent=False,
                    hundred_percent_sent=False,
                    version=0,
                )
            )
            return team.id

    return _make


@pytest.fixture
def make_expense(database):
    """Insert an expense directly, bypassing the ledger, and return its id."""
    async def _make(
        team_id: int,
        amount: float = 100.0,
        status: str = "pending",
        description: str = "Taxi to client office",
        category: str = "Travel",
        date=None,
    ) -> int:
        async with get_session() as session:
            expense = await ExpenseRepository(session).add(
                Expense(
                    team_id=team_id,
                    description=description,
                    amount=amount,
                    category=category,
                    date=date or utcnow(),
                    status=status,
                    submitted_by_name="Cleo Submitter",
                    submitted_by_email="cleo@example.com",
                    approved_by_name="Ana Lead" if status != "pending" else None,
                    approved_by_email="ana@example.com" if status != "pending" else None,
                    approved_at=utcnow() if status != "pending" else None,
                    is_duplicate=False,
                )
            )
            return expense.id

    return _make


@pytest.fixture
def read_team(database):
    """Read the committed team row."""
    async def _read(team_id: int) -> Team:
        async with get_session() as session:
            return await TeamRepository(session).get(team_id)

    return _read


@pytest.fixture
def read_expense(database):
    async def _read(expense_id: int) -> Optional[Expense]:
        async with get_session() as session:
            return await ExpenseRepository(session).get(expense_id)

    return _read
