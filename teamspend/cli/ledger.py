"""CLI commands for budget ledger maintenance."""

import asyncio
from typing import Optional

import click
from tabulate import tabulate

from teamspend.settings import settings
from teamspend.observability.logging import get_logger, init_logging
from teamspend.services.budget_ledger import BudgetLedger, LedgerUpdate
from teamspend.services.errors import TeamSpendError
from teamspend.storage.db import close_database, create_schema, get_session, init_database
from teamspend.storage.repository import TeamRepository


logger = get_logger(__name__)


def _run(coro):
    async def runner():
        init_database()
        await create_schema()
        try:
            return await coro
        finally:
            await close_database()

    return asyncio.run(runner())


def _reconcile_rows(updates: list[LedgerUpdate]) -> list:
    return [
        [
            u.team_id,
            u.team_name,
            f"{u.previous_spending:,.2f}",
            f"{u.current_spending:,.2f}",
            f"{u.drift:+,.2f}",
            u.alert.value if u.alert else "-",
        ]
        for u in updates
    ]


@click.group()
def ledger():
    """Budget ledger maintenance commands."""
    init_logging(settings.LOG_LEVEL, settings.LOG_DIR)


@ledger.command()
@click.option('--team-id', type=int, help='Reconcile only this team')
def reconcile(team_id: Optional[int]):
    """Recompute current spending from approved expenses and report drift."""
    budget_ledger = BudgetLedger()

    async def run():
        if team_id is not None:
            return [await budget_ledger.reconcile(team_id)]
        return await budget_ledger.reconcile_all()

    try:
        updates = _run(run())
    except TeamSpendError as e:
        raise click.ClickException(e.message) from e

    headers = ["Team", "Name", "Cached", "Recomputed", "Drift", "Alert sent"]
    click.echo(tabulate(_reconcile_rows(updates), headers=headers, tablefmt="grid", disable_numparse=True))

    drifted = sum(1 for u in updates if u.drift != 0)
    click.echo(f"\nReconciled {len(updates)} teams, {drifted} had drift")


@ledger.command()
def status():
    """Show budget, spending, utilization and alert latches per team."""
    async def run():
        async with get_session() as session:
            return list(await TeamRepository(session).list_all())

    teams = _run(run())
    rows = []
    for team in teams:
        utilization = BudgetLedger.utilization(team.current_spending, team.budget)
        rows.append([
            team.id,
            team.name,
            f"{team.budget:,.2f}",
            f"{team.current_spending:,.2f}",
            f"{utilization:.1f}%",
            "yes" if team.eighty_percent_sent else "no",
            "yes" if team.hundred_percent_sent else "no",
        ])

    headers = ["Team", "Name", "Budget", "Spending", "Utilization", "80% sent", "100% sent"]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid", disable_numparse=True))


if __name__ == "__main__":
    ledger()
