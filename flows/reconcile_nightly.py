# ==== PREFECT NIGHTLY SPENDING RECONCILIATION FLOW ==== #

"""
Prefect flow that reconciles every team's cached spending each night.

Each team is recomputed from its approved expenses in its own task, so one
contended or missing team does not stop the others. Teams whose cache had
drifted are reported in the flow summary.
"""

import argparse
import asyncio
from typing import Any, Dict, List

from prefect import flow, task, get_run_logger

from teamspend.settings import settings
from teamspend.services.budget_ledger import get_budget_ledger
from teamspend.services.errors import LedgerUnavailableError, NotFoundError
from teamspend.storage.db import create_schema, get_session, init_database
from teamspend.storage.repository import TeamRepository


# ==== TASK DEFINITIONS ==== #


@task
async def list_team_ids() -> List[int]:
    """Fetch the ids of all teams."""
    async with get_session() as session:
        return await TeamRepository(session).list_ids()


@task(retries=2, retry_delay_seconds=10)
async def reconcile_team(team_id: int) -> Dict[str, Any]:
    """
    Reconcile one team and dispatch any alert that became due.

    Args:
        team_id (int): Team to reconcile

    Returns:
        Dict[str, Any]: Cached and recomputed spending, drift and alert outcome
    """
    logger = get_run_logger()
    try:
        update = await get_budget_ledger().reconcile(team_id)
    except NotFoundError:
        logger.info(f"Team {team_id} was deleted before reconciliation")
        return {"team_id": team_id, "status": "missing"}

    if update.drift:
        logger.warning(
            f"Team {team_id} drift corrected: {update.previous_spending:.2f} -> {update.current_spending:.2f}"
        )
    return {
        "team_id": team_id,
        "status": "reconciled",
        "previous_spending": update.previous_spending,
        "current_spending": update.current_spending,
        "drift": update.drift,
        "alert_dispatched": update.alert.value if update.alert else None,
    }


# ==== MAIN FLOW ==== #


@flow(name=settings.PREFECT_FLOW_NAME, log_prints=True)
async def reconcile_team_spending() -> Dict[str, Any]:
    """
    Reconcile the spending aggregate of every team.

    Returns:
        Dict[str, Any]: Flow summary with per-team results
    """
    logger = get_run_logger()
    init_database()
    await create_schema()

    team_ids = await list_team_ids()
    logger.info(f"Reconciling {len(team_ids)} teams")

    results = []
    failed = []
    for team_id in team_ids:
        try:
            results.append(await reconcile_team(team_id))
        except LedgerUnavailableError as e:
            logger.error(f"Team {team_id} stayed contended: {e}")
            failed.append(team_id)

    drifted = [r for r in results if r.get("drift")]
    summary = {
        "teams": len(team_ids),
        "reconciled": sum(1 for r in results if r["status"] == "reconciled"),
        "drifted": len(drifted),
        "failed_team_ids": failed,
        "results": results,
    }
    logger.info(
        f"Reconciliation finished: {summary['reconciled']} reconciled, "
        f"{summary['drifted']} drifted, {len(failed)} failed"
    )
    return summary


# ==== COMMAND LINE INTERFACE ==== #


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Team spending reconciliation flow")
    parser.add_argument("--run", action="store_true", help="Run flow once locally")
    parser.add_argument("--serve", action="store_true", help="Serve flow on its nightly schedule")
    args = parser.parse_args()

    if args.serve:
        reconcile_team_spending.serve(
            name="nightly-reconciliation",
            tags=["ledger", "reconciliation"],
            cron=settings.PREFECT_SCHEDULE_CRON
        )
    elif args.run:
        print(f"Flow completed: {asyncio.run(reconcile_team_spending())}")
    else:
        print("Usage: python flows/reconcile_nightly.py [--run|--serve]")
