# ==== PREFECT FLOWS PACKAGE ==== #

"""
Prefect flows for TeamSpend.

- reconcile_nightly: recompute every team's cached spending from its
  approved expenses and dispatch any budget alert that became due
"""

from .reconcile_nightly import reconcile_team_spending

__all__ = [
    "reconcile_team_spending",
]
