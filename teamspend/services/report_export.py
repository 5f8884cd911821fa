"""CSV export of filtered expense listings."""

import csv
import io
from typing import List

from teamspend.schemas.expense import ExpenseExportRequest, ExpenseResponse
from teamspend.services.expense_state_machine import ExpenseStateMachine
from teamspend.services.money import round2
from teamspend.storage.repository import ExpenseFilters


EXPORT_COLUMNS = ["Description", "Amount", "Category", "Date", "Status", "Team"]
EXPORT_PAGE_SIZE = 500


def render_csv(expenses: List[ExpenseResponse]) -> str:
    """Render expenses as CSV with a trailing total row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)

    total = 0.0
    for expense in expenses:
        total += expense.amount
        writer.writerow([
            expense.description,
            f"{expense.amount:.2f}",
            expense.category.value,
            expense.date.strftime("%Y-%m-%d"),
            expense.status.value,
            expense.team_name or "",
        ])

    writer.writerow(["Total", f"{round2(total):.2f}", "", "", "", ""])
    return buffer.getvalue()


async def export_expenses(state_machine: ExpenseStateMachine, request: ExpenseExportRequest) -> str:
    """Collect every expense matching ``request``, newest first, and render it."""
    filters = ExpenseFilters(
        team_id=request.team,
        status=request.status.value if request.status else None,
        category=request.category.value if request.category else None,
        start_date=request.start_date,
        end_date=request.end_date,
        search=request.search,
        page=1,
        limit=EXPORT_PAGE_SIZE,
    )

    expenses: List[ExpenseResponse] = []
    while True:
        page = await state_machine.search(filters)
        expenses.extend(page.expenses)
        if filters.page >= page.pagination.pages:
            break
        filters.page += 1

    return render_csv(expenses)
