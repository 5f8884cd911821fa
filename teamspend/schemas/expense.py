"""Pydantic schemas for expenses, decisions and bulk actions."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from teamspend.schemas.base import CamelModel, EMAIL_PATTERN, Pagination


class ExpenseStatus(str, Enum):
    """Expense approval status."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExpenseCategory(str, Enum):
    """Expense categories, also the label set offered to the advisory model."""
    TRAVEL = "Travel"
    MEALS = "Meals"
    OFFICE_SUPPLIES = "Office Supplies"
    SOFTWARE = "Software"
    MARKETING = "Marketing"
    TRAINING = "Training"
    EQUIPMENT = "Equipment"
    UTILITIES = "Utilities"
    OTHER = "Other"


class BulkAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Person(CamelModel):
    """Name and email of a submitter or approver."""
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., pattern=EMAIL_PATTERN)


class ApprovedBy(Person):
    approved_at: datetime


class ExpenseCreate(CamelModel):
    """Request schema for submitting an expense."""
    team: int = Field(..., description="Owning team id")
    description: str = Field(..., min_length=1, max_length=500)
    amount: float = Field(..., ge=0, allow_inf_nan=False)
    category: ExpenseCategory
    date: Optional[datetime] = None
    submitted_by: Person


class ExpenseUpdate(CamelModel):
    """Request schema for editing an expense and/or changing its status.

    A request that records a decision (status to approved or rejected) may not
    also edit fields.
    """
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    amount: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    category: Optional[ExpenseCategory] = None
    date: Optional[datetime] = None
    status: Optional[ExpenseStatus] = None
    approved_by: Optional[Person] = None


class ExpenseResponse(CamelModel):
    """Expense as returned by the API."""
    id: int
    team: int
    team_name: Optional[str] = None
    description: str
    amount: float
    category: ExpenseCategory
    ai_suggested_category: Optional[ExpenseCategory] = None
    date: datetime
    status: ExpenseStatus
    submitted_by: Person
    approved_by: Optional[ApprovedBy] = None
    is_duplicate: bool = False
    duplicate_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, expense, team_name: Optional[str] = None) -> "ExpenseResponse":
        approved_by = None
        if expense.approved_by_name is not None:
            approved_by = ApprovedBy(
                name=expense.approved_by_name,
                email=expense.approved_by_email,
                approved_at=expense.approved_at,
            )
        return cls(
            id=expense.id,
            team=expense.team_id,
            team_name=team_name,
            description=expense.description,
            amount=expense.amount,
            category=expense.category,
            ai_suggested_category=expense.ai_suggested_category,
            date=expense.date,
            status=expense.status,
            submitted_by=Person(
                name=expense.submitted_by_name,
                email=expense.submitted_by_email,
            ),
            approved_by=approved_by,
            is_duplicate=expense.is_duplicate,
            duplicate_reason=expense.duplicate_reason,
            created_at=expense.created_at,
            updated_at=expense.updated_at,
        )


class AISuggestion(CamelModel):
    category: ExpenseCategory


class DuplicateWarning(CamelModel):
    is_duplicate: bool
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reason: Optional[str] = None


class ExpenseCreateResponse(CamelModel):
    """Created expense with the advisory annotations that were available."""
    expense: ExpenseResponse
    ai_suggestion: Optional[AISuggestion] = None
    duplicate_warning: Optional[DuplicateWarning] = None


class ExpenseListResponse(CamelModel):
    expenses: List[ExpenseResponse]
    pagination: Pagination


class BulkActionRequest(CamelModel):
    """Apply one decision to many expenses."""
    expense_ids: List[int] = Field(..., min_length=1)
    action: BulkAction
    approved_by: Optional[Person] = None


class BulkActionResponse(CamelModel):
    message: str
    updated_count: int
    failed_ids: List[int] = Field(default_factory=list)


class ExpenseExportRequest(CamelModel):
    """Filters for the tabular export."""
    team: Optional[int] = None
    status: Optional[ExpenseStatus] = None
    category: Optional[ExpenseCategory] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = None
