"""Pydantic schemas for advisory model output and the insight endpoints."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import Field, field_validator

from teamspend.schemas.base import CamelModel
from teamspend.schemas.expense import ExpenseCategory


# ==== MODEL OUTPUT ==== #


class CategoryVerdict(CamelModel):
    """Category picked by the model."""
    category: ExpenseCategory


class DuplicateVerdict(CamelModel):
    """Duplicate judgement against recent expenses of the same team."""
    is_duplicate: bool = False
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reason: Optional[str] = None

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        if v is None:
            return 0.0
        return max(0.0, min(1.0, float(v)))


class InsightsNarrative(CamelModel):
    """Narrative part of spending insights."""
    summary: str = ""
    top_category: Optional[str] = None
    trends: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    budget_health: Optional[str] = None

    @field_validator("trends", "recommendations", mode="before")
    @classmethod
    def wrap_single_string(cls, v):
        # Models sometimes answer a list field with one sentence
        if isinstance(v, str):
            return [v]
        return v or []


class ForecastNarrative(CamelModel):
    """Model forecast of whether the budget will be exceeded."""
    will_exceed_budget: bool = False
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    predicted_overspend: float = 0.0
    months_to_exceed: Optional[float] = None
    recommendations: List[str] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        if v is None:
            return 0.0
        return max(0.0, min(1.0, float(v)))


# ==== ENDPOINT RESPONSES ==== #


class SpendingInsightsResponse(CamelModel):
    """Locally computed spending figures plus the model narrative, if any."""
    team_id: int
    team_name: str
    budget: float
    total_spent: float
    budget_utilization: float
    expense_count: int
    category_breakdown: Dict[str, float]
    insights: Optional[InsightsNarrative] = None
    generated_at: datetime


class BudgetForecastResponse(CamelModel):
    """Monthly history plus the model forecast, if any."""
    team_id: int
    team_name: str
    budget: float
    current_spending: float
    current_utilization: float
    monthly_spending: Dict[str, float]
    average_monthly_spending: float
    forecast: Optional[ForecastNarrative] = None
    generated_at: datetime
