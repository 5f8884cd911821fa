"""Pydantic schemas for teams and budget status."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from teamspend.schemas.base import CamelModel, EMAIL_PATTERN


class MemberRole(str, Enum):
    """Team member role."""
    ADMIN = "admin"
    MEMBER = "member"


class AlertType(str, Enum):
    """Budget threshold alert kinds, each guarded by its own latch."""
    EIGHTY_PERCENT = "eighty_percent"
    HUNDRED_PERCENT = "hundred_percent"

    @property
    def latch_column(self) -> str:
        return f"{self.value}_sent"


class TeamMember(CamelModel):
    """Team member who receives budget alerts."""
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., pattern=EMAIL_PATTERN)
    role: MemberRole = MemberRole.MEMBER


class TeamCreate(CamelModel):
    """Request schema for creating a team."""
    name: str = Field(..., min_length=1, max_length=100)
    budget: float = Field(..., ge=0, allow_inf_nan=False)
    members: List[TeamMember] = Field(default_factory=list)


class TeamUpdate(CamelModel):
    """Request schema for editing a team; omitted fields stay unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    budget: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    members: Optional[List[TeamMember]] = None


class BudgetAlerts(CamelModel):
    """Threshold alert latches."""
    eighty_percent_sent: bool = False
    hundred_percent_sent: bool = False


class TeamResponse(CamelModel):
    """Team as returned by the API."""
    id: int
    name: str
    budget: float
    members: List[TeamMember]
    current_spending: float
    budget_alerts: BudgetAlerts
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, team) -> "TeamResponse":
        return cls(
            id=team.id,
            name=team.name,
            budget=team.budget,
            members=team.members or [],
            current_spending=team.current_spending,
            budget_alerts=BudgetAlerts(
                eighty_percent_sent=team.eighty_percent_sent,
                hundred_percent_sent=team.hundred_percent_sent,
            ),
            created_at=team.created_at,
            updated_at=team.updated_at,
        )


class BudgetStatusResponse(CamelModel):
    """Budget status of a team after recomputation."""
    team_id: int
    team_name: str
    budget: float
    current_spending: float
    remaining_budget: float
    utilization_percentage: float
    is_over_budget: bool
    is_near_budget: bool
    alert_status: BudgetAlerts


class ReconcileResponse(CamelModel):
    """Outcome of reconciling one team's cached spending."""
    team_id: int
    previous_spending: float
    current_spending: float
    drift: float
    alert_dispatched: Optional[AlertType] = None


class MessageResponse(CamelModel):
    message: str
