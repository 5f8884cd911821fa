"""SQLAlchemy models for TeamSpend."""

import datetime as dt
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Index, Integer, JSON, String
)
from sqlalchemy.orm import Mapped, mapped_column

from teamspend.storage.db import Base


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Team(Base):
    """Team with its budget, members and cached spending aggregate.

    ``current_spending`` and the two alert latches are written only by the
    budget ledger, always together with a ``version`` bump.
    """

    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    budget: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    members: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    current_spending: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    eighty_percent_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    hundred_percent_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


class Expense(Base):
    """Expense submitted against a team budget."""

    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("teams.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    ai_suggested_category: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    date: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)

    submitted_by_name: Mapped[str] = mapped_column(String(100), nullable=False)
    submitted_by_email: Mapped[str] = mapped_column(String(255), nullable=False)

    # Set together when a decision is recorded, cleared on return to pending
    approved_by_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    approved_by_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    approved_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    is_duplicate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duplicate_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    __table_args__ = (
        Index("ix_expenses_team_date", "team_id", "date"),
        Index("ix_expenses_team_status", "team_id", "status"),
    )
