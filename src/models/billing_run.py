"""Billing run ORM model: one row per scope and day of automated billing."""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Date, Integer, Numeric, String, UniqueConstraint
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel


class BillingRunStatus(str, Enum):
    """Outcome of a billing run."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class BillingRun(Base, BaseModel):
    """Model representing one execution of the automated billing job.

    The unique (scope, run_date) constraint is the mutual-exclusion lock:
    a second run for the same scope and day cannot insert its row.
    """

    __tablename__ = "billing_runs"

    scope: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Organisation or partition the run covers",
    )
    run_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Business date billed by the run",
    )
    triggered_by: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Scheduler or user that started the run",
    )
    status: Mapped[BillingRunStatus] = mapped_column(
        SQLEnum(BillingRunStatus),
        nullable=False,
        default=BillingRunStatus.RUNNING,
    )
    contracts_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contracts_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contracts_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
    )
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    errors: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    summary: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (UniqueConstraint("scope", "run_date", name="uq_billing_run_scope_date"),)

    def __repr__(self) -> str:
        return (
            f"<BillingRun(id={self.id}, scope={self.scope}, run_date={self.run_date}, "
            f"status={self.status})>"
        )


__all__ = ["BillingRun", "BillingRunStatus"]
