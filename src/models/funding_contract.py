"""Funding contract ORM model for NDIS support agreements."""

from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Date, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from src.models import Base, BaseModel


class ContractType(str, Enum):
    """Funding contract type."""

    DRAW_DOWN = "Draw Down"
    CAPTURE_AND_INVOICE = "Capture & Invoice"


class ContractStatus(str, Enum):
    """Funding contract lifecycle status."""

    DRAFT = "Draft"
    ACTIVE = "Active"
    EXPIRED = "Expired"
    RENEWED = "Renewed"
    DEACTIVATED = "Deactivated"


class DrawdownRate(str, Enum):
    """Granularity used for linear time-based depletion."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class BillingFrequency(str, Enum):
    """How often the billing run charges an automated contract."""

    DAILY = "daily"
    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"


class FundingContract(Base, BaseModel):
    """Model representing a funding contract held by a resident.

    original_amount is fixed once the contract is stored; renewals create a
    new contract linked through parent_contract_id. current_balance is a
    cache recomputed from the posted transaction ledger and always stays
    within [0, original_amount].

    The version column is the ORM version counter: every UPDATE is issued
    as a compare-and-swap on it, so a writer holding a stale copy of the
    contract fails instead of overwriting a concurrent change.
    """

    __tablename__ = "funding_contracts"

    resident_id: Mapped[int] = mapped_column(
        ForeignKey("residents.id"),
        nullable=False,
        index=True,
        comment="Owning resident",
    )
    contract_type: Mapped[ContractType] = mapped_column(
        SQLEnum(ContractType),
        nullable=False,
        default=ContractType.DRAW_DOWN,
        comment="Draw Down or Capture & Invoice",
    )
    original_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Funded amount, immutable after creation",
    )
    current_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Cached remaining balance (original minus posted drawdowns)",
    )
    start_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="Contract start date",
    )
    end_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
        comment="Contract end date (open-ended when empty)",
    )
    drawdown_rate: Mapped[DrawdownRate] = mapped_column(
        SQLEnum(DrawdownRate),
        nullable=False,
        default=DrawdownRate.MONTHLY,
        comment="Period granularity for time-based depletion",
    )
    auto_drawdown: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the balance depletes linearly over the term",
    )
    contract_status: Mapped[ContractStatus] = mapped_column(
        SQLEnum(ContractStatus),
        nullable=False,
        default=ContractStatus.DRAFT,
        index=True,
        comment="Contract lifecycle status",
    )
    parent_contract_id: Mapped[int | None] = mapped_column(
        ForeignKey("funding_contracts.id"),
        nullable=True,
        index=True,
        comment="Contract this one renews",
    )
    last_drawdown_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
        comment="Date of activation or the most recent automated drawdown",
    )
    description: Mapped[str | None] = mapped_column(
        nullable=True,
        comment="Free-text description",
    )

    # Billing automation
    support_item_code: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
        comment="NDIS support item code billed by automated runs",
    )
    daily_support_item_cost: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2),
        nullable=True,
        comment="Daily cost charged by automated runs",
    )
    auto_billing_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Whether the billing run charges this contract",
    )
    billing_frequency: Mapped[BillingFrequency | None] = mapped_column(
        SQLEnum(BillingFrequency),
        nullable=True,
        comment="Automated billing frequency",
    )
    next_run_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
        index=True,
        comment="Next date the billing run should charge this contract",
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Optimistic concurrency counter",
    )

    # Relationships
    resident: Mapped["Resident"] = relationship(  # noqa: F821
        "Resident",
        back_populates="contracts",
    )
    parent_contract: Mapped["FundingContract | None"] = relationship(
        "FundingContract",
        remote_side="FundingContract.id",
        foreign_keys=[parent_contract_id],
    )
    transactions: Mapped[list["Transaction"]] = relationship(  # noqa: F821
        "Transaction",
        back_populates="contract",
        order_by="Transaction.id",
    )

    __table_args__ = (
        CheckConstraint(
            "current_balance >= 0 AND current_balance <= original_amount",
            name="ck_contract_balance_range",
        ),
        CheckConstraint("original_amount >= 0", name="ck_contract_original_amount"),
        Index("idx_contract_resident_status", "resident_id", "contract_status"),
    )

    __mapper_args__ = {"version_id_col": version}

    @validates("original_amount")
    def _validate_original_amount(self, key: str, value: Decimal) -> Decimal:
        if self.id is not None:
            current = getattr(self, key)
            if current is not None and Decimal(value) != current:
                raise ValueError("original_amount cannot change once a contract is stored")
        return value

    def __repr__(self) -> str:
        return (
            f"<FundingContract(id={self.id}, resident_id={self.resident_id}, "
            f"status={self.contract_status}, original={self.original_amount}, "
            f"balance={self.current_balance})>"
        )


__all__ = [
    "FundingContract",
    "ContractType",
    "ContractStatus",
    "DrawdownRate",
    "BillingFrequency",
]
