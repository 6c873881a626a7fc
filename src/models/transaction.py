"""Transaction ORM model for drawdowns billed against funding contracts."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models import Base, BaseModel


class TransactionStatus(str, Enum):
    """Transaction lifecycle status."""

    DRAFT = "draft"
    POSTED = "posted"
    VOIDED = "voided"


class DrawdownStatus(str, Enum):
    """Drawdown state mirrored from the transaction lifecycle."""

    PENDING = "pending"
    POSTED = "posted"
    VOIDED = "voided"


class Transaction(Base, BaseModel):
    """Model representing a transaction billed against a funding contract.

    Lifecycle: draft -> posted -> voided. Drafts have no balance effect and
    may be deleted. Posted transactions are immutable except for the void
    transition, and voided transactions stay in history.
    """

    __tablename__ = "transactions"

    # Foreign keys
    resident_id: Mapped[int] = mapped_column(
        ForeignKey("residents.id"),
        nullable=False,
        index=True,
        comment="Resident the support was delivered to",
    )
    participant_id: Mapped[int] = mapped_column(
        ForeignKey("residents.id"),
        nullable=False,
        comment="NDIS participant linked to the drawdown",
    )
    contract_id: Mapped[int] = mapped_column(
        ForeignKey("funding_contracts.id"),
        nullable=False,
        index=True,
        comment="Funding contract drawn down",
    )
    billing_run_id: Mapped[int | None] = mapped_column(
        ForeignKey("billing_runs.id"),
        nullable=True,
        comment="Billing run that generated this transaction",
    )

    # Support details
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment="When the support was delivered",
    )
    service_code: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="Service category (SDA_RENT, SIL_SUPPORT, ...)",
    )
    service_item_code: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
        comment="NDIS support item code (NN_NNN_NNNN_N_N)",
    )
    description: Mapped[str | None] = mapped_column(
        nullable=True,
        comment="Specific support provided",
    )
    note: Mapped[str | None] = mapped_column(
        nullable=True,
        comment="Optional free-text note",
    )
    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Units of service delivered",
    )
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Price per unit",
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Transaction amount (quantity x unit price unless overridden)",
    )

    # Lifecycle
    status: Mapped[TransactionStatus] = mapped_column(
        SQLEnum(TransactionStatus),
        nullable=False,
        default=TransactionStatus.DRAFT,
        comment="draft, posted or voided",
    )
    drawdown_status: Mapped[DrawdownStatus] = mapped_column(
        SQLEnum(DrawdownStatus),
        nullable=False,
        default=DrawdownStatus.PENDING,
        comment="Drawdown state",
    )
    is_drawdown_transaction: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Subject to the drawdown period and code checks",
    )
    is_automated: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Generated by the billing run",
    )
    created_by: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Actor that created the transaction",
    )
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Optimistic concurrency counter; guards the status transitions",
    )

    # Relationships
    resident: Mapped["Resident"] = relationship(  # noqa: F821
        "Resident",
        back_populates="transactions",
        foreign_keys=[resident_id],
    )
    contract: Mapped["FundingContract"] = relationship(  # noqa: F821
        "FundingContract",
        back_populates="transactions",
    )
    audit_trail: Mapped[list["AuditLog"]] = relationship(  # noqa: F821
        "AuditLog",
        primaryjoin=(
            "and_(foreign(AuditLog.entity_id) == Transaction.id, "
            "AuditLog.entity_type == 'transaction')"
        ),
        viewonly=True,
        order_by="AuditLog.id",
    )

    # Indexes for ledger queries
    __table_args__ = (
        Index("idx_transaction_contract_status", "contract_id", "status"),
        Index("idx_transaction_resident_occurred", "resident_id", "occurred_at"),
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, contract_id={self.contract_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


__all__ = ["Transaction", "TransactionStatus", "DrawdownStatus"]
