"""Resident ORM model (NDIS participant holding funding contracts)."""

from enum import Enum

from sqlalchemy import Enum as SQLEnum
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.models import Base, BaseModel


class ResidentStatus(str, Enum):
    """Lifecycle status of a resident."""

    PROSPECT = "Prospect"
    ACTIVE = "Active"
    DEACTIVATED = "Deactivated"


class Resident(Base, BaseModel):
    """Model representing a resident (NDIS participant).

    A resident owns funding contracts and the drawdown transactions billed
    against them. Contract lifecycle events are recorded on the resident's
    audit trail.
    """

    __tablename__ = "residents"

    first_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Given name",
    )
    last_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Family name",
    )
    ndis_number: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        unique=True,
        comment="NDIS participant number",
    )
    status: Mapped[ResidentStatus] = mapped_column(
        SQLEnum(ResidentStatus),
        nullable=False,
        default=ResidentStatus.PROSPECT,
        comment="Resident lifecycle status",
    )

    # Relationships
    contracts: Mapped[list["FundingContract"]] = relationship(  # noqa: F821
        "FundingContract",
        back_populates="resident",
        order_by="FundingContract.id",
    )
    transactions: Mapped[list["Transaction"]] = relationship(  # noqa: F821
        "Transaction",
        back_populates="resident",
        foreign_keys="Transaction.resident_id",
        order_by="Transaction.id",
    )
    audit_trail: Mapped[list["AuditLog"]] = relationship(  # noqa: F821
        "AuditLog",
        viewonly=True,
        order_by="AuditLog.id",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"<Resident(id={self.id}, name={self.full_name}, status={self.status})>"


__all__ = ["Resident", "ResidentStatus"]
