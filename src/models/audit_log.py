"""Audit log model for the append-only resident and transaction trails."""

from typing import Any

from sqlalchemy import JSON, ForeignKey, Index, String, event
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel


class AuditLog(Base, BaseModel):
    """Audit log entry recording one mutation.

    Records who (actor) did what (action) to which entity (entity_type,
    entity_id), with the changed field and its old and new values. Every
    entry belongs to a resident's trail; transaction entries are also
    reachable from the transaction through entity_type/entity_id.

    Entries are immutable: the ORM refuses to update or delete them.
    """

    __tablename__ = "audit_logs"

    entity_type: Mapped[str] = mapped_column(String(50))
    """Entity type being audited: "resident", "contract", "transaction"."""

    entity_id: Mapped[int] = mapped_column()
    """Primary key of the entity being audited."""

    resident_id: Mapped[int | None] = mapped_column(ForeignKey("residents.id"), nullable=True)
    """Resident whose trail the entry belongs to."""

    action: Mapped[str] = mapped_column(String(50))
    """Action performed: "CONTRACT_CREATED", "posted", "voided", etc."""

    field: Mapped[str | None] = mapped_column(String(50), nullable=True)
    old_value: Mapped[str | None] = mapped_column(nullable=True)
    new_value: Mapped[str | None] = mapped_column(nullable=True)

    actor: Mapped[str] = mapped_column(String(100))
    """Who performed the action ("admin", "automation-system", ...)."""

    reason: Mapped[str | None] = mapped_column(nullable=True)

    changes: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    """Optional JSON snapshot of changed fields: {"amount": "500.00"}."""

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_resident", "resident_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, entity_type={self.entity_type}, entity_id={self.entity_id}, "
            f"action={self.action}, actor={self.actor}, created_at={self.created_at})>"
        )


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target: AuditLog) -> None:
    raise ValueError(f"Audit log entry {target.id} is immutable")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target: AuditLog) -> None:
    raise ValueError(f"Audit log entry {target.id} cannot be deleted")


__all__ = ["AuditLog"]
