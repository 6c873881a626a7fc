"""Audit service for appending entries to resident and transaction trails."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.models.audit_log import AuditLog


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value))


class AuditService:
    """Service for audit log operations.

    Entries are added to the caller's session without committing, so they
    land in the same database transaction as the change they describe.
    """

    @staticmethod
    def log(
        db: Session,
        entity_type: str,
        entity_id: int,
        action: str,
        actor: str,
        resident_id: int | None = None,
        field: str | None = None,
        old_value: Any = None,
        new_value: Any = None,
        reason: str | None = None,
        changes: dict | None = None,
    ) -> AuditLog:
        """Create audit log entry.

        Args:
            db: Database session
            entity_type: Type of entity ("resident", "contract", "transaction")
            entity_id: Primary key of the entity
            action: Action performed ("CONTRACT_RENEWED", "posted", etc.)
            actor: Who performed the action
            resident_id: Resident whose trail receives the entry
            field: Changed field name, if a single field changed
            old_value: Previous value (enums are stored by value)
            new_value: New value
            reason: Optional justification (void reason, ...)
            changes: Optional JSON snapshot of changed fields

        Returns:
            Created AuditLog object
        """
        audit = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            resident_id=resident_id,
            action=action,
            field=field,
            old_value=_as_text(old_value),
            new_value=_as_text(new_value),
            actor=actor,
            reason=reason,
            changes=changes,
        )
        db.add(audit)
        return audit

    @staticmethod
    def entries_for(db: Session, entity_type: str, entity_id: int) -> list[AuditLog]:
        """Return the ordered trail of one entity."""
        stmt = (
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.id)
        )
        return list(db.scalars(stmt))


__all__ = ["AuditService"]
