"""Resident management service for database operations."""

import logging

from sqlalchemy.orm import Session

from src.models.resident import Resident, ResidentStatus
from src.services.audit_service import AuditService
from src.services.errors import InvalidStateTransition, NotFoundError
from src.services.storage import unit_of_work

logger = logging.getLogger(__name__)

RESIDENT_STATUS_TRANSITIONS: dict[ResidentStatus, set[ResidentStatus]] = {
    ResidentStatus.PROSPECT: {ResidentStatus.ACTIVE, ResidentStatus.DEACTIVATED},
    ResidentStatus.ACTIVE: {ResidentStatus.DEACTIVATED},
    ResidentStatus.DEACTIVATED: {ResidentStatus.ACTIVE},
}


class ResidentService:
    """Service for resident CRUD and status changes."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def get_resident(self, resident_id: int) -> Resident:
        """Get resident by ID.

        Raises:
            NotFoundError: Resident does not exist
        """
        resident = self.db.get(Resident, resident_id)
        if resident is None:
            raise NotFoundError("Resident", resident_id)
        return resident

    def list_residents(self, status: ResidentStatus | None = None) -> list[Resident]:
        query = self.db.query(Resident)
        if status is not None:
            query = query.filter(Resident.status == status)
        return query.order_by(Resident.last_name, Resident.first_name).all()

    def create_resident(
        self,
        first_name: str,
        last_name: str,
        actor: str,
        ndis_number: str | None = None,
        status: ResidentStatus = ResidentStatus.PROSPECT,
    ) -> Resident:
        """Create a resident and record the creation on its trail.

        Args:
            first_name: Given name
            last_name: Family name
            actor: Who creates the resident
            ndis_number: Optional NDIS participant number
            status: Initial status (default Prospect)

        Returns:
            Created Resident
        """
        with unit_of_work(self.db, "create resident"):
            resident = Resident(
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                ndis_number=ndis_number,
                status=status,
            )
            self.db.add(resident)
            self.db.flush()
            AuditService.log(
                self.db,
                entity_type="resident",
                entity_id=resident.id,
                resident_id=resident.id,
                action="CREATED",
                actor=actor,
                changes={"first_name": resident.first_name, "last_name": resident.last_name},
            )
        logger.info("Created resident id=%d", resident.id)
        return resident

    def change_resident_status(
        self, resident_id: int, new_status: ResidentStatus, actor: str
    ) -> Resident:
        """Move a resident to a new status.

        Raises:
            NotFoundError: Resident does not exist
            InvalidStateTransition: Transition not allowed from the current status
        """
        resident = self.get_resident(resident_id)
        old_status = resident.status
        if new_status not in RESIDENT_STATUS_TRANSITIONS.get(old_status, set()):
            raise InvalidStateTransition("resident", old_status.value, new_status.value)

        with unit_of_work(self.db, "change resident status"):
            resident.status = new_status
            AuditService.log(
                self.db,
                entity_type="resident",
                entity_id=resident.id,
                resident_id=resident.id,
                action="STATUS_CHANGED",
                field="status",
                old_value=old_status,
                new_value=new_status,
                actor=actor,
            )
        logger.info(
            "Resident id=%d status %s -> %s", resident.id, old_status.value, new_status.value
        )
        return resident


__all__ = ["ResidentService", "RESIDENT_STATUS_TRANSITIONS"]
