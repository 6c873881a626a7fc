"""Funding contract management: creation, status lifecycle and renewals."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, NamedTuple

from sqlalchemy.orm import Session

from src.models.funding_contract import (
    BillingFrequency,
    ContractStatus,
    ContractType,
    DrawdownRate,
    FundingContract,
)
from src.models.resident import Resident
from src.services.audit_service import AuditService
from src.services.balance_service import (
    ZERO,
    BalanceSummary,
    calculate_balance_summary,
    days_until_expiry,
    to_money,
)
from src.services.config import AppConfig
from src.services.contract_rates import calculate_contract_rates
from src.services.errors import InvalidStateTransition, NotFoundError, ValidationFailed
from src.services.resident_service import ResidentService
from src.services.storage import unit_of_work

logger = logging.getLogger(__name__)

CONTRACT_STATUS_TRANSITIONS: dict[ContractStatus, set[ContractStatus]] = {
    ContractStatus.DRAFT: {ContractStatus.ACTIVE},
    ContractStatus.ACTIVE: {
        ContractStatus.EXPIRED,
        ContractStatus.RENEWED,
        ContractStatus.DEACTIVATED,
    },
    ContractStatus.DEACTIVATED: {ContractStatus.ACTIVE},
    ContractStatus.EXPIRED: {ContractStatus.RENEWED},
    ContractStatus.RENEWED: set(),
}


def is_valid_status_transition(current: ContractStatus, new: ContractStatus) -> bool:
    return new in CONTRACT_STATUS_TRANSITIONS.get(current, set())


def get_valid_status_transitions(current: ContractStatus) -> list[ContractStatus]:
    return sorted(CONTRACT_STATUS_TRANSITIONS.get(current, set()), key=lambda s: s.value)


@dataclass
class ContractTerms:
    """Terms of a new funding contract."""

    original_amount: Decimal
    start_date: date
    end_date: date | None = None
    contract_type: ContractType = ContractType.DRAW_DOWN
    drawdown_rate: DrawdownRate = DrawdownRate.MONTHLY
    auto_drawdown: bool = True
    description: str | None = None
    support_item_code: str | None = None
    daily_support_item_cost: Decimal | None = None
    auto_billing_enabled: bool = False
    billing_frequency: BillingFrequency | None = None
    next_run_date: date | None = None


@dataclass
class RenewalTerms:
    """Terms of a renewal; unset fields are inherited from the parent contract."""

    original_amount: Decimal
    start_date: date
    end_date: date | None = None
    description: str | None = None
    drawdown_rate: DrawdownRate | None = None
    auto_drawdown: bool | None = None


class ExpiringContract(NamedTuple):
    contract: FundingContract
    resident: Resident
    days_until_expiry: int


def _validate_terms(original_amount: Decimal, start_date: date, end_date: date | None) -> None:
    errors = []
    if original_amount is None or Decimal(original_amount) < 0:
        errors.append("Contract amount must not be negative")
    if start_date is None:
        errors.append("Contract start date is required")
    elif end_date is not None and end_date < start_date:
        errors.append("Contract end date must not be before the start date")
    if errors:
        raise ValidationFailed(errors)


class ContractService:
    """Service for funding contract operations.

    Every mutation appends exactly one audit entry per contract it touches
    to the owning resident's trail, in the same database transaction as the
    state change.
    """

    def __init__(
        self,
        db_session: Session,
        clock: Callable[[], datetime] | None = None,
        config: AppConfig | None = None,
    ):
        """Initialize with database session, an optional clock and settings."""
        self.db = db_session
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.config = config or AppConfig()
        self.residents = ResidentService(db_session)

    def get_contract(self, contract_id: int) -> FundingContract:
        """Get contract by ID.

        Raises:
            NotFoundError: Contract does not exist
        """
        contract = self.db.get(FundingContract, contract_id)
        if contract is None:
            raise NotFoundError("Contract", contract_id)
        return contract

    def get_resident_contract(self, resident_id: int, contract_id: int) -> FundingContract:
        """Get a contract, checking it belongs to the resident.

        Raises:
            NotFoundError: Resident or contract does not exist, or the
                contract belongs to someone else
        """
        self.residents.get_resident(resident_id)
        contract = self.db.get(FundingContract, contract_id)
        if contract is None or contract.resident_id != resident_id:
            raise NotFoundError("Contract", contract_id)
        return contract

    def list_contracts(
        self, resident_id: int, status: ContractStatus | None = None
    ) -> list[FundingContract]:
        query = self.db.query(FundingContract).filter(FundingContract.resident_id == resident_id)
        if status is not None:
            query = query.filter(FundingContract.contract_status == status)
        return query.order_by(FundingContract.id).all()

    def add_contract(self, resident_id: int, terms: ContractTerms, actor: str) -> FundingContract:
        """Create a Draft contract for a resident.

        Raises:
            NotFoundError: Resident does not exist
            ValidationFailed: Terms are inconsistent
        """
        resident = self.residents.get_resident(resident_id)
        _validate_terms(terms.original_amount, terms.start_date, terms.end_date)

        with unit_of_work(self.db, "add contract"):
            contract = FundingContract(
                resident_id=resident.id,
                contract_type=terms.contract_type,
                original_amount=to_money(terms.original_amount),
                current_balance=to_money(terms.original_amount),
                start_date=terms.start_date,
                end_date=terms.end_date,
                drawdown_rate=terms.drawdown_rate,
                auto_drawdown=terms.auto_drawdown,
                contract_status=ContractStatus.DRAFT,
                description=terms.description,
                support_item_code=terms.support_item_code,
                daily_support_item_cost=terms.daily_support_item_cost,
                auto_billing_enabled=terms.auto_billing_enabled,
                billing_frequency=terms.billing_frequency,
                next_run_date=terms.next_run_date,
            )
            self.db.add(contract)
            self.db.flush()
            AuditService.log(
                self.db,
                entity_type="contract",
                entity_id=contract.id,
                resident_id=resident.id,
                action="CONTRACT_CREATED",
                actor=actor,
                changes={
                    "contract_type": terms.contract_type.value,
                    "original_amount": str(contract.original_amount),
                    "start_date": terms.start_date.isoformat(),
                },
            )
        logger.info("Created contract id=%d for resident id=%d", contract.id, resident_id)
        return contract

    def update_contract_status(
        self,
        resident_id: int,
        contract_id: int,
        new_status: ContractStatus,
        actor: str,
    ) -> Resident:
        """Move a contract to a new status.

        Draft -> Active (re)initialises the balance to the original amount
        and stamps last_drawdown_date. Moving to Expired forces the balance
        to zero.

        Args:
            resident_id: Owning resident
            contract_id: Contract to change
            new_status: Target status
            actor: Who performs the change

        Returns:
            The owning Resident

        Raises:
            NotFoundError: Resident or contract does not exist
            InvalidStateTransition: Transition not allowed from the current status
        """
        contract = self.get_resident_contract(resident_id, contract_id)
        old_status = contract.contract_status
        if not is_valid_status_transition(old_status, new_status):
            logger.warning(
                "Rejected contract id=%d status change %s -> %s",
                contract_id,
                old_status.value,
                new_status.value,
            )
            raise InvalidStateTransition("contract", old_status.value, new_status.value)

        with unit_of_work(self.db, "update contract status"):
            self._apply_status(contract, new_status)
            AuditService.log(
                self.db,
                entity_type="contract",
                entity_id=contract.id,
                resident_id=resident_id,
                action="CONTRACT_STATUS_CHANGED",
                field="contract_status",
                old_value=old_status,
                new_value=new_status,
                actor=actor,
            )
        logger.info(
            "Contract id=%d status %s -> %s", contract_id, old_status.value, new_status.value
        )
        return self.residents.get_resident(resident_id)

    def _apply_status(self, contract: FundingContract, new_status: ContractStatus) -> None:
        if contract.contract_status == ContractStatus.DRAFT and new_status == ContractStatus.ACTIVE:
            contract.current_balance = contract.original_amount
            contract.last_drawdown_date = self.clock().date()
        elif new_status == ContractStatus.EXPIRED:
            contract.current_balance = ZERO
        contract.contract_status = new_status

    def create_contract_renewal(
        self,
        resident_id: int,
        parent_contract_id: int,
        terms: RenewalTerms,
        actor: str,
    ) -> Resident:
        """Renew a contract with a new Draft contract.

        The renewal starts at its own original amount; the parent's balance
        is not carried over. Type, rate, auto-drawdown and billing settings
        are inherited unless the terms override them. The parent is marked
        Renewed.

        Returns:
            The owning Resident

        Raises:
            NotFoundError: Resident or parent contract does not exist
            InvalidStateTransition: Parent cannot be renewed from its status
            ValidationFailed: Terms are inconsistent
        """
        parent = self.get_resident_contract(resident_id, parent_contract_id)
        if not is_valid_status_transition(parent.contract_status, ContractStatus.RENEWED):
            raise InvalidStateTransition(
                "contract", parent.contract_status.value, ContractStatus.RENEWED.value
            )
        _validate_terms(terms.original_amount, terms.start_date, terms.end_date)

        with unit_of_work(self.db, "renew contract"):
            renewal = FundingContract(
                resident_id=resident_id,
                contract_type=parent.contract_type,
                original_amount=to_money(terms.original_amount),
                current_balance=to_money(terms.original_amount),
                start_date=terms.start_date,
                end_date=terms.end_date,
                drawdown_rate=terms.drawdown_rate or parent.drawdown_rate,
                auto_drawdown=(
                    parent.auto_drawdown if terms.auto_drawdown is None else terms.auto_drawdown
                ),
                contract_status=ContractStatus.DRAFT,
                parent_contract_id=parent.id,
                description=terms.description or f"Renewal of contract {parent.id}",
                support_item_code=parent.support_item_code,
                daily_support_item_cost=parent.daily_support_item_cost,
                auto_billing_enabled=parent.auto_billing_enabled,
                billing_frequency=parent.billing_frequency,
            )
            self.db.add(renewal)
            old_status = parent.contract_status
            parent.contract_status = ContractStatus.RENEWED
            self.db.flush()
            AuditService.log(
                self.db,
                entity_type="contract",
                entity_id=parent.id,
                resident_id=resident_id,
                action="CONTRACT_RENEWED",
                field="contract_status",
                old_value=old_status,
                new_value=ContractStatus.RENEWED,
                actor=actor,
                changes={
                    "renewal_contract_id": renewal.id,
                    "original_amount": str(renewal.original_amount),
                },
            )
        logger.info("Renewed contract id=%d as id=%d", parent_contract_id, renewal.id)
        return self.residents.get_resident(resident_id)

    def enable_contract_automation(
        self,
        contract_id: int,
        frequency: BillingFrequency,
        first_run_date: date,
        actor: str,
        support_item_code: str | None = None,
    ) -> FundingContract:
        """Turn on automated billing, deriving the daily cost from the contract term.

        Raises:
            NotFoundError: Contract does not exist
            ValidationFailed: Contract term cannot produce a daily rate
        """
        contract = self.get_contract(contract_id)
        rates = calculate_contract_rates(
            contract.original_amount, contract.start_date, contract.end_date
        )
        if not rates.is_valid:
            raise ValidationFailed(rates.errors)

        with unit_of_work(self.db, "enable contract automation"):
            contract.auto_billing_enabled = True
            contract.billing_frequency = frequency
            contract.daily_support_item_cost = rates.daily_rate
            contract.next_run_date = first_run_date
            if support_item_code:
                contract.support_item_code = support_item_code
            AuditService.log(
                self.db,
                entity_type="contract",
                entity_id=contract.id,
                resident_id=contract.resident_id,
                action="CONTRACT_AUTOMATION_CHANGED",
                field="auto_billing_enabled",
                old_value=False,
                new_value=True,
                actor=actor,
                changes={
                    "billing_frequency": BillingFrequency(frequency).value,
                    "daily_support_item_cost": str(rates.daily_rate),
                    "next_run_date": first_run_date.isoformat(),
                },
            )
        logger.info(
            "Enabled %s billing for contract id=%d at %s/day",
            BillingFrequency(frequency).value,
            contract_id,
            rates.daily_rate,
        )
        return contract

    def mark_expired_contracts(
        self, actor: str = "system", today: date | None = None
    ) -> list[FundingContract]:
        """Expire every Active contract whose end date has passed.

        Returns:
            Contracts that were moved to Expired
        """
        today = today or self.clock().date()
        candidates = (
            self.db.query(FundingContract)
            .filter(
                FundingContract.contract_status == ContractStatus.ACTIVE,
                FundingContract.end_date.is_not(None),
                FundingContract.end_date < today,
            )
            .order_by(FundingContract.id)
            .all()
        )
        if not candidates:
            return []

        with unit_of_work(self.db, "mark expired contracts"):
            for contract in candidates:
                self._apply_status(contract, ContractStatus.EXPIRED)
                AuditService.log(
                    self.db,
                    entity_type="contract",
                    entity_id=contract.id,
                    resident_id=contract.resident_id,
                    action="CONTRACT_EXPIRED",
                    field="contract_status",
                    old_value=ContractStatus.ACTIVE,
                    new_value=ContractStatus.EXPIRED,
                    actor=actor,
                    reason=f"End date {contract.end_date.isoformat()} passed",
                )
        logger.info("Marked %d contracts as expired", len(candidates))
        return candidates

    def get_expiring_contracts(
        self, threshold_days: int | None = None, today: date | None = None
    ) -> list[ExpiringContract]:
        """Active contracts ending within threshold_days, nearest first.

        threshold_days defaults to the configured expiry_threshold_days.
        """
        if threshold_days is None:
            threshold_days = self.config.expiry_threshold_days
        today = today or self.clock().date()
        rows = (
            self.db.query(FundingContract, Resident)
            .join(Resident, FundingContract.resident_id == Resident.id)
            .filter(
                FundingContract.contract_status == ContractStatus.ACTIVE,
                FundingContract.end_date.is_not(None),
            )
            .all()
        )
        expiring = []
        for contract, resident in rows:
            days = days_until_expiry(contract, today)
            if days is not None and 0 <= days <= threshold_days:
                expiring.append(ExpiringContract(contract, resident, days))
        expiring.sort(key=lambda item: item.days_until_expiry)
        return expiring

    def get_resident_contract_summary(
        self, resident_id: int, now: datetime | None = None
    ) -> BalanceSummary:
        """Time-based balance summary over a resident's contracts."""
        self.residents.get_resident(resident_id)
        return calculate_balance_summary(
            self.list_contracts(resident_id),
            now or self.clock(),
            self.config.expiry_threshold_days,
        )


__all__ = [
    "CONTRACT_STATUS_TRANSITIONS",
    "ContractService",
    "ContractTerms",
    "ExpiringContract",
    "RenewalTerms",
    "get_valid_status_transitions",
    "is_valid_status_transition",
]
