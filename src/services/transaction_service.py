"""Transaction lifecycle: create, post, void and delete drawdown transactions.

Lifecycle: draft -> posted -> voided. Posting and voiding recompute the
contract's cached balance from the posted ledger inside the same database
transaction as the status change.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, NamedTuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.models.funding_contract import ContractStatus, FundingContract
from src.models.resident import Resident
from src.models.transaction import DrawdownStatus, Transaction, TransactionStatus
from src.services.audit_service import AuditService
from src.services.balance_service import BalanceCalculationService, BalanceImpact, ZERO, to_money
from src.services.drawdown_validation import DrawdownValidator, validate_drawdown_input
from src.services.errors import (
    DrawdownError,
    InsufficientBalance,
    InvalidStateTransition,
    NotFoundError,
    StorageFailure,
    ValidationFailed,
)
from src.services.storage import unit_of_work

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 25

UPDATABLE_FIELDS = {
    "occurred_at",
    "service_code",
    "service_item_code",
    "description",
    "note",
    "quantity",
    "unit_price",
    "amount",
}

SORT_COLUMNS = {
    "occurred_at": Transaction.occurred_at,
    "amount": Transaction.amount,
    "created_at": Transaction.created_at,
    "status": Transaction.status,
    "id": Transaction.id,
}


@dataclass
class TransactionCreateInput:
    """Input for a new draft transaction.

    amount overrides quantity x unit_price when given. participant_id
    defaults to resident_id.
    """

    resident_id: int
    contract_id: int
    occurred_at: datetime
    quantity: int
    unit_price: Decimal
    service_item_code: str | None = None
    service_code: str | None = None
    description: str | None = None
    note: str | None = None
    amount: Decimal | None = None
    participant_id: int | None = None
    is_drawdown_transaction: bool = True
    is_automated: bool = False
    billing_run_id: int | None = None


@dataclass
class TransactionFilters:
    date_from: date | None = None
    date_to: date | None = None
    resident_ids: list[int] = field(default_factory=list)
    contract_ids: list[int] = field(default_factory=list)
    statuses: list[TransactionStatus] = field(default_factory=list)
    service_code: str | None = None
    search: str | None = None


class TransactionPage(NamedTuple):
    items: list[Transaction]
    total: int
    page: int
    page_size: int
    has_more: bool


class BulkOperationError(NamedTuple):
    transaction_id: int
    error: str


@dataclass
class BulkOperationResult:
    """Outcome of a bulk post or void."""

    processed: int = 0
    failed: int = 0
    errors: list[BulkOperationError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0


class ContractLedgerSummary(NamedTuple):
    contract_id: int
    contract_status: ContractStatus
    original_amount: Decimal
    posted_total: Decimal
    ledger_balance: Decimal
    cached_balance: Decimal
    draft_count: int


class ResidentBalanceSummary(NamedTuple):
    resident_id: int
    contracts: list[ContractLedgerSummary]
    total_original: Decimal
    total_posted: Decimal
    total_remaining: Decimal


def _compute_amount(quantity: Any, unit_price: Any, override: Any) -> Decimal | None:
    """quantity x unit_price unless an explicit amount is supplied."""
    try:
        if override is not None:
            return to_money(override)
        if quantity is None or unit_price is None:
            return None
        return to_money(Decimal(unit_price) * int(quantity))
    except (InvalidOperation, TypeError, ValueError):
        return None


def _require_status(
    transaction: Transaction, expected: TransactionStatus, target: TransactionStatus
) -> None:
    if transaction.status != expected:
        raise InvalidStateTransition("transaction", transaction.status.value, target.value)


class TransactionService:
    """Service for transaction CRUD and lifecycle operations."""

    def __init__(self, db_session: Session, clock: Callable[[], datetime] | None = None):
        """Initialize with database session and an optional clock."""
        self.db = db_session
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.balances = BalanceCalculationService(db_session)
        self.validator = DrawdownValidator(db_session, clock=self.clock)

    # Lookups

    def get_transaction(self, transaction_id: int) -> Transaction:
        """Get transaction by ID.

        Raises:
            NotFoundError: Transaction does not exist
        """
        transaction = self.db.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    def _get_resident(self, resident_id: int) -> Resident:
        resident = self.db.get(Resident, resident_id)
        if resident is None:
            raise NotFoundError("Resident", resident_id)
        return resident

    def _lock_contract(self, contract_id: int) -> FundingContract:
        """Load the contract fresh from the database, row-locked where supported."""
        contract = (
            self.db.query(FundingContract)
            .filter(FundingContract.id == contract_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if contract is None:
            raise NotFoundError("Contract", contract_id)
        return contract

    def _lock_transaction(self, transaction_id: int) -> Transaction:
        """Re-read the transaction after the contract lock so its status is current."""
        transaction = (
            self.db.query(Transaction)
            .filter(Transaction.id == transaction_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    def list_transactions(
        self,
        filters: TransactionFilters | None = None,
        sort_by: str = "occurred_at",
        descending: bool = True,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> TransactionPage:
        """Filtered, sorted, paginated transaction listing.

        Raises:
            ValidationFailed: Unknown sort column or bad paging arguments
            StorageFailure: Query failed
        """
        if sort_by not in SORT_COLUMNS:
            raise ValidationFailed([f"Cannot sort by '{sort_by}'"])
        if page < 1 or page_size < 1:
            raise ValidationFailed(["Page and page size must be positive"])

        filters = filters or TransactionFilters()
        conditions = []
        if filters.date_from:
            conditions.append(
                Transaction.occurred_at >= datetime.combine(filters.date_from, time.min)
            )
        if filters.date_to:
            conditions.append(
                Transaction.occurred_at
                < datetime.combine(filters.date_to + timedelta(days=1), time.min)
            )
        if filters.resident_ids:
            conditions.append(Transaction.resident_id.in_(filters.resident_ids))
        if filters.contract_ids:
            conditions.append(Transaction.contract_id.in_(filters.contract_ids))
        if filters.statuses:
            conditions.append(Transaction.status.in_(filters.statuses))
        if filters.service_code:
            conditions.append(Transaction.service_code == filters.service_code)
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            conditions.append(
                or_(
                    Transaction.description.ilike(pattern),
                    Transaction.note.ilike(pattern),
                    Transaction.service_item_code.ilike(pattern),
                )
            )

        column = SORT_COLUMNS[sort_by]
        order = column.desc() if descending else column.asc()
        try:
            total = self.db.scalar(
                select(func.count()).select_from(Transaction).where(*conditions)
            )
            items = list(
                self.db.scalars(
                    select(Transaction)
                    .where(*conditions)
                    .order_by(order, Transaction.id.desc() if descending else Transaction.id)
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
            )
        except SQLAlchemyError as e:
            logger.error("Failed to list transactions: %s", e, exc_info=True)
            raise StorageFailure(f"Failed to list transactions: {e}") from e

        return TransactionPage(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            has_more=page * page_size < total,
        )

    # Mutations

    def create_transaction(self, data: TransactionCreateInput, actor: str) -> Transaction:
        """Store a new draft transaction.

        Drawdown transactions are checked against the input shape rules
        first; every problem is reported together.

        Raises:
            NotFoundError: Resident or contract does not exist
            ValidationFailed: Input breaks one or more rules
        """
        resident = self._get_resident(data.resident_id)
        contract = self.db.get(FundingContract, data.contract_id)
        if contract is None or contract.resident_id != resident.id:
            raise NotFoundError("Contract", data.contract_id)

        amount = _compute_amount(data.quantity, data.unit_price, data.amount)
        if data.is_drawdown_transaction:
            errors = validate_drawdown_input(data, amount, resident, contract)
        else:
            errors = []
            if amount is None or amount <= 0:
                errors.append("Transaction amount must be greater than zero")
            if not isinstance(data.quantity, int) or data.quantity <= 0:
                errors.append("Quantity must be greater than zero")
        if errors:
            logger.warning("Rejected transaction for contract id=%d: %s", contract.id, errors)
            raise ValidationFailed(errors)

        with unit_of_work(self.db, "create transaction"):
            transaction = Transaction(
                resident_id=resident.id,
                participant_id=data.participant_id or resident.id,
                contract_id=contract.id,
                occurred_at=data.occurred_at,
                service_code=data.service_code,
                service_item_code=data.service_item_code.strip() if data.service_item_code else None,
                description=data.description,
                note=data.note,
                quantity=data.quantity,
                unit_price=to_money(data.unit_price),
                amount=amount,
                status=TransactionStatus.DRAFT,
                drawdown_status=DrawdownStatus.PENDING,
                is_drawdown_transaction=data.is_drawdown_transaction,
                is_automated=data.is_automated,
                billing_run_id=data.billing_run_id,
                created_by=actor,
            )
            self.db.add(transaction)
            self.db.flush()
            AuditService.log(
                self.db,
                entity_type="transaction",
                entity_id=transaction.id,
                resident_id=resident.id,
                action="created",
                actor=actor,
                changes={"amount": str(amount), "contract_id": contract.id},
            )
        logger.info(
            "Created draft transaction id=%d for contract id=%d amount=%s",
            transaction.id,
            contract.id,
            amount,
        )
        return transaction

    def update_transaction(
        self, transaction_id: int, changes: dict[str, Any], actor: str
    ) -> Transaction:
        """Edit a draft transaction; one audit entry per changed field.

        The stored amount is recomputed from quantity x unit_price only when
        either of them changes; otherwise an earlier explicit amount stays.

        Raises:
            NotFoundError: Transaction does not exist
            InvalidStateTransition: Transaction is not a draft
            ValidationFailed: Unknown fields or the edited values break the rules
        """
        transaction = self.get_transaction(transaction_id)
        if transaction.status != TransactionStatus.DRAFT:
            raise InvalidStateTransition(
                "transaction",
                transaction.status.value,
                "updated",
                message="Only draft transactions can be updated",
            )
        unknown = sorted(set(changes) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationFailed([f"Field '{name}' cannot be updated" for name in unknown])

        if "amount" in changes:
            override = changes["amount"]
        elif "quantity" in changes or "unit_price" in changes:
            override = None
        else:
            # Keeps an earlier explicit amount
            override = transaction.amount

        merged = TransactionCreateInput(
            resident_id=transaction.resident_id,
            contract_id=transaction.contract_id,
            occurred_at=changes.get("occurred_at", transaction.occurred_at),
            quantity=changes.get("quantity", transaction.quantity),
            unit_price=changes.get("unit_price", transaction.unit_price),
            service_item_code=changes.get("service_item_code", transaction.service_item_code),
            service_code=changes.get("service_code", transaction.service_code),
            description=changes.get("description", transaction.description),
            note=changes.get("note", transaction.note),
            amount=override,
            is_drawdown_transaction=transaction.is_drawdown_transaction,
        )
        amount = _compute_amount(merged.quantity, merged.unit_price, merged.amount)
        if transaction.is_drawdown_transaction:
            errors = validate_drawdown_input(
                merged, amount, transaction.resident, transaction.contract
            )
        else:
            errors = [] if amount and amount > 0 else ["Transaction amount must be greater than zero"]
        if errors:
            raise ValidationFailed(errors)

        new_values = {name: getattr(merged, name) for name in UPDATABLE_FIELDS if name != "amount"}
        new_values["unit_price"] = to_money(new_values["unit_price"])
        new_values["amount"] = amount
        with unit_of_work(self.db, "update transaction"):
            for name, value in new_values.items():
                old = getattr(transaction, name)
                if old == value:
                    continue
                setattr(transaction, name, value)
                AuditService.log(
                    self.db,
                    entity_type="transaction",
                    entity_id=transaction.id,
                    resident_id=transaction.resident_id,
                    action="updated",
                    field=name,
                    old_value=old,
                    new_value=value,
                    actor=actor,
                )
        logger.info("Updated draft transaction id=%d", transaction_id)
        return transaction

    def post_transaction(self, transaction_id: int, actor: str) -> Transaction:
        """Post a draft transaction against its contract.

        Re-resolves the resident and contract from the database, re-runs
        every drawdown rule, then marks the transaction posted and recomputes
        the contract balance from the ledger, all in one database
        transaction. On any failure nothing is written.

        Raises:
            NotFoundError: Transaction, resident or contract does not exist
            InvalidStateTransition: Transaction is not a draft
            InsufficientBalance: Posting would overdraw the contract
            ValidationFailed: Other drawdown rules failed
            ConcurrencyConflict: The contract or transaction changed concurrently
        """
        transaction = self.get_transaction(transaction_id)
        _require_status(transaction, TransactionStatus.DRAFT, TransactionStatus.POSTED)

        with unit_of_work(self.db, "post transaction"):
            self._get_resident(transaction.resident_id)
            contract = self._lock_contract(transaction.contract_id)
            transaction = self._lock_transaction(transaction_id)
            _require_status(transaction, TransactionStatus.DRAFT, TransactionStatus.POSTED)
            result = self.validator.validate(transaction, contract)
            if not result.can_proceed:
                impact = result.balance_impact
                logger.warning(
                    "Rejected posting of transaction id=%d: %s", transaction_id, result.errors
                )
                if impact is not None and not impact.is_valid:
                    raise InsufficientBalance(
                        result.errors, impact.shortfall, impact, result.warnings
                    )
                raise ValidationFailed(result.errors, impact, result.warnings)

            now = self.clock()
            transaction.status = TransactionStatus.POSTED
            transaction.drawdown_status = DrawdownStatus.POSTED
            transaction.validated_at = now
            transaction.posted_at = now
            transaction.posted_by = actor
            AuditService.log(
                self.db,
                entity_type="transaction",
                entity_id=transaction.id,
                resident_id=transaction.resident_id,
                action="posted",
                field="status",
                old_value=TransactionStatus.DRAFT,
                new_value=TransactionStatus.POSTED,
                actor=actor,
                changes={"amount": str(transaction.amount)},
            )
            self._recompute(contract, actor)
        logger.info("Posted transaction id=%d by %s", transaction_id, actor)
        return transaction

    def void_transaction(self, transaction_id: int, reason: str, actor: str) -> Transaction:
        """Void a posted transaction; history is kept.

        Raises:
            NotFoundError: Transaction does not exist
            InvalidStateTransition: Transaction is not posted
            ValidationFailed: No reason given
            ConcurrencyConflict: The contract or transaction changed concurrently
        """
        transaction = self.get_transaction(transaction_id)
        _require_status(transaction, TransactionStatus.POSTED, TransactionStatus.VOIDED)
        if not reason or not reason.strip():
            raise ValidationFailed(["Void reason is required"])

        with unit_of_work(self.db, "void transaction"):
            contract = self._lock_contract(transaction.contract_id)
            transaction = self._lock_transaction(transaction_id)
            _require_status(transaction, TransactionStatus.POSTED, TransactionStatus.VOIDED)
            transaction.status = TransactionStatus.VOIDED
            transaction.drawdown_status = DrawdownStatus.VOIDED
            transaction.voided_at = self.clock()
            transaction.voided_by = actor
            transaction.void_reason = reason.strip()
            AuditService.log(
                self.db,
                entity_type="transaction",
                entity_id=transaction.id,
                resident_id=transaction.resident_id,
                action="voided",
                field="status",
                old_value=TransactionStatus.POSTED,
                new_value=TransactionStatus.VOIDED,
                actor=actor,
                reason=reason.strip(),
            )
            self._recompute(contract, actor)
        logger.info("Voided transaction id=%d by %s", transaction_id, actor)
        return transaction

    def delete_transaction(self, transaction_id: int, actor: str) -> None:
        """Delete a draft transaction.

        Raises:
            NotFoundError: Transaction does not exist
            InvalidStateTransition: Transaction is not a draft
        """
        transaction = self.get_transaction(transaction_id)
        if transaction.status != TransactionStatus.DRAFT:
            raise InvalidStateTransition(
                "transaction",
                transaction.status.value,
                "deleted",
                message="Only draft transactions can be deleted",
            )
        with unit_of_work(self.db, "delete transaction"):
            AuditService.log(
                self.db,
                entity_type="transaction",
                entity_id=transaction.id,
                resident_id=transaction.resident_id,
                action="deleted",
                actor=actor,
                changes={"amount": str(transaction.amount), "contract_id": transaction.contract_id},
            )
            self.db.delete(transaction)
        logger.info("Deleted draft transaction id=%d", transaction_id)

    def _recompute(self, contract: FundingContract, actor: str) -> None:
        old_balance = contract.current_balance
        new_balance = self.balances.recompute_contract_balance(contract)
        AuditService.log(
            self.db,
            entity_type="contract",
            entity_id=contract.id,
            resident_id=contract.resident_id,
            action="balance_updated",
            field="current_balance",
            old_value=old_balance,
            new_value=new_balance,
            actor=actor,
        )

    # Bulk operations

    def bulk_post(self, transaction_ids: list[int], actor: str) -> BulkOperationResult:
        """Post each transaction independently, collecting failures."""
        result = BulkOperationResult()
        for transaction_id in transaction_ids:
            try:
                self.post_transaction(transaction_id, actor)
                result.processed += 1
            except DrawdownError as e:
                result.failed += 1
                result.errors.append(BulkOperationError(transaction_id, e.message))
        logger.info("Bulk post: %d posted, %d failed", result.processed, result.failed)
        return result

    def bulk_void(self, transaction_ids: list[int], reason: str, actor: str) -> BulkOperationResult:
        """Void each transaction independently, collecting failures."""
        result = BulkOperationResult()
        for transaction_id in transaction_ids:
            try:
                self.void_transaction(transaction_id, reason, actor)
                result.processed += 1
            except DrawdownError as e:
                result.failed += 1
                result.errors.append(BulkOperationError(transaction_id, e.message))
        logger.info("Bulk void: %d voided, %d failed", result.processed, result.failed)
        return result

    # Balance views

    def get_balance_preview(
        self,
        contract_id: int,
        amount: Decimal,
        exclude_transaction_id: int | None = None,
    ) -> BalanceImpact:
        """What posting `amount` would leave on the contract, by ledger.

        Raises:
            NotFoundError: Contract does not exist
        """
        contract = self.db.get(FundingContract, contract_id)
        if contract is None:
            raise NotFoundError("Contract", contract_id)
        return self.balances.calculate_balance_impact(contract, amount, exclude_transaction_id)

    def get_resident_balance_summary(self, resident_id: int) -> ResidentBalanceSummary:
        """Ledger totals for every contract a resident holds.

        Raises:
            NotFoundError: Resident does not exist
        """
        resident = self._get_resident(resident_id)
        summaries = []
        for contract in resident.contracts:
            posted = self.balances.posted_total(contract.id)
            drafts = self.db.scalar(
                select(func.count())
                .select_from(Transaction)
                .where(
                    Transaction.contract_id == contract.id,
                    Transaction.status == TransactionStatus.DRAFT,
                )
            )
            summaries.append(
                ContractLedgerSummary(
                    contract_id=contract.id,
                    contract_status=contract.contract_status,
                    original_amount=to_money(contract.original_amount),
                    posted_total=posted,
                    ledger_balance=max(ZERO, to_money(contract.original_amount) - posted),
                    cached_balance=to_money(contract.current_balance),
                    draft_count=drafts,
                )
            )
        return ResidentBalanceSummary(
            resident_id=resident.id,
            contracts=summaries,
            total_original=sum((s.original_amount for s in summaries), ZERO),
            total_posted=sum((s.posted_total for s in summaries), ZERO),
            total_remaining=sum((s.ledger_balance for s in summaries), ZERO),
        )


__all__ = [
    "BulkOperationError",
    "BulkOperationResult",
    "ContractLedgerSummary",
    "ResidentBalanceSummary",
    "TransactionCreateInput",
    "TransactionFilters",
    "TransactionPage",
    "TransactionService",
]
