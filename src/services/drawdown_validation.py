"""Drawdown validation rules for NDIS compliance.

A drawdown transaction must be:
- non-zero, for a specific NDIS support item
- linked to the participant who holds the contract
- dated, and within the contract period
- covered by the contract's remaining ledger balance
- atomic: one described support item with a whole-unit quantity

Rules are evaluated independently and every violation is reported, so the
caller can show all problems at once.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, NamedTuple

from sqlalchemy.orm import Session

from src.models.funding_contract import ContractStatus, FundingContract
from src.models.resident import Resident
from src.models.transaction import Transaction
from src.services.balance_service import (
    BalanceCalculationService,
    BalanceImpact,
    days_until_expiry,
    is_contract_expiring_soon,
)

if TYPE_CHECKING:
    from src.services.transaction_service import TransactionCreateInput

logger = logging.getLogger(__name__)

NDIS_SERVICE_CODE_PATTERN = re.compile(r"^\d{2}_\d{3}_\d{4}_\d_\d$")
LOW_BALANCE_RATIO = Decimal("0.10")

MSG_AMOUNT = "Transaction amount must be greater than zero"
MSG_CODE_REQUIRED = "Service item code is required for NDIS compliance"
MSG_CODE_FORMAT = "Service item code must follow NDIS format (e.g., 01_001_0107_1_1)"
MSG_PARTICIPANT_REQUIRED = "Participant linking is required"
MSG_PARTICIPANT_MISMATCH = "Transaction must be linked to the participant who holds the contract"
MSG_TIMESTAMP = "Valid transaction date is required"
MSG_CONTRACT_REQUIRED = "Valid contract reference is required"
MSG_CONTRACT_INACTIVE = "Contract must be active for drawdown"
MSG_DESCRIPTION = "Transaction must describe specific support provided"
MSG_QUANTITY = "Transaction must specify valid quantity of service"
MSG_OUTSIDE_PERIOD = "Transaction must occur within contract period"


def is_valid_ndis_service_code(code: str | None) -> bool:
    """Check the NDIS support item format NN_NNN_NNNN_N_N."""
    return bool(code) and NDIS_SERVICE_CODE_PATTERN.match(code.strip()) is not None


def _is_whole_positive(quantity) -> bool:
    return isinstance(quantity, int) and not isinstance(quantity, bool) and quantity > 0


class RuleContext(NamedTuple):
    """Inputs shared by all rules for one validation."""

    transaction: Transaction
    contract: FundingContract | None
    balance_impact: BalanceImpact | None


@dataclass(frozen=True)
class DrawdownRule:
    """A single compliance rule; check returns an error message, a list of them, or None."""

    rule_id: str
    description: str
    is_mandatory: bool
    check: Callable[[RuleContext], str | list[str] | None]


def _check_amount(ctx: RuleContext) -> str | None:
    amount = ctx.transaction.amount
    return None if amount is not None and Decimal(amount) > 0 else MSG_AMOUNT


def _check_service_item_code(ctx: RuleContext) -> str | None:
    code = ctx.transaction.service_item_code
    if not code or not code.strip():
        return MSG_CODE_REQUIRED
    return None if is_valid_ndis_service_code(code) else MSG_CODE_FORMAT


def _check_participant(ctx: RuleContext) -> str | None:
    txn = ctx.transaction
    if txn.participant_id is None:
        return MSG_PARTICIPANT_REQUIRED
    if txn.participant_id != txn.resident_id:
        return MSG_PARTICIPANT_MISMATCH
    if ctx.contract is not None and txn.participant_id != ctx.contract.resident_id:
        return MSG_PARTICIPANT_MISMATCH
    return None


def _check_timestamp(ctx: RuleContext) -> str | None:
    return None if isinstance(ctx.transaction.occurred_at, datetime) else MSG_TIMESTAMP


def _check_contract(ctx: RuleContext) -> str | None:
    if ctx.contract is None:
        return MSG_CONTRACT_REQUIRED
    if ctx.contract.contract_status != ContractStatus.ACTIVE:
        return MSG_CONTRACT_INACTIVE
    return None


def _check_balance(ctx: RuleContext) -> str | None:
    if ctx.balance_impact is None or ctx.balance_impact.is_valid:
        return None
    return ctx.balance_impact.error_message


def _check_atomic(ctx: RuleContext) -> list[str]:
    txn = ctx.transaction
    errors = []
    if not (txn.description or txn.note or "").strip():
        errors.append(MSG_DESCRIPTION)
    if not _is_whole_positive(txn.quantity):
        errors.append(MSG_QUANTITY)
    return errors


MANDATORY_DRAWDOWN_RULES: list[DrawdownRule] = [
    DrawdownRule("NON_ZERO_VALUE", "Transaction must have a non-zero dollar value", True, _check_amount),
    DrawdownRule(
        "VALID_SERVICE_ITEM_CODE",
        "Must include a valid NDIS service item code",
        True,
        _check_service_item_code,
    ),
    DrawdownRule(
        "PARTICIPANT_LINKING", "Must be tied to a specific participant", True, _check_participant
    ),
    DrawdownRule("VALID_TIMESTAMP", "Each transaction must include a valid date", True, _check_timestamp),
    DrawdownRule(
        "CONTRACT_REFERENCE",
        "Must reference a valid support agreement/contract",
        True,
        _check_contract,
    ),
    DrawdownRule(
        "SUFFICIENT_BALANCE",
        "Contract must have sufficient balance for transaction",
        True,
        _check_balance,
    ),
    DrawdownRule(
        "ATOMIC_TRANSACTION",
        "Transaction must be atomic (single point in time, specific support item)",
        True,
        _check_atomic,
    ),
]


class DrawdownValidationResult(NamedTuple):
    """Outcome of validating a transaction against a contract."""

    is_valid: bool
    errors: list[str]
    warnings: list[str]
    balance_impact: BalanceImpact | None
    can_proceed: bool


class DrawdownValidator:
    """Evaluate the mandatory drawdown rules against current ledger state."""

    def __init__(
        self,
        db: Session,
        rules: list[DrawdownRule] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.rules = rules if rules is not None else MANDATORY_DRAWDOWN_RULES
        self.balances = BalanceCalculationService(db)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def validate(
        self, transaction: Transaction, contract: FundingContract | None
    ) -> DrawdownValidationResult:
        """Validate a transaction against every rule.

        The balance impact is computed from the posted ledger, leaving the
        transaction itself out of the sum.

        Args:
            transaction: Transaction to validate (usually a draft)
            contract: Contract it draws on, or None when it does not resolve

        Returns:
            DrawdownValidationResult with the complete error list
        """
        balance_impact = None
        if contract is not None and transaction.amount is not None:
            balance_impact = self.balances.calculate_balance_impact(
                contract, transaction.amount, exclude_transaction_id=transaction.id
            )

        ctx = RuleContext(transaction, contract, balance_impact)
        errors: list[str] = []
        warnings: list[str] = []
        for rule in self.rules:
            outcome = rule.check(ctx)
            if not outcome:
                continue
            messages = [outcome] if isinstance(outcome, str) else outcome
            (errors if rule.is_mandatory else warnings).extend(messages)

        if transaction.is_drawdown_transaction:
            if not is_valid_ndis_service_code(transaction.service_item_code):
                errors.append(MSG_CODE_FORMAT)
            if contract is not None and not _within_period(transaction.occurred_at, contract):
                errors.append(MSG_OUTSIDE_PERIOD)

        warnings.extend(self._warnings(contract, balance_impact))
        errors = list(dict.fromkeys(errors))
        is_valid = not errors
        can_proceed = is_valid and balance_impact is not None and balance_impact.is_valid
        if errors:
            logger.debug("Transaction id=%s failed drawdown rules: %s", transaction.id, errors)
        return DrawdownValidationResult(
            is_valid=is_valid,
            errors=errors,
            warnings=warnings,
            balance_impact=balance_impact,
            can_proceed=can_proceed,
        )

    def _warnings(
        self, contract: FundingContract | None, impact: BalanceImpact | None
    ) -> list[str]:
        if contract is None:
            return []
        warnings = []
        original = Decimal(contract.original_amount)
        if impact is not None and impact.is_valid and original > 0:
            if impact.new_balance < original * LOW_BALANCE_RATIO:
                warnings.append("Contract balance will fall below 10% of the original amount")
        today = self.clock().date()
        if is_contract_expiring_soon(contract, today):
            warnings.append(f"Contract expires in {days_until_expiry(contract, today)} days")
        return warnings


def _within_period(occurred_at, contract: FundingContract) -> bool:
    if not isinstance(occurred_at, datetime):
        return False
    if contract.start_date is None or contract.end_date is None:
        return True
    day: date = occurred_at.date()
    return contract.start_date <= day <= contract.end_date


def validate_drawdown_input(
    data: "TransactionCreateInput",
    amount: Decimal | None,
    resident: Resident | None,
    contract: FundingContract | None,
) -> list[str]:
    """Shape rules applied before a drawdown transaction is stored.

    Returns:
        Every problem found (empty when the input is acceptable)
    """
    errors = []
    if not data.service_item_code or not data.service_item_code.strip():
        errors.append(MSG_CODE_REQUIRED)
    elif not is_valid_ndis_service_code(data.service_item_code):
        errors.append(MSG_CODE_FORMAT)
    if not isinstance(data.occurred_at, datetime):
        errors.append(MSG_TIMESTAMP)
    if not _is_whole_positive(data.quantity):
        errors.append("Quantity must be greater than zero")
    if data.unit_price is None or Decimal(data.unit_price) < 0:
        errors.append("Unit price must be non-negative")
    if amount is None or amount <= 0:
        errors.append(MSG_AMOUNT)
    if resident is None:
        errors.append("Resident not found")
    if contract is None:
        errors.append("Contract not found")
    elif contract.contract_status != ContractStatus.ACTIVE:
        errors.append("Contract must be active for drawdown transactions")
    return errors


__all__ = [
    "DrawdownRule",
    "DrawdownValidationResult",
    "DrawdownValidator",
    "MANDATORY_DRAWDOWN_RULES",
    "is_valid_ndis_service_code",
    "validate_drawdown_input",
]
