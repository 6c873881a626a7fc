"""Balance calculation for funding contracts.

Two views of a contract's remaining funds:

- Time-based entitlement (pure functions): an Active contract with
  auto_drawdown depletes linearly over its term, counted in whole
  days/weeks/months according to drawdown_rate.
- Ledger balance (BalanceCalculationService): original_amount minus the
  sum of posted transactions. This is the ground truth for sufficiency
  checks and for the cached current_balance column.
"""

import logging
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, NamedTuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from src.models.funding_contract import ContractStatus, DrawdownRate, FundingContract
from src.models.transaction import Transaction, TransactionStatus
from src.services.locale_service import format_amount

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
RENEWAL_THRESHOLD_DAYS = 30

DRAWDOWN_RATE_TEXT = {
    DrawdownRate.DAILY: "Daily",
    DrawdownRate.WEEKLY: "Weekly",
    DrawdownRate.MONTHLY: "Monthly",
}


def to_money(value: Decimal | int | float | str) -> Decimal:
    """Quantize to cents (half-up)."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def _truncate_div(numerator: int, denominator: int) -> int:
    """Integer division truncated toward zero."""
    quotient = abs(numerator) // denominator
    return quotient if numerator >= 0 else -quotient


def _months_between(start: date, end: date) -> int:
    """Whole calendar months from start to end, truncated toward zero."""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if months > 0 and end.day < start.day:
        months -= 1
    elif months < 0 and end.day > start.day:
        months += 1
    return months


def periods_between(start: date | datetime, end: date | datetime, rate: DrawdownRate) -> int:
    """Count whole periods between two instants at the given granularity.

    Negative when end is before start.
    """
    start_day = _as_date(start)
    end_day = _as_date(end)
    if rate == DrawdownRate.DAILY:
        return (end_day - start_day).days
    if rate == DrawdownRate.WEEKLY:
        return _truncate_div((end_day - start_day).days, 7)
    return _months_between(start_day, end_day)


def calculate_current_balance(contract: FundingContract, now: date | datetime) -> Decimal:
    """Remaining time-based entitlement of a contract at `now`.

    Contracts that are not Active, have auto_drawdown off, or have no end
    date do not deplete with time. A contract whose term spans zero periods
    is fully drawn down.
    """
    original = to_money(contract.original_amount)
    if (
        contract.contract_status != ContractStatus.ACTIVE
        or not contract.auto_drawdown
        or contract.end_date is None
    ):
        return original

    elapsed = periods_between(contract.start_date, now, contract.drawdown_rate)
    total = periods_between(contract.start_date, contract.end_date, contract.drawdown_rate)
    if total <= 0:
        return ZERO

    fraction = min(max(Decimal(elapsed) / Decimal(total), Decimal(0)), Decimal(1))
    return max(ZERO, to_money(original * (Decimal(1) - fraction)))


def calculate_drawdown_amount(contract: FundingContract, now: date | datetime) -> Decimal:
    """Amount drawn down so far by time-based depletion."""
    return to_money(contract.original_amount) - calculate_current_balance(contract, now)


def get_drawdown_percentage(contract: FundingContract, now: date | datetime) -> Decimal:
    """Drawn-down share of the original amount in percent, within [0, 100]."""
    original = to_money(contract.original_amount)
    if original == 0:
        return ZERO
    percentage = calculate_drawdown_amount(contract, now) / original * 100
    return to_money(min(max(percentage, Decimal(0)), Decimal(100)))


def get_drawdown_rate_text(rate: DrawdownRate) -> str:
    return DRAWDOWN_RATE_TEXT.get(rate, "Unknown")


def days_until_expiry(contract: FundingContract, today: date | datetime) -> int | None:
    """Days from today to the contract end date; None for open-ended contracts."""
    if contract.end_date is None:
        return None
    return (contract.end_date - _as_date(today)).days


def is_contract_expiring_soon(
    contract: FundingContract,
    today: date | datetime,
    threshold_days: int = RENEWAL_THRESHOLD_DAYS,
) -> bool:
    """True when the contract ends within threshold_days (inclusive) and has not ended."""
    days = days_until_expiry(contract, today)
    return days is not None and 0 <= days <= threshold_days


def needs_renewal(contract: FundingContract, today: date | datetime) -> bool:
    """True when the contract ends within 30 days or has already ended."""
    days = days_until_expiry(contract, today)
    if days is None:
        return False
    # Already past the end date: renewal is overdue, not merely upcoming
    if days < 0:
        return True
    return days <= RENEWAL_THRESHOLD_DAYS


class BalanceSummary(NamedTuple):
    """Aggregate time-based balances over a set of contracts."""

    total_original: Decimal
    total_current: Decimal
    total_drawn_down: Decimal
    active_contracts: int
    expiring_soon: int


def calculate_balance_summary(
    contracts: Iterable[FundingContract],
    now: date | datetime,
    threshold_days: int = RENEWAL_THRESHOLD_DAYS,
) -> BalanceSummary:
    """Totals over every contract; only Active ones count towards active_contracts.

    Non-Active contracts contribute their original amount as current balance.
    """
    total_original = ZERO
    total_current = ZERO
    active = 0
    expiring = 0
    for contract in contracts:
        total_original += to_money(contract.original_amount)
        total_current += calculate_current_balance(contract, now)
        if contract.contract_status == ContractStatus.ACTIVE:
            active += 1
        if is_contract_expiring_soon(contract, now, threshold_days):
            expiring += 1
    return BalanceSummary(
        total_original=total_original,
        total_current=total_current,
        total_drawn_down=total_original - total_current,
        active_contracts=active,
        expiring_soon=expiring,
    )


class BalanceImpact(NamedTuple):
    """Effect of posting an amount against a contract's ledger."""

    contract_id: int
    current_balance: Decimal
    impact_amount: Decimal
    new_balance: Decimal
    is_valid: bool
    shortfall: Decimal
    error_message: str | None


class BalanceCalculationService:
    """Ledger-based balances: original amount minus posted transactions."""

    def __init__(self, db: Session):
        """Initialize with database session.

        Args:
            db: Session for database operations
        """
        self.db = db

    def posted_total(self, contract_id: int, exclude_transaction_id: int | None = None) -> Decimal:
        """Sum of posted transaction amounts on a contract.

        Args:
            contract_id: Contract to sum
            exclude_transaction_id: Transaction left out of the sum (revalidation)

        Returns:
            Total as Decimal (0 when nothing is posted)
        """
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.contract_id == contract_id,
            Transaction.status == TransactionStatus.POSTED,
        )
        if exclude_transaction_id is not None:
            stmt = stmt.where(Transaction.id != exclude_transaction_id)
        return to_money(self.db.scalar(stmt))

    def ledger_balance(self, contract: FundingContract) -> Decimal:
        """Remaining balance by ledger, never below zero."""
        return max(ZERO, to_money(contract.original_amount) - self.posted_total(contract.id))

    def calculate_balance_impact(
        self,
        contract: FundingContract,
        amount: Decimal,
        exclude_transaction_id: int | None = None,
    ) -> BalanceImpact:
        """Compute what posting `amount` would leave on the contract.

        The current balance comes from the ledger, not the cached
        current_balance column.
        """
        current = to_money(contract.original_amount) - self.posted_total(
            contract.id, exclude_transaction_id
        )
        impact = to_money(amount)
        new_balance = current - impact
        is_valid = new_balance >= 0
        shortfall = ZERO if is_valid else -new_balance
        error_message = None
        if not is_valid:
            error_message = f"Insufficient balance. Would exceed by {format_amount(shortfall)}"
        return BalanceImpact(
            contract_id=contract.id,
            current_balance=current,
            impact_amount=impact,
            new_balance=new_balance,
            is_valid=is_valid,
            shortfall=shortfall,
            error_message=error_message,
        )

    def recompute_contract_balance(self, contract: FundingContract) -> Decimal:
        """Rebuild current_balance from the posted ledger.

        Flushes pending changes first so the sum sees them. Does not commit;
        the caller owns the transaction. Expired contracts stay at zero.
        """
        self.db.flush()
        if contract.contract_status == ContractStatus.EXPIRED:
            new_balance = ZERO
        else:
            new_balance = self.ledger_balance(contract)
        old_balance = contract.current_balance
        contract.current_balance = new_balance
        # Always issue an UPDATE so the version check runs
        contract.updated_at = datetime.now(timezone.utc)
        logger.debug(
            "Recomputed balance for contract id=%d: %s -> %s", contract.id, old_balance, new_balance
        )
        return new_balance


__all__ = [
    "BalanceCalculationService",
    "BalanceImpact",
    "BalanceSummary",
    "calculate_balance_summary",
    "calculate_current_balance",
    "calculate_drawdown_amount",
    "days_until_expiry",
    "get_drawdown_percentage",
    "get_drawdown_rate_text",
    "is_contract_expiring_soon",
    "needs_renewal",
    "periods_between",
    "to_money",
]
