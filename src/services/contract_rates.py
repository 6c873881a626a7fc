"""Contract rate calculation for automated billing.

Derives the daily support item cost from a contract's amount and term, and
the per-run charge for each billing frequency.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import NamedTuple

from src.models.funding_contract import BillingFrequency
from src.services.balance_service import ZERO, to_money

FREQUENCY_DAYS = {
    BillingFrequency.DAILY: 1,
    BillingFrequency.WEEKLY: 7,
    BillingFrequency.FORTNIGHTLY: 14,
}

MAX_CATCH_UP_DATES = 50


class ContractRates(NamedTuple):
    """Daily, weekly and fortnightly charge for a contract term."""

    daily_rate: Decimal
    weekly_rate: Decimal
    fortnightly_rate: Decimal
    total_days: int
    is_valid: bool
    errors: list[str]


def _invalid(errors: list[str]) -> ContractRates:
    return ContractRates(ZERO, ZERO, ZERO, 0, False, errors)


def calculate_contract_rates(
    amount: Decimal, start_date: date | None, end_date: date | None
) -> ContractRates:
    """Spread the contract amount evenly over its term (both ends inclusive).

    Returns an invalid result listing every problem found instead of raising.
    """
    errors = []
    if amount is None or Decimal(amount) <= 0:
        errors.append("Contract amount must be greater than 0")
    if start_date is None:
        errors.append("Contract start date is required")
    if end_date is None:
        errors.append("Contract end date is required for automatic calculation")
    if errors:
        return _invalid(errors)

    if start_date >= end_date:
        return _invalid(["End date must be after start date"])

    total_days = (end_date - start_date).days + 1
    daily = Decimal(amount) / total_days
    return ContractRates(
        daily_rate=to_money(daily),
        weekly_rate=to_money(daily * 7),
        fortnightly_rate=to_money(daily * 14),
        total_days=total_days,
        is_valid=True,
        errors=[],
    )


def get_transaction_amount(frequency: BillingFrequency, daily_rate: Decimal) -> Decimal:
    """Charge for one billing run at the given frequency."""
    return to_money(Decimal(daily_rate) * FREQUENCY_DAYS[BillingFrequency(frequency)])


def calculate_next_run_date(current: date, frequency: BillingFrequency) -> date:
    """Date of the billing run following `current`."""
    return current + timedelta(days=FREQUENCY_DAYS[BillingFrequency(frequency)])


def calculate_billing_dates(
    next_run_date: date,
    today: date,
    frequency: BillingFrequency,
    limit: int = MAX_CATCH_UP_DATES,
) -> list[date]:
    """Every billing date from next_run_date up to and including today.

    A contract that fell behind gets one date per missed period, capped at
    `limit`; the rest are picked up by later runs.
    """
    dates = []
    current = next_run_date
    while current <= today and len(dates) < limit:
        dates.append(current)
        current = calculate_next_run_date(current, frequency)
    return dates


__all__ = [
    "ContractRates",
    "FREQUENCY_DAYS",
    "MAX_CATCH_UP_DATES",
    "calculate_billing_dates",
    "calculate_contract_rates",
    "calculate_next_run_date",
    "get_transaction_amount",
]
