"""Batch billing job: charge automated contracts on their schedule.

A run for one scope and business day:
1. claims the (scope, run_date) BillingRun row - a unique constraint, so a
   concurrent scheduled run and a manual "Run Now" cannot both proceed;
2. selects eligible contracts and bills at most one contract per resident;
3. for each, creates and posts one drawdown per due date through the
   regular transaction lifecycle, backdating missed periods on catch-up;
4. advances the contract's next run date, aggregates the outcome into a
   report, stores it on the BillingRun row and hands it to the notifier.

A run that dies midway is still recorded as FAILED or PARTIAL, and a FAILED
run may be retried the same day.
"""

import logging
import time as timer
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, NamedTuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.models.billing_run import BillingRun, BillingRunStatus
from src.models.funding_contract import BillingFrequency, ContractStatus, FundingContract
from src.models.resident import Resident, ResidentStatus
from src.models.transaction import Transaction, TransactionStatus
from src.services.balance_service import ZERO, to_money
from src.services.config import AppConfig
from src.services.contract_rates import (
    calculate_billing_dates,
    calculate_next_run_date,
    get_transaction_amount,
)
from src.services.errors import BillingRunConflict, DrawdownError, NotFoundError
from src.services.locale_service import format_amount
from src.services.logging import billing_run_logger
from src.services.notification_service import NotificationService
from src.services.storage import unit_of_work
from src.services.transaction_service import TransactionCreateInput, TransactionService

logger = logging.getLogger(__name__)

AUTOMATED_SERVICE_CODE = "CORE_SUPPORT"


class ContractEligibility(NamedTuple):
    contract: FundingContract
    resident: Resident
    is_eligible: bool
    reasons: list[str]


class GeneratedTransaction(NamedTuple):
    transaction_id: int
    contract_id: int
    resident_id: int
    amount: Decimal
    frequency: BillingFrequency


class BillingError(NamedTuple):
    contract_id: int
    resident_id: int
    error: str
    transaction_id: int | None = None


@dataclass
class BillingRunReport:
    """Outcome of one billing run."""

    run_id: int
    run_date: date
    status: BillingRunStatus = BillingRunStatus.SUCCESS
    processed_contracts: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    skipped_contracts: int = 0
    transactions: list[GeneratedTransaction] = field(default_factory=list)
    errors: list[BillingError] = field(default_factory=list)
    total_amount: Decimal = ZERO
    frequency_breakdown: dict[str, int] = field(default_factory=dict)
    execution_time_ms: int = 0
    notification_error: str | None = None
    abort_error: str | None = None

    @property
    def average_amount(self) -> Decimal:
        if not self.successful_transactions:
            return ZERO
        return to_money(self.total_amount / self.successful_transactions)


def _run_status(successful: int, failed: int) -> BillingRunStatus:
    if failed == 0:
        return BillingRunStatus.SUCCESS
    if successful == 0:
        return BillingRunStatus.FAILED
    return BillingRunStatus.PARTIAL


class BillingRunService:
    """Service running the automated billing job."""

    def __init__(
        self,
        db_session: Session,
        config: AppConfig | None = None,
        notifier: NotificationService | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db_session
        self.config = config or AppConfig()
        self.notifier = notifier or NotificationService(recipients=self.config.recipients)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.transactions = TransactionService(db_session, clock=self.clock)

    # Eligibility

    def check_contract_eligibility(
        self,
        contract: FundingContract,
        resident: Resident,
        today: date,
        catch_up: bool | None = None,
    ) -> ContractEligibility:
        """Check every condition for billing a contract today; collect all reasons."""
        catch_up = self.config.billing_catch_up if catch_up is None else catch_up
        reasons = []

        if contract.contract_status != ContractStatus.ACTIVE:
            reasons.append(
                f"Contract status is '{contract.contract_status.value}', must be 'Active'"
            )
        if resident.status != ResidentStatus.ACTIVE:
            reasons.append(f"Resident status is '{resident.status.value}', must be 'Active'")

        if not contract.auto_drawdown or not contract.auto_billing_enabled:
            reasons.append("Automation is not enabled for this contract")
        if contract.billing_frequency is None:
            reasons.append("Automation frequency is not set")

        balance = to_money(contract.current_balance)
        daily_cost = contract.daily_support_item_cost
        if balance <= 0:
            reasons.append("Contract has insufficient balance")
        elif daily_cost is None or daily_cost <= 0:
            reasons.append("Daily support item cost is not set")
        elif balance < daily_cost:
            reasons.append(
                f"Balance ({format_amount(balance)}) is less than daily cost "
                f"({format_amount(daily_cost)})"
            )

        if contract.start_date > today:
            reasons.append(f"Contract has not started yet (starts {contract.start_date.isoformat()})")
        if contract.end_date is not None and contract.end_date < today:
            reasons.append(f"Contract has expired (ended {contract.end_date.isoformat()})")

        if contract.next_run_date is None:
            reasons.append("Next run date is not set")
        elif contract.next_run_date > today:
            reasons.append(
                f"Next run date is scheduled for the future ({contract.next_run_date.isoformat()})"
            )
        elif contract.next_run_date < today and not catch_up:
            reasons.append(
                f"Next run date is in the past ({contract.next_run_date.isoformat()}) "
                "and catch-up is disabled"
            )

        return ContractEligibility(contract, resident, not reasons, reasons)

    def find_eligible_contracts(
        self, today: date, catch_up: bool | None = None
    ) -> list[ContractEligibility]:
        """Eligibility of every Active contract with billing automation turned on."""
        rows = (
            self.db.query(FundingContract, Resident)
            .join(Resident, FundingContract.resident_id == Resident.id)
            .filter(
                FundingContract.contract_status == ContractStatus.ACTIVE,
                FundingContract.auto_billing_enabled.is_(True),
            )
            .order_by(FundingContract.next_run_date, FundingContract.id)
            .all()
        )
        return [
            self.check_contract_eligibility(contract, resident, today, catch_up)
            for contract, resident in rows
        ]

    # Run bookkeeping

    def get_run(self, run_date: date, scope: str | None = None) -> BillingRun | None:
        """Best-effort preflight: the run already recorded for this scope and day."""
        return (
            self.db.query(BillingRun)
            .filter(
                BillingRun.scope == (scope or self.config.billing_scope),
                BillingRun.run_date == run_date,
            )
            .one_or_none()
        )

    def _claim_run(self, run_date: date, scope: str, triggered_by: str) -> BillingRun:
        """Insert the run row; the unique constraint makes this the lock.

        A run recorded as FAILED for the same scope and day may be claimed
        again; the conditional UPDATE lets only one retry through.
        """
        run = BillingRun(
            scope=scope,
            run_date=run_date,
            triggered_by=triggered_by,
            status=BillingRunStatus.RUNNING,
        )
        self.db.add(run)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            reclaimed = self._reclaim_failed_run(run_date, scope, triggered_by)
            if reclaimed is None:
                logger.warning("Billing run for %s on %s already exists", scope, run_date)
                raise BillingRunConflict(
                    f"A billing run for '{scope}' on {run_date.isoformat()} already exists"
                ) from e
            logger.info("Retrying failed billing run id=%d for %s on %s", reclaimed.id, scope, run_date)
            return reclaimed
        return run

    def _reclaim_failed_run(
        self, run_date: date, scope: str, triggered_by: str
    ) -> BillingRun | None:
        with unit_of_work(self.db, "reclaim billing run"):
            result = self.db.execute(
                update(BillingRun)
                .where(
                    BillingRun.scope == scope,
                    BillingRun.run_date == run_date,
                    BillingRun.status == BillingRunStatus.FAILED,
                )
                .values(status=BillingRunStatus.RUNNING, triggered_by=triggered_by)
            )
        if result.rowcount != 1:
            return None
        return self.get_run(run_date, scope)

    def _has_automated_transaction(self, resident_id: int, day: date) -> bool:
        start = datetime.combine(day, time.min)
        end = datetime.combine(day + timedelta(days=1), time.min)
        return (
            self.db.query(Transaction.id)
            .filter(
                Transaction.resident_id == resident_id,
                Transaction.is_automated.is_(True),
                Transaction.status != TransactionStatus.VOIDED,
                Transaction.occurred_at >= start,
                Transaction.occurred_at < end,
            )
            .first()
            is not None
        )

    # Run

    def run(self, today: date | None = None, triggered_by: str = "scheduler") -> BillingRunReport:
        """Execute the billing run for one business day.

        With catch-up on, a contract that fell behind is billed once for
        every missed period. The run row always ends SUCCESS, PARTIAL or
        FAILED; an unexpected error is recorded on it and re-raised.

        Raises:
            BillingRunConflict: A run for this scope and day already exists
        """
        started = timer.monotonic()
        today = today or self.clock().date()
        scope = self.config.billing_scope

        billing_run = self._claim_run(today, scope, triggered_by)
        report = BillingRunReport(run_id=billing_run.id, run_date=today)
        run_log = billing_run_logger(logger, billing_run.id, scope)
        run_log.info("Started for %s", today)

        try:
            self._bill_eligible_contracts(today, billing_run, report, run_log)
        except Exception as e:
            self.db.rollback()
            run_log.error("Aborted: %s", e, exc_info=True)
            report.abort_error = str(e) or type(e).__name__
            self._finish_run(billing_run, report, started)
            raise
        self._finish_run(billing_run, report, started)

        try:
            self.notifier.notify_billing_run(report)
        except Exception as e:
            run_log.error("Failed to send billing run report: %s", e, exc_info=True)
            report.notification_error = str(e)

        run_log.info(
            "Finished: %s (%d billed, %d failed, %d skipped, total %s)",
            report.status.value,
            report.successful_transactions,
            report.failed_transactions,
            report.skipped_contracts,
            format_amount(report.total_amount),
        )
        return report

    def _bill_eligible_contracts(
        self,
        today: date,
        billing_run: BillingRun,
        report: BillingRunReport,
        run_log: logging.LoggerAdapter,
    ) -> None:
        billed_residents: set[int] = set()
        for eligibility in self.find_eligible_contracts(today):
            contract, resident = eligibility.contract, eligibility.resident
            if not eligibility.is_eligible:
                report.skipped_contracts += 1
                run_log.debug(
                    "Skipping contract id=%d: %s", contract.id, "; ".join(eligibility.reasons)
                )
                continue

            report.processed_contracts += 1
            if resident.id in billed_residents:
                report.failed_transactions += 1
                report.errors.append(
                    BillingError(
                        contract.id,
                        resident.id,
                        "Another contract for this resident was already processed in this run",
                    )
                )
                continue
            billed_residents.add(resident.id)

            if self._has_automated_transaction(resident.id, today):
                report.failed_transactions += 1
                report.errors.append(
                    BillingError(
                        contract.id,
                        resident.id,
                        "Duplicate prevented: automation transaction already exists for "
                        "this resident today",
                    )
                )
                continue

            for generated in self._bill_contract(contract, resident, billing_run, today, report):
                report.successful_transactions += 1
                report.total_amount += generated.amount
                report.transactions.append(generated)

    def _bill_contract(
        self,
        contract: FundingContract,
        resident: Resident,
        billing_run: BillingRun,
        today: date,
        report: BillingRunReport,
    ) -> list[GeneratedTransaction]:
        """Create and post one automated drawdown per due billing date.

        Past dates that already carry an automated transaction count as
        billed. Billing stops at the first date that fails; its draft is
        removed and the schedule resumes from that date on the next run.
        """
        actor = self.config.billing_actor
        frequency = BillingFrequency(contract.billing_frequency)
        amount = get_transaction_amount(frequency, contract.daily_support_item_cost)
        label = f"Automated {frequency.value} drawdown - {contract.contract_type.value}"
        contract_id, resident_id = contract.id, resident.id
        support_item_code = contract.support_item_code
        dates = calculate_billing_dates(contract.next_run_date, today, frequency)

        generated: list[GeneratedTransaction] = []
        settled_through = None
        for billing_date in dates:
            if billing_date != today and self._has_automated_transaction(resident_id, billing_date):
                settled_through = billing_date
                continue

            transaction_id = None
            try:
                transaction = self.transactions.create_transaction(
                    TransactionCreateInput(
                        resident_id=resident_id,
                        contract_id=contract_id,
                        occurred_at=self._occurred_at(billing_date),
                        quantity=1,
                        unit_price=amount,
                        service_item_code=support_item_code,
                        service_code=AUTOMATED_SERVICE_CODE,
                        description=label,
                        note=f"{label} for {billing_date.isoformat()}",
                        is_automated=True,
                        billing_run_id=billing_run.id,
                    ),
                    actor,
                )
                transaction_id = transaction.id
                self.transactions.post_transaction(transaction_id, actor)
            except DrawdownError as e:
                logger.warning(
                    "Billing failed for contract id=%d on %s: %s", contract_id, billing_date, e.message
                )
                if transaction_id is not None:
                    transaction_id = self._discard_draft(transaction_id, actor)
                report.failed_transactions += 1
                report.errors.append(BillingError(contract_id, resident_id, e.message, transaction_id))
                break
            generated.append(
                GeneratedTransaction(transaction_id, contract_id, resident_id, amount, frequency)
            )
            settled_through = billing_date

        if settled_through is not None:
            try:
                self._advance_schedule(contract_id, frequency, settled_through)
            except DrawdownError as e:
                logger.warning(
                    "Could not advance billing schedule for contract id=%d: %s", contract_id, e.message
                )
                report.failed_transactions += 1
                report.errors.append(
                    BillingError(
                        contract_id, resident_id, f"Billing schedule not advanced: {e.message}"
                    )
                )
        return generated

    def _advance_schedule(
        self, contract_id: int, frequency: BillingFrequency, billed_through: date
    ) -> None:
        with unit_of_work(self.db, "advance billing schedule"):
            contract = self.db.get(FundingContract, contract_id)
            if contract is None:
                raise NotFoundError("Contract", contract_id)
            contract.next_run_date = calculate_next_run_date(billed_through, frequency)
            contract.last_drawdown_date = billed_through

    def _discard_draft(self, transaction_id: int, actor: str) -> int | None:
        """Delete an automated draft that could not be posted.

        Returns:
            None once deleted, else the id of the draft left behind
        """
        try:
            self.transactions.delete_transaction(transaction_id, actor)
        except DrawdownError as e:
            logger.error("Unposted draft id=%d was not removed: %s", transaction_id, e.message)
            return transaction_id
        return None

    def _occurred_at(self, billing_date: date) -> datetime:
        now = self.clock()
        if now.date() == billing_date:
            return now
        return datetime.combine(billing_date, time.min).replace(tzinfo=timezone.utc)

    def _finish_run(self, billing_run: BillingRun, report: BillingRunReport, started: float) -> None:
        report.frequency_breakdown = dict(
            Counter(item.frequency.value for item in report.transactions)
        )
        if report.abort_error is None:
            report.status = _run_status(report.successful_transactions, report.failed_transactions)
        elif report.successful_transactions:
            report.status = BillingRunStatus.PARTIAL
        else:
            report.status = BillingRunStatus.FAILED
        report.execution_time_ms = int((timer.monotonic() - started) * 1000)

        summary = NotificationService.build_billing_run_summary(report)
        with unit_of_work(self.db, "record billing run"):
            billing_run.status = report.status
            billing_run.contracts_processed = report.processed_contracts
            billing_run.contracts_skipped = report.skipped_contracts
            billing_run.contracts_failed = report.failed_transactions
            billing_run.total_amount = report.total_amount
            billing_run.execution_time_ms = report.execution_time_ms
            billing_run.errors = summary["errors"]
            billing_run.summary = {
                key: summary[key]
                for key in (
                    "successful_transactions",
                    "total_amount",
                    "average_amount",
                    "frequency_breakdown",
                    "abort_error",
                )
            }

__all__ = [
    "BillingError",
    "BillingRunReport",
    "BillingRunService",
    "ContractEligibility",
    "GeneratedTransaction",
]
