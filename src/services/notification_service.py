"""Notification service for billing run reports.

Delivery (email, chat, ...) is a pluggable sink that accepts a subject, the
recipients and a structured summary. The default sink writes the summary to
the log.
"""

import logging
from typing import TYPE_CHECKING, Any, Protocol

from src.services.locale_service import format_amount, format_local_date

if TYPE_CHECKING:
    from src.services.billing_run_service import BillingRunReport

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Anything that can deliver a structured report."""

    def send(self, subject: str, recipients: list[str], summary: dict[str, Any]) -> None: ...


class LoggingNotificationSink:
    """Sink that records reports in the application log."""

    def send(self, subject: str, recipients: list[str], summary: dict[str, Any]) -> None:
        logger.info(
            "%s | to=%s | processed=%s successful=%s failed=%s total=%s",
            subject,
            ",".join(recipients) or "-",
            summary.get("processed_contracts"),
            summary.get("successful_transactions"),
            summary.get("failed_transactions"),
            summary.get("total_amount_display"),
        )


class NotificationService:
    """Builds billing run summaries and hands them to a sink."""

    def __init__(self, sink: NotificationSink | None = None, recipients: list[str] | None = None):
        self.sink = sink or LoggingNotificationSink()
        self.recipients = list(recipients or [])

    @staticmethod
    def build_billing_run_summary(report: "BillingRunReport") -> dict[str, Any]:
        """Structured, JSON-friendly summary of a billing run."""
        return {
            "run_id": report.run_id,
            "run_date": report.run_date.isoformat(),
            "status": report.status.value,
            "processed_contracts": report.processed_contracts,
            "successful_transactions": report.successful_transactions,
            "failed_transactions": report.failed_transactions,
            "skipped_contracts": report.skipped_contracts,
            "total_amount": str(report.total_amount),
            "total_amount_display": format_amount(report.total_amount),
            "average_amount": str(report.average_amount),
            "frequency_breakdown": dict(report.frequency_breakdown),
            "execution_time_ms": report.execution_time_ms,
            "abort_error": report.abort_error,
            "transactions": [
                {
                    "transaction_id": item.transaction_id,
                    "contract_id": item.contract_id,
                    "resident_id": item.resident_id,
                    "amount": str(item.amount),
                    "frequency": item.frequency.value,
                }
                for item in report.transactions
            ],
            "errors": [
                {
                    "contract_id": error.contract_id,
                    "resident_id": error.resident_id,
                    "error": error.error,
                    "transaction_id": error.transaction_id,
                }
                for error in report.errors
            ],
        }

    def notify_billing_run(self, report: "BillingRunReport") -> dict[str, Any]:
        """Send the run summary to the sink.

        Returns:
            The summary that was sent
        """
        summary = self.build_billing_run_summary(report)
        subject = (
            f"Billing run {format_local_date(report.run_date)}: "
            f"{report.status.value} ({report.successful_transactions} of "
            f"{report.processed_contracts} contracts billed)"
        )
        self.sink.send(subject, self.recipients, summary)
        return summary


__all__ = ["LoggingNotificationSink", "NotificationService", "NotificationSink"]
