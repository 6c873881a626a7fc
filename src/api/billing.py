"""Billing run API endpoint (manual "Run Now" trigger)."""

import logging

from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from src.api.schemas import BillingRunErrorItem, BillingRunRequest, BillingRunResponse
from src.services import get_db
from src.services.billing_run_service import BillingRunService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing-runs", tags=["billing"])


@router.post("", response_model=BillingRunResponse)
def run_billing(
    payload: BillingRunRequest,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> BillingRunResponse:
    report = BillingRunService(db).run(today=payload.run_date, triggered_by=x_actor)
    return BillingRunResponse(
        run_id=report.run_id,
        run_date=report.run_date,
        status=report.status,
        processed_contracts=report.processed_contracts,
        successful_transactions=report.successful_transactions,
        failed_transactions=report.failed_transactions,
        skipped_contracts=report.skipped_contracts,
        total_amount=report.total_amount,
        average_amount=report.average_amount,
        frequency_breakdown=report.frequency_breakdown,
        errors=[BillingRunErrorItem(**error._asdict()) for error in report.errors],
    )
