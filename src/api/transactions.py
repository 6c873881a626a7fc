"""Transaction lifecycle API endpoints."""

import logging
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session

from src.api.schemas import (
    BalanceImpactResponse,
    BulkErrorItem,
    BulkOperationResponse,
    BulkPostRequest,
    BulkVoidRequest,
    TransactionCreate,
    TransactionListResponse,
    TransactionResponse,
    TransactionResult,
    VoidRequest,
)
from src.models.transaction import TransactionStatus
from src.services import get_db
from src.services.transaction_service import (
    BulkOperationResult,
    TransactionCreateInput,
    TransactionFilters,
    TransactionService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["transactions"])


def _bulk_response(result: BulkOperationResult) -> BulkOperationResponse:
    return BulkOperationResponse(
        success=result.success,
        processed=result.processed,
        failed=result.failed,
        errors=[BulkErrorItem(transaction_id=e.transaction_id, error=e.error) for e in result.errors],
    )


@router.post(
    "/transactions", response_model=TransactionResult, status_code=status.HTTP_201_CREATED
)
def create_transaction(
    payload: TransactionCreate,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> TransactionResult:
    transaction = TransactionService(db).create_transaction(
        TransactionCreateInput(**payload.model_dump()), x_actor
    )
    return TransactionResult(transaction=TransactionResponse.model_validate(transaction))


@router.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    date_from: date | None = None,
    date_to: date | None = None,
    resident_id: list[int] = Query(default=[]),
    contract_id: list[int] = Query(default=[]),
    transaction_status: list[TransactionStatus] = Query(default=[], alias="status"),
    service_code: str | None = None,
    search: str | None = None,
    sort_by: str = "occurred_at",
    descending: bool = True,
    page: int = 1,
    page_size: int = 25,
    db: Session = Depends(get_db),
) -> TransactionListResponse:
    filters = TransactionFilters(
        date_from=date_from,
        date_to=date_to,
        resident_ids=resident_id,
        contract_ids=contract_id,
        statuses=transaction_status,
        service_code=service_code,
        search=search,
    )
    result = TransactionService(db).list_transactions(
        filters, sort_by=sort_by, descending=descending, page=page, page_size=page_size
    )
    return TransactionListResponse(
        items=[TransactionResponse.model_validate(t) for t in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        has_more=result.has_more,
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)) -> TransactionResponse:
    return TransactionResponse.model_validate(TransactionService(db).get_transaction(transaction_id))


@router.post("/transactions/{transaction_id}/post", response_model=TransactionResult)
def post_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> TransactionResult:
    transaction = TransactionService(db).post_transaction(transaction_id, x_actor)
    return TransactionResult(transaction=TransactionResponse.model_validate(transaction))


@router.post("/transactions/{transaction_id}/void", response_model=TransactionResult)
def void_transaction(
    transaction_id: int,
    payload: VoidRequest,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> TransactionResult:
    transaction = TransactionService(db).void_transaction(transaction_id, payload.reason, x_actor)
    return TransactionResult(transaction=TransactionResponse.model_validate(transaction))


@router.delete("/transactions/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> None:
    TransactionService(db).delete_transaction(transaction_id, x_actor)


@router.post("/transactions/bulk-post", response_model=BulkOperationResponse)
def bulk_post(
    payload: BulkPostRequest,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> BulkOperationResponse:
    return _bulk_response(TransactionService(db).bulk_post(payload.transaction_ids, x_actor))


@router.post("/transactions/bulk-void", response_model=BulkOperationResponse)
def bulk_void(
    payload: BulkVoidRequest,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> BulkOperationResponse:
    result = TransactionService(db).bulk_void(payload.transaction_ids, payload.reason, x_actor)
    return _bulk_response(result)


@router.get("/contracts/{contract_id}/balance-preview", response_model=BalanceImpactResponse)
def balance_preview(
    contract_id: int,
    amount: Decimal,
    exclude_transaction_id: int | None = None,
    db: Session = Depends(get_db),
) -> BalanceImpactResponse:
    impact = TransactionService(db).get_balance_preview(contract_id, amount, exclude_transaction_id)
    return BalanceImpactResponse(**impact._asdict())
