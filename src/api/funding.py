"""Resident and funding contract API endpoints."""

import logging
from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session

from src.api.schemas import (
    ContractBalanceResponse,
    ContractCreate,
    ContractResponse,
    ContractStatusChange,
    RenewalCreate,
    ResidentCreate,
    ResidentResponse,
    ResidentStatusChange,
)
from src.services import get_db
from src.services.balance_service import (
    BalanceCalculationService,
    calculate_current_balance,
    calculate_drawdown_amount,
    get_drawdown_percentage,
    get_drawdown_rate_text,
    is_contract_expiring_soon,
    needs_renewal,
    to_money,
)
from src.services.contract_service import ContractService, ContractTerms, RenewalTerms
from src.services.resident_service import ResidentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/residents", tags=["residents"])


@router.post("", response_model=ResidentResponse, status_code=status.HTTP_201_CREATED)
def create_resident(
    payload: ResidentCreate,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> ResidentResponse:
    resident = ResidentService(db).create_resident(
        payload.first_name,
        payload.last_name,
        actor=x_actor,
        ndis_number=payload.ndis_number,
        status=payload.status,
    )
    return ResidentResponse.model_validate(resident)


@router.get("/{resident_id}", response_model=ResidentResponse)
def get_resident(resident_id: int, db: Session = Depends(get_db)) -> ResidentResponse:
    return ResidentResponse.model_validate(ResidentService(db).get_resident(resident_id))


@router.patch("/{resident_id}/status", response_model=ResidentResponse)
def change_resident_status(
    resident_id: int,
    payload: ResidentStatusChange,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> ResidentResponse:
    resident = ResidentService(db).change_resident_status(resident_id, payload.status, x_actor)
    return ResidentResponse.model_validate(resident)


@router.post(
    "/{resident_id}/contracts",
    response_model=ContractResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_contract(
    resident_id: int,
    payload: ContractCreate,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> ContractResponse:
    contract = ContractService(db).add_contract(
        resident_id, ContractTerms(**payload.model_dump()), x_actor
    )
    return ContractResponse.model_validate(contract)


@router.patch("/{resident_id}/contracts/{contract_id}/status", response_model=ResidentResponse)
def update_contract_status(
    resident_id: int,
    contract_id: int,
    payload: ContractStatusChange,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> ResidentResponse:
    resident = ContractService(db).update_contract_status(
        resident_id, contract_id, payload.status, x_actor
    )
    return ResidentResponse.model_validate(resident)


@router.post(
    "/{resident_id}/contracts/{contract_id}/renewals",
    response_model=ResidentResponse,
    status_code=status.HTTP_201_CREATED,
)
def renew_contract(
    resident_id: int,
    contract_id: int,
    payload: RenewalCreate,
    db: Session = Depends(get_db),
    x_actor: str = Header(default="admin"),
) -> ResidentResponse:
    resident = ContractService(db).create_contract_renewal(
        resident_id, contract_id, RenewalTerms(**payload.model_dump()), x_actor
    )
    return ResidentResponse.model_validate(resident)


@router.get(
    "/{resident_id}/contracts/{contract_id}/balance", response_model=ContractBalanceResponse
)
def get_contract_balance(
    resident_id: int,
    contract_id: int,
    as_of: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> ContractBalanceResponse:
    """Time-based entitlement next to the ledger balance."""
    contract = ContractService(db).get_resident_contract(resident_id, contract_id)
    as_of = as_of or datetime.now(timezone.utc).date()
    ledger = BalanceCalculationService(db)
    posted = ledger.posted_total(contract.id)
    return ContractBalanceResponse(
        contract_id=contract.id,
        as_of=as_of,
        time_based_balance=calculate_current_balance(contract, as_of),
        drawn_down=calculate_drawdown_amount(contract, as_of),
        drawdown_percentage=get_drawdown_percentage(contract, as_of),
        drawdown_rate_text=get_drawdown_rate_text(contract.drawdown_rate),
        posted_total=posted,
        ledger_balance=ledger.ledger_balance(contract),
        cached_balance=to_money(contract.current_balance),
        expiring_soon=is_contract_expiring_soon(contract, as_of),
        needs_renewal=needs_renewal(contract, as_of),
    )
