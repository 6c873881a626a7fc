"""Request and response models for the funding API."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from src.models.billing_run import BillingRunStatus
from src.models.funding_contract import (
    BillingFrequency,
    ContractStatus,
    ContractType,
    DrawdownRate,
)
from src.models.resident import ResidentStatus
from src.models.transaction import DrawdownStatus, TransactionStatus


class ResidentCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    ndis_number: str | None = None
    status: ResidentStatus = ResidentStatus.PROSPECT


class ResidentStatusChange(BaseModel):
    status: ResidentStatus


class ContractCreate(BaseModel):
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


class ContractStatusChange(BaseModel):
    status: ContractStatus


class RenewalCreate(BaseModel):
    original_amount: Decimal
    start_date: date
    end_date: date | None = None
    description: str | None = None
    drawdown_rate: DrawdownRate | None = None
    auto_drawdown: bool | None = None


class ContractResponse(BaseModel):
    """Funding contract as stored."""

    id: int
    resident_id: int
    contract_type: ContractType
    original_amount: Decimal
    current_balance: Decimal
    start_date: date
    end_date: date | None
    drawdown_rate: DrawdownRate
    auto_drawdown: bool
    contract_status: ContractStatus
    parent_contract_id: int | None
    last_drawdown_date: date | None
    description: str | None
    support_item_code: str | None
    daily_support_item_cost: Decimal | None
    auto_billing_enabled: bool
    billing_frequency: BillingFrequency | None
    next_run_date: date | None
    version: int

    model_config = ConfigDict(from_attributes=True)


class ResidentResponse(BaseModel):
    id: int
    first_name: str
    last_name: str
    ndis_number: str | None
    status: ResidentStatus
    contracts: list[ContractResponse] = []

    model_config = ConfigDict(from_attributes=True)


class ContractBalanceResponse(BaseModel):
    """Time-based and ledger views of a contract's balance."""

    contract_id: int
    as_of: date
    time_based_balance: Decimal
    drawn_down: Decimal
    drawdown_percentage: Decimal
    drawdown_rate_text: str
    posted_total: Decimal
    ledger_balance: Decimal
    cached_balance: Decimal
    expiring_soon: bool
    needs_renewal: bool


class TransactionCreate(BaseModel):
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


class TransactionResponse(BaseModel):
    id: int
    resident_id: int
    participant_id: int
    contract_id: int
    occurred_at: datetime
    service_code: str | None
    service_item_code: str | None
    description: str | None
    note: str | None
    quantity: int
    unit_price: Decimal
    amount: Decimal
    status: TransactionStatus
    drawdown_status: DrawdownStatus
    is_drawdown_transaction: bool
    is_automated: bool
    created_by: str
    posted_at: datetime | None
    posted_by: str | None
    voided_at: datetime | None
    voided_by: str | None
    void_reason: str | None

    model_config = ConfigDict(from_attributes=True)


class TransactionResult(BaseModel):
    """Envelope for lifecycle operations: {success, transaction}."""

    success: bool = True
    transaction: TransactionResponse


class TransactionListResponse(BaseModel):
    items: list[TransactionResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class VoidRequest(BaseModel):
    reason: str


class BulkPostRequest(BaseModel):
    transaction_ids: list[int]


class BulkVoidRequest(BaseModel):
    transaction_ids: list[int]
    reason: str


class BulkErrorItem(BaseModel):
    transaction_id: int
    error: str


class BulkOperationResponse(BaseModel):
    success: bool
    processed: int
    failed: int
    errors: list[BulkErrorItem]


class BalanceImpactResponse(BaseModel):
    contract_id: int
    current_balance: Decimal
    impact_amount: Decimal
    new_balance: Decimal
    is_valid: bool
    shortfall: Decimal
    error_message: str | None


class BillingRunRequest(BaseModel):
    run_date: date | None = None


class BillingRunErrorItem(BaseModel):
    contract_id: int
    resident_id: int
    error: str
    transaction_id: int | None = None


class BillingRunResponse(BaseModel):
    run_id: int
    run_date: date
    status: BillingRunStatus
    processed_contracts: int
    successful_transactions: int
    failed_transactions: int
    skipped_contracts: int
    total_amount: Decimal
    average_amount: Decimal
    frequency_breakdown: dict[str, int]
    errors: list[BillingRunErrorItem]
