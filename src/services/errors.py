"""Exception classes for contract and transaction operations.

Every service operation reports failure by raising one of these. The HTTP
layer turns them into a uniform error envelope (see src.api.errors).
"""

from decimal import Decimal


class DrawdownError(Exception):
    """Base exception for drawdown engine errors."""

    code = "drawdown_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(DrawdownError):
    """Resident, contract, transaction or billing run id does not resolve."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: int | str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidStateTransition(DrawdownError):
    """Status or lifecycle change not permitted from the current state."""

    code = "invalid_state_transition"

    def __init__(self, entity: str, from_state: str, to_state: str, message: str | None = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            message or f"Invalid {entity} status transition from {from_state} to {to_state}"
        )


class ValidationFailed(DrawdownError):
    """One or more validation rules failed.

    Carries the complete list of violated rules, not just the first one.
    """

    code = "validation_failed"

    def __init__(self, errors: list[str], balance_impact=None, warnings: list[str] | None = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        self.balance_impact = balance_impact
        super().__init__("; ".join(self.errors) or "Validation failed")


class InsufficientBalance(ValidationFailed):
    """Posting would take the contract's ledger balance below zero."""

    code = "insufficient_balance"

    def __init__(
        self,
        errors: list[str],
        shortfall: Decimal,
        balance_impact=None,
        warnings: list[str] | None = None,
    ):
        self.shortfall = shortfall
        super().__init__(errors, balance_impact=balance_impact, warnings=warnings)


class StorageFailure(DrawdownError):
    """Underlying persistence read or write failed."""

    code = "storage_failure"


class ConcurrencyConflict(StorageFailure):
    """A concurrent writer changed the record after it was read."""

    code = "concurrency_conflict"


class BillingRunConflict(DrawdownError):
    """A billing run for the same scope and day already exists."""

    code = "billing_run_conflict"


__all__ = [
    "DrawdownError",
    "NotFoundError",
    "InvalidStateTransition",
    "ValidationFailed",
    "InsufficientBalance",
    "StorageFailure",
    "ConcurrencyConflict",
    "BillingRunConflict",
]
