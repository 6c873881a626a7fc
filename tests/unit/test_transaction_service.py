"""Unit tests for the transaction lifecycle service."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from src.models.funding_contract import ContractStatus, FundingContract
from src.models.transaction import DrawdownStatus, Transaction, TransactionStatus
from src.services.audit_service import AuditService
from src.services.contract_service import ContractService
from src.services.drawdown_validation import MSG_CODE_FORMAT, MSG_CONTRACT_INACTIVE
from src.services.errors import (
    InsufficientBalance,
    InvalidStateTransition,
    NotFoundError,
    ValidationFailed,
)
from src.services.transaction_service import (
    TransactionCreateInput,
    TransactionFilters,
    TransactionService,
)

NOW = datetime(2024, 7, 1, 10, 0, tzinfo=timezone.utc)
CODE = "01_001_0107_1_1"


@pytest.fixture
def service(db_session, clock):
    return TransactionService(db_session, clock=clock)


@pytest.fixture
def resident(make_resident):
    return make_resident()


@pytest.fixture
def contract(resident, make_contract):
    return make_contract(resident, amount="1000.00")


def actions(db_session, transaction_id):
    return [e.action for e in AuditService.entries_for(db_session, "transaction", transaction_id)]


class TestCreateTransaction:
    """Creating draft transactions."""

    def test_creates_draft(self, service, db_session, contract):
        transaction = service.create_transaction(
            TransactionCreateInput(
                resident_id=contract.resident_id,
                contract_id=contract.id,
                occurred_at=NOW,
                quantity=3,
                unit_price=Decimal("45.50"),
                service_item_code=CODE,
                description="Community access",
            ),
            "coordinator",
        )

        assert transaction.status == TransactionStatus.DRAFT
        assert transaction.drawdown_status == DrawdownStatus.PENDING
        assert transaction.amount == Decimal("136.50")
        assert transaction.participant_id == contract.resident_id
        assert transaction.created_by == "coordinator"
        assert actions(db_session, transaction.id) == ["created"]
        # Drafts do not touch the contract balance
        assert contract.current_balance == Decimal("1000.00")

    def test_explicit_amount_overrides_quantity(self, service, contract):
        transaction = service.create_transaction(
            TransactionCreateInput(
                resident_id=contract.resident_id,
                contract_id=contract.id,
                occurred_at=NOW,
                quantity=2,
                unit_price=Decimal("10.00"),
                amount=Decimal("25.00"),
                service_item_code=CODE,
                description="Transport",
            ),
            "admin",
        )

        assert transaction.amount == Decimal("25.00")

    def test_bad_service_code_rejected(self, service, db_session, contract):
        with pytest.raises(ValidationFailed) as exc_info:
            service.create_transaction(
                TransactionCreateInput(
                    resident_id=contract.resident_id,
                    contract_id=contract.id,
                    occurred_at=NOW,
                    quantity=1,
                    unit_price=Decimal("10.00"),
                    service_item_code="bad-code",
                    description="Transport",
                ),
                "admin",
            )

        assert MSG_CODE_FORMAT in exc_info.value.errors
        assert db_session.query(Transaction).count() == 0

    def test_inactive_contract_rejected(self, service, resident, make_contract):
        draft = make_contract(resident, activate=False)

        with pytest.raises(ValidationFailed, match="must be active"):
            service.create_transaction(
                TransactionCreateInput(
                    resident_id=resident.id,
                    contract_id=draft.id,
                    occurred_at=NOW,
                    quantity=1,
                    unit_price=Decimal("10.00"),
                    service_item_code=CODE,
                    description="Transport",
                ),
                "admin",
            )

    def test_non_drawdown_skips_ndis_rules(self, service, contract):
        transaction = service.create_transaction(
            TransactionCreateInput(
                resident_id=contract.resident_id,
                contract_id=contract.id,
                occurred_at=NOW,
                quantity=1,
                unit_price=Decimal("10.00"),
                description="Manual adjustment",
                is_drawdown_transaction=False,
            ),
            "admin",
        )

        assert transaction.service_item_code is None

    def test_unknown_resident_or_contract(self, service, contract, make_resident, make_contract):
        other_contract = make_contract(make_resident(first_name="Sam"))

        for resident_id, contract_id in [
            (999, contract.id),
            (contract.resident_id, 999),
            (contract.resident_id, other_contract.id),
        ]:
            with pytest.raises(NotFoundError):
                service.create_transaction(
                    TransactionCreateInput(
                        resident_id=resident_id,
                        contract_id=contract_id,
                        occurred_at=NOW,
                        quantity=1,
                        unit_price=Decimal("10.00"),
                        service_item_code=CODE,
                        description="Transport",
                    ),
                    "admin",
                )


class TestPostTransaction:
    """Posting drafts against the ledger."""

    def test_post_updates_balance_and_trail(self, service, db_session, contract, make_drawdown):
        transaction = make_drawdown(contract, amount="250.00")
        version = contract.version

        service.post_transaction(transaction.id, "manager")

        assert transaction.status == TransactionStatus.POSTED
        assert transaction.drawdown_status == DrawdownStatus.POSTED
        assert transaction.posted_by == "manager"
        assert transaction.posted_at is not None
        assert contract.current_balance == Decimal("750.00")
        assert contract.version == version + 1
        assert actions(db_session, transaction.id) == ["created", "posted"]
        contract_actions = [
            e.action for e in AuditService.entries_for(db_session, "contract", contract.id)
        ]
        assert contract_actions[-1] == "balance_updated"

    def test_insufficient_balance_leaves_state(self, service, db_session, resident, make_contract, make_drawdown):
        contract = make_contract(resident, amount="300.00")
        transaction = make_drawdown(contract, amount="500.00")

        with pytest.raises(InsufficientBalance) as exc_info:
            service.post_transaction(transaction.id, "admin")

        assert exc_info.value.shortfall == Decimal("200.00")
        assert "Insufficient balance. Would exceed by $200.00" in exc_info.value.errors
        db_session.expire_all()
        assert db_session.get(Transaction, transaction.id).status == TransactionStatus.DRAFT
        assert db_session.get(FundingContract, contract.id).current_balance == Decimal("300.00")
        assert actions(db_session, transaction.id) == ["created"]

    def test_post_revalidates_contract_state(
        self, service, db_session, clock, resident, contract, make_drawdown
    ):
        transaction = make_drawdown(contract)
        ContractService(db_session, clock=clock).update_contract_status(
            resident.id, contract.id, ContractStatus.DEACTIVATED, "admin"
        )

        with pytest.raises(ValidationFailed) as exc_info:
            service.post_transaction(transaction.id, "admin")

        assert MSG_CONTRACT_INACTIVE in exc_info.value.errors
        assert not isinstance(exc_info.value, InsufficientBalance)

    def test_post_twice_rejected(self, service, contract, make_drawdown):
        transaction = make_drawdown(contract, post=True)

        with pytest.raises(InvalidStateTransition) as exc_info:
            service.post_transaction(transaction.id, "admin")

        assert exc_info.value.from_state == "posted"

    def test_exact_balance_can_be_posted(self, service, contract, make_drawdown):
        make_drawdown(contract, amount="400.00", post=True)
        transaction = make_drawdown(contract, amount="600.00")

        service.post_transaction(transaction.id, "admin")

        assert contract.current_balance == Decimal("0.00")

    def test_unknown_transaction(self, service):
        with pytest.raises(NotFoundError):
            service.post_transaction(12345, "admin")


class TestVoidTransaction:
    """Voiding posted transactions."""

    def test_void_restores_balance(self, service, db_session, contract, make_drawdown):
        transaction = make_drawdown(contract, amount="300.00", post=True)
        assert contract.current_balance == Decimal("700.00")

        service.void_transaction(transaction.id, "Entered twice", "manager")

        assert transaction.status == TransactionStatus.VOIDED
        assert transaction.drawdown_status == DrawdownStatus.VOIDED
        assert transaction.void_reason == "Entered twice"
        assert transaction.voided_by == "manager"
        assert contract.current_balance == Decimal("1000.00")
        assert actions(db_session, transaction.id) == ["created", "posted", "voided"]

    def test_void_requires_reason(self, service, contract, make_drawdown):
        transaction = make_drawdown(contract, post=True)

        with pytest.raises(ValidationFailed, match="reason is required"):
            service.void_transaction(transaction.id, "   ", "admin")

    def test_void_twice_rejected(self, service, contract, make_drawdown):
        transaction = make_drawdown(contract, post=True)
        service.void_transaction(transaction.id, "Duplicate", "admin")

        with pytest.raises(InvalidStateTransition):
            service.void_transaction(transaction.id, "Duplicate", "admin")

    def test_draft_cannot_be_voided(self, service, contract, make_drawdown):
        transaction = make_drawdown(contract)

        with pytest.raises(InvalidStateTransition):
            service.void_transaction(transaction.id, "Wrong", "admin")

    def test_voided_cannot_be_posted(self, service, contract, make_drawdown):
        transaction = make_drawdown(contract, post=True)
        service.void_transaction(transaction.id, "Duplicate", "admin")

        with pytest.raises(InvalidStateTransition):
            service.post_transaction(transaction.id, "admin")


class TestUpdateAndDelete:
    """Editing and deleting drafts."""

    def test_update_draft_audits_each_field(self, service, db_session, contract, make_drawdown):
        transaction = make_drawdown(contract, amount="100.00")

        service.update_transaction(
            transaction.id, {"quantity": 2, "note": "Two sessions"}, "admin"
        )

        assert transaction.amount == Decimal("200.00")
        entries = AuditService.entries_for(db_session, "transaction", transaction.id)
        updated = {e.field for e in entries if e.action == "updated"}
        assert updated == {"quantity", "note", "amount"}

    def test_update_keeps_explicit_amount(self, service, contract):
        transaction = service.create_transaction(
            TransactionCreateInput(
                resident_id=contract.resident_id,
                contract_id=contract.id,
                occurred_at=NOW,
                quantity=1,
                unit_price=Decimal("100.00"),
                amount=Decimal("50.00"),
                service_item_code=CODE,
                description="Discounted session",
            ),
            "admin",
        )

        service.update_transaction(transaction.id, {"description": "Discounted group session"}, "admin")
        assert transaction.amount == Decimal("50.00")

        # A new quantity prices the draft from quantity x unit_price again
        service.update_transaction(transaction.id, {"quantity": 2}, "admin")
        assert transaction.amount == Decimal("200.00")

    def test_update_rejects_unknown_fields(self, service, contract, make_drawdown):
        transaction = make_drawdown(contract)

        with pytest.raises(ValidationFailed, match="cannot be updated"):
            service.update_transaction(transaction.id, {"status": "posted"}, "admin")

    def test_update_posted_rejected(self, service, contract, make_drawdown):
        transaction = make_drawdown(contract, post=True)

        with pytest.raises(InvalidStateTransition):
            service.update_transaction(transaction.id, {"note": "late"}, "admin")

    def test_delete_draft(self, service, db_session, contract, make_drawdown):
        transaction = make_drawdown(contract)
        transaction_id = transaction.id

        service.delete_transaction(transaction_id, "admin")

        assert db_session.get(Transaction, transaction_id) is None
        # The trail survives the deletion
        assert actions(db_session, transaction_id) == ["created", "deleted"]

    def test_delete_posted_rejected(self, service, contract, make_drawdown):
        transaction = make_drawdown(contract, post=True)

        with pytest.raises(InvalidStateTransition, match="Only draft"):
            service.delete_transaction(transaction.id, "admin")


class TestListTransactions:
    """Filtering, sorting and pagination."""

    def test_filters_and_pagination(self, service, resident, contract, make_resident, make_contract, make_drawdown):
        other_contract = make_contract(make_resident(first_name="Sam"))
        for day in range(1, 6):
            make_drawdown(
                contract,
                amount=f"{day}0.00",
                occurred_at=datetime(2024, 6, day, 9, 0, tzinfo=timezone.utc),
            )
        make_drawdown(other_contract, amount="99.00")

        page = service.list_transactions(
            TransactionFilters(resident_ids=[resident.id]),
            sort_by="amount",
            descending=False,
            page=1,
            page_size=2,
        )
        assert page.total == 5
        assert page.has_more
        assert [t.amount for t in page.items] == [Decimal("10.00"), Decimal("20.00")]

        last = service.list_transactions(
            TransactionFilters(resident_ids=[resident.id]), sort_by="amount", page=3, page_size=2
        )
        assert len(last.items) == 1
        assert not last.has_more

        dated = service.list_transactions(
            TransactionFilters(date_from=date(2024, 6, 2), date_to=date(2024, 6, 3))
        )
        assert dated.total == 2

    def test_status_and_search_filters(self, service, contract, make_drawdown):
        posted = make_drawdown(contract, post=True)
        make_drawdown(contract)

        by_status = service.list_transactions(TransactionFilters(statuses=[TransactionStatus.POSTED]))
        by_search = service.list_transactions(TransactionFilters(search="personal"))

        assert [t.id for t in by_status.items] == [posted.id]
        assert by_search.total == 2

    def test_rejects_unknown_sort(self, service):
        with pytest.raises(ValidationFailed):
            service.list_transactions(sort_by="resident_name")


class TestBulkAndBalances:
    """Bulk operations and balance views."""

    def test_bulk_post_collects_failures(self, service, resident, make_contract, make_drawdown):
        contract = make_contract(resident, amount="500.00")
        first = make_drawdown(contract, amount="300.00")
        second = make_drawdown(contract, amount="300.00")

        result = service.bulk_post([first.id, second.id, 999], "admin")

        assert result.processed == 1
        assert result.failed == 2
        assert not result.success
        assert [e.transaction_id for e in result.errors] == [second.id, 999]
        assert contract.current_balance == Decimal("200.00")

    def test_bulk_void(self, service, contract, make_drawdown):
        posted = make_drawdown(contract, post=True)
        draft = make_drawdown(contract)

        result = service.bulk_void([posted.id, draft.id], "Billing correction", "admin")

        assert result.processed == 1
        assert result.failed == 1
        assert contract.current_balance == Decimal("1000.00")

    def test_balance_preview(self, service, contract, make_drawdown):
        make_drawdown(contract, amount="800.00", post=True)

        preview = service.get_balance_preview(contract.id, Decimal("250.00"))

        assert not preview.is_valid
        assert preview.shortfall == Decimal("50.00")

    def test_resident_balance_summary(self, service, resident, contract, make_drawdown):
        make_drawdown(contract, amount="150.00", post=True)
        make_drawdown(contract, amount="20.00")

        summary = service.get_resident_balance_summary(resident.id)

        assert summary.total_original == Decimal("1000.00")
        assert summary.total_posted == Decimal("150.00")
        assert summary.total_remaining == Decimal("850.00")
        assert summary.contracts[0].draft_count == 1
        assert summary.contracts[0].cached_balance == Decimal("850.00")
