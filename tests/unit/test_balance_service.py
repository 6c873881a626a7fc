"""Unit tests for balance calculation."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from src.models.funding_contract import (
    ContractStatus,
    ContractType,
    DrawdownRate,
    FundingContract,
)
from src.services.balance_service import (
    BalanceCalculationService,
    calculate_balance_summary,
    calculate_current_balance,
    calculate_drawdown_amount,
    days_until_expiry,
    get_drawdown_percentage,
    get_drawdown_rate_text,
    is_contract_expiring_soon,
    needs_renewal,
    periods_between,
    to_money,
)


def build_contract(**overrides) -> FundingContract:
    """Transient contract with the 12000 / calendar 2024 / monthly terms."""
    values = {
        "resident_id": 1,
        "contract_type": ContractType.DRAW_DOWN,
        "original_amount": Decimal("12000.00"),
        "current_balance": Decimal("12000.00"),
        "start_date": date(2024, 1, 1),
        "end_date": date(2024, 12, 31),
        "drawdown_rate": DrawdownRate.MONTHLY,
        "auto_drawdown": True,
        "contract_status": ContractStatus.ACTIVE,
    }
    values.update(overrides)
    return FundingContract(**values)


class TestPeriodsBetween:
    """Whole-period counting at each granularity."""

    def test_daily_counts_calendar_days(self):
        assert periods_between(date(2024, 1, 1), date(2024, 1, 13), DrawdownRate.DAILY) == 12

    def test_weekly_truncates_partial_weeks(self):
        assert periods_between(date(2024, 1, 1), date(2024, 1, 20), DrawdownRate.WEEKLY) == 2

    def test_weekly_negative_truncates_toward_zero(self):
        assert periods_between(date(2024, 1, 20), date(2024, 1, 1), DrawdownRate.WEEKLY) == -2

    def test_monthly_requires_day_of_month_reached(self):
        # Jan 31 -> Feb 29 is not yet a whole month
        assert periods_between(date(2024, 1, 31), date(2024, 2, 29), DrawdownRate.MONTHLY) == 0
        assert periods_between(date(2024, 1, 15), date(2024, 3, 15), DrawdownRate.MONTHLY) == 2

    def test_monthly_negative_interval(self):
        assert periods_between(date(2024, 3, 15), date(2024, 1, 20), DrawdownRate.MONTHLY) == -1

    def test_accepts_datetimes(self):
        start = datetime(2024, 1, 1, 23, 0, tzinfo=timezone.utc)
        end = datetime(2024, 1, 3, 1, 0, tzinfo=timezone.utc)
        assert periods_between(start, end, DrawdownRate.DAILY) == 2


class TestCalculateCurrentBalance:
    """Time-based entitlement of a contract."""

    def test_monthly_contract_mid_year(self):
        """12000 over 11 whole months; 5 elapsed on 30 June, 6 on 1 July."""
        contract = build_contract()

        # 12000 * (1 - 5/11)
        assert calculate_current_balance(contract, date(2024, 6, 30)) == Decimal("6545.45")
        # 12000 * (1 - 6/11)
        assert calculate_current_balance(contract, date(2024, 7, 1)) == Decimal("5454.55")

    def test_daily_contract_halfway(self):
        contract = build_contract(
            drawdown_rate=DrawdownRate.DAILY,
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 13),
        )

        assert calculate_current_balance(contract, date(2024, 1, 7)) == Decimal("6000.00")

    def test_zero_length_term_is_fully_drawn(self):
        contract = build_contract(start_date=date(2024, 5, 1), end_date=date(2024, 5, 1))

        assert calculate_current_balance(contract, date(2024, 4, 1)) == Decimal("0.00")

    def test_before_start_is_full_balance(self):
        contract = build_contract()

        assert calculate_current_balance(contract, date(2023, 6, 1)) == Decimal("12000.00")

    def test_after_end_is_zero(self):
        contract = build_contract()

        assert calculate_current_balance(contract, date(2025, 6, 1)) == Decimal("0.00")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"contract_status": ContractStatus.DRAFT},
            {"contract_status": ContractStatus.DEACTIVATED},
            {"auto_drawdown": False},
            {"end_date": None},
        ],
    )
    def test_non_depleting_contracts_keep_original(self, overrides):
        contract = build_contract(**overrides)

        assert calculate_current_balance(contract, date(2024, 7, 1)) == Decimal("12000.00")

    def test_balance_never_increases_over_time(self):
        contract = build_contract(drawdown_rate=DrawdownRate.WEEKLY)
        previous = None
        for day in range(0, 400, 5):
            now = date.fromordinal(date(2023, 12, 1).toordinal() + day)
            balance = calculate_current_balance(contract, now)
            assert Decimal("0") <= balance <= Decimal("12000.00")
            if previous is not None:
                assert balance <= previous
            previous = balance

    def test_drawdown_amount_complements_balance(self):
        contract = build_contract()
        now = date(2024, 9, 15)

        total = calculate_current_balance(contract, now) + calculate_drawdown_amount(contract, now)
        assert total == Decimal("12000.00")


class TestDrawdownHelpers:
    """Percentages, labels and expiry checks."""

    def test_drawdown_percentage_bounds(self):
        contract = build_contract()

        assert get_drawdown_percentage(contract, date(2023, 1, 1)) == Decimal("0.00")
        assert get_drawdown_percentage(contract, date(2025, 1, 1)) == Decimal("100.00")

    def test_drawdown_percentage_zero_original(self):
        contract = build_contract(original_amount=Decimal("0"), current_balance=Decimal("0"))

        assert get_drawdown_percentage(contract, date(2024, 7, 1)) == Decimal("0.00")

    def test_rate_text(self):
        assert get_drawdown_rate_text(DrawdownRate.DAILY) == "Daily"
        assert get_drawdown_rate_text(DrawdownRate.WEEKLY) == "Weekly"
        assert get_drawdown_rate_text(DrawdownRate.MONTHLY) == "Monthly"

    def test_days_until_expiry(self):
        contract = build_contract()

        assert days_until_expiry(contract, date(2024, 12, 1)) == 30
        assert days_until_expiry(build_contract(end_date=None), date(2024, 12, 1)) is None

    def test_expiring_soon_window(self):
        contract = build_contract()

        assert is_contract_expiring_soon(contract, date(2024, 12, 1))
        assert not is_contract_expiring_soon(contract, date(2024, 11, 30))
        # Already ended: no longer "soon"
        assert not is_contract_expiring_soon(contract, date(2025, 1, 2))

    def test_needs_renewal(self):
        contract = build_contract()

        assert needs_renewal(contract, date(2024, 12, 15))
        assert needs_renewal(contract, date(2025, 2, 1))
        assert not needs_renewal(contract, date(2024, 6, 1))
        assert not needs_renewal(build_contract(end_date=None), date(2024, 6, 1))

    def test_to_money_rounds_half_up(self):
        assert to_money(Decimal("1.005")) == Decimal("1.01")
        assert to_money(2.675) == Decimal("2.68")
        assert to_money("10") == Decimal("10.00")


class TestBalanceSummary:
    """Aggregation over a resident's contracts."""

    def test_summary_totals_every_contract(self):
        contracts = [
            build_contract(),
            build_contract(original_amount=Decimal("5000.00"), auto_drawdown=False),
            build_contract(contract_status=ContractStatus.DRAFT),
            build_contract(contract_status=ContractStatus.EXPIRED),
        ]

        summary = calculate_balance_summary(contracts, date(2024, 7, 1))

        assert summary.active_contracts == 2
        assert summary.total_original == Decimal("41000.00")
        assert summary.total_current == Decimal("34454.55")
        assert summary.total_drawn_down == Decimal("6545.45")

    def test_summary_mixed_statuses(self):
        contracts = [
            build_contract(original_amount=Decimal("10000.00")),
            build_contract(original_amount=Decimal("5000.00"), end_date=date(2024, 12, 20)),
            build_contract(original_amount=Decimal("3000.00"), contract_status=ContractStatus.DRAFT),
        ]

        summary = calculate_balance_summary(contracts, date(2024, 12, 15))

        assert summary.total_original == Decimal("18000.00")
        assert summary.active_contracts == 2

    def test_summary_threshold(self):
        contract = build_contract()

        assert calculate_balance_summary([contract], date(2024, 11, 1)).expiring_soon == 0
        assert calculate_balance_summary([contract], date(2024, 11, 1), threshold_days=60).expiring_soon == 1

    def test_summary_counts_expiring(self):
        summary = calculate_balance_summary([build_contract()], date(2024, 12, 10))

        assert summary.expiring_soon == 1


class TestBalanceCalculationService:
    """Ledger balances against stored transactions."""

    def test_ledger_balance_ignores_drafts_and_voids(
        self, db_session, make_resident, make_contract, make_drawdown
    ):
        resident = make_resident()
        contract = make_contract(resident, amount="1000.00")
        make_drawdown(contract, amount="100.00", post=True)
        make_drawdown(contract, amount="250.00")
        service = BalanceCalculationService(db_session)

        assert service.posted_total(contract.id) == Decimal("100.00")
        assert service.ledger_balance(contract) == Decimal("900.00")

    def test_balance_impact_reports_shortfall(self, db_session, make_resident, make_contract):
        resident = make_resident()
        contract = make_contract(resident, amount="300.00")

        impact = BalanceCalculationService(db_session).calculate_balance_impact(
            contract, Decimal("500.00")
        )

        assert not impact.is_valid
        assert impact.current_balance == Decimal("300.00")
        assert impact.new_balance == Decimal("-200.00")
        assert impact.shortfall == Decimal("200.00")
        assert impact.error_message == "Insufficient balance. Would exceed by $200.00"

    def test_balance_impact_can_exclude_transaction(
        self, db_session, make_resident, make_contract, make_drawdown
    ):
        resident = make_resident()
        contract = make_contract(resident, amount="300.00")
        posted = make_drawdown(contract, amount="300.00", post=True)
        service = BalanceCalculationService(db_session)

        assert not service.calculate_balance_impact(contract, Decimal("300.00")).is_valid
        assert service.calculate_balance_impact(
            contract, Decimal("300.00"), exclude_transaction_id=posted.id
        ).is_valid

    def test_exact_balance_is_allowed(self, db_session, make_resident, make_contract):
        resident = make_resident()
        contract = make_contract(resident, amount="300.00")

        impact = BalanceCalculationService(db_session).calculate_balance_impact(
            contract, Decimal("300.00")
        )

        assert impact.is_valid
        assert impact.new_balance == Decimal("0.00")
        assert impact.shortfall == Decimal("0.00")
        assert impact.error_message is None

    def test_recompute_restores_ledger_balance(
        self, db_session, make_resident, make_contract, make_drawdown
    ):
        contract = make_contract(make_resident(), amount="500.00")
        make_drawdown(contract, amount="120.00", post=True)
        contract.current_balance = Decimal("1.00")

        new_balance = BalanceCalculationService(db_session).recompute_contract_balance(contract)

        assert new_balance == Decimal("380.00")
        assert contract.current_balance == Decimal("380.00")

    def test_recompute_keeps_expired_contract_at_zero(
        self, db_session, make_resident, make_contract
    ):
        contract = make_contract(make_resident(), amount="500.00")
        contract.contract_status = ContractStatus.EXPIRED

        assert BalanceCalculationService(db_session).recompute_contract_balance(contract) == Decimal("0.00")
