"""
Tests for loan terms, calendar stepping and the loan record
"""

import pytest
from decimal import Decimal
from datetime import date

from repayment_engine.currency import Money, Currency
from repayment_engine.exceptions import ValidationError
from repayment_engine.loans import (
    Loan, LoanTerms, LoanStatus, InterestMethod, RepaymentFrequency, GraceMode,
    add_months, add_periods, annuity_payment
)


def usd(amount):
    return Money(Decimal(amount), Currency.USD)


def make_terms(**overrides):
    params = dict(
        principal=usd('1200.00'),
        annual_interest_rate=Decimal('0.12'),
        term_periods=12,
        frequency=RepaymentFrequency.MONTHLY,
        interest_method=InterestMethod.FLAT,
        disbursement_date=date(2024, 1, 15),
    )
    params.update(overrides)
    return LoanTerms(**params)


class TestCalendar:
    """Test due date arithmetic"""

    def test_add_months_clamps_month_end(self):
        """Short months clamp to their last day"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)

    def test_month_end_anchor_does_not_drift(self):
        """Each step is measured from the anchor date"""
        anchor = date(2024, 1, 31)
        assert add_periods(anchor, RepaymentFrequency.MONTHLY, 1) == date(2024, 2, 29)
        assert add_periods(anchor, RepaymentFrequency.MONTHLY, 2) == date(2024, 3, 31)

    def test_day_based_frequencies(self):
        """Daily, weekly and bi-weekly step by fixed days"""
        start = date(2024, 1, 1)
        assert add_periods(start, RepaymentFrequency.DAILY, 3) == date(2024, 1, 4)
        assert add_periods(start, RepaymentFrequency.WEEKLY, 2) == date(2024, 1, 15)
        assert add_periods(start, RepaymentFrequency.BI_WEEKLY, 1) == date(2024, 1, 15)

    def test_periods_per_year(self):
        """Frequency table"""
        assert RepaymentFrequency.QUARTERLY.periods_per_year == 4
        assert RepaymentFrequency.BI_WEEKLY.periods_per_year == 26
        assert RepaymentFrequency.DAILY.periods_per_year == 365


class TestLoanTerms:
    """Test validation and derived amounts"""

    def test_validation(self):
        """Impossible terms are rejected"""
        with pytest.raises(ValidationError):
            make_terms(principal=usd('0.00'))
        with pytest.raises(ValidationError):
            make_terms(annual_interest_rate=Decimal('-0.01'))
        with pytest.raises(ValidationError):
            make_terms(grace_periods=12)

    def test_rate_is_coerced_to_decimal(self):
        terms = make_terms(annual_interest_rate='0.12')
        assert terms.annual_interest_rate == Decimal('0.12')

    def test_flat_totals(self):
        """Flat interest on the full principal for the whole term"""
        terms = make_terms()
        assert terms.total_interest == usd('144.00')
        assert terms.installment_amount == usd('112.00')
        assert terms.maturity_date == date(2025, 1, 15)

    def test_annuity_payment(self):
        assert annuity_payment(usd('10000.00'), Decimal('0.01'), 12) == usd('888.49')
        assert annuity_payment(usd('1200.00'), Decimal('0'), 12) == usd('100.00')
        with pytest.raises(ValidationError):
            annuity_payment(usd('1200.00'), Decimal('0.01'), 0)

    def test_deferred_grace_shifts_first_due_date(self):
        """Deferred grace has no rows during grace"""
        terms = make_terms(grace_periods=2)
        assert terms.total_installments == 10
        assert terms.first_due_date == date(2024, 4, 15)
        assert terms.due_date_for(10) == terms.maturity_date

    def test_interest_only_grace_keeps_all_rows(self):
        terms = make_terms(grace_periods=2, grace_mode=GraceMode.INTEREST_ONLY)
        assert terms.total_installments == 12
        assert terms.amortizing_periods == 10
        assert terms.first_due_date == date(2024, 2, 15)

    def test_terms_round_trip(self):
        terms = make_terms(grace_periods=1, interest_method=InterestMethod.REDUCING_BALANCE)
        assert LoanTerms.from_dict(terms.to_dict()) == terms


class TestLoan:
    """Test the loan record"""

    def test_create_defaults(self):
        """New loans start disbursed with zeroed engine fields"""
        loan = Loan.create(make_terms(), loan_id="L1", borrower_reference="B-7")

        assert loan.id == "L1"
        assert loan.status == LoanStatus.DISBURSED
        assert loan.collateral_value == usd('0.00')
        assert loan.principal_prepaid == usd('0.00')
        assert not loan.is_closed

    def test_collateral_currency_must_match(self):
        with pytest.raises(ValidationError):
            Loan.create(make_terms(), collateral_value=Money(Decimal('10'), Currency.EUR))

    def test_storage_round_trip(self):
        """Engine-maintained fields survive serialization"""
        loan = Loan.create(make_terms(), loan_id="L1", collateral_value=usd('500.00'))
        loan.days_in_arrears = 42
        loan.classification = "watch"
        loan.accrued_as_of = date(2024, 3, 1)
        loan.accrued_interest = usd('6.19')

        restored = Loan.from_dict(loan.to_dict())

        assert restored.days_in_arrears == 42
        assert restored.classification == "watch"
        assert restored.accrued_interest == usd('6.19')
        assert restored.accrued_as_of == date(2024, 3, 1)
        assert restored.collateral_value == usd('500.00')
