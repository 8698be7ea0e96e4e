"""
Tests for ledger read-side queries
"""

import pytest
from decimal import Decimal
from datetime import date

from repayment_engine.currency import Money, Currency
from repayment_engine.storage import InMemoryStorage
from repayment_engine.audit import AuditTrail
from repayment_engine.exceptions import LoanNotFoundError
from repayment_engine.ledger import LedgerRepository
from repayment_engine.loans import Loan, LoanTerms, InterestMethod, RepaymentFrequency
from repayment_engine.payments import PaymentEngine
from repayment_engine.reporting import LedgerReporter
from repayment_engine.schedule import ScheduleGenerator


def usd(amount):
    return Money(Decimal(amount), Currency.USD)


class TestLedgerReporter:
    """Test due, overdue and summary queries"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.repository = LedgerRepository(self.storage)
        terms = LoanTerms(
            principal=usd('1200.00'),
            annual_interest_rate=Decimal('0.12'),
            term_periods=12,
            frequency=RepaymentFrequency.MONTHLY,
            interest_method=InterestMethod.FLAT,
            disbursement_date=date(2024, 1, 15),
        )
        ScheduleGenerator(self.repository, self.audit).generate(Loan.create(terms, loan_id="L1"))
        PaymentEngine(self.repository, self.audit).apply_payment(
            "L1", usd('112.00'), date(2024, 2, 15), installment_number=1
        )
        self.reporter = LedgerReporter(self.repository)

    def test_due_amounts(self):
        """Rows due on the date are due but not yet overdue"""
        due = self.reporter.due_amounts("L1", date(2024, 4, 15))

        assert due.installments_due == 2
        assert due.installments_overdue == 1
        assert due.due_total == usd('224.00')
        assert due.overdue_total == usd('112.00')
        assert due.to_dict()["due_principal"] == "200.00"

    def test_overdue_installments(self):
        """Overdue rows with their average lateness"""
        summary = self.reporter.overdue_installments("L1", date(2024, 4, 20))

        assert summary.count == 2
        assert summary.total_overdue == usd('224.00')
        assert summary.average_days_overdue == Decimal('20.50')

    def test_next_due_date(self):
        """First open row due on or after the date"""
        assert self.reporter.next_due_date("L1", date(2024, 2, 16)) == date(2024, 3, 15)
        assert self.reporter.next_due_date("L1", date(2025, 2, 1)) is None

    def test_schedule_summary(self):
        """Totals over the active ledger"""
        summary = self.reporter.schedule_summary("L1")

        assert summary["installments"] == 12
        assert summary["status_counts"]["paid"] == 1
        assert summary["status_counts"]["pending"] == 11
        assert summary["scheduled_interest"] == "144.00"
        assert summary["paid_total"] == "112.00"
        assert summary["remaining_principal"] == "1100.00"
        assert summary["last_due_date"] == "2025-01-15"

    def test_ledger_rows(self):
        """Serialized rows for export"""
        rows = self.reporter.ledger_rows("L1")
        assert len(rows) == 12
        assert rows[0]["status"] == "paid"
        assert rows[0]["paid_total"] == "112.00"

    def test_unknown_loan(self):
        """Queries on an unknown loan raise"""
        with pytest.raises(LoanNotFoundError):
            self.reporter.schedule_summary("missing")
