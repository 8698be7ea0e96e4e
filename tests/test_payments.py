"""
Test suite for payment application

Tests the interest-first waterfall, partial payments, the duplicate-payment
guard, excess handling under both policies, and optimistic concurrency.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import replace
from unittest.mock import Mock

from repayment_engine.currency import Money, Currency
from repayment_engine.storage import InMemoryStorage
from repayment_engine.audit import AuditTrail, AuditEventType
from repayment_engine.events import DomainEvent, EventDispatcher
from repayment_engine.exceptions import ValidationError, LoanNotFoundError, ConcurrentModificationError
from repayment_engine.ledger import InstallmentStatus, LedgerRepository
from repayment_engine.loans import Loan, LoanTerms, InterestMethod, RepaymentFrequency, LoanStatus, GraceMode
from repayment_engine.payments import (
    PaymentEngine, ExcessPolicy, apply_to_installment, block_reason,
    BLOCK_ALREADY_PAID, BLOCK_TOO_SOON, BLOCK_WRITTEN_OFF,
)
from repayment_engine.schedule import ScheduleGenerator, build_schedule


def usd(amount):
    return Money(Decimal(amount), Currency.USD)


def flat_terms():
    return LoanTerms(
        principal=usd('1200.00'),
        annual_interest_rate=Decimal('0.12'),
        term_periods=12,
        frequency=RepaymentFrequency.MONTHLY,
        interest_method=InterestMethod.FLAT,
        disbursement_date=date(2024, 1, 15),
    )


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class TestApplyToInstallment:
    """Test the pure single-row function"""

    def setup_method(self):
        self.row = build_schedule("L1", flat_terms())[0]
        self.now = datetime(2024, 2, 15, 10, 0, tzinfo=timezone.utc)
        self.cooldown = timedelta(seconds=60)

    def test_interest_first(self):
        """Interest is satisfied before any principal"""
        updated, result = apply_to_installment(self.row, usd('10.00'), date(2024, 2, 10), self.now, self.cooldown)
        assert result.interest_paid == usd('10.00')
        assert result.principal_paid.is_zero()
        assert updated.outstanding_interest == usd('2.00')
        assert updated.status == InstallmentStatus.PARTIAL

    def test_input_row_not_mutated(self):
        """The installment is a value; the function returns a new one"""
        apply_to_installment(self.row, usd('112.00'), date(2024, 2, 15), self.now, self.cooldown)
        assert self.row.paid_total.is_zero()
        assert self.row.payment_attempt_count == 0

    def test_late_full_payment_freezes_delay(self):
        """delayed_days is fixed at the moment the row is paid"""
        updated, _ = apply_to_installment(self.row, usd('112.00'), date(2024, 2, 25), self.now, self.cooldown)
        assert updated.is_paid
        assert updated.delayed_days == 10
        assert updated.actual_payment_date == date(2024, 2, 25)
        assert updated.paid_at == self.now

    def test_block_reasons(self):
        """Written-off, paid and too-recent rows are blocked in that order"""
        assert block_reason(self.row, self.now, self.cooldown) is None
        written_off = replace(self.row, status=InstallmentStatus.WRITTEN_OFF)
        assert block_reason(written_off, self.now, self.cooldown) == BLOCK_WRITTEN_OFF
        paid = replace(self.row, is_paid=True, status=InstallmentStatus.PAID)
        assert block_reason(paid, self.now, self.cooldown) == BLOCK_ALREADY_PAID
        recent = replace(self.row, last_payment_attempt=self.now - timedelta(seconds=30))
        assert block_reason(recent, self.now, self.cooldown) == BLOCK_TOO_SOON
        old = replace(self.row, last_payment_attempt=self.now - timedelta(seconds=61))
        assert block_reason(old, self.now, self.cooldown) is None


class TestPaymentEngine:
    """Test payments against a persisted ledger"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.repository = LedgerRepository(self.storage)
        self.dispatcher = EventDispatcher()
        generator = ScheduleGenerator(self.repository, self.audit)
        generator.set_event_dispatcher(self.dispatcher)
        generator.generate(Loan.create(flat_terms(), loan_id="L1"))

        self.clock = FakeClock(datetime(2024, 2, 15, 9, 0, tzinfo=timezone.utc))
        self.engine = self._engine(ExcessPolicy.RETURN)

    def _engine(self, policy):
        engine = PaymentEngine(self.repository, self.audit, cooldown_seconds=60,
                               excess_policy=policy, clock=self.clock)
        engine.set_event_dispatcher(self.dispatcher)
        return engine

    def test_exact_payment_on_due_date(self):
        """112.00 on the due date pays installment 1 with no delay"""
        result = self.engine.apply_payment("L1", usd('112.00'), date(2024, 2, 15), installment_number=1)

        row = self.repository.get_installment("L1", 1)
        assert not result.was_blocked
        assert row.paid_total == usd('112.00')
        assert row.status == InstallmentStatus.PAID
        assert row.is_paid
        assert row.delayed_days == 0
        assert row.outstanding_principal.is_zero()
        assert result.excess_amount.is_zero()

    def test_partial_payment(self):
        """50.00 against a 112.00 row: 12 interest, 38 principal"""
        result = self.engine.apply_payment("L1", usd('50.00'), date(2024, 2, 10), installment_number=2)

        row = self.repository.get_installment("L1", 2)
        assert result.interest_paid == usd('12.00')
        assert result.principal_paid == usd('38.00')
        assert row.paid_total == usd('50.00')
        assert row.status == InstallmentStatus.PARTIAL
        assert row.outstanding_principal == usd('62.00')
        assert not row.is_paid

    def test_duplicate_payment_is_blocked(self):
        """A second payment against a paid row is refused, nothing but the attempt is recorded"""
        self.engine.apply_payment("L1", usd('112.00'), date(2024, 2, 15), installment_number=1)
        before = self.repository.get_installment("L1", 1)

        result = self.engine.apply_payment("L1", usd('112.00'), date(2024, 2, 15), installment_number=1)

        after = self.repository.get_installment("L1", 1)
        assert result.was_blocked
        assert result.block_reason == BLOCK_ALREADY_PAID
        assert result.excess_amount == usd('112.00')
        assert result.total_applied.is_zero()
        assert after.paid_total == before.paid_total
        assert after.status == before.status
        assert after.paid_at == before.paid_at
        assert after.payment_attempt_count == before.payment_attempt_count + 1

    def test_cooldown_blocks_rapid_resubmission(self):
        """A second attempt inside the cooldown window is blocked"""
        self.engine.apply_payment("L1", usd('50.00'), date(2024, 2, 15), installment_number=2)
        self.clock.advance(30)

        result = self.engine.apply_payment("L1", usd('20.00'), date(2024, 2, 15), installment_number=2)
        assert result.was_blocked
        assert result.block_reason == BLOCK_TOO_SOON
        assert self.repository.get_installment("L1", 2).paid_total == usd('50.00')

        self.clock.advance(120)
        result = self.engine.apply_payment("L1", usd('20.00'), date(2024, 2, 15), installment_number=2)
        assert not result.was_blocked
        row = self.repository.get_installment("L1", 2)
        assert row.paid_total == usd('70.00')
        assert row.payment_attempt_count == 3

    def test_excess_returned_by_default(self):
        """Under the return policy the overflow goes back to the caller"""
        result = self.engine.apply_payment("L1", usd('300.00'), date(2024, 2, 15))

        assert result.excess_amount == usd('188.00')
        assert result.total_applied == usd('112.00')
        assert self.repository.get_installment("L1", 2).paid_total.is_zero()

    def test_excess_cascades_when_configured(self):
        """Under the cascade policy the overflow pays the next rows in order"""
        engine = self._engine(ExcessPolicy.CASCADE)
        result = engine.apply_payment("L1", usd('300.00'), date(2024, 2, 15))

        assert result.excess_amount.is_zero()
        assert [a.installment_number for a in result.allocations] == [1, 2, 3]
        assert self.repository.get_installment("L1", 2).status == InstallmentStatus.PAID
        third = self.repository.get_installment("L1", 3)
        assert third.paid_interest == usd('12.00')
        assert third.paid_principal == usd('64.00')
        assert third.status == InstallmentStatus.PARTIAL

    def test_cascade_settles_loan_and_returns_remainder(self):
        """Paying off every row closes the loan; the rest is excess"""
        engine = self._engine(ExcessPolicy.CASCADE)
        result = engine.apply_payment("L1", usd('1400.00'), date(2024, 2, 15))

        assert result.excess_amount == usd('56.00')
        assert self.repository.get_loan("L1").status == LoanStatus.CLOSED
        with pytest.raises(ValidationError):
            engine.apply_payment("L1", usd('1.00'), date(2024, 2, 16))

    def test_rows_with_nothing_due_are_skipped(self):
        """Zero-rate interest-only grace rows never absorb a payment"""
        terms = replace(flat_terms(), annual_interest_rate=Decimal('0'), grace_periods=2,
                        grace_mode=GraceMode.INTEREST_ONLY)
        ScheduleGenerator(self.repository, self.audit).generate(Loan.create(terms, loan_id="ZERO"))

        result = self.engine.apply_payment("ZERO", usd('120.00'), date(2024, 4, 15))

        assert [a.installment_number for a in result.allocations] == [3]
        assert result.principal_paid == usd('120.00')
        assert result.excess_amount.is_zero()
        assert self.repository.get_installment("ZERO", 3).is_paid

        addressed = self.engine.apply_payment("ZERO", usd('10.00'), date(2024, 4, 15), installment_number=1)
        assert addressed.was_blocked
        assert addressed.block_reason == BLOCK_ALREADY_PAID

    def test_implicit_target_is_earliest_open_row(self):
        """Without an installment number the oldest open row is paid first"""
        self.engine.apply_payment("L1", usd('112.00'), date(2024, 2, 15))
        self.clock.advance(3600)
        result = self.engine.apply_payment("L1", usd('112.00'), date(2024, 3, 15))

        assert result.allocations[0].installment_number == 2
        assert self.repository.get_installment("L1", 2).is_paid

    def test_invalid_commands(self):
        """Bad input raises before anything changes"""
        with pytest.raises(LoanNotFoundError):
            self.engine.apply_payment("missing", usd('10.00'))
        with pytest.raises(ValidationError):
            self.engine.apply_payment("L1", usd('0'))
        with pytest.raises(ValidationError):
            self.engine.apply_payment("L1", Money(Decimal('10'), Currency.EUR))
        with pytest.raises(ValidationError):
            self.engine.apply_payment("L1", usd('10.00'), installment_number=99)
        assert self.repository.get_installment("L1", 1).payment_attempt_count == 0

    def test_plain_decimal_amounts_accepted(self):
        """Amounts may be given as Decimal or string in the loan currency"""
        result = self.engine.apply_payment("L1", "12.00", date(2024, 2, 1))
        assert result.interest_paid == usd('12.00')

    def test_audit_and_events(self):
        """Applied and blocked payments are audited and published"""
        handler = Mock()
        self.dispatcher.subscribe_all(handler)

        self.engine.apply_payment("L1", usd('112.00'), date(2024, 2, 15), installment_number=1, reference="PAY-1")
        self.engine.apply_payment("L1", usd('112.00'), date(2024, 2, 15), installment_number=1)

        applied = self.audit.get_events_by_type(AuditEventType.PAYMENT_APPLIED)
        blocked = self.audit.get_events_by_type(AuditEventType.PAYMENT_BLOCKED)
        assert applied[0].metadata["reference"] == "PAY-1"
        assert blocked[0].metadata["reason"] == BLOCK_ALREADY_PAID
        published = [call[0][0].event_type for call in handler.call_args_list]
        assert published == [DomainEvent.PAYMENT_APPLIED, DomainEvent.INSTALLMENT_PAID, DomainEvent.PAYMENT_BLOCKED]

    def test_stale_write_is_rejected(self):
        """A writer holding an old version cannot overwrite a newer row"""
        stale = self.repository.get_installment("L1", 1)
        self.engine.apply_payment("L1", usd('50.00'), date(2024, 2, 15), installment_number=1)

        with pytest.raises(ConcurrentModificationError):
            self.repository.update_installment(replace(stale, paid_total=usd('1.00')))
        assert self.repository.get_installment("L1", 1).paid_total == usd('50.00')
