"""
Repayment Engine Facade

Wires storage, audit trail, event dispatcher and the ledger services
together and exposes the command/query API used by callers: generate a
schedule, apply a payment, sweep arrears, recalculate, classify.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .currency import Currency, Money, money_sum
from .arrears import ArrearsTracker
from .audit import AuditTrail, NullAuditTrail
from .batch import BatchReport
from .classification import ClassificationEngine, ClassificationSnapshot, LoanClassification, ProvisioningPolicy
from .config import EngineConfig, get_config
from .exceptions import ValidationError
from .events import EventDispatcher, NullDispatcher, get_global_dispatcher
from .interest import AccrualResult, InterestAccrualEngine
from .ledger import Installment, LedgerRepository
from .loans import Loan, LoanTerms
from .logging_config import get_logger
from .payments import PaymentEngine, PaymentResult
from .recalculation import RecalculationEngine, RecalculationResult, RecalculationStrategy
from .reporting import LedgerReporter
from .schedule import ScheduleGenerator
from .storage import StorageInterface, create_storage


class RepaymentEngine:
    """
    Single entry point to the loan repayment ledger.

    External callers submit commands here and never write ledger rows directly.
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[EngineConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("repayment_engine.engine")

        if self.config.enable_events:
            self.event_dispatcher = event_dispatcher or get_global_dispatcher()
        else:
            self.event_dispatcher = NullDispatcher()

        if self.config.enable_audit_logging:
            self.audit_trail = AuditTrail(self.storage)
        else:
            self.audit_trail = NullAuditTrail()

        self.repository = LedgerRepository(self.storage)
        self.schedules = ScheduleGenerator(self.repository, self.audit_trail)
        self.payments = PaymentEngine(
            self.repository,
            self.audit_trail,
            cooldown_seconds=self.config.payment_cooldown_seconds,
            excess_policy=self.config.excess_payment_policy,
            clock=self.clock
        )
        self.arrears = ArrearsTracker(
            self.repository,
            self.audit_trail,
            arrears_reference=self.config.arrears_reference,
            batch_size=self.config.batch_size,
            clock=self.clock
        )
        self.interest = InterestAccrualEngine(
            self.repository, self.audit_trail, batch_size=self.config.batch_size, clock=self.clock
        )
        self.recalculation = RecalculationEngine(
            self.repository, self.audit_trail, batch_size=self.config.batch_size, clock=self.clock
        )
        self.classification = ClassificationEngine(
            self.repository,
            self.audit_trail,
            policy=ProvisioningPolicy.from_config(self.config),
            arrears_reference=self.config.arrears_reference,
            batch_size=self.config.batch_size,
            clock=self.clock
        )
        self.reporting = LedgerReporter(self.repository)

        for service in (self.schedules, self.payments, self.arrears, self.interest,
                        self.recalculation, self.classification):
            service.set_event_dispatcher(self.event_dispatcher)

    # Commands

    def generate_schedule(
        self,
        terms: LoanTerms,
        loan_id: Optional[str] = None,
        borrower_reference: Optional[str] = None,
        collateral_value: Optional[Money] = None
    ) -> List[Installment]:
        """Register a disbursed loan and create its ledger"""
        loan = Loan.create(
            terms,
            loan_id=loan_id,
            borrower_reference=borrower_reference,
            collateral_value=collateral_value
        )
        return self.schedules.generate(loan)

    def preview_schedule(self, terms: LoanTerms) -> List[Installment]:
        return self.schedules.preview(terms)

    def apply_payment(
        self,
        loan_id: str,
        amount: Union[Money, Decimal, str, int],
        payment_date: Optional[date] = None,
        installment_number: Optional[int] = None,
        reference: Optional[str] = None
    ) -> PaymentResult:
        return self.payments.apply_payment(loan_id, amount, payment_date, installment_number, reference)

    def run_arrears_sweep(self, as_of: Optional[date] = None,
                          loan_ids: Optional[Iterable[str]] = None) -> BatchReport:
        return self.arrears.run_sweep(as_of, loan_ids)

    def run_interest_accrual(self, as_of: Optional[date] = None,
                             loan_ids: Optional[Iterable[str]] = None) -> BatchReport:
        return self.interest.run_accrual(as_of, loan_ids)

    def accrue_interest(self, loan_id: str, as_of: Optional[date] = None) -> AccrualResult:
        return self.interest.accrue_loan(loan_id, as_of)

    def recalculate(
        self,
        loan_id: str,
        strategy: Union[RecalculationStrategy, str],
        principal_reduction: Optional[Union[Money, Decimal, str, int]] = None,
        as_of: Optional[date] = None
    ) -> RecalculationResult:
        return self.recalculation.recalculate(loan_id, strategy, principal_reduction, as_of)

    def recalculate_many(self, loan_ids: Iterable[str], strategy: Union[RecalculationStrategy, str],
                         as_of: Optional[date] = None) -> BatchReport:
        return self.recalculation.recalculate_many(loan_ids, strategy, as_of)

    def classify(self, loan_id: str, as_of: Optional[date] = None) -> LoanClassification:
        return self.classification.classify_loan(loan_id, as_of)

    def classify_portfolio(self, as_of: Optional[date] = None,
                           loan_ids: Optional[Iterable[str]] = None) -> BatchReport:
        return self.classification.classify_portfolio(as_of, loan_ids)

    def portfolio_snapshot(self, report: BatchReport,
                           currency: Optional[Union[Currency, str]] = None) -> ClassificationSnapshot:
        """Portfolio view of a classification run, in default_currency unless told otherwise"""
        currency = currency or self.config.default_currency
        if not isinstance(currency, Currency):
            try:
                currency = Currency[currency.upper()]
            except KeyError:
                raise ValidationError(f"Unknown currency: {currency}")
        return self.classification.portfolio_snapshot(report, currency)

    def write_off_installments(self, loan_id: str, reason: Optional[str] = None) -> List[Installment]:
        return self.arrears.write_off_installments(loan_id, reason)

    def run_daily_jobs(self, as_of: Optional[date] = None) -> Dict[str, BatchReport]:
        """Arrears sweep, then interest accrual, then classification"""
        as_of = as_of or self.clock().date()
        self.logger.info(f"Running daily jobs for {as_of.isoformat()}")
        reports = {
            'arrears_sweep': self.run_arrears_sweep(as_of),
            'interest_accrual': self.run_interest_accrual(as_of),
            'classification': self.classify_portfolio(as_of),
        }
        failed = sum(report.loans_failed for report in reports.values())
        if failed:
            self.logger.warning(f"Daily jobs for {as_of.isoformat()} finished with {failed} loan failures")
        return reports

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        return self.repository.get_loan(loan_id)

    def get_installments(self, loan_id: str, include_superseded: bool = False) -> List[Installment]:
        self.repository.get_loan(loan_id)
        return self.repository.get_installments(loan_id, include_superseded)

    def verify_ledger(self, loan_id: str) -> Dict[str, Any]:
        """
        Check the ledger invariants of one loan

        Returns:
            Dictionary with 'valid' and the list of violations found
        """
        loan = self.repository.get_loan(loan_id)
        rows = self.repository.get_installments(loan_id)
        tolerance = Decimal(self.config.rounding_tolerance)
        violations = []

        scheduled = money_sum((r.due_principal for r in rows), loan.currency)
        expected = loan.principal - loan.principal_prepaid
        if abs(scheduled.amount - expected.amount) > tolerance:
            violations.append(
                f"Scheduled principal {scheduled.amount} differs from expected {expected.amount}"
            )

        numbers = [r.installment_number for r in rows]
        if numbers != list(range(1, len(rows) + 1)):
            violations.append("Installment numbers are not contiguous from 1")

        for row in rows:
            if row.due_principal.is_negative() or row.due_interest.is_negative():
                violations.append(f"Installment {row.installment_number} has a negative amount due")
            if row.paid_total > row.due_total:
                violations.append(f"Installment {row.installment_number} paid beyond its due total")
            if row.due_principal + row.due_interest != row.due_total:
                violations.append(f"Installment {row.installment_number} due total does not add up")

        return {'loan_id': loan_id, 'valid': not violations, 'violations': violations}

    def close(self) -> None:
        self.storage.close()
