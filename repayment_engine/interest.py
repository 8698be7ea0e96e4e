"""
Interest Accrual Module

Accrued interest to date on a loan: the unpaid interest of installments that
have fallen due plus the elapsed share of the current period's interest.
The figure is recomputed from the ledger every run, never incremented, so a
repeated or missed daily job converges on the same value.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .currency import Money
from .audit import AuditTrail, AuditEventType
from .batch import BatchReport, run_per_loan
from .events import DomainEvent, EventPublisherMixin
from .ledger import Installment, LedgerRepository, OPEN_STATUSES
from .loans import LoanTerms
from .logging_config import get_logger, log_action


def accrued_interest(terms: LoanTerms, installments: List[Installment], as_of: date) -> Money:
    """
    Interest earned but not yet collected as of a date

    Args:
        terms: Loan terms (period boundaries)
        installments: Active ledger rows of the loan
        as_of: Accrual date

    Returns:
        Unpaid interest of rows due on or before as_of, plus the pro-rated
        interest of the next row not yet due
    """
    zero = Money.zero(terms.currency)
    rows = sorted((i for i in installments if not i.superseded), key=lambda i: i.installment_number)

    total = zero
    period_start = terms.due_date_for(0)
    for row in rows:
        if row.due_date <= as_of:
            if row.status in OPEN_STATUSES:
                total = total + row.outstanding_interest
            period_start = row.due_date
            continue

        if row.status in OPEN_STATUSES:
            period_days = (row.due_date - period_start).days
            elapsed = min(max((as_of - period_start).days, 0), period_days)
            if period_days > 0 and elapsed > 0:
                earned = row.due_interest * (Decimal(elapsed) / Decimal(period_days))
                uncollected = earned - row.paid_interest
                if uncollected.is_positive():
                    total = total + uncollected
        break

    return total


@dataclass
class AccrualResult:
    """Accrual outcome for one loan"""
    loan_id: str
    as_of: date
    accrued_interest: Money
    previous_accrued_interest: Money

    @property
    def changed(self) -> bool:
        return self.accrued_interest != self.previous_accrued_interest

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'as_of': self.as_of.isoformat(),
            'accrued_interest': str(self.accrued_interest.amount),
            'previous_accrued_interest': str(self.previous_accrued_interest.amount),
        }


class InterestAccrualEngine(EventPublisherMixin):
    """Maintains accrued_interest / accrued_as_of on loans"""

    def __init__(
        self,
        repository: LedgerRepository,
        audit_trail: AuditTrail,
        batch_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.storage = repository.storage
        self.audit_trail = audit_trail
        self.batch_size = batch_size
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("repayment_engine.interest")

    def accrue_loan(self, loan_id: str, as_of: Optional[date] = None) -> AccrualResult:
        """Recompute and store accrued interest for one loan"""
        as_of = as_of or self.clock().date()
        with self.storage.atomic():
            loan = self.repository.get_loan(loan_id)
            installments = self.repository.get_installments(loan_id)
            result = AccrualResult(
                loan_id=loan_id,
                as_of=as_of,
                accrued_interest=accrued_interest(loan.terms, installments, as_of),
                previous_accrued_interest=loan.accrued_interest
            )

            loan.accrued_interest = result.accrued_interest
            loan.accrued_as_of = as_of
            self.repository.save_loan(loan)
            if result.changed:
                self.audit_trail.log_event(
                    event_type=AuditEventType.INTEREST_ACCRUED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={
                        "as_of": as_of,
                        "accrued_interest": result.accrued_interest.amount,
                        "previous_accrued_interest": result.previous_accrued_interest.amount,
                    }
                )

        if result.changed:
            log_action(
                self.logger, "debug",
                f"Accrued interest {result.accrued_interest.amount} as of {as_of.isoformat()}",
                loan_id=loan_id,
                action="interest_accrued"
            )
            self.publish_event(DomainEvent.INTEREST_ACCRUED, "loan", loan_id, result.to_dict())
        return result

    def run_accrual(self, as_of: Optional[date] = None,
                    loan_ids: Optional[Iterable[str]] = None) -> BatchReport:
        """Accrue every open loan, one transaction per loan"""
        as_of = as_of or self.clock().date()
        if loan_ids is None:
            loan_ids = self.repository.list_loan_ids(include_closed=False)
        return run_per_loan(
            job="interest_accrual",
            loan_ids=loan_ids,
            as_of=as_of,
            unit_of_work=lambda loan_id: self.accrue_loan(loan_id, as_of),
            storage=self.storage,
            audit_trail=self.audit_trail,
            logger=self.logger,
            batch_size=self.batch_size
        )
