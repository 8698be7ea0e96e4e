"""
Arrears Tracker Module

Daily sweep recomputing days overdue and status of every open installment.
Days overdue are derived from the due date on each run rather than
incremented, so running the sweep twice, or after a missed day, gives the
same ledger as running it exactly once.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .audit import AuditTrail, AuditEventType
from .batch import BatchReport, run_per_loan
from .classification import CATEGORY_LOAN_STATUS, classify
from .events import DomainEvent, EventPublisherMixin
from .exceptions import ValidationError
from .ledger import (
    Installment, InstallmentStatus, LedgerRepository, OPEN_STATUSES, ARREARS_OLDEST_UNPAID,
    derive_status, days_between, loan_days_in_arrears,
)
from .loans import LoanStatus
from .logging_config import get_logger, log_action


def sweep_installment(installment: Installment, as_of: date) -> Installment:
    """Recompute days_overdue and status of one row as of a date"""
    if installment.superseded or installment.status not in OPEN_STATUSES:
        return installment
    days_overdue = days_between(as_of, installment.due_date) if as_of > installment.due_date else 0
    status = derive_status(installment.paid_total, installment.due_total, installment.due_date, as_of)
    if status == InstallmentStatus.PAID:
        return replace(installment, days_overdue=0, status=status, is_paid=True)
    return replace(installment, days_overdue=days_overdue, status=status)


@dataclass
class LoanSweepResult:
    """Sweep outcome for one loan"""
    loan_id: str
    as_of: date
    installments_updated: int = 0
    newly_overdue: List[int] = field(default_factory=list)
    days_in_arrears: int = 0
    loan_status: Optional[LoanStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'as_of': self.as_of.isoformat(),
            'installments_updated': self.installments_updated,
            'newly_overdue': list(self.newly_overdue),
            'days_in_arrears': self.days_in_arrears,
            'loan_status': self.loan_status.value if self.loan_status else None,
        }


class ArrearsTracker(EventPublisherMixin):
    """
    Delinquency tracking over installment ledgers
    """

    def __init__(
        self,
        repository: LedgerRepository,
        audit_trail: AuditTrail,
        arrears_reference: str = ARREARS_OLDEST_UNPAID,
        batch_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.storage = repository.storage
        self.audit_trail = audit_trail
        self.arrears_reference = arrears_reference
        self.batch_size = batch_size
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("repayment_engine.arrears")

    def sweep_loan(self, loan_id: str, as_of: Optional[date] = None) -> LoanSweepResult:
        """
        Bring one loan's delinquency fields up to date

        Only rows whose days_overdue or status actually change are written,
        so a repeated sweep for the same date writes nothing.
        """
        as_of = as_of or self.clock().date()
        result = LoanSweepResult(loan_id=loan_id, as_of=as_of)

        with self.storage.atomic():
            loan = self.repository.get_loan(loan_id)
            installments = self.repository.get_installments(loan_id)

            current: List[Installment] = []
            for installment in installments:
                swept = sweep_installment(installment, as_of)
                if (swept.days_overdue, swept.status, swept.is_paid) != (installment.days_overdue, installment.status, installment.is_paid):
                    swept = self.repository.update_installment(swept)
                    result.installments_updated += 1
                    if (installment.status == InstallmentStatus.PENDING
                            and swept.status == InstallmentStatus.OVERDUE):
                        result.newly_overdue.append(swept.installment_number)
                current.append(swept)

            result.days_in_arrears = loan_days_in_arrears(current, as_of, self.arrears_reference)
            previous = (loan.days_in_arrears, loan.status)
            if not loan.is_closed:
                if not any(i.status in OPEN_STATUSES for i in current):
                    loan.status = LoanStatus.CLOSED
                else:
                    loan.status = CATEGORY_LOAN_STATUS[classify(result.days_in_arrears)]
            loan.days_in_arrears = result.days_in_arrears
            result.loan_status = loan.status

            if result.installments_updated or (loan.days_in_arrears, loan.status) != previous:
                self.repository.save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.ARREARS_SWEEP,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata=result.to_dict(),
                    actor="arrears_sweep"
                )

        for number in result.newly_overdue:
            self.publish_event(DomainEvent.INSTALLMENT_OVERDUE, "installment", f"{loan_id}:{number}", {
                "loan_id": loan_id,
                "installment_number": number,
                "as_of": as_of.isoformat(),
            })
        if result.installments_updated:
            log_action(
                self.logger, "debug",
                f"Swept {result.installments_updated} installments, {result.days_in_arrears} days in arrears",
                loan_id=loan_id,
                action="arrears_sweep"
            )
        return result

    def run_sweep(self, as_of: Optional[date] = None,
                  loan_ids: Optional[Iterable[str]] = None) -> BatchReport:
        """
        Sweep every open loan, one transaction per loan

        Args:
            as_of: Business date of the sweep (defaults to today)
            loan_ids: Restrict the sweep to these loans

        Returns:
            BatchReport of LoanSweepResult entries and per-loan failures
        """
        as_of = as_of or self.clock().date()
        if loan_ids is None:
            loan_ids = self.repository.list_loan_ids(include_closed=False)
        report = run_per_loan(
            job="arrears_sweep",
            loan_ids=loan_ids,
            as_of=as_of,
            unit_of_work=lambda loan_id: self.sweep_loan(loan_id, as_of),
            storage=self.storage,
            audit_trail=self.audit_trail,
            logger=self.logger,
            batch_size=self.batch_size
        )
        self.publish_event(DomainEvent.ARREARS_SWEEP_COMPLETED, "batch", f"arrears_sweep:{as_of.isoformat()}", {
            "as_of": as_of.isoformat(),
            "loans_processed": report.loans_processed,
            "loans_failed": report.loans_failed,
            "failed_loan_ids": report.failed_loan_ids(),
        })
        return report

    def write_off_installments(self, loan_id: str, reason: Optional[str] = None,
                               as_of: Optional[date] = None) -> List[Installment]:
        """
        Move every open row of a loan to WRITTEN_OFF and the loan with it

        Written-off rows are terminal: payments and sweeps skip them.

        Raises:
            LoanNotFoundError: Unknown loan
            ValidationError: Nothing left to write off
        """
        as_of = as_of or self.clock().date()
        with self.storage.atomic():
            loan = self.repository.get_loan(loan_id)
            open_rows = [i for i in self.repository.get_installments(loan_id) if i.status in OPEN_STATUSES]
            if not open_rows:
                raise ValidationError(f"Loan {loan_id} has no open installments to write off", loan_id=loan_id)

            written_off = [
                self.repository.update_installment(replace(i, status=InstallmentStatus.WRITTEN_OFF))
                for i in open_rows
            ]
            loan.status = LoanStatus.WRITTEN_OFF
            self.repository.save_loan(loan)

            principal = sum((i.outstanding_principal.amount for i in written_off), Decimal('0'))
            interest = sum((i.outstanding_interest.amount for i in written_off), Decimal('0'))
            self.audit_trail.log_event(
                event_type=AuditEventType.INSTALLMENTS_WRITTEN_OFF,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "as_of": as_of,
                    "installments": [i.installment_number for i in written_off],
                    "principal_written_off": principal,
                    "interest_written_off": interest,
                    "reason": reason,
                }
            )

        log_action(
            self.logger, "warning",
            f"Wrote off {len(written_off)} installments",
            loan_id=loan_id,
            action="installments_written_off",
            extra={"principal": str(principal), "interest": str(interest), "reason": reason}
        )
        for installment in written_off:
            self.publish_event(DomainEvent.INSTALLMENT_WRITTEN_OFF, "installment", installment.key, {
                "loan_id": loan_id,
                "installment_number": installment.installment_number,
                "outstanding_principal": str(installment.outstanding_principal.amount),
            })
        return written_off
