"""
Ledger Reporting Module

Read-only queries over a loan's ledger: what is due, what is overdue, when
the next payment falls, and schedule totals. Nothing here writes to storage.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .currency import Money, money_sum
from .ledger import Installment, InstallmentStatus, LedgerRepository, OPEN_STATUSES, installment_to_dict


@dataclass
class DueAmounts:
    """Open amounts due on or before a date, with the overdue part split out"""
    as_of: date
    due_principal: Money
    due_interest: Money
    overdue_principal: Money
    overdue_interest: Money
    installments_due: int = 0
    installments_overdue: int = 0

    @property
    def due_total(self) -> Money:
        return self.due_principal + self.due_interest

    @property
    def overdue_total(self) -> Money:
        return self.overdue_principal + self.overdue_interest

    def to_dict(self) -> Dict[str, Any]:
        return {
            'as_of': self.as_of.isoformat(),
            'due_principal': str(self.due_principal.amount),
            'due_interest': str(self.due_interest.amount),
            'due_total': str(self.due_total.amount),
            'overdue_principal': str(self.overdue_principal.amount),
            'overdue_interest': str(self.overdue_interest.amount),
            'overdue_total': str(self.overdue_total.amount),
            'installments_due': self.installments_due,
            'installments_overdue': self.installments_overdue,
        }


@dataclass
class OverdueSummary:
    """Overdue rows of a loan as of a date"""
    as_of: date
    installments: List[Installment] = field(default_factory=list)
    total_overdue: Optional[Money] = None
    average_days_overdue: Decimal = Decimal('0')

    @property
    def count(self) -> int:
        return len(self.installments)


class LedgerReporter:
    """Read-side queries for one loan's ledger"""

    def __init__(self, repository: LedgerRepository):
        self.repository = repository

    def _open_rows(self, loan_id: str) -> List[Installment]:
        self.repository.get_loan(loan_id)
        return [i for i in self.repository.get_installments(loan_id) if i.status in OPEN_STATUSES]

    def due_amounts(self, loan_id: str, as_of: date) -> DueAmounts:
        """Outstanding principal and interest of open rows due on or before as_of"""
        loan = self.repository.get_loan(loan_id)
        zero = Money.zero(loan.currency)
        result = DueAmounts(
            as_of=as_of,
            due_principal=zero,
            due_interest=zero,
            overdue_principal=zero,
            overdue_interest=zero,
        )
        for row in self._open_rows(loan_id):
            if row.due_date > as_of:
                continue
            result.due_principal = result.due_principal + row.outstanding_principal
            result.due_interest = result.due_interest + row.outstanding_interest
            result.installments_due += 1
            if row.due_date < as_of:
                result.overdue_principal = result.overdue_principal + row.outstanding_principal
                result.overdue_interest = result.overdue_interest + row.outstanding_interest
                result.installments_overdue += 1
        return result

    def overdue_installments(self, loan_id: str, as_of: date) -> OverdueSummary:
        """Open rows past their due date, with days overdue as of the date"""
        loan = self.repository.get_loan(loan_id)
        rows = [r for r in self._open_rows(loan_id) if r.due_date < as_of]
        summary = OverdueSummary(
            as_of=as_of,
            installments=rows,
            total_overdue=money_sum(
                (r.outstanding_principal + r.outstanding_interest for r in rows), loan.currency
            ),
        )
        if rows:
            days = sum((as_of - r.due_date).days for r in rows)
            summary.average_days_overdue = (Decimal(days) / Decimal(len(rows))).quantize(Decimal('0.01'))
        return summary

    def next_due_date(self, loan_id: str, as_of: date) -> Optional[date]:
        """Due date of the first open row falling on or after as_of"""
        upcoming = [r.due_date for r in self._open_rows(loan_id) if r.due_date >= as_of]
        return min(upcoming) if upcoming else None

    def schedule_summary(self, loan_id: str) -> Dict[str, Any]:
        """Totals scheduled, paid and remaining over the active ledger"""
        loan = self.repository.get_loan(loan_id)
        rows = self.repository.get_installments(loan_id)
        currency = loan.currency

        def total(attribute: str, statuses=None) -> str:
            values = (getattr(r, attribute) for r in rows if statuses is None or r.status in statuses)
            return str(money_sum(values, currency).amount)

        status_counts = {status.value: 0 for status in InstallmentStatus}
        for row in rows:
            status_counts[row.status.value] += 1

        return {
            'loan_id': loan_id,
            'currency': currency.code,
            'installments': len(rows),
            'status_counts': status_counts,
            'scheduled_principal': total('due_principal'),
            'scheduled_interest': total('due_interest'),
            'scheduled_total': total('due_total'),
            'paid_principal': total('paid_principal'),
            'paid_interest': total('paid_interest'),
            'paid_total': total('paid_total'),
            'remaining_principal': total('outstanding_principal', OPEN_STATUSES),
            'remaining_interest': total('outstanding_interest', OPEN_STATUSES),
            'principal_prepaid': str(loan.principal_prepaid.amount),
            'first_due_date': rows[0].due_date.isoformat() if rows else None,
            'last_due_date': rows[-1].due_date.isoformat() if rows else None,
        }

    def ledger_rows(self, loan_id: str, include_superseded: bool = False) -> List[Dict[str, Any]]:
        """Serialized ledger rows for display or export"""
        self.repository.get_loan(loan_id)
        return [installment_to_dict(i) for i in self.repository.get_installments(loan_id, include_superseded)]
