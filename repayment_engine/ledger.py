"""
Installment Ledger Module

The installment is a plain data record; every behavior that changes it lives
in the service modules (payments, arrears, recalculation). LedgerRepository
is the only code that reads or writes ledger rows in storage.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Money, Currency
from .exceptions import LoanNotFoundError, ValidationError, ConcurrentModificationError
from .loans import Loan, LoanStatus
from .storage import StorageInterface


class InstallmentStatus(Enum):
    """Derived installment status"""
    PENDING = "pending"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    PAID = "paid"
    WRITTEN_OFF = "written_off"


OPEN_STATUSES = (InstallmentStatus.PENDING, InstallmentStatus.PARTIAL, InstallmentStatus.OVERDUE)


def derive_status(paid_total: Money, due_total: Money, due_date: date, today: date,
                  written_off: bool = False) -> InstallmentStatus:
    """
    Status as a pure function of the payment position and the calendar.

    Order matters: a fully paid row is PAID, any payment makes it PARTIAL
    (even past due), an untouched past-due row is OVERDUE.
    """
    if written_off:
        return InstallmentStatus.WRITTEN_OFF
    if paid_total >= due_total:
        return InstallmentStatus.PAID
    if paid_total.is_positive():
        return InstallmentStatus.PARTIAL
    if today > due_date:
        return InstallmentStatus.OVERDUE
    return InstallmentStatus.PENDING


def days_between(later: date, earlier: date) -> int:
    """Whole days from earlier to later, floored at zero"""
    return max(0, (later - earlier).days)


@dataclass
class Installment:
    """One scheduled due-date row of a loan's ledger"""
    loan_id: str
    installment_number: int
    due_date: date
    due_principal: Money
    due_interest: Money
    due_total: Money
    paid_principal: Money
    paid_interest: Money
    paid_total: Money
    outstanding_principal: Money
    outstanding_interest: Money
    penalty_amount: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    actual_payment_date: Optional[date] = None
    days_overdue: int = 0
    delayed_days: int = 0
    last_payment_attempt: Optional[datetime] = None
    payment_attempt_count: int = 0
    version: int = 0
    revision: int = 1  # Schedule revision that produced this row
    superseded: bool = False
    superseded_at: Optional[datetime] = None

    @property
    def currency(self) -> Currency:
        return self.due_total.currency

    @property
    def key(self) -> str:
        return installment_key(self.loan_id, self.installment_number)

    @classmethod
    def scheduled(cls, loan_id: str, installment_number: int, due_date: date,
                  due_principal: Money, due_interest: Money, revision: int = 1) -> 'Installment':
        """
        New row with outstanding amounts equal to the amounts due.

        A row with nothing due (zero-rate interest-only grace) is settled
        from the start, so payments and sweeps never target it.
        """
        zero = Money.zero(due_principal.currency)
        due_total = due_principal + due_interest
        settled = due_total.is_zero()
        return cls(
            loan_id=loan_id,
            installment_number=installment_number,
            due_date=due_date,
            due_principal=due_principal,
            due_interest=due_interest,
            due_total=due_total,
            paid_principal=zero,
            paid_interest=zero,
            paid_total=zero,
            outstanding_principal=due_principal,
            outstanding_interest=due_interest,
            penalty_amount=zero,
            status=InstallmentStatus.PAID if settled else InstallmentStatus.PENDING,
            is_paid=settled,
            revision=revision,
        )


_MONEY_FIELDS = (
    'due_principal', 'due_interest', 'due_total',
    'paid_principal', 'paid_interest', 'paid_total',
    'outstanding_principal', 'outstanding_interest', 'penalty_amount',
)


def installment_key(loan_id: str, installment_number: int) -> str:
    return f"{loan_id}:{installment_number}"


def installment_to_dict(installment: Installment) -> Dict[str, Any]:
    result = {
        'loan_id': installment.loan_id,
        'installment_number': installment.installment_number,
        'due_date': installment.due_date.isoformat(),
        'currency': installment.currency.code,
        'status': installment.status.value,
        'is_paid': installment.is_paid,
        'paid_at': installment.paid_at.isoformat() if installment.paid_at else None,
        'actual_payment_date': installment.actual_payment_date.isoformat() if installment.actual_payment_date else None,
        'days_overdue': installment.days_overdue,
        'delayed_days': installment.delayed_days,
        'last_payment_attempt': installment.last_payment_attempt.isoformat() if installment.last_payment_attempt else None,
        'payment_attempt_count': installment.payment_attempt_count,
        'version': installment.version,
        'revision': installment.revision,
        'superseded': installment.superseded,
        'superseded_at': installment.superseded_at.isoformat() if installment.superseded_at else None,
    }
    for name in _MONEY_FIELDS:
        result[name] = str(getattr(installment, name).amount)
    return result


def installment_from_dict(data: Dict[str, Any]) -> Installment:
    currency = Currency[data['currency']]

    def get_datetime(name: str) -> Optional[datetime]:
        value = data.get(name)
        return datetime.fromisoformat(value) if value else None

    actual_payment_date = data.get('actual_payment_date')
    money = {name: Money(Decimal(data[name]), currency) for name in _MONEY_FIELDS}
    return Installment(
        loan_id=data['loan_id'],
        installment_number=data['installment_number'],
        due_date=date.fromisoformat(data['due_date']),
        status=InstallmentStatus(data['status']),
        is_paid=data['is_paid'],
        paid_at=get_datetime('paid_at'),
        actual_payment_date=date.fromisoformat(actual_payment_date) if actual_payment_date else None,
        days_overdue=data.get('days_overdue', 0),
        delayed_days=data.get('delayed_days', 0),
        last_payment_attempt=get_datetime('last_payment_attempt'),
        payment_attempt_count=data.get('payment_attempt_count', 0),
        version=data.get('version', 0),
        revision=data.get('revision', 1),
        superseded=data.get('superseded', False),
        superseded_at=get_datetime('superseded_at'),
        **money
    )


class LedgerRepository:
    """
    Persistence for loans and their installment ledgers.

    Active rows live under "{loan_id}:{number}". Superseded rows are archived
    under "{loan_id}:{number}:r{revision}" so a regenerated row can take the
    active key while the history stays queryable.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.installments_table = "installments"

    # Loans

    def save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def find_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def get_loan(self, loan_id: str) -> Loan:
        """
        Raises:
            LoanNotFoundError: If the loan does not exist
        """
        loan = self.find_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def list_loan_ids(self, include_closed: bool = True) -> List[str]:
        loans = self.storage.load_all(self.loans_table)
        if not include_closed:
            loans = [d for d in loans if d['status'] not in (LoanStatus.CLOSED.value, LoanStatus.WRITTEN_OFF.value)]
        return sorted(data['id'] for data in loans)

    # Installments

    def get_installments(self, loan_id: str, include_superseded: bool = False) -> List[Installment]:
        """Ledger rows in installment order (active rows only by default)"""
        filters: Dict[str, Any] = {'loan_id': loan_id}
        if not include_superseded:
            filters['superseded'] = False
        rows = [installment_from_dict(d) for d in self.storage.find(self.installments_table, filters)]
        rows.sort(key=lambda i: (i.installment_number, i.revision))
        return rows

    def get_installment(self, loan_id: str, installment_number: int) -> Installment:
        """
        Raises:
            ValidationError: If the loan has no active row with that number
        """
        data = self.storage.load(self.installments_table, installment_key(loan_id, installment_number))
        if data is None:
            raise ValidationError(
                f"Installment {installment_number} not found for loan {loan_id}", loan_id=loan_id
            )
        return installment_from_dict(data)

    def has_schedule(self, loan_id: str) -> bool:
        return bool(self.storage.find(self.installments_table, {'loan_id': loan_id, 'superseded': False}))

    def insert_installments(self, installments: List[Installment]) -> None:
        """Write new rows; refuses to overwrite an existing active row"""
        for installment in installments:
            if self.storage.exists(self.installments_table, installment.key):
                raise ValidationError(
                    f"Installment {installment.installment_number} already exists for loan {installment.loan_id}",
                    loan_id=installment.loan_id
                )
            self.storage.save(self.installments_table, installment.key, installment_to_dict(installment))

    def update_installment(self, installment: Installment) -> Installment:
        """
        Single-writer update: succeeds only if nobody wrote the row since it was read.

        Returns:
            The stored row with its version incremented

        Raises:
            ConcurrentModificationError: If the stored version moved on
        """
        updated = replace(installment, version=installment.version + 1)
        written = self.storage.compare_and_swap(
            self.installments_table,
            installment.key,
            installment_to_dict(updated),
            'version',
            installment.version
        )
        if not written:
            raise ConcurrentModificationError(
                installment.loan_id, installment.installment_number, installment.version
            )
        return updated

    def supersede_installment(self, installment: Installment, when: datetime) -> Installment:
        """Archive an active row and free its key"""
        archived = replace(installment, superseded=True, superseded_at=when, version=installment.version + 1)
        archive_key = f"{installment.key}:r{installment.revision}"
        self.storage.save(self.installments_table, archive_key, installment_to_dict(archived))
        self.storage.delete(self.installments_table, installment.key)
        return archived


ARREARS_OLDEST_UNPAID = "oldest_unpaid"
ARREARS_MAXIMUM = "maximum"


def loan_days_in_arrears(installments: List[Installment], as_of: date,
                         reference: str = ARREARS_OLDEST_UNPAID) -> int:
    """
    Loan-level delinquency as of a date, computed from due dates.

    oldest_unpaid takes the earliest-due open row; maximum takes the largest
    value over open rows. Both agree unless rows were paid out of order.
    """
    if reference not in (ARREARS_OLDEST_UNPAID, ARREARS_MAXIMUM):
        raise ValueError(f"Unknown arrears reference: {reference}")
    late = [
        days_between(as_of, i.due_date)
        for i in sorted(installments, key=lambda i: i.due_date)
        if i.status in OPEN_STATUSES and not i.superseded and as_of > i.due_date
    ]
    if not late:
        return 0
    if reference == ARREARS_OLDEST_UNPAID:
        return late[0]
    return max(late)
