"""
Loan Module

The loan aggregate as seen by the repayment engine: commercial terms,
derived schedule parameters, and the delinquency/accrual fields the engine
maintains on the loan. Loans are created by the surrounding application;
the engine only references and annotates them.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Dict, Optional, Any
from enum import Enum
import calendar
import uuid

from .currency import Money, Currency, level_share
from .exceptions import ValidationError
from .storage import StorageRecord


class InterestMethod(Enum):
    """How interest is computed over the term"""
    FLAT = "flat"                          # Interest on the original principal
    REDUCING_BALANCE = "reducing_balance"  # Interest on the outstanding balance (annuity)


class RepaymentFrequency(Enum):
    """Repayment frequency options"""
    DAILY = "daily"                  # 365 payments per year
    WEEKLY = "weekly"                # 52 payments per year
    BI_WEEKLY = "bi_weekly"          # 26 payments per year
    MONTHLY = "monthly"              # 12 payments per year
    QUARTERLY = "quarterly"          # 4 payments per year
    SEMI_ANNUALLY = "semi_annually"  # 2 payments per year
    ANNUALLY = "annually"            # 1 payment per year

    @property
    def periods_per_year(self) -> int:
        return _PERIODS_PER_YEAR[self]


_PERIODS_PER_YEAR = {
    RepaymentFrequency.DAILY: 365,
    RepaymentFrequency.WEEKLY: 52,
    RepaymentFrequency.BI_WEEKLY: 26,
    RepaymentFrequency.MONTHLY: 12,
    RepaymentFrequency.QUARTERLY: 4,
    RepaymentFrequency.SEMI_ANNUALLY: 2,
    RepaymentFrequency.ANNUALLY: 1,
}

# Calendar step per period: (days, months)
_PERIOD_STEP = {
    RepaymentFrequency.DAILY: (1, 0),
    RepaymentFrequency.WEEKLY: (7, 0),
    RepaymentFrequency.BI_WEEKLY: (14, 0),
    RepaymentFrequency.MONTHLY: (0, 1),
    RepaymentFrequency.QUARTERLY: (0, 3),
    RepaymentFrequency.SEMI_ANNUALLY: (0, 6),
    RepaymentFrequency.ANNUALLY: (0, 12),
}


class GraceMode(Enum):
    """Treatment of the grace periods at the start of the term"""
    DEFERRED = "deferred"            # No rows during grace; first due date shifted
    INTEREST_ONLY = "interest_only"  # Grace rows carry interest, no principal


class LoanStatus(Enum):
    """Loan states maintained by the engine"""
    DISBURSED = "disbursed"
    PERFORMING = "performing"
    WATCH = "watch"
    SUBSTANDARD = "substandard"
    DOUBTFUL = "doubtful"
    LOSS = "loss"
    WRITTEN_OFF = "written_off"
    CLOSED = "closed"


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_periods(start_date: date, frequency: RepaymentFrequency, periods: int) -> date:
    """
    Step `periods` repayment periods forward from start_date.

    Always computed from the anchor date, so month-end anchors do not drift
    (Jan 31 -> Feb 28 -> Mar 31, not Mar 28).
    """
    days, months = _PERIOD_STEP[frequency]
    if months:
        return add_months(start_date, months * periods)
    return start_date + timedelta(days=days * periods)


@dataclass
class LoanTerms:
    """
    Commercial terms of a loan.

    term_periods counts every period of the term including grace periods.
    """
    principal: Money
    annual_interest_rate: Decimal       # e.g. Decimal('0.12') for 12% p.a.
    term_periods: int
    frequency: RepaymentFrequency
    interest_method: InterestMethod
    disbursement_date: date
    grace_periods: int = 0
    grace_mode: GraceMode = GraceMode.DEFERRED

    def __post_init__(self):
        if not isinstance(self.annual_interest_rate, Decimal):
            self.annual_interest_rate = Decimal(str(self.annual_interest_rate))
        self.validate()

    def validate(self) -> None:
        """
        Raises:
            ValidationError: If the terms cannot produce a schedule
        """
        if not self.principal.is_positive():
            raise ValidationError("Principal must be positive")
        if self.annual_interest_rate < Decimal('0'):
            raise ValidationError("Interest rate cannot be negative")
        if self.grace_periods < 0:
            raise ValidationError("Grace period cannot be negative")
        if self.term_periods <= self.grace_periods:
            raise ValidationError(
                f"Term ({self.term_periods}) must exceed grace period ({self.grace_periods})"
            )

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def periods_per_year(self) -> int:
        return self.frequency.periods_per_year

    @property
    def periodic_rate(self) -> Decimal:
        return self.annual_interest_rate / Decimal(self.periods_per_year)

    @property
    def term_years(self) -> Decimal:
        return Decimal(self.term_periods) / Decimal(self.periods_per_year)

    @property
    def amortizing_periods(self) -> int:
        """Periods in which principal is repaid"""
        return self.term_periods - self.grace_periods

    @property
    def total_installments(self) -> int:
        """Number of schedule rows"""
        if self.grace_mode == GraceMode.INTEREST_ONLY:
            return self.term_periods
        return self.amortizing_periods

    @property
    def first_due_date(self) -> date:
        """Disbursement date + grace periods (deferred only) + one period"""
        offset = self.grace_periods if self.grace_mode == GraceMode.DEFERRED else 0
        return add_periods(self.disbursement_date, self.frequency, offset + 1)

    @property
    def maturity_date(self) -> date:
        return add_periods(self.disbursement_date, self.frequency, self.term_periods)

    def due_date_for(self, installment_number: int) -> date:
        """Due date of the 1-based installment_number"""
        offset = self.grace_periods if self.grace_mode == GraceMode.DEFERRED else 0
        return add_periods(self.disbursement_date, self.frequency, offset + installment_number)

    @property
    def total_interest(self) -> Money:
        """Total contractual interest over the term"""
        if self.interest_method == InterestMethod.FLAT:
            return self.principal * (self.annual_interest_rate * self.term_years)
        payment = self.installment_amount
        total = payment * Decimal(self.amortizing_periods) - self.principal
        if self.grace_mode == GraceMode.INTEREST_ONLY:
            total = total + self.principal * self.periodic_rate * Decimal(self.grace_periods)
        return total

    @property
    def installment_amount(self) -> Money:
        """Level amount due in each amortizing period"""
        if self.interest_method == InterestMethod.FLAT:
            total_interest = self.principal * (self.annual_interest_rate * self.term_years)
            return (level_share(self.principal, self.amortizing_periods)
                    + level_share(total_interest, self.total_installments))
        return annuity_payment(self.principal, self.periodic_rate, self.amortizing_periods)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal_amount': str(self.principal.amount),
            'principal_currency': self.principal.currency.code,
            'annual_interest_rate': str(self.annual_interest_rate),
            'term_periods': self.term_periods,
            'frequency': self.frequency.value,
            'interest_method': self.interest_method.value,
            'disbursement_date': self.disbursement_date.isoformat(),
            'grace_periods': self.grace_periods,
            'grace_mode': self.grace_mode.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            principal=Money(Decimal(data['principal_amount']), Currency[data['principal_currency']]),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            term_periods=data['term_periods'],
            frequency=RepaymentFrequency(data['frequency']),
            interest_method=InterestMethod(data['interest_method']),
            disbursement_date=date.fromisoformat(data['disbursement_date']),
            grace_periods=data.get('grace_periods', 0),
            grace_mode=GraceMode(data.get('grace_mode', GraceMode.DEFERRED.value)),
        )


def annuity_payment(principal: Money, periodic_rate: Decimal, periods: int) -> Money:
    """
    Level payment retiring principal over periods: P * r(1+r)^n / ((1+r)^n - 1)
    """
    if periods <= 0:
        raise ValidationError("Number of periods must be positive")
    if periodic_rate == Decimal('0'):
        return principal / Decimal(periods)
    factor = (Decimal('1') + periodic_rate) ** periods
    return principal * (periodic_rate * factor / (factor - Decimal('1')))


@dataclass
class Loan(StorageRecord):
    """Loan reference with the fields the engine maintains"""
    terms: LoanTerms
    status: LoanStatus = LoanStatus.DISBURSED
    borrower_reference: Optional[str] = None
    collateral_value: Optional[Money] = None  # Effective value after haircut
    accrued_interest: Optional[Money] = None
    accrued_as_of: Optional[date] = None
    principal_prepaid: Optional[Money] = None  # Principal retired outside the schedule
    days_in_arrears: int = 0
    classification: Optional[str] = None

    def __post_init__(self):
        zero = Money.zero(self.terms.currency)
        if self.collateral_value is None:
            self.collateral_value = zero
        if self.accrued_interest is None:
            self.accrued_interest = zero
        if self.principal_prepaid is None:
            self.principal_prepaid = zero

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def principal(self) -> Money:
        return self.terms.principal

    @property
    def is_closed(self) -> bool:
        return self.status in (LoanStatus.CLOSED, LoanStatus.WRITTEN_OFF)

    @classmethod
    def create(cls, terms: LoanTerms, loan_id: Optional[str] = None,
               borrower_reference: Optional[str] = None,
               collateral_value: Optional[Money] = None) -> 'Loan':
        now = datetime.now(timezone.utc)
        if collateral_value is not None and collateral_value.currency != terms.currency:
            raise ValidationError("Collateral currency must match loan currency")
        return cls(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            terms=terms,
            borrower_reference=borrower_reference,
            collateral_value=collateral_value,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'terms': self.terms.to_dict(),
            'status': self.status.value,
            'borrower_reference': self.borrower_reference,
            'collateral_value': str(self.collateral_value.amount),
            'accrued_interest': str(self.accrued_interest.amount),
            'accrued_as_of': self.accrued_as_of.isoformat() if self.accrued_as_of else None,
            'principal_prepaid': str(self.principal_prepaid.amount),
            'days_in_arrears': self.days_in_arrears,
            'classification': self.classification,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        terms = LoanTerms.from_dict(data['terms'])
        currency = terms.currency
        accrued_as_of = data.get('accrued_as_of')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            terms=terms,
            status=LoanStatus(data['status']),
            borrower_reference=data.get('borrower_reference'),
            collateral_value=Money(Decimal(data.get('collateral_value', '0')), currency),
            accrued_interest=Money(Decimal(data.get('accrued_interest', '0')), currency),
            accrued_as_of=date.fromisoformat(accrued_as_of) if accrued_as_of else None,
            principal_prepaid=Money(Decimal(data.get('principal_prepaid', '0')), currency),
            days_in_arrears=data.get('days_in_arrears', 0),
            classification=data.get('classification'),
        )
