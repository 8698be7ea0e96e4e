"""
Loan Classification and Provisioning Module

Maps a loan's delinquency to one of five regulatory tiers and derives the
provision the lender must hold against it:

    provision_required = net_exposure * provision_rate(classify(days_in_arrears))
    net_exposure = max(0, outstanding principal + accrued interest - collateral value)

Every classification is persisted as a LoanClassification record carrying the
previous provision held, so the additional provision of each run is known.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
from enum import Enum
import uuid

from .currency import Money, Currency, money_max, money_sum
from .audit import AuditTrail, AuditEventType
from .batch import BatchReport, run_per_loan
from .events import DomainEvent, EventPublisherMixin
from .exceptions import ValidationError
from .interest import accrued_interest
from .ledger import (
    Installment, InstallmentStatus, LedgerRepository, ARREARS_OLDEST_UNPAID, loan_days_in_arrears,
)
from .loans import Loan, LoanStatus
from .logging_config import get_logger, log_action
from .storage import StorageRecord


class LoanCategory(Enum):
    """Regulatory classification tiers"""
    NORMAL = "normal"
    WATCH = "watch"
    SUBSTANDARD = "substandard"
    DOUBTFUL = "doubtful"
    LOSS = "loss"


# Inclusive upper bound of days in arrears per tier; beyond the last is LOSS
CATEGORY_THRESHOLDS = (
    (30, LoanCategory.NORMAL),
    (90, LoanCategory.WATCH),
    (180, LoanCategory.SUBSTANDARD),
    (365, LoanCategory.DOUBTFUL),
)

CATEGORY_LOAN_STATUS = {
    LoanCategory.NORMAL: LoanStatus.PERFORMING,
    LoanCategory.WATCH: LoanStatus.WATCH,
    LoanCategory.SUBSTANDARD: LoanStatus.SUBSTANDARD,
    LoanCategory.DOUBTFUL: LoanStatus.DOUBTFUL,
    LoanCategory.LOSS: LoanStatus.LOSS,
}

DEFAULT_PROVISIONING_RATES = {
    LoanCategory.NORMAL: Decimal('0.01'),
    LoanCategory.WATCH: Decimal('0.05'),
    LoanCategory.SUBSTANDARD: Decimal('0.25'),
    LoanCategory.DOUBTFUL: Decimal('0.50'),
    LoanCategory.LOSS: Decimal('1.00'),
}


def classify(days_in_arrears: int) -> LoanCategory:
    """Tier for a number of days in arrears"""
    if days_in_arrears < 0:
        raise ValidationError("Days in arrears cannot be negative")
    for upper_bound, category in CATEGORY_THRESHOLDS:
        if days_in_arrears <= upper_bound:
            return category
    return LoanCategory.LOSS


def risk_rating(days_in_arrears: int) -> str:
    """Coarse risk label used in classification reports"""
    if days_in_arrears >= 180:
        return "HIGH"
    if days_in_arrears >= 90:
        return "MEDIUM_HIGH"
    if days_in_arrears >= 30:
        return "MEDIUM"
    if days_in_arrears >= 1:
        return "LOW"
    return "VERY_LOW"


class ProvisioningPolicy:
    """Provision rate per tier, as set by the regulator's policy"""

    def __init__(self, rates: Optional[Mapping[Union[LoanCategory, str], Union[Decimal, str]]] = None):
        if rates is None:
            rates = DEFAULT_PROVISIONING_RATES
        parsed = {}
        for key, value in rates.items():
            category = key if isinstance(key, LoanCategory) else LoanCategory(key)
            rate = value if isinstance(value, Decimal) else Decimal(str(value))
            if rate < Decimal('0') or rate > Decimal('1'):
                raise ValidationError(f"Provisioning rate for {category.value} must be between 0 and 1")
            parsed[category] = rate
        missing = [c.value for c in LoanCategory if c not in parsed]
        if missing:
            raise ValidationError(f"Missing provisioning rates for: {', '.join(missing)}")
        self.rates = parsed

    @classmethod
    def from_config(cls, config) -> 'ProvisioningPolicy':
        return cls(config.provisioning_rates)

    def rate_for(self, category: LoanCategory) -> Decimal:
        return self.rates[category]


@dataclass
class LoanClassification(StorageRecord):
    """Persisted result of classifying one loan"""
    loan_id: str
    as_of: date
    days_in_arrears: int
    category: LoanCategory
    risk_rating: str
    provision_rate: Decimal
    outstanding_principal: Money
    accrued_interest: Money
    collateral_value: Money
    net_exposure: Money
    provision_required: Money
    previous_provisions_held: Money
    additional_provisions: Money

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'as_of': self.as_of.isoformat(),
            'days_in_arrears': self.days_in_arrears,
            'category': self.category.value,
            'risk_rating': self.risk_rating,
            'provision_rate': str(self.provision_rate),
            'currency': self.net_exposure.currency.code,
        }
        for name in _MONEY_FIELDS:
            result[name] = str(getattr(self, name).amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanClassification':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            as_of=date.fromisoformat(data['as_of']),
            days_in_arrears=data['days_in_arrears'],
            category=LoanCategory(data['category']),
            risk_rating=data['risk_rating'],
            provision_rate=Decimal(data['provision_rate']),
            **{name: Money(Decimal(data[name]), currency) for name in _MONEY_FIELDS}
        )


_MONEY_FIELDS = (
    'outstanding_principal', 'accrued_interest', 'collateral_value', 'net_exposure',
    'provision_required', 'previous_provisions_held', 'additional_provisions',
)


@dataclass
class ClassificationSnapshot:
    """Portfolio view produced by a bulk classification run"""
    as_of: date
    currency: Currency
    total_loans: int = 0
    loan_count_by_category: Dict[str, int] = field(default_factory=dict)
    outstanding_by_category: Dict[str, Money] = field(default_factory=dict)
    total_outstanding: Optional[Money] = None
    total_provisions_required: Optional[Money] = None
    total_collateral_value: Optional[Money] = None
    loans_in_arrears: int = 0
    average_days_in_arrears: Decimal = Decimal('0')

    @property
    def par_ratio(self) -> Decimal:
        """Share of outstanding principal in loans past 30 days"""
        if not self.total_outstanding or self.total_outstanding.is_zero():
            return Decimal('0')
        at_risk = money_sum(
            (amount for name, amount in self.outstanding_by_category.items()
             if name != LoanCategory.NORMAL.value),
            self.currency
        )
        return (at_risk.amount / self.total_outstanding.amount).quantize(Decimal('0.0001'))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'as_of': self.as_of.isoformat(),
            'currency': self.currency.code,
            'total_loans': self.total_loans,
            'loan_count_by_category': dict(self.loan_count_by_category),
            'outstanding_by_category': {k: str(v.amount) for k, v in self.outstanding_by_category.items()},
            'total_outstanding': str(self.total_outstanding.amount),
            'total_provisions_required': str(self.total_provisions_required.amount),
            'total_collateral_value': str(self.total_collateral_value.amount),
            'loans_in_arrears': self.loans_in_arrears,
            'average_days_in_arrears': str(self.average_days_in_arrears),
            'par_ratio': str(self.par_ratio),
        }


def build_snapshot(as_of: date, currency: Currency,
                   classifications: Iterable[LoanClassification]) -> ClassificationSnapshot:
    """Aggregate per-loan classifications of one currency"""
    zero = Money.zero(currency)
    snapshot = ClassificationSnapshot(
        as_of=as_of,
        currency=currency,
        loan_count_by_category={c.value: 0 for c in LoanCategory},
        outstanding_by_category={c.value: zero for c in LoanCategory},
        total_outstanding=zero,
        total_provisions_required=zero,
        total_collateral_value=zero,
    )
    arrears_days = []
    for item in classifications:
        if item.outstanding_principal.currency != currency:
            continue
        key = item.category.value
        snapshot.total_loans += 1
        snapshot.loan_count_by_category[key] += 1
        snapshot.outstanding_by_category[key] = snapshot.outstanding_by_category[key] + item.outstanding_principal
        snapshot.total_outstanding = snapshot.total_outstanding + item.outstanding_principal
        snapshot.total_provisions_required = snapshot.total_provisions_required + item.provision_required
        snapshot.total_collateral_value = snapshot.total_collateral_value + item.collateral_value
        if item.days_in_arrears > 0:
            arrears_days.append(item.days_in_arrears)

    snapshot.loans_in_arrears = len(arrears_days)
    if arrears_days:
        snapshot.average_days_in_arrears = (
            Decimal(sum(arrears_days)) / Decimal(len(arrears_days))
        ).quantize(Decimal('0.01'))
    return snapshot


def outstanding_principal(installments: List[Installment], currency: Currency) -> Money:
    """Principal still owed on active rows; written-off rows no longer count"""
    return money_sum(
        (i.outstanding_principal for i in installments
         if not i.superseded and i.status != InstallmentStatus.WRITTEN_OFF),
        currency
    )


class ClassificationEngine(EventPublisherMixin):
    """
    Classifies loans and computes their provisioning requirement
    """

    def __init__(
        self,
        repository: LedgerRepository,
        audit_trail: AuditTrail,
        policy: Optional[ProvisioningPolicy] = None,
        arrears_reference: str = ARREARS_OLDEST_UNPAID,
        batch_size: int = 100,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.storage = repository.storage
        self.audit_trail = audit_trail
        self.policy = policy or ProvisioningPolicy()
        self.arrears_reference = arrears_reference
        self.batch_size = batch_size
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.classifications_table = "loan_classifications"
        self.logger = get_logger("repayment_engine.classification")

    def provision_rate(self, category: LoanCategory) -> Decimal:
        return self.policy.rate_for(category)

    def net_exposure(self, loan: Loan, installments: List[Installment], as_of: date) -> Money:
        """max(0, outstanding principal + accrued interest - collateral value)"""
        exposure = (
            outstanding_principal(installments, loan.currency)
            + accrued_interest(loan.terms, installments, as_of)
            - loan.collateral_value
        )
        return money_max(exposure, Money.zero(loan.currency))

    def provision_required(self, loan_id: str, as_of: Optional[date] = None) -> Money:
        """Provision for a loan without recording a classification"""
        as_of = as_of or self.clock().date()
        loan = self.repository.get_loan(loan_id)
        installments = self.repository.get_installments(loan_id)
        days = loan_days_in_arrears(installments, as_of, self.arrears_reference)
        category = classify(days)
        return self.net_exposure(loan, installments, as_of) * self.provision_rate(category)

    def get_latest_classification(self, loan_id: str) -> Optional[LoanClassification]:
        records = self.storage.find(self.classifications_table, {'loan_id': loan_id})
        if not records:
            return None
        latest = max(records, key=lambda r: (r['as_of'], r['created_at']))
        return LoanClassification.from_dict(latest)

    def get_classification_history(self, loan_id: str) -> List[LoanClassification]:
        records = [LoanClassification.from_dict(r)
                   for r in self.storage.find(self.classifications_table, {'loan_id': loan_id})]
        records.sort(key=lambda r: (r.as_of, r.created_at))
        return records

    def classify_loan(self, loan_id: str, as_of: Optional[date] = None) -> LoanClassification:
        """
        Classify a loan and persist the result

        Args:
            loan_id: Loan to classify
            as_of: Classification date (defaults to today)

        Returns:
            The stored LoanClassification

        Raises:
            LoanNotFoundError: Unknown loan
        """
        as_of = as_of or self.clock().date()
        now = self.clock()

        with self.storage.atomic():
            loan = self.repository.get_loan(loan_id)
            installments = self.repository.get_installments(loan_id)
            days = loan_days_in_arrears(installments, as_of, self.arrears_reference)
            category = classify(days)
            rate = self.provision_rate(category)
            exposure = self.net_exposure(loan, installments, as_of)
            required = exposure * rate

            previous = self.get_latest_classification(loan_id)
            previous_held = previous.provision_required if previous else Money.zero(loan.currency)

            record = LoanClassification(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                as_of=as_of,
                days_in_arrears=days,
                category=category,
                risk_rating=risk_rating(days),
                provision_rate=rate,
                outstanding_principal=outstanding_principal(installments, loan.currency),
                accrued_interest=accrued_interest(loan.terms, installments, as_of),
                collateral_value=loan.collateral_value,
                net_exposure=exposure,
                provision_required=required,
                previous_provisions_held=previous_held,
                additional_provisions=required - previous_held,
            )
            self.storage.save(self.classifications_table, record.id, record.to_dict())

            loan.days_in_arrears = days
            loan.classification = category.value
            if not loan.is_closed:
                loan.status = CATEGORY_LOAN_STATUS[category]
            self.repository.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CLASSIFIED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "as_of": as_of,
                    "days_in_arrears": days,
                    "category": category,
                    "provision_rate": rate,
                    "net_exposure": exposure.amount,
                    "provision_required": required.amount,
                    "additional_provisions": record.additional_provisions.amount,
                }
            )

        log_action(
            self.logger, "info",
            f"Classified as {category.value} ({days} days in arrears)",
            loan_id=loan_id,
            action="loan_classified",
            extra={"provision_required": str(required.amount)}
        )
        self.publish_event(DomainEvent.LOAN_CLASSIFIED, "loan", loan_id, record.to_dict())
        return record

    def classify_portfolio(self, as_of: Optional[date] = None,
                           loan_ids: Optional[Iterable[str]] = None) -> BatchReport:
        """Classify many loans, one transaction per loan, collecting failures"""
        as_of = as_of or self.clock().date()
        if loan_ids is None:
            loan_ids = self.repository.list_loan_ids(include_closed=False)
        return run_per_loan(
            job="classification",
            loan_ids=loan_ids,
            as_of=as_of,
            unit_of_work=lambda loan_id: self.classify_loan(loan_id, as_of),
            storage=self.storage,
            audit_trail=self.audit_trail,
            logger=self.logger,
            batch_size=self.batch_size
        )

    def portfolio_snapshot(self, report: BatchReport, currency: Currency) -> ClassificationSnapshot:
        """Aggregate a classify_portfolio report for one currency"""
        return build_snapshot(report.as_of, currency, report.results)
