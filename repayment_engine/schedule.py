"""
Schedule Generator Module

Builds the initial installment ledger from loan terms using the flat or
reducing-balance method. The last row of every amortizing run absorbs the
rounding drift so the principal column sums exactly to the amount financed.
"""

from decimal import Decimal
from typing import List, Optional, Tuple

from .currency import Money, level_share, money_min
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventPublisherMixin
from .exceptions import ValidationError
from .ledger import Installment, LedgerRepository
from .loans import Loan, LoanTerms, InterestMethod, GraceMode, annuity_payment
from .logging_config import get_logger, log_action

Split = Tuple[Money, Money]  # (principal, interest)


def flat_split(principal: Money, total_interest: Money, periods: int) -> List[Split]:
    """
    Level principal and level interest over periods.

    Level amounts are truncated to the currency unit, so the final row takes
    a remainder that is never smaller than the level amount, for both
    principal and interest.
    """
    if periods <= 0:
        raise ValidationError("Number of periods must be positive")
    level_principal = level_share(principal, periods)
    level_interest = level_share(total_interest, periods)

    rows = []
    remaining_principal = principal
    remaining_interest = total_interest
    for number in range(1, periods + 1):
        if number == periods:
            row = (remaining_principal, remaining_interest)
        else:
            row = (level_principal, level_interest)
        remaining_principal = remaining_principal - row[0]
        remaining_interest = remaining_interest - row[1]
        rows.append(row)
    return rows


def reducing_split(principal: Money, periodic_rate: Decimal, periods: int,
                   payment: Optional[Money] = None) -> List[Split]:
    """
    Annuity rows: interest on the opening balance, principal is payment minus interest.

    payment defaults to the annuity amount retiring principal over periods.
    The last row repays the exact remaining balance.
    """
    if periods <= 0:
        raise ValidationError("Number of periods must be positive")
    if payment is None:
        payment = annuity_payment(principal, periodic_rate, periods)

    rows = []
    balance = principal
    for number in range(1, periods + 1):
        interest = balance * periodic_rate
        if number == periods:
            principal_part = balance
        else:
            principal_part = money_min(payment - interest, balance)
            if principal_part.is_negative():
                principal_part = Money.zero(balance.currency)
        balance = balance - principal_part
        rows.append((principal_part, interest))
    return rows


def build_schedule(loan_id: str, terms: LoanTerms, revision: int = 1) -> List[Installment]:
    """
    Full ledger for a loan, grace rows included when grace_mode is interest-only.

    Pure: no storage, no clock.
    """
    terms.validate()
    grace_rows = terms.grace_periods if terms.grace_mode == GraceMode.INTEREST_ONLY else 0
    zero = Money.zero(terms.currency)

    if terms.interest_method == InterestMethod.FLAT:
        total_interest = terms.principal * (terms.annual_interest_rate * terms.term_years)
        interest_rows = flat_split(zero, total_interest, terms.total_installments)
        principal_rows = flat_split(terms.principal, zero, terms.amortizing_periods)
        splits = [
            (zero if n < grace_rows else principal_rows[n - grace_rows][0], interest_rows[n][1])
            for n in range(terms.total_installments)
        ]
    else:
        grace_interest = terms.principal * terms.periodic_rate
        splits = [(zero, grace_interest)] * grace_rows
        splits.extend(reducing_split(terms.principal, terms.periodic_rate, terms.amortizing_periods))

    return [
        Installment.scheduled(
            loan_id=loan_id,
            installment_number=number,
            due_date=terms.due_date_for(number),
            due_principal=principal_part,
            due_interest=interest_part,
            revision=revision,
        )
        for number, (principal_part, interest_part) in enumerate(splits, start=1)
    ]


class ScheduleGenerator(EventPublisherMixin):
    """
    Creates a loan's ledger once, atomically, at disbursement
    """

    def __init__(self, repository: LedgerRepository, audit_trail: AuditTrail):
        self.repository = repository
        self.storage = repository.storage
        self.audit_trail = audit_trail
        self.logger = get_logger("repayment_engine.schedule")

    def preview(self, terms: LoanTerms) -> List[Installment]:
        """Schedule for terms without persisting anything"""
        return build_schedule("preview", terms)

    def generate(self, loan: Loan) -> List[Installment]:
        """
        Persist the loan and its full ledger in one transaction

        Args:
            loan: Loan whose terms drive the schedule

        Returns:
            The generated installments in due-date order

        Raises:
            ValidationError: If the terms are invalid or the loan already has a ledger
        """
        if self.repository.has_schedule(loan.id):
            raise ValidationError(f"Loan {loan.id} already has a repayment schedule", loan_id=loan.id)

        installments = build_schedule(loan.id, loan.terms)
        total_principal = sum((i.due_principal.amount for i in installments), Decimal('0'))
        total_interest = sum((i.due_interest.amount for i in installments), Decimal('0'))

        with self.storage.atomic():
            self.repository.save_loan(loan)
            self.repository.insert_installments(installments)
            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "principal": loan.principal.amount,
                    "interest_method": loan.terms.interest_method,
                    "frequency": loan.terms.frequency,
                    "installments": len(installments),
                    "total_principal": total_principal,
                    "total_interest": total_interest,
                    "first_due_date": installments[0].due_date,
                    "maturity_date": installments[-1].due_date,
                }
            )

        log_action(
            self.logger, "info",
            f"Generated {len(installments)} installments",
            loan_id=loan.id,
            action="schedule_generated",
            extra={"total_principal": str(total_principal), "total_interest": str(total_interest)}
        )
        self.publish_event(DomainEvent.SCHEDULE_GENERATED, "loan", loan.id, {
            "installments": len(installments),
            "total_principal": str(total_principal),
            "total_interest": str(total_interest),
        })
        return installments
