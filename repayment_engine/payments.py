"""
Payment Application Module

Applies a payment to a loan's ledger: interest first, then principal, one
installment at a time. Duplicate submissions are rejected with a structured
result rather than an exception, and every attempt (blocked or not) is
recorded on the installment.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple, Union, Any

from .currency import Money, money_min, to_decimal
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventPublisherMixin
from .exceptions import ValidationError
from .ledger import (
    Installment, InstallmentStatus, LedgerRepository, OPEN_STATUSES,
    derive_status, days_between,
)
from .loans import LoanStatus
from .logging_config import get_logger, log_action


BLOCK_ALREADY_PAID = "Installment already paid"
BLOCK_TOO_SOON = "Payment attempt too soon after previous attempt"
BLOCK_WRITTEN_OFF = "Installment written off"


class ExcessPolicy:
    """What happens to the part of a payment beyond the installment's remaining due"""
    RETURN = "return"    # Handed back to the caller as excess_amount
    CASCADE = "cascade"  # Applied to the next open installments in due-date order

    ALL = (RETURN, CASCADE)


@dataclass
class InstallmentAllocation:
    """How much of a payment landed on one installment"""
    installment_number: int
    principal_paid: Money
    interest_paid: Money
    status: InstallmentStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'principal_paid': str(self.principal_paid.amount),
            'interest_paid': str(self.interest_paid.amount),
            'status': self.status.value,
        }


@dataclass
class PaymentResult:
    """Outcome of one apply-payment call"""
    principal_paid: Money
    interest_paid: Money
    excess_amount: Money
    was_blocked: bool = False
    block_reason: Optional[str] = None
    allocations: List[InstallmentAllocation] = field(default_factory=list)

    @property
    def total_applied(self) -> Money:
        return self.principal_paid + self.interest_paid

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'principal_paid': str(self.principal_paid.amount),
            'interest_paid': str(self.interest_paid.amount),
            'excess_amount': str(self.excess_amount.amount),
            'was_blocked': self.was_blocked,
            'allocations': [a.to_dict() for a in self.allocations],
        }
        if self.block_reason:
            result['block_reason'] = self.block_reason
        return result


def block_reason(installment: Installment, now: datetime, cooldown: timedelta) -> Optional[str]:
    """Why the installment cannot take a payment right now, or None if it can"""
    if installment.status == InstallmentStatus.WRITTEN_OFF:
        return BLOCK_WRITTEN_OFF
    if installment.is_paid:
        return BLOCK_ALREADY_PAID
    if installment.last_payment_attempt and installment.last_payment_attempt > now - cooldown:
        return BLOCK_TOO_SOON
    return None


def apply_to_installment(
    installment: Installment,
    amount: Money,
    payment_date: date,
    now: datetime,
    cooldown: timedelta
) -> Tuple[Installment, PaymentResult]:
    """
    Apply amount to one installment without touching storage.

    Returns:
        (updated installment, result). A blocked attempt changes only
        last_payment_attempt and payment_attempt_count.
    """
    zero = Money.zero(amount.currency)
    reason = block_reason(installment, now, cooldown)
    attempted = replace(
        installment,
        last_payment_attempt=now,
        payment_attempt_count=installment.payment_attempt_count + 1
    )
    if reason:
        return attempted, PaymentResult(
            principal_paid=zero,
            interest_paid=zero,
            excess_amount=amount,
            was_blocked=True,
            block_reason=reason
        )

    remaining = amount
    interest_due = installment.due_interest - installment.paid_interest
    interest_paid = money_min(interest_due, remaining) if interest_due.is_positive() else zero
    remaining = remaining - interest_paid

    principal_due = installment.due_principal - installment.paid_principal
    principal_paid = money_min(principal_due, remaining) if principal_due.is_positive() else zero
    remaining = remaining - principal_paid

    paid_interest = installment.paid_interest + interest_paid
    paid_principal = installment.paid_principal + principal_paid
    paid_total = paid_interest + paid_principal
    status = derive_status(paid_total, installment.due_total, installment.due_date, payment_date)

    updated = replace(
        attempted,
        paid_interest=paid_interest,
        paid_principal=paid_principal,
        paid_total=paid_total,
        outstanding_interest=installment.due_interest - paid_interest,
        outstanding_principal=installment.due_principal - paid_principal,
        status=status,
    )
    if status == InstallmentStatus.PAID:
        updated = replace(
            updated,
            is_paid=True,
            paid_at=now,
            actual_payment_date=payment_date,
            # Frozen here, never recomputed
            delayed_days=days_between(payment_date, installment.due_date),
            days_overdue=0,
        )

    return updated, PaymentResult(
        principal_paid=principal_paid,
        interest_paid=interest_paid,
        excess_amount=remaining,
        allocations=[InstallmentAllocation(
            installment_number=installment.installment_number,
            principal_paid=principal_paid,
            interest_paid=interest_paid,
            status=status
        )]
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentEngine(EventPublisherMixin):
    """
    Applies payments to installment ledgers.

    Each call runs in one storage transaction and writes every installment
    through compare-and-swap on its version, so concurrent writers to the
    same row fail instead of overwriting each other.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        audit_trail: AuditTrail,
        cooldown_seconds: int = 60,
        excess_policy: str = ExcessPolicy.RETURN,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if excess_policy not in ExcessPolicy.ALL:
            raise ValueError(f"Unknown excess payment policy: {excess_policy}")
        self.repository = repository
        self.storage = repository.storage
        self.audit_trail = audit_trail
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.excess_policy = excess_policy
        self.clock = clock or _utcnow
        self.logger = get_logger("repayment_engine.payments")

    def apply_payment(
        self,
        loan_id: str,
        amount: Union[Money, Decimal, str, int],
        payment_date: Optional[date] = None,
        installment_number: Optional[int] = None,
        reference: Optional[str] = None
    ) -> PaymentResult:
        """
        Apply a payment to a loan

        Args:
            loan_id: Loan receiving the payment
            amount: Payment amount, must be positive
            payment_date: Value date of the payment (defaults to processing date)
            installment_number: Target row; earliest open row when None
            reference: External payment reference, kept in the audit trail

        Returns:
            PaymentResult; was_blocked=True when the duplicate guard rejected it

        Raises:
            LoanNotFoundError: Unknown loan
            ValidationError: Non-positive amount, wrong currency, unknown
                installment, or nothing left to pay
        """
        loan = self.repository.get_loan(loan_id)
        amount = self._to_money(amount, loan)
        now = self.clock()
        if payment_date is None:
            payment_date = now.date()

        paid_rows: List[int] = []
        with self.storage.atomic():
            targets = self._targets(loan_id, installment_number)
            first, result = apply_to_installment(targets[0], amount, payment_date, now, self.cooldown)
            self.repository.update_installment(first)
            if first.is_paid and not result.was_blocked:
                paid_rows.append(first.installment_number)

            if result.was_blocked:
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_BLOCKED,
                    entity_type="installment",
                    entity_id=first.key,
                    metadata={
                        "amount": amount.amount,
                        "reason": result.block_reason,
                        "attempt_count": first.payment_attempt_count,
                        "reference": reference,
                    }
                )
            else:
                if self.excess_policy == ExcessPolicy.CASCADE:
                    result = self._cascade(result, targets[1:], payment_date, now, paid_rows)
                if not self._open_rows(loan_id):
                    loan.status = LoanStatus.CLOSED
                    self.repository.save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_APPLIED,
                    entity_type="loan",
                    entity_id=loan_id,
                    metadata={
                        "amount": amount.amount,
                        "payment_date": payment_date,
                        "principal_paid": result.principal_paid.amount,
                        "interest_paid": result.interest_paid.amount,
                        "excess_amount": result.excess_amount.amount,
                        "allocations": [a.to_dict() for a in result.allocations],
                        "reference": reference,
                    }
                )

        self._report(loan_id, first, result, paid_rows)
        return result

    def _to_money(self, amount, loan) -> Money:
        if isinstance(amount, Money):
            if amount.currency != loan.currency:
                raise ValidationError(
                    f"Payment currency {amount.currency.code} does not match loan currency {loan.currency.code}",
                    loan_id=loan.id
                )
        else:
            try:
                amount = Money(to_decimal(amount), loan.currency)
            except ValueError as e:
                raise ValidationError(str(e), loan_id=loan.id)
        if not amount.is_positive():
            raise ValidationError("Payment amount must be positive", loan_id=loan.id)
        return amount

    def _open_rows(self, loan_id: str) -> List[Installment]:
        return [i for i in self.repository.get_installments(loan_id) if i.status in OPEN_STATUSES]

    def _targets(self, loan_id: str, installment_number: Optional[int]) -> List[Installment]:
        open_rows = self._open_rows(loan_id)
        if installment_number is not None:
            addressed = self.repository.get_installment(loan_id, installment_number)
            later = [i for i in open_rows if i.installment_number > installment_number]
            return [addressed] + later
        if not open_rows:
            raise ValidationError(f"Loan {loan_id} has no outstanding installments", loan_id=loan_id)
        return open_rows

    def _cascade(self, result: PaymentResult, rows: List[Installment], payment_date: date,
                 now: datetime, paid_rows: List[int]) -> PaymentResult:
        """Push the excess down the open rows until it is used up"""
        principal_paid = result.principal_paid
        interest_paid = result.interest_paid
        excess = result.excess_amount
        allocations = list(result.allocations)

        for row in rows:
            if not excess.is_positive():
                break
            updated, step = apply_to_installment(row, excess, payment_date, now, self.cooldown)
            if step.was_blocked:
                # Leave the row and the remaining excess untouched
                break
            self.repository.update_installment(updated)
            if updated.is_paid:
                paid_rows.append(updated.installment_number)
            principal_paid = principal_paid + step.principal_paid
            interest_paid = interest_paid + step.interest_paid
            excess = step.excess_amount
            allocations.extend(step.allocations)

        return PaymentResult(
            principal_paid=principal_paid,
            interest_paid=interest_paid,
            excess_amount=excess,
            allocations=allocations
        )

    def _report(self, loan_id: str, first: Installment, result: PaymentResult,
                paid_rows: List[int]) -> None:
        if result.was_blocked:
            log_action(
                self.logger, "warning",
                f"Payment blocked: {result.block_reason}",
                loan_id=loan_id,
                installment_number=first.installment_number,
                action="payment_blocked",
                extra={"attempt_count": first.payment_attempt_count}
            )
            self.publish_event(DomainEvent.PAYMENT_BLOCKED, "installment", first.key, {
                "loan_id": loan_id,
                "installment_number": first.installment_number,
                "reason": result.block_reason,
                "amount": str(result.excess_amount.amount),
            })
            return

        log_action(
            self.logger, "info",
            f"Payment applied: interest {result.interest_paid.amount}, principal {result.principal_paid.amount}",
            loan_id=loan_id,
            installment_number=first.installment_number,
            action="payment_applied",
            extra={"excess_amount": str(result.excess_amount.amount)}
        )
        self.publish_event(DomainEvent.PAYMENT_APPLIED, "loan", loan_id, result.to_dict())
        for number in paid_rows:
            self.publish_event(DomainEvent.INSTALLMENT_PAID, "installment", f"{loan_id}:{number}", {
                "loan_id": loan_id,
                "installment_number": number,
            })
