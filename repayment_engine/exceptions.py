"""
Exceptions Module

Error taxonomy for the repayment engine. Validation failures subclass
ValueError so callers that already guard on ValueError keep working.
Duplicate payment submissions are NOT errors; see payments.PaymentResult.
"""

from typing import Optional


class RepaymentEngineError(Exception):
    """Base class for all engine errors"""

    def __init__(self, message: str, loan_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.loan_id = loan_id


class ValidationError(RepaymentEngineError, ValueError):
    """Bad command input; raised before any state is mutated"""


class LoanNotFoundError(ValidationError):
    """Unknown loan identifier"""

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found", loan_id=loan_id)


class RecalculationError(RepaymentEngineError):
    """The remaining schedule cannot be regenerated under the requested strategy"""


class ConcurrentModificationError(RepaymentEngineError):
    """An installment changed between read and write"""

    def __init__(self, loan_id: str, installment_number: int, expected_version: int):
        super().__init__(
            f"Installment {installment_number} of loan {loan_id} was modified concurrently "
            f"(expected version {expected_version})",
            loan_id=loan_id
        )
        self.installment_number = installment_number
        self.expected_version = expected_version
