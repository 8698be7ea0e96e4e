"""
Loan Repayment Engine

Installment ledger for disbursed loans: schedule generation, payment
application with duplicate protection, arrears tracking, schedule
recalculation, and regulatory classification with provisioning. All
money math uses Decimal; every mutation is written to a hash-chained
audit trail.
"""

__version__ = "1.0.0"
