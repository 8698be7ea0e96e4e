"""
Batch Job Support

Runs a per-loan unit of work over many loans. Each loan is processed in its
own storage transaction; a failing loan is recorded in the report and the job
moves on, so progress on earlier loans is never rolled back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, date
from typing import Any, Callable, Dict, Iterable, List, Optional

from .audit import AuditTrail, AuditEventType
from .storage import StorageInterface


@dataclass
class LoanFailure:
    """One loan the job could not process"""
    loan_id: str
    error: str
    error_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {'loan_id': self.loan_id, 'error': self.error, 'error_type': self.error_type}


@dataclass
class BatchReport:
    """Per-loan results and failures of a batch job"""
    job: str
    as_of: date
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[Any] = field(default_factory=list)
    errors: List[LoanFailure] = field(default_factory=list)

    @property
    def loans_processed(self) -> int:
        return len(self.results)

    @property
    def loans_failed(self) -> int:
        return len(self.errors)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def failed_loan_ids(self) -> List[str]:
        return [e.loan_id for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job': self.job,
            'as_of': self.as_of.isoformat(),
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'loans_processed': self.loans_processed,
            'loans_failed': self.loans_failed,
            'results': [r.to_dict() if hasattr(r, 'to_dict') else r for r in self.results],
            'errors': [e.to_dict() for e in self.errors],
        }


def run_per_loan(
    job: str,
    loan_ids: Iterable[str],
    as_of: date,
    unit_of_work: Callable[[str], Any],
    storage: StorageInterface,
    audit_trail: AuditTrail,
    logger: logging.Logger,
    batch_size: int = 100
) -> BatchReport:
    """
    Apply unit_of_work to every loan, one transaction per loan

    Args:
        job: Job name used in logs and the report
        loan_ids: Loans to process
        as_of: Business date of the run
        unit_of_work: Callable processing one loan and returning its result
        storage: Storage whose atomic() wraps each loan
        audit_trail: Receives a BATCH_FAILURE event per failed loan
        logger: Logger for progress and failures
        batch_size: Loans between progress log lines

    Returns:
        BatchReport with one result per processed loan and one failure per failed loan
    """
    report = BatchReport(job=job, as_of=as_of, started_at=datetime.now(timezone.utc))
    loan_ids = list(loan_ids)

    for position, loan_id in enumerate(loan_ids, start=1):
        try:
            with storage.atomic():
                report.results.append(unit_of_work(loan_id))
        except Exception as e:
            logger.error(f"{job} failed for loan {loan_id}: {e}", exc_info=True)
            report.errors.append(LoanFailure(loan_id=loan_id, error=str(e), error_type=type(e).__name__))
            audit_trail.log_event(
                event_type=AuditEventType.BATCH_FAILURE,
                entity_type="loan",
                entity_id=loan_id,
                metadata={"job": job, "as_of": as_of, "error": str(e), "error_type": type(e).__name__},
                actor=job
            )

        if batch_size and position % batch_size == 0:
            logger.info(f"{job}: {position}/{len(loan_ids)} loans processed")

    report.finished_at = datetime.now(timezone.utc)
    logger.info(
        f"{job} finished for {as_of.isoformat()}: "
        f"{report.loans_processed} processed, {report.loans_failed} failed"
    )
    return report
