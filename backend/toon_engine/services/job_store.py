from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from toon_engine.core.errors import JobNotFoundError
from toon_engine.models.conversion_job import ConversionJob, JobStatus
from toon_engine.schemas.job import JobStatusView
from toon_engine.services.credits_engine import refund_anonymous_usage, refund_credits

logger = logging.getLogger(__name__)


REASON_JOB_RESERVE = "batch_convert"
REASON_JOB_PARTIAL_REFUND = "batch_partial_refund"
REASON_JOB_FAILED_REFUND = "batch_failed_refund"
REASON_JOB_TIMEOUT_REFUND = "batch_timeout_refund"
REASON_JOB_SUBMIT_REFUND = "batch_submit_refund"


@dataclass(frozen=True)
class JobPayer:
    """Who paid for a job and how much was reserved, captured once so refunds never re-read the row."""

    account_id: str | None
    legacy_id: str | None
    cost_per_image: int
    total_images: int

    @classmethod
    def from_job(cls, job: ConversionJob) -> "JobPayer":
        return cls(
            account_id=job.account_id,
            legacy_id=job.legacy_id,
            cost_per_image=int(job.cost_per_image or 0),
            total_images=int(job.total_images or 0),
        )

    @property
    def reserved(self) -> int:
        return self.cost_per_image * self.total_images


def get_job(db: Session, job_id: str) -> ConversionJob:
    job = db.query(ConversionJob).filter(ConversionJob.id == job_id).populate_existing().first()
    if job is None:
        raise JobNotFoundError(f"job_id={job_id}")
    return job


def job_view(job: ConversionJob) -> JobStatusView:
    return JobStatusView(
        job_id=job.id,
        status=job.status,
        completed_images=int(job.completed_images or 0),
        total_images=int(job.total_images or 0),
        result_ids=list(job.result_ids or []),
        failed_indices=[int(i) for i in (job.failed_indices or [])],
        error_message=job.error_message,
    )


def transition_job(
    db: Session,
    job_id: str,
    from_statuses: Iterable[JobStatus],
    values: dict[Any, Any],
    *,
    conditions: Iterable[Any] = (),
) -> bool:
    """Apply ``values`` only while the job is still in one of ``from_statuses``.

    Extra ``conditions`` narrow the guard further, e.g. to the progress count
    the caller based its decision on.

    Returns True when this caller's update landed. Competing writers (the
    processing task and status-read recovery) use this so exactly one of them
    owns each terminal transition and its refund.
    """
    allowed = list(from_statuses)
    try:
        updated = (
            db.query(ConversionJob)
            .filter(ConversionJob.id == job_id, ConversionJob.status.in_(allowed), *conditions)
            .update(values, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    return updated == 1


def record_progress(
    db: Session,
    job_id: str,
    *,
    result_ids: list[str],
    failed_indices: list[int],
    extra: dict[Any, Any] | None = None,
) -> bool:
    values: dict[Any, Any] = {
        ConversionJob.completed_images: len(result_ids) + len(failed_indices),
        ConversionJob.result_ids: list(result_ids),
        ConversionJob.failed_indices: list(failed_indices),
    }
    if extra:
        values.update(extra)
    return transition_job(db, job_id, [JobStatus.PROCESSING], values)


def final_status(total_images: int, succeeded: int) -> JobStatus:
    if succeeded <= 0:
        return JobStatus.FAILED
    if succeeded >= total_images:
        return JobStatus.COMPLETED
    return JobStatus.PARTIAL


def refund_job(db: Session, payer: JobPayer, amount: int, reason: str, job_id: str) -> bool:
    """Return credits to whoever paid for the job. Failures are logged, never raised."""
    amount = int(amount)
    if amount <= 0:
        return False
    try:
        if payer.account_id:
            refund_credits(db, payer.account_id, amount, reason, reference_id=job_id)
        elif payer.legacy_id:
            refund_anonymous_usage(db, payer.legacy_id, amount, reason, reference_id=job_id)
        else:
            return False
    except Exception:
        db.rollback()
        logger.exception(
            "jobs.refund.error job_id=%s account_id=%s legacy_id=%s amount=%s reason=%s",
            job_id,
            payer.account_id,
            payer.legacy_id,
            amount,
            reason,
        )
        return False
    logger.info("jobs.refund.ok job_id=%s amount=%s reason=%s", job_id, amount, reason)
    return True
