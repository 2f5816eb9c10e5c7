"""Status reads with staleness recovery.

A job whose processing task never started, or stopped reporting, is failed
and refunded by whichever reader first notices. The terminal write is
conditional on the status that reader observed, so concurrent pollers refund
at most once.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from toon_engine.core.settings import settings
from toon_engine.models.conversion_job import ConversionJob, JobStatus
from toon_engine.schemas.job import JobStatusView
from toon_engine.services.blob_store import BlobStore, cleanup_input_images
from toon_engine.services.credits_engine import as_utc, utcnow
from toon_engine.services.job_store import (
    REASON_JOB_FAILED_REFUND,
    REASON_JOB_TIMEOUT_REFUND,
    JobPayer,
    get_job,
    job_view,
    refund_job,
    transition_job,
)

logger = logging.getLogger(__name__)


NOT_STARTED_MESSAGE = "Job failed to start"
TIMED_OUT_MESSAGE = "Processing timed out"


def _is_older_than(stamp: datetime | None, now: datetime, window_s: int) -> bool:
    stamp = as_utc(stamp)
    return stamp is not None and now - stamp > timedelta(seconds=window_s)


def read_job_status(
    db: Session,
    job_id: str,
    *,
    blob_store: BlobStore | None = None,
    now: datetime | None = None,
    pending_timeout_s: int | None = None,
    processing_timeout_s: int | None = None,
) -> JobStatusView:
    now = as_utc(now) or utcnow()
    pending_timeout_s = settings.job_pending_timeout_s if pending_timeout_s is None else pending_timeout_s
    processing_timeout_s = (
        settings.job_processing_timeout_s if processing_timeout_s is None else processing_timeout_s
    )

    job = get_job(db, job_id)
    payer = JobPayer.from_job(job)
    input_keys = list(job.input_keys or [])

    observed = job.status
    completed = int(job.completed_images or 0)
    if observed == JobStatus.PENDING and _is_older_than(job.created_at, now, pending_timeout_s):
        message, refund, reason = NOT_STARTED_MESSAGE, payer.reserved, REASON_JOB_FAILED_REFUND
    elif observed == JobStatus.PROCESSING and _is_older_than(job.started_at, now, processing_timeout_s):
        unresolved = max(0, payer.total_images - completed)
        message, refund, reason = TIMED_OUT_MESSAGE, payer.cost_per_image * unresolved, REASON_JOB_TIMEOUT_REFUND
    else:
        return job_view(job)

    won = transition_job(
        db,
        job_id,
        [observed],
        {
            ConversionJob.status: JobStatus.FAILED,
            ConversionJob.error_message: message,
            ConversionJob.completed_at: now,
        },
        # only inputs still unresolved when the update lands are refunded
        conditions=[ConversionJob.completed_images == completed],
    )
    if won:
        logger.warning("jobs.watchdog.failed job_id=%s was=%s refund=%s", job_id, observed.value, refund)
        refund_job(db, payer, refund, reason, job_id)
        if blob_store is not None:
            cleanup_input_images(blob_store, input_keys)
    else:
        logger.info("jobs.watchdog.lost_race job_id=%s was=%s", job_id, observed.value)

    return job_view(get_job(db, job_id))
