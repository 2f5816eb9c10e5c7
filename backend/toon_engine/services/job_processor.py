from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy.orm import Session

from toon_engine.core.database import SessionLocal
from toon_engine.core.errors import InvalidInputError, JobNotFoundError, error_for_kind
from toon_engine.core.settings import settings
from toon_engine.models.conversion_job import ConversionJob, JobKind, JobStatus
from toon_engine.models.generated_image import GeneratedImage
from toon_engine.schemas.job import JobAccepted, JobSubmission, SceneAnalysis
from toon_engine.services.blob_store import (
    BlobStore,
    InMemoryBlobStore,
    LocalBlobStore,
    cleanup_input_images,
    load_input_image,
    parse_data_uri,
    result_key,
    store_input_image,
)
from toon_engine.services.costs import action_cost
from toon_engine.services.credits_engine import as_utc, reserve_credits, utcnow
from toon_engine.services.gemini.client import GeminiImageClient, ImageModelClient
from toon_engine.services.gemini.types import ImagePart
from toon_engine.services.generation import generate_with_quality_gate
from toon_engine.services.job_store import (
    REASON_JOB_FAILED_REFUND,
    REASON_JOB_PARTIAL_REFUND,
    REASON_JOB_RESERVE,
    REASON_JOB_SUBMIT_REFUND,
    JobPayer,
    final_status,
    get_job,
    record_progress,
    refund_job,
    transition_job,
)
from toon_engine.services.quality_gate import QualityChecker, build_quality_gate
from toon_engine.services.styles import resolve_style

logger = logging.getLogger(__name__)


FATAL_ERROR_MESSAGE = "Internal processing error"
JOB_ACTION = "basic_convert"

# Detached processing tasks, held until they finish so the loop cannot collect them mid-run.
_BACKGROUND_TASKS: set[asyncio.Task] = set()


@dataclass
class ConversionRuntime:
    session_factory: Callable[[], Session]
    blob_store: BlobStore
    model: ImageModelClient
    quality_gate: QualityChecker | None = None
    image_delay_s: float = 2.0
    retry_backoff_s: float = 1.0
    max_images: int = 10
    max_base64_length: int = 10 * 1024 * 1024
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


def build_runtime() -> ConversionRuntime:
    store: BlobStore
    if settings.blob_store_root:
        store = LocalBlobStore(settings.blob_store_root)
    else:
        store = InMemoryBlobStore()
    model = GeminiImageClient(
        api_key=settings.gemini_api_key or "",
        base_url=settings.gemini_base_url,
        model=settings.gemini_image_model,
        timeout_s=settings.gemini_image_timeout_s,
    )
    return ConversionRuntime(
        session_factory=SessionLocal,
        blob_store=store,
        model=model,
        quality_gate=build_quality_gate(),
        image_delay_s=settings.job_image_delay_s,
        retry_backoff_s=settings.job_retry_backoff_s,
        max_images=settings.job_max_images,
        max_base64_length=settings.job_max_base64_length,
    )


def validate_submission(
    submission: JobSubmission,
    *,
    max_images: int,
    max_base64_length: int,
) -> list[tuple[bytes, str]]:
    if not (submission.owner_id or "").strip():
        raise InvalidInputError("owner_id is required")
    if not (submission.style_id or "").strip():
        raise InvalidInputError("style_id is required")
    if submission.kind not in {k.value for k in JobKind}:
        raise InvalidInputError(f"Unsupported job kind: {submission.kind}")
    images = submission.images or []
    if not images:
        raise InvalidInputError("At least one image is required")
    if len(images) > max_images:
        raise InvalidInputError(f"At most {max_images} images per job")
    return [parse_data_uri(raw, index=i, max_base64_length=max_base64_length) for i, raw in enumerate(images)]


def _schedule(runtime: ConversionRuntime, job_id: str) -> None:
    task = asyncio.create_task(process_conversion_job(runtime, job_id), name=f"conversion-job-{job_id}")
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)


async def wait_for_background_jobs() -> None:
    while _BACKGROUND_TASKS:
        await asyncio.gather(*list(_BACKGROUND_TASKS), return_exceptions=True)


async def submit_conversion_job(
    db: Session,
    runtime: ConversionRuntime,
    submission: JobSubmission,
    *,
    now: datetime | None = None,
) -> JobAccepted:
    """Reserve credits, persist the inputs and a pending job, then start processing in the background.

    Raises InvalidInputError before touching anything, or the ledger's quota
    error when the payer cannot cover ``cost_per_image * len(images)``.
    """
    decoded = validate_submission(
        submission,
        max_images=runtime.max_images,
        max_base64_length=runtime.max_base64_length,
    )
    now = as_utc(now) or utcnow()

    owner_id = submission.owner_id.strip()
    if submission.is_authenticated:
        account_id, legacy_id = (submission.account_id or owner_id), None
    else:
        account_id, legacy_id = None, owner_id

    job_id = str(uuid4())
    cost_per_image = action_cost(JOB_ACTION)
    payer = JobPayer(
        account_id=account_id,
        legacy_id=legacy_id,
        cost_per_image=cost_per_image,
        total_images=len(decoded),
    )

    reservation = reserve_credits(
        db,
        account_id=account_id,
        is_authenticated=submission.is_authenticated,
        cost=payer.reserved,
        reason=REASON_JOB_RESERVE,
        reference_id=job_id,
        legacy_id=legacy_id,
        now=now,
    )
    if not reservation.ok:
        logger.info(
            "jobs.submit.rejected owner_id=%s images=%s error=%s",
            owner_id,
            len(decoded),
            reservation.error_kind,
        )
        raise error_for_kind(reservation.error_kind, f"cannot reserve {payer.reserved} credits")

    keys: list[str] = []
    try:
        for index, (data, mime) in enumerate(decoded):
            keys.append(store_input_image(runtime.blob_store, job_id, index, data, mime))
        db.add(
            ConversionJob(
                id=job_id,
                owner_id=owner_id,
                account_id=account_id,
                legacy_id=legacy_id,
                kind=submission.kind,
                status=JobStatus.PENDING,
                style_id=resolve_style(submission.style_id).id,
                cost_per_image=cost_per_image,
                total_images=len(decoded),
                completed_images=0,
                result_ids=[],
                failed_indices=[],
                input_keys=keys,
                scene_analysis=(
                    submission.scene_analysis.model_dump(by_alias=True) if submission.scene_analysis else None
                ),
                created_at=now,
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("jobs.submit.persist_error job_id=%s", job_id)
        refund_job(db, payer, payer.reserved, REASON_JOB_SUBMIT_REFUND, job_id)
        cleanup_input_images(runtime.blob_store, keys)
        raise

    _schedule(runtime, job_id)
    logger.info(
        "jobs.submit.accepted job_id=%s owner_id=%s images=%s style=%s cost=%s",
        job_id,
        owner_id,
        len(decoded),
        submission.style_id,
        payer.reserved,
    )
    return JobAccepted(job_id=job_id, total_images=len(decoded))


async def _convert_one(
    runtime: ConversionRuntime,
    key: str,
    style_id: str,
    scene_analysis: SceneAnalysis | None,
    style_anchor: ImagePart | None,
) -> tuple[ImagePart | None, str | None]:
    data, mime = load_input_image(runtime.blob_store, key)
    outcome = await generate_with_quality_gate(
        runtime.model,
        runtime.quality_gate,
        ImagePart(data=data, mime_type=mime),
        style_id,
        scene_analysis=scene_analysis,
        style_anchor=style_anchor,
        backoff_s=runtime.retry_backoff_s,
        sleep=runtime.sleep,
    )
    return outcome.image, outcome.error


async def process_conversion_job(runtime: ConversionRuntime, job_id: str) -> None:
    db = runtime.session_factory()
    payer: JobPayer | None = None
    keys: list[str] = []
    try:
        try:
            job = get_job(db, job_id)
        except JobNotFoundError:
            logger.warning("jobs.process.missing job_id=%s", job_id)
            return
        payer = JobPayer.from_job(job)
        keys = list(job.input_keys or [])
        style_id = job.style_id
        owner_id = job.owner_id
        scene = SceneAnalysis.model_validate(job.scene_analysis) if job.scene_analysis else None

        if not transition_job(
            db,
            job_id,
            [JobStatus.PENDING],
            {ConversionJob.status: JobStatus.PROCESSING, ConversionJob.started_at: utcnow()},
        ):
            logger.info("jobs.process.skip job_id=%s status=%s", job_id, job.status)
            return
        logger.info("jobs.process.start job_id=%s images=%s style=%s", job_id, len(keys), style_id)

        result_ids: list[str] = []
        failed_indices: list[int] = []
        first_error: str | None = None
        anchor: ImagePart | None = None

        for index, key in enumerate(keys):
            if index > 0 and runtime.image_delay_s > 0:
                await runtime.sleep(runtime.image_delay_s)

            extra: dict[Any, Any] = {}
            try:
                image, error = await _convert_one(runtime, key, style_id, scene, anchor)
                if image is not None:
                    image_id = str(uuid4())
                    blob_key = result_key(image_id)
                    runtime.blob_store.put(blob_key, image.data, image.mime_type)
            except Exception as exc:
                logger.exception("jobs.process.input_error job_id=%s index=%s", job_id, index)
                image, error = None, str(exc) or type(exc).__name__

            if image is None:
                failed_indices.append(index)
                first_error = first_error or error
                logger.info("jobs.process.input_failed job_id=%s index=%s error=%s", job_id, index, error)
            else:
                db.add(
                    GeneratedImage(
                        id=image_id,
                        blob_key=blob_key,
                        mime_type=image.mime_type,
                        owner_id=owner_id,
                        job_id=job_id,
                        created_at=utcnow(),
                    )
                )
                result_ids.append(image_id)
                if anchor is None:
                    anchor = image
                    extra[ConversionJob.style_reference_key] = blob_key
                logger.info("jobs.process.input_done job_id=%s index=%s image_id=%s", job_id, index, image_id)

            if not record_progress(db, job_id, result_ids=result_ids, failed_indices=failed_indices, extra=extra):
                logger.info("jobs.process.superseded job_id=%s index=%s", job_id, index)
                return

        status = final_status(len(keys), len(result_ids))
        if not transition_job(
            db,
            job_id,
            [JobStatus.PROCESSING],
            {
                ConversionJob.status: status,
                ConversionJob.completed_at: utcnow(),
                ConversionJob.error_message: first_error if failed_indices else None,
            },
        ):
            logger.info("jobs.process.superseded job_id=%s final=%s", job_id, status.value)
            return

        if status == JobStatus.PARTIAL:
            refund_job(
                db, payer, payer.cost_per_image * len(failed_indices), REASON_JOB_PARTIAL_REFUND, job_id
            )
        elif status == JobStatus.FAILED:
            refund_job(db, payer, payer.reserved, REASON_JOB_FAILED_REFUND, job_id)

        logger.info(
            "jobs.process.done job_id=%s status=%s results=%s failed=%s",
            job_id,
            status.value,
            len(result_ids),
            len(failed_indices),
        )
    except Exception:
        logger.exception("jobs.process.fatal job_id=%s", job_id)
        db.rollback()
        try:
            won = transition_job(
                db,
                job_id,
                [JobStatus.PENDING, JobStatus.PROCESSING],
                {
                    ConversionJob.status: JobStatus.FAILED,
                    ConversionJob.error_message: FATAL_ERROR_MESSAGE,
                    ConversionJob.completed_at: utcnow(),
                },
            )
        except Exception:
            logger.exception("jobs.process.fatal_transition_error job_id=%s", job_id)
            won = False
        if won and payer is not None:
            refund_job(db, payer, payer.reserved, REASON_JOB_FAILED_REFUND, job_id)
    finally:
        cleanup_input_images(runtime.blob_store, keys)
        db.close()
