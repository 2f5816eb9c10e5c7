import unittest
from datetime import timedelta
from unittest import mock

from fakes import NOW, RecordingSleep, ScriptedModel, add_account, make_session_factory, png_bytes
from toon_engine.core.errors import JobNotFoundError
from toon_engine.models.conversion_job import ConversionJob, JobStatus
from toon_engine.models.credit_transaction import CreditTransaction
from toon_engine.services.blob_store import InMemoryBlobStore, store_input_image
from toon_engine.services.credits_engine import reserve_credits, utcnow
from toon_engine.services.gemini.types import ImagePart
from toon_engine.services.job_processor import ConversionRuntime, process_conversion_job
from toon_engine.services import watchdog
from toon_engine.services.job_store import record_progress, transition_job
from toon_engine.services.watchdog import NOT_STARTED_MESSAGE, TIMED_OUT_MESSAGE, read_job_status


class WatchdogTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.SessionLocal = make_session_factory()
        self.db = self.SessionLocal()
        self.store = InMemoryBlobStore()
        add_account(self.db, "acct", free=3, paid=10)

    def tearDown(self):
        self.db.close()

    def _make_job(self, job_id, total=2, status=JobStatus.PENDING, started_at=None, result_ids=(), failed=()):
        reserve_credits(
            self.db,
            account_id="acct",
            is_authenticated=True,
            cost=total,
            reason="batch_convert",
            reference_id=job_id,
            now=NOW,
        )
        keys = [store_input_image(self.store, job_id, i, png_bytes(f"{job_id}-{i}"), "image/png") for i in range(total)]
        self.db.add(
            ConversionJob(
                id=job_id,
                owner_id="acct",
                account_id="acct",
                kind="photo",
                status=status,
                style_id="classic-webtoon",
                cost_per_image=1,
                total_images=total,
                completed_images=len(result_ids) + len(failed),
                result_ids=list(result_ids),
                failed_indices=list(failed),
                input_keys=keys,
                created_at=NOW,
                started_at=started_at,
            )
        )
        self.db.commit()
        return keys

    def _refunds(self, job_id):
        rows = (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.reference_id == job_id, CreditTransaction.amount > 0)
            .all()
        )
        return [r.amount for r in rows]


class TestReadJobStatus(WatchdogTestCase):
    async def test_unknown_job(self):
        with self.assertRaises(JobNotFoundError) as ctx:
            read_job_status(self.db, "missing", now=NOW)
        self.assertEqual(ctx.exception.kind, "NOT_FOUND")

    async def test_fresh_pending_job_is_left_alone(self):
        self._make_job("job-1")
        view = read_job_status(self.db, "job-1", now=NOW + timedelta(seconds=59))
        self.assertEqual(view.status, JobStatus.PENDING)
        self.assertEqual(self._refunds("job-1"), [])

    async def test_job_that_never_started_is_failed_and_refunded_once(self):
        self._make_job("job-1", total=3)
        later = NOW + timedelta(seconds=61)

        first = read_job_status(self.db, "job-1", blob_store=self.store, now=later)
        second = read_job_status(self.db, "job-1", blob_store=self.store, now=later)

        self.assertEqual(first.status, JobStatus.FAILED)
        self.assertEqual(first.error_message, NOT_STARTED_MESSAGE)
        self.assertEqual(second.status, JobStatus.FAILED)
        self.assertEqual(self._refunds("job-1"), [3])
        self.assertEqual(self.store.keys(), [])

    async def test_racing_reader_with_a_stale_view_does_not_refund(self):
        self._make_job("job-1")
        other = self.SessionLocal()
        try:
            stale = other.query(ConversionJob).filter(ConversionJob.id == "job-1").one()
            self.assertEqual(stale.status, JobStatus.PENDING)

            read_job_status(self.db, "job-1", now=NOW + timedelta(seconds=61))

            landed = transition_job(
                other,
                "job-1",
                [stale.status],
                {ConversionJob.status: JobStatus.FAILED, ConversionJob.error_message: NOT_STARTED_MESSAGE},
            )
            self.assertFalse(landed)
        finally:
            other.close()
        self.assertEqual(self._refunds("job-1"), [2])

    async def test_hung_processing_refunds_unresolved_inputs(self):
        self._make_job(
            "job-1",
            total=4,
            status=JobStatus.PROCESSING,
            started_at=NOW,
            result_ids=["img-0"],
            failed=[1],
        )
        view = read_job_status(self.db, "job-1", now=NOW + timedelta(minutes=4))
        self.assertEqual(view.status, JobStatus.PROCESSING)

        view = read_job_status(self.db, "job-1", now=NOW + timedelta(minutes=5, seconds=1))
        self.assertEqual(view.status, JobStatus.FAILED)
        self.assertEqual(view.error_message, TIMED_OUT_MESSAGE)
        self.assertEqual(view.completed_images, 2)
        self.assertEqual(self._refunds("job-1"), [2])

    async def test_progress_recorded_during_the_timeout_check_is_not_refunded(self):
        self._make_job("job-1", total=3, status=JobStatus.PROCESSING, started_at=NOW)
        real_transition = watchdog.transition_job
        processor = self.SessionLocal()

        def progress_lands_first(*args, **kwargs):
            record_progress(processor, "job-1", result_ids=["img-0"], failed_indices=[])
            return real_transition(*args, **kwargs)

        later = NOW + timedelta(minutes=6)
        try:
            with mock.patch.object(watchdog, "transition_job", side_effect=progress_lands_first):
                view = read_job_status(self.db, "job-1", now=later)
        finally:
            processor.close()

        self.assertEqual(view.status, JobStatus.PROCESSING)
        self.assertEqual(view.completed_images, 1)
        self.assertEqual(self._refunds("job-1"), [])

        view = read_job_status(self.db, "job-1", now=later)
        self.assertEqual(view.status, JobStatus.FAILED)
        self.assertEqual(view.result_ids, ["img-0"])
        self.assertEqual(self._refunds("job-1"), [2])

    async def test_terminal_jobs_are_returned_as_is(self):
        self._make_job("job-1", status=JobStatus.COMPLETED, started_at=NOW, result_ids=["a", "b"])
        view = read_job_status(self.db, "job-1", now=NOW + timedelta(days=1))
        self.assertEqual(view.status, JobStatus.COMPLETED)
        self.assertEqual(view.result_ids, ["a", "b"])


class TestWatchdogAndProcessorRace(WatchdogTestCase):
    def _runtime(self, model, sleep=None):
        return ConversionRuntime(
            session_factory=self.SessionLocal,
            blob_store=self.store,
            model=model,
            image_delay_s=0,
            retry_backoff_s=0,
            sleep=sleep or RecordingSleep(),
        )

    async def test_processor_skips_a_job_the_watchdog_already_failed(self):
        self._make_job("job-1")
        read_job_status(self.db, "job-1", now=NOW + timedelta(seconds=61))

        model = ScriptedModel([])
        await process_conversion_job(self._runtime(model), "job-1")

        view = read_job_status(self.db, "job-1", now=NOW + timedelta(seconds=62))
        self.assertEqual(view.status, JobStatus.FAILED)
        self.assertEqual(view.error_message, NOT_STARTED_MESSAGE)
        self.assertEqual(model.calls, [])
        self.assertEqual(self._refunds("job-1"), [2])
        self.assertEqual(self.store.keys(), [])

    async def test_processor_stops_when_the_watchdog_takes_over_mid_run(self):
        self._make_job("job-1", total=2)
        watchdog_db = self.SessionLocal()
        later = utcnow() + timedelta(minutes=10)

        class TimeoutDuringFirstCall(ScriptedModel):
            async def generate(inner, parts, temperature):
                read_job_status(watchdog_db, "job-1", now=later)
                return await super().generate(parts, temperature)

        model = TimeoutDuringFirstCall([ImagePart(data=png_bytes("out"))])
        try:
            await process_conversion_job(self._runtime(model), "job-1")
        finally:
            watchdog_db.close()

        view = read_job_status(self.db, "job-1", now=later)
        self.assertEqual(view.status, JobStatus.FAILED)
        self.assertEqual(view.error_message, TIMED_OUT_MESSAGE)
        self.assertEqual(len(model.calls), 1)
        # only the watchdog refunded: both inputs were unresolved when it fired
        self.assertEqual(self._refunds("job-1"), [2])


if __name__ == "__main__":
    unittest.main()
