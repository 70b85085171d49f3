"""Tests for the transcode orchestrator."""

import asyncio
import gc
import uuid

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from media_pipeline.core.retry import RetryConfig
from media_pipeline.modules.media.repository import RenditionRepository
from media_pipeline.modules.media.service import AssetNotFoundError
from media_pipeline.modules.transcoding.client import (
    ExternalJobState,
    ExternalJobStatus,
    ProducedOutput,
    TranscoderRejectedError,
    TranscoderTransportError,
)
from media_pipeline.modules.transcoding.models import JobStatus
from media_pipeline.modules.transcoding.repository import TranscodeJobRepository
from media_pipeline.modules.transcoding.service import (
    ExternalJobRejected,
    InvalidLadderError,
    JobNotFoundError,
    PollTransportError,
    SubmissionFailed,
    TranscodeOrchestrator,
)

from conftest import build_test_orchestrator

LADDER = ["hd1080", "hd720", "sd480"]


def _success(base_key, *quality_ids):
    return ExternalJobStatus(
        state=ExternalJobState.SUCCESS,
        outputs=tuple(ProducedOutput(q, f"{base_key}/{q}/playlist.m3u8") for q in quality_ids),
    )


def _base_key(asset):
    return asset.source_key.rsplit(".", 1)[0]


async def _ready_ids(session_factory, asset_id):
    async with session_factory() as session:
        renditions = await RenditionRepository(session).get_ready_for_asset(asset_id)
        return sorted(r.quality_id for r in renditions)


async def _events(session_factory, job_id):
    async with session_factory() as session:
        return await TranscodeJobRepository(session).get_events(job_id)


class TestSubmit:
    async def test_submit_moves_job_to_submitted(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)

        assert job.status is JobStatus.SUBMITTED
        assert job.external_job_id == "ext-1"
        assert job.attempts == 1
        assert job.requested_ladder == LADDER
        assert job.submitted_at is not None

        description = transcoder.submitted[0]
        assert description.input_key == asset.source_key
        assert description.output_prefix == _base_key(asset)
        assert description.requested_qualities == tuple(LADDER)

    async def test_transient_failures_then_success(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        transcoder.fail_submissions(3)

        job = await orchestrator.submit(asset.id, LADDER)

        assert job.status is JobStatus.SUBMITTED
        assert job.attempts == 4
        assert len(transcoder.submitted) == 1

    async def test_exhausted_retries_fail_the_job(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        transcoder.fail_submissions(5)

        with pytest.raises(SubmissionFailed) as exc_info:
            await orchestrator.submit(asset.id, LADDER)

        assert exc_info.value.attempts == 5
        job = await orchestrator.get_job(exc_info.value.job_id)
        assert job.status is JobStatus.FAILED
        assert job.attempts == 5
        assert job.external_job_id is None
        assert "connection reset" in job.last_error

    async def test_rejection_fails_without_retry(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        transcoder.submit_errors.append(TranscoderRejectedError("unsupported codec"))

        with pytest.raises(ExternalJobRejected) as exc_info:
            await orchestrator.submit(asset.id, LADDER)

        job = await orchestrator.get_job(exc_info.value.job_id)
        assert job.status is JobStatus.FAILED
        assert job.attempts == 1
        assert "unsupported codec" in job.last_error

    async def test_ladder_defaults_and_is_put_in_registry_order(self, orchestrator, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id)
        assert job.requested_ladder == LADDER

        other = await make_asset()
        job = await orchestrator.submit(other.id, ["sd480", "hd4k"])
        assert job.requested_ladder == ["hd4k", "sd480"]

    @pytest.mark.parametrize("ladder", [[], ["hd8k"], ["hd720", "bogus"]])
    async def test_invalid_ladder(self, orchestrator, transcoder, make_asset, ladder) -> None:
        asset = await make_asset()
        with pytest.raises(InvalidLadderError):
            await orchestrator.submit(asset.id, ladder)
        assert transcoder.submitted == []

    async def test_unknown_asset(self, orchestrator) -> None:
        with pytest.raises(AssetNotFoundError):
            await orchestrator.submit(uuid.uuid4(), LADDER)

    async def test_second_submit_reuses_active_job(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        first = await orchestrator.submit(asset.id, LADDER)
        second = await orchestrator.submit(asset.id, ["sd480"])
        assert second.id == first.id
        assert len(transcoder.submitted) == 1

    async def test_concurrent_submits_coalesce(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        transcoder.submit_gate = asyncio.Event()

        tasks = [asyncio.create_task(orchestrator.submit(asset.id, LADDER)) for _ in range(3)]
        await asyncio.sleep(0.1)
        transcoder.submit_gate.set()
        jobs = await asyncio.gather(*tasks)

        assert len({job.id for job in jobs}) == 1
        assert len(transcoder.submitted) == 1

    async def test_resubmit_after_terminal_creates_new_job(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        transcoder.submit_errors.append(TranscoderRejectedError("bad"))
        with pytest.raises(ExternalJobRejected) as exc_info:
            await orchestrator.submit(asset.id, LADDER)

        job = await orchestrator.submit(asset.id, LADDER)
        assert job.id != exc_info.value.job_id
        assert job.status is JobStatus.SUBMITTED


class TestPoll:
    async def test_progress_moves_to_processing(self, orchestrator, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)

        job = await orchestrator.poll(job.id)
        assert job.status is JobStatus.PROCESSING

        job = await orchestrator.poll(job.id)
        assert job.status is JobStatus.PROCESSING

    async def test_partial_outputs_register_only_what_was_produced(
        self, orchestrator, transcoder, make_asset, session_factory
    ) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.report(job.external_job_id, _success(_base_key(asset), "sd480", "hd720"))

        job = await orchestrator.poll(job.id)

        assert job.status is JobStatus.COMPLETE
        assert job.completed_at is not None
        assert await _ready_ids(session_factory, asset.id) == ["hd720", "sd480"]

    async def test_rendition_keys_and_job_link(self, orchestrator, transcoder, make_asset, session_factory) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, ["hd720"])
        transcoder.report(job.external_job_id, _success(_base_key(asset), "hd720"))
        await orchestrator.poll(job.id)

        async with session_factory() as session:
            rendition = await RenditionRepository(session).get(asset.id, "hd720")
        assert rendition.ready
        assert rendition.storage_key == f"{_base_key(asset)}/hd720/playlist.m3u8"
        assert rendition.transcode_job_id == job.id

    async def test_unrequested_and_unknown_outputs_are_ignored(
        self, orchestrator, transcoder, make_asset, session_factory
    ) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, ["hd720"])
        transcoder.report(job.external_job_id, _success(_base_key(asset), "hd720", "hd1080", "hd9000"))

        job = await orchestrator.poll(job.id)

        assert job.status is JobStatus.COMPLETE
        assert await _ready_ids(session_factory, asset.id) == ["hd720"]

    async def test_existing_ready_rendition_is_untouched(
        self, orchestrator, transcoder, make_asset, session_factory
    ) -> None:
        asset = await make_asset(ready=("hd720",))
        job = await orchestrator.submit(asset.id, ["hd720"])
        transcoder.report(job.external_job_id, ExternalJobStatus(
            state=ExternalJobState.SUCCESS,
            outputs=(ProducedOutput("hd720", "videos/elsewhere/hd720/playlist.m3u8"),),
        ))
        await orchestrator.poll(job.id)

        async with session_factory() as session:
            rendition = await RenditionRepository(session).get(asset.id, "hd720")
        assert rendition.storage_key == f"{_base_key(asset)}/hd720/playlist.m3u8"
        assert rendition.transcode_job_id is None

    async def test_external_error_fails_job(self, orchestrator, transcoder, make_asset, session_factory) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.report(
            job.external_job_id,
            ExternalJobStatus(state=ExternalJobState.IN_PROGRESS),
            ExternalJobStatus(state=ExternalJobState.ERROR, error_message="input corrupt"),
        )

        job = await orchestrator.poll(job.id)
        assert job.status is JobStatus.PROCESSING
        job = await orchestrator.poll(job.id)
        assert job.status is JobStatus.FAILED
        assert job.last_error == "input corrupt"
        assert await _ready_ids(session_factory, asset.id) == []

    async def test_cancelled_job_fails(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.report(job.external_job_id, ExternalJobStatus(state=ExternalJobState.CANCELLED))

        job = await orchestrator.poll(job.id)
        assert job.status is JobStatus.FAILED
        assert "cancelled" in job.last_error

    async def test_rejected_status_lookup_fails_job(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.status_errors.append(TranscoderRejectedError("job not found"))

        job = await orchestrator.poll(job.id)
        assert job.status is JobStatus.FAILED

    async def test_polling_terminal_job_is_a_no_op(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.report(job.external_job_id, _success(_base_key(asset), *LADDER))
        await orchestrator.poll(job.id)
        calls = len(transcoder.status_calls)

        for _ in range(3):
            job = await orchestrator.poll(job.id)
            assert job.status is JobStatus.COMPLETE
        assert len(transcoder.status_calls) == calls

    async def test_transport_failure_leaves_status_unchanged(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.status_errors.extend(TranscoderTransportError("timeout") for _ in range(3))

        with pytest.raises(PollTransportError):
            await orchestrator.poll(job.id)

        job = await orchestrator.get_job(job.id)
        assert job.status is JobStatus.SUBMITTED
        assert len(transcoder.status_calls) == 3

    async def test_transport_failure_is_retried_within_a_poll(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.status_errors.extend(TranscoderTransportError("timeout") for _ in range(2))

        job = await orchestrator.poll(job.id)
        assert job.status is JobStatus.PROCESSING

    async def test_slow_transcoder_counts_as_transport_failure(
        self, session_factory, transcoder, make_asset, clock
    ) -> None:
        async def no_sleep(_delay):
            return None

        orchestrator = TranscodeOrchestrator(
            session_factory,
            transcoder,
            submit_retry=RetryConfig(max_attempts=1, initial_delay=0.0, max_delay=0.0),
            poll_retry=RetryConfig(max_attempts=2, initial_delay=0.0, max_delay=0.0),
            call_timeout=0.05,
            default_ladder=LADDER,
            clock=clock,
            sleep=no_sleep,
        )
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.status_gate = asyncio.Event()

        with pytest.raises(PollTransportError):
            await orchestrator.poll(job.id)
        assert (await orchestrator.get_job(job.id)).status is JobStatus.SUBMITTED

    async def test_concurrent_polls_call_the_transcoder_once(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.report(job.external_job_id, _success(_base_key(asset), *LADDER))
        transcoder.status_gate = asyncio.Event()

        tasks = [asyncio.create_task(orchestrator.poll(job.id)) for _ in range(4)]
        while not transcoder.status_calls:
            await asyncio.sleep(0.01)
        transcoder.status_gate.set()
        results = await asyncio.gather(*tasks)

        assert all(result.status is JobStatus.COMPLETE for result in results)
        assert len(transcoder.status_calls) == 1

    async def test_unknown_job(self, orchestrator) -> None:
        with pytest.raises(JobNotFoundError):
            await orchestrator.poll(uuid.uuid4())


class TestConcurrentWorkers:
    """Two orchestrators share a database but not their in-process locks."""

    async def _race(self, transcoder, first, second, job_id):
        transcoder.status_gate = asyncio.Event()
        calls_before = len(transcoder.status_calls)
        tasks = [asyncio.create_task(first.poll(job_id)), asyncio.create_task(second.poll(job_id))]
        while len(transcoder.status_calls) < calls_before + 2:
            await asyncio.sleep(0.01)
        transcoder.status_gate.set()
        return await asyncio.gather(*tasks)

    @pytest.mark.parametrize("start_processing", [True, False])
    async def test_racing_completions_register_renditions_once(
        self, session_factory, transcoder, clock, make_asset, start_processing
    ) -> None:
        first = build_test_orchestrator(session_factory, transcoder, clock)
        second = build_test_orchestrator(session_factory, transcoder, clock)
        asset = await make_asset()
        job = await first.submit(asset.id, LADDER)
        if start_processing:
            job = await first.poll(job.id)
            assert job.status is JobStatus.PROCESSING
        transcoder.report(job.external_job_id, _success(_base_key(asset), *LADDER))

        results = await self._race(transcoder, first, second, job.id)

        assert [r.status for r in results] == [JobStatus.COMPLETE, JobStatus.COMPLETE]
        assert await _ready_ids(session_factory, asset.id) == sorted(LADDER)
        events = await _events(session_factory, job.id)
        assert [e.to_status for e in events].count(JobStatus.COMPLETE) == 1

    async def test_rendition_conflict_counts_as_losing_the_race(
        self, orchestrator, transcoder, make_asset, monkeypatch
    ) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        job = await orchestrator.poll(job.id)
        transcoder.report(job.external_job_id, _success(_base_key(asset), *LADDER))

        async def conflicting_insert(self, *args, **kwargs):
            raise IntegrityError("INSERT INTO renditions", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(RenditionRepository, "register_ready", conflicting_insert)
        job = await orchestrator.poll(job.id)

        # The whole transaction rolled back; the job is left for the winner
        assert job.status is JobStatus.PROCESSING

    async def test_sweep_survives_a_database_error(self, orchestrator, transcoder, make_asset, monkeypatch) -> None:
        broken_asset = await make_asset()
        broken = await orchestrator.submit(broken_asset.id, LADDER)
        transcoder.report(broken.external_job_id, _success(_base_key(broken_asset), *LADDER))
        healthy_asset = await make_asset()
        await orchestrator.submit(healthy_asset.id, LADDER)

        original_apply = TranscodeOrchestrator._apply_status

        async def flaky_apply(self, session, job, status):
            if job.id == broken.id:
                raise OperationalError("UPDATE transcode_jobs", {}, Exception("database is locked"))
            return await original_apply(self, session, job, status)

        monkeypatch.setattr(TranscodeOrchestrator, "_apply_status", flaky_apply)
        summary = await orchestrator.poll_active_jobs()

        assert summary == {"error": 1, "processing": 1}


class TestLockLifetime:
    async def test_locks_are_released_after_use(self, orchestrator, transcoder, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.report(job.external_job_id, _success(_base_key(asset), *LADDER))
        await orchestrator.poll(job.id)
        await orchestrator.expire_stale_jobs()

        gc.collect()
        assert len(orchestrator._asset_locks) == 0
        assert len(orchestrator._job_locks) == 0

    async def test_lock_is_shared_while_held(self, orchestrator) -> None:
        job_id = uuid.uuid4()
        lock = orchestrator._lock(orchestrator._job_locks, job_id)
        async with lock:
            assert orchestrator._lock(orchestrator._job_locks, job_id) is lock


class TestEventLog:
    async def test_events_record_each_step(self, orchestrator, transcoder, make_asset, session_factory) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.report(job.external_job_id, _success(_base_key(asset), *LADDER))
        await orchestrator.poll(job.id)

        events = await _events(session_factory, job.id)
        assert [e.sequence for e in events] == [1, 2, 3, 4]
        assert [e.to_status for e in events] == [
            JobStatus.QUEUED,
            JobStatus.SUBMITTED,
            JobStatus.PROCESSING,
            JobStatus.COMPLETE,
        ]
        assert events[0].from_status is None
        for previous, current in zip(events, events[1:]):
            assert current.from_status is previous.to_status

    async def test_ranks_never_decrease(self, orchestrator, transcoder, make_asset, session_factory) -> None:
        asset = await make_asset()
        transcoder.fail_submissions(2)
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.report(
            job.external_job_id,
            ExternalJobStatus(state=ExternalJobState.IN_PROGRESS),
            ExternalJobStatus(state=ExternalJobState.ERROR, error_message="boom"),
        )
        for _ in range(3):
            await orchestrator.poll(job.id)

        ranks = [e.to_status.rank for e in await _events(session_factory, job.id)]
        assert ranks == sorted(ranks)


class TestNotifications:
    async def test_notification_completes_job(self, orchestrator, make_asset, session_factory) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)

        job = await orchestrator.handle_notification(job.external_job_id, _success(_base_key(asset), "sd480"))

        assert job.status is JobStatus.COMPLETE
        assert await _ready_ids(session_factory, asset.id) == ["sd480"]

    async def test_notification_after_terminal_is_ignored(self, orchestrator, make_asset) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        await orchestrator.handle_notification(
            job.external_job_id, ExternalJobStatus(state=ExternalJobState.ERROR, error_message="boom")
        )

        job = await orchestrator.handle_notification(job.external_job_id, _success(_base_key(asset), *LADDER))
        assert job.status is JobStatus.FAILED

    async def test_unknown_external_id(self, orchestrator) -> None:
        with pytest.raises(JobNotFoundError):
            await orchestrator.handle_notification("ext-missing", ExternalJobStatus(state=ExternalJobState.SUCCESS))


class TestWatchdog:
    async def test_overdue_job_is_failed_on_poll(self, orchestrator, transcoder, make_asset, clock) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        clock.advance(3601)

        job = await orchestrator.poll(job.id)

        assert job.status is JobStatus.FAILED
        assert "Timed out" in job.last_error
        assert transcoder.status_calls == []

    async def test_job_within_deadline_is_polled(self, orchestrator, transcoder, make_asset, clock) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        clock.advance(3599)

        job = await orchestrator.poll(job.id)
        assert job.status is JobStatus.PROCESSING

    async def test_sweep_expires_stale_jobs_and_keeps_renditions(
        self, orchestrator, transcoder, make_asset, clock, session_factory
    ) -> None:
        stale_asset = await make_asset(ready=("sd480",))
        stale = await orchestrator.submit(stale_asset.id, LADDER)
        await orchestrator.poll(stale.id)
        clock.advance(1800)
        fresh_asset = await make_asset()
        fresh = await orchestrator.submit(fresh_asset.id, LADDER)
        clock.advance(1801)

        expired = await orchestrator.expire_stale_jobs()

        assert expired == [stale.id]
        assert (await orchestrator.get_job(stale.id)).status is JobStatus.FAILED
        assert (await orchestrator.get_job(fresh.id)).status is JobStatus.SUBMITTED
        assert await _ready_ids(session_factory, stale_asset.id) == ["sd480"]

    async def test_sweep_skips_terminal_jobs(self, orchestrator, transcoder, make_asset, clock) -> None:
        asset = await make_asset()
        job = await orchestrator.submit(asset.id, LADDER)
        transcoder.report(job.external_job_id, _success(_base_key(asset), *LADDER))
        await orchestrator.poll(job.id)
        clock.advance(7200)

        assert await orchestrator.expire_stale_jobs() == []
        assert (await orchestrator.get_job(job.id)).status is JobStatus.COMPLETE


class TestPollActiveJobs:
    async def test_summary_counts(self, orchestrator, transcoder, make_asset) -> None:
        done_asset = await make_asset()
        done = await orchestrator.submit(done_asset.id, LADDER)
        transcoder.report(done.external_job_id, _success(_base_key(done_asset), *LADDER))

        running_asset = await make_asset()
        await orchestrator.submit(running_asset.id, LADDER)

        summary = await orchestrator.poll_active_jobs()
        assert summary == {"complete": 1, "processing": 1}

        summary = await orchestrator.poll_active_jobs()
        assert summary == {"processing": 1}
