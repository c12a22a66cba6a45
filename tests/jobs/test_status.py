"""
Tests for the job status state machine and JobStatusTracker.
"""

import pytest
import pytest_asyncio

from src.jobs.status import (
    MAX_ERROR_MESSAGE_LENGTH,
    JobStatus,
    can_transition,
    is_terminal,
    summarize_error,
)


@pytest_asyncio.fixture
async def job(repository, sample_session_id):
    return await repository.create(sample_session_id, "gemini", "regex_generation", "input")


class TestStateMachine:
    @pytest.mark.parametrize(
        "current, target",
        [
            ("created", "queued"),
            ("created", "preparing"),
            ("queued", "preparing"),
            ("preparing", "running"),
            ("running", "completed"),
            ("running", "failed"),
            ("queued", "canceled"),
            ("failed", "queued"),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.parametrize(
        "current, target",
        [
            ("completed", "running"),
            ("completed", "failed"),
            ("canceled", "running"),
            ("canceled", "completed"),
            ("failed", "completed"),
            ("created", "completed"),
            ("running", "bogus"),
        ],
    )
    def test_refused(self, current, target):
        assert can_transition(current, target) is False

    def test_terminal_statuses(self):
        assert is_terminal("completed")
        assert is_terminal("failed")
        assert is_terminal("canceled")
        assert not is_terminal("running")

    def test_summarize_error(self):
        assert summarize_error(None) == "Job failed without a specific error message."
        assert summarize_error("  multi\n  line\terror ") == "multi line error"

        summary = summarize_error("x" * 2000)
        assert len(summary) == MAX_ERROR_MESSAGE_LENGTH
        assert summary.endswith("...")


class TestTrackerTransitions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method, args",
        [
            ("to_queued", ("msg",)),
            ("to_preparing", ()),
            ("to_running", ()),
            ("to_completed", ("response",)),
            ("to_failed", ("error",)),
            ("to_canceled", ()),
        ],
    )
    async def test_empty_job_id_fails_fast(self, tracker, method, args):
        with pytest.raises(ValueError):
            await getattr(tracker, method)("", *args)

    @pytest.mark.asyncio
    async def test_missing_job_is_skipped(self, tracker):
        assert await tracker.to_running("does-not-exist") is False

    @pytest.mark.asyncio
    async def test_happy_path(self, tracker, repository, job):
        assert await tracker.to_preparing(job.id, "Setting up", model="gemini-2.0-flash", max_output_tokens=1024)
        stored = await repository.get(job.id)
        assert stored.status == "preparing"
        assert stored.model_used == "gemini-2.0-flash"
        assert stored.metadata["maxOutputTokens"] == 1024

        assert await tracker.to_running(job.id, "gemini")
        stored = await repository.get(job.id)
        assert stored.status == "running"
        assert stored.status_message == "Processing with GEMINI API"
        assert stored.start_time is not None
        assert stored.end_time is None

        assert await tracker.to_completed(job.id, "answer", tokens_sent=10, tokens_received=5)
        stored = await repository.get(job.id)
        assert stored.status == "completed"
        assert stored.response == "answer"
        assert stored.total_tokens == 15
        assert stored.end_time is not None
        assert stored.error_message == ""
        assert "duration" in stored.metadata

    @pytest.mark.asyncio
    async def test_running_keeps_start_time(self, tracker, repository, job):
        await tracker.to_running(job.id)
        first = (await repository.get(job.id)).start_time

        await tracker.to_running(job.id, status_message="Still working")
        stored = await repository.get(job.id)

        assert stored.start_time == first
        assert stored.status_message == "Still working"
        assert stored.metadata["runningUpdateCount"] == 2

    @pytest.mark.asyncio
    async def test_completed_without_response_gets_default(self, tracker, repository, job):
        await tracker.to_running(job.id)
        await tracker.to_completed(job.id, None)

        stored = await repository.get(job.id)
        assert stored.response == "Job completed with no output content."

    @pytest.mark.asyncio
    async def test_terminal_job_refuses_transitions(self, tracker, repository, job):
        await tracker.to_running(job.id)
        await tracker.to_completed(job.id, "done")

        assert await tracker.to_running(job.id) is False
        assert await tracker.to_failed(job.id, "late error") is False
        assert await tracker.to_canceled(job.id) is False
        assert (await repository.get(job.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_canceled_job_cannot_complete(self, tracker, repository, job):
        await tracker.to_running(job.id)
        await tracker.to_canceled(job.id, "user closed session")

        assert await tracker.to_completed(job.id, "too late") is False
        stored = await repository.get(job.id)
        assert stored.status == "canceled"
        assert stored.response is None

    @pytest.mark.asyncio
    async def test_failed_truncates_error(self, tracker, repository, job):
        await tracker.to_failed(job.id, "e" * 5000)

        stored = await repository.get(job.id)
        assert stored.status == "failed"
        assert len(stored.error_message) == MAX_ERROR_MESSAGE_LENGTH
        assert stored.status_message == "Failed due to error"
        assert stored.metadata["hasError"] is True

    @pytest.mark.asyncio
    async def test_failed_job_can_be_requeued_for_retry(self, tracker, repository, job):
        await tracker.to_failed(job.id, "timeout")

        assert await tracker.to_queued(job.id, "Re-enqueued for retry") is True
        stored = await repository.get(job.id)
        assert stored.status == "queued"
        assert stored.end_time is None

    @pytest.mark.asyncio
    async def test_cancel_preserves_partial_response(self, tracker, repository, job):
        await tracker.to_running(job.id)
        await repository.update_status(job.id, JobStatus.RUNNING, response="partial output")

        await tracker.to_canceled(job.id, "stopped")

        stored = await repository.get(job.id)
        assert stored.status == "canceled"
        assert stored.response == "partial output"
        assert stored.error_message == "stopped"
        assert stored.metadata["userCancelled"] is True

    @pytest.mark.asyncio
    async def test_handle_api_error(self, tracker, repository, job):
        await tracker.to_running(job.id, "claude")

        await tracker.handle_api_error(job.id, 429, "slow down " * 30, api_type="claude")

        stored = await repository.get(job.id)
        assert stored.status == "failed"
        assert stored.error_message.startswith("CLAUDE API Error [rate_limit_error]: 429 slow down")
        assert stored.error_message.endswith("...")
        assert stored.metadata["error"]["isRetryable"] is True
        assert stored.metadata["lastErrorStatus"] == 429

    @pytest.mark.asyncio
    async def test_is_job_active(self, tracker, job):
        assert await tracker.is_job_active(job.id) is True
        await tracker.to_canceled(job.id)
        assert await tracker.is_job_active(job.id) is False
        assert await tracker.is_job_active("") is False


class TestSessionCancellation:
    @pytest.mark.asyncio
    async def test_cancel_session_jobs(self, tracker, repository, sample_session_id):
        queued = await repository.create(sample_session_id, "gemini", "regex_generation")
        running = await repository.create(sample_session_id, "claude", "path_finder")
        done = await repository.create(sample_session_id, "claude", "path_finder")
        other = await repository.create("other-session", "gemini", "regex_generation")
        await tracker.to_queued(queued.id, "queued")
        await tracker.to_running(running.id)
        await tracker.to_running(done.id)
        await tracker.to_completed(done.id, "ok")

        canceled = await tracker.cancel_session_jobs(sample_session_id)

        assert canceled == 2
        assert (await repository.get(queued.id)).status == "canceled"
        assert (await repository.get(running.id)).status == "canceled"
        assert (await repository.get(done.id)).status == "completed"
        assert (await repository.get(other.id)).status == "created"

    @pytest.mark.asyncio
    async def test_cancel_session_excludes_task_types(self, tracker, repository, sample_session_id):
        plan = await repository.create(sample_session_id, "claude", "implementation_plan")
        regex = await repository.create(sample_session_id, "gemini", "regex_generation")

        canceled = await tracker.cancel_session_jobs(
            sample_session_id, exclude_task_types=["implementation_plan"]
        )

        assert canceled == 1
        assert (await repository.get(plan.id)).status == "created"
        assert (await repository.get(regex.id)).status == "canceled"

    @pytest.mark.asyncio
    async def test_cancel_session_requires_id(self, tracker):
        with pytest.raises(ValueError):
            await tracker.cancel_session_jobs(" ")
