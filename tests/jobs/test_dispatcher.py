"""
Tests for Dispatcher

Covers the no-processor path, failure classification, retry scheduling,
exception containment and status-write failures.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from src.jobs.dispatcher import MAX_ATTEMPTS_SUFFIX, RE_ENQUEUED_SUFFIX, Dispatcher
from src.jobs.errors import ConfigurationError, PermanentProviderError, TransientProviderError
from src.jobs.queue import MAX_ATTEMPTS, JobQueue
from src.jobs.registry import ProcessorRegistry
from src.jobs.status import JobStatus
from src.jobs.types import ProcessResult


@pytest_asyncio.fixture
async def queued_job(repository, service, sample_session_id):
    """A background job created and enqueued as a claude_request."""
    job = await repository.create(sample_session_id, "claude", "implementation_plan", "prompt")
    await service.enqueue_job(
        "claude_request",
        {"backgroundJobId": job.id, "sessionId": sample_session_id, "prompt": "hi"},
        priority=5,
    )
    return job


def completing(tracker):
    """Outcome that finishes the backing job the way a real processor does."""

    async def _complete(payload):
        await tracker.to_running(payload["backgroundJobId"], "claude")
        await tracker.to_completed(payload["backgroundJobId"], "done", tokens_sent=3, tokens_received=4)
        return ProcessResult.ok("completed", data="done")

    return _complete


async def drain(queue, dispatcher):
    """Run the scheduling loop by hand until the queue is empty."""
    results = []
    while (job := queue.dequeue()) is not None:
        results.append((job, await dispatcher.dispatch(job)))
    return results


class TestDispatcherNoProcessor:
    @pytest.mark.asyncio
    async def test_no_processor_fails_without_retry(self, scripted, repository, queue, dispatcher, queued_job):
        queue.re_enqueue = MagicMock(wraps=queue.re_enqueue)
        job = queue.dequeue()

        result = await dispatcher.dispatch(job)

        assert result.success is False
        assert result.should_retry is False
        assert isinstance(result.error, ConfigurationError)
        assert "No processor registered" in result.message
        queue.re_enqueue.assert_not_called()
        assert queue.size() == 0

        stored = await repository.get(queued_job.id)
        assert stored.status == JobStatus.FAILED.value
        assert "No processor registered" in stored.error_message


class TestDispatcherOutcomes:
    @pytest.mark.asyncio
    async def test_success_returned_unchanged(self, scripted, registry, queue, dispatcher, tracker, queued_job):
        registry.register("claude_request", scripted(completing(tracker)))

        result = await dispatcher.dispatch(queue.dequeue())

        assert result.success is True
        assert result.message == "completed"
        assert result.data == "done"
        assert queue.size() == 0

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, scripted, repository, registry, queue, dispatcher, queued_job):
        registry.register(
            "claude_request",
            scripted(ProcessResult.failed("bad", error=Exception("invalid api key"))),
        )

        result = await dispatcher.dispatch(queue.dequeue())

        assert result.success is False
        assert RE_ENQUEUED_SUFFIX not in result.message
        assert queue.size() == 0
        stored = await repository.get(queued_job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_message == "invalid api key"

    @pytest.mark.asyncio
    async def test_rate_limit_failure_re_enqueued(self, scripted, repository, registry, queue, dispatcher, queued_job):
        registry.register(
            "claude_request",
            scripted(ProcessResult.failed("failed", error=Exception("Rate limit exceeded"))),
        )
        first = queue.dequeue()

        result = await dispatcher.dispatch(first)

        assert result.message.endswith(RE_ENQUEUED_SUFFIX)
        retry = queue.peek()
        assert retry.attempt == 2
        assert retry.priority == first.priority - 1
        assert retry.background_job_id == queued_job.id
        assert retry.id != first.id

        stored = await repository.get(queued_job.id)
        assert stored.status == JobStatus.QUEUED.value
        assert stored.metadata["queueJobId"] == retry.id

    @pytest.mark.asyncio
    async def test_explicit_should_retry_overrides_classification(self, scripted, registry, queue, dispatcher, queued_job):
        registry.register(
            "claude_request",
            scripted(
                ProcessResult.failed("x", error=Exception("network down"), should_retry=False)
            ),
        )

        await dispatcher.dispatch(queue.dequeue())

        assert queue.size() == 0

    @pytest.mark.asyncio
    async def test_typed_error_kind_used(self, scripted, registry, queue, dispatcher, queued_job):
        registry.register(
            "claude_request",
            scripted(
                ProcessResult.failed("x", error=TransientProviderError("upstream hiccup"))
            ),
        )

        await dispatcher.dispatch(queue.dequeue())

        assert queue.size() == 1

    @pytest.mark.asyncio
    async def test_status_already_updated_is_not_overwritten(self, scripted, repository, registry, queue, dispatcher, tracker, queued_job):
        async def fail_itself(payload):
            await tracker.to_failed(payload["backgroundJobId"], "processor wrote this")
            return ProcessResult.failed(
                "failed", error=PermanentProviderError("different text"), status_updated=True
            )

        registry.register("claude_request", scripted(fail_itself))

        await dispatcher.dispatch(queue.dequeue())

        stored = await repository.get(queued_job.id)
        assert stored.error_message == "processor wrote this"


class TestDispatcherCancellation:
    @pytest.mark.asyncio
    async def test_canceled_job_is_not_retried(self, scripted, repository, registry, queue, dispatcher, service, queued_job, sample_session_id):
        async def canceled_then_timeout(payload):
            await service.cancel_session(sample_session_id)
            return ProcessResult.failed("attempt failed", error=TransientProviderError("read timeout"))

        registry.register("claude_request", scripted(canceled_then_timeout))

        result = await dispatcher.dispatch(queue.dequeue())

        assert result.success is False
        assert result.should_retry is False
        assert result.message == "attempt failed"
        assert queue.size() == 0
        assert queue.get_stats()["retries"] == 0
        stored = await repository.get(queued_job.id)
        assert stored.status == JobStatus.CANCELED.value


class TestDispatcherExceptions:
    @pytest.mark.asyncio
    async def test_exception_is_contained_and_classified(self, scripted, repository, registry, queue, dispatcher, queued_job):
        registry.register("claude_request", scripted(RuntimeError("socket hang up")))

        result = await dispatcher.dispatch(queue.dequeue())

        assert result.success is False
        assert isinstance(result.error, RuntimeError)
        assert "socket hang up" in result.message
        assert result.message.endswith(RE_ENQUEUED_SUFFIX)
        assert queue.size() == 1

    @pytest.mark.asyncio
    async def test_programming_error_not_retried(self, scripted, repository, registry, queue, dispatcher, queued_job):
        registry.register("claude_request", scripted(KeyError("prompt")))

        result = await dispatcher.dispatch(queue.dequeue())

        assert result.success is False
        assert queue.size() == 0
        stored = await repository.get(queued_job.id)
        assert stored.status == JobStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_status_write_failure_is_swallowed(self, scripted, queue, make_payload):
        registry = ProcessorRegistry()
        registry.register("claude_request", scripted(RuntimeError("timeout")))
        tracker = MagicMock()
        tracker.to_failed = AsyncMock(side_effect=RuntimeError("database is locked"))
        tracker.to_queued = AsyncMock(side_effect=RuntimeError("database is locked"))
        tracker.get_job = AsyncMock(return_value=None)
        dispatcher = Dispatcher(queue, registry, tracker)
        queue.enqueue("claude_request", make_payload("bg-1"), 2)

        result = await dispatcher.dispatch(queue.dequeue())

        assert result.success is False
        assert result.message.endswith(RE_ENQUEUED_SUFFIX)
        tracker.to_failed.assert_awaited_once()
        tracker.to_queued.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_processor_with_broken_repository(self, scripted, queue, make_payload):
        tracker = MagicMock()
        tracker.to_failed = AsyncMock(side_effect=ConnectionError("repository offline"))
        dispatcher = Dispatcher(queue, ProcessorRegistry(), tracker)
        queue.enqueue("unknown_type", make_payload("bg-2"), 1)

        result = await dispatcher.dispatch(queue.dequeue())

        assert result.success is False
        assert result.should_retry is False


class TestDispatcherRetryScenarios:
    @pytest.mark.asyncio
    async def test_two_timeouts_then_success(self, scripted, repository, registry, queue, dispatcher, tracker, queued_job):
        processor = scripted(
            ProcessResult.failed("attempt failed", error=Exception("Request timeout")),
            ProcessResult.failed("attempt failed", error=Exception("Request timeout")),
            completing(tracker),
        )
        registry.register("claude_request", processor)

        results = await drain(queue, dispatcher)

        assert len(processor.calls) == 3
        assert [job.attempt for job, _ in results] == [1, 2, 3]
        assert results[-1][1].success is True
        stored = await repository.get(queued_job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.response == "done"
        assert stored.total_tokens == 7

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_retry_budget(self, scripted, repository, registry, queue, dispatcher, queued_job):
        processor = scripted(
            *[ProcessResult.failed("attempt failed", error=Exception("Request timeout"))] * MAX_ATTEMPTS
        )
        registry.register("claude_request", processor)
        queue.re_enqueue = MagicMock(wraps=queue.re_enqueue)

        results = await drain(queue, dispatcher)

        assert len(processor.calls) == MAX_ATTEMPTS
        assert queue.re_enqueue.call_count == MAX_ATTEMPTS
        assert queue.re_enqueue.call_args_list and queue.size() == 0
        final = results[-1][1]
        assert MAX_ATTEMPTS_SUFFIX.strip("()") in final.message
        stored = await repository.get(queued_job.id)
        assert stored.status == JobStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_retries_never_concurrent(self, scripted, registry, make_payload):
        """Only one entry per background job exists at any time."""
        queue = JobQueue()
        tracker = MagicMock()
        tracker.to_failed = AsyncMock(return_value=True)
        tracker.to_queued = AsyncMock(return_value=True)
        tracker.get_job = AsyncMock(return_value=None)
        dispatcher = Dispatcher(queue, registry, tracker)

        async def check_single_entry(payload):
            assert not queue.contains_background_job(payload["backgroundJobId"])
            return ProcessResult.failed("x", error=Exception("503 from upstream"))

        registry.register("gemini_request", scripted(*[check_single_entry] * MAX_ATTEMPTS))
        queue.enqueue("gemini_request", make_payload("bg-9"), 3)

        await drain(queue, dispatcher)
