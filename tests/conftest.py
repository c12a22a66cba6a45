"""
Global test configuration and fixtures for the job system tests.

Provides a temp-dir SQLite repository, the queue/registry/dispatcher wiring
and a scripted processor used across test modules.
"""

import pytest
import pytest_asyncio

from src.jobs.dispatcher import Dispatcher
from src.jobs.queue import JobQueue
from src.jobs.registry import ProcessorRegistry
from src.jobs.service import JobService
from src.jobs.status import JobStatusTracker
from src.jobs.types import ProcessResult
from src.storage.jobs import BackgroundJobRepository


class ScriptedProcessor:
    """Processor returning (or raising) a fixed sequence of outcomes.

    An outcome may be a ProcessResult, an exception to raise, or an async
    callable taking the payload.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def process(self, payload: dict) -> ProcessResult:
        self.calls.append(payload)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(payload)
        return outcome


@pytest_asyncio.fixture
async def repository(tmp_path) -> BackgroundJobRepository:
    """Initialized repository backed by a temporary database."""
    repo = BackgroundJobRepository(db_path=str(tmp_path / "jobs.db"))
    await repo.initialize()
    return repo


@pytest.fixture
def tracker(repository) -> JobStatusTracker:
    return JobStatusTracker(repository)


@pytest.fixture
def queue() -> JobQueue:
    return JobQueue()


@pytest.fixture
def registry() -> ProcessorRegistry:
    return ProcessorRegistry()


@pytest.fixture
def dispatcher(queue, registry, tracker) -> Dispatcher:
    return Dispatcher(queue, registry, tracker)


@pytest.fixture
def service(repository, queue, tracker) -> JobService:
    return JobService(repository, queue, tracker)


@pytest.fixture
def sample_session_id() -> str:
    return "session-123"


@pytest.fixture
def make_payload():
    """Build a worker payload for a background job."""

    def _make(background_job_id: str = "job-1", session_id: str = "session-123", **extra) -> dict:
        return {"backgroundJobId": background_job_id, "sessionId": session_id, **extra}

    return _make


@pytest.fixture
def scripted():
    """Factory for ScriptedProcessor instances."""
    return ScriptedProcessor
