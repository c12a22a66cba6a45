"""Job queue system for background task processing."""

from .dispatcher import Dispatcher
from .queue import MAX_ATTEMPTS, JobQueue, QueuedJob
from .registry import ProcessorRegistry
from .status import JobStatus, JobStatusTracker
from .types import JobType, ProcessResult
from .worker import start_worker

__all__ = [
    "Dispatcher",
    "JobQueue",
    "JobStatus",
    "JobStatusTracker",
    "JobType",
    "MAX_ATTEMPTS",
    "ProcessResult",
    "ProcessorRegistry",
    "QueuedJob",
    "start_worker",
]
