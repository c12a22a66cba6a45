"""Persistence for background job status."""

from .jobs import BackgroundJob, BackgroundJobRepository, JobNotFoundError

__all__ = ["BackgroundJob", "BackgroundJobRepository", "JobNotFoundError"]
