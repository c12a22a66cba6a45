from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable


class JobType(str, Enum):
    """Tags selecting which processor executes a queued job."""

    GEMINI_REQUEST = "gemini_request"
    CLAUDE_REQUEST = "claude_request"
    VOICE_TRANSCRIPTION = "voice_transcription"


@dataclass
class ProcessResult:
    """Outcome of executing one queued job."""
    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[BaseException] = None
    should_retry: Optional[bool] = None
    # Set by processors that already recorded the failed status themselves
    status_updated: bool = False

    @classmethod
    def ok(cls, message: str, data: Optional[Any] = None) -> "ProcessResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def failed(
        cls,
        message: str,
        error: Optional[BaseException] = None,
        should_retry: Optional[bool] = None,
        status_updated: bool = False,
    ) -> "ProcessResult":
        return cls(
            success=False,
            message=message,
            error=error,
            should_retry=should_retry,
            status_updated=status_updated,
        )


@runtime_checkable
class Processor(Protocol):
    """Executable unit for one job type."""

    async def process(self, payload: dict) -> ProcessResult:
        ...
