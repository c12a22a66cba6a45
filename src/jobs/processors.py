import asyncio
from pathlib import Path
from typing import Optional

import structlog

from src.config import settings
from src.jobs.errors import JobError
from src.jobs.registry import ProcessorRegistry
from src.jobs.status import JobStatusTracker
from src.jobs.types import JobType, ProcessResult
from src.providers.anthropic import ClaudeClient
from src.providers.gemini import GeminiClient
from src.providers.whisper import WhisperClient

logger = structlog.get_logger()


class BaseProcessor:
    """Shared plumbing for processors that report status as they go.

    Processors record the failed status themselves when they know why a job
    failed, and flag the result so the dispatcher does not overwrite it.
    """

    api_type = "provider"

    def __init__(self, tracker: JobStatusTracker) -> None:
        self.tracker = tracker

    async def _fail(
        self,
        job_id: str,
        message: str,
        error: Optional[BaseException] = None,
        should_retry: Optional[bool] = None,
    ) -> ProcessResult:
        recorded = await self.tracker.to_failed(job_id, str(error) if error else message)
        if not recorded and not await self.tracker.is_job_active(job_id):
            # Canceled while the request was in flight
            return self._inactive_result(job_id)
        return ProcessResult.failed(
            message,
            error=error,
            should_retry=should_retry,
            status_updated=True,
        )

    async def _still_active(self, job_id: str) -> bool:
        if await self.tracker.is_job_active(job_id):
            return True
        logger.info("job_no_longer_active", job_id=job_id, source="processor")
        return False

    @staticmethod
    def _inactive_result(job_id: str) -> ProcessResult:
        return ProcessResult.failed(
            f"Job {job_id} is no longer active",
            should_retry=False,
            status_updated=True,
        )


class TextGenerationProcessor(BaseProcessor):
    """Runs a prompt through a text generation provider.

    Payload keys:
        backgroundJobId, sessionId: identity of the job
        prompt: text sent to the model
        model, maxOutputTokens, temperature, systemPrompt: optional overrides
    """

    def __init__(self, client, tracker: JobStatusTracker) -> None:
        super().__init__(tracker)
        self.client = client
        self.api_type = client.api_type

    async def process(self, payload: dict) -> ProcessResult:
        job_id = payload["backgroundJobId"]
        prompt = payload.get("prompt")
        model = payload.get("model")
        max_output_tokens = payload.get("maxOutputTokens")

        if not prompt:
            return await self._fail(job_id, "Payload is missing a prompt", should_retry=False)

        if not await self._still_active(job_id):
            return self._inactive_result(job_id)

        await self.tracker.to_preparing(
            job_id,
            f"Setting up {self.api_type.upper()} API request",
            model=model or self.client.model,
            max_output_tokens=max_output_tokens,
        )
        await self.tracker.to_running(job_id, self.api_type)

        logger.info(
            "text_generation_started",
            job_id=job_id,
            api_type=self.api_type,
            prompt_length=len(prompt),
            source="processor",
        )

        try:
            result = await self.client.generate(
                prompt,
                model=model,
                max_output_tokens=max_output_tokens,
                temperature=payload.get("temperature", settings.default_temperature),
                system=payload.get("systemPrompt"),
            )
        except JobError as e:
            logger.error(
                "text_generation_failed",
                job_id=job_id,
                api_type=self.api_type,
                error=str(e),
                error_kind=e.kind.value,
                source="processor",
            )
            return await self._fail(job_id, f"{self.api_type.upper()} request failed", error=e)

        completed = await self.tracker.to_completed(
            job_id,
            result.text,
            tokens_sent=result.tokens_sent,
            tokens_received=result.tokens_received,
            total_tokens=result.total_tokens,
            model_used=result.model,
        )
        if not completed:
            return self._inactive_result(job_id)

        return ProcessResult.ok(
            f"{self.api_type.upper()} request completed",
            data={
                "text": result.text,
                "model": result.model,
                "tokens_sent": result.tokens_sent,
                "tokens_received": result.tokens_received,
            },
        )


class TranscriptionProcessor(BaseProcessor):
    """Transcribes an audio file.

    Payload keys:
        backgroundJobId, sessionId: identity of the job
        audioPath: path of the recorded audio file
        language: optional ISO-639-1 hint
    """

    api_type = "whisper"

    def __init__(self, client: WhisperClient, tracker: JobStatusTracker) -> None:
        super().__init__(tracker)
        self.client = client

    async def process(self, payload: dict) -> ProcessResult:
        job_id = payload["backgroundJobId"]
        audio_path = payload.get("audioPath")

        if not audio_path:
            return await self._fail(job_id, "Payload is missing an audio path", should_retry=False)

        if not await self._still_active(job_id):
            return self._inactive_result(job_id)

        try:
            audio = await asyncio.to_thread(Path(audio_path).read_bytes)
        except OSError as e:
            return await self._fail(
                job_id, f"Could not read audio file {audio_path}", error=e, should_retry=False
            )

        await self.tracker.to_running(job_id, self.api_type, "Transcribing audio")

        try:
            text = await self.client.transcribe(
                audio, filename=audio_path, language=payload.get("language")
            )
        except JobError as e:
            logger.error(
                "transcription_failed",
                job_id=job_id,
                error=str(e),
                error_kind=e.kind.value,
                source="processor",
            )
            return await self._fail(job_id, "Transcription request failed", error=e)

        if not await self.tracker.to_completed(job_id, text, model_used=self.client.model):
            return self._inactive_result(job_id)

        return ProcessResult.ok("Transcription completed", data={"text": text})


def build_registry(
    tracker: JobStatusTracker,
    gemini_client: Optional[GeminiClient] = None,
    claude_client: Optional[ClaudeClient] = None,
    whisper_client: Optional[WhisperClient] = None,
) -> ProcessorRegistry:
    """Build the processor registry used by the dispatcher.

    Called once at startup; clients default to ones configured from settings.
    """
    registry = ProcessorRegistry()
    registry.register(
        JobType.GEMINI_REQUEST,
        TextGenerationProcessor(gemini_client or GeminiClient(), tracker),
    )
    registry.register(
        JobType.CLAUDE_REQUEST,
        TextGenerationProcessor(claude_client or ClaudeClient(), tracker),
    )
    registry.register(
        JobType.VOICE_TRANSCRIPTION,
        TranscriptionProcessor(whisper_client or WhisperClient(), tracker),
    )
    return registry
