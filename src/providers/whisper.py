from pathlib import Path
from typing import Optional

import httpx
import structlog

from src.config import settings
from src.providers.base import ProviderClient

logger = structlog.get_logger()


class WhisperClient(ProviderClient):
    """Audio transcription through the OpenAI transcriptions endpoint."""

    api_type = "whisper"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url or settings.openai_base_url,
            api_key if api_key is not None else settings.openai_api_key,
            transport=transport,
        )
        self.model = model or settings.whisper_model

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key or ''}"}

    async def transcribe(
        self,
        audio: bytes,
        filename: str = "audio.webm",
        language: Optional[str] = None,
    ) -> str:
        """Transcribe audio bytes and return the text."""
        data = {"model": self.model}
        if language:
            data["language"] = language

        result = await self._post(
            "/v1/audio/transcriptions",
            data=data,
            files={"file": (Path(filename).name, audio)},
        )

        text = result.get("text", "")
        logger.info(
            "whisper_transcription_received",
            model=self.model,
            audio_size_kb=len(audio) / 1024,
            text_length=len(text),
            source="provider",
        )

        return text
