from typing import Optional

import httpx
import structlog

from src.config import settings
from src.providers.base import CompletionResult, ProviderClient

logger = structlog.get_logger()


class GeminiClient(ProviderClient):
    """Text generation through the Gemini generateContent endpoint."""

    api_type = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url or settings.gemini_base_url,
            api_key if api_key is not None else settings.gemini_api_key,
            transport=transport,
        )
        self.model = model or settings.gemini_model

    def _headers(self) -> dict[str, str]:
        return {
            "x-goog-api-key": self.api_key or "",
            "content-type": "application/json",
        }

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        system: Optional[str] = None,
    ) -> CompletionResult:
        """Send a single-turn prompt and return the generated text."""
        model = model or self.model
        generation_config = {
            "maxOutputTokens": max_output_tokens or settings.default_max_output_tokens,
        }
        if temperature is not None:
            generation_config["temperature"] = temperature

        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        data = await self._post(f"/v1beta/models/{model}:generateContent", json=body)

        text = ""
        candidates = data.get("candidates") or []
        if candidates:
            parts = candidates[0].get("content", {}).get("parts", [])
            text = "".join(part.get("text", "") for part in parts)

        usage = data.get("usageMetadata", {})

        logger.info(
            "gemini_response_received",
            model=model,
            prompt_tokens=usage.get("promptTokenCount", 0),
            candidate_tokens=usage.get("candidatesTokenCount", 0),
            source="provider",
        )

        return CompletionResult(
            text=text,
            model=model,
            tokens_sent=usage.get("promptTokenCount", 0),
            tokens_received=usage.get("candidatesTokenCount", 0),
        )
