from typing import Optional

import httpx
import structlog

from src.config import settings
from src.providers.base import CompletionResult, ProviderClient

logger = structlog.get_logger()

ANTHROPIC_VERSION = "2023-06-01"


class ClaudeClient(ProviderClient):
    """Text generation through the Anthropic Messages API."""

    api_type = "claude"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url or settings.anthropic_base_url,
            api_key if api_key is not None else settings.anthropic_api_key,
            transport=transport,
        )
        self.model = model or settings.anthropic_model

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
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
        body = {
            "model": model or self.model,
            "max_tokens": max_output_tokens or settings.default_max_output_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if temperature is not None:
            body["temperature"] = temperature
        if system:
            body["system"] = system

        data = await self._post("/v1/messages", json=body)

        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        usage = data.get("usage", {})

        logger.info(
            "claude_response_received",
            model=data.get("model", body["model"]),
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            source="provider",
        )

        return CompletionResult(
            text=text,
            model=data.get("model", body["model"]),
            tokens_sent=usage.get("input_tokens", 0),
            tokens_received=usage.get("output_tokens", 0),
        )
