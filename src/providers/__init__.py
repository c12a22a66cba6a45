"""HTTP clients for the external AI providers jobs call."""

from .anthropic import ClaudeClient
from .base import CompletionResult, ProviderClient
from .gemini import GeminiClient
from .whisper import WhisperClient

__all__ = ["ClaudeClient", "CompletionResult", "GeminiClient", "ProviderClient", "WhisperClient"]
