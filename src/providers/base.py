from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from src.config import settings
from src.jobs.errors import (
    ApiErrorType,
    ConfigurationError,
    TransientProviderError,
    provider_error_from_status,
)

logger = structlog.get_logger()


@dataclass
class CompletionResult:
    """Text returned by a provider together with token usage."""
    text: str
    model: str
    tokens_sent: int = 0
    tokens_received: int = 0

    @property
    def total_tokens(self) -> int:
        return self.tokens_sent + self.tokens_received


class ProviderClient:
    """Base class for HTTP clients of external AI providers.

    Turns transport failures and HTTP error responses into typed provider
    errors so the dispatcher can classify them without string matching.
    """

    api_type = "provider"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize provider client.

        Args:
            base_url: Provider API base URL
            api_key: API key; requests fail with ConfigurationError when missing
            timeout: Request timeout in seconds. Uses settings if not provided.
            transport: Optional httpx transport (used to stub the provider)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout or settings.provider_timeout_seconds
        self.transport = transport

        logger.info(
            "provider_client_initialized",
            api_type=self.api_type,
            base_url=self.base_url,
            has_api_key=bool(api_key),
            source="provider",
        )

    def _headers(self) -> dict[str, str]:
        return {}

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError(f"{self.api_type.upper()} API key is not configured")
        return self.api_key

    async def _post(self, path: str, **kwargs: Any) -> dict:
        """POST to the provider and return the decoded JSON body.

        Raises:
            TransientProviderError: On transport failures and retryable statuses
            PermanentProviderError: On other HTTP error statuses
        """
        self._require_api_key()
        url = f"{self.base_url}{path}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(
                f"{self.api_type.upper()} request timeout: {e}",
                error_type=ApiErrorType.TIMEOUT_ERROR,
            ) from e
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"{self.api_type.upper()} network error: {e}",
                error_type=ApiErrorType.NETWORK_ERROR,
            ) from e

        if response.is_error:
            error = provider_error_from_status(
                response.status_code,
                f"{self.api_type.upper()} API returned {response.status_code}: "
                f"{response.text[:200]}",
            )
            logger.warning(
                "provider_request_failed",
                api_type=self.api_type,
                status_code=response.status_code,
                error_type=error.error_type.value,
                retryable=error.retryable,
                source="provider",
            )
            raise error

        return response.json()
