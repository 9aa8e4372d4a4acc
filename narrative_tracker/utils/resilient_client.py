"""
google-genai client with retries.

Rate limits (429) rotate to the next API key and back off; server overload
(503) only backs off. Any other failure, or running out of attempts, surfaces
as ``GeneratorError``.
"""

import asyncio
from enum import Enum
from typing import Any, Callable, Optional

from google.genai import Client as GenAIClient

from narrative_tracker.config import get_settings
from narrative_tracker.errors import GeneratorError
from narrative_tracker.utils.auth import get_api_key, mark_key_exhausted
from narrative_tracker.utils.logging_config import get_logger

logger = get_logger("tracker.resilient_client")


class RetryKind(str, Enum):
    rate_limit = "429 Rate Limit"
    overload = "503 Server Overload"


def classify_error(error: Exception) -> Optional[RetryKind]:
    """Retry class of a provider error, or ``None`` when it should not be retried."""
    code = getattr(error, "code", None)
    text = str(error).upper()
    if code == 429 or "429" in text or "RESOURCE_EXHAUSTED" in text:
        return RetryKind.rate_limit
    if code == 503 or "503" in text or "UNAVAILABLE" in text:
        return RetryKind.overload
    return None


class ResilientClient:
    """Wraps one google-genai ``Client`` and swaps it out when its key is exhausted."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client_factory: Callable[..., Any] = GenAIClient,
        **client_kwargs: Any,
    ):
        self._factory = client_factory
        self._client_kwargs = client_kwargs
        self._key = api_key or get_api_key()
        self._client = client_factory(api_key=self._key, **client_kwargs)

    def rotate(self) -> None:
        mark_key_exhausted(self._key)
        old_key, self._key = self._key, get_api_key()
        logger.info("Rotated API key %s... -> %s...", old_key[:8], self._key[:8])
        self._client = self._factory(api_key=self._key, **self._client_kwargs)

    async def generate_content(self, **kwargs: Any) -> Any:
        settings = get_settings()
        attempts = settings.resilient_max_retries

        for attempt in range(attempts):
            try:
                return await self._client.aio.models.generate_content(**kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                kind = classify_error(e)
                if kind is None:
                    raise GeneratorError(str(e)) from e

                delay = settings.resilient_base_delay * (2 ** attempt)
                logger.warning(
                    "%s from model. Attempt %d/%d, backing off %ds",
                    kind.value, attempt + 1, attempts, delay,
                )
                if kind is RetryKind.rate_limit:
                    self.rotate()
                await asyncio.sleep(delay)

        raise GeneratorError(f"Model still unavailable after {attempts} attempts")
