"""
Generator interface and cancellation.

The generator is the only suspension point of an extraction: it accepts a
structured prompt plus sampling options and returns free text. Everything
that calls it shares one ``CancellationToken`` per extraction run, so
aborting the token aborts whichever call is currently in flight.
"""

from __future__ import annotations

import asyncio
import dataclasses
from typing import Awaitable, Optional, Protocol, TypeVar

from google.genai import types

from narrative_tracker.config import get_settings
from narrative_tracker.errors import ConfigurationError, ExtractionAborted, GeneratorError
from narrative_tracker.utils.logging_config import get_logger
from narrative_tracker.utils.resilient_client import ResilientClient

logger = get_logger("tracker.generator")

T = TypeVar("T")


@dataclasses.dataclass
class ExtractionPrompt:
    system: str
    user: str


class CancellationToken:
    """Shared abort signal for one extraction run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExtractionAborted("Extraction aborted")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token fires first.

        On cancellation the pending work is cancelled and
        ``ExtractionAborted`` is raised.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise ExtractionAborted("Extraction aborted")


class Generator(Protocol):
    async def generate(
        self,
        prompt: ExtractionPrompt,
        *,
        temperature: float,
        max_tokens: int,
        cancel: Optional[CancellationToken] = None,
    ) -> str:
        ...


class GeminiGenerator:
    """Generator backed by google-genai through the key-rotating client."""

    def __init__(self, model: Optional[str] = None, client=None):
        self.model = model if model is not None else get_settings().extraction_model
        if not self.model:
            raise ConfigurationError("No extraction model configured")
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = ResilientClient()
        return self._client

    async def generate(
        self,
        prompt: ExtractionPrompt,
        *,
        temperature: float,
        max_tokens: int,
        cancel: Optional[CancellationToken] = None,
    ) -> str:
        config = types.GenerateContentConfig(
            system_instruction=prompt.system,
            temperature=temperature,
            max_output_tokens=max_tokens,
            response_mime_type="application/json",
        )
        request = self.client.generate_content(
            model=self.model,
            contents=prompt.user,
            config=config,
        )
        response = await cancel.run(request) if cancel is not None else await request

        text = response.text
        if not text:
            raise GeneratorError("Empty response from extraction model")
        logger.debug("Generator returned %d chars", len(text), extra={"metadata": {"model": self.model}})
        return text.strip()
