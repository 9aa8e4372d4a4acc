"""
Extraction service.

Wraps the orchestrator for one host: keeps track of which messages are being
extracted, owns their cancellation tokens, stores the result on the message,
runs the reconciliation walk for re-extractions and persists the chat.
"""

from __future__ import annotations

import dataclasses
import time
from enum import Enum
from functools import lru_cache
from typing import Dict, Optional, Tuple

from narrative_tracker.config import Settings, get_settings
from narrative_tracker.errors import ExtractionAborted, ExtractionInProgress, TrackerError
from narrative_tracker.extractors.extract_climate import WeatherProvider
from narrative_tracker.extractors.extract_state import (
    ExtractionContext,
    ReconciliationReport,
    extract_state,
    update_subsequent_messages_events,
)
from narrative_tracker.schemas.state import StoredStateData, TimestampedEvent, TrackedState
from narrative_tracker.services.generator import CancellationToken, GeminiGenerator, Generator
from narrative_tracker.state.message_state import ChatLog, get_previous_state, set_message_state
from narrative_tracker.state.narrative_state import (
    get_or_initialize_narrative_state,
    save_narrative_state,
)
from narrative_tracker.state.relationships import clear_all_milestones_for_message
from narrative_tracker.utils.logging_config import ChatAdapter, get_logger

logger = get_logger("tracker.service")


class ExtractionStatus(str, Enum):
    success = "success"
    aborted = "aborted"
    failed = "failed"


@dataclasses.dataclass
class ExtractionOutcome:
    status: ExtractionStatus
    state: Optional[TrackedState] = None
    weather_transition: Optional[str] = None
    error: Optional[TrackerError] = None
    reconciliation: Optional[ReconciliationReport] = None


def _event_for_message(state: TrackedState, message_id: int) -> Optional[TimestampedEvent]:
    for event in state.current_events or []:
        if event.message_id == message_id:
            return event
    return None


class TrackerService:
    """One instance per process; safe to share across requests."""

    def __init__(
        self,
        generator: Optional[Generator] = None,
        weather_provider: Optional[WeatherProvider] = None,
        settings: Optional[Settings] = None,
    ):
        self._generator = generator
        self.weather_provider = weather_provider
        self.settings = settings
        self._in_flight: Dict[Tuple[str, int], CancellationToken] = {}

    @property
    def generator(self) -> Generator:
        if self._generator is None:
            self._generator = GeminiGenerator(model=(self.settings or get_settings()).extraction_model)
        return self._generator

    def is_extracting(self, chat_id: str, message_id: int) -> bool:
        return (chat_id, message_id) in self._in_flight

    def abort(self, chat_id: str, message_id: int) -> bool:
        """Cancel a running extraction; False when nothing was running."""
        token = self._in_flight.get((chat_id, message_id))
        if token is None:
            return False
        token.cancel()
        ChatAdapter(logger, chat_id=chat_id).info(
            "Abort requested", extra={"message_id": message_id},
        )
        return True

    async def extract_message(
        self,
        chat_id: str,
        chat: ChatLog,
        message_id: int,
        force_scene: bool = False,
    ) -> ExtractionOutcome:
        """Extract and store the state for *message_id*.

        Raises ``ExtractionInProgress`` when the same message is already being
        extracted. Every other tracker failure is reported in the outcome.
        """
        key = (chat_id, message_id)
        if key in self._in_flight:
            raise ExtractionInProgress(chat_id, message_id)

        log = ChatAdapter(logger, chat_id=chat_id)
        token = CancellationToken()
        self._in_flight[key] = token
        started = time.monotonic()

        try:
            # Milestones from an earlier run of this message are re-derived below
            await chat.reload_message(0)
            narrative = get_or_initialize_narrative_state(chat)
            removed = clear_all_milestones_for_message(narrative.relationships, message_id)
            if removed:
                log.info("Cleared stale milestones", extra={
                    "message_id": message_id, "metadata": {"removed": removed},
                })
                await save_narrative_state(chat, narrative)

            _, previous_state = get_previous_state(chat, message_id)
            result = await extract_state(ExtractionContext(
                chat=chat,
                message_id=message_id,
                previous_state=previous_state,
                generator=self.generator,
                settings=self.settings or get_settings(),
                cancel=token,
                weather_provider=self.weather_provider,
                force_scene=force_scene,
                chat_id=chat_id,
            ))

            set_message_state(chat[message_id], StoredStateData(state=result.state))

            report = None
            if message_id < len(chat) - 1:
                report = await update_subsequent_messages_events(
                    chat,
                    message_id,
                    _event_for_message(result.state, message_id),
                    chapter=result.state.current_chapter,
                )

            await chat.save()
        except ExtractionAborted as e:
            log.info("Extraction aborted", extra={"message_id": message_id})
            return ExtractionOutcome(status=ExtractionStatus.aborted, error=e)
        except TrackerError as e:
            log.error("Extraction failed: %s", e, extra={"message_id": message_id}, exc_info=True)
            return ExtractionOutcome(status=ExtractionStatus.failed, error=e)
        finally:
            self._in_flight.pop(key, None)

        log.info("Extraction stored", extra={
            "message_id": message_id,
            "duration_ms": round((time.monotonic() - started) * 1000),
        })
        return ExtractionOutcome(
            status=ExtractionStatus.success,
            state=result.state,
            weather_transition=result.weather_transition,
            reconciliation=report,
        )


@lru_cache
def get_tracker_service() -> TrackerService:
    """Process-wide service; FastAPI dependency."""
    return TrackerService()
