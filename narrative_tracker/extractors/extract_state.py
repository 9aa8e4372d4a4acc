"""
Extraction orchestrator.

:func:`extract_state` produces the ``TrackedState`` for one message. Stages
run strictly in dependency order::

    time -> location -> climate -> characters -> scene -> event
         -> relationship signal -> unestablished-pair backfill
         -> chapter boundary -> assembly

A disabled category carries the previous value forward verbatim. The
narrative state is read once at the start into a working copy; relationship
and cache changes are merged into a freshly re-read stored value and saved
only when the run finishes, so a cancelled run leaves it untouched. The one
exception is chapter archival, which commits as soon as a chapter is created.

:func:`update_subsequent_messages_events` is the reconciliation walk run after
a message is re-extracted while later messages already depend on it.
"""

from __future__ import annotations

import dataclasses
from typing import List, Optional, Set

from narrative_tracker.config import Settings, get_settings
from narrative_tracker.errors import ConfigurationError, ReconciliationError
from narrative_tracker.extractors.base import (
    StageContext,
    default_location,
    default_scene,
    default_time,
)
from narrative_tracker.extractors.extract_chapter import extract_chapter_boundary
from narrative_tracker.extractors.extract_characters import extract_characters
from narrative_tracker.extractors.extract_climate import WeatherProvider, extract_climate
from narrative_tracker.extractors.extract_event import extract_event
from narrative_tracker.extractors.extract_location import extract_location
from narrative_tracker.extractors.extract_relationships import (
    extract_initial_relationship,
    first_meeting_milestone,
    refresh_relationship,
)
from narrative_tracker.extractors.extract_scene import extract_scene, should_extract_scene
from narrative_tracker.extractors.extract_time import extract_time
from narrative_tracker.schemas.state import (
    Chapter,
    ChapterEndedSummary,
    Character,
    Climate,
    LocationState,
    NarrativeDateTime,
    NarrativeState,
    Pair,
    Relationship,
    Scene,
    TimestampedEvent,
    TrackedState,
)
from narrative_tracker.services.generator import CancellationToken, Generator
from narrative_tracker.state.chapters import check_chapter_boundary
from narrative_tracker.state.events import (
    insert_event_ordered,
    location_label,
    reconcile_events,
    without_message_events,
)
from narrative_tracker.state.message_state import (
    EXTENSION_KEY,
    ChatLog,
    format_messages,
    get_message_state,
    set_message_state,
)
from narrative_tracker.state.narrative_state import (
    get_or_initialize_narrative_state,
    get_relationship,
    save_narrative_state,
    update_relationship,
)
from narrative_tracker.state.relationships import (
    add_milestone,
    add_relationship_version,
    apply_relationship_signal,
    find_unestablished_pairs,
    get_formed_message_id,
    get_latest_version_message_id,
    pop_versions_for_message,
    relationship_key,
)
from narrative_tracker.utils.logging_config import ChatAdapter, get_logger
from narrative_tracker.utils.outfit_cleanup import cleanup_outfits

logger = get_logger("tracker.orchestrator")

MIN_SCENE_MESSAGES = 2
MIN_RELATIONSHIP_MESSAGES = 3


@dataclasses.dataclass
class ExtractionContext:
    """Everything one orchestrator run needs; one context per run."""
    chat: ChatLog
    message_id: int
    previous_state: Optional[TrackedState]
    generator: Generator
    settings: Settings = dataclasses.field(default_factory=get_settings)
    cancel: CancellationToken = dataclasses.field(default_factory=CancellationToken)
    weather_provider: Optional[WeatherProvider] = None
    force_scene: bool = False
    chat_id: Optional[str] = None


@dataclasses.dataclass
class ExtractionResult:
    state: TrackedState
    weather_transition: Optional[str] = None


@dataclasses.dataclass
class ReconciliationReport:
    updated: List[int] = dataclasses.field(default_factory=list)
    failed: List[int] = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


# ---------------------------------------------------------------------------
# Message windows
# ---------------------------------------------------------------------------

def _last_state_index(chat: ChatLog, message_id: int) -> Optional[int]:
    for index in range(message_id - 1, -1, -1):
        if get_message_state(chat[index]) is not None:
            return index
    return None


def general_window(chat: ChatLog, message_id: int, last_x: int, has_previous: bool) -> str:
    """Messages since the last stored state, at most *last_x* back."""
    start = 0
    if has_previous:
        state_index = _last_state_index(chat, message_id)
        if state_index is not None:
            start = state_index + 1
    start = max(start, message_id - last_x, 0)
    return format_messages(chat.messages[start:message_id + 1])


def scene_window(chat: ChatLog, message_id: int, last_x: int, has_previous: bool) -> str:
    """Like the general window but never fewer than two messages."""
    state_index = _last_state_index(chat, message_id) if has_previous else None
    min_start = max(0, message_id - MIN_SCENE_MESSAGES + 1)
    state_start = state_index + 1 if state_index is not None else 0
    start = max(message_id - last_x, min(min_start, state_start), 0)
    return format_messages(chat.messages[start:message_id + 1])


def relationship_window(
    chat: ChatLog,
    message_id: int,
    last_x: int,
    relationship: Optional[Relationship] = None,
) -> str:
    """Messages since the pair's last status change, bounded by *last_x*, at least three."""
    status_change_start = 0
    if relationship is not None:
        last_version = get_latest_version_message_id(relationship)
        if last_version is not None:
            status_change_start = last_version + 1
    min_start = max(0, message_id - MIN_RELATIONSHIP_MESSAGES + 1)
    limit_start = max(0, message_id - last_x)
    start = min(max(limit_start, status_change_start), min_start)
    return format_messages(chat.messages[start:message_id + 1])


# ---------------------------------------------------------------------------
# Narrative state commit
# ---------------------------------------------------------------------------

class _NarrativeChanges:
    """Tracks what a run changed in its working copy of the narrative state."""

    def __init__(self) -> None:
        self.touched: Set[str] = set()
        self.chapters: List[Chapter] = []
        self.caches_changed = False

    async def commit(self, chat: ChatLog, working: NarrativeState) -> NarrativeState:
        """Merge this run's changes into the stored narrative state and save it.

        The stored value is re-read from the host first, so relationships and
        chapters written by concurrent runs on other messages are kept. For a
        pair both runs touched, the later commit wins.
        """
        await chat.reload_message(0)
        stored = get_or_initialize_narrative_state(chat)
        current = {relationship_key(r): r for r in working.relationships}
        for key in self.touched:
            update_relationship(stored, current[key])
        for chapter in self.chapters:
            # Re-closing a chapter replaces the earlier archive of it
            stored.chapters = [c for c in stored.chapters if c.index != chapter.index]
            stored.chapters.append(chapter)
        stored.chapters.sort(key=lambda c: c.index)
        if self.caches_changed:
            stored.forecast_cache = working.forecast_cache
            stored.location_mappings = working.location_mappings
        await save_narrative_state(chat, stored)

        self.touched.clear()
        self.chapters.clear()
        self.caches_changed = False
        return stored


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def _formed_at(narrative: NarrativeState, message_id: int) -> Set[str]:
    """Keys of relationships first recorded at *message_id*."""
    return {
        relationship_key(r) for r in narrative.relationships
        if get_formed_message_id(r) == message_id
    }


def _reform(existing: Relationship, created: Relationship, message_id: int) -> Relationship:
    """Fresh first read of a pair formed at *message_id*, keeping milestones from other messages."""
    for milestone in existing.milestones:
        if milestone.message_id != message_id:
            add_milestone(created, milestone)
    return created


def _restore_formation(
    narrative: NarrativeState,
    keys: Set[str],
    changes: _NarrativeChanges,
    message_id: int,
    time: Optional[NarrativeDateTime],
    location: Optional[LocationState],
) -> None:
    """Restore the formation version and ``first_meeting`` of pairs formed here but not re-read."""
    for relationship in narrative.relationships:
        key = relationship_key(relationship)
        if key not in keys:
            continue
        changed = False
        if not relationship.versions:
            add_relationship_version(relationship, message_id)
            changed = True
        first_meeting = first_meeting_milestone(relationship.pair, message_id, time, location)
        if first_meeting is not None and add_milestone(relationship, first_meeting):
            changed = True
        if changed:
            changes.touched.add(key)


def _backfill_candidates(names: List[str], narrative: NarrativeState, formed_here: Set[str]) -> List[Pair]:
    # Pairs formed at this message come first so a re-run re-forms the same one
    present = {name.lower() for name in names}
    reform = sorted(
        r.pair for r in narrative.relationships
        if relationship_key(r) in formed_here and {n.lower() for n in r.pair} <= present
    )
    return reform + find_unestablished_pairs(names, narrative.relationships)


async def extract_state(ctx: ExtractionContext) -> ExtractionResult:
    settings = ctx.settings
    if not settings.extraction_model:
        raise ConfigurationError(
            "No extraction model configured. Set EXTRACTION_MODEL before extracting."
        )

    log = ChatAdapter(logger, chat_id=ctx.chat_id or "")
    chat, message_id, previous = ctx.chat, ctx.message_id, ctx.previous_state
    stage = StageContext(
        generator=ctx.generator,
        settings=settings,
        cancel=ctx.cancel,
        message_id=message_id,
        chat_id=ctx.chat_id,
    )

    is_initial = previous is None
    is_assistant = not chat[message_id].is_user
    run_scene = settings.track_scene and should_extract_scene(is_assistant, ctx.force_scene)
    run_event = settings.track_events and is_assistant
    last_x = settings.last_x_messages
    character_info = chat.character_info if is_initial else ""
    user_info = chat.user_info if is_initial else ""

    log.info("Extraction started", extra={"message_id": message_id, "metadata": {
        "initial": is_initial, "scene": run_scene, "event": run_event,
    }})

    await chat.reload_message(0)
    narrative = get_or_initialize_narrative_state(chat).model_copy(deep=True)
    changes = _NarrativeChanges()
    # Pairs an earlier run of this message formed are re-read rather than refreshed
    formed_here = _formed_at(narrative, message_id)
    messages = general_window(chat, message_id, last_x, not is_initial)

    # Time
    time: Optional[NarrativeDateTime]
    if settings.track_time:
        time = await extract_time(
            stage, is_initial=is_initial, messages=messages,
            previous=previous.time if previous else None,
        )
    else:
        time = previous.time if previous else None

    # Location
    location: Optional[LocationState]
    if settings.track_location:
        location = await extract_location(
            stage, is_initial=is_initial, messages=messages, character_info=character_info,
            previous=previous.location if previous else None,
        )
    else:
        location = previous.location if previous else None

    # Climate
    climate: Optional[Climate]
    weather_transition: Optional[str] = None
    if settings.track_climate:
        climate_result = await extract_climate(
            stage,
            is_initial=is_initial,
            messages=messages,
            time=time or default_time(),
            location=location or default_location(),
            character_info=character_info,
            previous=previous.climate if previous else None,
            forecast_cache=narrative.forecast_cache,
            location_mappings=narrative.location_mappings,
            weather_provider=ctx.weather_provider,
        )
        climate = climate_result.climate
        weather_transition = climate_result.transition
        if climate_result.forecast_cache is not None:
            narrative.forecast_cache = climate_result.forecast_cache
            changes.caches_changed = True
        if climate_result.location_mappings is not None:
            narrative.location_mappings = climate_result.location_mappings
            changes.caches_changed = True
    else:
        climate = previous.climate if previous else None

    # Characters
    characters: Optional[List[Character]]
    if settings.track_characters:
        characters = await extract_characters(
            stage,
            is_initial=is_initial,
            messages=messages,
            location=location or default_location(),
            user_info=user_info,
            character_info=character_info,
            previous=previous.characters if previous else None,
        )
        if location is not None:
            characters, location, moved = cleanup_outfits(characters, location)
            if moved:
                log.debug("Moved removed outfit items to props", extra={
                    "message_id": message_id, "metadata": {"items": moved},
                })
    else:
        characters = previous.characters if previous else None

    # Scene
    scene: Optional[Scene]
    if run_scene:
        initial_scene = previous is None or previous.scene is None
        scene = await extract_scene(
            stage,
            is_initial=initial_scene,
            messages=scene_window(chat, message_id, last_x, not is_initial),
            characters=characters or [],
            character_info=character_info if initial_scene else "",
            previous=previous.scene if previous else None,
        )
    else:
        scene = previous.scene if previous else None

    # Event; any event this message produced earlier is dropped first
    current_events: List[TimestampedEvent] = without_message_events(
        (previous.current_events or []) if previous else [], message_id,
    )
    if run_event:
        scene_for_event = scene or default_scene()
        event = await extract_event(
            stage,
            messages=messages,
            message_id=message_id,
            time=time or default_time(),
            location=location or default_location(),
            tension_type=scene_for_event.tension.type,
            tension_level=scene_for_event.tension.level,
            relationships=narrative.relationships,
            characters=characters or [],
        )
        if event is not None:
            current_events = insert_event_ordered(current_events, event)
            if event.relationship_signal is not None and settings.track_relationships:
                await _apply_signal(ctx, stage, narrative, changes, formed_here, event,
                                    current_events, time, location, character_info)

    # Backfill at most one unestablished pair
    if settings.track_relationships and characters and len(characters) >= 2:
        pairs = _backfill_candidates([c.name for c in characters], narrative, formed_here)
        if pairs:
            char1, char2 = pairs[0]
            relationship = await extract_initial_relationship(
                stage,
                char1=char1,
                char2=char2,
                messages=relationship_window(chat, message_id, last_x),
                character_info=character_info,
                message_id=message_id,
                time=time,
                location=location,
            )
            if relationship is not None:
                existing = get_relationship(narrative, char1, char2)
                if existing is not None:
                    relationship = _reform(existing, relationship, message_id)
                    formed_here.discard(relationship_key(relationship))
                update_relationship(narrative, relationship)
                changes.touched.add(relationship_key(relationship))

    _restore_formation(narrative, formed_here, changes, message_id, time, location)

    # Chapter boundary
    current_chapter = previous.current_chapter if previous else 0
    chapter_ended: Optional[ChapterEndedSummary] = None
    if previous is not None and current_events:
        boundary = check_chapter_boundary(
            previous.location, location, previous.time, time, settings.chapter_time_threshold,
        )
        if boundary.triggered:
            chapter_result = await extract_chapter_boundary(
                stage,
                events=current_events,
                narrative=narrative,
                chapter_index=current_chapter,
                start=current_events[0].timestamp or previous.time or default_time(),
                end=time or default_time(),
                primary_location=location_label(previous.location) if previous.location else "Unknown",
            )
            if chapter_result.is_chapter_boundary and chapter_result.chapter is not None:
                chapter = chapter_result.chapter
                chapter_ended = ChapterEndedSummary(
                    index=current_chapter,
                    title=chapter.title,
                    summary=chapter.summary,
                    event_count=len(current_events),
                    reason=boundary.reason,
                )
                narrative.chapters.append(chapter)
                changes.chapters.append(chapter)
                # Archival persists right away and survives a later abort
                await changes.commit(chat, narrative)
                log.info("Chapter closed", extra={"message_id": message_id, "metadata": {
                    "index": current_chapter, "reason": boundary.reason.value,
                    "events": len(current_events),
                }})
                current_chapter += 1
                current_events = []

    ctx.cancel.raise_if_cancelled()
    await changes.commit(chat, narrative)

    state = TrackedState(
        time=time,
        location=location,
        climate=climate,
        scene=scene,
        characters=characters,
        current_chapter=current_chapter,
        current_events=current_events or None,
        chapter_ended=chapter_ended,
    )
    log.info("Extraction finished", extra={"message_id": message_id})
    return ExtractionResult(state=state, weather_transition=weather_transition)


async def _apply_signal(
    ctx: ExtractionContext,
    stage: StageContext,
    narrative: NarrativeState,
    changes: _NarrativeChanges,
    formed_here: Set[str],
    event: TimestampedEvent,
    current_events: List[TimestampedEvent],
    time: Optional[NarrativeDateTime],
    location: Optional[LocationState],
    character_info: str,
) -> None:
    """Feed an event's relationship signal into the pair's relationship."""
    signal = event.relationship_signal
    char1, char2 = signal.pair
    last_x = ctx.settings.last_x_messages
    relationship = get_relationship(narrative, char1, char2)
    updated: Optional[Relationship] = None

    if relationship is None or relationship_key(relationship) in formed_here:
        created = await extract_initial_relationship(
            stage,
            char1=char1,
            char2=char2,
            messages=relationship_window(ctx.chat, ctx.message_id, last_x),
            character_info=character_info,
            message_id=ctx.message_id,
            time=time,
            location=location,
        )
        if created is not None and relationship is not None:
            formed_here.discard(relationship_key(relationship))
            created = _reform(relationship, created, ctx.message_id)
        if created is not None:
            updated = apply_relationship_signal(created, signal)
        elif relationship is None:
            return

    if updated is None:
        pop_versions_for_message(relationship, ctx.message_id)
        refreshed = None
        if signal.milestones:
            refreshed = await refresh_relationship(
                stage,
                relationship=relationship,
                events=current_events,
                messages=relationship_window(ctx.chat, ctx.message_id, last_x, relationship),
                message_id=ctx.message_id,
            )
        # The refresh may drop milestones, so the signal is applied on top either way
        updated = apply_relationship_signal(refreshed or relationship, signal)

    update_relationship(narrative, updated)
    changes.touched.add(relationship_key(updated))


# ---------------------------------------------------------------------------
# Re-extraction reconciliation
# ---------------------------------------------------------------------------

async def update_subsequent_messages_events(
    chat: ChatLog,
    message_id: int,
    new_event: Optional[TimestampedEvent],
    chapter: Optional[int] = None,
) -> ReconciliationReport:
    """Rewrite later messages' open ledgers after *message_id* was re-extracted.

    Every later message drops the events tagged with *message_id*; when
    *new_event* is given it is inserted in ``message_id`` order into the
    ledgers of later messages in the same *chapter* (any chapter when
    ``None``). Each message is rewritten and saved as a unit; a message whose
    write fails is restored and reported in ``failed`` while the walk goes on.
    """
    report = ReconciliationReport()

    for index in range(message_id + 1, len(chat)):
        # Another run may have stored this message since the log was loaded
        await chat.reload_message(index)
        message = chat[index]
        stored = get_message_state(message)
        if stored is None:
            continue

        events = stored.state.current_events or []
        same_chapter = chapter is None or stored.state.current_chapter == chapter
        updated_events = reconcile_events(events, message_id, new_event if same_chapter else None)
        if updated_events == events:
            continue

        updated = stored.model_copy(deep=True)
        updated.state.current_events = updated_events or None

        snapshot = message.extra.get(EXTENSION_KEY)
        snapshot = dict(snapshot) if isinstance(snapshot, dict) else None
        was_changed = message.changed
        try:
            set_message_state(message, updated)
            await chat.save_message(index)
        except Exception as e:
            # Restore the slot so the message is either fully rewritten or untouched
            if snapshot is None:
                message.extra.pop(EXTENSION_KEY, None)
            else:
                message.extra[EXTENSION_KEY] = snapshot
            message.changed = was_changed
            error = ReconciliationError(index, e)
            logger.warning("Reconciliation write failed: %s", error,
                           extra={"message_id": index}, exc_info=True)
            report.failed.append(index)
            continue

        report.updated.append(index)

    if report.updated or report.failed:
        logger.info("Reconciled later messages", extra={"message_id": message_id, "metadata": {
            "updated": report.updated, "failed": report.failed,
        }})
    return report
