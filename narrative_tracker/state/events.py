"""
Event Ledger.

The open ledger is the ordered ``current_events`` list of the chapter that is
still running. Every event carries the id of the message that produced it;
that tag is the join key for re-extraction reconciliation, and ledgers are
kept sorted by it.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Union

from narrative_tracker.schemas.state import (
    LocationState,
    NarrativeDateTime,
    RelationshipSignal,
    TensionLevel,
    TensionType,
    TimestampedEvent,
)

_DAY_ABBREVIATIONS = {
    "Monday": "Mon",
    "Tuesday": "Tue",
    "Wednesday": "Wed",
    "Thursday": "Thu",
    "Friday": "Fri",
    "Saturday": "Sat",
    "Sunday": "Sun",
}


def location_label(location: Union[LocationState, str]) -> str:
    if isinstance(location, str):
        return location
    return f"{location.area} - {location.place}"


def create_event(
    timestamp: NarrativeDateTime,
    summary: str,
    tension_type: TensionType,
    tension_level: TensionLevel,
    witnesses: Sequence[str],
    location: Union[LocationState, str],
    event_types: Optional[Sequence[str]] = None,
    relationship_signal: Optional[RelationshipSignal] = None,
    message_id: Optional[int] = None,
) -> TimestampedEvent:
    return TimestampedEvent(
        timestamp=timestamp,
        summary=summary,
        event_types=list(event_types) if event_types else ["conversation"],
        tension_type=tension_type,
        tension_level=tension_level,
        witnesses=list(witnesses),
        location=location_label(location),
        relationship_signal=relationship_signal,
        message_id=message_id,
    )


# ---------------------------------------------------------------------------
# Ledger operations
# ---------------------------------------------------------------------------

def without_message_events(events: Iterable[TimestampedEvent], message_id: int) -> List[TimestampedEvent]:
    """Drop every event tagged with *message_id*."""
    return [e for e in events if e.message_id != message_id]


def insert_event_ordered(events: Sequence[TimestampedEvent], event: TimestampedEvent) -> List[TimestampedEvent]:
    """Insert before the first event from a later message, else append."""
    own_id = event.message_id if event.message_id is not None else 0
    result = list(events)
    for index, existing in enumerate(result):
        if (existing.message_id or 0) > own_id:
            result.insert(index, event)
            return result
    result.append(event)
    return result


def reconcile_events(
    events: Sequence[TimestampedEvent],
    message_id: int,
    new_event: Optional[TimestampedEvent],
) -> List[TimestampedEvent]:
    """Replace whatever *message_id* contributed with *new_event* (if any)."""
    kept = without_message_events(events, message_id)
    if new_event is None:
        return kept
    return insert_event_ordered(kept, new_event)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_event_timestamp(dt: NarrativeDateTime) -> str:
    hour12 = dt.hour % 12 or 12
    am_pm = "AM" if dt.hour < 12 else "PM"
    day = _DAY_ABBREVIATIONS.get(dt.day_of_week, dt.day_of_week[:3])
    return f"{day} {hour12}:{dt.minute:02d} {am_pm}"


def format_event(event: TimestampedEvent) -> str:
    return (
        f"[{format_event_timestamp(event.timestamp)}] {event.summary} "
        f"({event.tension_level.value} {event.tension_type.value})"
    )


def format_events_for_injection(
    events: Sequence[TimestampedEvent],
    limit: Optional[int] = None,
    present_characters: Optional[Sequence[str]] = None,
) -> str:
    """Render events for a prompt, most recent *limit* only.

    Witnesses missing from *present_characters* are marked ``(not present)``.
    """
    if not events:
        return "No recent events."

    selected = list(events)[-limit:] if limit else list(events)
    present = {c.lower() for c in present_characters} if present_characters is not None else None

    blocks = []
    for event in selected:
        lines = [
            f"[{format_event_timestamp(event.timestamp)}]",
            event.summary,
            f"Tension: {event.tension_level.value} {event.tension_type.value}",
        ]
        if event.witnesses:
            notes = [
                f"{w} (not present)" if present is not None and w.lower() not in present else w
                for w in event.witnesses
            ]
            lines.append(f"Witnesses: {', '.join(notes)}")
        lines.append(f"Location: {event.location}")
        blocks.append("\n".join(lines))

    return "\n\n".join(blocks)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_absent_witnesses(event: TimestampedEvent, present_characters: Sequence[str]) -> List[str]:
    present = {c.lower() for c in present_characters}
    return [w for w in event.witnesses if w.lower() not in present]


def get_all_witnesses(events: Iterable[TimestampedEvent]) -> List[str]:
    """Unique witnesses in first-seen order."""
    seen: dict = {}
    for event in events:
        for witness in event.witnesses:
            seen.setdefault(witness, None)
    return list(seen)


def filter_events_by_tension_type(
    events: Iterable[TimestampedEvent],
    types: Iterable[TensionType],
) -> List[TimestampedEvent]:
    wanted = set(types)
    return [e for e in events if e.tension_type in wanted]


def filter_events_by_tension_level(
    events: Iterable[TimestampedEvent],
    min_level: TensionLevel,
) -> List[TimestampedEvent]:
    """Events at or above *min_level*."""
    return [e for e in events if e.tension_level.ordinal >= min_level.ordinal]


def get_relationship_events(events: Iterable[TimestampedEvent]) -> List[TimestampedEvent]:
    return [e for e in events if e.relationship_signal is not None]


def get_events_for_pair(events: Iterable[TimestampedEvent], char1: str, char2: str) -> List[TimestampedEvent]:
    wanted = sorted((char1.lower(), char2.lower()))
    matches = []
    for event in events:
        signal = event.relationship_signal
        if signal is None:
            continue
        if sorted(name.lower() for name in signal.pair) == wanted:
            matches.append(event)
    return matches
