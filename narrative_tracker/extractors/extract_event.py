"""
Event stage.

Produces at most one ``TimestampedEvent`` per assistant message. Milestones
are never taken from the answer: they are inferred here from the event types,
for the pair named in the relationship signal.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from narrative_tracker.extractors.base import StageContext, build_prompt, run_stage
from narrative_tracker.schemas.state import (
    EVENT_TYPE_TO_MILESTONE,
    EVENT_TYPES,
    Character,
    DirectionalChange,
    LocationState,
    MilestoneEvent,
    NarrativeDateTime,
    Pair,
    Relationship,
    RelationshipSignal,
    TensionLevel,
    TensionType,
    TimestampedEvent,
)
from narrative_tracker.state.chapters import format_date_time
from narrative_tracker.state.events import location_label
from narrative_tracker.state.relationships import (
    format_relationships_for_prompt,
    has_milestone,
    pair_key,
    relationship_key,
    sort_pair,
)
from narrative_tracker.utils.json_extractor import as_string, as_string_array, is_object

SYSTEM_PROMPT = "You are an event analysis agent for roleplay. Return only valid JSON."

EVENT_EXAMPLE = {
    "summary": "Elena admitted she used to be a thief; Marcus promised to keep it secret.",
    "event_types": ["confession", "secret_shared", "promise"],
    "event_type_pairs": {"promise": [["Elena", "Marcus"]]},
    "witnesses": ["Elena", "Marcus"],
    "relationship_signal": {
        "pair": ["Elena", "Marcus"],
        "changes": [{"from": "Marcus", "toward": "Elena", "feeling": "protective"}],
    },
}

_VALID_EVENT_TYPES = frozenset(EVENT_TYPES)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_event_types(value: Any) -> List[str]:
    """Known tags only, in order, without duplicates; ``["conversation"]`` if none survive."""
    types: List[str] = []
    for raw in as_string_array(value):
        tag = raw.strip().lower()
        if tag in _VALID_EVENT_TYPES and tag not in types:
            types.append(tag)
    return types or ["conversation"]


def _parse_pair(value: Any) -> Optional[Pair]:
    names = as_string_array(value)
    if len(names) != 2:
        return None
    a, b = names[0].strip(), names[1].strip()
    if not a or not b or a.lower() == b.lower():
        return None
    return sort_pair(a, b)


def parse_event_type_pairs(value: Any, event_types: Sequence[str]) -> Dict[str, List[Pair]]:
    if not is_object(value):
        return {}
    result: Dict[str, List[Pair]] = {}
    for tag, pairs in value.items():
        tag = str(tag).strip().lower()
        if tag not in event_types or not isinstance(pairs, list):
            continue
        parsed = [p for p in (_parse_pair(raw) for raw in pairs) if p is not None]
        if parsed:
            result[tag] = parsed
    return result


def parse_relationship_signal(value: Any) -> Optional[RelationshipSignal]:
    if not is_object(value):
        return None
    pair = _parse_pair(value.get("pair"))
    if pair is None:
        return None

    changes = []
    raw_changes = value.get("changes")
    for change in raw_changes if isinstance(raw_changes, list) else []:
        if not is_object(change):
            continue
        source = as_string(change.get("from", change.get("from_character")), "").strip()
        target = as_string(change.get("toward"), "").strip()
        feeling = as_string(change.get("feeling"), "").strip()
        if source and target and feeling:
            changes.append(DirectionalChange(from_character=source, toward=target, feeling=feeling))

    return RelationshipSignal(pair=pair, changes=changes)


# ---------------------------------------------------------------------------
# Milestone inference
# ---------------------------------------------------------------------------

def _applies_to_pair(event_type: str, pair: Pair, event_type_pairs: Dict[str, List[Pair]]) -> bool:
    """Types without pair attribution apply to the signal pair."""
    pairs = event_type_pairs.get(event_type)
    if not pairs:
        return True
    wanted = pair_key(*pair)
    return any(pair_key(*p) == wanted for p in pairs)


def infer_milestone_types(
    event_types: Sequence[str],
    pair: Pair,
    existing: Optional[Relationship],
    event_type_pairs: Optional[Dict[str, List[Pair]]] = None,
) -> List[str]:
    event_type_pairs = event_type_pairs or {}
    inferred: List[str] = []

    if existing is None:
        inferred.append("first_meeting")

    for event_type in event_types:
        milestone_type = EVENT_TYPE_TO_MILESTONE.get(event_type)
        if milestone_type is None or milestone_type in inferred:
            continue
        if existing is not None and has_milestone(existing, milestone_type):
            continue
        if not _applies_to_pair(event_type, pair, event_type_pairs):
            continue
        inferred.append(milestone_type)

    return inferred


def _find_relationship(relationships: Sequence[Relationship], pair: Pair) -> Optional[Relationship]:
    key = pair_key(*pair)
    for relationship in relationships:
        if relationship_key(relationship) == key:
            return relationship
    return None


def build_event(
    data: Any,
    *,
    message_id: int,
    time: NarrativeDateTime,
    location: LocationState,
    tension_type: TensionType,
    tension_level: TensionLevel,
    relationships: Sequence[Relationship],
) -> Optional[TimestampedEvent]:
    """Turn a parsed answer into an event; ``None`` when it has no summary."""
    if not is_object(data):
        return None
    summary = as_string(data.get("summary"), "").strip()
    if not summary:
        return None

    event_types = parse_event_types(data.get("event_types"))
    event_type_pairs = parse_event_type_pairs(data.get("event_type_pairs"), event_types)
    signal = parse_relationship_signal(data.get("relationship_signal"))

    if signal is not None:
        existing = _find_relationship(relationships, signal.pair)
        milestone_location = ", ".join(p for p in (location.place, location.area) if p)
        signal.milestones = [
            MilestoneEvent(
                type=milestone_type,
                description=summary,
                timestamp=time,
                location=milestone_location,
                message_id=message_id,
            )
            for milestone_type in infer_milestone_types(event_types, signal.pair, existing, event_type_pairs)
        ]

    return TimestampedEvent(
        timestamp=time,
        summary=summary,
        event_types=event_types,
        event_type_pairs=event_type_pairs,
        tension_type=tension_type,
        tension_level=tension_level,
        witnesses=as_string_array(data.get("witnesses")),
        location=location_label(location),
        relationship_signal=signal,
        message_id=message_id,
    )


async def extract_event(
    ctx: StageContext,
    *,
    messages: str,
    message_id: int,
    time: NarrativeDateTime,
    location: LocationState,
    tension_type: TensionType,
    tension_level: TensionLevel,
    relationships: Sequence[Relationship],
    characters: Sequence[Character],
) -> Optional[TimestampedEvent]:
    names = [c.name for c in characters]
    prompt = build_prompt(
        SYSTEM_PROMPT,
        "Summarise the single most significant event in the newest message. Tag it with "
        f"event types from this list: {', '.join(EVENT_TYPES)}. Attribute types to character "
        "pairs where it matters, list the witnesses, and give a relationship signal for the "
        "pair whose feelings shifted. Return an empty summary if nothing happened.",
        {
            "current_time": format_date_time(time),
            "location": location_label(location),
            "characters_present": ", ".join(names),
            "relationships": format_relationships_for_prompt(
                list(relationships), names, ctx.settings.include_relationship_secrets,
            ),
            "messages": messages,
        },
        EVENT_EXAMPLE,
    )
    data = await run_stage(ctx, "event", "event_extract", prompt)
    return build_event(
        data,
        message_id=message_id,
        time=time,
        location=location,
        tension_type=tension_type,
        tension_level=tension_level,
        relationships=relationships,
    )
