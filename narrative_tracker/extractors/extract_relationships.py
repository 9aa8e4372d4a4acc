"""
Relationship stage.

Two generator calls live here: the initial read of a pair that has no
relationship yet, and the full refresh of an existing one. Both go through
:func:`parse_relationship`, which validates the answer and applies the status
floor and ceiling via ``build_relationship``. Neither call is allowed to fail
the extraction: anything but an abort is logged and reported as ``None``.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from narrative_tracker.errors import ExtractionAborted, TrackerError
from narrative_tracker.extractors.base import StageContext, build_prompt, run_stage
from narrative_tracker.schemas.state import (
    LocationState,
    MilestoneEvent,
    NarrativeDateTime,
    Pair,
    Relationship,
    RelationshipAttitude,
    RelationshipStatus,
    TimestampedEvent,
)
from narrative_tracker.state.events import format_events_for_injection
from narrative_tracker.state.relationships import add_milestone, build_relationship, sort_pair
from narrative_tracker.utils.json_extractor import as_string_array, is_object
from narrative_tracker.utils.logging_config import get_logger

logger = get_logger("tracker.extractors.relationships")

SYSTEM_PROMPT = (
    "You are a relationship analysis agent for roleplay. Extract and track character "
    "relationships with attention to asymmetry. Return only valid JSON."
)


def _example(char_a: str, char_b: str) -> dict:
    return {
        "status": "friendly",
        "attitudes": {
            char_a: {
                "toward": char_b,
                "feelings": ["trusting", "curious"],
                "secrets": ["knows about their hidden talent"],
                "wants": ["friendship"],
            },
            char_b: {
                "toward": char_a,
                "feelings": ["grateful", "protective"],
                "secrets": [],
                "wants": ["loyalty"],
            },
        },
    }


def time_of_day(hour: int) -> str:
    if 5 <= hour < 12:
        return "in the morning"
    if 12 <= hour < 17:
        return "in the afternoon"
    if 17 <= hour < 21:
        return "in the evening"
    return "at night"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def parse_attitude(value: Any) -> RelationshipAttitude:
    if not is_object(value):
        return RelationshipAttitude()
    return RelationshipAttitude(
        feelings=as_string_array(value.get("feelings")),
        secrets=as_string_array(value.get("secrets")),
        wants=as_string_array(value.get("wants")),
    )


def _attitude_for(attitudes: dict, name: str) -> Any:
    wanted = name.lower()
    for key, value in attitudes.items():
        if str(key).lower() == wanted:
            return value
    return None


def parse_relationship(
    pair: Pair,
    data: Any,
    existing: Optional[Relationship] = None,
    message_id: Optional[int] = None,
) -> Optional[Relationship]:
    """Validate an answer into a new or updated relationship.

    Attitudes are keyed by character name under ``attitudes``; the older
    ``a_to_b`` / ``b_to_a`` layout is accepted too.
    """
    if not is_object(data):
        return None

    char_a, char_b = pair
    if is_object(data.get("attitudes")):
        a_to_b = parse_attitude(_attitude_for(data["attitudes"], char_a))
        b_to_a = parse_attitude(_attitude_for(data["attitudes"], char_b))
    else:
        a_to_b = parse_attitude(data.get("a_to_b"))
        b_to_a = parse_attitude(data.get("b_to_a"))

    proposed = RelationshipStatus.parse(data.get("status"))
    return build_relationship(pair, proposed, a_to_b, b_to_a, existing, message_id)


def format_previous_relationship(relationship: Relationship) -> str:
    char_a, char_b = relationship.pair
    lines = [f"Characters: {char_a} & {char_b}", f"Status: {relationship.status.value}"]
    for source, target, attitude in (
        (char_a, char_b, relationship.a_to_b),
        (char_b, char_a, relationship.b_to_a),
    ):
        lines += [
            "",
            f"{source}'s attitude toward {target}:",
            f"  Feelings: {', '.join(attitude.feelings) or 'none'}",
            f"  Secrets: {'; '.join(attitude.secrets) or 'none'}",
            f"  Wants: {', '.join(attitude.wants) or 'none'}",
        ]
    if relationship.milestones:
        lines += ["", "Milestones:"]
        lines += [f"  - {m.type}: {m.description}" for m in relationship.milestones]
    return "\n".join(lines)


def first_meeting_milestone(
    pair: Pair,
    message_id: Optional[int],
    time: Optional[NarrativeDateTime],
    location: Optional[LocationState],
) -> Optional[MilestoneEvent]:
    """The ``first_meeting`` seeded when a pair is first read, if time and place are known."""
    if message_id is None or time is None or location is None:
        return None
    place = ", ".join(p for p in (location.place, location.area) if p)
    return MilestoneEvent(
        type="first_meeting",
        description=f"{pair[0]} and {pair[1]} first appear together {time_of_day(time.hour)} at {place}.",
        timestamp=time,
        location=place,
        message_id=message_id,
    )


# ---------------------------------------------------------------------------
# Generator calls
# ---------------------------------------------------------------------------

async def extract_initial_relationship(
    ctx: StageContext,
    *,
    char1: str,
    char2: str,
    messages: str,
    character_info: str,
    message_id: Optional[int] = None,
    time: Optional[NarrativeDateTime] = None,
    location: Optional[LocationState] = None,
) -> Optional[Relationship]:
    """First read of a pair; seeds a ``first_meeting`` milestone when it can."""
    pair = sort_pair(char1, char2)
    prompt = build_prompt(
        SYSTEM_PROMPT,
        f"Describe the relationship between {pair[0]} and {pair[1]}: a status and each "
        "character's feelings, secrets and wants toward the other.",
        {"character_info": character_info, "messages": messages},
        _example(*pair),
    )

    try:
        data = await run_stage(ctx, "relationship", "relationship_initial", prompt)
    except ExtractionAborted:
        raise
    except TrackerError:
        logger.warning(
            "Initial relationship extraction failed for %s & %s", *pair,
            extra={"stage": "relationship", "message_id": message_id}, exc_info=True,
        )
        return None

    relationship = parse_relationship(pair, data, None, message_id)
    if relationship is None:
        return None

    first_meeting = first_meeting_milestone(pair, message_id, time, location)
    if first_meeting is not None:
        add_milestone(relationship, first_meeting)
    return relationship


async def refresh_relationship(
    ctx: StageContext,
    *,
    relationship: Relationship,
    events: Sequence[TimestampedEvent],
    messages: str,
    message_id: Optional[int] = None,
) -> Optional[Relationship]:
    """Full re-read of an existing relationship; ``None`` means use the cheap path."""
    pair = relationship.pair
    prompt = build_prompt(
        SYSTEM_PROMPT,
        "Update this relationship for the recent events and messages. Replace feelings, "
        "secrets and wants with their current values.",
        {
            "previous_state": format_previous_relationship(relationship),
            "current_events": format_events_for_injection(list(events)),
            "messages": messages,
        },
        _example(*pair),
    )

    try:
        data = await run_stage(ctx, "relationship", "relationship_update", prompt)
    except ExtractionAborted:
        raise
    except TrackerError:
        logger.warning(
            "Relationship refresh failed for %s & %s", *pair,
            extra={"stage": "relationship", "message_id": message_id}, exc_info=True,
        )
        return None

    return parse_relationship(pair, data, relationship, message_id)
