"""
Relationship Store.

Pure operations on single ``Relationship`` values: pair keys, creation,
attitude mutation, the status floor/ceiling rule, version snapshots and
milestone bookkeeping. Nothing in this module performs I/O.

Contains:
- ``sort_pair`` / ``pair_key`` for order-independent pair identity
- ``resolve_status`` which applies the feeling floor and milestone ceiling
- ``build_relationship`` which turns validated attitudes into a new or updated relationship
- ``pop_versions_for_message`` / ``clear_all_milestones_for_message`` for re-extraction safety
- ``apply_relationship_signal`` for the cheap, generator-free update path
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Sequence, Tuple

from narrative_tracker.schemas.state import (
    ROMANTIC_GATE_MILESTONES,
    MilestoneEvent,
    Pair,
    Relationship,
    RelationshipAttitude,
    RelationshipSignal,
    RelationshipStatus,
    RelationshipVersion,
)

# Checked in order; the first family that matches wins for one side. Words
# match whole, so "careless" is not care and "distrust" is not trust.
_FEELING_FLOORS: Tuple[Tuple[RelationshipStatus, "re.Pattern[str]"], ...] = (
    (RelationshipStatus.intimate,
     re.compile(r"\b(lov(e|es|ed|ing)|passionate|romantic|desir(e|es|ed|ing)|intimate|ador(e|es|ed|ing))\b")),
    (RelationshipStatus.close,
     re.compile(r"\b(trust(s|ed|ing|ful)?|car(e|es|ed|ing)|protective|devoted|loyal|deep(ly)?|grateful)\b")),
    (RelationshipStatus.friendly,
     re.compile(r"\b(lik(e|es|ed|ing)|enjoy(s|ed|ing)?|comfortable|fond|friendly|warm(th)?|curious)\b")),
    (RelationshipStatus.hostile,
     re.compile(r"\b(hat(e|es|ed|ing|red)|despis(e|es|ed|ing)|enem(y|ies)|loath(e|es|ed|ing))\b")),
    (RelationshipStatus.strained,
     re.compile(r"\b(suspicious|resent(s|ed|ful|ment)?|angry|bitter|distrust(s|ed|ful|ing)?|mistrust(s|ed|ful|ing)?)\b")),
)


# ---------------------------------------------------------------------------
# Pair management
# ---------------------------------------------------------------------------

def sort_pair(char1: str, char2: str) -> Pair:
    """Alphabetical, case-insensitive ordering of two names."""
    if (char1.lower(), char1) <= (char2.lower(), char2):
        return (char1, char2)
    return (char2, char1)


def pair_key(char1: str, char2: str) -> str:
    """Order- and case-independent identity of a pair."""
    a, b = sort_pair(char1, char2)
    return f"{a.lower()}|{b.lower()}"


def relationship_key(relationship: Relationship) -> str:
    return pair_key(*relationship.pair)


def find_unestablished_pairs(
    characters: Sequence[str],
    relationships: Iterable[Relationship],
) -> List[Pair]:
    """Every sorted pair of *characters* that has no relationship yet."""
    if len(characters) < 2:
        return []

    seen = {relationship_key(r) for r in relationships}
    unestablished: List[Pair] = []

    for i in range(len(characters)):
        for j in range(i + 1, len(characters)):
            a, b = characters[i], characters[j]
            if a.lower() == b.lower():
                continue
            key = pair_key(a, b)
            if key in seen:
                continue
            seen.add(key)
            unestablished.append(sort_pair(a, b))

    return unestablished


# ---------------------------------------------------------------------------
# Creation and attitudes
# ---------------------------------------------------------------------------

def create_relationship(
    char1: str,
    char2: str,
    status: RelationshipStatus = RelationshipStatus.strangers,
    message_id: Optional[int] = None,
    a_to_b: Optional[RelationshipAttitude] = None,
    b_to_a: Optional[RelationshipAttitude] = None,
) -> Relationship:
    relationship = Relationship(
        pair=sort_pair(char1, char2),
        status=status,
        a_to_b=a_to_b or RelationshipAttitude(),
        b_to_a=b_to_a or RelationshipAttitude(),
    )
    if message_id is not None:
        add_relationship_version(relationship, message_id)
    return relationship


def get_attitude_direction(relationship: Relationship, from_character: str) -> str:
    if relationship.pair[0].lower() == from_character.lower():
        return "a_to_b"
    return "b_to_a"


def update_attitude(
    relationship: Relationship,
    from_character: str,
    feelings: Optional[List[str]] = None,
    secrets: Optional[List[str]] = None,
    wants: Optional[List[str]] = None,
) -> None:
    attitude: RelationshipAttitude = getattr(
        relationship, get_attitude_direction(relationship, from_character)
    )
    if feelings is not None:
        attitude.feelings = list(feelings)
    if secrets is not None:
        attitude.secrets = list(secrets)
    if wants is not None:
        attitude.wants = list(wants)


# ---------------------------------------------------------------------------
# Status rules
# ---------------------------------------------------------------------------

def infer_minimum_status(feelings: Sequence[str]) -> Optional[RelationshipStatus]:
    """Lexical floor implied by one side's feelings, or ``None``."""
    text = " ".join(f.lower() for f in feelings)
    for status, pattern in _FEELING_FLOORS:
        if pattern.search(text):
            return status
    return None


def infer_maximum_status(milestones: Iterable[MilestoneEvent]) -> Optional[RelationshipStatus]:
    """``close`` unless a romantic gate milestone has been recorded."""
    if any(m.type in ROMANTIC_GATE_MILESTONES for m in milestones):
        return None
    return RelationshipStatus.close


def resolve_status(
    proposed: RelationshipStatus,
    a_to_b: RelationshipAttitude,
    b_to_a: RelationshipAttitude,
    existing: Optional[Relationship] = None,
) -> RelationshipStatus:
    """Apply the feeling floor, then (for existing relationships) the milestone ceiling."""
    status = proposed

    floors = [s for s in (infer_minimum_status(a_to_b.feelings),
                          infer_minimum_status(b_to_a.feelings)) if s is not None]
    if floors:
        floor = max(floors, key=lambda s: s.rank)
        if floor.rank > status.rank:
            status = RelationshipStatus.from_rank(floor.rank)

    if existing is not None and status.rank > 0:
        ceiling = infer_maximum_status(existing.milestones)
        if ceiling is not None and status.rank > ceiling.rank:
            status = ceiling

    return status


def build_relationship(
    pair: Pair,
    proposed: RelationshipStatus,
    a_to_b: RelationshipAttitude,
    b_to_a: RelationshipAttitude,
    existing: Optional[Relationship] = None,
    message_id: Optional[int] = None,
) -> Relationship:
    """Produce the updated relationship from freshly validated values.

    Attitudes are replaced wholesale. A version is recorded when the final
    status differs from the status before this update.
    """
    status = resolve_status(proposed, a_to_b, b_to_a, existing)

    if existing is None:
        return create_relationship(pair[0], pair[1], status, message_id, a_to_b, b_to_a)

    relationship = existing.model_copy(deep=True)
    relationship.status = status
    relationship.a_to_b = a_to_b.model_copy(deep=True)
    relationship.b_to_a = b_to_a.model_copy(deep=True)
    if status != existing.status and message_id is not None:
        add_relationship_version(relationship, message_id)
    return relationship


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------

def has_milestone(relationship: Relationship, milestone_type: str) -> bool:
    return any(m.type == milestone_type for m in relationship.milestones)


def add_milestone(relationship: Relationship, milestone: MilestoneEvent) -> bool:
    """Append *milestone* unless its type is already recorded."""
    if has_milestone(relationship, milestone.type):
        return False
    relationship.milestones.append(milestone)
    return True


def clear_milestones_for_message(relationship: Relationship, message_id: int) -> int:
    before = len(relationship.milestones)
    relationship.milestones = [m for m in relationship.milestones if m.message_id != message_id]
    return before - len(relationship.milestones)


def clear_all_milestones_for_message(relationships: Iterable[Relationship], message_id: int) -> int:
    """Remove every milestone attributed to *message_id*; returns the count removed."""
    return sum(clear_milestones_for_message(r, message_id) for r in relationships)


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------

def add_relationship_version(relationship: Relationship, message_id: int) -> None:
    relationship.versions.append(RelationshipVersion(
        message_id=message_id,
        status=relationship.status,
        a_to_b=relationship.a_to_b.model_copy(deep=True),
        b_to_a=relationship.b_to_a.model_copy(deep=True),
        milestones=[m.model_copy(deep=True) for m in relationship.milestones],
    ))


def pop_versions_for_message(relationship: Relationship, message_id: int) -> int:
    """Drop trailing versions recorded at or after *message_id*.

    When anything was dropped and an older version remains, status and
    attitudes are restored from it. Milestones recorded by other messages are
    kept; only the ones attributed to *message_id* go.
    Returns the number of versions removed.
    """
    popped = 0
    while relationship.versions and relationship.versions[-1].message_id >= message_id:
        relationship.versions.pop()
        popped += 1

    if popped and relationship.versions:
        previous = relationship.versions[-1]
        relationship.status = previous.status
        relationship.a_to_b = previous.a_to_b.model_copy(deep=True)
        relationship.b_to_a = previous.b_to_a.model_copy(deep=True)
    if popped:
        clear_milestones_for_message(relationship, message_id)

    return popped


def get_formed_message_id(relationship: Relationship) -> Optional[int]:
    """Message the relationship was first recorded at."""
    if not relationship.versions:
        return None
    return relationship.versions[0].message_id


def get_latest_version_message_id(relationship: Relationship) -> Optional[int]:
    if not relationship.versions:
        return None
    return relationship.versions[-1].message_id


def get_relationship_at_message(relationship: Relationship, message_id: int) -> Optional[RelationshipVersion]:
    """Latest version recorded at or before *message_id*."""
    for version in reversed(relationship.versions):
        if version.message_id <= message_id:
            return version
    return None


def get_relationships_at_message(relationships: Iterable[Relationship], message_id: int) -> List[Relationship]:
    """Relationships as they stood at *message_id*; ones not yet formed are skipped."""
    result = []
    for relationship in relationships:
        version = get_relationship_at_message(relationship, message_id)
        if version is None:
            continue
        result.append(relationship.model_copy(update={
            "status": version.status,
            "a_to_b": version.a_to_b,
            "b_to_a": version.b_to_a,
            "milestones": version.milestones,
        }))
    return result


# ---------------------------------------------------------------------------
# Signal application
# ---------------------------------------------------------------------------

def apply_relationship_signal(relationship: Relationship, signal: RelationshipSignal) -> Relationship:
    """Cheap update from an event's signal; returns a new relationship.

    Appends novel feelings in the matching direction and novel milestone
    types. Status is never touched here.
    """
    updated = relationship.model_copy(deep=True)
    char_a, char_b = (name.lower() for name in updated.pair)

    for change in signal.changes:
        source, target = change.from_character.lower(), change.toward.lower()
        if (source, target) == (char_a, char_b):
            attitude = updated.a_to_b
        elif (source, target) == (char_b, char_a):
            attitude = updated.b_to_a
        else:
            continue
        known = {f.lower() for f in attitude.feelings}
        if change.feeling.lower() not in known:
            attitude.feelings.append(change.feeling)

    for milestone in signal.milestones:
        add_milestone(updated, milestone.model_copy(deep=True))

    return updated


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_relationship(relationship: Relationship, include_secrets: bool = True) -> str:
    char_a, char_b = relationship.pair
    lines = [f"## {char_a} & {char_b} ({relationship.status.value})"]

    for source, target, attitude in (
        (char_a, char_b, relationship.a_to_b),
        (char_b, char_a, relationship.b_to_a),
    ):
        lines.append(f"{source} → {target}:")
        lines.append(f"  Feelings: {', '.join(attitude.feelings) or 'neutral'}")
        if attitude.wants:
            lines.append(f"  Wants: {', '.join(attitude.wants)}")
        if include_secrets and attitude.secrets:
            lines.append(f"  Secrets ({target} doesn't know): {', '.join(attitude.secrets)}")

    if relationship.milestones:
        names = ", ".join(m.type.replace("_", " ") for m in relationship.milestones)
        lines.append(f"Milestones: {names}")

    return "\n".join(lines)


def format_relationships_for_prompt(
    relationships: Sequence[Relationship],
    present_characters: Optional[Sequence[str]] = None,
    include_secrets: bool = True,
) -> str:
    if not relationships:
        return "No established relationships."

    relevant = list(relationships)
    if present_characters:
        present = {c.lower() for c in present_characters}
        relevant = [
            r for r in relationships
            if r.pair[0].lower() in present or r.pair[1].lower() in present
        ]

    if not relevant:
        return "No established relationships between present characters."

    return "\n\n".join(format_relationship(r, include_secrets) for r in relevant)
