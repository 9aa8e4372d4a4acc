"""
Narrative State Store.

One ``NarrativeState`` per chat, stored under the tracker's key on the first
message. It is created lazily and migrated in place when its ``version`` is
behind ``NARRATIVE_STATE_VERSION``.
"""

from __future__ import annotations

from typing import Optional

from pydantic import ValidationError

from narrative_tracker.errors import CorruptNarrativeState
from narrative_tracker.schemas.state import (
    NARRATIVE_STATE_VERSION,
    Chapter,
    NarrativeState,
    Relationship,
    RelationshipVersion,
)
from narrative_tracker.state.message_state import EXTENSION_KEY, ChatLog
from narrative_tracker.state.relationships import pair_key, relationship_key
from narrative_tracker.utils.logging_config import get_logger

logger = get_logger("tracker.narrative_state")

NARRATIVE_KEY = "narrative"


def get_narrative_state(chat: ChatLog) -> Optional[NarrativeState]:
    """The stored state, or ``None`` when there is none yet.

    Raises ``CorruptNarrativeState`` when a stored value does not validate.
    """
    if len(chat) == 0:
        return None

    storage = chat[0].extra.get(EXTENSION_KEY)
    if not isinstance(storage, dict) or not storage.get(NARRATIVE_KEY):
        return None

    raw = storage[NARRATIVE_KEY]
    if isinstance(raw, NarrativeState):
        return raw
    try:
        return NarrativeState.model_validate(raw)
    except ValidationError as e:
        raise CorruptNarrativeState(f"Stored narrative state is unreadable: {e}") from e


def set_narrative_state(chat: ChatLog, state: NarrativeState) -> None:
    if len(chat) == 0:
        logger.warning("Cannot set narrative state: chat has no messages")
        return
    storage = chat[0].extra.setdefault(EXTENSION_KEY, {})
    storage[NARRATIVE_KEY] = state.model_dump(mode="json")
    chat[0].changed = True


def initialize_narrative_state() -> NarrativeState:
    return NarrativeState(version=NARRATIVE_STATE_VERSION)


def _migrate(state: NarrativeState) -> bool:
    """Bring *state* up to the current version in place; True when changed."""
    migrated = False

    if state.version < 2:
        # v1 relationships had no history; seed it so they exist from the start
        for relationship in state.relationships:
            if not relationship.versions:
                relationship.versions = [RelationshipVersion(
                    message_id=0,
                    status=relationship.status,
                    a_to_b=relationship.a_to_b.model_copy(deep=True),
                    b_to_a=relationship.b_to_a.model_copy(deep=True),
                    milestones=[m.model_copy(deep=True) for m in relationship.milestones],
                )]
        state.version = 2
        migrated = True

    return migrated


def get_or_initialize_narrative_state(chat: ChatLog) -> NarrativeState:
    state = get_narrative_state(chat)

    if state is None:
        state = initialize_narrative_state()
        set_narrative_state(chat, state)
    elif _migrate(state):
        logger.info("Migrated narrative state", extra={"metadata": {"version": state.version}})
        set_narrative_state(chat, state)

    return state


async def save_narrative_state(chat: ChatLog, state: NarrativeState) -> None:
    """Store *state* and persist the first message only."""
    set_narrative_state(chat, state)
    await chat.save_message(0)


# ---------------------------------------------------------------------------
# Update helpers
# ---------------------------------------------------------------------------

def add_chapter(state: NarrativeState, chapter: Chapter) -> None:
    state.chapters.append(chapter)


def update_relationship(state: NarrativeState, relationship: Relationship) -> None:
    """Replace the relationship for the same pair, or add it."""
    key = relationship_key(relationship)
    for index, existing in enumerate(state.relationships):
        if relationship_key(existing) == key:
            state.relationships[index] = relationship
            return
    state.relationships.append(relationship)


def get_relationship(state: NarrativeState, char1: str, char2: str) -> Optional[Relationship]:
    key = pair_key(char1, char2)
    for relationship in state.relationships:
        if relationship_key(relationship) == key:
            return relationship
    return None
