"""In-memory chat log and the per-message storage slot.

The host keeps an opaque ``extra`` dict on every message. The tracker owns
one key in it; under that key each swipe gets its own
``{state, extracted_at}`` record, so flipping between swipes shows the state
that was extracted for the visible text.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from narrative_tracker.schemas.state import StoredStateData, TrackedState
from narrative_tracker.utils.logging_config import get_logger

logger = get_logger("tracker.message_state")

EXTENSION_KEY = "narrative_tracker"


@dataclasses.dataclass
class ChatMessage:
    name: str
    mes: str
    is_user: bool = False
    swipe_id: Optional[int] = 0
    extra: Dict[str, Any] = dataclasses.field(default_factory=dict)
    # Set when ``extra`` was written in memory and not yet persisted
    changed: bool = dataclasses.field(default=False, compare=False)


@dataclasses.dataclass
class ChatLog:
    """Ordered, editable message sequence plus the hooks to persist it.

    ``saver`` writes the changed messages back to the host; ``message_saver``
    writes a single message and ``reloader`` re-reads one message's ``extra``
    from the host, dropping unsaved changes to it. All three are optional so
    the log can live purely in memory.
    """
    messages: List[ChatMessage] = dataclasses.field(default_factory=list)
    character_info: str = ""
    user_info: str = ""
    saver: Optional[Callable[["ChatLog"], Awaitable[None]]] = None
    message_saver: Optional[Callable[["ChatLog", int], Awaitable[None]]] = None
    reloader: Optional[Callable[["ChatLog", int], Awaitable[None]]] = None

    def __len__(self) -> int:
        return len(self.messages)

    def __getitem__(self, index: int) -> ChatMessage:
        return self.messages[index]

    def changed_indices(self) -> List[int]:
        return [index for index, message in enumerate(self.messages) if message.changed]

    async def save(self) -> None:
        if self.saver is not None:
            await self.saver(self)

    async def save_message(self, index: int) -> None:
        if self.message_saver is not None:
            await self.message_saver(self, index)
        else:
            await self.save()

    async def reload_message(self, index: int) -> None:
        if self.reloader is not None and 0 <= index < len(self.messages):
            await self.reloader(self, index)


def _swipe_key(message: ChatMessage) -> str:
    # JSON round-trips turn int keys into strings, so store them as strings
    return str(message.swipe_id or 0)


def get_message_state(message: ChatMessage) -> Optional[StoredStateData]:
    """Return the stored record for the message's active swipe, if any."""
    storage = message.extra.get(EXTENSION_KEY)
    if not isinstance(storage, dict):
        return None
    raw = storage.get(_swipe_key(message))
    if raw is None:
        return None
    if isinstance(raw, StoredStateData):
        return raw
    try:
        return StoredStateData.model_validate(raw)
    except ValidationError:
        logger.warning("Discarding unreadable stored state", exc_info=True)
        return None


def set_message_state(message: ChatMessage, data: StoredStateData) -> None:
    """Overwrite the record for the active swipe, keeping other swipes."""
    storage = message.extra.setdefault(EXTENSION_KEY, {})
    storage[_swipe_key(message)] = data.model_dump(mode="json")
    message.changed = True


def get_previous_state(chat: ChatLog, message_id: int) -> Tuple[Optional[int], Optional[TrackedState]]:
    """Find the nearest earlier message carrying a stored state."""
    for index in range(message_id - 1, -1, -1):
        stored = get_message_state(chat[index])
        if stored is not None:
            return index, stored.state
    return None, None


def format_messages(messages: List[ChatMessage]) -> str:
    return "\n\n".join(f"{msg.name}: {msg.mes}" for msg in messages)
