"""
Request and response bodies for the HTTP surface.

Tracker state itself is returned as the ``schemas.state`` models; the
wrappers here only add the host-side chat plumbing around them.
"""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from .state import NarrativeState, TrackedState

# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------
MAX_MESSAGE_CHARS = 65_536


class CreateChatRequest(BaseModel):
    title: str = "Untitled Chat"
    user_name: str = "User"
    character_name: str = "Character"
    character_info: str = ""
    user_info: str = ""


class AppendMessageRequest(BaseModel):
    name: str = Field(..., min_length=1)
    mes: str = Field(..., max_length=MAX_MESSAGE_CHARS)
    is_user: bool = False


class MessageResponse(BaseModel):
    message_id: int
    name: str
    mes: str
    is_user: bool
    has_state: bool = False


class ChatResponse(BaseModel):
    id: str
    title: str
    user_name: str
    character_name: str
    updated_at: str
    messages: List[MessageResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractRequest(BaseModel):
    force_scene: bool = False


class ExtractResponse(BaseModel):
    message_id: int
    state: TrackedState
    weather_transition: Optional[str] = None
    reconciled: List[int] = Field(default_factory=list)
    reconciliation_failed: List[int] = Field(default_factory=list)


class AbortResponse(BaseModel):
    message_id: int
    aborted: bool


class MessageStateResponse(BaseModel):
    message_id: int
    state: Optional[TrackedState] = None
    extracted_at: Optional[str] = None


class NarrativeResponse(BaseModel):
    chat_id: str
    narrative: NarrativeState
