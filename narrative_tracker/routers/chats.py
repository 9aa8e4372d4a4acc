"""Chat plumbing and extraction REST endpoints."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from narrative_tracker.database import get_db
from narrative_tracker.errors import ConfigurationError, CorruptNarrativeState, ExtractionInProgress
from narrative_tracker.models import Chat, ChatMessageRecord
from narrative_tracker.schemas import (
    AbortResponse,
    AppendMessageRequest,
    ChatResponse,
    CreateChatRequest,
    ExtractRequest,
    ExtractResponse,
    MessageResponse,
    MessageStateResponse,
    NarrativeResponse,
)
from narrative_tracker.services.chat_store import append_message, get_chat, load_chat_log
from narrative_tracker.services.tracker import ExtractionStatus, TrackerService, get_tracker_service
from narrative_tracker.state.message_state import EXTENSION_KEY, ChatLog, get_message_state
from narrative_tracker.state.narrative_state import get_narrative_state, initialize_narrative_state

router = APIRouter()


async def _require_log(db: AsyncSession, chat_id: str, message_id: Optional[int] = None) -> ChatLog:
    chat = await load_chat_log(db, chat_id)
    if chat is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    if message_id is not None and not 0 <= message_id < len(chat):
        raise HTTPException(status_code=404, detail="Message not found")
    return chat


def _has_state(record: ChatMessageRecord) -> bool:
    slot = (record.extra or {}).get(EXTENSION_KEY)
    return isinstance(slot, dict) and str(record.swipe_id or 0) in slot


def _chat_response(chat: Chat) -> dict:
    return {
        "id": chat.id,
        "title": chat.title,
        "user_name": chat.user_name,
        "character_name": chat.character_name,
        "updated_at": chat.updated_at.isoformat() if chat.updated_at else "",
        "messages": [
            {
                "message_id": m.position,
                "name": m.name,
                "mes": m.mes,
                "is_user": m.is_user,
                "has_state": _has_state(m),
            }
            for m in sorted(chat.messages, key=lambda m: m.position)
        ],
    }


@router.post("/chats", response_model=ChatResponse)
async def create_chat(request: CreateChatRequest, db: AsyncSession = Depends(get_db)):
    chat = Chat(id=str(uuid.uuid4()), **request.model_dump())
    db.add(chat)
    await db.commit()

    chat = await get_chat(db, chat.id)
    return _chat_response(chat)


@router.get("/chats/{chat_id}", response_model=ChatResponse)
async def get_chat_details(chat_id: str, db: AsyncSession = Depends(get_db)):
    chat = await get_chat(db, chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")
    return _chat_response(chat)


@router.post("/chats/{chat_id}/messages", response_model=MessageResponse)
async def add_message(chat_id: str, request: AppendMessageRequest, db: AsyncSession = Depends(get_db)):
    chat = await get_chat(db, chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not found")

    record = await append_message(db, chat, request.name, request.mes, request.is_user)
    return {
        "message_id": record.position,
        "name": record.name,
        "mes": record.mes,
        "is_user": record.is_user,
    }


@router.post("/chats/{chat_id}/messages/{message_id}/extract", response_model=ExtractResponse)
async def extract_message(
    chat_id: str,
    message_id: int,
    request: Optional[ExtractRequest] = None,
    db: AsyncSession = Depends(get_db),
    service: TrackerService = Depends(get_tracker_service),
):
    """Run the tracker for one message and store the result on it.

    A re-extraction also rewrites the event ledgers of later messages; any
    message whose rewrite failed is listed in ``reconciliation_failed``.
    """
    chat = await _require_log(db, chat_id, message_id)
    force_scene = request.force_scene if request else False

    try:
        outcome = await service.extract_message(chat_id, chat, message_id, force_scene=force_scene)
    except ExtractionInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))

    if outcome.status == ExtractionStatus.aborted:
        raise HTTPException(status_code=409, detail="Extraction aborted")
    if outcome.status == ExtractionStatus.failed:
        if isinstance(outcome.error, ConfigurationError):
            status = 400
        elif isinstance(outcome.error, CorruptNarrativeState):
            status = 500
        else:
            status = 502
        raise HTTPException(status_code=status, detail=str(outcome.error))

    report = outcome.reconciliation
    return {
        "message_id": message_id,
        "state": outcome.state,
        "weather_transition": outcome.weather_transition,
        "reconciled": report.updated if report else [],
        "reconciliation_failed": report.failed if report else [],
    }


@router.post("/chats/{chat_id}/messages/{message_id}/abort", response_model=AbortResponse)
async def abort_extraction(
    chat_id: str,
    message_id: int,
    service: TrackerService = Depends(get_tracker_service),
):
    return {"message_id": message_id, "aborted": service.abort(chat_id, message_id)}


@router.get("/chats/{chat_id}/messages/{message_id}/state", response_model=MessageStateResponse)
async def get_state(chat_id: str, message_id: int, db: AsyncSession = Depends(get_db)):
    chat = await _require_log(db, chat_id, message_id)
    stored = get_message_state(chat[message_id])
    if stored is None:
        return {"message_id": message_id}
    return {
        "message_id": message_id,
        "state": stored.state,
        "extracted_at": stored.extracted_at.isoformat(),
    }


@router.get("/chats/{chat_id}/narrative", response_model=NarrativeResponse)
async def get_narrative(chat_id: str, db: AsyncSession = Depends(get_db)):
    chat = await _require_log(db, chat_id)
    # Read-only: a chat that was never extracted gets a fresh, unsaved state
    try:
        narrative = get_narrative_state(chat) or initialize_narrative_state()
    except CorruptNarrativeState as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"chat_id": chat_id, "narrative": narrative}
