"""Load a stored chat into a ``ChatLog`` whose save hooks write back to the database."""

from __future__ import annotations

import copy
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import flag_modified

from narrative_tracker.models import Chat, ChatMessageRecord
from narrative_tracker.state.message_state import ChatLog, ChatMessage
from narrative_tracker.utils.logging_config import get_logger

logger = get_logger("tracker.chat_store")


async def get_chat(session: AsyncSession, chat_id: str) -> Optional[Chat]:
    result = await session.execute(
        select(Chat)
        .where(Chat.id == chat_id)
        .options(selectinload(Chat.messages))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def load_chat_log(session: AsyncSession, chat_id: str) -> Optional[ChatLog]:
    """Build an in-memory log for *chat_id*, or ``None`` if the chat does not exist.

    ``extra`` is deep-copied on the way in and out, so nothing reaches the
    database until one of the save hooks runs. Saving writes only messages
    whose ``extra`` changed in this log; slots other requests wrote since the
    log was loaded are left alone.
    """
    chat = await get_chat(session, chat_id)
    if chat is None:
        return None

    records: Dict[int, ChatMessageRecord] = {r.position: r for r in chat.messages}
    ordered = [records[p] for p in sorted(records)]

    def write(log: ChatLog, index: int) -> None:
        record = ordered[index]
        record.extra = copy.deepcopy(log[index].extra)
        flag_modified(record, "extra")

    async def save_message(log: ChatLog, index: int) -> None:
        write(log, index)
        await session.commit()
        log[index].changed = False

    async def save(log: ChatLog) -> None:
        changed = log.changed_indices()
        if not changed:
            return
        for index in changed:
            write(log, index)
        await session.commit()
        for index in changed:
            log[index].changed = False
        logger.debug("Saved chat", extra={"chat_id": chat_id, "metadata": {"messages": changed}})

    async def reload_message(log: ChatLog, index: int) -> None:
        record = ordered[index]
        await session.refresh(record, attribute_names=["extra"])
        log[index].extra = copy.deepcopy(record.extra or {})
        log[index].changed = False

    return ChatLog(
        messages=[
            ChatMessage(
                name=r.name,
                mes=r.mes,
                is_user=r.is_user,
                swipe_id=r.swipe_id,
                extra=copy.deepcopy(r.extra or {}),
            )
            for r in ordered
        ],
        character_info=chat.character_info or "",
        user_info=chat.user_info or "",
        saver=save,
        message_saver=save_message,
        reloader=reload_message,
    )


async def append_message(
    session: AsyncSession,
    chat: Chat,
    name: str,
    mes: str,
    is_user: bool,
) -> ChatMessageRecord:
    record = ChatMessageRecord(
        chat_id=chat.id,
        position=len(chat.messages),
        name=name,
        mes=mes,
        is_user=is_user,
        swipe_id=0,
        extra={},
    )
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return record
