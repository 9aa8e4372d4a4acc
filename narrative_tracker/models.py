from datetime import datetime
from typing import List, Optional
from sqlalchemy import String, DateTime, ForeignKey, Text, JSON, Integer, Boolean, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class Chat(Base):
    __tablename__ = "chats"

    id: Mapped[str] = mapped_column(String, primary_key=True, index=True)  # UUID strings
    title: Mapped[str] = mapped_column(String, default="Untitled Chat")
    user_name: Mapped[str] = mapped_column(String, default="User")
    character_name: Mapped[str] = mapped_column(String, default="Character")

    # Card descriptions handed to the initial extraction prompts
    character_info: Mapped[str] = mapped_column(Text, default="")
    user_info: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    messages: Mapped[List["ChatMessageRecord"]] = relationship(
        "ChatMessageRecord", back_populates="chat", cascade="all, delete-orphan", order_by="ChatMessageRecord.position"
    )


class ChatMessageRecord(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(ForeignKey("chats.id"), index=True)
    position: Mapped[int] = mapped_column(Integer)  # index within the chat log

    name: Mapped[str] = mapped_column(String)
    is_user: Mapped[bool] = mapped_column(Boolean, default=False)
    mes: Mapped[str] = mapped_column(Text)
    swipe_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=0)

    # Per-message extension storage; the tracker keeps its state records here
    extra: Mapped[dict] = mapped_column(JSON, default=dict)

    chat: Mapped["Chat"] = relationship("Chat", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("chat_id", "position", name="uix_chat_message_position"),
    )
