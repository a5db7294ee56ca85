"""Pydantic schemas for conversations and messages.

Wire format is camelCase (conversationId, unreadCount, ...) because the
mobile and web clients were written against it; Python code uses the
snake_case field names. Both spellings are accepted on input.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_wire(self) -> dict:
        """JSON-safe dict with camelCase keys, ready for a realtime frame."""
        return self.model_dump(mode="json", by_alias=True)


# ─── Participants ─────────────────────────────────────────


class ParticipantSummary(CamelModel):
    id: uuid.UUID
    name: str
    avatar_url: Optional[str] = None
    is_artist: bool = False


# ─── Messages ─────────────────────────────────────────────


class MessageCreate(CamelModel):
    receiver_id: uuid.UUID
    content: str
    message_type: str = Field("text", max_length=30)


class MessageRead(CamelModel):
    id: int
    conversation_id: uuid.UUID
    sender_id: uuid.UUID
    receiver_id: uuid.UUID
    content: str
    message_type: str
    is_read: bool
    created_at: datetime
    sender: Optional[ParticipantSummary] = None
    receiver: Optional[ParticipantSummary] = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_more: bool


class MessagePage(CamelModel):
    messages: list[MessageRead]
    pagination: Pagination


# ─── Conversations ────────────────────────────────────────


class ConversationRead(CamelModel):
    """A conversation with both participants and its latest message."""

    id: uuid.UUID
    user1_id: uuid.UUID
    user2_id: uuid.UUID
    user1: ParticipantSummary
    user2: ParticipantSummary
    last_message: Optional[MessageRead] = None
    last_message_at: datetime
    created_at: datetime


class ConversationSummary(CamelModel):
    """A conversation as seen from one participant's inbox."""

    id: uuid.UUID
    other_user: ParticipantSummary
    last_message: Optional[MessageRead] = None
    unread_count: int
    last_message_at: datetime
    created_at: datetime


# ─── Read receipts / counters ─────────────────────────────


class MarkReadResult(CamelModel):
    message: str = "Messages marked as read"
    marked_count: int


class UnreadCount(CamelModel):
    unread_count: int
