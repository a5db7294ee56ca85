"""Payloads of client → server realtime events.

Adapters normalize their native framing into dicts before validation,
so these models see the same shape whichever transport a client uses.
"""

import uuid
from typing import Optional

from pydantic import Field

from tatu.schemas.messaging import CamelModel


class AuthenticatePayload(CamelModel):
    token: Optional[str] = None


class ConversationRef(CamelModel):
    conversation_id: uuid.UUID


class SendMessagePayload(CamelModel):
    conversation_id: Optional[uuid.UUID] = None
    receiver_id: Optional[uuid.UUID] = None
    content: Optional[str] = None
    message_type: str = Field("text", max_length=30)


class GetMessagesPayload(CamelModel):
    conversation_id: uuid.UUID
    page: int = Field(1, ge=1)
    limit: Optional[int] = None
