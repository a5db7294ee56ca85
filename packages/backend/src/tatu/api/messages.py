"""Messaging API routes — conversations, messages, read receipts.

Thin wrappers over ConversationService. Writes that other users should
see live (new messages, read receipts) are also handed to the realtime
gateway, so clients converge whether the write came over HTTP or a
socket.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tatu.auth.dependencies import CurrentIdentity, get_current_user
from tatu.config import settings
from tatu.db.engine import get_db
from tatu.errors import MessagingError
from tatu.schemas.messaging import (
    ConversationRead,
    ConversationSummary,
    MarkReadResult,
    MessageCreate,
    MessagePage,
    MessageRead,
    UnreadCount,
)
from tatu.services.conversation_service import ConversationService

router = APIRouter(prefix="/messages")


def _svc(db: AsyncSession = Depends(get_db)) -> ConversationService:
    return ConversationService(db)


def _http_error(e: MessagingError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


# ─── Conversations ────────────────────────────────────────────


@router.get("/conversations", response_model=list[ConversationSummary])
async def list_conversations(
    identity: CurrentIdentity = Depends(get_current_user),
    svc: ConversationService = Depends(_svc),
):
    """All conversations of the current user, most recent first."""
    return await svc.list_conversations(identity.user_id)


@router.get("/unread-count", response_model=UnreadCount)
async def unread_count(
    identity: CurrentIdentity = Depends(get_current_user),
    svc: ConversationService = Depends(_svc),
):
    """Total unread messages addressed to the current user."""
    return UnreadCount(unread_count=await svc.unread_count(identity.user_id))


@router.post("/conversations/{user_id}", response_model=ConversationRead)
async def start_conversation(
    user_id: uuid.UUID,
    identity: CurrentIdentity = Depends(get_current_user),
    svc: ConversationService = Depends(_svc),
):
    """Open (or reopen) the conversation with another user."""
    try:
        return await svc.get_or_create_conversation(identity.user_id, user_id)
    except MessagingError as e:
        raise _http_error(e)


@router.get("/conversations/{conversation_id}", response_model=ConversationSummary)
async def get_conversation(
    conversation_id: uuid.UUID,
    identity: CurrentIdentity = Depends(get_current_user),
    svc: ConversationService = Depends(_svc),
):
    """One conversation as it appears in the current user's inbox."""
    try:
        return await svc.conversation_summary(conversation_id, identity.user_id)
    except MessagingError as e:
        raise _http_error(e)


@router.get(
    "/conversations/{conversation_id}/messages", response_model=MessagePage
)
async def list_messages(
    conversation_id: uuid.UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    identity: CurrentIdentity = Depends(get_current_user),
    svc: ConversationService = Depends(_svc),
):
    """A page of messages, oldest first; page 1 is the most recent."""
    try:
        return await svc.list_messages(
            conversation_id, identity.user_id, page=page, page_size=limit
        )
    except MessagingError as e:
        raise _http_error(e)


@router.put(
    "/conversations/{conversation_id}/read", response_model=MarkReadResult
)
async def mark_read(
    conversation_id: uuid.UUID,
    request: Request,
    identity: CurrentIdentity = Depends(get_current_user),
    svc: ConversationService = Depends(_svc),
):
    """Mark every message addressed to the current user as read."""
    try:
        count = await svc.mark_read(conversation_id, identity.user_id)
    except MessagingError as e:
        raise _http_error(e)

    await request.app.state.gateway.announce_read(conversation_id, identity.user_id, count)
    return MarkReadResult(marked_count=count)


# ─── Messages ─────────────────────────────────────────────────


@router.post("", response_model=MessageRead, status_code=201)
async def send_message(
    body: MessageCreate,
    request: Request,
    identity: CurrentIdentity = Depends(get_current_user),
    svc: ConversationService = Depends(_svc),
):
    """Send a message; creates the conversation on first contact."""
    try:
        message = await svc.send_message(
            sender_id=identity.user_id,
            receiver_id=body.receiver_id,
            content=body.content,
            message_type=body.message_type,
        )
    except MessagingError as e:
        raise _http_error(e)

    await request.app.state.gateway.announce_message(message)
    return message


@router.delete("/{message_id}")
async def delete_message(
    message_id: int,
    identity: CurrentIdentity = Depends(get_current_user),
    svc: ConversationService = Depends(_svc),
):
    """Delete a message. Only its sender may."""
    try:
        await svc.delete_message(message_id, identity.user_id)
    except MessagingError as e:
        raise _http_error(e)
    return {"message": "Message deleted successfully"}
