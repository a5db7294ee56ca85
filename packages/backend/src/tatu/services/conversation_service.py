"""Conversation service — conversations, messages, read receipts.

Pure business logic over the database: no transport awareness. Both the
REST routes and the realtime gateway call into this service, and
send_message is the single write path for new messages.

Conversations are keyed by an unordered user pair. The pair is stored in
canonical order (smaller id first, compared as strings) and protected by
a unique constraint, so a second "start conversation" for the same two
users, from either side, returns the existing row.
"""

import math
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import DateTime, case, func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tatu.db.models import Conversation, Message, User, utcnow
from tatu.errors import AccessDenied, Conflict, InvalidContent, InvalidParticipants, NotFound
from tatu.schemas.messaging import (
    ConversationRead,
    ConversationSummary,
    MessagePage,
    MessageRead,
    Pagination,
    ParticipantSummary,
)

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 50


def canonical_pair(
    user_a: uuid.UUID, user_b: uuid.UUID
) -> tuple[uuid.UUID, uuid.UUID]:
    """Order a user pair so the lexicographically smaller id comes first."""
    if user_a == user_b:
        raise InvalidParticipants("A conversation needs two distinct users")
    first, second = sorted([user_a, user_b], key=str)
    return first, second


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we write is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConversationService:
    """Conversation lookup/creation, pagination, and read accounting."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ─── Conversations ────────────────────────────────────

    async def get_or_create_conversation(
        self, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> ConversationRead:
        """Return the conversation between two users, creating it if absent."""
        conversation = await self._get_or_create(user_a, user_b)
        last = await self._last_message(conversation.id)
        return ConversationRead(
            id=conversation.id,
            user1_id=conversation.user1_id,
            user2_id=conversation.user2_id,
            user1=ParticipantSummary.model_validate(conversation.user1),
            user2=ParticipantSummary.model_validate(conversation.user2),
            last_message=MessageRead.model_validate(last) if last else None,
            last_message_at=conversation.last_message_at,
            created_at=conversation.created_at,
        )

    async def get_conversation(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> Conversation:
        """Load a conversation the user participates in.

        Raises NotFound if it does not exist, AccessDenied if the user
        is not one of its two participants.
        """
        conversation = await self._load_conversation(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if not conversation.has_participant(user_id):
            raise AccessDenied("You are not a participant in this conversation")
        return conversation

    async def list_conversations(self, user_id: uuid.UUID) -> list[ConversationSummary]:
        """All of a user's conversations, most recently active first.

        Each one is annotated with the other participant, the latest
        message, and how many messages addressed to this user are unread.
        """
        result = await self.db.execute(
            select(Conversation)
            .where(
                or_(
                    Conversation.user1_id == user_id,
                    Conversation.user2_id == user_id,
                )
            )
            .options(
                selectinload(Conversation.user1),
                selectinload(Conversation.user2),
            )
            .order_by(Conversation.last_message_at.desc(), Conversation.created_at.desc())
        )
        conversations = list(result.scalars().all())
        if not conversations:
            return []

        unread_result = await self.db.execute(
            select(Message.conversation_id, func.count(Message.id))
            .where(Message.receiver_id == user_id)
            .where(Message.is_read.is_(False))
            .where(Message.conversation_id.in_([c.id for c in conversations]))
            .group_by(Message.conversation_id)
        )
        unread = {row[0]: int(row[1]) for row in unread_result}

        summaries = []
        for conversation in conversations:
            last = await self._last_message(conversation.id)
            summaries.append(
                self._summary(conversation, user_id, last, unread.get(conversation.id, 0))
            )
        return summaries

    async def conversation_summary(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> ConversationSummary:
        """One inbox entry, with the recomputed unread count for this user."""
        conversation = await self.get_conversation(conversation_id, user_id)
        last = await self._last_message(conversation.id)
        unread = await self._unread_in_conversation(conversation.id, user_id)
        return self._summary(conversation, user_id, last, unread)

    # ─── Messages ─────────────────────────────────────────

    async def list_messages(
        self,
        conversation_id: uuid.UUID,
        user_id: uuid.UUID,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> MessagePage:
        """One page of a conversation, oldest first within the page.

        Pages count backwards from the newest message: page 1 holds the
        most recent `page_size` messages.
        """
        await self.get_conversation(conversation_id, user_id)

        page = max(page, 1)
        page_size = max(page_size, 1)
        offset = (page - 1) * page_size

        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .options(selectinload(Message.sender), selectinload(Message.receiver))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset(offset)
            .limit(page_size)
            .execution_options(populate_existing=True)
        )
        messages = list(result.scalars().all())

        total_result = await self.db.execute(
            select(func.count(Message.id)).where(
                Message.conversation_id == conversation_id
            )
        )
        total = int(total_result.scalar() or 0)

        messages.reverse()
        return MessagePage(
            messages=[MessageRead.model_validate(m) for m in messages],
            pagination=Pagination(
                page=page,
                limit=page_size,
                total=total,
                total_pages=math.ceil(total / page_size),
                has_more=offset + len(messages) < total,
            ),
        )

    async def send_message(
        self,
        sender_id: uuid.UUID,
        receiver_id: uuid.UUID,
        content: Optional[str],
        message_type: Optional[str] = "text",
    ) -> MessageRead:
        """Persist a new unread message and bump the conversation.

        The conversation is created on first contact. last_message_at is
        moved forward to the insertion time and never backwards.
        """
        if not content or not content.strip():
            raise InvalidContent("Content is required")
        if sender_id == receiver_id:
            raise InvalidParticipants("Cannot send message to yourself")

        conversation = await self._get_or_create(sender_id, receiver_id)

        now = utcnow()
        message = Message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            message_type=message_type or "text",
            is_read=False,
            created_at=now,
        )
        self.db.add(message)

        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(
                last_message_at=case(
                    (Conversation.last_message_at < now, literal(now, DateTime(timezone=True))),
                    else_=Conversation.last_message_at,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(
            "messaging.message_sent",
            message_id=message.id,
            conversation_id=str(conversation.id),
            sender_id=str(sender_id),
            receiver_id=str(receiver_id),
        )
        loaded = await self._load_message(message.id)
        return MessageRead.model_validate(loaded)

    async def mark_read(self, conversation_id: uuid.UUID, user_id: uuid.UUID) -> int:
        """Mark every unread message addressed to user_id as read.

        Returns how many flipped. Calling it again right away returns 0.
        """
        await self.get_conversation(conversation_id, user_id)

        result = await self.db.execute(
            update(Message)
            .where(Message.conversation_id == conversation_id)
            .where(Message.receiver_id == user_id)
            .where(Message.is_read.is_(False))
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        count = int(result.rowcount or 0)

        if count:
            logger.info(
                "messaging.messages_read",
                conversation_id=str(conversation_id),
                user_id=str(user_id),
                count=count,
            )
        return count

    async def unread_count(self, user_id: uuid.UUID) -> int:
        """Unread messages addressed to user_id across all conversations."""
        result = await self.db.execute(
            select(func.count(Message.id))
            .where(Message.receiver_id == user_id)
            .where(Message.is_read.is_(False))
        )
        return int(result.scalar() or 0)

    async def delete_message(self, message_id: int, user_id: uuid.UUID) -> None:
        """Permanently remove a message. Only its sender may do this."""
        result = await self.db.execute(select(Message).where(Message.id == message_id))
        message = result.scalars().first()
        if not message:
            raise NotFound("Message not found")
        if message.sender_id != user_id:
            raise AccessDenied("Only the sender can delete this message")

        await self.db.delete(message)
        await self.db.commit()
        logger.info("messaging.message_deleted", message_id=message_id, user_id=str(user_id))

    # ─── Internals ────────────────────────────────────────

    async def _get_or_create(
        self, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> Conversation:
        first, second = canonical_pair(user_a, user_b)

        conversation = await self._find_pair(first, second)
        if conversation:
            return conversation

        users = await self.db.execute(select(User.id).where(User.id.in_([first, second])))
        found = set(users.scalars().all())
        if found != {first, second}:
            raise NotFound("User not found")

        self.db.add(
            Conversation(user1_id=first, user2_id=second, last_message_at=utcnow())
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # Someone else created the same pair first.
            await self.db.rollback()
        else:
            logger.info(
                "messaging.conversation_created",
                user1_id=str(first),
                user2_id=str(second),
            )

        conversation = await self._find_pair(first, second)
        if conversation is None:
            raise Conflict("Conversation could not be created")
        return conversation

    async def _find_pair(
        self, first: uuid.UUID, second: uuid.UUID
    ) -> Optional[Conversation]:
        # Rows written before pairs were normalized may hold either order.
        result = await self.db.execute(
            select(Conversation)
            .where(
                or_(
                    (Conversation.user1_id == first) & (Conversation.user2_id == second),
                    (Conversation.user1_id == second) & (Conversation.user2_id == first),
                )
            )
            .options(
                selectinload(Conversation.user1),
                selectinload(Conversation.user2),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _load_conversation(self, conversation_id: uuid.UUID) -> Optional[Conversation]:
        result = await self.db.execute(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .options(
                selectinload(Conversation.user1),
                selectinload(Conversation.user2),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _load_message(self, message_id: int) -> Message:
        result = await self.db.execute(
            select(Message)
            .where(Message.id == message_id)
            .options(selectinload(Message.sender), selectinload(Message.receiver))
            .execution_options(populate_existing=True)
        )
        return result.scalars().one()

    async def _last_message(self, conversation_id: uuid.UUID) -> Optional[Message]:
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .options(selectinload(Message.sender), selectinload(Message.receiver))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _unread_in_conversation(
        self, conversation_id: uuid.UUID, user_id: uuid.UUID
    ) -> int:
        result = await self.db.execute(
            select(func.count(Message.id))
            .where(Message.conversation_id == conversation_id)
            .where(Message.receiver_id == user_id)
            .where(Message.is_read.is_(False))
        )
        return int(result.scalar() or 0)

    def _summary(
        self,
        conversation: Conversation,
        user_id: uuid.UUID,
        last: Optional[Message],
        unread: int,
    ) -> ConversationSummary:
        other = conversation.user2 if conversation.user1_id == user_id else conversation.user1
        return ConversationSummary(
            id=conversation.id,
            other_user=ParticipantSummary.model_validate(other),
            last_message=MessageRead.model_validate(last) if last else None,
            unread_count=unread,
            last_message_at=_as_utc(conversation.last_message_at),
            created_at=_as_utc(conversation.created_at),
        )
