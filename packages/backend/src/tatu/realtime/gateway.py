"""Realtime gateway — sessions, presence, rooms, dispatch and fan-out.

Learn: The gateway is the single authority for "who is connected,
authenticated, and subscribed to which conversation rooms", and the only
place that turns a ConversationService result into outbound events.

Per-connection state machine:

    connected ──authenticate ok──▶ authenticated ──disconnect──▶ closed
        │                                                          ▲
        └──────────── authenticate failed (forced close) ──────────┘

Inbound events are looked up in a dispatch table keyed by event name.
Every handler runs inside an error boundary: expected messaging errors
and bad payloads become an `error` event for the originating session
only; nothing a client sends can take down the connection or process.
An authentication failure is the one fatal case.

Fan-out addresses users and rooms, not transport primitives:
- a user's personal room is the set of all that user's sessions
- a conversation room is the set of sessions that joined it
Resolved sessions are grouped by transport and handed to each adapter,
which delivers with its native mechanism. With a relay attached, the
fan-out envelope goes through Redis first so every process delivers to
its own sessions.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tatu.errors import AuthFailure, MessagingError
from tatu.realtime import events
from tatu.realtime.events import conversation_room
from tatu.realtime.session import PresenceRegistry, Session, SessionState
from tatu.realtime.transports.base import Transport
from tatu.schemas.messaging import MessageRead
from tatu.schemas.realtime import (
    AuthenticatePayload,
    ConversationRef,
    GetMessagesPayload,
    SendMessagePayload,
)
from tatu.services.conversation_service import DEFAULT_PAGE_SIZE, ConversationService

logger = structlog.get_logger()

# WebSocket close code used when authentication fails
AUTH_FAILED_CLOSE_CODE = 4001

Handler = Callable[[Session, dict], Awaitable[None]]


class IdentityVerifier(Protocol):
    def verify(self, token: Optional[str]) -> uuid.UUID: ...


class Relay(Protocol):
    async def publish(self, envelope: dict) -> None: ...


@dataclass
class FanoutEnvelope:
    """One logical event and who should observe it.

    Recipients are the union of the room's members and every session of
    each listed user, minus every session of `exclude_user`.
    """

    event: str
    data: Any
    room: Optional[str] = None
    users: list[uuid.UUID] = field(default_factory=list)
    exclude_user: Optional[uuid.UUID] = None

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "data": self.data,
            "room": self.room,
            "users": [str(u) for u in self.users],
            "exclude_user": str(self.exclude_user) if self.exclude_user else None,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "FanoutEnvelope":
        return cls(
            event=raw["event"],
            data=raw.get("data"),
            room=raw.get("room"),
            users=[uuid.UUID(u) for u in raw.get("users") or []],
            exclude_user=uuid.UUID(raw["exclude_user"]) if raw.get("exclude_user") else None,
        )


class RealtimeGateway:
    """Owns every live session and routes events between them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: IdentityVerifier,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = 100,
    ):
        self.session_factory = session_factory
        self.verifier = verifier
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.presence = PresenceRegistry()
        self.transports: dict[str, Transport] = {}
        self.relay: Optional[Relay] = None

        self._handlers: dict[str, Handler] = {
            events.AUTHENTICATE: self._on_authenticate,
            events.JOIN_CONVERSATION: self._on_join_conversation,
            events.LEAVE_CONVERSATION: self._on_leave_conversation,
            events.TYPING_START: self._on_typing_start,
            events.TYPING_STOP: self._on_typing_stop,
            events.SEND_MESSAGE: self._on_send_message,
            events.MARK_MESSAGES_READ: self._on_mark_messages_read,
            events.GET_MESSAGES: self._on_get_messages,
            events.GET_CONVERSATIONS: self._on_get_conversations,
        }
        # Membership events are dropped silently before authentication;
        # request events get an error reply instead.
        self._silent_until_authenticated = {
            events.JOIN_CONVERSATION,
            events.LEAVE_CONVERSATION,
            events.TYPING_START,
            events.TYPING_STOP,
        }

    # ─── Wiring ───────────────────────────────────────────

    def register_transport(self, transport: Transport) -> None:
        self.transports[transport.kind] = transport

    def attach_relay(self, relay: Optional[Relay]) -> None:
        self.relay = relay

    # ─── Connection lifecycle ─────────────────────────────

    async def connect(self, transport: Transport, handle: Any) -> Session:
        """Register a freshly opened connection in the Connected state."""
        if transport.kind not in self.transports:
            self.register_transport(transport)
        session = Session(transport=transport, handle=handle)
        self.presence.add(session)
        logger.debug("realtime.connected", session_id=session.id, transport=transport.kind)
        return session

    async def disconnect(self, session: Session) -> None:
        """Move a session to Closed and drop all its bookkeeping.

        Idempotent: adapters may call it from several teardown paths.
        Nothing is broadcast to other users because of a disconnect.
        """
        if session.is_closed:
            return
        session.state = SessionState.CLOSED
        session.rooms.clear()
        self.presence.remove(session)
        logger.info(
            "realtime.session_closed",
            session_id=session.id,
            user_id=str(session.user_id) if session.user_id else None,
            transport=session.kind,
        )

    async def shutdown(self) -> None:
        """Close every open session (used on application shutdown)."""
        sessions = self.presence.sessions()
        for session in sessions:
            try:
                await session.transport.close(session, code=1001, reason="Server shutting down")
            except Exception as e:
                logger.warning("realtime.close_failed", session_id=session.id, error=str(e))
            await self.disconnect(session)
        logger.info("realtime.drained", sessions=len(sessions))

    # ─── Inbound dispatch ─────────────────────────────────

    async def dispatch(self, session: Session, event: str, payload: Optional[dict]) -> None:
        """Handle one decoded client event to completion."""
        if session.is_closed:
            return
        payload = payload or {}

        handler = self._handlers.get(event)
        if handler is None:
            await self._emit_error(session, f"Unknown event: {event}")
            return

        if event != events.AUTHENTICATE and not session.is_authenticated:
            if event not in self._silent_until_authenticated:
                await self._emit_error(session, "User not authenticated")
            return

        try:
            await handler(session, payload)
        except MessagingError as e:
            logger.info(
                "realtime.request_rejected",
                event_name=event,
                session_id=session.id,
                error=e.message,
            )
            await self._emit_error(session, e.message)
        except ValidationError as e:
            problems = [
                f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
                for err in e.errors()
            ]
            await self._emit_error(session, f"Invalid payload for {event}", details=problems)
        except Exception as e:
            logger.exception("realtime.handler_failed", event_name=event, session_id=session.id)
            await self._emit_error(session, f"Failed to handle {event}", details=str(e))

    # ─── Handlers ─────────────────────────────────────────

    async def _on_authenticate(self, session: Session, payload: dict) -> None:
        try:
            try:
                body = AuthenticatePayload.model_validate(payload)
            except ValidationError:
                raise AuthFailure("Authentication token must be a string")
            user_id = self.verifier.verify(body.token)
        except AuthFailure as e:
            logger.warning("realtime.authentication_failed", session_id=session.id, error=e.message)
            await self.send(session, events.AUTHENTICATION_ERROR, {"message": e.message})
            await session.transport.close(
                session, code=AUTH_FAILED_CLOSE_CODE, reason="Invalid or expired token"
            )
            await self.disconnect(session)
            return

        if session.is_authenticated and session.user_id != user_id:
            # Re-authenticating as someone else drops the old memberships.
            for room in list(session.rooms):
                await self._leave(session, room)

        self.presence.bind(session, user_id)
        session.state = SessionState.AUTHENTICATED
        logger.info(
            "realtime.authenticated",
            session_id=session.id,
            user_id=str(user_id),
            transport=session.kind,
        )
        await self.send(session, events.AUTHENTICATED, {"userId": str(user_id)})

    async def _on_join_conversation(self, session: Session, payload: dict) -> None:
        ref = ConversationRef.model_validate(payload)
        room = conversation_room(ref.conversation_id)
        session.rooms.add(room)
        await session.transport.join(session, room)
        logger.debug("realtime.joined", session_id=session.id, room=room)

    async def _on_leave_conversation(self, session: Session, payload: dict) -> None:
        ref = ConversationRef.model_validate(payload)
        await self._leave(session, conversation_room(ref.conversation_id))

    async def _leave(self, session: Session, room: str) -> None:
        session.rooms.discard(room)
        await session.transport.leave(session, room)

    async def _on_typing_start(self, session: Session, payload: dict) -> None:
        await self._typing(session, payload, events.USER_TYPING)

    async def _on_typing_stop(self, session: Session, payload: dict) -> None:
        await self._typing(session, payload, events.USER_STOPPED_TYPING)

    async def _typing(self, session: Session, payload: dict, event: str) -> None:
        ref = ConversationRef.model_validate(payload)
        await self.fanout(
            event,
            {"userId": str(session.user_id), "conversationId": str(ref.conversation_id)},
            room=conversation_room(ref.conversation_id),
            exclude_user=session.user_id,
        )

    async def _on_send_message(self, session: Session, payload: dict) -> None:
        body = SendMessagePayload.model_validate(payload)
        sender_id = session.user_id

        async with self.session_factory() as db:
            svc = ConversationService(db)

            receiver_id = body.receiver_id
            if receiver_id is None:
                if body.conversation_id is None:
                    await self._emit_error(
                        session, "Receiver ID or conversation ID is required"
                    )
                    return
                conversation = await svc.get_conversation(body.conversation_id, sender_id)
                receiver_id = conversation.other_participant_id(sender_id)

            message = await svc.send_message(
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=body.content,
                message_type=body.message_type,
            )
            await self._announce_message(svc, message)

        await self.send(
            session,
            events.MESSAGE_SENT,
            {"message": message.to_wire(), "success": True},
        )

    async def _on_mark_messages_read(self, session: Session, payload: dict) -> None:
        ref = ConversationRef.model_validate(payload)
        async with self.session_factory() as db:
            svc = ConversationService(db)
            count = await svc.mark_read(ref.conversation_id, session.user_id)
            if count > 0:
                await self._announce_read(svc, ref.conversation_id, session.user_id, count)

        await self.send(
            session,
            events.MESSAGES_MARKED_READ,
            {
                "conversationId": str(ref.conversation_id),
                "markedCount": count,
                "success": True,
            },
        )

    async def _on_get_messages(self, session: Session, payload: dict) -> None:
        body = GetMessagesPayload.model_validate(payload)
        limit = self.default_page_size if body.limit is None else body.limit
        limit = max(1, min(limit, self.max_page_size))

        async with self.session_factory() as db:
            page = await ConversationService(db).list_messages(
                body.conversation_id, session.user_id, page=body.page, page_size=limit
            )

        await self.send(
            session,
            events.MESSAGES_LOADED,
            {"conversationId": str(body.conversation_id), **page.to_wire(), "success": True},
        )

    async def _on_get_conversations(self, session: Session, payload: dict) -> None:
        async with self.session_factory() as db:
            conversations = await ConversationService(db).list_conversations(session.user_id)

        await self.send(
            session,
            events.CONVERSATIONS_LOADED,
            {"conversations": [c.to_wire() for c in conversations], "success": True},
        )

    # ─── Announcements (shared with the REST routes) ──────

    async def announce_message(self, message: MessageRead) -> None:
        """Fan out a message that was persisted outside the gateway."""
        async with self.session_factory() as db:
            await self._announce_message(ConversationService(db), message)

    async def announce_read(
        self, conversation_id: uuid.UUID, reader_id: uuid.UUID, count: int
    ) -> None:
        """Fan out a read receipt recorded outside the gateway."""
        if count <= 0:
            return
        async with self.session_factory() as db:
            await self._announce_read(ConversationService(db), conversation_id, reader_id, count)

    async def _announce_message(self, svc: ConversationService, message: MessageRead) -> None:
        # new_message reaches the room and both participants directly, so a
        # recipient sees it without having joined the room on any transport.
        await self.fanout(
            events.NEW_MESSAGE,
            message.to_wire(),
            room=conversation_room(message.conversation_id),
            users=[message.sender_id, message.receiver_id],
        )
        for user_id in (message.sender_id, message.receiver_id):
            summary = await svc.conversation_summary(message.conversation_id, user_id)
            await self.fanout(events.CONVERSATION_UPDATED, summary.to_wire(), users=[user_id])

    async def _announce_read(
        self,
        svc: ConversationService,
        conversation_id: uuid.UUID,
        reader_id: uuid.UUID,
        count: int,
    ) -> None:
        await self.fanout(
            events.MESSAGES_READ,
            {
                "conversationId": str(conversation_id),
                "userId": str(reader_id),
                "markedCount": count,
            },
            room=conversation_room(conversation_id),
        )
        # Keep the reader's other devices' unread badges in step.
        summary = await svc.conversation_summary(conversation_id, reader_id)
        await self.fanout(events.CONVERSATION_UPDATED, summary.to_wire(), users=[reader_id])

    # ─── Outbound ─────────────────────────────────────────

    async def send(self, session: Session, event: str, data: Any) -> None:
        """Deliver one event to one session only."""
        try:
            await session.transport.send(session, event, data)
        except Exception as e:
            logger.warning(
                "realtime.send_failed",
                session_id=session.id,
                event_name=event,
                error=str(e),
            )

    async def fanout(
        self,
        event: str,
        data: Any,
        *,
        room: Optional[str] = None,
        users: Iterable[uuid.UUID] = (),
        exclude_user: Optional[uuid.UUID] = None,
    ) -> None:
        """Deliver one logical event to every session that should observe it."""
        envelope = FanoutEnvelope(
            event=event,
            data=data,
            room=room,
            users=list(dict.fromkeys(users)),
            exclude_user=exclude_user,
        )
        if self.relay is not None:
            try:
                await self.relay.publish(envelope.to_dict())
                return
            except Exception as e:
                # Sessions on other processes miss this one; ours still get it.
                logger.warning("realtime.relay_publish_failed", event_name=event, error=str(e))
        await self.deliver_local(envelope)

    async def deliver_envelope(self, raw: dict) -> None:
        """Relay callback: deliver an envelope received from another process."""
        await self.deliver_local(FanoutEnvelope.from_dict(raw))

    async def deliver_local(self, envelope: FanoutEnvelope) -> None:
        """Deliver an envelope to the sessions held by this process."""
        if envelope.room and not envelope.users:
            # Pure room broadcast: let each transport use its own room primitive.
            for transport in self.transports.values():
                try:
                    await transport.broadcast(
                        envelope.room,
                        envelope.event,
                        envelope.data,
                        exclude_user=envelope.exclude_user,
                    )
                except Exception as e:
                    logger.warning(
                        "realtime.broadcast_failed",
                        transport=transport.kind,
                        room=envelope.room,
                        error=str(e),
                    )
            return

        targets: set[Session] = set()
        if envelope.room:
            targets |= self.presence.room_members(envelope.room)
        targets |= self.presence.sessions_for_users(envelope.users)
        if envelope.exclude_user is not None:
            targets = {s for s in targets if s.user_id != envelope.exclude_user}

        by_transport: dict[str, list[Session]] = {}
        for session in targets:
            if session.is_authenticated:
                by_transport.setdefault(session.kind, []).append(session)

        for kind, sessions in by_transport.items():
            try:
                await self.transports[kind].deliver(sessions, envelope.event, envelope.data)
            except Exception as e:
                logger.warning(
                    "realtime.deliver_failed",
                    transport=kind,
                    event_name=envelope.event,
                    error=str(e),
                )

    async def _emit_error(self, session: Session, message: str, details: Any = None) -> None:
        data: dict[str, Any] = {"message": message}
        if details is not None:
            data["error"] = details
        await self.send(session, events.ERROR, data)

    # ─── Introspection ────────────────────────────────────

    def is_user_online(self, user_id: uuid.UUID) -> bool:
        return self.presence.is_online(user_id)

    def stats(self) -> dict:
        by_transport: dict[str, int] = {kind: 0 for kind in self.transports}
        for session in self.presence.sessions():
            by_transport[session.kind] = by_transport.get(session.kind, 0) + 1
        return {
            "onlineUsers": len(self.presence.online_users()),
            "sessions": len(self.presence),
            "byTransport": by_transport,
        }
