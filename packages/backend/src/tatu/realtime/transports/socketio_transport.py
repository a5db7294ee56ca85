"""Socket.IO adapter — room-capable pub/sub transport.

Learn: Socket.IO already frames events by name and has rooms, so this
adapter is thin:
- every client event is registered on the AsyncServer and forwarded to
  gateway.dispatch() with its payload normalized
- joins/leaves are mirrored with enter_room/leave_room, and room
  broadcasts use the server's own room emit
- personal delivery emits to the session's sid (each sid is a room)

The server must be created with async_handlers=False so one client's
events are handled in arrival order.
"""

import uuid
from typing import Any, Optional

import socketio
import structlog

from tatu.realtime.events import CLIENT_EVENTS
from tatu.realtime.session import Session
from tatu.realtime.transports.base import Transport, normalize_payload

logger = structlog.get_logger()


def create_server(cors_origins: list[str] | str = "*") -> socketio.AsyncServer:
    """Build the Socket.IO server the adapter drives."""
    return socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=cors_origins,
        async_handlers=False,
        logger=False,
        engineio_logger=False,
    )


class SocketIOTransport(Transport):
    """Adapter A: Socket.IO connections."""

    def __init__(self, sio: socketio.AsyncServer, gateway):
        self.sio = sio
        self.gateway = gateway
        self._sessions: dict[str, Session] = {}  # sid → session
        gateway.register_transport(self)

    @property
    def kind(self) -> str:
        return "socketio"

    # ─── Server wiring ────────────────────────────────────

    def register(self) -> None:
        """Attach connect/disconnect and every client event to the server."""
        self.sio.on("connect", self.on_connect)
        self.sio.on("disconnect", self.on_disconnect)
        for event in CLIENT_EVENTS:
            self.sio.on(event, self._handler_for(event))

    def _handler_for(self, event: str):
        async def handler(sid, data=None):
            await self.on_message(sid, event, data)

        handler.__name__ = f"on_{event}"
        return handler

    # ─── Inbound ──────────────────────────────────────────

    async def on_connect(self, sid: str, environ: dict, auth: Any = None) -> None:
        session = await self.gateway.connect(self, sid)
        self._sessions[sid] = session
        logger.info("realtime.socketio_connected", sid=sid, session_id=session.id)

    async def on_message(self, sid: str, event: str, data: Any = None) -> None:
        session = self._sessions.get(sid)
        if session is None:
            logger.warning("realtime.socketio_unknown_sid", sid=sid, event_name=event)
            return
        await self.gateway.dispatch(session, event, normalize_payload(event, data))

    async def on_disconnect(self, sid: str, reason: Any = None) -> None:
        session = self._sessions.pop(sid, None)
        if session is not None:
            await self.gateway.disconnect(session)

    # ─── Outbound ─────────────────────────────────────────

    async def send(self, session: Session, event: str, data: Any) -> None:
        await self.sio.emit(event, data, to=session.handle)

    async def broadcast(
        self,
        room: str,
        event: str,
        data: Any,
        exclude_user: Optional[uuid.UUID] = None,
    ) -> None:
        skip = [
            sid for sid, s in self._sessions.items()
            if exclude_user is not None and s.user_id == exclude_user
        ]
        await self.sio.emit(event, data, room=room, skip_sid=skip or None)

    async def join(self, session: Session, room: str) -> None:
        await self.sio.enter_room(session.handle, room)

    async def leave(self, session: Session, room: str) -> None:
        await self.sio.leave_room(session.handle, room)

    async def close(self, session: Session, code: int = 1000, reason: str = "") -> None:
        self._sessions.pop(session.handle, None)
        await self.sio.disconnect(session.handle)

    def is_alive(self, session: Session) -> bool:
        # Engine.IO runs its own ping/pong and disconnects dead clients.
        return session.handle in self._sessions
