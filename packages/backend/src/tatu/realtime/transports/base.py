"""Transport adapter base — the one capability contract both wire protocols meet.

Learn: The gateway addresses users and rooms; it never knows whether a
session rides Socket.IO or a raw WebSocket. Each adapter translates:

1. inbound: native frame → (event name, dict payload) → gateway.dispatch()
2. outbound: deliver()/broadcast() → native emit/send
3. membership: join()/leave() mirror the gateway's room bookkeeping onto
   the transport's own room primitive, where it has one
4. lifecycle: close() forcibly ends one connection, is_alive() reports
   the last liveness probe result

Adapters read session.rooms but never write it — only the gateway does.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from tatu.realtime.events import AUTHENTICATE, CONVERSATION_EVENTS, GET_MESSAGES
from tatu.realtime.session import Session


def normalize_payload(event: str, data: Any) -> dict:
    """Coerce a client payload into the dict shape the gateway expects.

    Clients may send a bare token for `authenticate` and a bare
    conversation id for the room/typing/read events.
    """
    if data is None:
        return {}
    if isinstance(data, dict):
        return data
    if isinstance(data, (str, int)):
        if event == AUTHENTICATE:
            return {"token": data}
        if event in CONVERSATION_EVENTS or event == GET_MESSAGES:
            return {"conversationId": data}
    return {"value": data}


class Transport(ABC):
    """Abstract base for realtime transport adapters."""

    @property
    @abstractmethod
    def kind(self) -> str:
        """Transport identifier, e.g. 'socketio' or 'websocket'."""

    @abstractmethod
    async def send(self, session: Session, event: str, data: Any) -> None:
        """Send one event to one session."""

    async def deliver(self, sessions: Iterable[Session], event: str, data: Any) -> None:
        """Send one event to each of the given sessions of this transport."""
        for session in sessions:
            await self.send(session, event, data)

    @abstractmethod
    async def broadcast(
        self,
        room: str,
        event: str,
        data: Any,
        exclude_user: Optional[Any] = None,
    ) -> None:
        """Send one event to every session of this transport in `room`."""

    async def join(self, session: Session, room: str) -> None:
        """Mirror a room join onto the transport. No-op by default."""

    async def leave(self, session: Session, room: str) -> None:
        """Mirror a room leave onto the transport. No-op by default."""

    @abstractmethod
    async def close(self, session: Session, code: int = 1000, reason: str = "") -> None:
        """Forcibly end the connection behind a session."""

    def is_alive(self, session: Session) -> bool:
        """Whether the connection answered its last liveness probe."""
        return not session.is_closed
