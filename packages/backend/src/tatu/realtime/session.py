"""Sessions and the presence registry.

A Session is the runtime state of one live connection: which transport
carries it, which user it authenticated as, and which conversation rooms
it joined. The PresenceRegistry indexes open sessions by user id; a user
can hold several at once (one per device, or one per transport).

Both structures are process-local and only the gateway mutates them.
"""

import enum
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Optional

if TYPE_CHECKING:
    from tatu.realtime.transports.base import Transport


class SessionState(str, enum.Enum):
    CONNECTED = "connected"          # transport is up, no identity yet
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"                # terminal


@dataclass(eq=False)
class Session:
    """One live connection. Hashes by identity."""

    transport: "Transport"
    handle: Any  # Socket.IO sid, or the WebSocket object
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user_id: Optional[uuid.UUID] = None
    state: SessionState = SessionState.CONNECTED
    rooms: set[str] = field(default_factory=set)

    @property
    def kind(self) -> str:
        return self.transport.kind

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED


class PresenceRegistry:
    """user id → open sessions, plus the set of every open session."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._by_user: dict[uuid.UUID, set[Session]] = {}

    def add(self, session: Session) -> None:
        self._sessions[session.id] = session

    def bind(self, session: Session, user_id: uuid.UUID) -> None:
        """Attach an authenticated identity to a registered session."""
        if session.user_id is not None and session.user_id != user_id:
            self._unbind(session)
        session.user_id = user_id
        self._by_user.setdefault(user_id, set()).add(session)

    def remove(self, session: Session) -> None:
        self._sessions.pop(session.id, None)
        self._unbind(session)

    def _unbind(self, session: Session) -> None:
        if session.user_id is None:
            return
        sessions = self._by_user.get(session.user_id)
        if sessions is None:
            return
        sessions.discard(session)
        if not sessions:
            del self._by_user[session.user_id]

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def sessions_for(self, user_id: uuid.UUID) -> set[Session]:
        return set(self._by_user.get(user_id, ()))

    def sessions_for_users(self, user_ids: Iterable[uuid.UUID]) -> set[Session]:
        found: set[Session] = set()
        for user_id in user_ids:
            found |= self.sessions_for(user_id)
        return found

    def room_members(self, room: str) -> set[Session]:
        """Every authenticated session that joined `room`."""
        return {
            s for s in self._sessions.values()
            if s.is_authenticated and room in s.rooms
        }

    def is_online(self, user_id: uuid.UUID) -> bool:
        return bool(self._by_user.get(user_id))

    def online_users(self) -> list[uuid.UUID]:
        return list(self._by_user)

    def __len__(self) -> int:
        return len(self._sessions)
