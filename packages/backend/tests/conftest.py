"""Test fixtures — in-memory database, app, and realtime fakes.

Testing pattern for async SQLAlchemy + FastAPI:

1. Each test gets a fresh in-memory SQLite database (aiosqlite). StaticPool
   keeps one connection alive, so every session the app, the gateway and
   the test open sees the same data.
2. The app is built with create_app(session_factory=...) so the realtime
   gateway writes to the same database the routes read.
3. Transports are exercised against in-memory fakes of a WebSocket and
   of the Socket.IO server.
"""

import asyncio
import json
import uuid
from collections import defaultdict

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.websockets import WebSocketDisconnect, WebSocketState

from tatu.auth.jwt import JwtIdentityVerifier, create_access_token
from tatu.db.engine import build_engine, get_db
from tatu.db.models import Base, User
from tatu.main import create_app
from tatu.realtime.gateway import RealtimeGateway
from tatu.realtime.transports.base import Transport


TEST_DB_URL = "sqlite+aiosqlite://"


@pytest_asyncio.fixture()
async def engine():
    engine = build_engine(TEST_DB_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def users(db_session):
    """Three accounts: a client, an artist, and a bystander."""
    alice = User(id=uuid.uuid4(), email="alice@example.com", name="Alice", is_artist=False)
    bob = User(
        id=uuid.uuid4(),
        email="bob@example.com",
        name="Bob Ink",
        avatar_url="https://cdn.example.com/bob.png",
        is_artist=True,
    )
    carol = User(id=uuid.uuid4(), email="carol@example.com", name="Carol", is_artist=False)
    db_session.add_all([alice, bob, carol])
    await db_session.commit()
    return {"alice": alice, "bob": bob, "carol": carol}


def token_for(user: User) -> str:
    return create_access_token(str(user.id), is_artist=user.is_artist)


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest_asyncio.fixture()
async def app(session_factory):
    app = create_app(session_factory=session_factory)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def gateway(session_factory):
    return RealtimeGateway(session_factory, JwtIdentityVerifier())


# ═══════════════════════════════════════════════════════════
# Realtime fakes
# ═══════════════════════════════════════════════════════════


class FakeTransport(Transport):
    """Records every outbound event per session."""

    def __init__(self, kind: str = "fake"):
        self._kind = kind
        self.sessions = []
        self.sent = []  # (session, event, data)
        self.closed = []

    @property
    def kind(self) -> str:
        return self._kind

    async def open(self, gateway):
        session = await gateway.connect(self, object())
        self.sessions.append(session)
        return session

    async def send(self, session, event, data):
        self.sent.append((session, event, data))

    async def broadcast(self, room, event, data, exclude_user=None):
        for session in self.sessions:
            if not session.is_authenticated or room not in session.rooms:
                continue
            if exclude_user is not None and session.user_id == exclude_user:
                continue
            self.sent.append((session, event, data))

    async def close(self, session, code=1000, reason=""):
        self.closed.append((session, code))

    def events(self, session, name=None):
        return [
            (event, data) for s, event, data in self.sent
            if s is session and (name is None or event == name)
        ]

    def payloads(self, session, name):
        return [data for _, data in self.events(session, name)]


class FakeWebSocket:
    """Queue-driven stand-in for a Starlette WebSocket.

    push() hands one frame to the server loop and waits until the loop
    is back in receive_text(), i.e. the frame was fully handled.
    """

    def __init__(self):
        self.client_state = WebSocketState.CONNECTING
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.outbox: list[dict] = []
        self.idle = asyncio.Event()
        self.close_code = None

    async def accept(self):
        self.client_state = WebSocketState.CONNECTED

    async def receive_text(self) -> str:
        self.idle.set()
        item = await self.inbox.get()
        self.idle.clear()
        if item is None:
            raise WebSocketDisconnect(code=1000)
        return item

    async def send_text(self, text: str):
        self.outbox.append(json.loads(text))

    async def close(self, code: int = 1000, reason=None):
        self.client_state = WebSocketState.DISCONNECTED
        self.close_code = code
        self.inbox.put_nowait(None)
        self.idle.set()

    async def push(self, frame):
        self.idle.clear()
        await self.inbox.put(frame if isinstance(frame, str) else json.dumps(frame))
        await self.idle.wait()

    async def hang_up(self):
        await self.inbox.put(None)

    def frames(self, frame_type=None):
        return [f for f in self.outbox if frame_type is None or f["type"] == frame_type]


class FakeSocketIOServer:
    """Enough of socketio.AsyncServer to drive the Socket.IO adapter."""

    def __init__(self):
        self.handlers = {}
        self.rooms = defaultdict(set)
        self.emitted = []  # (sid, event, data)
        self.room_emits = []  # (room, event, skip_sid)
        self.disconnected = []

    def on(self, event, handler=None, namespace=None):
        self.handlers[event] = handler

    async def emit(self, event, data=None, to=None, room=None, skip_sid=None, namespace=None):
        target = to if to is not None else room
        skip = set(skip_sid or [])
        if target in self.rooms:
            self.room_emits.append((target, event, skip_sid))
            recipients = self.rooms[target] - skip
        else:
            recipients = {target} - skip
        for sid in recipients:
            self.emitted.append((sid, event, data))

    async def enter_room(self, sid, room, namespace=None):
        self.rooms[room].add(sid)

    async def leave_room(self, sid, room, namespace=None):
        self.rooms[room].discard(sid)

    async def disconnect(self, sid, namespace=None):
        self.disconnected.append(sid)
        for members in self.rooms.values():
            members.discard(sid)
        await self.handlers["disconnect"](sid)

    # Client-side helpers

    async def client_connect(self, sid):
        await self.handlers["connect"](sid, {})

    async def client_emit(self, sid, event, data=None):
        await self.handlers[event](sid, data)

    def received(self, sid, event=None):
        return [
            data for s, e, data in self.emitted
            if s == sid and (event is None or e == event)
        ]
