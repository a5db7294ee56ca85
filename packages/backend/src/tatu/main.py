"""FastAPI application factory.

create_app() returns a configured FastAPI instance with an explicitly
constructed RealtimeGateway and both transport adapters on app.state.
The lifespan opens the listeners (Redis, relay, WebSocket heartbeat),
and on shutdown closes them again and drains every open session.

uvicorn serves `tatu.main:asgi_app`: Socket.IO traffic under
/socket.io, everything else (REST, /ws) falls through to FastAPI.
"""

from contextlib import asynccontextmanager
from typing import Optional

import socketio
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tatu import __version__
from tatu.api import api_router
from tatu.auth.jwt import JwtIdentityVerifier
from tatu.config import settings
from tatu.realtime.gateway import IdentityVerifier, RealtimeGateway
from tatu.realtime.transports.socketio_transport import SocketIOTransport, create_server
from tatu.realtime.transports.websocket_transport import WebSocketTransport
from tatu.realtime.transports.websocket_transport import router as ws_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Anything before `yield` runs at startup, after `yield` runs at shutdown.
    """
    logger.info(
        "tatu.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )
    gateway: RealtimeGateway = app.state.gateway
    websocket_transport: WebSocketTransport = app.state.websocket_transport

    from tatu.realtime.pubsub import RealtimeRelay, close_redis, init_redis

    relay: Optional[RealtimeRelay] = None
    try:
        redis = await init_redis()
        logger.info("tatu.redis_connected", url=settings.redis_url)
        if settings.realtime_relay:
            relay = RealtimeRelay(redis, gateway.deliver_envelope)
            await relay.start()
            gateway.attach_relay(relay)
    except Exception as e:
        # Redis is optional for a single process: no rate limiting, no relay.
        logger.warning("tatu.redis_unavailable", error=str(e))

    websocket_transport.start()
    logger.info("tatu.realtime_ready", transports=sorted(gateway.transports))

    yield

    logger.info("tatu.shutdown")

    await websocket_transport.stop()
    await gateway.shutdown()

    if relay is not None:
        gateway.attach_relay(None)
        await relay.stop()
    await close_redis()

    from tatu.db.engine import engine
    await engine.dispose()


def create_app(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    verifier: Optional[IdentityVerifier] = None,
) -> FastAPI:
    """Build and return the FastAPI application."""
    if session_factory is None:
        from tatu.db.engine import async_session_factory
        session_factory = async_session_factory

    app = FastAPI(
        title="TATU Messaging",
        description="Realtime conversations between tattoo clients and artists",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Realtime gateway + transports ─────────────────────────
    gateway = RealtimeGateway(
        session_factory,
        verifier or JwtIdentityVerifier(),
        default_page_size=settings.default_page_size,
        max_page_size=settings.max_page_size,
    )
    sio = create_server(settings.cors_origins)
    socketio_transport = SocketIOTransport(sio, gateway)
    socketio_transport.register()
    websocket_transport = WebSocketTransport(
        gateway, ping_interval=settings.ws_ping_interval_seconds
    )

    app.state.gateway = gateway
    app.state.socketio_server = sio
    app.state.socketio_transport = socketio_transport
    app.state.websocket_transport = websocket_transport

    # ── Middleware stack ──────────────────────────────────────
    # Starlette middleware executes in reverse order of registration.
    # Request flow: RequestId → Security → RateLimit → CORS → handler

    from tatu.middleware.rate_limit import RateLimitMiddleware
    from tatu.middleware.request_id import RequestIdMiddleware
    from tatu.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RateLimitMiddleware, rpm=settings.rate_limit_rpm)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)
    app.include_router(ws_router)

    return app


def create_asgi_app(app: FastAPI) -> socketio.ASGIApp:
    """Wrap the FastAPI app so Socket.IO shares the same port."""
    return socketio.ASGIApp(
        app.state.socketio_server,
        other_asgi_app=app,
        socketio_path=settings.socketio_path,
    )


# Default app instances (uvicorn: tatu.main:asgi_app)
app = create_app()
asgi_app = create_asgi_app(app)
