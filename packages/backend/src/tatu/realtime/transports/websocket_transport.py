"""Raw WebSocket adapter — bidirectional socket with no native rooms.

Learn: Clients connect to /ws and exchange JSON text frames:

    {"type": "<event>", "data": <payload>}

The transport has neither rooms nor a heartbeat, so this adapter:
1. answers "send to room X" by scanning its open connections and
   checking each session's joined rooms
2. probes liveness itself: every interval each connection that has not
   sent anything since the previous probe is terminated, the others get
   a {"type": "ping"} frame and are marked pending

Client contract for liveness:
- answer every {"type": "ping"} frame with {"type": "pong"}, or send
  any other frame before the next interval
- a protocol-level pong does NOT count: control frames never reach the
  application, so a client that only relies on its library's automatic
  pong is closed with 1001 after two silent intervals
- a client may send {"type": "ping"} itself and gets {"type": "pong"}

Protocol-level pings are handled by the server (`tatu serve` passes
uvicorn's ws_ping_interval/ws_ping_timeout) and only detect dead TCP
peers; they are independent of the application-level probe.
"""

import asyncio
import json
import uuid
from typing import Any, Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from tatu.realtime.events import ERROR, PING, PONG
from tatu.realtime.session import Session
from tatu.realtime.transports.base import Transport, normalize_payload

logger = structlog.get_logger()
router = APIRouter()


class WebSocketTransport(Transport):
    """Adapter B: plain WebSocket connections."""

    def __init__(self, gateway, ping_interval: float = 30.0):
        self.gateway = gateway
        self.ping_interval = ping_interval
        self._connections: dict[str, Session] = {}  # session id → session
        self._alive: dict[str, bool] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        gateway.register_transport(self)

    @property
    def kind(self) -> str:
        return "websocket"

    # ─── Connection loop ──────────────────────────────────

    async def serve(self, websocket: WebSocket) -> None:
        """Run one connection until the client leaves or is closed."""
        await websocket.accept()
        session = await self.gateway.connect(self, websocket)
        self._connections[session.id] = session
        self._alive[session.id] = True
        logger.info("realtime.websocket_connected", session_id=session.id)

        try:
            while not session.is_closed:
                raw = await websocket.receive_text()
                await self.on_frame(session, raw)
        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # Starlette raises RuntimeError once the socket was closed on our side.
            logger.debug("realtime.websocket_receive_stopped", session_id=session.id, error=str(e))
        finally:
            self._forget(session)
            await self.gateway.disconnect(session)

    async def on_frame(self, session: Session, raw: str) -> None:
        """Decode one text frame and hand it to the gateway."""
        self._alive[session.id] = True
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            await self.send(session, ERROR, {"message": "Malformed frame: expected JSON"})
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
            await self.send(session, ERROR, {"message": "Malformed frame: missing type"})
            return

        event = frame["type"]
        if event == PING:
            await self._write(session, {"type": PONG})
            return
        if event == PONG:
            return

        await self.gateway.dispatch(session, event, normalize_payload(event, frame.get("data")))

    def _forget(self, session: Session) -> None:
        self._connections.pop(session.id, None)
        self._alive.pop(session.id, None)

    # ─── Outbound ─────────────────────────────────────────

    async def send(self, session: Session, event: str, data: Any) -> None:
        await self._write(session, {"type": event, "data": data})

    async def _write(self, session: Session, frame: dict) -> None:
        websocket: WebSocket = session.handle
        if websocket.client_state != WebSocketState.CONNECTED:
            return
        await websocket.send_text(json.dumps(frame))

    async def broadcast(
        self,
        room: str,
        event: str,
        data: Any,
        exclude_user: Optional[uuid.UUID] = None,
    ) -> None:
        for session in list(self._connections.values()):
            if not session.is_authenticated or room not in session.rooms:
                continue
            if exclude_user is not None and session.user_id == exclude_user:
                continue
            try:
                await self.send(session, event, data)
            except Exception as e:
                logger.warning("realtime.websocket_send_failed", session_id=session.id, error=str(e))

    async def close(self, session: Session, code: int = 1000, reason: str = "") -> None:
        websocket: WebSocket = session.handle
        self._forget(session)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=code, reason=reason)

    def is_alive(self, session: Session) -> bool:
        return self._alive.get(session.id, False)

    # ─── Liveness ─────────────────────────────────────────

    async def probe(self) -> None:
        """One liveness round: terminate silent connections, ping the rest."""
        for session in list(self._connections.values()):
            if not self._alive.get(session.id, False):
                logger.info("realtime.websocket_unresponsive", session_id=session.id)
                try:
                    await self.close(session, code=1001, reason="Ping timeout")
                except Exception as e:
                    logger.warning("realtime.close_failed", session_id=session.id, error=str(e))
                await self.gateway.disconnect(session)
                continue

            self._alive[session.id] = False
            try:
                await self._write(session, {"type": PING})
            except Exception as e:
                logger.warning("realtime.websocket_ping_failed", session_id=session.id, error=str(e))

    async def run_heartbeat(self) -> None:
        """Probe forever at ping_interval. Cancelled on shutdown."""
        while True:
            await asyncio.sleep(self.ping_interval)
            await self.probe()

    def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self.run_heartbeat())

    async def stop(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@router.websocket("/ws")
async def realtime_websocket(websocket: WebSocket):
    """Raw WebSocket endpoint. Authenticate with an `authenticate` frame."""
    transport: WebSocketTransport = websocket.app.state.websocket_transport
    await transport.serve(websocket)
