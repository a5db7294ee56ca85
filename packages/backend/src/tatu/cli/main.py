"""TATU CLI — run the messaging server and peek at realtime presence.

Usage:
    tatu serve                      # uvicorn on TATU_HOST:TATU_PORT
    tatu init-db                    # create tables (local development)
    tatu stats                      # online users / sessions per transport
    tatu presence <user-id>         # is this user connected right now?
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:5000"


def _api_url() -> str:
    return os.environ.get("TATU_API_URL", DEFAULT_API_URL).rstrip("/")


def _token() -> str:
    token = os.environ.get("TATU_TOKEN", "")
    if not token:
        click.secho("Error: set TATU_TOKEN to a valid access token", fg="red", err=True)
        sys.exit(1)
    return token


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the TATU backend."""
    return httpx.AsyncClient(
        base_url=_api_url(),
        timeout=30.0,
        headers={"Authorization": f"Bearer {_token()}"},
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Offloads to a thread when an event loop is already running
    (e.g. Click's CliRunner inside an async test).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="tatu")
def main():
    """TATU — realtime messaging backend for clients and artists."""


@main.command()
@click.option("--host", default=None, help="Bind address (default: TATU_HOST)")
@click.option("--port", default=None, type=int, help="Port (default: TATU_PORT)")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: str | None, port: int | None, reload: bool):
    """Run the HTTP + Socket.IO + WebSocket server."""
    import uvicorn

    from tatu.config import settings

    uvicorn.run(
        "tatu.main:asgi_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        # Protocol-level keepalive for dead TCP peers; /ws also runs its own ping.
        ws_ping_interval=settings.ws_ping_interval_seconds,
        ws_ping_timeout=settings.ws_ping_interval_seconds,
    )


@main.command("init-db")
def init_db():
    """Create the users/conversations/messages tables if missing."""
    _run(_init_db_impl())
    click.secho("Tables ready", fg="green")


async def _init_db_impl():
    from tatu.db.engine import engine
    from tatu.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Raw JSON output")
def stats(as_json: bool):
    """Online users and open sessions per transport."""
    data = _run(_get("/api/v1/realtime/stats"))
    if as_json:
        click.echo(_pretty_json(data))
        return

    click.secho("Realtime", bold=True)
    click.echo(f"  Online users: {data['onlineUsers']}")
    click.echo(f"  Sessions:     {data['sessions']}")
    for kind, count in sorted(data["byTransport"].items()):
        click.echo(f"    {kind:<10} {count}")


@main.command()
@click.argument("user_id")
def presence(user_id: str):
    """Show whether USER_ID is connected, and over which transports."""
    data = _run(_get(f"/api/v1/realtime/presence/{user_id}"))
    if data["online"]:
        transports = ", ".join(data["transports"])
        click.secho(f"{user_id} online ({data['sessions']} sessions: {transports})", fg="green")
    else:
        click.secho(f"{user_id} offline", fg="white")


async def _get(path: str) -> dict:
    async with _client() as c:
        r = await c.get(path)
        if r.status_code >= 400:
            click.secho(f"Error {r.status_code}: {r.text}", fg="red", err=True)
            sys.exit(1)
        return r.json()


if __name__ == "__main__":
    main()
