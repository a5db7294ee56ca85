"""Realtime introspection routes — who is online, how many sessions."""

import uuid

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/realtime/stats")
async def realtime_stats(request: Request):
    """Online users, open sessions, and sessions per transport."""
    return request.app.state.gateway.stats()


@router.get("/realtime/presence/{user_id}")
async def user_presence(user_id: uuid.UUID, request: Request):
    """Whether a user currently holds at least one authenticated session."""
    gateway = request.app.state.gateway
    sessions = gateway.presence.sessions_for(user_id)
    return {
        "userId": str(user_id),
        "online": bool(sessions),
        "sessions": len(sessions),
        "transports": sorted({s.kind for s in sessions}),
    }
