"""API route aggregation.

All routers registered here get mounted in main.py.

Auth is applied at the include_router level using FastAPI's
dependencies parameter. Health is open; everything else needs a valid
bearer token.
"""

from fastapi import APIRouter, Depends

from tatu.api.health import router as health_router
from tatu.api.messages import router as messages_router
from tatu.api.realtime import router as realtime_router
from tatu.auth.dependencies import get_current_user

# All protected routers require authentication
_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes: no auth required
api_router.include_router(health_router, tags=["health"])

# Protected routes: require valid JWT
api_router.include_router(messages_router, tags=["messages"], dependencies=_auth)
api_router.include_router(realtime_router, tags=["realtime"], dependencies=_auth)
