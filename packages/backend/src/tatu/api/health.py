"""Health check endpoint.

Reports whether the database and Redis answer, plus how many realtime
sessions this process holds. A failing dependency makes the status
"degraded" instead of failing the request, so load balancers can tell
"process up, dependency down" apart from "process down".
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tatu import __version__
from tatu.db.engine import get_db

router = APIRouter()


@router.get("/health")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """Server version and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    # Redis is optional; only report on it once the lifespan connected it.
    from tatu.realtime.pubsub import get_redis

    try:
        redis = get_redis()
    except RuntimeError:
        checks["redis"] = "not connected"
    else:
        try:
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    healthy = checks["database"] == "ok" and not checks["redis"].startswith("error")
    return {
        "status": "healthy" if healthy else "degraded",
        **checks,
        "realtime": request.app.state.gateway.stats(),
    }
