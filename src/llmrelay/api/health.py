import asyncio
from datetime import UTC, datetime

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from opentelemetry import trace
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.sql import text

from llmrelay.config import settings

router = APIRouter(prefix="/health", tags=["health"])
log = structlog.get_logger()
tracer = trace.get_tracer(__name__)


@router.get("")
async def health() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "version": settings.app_version,
        }
    )


@router.get("/live")
async def liveness() -> JSONResponse:
    """Kubernetes liveness probe: 200 while the process is running."""
    return JSONResponse(content={"status": "alive"})


@router.get("/ready")
async def readiness() -> JSONResponse:
    """Kubernetes readiness probe.

    Requires at least one provider credential, and checks Redis / the usage
    database only when the configured backends actually use them.
    """
    checks: dict[str, str] = {}
    errors: dict[str, str] = {}

    with tracer.start_as_current_span("health.readiness"):
        configured = sorted(str(p) for p in settings.provider_credentials())
        if configured:
            checks["providers"] = ",".join(configured)
        else:
            errors["providers"] = "no provider credentials configured"

        # ------------------------------------------------------------------
        # Redis (shared rate-limit counters)
        # ------------------------------------------------------------------
        if settings.rate_limit_backend == "redis":
            with tracer.start_as_current_span("health.check.redis"):
                redis_client: Redis = Redis.from_url(settings.redis_url, socket_timeout=5)
                try:
                    await asyncio.wait_for(redis_client.ping(), timeout=5.0)
                    checks["redis"] = "ok"
                    log.debug("Redis ping succeeded")
                except Exception as exc:
                    errors["redis"] = str(exc)
                    log.warning("Redis ping failed", error=str(exc))
                finally:
                    await redis_client.aclose()

        # ------------------------------------------------------------------
        # Usage database
        # ------------------------------------------------------------------
        if settings.usage_gate == "database":
            with tracer.start_as_current_span("health.check.database"):
                engine = create_async_engine(settings.database_url, pool_pre_ping=False)
                try:
                    async with engine.connect() as conn:
                        await asyncio.wait_for(conn.execute(text("SELECT 1")), timeout=5.0)
                    checks["database"] = "ok"
                    log.debug("Database check succeeded")
                except Exception as exc:
                    errors["database"] = str(exc)
                    log.warning("Database check failed", error=str(exc))
                finally:
                    await engine.dispose()

    if errors:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "checks": checks, "errors": errors},
        )

    return JSONResponse(content={"status": "ready", "checks": checks})
