import logging

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import make_asgi_app
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import create_async_engine

from llmrelay.api.catalog import router as catalog_router
from llmrelay.api.completions import router as completions_router
from llmrelay.api.health import router as health_router
from llmrelay.config import Settings, settings
from llmrelay.providers import FailoverOrchestrator, RelayError
from llmrelay.ratelimit import RateLimiter, RedisRateLimiter
from llmrelay.usage import DatabaseUsageGate, InMemoryUsageGate, UsageGate

# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelNamesMapping().get(settings.log_level.upper(), logging.INFO)
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()

# ---------------------------------------------------------------------------
# OpenTelemetry
# ---------------------------------------------------------------------------
resource = Resource.create({"service.name": settings.otel_service_name})
tracer_provider = TracerProvider(resource=resource)
otlp_exporter = OTLPSpanExporter(
    endpoint=f"{settings.otel_exporter_otlp_endpoint}/v1/traces",
)
tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
trace.set_tracer_provider(tracer_provider)

# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------
app = FastAPI(
    title="LLM Relay",
    version=settings.app_version,
    description=(
        "OpenAI-compatible chat completion proxy with multi-provider failover, "
        "per-client rate limiting, and usage quotas."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=[
        "X-Provider",
        "X-Model",
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
)

# Prometheus metrics endpoint mounted as a sub-application
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# Routers
app.include_router(health_router)
app.include_router(catalog_router)
app.include_router(completions_router)

# Instrument *after* routes are registered
FastAPIInstrumentor.instrument_app(app, tracer_provider=tracer_provider)


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------
@app.exception_handler(RelayError)
async def _relay_error_handler(_request: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request body"
    return JSONResponse(
        status_code=400,
        content={"error": {"message": message, "type": "invalid_request_error"}},
    )


# ---------------------------------------------------------------------------
# Component construction
# ---------------------------------------------------------------------------
def _build_rate_limiter(config: Settings) -> RateLimiter | RedisRateLimiter:
    if config.rate_limit_backend == "redis":
        return RedisRateLimiter(Redis.from_url(config.redis_url), config.rate_limit_per_minute)
    return RateLimiter(
        config.rate_limit_per_minute,
        cleanup_interval=config.rate_limit_cleanup_interval,
        max_entries=config.rate_limit_max_entries,
    )


async def _build_usage_gate(config: Settings) -> UsageGate | None:
    if config.usage_gate == "memory":
        return InMemoryUsageGate(config.free_limits)
    if config.usage_gate == "database":
        gate = DatabaseUsageGate(create_async_engine(config.database_url), config.free_limits)
        await gate.create_schema()
        return gate
    return None


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------
@app.on_event("startup")
async def _startup() -> None:
    credentials = settings.provider_credentials()

    # One pooled client for every upstream call; per-attempt deadlines are
    # enforced by the orchestrator on top of the client timeout.
    app.state.http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.upstream_timeout))
    app.state.relay = FailoverOrchestrator(
        app.state.http_client,
        credentials,
        timeout=settings.upstream_timeout,
        max_attempts=settings.upstream_max_attempts,
        account_id=settings.cloudflare_account_id,
        allow_local_providers=settings.allow_local_providers,
        virtual_models=settings.virtual_models,
    )
    app.state.rate_limiter = _build_rate_limiter(settings)
    app.state.usage_gate = await _build_usage_gate(settings)

    log.info(
        "LLM Relay ready",
        host=settings.host,
        port=settings.port,
        providers=sorted(str(p) for p in credentials),
        rate_limit_per_minute=settings.rate_limit_per_minute,
        rate_limit_backend=settings.rate_limit_backend,
        usage_gate=settings.usage_gate,
        upstream_timeout=settings.upstream_timeout,
        otel_endpoint=settings.otel_exporter_otlp_endpoint,
    )
    if not credentials:
        log.warning("No provider credentials configured; completions will fail")


@app.on_event("shutdown")
async def _shutdown() -> None:
    log.info("LLM Relay shutting down")
    client: httpx.AsyncClient | None = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()
    limiter = getattr(app.state, "rate_limiter", None)
    if isinstance(limiter, RedisRateLimiter):
        await limiter.close()
    gate = getattr(app.state, "usage_gate", None)
    if isinstance(gate, DatabaseUsageGate):
        await gate.close()
    tracer_provider.shutdown()
