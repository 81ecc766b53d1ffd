"""OpenAI-compatible POST /v1/chat/completions endpoint.

Applies the per-client rate limit and the usage gate, hands the validated
request to the :class:`~llmrelay.providers.FailoverOrchestrator`, and renders
whatever comes back: a normalised JSON completion, a pass-through event stream,
or a provider's own error response.  Every response that reached the provider
stage carries ``X-Provider`` / ``X-Model`` provenance headers.
"""

import json
import time
import uuid
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from opentelemetry import trace
from opentelemetry.trace import StatusCode
from pydantic import BaseModel, ConfigDict, Field

from llmrelay.config import settings
from llmrelay.metrics import RATE_LIMITED
from llmrelay.providers import (
    ChatCompletionRequest,
    ChatMessage,
    FailoverOrchestrator,
    RateLimitExceededError,
    RelayError,
    ServiceUnavailableError,
    Success,
)
from llmrelay.ratelimit import RateLimiter, RedisRateLimiter, client_identifier, rate_limit_headers
from llmrelay.usage import FEATURE_HEADER, CallerIdentity, UsageGate, check_quota

router = APIRouter(prefix="/v1", tags=["completions"])

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)


# ---------------------------------------------------------------------------
# Request model (OpenAI wire format)
# ---------------------------------------------------------------------------


class _Message(BaseModel):
    role: str
    content: str


class ChatCompletionBody(BaseModel):
    """OpenAI-compatible chat completion request body.

    Unknown fields are kept and forwarded to OpenAI-compatible providers.
    ``model`` is optional here so a missing model is reported as a 400 with the
    relay's error shape rather than a schema error.
    """

    model_config = ConfigDict(extra="allow")

    model: str | None = None
    messages: list[_Message] = Field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_relay(request: Request) -> FailoverOrchestrator:
    """Return the shared :class:`FailoverOrchestrator` from ``app.state``."""
    relay: FailoverOrchestrator | None = getattr(request.app.state, "relay", None)
    if relay is None:
        raise ServiceUnavailableError("Relay not initialised")
    return relay


def get_rate_limiter(request: Request) -> RateLimiter | RedisRateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise ServiceUnavailableError("Rate limiter not initialised")
    return limiter


def get_usage_gate(request: Request) -> UsageGate | None:
    """Return the configured usage gate, or ``None`` when metering is disabled."""
    return getattr(request.app.state, "usage_gate", None)


def get_caller(request: Request) -> CallerIdentity | None:
    """Read the caller identity injected by the authentication layer.

    Plan and auth headers are ignored unless ``trust_caller_plan_headers`` is
    set, so every caller is metered as a free caller by default.
    """
    caller_id = request.headers.get(settings.caller_id_header, "").strip()
    if not caller_id:
        return None
    if not settings.trust_caller_plan_headers:
        return CallerIdentity(caller_id=caller_id)
    plan = request.headers.get(settings.caller_plan_header, "free").strip().lower()
    auth = request.headers.get(settings.caller_auth_header, "").strip().lower()
    return CallerIdentity(caller_id=caller_id, plan=plan or "free", byok=auth == "byok")


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------


@router.post("/chat/completions", response_model=None)
async def chat_completions(
    body: ChatCompletionBody,
    request: Request,
    background_tasks: BackgroundTasks,
    relay: FailoverOrchestrator = Depends(get_relay),
    limiter: RateLimiter | RedisRateLimiter = Depends(get_rate_limiter),
    gate: UsageGate | None = Depends(get_usage_gate),
    caller: CallerIdentity | None = Depends(get_caller),
) -> Response:
    """Generate a chat completion through the first available provider.

    Args:
        body: OpenAI-compatible request body.
        request: Raw request (headers feed the rate-limit identifier).
        background_tasks: Post-response work; usage is recorded here.
        relay: Injected failover orchestrator.
        limiter: Injected per-client rate limiter.
        gate: Injected usage gate, ``None`` when metering is off.
        caller: Caller identity from the authentication layer, if any.

    Returns:
        A JSON completion, a ``text/event-stream`` pass-through when
        ``body.stream`` is set, or the upstream's own error for terminal
        provider failures.
    """
    request_id = str(uuid.uuid4())
    start_time = time.monotonic()
    headers: dict[str, str] = {"X-Request-ID": request_id}

    log = _log.bind(
        request_id=request_id,
        model=body.model,
        stream=body.stream,
        caller_id=caller.caller_id if caller else None,
    )

    with _tracer.start_as_current_span("relay.completions") as span:
        if body.model:
            span.set_attribute("gen_ai.request.model", body.model)
        span.set_attribute("llm.stream", body.stream)

        log.info("completion_request_start")

        try:
            identifier = client_identifier(request.headers)
            limit = await limiter.check(identifier)
            headers.update(rate_limit_headers(limit, limiter.clock.now()))
            if not limit.allowed:
                RATE_LIMITED.inc()
                log.info("rate_limit_exceeded", client=identifier)
                raise RateLimitExceededError(headers)

            feature = await check_quota(
                gate, caller, request.headers.get(FEATURE_HEADER), settings.upgrade_url
            )
            completion_request = ChatCompletionRequest(
                model=body.model or "",
                messages=tuple(ChatMessage(role=m.role, content=m.content) for m in body.messages),
                temperature=body.temperature,
                max_tokens=body.max_tokens,
                stream=body.stream,
                extra=dict(body.model_extra or {}),
            )
            outcome = await relay.complete(completion_request)

        except RelayError as exc:
            span.record_exception(exc)
            span.set_status(StatusCode.ERROR, exc.message)
            log.error(
                "completion_request_error",
                error_type=type(exc).__name__,
                error=exc.message,
                duration_ms=_elapsed_ms(start_time),
            )
            return JSONResponse(
                status_code=exc.status_code,
                content=exc.to_body(),
                headers={**headers, **getattr(exc, "headers", {})},
            )

        headers["X-Provider"] = str(outcome.provider)
        headers["X-Model"] = outcome.model
        span.set_attribute("gen_ai.system", str(outcome.provider))
        span.set_attribute("gen_ai.response.model", outcome.model)
        log = log.bind(provider=str(outcome.provider), upstream_model=outcome.model)

        if not isinstance(outcome, Success):
            span.set_status(StatusCode.ERROR, f"upstream {outcome.status_code}")
            log.warning(
                "completion_request_upstream_rejected",
                status_code=outcome.status_code,
                duration_ms=_elapsed_ms(start_time),
            )
            return Response(
                content=outcome.body,
                status_code=outcome.status_code,
                media_type=outcome.media_type,
                headers=headers,
            )

        if gate is not None and caller is not None and feature is not None:
            background_tasks.add_task(gate.after_success, caller.caller_id, feature)

        if outcome.payload is None:
            return StreamingResponse(
                _relay_stream(outcome.response, log, start_time),
                media_type=outcome.response.headers.get("content-type", "text/event-stream"),
                headers={**headers, "Cache-Control": "no-cache"},
            )

        log.info(
            "completion_request_complete",
            duration_ms=_elapsed_ms(start_time),
            usage=outcome.payload.get("usage"),
        )
        return JSONResponse(content=outcome.payload, headers=headers)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


async def _relay_stream(
    response: httpx.Response,
    log: Any,
    start_time: float,
) -> AsyncGenerator[bytes, None]:
    """Forward the upstream event stream, closing the upstream response when done.

    Errors mid-stream are surfaced as a final SSE ``error`` event, since the
    HTTP 200 header has already been sent.
    """
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as exc:
        log.error("completion_stream_error", error_type=type(exc).__name__, error=str(exc))
        error_payload = {"error": {"message": str(exc), "type": "upstream_error"}}
        yield f"data: {json.dumps(error_payload)}\n\n".encode()
        yield b"data: [DONE]\n\n"
    finally:
        await response.aclose()
        log.info("completion_request_complete", duration_ms=_elapsed_ms(start_time))


def _elapsed_ms(start_time: float) -> float:
    return round((time.monotonic() - start_time) * 1000, 2)
