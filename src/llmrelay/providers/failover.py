"""Sequential multi-provider failover over raw HTTP.

The orchestrator walks the candidate providers for a request one at a time and
stops at the first success or at the first terminal upstream error.  This
module also owns the single classifier that turns an upstream outcome into an
:data:`~llmrelay.providers.models.AttemptResult`.

* Per-attempt timeout via :func:`asyncio.timeout`; the connection is released
  before the next candidate is tried.
* Optional same-provider retry of transport failures (tenacity).
* OpenTelemetry spans and structured logging per attempt.
"""

import asyncio
import json
import time
import uuid
from collections.abc import Collection, Mapping
from dataclasses import replace
from typing import Any

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from llmrelay.metrics import PROVIDER_ATTEMPTS, PROVIDER_LATENCY
from llmrelay.providers.errors import AllProvidersFailedError, ConfigurationError
from llmrelay.providers.models import (
    AttemptResult,
    ChatCompletionRequest,
    Retryable,
    Skipped,
    Success,
    Terminal,
)
from llmrelay.providers.registry import (
    PROVIDER_PRIORITY,
    PROVIDERS,
    Provider,
    auth_headers,
    get_credential,
    provider_url,
)
from llmrelay.providers.router import (
    candidate_providers,
    is_virtual_model,
    resolve_model_for_provider,
)
from llmrelay.providers.transform import (
    ensure_streamable,
    from_provider_wire,
    to_provider_wire,
)

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)

# RequestError also covers DecodingError raised while reading a corrupt body.
_TRANSPORT_ERRORS = (httpx.RequestError, TimeoutError)


def _before_sleep(retry_state: RetryCallState) -> None:
    """Tenacity ``before_sleep`` hook that emits a structured warning."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    next_action = retry_state.next_action
    wait_seconds = next_action.sleep if next_action is not None else 0.0
    _log.warning(
        "upstream_request_retry",
        attempt=retry_state.attempt_number,
        wait_seconds=round(wait_seconds, 2),
        error_type=type(exc).__name__ if exc else None,
        error=str(exc) if exc else None,
    )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_response(
    provider: Provider,
    model: str,
    response: httpx.Response,
) -> Success | Retryable | Terminal:
    """Classify an upstream HTTP response.

    ==========================  ==============
    Status                      Result
    ==========================  ==============
    2xx                         ``Success``
    429, 5xx                    ``Retryable``
    anything else               ``Terminal``
    ==========================  ==============

    For non-2xx responses the body must already have been read.
    """
    status = response.status_code
    if response.is_success:
        return Success(provider=provider, model=model, response=response)
    if status == 429 or status >= 500:
        return Retryable(provider=provider, reason=f"{provider} returned {status}")
    return Terminal(
        provider=provider,
        model=model,
        status_code=status,
        body=response.content,
        media_type=response.headers.get("content-type", "application/json"),
    )


def classify_transport_error(provider: Provider, error: Exception) -> Retryable:
    """Classify a failure that produced no HTTP response at all."""
    if isinstance(error, TimeoutError | httpx.TimeoutException):
        return Retryable(provider=provider, reason=f"{provider} timed out")
    return Retryable(
        provider=provider,
        reason=f"{provider} request failed: {type(error).__name__}: {error}",
    )


def _skip(provider: Provider, reason: str, log: Any) -> Skipped:
    log.info("provider_skipped", reason=reason)
    return Skipped(provider=provider, reason=reason)


def _bad_gateway(provider: Provider, model: str, message: str) -> Terminal:
    body = {"error": {"message": message, "type": "upstream_error"}}
    return Terminal(
        provider=provider,
        model=model,
        status_code=502,
        body=json.dumps(body).encode(),
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class FailoverOrchestrator:
    """Route a canonical request to the first provider that can answer it.

    Example::

        async with httpx.AsyncClient() as client:
            relay = FailoverOrchestrator(client, {Provider.GROQ: "gsk-..."})
            result = await relay.complete(request)

    Args:
        client: Shared HTTP client; the orchestrator never closes it.
        credentials: ``{Provider: api_key}`` for configured providers.
        timeout: Seconds allowed per provider attempt (connect through
            response headers for streams, through the full body otherwise).
        max_attempts: Sends per provider when the transport fails before a
            response arrives.  ``1`` moves straight to the next provider.
        account_id: Substituted into provider URLs that need it.
        allow_local_providers: Permit providers running on the relay host.
        virtual_models: Model aliases that always use provider defaults.
        priority: Failover order for non-native providers.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: Mapping[Provider, str],
        *,
        timeout: float = 10.0,
        max_attempts: int = 1,
        account_id: str | None = None,
        allow_local_providers: bool = False,
        virtual_models: Collection[str] = ("auto",),
        priority: tuple[Provider, ...] = PROVIDER_PRIORITY,
    ) -> None:
        self._client = client
        self._credentials = dict(credentials)
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._account_id = account_id
        self._allow_local_providers = allow_local_providers
        self._virtual_models = frozenset(virtual_models)
        self._priority = priority

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def candidates(self, model: str) -> list[Provider]:
        """Return the attempt order for *model*; the native provider is always first."""
        return candidate_providers(model, self._credentials, self._priority)

    async def complete(self, request: ChatCompletionRequest) -> Success | Terminal:
        """Serve *request* from the first provider that does not fail retryably.

        Returns:
            ``Success`` (with ``payload`` set for non-streaming requests, or an
            unread streaming ``response`` the caller must close) or
            ``Terminal`` carrying the upstream's own error response.

        Raises:
            ConfigurationError: No provider has a credential.
            StreamNotSupportedError: Streaming was requested and the requested
                model's provider cannot stream.
            AllProvidersFailedError: Every candidate was skipped or failed
                retryably.
        """
        if not any(get_credential(self._credentials, p) for p in Provider):
            raise ConfigurationError(
                "No API keys configured. Please configure at least one provider."
            )

        candidates = self.candidates(request.model)
        ensure_streamable(candidates[0], request)
        is_virtual = is_virtual_model(request.model, self._virtual_models)

        log = _log.bind(
            relay_id=str(uuid.uuid4()),
            model=request.model,
            stream=request.stream,
            candidates=[str(p) for p in candidates],
        )

        reasons: list[str] = []
        last_error: str | None = None
        for provider in candidates:
            result = await self._attempt(provider, request, is_virtual, log)
            PROVIDER_ATTEMPTS.labels(provider=provider, outcome=type(result).__name__.lower()).inc()

            if isinstance(result, Success | Terminal):
                return result
            if isinstance(result, Retryable):
                last_error = result.reason
                reasons.append(result.reason)
            else:
                reasons.append(f"{provider} skipped: {result.reason}")

        log.error("all_providers_failed", reasons=reasons)
        raise AllProvidersFailedError(reasons, last_error=last_error)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _attempt(
        self,
        provider: Provider,
        request: ChatCompletionRequest,
        is_virtual: bool,
        log: Any,
    ) -> AttemptResult:
        descriptor = PROVIDERS[provider]
        log = log.bind(provider=str(provider))

        credential = get_credential(self._credentials, provider)
        url = provider_url(provider, self._account_id)
        if credential is None:
            return _skip(provider, "no_credential", log)
        if request.stream and not descriptor.supports_streaming:
            return _skip(provider, "stream_not_supported", log)
        if descriptor.is_local and not self._allow_local_providers:
            return _skip(provider, "local_provider_disabled", log)
        if url is None:
            return _skip(provider, "unresolved_base_url", log)

        model = resolve_model_for_provider(request.model, provider, is_virtual)
        body = to_provider_wire(provider, replace(request, model=model))
        log = log.bind(upstream_model=model)

        with _tracer.start_as_current_span("relay.attempt") as span:
            span.set_attribute("gen_ai.system", str(provider))
            span.set_attribute("gen_ai.request.model", model)
            span.set_attribute("llm.stream", request.stream)

            start_time = time.monotonic()
            try:
                response = await self._send(url, body, auth_headers(provider, credential), request.stream)
            except _TRANSPORT_ERRORS as exc:
                result = classify_transport_error(provider, exc)
                span.record_exception(exc)
                span.set_status(StatusCode.ERROR, result.reason)
                log.warning("provider_attempt_failed", reason=result.reason)
                return result
            finally:
                PROVIDER_LATENCY.labels(provider=provider).observe(time.monotonic() - start_time)

            span.set_attribute("http.response.status_code", response.status_code)
            result = classify_response(provider, model, response)

            if isinstance(result, Retryable):
                span.set_status(StatusCode.ERROR, result.reason)
                log.warning(
                    "provider_attempt_failed",
                    reason=result.reason,
                    status_code=response.status_code,
                    body=response.text[:500],
                )
                return result

            if isinstance(result, Terminal):
                span.set_status(StatusCode.ERROR, f"terminal {result.status_code}")
                log.warning(
                    "provider_terminal_error",
                    status_code=result.status_code,
                    body=response.text[:500],
                )
                return result

            if request.stream:
                log.info("provider_stream_opened", status_code=response.status_code)
                return result

            normalised = self._normalise(result)
            if isinstance(normalised, Terminal):
                span.set_status(StatusCode.ERROR, "undecodable upstream body")
                log.error("provider_bad_response", status_code=response.status_code)
            else:
                log.info("provider_attempt_succeeded", status_code=response.status_code)
            return normalised

    async def _send(
        self,
        url: str,
        body: dict,
        headers: dict[str, str],
        stream: bool,
    ) -> httpx.Response:
        """POST *body* with same-provider retry of transport failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception_type(_TRANSPORT_ERRORS),
            wait=wait_exponential(multiplier=0.5, max=4),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                return await self._send_once(url, body, headers, stream)

    async def _send_once(
        self,
        url: str,
        body: dict,
        headers: dict[str, str],
        stream: bool,
    ) -> httpx.Response:
        """Send one request under the attempt timeout.

        A successful streaming response is returned open.  Every other
        response is read in full and closed before returning, so nothing is
        left holding a connection when failover moves on.
        """
        upstream_request = self._client.build_request("POST", url, json=body, headers=headers)
        async with asyncio.timeout(self._timeout):
            response = await self._client.send(upstream_request, stream=True)
            if stream and response.is_success:
                return response
            try:
                await response.aread()
            finally:
                await response.aclose()
        return response

    def _normalise(self, result: Success) -> Success | Terminal:
        try:
            raw = result.response.json()
        except ValueError:
            return _bad_gateway(result.provider, result.model, f"{result.provider} returned invalid JSON")
        if not isinstance(raw, dict):
            return _bad_gateway(result.provider, result.model, f"{result.provider} returned a non-object body")
        try:
            payload = from_provider_wire(result.provider, raw, result.model)
        except (AttributeError, TypeError, ValueError) as exc:
            return _bad_gateway(
                result.provider, result.model, f"{result.provider} returned an unexpected body: {exc}"
            )
        return replace(result, payload=payload)
