"""Unit tests for FailoverOrchestrator (failover.py).

Mocking strategy
----------------
Upstream providers are simulated with :class:`httpx.MockTransport`; each test
handler records the requests it receives so tests can assert which providers
were contacted, in what order, and with which body.  No real API calls are
made in this test suite.
"""

import asyncio
import json
from collections.abc import Callable

import httpx
import pytest

from llmrelay.providers.errors import (
    AllProvidersFailedError,
    ConfigurationError,
    StreamNotSupportedError,
)
from llmrelay.providers.failover import (
    FailoverOrchestrator,
    classify_response,
    classify_transport_error,
)
from llmrelay.providers.models import (
    ChatCompletionRequest,
    ChatMessage,
    Retryable,
    Success,
    Terminal,
)
from llmrelay.providers.registry import Provider

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_HOSTS = {
    "openrouter.ai": Provider.OPENROUTER,
    "api.groq.com": Provider.GROQ,
    "api.mistral.ai": Provider.MISTRAL,
    "api.cohere.ai": Provider.COHERE,
    "api.cerebras.ai": Provider.CEREBRAS,
    "generativelanguage.googleapis.com": Provider.GEMINI,
    "api.cloudflare.com": Provider.CLOUDFLARE,
    "localhost": Provider.OLLAMA,
}


def _completion(model: str, content: str = "Hello!") -> dict:
    return {
        "id": "chatcmpl-abc",
        "object": "chat.completion",
        "created": 1700000000,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8},
    }


class _Upstream:
    """Routes mock requests to per-provider handlers and records every call."""

    def __init__(self, **handlers: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handlers = {Provider(name): handler for name, handler in handlers.items()}
        self.calls: list[tuple[Provider, httpx.Request]] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        provider = _HOSTS[request.url.host]
        self.calls.append((provider, request))
        handler = self.handlers[provider]
        result = handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    @property
    def providers(self) -> list[Provider]:
        return [provider for provider, _ in self.calls]

    def body(self, index: int) -> dict:
        return json.loads(self.calls[index][1].content)


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json=_completion(json.loads(request.content)["model"]))


def _status(code: int, body: dict | None = None) -> Callable[[httpx.Request], httpx.Response]:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(code, json=body or {"error": {"message": f"status {code}"}})

    return handler


def _request(model: str = "gpt-4o-mini", stream: bool = False) -> ChatCompletionRequest:
    return ChatCompletionRequest(
        model=model,
        messages=(ChatMessage(role="user", content="Hello"),),
        stream=stream,
    )


def _relay(upstream: _Upstream, credentials: dict[Provider, str], **kwargs) -> FailoverOrchestrator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return FailoverOrchestrator(client, credentials, **kwargs)


# ---------------------------------------------------------------------------
# classify_response / classify_transport_error
# ---------------------------------------------------------------------------


class TestClassifyResponse:
    def test_2xx_is_success(self) -> None:
        response = httpx.Response(200, json={})
        result = classify_response(Provider.GROQ, "m", response)
        assert isinstance(result, Success)
        assert result.response is response

    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_rate_limit_and_server_errors_are_retryable(self, status: int) -> None:
        result = classify_response(Provider.GROQ, "m", httpx.Response(status))
        assert isinstance(result, Retryable)
        assert result.reason == f"groq returned {status}"

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_are_terminal(self, status: int) -> None:
        response = httpx.Response(status, json={"error": {"message": "nope"}})
        result = classify_response(Provider.GROQ, "m", response)
        assert isinstance(result, Terminal)
        assert result.status_code == status
        assert json.loads(result.body) == {"error": {"message": "nope"}}
        assert result.media_type == "application/json"

    def test_timeouts(self) -> None:
        assert classify_transport_error(Provider.GROQ, TimeoutError()).reason == "groq timed out"
        assert (
            classify_transport_error(Provider.GROQ, httpx.ReadTimeout("slow")).reason
            == "groq timed out"
        )

    def test_connection_failure(self) -> None:
        result = classify_transport_error(Provider.GROQ, httpx.ConnectError("refused"))
        assert result.reason == "groq request failed: ConnectError: refused"


# ---------------------------------------------------------------------------
# Pre-flight checks
# ---------------------------------------------------------------------------


class TestPreflight:
    async def test_no_credentials_raises_without_calls(self) -> None:
        upstream = _Upstream()
        relay = _relay(upstream, {})
        with pytest.raises(ConfigurationError) as exc_info:
            await relay.complete(_request())
        assert exc_info.value.status_code == 500
        assert upstream.calls == []

    async def test_stream_on_non_streaming_native_provider(self) -> None:
        upstream = _Upstream(cohere=_ok)
        relay = _relay(upstream, {Provider.COHERE: "c"})
        with pytest.raises(StreamNotSupportedError):
            await relay.complete(_request("command-r", stream=True))
        assert upstream.calls == []


# ---------------------------------------------------------------------------
# Failover behaviour
# ---------------------------------------------------------------------------


class TestFailover:
    async def test_native_success_keeps_requested_model(self) -> None:
        upstream = _Upstream(openrouter=_ok)
        relay = _relay(upstream, {Provider.OPENROUTER: "o", Provider.GROQ: "g"})

        result = await relay.complete(_request("gpt-4o"))

        assert isinstance(result, Success)
        assert result.provider == Provider.OPENROUTER
        assert result.model == "gpt-4o"
        assert result.payload["choices"][0]["message"]["content"] == "Hello!"
        assert upstream.providers == [Provider.OPENROUTER]
        assert upstream.calls[0][1].headers["Authorization"] == "Bearer o"

    async def test_missing_native_credential_substitutes_default_model(self) -> None:
        upstream = _Upstream(groq=_ok)
        relay = _relay(upstream, {Provider.GROQ: "g"})

        result = await relay.complete(_request("gpt-4o-mini"))

        assert isinstance(result, Success)
        assert result.provider == Provider.GROQ
        assert result.model == "llama-3.3-70b-versatile"
        assert upstream.body(0)["model"] == "llama-3.3-70b-versatile"

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_status_moves_to_next_provider(self, status: int) -> None:
        upstream = _Upstream(openrouter=_status(status), cerebras=_ok)
        relay = _relay(upstream, {Provider.OPENROUTER: "o", Provider.CEREBRAS: "c"})

        result = await relay.complete(_request("gpt-4o-mini"))

        assert isinstance(result, Success)
        assert result.provider == Provider.CEREBRAS
        assert result.model == "llama-3.3-70b"
        assert upstream.providers == [Provider.OPENROUTER, Provider.CEREBRAS]

    async def test_terminal_error_short_circuits(self) -> None:
        error = {"error": {"message": "invalid temperature", "type": "invalid_request_error"}}
        upstream = _Upstream(openrouter=_status(400, error), cerebras=_ok)
        relay = _relay(upstream, {Provider.OPENROUTER: "o", Provider.CEREBRAS: "c"})

        result = await relay.complete(_request("gpt-4o-mini"))

        assert isinstance(result, Terminal)
        assert result.provider == Provider.OPENROUTER
        assert result.status_code == 400
        assert json.loads(result.body) == error
        assert upstream.providers == [Provider.OPENROUTER]

    async def test_transport_failure_moves_to_next_provider(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        upstream = _Upstream(openrouter=refuse, cerebras=_ok)
        relay = _relay(upstream, {Provider.OPENROUTER: "o", Provider.CEREBRAS: "c"})

        result = await relay.complete(_request("gpt-4o"))

        assert isinstance(result, Success)
        assert result.provider == Provider.CEREBRAS

    async def test_corrupt_body_moves_to_next_provider(self) -> None:
        def corrupt(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                headers={"content-encoding": "gzip"},
                stream=httpx.ByteStream(b"not-gzip"),
            )

        upstream = _Upstream(openrouter=corrupt, cerebras=_ok)
        relay = _relay(upstream, {Provider.OPENROUTER: "o", Provider.CEREBRAS: "c"})

        result = await relay.complete(_request("gpt-4o"))

        assert isinstance(result, Success)
        assert result.provider == Provider.CEREBRAS
        assert upstream.providers == [Provider.OPENROUTER, Provider.CEREBRAS]

    async def test_attempt_timeout_moves_to_next_provider(self) -> None:
        async def hang(_request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={})

        upstream = _Upstream(openrouter=hang, cerebras=_ok)
        relay = _relay(
            upstream, {Provider.OPENROUTER: "o", Provider.CEREBRAS: "c"}, timeout=0.05
        )

        result = await relay.complete(_request("gpt-4o"))

        assert isinstance(result, Success)
        assert result.provider == Provider.CEREBRAS

    async def test_transport_retry_on_same_provider(self) -> None:
        attempts = {"n": 0}

        def flaky(request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise httpx.ConnectError("reset", request=request)
            return _ok(request)

        upstream = _Upstream(openrouter=flaky)
        relay = _relay(upstream, {Provider.OPENROUTER: "o"}, max_attempts=2)

        result = await relay.complete(_request("gpt-4o"))

        assert isinstance(result, Success)
        assert upstream.providers == [Provider.OPENROUTER, Provider.OPENROUTER]

    async def test_all_providers_failed(self) -> None:
        upstream = _Upstream(openrouter=_status(500), cerebras=_status(429))
        relay = _relay(upstream, {Provider.OPENROUTER: "o", Provider.CEREBRAS: "c"})

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await relay.complete(_request("gpt-4o"))

        error = exc_info.value
        assert error.status_code == 500
        assert error.message == "All providers failed. Last error: cerebras returned 429"
        assert error.reasons == ["openrouter returned 500", "cerebras returned 429"]

    async def test_skipped_native_provider_is_reported(self) -> None:
        upstream = _Upstream(cerebras=_status(503))
        relay = _relay(upstream, {Provider.CEREBRAS: "c"})

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await relay.complete(_request("gpt-4o"))

        assert exc_info.value.reasons == [
            "openrouter skipped: no_credential",
            "cerebras returned 503",
        ]

    async def test_undecodable_success_is_bad_gateway(self) -> None:
        def garbage(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>oops</html>")

        upstream = _Upstream(openrouter=garbage, cerebras=_ok)
        relay = _relay(upstream, {Provider.OPENROUTER: "o", Provider.CEREBRAS: "c"})

        result = await relay.complete(_request("gpt-4o"))

        assert isinstance(result, Terminal)
        assert result.status_code == 502
        assert json.loads(result.body)["error"]["type"] == "upstream_error"
        assert upstream.providers == [Provider.OPENROUTER]


# ---------------------------------------------------------------------------
# Candidate skipping
# ---------------------------------------------------------------------------


class TestSkipping:
    async def test_stream_skips_non_streaming_fallback(self) -> None:
        upstream = _Upstream(openrouter=_status(500), cohere=_ok)
        relay = _relay(
            upstream,
            {Provider.OPENROUTER: "o", Provider.COHERE: "c"},
        )

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await relay.complete(_request("gpt-4o", stream=True))

        assert upstream.providers == [Provider.OPENROUTER]
        assert "cohere skipped: stream_not_supported" in exc_info.value.reasons
        assert exc_info.value.last_error == "openrouter returned 500"

    async def test_cloudflare_without_account_id_is_skipped(self) -> None:
        upstream = _Upstream(cloudflare=_ok, groq=_ok)
        relay = _relay(upstream, {Provider.CLOUDFLARE: "cf", Provider.GROQ: "g"})

        result = await relay.complete(_request("@cf/meta/llama-3.1-8b-instruct"))

        assert isinstance(result, Success)
        assert result.provider == Provider.GROQ
        assert upstream.providers == [Provider.GROQ]

    async def test_cloudflare_with_account_id(self) -> None:
        upstream = _Upstream(cloudflare=_ok)
        relay = _relay(upstream, {Provider.CLOUDFLARE: "cf"}, account_id="acct-1")

        result = await relay.complete(_request("@cf/meta/llama-3.1-8b-instruct"))

        assert isinstance(result, Success)
        assert "/accounts/acct-1/" in str(upstream.calls[0][1].url)

    async def test_local_provider_disabled_by_default(self) -> None:
        upstream = _Upstream(ollama=_ok, groq=_ok)
        relay = _relay(
            upstream,
            {Provider.OLLAMA: "local", Provider.GROQ: "g"},
            priority=(Provider.OLLAMA, Provider.GROQ),
        )

        result = await relay.complete(_request("gpt-4o"))

        assert result.provider == Provider.GROQ
        assert upstream.providers == [Provider.GROQ]

    async def test_local_provider_allowed(self) -> None:
        upstream = _Upstream(ollama=_ok, groq=_ok)
        relay = _relay(
            upstream,
            {Provider.OLLAMA: "local", Provider.GROQ: "g"},
            allow_local_providers=True,
            priority=(Provider.OLLAMA, Provider.GROQ),
        )

        result = await relay.complete(_request("gpt-4o"))

        assert result.provider == Provider.OLLAMA
        assert upstream.providers == [Provider.OLLAMA]

    async def test_virtual_model_uses_provider_default(self) -> None:
        upstream = _Upstream(cerebras=_ok)
        relay = _relay(upstream, {Provider.CEREBRAS: "c"})

        result = await relay.complete(_request("auto"))

        assert result.model == "llama-3.3-70b"
        assert upstream.body(0)["model"] == "llama-3.3-70b"


# ---------------------------------------------------------------------------
# Wire formats and streaming
# ---------------------------------------------------------------------------


class TestProviderWire:
    async def test_cohere_reply_normalised(self) -> None:
        def cohere(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "text": "Hi there",
                    "generation_id": "g1",
                    "finish_reason": "COMPLETE",
                    "meta": {"billed_units": {"input_tokens": 2, "output_tokens": 3}},
                },
            )

        upstream = _Upstream(cohere=cohere)
        relay = _relay(upstream, {Provider.COHERE: "c"})

        result = await relay.complete(_request("command-r"))

        assert isinstance(result, Success)
        assert result.payload["id"] == "chatcmpl-g1"
        assert result.payload["choices"][0]["message"]["content"] == "Hi there"
        assert upstream.body(0)["message"] == "Hello"

    async def test_cohere_malformed_meta_still_succeeds(self) -> None:
        def cohere(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"text": "Hi", "meta": {"billed_units": "lots"}})

        upstream = _Upstream(cohere=cohere)
        relay = _relay(upstream, {Provider.COHERE: "c"})

        result = await relay.complete(_request("command-r"))

        assert isinstance(result, Success)
        assert result.payload["choices"][0]["message"]["content"] == "Hi"
        assert "usage" not in result.payload

    async def test_gemini_auth_header(self) -> None:
        upstream = _Upstream(gemini=_ok)
        relay = _relay(upstream, {Provider.GEMINI: "g-key"})

        await relay.complete(_request("gemini-1.5-flash"))

        headers = upstream.calls[0][1].headers
        assert headers["x-goog-api-key"] == "g-key"
        assert "authorization" not in headers

    async def test_stream_returns_open_response(self) -> None:
        sse = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\ndata: [DONE]\n\n'

        def stream(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=sse)

        upstream = _Upstream(groq=stream)
        relay = _relay(upstream, {Provider.GROQ: "g"})

        result = await relay.complete(_request("llama-3.3-70b-versatile", stream=True))

        assert isinstance(result, Success)
        assert result.payload is None
        assert upstream.body(0)["stream"] is True
        chunks = [chunk async for chunk in result.response.aiter_bytes()]
        await result.response.aclose()
        assert b"".join(chunks) == sse

    async def test_extra_fields_forwarded(self) -> None:
        upstream = _Upstream(groq=_ok)
        relay = _relay(upstream, {Provider.GROQ: "g"})
        request = ChatCompletionRequest(
            model="llama-3.3-70b-versatile",
            messages=(ChatMessage(role="user", content="Hi"),),
            extra={"top_p": 0.5, "stop": ["\n"]},
        )

        await relay.complete(request)

        assert upstream.body(0)["top_p"] == 0.5
        assert upstream.body(0)["stop"] == ["\n"]
