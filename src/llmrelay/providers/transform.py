"""Canonical ↔ provider wire-format conversion.

Most providers accept the OpenAI body unchanged.  Cohere's ``/v1/chat`` takes a
single ``message`` plus a ``chat_history`` of earlier turns and an optional
``preamble`` holding the system prompt, and answers with its own reply shape.
"""

import time
from typing import Any

from llmrelay.providers.errors import StreamNotSupportedError
from llmrelay.providers.models import ChatCompletionRequest, ChatCompletionResponse, Usage
from llmrelay.providers.registry import PROVIDERS, Provider, WireFormat

_COHERE_ROLES: dict[str, str] = {"user": "USER", "assistant": "CHATBOT"}


def supports_streaming(provider: Provider) -> bool:
    return PROVIDERS[provider].supports_streaming


def ensure_streamable(provider: Provider, request: ChatCompletionRequest) -> None:
    """Raise :class:`StreamNotSupportedError` if *request* streams and *provider* cannot."""
    if request.stream and not supports_streaming(provider):
        raise StreamNotSupportedError(provider)


def to_provider_wire(provider: Provider, request: ChatCompletionRequest) -> dict[str, Any]:
    """Build the JSON body to POST to *provider*.

    ``request.model`` must already be the model chosen for *provider*.
    """
    if PROVIDERS[provider].wire_format is WireFormat.COHERE_CHAT:
        return _to_cohere_chat(request)
    return request.to_dict()


def from_provider_wire(provider: Provider, raw: dict[str, Any], model_used: str) -> dict[str, Any]:
    """Convert a decoded provider reply into the canonical response body."""
    if PROVIDERS[provider].wire_format is WireFormat.COHERE_CHAT:
        return _from_cohere_chat(raw, model_used).to_dict()
    return raw


# ---------------------------------------------------------------------------
# Cohere
# ---------------------------------------------------------------------------


def _to_cohere_chat(request: ChatCompletionRequest) -> dict[str, Any]:
    system = [m.content for m in request.messages if m.role == "system"]
    turns = [m for m in request.messages if m.role != "system"]

    body: dict[str, Any] = {
        "model": request.model,
        "message": turns[-1].content if turns else "",
        "chat_history": [
            {"role": _COHERE_ROLES[m.role], "message": m.content} for m in turns[:-1]
        ],
    }
    if system:
        body["preamble"] = "\n".join(system)
    if request.temperature is not None:
        body["temperature"] = request.temperature
    if request.max_tokens is not None:
        body["max_tokens"] = request.max_tokens
    return body


def _from_cohere_chat(raw: dict[str, Any], model_used: str) -> ChatCompletionResponse:
    now = time.time()
    generation_id = raw.get("generation_id")
    completion_id = f"chatcmpl-{generation_id or int(now * 1000)}"

    stop_reason = str(raw.get("finish_reason") or "").lower()
    finish_reason = "length" if "length" in stop_reason or "max_tokens" in stop_reason else "stop"

    return ChatCompletionResponse(
        id=completion_id,
        created=int(now),
        model=model_used,
        content=raw.get("text") or "",
        finish_reason=finish_reason,
        usage=_cohere_usage(raw.get("meta")),
    )


def _cohere_usage(meta: Any) -> Usage | None:
    if not isinstance(meta, dict):
        return None
    for key in ("billed_units", "tokens"):
        counts = meta.get(key)
        if not isinstance(counts, dict):
            continue
        input_tokens = counts.get("input_tokens")
        output_tokens = counts.get("output_tokens")
        if input_tokens is not None and output_tokens is not None:
            return Usage(prompt_tokens=int(input_tokens), completion_tokens=int(output_tokens))
    return None
