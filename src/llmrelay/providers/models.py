"""Canonical request/response types and the per-attempt result variants.

The canonical shape is the OpenAI chat-completions schema.  Requests are
validated at construction time so a malformed body fails with
:class:`~llmrelay.providers.errors.ClientInputError` before any provider is
contacted.
"""

from dataclasses import dataclass, field
from typing import Any

import httpx

from llmrelay.providers.errors import ClientInputError
from llmrelay.providers.registry import Provider

_VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ChatCompletionRequest:
    """A validated chat completion request.

    Args:
        model: Requested model id, e.g. ``"gpt-4o-mini"`` or a virtual alias.
        messages: Conversation, oldest first.  Must not be empty.
        temperature: Sampling temperature in ``[0.0, 2.0]``; ``None`` defers to
            the provider.
        max_tokens: Generation cap; ``None`` defers to the provider.
        stream: Whether the caller wants ``text/event-stream`` output.
        extra: Any other OpenAI request fields (``top_p``, ``stop``, ...),
            forwarded untouched to OpenAI-compatible providers.

    Raises:
        ClientInputError: If any field fails validation.
    """

    model: str
    messages: tuple[ChatMessage, ...]
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.model or not self.model.strip():
            raise ClientInputError("model is required")

        if not self.messages:
            raise ClientInputError("messages must not be empty")

        for i, msg in enumerate(self.messages):
            if msg.role not in _VALID_ROLES:
                raise ClientInputError(
                    f"messages[{i}] has invalid role '{msg.role}'; "
                    f"must be one of {sorted(_VALID_ROLES)}"
                )

        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ClientInputError(f"temperature must be in [0.0, 2.0], got {self.temperature}")

        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ClientInputError(f"max_tokens must be a positive integer, got {self.max_tokens}")

    def to_dict(self) -> dict[str, Any]:
        """Render the OpenAI-shaped body, omitting unset optionals."""
        body: dict[str, Any] = {
            **self.extra,
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if self.max_tokens is not None:
            body["max_tokens"] = self.max_tokens
        if self.stream:
            body["stream"] = True
        return body


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ChatCompletionResponse:
    """Canonical (OpenAI-shaped) completion with a single choice."""

    id: str
    created: int
    model: str
    content: str
    finish_reason: str
    usage: Usage | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": self.content},
                    "finish_reason": self.finish_reason,
                }
            ],
        }
        if self.usage is not None:
            data["usage"] = {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            }
        return data


# ---------------------------------------------------------------------------
# Attempt results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Success:
    """The provider answered with a 2xx.

    Attributes:
        response: The upstream response.  For streaming requests its body has
            not been read yet and the receiver owns closing it.
        payload: Canonical JSON body for non-streaming requests, filled in
            after normalisation.
    """

    provider: Provider
    model: str
    response: httpx.Response
    payload: dict[str, Any] | None = None


@dataclass(frozen=True)
class Skipped:
    """The provider was not contacted."""

    provider: Provider
    reason: str


@dataclass(frozen=True)
class Retryable:
    """The provider failed in a way another provider might not."""

    provider: Provider
    reason: str


@dataclass(frozen=True)
class Terminal:
    """The provider rejected the request itself; returned to the caller as is."""

    provider: Provider
    model: str
    status_code: int
    body: bytes
    media_type: str = "application/json"


AttemptResult = Success | Skipped | Retryable | Terminal
