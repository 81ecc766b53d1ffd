"""Model catalog and model → provider routing."""

from collections.abc import Collection, Mapping
from types import MappingProxyType

from llmrelay.providers.registry import (
    PROVIDER_PRIORITY,
    Provider,
    available_providers,
)

DEFAULT_PROVIDER = Provider.CEREBRAS

MODEL_CATALOG: Mapping[str, Provider] = MappingProxyType(
    {
        # OpenRouter (fronts OpenAI, Anthropic, ...)
        "gpt-4o": Provider.OPENROUTER,
        "gpt-4o-mini": Provider.OPENROUTER,
        "gpt-4-turbo": Provider.OPENROUTER,
        "gpt-4": Provider.OPENROUTER,
        "gpt-3.5-turbo": Provider.OPENROUTER,
        "claude-3-opus": Provider.OPENROUTER,
        "claude-3-sonnet": Provider.OPENROUTER,
        "claude-3-haiku": Provider.OPENROUTER,
        # Groq
        "llama-3.3-70b-versatile": Provider.GROQ,
        "llama-3.1-8b-instant": Provider.GROQ,
        "mixtral-8x7b-32768": Provider.GROQ,
        "gemma2-9b-it": Provider.GROQ,
        "llama-3.3-70b-specdec": Provider.GROQ,
        "llama-3.1-70b-versatile": Provider.GROQ,
        # Together
        "mistralai/Mixtral-8x7B-Instruct-v0.1": Provider.TOGETHER,
        "meta-llama/Llama-3-70b-chat-hf": Provider.TOGETHER,
        "meta-llama/Llama-3-8b-chat-hf": Provider.TOGETHER,
        "Qwen/Qwen2-72B-Instruct": Provider.TOGETHER,
        # Gemini
        "gemini-2.0-flash-exp": Provider.GEMINI,
        "gemini-1.5-pro": Provider.GEMINI,
        "gemini-1.5-flash": Provider.GEMINI,
        "gemini-pro": Provider.GEMINI,
        "gemini-flash": Provider.GEMINI,
        # Mistral
        "mistral-large-latest": Provider.MISTRAL,
        "mistral-medium": Provider.MISTRAL,
        "mistral-small-latest": Provider.MISTRAL,
        "mistral-tiny": Provider.MISTRAL,
        "codestral-mamba-latest": Provider.MISTRAL,
        "mistral-nemo": Provider.MISTRAL,
        "pixtral-12b": Provider.MISTRAL,
        "open-mistral-7b": Provider.MISTRAL,
        "open-mixtral-8x7b": Provider.MISTRAL,
        "open-mixtral-8x22b": Provider.MISTRAL,
        # Cohere
        "command-r-plus": Provider.COHERE,
        "command-r": Provider.COHERE,
        "command": Provider.COHERE,
        "command-light": Provider.COHERE,
        "command-nightly": Provider.COHERE,
        "command-light-nightly": Provider.COHERE,
        # NVIDIA
        "nvidia/llama-3.1-mini": Provider.NVIDIA,
        "nvidia/llama-3.1-hf": Provider.NVIDIA,
        "meta/llama-3.1-405b-instruct": Provider.NVIDIA,
        "meta/llama-3.1-405b": Provider.NVIDIA,
        "mistralai/mixtral-8x7b-instruct-v0.1": Provider.NVIDIA,
        "google/gemma-2-27b-it": Provider.NVIDIA,
        # Hugging Face
        "meta-llama/Llama-3.1-70B-Instruct": Provider.HUGGINGFACE,
        "google/gemma-7b": Provider.HUGGINGFACE,
        # Cerebras
        "llama-3.3-70b": Provider.CEREBRAS,
        "llama-3.1-70b": Provider.CEREBRAS,
        "llama-3.1-8b": Provider.CEREBRAS,
        "llama-3-8b": Provider.CEREBRAS,
        # OpenCode
        "opencode-coder": Provider.OPENCODE,
    }
)

# Model substituted when a provider serves a request for a model it does not own.
DEFAULT_MODEL_BY_PROVIDER: Mapping[Provider, str] = MappingProxyType(
    {
        Provider.OPENROUTER: "gpt-4o-mini",
        Provider.GROQ: "llama-3.3-70b-versatile",
        Provider.TOGETHER: "meta-llama/Llama-3-70b-chat-hf",
        Provider.GEMINI: "gemini-1.5-flash",
        Provider.MISTRAL: "mistral-small-latest",
        Provider.COHERE: "command-light",
        Provider.NVIDIA: "nvidia/llama-3.1-mini",
        Provider.HUGGINGFACE: "meta-llama/Llama-3.1-70B-Instruct",
        Provider.CLOUDFLARE: "@cf/meta/llama-3.1-70b-instruct",
        Provider.OLLAMA: "llama-3.3-70b-versatile",
        Provider.OPENCODE: "opencode-coder",
        Provider.CEREBRAS: "llama-3.3-70b",
    }
)

# Evaluated in order; the first match wins.
_PREFIX_RULES: tuple[tuple[tuple[str, ...], Provider], ...] = (
    (("gpt-", "o1-", "claude"), Provider.OPENROUTER),
    (("llama-",), Provider.GROQ),
    (("mistral",), Provider.MISTRAL),
    (("command",), Provider.COHERE),
    (("gemini",), Provider.GEMINI),
    (("@cf/",), Provider.CLOUDFLARE),
)
_SUBSTRING_RULES: tuple[tuple[tuple[str, ...], Provider], ...] = (
    (("nvidia",), Provider.NVIDIA),
    (("huggingface", "/"), Provider.HUGGINGFACE),
)


def resolve_provider(model_id: str) -> Provider:
    """Return the provider that natively serves *model_id*.

    Exact catalog entries win; otherwise family prefixes and substrings are
    tried in a fixed order, and anything unrecognised goes to
    :data:`DEFAULT_PROVIDER`.  Never raises.
    """
    owner = MODEL_CATALOG.get(model_id)
    if owner is not None:
        return owner
    for prefixes, provider in _PREFIX_RULES:
        if model_id.startswith(prefixes):
            return provider
    for needles, provider in _SUBSTRING_RULES:
        if any(needle in model_id for needle in needles):
            return provider
    return DEFAULT_PROVIDER


def resolve_model_for_provider(
    requested_model: str,
    candidate: Provider,
    is_virtual: bool = False,
) -> str:
    """Pick the model id to send to *candidate*.

    The requested model is kept only when *candidate* is its native provider
    and the request is not for a virtual model; otherwise the candidate's
    default model is substituted.
    """
    if not is_virtual and resolve_provider(requested_model) == candidate:
        return requested_model
    return DEFAULT_MODEL_BY_PROVIDER[candidate]


def is_virtual_model(model_id: str, virtual_models: Collection[str]) -> bool:
    return model_id in virtual_models


def candidate_providers(
    requested_model: str,
    credentials: Mapping[Provider, str],
    priority: tuple[Provider, ...] = PROVIDER_PRIORITY,
) -> list[Provider]:
    """Order the providers to try for *requested_model*.

    The native provider always comes first, even when it has no credential or
    is absent from *priority*; the remaining credentialed providers follow in
    priority order without duplicates.
    """
    native = resolve_provider(requested_model)
    ordered = [native]
    for provider in available_providers(credentials, priority):
        if provider not in ordered:
            ordered.append(provider)
    return ordered


def list_models() -> list[tuple[str, Provider]]:
    """Return ``(model_id, owner)`` for the catalog plus unlisted provider defaults."""
    models = list(MODEL_CATALOG.items())
    for provider, model_id in DEFAULT_MODEL_BY_PROVIDER.items():
        if model_id not in MODEL_CATALOG:
            models.append((model_id, provider))
    return models
