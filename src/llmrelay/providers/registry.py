"""Static table of upstream providers.

Every provider the relay can talk to is a member of the closed :class:`Provider`
enum and has exactly one immutable :class:`ProviderDescriptor` in
:data:`PROVIDERS`.  Nothing in this module reads the environment: credentials
are passed in as a ``{Provider: api_key}`` mapping built by
:meth:`llmrelay.config.Settings.provider_credentials`.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType

_ACCOUNT_PLACEHOLDER = "{account_id}"


class Provider(StrEnum):
    OPENROUTER = "openrouter"
    GROQ = "groq"
    TOGETHER = "together"
    GEMINI = "gemini"
    MISTRAL = "mistral"
    COHERE = "cohere"
    NVIDIA = "nvidia"
    HUGGINGFACE = "huggingface"
    CLOUDFLARE = "cloudflare"
    OLLAMA = "ollama"
    OPENCODE = "opencode"
    CEREBRAS = "cerebras"


class WireFormat(StrEnum):
    """Request/response shape spoken by a provider."""

    OPENAI = "openai"
    COHERE_CHAT = "cohere_chat"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Connection details for one upstream provider.

    Attributes:
        name: Provider identifier.
        base_url: Chat endpoint.  May contain an ``{account_id}`` placeholder
            that is substituted from configuration.
        credential_env_key: Environment variable holding the API key.
        auth_header_name: Header carrying the credential.
        auth_header_prefix: Prefix prepended to the credential (e.g. ``"Bearer "``).
        supports_streaming: Whether OpenAI-style SSE streaming is available.
        wire_format: Request/response shape the provider expects.
        is_local: Provider runs on the relay host (only used when local
            providers are explicitly allowed).
    """

    name: Provider
    base_url: str
    credential_env_key: str
    auth_header_name: str = "Authorization"
    auth_header_prefix: str = "Bearer "
    supports_streaming: bool = True
    wire_format: WireFormat = WireFormat.OPENAI
    is_local: bool = False


PROVIDERS: Mapping[Provider, ProviderDescriptor] = MappingProxyType(
    {
        Provider.OPENROUTER: ProviderDescriptor(
            name=Provider.OPENROUTER,
            base_url="https://openrouter.ai/api/v1/chat/completions",
            credential_env_key="OPENROUTER_API_KEY",
        ),
        Provider.GROQ: ProviderDescriptor(
            name=Provider.GROQ,
            base_url="https://api.groq.com/openai/v1/chat/completions",
            credential_env_key="GROQ_API_KEY",
        ),
        Provider.TOGETHER: ProviderDescriptor(
            name=Provider.TOGETHER,
            base_url="https://api.together.xyz/v1/chat/completions",
            credential_env_key="TOGETHER_API_KEY",
        ),
        Provider.GEMINI: ProviderDescriptor(
            name=Provider.GEMINI,
            base_url="https://generativelanguage.googleapis.com/v1beta/openai/chat/completions",
            credential_env_key="GEMINI_API_KEY",
            auth_header_name="x-goog-api-key",
            auth_header_prefix="",
        ),
        Provider.MISTRAL: ProviderDescriptor(
            name=Provider.MISTRAL,
            base_url="https://api.mistral.ai/v1/chat/completions",
            credential_env_key="MISTRAL_API_KEY",
        ),
        Provider.COHERE: ProviderDescriptor(
            name=Provider.COHERE,
            base_url="https://api.cohere.ai/v1/chat",
            credential_env_key="COHERE_API_KEY",
            supports_streaming=False,
            wire_format=WireFormat.COHERE_CHAT,
        ),
        Provider.NVIDIA: ProviderDescriptor(
            name=Provider.NVIDIA,
            base_url="https://integrate.api.nvidia.com/v1/chat/completions",
            credential_env_key="NVIDIA_API_KEY",
        ),
        Provider.HUGGINGFACE: ProviderDescriptor(
            name=Provider.HUGGINGFACE,
            base_url="https://router.huggingface.co/v1/chat/completions",
            credential_env_key="HUGGINGFACE_API_KEY",
        ),
        Provider.CLOUDFLARE: ProviderDescriptor(
            name=Provider.CLOUDFLARE,
            base_url=(
                "https://api.cloudflare.com/client/v4/accounts/"
                f"{_ACCOUNT_PLACEHOLDER}/ai/v1/chat/completions"
            ),
            credential_env_key="CLOUDFLARE_API_KEY",
        ),
        Provider.OLLAMA: ProviderDescriptor(
            name=Provider.OLLAMA,
            base_url="http://localhost:11434/v1/chat/completions",
            credential_env_key="OLLAMA_API_KEY",
            is_local=True,
        ),
        Provider.OPENCODE: ProviderDescriptor(
            name=Provider.OPENCODE,
            base_url="https://opencode.dev/api/v1/chat/completions",
            credential_env_key="OPENCODE_API_KEY",
        ),
        Provider.CEREBRAS: ProviderDescriptor(
            name=Provider.CEREBRAS,
            base_url="https://api.cerebras.ai/v1/chat/completions",
            credential_env_key="CEREBRAS_API_KEY",
        ),
    }
)

# Failover order for candidates after the native provider.
PROVIDER_PRIORITY: tuple[Provider, ...] = (
    Provider.OPENROUTER,
    Provider.CEREBRAS,
    Provider.MISTRAL,
    Provider.HUGGINGFACE,
    Provider.GROQ,
    Provider.NVIDIA,
    Provider.COHERE,
    Provider.GEMINI,
    Provider.TOGETHER,
)


def get_credential(credentials: Mapping[Provider, str], provider: Provider) -> str | None:
    """Return the API key for *provider*, or ``None`` when absent or blank."""
    value = credentials.get(provider)
    if not value or not value.strip():
        return None
    return value


def available_providers(
    credentials: Mapping[Provider, str],
    priority: tuple[Provider, ...] = PROVIDER_PRIORITY,
) -> list[Provider]:
    """Filter *priority* down to providers with a usable credential, keeping order."""
    return [p for p in priority if get_credential(credentials, p) is not None]


def provider_url(provider: Provider, account_id: str | None = None) -> str | None:
    """Return the chat endpoint for *provider*.

    Returns ``None`` when the URL needs an account id that was not configured.
    """
    url = PROVIDERS[provider].base_url
    if _ACCOUNT_PLACEHOLDER in url:
        if not account_id:
            return None
        url = url.replace(_ACCOUNT_PLACEHOLDER, account_id)
    return url


def auth_headers(provider: Provider, credential: str) -> dict[str, str]:
    """Build the request headers carrying *credential* for *provider*."""
    descriptor = PROVIDERS[provider]
    return {
        "Content-Type": "application/json",
        descriptor.auth_header_name: f"{descriptor.auth_header_prefix}{credential}",
    }
