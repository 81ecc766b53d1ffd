"""Provider routing, wire translation, and failover.

Public surface area for the providers package.  Import from here rather than
from the individual submodules so internal structure can change freely.

Example::

    import httpx

    from llmrelay.providers import (
        ChatCompletionRequest,
        ChatMessage,
        FailoverOrchestrator,
        Provider,
        Success,
    )

    async with httpx.AsyncClient() as client:
        relay = FailoverOrchestrator(client, {Provider.GROQ: "gsk-..."})
        result = await relay.complete(
            ChatCompletionRequest(
                model="llama-3.3-70b-versatile",
                messages=(ChatMessage(role="user", content="Hello"),),
            )
        )
        if isinstance(result, Success):
            print(result.payload)
"""

from llmrelay.providers.errors import (
    AllProvidersFailedError,
    CallerRequiredError,
    ClientInputError,
    ConfigurationError,
    FeatureRequiredError,
    QuotaExceededError,
    RateLimitExceededError,
    RelayError,
    ServiceUnavailableError,
    StreamNotSupportedError,
)
from llmrelay.providers.failover import (
    FailoverOrchestrator,
    classify_response,
    classify_transport_error,
)
from llmrelay.providers.models import (
    AttemptResult,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    Retryable,
    Skipped,
    Success,
    Terminal,
    Usage,
)
from llmrelay.providers.registry import (
    PROVIDER_PRIORITY,
    PROVIDERS,
    Provider,
    ProviderDescriptor,
    available_providers,
)
from llmrelay.providers.router import (
    DEFAULT_MODEL_BY_PROVIDER,
    MODEL_CATALOG,
    list_models,
    resolve_model_for_provider,
    resolve_provider,
)
from llmrelay.providers.transform import from_provider_wire, to_provider_wire

__all__ = [
    # Registry & routing
    "Provider",
    "ProviderDescriptor",
    "PROVIDERS",
    "PROVIDER_PRIORITY",
    "MODEL_CATALOG",
    "DEFAULT_MODEL_BY_PROVIDER",
    "available_providers",
    "resolve_provider",
    "resolve_model_for_provider",
    "list_models",
    # Models
    "ChatMessage",
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "Usage",
    "AttemptResult",
    "Success",
    "Skipped",
    "Retryable",
    "Terminal",
    # Transformation & failover
    "to_provider_wire",
    "from_provider_wire",
    "FailoverOrchestrator",
    "classify_response",
    "classify_transport_error",
    # Errors
    "RelayError",
    "ClientInputError",
    "StreamNotSupportedError",
    "FeatureRequiredError",
    "CallerRequiredError",
    "RateLimitExceededError",
    "QuotaExceededError",
    "ConfigurationError",
    "AllProvidersFailedError",
    "ServiceUnavailableError",
]
