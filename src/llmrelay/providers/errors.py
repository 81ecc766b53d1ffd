"""Exception hierarchy for the relay.

Every failure the relay surfaces to a caller is one of these typed exceptions.
Each carries the HTTP status and the OpenAI-style ``error.type`` it renders as,
so the HTTP layer maps them in one place instead of inspecting status codes at
every call site.
"""


class RelayError(Exception):
    """Base exception for all relay errors.

    Attributes:
        message: Human-readable error description.
        error_type: Value of ``error.type`` in the response body.
        status_code: HTTP status used when the error reaches the caller.
    """

    error_type: str = "server_error"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_body(self) -> dict[str, dict[str, str]]:
        return {"error": {"message": self.message, "type": self.error_type}}


class ClientInputError(RelayError):
    """The caller sent something the relay will not forward (HTTP 400)."""

    error_type = "invalid_request_error"
    status_code = 400


class StreamNotSupportedError(ClientInputError):
    """Streaming was requested against a provider that cannot stream."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"Streaming is not supported by provider '{provider}'")
        self.provider = provider


class FeatureRequiredError(ClientInputError):
    """A metered request did not carry a recognised feature tag."""

    error_type = "feature_required"


class CallerRequiredError(RelayError):
    """Usage metering is enabled but no caller identity was supplied (HTTP 401)."""

    error_type = "authentication_error"
    status_code = 401


class RateLimitExceededError(RelayError):
    """The per-client request window is exhausted (HTTP 429).

    Attributes:
        headers: ``X-RateLimit-*`` and ``Retry-After`` headers for the response.
    """

    error_type = "rate_limit_error"
    status_code = 429

    def __init__(self, headers: dict[str, str]) -> None:
        super().__init__("Rate limit exceeded. Please try again later.")
        self.headers = headers


class QuotaExceededError(RelayError):
    """The caller used up today's free allowance for a feature (HTTP 429)."""

    error_type = "limit_reached"
    status_code = 429

    def __init__(self, feature: str, limit: int, upgrade_url: str) -> None:
        super().__init__(f"Daily limit of {limit} requests reached for '{feature}'")
        self.feature = feature
        self.limit = limit
        self.upgrade_url = upgrade_url

    def to_body(self) -> dict[str, dict[str, str]]:
        body = super().to_body()
        body["error"]["upgrade_url"] = self.upgrade_url
        return body


class ConfigurationError(RelayError):
    """No provider credentials are configured (HTTP 500)."""


class AllProvidersFailedError(RelayError):
    """Every candidate provider failed with a retryable error (HTTP 500).

    Attributes:
        reasons: One entry per skipped or failed candidate, in attempt order.
        last_error: The last retryable failure, falling back to the last skip
            reason when no candidate was actually contacted.
    """

    def __init__(self, reasons: list[str], last_error: str | None = None) -> None:
        self.reasons = reasons
        self.last_error = last_error or (reasons[-1] if reasons else "Unknown error")
        super().__init__(f"All providers failed. Last error: {self.last_error}")


class ServiceUnavailableError(RelayError):
    """A relay component has not been initialised yet (HTTP 503)."""

    error_type = "service_unavailable"
    status_code = 503
