"""
Exception hierarchy for the completion gateway.

Every error raised by the gateway derives from GatewayError so callers can
catch the whole family in one place.
"""

from typing import Optional

from .types import TokenUsage


class GatewayError(Exception):
    """Base exception for gateway errors."""
    pass


class ConfigError(GatewayError):
    """Raised when a configuration file is invalid."""
    pass


class NoProviderError(GatewayError):
    """Raised when no provider is available for a request."""
    pass


class RateLimitExceeded(GatewayError):
    """Raised when a request is rejected before dispatch for rate-limit reasons.

    Recoverable: the caller may retry after ``retry_after`` seconds.
    """

    def __init__(self, provider: str, model: str, retry_after: float):
        self.provider = provider
        self.model = model
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {provider}/{model}. "
            f"Retry in {retry_after:.2f} seconds."
        )


class TokenizerError(GatewayError):
    """Base exception for token counting failures."""
    pass


class EncodingLoadError(TokenizerError):
    """Raised when a tokenizer encoding cannot be loaded or used for a model."""

    def __init__(self, model: str, reason: str):
        self.model = model
        self.reason = reason
        super().__init__(f"Encoding unavailable for model {model}: {reason}")


class WorkerUnavailableError(TokenizerError):
    """Raised when no healthy tokenizer worker can serve a task."""
    pass


class ProviderError(GatewayError):
    """Error reported on a provider's completion stream.

    ``usage`` carries provider-reported token usage seen before the failure,
    if any; the gateway bills it as a partial entry.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        usage: Optional[TokenUsage] = None,
    ):
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.usage = usage
        prefix = f"[{provider}]"
        if status_code is not None:
            prefix = f"[{provider} {status_code}]"
        super().__init__(f"{prefix} {message}")


class ProviderTransportError(ProviderError):
    """Network or connection failure talking to a provider."""
    pass


class ProviderTimeoutError(ProviderTransportError):
    """The provider stream produced no chunk within the stall timeout."""
    pass


class ProviderSemanticError(ProviderError):
    """The provider rejected the request content."""
    pass
