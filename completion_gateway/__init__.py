"""
Completion Gateway - Streaming multi-provider LLM completions.

Routes chat completion requests to LLM providers behind one streaming
contract, tracks provider-reported rate limits, counts tokens on a pool of
isolated workers, and records per-request cost in a ledger.
"""

from .types import (
    Message,
    CompletionRequest,
    Delta,
    CompletionChunk,
    TokenUsage,
)
from .errors import (
    GatewayError,
    ConfigError,
    NoProviderError,
    RateLimitExceeded,
    TokenizerError,
    EncodingLoadError,
    WorkerUnavailableError,
    ProviderError,
    ProviderTransportError,
    ProviderTimeoutError,
    ProviderSemanticError,
)
from .pricing import (
    ModelPricing,
    calculate_cost,
)
from .tokenizer_pool import (
    TokenizerPool,
    TokenizerPoolConfig,
)
from .rate_limiter import (
    RateLimit,
    RateLimitState,
    RateLimitTracker,
)
from .providers import (
    Provider,
    ProviderConfig,
    ProviderStatus,
    OpenAIProvider,
    VertexAIProvider,
    MockProvider,
    create_provider,
)
from .routing import (
    Router,
    RoutingStrategy,
    ModelFamilyStrategy,
    RoundRobinStrategy,
    PriorityStrategy,
    predict_provider_family,
)
from .ledger import (
    CostEntry,
    CostLedger,
    CostTotals,
)
from .stream import CompletionStream
from .gateway import (
    Gateway,
    GatewayConfig,
    Response,
    create_gateway,
)
from .config import (
    LoadedConfig,
    load_config,
    build_gateway,
)

__version__ = "0.1.0"

__all__ = [
    # Types
    "Message",
    "CompletionRequest",
    "Delta",
    "CompletionChunk",
    "TokenUsage",
    # Errors
    "GatewayError",
    "ConfigError",
    "NoProviderError",
    "RateLimitExceeded",
    "TokenizerError",
    "EncodingLoadError",
    "WorkerUnavailableError",
    "ProviderError",
    "ProviderTransportError",
    "ProviderTimeoutError",
    "ProviderSemanticError",
    # Pricing
    "ModelPricing",
    "calculate_cost",
    # Token counting
    "TokenizerPool",
    "TokenizerPoolConfig",
    # Rate limiting
    "RateLimit",
    "RateLimitState",
    "RateLimitTracker",
    # Providers
    "Provider",
    "ProviderConfig",
    "ProviderStatus",
    "OpenAIProvider",
    "VertexAIProvider",
    "MockProvider",
    "create_provider",
    # Routing
    "Router",
    "RoutingStrategy",
    "ModelFamilyStrategy",
    "RoundRobinStrategy",
    "PriorityStrategy",
    "predict_provider_family",
    # Cost accounting
    "CostEntry",
    "CostLedger",
    "CostTotals",
    # Gateway
    "CompletionStream",
    "Gateway",
    "GatewayConfig",
    "Response",
    "create_gateway",
    # Configuration
    "LoadedConfig",
    "load_config",
    "build_gateway",
]
