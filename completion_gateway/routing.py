"""
Routing strategies for completion requests.

Resolves the provider for a request: an explicit override wins, otherwise
the configured strategy picks among healthy providers for the model.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from .errors import NoProviderError
from .providers import Provider, ProviderStatus
from .types import CompletionRequest

logger = logging.getLogger(__name__)

# Checked in order; the first matching prefix decides the family
MODEL_FAMILY_PREFIXES: Tuple[Tuple[str, str], ...] = (
    ("gemini-", "vertexai"),
    ("meta/llama3-", "vertexai"),
    ("claude-", "anthropic"),
    ("gpt-", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("deepseek-r1-distill-", "groq"),
    ("llama-3.3-70b-", "groq"),
    ("llama-3.3-70b", "cerebras"),
    ("command-", "cohere"),
    ("c4ai-", "cohere"),
    ("deepseek-", "deepseek"),
)


def predict_provider_family(model: str) -> str:
    """Infer the provider family from a model name ("local" if unknown)."""
    for prefix, family in MODEL_FAMILY_PREFIXES:
        if model.startswith(prefix):
            return family
    return "local"


def _healthy(providers: List[Provider], model: str) -> List[Provider]:
    return [
        p for p in providers
        if p.status == ProviderStatus.HEALTHY and p.supports_model(model)
    ]


class RoutingStrategy(ABC):
    """Base class for routing strategies."""

    @abstractmethod
    def select(
        self,
        providers: List[Provider],
        model: str,
    ) -> Optional[Provider]:
        """
        Select a provider for the request.

        Args:
            providers: Available providers
            model: Model to use

        Returns:
            Selected provider or None if no suitable provider found
        """
        pass


class ModelFamilyStrategy(RoutingStrategy):
    """
    First healthy provider of the model's family.

    Falls back to the first healthy provider that supports the model when
    no provider of the predicted family is available.
    """

    def select(
        self,
        providers: List[Provider],
        model: str,
    ) -> Optional[Provider]:
        healthy = _healthy(providers, model)
        if not healthy:
            return None

        family = predict_provider_family(model)
        for provider in healthy:
            if provider.provider_family == family:
                return provider
        return healthy[0]


class RoundRobinStrategy(RoutingStrategy):
    """Round-robin selection across providers."""

    def __init__(self):
        self._index = 0

    def select(
        self,
        providers: List[Provider],
        model: str,
    ) -> Optional[Provider]:
        healthy = _healthy(providers, model)

        if not healthy:
            return None

        provider = healthy[self._index % len(healthy)]
        self._index += 1
        return provider


class PriorityStrategy(RoutingStrategy):
    """Select provider by priority."""

    def select(
        self,
        providers: List[Provider],
        model: str,
    ) -> Optional[Provider]:
        healthy = _healthy(providers, model)

        if not healthy:
            return None

        return max(healthy, key=lambda p: p.config.priority)


class Router:
    """
    Main router for directing requests to providers.
    """

    def __init__(
        self,
        providers: List[Provider],
        strategy: Optional[RoutingStrategy] = None,
    ):
        self.providers = list(providers)  # Make a copy
        self.strategy = strategy or ModelFamilyStrategy()

    def add_provider(self, provider: Provider) -> None:
        """Add a provider."""
        if self.get_provider(provider.name) is not None:
            raise ValueError(f"Provider {provider.name} already registered")
        self.providers.append(provider)

    def remove_provider(self, name: str) -> bool:
        """Remove a provider by name."""
        for i, p in enumerate(self.providers):
            if p.name == name:
                self.providers.pop(i)
                return True
        return False

    def get_provider(self, name: str) -> Optional[Provider]:
        for p in self.providers:
            if p.name == name:
                return p
        return None

    def select_provider(self, model: str) -> Optional[Provider]:
        """Select a provider using the configured strategy."""
        return self.strategy.select(self.providers, model)

    def resolve(self, request: CompletionRequest) -> Provider:
        """
        Resolve the provider for a request.

        Raises:
            NoProviderError: If the override names an unknown provider or
                no healthy provider supports the model
        """
        if request.provider_override:
            provider = self.get_provider(request.provider_override)
            if provider is None:
                raise NoProviderError(f"Unknown provider: {request.provider_override}")
            return provider

        provider = self.select_provider(request.model)
        if provider is None:
            raise NoProviderError(f"No healthy provider available for model {request.model}")
        logger.debug("Routed %s to provider %s", request.model, provider.name)
        return provider

    def get_healthy_providers(self) -> List[Provider]:
        """Get all healthy providers."""
        return [p for p in self.providers if p.status == ProviderStatus.HEALTHY]

    def get_provider_metrics(self) -> dict:
        """Get metrics for all providers."""
        return {p.name: p.metrics.to_dict() for p in self.providers}
