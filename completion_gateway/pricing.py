"""
Model pricing.

Short names group model versions that share a price; costs are dollars
per 1K tokens.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .types import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """Per-1K-token pricing for a model group."""
    prompt: float
    completion: float


SHORT_NAME: Dict[str, str] = {
    "gpt-3.5-turbo": "gpt-3.5",
    "gpt-3.5-turbo-0125": "gpt-3.5",
    "gpt-3.5-turbo-1106": "gpt-3.5",
    "gpt-3.5-turbo-16k": "gpt-3.5",
    "gpt-4": "gpt-4",
    "gpt-4-0314": "gpt-4",
    "gpt-4-0613": "gpt-4",
    "gpt-4-1106-preview": "gpt-4t",
    "gpt-4-turbo-preview": "gpt-4t",
    "gpt-4-0125-preview": "gpt-4t",
    "gpt-4-turbo": "gpt-4t",
    "gpt-4-vision-preview": "gpt-4v",
    "gpt-4-32k": "gpt-4-32k",
    "gpt-4o": "gpt-4o",
    "gpt-4o-2024-08-06": "gpt-4o",
    "gpt-4o-mini": "gpt-4o-mini",
    "claude-3-haiku-20240307": "c3-haiku",
    "claude-3-sonnet-20240229": "c3-sonnet",
    "claude-3-opus-20240229": "c3-opus",
    "gemini-pro": "gemini",
    "gemini-1.0-pro": "gemini",
    "gemini-1.5-pro": "gemini-1.5",
    "gemini-1.5-flash": "gemini-1.5",
    "o1": "o1",
    "o1-preview": "o1",
    "o1-mini": "o1-mini",
    "o3": "o3",
    "o3-mini": "o3-mini",
    "mistral-small": "mistral-s",
    "mistral-large": "mistral-l",
    "command-r": "command-r",
    "command-r-plus": "command-r+",
    "meta/llama3-8b-instruct": "llama3-8b",
    "meta/llama3-70b-instruct": "llama3-70b",
}

COST_TABLE: Dict[str, ModelPricing] = {
    "gpt-3.5": ModelPricing(prompt=0.0015, completion=0.002),
    "gpt-4": ModelPricing(prompt=0.03, completion=0.06),
    "gpt-4t": ModelPricing(prompt=0.01, completion=0.03),
    "gpt-4v": ModelPricing(prompt=0.01, completion=0.03),
    "gpt-4-32k": ModelPricing(prompt=0.06, completion=0.12),
    "gpt-4o": ModelPricing(prompt=0.0025, completion=0.01),
    "gpt-4o-mini": ModelPricing(prompt=0.00015, completion=0.0006),
    "c3-haiku": ModelPricing(prompt=0.00025, completion=0.00125),
    "c3-sonnet": ModelPricing(prompt=0.003, completion=0.015),
    "c3-opus": ModelPricing(prompt=0.015, completion=0.075),
    "gemini": ModelPricing(prompt=0.00025, completion=0.0005),
    "gemini-1.5": ModelPricing(prompt=0.0007, completion=0.0014),
    "o1": ModelPricing(prompt=0.015, completion=0.06),
    "o1-mini": ModelPricing(prompt=0.003, completion=0.012),
    "o3": ModelPricing(prompt=0.01, completion=0.04),
    "o3-mini": ModelPricing(prompt=0.0011, completion=0.0044),
    "mistral-s": ModelPricing(prompt=0.003, completion=0.003),
    "mistral-l": ModelPricing(prompt=0.0175, completion=0.0175),
    "command-r": ModelPricing(prompt=0.0015, completion=0.0015),
    "command-r+": ModelPricing(prompt=0.005, completion=0.005),
    "llama3-8b": ModelPricing(prompt=0.0001, completion=0.0001),
    "llama3-70b": ModelPricing(prompt=0.0009, completion=0.0009),
}


def short_name(model: str) -> str:
    return SHORT_NAME.get(model, model)


def get_pricing(model: str) -> Optional[ModelPricing]:
    """Look up pricing by model id or short name."""
    return COST_TABLE.get(short_name(model))


def calculate_cost(model: str, usage: TokenUsage) -> float:
    """
    Calculate the dollar cost of a request.

    Unknown models cost 0.0.
    """
    pricing = get_pricing(model)
    if pricing is None:
        logger.debug("No pricing for model %s, cost recorded as 0", model)
        return 0.0
    return (
        usage.prompt_tokens * pricing.prompt
        + usage.completion_tokens * pricing.completion
    ) / 1000
