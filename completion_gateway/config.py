"""
Configuration file loading.

Reads a YAML file describing the gateway, its tokenizer pool and its
providers. Validation is strict: unknown keys are errors rather than being
ignored. Credentials are never read from the file directly when
``api_key_env`` names an environment variable instead.

Example::

    gateway:
      stall_timeout: 20
      queue_when_rate_limited: true
    routing: model_family
    tokenizer:
      size: 2
      mode: process
    providers:
      - name: openai
        type: openai
        api_key_env: OPENAI_API_KEY
      - name: vertex
        type: vertexai
        options:
          project: my-project
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

import yaml

from .errors import ConfigError
from .gateway import Gateway, GatewayConfig
from .providers import PROVIDER_TYPES, ProviderConfig, create_provider
from .routing import ModelFamilyStrategy, PriorityStrategy, RoundRobinStrategy, RoutingStrategy
from .tokenizer_pool import TokenizerPool, TokenizerPoolConfig

ROUTING_STRATEGIES: Dict[str, Type[RoutingStrategy]] = {
    "model_family": ModelFamilyStrategy,
    "round_robin": RoundRobinStrategy,
    "priority": PriorityStrategy,
}

_TOP_LEVEL_KEYS = {"gateway", "routing", "tokenizer", "providers"}


@dataclass
class LoadedConfig:
    """Validated contents of a configuration file."""
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    providers: List[ProviderConfig] = field(default_factory=list)
    routing: str = "model_family"

    def to_dict(self) -> dict:
        return {
            "gateway": self.gateway.to_dict(),
            "providers": [p.to_dict() for p in self.providers],
            "routing": self.routing,
        }


def _field_names(cls: type, exclude: tuple = ()) -> set:
    return {f.name for f in fields(cls) if f.name not in exclude}


def _section(data: Any, path: str, allowed: set) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"'{path}' must be a mapping")
    unknown = set(data) - allowed
    if unknown:
        raise ConfigError(f"Unknown keys in '{path}': {sorted(unknown)}")
    return data


def _build(cls: type, data: Dict[str, Any], path: str):
    try:
        return cls(**data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid '{path}' configuration: {e}") from e


def _parse_provider(data: Any, index: int) -> ProviderConfig:
    path = f"providers[{index}]"
    data = _section(data, path, _field_names(ProviderConfig))
    if not data.get("name"):
        raise ConfigError(f"Missing required 'name' in '{path}'")
    provider_type = data.get("type", "openai")
    if provider_type not in PROVIDER_TYPES:
        raise ConfigError(
            f"Unknown provider type '{provider_type}' in '{path}' "
            f"(expected one of {sorted(PROVIDER_TYPES)})"
        )
    return _build(ProviderConfig, data, path)


def parse_config(raw: Any) -> LoadedConfig:
    """
    Validate an already-decoded configuration mapping.

    Raises:
        ConfigError: If the configuration is invalid
    """
    raw = _section(raw, "<root>", _TOP_LEVEL_KEYS)

    gateway_data = dict(_section(
        raw.get("gateway"), "gateway", _field_names(GatewayConfig, exclude=("tokenizer",)),
    ))
    if raw.get("tokenizer") is not None:
        tokenizer_data = _section(raw["tokenizer"], "tokenizer", _field_names(TokenizerPoolConfig))
        gateway_data["tokenizer"] = _build(TokenizerPoolConfig, tokenizer_data, "tokenizer")
    gateway = _build(GatewayConfig, gateway_data, "gateway")

    routing = raw.get("routing", "model_family")
    if routing not in ROUTING_STRATEGIES:
        raise ConfigError(
            f"Unknown routing strategy '{routing}' (expected one of {sorted(ROUTING_STRATEGIES)})"
        )

    providers_data = raw.get("providers") or []
    if not isinstance(providers_data, list):
        raise ConfigError("'providers' must be a list")
    providers = [_parse_provider(p, i) for i, p in enumerate(providers_data)]

    names = [p.name for p in providers]
    duplicates = {n for n in names if names.count(n) > 1}
    if duplicates:
        raise ConfigError(f"Duplicate provider names: {sorted(duplicates)}")

    return LoadedConfig(gateway=gateway, providers=providers, routing=routing)


def load_config(path: Union[str, Path]) -> LoadedConfig:
    """
    Load and validate a gateway configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Validated LoadedConfig

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or its
            contents are invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e

    if not raw:
        raise ConfigError(f"Config file is empty: {path}")

    return parse_config(raw)


def build_gateway(config: LoadedConfig, tokenizer_pool: Optional[TokenizerPool] = None) -> Gateway:
    """
    Construct a Gateway from a loaded configuration.

    A tokenizer pool is created when the configuration has a ``tokenizer``
    section and none is passed in; start it with ``async with gateway``.
    """
    if tokenizer_pool is None and config.gateway.tokenizer is not None:
        tokenizer_pool = TokenizerPool(config.gateway.tokenizer)

    return Gateway(
        providers=[create_provider(p) for p in config.providers],
        config=config.gateway,
        strategy=ROUTING_STRATEGIES[config.routing](),
        tokenizer_pool=tokenizer_pool,
    )
