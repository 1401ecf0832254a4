"""Tests for completion_gateway.config module."""

import textwrap

import pytest

from completion_gateway.config import build_gateway, load_config, parse_config
from completion_gateway.errors import ConfigError
from completion_gateway.providers import MockProvider, OpenAIProvider, VertexAIProvider
from completion_gateway.routing import ModelFamilyStrategy, PriorityStrategy


FULL_CONFIG = """
gateway:
  stall_timeout: 20
  queue_when_rate_limited: true
  max_queue_wait: 5
  default_attribution_key: platform
routing: priority
tokenizer:
  size: 2
  mode: thread
  task_timeout: 10
providers:
  - name: openai
    type: openai
    api_key_env: TEST_OPENAI_KEY
    models: [gpt-4o, gpt-4o-mini]
    priority: 2
  - name: vertex
    type: vertexai
    options:
      project: my-project
      location: europe-west4
  - name: local
    type: mock
"""


@pytest.fixture
def write_config(tmp_path):
    def write(content: str):
        path = tmp_path / "gateway.yaml"
        path.write_text(textwrap.dedent(content), encoding="utf-8")
        return path
    return write


class TestLoadConfig:
    def test_full(self, write_config):
        config = load_config(write_config(FULL_CONFIG))

        assert config.gateway.stall_timeout == 20
        assert config.gateway.queue_when_rate_limited is True
        assert config.gateway.default_attribution_key == "platform"
        assert config.gateway.tokenizer.size == 2
        assert config.gateway.tokenizer.mode == "thread"
        assert config.routing == "priority"
        assert [p.name for p in config.providers] == ["openai", "vertex", "local"]
        assert config.providers[0].models == ["gpt-4o", "gpt-4o-mini"]
        assert config.providers[1].options["location"] == "europe-west4"

    def test_minimal(self, write_config):
        config = load_config(write_config("providers:\n  - name: openai\n"))
        assert config.routing == "model_family"
        assert config.gateway.stall_timeout == 30.0
        assert config.gateway.tokenizer is None
        assert config.providers[0].type == "openai"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_empty_file(self, write_config):
        with pytest.raises(ConfigError, match="empty"):
            load_config(write_config(""))

    def test_invalid_yaml(self, write_config):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(write_config("providers: [unclosed\n"))

    def test_to_dict(self, write_config):
        d = load_config(write_config(FULL_CONFIG)).to_dict()
        assert d["routing"] == "priority"
        assert d["gateway"]["tokenizer"]["size"] == 2
        assert len(d["providers"]) == 3


class TestParseConfig:
    @pytest.mark.parametrize("raw,message", [
        ({"gatway": {}}, "Unknown keys"),
        ({"gateway": {"stall_timeot": 1}}, "Unknown keys in 'gateway'"),
        ({"gateway": {"tokenizer": {"size": 1}}}, "Unknown keys in 'gateway'"),
        ({"tokenizer": {"workers": 2}}, "Unknown keys in 'tokenizer'"),
        ({"tokenizer": {"mode": "fiber"}}, "Invalid 'tokenizer'"),
        ({"gateway": {"stall_timeout": 0}}, "Invalid 'gateway'"),
        ({"gateway": []}, "must be a mapping"),
        ({"routing": "random"}, "Unknown routing strategy"),
        ({"providers": {"name": "openai"}}, "must be a list"),
        ({"providers": [{"type": "openai"}]}, "Missing required 'name'"),
        ({"providers": [{"name": "x", "type": "pigeon"}]}, "Unknown provider type"),
        ({"providers": [{"name": "x", "apikey": "k"}]}, "Unknown keys in 'providers\\[0\\]'"),
        ({"providers": [{"name": "x"}, {"name": "x"}]}, "Duplicate provider names"),
    ])
    def test_invalid(self, raw, message):
        with pytest.raises(ConfigError, match=message):
            parse_config(raw)


class TestBuildGateway:
    @pytest.mark.asyncio
    async def test_build(self, write_config, monkeypatch):
        monkeypatch.setenv("TEST_OPENAI_KEY", "sk-from-env")
        gateway = build_gateway(load_config(write_config(FULL_CONFIG)))

        openai, vertex, local = gateway.providers
        assert isinstance(openai, OpenAIProvider)
        assert openai.api_key == "sk-from-env"
        assert isinstance(vertex, VertexAIProvider)
        assert isinstance(local, MockProvider)
        assert isinstance(gateway.router.strategy, PriorityStrategy)
        assert gateway.config.stall_timeout == 20
        assert gateway.tokenizer_pool is not None
        assert gateway.tokenizer_pool.config.size == 2

        await gateway.aclose()

    def test_default_strategy_without_pool(self, write_config):
        gateway = build_gateway(load_config(write_config("providers:\n  - name: local\n    type: mock\n")))
        assert isinstance(gateway.router.strategy, ModelFamilyStrategy)
        assert gateway.tokenizer_pool is None
