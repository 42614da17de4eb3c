"""Tests for prometheus_agent.config."""

import json

import pytest

from prometheus_agent.config import PrometheusConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("PROMETHEUS_SANDBOX_BIN", "GOOGLE_API_KEY", "OPENAI_API_KEY",
                 "GROQ_API_KEY", "MISTRAL_API_KEY", "JINA_API_KEY"):
        monkeypatch.delenv(name, raising=False)


class TestLoad:

    def test_defaults_without_file(self, tmp_path):
        cfg = PrometheusConfig.load(tmp_path / "config.json")
        assert cfg.sandbox.default_image == "ubuntu:latest"
        assert cfg.models.retry_budget == 3
        assert cfg.memory.keep_first == 2
        assert cfg.memory.keep_last == 3
        assert cfg.orchestrator.max_iterations == 15
        assert cfg.orchestrator.exhausted_policy == "complete"
        assert cfg.tools.search_provider == "mock"

    def test_file_sections(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "orchestrator": {"max_iterations": 20},
            "models": {"default_provider": "groq", "api_keys": {"groq": "from-file"}},
        }))
        cfg = PrometheusConfig.load(path)
        assert cfg.orchestrator.max_iterations == 20
        assert cfg.models.default_provider == "groq"
        assert cfg.models.api_keys == {}

    def test_unknown_policy_in_file_falls_back(self, tmp_path, caplog):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"orchestrator": {"exhausted_policy": "failed"}}))
        cfg = PrometheusConfig.load(path)
        assert cfg.orchestrator.exhausted_policy == "complete"
        assert "Unknown orchestrator.exhausted_policy 'failed'" in caplog.text

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PROMETHEUS_SANDBOX_BIN", "podman")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("JINA_API_KEY", "jina-test")
        cfg = PrometheusConfig.load(tmp_path / "config.json")
        assert cfg.sandbox.engine_bin == "podman"
        assert cfg.models.api_keys == {"openai": "sk-test"}
        assert cfg.tools.search_api_key == "jina-test"


class TestSave:

    def test_credentials_never_written(self, tmp_path):
        path = tmp_path / "config.json"
        cfg = PrometheusConfig()
        cfg.models.api_keys["openai"] = "sk-secret"
        cfg.tools.search_api_key = "jina-secret"
        cfg.save(path)

        text = path.read_text()
        assert "sk-secret" not in text
        assert "jina-secret" not in text
        assert PrometheusConfig.load(path).models.api_keys == {}

    def test_roundtrip(self, tmp_path):
        path = tmp_path / "config.json"
        cfg = PrometheusConfig()
        cfg.memory.max_turns = 30
        cfg.save(path)
        assert PrometheusConfig.load(path).memory.max_turns == 30


class TestSetValue:

    def test_coerces_types(self):
        cfg = PrometheusConfig()
        cfg.set_value("orchestrator.max_iterations", "20")
        cfg.set_value("models.default_temperature", "0.2")
        cfg.set_value("sandbox.engine_bin", "podman")
        assert cfg.orchestrator.max_iterations == 20
        assert cfg.models.default_temperature == 0.2
        assert cfg.sandbox.engine_bin == "podman"

    @pytest.mark.parametrize("key", ["nope.key", "sandbox", "sandbox.nope", "models.api_keys"])
    def test_unknown_keys(self, key):
        with pytest.raises(KeyError):
            PrometheusConfig().set_value(key, "x")

    def test_exhausted_policy(self):
        cfg = PrometheusConfig()
        cfg.set_value("orchestrator.exhausted_policy", "fail")
        assert cfg.orchestrator.exhausted_policy == "fail"

    def test_unknown_exhausted_policy(self):
        cfg = PrometheusConfig()
        with pytest.raises(ValueError, match="complete, fail"):
            cfg.set_value("orchestrator.exhausted_policy", "failed")
        assert cfg.orchestrator.exhausted_policy == "complete"

    def test_bad_number(self):
        with pytest.raises(ValueError):
            PrometheusConfig().set_value("memory.max_turns", "lots")
