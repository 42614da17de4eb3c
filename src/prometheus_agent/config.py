"""Prometheus configuration management."""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

PROMETHEUS_HOME = Path(os.environ.get("PROMETHEUS_HOME", Path.home() / ".prometheus"))
PROMETHEUS_DB = PROMETHEUS_HOME / "prometheus.db"
PROMETHEUS_CONFIG = PROMETHEUS_HOME / "config.json"
PROMETHEUS_LOGS = PROMETHEUS_HOME / "logs"

logger = logging.getLogger(__name__)

EXHAUSTED_POLICIES = ("complete", "fail")

# provider name -> environment variable holding its API key
PROVIDER_KEY_ENV = {
    "google": "GOOGLE_API_KEY",
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
    "mistral": "MISTRAL_API_KEY",
}


@dataclass
class SandboxConfig:
    """Sandbox engine defaults."""

    engine_bin: str = "docker"
    default_image: str = "ubuntu:latest"
    workspace_dir: str = "/app"
    exec_timeout: int = 300
    pull_timeout: int = 600
    output_cap: int = 10000


@dataclass
class ModelConfig:
    """Model dispatch defaults.

    API keys are read from the environment (see PROVIDER_KEY_ENV) and are
    never written back to config.json.
    """

    default_provider: str = "google"
    retry_budget: int = 3
    default_temperature: float = 0.7
    request_timeout: float = 120.0
    api_keys: dict[str, str] = field(default_factory=dict)


@dataclass
class MemoryConfig:
    """Sliding-window transcript settings."""

    max_turns: int = 50
    keep_first: int = 2
    keep_last: int = 3
    output_preview_chars: int = 500


@dataclass
class OrchestratorConfig:
    """Control loop settings."""

    max_iterations: int = 15
    exhausted_policy: str = "complete"  # complete | fail
    git_user_name: str = "Prometheus Agent"
    git_user_email: str = "agent@prometheus.local"
    worker_concurrency: int = 2


@dataclass
class ToolsConfig:
    """Tool catalog settings."""

    search_provider: str = "mock"  # mock | jina
    search_api_key: str = ""
    http_timeout: float = 30.0
    output_cap: int = 10000


_SECTIONS = ("sandbox", "models", "memory", "orchestrator", "tools")


@dataclass
class PrometheusConfig:
    """Top-level configuration."""

    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    models: ModelConfig = field(default_factory=ModelConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "PrometheusConfig":
        """Load config from disk or return defaults.

        Env vars override file config for the engine binary and credentials.
        """
        config = cls()
        config_path = path or PROMETHEUS_CONFIG
        if config_path.exists():
            data = json.loads(config_path.read_text())
            for section in _SECTIONS:
                if section in data:
                    target = getattr(config, section)
                    for k, v in data[section].items():
                        if k == "api_keys":
                            continue
                        setattr(target, k, v)

        policy = config.orchestrator.exhausted_policy
        if policy not in EXHAUSTED_POLICIES:
            logger.warning(f"Unknown orchestrator.exhausted_policy '{policy}', using 'complete'")
            config.orchestrator.exhausted_policy = "complete"

        engine_bin = os.environ.get("PROMETHEUS_SANDBOX_BIN")
        if engine_bin:
            config.sandbox.engine_bin = engine_bin

        for provider, env_name in PROVIDER_KEY_ENV.items():
            value = os.environ.get(env_name)
            if value:
                config.models.api_keys[provider] = value

        jina_key = os.environ.get("JINA_API_KEY")
        if jina_key:
            config.tools.search_api_key = jina_key

        return config

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk, without credentials."""
        config_path = path or PROMETHEUS_CONFIG
        config_path.parent.mkdir(parents=True, exist_ok=True)
        data = {section: asdict(getattr(self, section)) for section in _SECTIONS}
        data["models"].pop("api_keys", None)
        data["tools"].pop("search_api_key", None)
        config_path.write_text(json.dumps(data, indent=2))

    def set_value(self, dotted_key: str, raw_value: str) -> None:
        """Set `section.key` from a CLI string, coercing to the field's current type."""
        section, _, key = dotted_key.partition(".")
        if section not in _SECTIONS or not key:
            raise KeyError(f"Unknown config key: {dotted_key}")
        target = getattr(self, section)
        if not hasattr(target, key) or key in ("api_keys", "search_api_key"):
            raise KeyError(f"Unknown config key: {dotted_key}")
        current = getattr(target, key)
        if isinstance(current, bool):
            value: object = raw_value.lower() in ("1", "true", "yes", "on")
        elif isinstance(current, int):
            value = int(raw_value)
        elif isinstance(current, float):
            value = float(raw_value)
        else:
            value = raw_value
        if dotted_key == "orchestrator.exhausted_policy" and value not in EXHAUSTED_POLICIES:
            raise ValueError(f"exhausted_policy must be one of {', '.join(EXHAUSTED_POLICIES)}")
        setattr(target, key, value)


def ensure_prometheus_home() -> None:
    """Create Prometheus home directory structure."""
    PROMETHEUS_HOME.mkdir(parents=True, exist_ok=True)
    PROMETHEUS_LOGS.mkdir(parents=True, exist_ok=True)
