"""Shared test fixtures for the Prometheus test suite."""

import pytest

from prometheus_agent.config import PrometheusConfig
from prometheus_agent.events import ALL_PROJECTS, EventChannel
from prometheus_agent.model_router import ModelRouter
from prometheus_agent.models import LLMConfig
from prometheus_agent.orchestrator import TaskOrchestrator
from prometheus_agent.providers import ScriptedAdapter, ScriptedSession
from prometheus_agent.store import TaskStore

SANDBOX_ID = "sbx0123456789abcdef"


class FakeSandbox:
    """In-process stand-in for SandboxRuntime.

    `responses` maps a substring of the joined command to its output, or to
    an exception to raise.
    """

    def __init__(self):
        self.created: list[tuple[str | None, dict]] = []
        self.commands: list[tuple[str, list[str], str | None]] = []
        self.removed: list[str] = []
        self.responses: dict[str, object] = {}
        self.stdin: list[str | None] = []
        self.teardown_error: Exception | None = None

    async def create_and_start(self, image=None, env_vars=None):
        self.created.append((image, dict(env_vars or {})))
        return SANDBOX_ID

    async def execute(self, sandbox_id, command, working_dir=None, timeout=None, stdin=None):
        self.commands.append((sandbox_id, list(command), working_dir))
        self.stdin.append(stdin)
        joined = " ".join(command)
        for pattern, result in self.responses.items():
            if pattern in joined:
                if isinstance(result, Exception):
                    raise result
                return result
        return ""

    async def stop_and_remove(self, sandbox_id):
        self.removed.append(sandbox_id)
        if self.teardown_error is not None:
            raise self.teardown_error

    def joined_commands(self) -> list[str]:
        return [" ".join(cmd) for _, cmd, _ in self.commands]


class EventRecorder:
    """Collects every event published on a channel."""

    def __init__(self, channel: EventChannel):
        self.events: list[dict] = []
        channel.subscribe(ALL_PROJECTS, self.events.append)

    def of(self, name: str) -> list[dict]:
        return [e["payload"] for e in self.events if e["event"] == name]

    def statuses(self) -> list[str]:
        return [p["newStatus"] for p in self.of("taskStatusUpdate")]

    def messages(self) -> list[str]:
        return [p["message"] for p in self.of("agentLog")]


@pytest.fixture
def config():
    """Default configuration, never read from the user's home directory."""
    return PrometheusConfig()


@pytest.fixture
def store(tmp_path):
    """Provide a TaskStore backed by a temporary database."""
    return TaskStore(db_path=tmp_path / "test_prometheus.db")


@pytest.fixture
def events():
    return EventChannel()


@pytest.fixture
def recorder(events):
    return EventRecorder(events)


@pytest.fixture
def fake_sandbox():
    return FakeSandbox()


@pytest.fixture
def session():
    """Scripted model session; tests fill in `session.responses`."""
    return ScriptedSession()


@pytest.fixture
def router(config, session):
    return ModelRouter(config.models, adapters={"scripted": ScriptedAdapter(session)})


@pytest.fixture
def orchestrator(store, events, router, fake_sandbox, config):
    return TaskOrchestrator(
        store,
        events,
        router,
        sandbox_factory=lambda sandbox_config: fake_sandbox,
        config=config,
    )


@pytest.fixture
def project(store):
    return store.create_project("demo", "https://github.com/acme/demo.git")


@pytest.fixture
def agent(store):
    return store.create_agent("Coder", "Senior Python developer", LLMConfig(provider="scripted"))


@pytest.fixture
def task(store, project, agent):
    return store.create_task(
        "Add greeting",
        "Create hello.txt containing Hello, World!",
        project.id,
        [agent.id],
    )
