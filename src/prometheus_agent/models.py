"""Domain records shared by the orchestrator and its collaborators."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle. COMPLETED and FAILED are terminal."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class LLMConfig:
    """Per-agent model selection. Empty/None fields fall back to provider defaults."""

    provider: str
    model: str = ""
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class Agent:
    id: str
    name: str
    role: str
    llm_config: LLMConfig


@dataclass
class Project:
    id: str
    name: str
    git_repository_url: str
    git_access_token: str | None = None
    base_image: str | None = None


@dataclass
class Task:
    id: str
    title: str
    description: str
    project_id: str
    status: TaskStatus = TaskStatus.PENDING
    assignee_ids: list[str] = field(default_factory=list)

    @property
    def goal(self) -> str:
        return f"{self.title}: {self.description}"

    @property
    def primary_assignee(self) -> str | None:
        return self.assignee_ids[0] if self.assignee_ids else None


@dataclass
class ExecutionContext:
    """Task-scoped, never persisted."""

    sandbox_id: str
    working_dir: str
    agent_id: str
    task_id: str


@dataclass
class ModelResponse:
    """One healed model decision."""

    thought: str = ""
    command: str = ""
    args: list[str] = field(default_factory=list)
    finished: bool = False


TURN_SUCCESS = "success"
TURN_ERROR = "error"


@dataclass
class Turn:
    """One recorded action/outcome pair."""

    action: str
    outcome: str  # success | error
    output: str
    token_count: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def succeeded(self) -> bool:
        return self.outcome == TURN_SUCCESS
