"""Prometheus: autonomous task execution for LLM agents in disposable sandboxes."""

__version__ = "0.1.0"

from prometheus_agent.events import EventChannel
from prometheus_agent.memory import CompressedMemory, MemoryStore
from prometheus_agent.model_router import ModelRouter, heal_response, parse_model_output
from prometheus_agent.models import (
    Agent,
    ExecutionContext,
    LLMConfig,
    ModelResponse,
    Project,
    Task,
    TaskStatus,
    Turn,
)
from prometheus_agent.orchestrator import ExecutionReport, TaskOrchestrator
from prometheus_agent.providers import ScriptedAdapter, ScriptedSession
from prometheus_agent.sandbox import SandboxRuntime
from prometheus_agent.store import TaskRepository, TaskStore
from prometheus_agent.task_queue import TaskQueue
from prometheus_agent.tools import ToolCall, ToolDefinition, ToolInvoker, ToolResult, detect_tool_call

__all__ = [
    "EventChannel",
    "CompressedMemory",
    "MemoryStore",
    "ModelRouter",
    "heal_response",
    "parse_model_output",
    "Agent",
    "ExecutionContext",
    "LLMConfig",
    "ModelResponse",
    "Project",
    "Task",
    "TaskStatus",
    "Turn",
    "ExecutionReport",
    "TaskOrchestrator",
    "ScriptedAdapter",
    "ScriptedSession",
    "SandboxRuntime",
    "TaskRepository",
    "TaskStore",
    "TaskQueue",
    "ToolCall",
    "ToolDefinition",
    "ToolInvoker",
    "ToolResult",
    "detect_tool_call",
]
