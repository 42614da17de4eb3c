"""Task orchestrator: drives one agent through a task inside a sandbox.

One execution owns one sandbox, one memory and one prompt loop:

    PENDING -> IN_PROGRESS -> COMPLETED | FAILED

Command and tool failures are fed back to the model as observations.
Infrastructure failures (engine unreachable, image pull, missing sandbox) and
exhausted model retries fail the task. The sandbox is always torn down.
"""

import asyncio
import json
import logging
import shlex
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlsplit

from prometheus_agent.config import PrometheusConfig
from prometheus_agent.errors import CommandExecutionError, TaskCancelled
from prometheus_agent.events import EventChannel
from prometheus_agent.memory import MemoryStore
from prometheus_agent.model_router import STRICT_JSON_SHAPE, ModelRouter
from prometheus_agent.models import Agent, ExecutionContext, Task, TaskStatus
from prometheus_agent.sandbox import SandboxRuntime
from prometheus_agent.store import TaskRepository
from prometheus_agent.tools import ToolInvoker, build_shell_command, detect_tool_call

logger = logging.getLogger(__name__)

SYSTEM_AGENT_ID = "system"
SYSTEM_AGENT_NAME = "System"
TOKEN_ENV_VAR = "GIT_ACCESS_TOKEN"
POLICY_FAIL = "fail"

RULES_PREAMBLE = """SYSTEM PROMPT: You are an autonomous AI agent working as a tool.
YOUR ROLE: {role}.
RULES:
1. You work in a shell inside an isolated sandbox. The project code is in {workspace}.
2. You must accomplish the GLOBAL GOAL.
3. Your answer must ALWAYS be ONLY a JSON object, with no text before or after it.
4. When the goal is accomplished, "finished" must be true.
5. To use a tool instead of a shell command, write use_tool("<tool_name>", {{<json arguments>}}) in "thought" and set "command" to "use_tool"."""


@dataclass
class ExecutionReport:
    """Outcome of one execute_task call."""

    task_id: str
    status: TaskStatus
    iterations: int = 0
    finished: bool = False
    cap_exhausted: bool = False
    sandbox_id: str | None = None
    error: str | None = None


def build_prompt(agent: Agent, memory: MemoryStore, tool_catalog: str, workspace: str) -> str:
    """Rule preamble + tool catalog + goal + rendered memory."""
    return "\n\n".join([
        RULES_PREAMBLE.format(role=agent.role, workspace=workspace),
        f"AVAILABLE TOOLS:\n{tool_catalog}",
        f"STRICT RESPONSE FORMAT:\n{STRICT_JSON_SHAPE}",
        f'GLOBAL GOAL: "{memory.global_goal}"',
        f"ACTION HISTORY AND CONTEXT:\n{memory.render_context()}",
        "YOUR NEXT STEP AS JSON:",
    ])


def clone_command(repository_url: str, workspace: str, with_token: bool) -> list[str]:
    """`git clone` for sh -c; the token is referenced as ${GIT_ACCESS_TOKEN}, never inlined."""
    parts = urlsplit(repository_url)
    if with_token and parts.scheme in ("http", "https"):
        host = parts.netloc.rsplit("@", 1)[-1]
        rest = host + parts.path + (f"?{parts.query}" if parts.query else "")
        url = f'"{parts.scheme}://x-access-token:${{{TOKEN_ENV_VAR}}}@"{shlex.quote(rest)}'
    else:
        url = shlex.quote(repository_url)
    return ["sh", "-c", f"git clone {url} {shlex.quote(workspace)}"]


class TaskOrchestrator:
    """Runs tasks end to end against a TaskRepository and an EventChannel."""

    def __init__(
        self,
        store: TaskRepository,
        events: EventChannel,
        router: ModelRouter,
        sandbox_factory: Callable[..., SandboxRuntime] = SandboxRuntime,
        config: PrometheusConfig | None = None,
        tool_invoker_factory: Callable[..., ToolInvoker] = ToolInvoker,
    ):
        self.store = store
        self.events = events
        self.router = router
        self.sandbox_factory = sandbox_factory
        self.config = config or PrometheusConfig.load()
        self.tool_invoker_factory = tool_invoker_factory

    # --- Event helpers ---

    def _log(self, project_id: str, message: str, agent_id: str, agent_name: str) -> None:
        self.events.agent_log(project_id, message, agent_id, agent_name)

    def _update_status(self, task: Task, status: TaskStatus, agent_id: str, agent_name: str) -> None:
        self.store.set_status(task.id, status)
        task.status = status
        self.events.task_status(task.project_id, task.id, status.value, agent_id, agent_name)
        self._log(task.project_id, f"[Status]: Task status changed to {status.value}", agent_id, agent_name)

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TaskCancelled("Task execution was cancelled")

    # --- Main procedure ---

    async def execute_task(self, task_id: str, cancel_event: asyncio.Event | None = None) -> ExecutionReport:
        """Run one task to a terminal status and return what happened."""
        task = self.store.get_task(task_id)
        if task is None:
            logger.error(f"Task {task_id} not found")
            return ExecutionReport(task_id=task_id, status=TaskStatus.FAILED, error="Task not found")

        project = self.store.get_project(task.project_id)
        agent = self.store.get_agent(task.primary_assignee) if task.primary_assignee else None
        if project is None or agent is None:
            missing = "project" if project is None else "assigned agent"
            logger.error(f"Task {task_id} has no {missing}")
            self._log(
                task.project_id,
                f"[Orchestrator]: Error! Task {missing} not found.",
                SYSTEM_AGENT_ID,
                SYSTEM_AGENT_NAME,
            )
            self._update_status(task, TaskStatus.FAILED, SYSTEM_AGENT_ID, SYSTEM_AGENT_NAME)
            return ExecutionReport(task_id=task_id, status=TaskStatus.FAILED, error=f"Missing {missing}")

        project_id = project.id
        report = ExecutionReport(task_id=task_id, status=TaskStatus.IN_PROGRESS)

        def log(message: str) -> None:
            self._log(project_id, message, agent.id, agent.name)

        logger.info(f"Starting task '{task.title}' in project '{project.name}' for agent '{agent.name}'")
        log(f'[Orchestrator]: Accepted task "{task.title}".')

        runtime: SandboxRuntime | None = None
        sandbox_id: str | None = None
        try:
            self._update_status(task, TaskStatus.IN_PROGRESS, agent.id, agent.name)
            self._check_cancelled(cancel_event)

            log("[Sandbox]: Creating environment...")
            runtime = self.sandbox_factory(self.config.sandbox)
            env_vars = {TOKEN_ENV_VAR: project.git_access_token} if project.git_access_token else {}
            sandbox_id = await runtime.create_and_start(
                image=project.base_image or self.config.sandbox.default_image,
                env_vars=env_vars,
            )
            report.sandbox_id = sandbox_id
            log(f"[Sandbox]: Environment created. ID: {sandbox_id[:12]}")

            workspace = self.config.sandbox.workspace_dir
            await self._prepare_workspace(runtime, sandbox_id, project.git_repository_url,
                                          bool(project.git_access_token), workspace, log)

            context = ExecutionContext(
                sandbox_id=sandbox_id, working_dir=workspace, agent_id=agent.id, task_id=task.id
            )
            memory = MemoryStore(task.goal, agent_id=agent.id, task_id=task.id, config=self.config.memory)
            tools = self.tool_invoker_factory(runtime, self.config.tools)

            await self._run_loop(agent, memory, tools, runtime, context, report, cancel_event, log)

            final = TaskStatus.COMPLETED
            if report.cap_exhausted:
                log(f"[Orchestrator]: Iteration limit of {self.config.orchestrator.max_iterations} reached.")
                if self.config.orchestrator.exhausted_policy == POLICY_FAIL:
                    final = TaskStatus.FAILED
                    report.error = "Iteration limit reached before the agent finished"
            self._update_status(task, final, agent.id, agent.name)
            report.status = final

        except TaskCancelled as e:
            logger.warning(f"Task {task_id} cancelled")
            log(f"[Orchestrator]: {e}")
            self._fail(task, agent, report, str(e))
        except asyncio.CancelledError:
            logger.warning(f"Execution of task {task_id} interrupted")
            self._fail(task, agent, report, "Execution interrupted")
            raise
        except Exception as e:
            logger.error(f"Critical error in task {task_id}: {e}")
            log(f"[Orchestrator]: CRITICAL ERROR: {e}")
            self._fail(task, agent, report, str(e))
        finally:
            if runtime is not None and sandbox_id is not None:
                await self._teardown(runtime, sandbox_id, log)

        return report

    def _fail(self, task: Task, agent: Agent, report: ExecutionReport, error: str) -> None:
        report.status = TaskStatus.FAILED
        report.error = error
        try:
            self._update_status(task, TaskStatus.FAILED, agent.id, agent.name)
        except Exception as e:
            logger.error(f"Could not mark task {task.id} as FAILED: {e}")

    async def _teardown(self, runtime: SandboxRuntime, sandbox_id: str, log: Callable[[str], None]) -> None:
        log("[Sandbox]: Destroying environment...")
        try:
            await runtime.stop_and_remove(sandbox_id)
        except Exception as e:
            logger.error(f"Sandbox cleanup failed for {sandbox_id[:12]}: {e}")
            log(f"[Sandbox]: Cleanup failed: {e}")
            return
        log("[Sandbox]: Environment destroyed.")

    async def _prepare_workspace(
        self,
        runtime: SandboxRuntime,
        sandbox_id: str,
        repository_url: str,
        with_token: bool,
        workspace: str,
        log: Callable[[str], None],
    ) -> None:
        """Install git if missing, clone the repository, set commit identity."""
        orch = self.config.orchestrator
        steps = [
            (["sh", "-c", "command -v git >/dev/null 2>&1 || (apt-get update && apt-get install -y git)"], None),
            (clone_command(repository_url, workspace, with_token), None),
            (["git", "config", "user.name", orch.git_user_name], workspace),
            (["git", "config", "user.email", orch.git_user_email], workspace),
        ]
        for command, working_dir in steps:
            log(f"[Command]: {' '.join(command)}")
            output = await runtime.execute(sandbox_id, command, working_dir=working_dir)
            if output:
                log(f"[Result]:\n{output}")

    async def _run_loop(
        self,
        agent: Agent,
        memory: MemoryStore,
        tools: ToolInvoker,
        runtime: SandboxRuntime,
        context: ExecutionContext,
        report: ExecutionReport,
        cancel_event: asyncio.Event | None,
        log: Callable[[str], None],
    ) -> None:
        catalog = tools.describe_catalog()
        max_iterations = self.config.orchestrator.max_iterations

        for iteration in range(1, max_iterations + 1):
            report.iterations = iteration
            self._check_cancelled(cancel_event)

            prompt = build_prompt(agent, memory, catalog, context.working_dir)
            log("[Orchestrator]: Asking the model for the next step...")
            response = await self.router.generate(agent.llm_config, prompt)
            self._check_cancelled(cancel_event)
            log(f"[Thought]: {response.thought}")

            if response.finished or not response.command:
                report.finished = True
                log("[Orchestrator]: The agent considers the task complete.")
                return

            tool_call = detect_tool_call(response.thought)
            self._check_cancelled(cancel_event)
            if tool_call is not None:
                action = f'use_tool("{tool_call.name}", {json.dumps(tool_call.arguments)})'
                log(f"[Tool]: {action}")
                result = await tools.execute(tool_call, context)
                if result.success:
                    memory.record(action, result.result, success=True)
                    log(f"[Tool Result]:\n{result.result}")
                else:
                    memory.record(action, result.error or "Unknown error", success=False)
                    log(f"[Tool Error]: {result.error}")
                continue

            action = " ".join([response.command, *response.args])
            log(f"[Command]: {action}")
            try:
                output = await runtime.execute(
                    context.sandbox_id,
                    build_shell_command(response.command, response.args),
                    working_dir=context.working_dir,
                )
            except CommandExecutionError as e:
                memory.record(action, str(e), success=False)
                log(f"[Error]: {e}")
                continue
            memory.record(action, output, success=True)
            log(f"[Result]:\n{output or '(empty output)'}")

        report.cap_exhausted = True
