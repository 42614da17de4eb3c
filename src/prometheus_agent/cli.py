"""Prometheus CLI: run autonomous agents against project repositories.

Usage:
    prometheus project add NAME URL [--token T] [--image I]   # Register a project
    prometheus agent add NAME --role R --provider P           # Register an agent
    prometheus task add TITLE -d DESC -p PROJECT -a AGENT     # Create a task
    prometheus tasks                                          # List tasks
    prometheus run <task-id>                                  # Execute a task
    prometheus providers [--check]                            # Model providers
    prometheus tools                                          # Tool catalog
    prometheus config <key>=<value>                           # Set configuration
"""

import asyncio
import json
import logging
import sys
from dataclasses import asdict

import click
from rich.console import Console
from rich.table import Table
from rich.text import Text

from prometheus_agent.config import PrometheusConfig, ensure_prometheus_home
from prometheus_agent.errors import PrometheusError
from prometheus_agent.events import EVENT_AGENT_LOG, EVENT_TASK_STATUS, EventChannel
from prometheus_agent.model_router import ModelRouter
from prometheus_agent.models import LLMConfig, TaskStatus
from prometheus_agent.orchestrator import TaskOrchestrator
from prometheus_agent.store import TaskStore
from prometheus_agent.task_queue import TaskQueue
from prometheus_agent.tools import TOOL_CATALOG

console = Console()

STATUS_COLORS = {
    TaskStatus.PENDING: "yellow",
    TaskStatus.IN_PROGRESS: "blue",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
}


def _run_async(coro):
    """Run async function from sync context."""
    return asyncio.run(coro)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose):
    """Prometheus: autonomous task execution in disposable sandboxes."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    ensure_prometheus_home()


# --- Projects and agents ---


@cli.group()
def project():
    """Manage projects."""


@project.command("add")
@click.argument("name")
@click.argument("repository_url")
@click.option("--token", default=None, help="Git access token for private repositories")
@click.option("--image", default=None, help="Base sandbox image (default from config)")
def project_add(name, repository_url, token, image):
    """Register a project and its git repository."""
    store = TaskStore()
    created = store.create_project(name, repository_url, git_access_token=token, base_image=image)
    console.print(f"[green]Project created:[/] {created.id} ({created.name})")


@cli.group()
def agent():
    """Manage agents."""


@agent.command("add")
@click.argument("name")
@click.option("--role", "-r", required=True, help="Role description used in the prompt")
@click.option("--provider", "-p", default=None, help="Model provider (google, openai, groq, mistral, anthropic, scripted)")
@click.option("--model", "-m", default="", help="Model name (provider default if omitted)")
@click.option("--temperature", "-t", type=float, default=None)
@click.option("--max-tokens", type=int, default=None)
def agent_add(name, role, provider, model, temperature, max_tokens):
    """Register an agent with its model configuration."""
    cfg = PrometheusConfig.load()
    llm_config = LLMConfig(
        provider=provider or cfg.models.default_provider,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    store = TaskStore()
    created = store.create_agent(name, role, llm_config)
    console.print(f"[green]Agent created:[/] {created.id} ({created.name}, {llm_config.provider})")


# --- Tasks ---


@cli.group()
def task():
    """Manage tasks."""


@task.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--project", "-p", "project_id", required=True, help="Owning project id")
@click.option("--assignee", "-a", "assignees", multiple=True, help="Agent id (first is primary)")
def task_add(title, description, project_id, assignees):
    """Create a task in PENDING state."""
    store = TaskStore()
    if store.get_project(project_id) is None:
        console.print(f"[red]Project not found: {project_id}[/]")
        sys.exit(1)
    for agent_id in assignees:
        if store.get_agent(agent_id) is None:
            console.print(f"[red]Agent not found: {agent_id}[/]")
            sys.exit(1)
    created = store.create_task(title, description, project_id, list(assignees))
    console.print(f"[green]Task created:[/] {created.id}")


@cli.command()
@click.option("--project", "-p", "project_id", default=None, help="Filter by project id")
@click.option("--status", "-s", type=click.Choice([s.value for s in TaskStatus]), default=None)
def tasks(project_id, status):
    """List tasks."""
    store = TaskStore()
    all_tasks = store.list_tasks(project_id=project_id, status=TaskStatus(status) if status else None)

    if not all_tasks:
        console.print("[dim]No tasks yet[/]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Project", style="dim")
    table.add_column("Status")
    table.add_column("Assignees")

    for t in all_tasks:
        color = STATUS_COLORS.get(t.status, "white")
        table.add_row(
            t.id,
            t.title[:50],
            t.project_id,
            f"[{color}]{t.status.value}[/]",
            ", ".join(t.assignee_ids) or "-",
        )

    console.print(table)


@cli.command()
@click.argument("task_id")
def run(task_id):
    """Execute a task and stream agent progress."""
    cfg = PrometheusConfig.load()
    store = TaskStore()
    existing = store.get_task(task_id)
    if existing is None:
        console.print(f"[red]Task not found: {task_id}[/]")
        sys.exit(1)

    def on_event(event_data: dict):
        payload = event_data["payload"]
        if event_data["event"] == EVENT_AGENT_LOG:
            message = payload["message"]
            if len(message) > 2000:
                message = message[:2000] + "..."
            console.print(Text.assemble((payload["agentName"], "cyan"), " ", message))
        elif event_data["event"] == EVENT_TASK_STATUS:
            color = STATUS_COLORS.get(TaskStatus(payload["newStatus"]), "white")
            console.print(f"[bold {color}]Status: {payload['newStatus']}[/]")

    async def execute():
        events = EventChannel()
        events.subscribe(existing.project_id, on_event)
        orchestrator = TaskOrchestrator(store, events, ModelRouter(cfg.models), config=cfg)
        queue = TaskQueue(orchestrator, store, concurrency=1)
        queue.start()
        try:
            execution_id = queue.submit(task_id)
            await queue.join()
        finally:
            await queue.stop()
        return queue.reports.get(execution_id)

    console.print(f"\n[bold blue]Prometheus[/]: [italic]{existing.title}[/]\n")
    try:
        report = _run_async(execute())
    except PrometheusError as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)

    if report is None:
        console.print("[red]Execution did not produce a report[/]")
        sys.exit(1)
    color = STATUS_COLORS.get(report.status, "white")
    console.print(
        f"\n[bold {color}]{report.status.value}[/] after {report.iterations} iteration(s)"
        + (" (iteration limit reached)" if report.cap_exhausted else "")
    )
    if report.error:
        console.print(f"[red]{report.error}[/]")
    if report.status != TaskStatus.COMPLETED:
        sys.exit(1)


# --- Catalogs ---


@cli.command()
@click.option("--check", is_flag=True, help="Probe each provider with a test request")
def providers(check):
    """Show model providers and their models."""
    cfg = PrometheusConfig.load()
    router = ModelRouter(cfg.models)

    table = Table(title="Model Providers")
    table.add_column("Name", style="bold")
    table.add_column("Display name")
    table.add_column("Default model")
    table.add_column("Token limit", justify="right")
    table.add_column("Models", style="dim")
    if check:
        table.add_column("Status")

    for info in router.available_providers():
        row = [info.name, info.display_name, info.default_model, str(info.max_tokens), ", ".join(info.models)]
        if check:
            ok = _run_async(router.validate_credentials(info.name))
            row.append("[green]ok[/]" if ok else "[red]unavailable[/]")
        table.add_row(*row)

    console.print(table)


@cli.command()
def tools():
    """Show the tool catalog available to agents."""
    table = Table(title="Tools")
    table.add_column("Name", style="bold")
    table.add_column("Category")
    table.add_column("Description")
    table.add_column("Parameters", style="dim")
    for tool in TOOL_CATALOG:
        table.add_row(tool.name, tool.category, tool.description, ", ".join(tool.parameters))
    console.print(table)


@cli.command()
@click.argument("key_value", nargs=-1)
def config(key_value):
    """View or set configuration.

    Examples:
        prometheus config                              # show all
        prometheus config orchestrator.max_iterations=20
        prometheus config sandbox.engine_bin=podman
    """
    cfg = PrometheusConfig.load()
    if not key_value:
        data = asdict(cfg)
        data["models"].pop("api_keys", None)
        data["tools"].pop("search_api_key", None)
        console.print_json(json.dumps(data))
        return

    kv = " ".join(key_value)
    if "=" not in kv:
        console.print("[yellow]Usage: prometheus config key=value[/]")
        return

    key, value = kv.split("=", 1)
    key = key.strip()
    value = value.strip()
    try:
        cfg.set_value(key, value)
    except KeyError:
        console.print(f"[red]Unknown config key: {key}[/]")
        return
    except ValueError:
        console.print(f"[red]Invalid value for {key}: {value}[/]")
        return

    cfg.save()
    console.print(f"[green]Set {key} = {value}[/]")


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
