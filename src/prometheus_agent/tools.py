"""Tool catalog and invoker.

Besides plain shell commands, the model may embed a tool call in its
thought text:

    use_tool("read_file", {"path": "src/main.py"})

Detected calls are dispatched by name against a fixed catalog. Tool failures
come back as ToolResult(success=False) so the model can react; they are never
raised into the control loop.
"""

import json
import logging
import posixpath
import re
import shlex
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx

from prometheus_agent.config import PrometheusConfig, ToolsConfig
from prometheus_agent.errors import SandboxConnectionError, SandboxNotFound, ToolExecutionError
from prometheus_agent.jsonscan import find_balanced_object
from prometheus_agent.models import ExecutionContext
from prometheus_agent.sandbox import SandboxRuntime

logger = logging.getLogger(__name__)

USER_AGENT = "Prometheus-Agent/1.0"
JINA_SEARCH_API = "https://s.jina.ai/"
TOOL_CALL_PREFIX = re.compile(r"""use_tool\s*\(\s*["']([^"']+)["']\s*,\s*""")

# Tokens passed through unquoted when joining a command for `sh -c`.
SHELL_OPERATORS = frozenset({
    "|", "||", "&&", ";", "&",
    ">", ">>", "<", "<<",
    "2>", "2>>", "2>&1", "1>&2", "&>",
})


@dataclass
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, dict[str, str]]
    category: str  # web | file | system | api


@dataclass
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    success: bool
    result: str
    error: str | None = None


TOOL_CATALOG: list[ToolDefinition] = [
    ToolDefinition(
        name="search_web",
        description="Search the web for information",
        parameters={
            "query": {"type": "string", "description": "Search query"},
            "maxResults": {"type": "number", "description": "Maximum results (default: 5)"},
        },
        category="web",
    ),
    ToolDefinition(
        name="read_file",
        description="Read contents of a file",
        parameters={
            "path": {"type": "string", "description": "File path relative to working directory"},
        },
        category="file",
    ),
    ToolDefinition(
        name="write_file",
        description="Write content to a file",
        parameters={
            "path": {"type": "string", "description": "File path relative to working directory"},
            "content": {"type": "string", "description": "File content"},
        },
        category="file",
    ),
    ToolDefinition(
        name="list_directory",
        description="List contents of a directory",
        parameters={
            "path": {"type": "string", "description": "Directory path (default: current directory)"},
        },
        category="file",
    ),
    ToolDefinition(
        name="execute_shell",
        description="Execute a shell command",
        parameters={
            "command": {"type": "string", "description": "Shell command to execute"},
            "args": {"type": "array", "description": "Command arguments"},
        },
        category="system",
    ),
    ToolDefinition(
        name="make_http_request",
        description="Make HTTP request to external API",
        parameters={
            "url": {"type": "string", "description": "Request URL"},
            "method": {"type": "string", "description": "HTTP method (GET, POST, PUT, DELETE)"},
            "headers": {"type": "object", "description": "Request headers"},
            "body": {"type": "string", "description": "Request body (for POST/PUT)"},
        },
        category="api",
    ),
]


def build_shell_command(command: str, args: list[str] | None = None) -> list[str]:
    """Join a command for `sh -c`, quoting every argument that is not a shell operator."""
    parts = [command.strip()]
    for arg in args or []:
        parts.append(arg if arg in SHELL_OPERATORS else shlex.quote(arg))
    return ["sh", "-c", " ".join(p for p in parts if p)]


def resolve_path(path: str, working_dir: str) -> str:
    if path.startswith("/"):
        return path
    return posixpath.normpath(posixpath.join(working_dir, path))


def detect_tool_call(text: str) -> ToolCall | None:
    """Find `use_tool("<name>", {...})` in free text.

    The argument object is located with a balanced-brace scan, so nested
    objects and braces inside strings are fine. Invalid JSON means "not
    detected", never an error.
    """
    if not text:
        return None
    for match in TOOL_CALL_PREFIX.finditer(text):
        start = match.end()
        span = find_balanced_object(text, start)
        if span is None or span[0] != start:
            continue
        if not text[span[1]:].lstrip().startswith(")"):
            continue
        try:
            arguments = json.loads(text[span[0]:span[1]])
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse tool call arguments: {e}")
            continue
        if isinstance(arguments, dict):
            return ToolCall(name=match.group(1), arguments=arguments)
    return None


def _require_str(arguments: dict[str, Any], key: str, tool: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value:
        raise ToolExecutionError(f"{tool} requires a string '{key}' argument")
    return value


def describe_tool(tool: ToolDefinition) -> str:
    params = ", ".join(f"{name}: {spec['type']}" for name, spec in tool.parameters.items())
    return f"- {tool.name}({params}) [{tool.category}]: {tool.description}"


class ToolInvoker:
    """Executes catalog tools against a task's sandbox."""

    def __init__(
        self,
        sandbox: SandboxRuntime,
        config: ToolsConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.sandbox = sandbox
        self.config = config or PrometheusConfig.load().tools
        self._transport = transport
        self._handlers: dict[str, Callable[[dict, ExecutionContext], Awaitable[str]]] = {
            "search_web": self._search_web,
            "read_file": self._read_file,
            "write_file": self._write_file,
            "list_directory": self._list_directory,
            "execute_shell": self._execute_shell,
            "make_http_request": self._make_http_request,
        }

    @property
    def catalog(self) -> list[ToolDefinition]:
        return list(TOOL_CATALOG)

    def describe_catalog(self) -> str:
        """Catalog text for the prompt."""
        lines = [describe_tool(t) for t in TOOL_CATALOG]
        lines.append('To call a tool, write in your thought: use_tool("<tool_name>", {<json arguments>})')
        return "\n".join(lines)

    @staticmethod
    def detect(text: str) -> ToolCall | None:
        return detect_tool_call(text)

    async def execute(self, call: ToolCall, context: ExecutionContext) -> ToolResult:
        """Run a tool. Only sandbox infrastructure failures propagate."""
        logger.info(f"Executing tool: {call.name} with args: {sorted(call.arguments)}")
        handler = self._handlers.get(call.name)
        if handler is None:
            return ToolResult(success=False, result="", error=f"Unknown tool: {call.name}")
        try:
            result = await handler(call.arguments, context)
        except (SandboxNotFound, SandboxConnectionError):
            raise
        except Exception as e:
            logger.error(f"Tool execution failed: {e}")
            return ToolResult(success=False, result="", error=str(e))
        return ToolResult(success=True, result=result[: self.config.output_cap])

    # --- File tools ---

    async def _read_file(self, arguments: dict, context: ExecutionContext) -> str:
        path = _require_str(arguments, "path", "read_file")
        full_path = resolve_path(path, context.working_dir)
        return await self.sandbox.execute(context.sandbox_id, ["cat", full_path])

    async def _write_file(self, arguments: dict, context: ExecutionContext) -> str:
        path = _require_str(arguments, "path", "write_file")
        content = arguments.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content, indent=2)
        full_path = resolve_path(path, context.working_dir)
        # content goes over stdin; argv is capped at 128 KiB per argument
        script = (
            f"mkdir -p {shlex.quote(posixpath.dirname(full_path) or '/')} && "
            f"cat > {shlex.quote(full_path)}"
        )
        await self.sandbox.execute(context.sandbox_id, ["sh", "-c", script], stdin=content)
        return f"File written successfully: {path}"

    async def _list_directory(self, arguments: dict, context: ExecutionContext) -> str:
        path = arguments.get("path") or "."
        full_path = resolve_path(str(path), context.working_dir)
        return await self.sandbox.execute(context.sandbox_id, ["ls", "-la", full_path])

    # --- System tools ---

    async def _execute_shell(self, arguments: dict, context: ExecutionContext) -> str:
        command = _require_str(arguments, "command", "execute_shell")
        args = arguments.get("args") or []
        if not isinstance(args, list):
            raise ToolExecutionError("execute_shell 'args' must be an array")
        return await self.sandbox.execute(
            context.sandbox_id,
            build_shell_command(command, [str(a) for a in args]),
            working_dir=context.working_dir,
        )

    # --- Network tools ---

    async def _make_http_request(self, arguments: dict, context: ExecutionContext) -> str:
        url = _require_str(arguments, "url", "make_http_request")
        method = str(arguments.get("method") or "GET").upper()
        headers = arguments.get("headers") or {}
        if not isinstance(headers, dict):
            raise ToolExecutionError("make_http_request 'headers' must be an object")
        body = arguments.get("body")
        if body is not None and not isinstance(body, str):
            body = json.dumps(body)

        try:
            async with httpx.AsyncClient(
                timeout=self.config.http_timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method,
                    url,
                    headers={"User-Agent": USER_AGENT, **{str(k): str(v) for k, v in headers.items()}},
                    content=body if method != "GET" else None,
                )
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"HTTP request failed: {e}") from e

        return json.dumps({
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "body": response.text[: self.config.output_cap],
        }, indent=2)

    async def _search_web(self, arguments: dict, context: ExecutionContext) -> str:
        query = _require_str(arguments, "query", "search_web")
        try:
            max_results = max(1, min(10, int(arguments.get("maxResults") or 5)))
        except (TypeError, ValueError):
            max_results = 5

        if self.config.search_provider == "jina":
            results = await self._jina_search(query, max_results)
        else:
            results = _mock_search_results(query)[:max_results]
        return json.dumps(results, indent=2)

    async def _jina_search(self, query: str, max_results: int) -> list[dict]:
        if not self.config.search_api_key:
            raise ToolExecutionError("JINA_API_KEY is not set; web search is unavailable")
        try:
            async with httpx.AsyncClient(
                timeout=self.config.http_timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    JINA_SEARCH_API,
                    json={"q": query, "num": max_results},
                    headers={
                        "Authorization": f"Bearer {self.config.search_api_key}",
                        "Accept": "application/json",
                    },
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Web search failed: {e}") from e

        items = response.json().get("data") or []
        return [
            {
                "title": item.get("title", ""),
                "url": item.get("url", ""),
                "snippet": (item.get("description") or item.get("content") or "")[:500],
            }
            for item in items[:max_results]
            if isinstance(item, dict)
        ]


def _mock_search_results(query: str) -> list[dict]:
    encoded = quote(query)
    return [
        {
            "title": f'Result for "{query}" - Documentation',
            "url": f"https://docs.example.com/search?q={encoded}",
            "snippet": f"Official documentation and guides for {query}...",
        },
        {
            "title": f"{query} Tutorial - Learn More",
            "url": f"https://tutorial.example.com/{quote(query.lower())}",
            "snippet": f"Comprehensive tutorial covering {query} fundamentals...",
        },
        {
            "title": f"GitHub - {query} Examples",
            "url": f"https://github.com/search?q={encoded}",
            "snippet": f"Open source examples and implementations of {query}...",
        },
    ]
