"""Tests for prometheus_agent.tools: detection, catalog and execution."""

import json
import shlex

import httpx
import pytest

from prometheus_agent.config import ToolsConfig
from prometheus_agent.errors import CommandExecutionError, SandboxNotFound
from prometheus_agent.models import ExecutionContext
from prometheus_agent.tools import (
    TOOL_CATALOG,
    ToolCall,
    ToolInvoker,
    build_shell_command,
    detect_tool_call,
    resolve_path,
)

SANDBOX_ID = "sbx0123456789abcdef"


@pytest.fixture
def context():
    return ExecutionContext(sandbox_id=SANDBOX_ID, working_dir="/app", agent_id="a-1", task_id="t-1")


@pytest.fixture
def invoker(fake_sandbox):
    return ToolInvoker(fake_sandbox, ToolsConfig())


class TestDetect:

    def test_simple_call(self):
        call = detect_tool_call('use_tool("read_file", {"path": "a.txt"})')
        assert call == ToolCall(name="read_file", arguments={"path": "a.txt"})

    def test_no_pattern(self):
        assert detect_tool_call("I will list the files with ls.") is None
        assert detect_tool_call("") is None

    def test_embedded_in_prose_with_single_quotes(self):
        call = detect_tool_call("First I need the config. use_tool('read_file', {\"path\": \"cfg.json\"}) then edit.")
        assert call.name == "read_file"
        assert call.arguments == {"path": "cfg.json"}

    def test_nested_object_and_braces_in_strings(self):
        thought = (
            'use_tool("make_http_request", {"url": "https://x.test", "method": "POST", '
            '"headers": {"Content-Type": "application/json"}, "body": "{\\"a\\": 1}"})'
        )
        call = detect_tool_call(thought)
        assert call.arguments["headers"] == {"Content-Type": "application/json"}
        assert call.arguments["body"] == '{"a": 1}'

    def test_invalid_arguments_not_detected(self):
        assert detect_tool_call('use_tool("read_file", {path: a.txt})') is None

    def test_unclosed_call_not_detected(self):
        assert detect_tool_call('use_tool("read_file", {"path": "a.txt"}') is None


class TestHelpers:

    def test_relative_path(self):
        assert resolve_path("src/main.py", "/app") == "/app/src/main.py"
        assert resolve_path("./a/../b.txt", "/app") == "/app/b.txt"

    def test_absolute_path(self):
        assert resolve_path("/etc/hosts", "/app") == "/etc/hosts"

    def test_shell_command_keeps_operators(self):
        assert build_shell_command("echo", ["Hello, World!", ">", "/app/hello.txt"]) == [
            "sh", "-c", "echo 'Hello, World!' > /app/hello.txt",
        ]

    def test_shell_command_quotes_injection(self):
        assert build_shell_command("ls", ["a; rm -rf /"]) == ["sh", "-c", "ls 'a; rm -rf /'"]

    def test_shell_command_raw_command(self):
        assert build_shell_command("ls -la | grep py") == ["sh", "-c", "ls -la | grep py"]

    def test_catalog(self, invoker):
        names = [t.name for t in TOOL_CATALOG]
        assert names == [
            "search_web", "read_file", "write_file",
            "list_directory", "execute_shell", "make_http_request",
        ]
        text = invoker.describe_catalog()
        for name in names:
            assert name in text
        assert "use_tool(" in text


class TestFileTools:

    @pytest.mark.asyncio
    async def test_read_file(self, invoker, fake_sandbox, context):
        fake_sandbox.responses["cat /app/README.md"] = "# Demo"
        result = await invoker.execute(ToolCall("read_file", {"path": "README.md"}), context)
        assert result.success is True
        assert result.result == "# Demo"
        assert fake_sandbox.commands[-1][1] == ["cat", "/app/README.md"]

    @pytest.mark.asyncio
    async def test_write_file_pipes_content(self, invoker, fake_sandbox, context):
        content = "it's $HOME `whoami`\n"
        result = await invoker.execute(
            ToolCall("write_file", {"path": "notes/a.txt", "content": content}), context
        )
        assert result.success is True
        assert result.result == "File written successfully: notes/a.txt"

        command = fake_sandbox.commands[-1][1]
        assert command == ["sh", "-c", "mkdir -p /app/notes && cat > /app/notes/a.txt"]
        assert fake_sandbox.stdin[-1] == content

    @pytest.mark.asyncio
    async def test_write_large_file_keeps_argv_small(self, invoker, fake_sandbox, context):
        content = "x" * (512 * 1024)
        result = await invoker.execute(
            ToolCall("write_file", {"path": "big.bin", "content": content}), context
        )
        assert result.success is True
        assert all(len(arg) < 1024 for arg in fake_sandbox.commands[-1][1])
        assert fake_sandbox.stdin[-1] == content

    @pytest.mark.asyncio
    async def test_write_path_with_spaces_is_quoted(self, invoker, fake_sandbox, context):
        await invoker.execute(ToolCall("write_file", {"path": "my notes.txt", "content": "hi"}), context)
        assert fake_sandbox.commands[-1][1][2] == f"mkdir -p /app && cat > {shlex.quote('/app/my notes.txt')}"

    @pytest.mark.asyncio
    async def test_list_directory_defaults_to_working_dir(self, invoker, fake_sandbox, context):
        await invoker.execute(ToolCall("list_directory", {}), context)
        assert fake_sandbox.commands[-1][1] == ["ls", "-la", "/app"]

    @pytest.mark.asyncio
    async def test_command_failure_is_a_result(self, invoker, fake_sandbox, context):
        fake_sandbox.responses["cat"] = CommandExecutionError(["cat", "/app/x"], "exit code 1: No such file")
        result = await invoker.execute(ToolCall("read_file", {"path": "x"}), context)
        assert result.success is False
        assert "No such file" in result.error

    @pytest.mark.asyncio
    async def test_missing_argument(self, invoker, context):
        result = await invoker.execute(ToolCall("read_file", {}), context)
        assert result.success is False
        assert "path" in result.error

    @pytest.mark.asyncio
    async def test_missing_sandbox_propagates(self, invoker, fake_sandbox, context):
        fake_sandbox.responses["cat"] = SandboxNotFound(SANDBOX_ID)
        with pytest.raises(SandboxNotFound):
            await invoker.execute(ToolCall("read_file", {"path": "a"}), context)


class TestSystemTools:

    @pytest.mark.asyncio
    async def test_execute_shell(self, invoker, fake_sandbox, context):
        fake_sandbox.responses["pytest"] = "3 passed"
        result = await invoker.execute(
            ToolCall("execute_shell", {"command": "pytest", "args": ["-q", "tests/"]}), context
        )
        assert result.result == "3 passed"
        _, command, working_dir = fake_sandbox.commands[-1]
        assert command == ["sh", "-c", "pytest -q tests/"]
        assert working_dir == "/app"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, invoker, context):
        result = await invoker.execute(ToolCall("launch_rocket", {}), context)
        assert result.success is False
        assert result.error == "Unknown tool: launch_rocket"


class TestNetworkTools:

    @pytest.mark.asyncio
    async def test_http_request(self, fake_sandbox, context):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["ua"] = request.headers["user-agent"]
            seen["token"] = request.headers["x-token"]
            seen["body"] = request.content
            return httpx.Response(201, json={"id": 7})

        invoker = ToolInvoker(fake_sandbox, ToolsConfig(), transport=httpx.MockTransport(handler))
        result = await invoker.execute(ToolCall("make_http_request", {
            "url": "https://api.example.test/items",
            "method": "post",
            "headers": {"X-Token": "abc"},
            "body": '{"name": "x"}',
        }), context)

        assert result.success is True
        payload = json.loads(result.result)
        assert payload["status"] == 201
        assert payload["statusText"] == "Created"
        assert json.loads(payload["body"]) == {"id": 7}
        assert seen["method"] == "POST"
        assert seen["ua"] == "Prometheus-Agent/1.0"
        assert seen["token"] == "abc"
        assert seen["body"] == b'{"name": "x"}'

    @pytest.mark.asyncio
    async def test_http_failure_is_a_result(self, fake_sandbox, context):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        invoker = ToolInvoker(fake_sandbox, ToolsConfig(), transport=httpx.MockTransport(handler))
        result = await invoker.execute(ToolCall("make_http_request", {"url": "https://down.test"}), context)
        assert result.success is False
        assert "HTTP request failed" in result.error

    @pytest.mark.asyncio
    async def test_mock_search(self, invoker, context):
        result = await invoker.execute(ToolCall("search_web", {"query": "fastapi", "maxResults": 2}), context)
        results = json.loads(result.result)
        assert len(results) == 2
        assert "fastapi" in results[0]["title"]

    @pytest.mark.asyncio
    async def test_jina_search(self, fake_sandbox, context):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": [
                {"title": "Docs", "url": "https://docs.test", "description": "Official docs"},
            ]})

        config = ToolsConfig(search_provider="jina", search_api_key="jina-key")
        invoker = ToolInvoker(fake_sandbox, config, transport=httpx.MockTransport(handler))
        result = await invoker.execute(ToolCall("search_web", {"query": "httpx"}), context)

        assert json.loads(result.result) == [{"title": "Docs", "url": "https://docs.test", "snippet": "Official docs"}]
        assert seen["auth"] == "Bearer jina-key"
        assert seen["body"] == {"q": "httpx", "num": 5}

    @pytest.mark.asyncio
    async def test_jina_without_key(self, fake_sandbox, context):
        invoker = ToolInvoker(fake_sandbox, ToolsConfig(search_provider="jina"))
        result = await invoker.execute(ToolCall("search_web", {"query": "httpx"}), context)
        assert result.success is False
        assert "JINA_API_KEY" in result.error
