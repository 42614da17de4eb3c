"""Sandbox runtime: disposable containers driven through the engine CLI.

Wraps the `docker` CLI (or any CLI-compatible engine, see
`sandbox.engine_bin`) to give every task execution its own isolated
environment. Images are pulled lazily on first use so concurrent tasks stay
independent, and teardown is idempotent because it always runs from a
`finally` block.
"""

import asyncio
import logging
import os
import shutil

from prometheus_agent.config import PrometheusConfig, SandboxConfig
from prometheus_agent.errors import (
    CommandExecutionError,
    ImagePullError,
    SandboxConnectionError,
    SandboxError,
    SandboxNotFound,
)

logger = logging.getLogger(__name__)

INTERACTIVE_SHELL = "/bin/bash"
MANAGED_LABEL = "prometheus.managed=true"
TIMEOUT_EXIT_CODE = 124

_MISSING_MARKERS = ("no such container", "no such object", "not found")


def _resolve_engine_bin(name: str) -> str | None:
    """Find the engine binary on PATH or in the usual install locations."""
    if os.path.isabs(name):
        return name if os.path.exists(name) else None
    return shutil.which(name) or next(
        (
            p for p in (
                f"/usr/local/bin/{name}",
                f"/usr/bin/{name}",
                f"/opt/homebrew/bin/{name}",
            )
            if os.path.exists(p)
        ),
        None,
    )


def _is_missing(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _MISSING_MARKERS)


def _combine_output(result: dict) -> str:
    parts = [result["stdout"], result["stderr"]]
    return "\n".join(p for p in parts if p)


class SandboxRuntime:
    """Creates, executes commands in, and tears down sandboxes."""

    def __init__(self, config: SandboxConfig | None = None):
        self.config = config or PrometheusConfig.load().sandbox
        engine_bin = _resolve_engine_bin(self.config.engine_bin)
        if not engine_bin:
            raise SandboxConnectionError(
                f"engine binary '{self.config.engine_bin}' not found; "
                "set PROMETHEUS_SANDBOX_BIN or sandbox.engine_bin"
            )
        self.engine_bin = engine_bin

    async def _run(
        self,
        *args: str,
        timeout: int = 60,
        env: dict[str, str] | None = None,
        stdin: str | None = None,
    ) -> dict:
        """Execute an engine CLI command and return its exit code and output."""
        cmd = [self.engine_bin, *args]
        proc_env = {**os.environ, **env} if env else None
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
            )
        except OSError as e:
            raise SandboxConnectionError(str(e)) from e

        data = stdin.encode() if stdin is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(data), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return {
                "exit_code": TIMEOUT_EXIT_CODE,
                "stdout": "",
                "stderr": f"timed out after {timeout}s",
            }
        return {
            "exit_code": proc.returncode,
            "stdout": stdout.decode(errors="replace").strip(),
            "stderr": stderr.decode(errors="replace").strip(),
        }

    async def ping(self) -> None:
        """Fail with SandboxConnectionError unless the engine daemon answers."""
        result = await self._run("version", "--format", "{{.Server.Version}}", timeout=15)
        if result["exit_code"] != 0:
            raise SandboxConnectionError(result["stderr"].splitlines()[0] if result["stderr"] else "")

    async def ensure_image(self, image: str) -> None:
        """Pull the image unless it is already present locally."""
        present = await self._run("image", "inspect", "--format", "{{.Id}}", image, timeout=30)
        if present["exit_code"] == 0:
            return

        logger.info(f"Pulling sandbox image {image}")
        pulled = await self._run("pull", image, timeout=self.config.pull_timeout)
        if pulled["exit_code"] != 0:
            raise ImagePullError(image, pulled["stderr"][:500])

    async def create_and_start(self, image: str | None = None, env_vars: dict[str, str] | None = None) -> str:
        """Create a long-lived interactive sandbox, start it, and return its ID.

        Environment values are handed to the engine through the child process
        environment (`--env NAME`), so they never appear on a command line.
        """
        image = image or self.config.default_image
        await self.ping()
        await self.ensure_image(image)

        cmd_args = ["create", "--interactive", "--tty", "--label", MANAGED_LABEL]
        for name in (env_vars or {}):
            cmd_args.extend(["--env", name])
        cmd_args.extend([image, INTERACTIVE_SHELL])

        created = await self._run(*cmd_args, timeout=120, env=env_vars)
        if created["exit_code"] != 0 or not created["stdout"]:
            raise SandboxError(f"Failed to create sandbox from image {image}: {created['stderr']}")
        sandbox_id = created["stdout"].splitlines()[-1].strip()

        started = await self._run("start", sandbox_id, timeout=60)
        if started["exit_code"] != 0:
            await self._run("rm", "--force", sandbox_id, timeout=60)
            raise SandboxError(f"Failed to start sandbox {sandbox_id[:12]}: {started['stderr']}")

        logger.info(f"Sandbox {sandbox_id[:12]} running from {image}")
        return sandbox_id

    async def status(self, sandbox_id: str) -> str:
        """Return normalized status for a sandbox ID."""
        result = await self._run("inspect", "--format", "{{.State.Status}}", sandbox_id, timeout=15)
        if result["exit_code"] != 0:
            return "not_found" if _is_missing(result["stderr"]) else "unknown"
        return result["stdout"].lower() or "unknown"

    async def _require(self, sandbox_id: str) -> None:
        result = await self._run("inspect", "--format", "{{.Id}}", sandbox_id, timeout=15)
        if result["exit_code"] == 0:
            return
        if _is_missing(result["stderr"]):
            raise SandboxNotFound(sandbox_id)
        raise SandboxConnectionError(result["stderr"][:500])

    async def execute(
        self,
        sandbox_id: str,
        command: list[str],
        working_dir: str | None = None,
        timeout: int | None = None,
        stdin: str | None = None,
    ) -> str:
        """Run a command inside the sandbox and return combined stdout+stderr.

        `stdin`, when given, is piped to the command (`exec --interactive`).
        Raises SandboxNotFound for an unknown sandbox and
        CommandExecutionError (with the command echoed) for anything else.
        """
        await self._require(sandbox_id)

        cmd_args = ["exec"]
        if stdin is not None:
            cmd_args.append("--interactive")
        if working_dir:
            cmd_args.extend(["--workdir", working_dir])
        cmd_args.extend([sandbox_id, *command])

        result = await self._run(*cmd_args, timeout=timeout or self.config.exec_timeout, stdin=stdin)
        output = _combine_output(result)[: self.config.output_cap]
        if result["exit_code"] != 0:
            raise CommandExecutionError(
                command,
                f"exit code {result['exit_code']}: {output or '(no output)'}",
                exit_code=result["exit_code"],
                output=output,
            )
        return output

    async def stop_and_remove(self, sandbox_id: str) -> None:
        """Stop and force-remove a sandbox. A missing or stopped sandbox is a no-op."""
        stopped = await self._run("stop", "--time", "5", sandbox_id, timeout=60)
        if stopped["exit_code"] != 0:
            if _is_missing(stopped["stderr"]):
                logger.warning(f"Sandbox {sandbox_id[:12]} already removed")
                return
            raise SandboxError(f"Failed to stop sandbox {sandbox_id[:12]}: {stopped['stderr']}")

        removed = await self._run("rm", "--force", sandbox_id, timeout=60)
        if removed["exit_code"] != 0 and not _is_missing(removed["stderr"]):
            raise SandboxError(f"Failed to remove sandbox {sandbox_id[:12]}: {removed['stderr']}")
        logger.info(f"Sandbox {sandbox_id[:12]} removed")
