"""Exception hierarchy for task execution.

Infrastructure failures (sandbox connection, image pull, missing sandbox) and
exhausted model retries abort a task run. Command and tool failures are fed
back to the model as observations and never abort the loop on their own.
"""


class PrometheusError(Exception):
    """Base class for all orchestrator errors."""


# --- Sandbox ---


class SandboxConnectionError(PrometheusError):
    """The sandbox engine is unreachable."""

    def __init__(self, detail: str = ""):
        message = "Could not connect to the sandbox engine. Make sure it is installed and running."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ImagePullError(PrometheusError):
    """The base image is not available locally and could not be pulled."""

    def __init__(self, image: str, detail: str = ""):
        self.image = image
        message = f"Failed to pull sandbox image: {image}."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class SandboxNotFound(PrometheusError):
    """The referenced sandbox does not exist."""

    def __init__(self, sandbox_id: str):
        self.sandbox_id = sandbox_id
        super().__init__(f'Sandbox with ID "{sandbox_id}" not found.')


class SandboxError(PrometheusError):
    """Unexpected engine failure while creating or tearing down a sandbox."""


class CommandExecutionError(PrometheusError):
    """A command inside the sandbox failed."""

    def __init__(self, command: list[str], detail: str, exit_code: int | None = None, output: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(f'Command "{" ".join(command)}" failed: {detail}')


# --- Models ---


class ModelResponseError(PrometheusError):
    """Provider output was empty, not JSON, or not a JSON object."""


class ModelRetriesExhausted(ModelResponseError):
    """Every attempt in the retry budget produced an unusable response."""

    def __init__(self, attempts: int, last_error: Exception | None = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"Model did not return a valid response after {attempts} attempt(s)."
        if last_error is not None:
            message = f"{message} Last error: {last_error}"
        super().__init__(message)


class ProviderConfigError(PrometheusError):
    """Provider is misconfigured (for example, a missing API key)."""


class UnsupportedProviderError(ProviderConfigError):
    """The agent names a provider that has no table entry or adapter."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unsupported LLM provider: {provider}")


# --- Tools ---


class ToolExecutionError(PrometheusError):
    """A tool invocation failed. Reported as a ToolResult, never raised out of the loop."""


# --- Tasks ---


class TaskCancelled(PrometheusError):
    """Execution was cancelled at a suspension point."""


class TaskNotFound(PrometheusError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f'Task "{task_id}" not found.')


class TaskConflictError(PrometheusError):
    """The task is already running."""


class TaskNotRunnable(PrometheusError):
    """The task is completed or has nobody assigned."""
