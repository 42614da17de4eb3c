"""Fire-and-forget task submission.

Callers enqueue a task and get an execution id back immediately. A fixed
pool of workers runs executions; progress is only observable through the
event channel and the task's stored status.
"""

import asyncio
import logging
import uuid

from prometheus_agent.errors import PrometheusError, TaskConflictError, TaskNotFound, TaskNotRunnable
from prometheus_agent.events import ALL_PROJECTS, EVENT_TASK_CREATED, EventChannel
from prometheus_agent.models import TaskStatus
from prometheus_agent.orchestrator import ExecutionReport, TaskOrchestrator
from prometheus_agent.store import TaskRepository

logger = logging.getLogger(__name__)


class TaskQueue:
    """Bounded worker pool in front of a TaskOrchestrator."""

    def __init__(self, orchestrator: TaskOrchestrator, store: TaskRepository, concurrency: int | None = None):
        self.orchestrator = orchestrator
        self.store = store
        self.concurrency = max(1, concurrency or orchestrator.config.orchestrator.worker_concurrency)
        self.reports: dict[str, ExecutionReport] = {}
        self._queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue()
        self._active: dict[str, asyncio.Event] = {}  # task id -> cancel event, queued or running
        self._workers: list[asyncio.Task] = []

    @property
    def active_task_ids(self) -> list[str]:
        return list(self._active)

    def submit(self, task_id: str) -> str:
        """Validate and enqueue a task. Returns the execution id."""
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        if task_id in self._active or task.status == TaskStatus.IN_PROGRESS:
            raise TaskConflictError(f"Task {task_id} is already running")
        if task.status == TaskStatus.COMPLETED:
            raise TaskNotRunnable(f"Task {task_id} is already completed")
        if not task.assignee_ids:
            raise TaskNotRunnable(f"Task {task_id} has no assigned agent")

        execution_id = uuid.uuid4().hex[:12]
        self._active[task_id] = asyncio.Event()
        self._queue.put_nowait((execution_id, task_id))
        logger.info(f"Task {task_id} queued as execution {execution_id}")
        return execution_id

    def cancel(self, task_id: str) -> bool:
        """Signal cancellation. Returns False if the task is not queued or running."""
        event = self._active.get(task_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for task {task_id}")
        return True

    def attach(self, events: EventChannel) -> None:
        """Run tasks announced through `task.created` notifications."""
        events.subscribe(ALL_PROJECTS, self._on_event)

    def _on_event(self, event_data: dict) -> None:
        if event_data.get("event") != EVENT_TASK_CREATED:
            return
        task_id = event_data.get("payload", {}).get("taskId")
        if not task_id:
            return
        logger.info(f"Caught 'task.created' for task {task_id}")
        try:
            self.submit(task_id)
        except PrometheusError as e:
            logger.warning(f"Ignoring task.created for {task_id}: {e}")

    # --- Worker lifecycle ---

    def start(self) -> None:
        """Spawn the worker pool on the running loop."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"prometheus-worker-{n}")
            for n in range(self.concurrency)
        ]

    async def _worker(self, n: int) -> None:
        while True:
            execution_id, task_id = await self._queue.get()
            try:
                logger.info(f"Worker {n} running task {task_id}")
                report = await self.orchestrator.execute_task(task_id, self._active.get(task_id))
                self.reports[execution_id] = report
            except Exception as e:
                logger.error(f"Worker {n} failed on task {task_id}: {e}")
            finally:
                self._active.pop(task_id, None)
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued execution has finished."""
        await self._queue.join()

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
