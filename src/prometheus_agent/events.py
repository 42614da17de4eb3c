"""Progress channel: per-project fan-out of orchestrator events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Standard event names
EVENT_AGENT_LOG = "agentLog"
EVENT_TASK_STATUS = "taskStatusUpdate"
EVENT_TASK_CREATED = "task.created"

ALL_PROJECTS = "*"


class EventChannel:
    """Fire-and-forget publisher keyed by project id.

    Listeners registered for a project receive only that project's events;
    listeners registered for "*" receive everything. Coroutine listeners are
    scheduled on the running loop. A failing listener never affects the
    publisher.
    """

    def __init__(self, history_size: int = 200):
        self._listeners: dict[str, list[Callable]] = {}
        self._history: deque[dict] = deque(maxlen=history_size)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, project_id: str, callback: Callable[[dict], Any]) -> None:
        """Register a listener for one project ("*" for all)."""
        listeners = self._listeners.setdefault(project_id, [])
        if callback not in listeners:
            listeners.append(callback)

    def unsubscribe(self, project_id: str, callback: Callable) -> None:
        try:
            self._listeners.get(project_id, []).remove(callback)
        except ValueError:
            pass

    def emit(self, project_id: str, event: str, payload: dict[str, Any]) -> dict:
        """Deliver an event to project and wildcard listeners."""
        event_data = {
            "project_id": project_id,
            "event": event,
            "payload": payload,
        }
        self._history.append(event_data)

        targets = [*self._listeners.get(project_id, []), *self._listeners.get(ALL_PROJECTS, [])]
        for listener in targets:
            try:
                result = listener(event_data)
                if inspect.isawaitable(result):
                    self._schedule(result)
            except Exception as e:
                logger.warning(f"Event listener error: {e}")
        return event_data

    def _schedule(self, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning("Async event listener skipped: no running event loop")
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Event listener error: {task.exception()}")

    # --- Typed helpers ---

    def agent_log(self, project_id: str, message: str, agent_id: str, agent_name: str) -> dict:
        return self.emit(project_id, EVENT_AGENT_LOG, {
            "message": message,
            "agentId": agent_id,
            "agentName": agent_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def task_status(
        self,
        project_id: str,
        task_id: str,
        new_status: str,
        agent_id: str | None = None,
        agent_name: str | None = None,
    ) -> dict:
        return self.emit(project_id, EVENT_TASK_STATUS, {
            "taskId": task_id,
            "newStatus": new_status,
            "agentId": agent_id,
            "agentName": agent_name,
        })

    def recent(self, project_id: str | None = None, limit: int = 50) -> list[dict]:
        """Most recent events, oldest first."""
        events = [e for e in self._history if project_id is None or e["project_id"] == project_id]
        return events[-limit:]
