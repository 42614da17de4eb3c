"""Task store: SQLite persistence for projects, agents and tasks.

The orchestrator only needs the TaskRepository protocol below; TaskStore is
the bundled implementation used by the CLI.
"""

import json
import sqlite3
import time
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Protocol

from prometheus_agent.config import PROMETHEUS_DB
from prometheus_agent.errors import TaskNotFound
from prometheus_agent.models import Agent, LLMConfig, Project, Task, TaskStatus


class TaskRepository(Protocol):
    """Lookups and the single status write the orchestrator performs."""

    def get_task(self, task_id: str) -> Task | None: ...

    def get_project(self, project_id: str) -> Project | None: ...

    def get_agent(self, agent_id: str) -> Agent | None: ...

    def set_status(self, task_id: str, status: TaskStatus) -> None: ...


def new_id() -> str:
    return uuid.uuid4().hex[:12]


class TaskStore:
    """SQLite-backed task store."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path or PROMETHEUS_DB)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                name TEXT,
                git_repository_url TEXT,
                git_access_token TEXT,
                base_image TEXT,
                created_at REAL
            );

            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                name TEXT,
                role TEXT,
                llm_config_json TEXT,
                created_at REAL
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                title TEXT,
                description TEXT,
                project_id TEXT,
                status TEXT DEFAULT 'PENDING',
                assignee_ids_json TEXT,
                created_at REAL,
                updated_at REAL
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);
            CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
        """)
        conn.commit()
        conn.close()

    # --- Projects ---

    def create_project(
        self,
        name: str,
        git_repository_url: str,
        git_access_token: str | None = None,
        base_image: str | None = None,
        project_id: str | None = None,
    ) -> Project:
        project = Project(
            id=project_id or new_id(),
            name=name,
            git_repository_url=git_repository_url,
            git_access_token=git_access_token,
            base_image=base_image,
        )
        conn = self._connect()
        conn.execute(
            "INSERT INTO projects (id, name, git_repository_url, git_access_token, base_image, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (project.id, project.name, project.git_repository_url,
             project.git_access_token, project.base_image, time.time()),
        )
        conn.commit()
        conn.close()
        return project

    def get_project(self, project_id: str) -> Project | None:
        conn = self._connect()
        row = conn.execute(
            "SELECT id, name, git_repository_url, git_access_token, base_image "
            "FROM projects WHERE id = ?",
            (project_id,),
        ).fetchone()
        conn.close()
        return Project(*row) if row else None

    def list_projects(self) -> list[Project]:
        conn = self._connect()
        rows = conn.execute(
            "SELECT id, name, git_repository_url, git_access_token, base_image "
            "FROM projects ORDER BY created_at"
        ).fetchall()
        conn.close()
        return [Project(*r) for r in rows]

    # --- Agents ---

    def create_agent(self, name: str, role: str, llm_config: LLMConfig, agent_id: str | None = None) -> Agent:
        agent = Agent(id=agent_id or new_id(), name=name, role=role, llm_config=llm_config)
        conn = self._connect()
        conn.execute(
            "INSERT INTO agents (id, name, role, llm_config_json, created_at) VALUES (?, ?, ?, ?, ?)",
            (agent.id, agent.name, agent.role, json.dumps(asdict(llm_config)), time.time()),
        )
        conn.commit()
        conn.close()
        return agent

    def get_agent(self, agent_id: str) -> Agent | None:
        conn = self._connect()
        row = conn.execute(
            "SELECT id, name, role, llm_config_json FROM agents WHERE id = ?", (agent_id,)
        ).fetchone()
        conn.close()
        return self._row_to_agent(row) if row else None

    def list_agents(self) -> list[Agent]:
        conn = self._connect()
        rows = conn.execute(
            "SELECT id, name, role, llm_config_json FROM agents ORDER BY created_at"
        ).fetchall()
        conn.close()
        return [self._row_to_agent(r) for r in rows]

    @staticmethod
    def _row_to_agent(row) -> Agent:
        agent_id, name, role, llm_json = row
        return Agent(id=agent_id, name=name, role=role, llm_config=LLMConfig(**json.loads(llm_json)))

    # --- Tasks ---

    def create_task(
        self,
        title: str,
        description: str,
        project_id: str,
        assignee_ids: list[str] | None = None,
        task_id: str | None = None,
    ) -> Task:
        now = time.time()
        task = Task(
            id=task_id or new_id(),
            title=title,
            description=description,
            project_id=project_id,
            assignee_ids=list(assignee_ids or []),
        )
        conn = self._connect()
        conn.execute(
            "INSERT INTO tasks (id, title, description, project_id, status, assignee_ids_json, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (task.id, task.title, task.description, task.project_id, task.status.value,
             json.dumps(task.assignee_ids), now, now),
        )
        conn.commit()
        conn.close()
        return task

    def get_task(self, task_id: str) -> Task | None:
        conn = self._connect()
        row = conn.execute(
            "SELECT id, title, description, project_id, status, assignee_ids_json "
            "FROM tasks WHERE id = ?",
            (task_id,),
        ).fetchone()
        conn.close()
        return self._row_to_task(row) if row else None

    def list_tasks(self, project_id: str | None = None, status: TaskStatus | None = None) -> list[Task]:
        query = (
            "SELECT id, title, description, project_id, status, assignee_ids_json "
            "FROM tasks WHERE 1=1"
        )
        params: list = []
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        if status:
            query += " AND status = ?"
            params.append(TaskStatus(status).value)
        query += " ORDER BY created_at DESC"
        conn = self._connect()
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [self._row_to_task(r) for r in rows]

    def set_status(self, task_id: str, status: TaskStatus) -> None:
        conn = self._connect()
        cursor = conn.execute(
            "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
            (TaskStatus(status).value, time.time(), task_id),
        )
        conn.commit()
        conn.close()
        if cursor.rowcount == 0:
            raise TaskNotFound(task_id)

    @staticmethod
    def _row_to_task(row) -> Task:
        task_id, title, description, project_id, status, assignees_json = row
        return Task(
            id=task_id,
            title=title,
            description=description,
            project_id=project_id,
            status=TaskStatus(status),
            assignee_ids=json.loads(assignees_json or "[]"),
        )
