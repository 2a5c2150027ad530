"""Task implementation contract."""

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable

from hr_agent.config import Config
from hr_agent.core import tasks as tasks_mod
from hr_agent.integrations.agent_client import AgentClient


@dataclass
class TaskContext:
    task_id: int
    task_type: str
    correlation_id: int | None = None
    ca_id: int | None = None
    ca_name: str | None = None
    retry_count: int = 0


@dataclass
class TaskResult:
    success: bool
    data: dict = field(default_factory=dict)
    error: str | None = None
    next_task: str | None = None
    next_params: dict | None = None
    final_status: str | None = None

    @classmethod
    def fail(cls, error: str) -> "TaskResult":
        return cls(success=False, error=error)


@dataclass
class TaskServices:
    """Collaborators handed to every task implementation."""

    db: sqlite3.Connection
    config: Config
    pool: Any = None
    runtime: Any = None
    client_factory: Callable[[str], AgentClient] | None = None

    def agent_client(self, ca_name: str) -> AgentClient:
        if self.client_factory:
            return self.client_factory(ca_name)
        return AgentClient.for_agent(ca_name, self.config.agent_port)


class BaseTask:
    name: str = ""
    dependencies: tuple[str, ...] = ()
    needs_ca: bool = False
    tags: tuple[str, ...] = ()

    def __init__(self, services: TaskServices | None = None):
        self.services = services

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        raise NotImplementedError

    def validate_params(self, params: dict, required: list[str]):
        """Raise ValueError naming every missing parameter."""
        missing = [key for key in required if params.get(key) in (None, "")]
        if missing:
            raise ValueError(f"{self.name}: missing required params: {', '.join(missing)}")

    def update_metadata(self, task_id: int, values: dict):
        if self.services is None:
            return
        tasks_mod.update_task_metadata(self.services.db, task_id, values)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"
