"""Shared fixtures: temporary databases, an in-memory container runtime and test tasks."""

import itertools
import tempfile
import threading
import time
from pathlib import Path

import pytest

from hr_agent.config import Config
from hr_agent.core import agents as agents_mod
from hr_agent.core.events import EventBus
from hr_agent.db.engine import init_db
from hr_agent.db.models import CA_IDLE
from hr_agent.integrations.docker import ContainerInfo, DockerError
from hr_agent.tasks.base import BaseTask, TaskContext, TaskResult


class FakeRuntime:
    """Container runtime that keeps containers in a dict keyed by name."""

    def __init__(self):
        self.containers: dict[str, ContainerInfo] = {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.fail_create = False
        self.fail_list = False
        self.create_delay = 0.0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, name: str, state: str = "running") -> ContainerInfo:
        info = ContainerInfo(id=f"cid-{next(self._ids)}", name=name, state=state)
        with self._lock:
            self.containers[name] = info
        return info

    def list_containers(self) -> list[ContainerInfo]:
        if self.fail_list:
            raise DockerError("docker daemon not reachable")
        with self._lock:
            return list(self.containers.values())

    def create_container(self, name: str, source_ref: str | None = None) -> str:
        if self.create_delay:
            time.sleep(self.create_delay)
        if self.fail_create:
            raise DockerError(f"docker run {name} failed")
        self.created.append(name)
        return self.add(name).id

    def inspect_container(self, name_or_id: str) -> ContainerInfo | None:
        with self._lock:
            return next(
                (c for c in self.containers.values() if name_or_id in (c.name, c.id)), None
            )

    def start_container(self, name_or_id: str) -> None:
        self._set_state(name_or_id, "running")

    def stop_container(self, name_or_id: str) -> None:
        self._set_state(name_or_id, "exited")

    def _set_state(self, name_or_id: str, state: str):
        with self._lock:
            for name, info in self.containers.items():
                if name_or_id in (info.name, info.id):
                    self.containers[name] = ContainerInfo(id=info.id, name=info.name, state=state)
                    return
        raise DockerError(f"No such container: {name_or_id}")

    def delete_container(self, name_or_id: str) -> None:
        with self._lock:
            for name, info in list(self.containers.items()):
                if name_or_id in (info.name, info.id):
                    del self.containers[name]
        self.deleted.append(name_or_id)


class EchoTask(BaseTask):
    name = "echo"

    def __init__(self, services=None):
        super().__init__(services)
        self.calls: list[TaskContext] = []

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.calls.append(context)
        return TaskResult(success=True, data={"echo": params.get("value")})


class WorkerTask(EchoTask):
    name = "work"
    needs_ca = True


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


@pytest.fixture
def config(tmp_path):
    return Config(
        db_path=tmp_path / "hra.db",
        ca_ready_timeout=2.0,
        ca_ready_poll=0.01,
        retry_delays=[0.01],
        max_retry_count=3,
        monitor_interval=60.0,
        health_check_intervals=[60.0],
        reconcile_intervals=[60.0],
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def registry():
    return {"echo": EchoTask(), "work": WorkerTask()}


@pytest.fixture
def make_agent(db, runtime):
    """Insert an agent row, with a running container unless told otherwise."""

    def _make(name, status=CA_IDLE, container=True, current_task_id=None, now=None):
        agent = agents_mod.create_agent(
            db, name, status=status, current_task_id=current_task_id, now=now
        )
        if container:
            info = runtime.add(name)
            agent = agents_mod.update_agent(db, agent.id, container_id=info.id, now=now)
        return agent

    return _make
