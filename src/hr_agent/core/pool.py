"""Coding agent pool: capacity policy, allocation and container lifecycle."""

import asyncio
import logging
import sqlite3
from collections import Counter
from dataclasses import asdict, dataclass

from hr_agent.config import Config
from hr_agent.core import agents as agents_mod
from hr_agent.core import tasks as tasks_mod
from hr_agent.core.events import Event, EventBus
from hr_agent.db.engine import current_timestamp
from hr_agent.db.models import (
    CA_BUSY,
    CA_CREATING,
    CA_DESTROYED,
    CA_DESTROYING,
    CA_ERROR,
    CA_IDLE,
    CA_NOT_FOUND,
    CA_PENDING_CREATE,
    QUEUED,
    RETRYING,
    CodingAgent,
)
from hr_agent.integrations.docker import ContainerInfo, DockerError

logger = logging.getLogger(__name__)


@dataclass
class PoolStatus:
    total: int = 0
    idle: int = 0
    busy: int = 0
    creating: int = 0
    error: int = 0
    not_found: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class AgentPool:
    """Owns the coding agent rows and their containers.

    Every read refreshes the cached view against the live container list.
    Allocation and creation decisions run under one lock, since the runtime
    calls they make suspend the event loop.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        runtime,
        bus: EventBus,
        max_count: int = 3,
        name_prefix: str = "hra_",
        creating_grace: float = 60.0,
    ):
        self.db = db
        self.runtime = runtime
        self.bus = bus
        self.max_count = max_count
        self.name_prefix = name_prefix
        self.creating_grace = creating_grace
        self._cache: dict[int, CodingAgent] = {}
        self._creations: dict[int, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, db: sqlite3.Connection, runtime, bus: EventBus, config: Config) -> "AgentPool":
        return cls(
            db, runtime, bus, config.max_ca_count, config.ca_name_prefix, config.ca_ready_timeout
        )

    def name_for(self, correlation_number: int) -> str:
        return f"{self.name_prefix}{correlation_number}"

    def get_by_name(self, name: str) -> CodingAgent | None:
        return agents_mod.get_live_agent_by_name(self.db, name)

    # ── Reads ────────────────────────────────────────────────────────────────

    async def refresh(self) -> list[CodingAgent]:
        """Rebuild the cache from persisted rows and the live container list.

        An idle or creating agent without a running container is flagged
        error, unless its create call may still be in flight: started here,
        or started by any process less than ``creating_grace`` seconds ago.
        """
        containers = await self._containers()
        agents = agents_mod.list_agents(self.db)
        now = current_timestamp()

        flagged = []
        if containers is not None:
            for i, agent in enumerate(agents):
                if agent.status not in (CA_IDLE, CA_CREATING) or self._may_be_creating(agent, now):
                    continue
                container = containers.get(agent.name)
                if container is None or not container.running:
                    agents[i] = agents_mod.update_agent(self.db, agent.id, status=CA_ERROR)
                    flagged.append((agent, container))

        self._cache = {a.id: a for a in agents}

        for agent, container in flagged:
            reason = "container missing" if container is None else f"container {container.state}"
            logger.warning(
                "Coding agent %s (id=%s) was %s but %s; marked error",
                agent.name, agent.id, agent.status, reason,
            )
            self.bus.emit(
                Event.WORKER_ERROR,
                {"ca_id": agent.id, "name": agent.name, "reason": reason},
            )
        return list(self._cache.values())

    def _may_be_creating(self, agent: CodingAgent, now: int) -> bool:
        if agent.id in self._creations:
            return True
        return agent.status == CA_CREATING and now - agent.created_at < self.creating_grace

    def persisted_status(self) -> tuple[PoolStatus, bool]:
        """Counts and the creation verdict from stored rows alone.

        Touches neither the containers nor the rows, so it is safe to call
        from a process other than the one running the scheduler.
        """
        agents = agents_mod.list_agents(self.db)
        return self._status(agents), self._can_create(agents)

    async def get_all(self) -> list[CodingAgent]:
        return await self.refresh()

    async def get_idle(self) -> list[CodingAgent]:
        return [a for a in await self.refresh() if a.status == CA_IDLE]

    async def get_busy(self) -> list[CodingAgent]:
        return [a for a in await self.refresh() if a.status == CA_BUSY]

    async def get_creating(self) -> list[CodingAgent]:
        return [a for a in await self.refresh() if a.status == CA_CREATING]

    async def get_status(self) -> PoolStatus:
        return self._status(await self.refresh())

    async def can_create(self, only_name: str | None = None) -> bool:
        return self._can_create(await self.refresh(), only_name)

    def _status(self, agents: list[CodingAgent]) -> PoolStatus:
        counts = Counter(a.status for a in agents)
        return PoolStatus(
            total=len(agents),
            idle=counts[CA_IDLE],
            busy=counts[CA_BUSY],
            creating=counts[CA_CREATING] + counts[CA_PENDING_CREATE],
            error=counts[CA_ERROR],
            not_found=counts[CA_NOT_FOUND],
        )

    def _can_create(self, agents: list[CodingAgent], only_name: str | None = None) -> bool:
        status = self._status(agents)
        # Only idle agents that allocate() could hand out count as reusable.
        if any(self._reusable(a, only_name) for a in agents):
            return False
        if status.creating:
            return False
        if status.total < self.max_count:
            return True
        # Saturated: every agent is working, so grow past the maximum.
        if status.busy and status.busy == status.total:
            return True
        if status.error:
            return True
        return False

    # ── Allocation ───────────────────────────────────────────────────────────

    async def allocate(
        self,
        task_id: int,
        preferred_name: str | None = None,
        only_name: str | None = None,
    ) -> CodingAgent | None:
        """Hand an idle agent to a task, or return None when none is free.

        An agent reserved for this task wins, then one with the preferred
        name, then the oldest idle agent. ``only_name`` restricts the choice
        to the agent with that name.
        """
        async with self._lock:
            agents = await self.refresh()
            candidates = [
                a for a in agents
                if a.status == CA_IDLE
                and (only_name is None or a.name == only_name)
                and not self._reserved_elsewhere(a, task_id)
            ]
            if not candidates:
                return None

            chosen = (
                next((a for a in candidates if a.current_task_id == task_id), None)
                or next((a for a in candidates if preferred_name and a.name == preferred_name), None)
                or candidates[0]
            )
            agent = agents_mod.update_agent(
                self.db, chosen.id, status=CA_BUSY, current_task_id=task_id
            )
            self._cache[agent.id] = agent

        logger.info("Allocated coding agent %s (id=%s) to task %s", agent.name, agent.id, task_id)
        self.bus.emit(
            Event.WORKER_ALLOCATED,
            {"ca_id": agent.id, "name": agent.name, "task_id": task_id},
        )
        return agent

    def release(
        self,
        ca_id: int,
        task_id: int | None = None,
        keep_reservation: bool = False,
    ) -> CodingAgent | None:
        """Return a busy agent to idle.

        With ``task_id`` the release only applies while the agent still
        belongs to that task. ``keep_reservation`` leaves the agent reserved
        for the same task, e.g. while it waits out a retry delay.
        """
        agent = agents_mod.get_agent(self.db, ca_id)
        if not agent:
            return None
        if task_id is not None and agent.current_task_id not in (None, task_id):
            logger.debug(
                "Not releasing agent %s: it now belongs to task %s", agent.name, agent.current_task_id
            )
            return agent

        owner = agent.current_task_id if keep_reservation else None
        released = False
        if agent.status == CA_BUSY:
            agent = agents_mod.update_agent(self.db, ca_id, status=CA_IDLE, current_task_id=owner)
            released = True
        elif agent.current_task_id != owner:
            agent = agents_mod.update_agent(self.db, ca_id, current_task_id=owner)

        if agent.status != CA_DESTROYED:
            self._cache[agent.id] = agent
        if released:
            logger.info("Released coding agent %s (id=%s)", agent.name, agent.id)
            self.bus.emit(
                Event.WORKER_RELEASED,
                {"ca_id": agent.id, "name": agent.name, "task_id": task_id},
            )
        return agent

    def mark_error(self, ca_id: int, reason: str) -> CodingAgent | None:
        agent = agents_mod.get_agent(self.db, ca_id)
        if not agent or agent.status in (CA_DESTROYED, CA_ERROR):
            return agent
        agent = agents_mod.update_agent(self.db, ca_id, status=CA_ERROR)
        self._cache[agent.id] = agent
        logger.warning("Coding agent %s (id=%s) marked error: %s", agent.name, agent.id, reason)
        self.bus.emit(Event.WORKER_ERROR, {"ca_id": agent.id, "name": agent.name, "reason": reason})
        return agent

    def _reusable(self, agent: CodingAgent, only_name: str | None) -> bool:
        if agent.status != CA_IDLE or (only_name is not None and agent.name != only_name):
            return False
        return not self._reserved_elsewhere(agent)

    def _reserved_elsewhere(self, agent: CodingAgent, task_id: int | None = None) -> bool:
        owner = agent.current_task_id
        if owner is None or owner == task_id:
            return False
        task = tasks_mod.get_task(self.db, owner)
        return task is not None and not task.is_deleted and task.status in (QUEUED, RETRYING)

    # ── Creation / destruction ───────────────────────────────────────────────

    async def create(
        self,
        correlation_number: int,
        task_id: int | None = None,
        source_ref: str | None = None,
    ) -> CodingAgent | None:
        """Insert a creating agent and start its container in the background.

        Returns None when a concurrent creation under the same name could
        not be adopted; the caller should try again later.
        """
        name = self.name_for(correlation_number)
        async with self._lock:
            existing = agents_mod.get_live_agent_by_name(self.db, name)
            if existing:
                logger.warning(
                    "Coding agent %s already exists (id=%s, %s); destroying it first",
                    name, existing.id, existing.status,
                )
                await self._destroy(existing)

            agents = await self.refresh()
            if len(agents) >= self.max_count:
                errored = [a for a in agents if a.status == CA_ERROR]
                if errored:
                    oldest = min(errored, key=lambda a: (a.created_at, a.id))
                    logger.info("Pool at capacity; evicting errored agent %s", oldest.name)
                    await self._destroy(oldest)

            try:
                agent = agents_mod.create_agent(
                    self.db, name, correlation_id=correlation_number, current_task_id=task_id
                )
            except sqlite3.IntegrityError:
                return await self._resolve_name_conflict(name)

            self._cache[agent.id] = agent
            self._creations[agent.id] = asyncio.create_task(
                self._create_container(agent, source_ref), name=f"create-{name}"
            )

        logger.info("Creating coding agent %s (id=%s) for task %s", name, agent.id, task_id)
        return agent

    async def _resolve_name_conflict(self, name: str) -> CodingAgent | None:
        conflict = agents_mod.get_live_agent_by_name(self.db, name)
        if conflict and conflict.status == CA_CREATING:
            logger.info("Adopting in-flight creation of %s (id=%s)", name, conflict.id)
            return conflict
        if conflict:
            logger.warning("Name conflict on %s (id=%s, %s); destroying", name, conflict.id, conflict.status)
            await self._destroy(conflict)
        return None

    async def _create_container(self, agent: CodingAgent, source_ref: str | None):
        try:
            container_id = await asyncio.to_thread(
                self.runtime.create_container, agent.name, source_ref
            )
        except Exception as e:
            logger.exception("Container creation failed for %s", agent.name)
            self._creations.pop(agent.id, None)
            current = agents_mod.get_agent(self.db, agent.id)
            if current and current.status == CA_CREATING:
                updated = agents_mod.update_agent(self.db, agent.id, status=CA_ERROR)
                self._cache[agent.id] = updated
                self.bus.emit(
                    Event.WORKER_ERROR,
                    {"ca_id": agent.id, "name": agent.name, "reason": str(e)},
                )
            return

        self._creations.pop(agent.id, None)
        current = agents_mod.get_agent(self.db, agent.id)
        if current is None or current.status != CA_CREATING:
            # Destroyed or given up on while the container was starting.
            logger.info("Discarding container for %s (now %s)", agent.name, current and current.status)
            try:
                await asyncio.to_thread(self.runtime.delete_container, container_id)
            except DockerError:
                logger.exception("Failed to remove orphaned container %s", container_id)
            return

        updated = agents_mod.update_agent(
            self.db, agent.id, status=CA_IDLE, container_id=container_id
        )
        self._cache[agent.id] = updated
        logger.info("Coding agent %s (id=%s) is ready", agent.name, agent.id)
        self.bus.emit(
            Event.WORKER_CREATED,
            {"ca_id": agent.id, "name": agent.name, "container_id": container_id},
        )

    async def destroy(self, ca_id: int) -> bool:
        async with self._lock:
            agent = agents_mod.get_agent(self.db, ca_id)
            if not agent or agent.status == CA_DESTROYED:
                return False
            return await self._destroy(agent)

    async def destroy_by_name(self, name: str) -> bool:
        agent = agents_mod.get_live_agent_by_name(self.db, name)
        if not agent:
            return False
        return await self.destroy(agent.id)

    async def _destroy(self, agent: CodingAgent) -> bool:
        agents_mod.update_agent(self.db, agent.id, status=CA_DESTROYING)
        target = agent.container_id or agent.name
        try:
            await asyncio.to_thread(self.runtime.delete_container, target)
        except DockerError:
            logger.exception("Failed to remove container for %s", agent.name)
            self._cache[agent.id] = agents_mod.update_agent(self.db, agent.id, status=CA_ERROR)
            return False

        agents_mod.update_agent(
            self.db, agent.id, status=CA_DESTROYED, container_id="", current_task_id=None
        )
        self._cache.pop(agent.id, None)
        logger.info("Destroyed coding agent %s (id=%s)", agent.name, agent.id)
        self.bus.emit(Event.WORKER_DESTROYED, {"ca_id": agent.id, "name": agent.name})
        return True

    async def wait_for_creations(self):
        """Wait for every in-flight container creation to settle."""
        while pending := [t for t in self._creations.values() if not t.done()]:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _containers(self) -> dict[str, ContainerInfo] | None:
        try:
            containers = await asyncio.to_thread(self.runtime.list_containers)
        except DockerError:
            logger.exception("Could not list containers; using persisted pool state")
            return None
        return {c.name: c for c in containers}
