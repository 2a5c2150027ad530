"""Background reconciliation of coding agent rows against live containers."""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass

from hr_agent.config import Config
from hr_agent.core import agents as agents_mod
from hr_agent.core.events import Event, EventBus
from hr_agent.core.ticker import AdaptiveTicker
from hr_agent.db.models import (
    CA_BUSY,
    CA_CREATING,
    CA_DESTROYING,
    CA_ERROR,
    CA_IDLE,
    CA_NOT_FOUND,
    CA_PENDING_CREATE,
    CodingAgent,
)
from hr_agent.integrations.docker import ContainerInfo

logger = logging.getLogger(__name__)

# Rows owned by an in-progress creation are left to the pool and the GC.
SKIPPED_STATUSES = (CA_PENDING_CREATE, CA_CREATING)


@dataclass
class SyncResult:
    ca_id: int
    name: str
    old_status: str
    new_status: str
    action: str = "none"

    @property
    def changed(self) -> bool:
        return self.action != "none"


class StatusReconciler:
    def __init__(
        self,
        db: sqlite3.Connection,
        runtime,
        bus: EventBus | None = None,
        intervals: list[float] | None = None,
    ):
        self.db = db
        self.runtime = runtime
        self.bus = bus
        self.ticker = AdaptiveTicker(
            "status-reconciler", intervals or [10.0, 30.0, 60.0, 120.0, 300.0], self._check
        )

    @classmethod
    def from_config(
        cls, db: sqlite3.Connection, runtime, bus: EventBus | None, config: Config
    ) -> "StatusReconciler":
        return cls(db, runtime, bus, config.reconcile_intervals)

    def start(self):
        self.ticker.start(run_immediately=True)

    async def stop(self):
        await self.ticker.stop()

    async def sync_all(self) -> list[SyncResult]:
        """Diff every live agent row against the container runtime once."""
        containers = {
            c.name: c for c in await asyncio.to_thread(self.runtime.list_containers)
        }
        results = []
        for agent in agents_mod.list_agents(self.db):
            if agent.status in SKIPPED_STATUSES:
                continue
            result = self.reconcile(agent, containers.get(agent.name))
            if result.changed:
                logger.info(
                    "Reconciled %s (id=%s): %s -> %s (%s)",
                    result.name, result.ca_id, result.old_status, result.new_status, result.action,
                )
                if result.new_status in (CA_ERROR, CA_NOT_FOUND) and self.bus:
                    self.bus.emit(
                        Event.WORKER_ERROR,
                        {"ca_id": agent.id, "name": agent.name, "reason": result.action},
                    )
            results.append(result)
        return results

    def reconcile(self, agent: CodingAgent, container: ContainerInfo | None) -> SyncResult:
        """Apply the drift rules to one agent and persist the outcome."""
        result = SyncResult(agent.id, agent.name, agent.status, agent.status)

        if container is None:
            if agent.status == CA_NOT_FOUND:
                return result
            if agent.container_id or agent.status not in (CA_ERROR, CA_DESTROYING):
                return self._apply(result, CA_NOT_FOUND, "not_found")
            return result

        if not container.running:
            if agent.status in (CA_IDLE, CA_BUSY):
                return self._apply(result, CA_ERROR, "error")
            return result

        if not agent.container_id:
            return self._apply(result, CA_IDLE, "adopted", container_id=container.id)
        if agent.status == CA_ERROR:
            return self._apply(result, CA_IDLE, "recovered")
        return result

    def _apply(
        self,
        result: SyncResult,
        status: str,
        action: str,
        container_id: str | None = None,
    ) -> SyncResult:
        kwargs = {}
        if status == CA_IDLE:
            kwargs["current_task_id"] = None
        agents_mod.update_agent(
            self.db, result.ca_id, status=status, container_id=container_id, **kwargs
        )
        result.new_status = status
        result.action = action
        return result

    async def _check(self) -> bool:
        results = await self.sync_all()
        changed = [r for r in results if r.changed]
        if changed:
            logger.info("Status sync: %d of %d agent(s) updated", len(changed), len(results))
        return bool(changed)
