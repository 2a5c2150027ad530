"""Wiring of the scheduler, pool, reconciler and notifier into one service."""

import logging
import sqlite3
from typing import Callable

from hr_agent.config import Config
from hr_agent.core.events import EventBus
from hr_agent.core.pool import AgentPool
from hr_agent.core.reconciler import StatusReconciler
from hr_agent.core.scheduler import Scheduler
from hr_agent.db.engine import init_db
from hr_agent.integrations.agent_client import AgentClient
from hr_agent.integrations.docker import DockerRuntime
from hr_agent.tasks.base import BaseTask, TaskServices
from hr_agent.tasks.notify import FailureNotifier
from hr_agent.tasks.registry import build_registry

logger = logging.getLogger(__name__)


class Orchestrator:
    def __init__(
        self,
        config: Config,
        db: sqlite3.Connection | None = None,
        runtime=None,
        registry: dict[str, BaseTask] | None = None,
        client_factory: Callable[[str], AgentClient] | None = None,
    ):
        self.config = config
        self.db = db if db is not None else init_db(config.db_path)
        self._owns_db = db is None
        self.bus = EventBus()
        self.runtime = runtime or DockerRuntime.from_config(config)
        self.pool = AgentPool.from_config(self.db, self.runtime, self.bus, config)
        self.services = TaskServices(
            db=self.db,
            config=config,
            pool=self.pool,
            runtime=self.runtime,
            client_factory=client_factory,
        )
        self.registry = registry if registry is not None else build_registry(self.services)
        self.scheduler = Scheduler(self.db, self.bus, self.pool, self.registry, config)
        self.reconciler = StatusReconciler.from_config(self.db, self.runtime, self.bus, config)
        self.notifier = FailureNotifier(config)
        self.notifier.register(self.bus)

    async def start(self):
        await self.scheduler.start()
        self.reconciler.start()
        logger.info("Orchestrator started (max %d coding agents)", self.config.max_ca_count)

    async def stop(self):
        await self.reconciler.stop()
        await self.scheduler.stop()
        if self._owns_db:
            self.db.close()
        logger.info("Orchestrator stopped")
