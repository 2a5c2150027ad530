"""Task scheduler: priority queue, agent allocation, execution and retries."""

import asyncio
import logging
import sqlite3

from hr_agent import priorities
from hr_agent.config import Config
from hr_agent.core import tasks as tasks_mod
from hr_agent.core.events import Event, EventBus
from hr_agent.core.gc import GarbageCollector, GCStats
from hr_agent.core.pool import AgentPool
from hr_agent.core.queue import QueuedTask, TaskQueue
from hr_agent.core.retry import RetryManager
from hr_agent.core.ticker import AdaptiveTicker
from hr_agent.db.engine import current_timestamp
from hr_agent.db.models import (
    CA_BUSY,
    CA_CREATING,
    CA_IDLE,
    CANCELLED,
    COMPLETED,
    ERROR,
    QUEUED,
    RETRYING,
    RUNNING,
    TAG_REQUIRES_CA,
    TERMINAL_STATUSES,
    TIMEOUT,
    CodingAgent,
    Task,
)
from hr_agent.tasks.base import BaseTask, TaskContext, TaskResult

logger = logging.getLogger(__name__)

HEALTH_CHECK_TASK = "ca_status_check"


def create_queued_task(
    db: sqlite3.Connection,
    registry: dict[str, BaseTask],
    task_type: str,
    params: dict | None = None,
    priority: int = priorities.DEFAULT,
    correlation_id: int | None = None,
) -> Task:
    """Persist a queued task, taking dependencies and tags from its implementation."""
    impl = registry.get(task_type)
    if impl is None:
        raise ValueError(f"Unknown task type: {task_type}")
    tags = list(impl.tags)
    if impl.needs_ca and TAG_REQUIRES_CA not in tags:
        tags.append(TAG_REQUIRES_CA)
    return tasks_mod.create_task(
        db,
        task_type,
        metadata=params,
        priority=priority,
        correlation_id=correlation_id,
        dependencies=list(impl.dependencies),
        tags=tags,
    )


class Scheduler:
    """Pulls tasks off the queue, binds coding agents and runs implementations.

    All state lives on the event loop thread: the queue, the retry counts
    and the set of running tasks. Executions run as background asyncio
    tasks; completions feed back through the event bus.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        bus: EventBus,
        pool: AgentPool,
        registry: dict[str, BaseTask],
        config: Config | None = None,
        retry: RetryManager | None = None,
        gc: GarbageCollector | None = None,
    ):
        self.db = db
        self.bus = bus
        self.pool = pool
        self.registry = registry
        self.config = config or Config()
        self.retry = retry or RetryManager.from_config(self.config)
        self.gc = gc or GarbageCollector.from_config(db, self.config)
        self.queue = TaskQueue()
        self.running = False
        self.running_tasks: set[int] = set()
        self._claimed: set[int] = set()
        self._background: set[asyncio.Task] = set()
        self._retry_timers: dict[int, asyncio.Task] = {}
        self._health_snapshots: dict[int, tuple] = {}

        self.timeout_monitor = AdaptiveTicker(
            "timeout-monitor", [self.config.monitor_interval], self._check_timeouts
        )
        self.health_poll = AdaptiveTicker(
            "health-poll", self.config.health_check_intervals, self._poll_health
        )
        self._register_listeners()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self):
        if self.running:
            return
        self.running = True
        loaded = self._load_queued_tasks()
        self.timeout_monitor.start()
        self.health_poll.start()
        logger.info("Scheduler started with %d queued task(s)", loaded)
        await self.schedule_next()

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await self.timeout_monitor.stop()
        await self.health_poll.stop()
        pending = list(self._background)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._retry_timers.clear()
        logger.info("Scheduler stopped")

    async def wait_idle(self):
        """Wait until no execution, retry timer or event delivery is pending."""
        while True:
            await self.bus.drain()
            await self.pool.wait_for_creations()
            pending = [t for t in self._background if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)

    def _load_queued_tasks(self) -> int:
        """Enqueue queued rows that are not already queued or being worked on."""
        added = 0
        for task in tasks_mod.list_tasks(self.db, status=QUEUED):
            if task.id in self._claimed or task.id in self.running_tasks:
                continue
            if not self.queue.contains(task.id):
                self.queue.enqueue(task.id, task.type, task.priority)
                added += 1
        return added

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── Inbound ──────────────────────────────────────────────────────────────

    async def add_task(
        self,
        task_type: str,
        params: dict | None = None,
        priority: int = priorities.DEFAULT,
        correlation_id: int | None = None,
    ) -> int:
        """Persist and enqueue a task. Returns the new task id."""
        task = create_queued_task(
            self.db, self.registry, task_type, params, priority, correlation_id
        )
        self.queue.enqueue(task.id, task.type, task.priority)
        logger.info(
            "Queued task %s (%s, priority %s, correlation %s)",
            task.id, task.type, task.priority, task.correlation_id,
        )
        self.bus.emit(Event.TASK_QUEUED, self._payload(task))
        self._spawn(self.schedule_next(), f"schedule-after-{task.id}")
        return task.id

    async def cancel_task(self, task_id: int) -> Task | None:
        """Mark a task cancelled. A running execution is left to finish."""
        task = tasks_mod.get_task(self.db, task_id)
        if not task:
            return None
        if task.status in TERMINAL_STATUSES:
            raise ValueError(f"Task {task_id} is already {task.status}")

        self.queue.remove(task_id)
        timer = self._retry_timers.pop(task_id, None)
        if timer:
            timer.cancel()
        self.retry.clear(task_id)
        task = tasks_mod.update_task_status(self.db, task_id, CANCELLED)
        logger.info("Cancelled task %s (%s)", task_id, task.type)
        await self.bus.emit_async(Event.TASK_CANCELLED, self._payload(task))
        return tasks_mod.get_task(self.db, task_id)

    # ── Scheduling ───────────────────────────────────────────────────────────

    async def schedule_next(self):
        """Dispatch eligible tasks until the queue is drained or blocked on agents."""
        while self.running:
            item = self.queue.dequeue(self._is_eligible)
            if item is None:
                self._collect_garbage()
                return

            task = tasks_mod.get_task(self.db, item.task_id)
            if task is None or task.is_deleted or task.status not in (QUEUED, RETRYING):
                logger.debug("Dropping stale queue entry for task %s", item.task_id)
                self.queue.forget(item.task_id)
                continue

            impl = self.registry.get(task.type)
            ca = None
            if impl is not None and impl.needs_ca:
                self._claimed.add(task.id)
                try:
                    ca = await self._acquire_ca(task)
                finally:
                    self._claimed.discard(task.id)
                if ca is None:
                    self.queue.enqueue(task.id, task.type, task.priority)
                    logger.info("No coding agent available for task %s; requeued", task.id)
                    return
                tasks_mod.assign_task_ca(self.db, task.id, ca.id)

            self.queue.forget(task.id)
            self.running_tasks.add(task.id)
            self._spawn(self._execute(task.id, ca), f"task-{task.id}")

    def _is_eligible(self, item: QueuedTask) -> bool:
        task = tasks_mod.get_task(self.db, item.task_id)
        if task is None or task.status not in (QUEUED, RETRYING):
            return True  # dequeued and dropped by schedule_next
        return all(
            tasks_mod.has_completed_sibling(self.db, dep, task.correlation_id)
            for dep in task.dependencies
        )

    async def _acquire_ca(self, task: Task) -> CodingAgent | None:
        """Allocate an idle agent, or create one for the task's correlation id.

        A task tied to an issue only ever runs on that issue's agent.
        """
        if task.correlation_id is None:
            return await self.pool.allocate(task.id, preferred_name=task.metadata.get("caName"))

        name = self.pool.name_for(task.correlation_id)
        ca = await self.pool.allocate(task.id, only_name=name)
        if ca is not None:
            return ca
        existing = self.pool.get_by_name(name)
        if existing and existing.status in (CA_IDLE, CA_BUSY, CA_CREATING):
            return None
        if not await self.pool.can_create(only_name=name):
            return None

        created = await self.pool.create(
            task.correlation_id, task.id, source_ref=task.metadata.get("sourceRef")
        )
        if created is None:
            return None
        tasks_mod.assign_task_ca(self.db, task.id, created.id)

        ready = await self._wait_for_ca(created)
        if ready is None:
            return None
        return await self.pool.allocate(task.id, only_name=ready.name)

    async def _wait_for_ca(self, ca: CodingAgent) -> CodingAgent | None:
        """Poll until a new agent is idle. Gives up on error or after the ready timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.ca_ready_timeout
        while loop.time() < deadline:
            current = next((a for a in await self.pool.get_all() if a.id == ca.id), None)
            if current is None or current.status not in (CA_CREATING, CA_IDLE):
                logger.warning(
                    "Coding agent %s failed to start (%s)",
                    ca.name, current.status if current else "gone",
                )
                return None
            if current.status == CA_IDLE:
                return current
            await asyncio.sleep(self.config.ca_ready_poll)

        self.pool.mark_error(ca.id, f"not ready after {self.config.ca_ready_timeout}s")
        return None

    # ── Execution ────────────────────────────────────────────────────────────

    async def _execute(self, task_id: int, ca: CodingAgent | None):
        task = tasks_mod.get_task(self.db, task_id)
        impl = self.registry.get(task.type)
        if impl is None:
            logger.error("No implementation registered for task type %s", task.type)
            task = tasks_mod.update_task_status(self.db, task_id, ERROR)
            tasks_mod.update_task_metadata(
                self.db, task_id, {"last_error": f"unknown task type {task.type}"}
            )
            await self.bus.emit_async(
                Event.TASK_FAILED,
                {**self._payload(task), "error": f"unknown task type {task.type}"},
            )
            await self.schedule_next()
            return

        task = tasks_mod.update_task_status(self.db, task_id, RUNNING)
        self.bus.emit(Event.TASK_STARTED, self._payload(task))
        context = TaskContext(
            task_id=task.id,
            task_type=task.type,
            correlation_id=task.correlation_id,
            ca_id=ca.id if ca else None,
            ca_name=ca.name if ca else None,
            retry_count=self.retry.count(task.id),
        )
        logger.info("Running task %s (%s)", task.id, task.type)

        try:
            result = await impl.execute(dict(task.metadata), context)
        except Exception as e:
            logger.exception("Task %s (%s) raised", task.id, task.type)
            result = TaskResult.fail(str(e) or e.__class__.__name__)

        if result.success:
            await self._on_success(task, result)
        else:
            await self._on_failure(task, result.error or "task reported failure")

    async def _on_success(self, task: Task, result: TaskResult):
        current = tasks_mod.get_task(self.db, task.id)
        finished_normally = current.status == RUNNING
        if finished_normally:
            if result.data:
                tasks_mod.update_task_metadata(self.db, task.id, {"result": result.data})
            current = tasks_mod.update_task_status(
                self.db, task.id, result.final_status or COMPLETED
            )
            logger.info("Task %s (%s) finished: %s", task.id, task.type, current.status)
        else:
            logger.warning(
                "Task %s (%s) finished after it was marked %s; keeping that status",
                task.id, task.type, current.status,
            )

        await self.bus.emit_async(
            Event.TASK_COMPLETED, {**self._payload(current), "data": result.data}
        )

        if finished_normally and result.next_task:
            self._chain(current, result)
        await self.schedule_next()

    def _chain(self, parent: Task, result: TaskResult):
        try:
            child = create_queued_task(
                self.db,
                self.registry,
                result.next_task,
                {**(result.next_params or {}), "parentTaskId": parent.id},
                parent.priority,
                parent.correlation_id,
            )
        except ValueError:
            logger.exception("Task %s requested an unknown next task %s", parent.id, result.next_task)
            return
        self.queue.enqueue(child.id, child.type, child.priority)
        logger.info("Task %s chained %s as task %s", parent.id, child.type, child.id)
        self.bus.emit(Event.TASK_QUEUED, self._payload(child))

    async def _on_failure(self, task: Task, error: str):
        attempt = self.retry.increment(task.id)
        current = tasks_mod.get_task(self.db, task.id)
        tasks_mod.update_task_metadata(
            self.db, task.id, {"last_error": error, "retry_count": attempt}
        )

        if current.status != RUNNING:
            logger.warning(
                "Task %s (%s) failed after it was marked %s: %s",
                task.id, task.type, current.status, error,
            )
            await self.bus.emit_async(Event.TASK_FAILED, {**self._payload(current), "error": error})
            await self.schedule_next()
            return

        if self.retry.can_retry(task.id):
            delay = self.retry.next_delay(task.id)
            current = tasks_mod.update_task_status(self.db, task.id, RETRYING)
            if current.ca_id:
                self.pool.release(current.ca_id, task.id, keep_reservation=True)
            self.running_tasks.discard(task.id)
            logger.warning(
                "Task %s (%s) failed (attempt %d), retrying in %ss: %s",
                task.id, task.type, attempt, delay, error,
            )
            await self.bus.emit_async(
                Event.TASK_RETRYING,
                {**self._payload(current), "error": error, "attempt": attempt, "delay": delay},
            )
            self._retry_timers[task.id] = self._spawn(
                self._retry_after(task.id, delay), f"retry-{task.id}"
            )
        else:
            current = tasks_mod.update_task_status(self.db, task.id, ERROR)
            logger.error(
                "Task %s (%s) failed after %d attempt(s): %s", task.id, task.type, attempt, error
            )
            await self.bus.emit_async(Event.TASK_FAILED, {**self._payload(current), "error": error})
            await self.schedule_next()

    async def _retry_after(self, task_id: int, delay: float):
        try:
            await asyncio.sleep(delay)
        finally:
            self._retry_timers.pop(task_id, None)

        task = tasks_mod.get_task(self.db, task_id)
        if not self.running or task is None or task.status != RETRYING or task.is_deleted:
            return
        self.queue.enqueue(task.id, task.type, task.priority)
        await self.schedule_next()

    # ── Listeners ────────────────────────────────────────────────────────────

    def _register_listeners(self):
        self.bus.on(Event.TASK_COMPLETED, self._on_task_finished)
        self.bus.on(Event.TASK_FAILED, self._on_task_finished)
        self.bus.on(Event.TASK_TIMEOUT, self._on_task_timeout)
        self.bus.on(Event.TASK_CANCELLED, self._on_task_cancelled)
        self.bus.on(Event.WORKER_ERROR, self._on_worker_error)
        self.bus.on(Event.WORKER_CREATED, self._on_worker_available)
        self.bus.on(Event.WORKER_RELEASED, self._on_worker_available)

    async def _on_task_finished(self, payload: dict):
        task_id = payload["task_id"]
        if payload.get("ca_id"):
            self.pool.release(payload["ca_id"], task_id)
        self.running_tasks.discard(task_id)
        self.retry.clear(task_id)
        self._collect_garbage()

    async def _on_task_timeout(self, payload: dict):
        task = tasks_mod.get_task(self.db, payload["task_id"])
        if task and task.status == RUNNING:
            tasks_mod.update_task_status(self.db, task.id, TIMEOUT)
            self.running_tasks.discard(task.id)
            self.retry.clear(task.id)
            logger.warning("Task %s (%s) timed out", task.id, task.type)
        self._collect_garbage()

    async def _on_task_cancelled(self, payload: dict):
        self.running_tasks.discard(payload["task_id"])
        stats = self._collect_garbage()
        if stats.cancelled:
            await self.schedule_next()

    async def _on_worker_error(self, payload: dict):
        self._collect_garbage()

    async def _on_worker_available(self, payload: dict):
        self._collect_garbage()
        await self.schedule_next()

    def _collect_garbage(self) -> GCStats:
        return self.gc.collect()

    # ── Monitors ─────────────────────────────────────────────────────────────

    async def _check_timeouts(self) -> bool:
        cutoff = current_timestamp() - int(self.config.task_timeout)
        for task in tasks_mod.list_stale_running_tasks(self.db, cutoff):
            logger.warning("Task %s (%s) has not updated since %s", task.id, task.type, task.updated_at)
            self.bus.emit(Event.TASK_TIMEOUT, self._payload(task))

        # Picks up rows queued by other processes and retries requeued tasks.
        if self._load_queued_tasks() or len(self.queue):
            await self.schedule_next()

        status = await self.pool.get_status()
        logger.debug(
            "Monitor: %d queued, %d running, pool %s",
            len(self.queue), len(self.running_tasks), status.as_dict(),
        )
        return False

    async def _poll_health(self) -> bool:
        """Snapshot every active agent's session; report whether anything moved."""
        impl = self.registry.get(HEALTH_CHECK_TASK)
        if impl is None:
            return False

        snapshots: dict[int, tuple] = {}
        for agent in await self.pool.get_all():
            if agent.status not in (CA_IDLE, CA_BUSY) or not agent.container_id:
                continue
            context = TaskContext(
                task_id=0, task_type=HEALTH_CHECK_TASK, ca_id=agent.id, ca_name=agent.name
            )
            try:
                result = await impl.execute({"caId": agent.id, "caName": agent.name}, context)
            except Exception:
                logger.exception("Health check failed for %s", agent.name)
                continue
            if not result.success:
                snapshots[agent.id] = ("unavailable",)
                continue
            snapshots[agent.id] = (
                result.data.get("session_id"),
                result.data.get("message_count"),
                result.data.get("fingerprint"),
            )

        changed = snapshots != self._health_snapshots
        self._health_snapshots = snapshots
        return changed

    # ── Status ───────────────────────────────────────────────────────────────

    async def get_status(self) -> dict:
        pool_status = await self.pool.get_status()
        return {
            "running": self.running,
            "queue_length": len(self.queue),
            "ca_pool": pool_status.as_dict(),
            "current_tasks": len(self.running_tasks),
            "running_task_ids": sorted(self.running_tasks),
        }

    @staticmethod
    def _payload(task: Task) -> dict:
        return {
            "task_id": task.id,
            "task_type": task.type,
            "status": task.status,
            "correlation_id": task.correlation_id,
            "ca_id": task.ca_id,
        }
