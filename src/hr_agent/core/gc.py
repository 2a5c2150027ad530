"""Garbage collection of stuck tasks and coding agents."""

import logging
import sqlite3
from dataclasses import asdict, dataclass

from hr_agent.config import Config
from hr_agent.core import agents as agents_mod
from hr_agent.core import tasks as tasks_mod
from hr_agent.db.engine import UNSET_TS, current_timestamp
from hr_agent.db.models import (
    CA_BUSY,
    CA_CREATING,
    CA_ERROR,
    CA_IDLE,
    CANCELLED,
    ERROR,
    QUEUED,
    RETRYING,
    RUNNING,
    TIMEOUT,
)

logger = logging.getLogger(__name__)


@dataclass
class GCStats:
    creation_failed: int = 0
    lost_workers: int = 0
    long_running_errors: int = 0
    timeouts: int = 0
    cancelled: int = 0

    @property
    def total_cleaned(self) -> int:
        return (
            self.creation_failed
            + self.lost_workers
            + self.long_running_errors
            + self.timeouts
            + self.cancelled
        )

    def as_dict(self) -> dict:
        return {**asdict(self), "total_cleaned": self.total_cleaned}


class GarbageCollector:
    """Moves stuck tasks and agents to a terminal state.

    ``collect`` is called after every terminal event, so each sweep only
    matches rows it has not already finalized and a second call with no
    state change in between does nothing.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        task_timeout: float = 600,
        error_retention: float = 86400,
        batch_size: int = 10,
    ):
        self.db = db
        self.task_timeout = int(task_timeout)
        self.error_retention = int(error_retention)
        self.batch_size = batch_size

    @classmethod
    def from_config(cls, db: sqlite3.Connection, config: Config) -> "GarbageCollector":
        return cls(db, config.task_timeout, config.error_retention, config.gc_batch_size)

    def collect(self, now: int | None = None) -> GCStats:
        now = now if now is not None else current_timestamp()
        stats = GCStats()
        # Lost agents first: the errors they produce feed the creation-failed sweep.
        stats.lost_workers = self._sweep("lost_workers", self.collect_lost_workers, now)
        stats.creation_failed = self._sweep("creation_failed", self.collect_creation_failed, now)
        stats.long_running_errors = self._sweep(
            "long_running_errors", self.collect_long_running_errors, now
        )
        stats.timeouts = self._sweep("timeouts", self.collect_timeouts, now)
        stats.cancelled = self._sweep("cancelled", self.collect_cancelled, now)
        if stats.total_cleaned:
            logger.info("Garbage collection cleaned %d item(s): %s", stats.total_cleaned, stats.as_dict())
        return stats

    def _sweep(self, name: str, sweep, now: int) -> int:
        try:
            count = sweep(now)
            self.db.commit()
            return count
        except sqlite3.Error:
            self.db.rollback()
            logger.exception("Garbage collection sweep %s failed", name)
            return 0

    def collect_creation_failed(self, now: int) -> int:
        """Fail tasks still attached to an agent that ended in error."""
        rows = self.db.execute(
            """SELECT t.id AS task_id, ca.name AS ca_name
               FROM tasks t JOIN coding_agents ca ON t.ca_id = ca.id
               WHERE ca.status = ? AND t.status IN (?, ?, ?) AND t.deleted_at = ?""",
            (CA_ERROR, RUNNING, RETRYING, ERROR, UNSET_TS),
        ).fetchall()
        for row in rows:
            tasks_mod.finalize_task(
                self.db,
                row["task_id"],
                ERROR,
                reason=f"coding agent {row['ca_name']} failed",
                now=now,
            )
        return len(rows)

    def collect_lost_workers(self, now: int) -> int:
        """Agents stuck creating past the task timeout, or idle without a container."""
        lost = [
            a for a in agents_mod.list_agents(self.db, status=[CA_CREATING, CA_IDLE])
            if (a.status == CA_CREATING and now - a.created_at > self.task_timeout)
            or (a.status == CA_IDLE and not a.container_id)
        ]
        cleaned = 0
        for agent in lost:
            reason = (
                f"coding agent {agent.name} stuck creating"
                if agent.status == CA_CREATING
                else f"coding agent {agent.name} has no container"
            )
            rows = self.db.execute(
                "SELECT id FROM tasks WHERE ca_id = ? AND status IN (?, ?, ?) AND deleted_at = ?",
                (agent.id, QUEUED, RUNNING, RETRYING, UNSET_TS),
            ).fetchall()
            for row in rows:
                tasks_mod.finalize_task(self.db, row["id"], ERROR, reason=reason, now=now)
            agents_mod.update_agent(self.db, agent.id, status=CA_ERROR, now=now)
            logger.warning("%s; marked error with %d task(s)", reason, len(rows))
            cleaned += len(rows)
        return cleaned

    def collect_long_running_errors(self, now: int) -> int:
        """Soft-delete the oldest error tasks past the retention window."""
        rows = self.db.execute(
            """SELECT id FROM tasks
               WHERE status = ? AND deleted_at = ? AND created_at < ?
               ORDER BY created_at ASC, id ASC LIMIT ?""",
            (ERROR, UNSET_TS, now - self.error_retention, self.batch_size),
        ).fetchall()
        for row in rows:
            tasks_mod.soft_delete_task(self.db, row["id"], now=now)
        return len(rows)

    def collect_timeouts(self, now: int) -> int:
        rows = self.db.execute("SELECT id FROM tasks WHERE status = ?", (TIMEOUT,)).fetchall()
        for row in rows:
            tasks_mod.finalize_task(self.db, row["id"], ERROR, reason="task timed out", now=now)
        return len(rows)

    def collect_cancelled(self, now: int) -> int:
        """Finalize cancelled tasks and free any agent still bound to them."""
        rows = self.db.execute(
            "SELECT id, ca_id FROM tasks WHERE status = ? AND deleted_at = ?",
            (CANCELLED, UNSET_TS),
        ).fetchall()
        for row in rows:
            tasks_mod.finalize_task(self.db, row["id"], CANCELLED, now=now)
            if row["ca_id"] is not None:
                self._free_agent(row["ca_id"], row["id"], now)
        return len(rows)

    def _free_agent(self, ca_id: int, task_id: int, now: int):
        agent = agents_mod.get_agent(self.db, ca_id)
        if not agent or agent.current_task_id != task_id:
            return
        status = CA_IDLE if agent.status == CA_BUSY else None
        agents_mod.update_agent(self.db, ca_id, status=status, current_task_id=None, now=now)
        logger.info("Freed coding agent %s from cancelled task %s", agent.name, task_id)
