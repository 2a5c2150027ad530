"""Tests for garbage collection of stuck tasks and agents."""

import pytest

from hr_agent.core import agents as agents_mod
from hr_agent.core import tasks as tasks_mod
from hr_agent.core.gc import GarbageCollector
from hr_agent.db.engine import current_timestamp
from hr_agent.db.models import (
    CA_BUSY,
    CA_CREATING,
    CA_ERROR,
    CA_IDLE,
    CANCELLED,
    COMPLETED,
    ERROR,
    QUEUED,
    RETRYING,
    RUNNING,
    TIMEOUT,
)


@pytest.fixture
def gc(db):
    return GarbageCollector(db, task_timeout=600, error_retention=86400, batch_size=10)


def bound_task(db, agent, status):
    task = tasks_mod.create_task(db, "work", status=status)
    return tasks_mod.assign_task_ca(db, task.id, agent.id)


class TestCollect:
    def test_nothing_to_do(self, db, gc):
        tasks_mod.create_task(db, "echo")
        stats = gc.collect()
        assert stats.total_cleaned == 0
        assert stats.as_dict() == {
            "creation_failed": 0,
            "lost_workers": 0,
            "long_running_errors": 0,
            "timeouts": 0,
            "cancelled": 0,
            "total_cleaned": 0,
        }

    def test_stuck_creating_worker(self, db, gc):
        now = current_timestamp()
        agent = agents_mod.create_agent(db, "hra_1", status=CA_CREATING, now=now - 601)
        task = bound_task(db, agent, QUEUED)

        stats = gc.collect(now)
        assert stats.lost_workers == 1
        assert agents_mod.get_agent(db, agent.id).status == CA_ERROR
        final = tasks_mod.get_task(db, task.id)
        assert final.status == ERROR
        assert final.is_deleted
        assert final.completed_at == now
        assert final.metadata["gc_reason"] == "coding agent hra_1 stuck creating"

        assert gc.collect(now).total_cleaned == 0

    def test_recent_creating_worker_is_left(self, db, gc):
        now = current_timestamp()
        agent = agents_mod.create_agent(db, "hra_1", status=CA_CREATING, now=now - 30)
        bound_task(db, agent, QUEUED)
        assert gc.collect(now).lost_workers == 0
        assert agents_mod.get_agent(db, agent.id).status == CA_CREATING

    def test_idle_worker_without_container(self, db, gc):
        agent = agents_mod.create_agent(db, "hra_1", status=CA_IDLE)
        task = bound_task(db, agent, RETRYING)
        assert gc.collect().lost_workers == 1
        assert agents_mod.get_agent(db, agent.id).status == CA_ERROR
        assert tasks_mod.get_task(db, task.id).status == ERROR

    def test_failed_worker_fails_its_tasks(self, db, gc):
        agent = agents_mod.create_agent(db, "hra_1", status=CA_ERROR)
        running = bound_task(db, agent, RUNNING)
        retrying = bound_task(db, agent, RETRYING)
        queued = bound_task(db, agent, QUEUED)

        stats = gc.collect()
        assert stats.creation_failed == 2
        assert tasks_mod.get_task(db, running.id).status == ERROR
        assert tasks_mod.get_task(db, retrying.id).is_deleted
        assert tasks_mod.get_task(db, queued.id).status == QUEUED

        assert gc.collect().total_cleaned == 0

    def test_old_errors_soft_deleted_in_batches(self, db, gc):
        now = current_timestamp()
        for _ in range(12):
            tasks_mod.create_task(db, "echo", status=ERROR)
        recent = tasks_mod.create_task(db, "echo", status=ERROR)
        db.execute("UPDATE tasks SET created_at = ? WHERE id != ?", (now - 90000, recent.id))
        db.commit()

        assert gc.collect(now).long_running_errors == 10
        assert gc.collect(now).long_running_errors == 2
        assert gc.collect(now).long_running_errors == 0

        remaining = tasks_mod.list_tasks(db, status=ERROR)
        assert [t.id for t in remaining] == [recent.id]
        deleted = tasks_mod.list_tasks(db, status=ERROR, include_deleted=True)
        assert len(deleted) == 13

    def test_timeouts_become_errors(self, db, gc):
        task = tasks_mod.create_task(db, "echo", status=TIMEOUT)
        assert gc.collect().timeouts == 1
        final = tasks_mod.get_task(db, task.id)
        assert final.status == ERROR
        assert final.is_deleted
        assert final.metadata["garbage_collected"] is True
        assert gc.collect().timeouts == 0

    def test_cancelled_tasks_release_their_worker(self, db, gc):
        agent = agents_mod.create_agent(db, "hra_1", status=CA_BUSY)
        task = bound_task(db, agent, CANCELLED)
        agents_mod.update_agent(db, agent.id, current_task_id=task.id, container_id="cid")

        assert gc.collect().cancelled == 1
        final = tasks_mod.get_task(db, task.id)
        assert final.status == CANCELLED
        assert final.is_deleted
        freed = agents_mod.get_agent(db, agent.id)
        assert freed.status == CA_IDLE
        assert freed.current_task_id is None
        assert gc.collect().cancelled == 0

    def test_cancelled_task_leaves_reassigned_worker(self, db, gc):
        agent = agents_mod.create_agent(db, "hra_1", status=CA_BUSY)
        bound_task(db, agent, CANCELLED)
        agents_mod.update_agent(db, agent.id, current_task_id=999, container_id="cid")
        gc.collect()
        assert agents_mod.get_agent(db, agent.id).status == CA_BUSY

    def test_completed_tasks_untouched(self, db, gc):
        task = tasks_mod.create_task(db, "echo", status=COMPLETED)
        gc.collect()
        assert not tasks_mod.get_task(db, task.id).is_deleted
