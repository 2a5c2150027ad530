"""Tests for the coding agent pool."""

import asyncio

import pytest

from hr_agent.core import agents as agents_mod
from hr_agent.core import tasks as tasks_mod
from hr_agent.core.events import Event
from hr_agent.core.pool import AgentPool
from hr_agent.db.engine import current_timestamp
from hr_agent.db.models import (
    CA_BUSY,
    CA_CREATING,
    CA_DESTROYED,
    CA_ERROR,
    CA_IDLE,
    CA_NOT_FOUND,
    ERROR,
    RETRYING,
)


@pytest.fixture
def pool(db, runtime, bus):
    return AgentPool(db, runtime, bus, max_count=3)


def record(bus, event):
    seen = []
    bus.on(event, seen.append)
    return seen


class TestCapacity:
    @pytest.mark.asyncio
    async def test_empty_pool_can_create(self, pool):
        assert await pool.can_create()

    @pytest.mark.asyncio
    async def test_idle_agent_blocks_creation(self, pool, make_agent):
        make_agent("hra_1", CA_IDLE)
        assert not await pool.can_create()

    @pytest.mark.asyncio
    async def test_agent_held_for_retry_does_not_block_creation(self, db, pool, make_agent):
        waiting = tasks_mod.create_task(db, "work", status=RETRYING)
        make_agent("hra_1", current_task_id=waiting.id)
        assert await pool.allocate(99) is None
        assert await pool.can_create()

    @pytest.mark.asyncio
    async def test_only_the_named_idle_agent_blocks_creation(self, pool, make_agent):
        make_agent("hra_1")
        assert await pool.can_create(only_name="hra_2")
        assert not await pool.can_create(only_name="hra_1")

    @pytest.mark.asyncio
    async def test_creating_agent_blocks_creation(self, pool, make_agent):
        make_agent("hra_1", CA_CREATING)
        assert not await pool.can_create()

    @pytest.mark.asyncio
    async def test_below_max_allows_creation(self, pool, make_agent):
        make_agent("hra_1", CA_BUSY)
        make_agent("hra_2", CA_NOT_FOUND, container=False)
        assert await pool.can_create()

    @pytest.mark.asyncio
    async def test_all_busy_at_max_allows_creation(self, pool, make_agent):
        for n in range(3):
            make_agent(f"hra_{n}", CA_BUSY)
        assert await pool.can_create()

    @pytest.mark.asyncio
    async def test_error_at_max_allows_creation(self, pool, make_agent):
        make_agent("hra_1", CA_BUSY)
        make_agent("hra_2", CA_BUSY)
        make_agent("hra_3", CA_ERROR, container=False)
        assert await pool.can_create()

    @pytest.mark.asyncio
    async def test_full_without_error_refuses(self, pool, make_agent):
        make_agent("hra_1", CA_BUSY)
        make_agent("hra_2", CA_BUSY)
        make_agent("hra_3", CA_NOT_FOUND, container=False)
        assert not await pool.can_create()

    @pytest.mark.asyncio
    async def test_status_counts(self, pool, make_agent):
        make_agent("hra_1", CA_IDLE)
        make_agent("hra_2", CA_BUSY)
        make_agent("hra_3", CA_ERROR, container=False)
        status = await pool.get_status()
        assert status.as_dict() == {
            "total": 3, "idle": 1, "busy": 1, "creating": 0, "error": 1, "not_found": 0,
        }


class TestReadTimeReconciliation:
    @pytest.mark.asyncio
    async def test_idle_without_container_is_flagged(self, pool, bus, make_agent):
        errors = record(bus, Event.WORKER_ERROR)
        agent = make_agent("hra_1", CA_IDLE, container=False)
        agents = await pool.get_all()
        assert agents[0].status == CA_ERROR
        assert agents_mod.get_agent(pool.db, agent.id).status == CA_ERROR
        await bus.drain()
        assert errors[0]["ca_id"] == agent.id

    @pytest.mark.asyncio
    async def test_stopped_container_is_flagged(self, pool, runtime, make_agent):
        make_agent("hra_1", CA_IDLE)
        runtime.add("hra_1", state="exited")
        assert await pool.get_idle() == []

    @pytest.mark.asyncio
    async def test_busy_agents_are_left_alone(self, pool, make_agent):
        make_agent("hra_1", CA_BUSY, container=False)
        assert [a.status for a in await pool.get_busy()] == [CA_BUSY]

    @pytest.mark.asyncio
    async def test_in_flight_creation_is_exempt(self, pool, runtime):
        runtime.create_delay = 0.2
        agent = await pool.create(4)
        creating = await pool.get_creating()
        assert [a.id for a in creating] == [agent.id]
        await pool.wait_for_creations()
        assert [a.id for a in await pool.get_idle()] == [agent.id]

    @pytest.mark.asyncio
    async def test_creation_started_by_another_pool_is_left_alone(self, db, runtime, bus):
        server_pool = AgentPool(db, runtime, bus, max_count=3)
        other_pool = AgentPool(db, runtime, bus, max_count=3)
        runtime.create_delay = 0.3
        agent = await server_pool.create(5)

        status = await other_pool.get_status()
        assert status.creating == 1
        assert status.error == 0
        await server_pool.wait_for_creations()
        assert agents_mod.get_agent(db, agent.id).status == CA_IDLE
        assert runtime.containers["hra_5"].running
        assert runtime.deleted == []

    @pytest.mark.asyncio
    async def test_creating_row_past_grace_is_flagged(self, db, runtime, bus, make_agent):
        agent = make_agent("hra_5", CA_CREATING, container=False, now=current_timestamp() - 120)
        other_pool = AgentPool(db, runtime, bus, max_count=3, creating_grace=60.0)
        assert (await other_pool.get_status()).error == 1
        assert agents_mod.get_agent(db, agent.id).status == CA_ERROR

    @pytest.mark.asyncio
    async def test_runtime_failure_keeps_persisted_state(self, pool, runtime, make_agent):
        make_agent("hra_1", CA_IDLE, container=False)
        runtime.fail_list = True
        assert [a.status for a in await pool.get_all()] == [CA_IDLE]


class TestAllocation:
    @pytest.mark.asyncio
    async def test_allocate_marks_busy(self, pool, bus, make_agent):
        allocated = record(bus, Event.WORKER_ALLOCATED)
        agent = make_agent("hra_1")
        got = await pool.allocate(11)
        assert got.id == agent.id
        assert got.status == CA_BUSY
        assert got.current_task_id == 11
        await bus.drain()
        assert allocated == [{"ca_id": agent.id, "name": "hra_1", "task_id": 11}]

    @pytest.mark.asyncio
    async def test_no_idle_agent(self, pool, make_agent):
        make_agent("hra_1", CA_BUSY)
        assert await pool.allocate(1) is None

    @pytest.mark.asyncio
    async def test_agent_never_given_to_two_tasks(self, pool, make_agent):
        make_agent("hra_1")
        results = await asyncio.gather(*(pool.allocate(task_id) for task_id in range(1, 6)))
        assert len([r for r in results if r is not None]) == 1

    @pytest.mark.asyncio
    async def test_preferred_name_wins(self, pool, make_agent):
        make_agent("hra_1")
        make_agent("hra_2")
        assert (await pool.allocate(1, preferred_name="hra_2")).name == "hra_2"
        assert (await pool.allocate(2)).name == "hra_1"

    @pytest.mark.asyncio
    async def test_reserved_agent_is_kept_for_its_task(self, db, pool, make_agent):
        waiting = tasks_mod.create_task(db, "work", status=RETRYING)
        make_agent("hra_1", current_task_id=waiting.id)
        assert await pool.allocate(99) is None
        assert (await pool.allocate(waiting.id)).name == "hra_1"

    @pytest.mark.asyncio
    async def test_stale_reservation_is_ignored(self, db, pool, make_agent):
        finished = tasks_mod.create_task(db, "work", status=ERROR)
        make_agent("hra_1", current_task_id=finished.id)
        assert (await pool.allocate(99)).name == "hra_1"

    @pytest.mark.asyncio
    async def test_only_name_restricts_choice(self, pool, make_agent):
        make_agent("hra_1")
        assert await pool.allocate(1, only_name="hra_2") is None
        make_agent("hra_2")
        assert (await pool.allocate(1, only_name="hra_2")).name == "hra_2"


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_returns_to_idle(self, pool, bus, make_agent):
        released = record(bus, Event.WORKER_RELEASED)
        agent = make_agent("hra_1", CA_BUSY, current_task_id=5)
        got = pool.release(agent.id, 5)
        assert got.status == CA_IDLE
        assert got.current_task_id is None
        await bus.drain()
        assert released[0]["ca_id"] == agent.id

    @pytest.mark.asyncio
    async def test_release_for_other_task_is_ignored(self, pool, make_agent):
        agent = make_agent("hra_1", CA_BUSY, current_task_id=5)
        assert pool.release(agent.id, 6).status == CA_BUSY

    @pytest.mark.asyncio
    async def test_keep_reservation(self, pool, make_agent):
        agent = make_agent("hra_1", CA_BUSY, current_task_id=5)
        got = pool.release(agent.id, 5, keep_reservation=True)
        assert got.status == CA_IDLE
        assert got.current_task_id == 5

    def test_release_missing_agent(self, pool):
        assert pool.release(42) is None

    @pytest.mark.asyncio
    async def test_mark_error(self, pool, bus, make_agent):
        errors = record(bus, Event.WORKER_ERROR)
        agent = make_agent("hra_1", CA_BUSY)
        assert pool.mark_error(agent.id, "not ready").status == CA_ERROR
        assert pool.mark_error(agent.id, "again").status == CA_ERROR
        await bus.drain()
        assert len(errors) == 1


class TestCreation:
    @pytest.mark.asyncio
    async def test_create_starts_container(self, pool, bus, runtime):
        created = record(bus, Event.WORKER_CREATED)
        agent = await pool.create(7, task_id=3)
        assert agent.name == "hra_7"
        assert agent.status == CA_CREATING
        assert agent.current_task_id == 3
        await pool.wait_for_creations()
        await bus.drain()

        ready = agents_mod.get_agent(pool.db, agent.id)
        assert ready.status == CA_IDLE
        assert ready.container_id == runtime.containers["hra_7"].id
        assert created[0]["name"] == "hra_7"

    @pytest.mark.asyncio
    async def test_failed_container_marks_error(self, pool, bus, runtime):
        errors = record(bus, Event.WORKER_ERROR)
        runtime.fail_create = True
        agent = await pool.create(7)
        await pool.wait_for_creations()
        await bus.drain()
        assert agents_mod.get_agent(pool.db, agent.id).status == CA_ERROR
        assert errors[0]["ca_id"] == agent.id

    @pytest.mark.asyncio
    async def test_existing_name_is_replaced(self, pool, runtime, make_agent):
        old = make_agent("hra_7", CA_ERROR)
        agent = await pool.create(7)
        assert agent.id != old.id
        assert agents_mod.get_agent(pool.db, old.id).status == CA_DESTROYED
        assert runtime.deleted == [old.container_id]
        await pool.wait_for_creations()

    @pytest.mark.asyncio
    async def test_oldest_error_evicted_at_capacity(self, pool, make_agent):
        oldest = make_agent("hra_1", CA_ERROR, container=False, now=100)
        newer = make_agent("hra_2", CA_ERROR, container=False, now=200)
        make_agent("hra_3", CA_BUSY)
        await pool.create(4)
        assert agents_mod.get_agent(pool.db, oldest.id).status == CA_DESTROYED
        assert agents_mod.get_agent(pool.db, newer.id).status == CA_ERROR
        await pool.wait_for_creations()

    @pytest.mark.asyncio
    async def test_concurrent_creation_is_adopted(self, db, pool, monkeypatch):
        original = agents_mod.create_agent
        competitor = {}

        def racing_create(conn, name, **kwargs):
            competitor["agent"] = original(conn, name, status=CA_CREATING)
            return original(conn, name, **kwargs)

        monkeypatch.setattr(agents_mod, "create_agent", racing_create)
        agent = await pool.create(8)
        assert agent.id == competitor["agent"].id

    @pytest.mark.asyncio
    async def test_conflict_with_settled_agent_is_destroyed(self, db, pool, monkeypatch):
        original = agents_mod.create_agent
        competitor = {}

        def racing_create(conn, name, **kwargs):
            competitor["agent"] = original(conn, name, status=CA_IDLE)
            return original(conn, name, **kwargs)

        monkeypatch.setattr(agents_mod, "create_agent", racing_create)
        assert await pool.create(8) is None
        assert agents_mod.get_agent(db, competitor["agent"].id).status == CA_DESTROYED

    @pytest.mark.asyncio
    async def test_container_discarded_if_agent_destroyed_meanwhile(self, pool, runtime):
        runtime.create_delay = 0.1
        agent = await pool.create(5)
        assert await pool.destroy(agent.id)
        await pool.wait_for_creations()
        assert agents_mod.get_agent(pool.db, agent.id).status == CA_DESTROYED
        assert "hra_5" not in runtime.containers


class TestDestroy:
    @pytest.mark.asyncio
    async def test_destroy(self, pool, bus, runtime, make_agent):
        destroyed = record(bus, Event.WORKER_DESTROYED)
        agent = make_agent("hra_1", CA_BUSY, current_task_id=3)
        assert await pool.destroy(agent.id)
        final = agents_mod.get_agent(pool.db, agent.id)
        assert final.status == CA_DESTROYED
        assert final.container_id == ""
        assert final.current_task_id is None
        assert "hra_1" not in runtime.containers
        await bus.drain()
        assert destroyed == [{"ca_id": agent.id, "name": "hra_1"}]

    @pytest.mark.asyncio
    async def test_destroy_twice(self, pool, make_agent):
        agent = make_agent("hra_1")
        assert await pool.destroy(agent.id)
        assert not await pool.destroy(agent.id)

    @pytest.mark.asyncio
    async def test_destroy_by_name(self, pool, make_agent):
        make_agent("hra_1")
        assert await pool.destroy_by_name("hra_1")
        assert not await pool.destroy_by_name("hra_1")
        assert pool.get_by_name("hra_1") is None
