"""CLI entry point for the hr-agent orchestrator."""

import asyncio
import json
import logging
import sys

import click

from hr_agent import priorities
from hr_agent.config import get_config
from hr_agent.core import agents as agents_mod
from hr_agent.core import tasks as tasks_mod
from hr_agent.core.events import EventBus
from hr_agent.core.gc import GarbageCollector
from hr_agent.core.pool import AgentPool
from hr_agent.core.reconciler import StatusReconciler
from hr_agent.core.scheduler import create_queued_task
from hr_agent.db.engine import get_db
from hr_agent.db.models import CANCELLED, TERMINAL_STATUSES
from hr_agent.integrations.docker import DockerError, DockerRuntime
from hr_agent.tasks.base import TaskServices
from hr_agent.tasks.registry import build_registry


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
def main():
    """hra - hr-agent orchestrator CLI"""
    pass


# ── Server ────────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve(host, port):
    """Run the orchestrator with its HTTP API."""
    from hr_agent.web.app import run_server

    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    click.echo(f"Starting hr-agent at http://{host}:{port}")
    run_server(config, host=host, port=port)


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("task_type")
@click.option("--params", default=None, help="Task parameters as a JSON object")
@click.option("--priority", "-p", default=priorities.DEFAULT, type=int, help="Priority 0-100")
@click.option("--correlation-id", "-c", default=None, type=int, help="Issue number")
def task_add(task_type, params, priority, correlation_id):
    """Queue a task. A running server picks it up on its next monitor tick."""
    try:
        values = json.loads(params) if params else {}
    except json.JSONDecodeError as e:
        click.echo(f"Invalid --params: {e}", err=True)
        sys.exit(1)

    config = get_config()
    with _get_db() as db:
        registry = build_registry(TaskServices(db=db, config=config))
        try:
            task = create_queued_task(db, registry, task_type, values, priority, correlation_id)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Queued task: {task.id}")
        click.echo(f"  Type: {task.type}")
        click.echo(f"  Priority: {task.priority} ({priorities.priority_name(task.priority)})")
        if task.correlation_id is not None:
            click.echo(f"  Issue: #{task.correlation_id}")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(task.dependencies)}")


@task_group.command("list")
@click.option("--status", default=None, help="Filter by status (comma-separated)")
@click.option("--correlation-id", "-c", default=None, type=int, help="Filter by issue number")
@click.option("--all", "include_deleted", is_flag=True, help="Include garbage-collected tasks")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, correlation_id, include_deleted, json_output):
    """List tasks, highest priority first."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(
            db,
            status=status.split(",") if status else None,
            correlation_id=correlation_id,
            include_deleted=include_deleted,
        )

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            issue = f" #{task.correlation_id}" if task.correlation_id is not None else ""
            ca = f" [ca: {task.ca_id}]" if task.ca_id else ""
            click.echo(f"  {task.id}: {task.type}{issue} ({task.status}, p{task.priority}){ca}")


@task_group.command("show")
@click.argument("task_id", type=int)
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Type: {task.type}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Priority: {task.priority} ({priorities.priority_name(task.priority)})")
        if task.correlation_id is not None:
            click.echo(f"  Issue: #{task.correlation_id}")
        if task.ca_id:
            click.echo(f"  Coding agent: {task.ca_id}")
        if task.tags:
            click.echo(f"  Tags: {', '.join(task.tags)}")
        if task.dependencies:
            click.echo(f"  Depends on: {', '.join(task.dependencies)}")
        if task.metadata:
            click.echo(f"  Metadata: {json.dumps(task.metadata)}")
        if task.is_deleted:
            click.echo(f"  Deleted: {task.deleted_at}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("cancel")
@click.argument("task_id", type=int)
def task_cancel(task_id):
    """Cancel a task and release its coding agent."""
    config = get_config()
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        if task.status in TERMINAL_STATUSES:
            click.echo(f"Task {task_id} is already {task.status}", err=True)
            sys.exit(1)

        tasks_mod.update_task_status(db, task_id, CANCELLED)
        stats = GarbageCollector.from_config(db, config).collect()
        click.echo(f"Cancelled task: {task_id}")
        if stats.cancelled:
            click.echo(f"  Finalized {stats.cancelled} cancelled task(s)")


# ── Coding Agent Commands ─────────────────────────────────────────────────────


@main.group("ca")
def ca_group():
    """Manage coding agent containers."""
    pass


@ca_group.command("list")
@click.option("--all", "include_destroyed", is_flag=True, help="Include destroyed agents")
def ca_list(include_destroyed):
    """List coding agents as recorded in the database."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db, include_destroyed=include_destroyed)
        if not agents:
            click.echo("No coding agents.")
            return
        for a in agents:
            task_info = f" [task: {a.current_task_id}]" if a.current_task_id else ""
            container = a.container_id[:12] if a.container_id else "-"
            click.echo(f"  [{a.status}] {a.name} (id={a.id}, container={container}){task_info}")


@ca_group.command("status")
def ca_status():
    """Show pool counts as recorded, alongside the live container count.

    Read-only: rows are never flagged from here, so a creation in progress
    in the server is left alone. Use `hra sync` to reconcile.
    """
    config = get_config()
    runtime = DockerRuntime.from_config(config)
    with _get_db() as db:
        pool = AgentPool.from_config(db, runtime, EventBus(), config)
        status, can_create = pool.persisted_status()
        click.echo(f"Coding agents (max {config.max_ca_count}):")
        for key, value in status.as_dict().items():
            click.echo(f"  {key}: {value}")
        click.echo(f"  can create: {'yes' if can_create else 'no'}")

    try:
        running = [c for c in runtime.list_containers() if c.running]
    except DockerError as e:
        click.echo(f"  running containers: unknown ({e})")
    else:
        click.echo(f"  running containers: {len(running)}")


@ca_group.command("destroy")
@click.argument("name")
def ca_destroy(name):
    """Destroy a coding agent and remove its container."""
    config = get_config()
    with _get_db() as db:
        pool = AgentPool.from_config(db, DockerRuntime.from_config(config), EventBus(), config)
        if not pool.get_by_name(name):
            click.echo(f"Coding agent not found: {name}", err=True)
            sys.exit(1)
        if not asyncio.run(pool.destroy_by_name(name)):
            click.echo(f"Failed to destroy {name}; it is now marked error", err=True)
            sys.exit(1)
        click.echo(f"Destroyed coding agent: {name}")


# ── Maintenance Commands ──────────────────────────────────────────────────────


@main.command("gc")
def gc_command():
    """Run one garbage collection pass."""
    config = get_config()
    with _get_db() as db:
        stats = GarbageCollector.from_config(db, config).collect()
        if not stats.total_cleaned:
            click.echo("Nothing to clean up.")
            return
        for key, value in stats.as_dict().items():
            if value:
                click.echo(f"  {key}: {value}")


@main.command("sync")
def sync_command():
    """Reconcile coding agent rows against the live containers once."""
    config = get_config()
    with _get_db() as db:
        reconciler = StatusReconciler.from_config(db, DockerRuntime.from_config(config), None, config)
        try:
            results = asyncio.run(reconciler.sync_all())
        except DockerError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        changed = [r for r in results if r.changed]
        click.echo(f"Checked {len(results)} coding agent(s), {len(changed)} updated")
        for r in changed:
            click.echo(f"  {r.name}: {r.old_status} -> {r.new_status} ({r.action})")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "type": task.type,
        "status": task.status,
        "priority": task.priority,
        "correlation_id": task.correlation_id,
        "ca_id": task.ca_id,
        "tags": task.tags,
        "dependencies": task.dependencies,
        "metadata": task.metadata,
    }


if __name__ == "__main__":
    main()
