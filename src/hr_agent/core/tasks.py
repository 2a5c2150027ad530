"""Task persistence operations."""

import json
import sqlite3

from hr_agent.db.engine import UNSET_TS, current_timestamp
from hr_agent.db.models import (
    COMPLETED_STATUSES,
    QUEUED,
    TERMINAL_STATUSES,
    Task,
    TaskEvent,
)


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        type=row["type"],
        status=row["status"],
        priority=row["priority"],
        tags=json.loads(row["tags"] or "[]"),
        dependencies=json.loads(row["dependencies"] or "[]"),
        metadata=json.loads(row["metadata"] or "{}"),
        correlation_id=row["correlation_id"],
        ca_id=row["ca_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
        deleted_at=row["deleted_at"],
    )


def create_task(
    db: sqlite3.Connection,
    task_type: str,
    metadata: dict | None = None,
    priority: int = 50,
    correlation_id: int | None = None,
    dependencies: list[str] | None = None,
    tags: list[str] | None = None,
    status: str = QUEUED,
) -> Task:
    """Create a new task."""
    if not task_type:
        raise ValueError("Task type is required")

    now = current_timestamp()
    cur = db.execute(
        """INSERT INTO tasks (type, status, priority, tags, dependencies, metadata,
                              correlation_id, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_type,
            status,
            priority,
            json.dumps(tags or []),
            json.dumps(dependencies or []),
            json.dumps(metadata or {}),
            correlation_id,
            now,
            now,
        ),
    )
    task_id = cur.lastrowid
    _log_event(db, task_id, "created", None, status)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: int) -> Task | None:
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return _row_to_task(row) if row else None


def list_tasks(
    db: sqlite3.Connection,
    status: str | list[str] | None = None,
    correlation_id: int | None = None,
    task_type: str | None = None,
    include_deleted: bool = False,
    limit: int | None = None,
) -> list[Task]:
    """List tasks with optional filters, highest priority first."""
    query = "SELECT * FROM tasks WHERE 1 = 1"
    params: list = []

    if status:
        statuses = [status] if isinstance(status, str) else list(status)
        query += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)

    if correlation_id is not None:
        query += " AND correlation_id = ?"
        params.append(correlation_id)

    if task_type:
        query += " AND type = ?"
        params.append(task_type)

    if not include_deleted:
        query += " AND deleted_at = ?"
        params.append(UNSET_TS)

    query += " ORDER BY priority DESC, created_at ASC, id ASC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    return [_row_to_task(r) for r in db.execute(query, params).fetchall()]


def update_task_status(
    db: sqlite3.Connection,
    task_id: int,
    status: str,
    now: int | None = None,
) -> Task | None:
    """Update a task's status. Terminal statuses stamp completed_at."""
    task = get_task(db, task_id)
    if not task:
        return None

    now = now if now is not None else current_timestamp()
    old_status = task.status
    updates: dict = {"status": status, "updated_at": now}
    if status in TERMINAL_STATUSES and task.completed_at == UNSET_TS:
        updates["completed_at"] = now

    _apply_updates(db, task_id, updates)
    if old_status != status:
        _log_event(db, task_id, "status_changed", old_status, status, now)
    db.commit()
    return get_task(db, task_id)


def update_task_metadata(db: sqlite3.Connection, task_id: int, values: dict) -> Task | None:
    """Merge values into the task's metadata."""
    task = get_task(db, task_id)
    if not task:
        return None

    merged = {**task.metadata, **values}
    _apply_updates(
        db, task_id, {"metadata": json.dumps(merged), "updated_at": current_timestamp()}
    )
    db.commit()
    return get_task(db, task_id)


def assign_task_ca(db: sqlite3.Connection, task_id: int, ca_id: int | None) -> Task | None:
    """Bind a coding agent to a task."""
    db.execute(
        "UPDATE tasks SET ca_id = ?, updated_at = ? WHERE id = ?",
        (ca_id, current_timestamp(), task_id),
    )
    if ca_id is not None:
        _log_event(db, task_id, "ca_assigned", None, str(ca_id))
    db.commit()
    return get_task(db, task_id)


def finalize_task(
    db: sqlite3.Connection,
    task_id: int,
    status: str,
    reason: str | None = None,
    now: int | None = None,
) -> None:
    """Move a task to a terminal status and soft-delete it in one step."""
    task = get_task(db, task_id)
    if not task:
        return

    now = now if now is not None else current_timestamp()
    updates: dict = {
        "status": status,
        "updated_at": now,
        "completed_at": now,
        "deleted_at": now,
    }
    if reason:
        updates["metadata"] = json.dumps(
            {**task.metadata, "garbage_collected": True, "gc_reason": reason}
        )
    _apply_updates(db, task_id, updates)
    if task.status != status:
        _log_event(db, task_id, "status_changed", task.status, status, now)
    _log_event(db, task_id, "finalized", None, reason, now)


def soft_delete_task(db: sqlite3.Connection, task_id: int, now: int | None = None) -> None:
    now = now if now is not None else current_timestamp()
    db.execute(
        "UPDATE tasks SET deleted_at = ?, updated_at = ? WHERE id = ?",
        (now, now, task_id),
    )
    _log_event(db, task_id, "deleted", None, None, now)


def has_completed_sibling(
    db: sqlite3.Connection,
    task_type: str,
    correlation_id: int | None,
) -> bool:
    """Whether a task of this type completed for the same correlation id."""
    statuses = ", ".join("?" for _ in COMPLETED_STATUSES)
    if correlation_id is None:
        query = f"SELECT 1 FROM tasks WHERE type = ? AND correlation_id IS NULL AND status IN ({statuses})"
        params: tuple = (task_type, *COMPLETED_STATUSES)
    else:
        query = f"SELECT 1 FROM tasks WHERE type = ? AND correlation_id = ? AND status IN ({statuses})"
        params = (task_type, correlation_id, *COMPLETED_STATUSES)
    return db.execute(query + " LIMIT 1", params).fetchone() is not None


def list_stale_running_tasks(db: sqlite3.Connection, older_than: int) -> list[Task]:
    """Running tasks whose last update is before the given timestamp."""
    rows = db.execute(
        "SELECT * FROM tasks WHERE status = 'running' AND deleted_at = ? AND updated_at < ?",
        (UNSET_TS, older_than),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


def get_task_events(db: sqlite3.Connection, task_id: int) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=r["created_at"],
        )
        for r in rows
    ]


def count_by_status(db: sqlite3.Connection) -> dict[str, int]:
    rows = db.execute(
        "SELECT status, COUNT(*) AS n FROM tasks WHERE deleted_at = ? GROUP BY status",
        (UNSET_TS,),
    ).fetchall()
    return {r["status"]: r["n"] for r in rows}


def _apply_updates(db: sqlite3.Connection, task_id: int, updates: dict):
    set_parts = [f"{k} = ?" for k in updates]
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        [*updates.values(), task_id],
    )


def _log_event(
    db: sqlite3.Connection,
    task_id: int,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
    now: int | None = None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value, created_at) VALUES (?, ?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value, now if now is not None else current_timestamp()),
    )
