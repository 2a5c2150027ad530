"""Coding agent (worker container) persistence operations."""

import sqlite3

from hr_agent.db.engine import current_timestamp
from hr_agent.db.models import CA_CREATING, CA_DESTROYED, CodingAgent

_UNCHANGED = object()


def _row_to_agent(row: sqlite3.Row) -> CodingAgent:
    return CodingAgent(
        id=row["id"],
        name=row["name"],
        container_id=row["container_id"] or "",
        status=row["status"],
        current_task_id=row["current_task_id"],
        correlation_id=row["correlation_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        deleted_at=row["deleted_at"],
    )


def create_agent(
    db: sqlite3.Connection,
    name: str,
    correlation_id: int | None = None,
    current_task_id: int | None = None,
    status: str = CA_CREATING,
    now: int | None = None,
) -> CodingAgent:
    """Insert a new coding agent row.

    Raises sqlite3.IntegrityError when a non-destroyed agent with the same
    name already exists.
    """
    now = now if now is not None else current_timestamp()
    try:
        cur = db.execute(
            """INSERT INTO coding_agents (name, status, current_task_id, correlation_id,
                                          created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (name, status, current_task_id, correlation_id, now, now),
        )
    except sqlite3.IntegrityError:
        db.rollback()
        raise
    db.commit()
    return get_agent(db, cur.lastrowid)


def get_agent(db: sqlite3.Connection, ca_id: int) -> CodingAgent | None:
    row = db.execute("SELECT * FROM coding_agents WHERE id = ?", (ca_id,)).fetchone()
    return _row_to_agent(row) if row else None


def get_live_agent_by_name(db: sqlite3.Connection, name: str) -> CodingAgent | None:
    """The non-destroyed agent with this name, if any."""
    row = db.execute(
        "SELECT * FROM coding_agents WHERE name = ? AND status != ?",
        (name, CA_DESTROYED),
    ).fetchone()
    return _row_to_agent(row) if row else None


def list_agents(
    db: sqlite3.Connection,
    status: str | list[str] | None = None,
    include_destroyed: bool = False,
) -> list[CodingAgent]:
    """List agents, oldest first."""
    query = "SELECT * FROM coding_agents WHERE 1 = 1"
    params: list = []

    if status:
        statuses = [status] if isinstance(status, str) else list(status)
        query += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)

    if not include_destroyed:
        query += " AND status != ?"
        params.append(CA_DESTROYED)

    query += " ORDER BY created_at ASC, id ASC"
    return [_row_to_agent(r) for r in db.execute(query, params).fetchall()]


def update_agent(
    db: sqlite3.Connection,
    ca_id: int,
    status: str | None = None,
    container_id: str | None = None,
    current_task_id=_UNCHANGED,
    now: int | None = None,
) -> CodingAgent | None:
    """Update an agent's status, container id and/or current task."""
    now = now if now is not None else current_timestamp()
    updates: dict = {"updated_at": now}
    if status is not None:
        updates["status"] = status
        if status == CA_DESTROYED:
            updates["deleted_at"] = now
    if container_id is not None:
        updates["container_id"] = container_id
    if current_task_id is not _UNCHANGED:
        updates["current_task_id"] = current_task_id

    set_parts = [f"{k} = ?" for k in updates]
    db.execute(
        f"UPDATE coding_agents SET {', '.join(set_parts)} WHERE id = ?",
        [*updates.values(), ca_id],
    )
    db.commit()
    return get_agent(db, ca_id)


def count_by_status(db: sqlite3.Connection) -> dict[str, int]:
    rows = db.execute(
        "SELECT status, COUNT(*) AS n FROM coding_agents WHERE status != ? GROUP BY status",
        (CA_DESTROYED,),
    ).fetchall()
    return {r["status"]: r["n"] for r in rows}
