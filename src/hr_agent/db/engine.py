"""SQLite database connection management and schema initialization."""

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path

# Value stored in completed_at / deleted_at while the timestamp is unset.
UNSET_TS = -2

SCHEMA = """
CREATE TABLE IF NOT EXISTS issues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_number INTEGER NOT NULL UNIQUE,
    title TEXT NOT NULL,
    body TEXT DEFAULT '',
    url TEXT,
    labels TEXT DEFAULT '[]',
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    completed_at INTEGER NOT NULL DEFAULT -2,
    deleted_at INTEGER NOT NULL DEFAULT -2
);

CREATE TABLE IF NOT EXISTS pull_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_number INTEGER NOT NULL,
    pr_number INTEGER DEFAULT 0,
    title TEXT NOT NULL,
    body TEXT DEFAULT '',
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    completed_at INTEGER NOT NULL DEFAULT -2,
    deleted_at INTEGER NOT NULL DEFAULT -2
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued' CHECK (status IN (
        'planned', 'queued', 'running', 'retrying', 'completed',
        'pr_submitted', 'error', 'cancelled', 'timeout'
    )),
    priority INTEGER NOT NULL DEFAULT 50,
    tags TEXT DEFAULT '[]',
    dependencies TEXT DEFAULT '[]',
    metadata TEXT DEFAULT '{}',
    correlation_id INTEGER,
    ca_id INTEGER REFERENCES coding_agents(id),
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    completed_at INTEGER NOT NULL DEFAULT -2,
    deleted_at INTEGER NOT NULL DEFAULT -2
);

CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_correlation ON tasks(correlation_id, type);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS coding_agents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    container_id TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'creating' CHECK (status IN (
        'pending_create', 'creating', 'idle', 'busy', 'error',
        'not_found', 'destroying', 'destroyed'
    )),
    current_task_id INTEGER,
    correlation_id INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    deleted_at INTEGER NOT NULL DEFAULT -2
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_coding_agents_live_name
    ON coding_agents(name) WHERE status != 'destroyed';
"""


def current_timestamp() -> int:
    """Current time as integer epoch seconds."""
    return int(time.time())


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
