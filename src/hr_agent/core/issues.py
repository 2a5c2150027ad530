"""Issue and pull request records that tasks correlate on."""

import json
import sqlite3

from hr_agent.db.engine import current_timestamp
from hr_agent.db.models import Issue, PullRequest


def _row_to_issue(row: sqlite3.Row) -> Issue:
    return Issue(
        id=row["id"],
        issue_number=row["issue_number"],
        title=row["title"],
        body=row["body"] or "",
        url=row["url"],
        labels=json.loads(row["labels"] or "[]"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_pr(row: sqlite3.Row) -> PullRequest:
    return PullRequest(
        id=row["id"],
        issue_number=row["issue_number"],
        pr_number=row["pr_number"],
        title=row["title"],
        body=row["body"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def upsert_issue(
    db: sqlite3.Connection,
    issue_number: int,
    title: str,
    body: str = "",
    url: str | None = None,
    labels: list[str] | None = None,
) -> Issue:
    """Create or refresh the record for an issue."""
    now = current_timestamp()
    db.execute(
        """INSERT INTO issues (issue_number, title, body, url, labels, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(issue_number) DO UPDATE SET
               title = excluded.title,
               body = excluded.body,
               url = COALESCE(excluded.url, issues.url),
               labels = excluded.labels,
               updated_at = excluded.updated_at""",
        (issue_number, title, body, url, json.dumps(labels or []), now, now),
    )
    db.commit()
    return get_issue(db, issue_number)


def get_issue(db: sqlite3.Connection, issue_number: int) -> Issue | None:
    row = db.execute(
        "SELECT * FROM issues WHERE issue_number = ?", (issue_number,)
    ).fetchone()
    return _row_to_issue(row) if row else None


def create_pull_request(
    db: sqlite3.Connection,
    issue_number: int,
    title: str,
    body: str = "",
    pr_number: int = 0,
) -> PullRequest:
    now = current_timestamp()
    cur = db.execute(
        """INSERT INTO pull_requests (issue_number, pr_number, title, body, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (issue_number, pr_number, title, body, now, now),
    )
    db.commit()
    row = db.execute("SELECT * FROM pull_requests WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_pr(row)


def get_pull_request_for_issue(db: sqlite3.Connection, issue_number: int) -> PullRequest | None:
    row = db.execute(
        "SELECT * FROM pull_requests WHERE issue_number = ? ORDER BY id LIMIT 1",
        (issue_number,),
    ).fetchone()
    return _row_to_pr(row) if row else None
