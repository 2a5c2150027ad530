"""Data models for the hr-agent orchestrator."""

from dataclasses import dataclass, field

from hr_agent.db.engine import UNSET_TS

# Task statuses
PLANNED = "planned"
QUEUED = "queued"
RUNNING = "running"
RETRYING = "retrying"
COMPLETED = "completed"
PR_SUBMITTED = "pr_submitted"
ERROR = "error"
CANCELLED = "cancelled"
TIMEOUT = "timeout"

COMPLETED_STATUSES = (COMPLETED, PR_SUBMITTED)
TERMINAL_STATUSES = (COMPLETED, PR_SUBMITTED, ERROR, CANCELLED, TIMEOUT)

# Coding agent statuses
CA_PENDING_CREATE = "pending_create"
CA_CREATING = "creating"
CA_IDLE = "idle"
CA_BUSY = "busy"
CA_ERROR = "error"
CA_NOT_FOUND = "not_found"
CA_DESTROYING = "destroying"
CA_DESTROYED = "destroyed"

# Task tags
TAG_REQUIRES_CA = "requires:ca"
TAG_MANAGES_CA = "manages:ca"
TAG_AGENT_CODING = "agent:coding"
TAG_AGENT_REVIEW = "agent:review"
TAG_AGENT_TEST = "agent:test"
TAG_RUNTIME_LONG = "runtime:long"


@dataclass
class Task:
    id: int
    type: str
    status: str = QUEUED
    priority: int = 50
    tags: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    correlation_id: int | None = None
    ca_id: int | None = None
    created_at: int = UNSET_TS
    updated_at: int = UNSET_TS
    completed_at: int = UNSET_TS
    deleted_at: int = UNSET_TS

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at != UNSET_TS


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: int = 0
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: int = UNSET_TS


@dataclass
class CodingAgent:
    id: int
    name: str
    container_id: str = ""
    status: str = CA_CREATING
    current_task_id: int | None = None
    correlation_id: int | None = None
    created_at: int = UNSET_TS
    updated_at: int = UNSET_TS
    deleted_at: int = UNSET_TS


@dataclass
class Issue:
    id: int
    issue_number: int
    title: str
    body: str = ""
    url: str | None = None
    labels: list[str] = field(default_factory=list)
    created_at: int = UNSET_TS
    updated_at: int = UNSET_TS


@dataclass
class PullRequest:
    id: int
    issue_number: int
    title: str
    pr_number: int = 0
    body: str = ""
    created_at: int = UNSET_TS
    updated_at: int = UNSET_TS
