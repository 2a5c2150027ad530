"""HTTP API for the hr-agent orchestrator."""

import contextlib
import json
from typing import Callable

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from hr_agent import priorities
from hr_agent.config import Config, get_config
from hr_agent.core import agents as agents_mod
from hr_agent.core import issues as issues_mod
from hr_agent.core import tasks as tasks_mod
from hr_agent.core.orchestrator import Orchestrator
from hr_agent.db.models import TERMINAL_STATUSES


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return None
    return body if isinstance(body, dict) else None


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_status(request: Request):
    orch = _orchestrator(request)
    status = await orch.scheduler.get_status()
    status["tasks"] = tasks_mod.count_by_status(orch.db)
    return JSONResponse(status)


async def api_list_tasks(request: Request):
    orch = _orchestrator(request)
    status_filter = request.query_params.get("status")
    correlation = request.query_params.get("correlation_id")
    include_deleted = request.query_params.get("include_deleted") in ("1", "true")
    tasks = tasks_mod.list_tasks(
        orch.db,
        status=status_filter.split(",") if status_filter else None,
        correlation_id=int(correlation) if correlation else None,
        include_deleted=include_deleted,
    )
    return JSONResponse([_task_dict(t) for t in tasks])


async def api_get_task(request: Request):
    orch = _orchestrator(request)
    task_id = request.path_params["task_id"]
    task = tasks_mod.get_task(orch.db, task_id)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    td = _task_dict(task)
    td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(orch.db, task_id)]
    return JSONResponse(td)


async def api_add_task(request: Request):
    orch = _orchestrator(request)
    body = await _json_body(request)
    if not body or not body.get("type"):
        return JSONResponse({"error": "Field 'type' is required"}, status_code=400)
    try:
        task_id = await orch.scheduler.add_task(
            body["type"],
            body.get("params") or {},
            int(body.get("priority", priorities.DEFAULT)),
            body.get("correlation_id"),
        )
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse(_task_dict(tasks_mod.get_task(orch.db, task_id)), status_code=201)


async def api_cancel_task(request: Request):
    orch = _orchestrator(request)
    task_id = request.path_params["task_id"]
    try:
        task = await orch.scheduler.cancel_task(task_id)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=409)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    return JSONResponse(_task_dict(task))


async def api_list_cas(request: Request):
    orch = _orchestrator(request)
    include_destroyed = request.query_params.get("include_destroyed") in ("1", "true")
    agents = agents_mod.list_agents(orch.db, include_destroyed=include_destroyed)
    return JSONResponse([_agent_dict(a) for a in agents])


async def api_add_issue(request: Request):
    """Record an issue and start its workflow."""
    orch = _orchestrator(request)
    body = await _json_body(request)
    if not body or body.get("number") is None or not body.get("title"):
        return JSONResponse({"error": "Fields 'number' and 'title' are required"}, status_code=400)

    number = int(body["number"])
    labels = body.get("labels") or []
    issue = issues_mod.upsert_issue(
        orch.db, number, body["title"], body.get("body") or "", body.get("url"), labels
    )
    active = [
        t for t in tasks_mod.list_tasks(orch.db, correlation_id=number)
        if t.status not in TERMINAL_STATUSES
    ]
    if active:
        return JSONResponse(
            {"issue": issue.issue_number, "task_id": None, "active_tasks": [t.id for t in active]}
        )

    task_id = await orch.scheduler.add_task(
        "issue_processing",
        {"issueNumber": number},
        priorities.priority_from_labels(labels),
        number,
    )
    return JSONResponse({"issue": issue.issue_number, "task_id": task_id}, status_code=201)


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "type": t.type,
        "status": t.status,
        "priority": t.priority,
        "priority_name": priorities.priority_name(t.priority),
        "tags": t.tags,
        "dependencies": t.dependencies,
        "metadata": t.metadata,
        "correlation_id": t.correlation_id,
        "ca_id": t.ca_id,
        "created_at": t.created_at,
        "updated_at": t.updated_at,
        "completed_at": t.completed_at,
        "deleted_at": t.deleted_at,
    }


def _agent_dict(a) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "status": a.status,
        "container_id": a.container_id,
        "current_task_id": a.current_task_id,
        "correlation_id": a.correlation_id,
        "created_at": a.created_at,
        "updated_at": a.updated_at,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": e.created_at,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    orchestrator_factory: Callable[[Config], Orchestrator] | None = None,
) -> Starlette:
    config = config or get_config()
    factory = orchestrator_factory or Orchestrator

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        orchestrator = factory(config)
        app.state.orchestrator = orchestrator
        await orchestrator.start()
        try:
            yield
        finally:
            await orchestrator.stop()

    routes = [
        Route("/api/status", api_status),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_add_task, methods=["POST"]),
        Route("/api/tasks/{task_id:int}", api_get_task),
        Route("/api/tasks/{task_id:int}/cancel", api_cancel_task, methods=["POST"]),
        Route("/api/cas", api_list_cas),
        Route("/api/issues", api_add_issue, methods=["POST"]),
    ]
    return Starlette(routes=routes, lifespan=lifespan)


def run_server(config: Config | None = None, host: str = "127.0.0.1", port: int = 8787):
    app = create_app(config)
    uvicorn.run(app, host=host, port=port)
