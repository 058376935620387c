"""HTTP API for the fleet orchestrator."""

import json

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from fleet_orchestrator.config import get_config
from fleet_orchestrator.core import alerts as alerts_mod
from fleet_orchestrator.core import bots as bots_mod
from fleet_orchestrator.core import escalations as escalations_mod
from fleet_orchestrator.core import projects as projects_mod
from fleet_orchestrator.core import rules as rules_mod
from fleet_orchestrator.core import scheduler as scheduler_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.core import workflows as workflows_mod
from fleet_orchestrator.db.engine import init_db
from fleet_orchestrator.errors import NotFoundError, ValidationError
from fleet_orchestrator.integrations.channels import ChannelDispatcher
from fleet_orchestrator.serializers import run_dict, to_dict, workflow_dict


def _get_db():
    config = get_config()
    return init_db(config.db_path, check_same_thread=False)


async def _body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _advance_dict(advance) -> dict:
    return {
        "advanced_step_ids": advance.advanced_step_ids,
        "completed": advance.completed,
        "status": advance.status,
    }


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_workspaces(request: Request):
    db = _get_db()
    try:
        return JSONResponse(to_dict(projects_mod.list_workspaces(db)))
    finally:
        db.close()


async def api_workspace_tasks(request: Request):
    workspace_id = request.path_params["workspace_id"]
    db = _get_db()
    try:
        projects_mod.require_workspace(db, workspace_id)
        if request.method == "POST":
            data = await _body(request)
            task = tasks_mod.create_task(
                db,
                data.get("title", ""),
                data.get("project_id", workspace_id),
                data.get("description", ""),
                depends_on=data.get("depends_on"),
                priority=data.get("priority", "medium"),
                tags=data.get("tags"),
            )
            return JSONResponse(to_dict(task), status_code=201)
        tasks = tasks_mod.list_tasks(
            db, workspace_id=workspace_id, status=request.query_params.get("status")
        )
        return JSONResponse(to_dict(tasks))
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db()
    try:
        task = tasks_mod.require_task(db, task_id)
        td = to_dict(task)
        td["events"] = to_dict(tasks_mod.get_task_events(db, task_id))
        td["subtasks"] = to_dict(tasks_mod.list_subtasks(db, task_id))
        td["assignments"] = to_dict(bots_mod.list_bot_tasks(db, task_id=task_id))
        return JSONResponse(td)
    finally:
        db.close()


async def api_workspace_bots(request: Request):
    workspace_id = request.path_params["workspace_id"]
    db = _get_db()
    try:
        if request.method == "POST":
            data = await _body(request)
            bot = bots_mod.register_bot(
                db,
                workspace_id,
                data.get("name", ""),
                max_concurrent_tasks=data.get("max_concurrent_tasks", 1),
                capabilities=data.get("capabilities"),
                bot_group=data.get("bot_group"),
            )
            return JSONResponse(to_dict(bot), status_code=201)
        projects_mod.require_workspace(db, workspace_id)
        return JSONResponse(to_dict(bots_mod.list_bots(db, workspace_id)))
    finally:
        db.close()


async def api_schedule(request: Request):
    workspace_id = request.path_params["workspace_id"]
    db = _get_db()
    try:
        assignments = scheduler_mod.schedule_ready_tasks(db, workspace_id)
        return JSONResponse(to_dict(assignments))
    finally:
        db.close()


async def api_report_bot_task(request: Request):
    bot_task_id = request.path_params["bot_task_id"]
    db = _get_db()
    try:
        data = await _body(request)
        bot_task = bots_mod.report_bot_task_status(
            db, bot_task_id, data.get("status", ""), data.get("output_summary")
        )
        return JSONResponse(to_dict(bot_task))
    finally:
        db.close()


async def api_workspace_workflows(request: Request):
    workspace_id = request.path_params["workspace_id"]
    db = _get_db()
    try:
        if request.method == "POST":
            data = await _body(request)
            workflow = workflows_mod.create_workflow(
                db, workspace_id, data.get("name", ""), data.get("definition") or {}
            )
            return JSONResponse(workflow_dict(workflow), status_code=201)
        projects_mod.require_workspace(db, workspace_id)
        return JSONResponse([workflow_dict(w) for w in workflows_mod.list_workflows(db, workspace_id)])
    finally:
        db.close()


async def api_get_workflow(request: Request):
    db = _get_db()
    try:
        workflow = workflows_mod.require_workflow(db, request.path_params["workflow_id"])
        return JSONResponse(workflow_dict(workflow))
    finally:
        db.close()


async def api_run_workflow(request: Request):
    """Start a run and advance it once."""
    workflow_id = request.path_params["workflow_id"]
    db = _get_db()
    try:
        data = await _body(request)
        start, advance = workflows_mod.run_workflow(db, workflow_id, data.get("workspace_id"))
        return JSONResponse(
            {
                "run_id": start.run_id,
                "steps_initialized": start.steps_initialized,
                **_advance_dict(advance),
            },
            status_code=201,
        )
    finally:
        db.close()


async def api_start_run(request: Request):
    workflow_id = request.path_params["workflow_id"]
    db = _get_db()
    try:
        data = await _body(request)
        start = workflows_mod.start_run(db, workflow_id, data.get("workspace_id"))
        return JSONResponse(
            {"run_id": start.run_id, "steps_initialized": start.steps_initialized},
            status_code=201,
        )
    finally:
        db.close()


async def api_get_run(request: Request):
    run_id = request.path_params["run_id"]
    db = _get_db()
    try:
        run = workflows_mod.require_run(db, run_id)
        return JSONResponse(run_dict(run, workflows_mod.get_run_steps(db, run_id)))
    finally:
        db.close()


async def api_advance_run(request: Request):
    db = _get_db()
    try:
        advance = workflows_mod.advance_run(db, request.path_params["run_id"])
        return JSONResponse(_advance_dict(advance))
    finally:
        db.close()


async def api_complete_step(request: Request):
    run_id = request.path_params["run_id"]
    step_id = request.path_params["step_id"]
    db = _get_db()
    try:
        data = await _body(request)
        advance = workflows_mod.complete_step(db, run_id, step_id, data.get("result"))
        return JSONResponse(_advance_dict(advance))
    finally:
        db.close()


async def api_fail_step(request: Request):
    run_id = request.path_params["run_id"]
    step_id = request.path_params["step_id"]
    db = _get_db()
    try:
        data = await _body(request)
        advance = workflows_mod.fail_step(db, run_id, step_id, data.get("error"))
        return JSONResponse(_advance_dict(advance))
    finally:
        db.close()


async def api_evaluate_rules(request: Request):
    workspace_id = request.path_params["workspace_id"]
    db = _get_db()
    try:
        data = await _body(request)
        projects_mod.require_workspace(db, workspace_id)
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValidationError("payload must be a JSON object")
        context = rules_mod.RuleContext(
            workspace_id, task_id=data.get("task_id"), bot_id=data.get("bot_id")
        )
        sink = ChannelDispatcher.from_config(db, get_config())
        evaluation = await run_in_threadpool(
            rules_mod.evaluate_rules, db, data.get("trigger", ""), payload, context, sink
        )
        return JSONResponse(to_dict(evaluation))
    finally:
        db.close()


async def api_check_escalations(request: Request):
    workspace_id = request.path_params["workspace_id"]
    db = _get_db()
    try:
        sink = ChannelDispatcher.from_config(db, get_config())
        check = await run_in_threadpool(
            escalations_mod.check_escalations, db, workspace_id, sink
        )
        return JSONResponse(to_dict(check))
    finally:
        db.close()


async def api_list_alerts(request: Request):
    workspace_id = request.path_params["workspace_id"]
    unacked = request.query_params.get("unacknowledged") in ("1", "true")
    db = _get_db()
    try:
        projects_mod.require_workspace(db, workspace_id)
        alerts = alerts_mod.list_alerts(db, workspace_id, unacknowledged_only=unacked)
        return JSONResponse(to_dict(alerts))
    finally:
        db.close()


# ── Errors ────────────────────────────────────────────────────────────────────


async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse({"error": str(exc)}, status_code=404)


async def _invalid(request: Request, exc: ValidationError):
    return JSONResponse({"error": str(exc)}, status_code=400)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/workspaces", api_list_workspaces),
        Route("/api/workspaces/{workspace_id}/tasks", api_workspace_tasks, methods=["GET", "POST"]),
        Route("/api/workspaces/{workspace_id}/bots", api_workspace_bots, methods=["GET", "POST"]),
        Route("/api/workspaces/{workspace_id}/schedule", api_schedule, methods=["POST"]),
        Route(
            "/api/workspaces/{workspace_id}/workflows",
            api_workspace_workflows,
            methods=["GET", "POST"],
        ),
        Route("/api/workspaces/{workspace_id}/rules/evaluate", api_evaluate_rules, methods=["POST"]),
        Route(
            "/api/workspaces/{workspace_id}/escalations/check",
            api_check_escalations,
            methods=["POST"],
        ),
        Route("/api/workspaces/{workspace_id}/alerts", api_list_alerts),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/bot-tasks/{bot_task_id}/report", api_report_bot_task, methods=["POST"]),
        Route("/api/workflows/{workflow_id}", api_get_workflow),
        Route("/api/workflows/{workflow_id}/run", api_run_workflow, methods=["POST"]),
        Route("/api/workflows/{workflow_id}/runs", api_start_run, methods=["POST"]),
        Route("/api/runs/{run_id}", api_get_run),
        Route("/api/runs/{run_id}/advance", api_advance_run, methods=["POST"]),
        Route("/api/runs/{run_id}/steps/{step_id}/complete", api_complete_step, methods=["POST"]),
        Route("/api/runs/{run_id}/steps/{step_id}/fail", api_fail_step, methods=["POST"]),
    ]
    return Starlette(
        routes=routes,
        exception_handlers={NotFoundError: _not_found, ValidationError: _invalid},
    )


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
