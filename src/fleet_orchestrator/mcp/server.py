"""MCP server exposing the fleet orchestrator tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from fleet_orchestrator.config import Config, get_config
from fleet_orchestrator.core import alerts as alerts_mod
from fleet_orchestrator.core import bots as bots_mod
from fleet_orchestrator.core import escalations as escalations_mod
from fleet_orchestrator.core import projects as projects_mod
from fleet_orchestrator.core import rules as rules_mod
from fleet_orchestrator.core import scheduler as scheduler_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.core import workflows as workflows_mod
from fleet_orchestrator.core.escalations import EscalationMonitor
from fleet_orchestrator.db.engine import init_db
from fleet_orchestrator.errors import OrchestratorError
from fleet_orchestrator.integrations.channels import BackgroundDispatcher
from fleet_orchestrator.serializers import run_dict, to_dict, workflow_dict


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    sink: BackgroundDispatcher
    monitor: EscalationMonitor | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize the DB connection, channel sink and escalation monitor on startup."""
    config = get_config()
    db = init_db(config.db_path)
    projects_mod.ensure_default_workspace(db, config.workspace_id)

    monitor = EscalationMonitor(
        db_path=config.db_path,
        poll_interval=config.monitor_interval,
        slack_token=config.slack_bot_token,
        channel_backoff=config.channel_backoff,
        channel_timeout=config.channel_timeout,
    )
    monitor.start()
    sink = BackgroundDispatcher.from_config(config)

    try:
        yield AppContext(db=db, config=config, sink=sink, monitor=monitor)
    finally:
        monitor.stop()
        sink.close(timeout=30)
        db.close()


mcp = FastMCP("fleet-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _workspace(ctx: Context, workspace_id: str | None) -> str:
    return workspace_id or _ctx(ctx).config.workspace_id


def _advance_dict(advance) -> dict:
    return {
        "advanced_step_ids": advance.advanced_step_ids,
        "completed": advance.completed,
        "status": advance.status,
    }


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    project: str | None = None,
    description: str = "",
    depends_on: list[str] | None = None,
    priority: str = "medium",
    tags: list[str] | None = None,
) -> dict:
    """Create a new task. Priority: urgent, high, medium (default) or low."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.create_task(
            app.db,
            title,
            project or app.config.workspace_id,
            description,
            depends_on=depends_on,
            priority=priority,
            tags=tags,
        )
    except OrchestratorError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    workspace_id: str | None = None,
    status: str | None = None,
) -> list[dict]:
    """List tasks in a workspace, optionally filtered by status."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(app.db, workspace_id=_workspace(ctx, workspace_id), status=status)
    return to_dict(tasks)


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task including dependencies and bot assignments."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = to_dict(task)
    result["assignments"] = to_dict(bots_mod.list_bot_tasks(app.db, task_id=task_id))
    return result


@mcp.tool()
def update_task_status(ctx: Context, task_id: str, status: str) -> dict:
    """Update a task's status. Valid statuses: todo, in_progress, done, cancelled."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.update_task_status(app.db, task_id, status)
    except OrchestratorError as e:
        return {"error": str(e)}
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return to_dict(task)


@mcp.tool()
def find_ready_tasks(ctx: Context, workspace_id: str | None = None) -> list[dict]:
    """List todo tasks whose dependencies are all done, highest priority first."""
    app = _ctx(ctx)
    return to_dict(scheduler_mod.find_ready_tasks(app.db, _workspace(ctx, workspace_id)))


# ── Bot Tools ─────────────────────────────────────────────────────────────────


@mcp.tool()
def register_bot(
    ctx: Context,
    name: str,
    workspace_id: str | None = None,
    max_concurrent_tasks: int = 1,
    capabilities: list[str] | None = None,
    bot_group: str | None = None,
) -> dict:
    """Register a worker bot that can take task assignments."""
    app = _ctx(ctx)
    try:
        bot = bots_mod.register_bot(
            app.db,
            _workspace(ctx, workspace_id),
            name,
            max_concurrent_tasks=max_concurrent_tasks,
            capabilities=capabilities,
            bot_group=bot_group,
        )
    except OrchestratorError as e:
        return {"error": str(e)}
    return to_dict(bot)


@mcp.tool()
def list_bots(ctx: Context, workspace_id: str | None = None, status: str | None = None) -> list[dict]:
    """List bots in a workspace, optionally filtered by status."""
    app = _ctx(ctx)
    return to_dict(bots_mod.list_bots(app.db, _workspace(ctx, workspace_id), status=status))


@mcp.tool()
def schedule_ready_tasks(ctx: Context, workspace_id: str | None = None) -> list[dict]:
    """Assign ready tasks to bots with free capacity, round-robin."""
    app = _ctx(ctx)
    try:
        assignments = scheduler_mod.schedule_ready_tasks(app.db, _workspace(ctx, workspace_id))
    except OrchestratorError as e:
        return [{"error": str(e)}]
    return to_dict(assignments)


@mcp.tool()
def report_bot_task(
    ctx: Context,
    bot_task_id: str,
    status: str,
    output_summary: str | None = None,
) -> dict:
    """Report progress on a bot assignment: running, completed or failed."""
    app = _ctx(ctx)
    try:
        bot_task = bots_mod.report_bot_task_status(app.db, bot_task_id, status, output_summary)
    except OrchestratorError as e:
        return {"error": str(e)}
    return to_dict(bot_task)


# ── Workflow Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def create_workflow(
    ctx: Context,
    name: str,
    definition: dict,
    workspace_id: str | None = None,
) -> dict:
    """Create a workflow. The definition holds 'steps' and an optional 'onFailure' policy."""
    app = _ctx(ctx)
    try:
        workflow = workflows_mod.create_workflow(
            app.db, _workspace(ctx, workspace_id), name, definition
        )
    except OrchestratorError as e:
        return {"error": str(e)}
    return workflow_dict(workflow)


@mcp.tool()
def list_workflows(ctx: Context, workspace_id: str | None = None) -> list[dict]:
    """List workflows in a workspace."""
    app = _ctx(ctx)
    return [workflow_dict(w) for w in workflows_mod.list_workflows(app.db, _workspace(ctx, workspace_id))]


@mcp.tool()
def run_workflow(ctx: Context, workflow_id: str, workspace_id: str | None = None) -> dict:
    """Start a run of a workflow and advance it once."""
    app = _ctx(ctx)
    try:
        start, advance = workflows_mod.run_workflow(app.db, workflow_id, workspace_id)
    except OrchestratorError as e:
        return {"error": str(e)}
    return {
        "run_id": start.run_id,
        "steps_initialized": start.steps_initialized,
        **_advance_dict(advance),
    }


@mcp.tool()
def advance_run(ctx: Context, run_id: str) -> dict:
    """Promote every ready step of a run and settle its status."""
    app = _ctx(ctx)
    try:
        return _advance_dict(workflows_mod.advance_run(app.db, run_id))
    except OrchestratorError as e:
        return {"error": str(e)}


@mcp.tool()
def complete_step(ctx: Context, run_id: str, step_id: str, result: str | None = None) -> dict:
    """Mark a running step completed (e.g. grant an approval) and advance the run."""
    app = _ctx(ctx)
    try:
        return _advance_dict(workflows_mod.complete_step(app.db, run_id, step_id, result))
    except OrchestratorError as e:
        return {"error": str(e)}


@mcp.tool()
def fail_step(ctx: Context, run_id: str, step_id: str, error: str | None = None) -> dict:
    """Mark a running step failed and apply the workflow's failure policy."""
    app = _ctx(ctx)
    try:
        return _advance_dict(workflows_mod.fail_step(app.db, run_id, step_id, error))
    except OrchestratorError as e:
        return {"error": str(e)}


@mcp.tool()
def run_status(ctx: Context, run_id: str) -> dict:
    """Get a run with the status of each of its steps."""
    app = _ctx(ctx)
    run = workflows_mod.get_run(app.db, run_id)
    if not run:
        return {"error": f"Workflow run not found: {run_id}"}
    return run_dict(run, workflows_mod.get_run_steps(app.db, run_id))


# ── Automation Tools ──────────────────────────────────────────────────────────


@mcp.tool()
def create_rule(
    ctx: Context,
    name: str,
    trigger: str,
    conditions: list[dict],
    actions: list[dict],
    workspace_id: str | None = None,
) -> dict:
    """Create an automation rule. Conditions use eq/neq/gt/lt/contains/in."""
    app = _ctx(ctx)
    try:
        rule = rules_mod.create_rule(
            app.db, _workspace(ctx, workspace_id), name, trigger, conditions, actions
        )
    except OrchestratorError as e:
        return {"error": str(e)}
    return to_dict(rule)


@mcp.tool()
def evaluate_rules(
    ctx: Context,
    trigger: str,
    payload: dict,
    task_id: str | None = None,
    bot_id: str | None = None,
    workspace_id: str | None = None,
) -> dict:
    """Fire a trigger: run matching rules' actions and report what they did."""
    app = _ctx(ctx)
    context = rules_mod.RuleContext(_workspace(ctx, workspace_id), task_id=task_id, bot_id=bot_id)
    evaluation = rules_mod.evaluate_rules(app.db, trigger, payload, context, sink=app.sink)
    return to_dict(evaluation)


@mcp.tool()
def create_escalation_rule(
    ctx: Context,
    trigger: str,
    threshold: int = 3,
    escalate_to_user_id: str | None = None,
    workspace_id: str | None = None,
) -> dict:
    """Create an escalation rule: bot_failure, task_overdue or approval_timeout."""
    app = _ctx(ctx)
    try:
        rule = escalations_mod.create_escalation_rule(
            app.db, _workspace(ctx, workspace_id), trigger, threshold, escalate_to_user_id
        )
    except OrchestratorError as e:
        return {"error": str(e)}
    return to_dict(rule)


@mcp.tool()
def check_escalations(ctx: Context, workspace_id: str | None = None) -> dict:
    """Run the escalation checks for a workspace now."""
    app = _ctx(ctx)
    try:
        check = escalations_mod.check_escalations(
            app.db, _workspace(ctx, workspace_id), sink=app.sink
        )
    except OrchestratorError as e:
        return {"error": str(e)}
    return to_dict(check)


@mcp.tool()
def list_alerts(
    ctx: Context,
    workspace_id: str | None = None,
    unacknowledged_only: bool = False,
) -> list[dict]:
    """List alerts in a workspace, newest first."""
    app = _ctx(ctx)
    alerts = alerts_mod.list_alerts(
        app.db, _workspace(ctx, workspace_id), unacknowledged_only=unacknowledged_only
    )
    return to_dict(alerts)


@mcp.tool()
def acknowledge_alert(ctx: Context, alert_id: int) -> dict:
    """Acknowledge an alert."""
    app = _ctx(ctx)
    try:
        return to_dict(alerts_mod.acknowledge_alert(app.db, alert_id))
    except OrchestratorError as e:
        return {"error": str(e)}
