"""CLI entry point for the fleet orchestrator."""

import json
import logging
import sys
from contextlib import contextmanager

import click

from fleet_orchestrator.config import get_config
from fleet_orchestrator.core import alerts as alerts_mod
from fleet_orchestrator.core import bots as bots_mod
from fleet_orchestrator.core import escalations as escalations_mod
from fleet_orchestrator.core import projects as projects_mod
from fleet_orchestrator.core import rules as rules_mod
from fleet_orchestrator.core import scheduler as scheduler_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.core import workflows as workflows_mod
from fleet_orchestrator.db.engine import get_db
from fleet_orchestrator.errors import OrchestratorError
from fleet_orchestrator.integrations import channels as channels_mod
from fleet_orchestrator.serializers import run_dict, to_dict, workflow_dict


@contextmanager
def _get_db():
    config = get_config()
    with get_db(config.db_path) as db:
        projects_mod.ensure_default_workspace(db, config.workspace_id)
        yield db


@contextmanager
def _errors():
    """Report validation and not-found errors as a one-line message and exit 1."""
    try:
        yield
    except OrchestratorError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _workspace(workspace: str | None) -> str:
    return workspace or get_config().workspace_id


def _json_arg(value: str | None, what: str):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        click.echo(f"Error: invalid {what} JSON: {e}", err=True)
        sys.exit(1)


@contextmanager
def _sink():
    """Channel sink that delivers in the background and drains on exit."""
    sink = channels_mod.BackgroundDispatcher.from_config(get_config())
    try:
        yield sink
    finally:
        sink.close()


workspace_option = click.option("--workspace", "-w", default=None, help="Workspace ID")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """fo - Fleet Orchestrator CLI"""
    config = get_config()
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Workspace Commands ───────────────────────────────────────────────────────


@main.command("init")
@click.argument("workspace_id", required=False)
@click.option("--name", default=None, help="Display name")
@click.option("--slack-channel", default=None, help="Default Slack channel")
def init_workspace(workspace_id, name, slack_channel):
    """Initialize a workspace and its default project."""
    config = get_config()
    workspace_id = workspace_id or config.workspace_id
    with get_db(config.db_path) as db, _errors():
        if not projects_mod.get_workspace(db, workspace_id):
            projects_mod.create_workspace(db, workspace_id, name or workspace_id, slack_channel)
        workspace = projects_mod.ensure_default_workspace(db, workspace_id)
        click.echo(f"Workspace ready: {workspace.id} ({workspace.name})")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default=None, help="Project ID (defaults to the workspace's project)")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option(
    "--priority", "-p", default="medium",
    type=click.Choice(["urgent", "high", "medium", "low"]), help="Task priority",
)
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--due", default=None, type=click.DateTime(), help="Due time (UTC)")
def task_add(title, project, description, depends_on, priority, tags, due):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None

    with _get_db() as db, _errors():
        task = tasks_mod.create_task(
            db, title, project or get_config().workspace_id, description,
            depends_on=deps, priority=priority, tags=list(tags), due_at=due,
        )
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("list")
@workspace_option
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(workspace, status, json_output):
    """List tasks in a workspace."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, workspace_id=_workspace(workspace), status=status)

        if json_output:
            click.echo(json.dumps(to_dict(tasks), indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "todo": "○",
            "in_progress": "●",
            "done": "✓",
            "cancelled": "✗",
        }
        for task in tasks:
            icon = status_icons.get(task.status, "?")
            deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
            click.echo(f"  {icon} {task.priority:<6} {task.id}: {task.title} ({task.status}){deps}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Project: {task.project_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.tags:
            click.echo(f"  Tags: {', '.join(task.tags)}")
        if task.due_at:
            click.echo(f"  Due: {task.due_at}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        subtasks = tasks_mod.list_subtasks(db, task_id)
        if subtasks:
            click.echo("  Subtasks:")
            for sub in subtasks:
                click.echo(f"    - [{'x' if sub.done else ' '}] {sub.title}")
        for bt in bots_mod.list_bot_tasks(db, task_id=task_id):
            click.echo(f"  Assignment {bt.id}: bot={bt.bot_id} ({bt.status})")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("status")
@click.argument("task_id")
@click.argument("status", type=click.Choice(["todo", "in_progress", "done", "cancelled"]))
def task_status(task_id, status):
    """Set a task's status."""
    with _get_db() as db:
        task = tasks_mod.update_task_status(db, task_id, status)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Updated {task_id} status to {task.status}")


@task_group.command("priority")
@click.argument("task_id")
@click.argument("priority", type=click.Choice(["urgent", "high", "medium", "low"]))
def task_priority(task_id, priority):
    """Set a task's priority."""
    with _get_db() as db:
        task = tasks_mod.update_task_priority(db, task_id, priority)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Updated {task_id} priority to {task.priority}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_add_dep(task_id, depends_on_id):
    """Add a dependency to a task."""
    with _get_db() as db, _errors():
        task = tasks_mod.add_dependency(db, task_id, depends_on_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Added dependency: {task_id} now depends on {depends_on_id}")
        click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_remove_dep(task_id, depends_on_id):
    """Remove a dependency from a task."""
    with _get_db() as db, _errors():
        task = tasks_mod.remove_dependency(db, task_id, depends_on_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Removed dependency: {task_id} no longer depends on {depends_on_id}")
        if task.depends_on:
            click.echo(f"  Remaining deps: {', '.join(task.depends_on)}")
        else:
            click.echo("  No remaining dependencies")


@task_group.command("schedule")
@click.argument("task_id")
@click.argument("when", type=click.DateTime())
def task_schedule(task_id, when):
    """Start a task automatically at WHEN (UTC)."""
    with _get_db() as db, _errors():
        task = tasks_mod.schedule_task(db, task_id, when)
        click.echo(f"Scheduled {task.id} to start at {task.scheduled_at}")


# ── Bot Commands ─────────────────────────────────────────────────────────────


@main.group("bot")
def bot_group():
    """Manage worker bots and their assignments."""
    pass


@bot_group.command("register")
@click.argument("name")
@workspace_option
@click.option("--max-tasks", default=1, type=int, help="Maximum concurrent assignments")
@click.option("--capability", "capabilities", multiple=True, help="Capability tag (repeatable)")
@click.option("--group", "bot_group_name", default=None, help="Bot group")
def bot_register(name, workspace, max_tasks, capabilities, bot_group_name):
    """Register a worker bot."""
    with _get_db() as db, _errors():
        bot = bots_mod.register_bot(
            db, _workspace(workspace), name,
            max_concurrent_tasks=max_tasks,
            capabilities=list(capabilities),
            bot_group=bot_group_name,
        )
        click.echo(f"Registered bot: {bot.id} (max {bot.max_concurrent_tasks} concurrent)")


@bot_group.command("list")
@workspace_option
@click.option("--status", default=None, help="Filter by status")
def bot_list(workspace, status):
    """List bots with their current load."""
    with _get_db() as db:
        bots = bots_mod.list_bots(db, _workspace(workspace), status=status)
        if not bots:
            click.echo("No bots registered.")
            return
        for bot in bots:
            active = bots_mod.active_assignment_count(db, bot.id)
            group = f" [group: {bot.bot_group}]" if bot.bot_group else ""
            click.echo(
                f"  [{bot.status}] {bot.id}: {active}/{bot.max_concurrent_tasks} active{group}"
            )


@bot_group.command("status")
@click.argument("bot_id")
@click.argument("status", type=click.Choice(["idle", "working", "error", "offline"]))
def bot_status(bot_id, status):
    """Set a bot's availability status."""
    with _get_db() as db, _errors():
        bot = bots_mod.set_bot_status(db, bot_id, status)
        click.echo(f"Bot {bot.id} is now {bot.status}")


@bot_group.command("assign")
@click.argument("bot_id")
@click.argument("task_id")
@click.option("--max-retries", default=0, type=int, help="Automatic retries on failure")
@click.option("--timeout", "timeout_minutes", default=None, type=int, help="Timeout in minutes")
def bot_assign(bot_id, task_id, max_retries, timeout_minutes):
    """Assign a task to a bot explicitly."""
    with _get_db() as db, _errors():
        bt = bots_mod.assign_bot_task(
            db, bot_id, task_id, max_retries=max_retries, timeout_minutes=timeout_minutes
        )
        click.echo(f"Created assignment {bt.id}: {task_id} -> {bot_id}")


@bot_group.command("report")
@click.argument("bot_task_id")
@click.argument("status", type=click.Choice(["running", "completed", "failed"]))
@click.option("--summary", default=None, help="Output summary or error detail")
def bot_report(bot_task_id, status, summary):
    """Report progress on an assignment."""
    with _get_db() as db, _errors():
        bt = bots_mod.report_bot_task_status(db, bot_task_id, status, summary)
        click.echo(f"Assignment {bt.id} is {bt.status}")


@bot_group.command("tasks")
@click.option("--bot", "bot_id", default=None, help="Filter by bot")
@click.option("--status", default=None, help="Filter by status")
def bot_tasks(bot_id, status):
    """List assignments."""
    with _get_db() as db:
        assignments = bots_mod.list_bot_tasks(db, bot_id=bot_id, status=status)
        if not assignments:
            click.echo("No assignments found.")
            return
        for bt in assignments:
            retry = f" retry {bt.retry_count}/{bt.max_retries}" if bt.max_retries else ""
            click.echo(f"  [{bt.status.upper()}] {bt.id} bot={bt.bot_id} task={bt.task_id}{retry}")


# ── Scheduling ───────────────────────────────────────────────────────────────


@main.command("schedule")
@workspace_option
def schedule(workspace):
    """Assign ready tasks to bots with spare capacity."""
    with _get_db() as db, _errors():
        assignments = scheduler_mod.schedule_ready_tasks(db, _workspace(workspace))
        if not assignments:
            click.echo("Nothing to schedule.")
            return
        for a in assignments:
            click.echo(f"  {a.task_id} -> {a.bot_id} ({a.bot_task_id})")


# ── Workflow Commands ────────────────────────────────────────────────────────


@main.group("workflow")
def workflow_group():
    """Manage workflows and their runs."""
    pass


@workflow_group.command("create")
@click.argument("name")
@click.option("--file", "definition_file", type=click.File("r"), default=None,
              help="JSON definition file")
@click.option("--definition", default=None, help="JSON definition")
@workspace_option
def workflow_create(name, definition_file, definition, workspace):
    """Create a workflow from a JSON definition."""
    raw = definition_file.read() if definition_file else definition
    if not raw:
        click.echo("Error: provide --file or --definition", err=True)
        sys.exit(1)
    with _get_db() as db, _errors():
        workflow = workflows_mod.create_workflow(db, _workspace(workspace), name, raw)
        click.echo(f"Created workflow: {workflow.id} ({len(workflow.definition.steps)} steps)")


@workflow_group.command("list")
@workspace_option
def workflow_list(workspace):
    """List workflows."""
    with _get_db() as db:
        workflows = workflows_mod.list_workflows(db, _workspace(workspace))
        if not workflows:
            click.echo("No workflows found.")
            return
        for wf in workflows:
            click.echo(
                f"  {wf.id}: {wf.name} ({len(wf.definition.steps)} steps, "
                f"onFailure={wf.definition.on_failure})"
            )


@workflow_group.command("show")
@click.argument("workflow_id")
def workflow_show(workflow_id):
    """Show a workflow definition as JSON."""
    with _get_db() as db, _errors():
        workflow = workflows_mod.require_workflow(db, workflow_id)
        click.echo(json.dumps(workflow_dict(workflow), indent=2))


@workflow_group.command("run")
@click.argument("workflow_id")
@workspace_option
def workflow_run(workflow_id, workspace):
    """Start a run and advance it once."""
    with _get_db() as db, _errors():
        start, advance = workflows_mod.run_workflow(db, workflow_id, workspace)
        click.echo(f"Started run {start.run_id} ({start.steps_initialized} steps)")
        _echo_advance(advance)


@workflow_group.command("start")
@click.argument("workflow_id")
@workspace_option
def workflow_start(workflow_id, workspace):
    """Start a run without advancing it."""
    with _get_db() as db, _errors():
        start = workflows_mod.start_run(db, workflow_id, workspace)
        click.echo(f"Started run {start.run_id} ({start.steps_initialized} steps)")


@workflow_group.command("advance")
@click.argument("run_id")
def workflow_advance(run_id):
    """Promote ready steps of a run."""
    with _get_db() as db, _errors():
        _echo_advance(workflows_mod.advance_run(db, run_id))


@workflow_group.command("complete-step")
@click.argument("run_id")
@click.argument("step_id")
@click.option("--result", default=None, help="Result payload")
def workflow_complete_step(run_id, step_id, result):
    """Mark a running step completed."""
    with _get_db() as db, _errors():
        _echo_advance(workflows_mod.complete_step(db, run_id, step_id, result))


@workflow_group.command("fail-step")
@click.argument("run_id")
@click.argument("step_id")
@click.option("--error", "error_detail", default=None, help="Failure detail")
def workflow_fail_step(run_id, step_id, error_detail):
    """Mark a running step failed."""
    with _get_db() as db, _errors():
        _echo_advance(workflows_mod.fail_step(db, run_id, step_id, error_detail))


@workflow_group.command("runs")
@click.option("--workflow", "workflow_id", default=None, help="Filter by workflow")
@click.option("--status", default=None, help="Filter by status")
def workflow_runs(workflow_id, status):
    """List workflow runs."""
    with _get_db() as db:
        runs = workflows_mod.list_runs(db, workflow_id=workflow_id, status=status)
        if not runs:
            click.echo("No runs found.")
            return
        for run in runs:
            click.echo(f"  [{run.status.upper()}] {run.id} workflow={run.workflow_id}")


@workflow_group.command("status")
@click.argument("run_id")
def workflow_status(run_id):
    """Show a run and its steps."""
    with _get_db() as db, _errors():
        run = workflows_mod.require_run(db, run_id)
        click.echo(json.dumps(run_dict(run, workflows_mod.get_run_steps(db, run_id)), indent=2))


def _echo_advance(advance):
    if advance.advanced_step_ids:
        click.echo(f"  Advanced: {', '.join(advance.advanced_step_ids)}")
    else:
        click.echo("  Advanced: none")
    click.echo(f"  Run status: {advance.status}")


# ── Rule Commands ────────────────────────────────────────────────────────────


@main.group("rule")
def rule_group():
    """Manage automation rules."""
    pass


@rule_group.command("add")
@click.argument("name")
@click.option("--trigger", required=True, help="Trigger name, e.g. task.created")
@click.option("--conditions", default="[]", help="Conditions JSON list")
@click.option("--actions", default="[]", help="Actions JSON list")
@workspace_option
def rule_add(name, trigger, conditions, actions, workspace):
    """Create an automation rule."""
    with _get_db() as db, _errors():
        rule = rules_mod.create_rule(
            db, _workspace(workspace), name, trigger,
            _json_arg(conditions, "conditions"), _json_arg(actions, "actions"),
        )
        click.echo(f"Created rule #{rule.id}: {rule.name} (on {rule.trigger})")


@rule_group.command("list")
@workspace_option
@click.option("--trigger", default=None, help="Filter by trigger")
def rule_list(workspace, trigger):
    """List automation rules."""
    with _get_db() as db:
        rules = rules_mod.list_rules(db, _workspace(workspace), trigger=trigger)
        if not rules:
            click.echo("No rules found.")
            return
        for rule in rules:
            state = "active" if rule.active else "inactive"
            click.echo(
                f"  #{rule.id} [{state}] {rule.name} on {rule.trigger}: "
                f"{len(rule.conditions)} condition(s), {len(rule.actions)} action(s)"
            )


@rule_group.command("evaluate")
@click.argument("trigger")
@click.option("--payload", default="{}", help="Event payload JSON object")
@click.option("--task", "task_id", default=None, help="Task the event concerns")
@click.option("--bot", "bot_id", default=None, help="Bot the event concerns")
@workspace_option
def rule_evaluate(trigger, payload, task_id, bot_id, workspace):
    """Evaluate rules for a trigger against a payload."""
    data = _json_arg(payload, "payload")
    with _get_db() as db, _sink() as sink, _errors():
        context = rules_mod.RuleContext(_workspace(workspace), task_id=task_id, bot_id=bot_id)
        evaluation = rules_mod.evaluate_rules(db, trigger, data, context, sink=sink)
        click.echo(
            f"Matched {evaluation.matched} rule(s), executed {evaluation.actions_executed} action(s)"
        )
        for result in evaluation.results:
            click.echo(f"  {result['rule']}:")
            for line in result["actions"]:
                click.echo(f"    - {line}")


# ── Escalation Commands ──────────────────────────────────────────────────────


@main.group("escalation")
def escalation_group():
    """Manage escalation rules."""
    pass


@escalation_group.command("add")
@click.argument("trigger", type=click.Choice(["bot_failure", "task_overdue", "approval_timeout"]))
@click.option("--threshold", default=3, type=int, help="Failure count or hours")
@click.option("--notify-user", default=None, help="User to notify")
@workspace_option
def escalation_add(trigger, threshold, notify_user, workspace):
    """Create an escalation rule."""
    with _get_db() as db, _errors():
        rule = escalations_mod.create_escalation_rule(
            db, _workspace(workspace), trigger, threshold, notify_user
        )
        click.echo(f"Created escalation rule #{rule.id}: {rule.trigger} >= {rule.threshold}")


@escalation_group.command("list")
@workspace_option
def escalation_list(workspace):
    """List escalation rules."""
    with _get_db() as db:
        rules = escalations_mod.list_escalation_rules(db, _workspace(workspace))
        if not rules:
            click.echo("No escalation rules.")
            return
        for rule in rules:
            target = f" -> {rule.escalate_to_user_id}" if rule.escalate_to_user_id else ""
            click.echo(f"  #{rule.id} {rule.trigger} threshold={rule.threshold}{target}")


@escalation_group.command("check")
@workspace_option
def escalation_check(workspace):
    """Check escalation rules now."""
    with _get_db() as db, _sink() as sink, _errors():
        check = escalations_mod.check_escalations(db, _workspace(workspace), sink=sink)
        click.echo(f"Checked {check.rules_checked} rule(s), raised {len(check.results)} escalation(s)")
        for r in check.results:
            notified = " (notified)" if r.notification_sent else ""
            click.echo(f"  rule #{r.rule_id} {r.trigger}: {r.subject_id}{notified}")


# ── Channel Commands ─────────────────────────────────────────────────────────


@main.group("channel")
def channel_group():
    """Manage outbound channels."""
    pass


@channel_group.command("add")
@click.argument("channel_type", type=click.Choice(list(channels_mod.CHANNEL_TYPES)))
@click.argument("name")
@click.option("--config", "config_json", default="{}", help="Channel config JSON")
@click.option("--event", "events", multiple=True, help="Event glob (repeatable)")
@click.option("--min-severity", default="info", type=click.Choice(["info", "warning", "critical"]))
@workspace_option
def channel_add(channel_type, name, config_json, events, min_severity, workspace):
    """Configure an outbound channel."""
    with _get_db() as db, _errors():
        channel = channels_mod.create_channel(
            db, _workspace(workspace), channel_type, name,
            config=_json_arg(config_json, "config"),
            events=list(events) or None,
            min_severity=min_severity,
        )
        click.echo(f"Created channel #{channel.id}: {channel.name} ({channel.type})")


@channel_group.command("list")
@workspace_option
def channel_list(workspace):
    """List channels."""
    with _get_db() as db:
        channels = channels_mod.list_channels(db, _workspace(workspace))
        if not channels:
            click.echo("No channels configured.")
            return
        for ch in channels:
            state = "active" if ch.active else "inactive"
            click.echo(
                f"  #{ch.id} [{state}] {ch.name} ({ch.type}) events={','.join(ch.events)} "
                f"min={ch.min_severity}"
            )


# ── Alert Commands ───────────────────────────────────────────────────────────


@main.group("alert")
def alert_group():
    """View and acknowledge alerts."""
    pass


@alert_group.command("list")
@workspace_option
@click.option("--all", "show_all", is_flag=True, help="Include acknowledged alerts")
def alert_list(workspace, show_all):
    """List alerts."""
    with _get_db() as db:
        alerts = alerts_mod.list_alerts(
            db, _workspace(workspace), unacknowledged_only=not show_all
        )
        if not alerts:
            click.echo("No alerts.")
            return
        for a in alerts:
            ack = " (ack)" if a.acknowledged_at else ""
            click.echo(f"  #{a.id} [{a.severity.upper()}] {a.message}{ack}")


@alert_group.command("ack")
@click.argument("alert_id", type=int)
def alert_ack(alert_id):
    """Acknowledge an alert."""
    with _get_db() as db, _errors():
        alerts_mod.acknowledge_alert(db, alert_id)
        click.echo(f"Acknowledged alert #{alert_id}")


# ── Long-running Commands ────────────────────────────────────────────────────


@main.command("monitor")
@click.option("--interval", default=None, type=float, help="Seconds between checks")
def monitor_command(interval):
    """Run the escalation monitor in the foreground."""
    import time

    config = get_config()
    with _get_db() as db:
        click.echo(f"Monitoring {len(projects_mod.list_workspaces(db))} workspace(s)")
    monitor = escalations_mod.EscalationMonitor(
        db_path=config.db_path,
        poll_interval=interval or config.monitor_interval,
        slack_token=config.slack_bot_token,
        channel_backoff=config.channel_backoff,
        channel_timeout=config.channel_timeout,
    )
    monitor.start()
    click.echo(f"Escalation monitor running every {monitor.poll_interval}s (Ctrl-C to stop)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        monitor.stop()


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Serve the HTTP API."""
    from fleet_orchestrator.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from fleet_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
