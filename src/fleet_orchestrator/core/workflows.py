"""Workflow definitions and the run coordinator that advances them.

A run snapshots its workflow's definition when it starts. Each step moves
``pending -> running -> completed | failed | skipped`` and never leaves a
terminal status. A run is ``completed`` once every step is terminal with no
failure, and ``failed`` once every step is terminal and at least one failed.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fleet_orchestrator.core import scheduler
from fleet_orchestrator.core.locks import run_locks
from fleet_orchestrator.core.projects import require_workspace
from fleet_orchestrator.core.tasks import get_task, slugify, unique_id
from fleet_orchestrator.db.engine import timestamp, transaction
from fleet_orchestrator.db.models import (
    FAILURE_POLICIES,
    STEP_TYPES,
    TERMINAL_RUN_STATUSES,
    TERMINAL_STEP_STATUSES,
    Step,
    Workflow,
    WorkflowDefinition,
    WorkflowRun,
    WorkflowRunStep,
)
from fleet_orchestrator.errors import (
    NotFoundError,
    ValidationError,
    WorkflowCycleError,
    WorkflowValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


@dataclass
class RunStart:
    run_id: str
    steps_initialized: int


@dataclass
class Advance:
    """Outcome of one advancement pass.

    ``completed`` is true once the run is terminal, whether it ended
    ``completed`` or ``failed``; ``status`` tells the two apart.
    """

    advanced_step_ids: list[str] = field(default_factory=list)
    completed: bool = False
    status: str = "running"


# ── Definition parsing and validation ───────────────────────────────────────


def parse_workflow_definition(raw: str | dict) -> WorkflowDefinition:
    """Parse a JSON workflow definition into typed steps.

    Checks structure only; use ``load_definition`` to also reject cycles and
    unknown step references.
    """
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise WorkflowValidationError(f"Invalid workflow definition JSON: {e}") from e
    else:
        data = raw

    if not isinstance(data, dict):
        raise WorkflowValidationError("Workflow definition must be a JSON object")
    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list):
        raise WorkflowValidationError("Workflow definition must have a 'steps' array")

    on_failure = data.get("onFailure") or "stop"
    if on_failure not in FAILURE_POLICIES:
        raise WorkflowValidationError(
            f"Invalid onFailure '{on_failure}'. Must be one of: {', '.join(FAILURE_POLICIES)}"
        )

    steps: list[Step] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_steps):
        step = _parse_step(item, index)
        if step.id in seen:
            raise WorkflowValidationError(f"Duplicate step id '{step.id}'")
        seen.add(step.id)
        steps.append(step)

    return WorkflowDefinition(steps=steps, on_failure=on_failure)


def _parse_step(item: Any, index: int) -> Step:
    if not isinstance(item, dict):
        raise WorkflowValidationError(f"Step {index} must be an object")

    step_id = item.get("id")
    if not isinstance(step_id, str) or not step_id:
        raise WorkflowValidationError(f"Step {index} needs a non-empty string 'id'")

    step_type = item.get("type")
    if step_type not in STEP_TYPES:
        raise WorkflowValidationError(
            f"Step '{step_id}' has invalid type '{step_type}'. "
            f"Must be one of: {', '.join(STEP_TYPES)}"
        )

    depends_on = item.get("dependsOn") or []
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise WorkflowValidationError(f"Step '{step_id}' dependsOn must be a list of step ids")

    config = item.get("config") or {}
    if not isinstance(config, dict):
        raise WorkflowValidationError(f"Step '{step_id}' config must be an object")

    return Step(
        id=step_id,
        name=item.get("name") or step_id,
        type=step_type,
        bot_group_id=item.get("botGroupId"),
        depends_on=list(dict.fromkeys(depends_on)),
        config=config,
    )


def validate_steps(steps: list[Step]) -> list[Step]:
    """Topologically sort steps, dependencies first.

    Raises WorkflowCycleError naming the step where a cycle closes, or
    WorkflowValidationError for a dependsOn id that is not a step.
    """
    by_id = {s.id: s for s in steps}
    visiting: set[str] = set()
    visited: set[str] = set()
    ordered: list[Step] = []

    for root in steps:
        if root.id in visited:
            continue
        visiting.add(root.id)
        stack = [(root, iter(root.depends_on))]
        while stack:
            step, deps = stack[-1]
            dep_id = next(deps, None)
            if dep_id is None:
                stack.pop()
                visiting.discard(step.id)
                visited.add(step.id)
                ordered.append(step)
                continue
            dep = by_id.get(dep_id)
            if dep is None:
                raise WorkflowValidationError(
                    f"Unknown step '{dep_id}' in dependsOn of step '{step.id}'"
                )
            if dep.id in visiting:
                raise WorkflowCycleError(dep.id)
            if dep.id not in visited:
                visiting.add(dep.id)
                stack.append((dep, iter(dep.depends_on)))
    return ordered


def load_definition(raw: str | dict) -> WorkflowDefinition:
    """Parse and fully validate a definition."""
    definition = parse_workflow_definition(raw)
    validate_steps(definition.steps)
    return definition


def definition_to_dict(definition: WorkflowDefinition) -> dict:
    steps = []
    for s in definition.steps:
        item: dict[str, Any] = {"id": s.id, "name": s.name, "type": s.type}
        if s.bot_group_id:
            item["botGroupId"] = s.bot_group_id
        item["dependsOn"] = list(s.depends_on)
        item["config"] = dict(s.config)
        steps.append(item)
    return {"steps": steps, "onFailure": definition.on_failure}


# ── Workflow CRUD ───────────────────────────────────────────────────────────


def create_workflow(
    db: sqlite3.Connection,
    workspace_id: str,
    name: str,
    definition: str | dict,
) -> Workflow:
    """Validate a definition and store it as a new workflow."""
    require_workspace(db, workspace_id)
    parsed = load_definition(definition)
    workflow_id = unique_id(db, "workflows", slugify(name))
    db.execute(
        "INSERT INTO workflows (id, workspace_id, name, definition) VALUES (?, ?, ?, ?)",
        (workflow_id, workspace_id, name, json.dumps(definition_to_dict(parsed))),
    )
    db.commit()
    logger.info("Created workflow %s with %d step(s)", workflow_id, len(parsed.steps))
    return get_workflow(db, workflow_id)


def update_workflow(
    db: sqlite3.Connection,
    workflow_id: str,
    name: str | None = None,
    definition: str | dict | None = None,
) -> Workflow:
    """Rename a workflow or replace its definition. Running runs keep theirs."""
    workflow = require_workflow(db, workflow_id)
    new_name = name or workflow.name
    parsed = load_definition(definition) if definition is not None else workflow.definition
    db.execute(
        """UPDATE workflows SET name = ?, definition = ?, updated_at = datetime('now')
           WHERE id = ?""",
        (new_name, json.dumps(definition_to_dict(parsed)), workflow_id),
    )
    db.commit()
    return get_workflow(db, workflow_id)


def get_workflow(db: sqlite3.Connection, workflow_id: str) -> Workflow | None:
    """Get a workflow by ID."""
    row = db.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
    if not row:
        return None
    return _row_to_workflow(row)


def require_workflow(db: sqlite3.Connection, workflow_id: str) -> Workflow:
    workflow = get_workflow(db, workflow_id)
    if not workflow:
        raise NotFoundError(f"Workflow not found: {workflow_id}")
    return workflow


def list_workflows(db: sqlite3.Connection, workspace_id: str) -> list[Workflow]:
    """List workflows in a workspace."""
    rows = db.execute(
        "SELECT * FROM workflows WHERE workspace_id = ? ORDER BY created_at, id",
        (workspace_id,),
    ).fetchall()
    return [_row_to_workflow(r) for r in rows]


# ── Runs ────────────────────────────────────────────────────────────────────


def start_run(
    db: sqlite3.Connection,
    workflow_id: str,
    workspace_id: str | None = None,
) -> RunStart:
    """Create a run with one pending step record per definition step.

    The stored definition is re-validated first; nothing is written if it
    fails to parse or contains a cycle.
    """
    row = db.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
    if not row or (workspace_id is not None and row["workspace_id"] != workspace_id):
        raise NotFoundError(f"Workflow not found: {workflow_id}")

    definition = load_definition(row["definition"])
    run_id = str(uuid.uuid4())

    with transaction(db):
        db.execute(
            "INSERT INTO workflow_runs (id, workflow_id, status, definition) VALUES (?, ?, 'running', ?)",
            (run_id, workflow_id, json.dumps(definition_to_dict(definition))),
        )
        db.executemany(
            "INSERT INTO workflow_run_steps (workflow_run_id, step_id, status) VALUES (?, ?, 'pending')",
            [(run_id, s.id) for s in definition.steps],
        )

    logger.info(
        "Started run %s of workflow %s (%d steps)", run_id, workflow_id, len(definition.steps)
    )
    return RunStart(run_id=run_id, steps_initialized=len(definition.steps))


def get_run(db: sqlite3.Connection, run_id: str) -> WorkflowRun | None:
    """Get a workflow run by ID."""
    row = db.execute("SELECT * FROM workflow_runs WHERE id = ?", (run_id,)).fetchone()
    if not row:
        return None
    return _row_to_run(row)


def require_run(db: sqlite3.Connection, run_id: str) -> WorkflowRun:
    run = get_run(db, run_id)
    if not run:
        raise NotFoundError(f"Workflow run not found: {run_id}")
    return run


def list_runs(
    db: sqlite3.Connection,
    workflow_id: str | None = None,
    status: str | None = None,
) -> list[WorkflowRun]:
    """List runs, newest first."""
    query = "SELECT * FROM workflow_runs WHERE 1=1"
    params: list = []
    if workflow_id:
        query += " AND workflow_id = ?"
        params.append(workflow_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY started_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_run(r) for r in rows]


def get_run_steps(db: sqlite3.Connection, run_id: str) -> list[WorkflowRunStep]:
    """Per-step records of a run, in definition order."""
    rows = db.execute(
        "SELECT * FROM workflow_run_steps WHERE workflow_run_id = ? ORDER BY id",
        (run_id,),
    ).fetchall()
    return [_row_to_run_step(r) for r in rows]


def find_ready_steps(
    db: sqlite3.Connection,
    run_id: str,
    definition: WorkflowDefinition,
) -> list[Step]:
    """Pending steps whose dependencies have all completed."""
    statuses = {s.step_id: s.status for s in get_run_steps(db, run_id)}
    return [
        step
        for step in definition.steps
        if statuses.get(step.id) == "pending"
        and all(statuses.get(dep) == "completed" for dep in step.depends_on)
    ]


def advance_run(db: sqlite3.Connection, run_id: str) -> Advance:
    """Promote ready steps to running and settle the run if it is finished.

    Safe to call repeatedly: a step is promoted only by the call that moves
    it out of 'pending', and a stable run yields no advanced steps. Calls
    for the same run are serialized in-process.
    """
    with run_locks.hold(run_id), transaction(db):
        run = require_run(db, run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            return Advance([], completed=True, status=run.status)

        definition = run.definition
        workspace_id = _run_workspace(db, run)
        _apply_failure_policy(db, run_id, definition)

        advanced: list[str] = []
        now = timestamp()
        for step in find_ready_steps(db, run_id, definition):
            cur = db.execute(
                """UPDATE workflow_run_steps
                   SET status = 'running', started_at = ?, attempts = attempts + 1
                   WHERE workflow_run_id = ? AND step_id = ? AND status = 'pending'""",
                (now, run_id, step.id),
            )
            if cur.rowcount != 1:
                continue
            advanced.append(step.id)
            if step.type == "bot_task":
                _dispatch_bot_task(db, workspace_id, run_id, step)

        status = _settle_run(db, run_id)

    if advanced:
        logger.debug("Run %s advanced steps: %s", run_id, ", ".join(advanced))
    if status in TERMINAL_RUN_STATUSES:
        logger.info("Workflow run %s %s", run_id, status)
    return Advance(advanced, completed=status in TERMINAL_RUN_STATUSES, status=status)


def complete_step(
    db: sqlite3.Connection,
    run_id: str,
    step_id: str,
    result: str | None = None,
) -> Advance:
    """Mark a running step completed, then advance the run.

    Completing a step that is already terminal changes nothing.
    """
    with run_locks.hold(run_id):
        step = _require_run_step(db, run_id, step_id)
        if step.status == "pending":
            raise ValidationError(f"Step '{step_id}' has not started yet")
        if step.status == "running":
            db.execute(
                """UPDATE workflow_run_steps
                   SET status = 'completed', result = ?, completed_at = ?
                   WHERE workflow_run_id = ? AND step_id = ? AND status = 'running'""",
                (result, timestamp(), run_id, step_id),
            )
            db.commit()
        else:
            logger.debug("Step %s of run %s is already %s", step_id, run_id, step.status)
        return advance_run(db, run_id)


def fail_step(
    db: sqlite3.Connection,
    run_id: str,
    step_id: str,
    error: str | None = None,
) -> Advance:
    """Mark a running step failed, then advance the run.

    Under the 'retry' policy the step stays running and is re-attempted
    until its ``maxAttempts`` config (default 3) is used up.
    """
    with run_locks.hold(run_id):
        run = require_run(db, run_id)
        step = _require_run_step(db, run_id, step_id)
        if step.status == "pending":
            raise ValidationError(f"Step '{step_id}' has not started yet")
        if step.status != "running":
            logger.debug("Step %s of run %s is already %s", step_id, run_id, step.status)
            return advance_run(db, run_id)

        definition_step = _definition_step(run.definition, step_id)
        max_attempts = int(definition_step.config.get("maxAttempts", DEFAULT_MAX_ATTEMPTS))

        if run.definition.on_failure == "retry" and step.attempts < max_attempts:
            with transaction(db):
                db.execute(
                    """UPDATE workflow_run_steps
                       SET attempts = attempts + 1, error = ?, started_at = ?
                       WHERE workflow_run_id = ? AND step_id = ? AND status = 'running'""",
                    (error, timestamp(), run_id, step_id),
                )
                if definition_step.type == "bot_task":
                    _dispatch_bot_task(db, _run_workspace(db, run), run_id, definition_step)
            logger.info(
                "Retrying step %s of run %s (attempt %d/%d)",
                step_id, run_id, step.attempts + 1, max_attempts,
            )
            return advance_run(db, run_id)

        db.execute(
            """UPDATE workflow_run_steps
               SET status = 'failed', error = ?, completed_at = ?
               WHERE workflow_run_id = ? AND step_id = ? AND status = 'running'""",
            (error, timestamp(), run_id, step_id),
        )
        db.commit()
        logger.info("Step %s of run %s failed: %s", step_id, run_id, error or "no detail")
        return advance_run(db, run_id)


def run_workflow(
    db: sqlite3.Connection,
    workflow_id: str,
    workspace_id: str | None = None,
) -> tuple[RunStart, Advance]:
    """Start a run and advance it once."""
    start = start_run(db, workflow_id, workspace_id)
    return start, advance_run(db, start.run_id)


# ── Internals ───────────────────────────────────────────────────────────────


def _apply_failure_policy(db: sqlite3.Connection, run_id: str, definition: WorkflowDefinition):
    """Skip pending steps that can no longer run after a failure."""
    statuses = {s.step_id: s.status for s in get_run_steps(db, run_id)}
    if "failed" not in statuses.values():
        return

    if definition.on_failure == "continue":
        to_skip = []
        for step in validate_steps(definition.steps):
            blocked = any(statuses.get(d) in ("failed", "skipped") for d in step.depends_on)
            if statuses.get(step.id) == "pending" and blocked:
                statuses[step.id] = "skipped"
                to_skip.append(step.id)
    else:
        to_skip = [step_id for step_id, status in statuses.items() if status == "pending"]

    now = timestamp()
    for step_id in to_skip:
        db.execute(
            """UPDATE workflow_run_steps SET status = 'skipped', completed_at = ?
               WHERE workflow_run_id = ? AND step_id = ? AND status = 'pending'""",
            (now, run_id, step_id),
        )
    if to_skip:
        logger.debug("Run %s skipped steps after failure: %s", run_id, ", ".join(to_skip))


def _settle_run(db: sqlite3.Connection, run_id: str) -> str:
    """Move the run to its terminal status once every step is terminal."""
    statuses = [s.status for s in get_run_steps(db, run_id)]
    if not all(s in TERMINAL_STEP_STATUSES for s in statuses):
        return "running"

    status = "failed" if "failed" in statuses else "completed"
    db.execute(
        "UPDATE workflow_runs SET status = ?, completed_at = ? WHERE id = ? AND status = 'running'",
        (status, timestamp(), run_id),
    )
    return status


def _dispatch_bot_task(db: sqlite3.Connection, workspace_id: str, run_id: str, step: Step):
    """Give a bot_task step's configured task to a bot, if one has room."""
    task_id = step.config.get("taskId")
    if not task_id:
        return
    if not get_task(db, task_id):
        logger.warning("Step %s of run %s references unknown task %s", step.id, run_id, task_id)
        return

    assignment = scheduler.assign_to_available_bot(
        db, workspace_id, task_id, bot_group=step.bot_group_id
    )
    if assignment is None:
        logger.info(
            "No bot available for step %s of run %s; it stays running unassigned",
            step.id, run_id,
        )
        return
    db.execute(
        "UPDATE workflow_run_steps SET bot_task_id = ? WHERE workflow_run_id = ? AND step_id = ?",
        (assignment.bot_task_id, run_id, step.id),
    )


def _run_workspace(db: sqlite3.Connection, run: WorkflowRun) -> str:
    row = db.execute(
        "SELECT workspace_id FROM workflows WHERE id = ?", (run.workflow_id,)
    ).fetchone()
    return row["workspace_id"]


def _definition_step(definition: WorkflowDefinition, step_id: str) -> Step:
    for step in definition.steps:
        if step.id == step_id:
            return step
    raise NotFoundError(f"Step not found in definition: {step_id}")


def _require_run_step(db: sqlite3.Connection, run_id: str, step_id: str) -> WorkflowRunStep:
    require_run(db, run_id)
    row = db.execute(
        "SELECT * FROM workflow_run_steps WHERE workflow_run_id = ? AND step_id = ?",
        (run_id, step_id),
    ).fetchone()
    if not row:
        raise NotFoundError(f"Step '{step_id}' not found in run {run_id}")
    return _row_to_run_step(row)


def _row_to_workflow(row: sqlite3.Row) -> Workflow:
    return Workflow(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        definition=parse_workflow_definition(row["definition"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_run(row: sqlite3.Row) -> WorkflowRun:
    return WorkflowRun(
        id=row["id"],
        workflow_id=row["workflow_id"],
        status=row["status"],
        definition=parse_workflow_definition(row["definition"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _row_to_run_step(row: sqlite3.Row) -> WorkflowRunStep:
    return WorkflowRunStep(
        id=row["id"],
        workflow_run_id=row["workflow_run_id"],
        step_id=row["step_id"],
        status=row["status"],
        attempts=row["attempts"],
        bot_task_id=row["bot_task_id"],
        result=row["result"],
        error=row["error"],
        created_at=_parse_dt(row["created_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
