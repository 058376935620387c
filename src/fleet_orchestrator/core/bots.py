"""Bot registry and bot task assignment bookkeeping."""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta

from fleet_orchestrator.core.projects import require_workspace
from fleet_orchestrator.core.tasks import get_task, set_task_status, slugify, unique_id
from fleet_orchestrator.db.engine import timestamp, utcnow
from fleet_orchestrator.db.models import (
    ACTIVE_BOT_TASK_STATUSES,
    BOT_STATUSES,
    Bot,
    BotTask,
)
from fleet_orchestrator.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = timedelta(seconds=30)

_REPORTABLE_STATUSES = ("running", "completed", "failed")


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_bot(row: sqlite3.Row) -> Bot:
    return Bot(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        status=row["status"],
        max_concurrent_tasks=row["max_concurrent_tasks"],
        capabilities=json.loads(row["capabilities"] or "[]"),
        bot_group=row["bot_group"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_bot_task(row: sqlite3.Row) -> BotTask:
    return BotTask(
        id=row["id"],
        bot_id=row["bot_id"],
        task_id=row["task_id"],
        status=row["status"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        retry_after=_parse_dt(row["retry_after"]),
        timeout_minutes=row["timeout_minutes"],
        output_summary=row["output_summary"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


# ── Bot Registry ────────────────────────────────────────────────────────────


def register_bot(
    db: sqlite3.Connection,
    workspace_id: str,
    name: str,
    max_concurrent_tasks: int = 1,
    capabilities: list[str] | None = None,
    bot_group: str | None = None,
    status: str = "idle",
) -> Bot:
    """Register a worker bot in a workspace."""
    require_workspace(db, workspace_id)
    if max_concurrent_tasks < 1:
        raise ValidationError("max_concurrent_tasks must be at least 1")
    if status not in BOT_STATUSES:
        raise ValidationError(
            f"Invalid bot status '{status}'. Must be one of: {', '.join(BOT_STATUSES)}"
        )
    bot_id = unique_id(db, "bots", slugify(name))
    db.execute(
        """INSERT INTO bots (id, workspace_id, name, status, max_concurrent_tasks,
                             capabilities, bot_group)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            bot_id,
            workspace_id,
            name,
            status,
            max_concurrent_tasks,
            json.dumps(capabilities or []),
            bot_group,
        ),
    )
    db.commit()
    logger.info("Registered bot %s in workspace %s", bot_id, workspace_id)
    return get_bot(db, bot_id)


def get_bot(db: sqlite3.Connection, bot_id: str) -> Bot | None:
    """Get a bot by ID."""
    row = db.execute("SELECT * FROM bots WHERE id = ?", (bot_id,)).fetchone()
    if not row:
        return None
    return _row_to_bot(row)


def list_bots(
    db: sqlite3.Connection,
    workspace_id: str,
    status: str | None = None,
) -> list[Bot]:
    """List bots in a workspace, optionally filtered by status."""
    query = "SELECT * FROM bots WHERE workspace_id = ?"
    params: list = [workspace_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY name, id"
    rows = db.execute(query, params).fetchall()
    return [_row_to_bot(r) for r in rows]


def set_bot_status(db: sqlite3.Connection, bot_id: str, status: str) -> Bot:
    """Update a bot's availability status."""
    if status not in BOT_STATUSES:
        raise ValidationError(
            f"Invalid bot status '{status}'. Must be one of: {', '.join(BOT_STATUSES)}"
        )
    if not get_bot(db, bot_id):
        raise NotFoundError(f"Bot not found: {bot_id}")
    db.execute(
        "UPDATE bots SET status = ?, updated_at = datetime('now') WHERE id = ?",
        (status, bot_id),
    )
    db.commit()
    return get_bot(db, bot_id)


def active_assignment_count(db: sqlite3.Connection, bot_id: str) -> int:
    """Count a bot's non-terminal assignments."""
    row = db.execute(
        "SELECT COUNT(*) AS n FROM bot_tasks WHERE bot_id = ? AND status IN ('pending', 'running')",
        (bot_id,),
    ).fetchone()
    return row["n"]


# ── Assignments ─────────────────────────────────────────────────────────────


def create_bot_task(
    db: sqlite3.Connection,
    bot_id: str,
    task_id: str,
    max_retries: int = 0,
    timeout_minutes: int | None = None,
    retry_count: int = 0,
    retry_after: datetime | None = None,
) -> str:
    """Insert a pending assignment row without committing. Returns its ID."""
    bot_task_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO bot_tasks
           (id, bot_id, task_id, status, retry_count, max_retries, retry_after, timeout_minutes)
           VALUES (?, ?, ?, 'pending', ?, ?, ?, ?)""",
        (
            bot_task_id,
            bot_id,
            task_id,
            retry_count,
            max_retries,
            timestamp(retry_after) if retry_after else None,
            timeout_minutes,
        ),
    )
    return bot_task_id


def assign_bot_task(
    db: sqlite3.Connection,
    bot_id: str,
    task_id: str,
    max_retries: int = 0,
    timeout_minutes: int | None = None,
) -> BotTask:
    """Explicitly assign a task to a bot, outside of a scheduling pass."""
    if not get_bot(db, bot_id):
        raise NotFoundError(f"Bot not found: {bot_id}")
    if not get_task(db, task_id):
        raise NotFoundError(f"Task not found: {task_id}")
    if not 0 <= max_retries <= 10:
        raise ValidationError("max_retries must be between 0 and 10")
    if timeout_minutes is not None and timeout_minutes < 1:
        raise ValidationError("timeout_minutes must be positive")

    bot_task_id = create_bot_task(
        db, bot_id, task_id, max_retries=max_retries, timeout_minutes=timeout_minutes
    )
    db.commit()
    return get_bot_task(db, bot_task_id)


def get_bot_task(db: sqlite3.Connection, bot_task_id: str) -> BotTask | None:
    """Get an assignment by ID."""
    row = db.execute("SELECT * FROM bot_tasks WHERE id = ?", (bot_task_id,)).fetchone()
    if not row:
        return None
    return _row_to_bot_task(row)


def list_bot_tasks(
    db: sqlite3.Connection,
    bot_id: str | None = None,
    task_id: str | None = None,
    status: str | None = None,
) -> list[BotTask]:
    """List assignments, optionally filtered by bot, task and status."""
    query = "SELECT * FROM bot_tasks WHERE 1=1"
    params: list = []
    if bot_id:
        query += " AND bot_id = ?"
        params.append(bot_id)
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_bot_task(r) for r in rows]


def report_bot_task_status(
    db: sqlite3.Connection,
    bot_task_id: str,
    status: str,
    output_summary: str | None = None,
) -> BotTask:
    """Record a worker's progress report for one of its assignments.

    A completed assignment marks its task done. A failed one is handed to
    the retry policy. Either outcome is forwarded to the workflow run step
    that owns the assignment, if any.
    """
    if status not in _REPORTABLE_STATUSES:
        raise ValidationError(
            f"Invalid report status '{status}'. Must be one of: {', '.join(_REPORTABLE_STATUSES)}"
        )
    bot_task = get_bot_task(db, bot_task_id)
    if not bot_task:
        raise NotFoundError(f"Bot task not found: {bot_task_id}")
    if bot_task.status not in ACTIVE_BOT_TASK_STATUSES:
        raise ValidationError(
            f"Bot task {bot_task_id} is already {bot_task.status}"
        )

    now = timestamp()
    if status == "running":
        db.execute(
            """UPDATE bot_tasks
               SET status = 'running', started_at = COALESCE(started_at, ?),
                   output_summary = COALESCE(?, output_summary), updated_at = datetime('now')
               WHERE id = ?""",
            (now, output_summary, bot_task_id),
        )
        db.commit()
        return get_bot_task(db, bot_task_id)

    db.execute(
        """UPDATE bot_tasks
           SET status = ?, completed_at = ?, output_summary = COALESCE(?, output_summary),
               updated_at = datetime('now')
           WHERE id = ?""",
        (status, now, output_summary, bot_task_id),
    )
    if status == "completed":
        task = get_task(db, bot_task.task_id)
        if task and task.status != "done":
            set_task_status(db, task.id, "done", old_status=task.status)
    db.commit()
    logger.info("Bot task %s (bot %s) %s", bot_task_id, bot_task.bot_id, status)

    retry = None
    if status == "failed":
        retry = maybe_retry_bot_task(db, get_bot_task(db, bot_task_id))

    _forward_to_workflow(db, bot_task_id, status, output_summary, retry)
    return get_bot_task(db, bot_task_id)


def _forward_to_workflow(
    db: sqlite3.Connection,
    bot_task_id: str,
    status: str,
    output_summary: str | None,
    retry: BotTask | None,
):
    """Re-enter the run coordinator for a run step backed by this assignment."""
    from fleet_orchestrator.core import workflows as workflows_mod

    row = db.execute(
        "SELECT workflow_run_id, step_id FROM workflow_run_steps WHERE bot_task_id = ?",
        (bot_task_id,),
    ).fetchone()
    if not row:
        return

    if retry is not None:
        db.execute(
            "UPDATE workflow_run_steps SET bot_task_id = ? WHERE bot_task_id = ?",
            (retry.id, bot_task_id),
        )
        db.commit()
        return

    if status == "completed":
        workflows_mod.complete_step(db, row["workflow_run_id"], row["step_id"], output_summary)
    else:
        workflows_mod.fail_step(db, row["workflow_run_id"], row["step_id"], output_summary)


def cancel_bot_task(db: sqlite3.Connection, bot_task_id: str) -> BotTask:
    """Cancel a pending or running assignment."""
    bot_task = get_bot_task(db, bot_task_id)
    if not bot_task:
        raise NotFoundError(f"Bot task not found: {bot_task_id}")
    if bot_task.status not in ACTIVE_BOT_TASK_STATUSES:
        raise ValidationError(f"Cannot cancel a {bot_task.status} bot task")
    db.execute(
        """UPDATE bot_tasks
           SET status = 'cancelled', completed_at = ?, updated_at = datetime('now')
           WHERE id = ?""",
        (timestamp(), bot_task_id),
    )
    db.commit()
    return get_bot_task(db, bot_task_id)


def maybe_retry_bot_task(db: sqlite3.Connection, failed: BotTask) -> BotTask | None:
    """Re-queue a failed assignment if it has retries left.

    The new assignment goes to the same bot with an exponential backoff of
    30s * 2^(retry - 1) recorded in retry_after.
    """
    if failed.max_retries <= 0 or failed.retry_count >= failed.max_retries:
        return None

    retry_count = failed.retry_count + 1
    retry_after = utcnow() + RETRY_BASE_DELAY * (2 ** (retry_count - 1))
    new_id = create_bot_task(
        db,
        failed.bot_id,
        failed.task_id,
        max_retries=failed.max_retries,
        timeout_minutes=failed.timeout_minutes,
        retry_count=retry_count,
        retry_after=retry_after,
    )
    db.commit()
    logger.info(
        "Retrying bot task %s as %s (attempt %d/%d)",
        failed.id, new_id, retry_count, failed.max_retries,
    )
    return get_bot_task(db, new_id)
