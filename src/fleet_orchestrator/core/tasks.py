"""Task management operations."""

import json
import logging
import re
import sqlite3
from datetime import datetime

from fleet_orchestrator.db.engine import timestamp, utcnow
from fleet_orchestrator.db.models import (
    TASK_PRIORITIES,
    TASK_STATUSES,
    Subtask,
    Task,
    TaskEvent,
)
from fleet_orchestrator.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def unique_id(db: sqlite3.Connection, table: str, base_slug: str) -> str:
    """Generate a unique ID for a table from a slug, appending a number if needed."""
    base_slug = base_slug or "item"
    existing = db.execute(
        f"SELECT id FROM {table} WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            f"SELECT id FROM {table} WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str = "default",
    description: str = "",
    depends_on: list[str] | None = None,
    priority: str = "medium",
    tags: list[str] | None = None,
    due_at: datetime | None = None,
) -> Task:
    """Create a new task.

    Dependency ids are stored as given; an id that never resolves to a task
    keeps the new task out of the ready set.
    """
    if priority not in TASK_PRIORITIES:
        raise ValidationError(
            f"Invalid priority '{priority}'. Must be one of: {', '.join(TASK_PRIORITIES)}"
        )
    if not db.execute("SELECT id FROM projects WHERE id = ?", (project_id,)).fetchone():
        raise NotFoundError(f"Project not found: {project_id}")

    task_id = unique_id(db, "tasks", slugify(title))
    db.execute(
        """INSERT INTO tasks (id, project_id, title, description, priority, tags, due_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id,
            project_id,
            title,
            description,
            priority,
            json.dumps(_dedupe(tags or [])),
            timestamp(due_at) if due_at else None,
        ),
    )

    for dep_id in depends_on or []:
        db.execute(
            "INSERT OR IGNORE INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )

    _log_event(db, task_id, "created", None, "todo")
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None

    task = _row_to_task(row)
    deps = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ? ORDER BY created_at, rowid",
        (task_id,),
    ).fetchall()
    task.depends_on = [d["depends_on_task_id"] for d in deps]
    return task


def require_task(db: sqlite3.Connection, task_id: str) -> Task:
    task = get_task(db, task_id)
    if not task:
        raise NotFoundError(f"Task not found: {task_id}")
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
    workspace_id: str | None = None,
) -> list[Task]:
    """List tasks with optional project, workspace and status filters.

    Rows come back in insertion order; callers that need priority order sort
    them with the scheduler's rank.
    """
    query = "SELECT t.* FROM tasks t JOIN projects p ON t.project_id = p.id WHERE 1=1"
    params: list = []

    if project_id is not None:
        query += " AND t.project_id = ?"
        params.append(project_id)

    if workspace_id is not None:
        query += " AND p.workspace_id = ?"
        params.append(workspace_id)

    if status:
        query += " AND t.status = ?"
        params.append(status)

    query += " ORDER BY t.created_at, t.rowid"
    rows = db.execute(query, params).fetchall()
    tasks = [_row_to_task(row) for row in rows]

    edges = list_dependency_edges(db, [t.id for t in tasks])
    by_task: dict[str, list[str]] = {}
    for task_id, dep_id in edges:
        by_task.setdefault(task_id, []).append(dep_id)
    for task in tasks:
        task.depends_on = by_task.get(task.id, [])
    return tasks


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
) -> Task | None:
    """Update a task's status. Returns the updated task."""
    task = get_task(db, task_id)
    if not task:
        return None
    set_task_status(db, task_id, status, old_status=task.status)
    db.commit()
    return get_task(db, task_id)


def set_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    old_status: str | None = None,
):
    """Write a task status and its event without committing."""
    if status not in TASK_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(TASK_STATUSES)}"
        )
    if status == "done" and old_status != "done":
        db.execute(
            """UPDATE tasks SET status = ?, completed_at = ?, updated_at = datetime('now')
               WHERE id = ?""",
            (status, timestamp(), task_id),
        )
    else:
        db.execute(
            "UPDATE tasks SET status = ?, updated_at = datetime('now') WHERE id = ?",
            (status, task_id),
        )
    _log_event(db, task_id, "status_changed", old_status, status)


def update_task_priority(
    db: sqlite3.Connection,
    task_id: str,
    priority: str,
) -> Task | None:
    """Update a task's priority (urgent, high, medium or low)."""
    if priority not in TASK_PRIORITIES:
        raise ValidationError(
            f"Invalid priority '{priority}'. Must be one of: {', '.join(TASK_PRIORITIES)}"
        )
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        "UPDATE tasks SET priority = ?, updated_at = datetime('now') WHERE id = ?",
        (priority, task_id),
    )
    _log_event(db, task_id, "priority_changed", task.priority, priority)
    db.commit()
    return get_task(db, task_id)


def add_tag(db: sqlite3.Connection, task_id: str, tag: str) -> Task | None:
    """Add a tag to a task. Tags behave as a set; re-adding is a no-op."""
    task = get_task(db, task_id)
    if not task:
        return None
    if tag in task.tags:
        return task
    tags = task.tags + [tag]
    db.execute(
        "UPDATE tasks SET tags = ?, updated_at = datetime('now') WHERE id = ?",
        (json.dumps(tags), task_id),
    )
    _log_event(db, task_id, "tag_added", None, tag)
    db.commit()
    return get_task(db, task_id)


def add_subtask(db: sqlite3.Connection, task_id: str, title: str) -> Subtask:
    """Insert a checklist item under a task."""
    require_task(db, task_id)
    cur = db.execute(
        "INSERT INTO subtasks (task_id, title) VALUES (?, ?)",
        (task_id, title),
    )
    _log_event(db, task_id, "subtask_added", None, title)
    db.commit()
    row = db.execute("SELECT * FROM subtasks WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_subtask(row)


def list_subtasks(db: sqlite3.Connection, task_id: str) -> list[Subtask]:
    rows = db.execute(
        "SELECT * FROM subtasks WHERE task_id = ? ORDER BY id", (task_id,)
    ).fetchall()
    return [_row_to_subtask(r) for r in rows]


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Add a dependency edge to an existing task.

    Edges are not checked for cycles here; the scheduler reports cycles it
    finds when it reads the graph.
    """
    if task_id == depends_on_id:
        raise ValidationError("Task cannot depend on itself")
    task = get_task(db, task_id)
    if not task:
        return None
    dep = get_task(db, depends_on_id)
    if not dep:
        raise NotFoundError(f"Dependency task not found: {depends_on_id}")
    if depends_on_id in task.depends_on:
        return task  # Already exists
    db.execute(
        "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_added", None, depends_on_id)
    db.commit()
    return get_task(db, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Remove a dependency from a task."""
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    _log_event(db, task_id, "dependency_removed", depends_on_id, None)
    db.commit()
    return get_task(db, task_id)


def list_dependency_edges(
    db: sqlite3.Connection,
    task_ids: list[str] | None = None,
) -> list[tuple[str, str]]:
    """Return (task_id, depends_on_task_id) edges, optionally for a set of tasks."""
    if task_ids is None:
        rows = db.execute(
            "SELECT task_id, depends_on_task_id FROM task_dependencies ORDER BY created_at, rowid"
        ).fetchall()
    elif not task_ids:
        return []
    else:
        placeholders = ", ".join("?" for _ in task_ids)
        rows = db.execute(
            f"""SELECT task_id, depends_on_task_id FROM task_dependencies
                WHERE task_id IN ({placeholders}) ORDER BY created_at, rowid""",
            task_ids,
        ).fetchall()
    return [(r["task_id"], r["depends_on_task_id"]) for r in rows]


def schedule_task(
    db: sqlite3.Connection,
    task_id: str,
    scheduled_at: datetime,
) -> Task:
    """Schedule a task to start automatically at a point in time."""
    require_task(db, task_id)
    db.execute(
        "UPDATE tasks SET scheduled_at = ?, updated_at = datetime('now') WHERE id = ?",
        (timestamp(scheduled_at), task_id),
    )
    _log_event(db, task_id, "scheduled", None, timestamp(scheduled_at))
    db.commit()
    return get_task(db, task_id)


def process_scheduled_tasks(
    db: sqlite3.Connection,
    now: datetime | None = None,
) -> list[str]:
    """Start every 'todo' task whose scheduled time has passed. Returns started ids."""
    cutoff = timestamp(now or utcnow())
    rows = db.execute(
        """SELECT id FROM tasks
           WHERE status = 'todo' AND scheduled_at IS NOT NULL AND scheduled_at <= ?
           ORDER BY scheduled_at, rowid""",
        (cutoff,),
    ).fetchall()
    started = []
    for row in rows:
        set_task_status(db, row["id"], "in_progress", old_status="todo")
        started.append(row["id"])
    db.commit()
    if started:
        logger.info("Started %d scheduled task(s)", len(started))
    return started


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _dedupe(values: list[str]) -> list[str]:
    seen: list[str] = []
    for v in values:
        if v not in seen:
            seen.append(v)
    return seen


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        priority=row["priority"] or "medium",
        tags=json.loads(row["tags"] or "[]"),
        due_at=_parse_dt(row["due_at"]),
        scheduled_at=_parse_dt(row["scheduled_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _row_to_subtask(row: sqlite3.Row) -> Subtask:
    return Subtask(
        id=row["id"],
        task_id=row["task_id"],
        title=row["title"],
        done=bool(row["done"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
