"""Dependency-aware task readiness and bot capacity scheduling.

The readiness and planning steps are pure functions over a snapshot; the
``find_*`` and ``schedule_*`` functions load that snapshot from the
database and write the resulting assignments.
"""

import logging
import sqlite3
from dataclasses import dataclass, replace
from typing import Iterable

from fleet_orchestrator.core import bots as bots_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.core.locks import workspace_locks
from fleet_orchestrator.core.projects import require_workspace
from fleet_orchestrator.db.engine import transaction
from fleet_orchestrator.db.models import Task

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"urgent": 0, "high": 1, "medium": 2, "low": 3}


@dataclass
class BotCapacity:
    id: str
    name: str
    max_concurrent_tasks: int
    active_tasks: int
    bot_group: str | None = None

    @property
    def has_capacity(self) -> bool:
        return self.active_tasks < self.max_concurrent_tasks


@dataclass
class Assignment:
    task_id: str
    bot_id: str
    bot_task_id: str


def priority_rank(priority: str) -> int:
    """Sort key for task priorities; unknown values rank with 'medium'."""
    return PRIORITY_RANK.get(priority, PRIORITY_RANK["medium"])


# ── Pure resolution ─────────────────────────────────────────────────────────


def resolve_ready_tasks(
    pending_tasks: Iterable[Task],
    dependency_edges: Iterable[tuple[str, str]],
    done_task_ids: Iterable[str],
) -> list[Task]:
    """Return the pending tasks whose dependencies are all done.

    A task with no edges is ready. A task depending on an id that is not in
    ``done_task_ids`` (including ids of tasks that do not exist) is not.
    The result is ordered by priority, stable for equal priorities.
    """
    deps: dict[str, set[str]] = {}
    for task_id, depends_on in dependency_edges:
        deps.setdefault(task_id, set()).add(depends_on)
    done = set(done_task_ids)

    ready = [t for t in pending_tasks if deps.get(t.id, set()) <= done]
    return sorted(ready, key=lambda t: priority_rank(t.priority))


def find_dependency_cycles(edges: Iterable[tuple[str, str]]) -> list[list[str]]:
    """Find cycles in a task dependency graph.

    Each cycle is returned as a path that starts and ends on the same id.
    """
    graph: dict[str, list[str]] = {}
    for task_id, depends_on in edges:
        graph.setdefault(task_id, []).append(depends_on)
        graph.setdefault(depends_on, [])

    visiting: set[str] = set()
    visited: set[str] = set()
    cycles: list[list[str]] = []

    for root in graph:
        if root in visited:
            continue
        path = [root]
        visiting.add(root)
        stack = [iter(graph[root])]
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                node = path.pop()
                visiting.discard(node)
                visited.add(node)
                stack.pop()
            elif dep in visiting:
                cycles.append(path[path.index(dep):] + [dep])
            elif dep not in visited:
                path.append(dep)
                visiting.add(dep)
                stack.append(iter(graph[dep]))
    return cycles


def plan_assignments(
    ready_tasks: list[Task],
    available_bots: list[BotCapacity],
) -> list[tuple[Task, BotCapacity]]:
    """Pair ready tasks with bots, round-robin with local capacity tracking.

    Tasks are taken in the given order. Each goes to the bot under the
    pointer; the pointer advances once that bot is full. Planning stops when
    either list runs out. Inputs are not mutated.
    """
    bots = [replace(b) for b in available_bots if b.has_capacity]
    plan: list[tuple[Task, BotCapacity]] = []
    index = 0

    for task in ready_tasks:
        if index >= len(bots):
            break
        bot = bots[index]
        plan.append((task, bot))
        bot.active_tasks += 1
        if bot.active_tasks >= bot.max_concurrent_tasks:
            index += 1

    return plan


# ── Snapshot loading ────────────────────────────────────────────────────────


def find_ready_tasks(db: sqlite3.Connection, workspace_id: str) -> list[Task]:
    """Ready 'todo' tasks in a workspace that have no active bot assignment."""
    todo = tasks_mod.list_tasks(db, workspace_id=workspace_id, status="todo")
    if not todo:
        return []

    edges = [(t.id, dep) for t in todo for dep in t.depends_on]
    done_ids = _done_task_ids(db, {dep for _, dep in edges})

    todo_ids = {t.id for t in todo}
    for cycle in find_dependency_cycles((a, b) for a, b in edges if b in todo_ids):
        logger.warning(
            "Task dependency cycle in workspace %s will never become ready: %s",
            workspace_id, " -> ".join(cycle),
        )

    ready = resolve_ready_tasks(todo, edges, done_ids)
    busy = _tasks_with_active_assignments(db, [t.id for t in ready])
    return [t for t in ready if t.id not in busy]


def find_available_bots(
    db: sqlite3.Connection,
    workspace_id: str,
    bot_group: str | None = None,
) -> list[BotCapacity]:
    """Bots that are idle or working and below their concurrency limit."""
    query = """
        SELECT b.id, b.name, b.max_concurrent_tasks, b.bot_group,
               (SELECT COUNT(*) FROM bot_tasks bt
                WHERE bt.bot_id = b.id AND bt.status IN ('pending', 'running')) AS active_tasks
        FROM bots b
        WHERE b.workspace_id = ? AND b.status IN ('idle', 'working')
    """
    params: list = [workspace_id]
    if bot_group:
        query += " AND b.bot_group = ?"
        params.append(bot_group)
    query += " ORDER BY b.name, b.id"

    rows = db.execute(query, params).fetchall()
    capacities = [
        BotCapacity(
            id=r["id"],
            name=r["name"],
            max_concurrent_tasks=r["max_concurrent_tasks"],
            active_tasks=r["active_tasks"],
            bot_group=r["bot_group"],
        )
        for r in rows
    ]
    return [c for c in capacities if c.has_capacity]


# ── Scheduling ──────────────────────────────────────────────────────────────


def schedule_ready_tasks(db: sqlite3.Connection, workspace_id: str) -> list[Assignment]:
    """Assign ready tasks in a workspace to bots with spare capacity.

    Each assignment writes one pending bot task and flips its task to
    'in_progress'. Passes for the same workspace are serialized in-process,
    and the pass runs inside one write transaction so a second process
    sharing the database waits for it. Calling again with nothing ready or
    no capacity is a no-op.
    """
    require_workspace(db, workspace_id)
    assignments: list[Assignment] = []

    with workspace_locks.hold(workspace_id), transaction(db):
        ready = find_ready_tasks(db, workspace_id)
        if not ready:
            return assignments
        available = find_available_bots(db, workspace_id)
        if not available:
            logger.debug("No bot capacity in workspace %s for %d ready task(s)", workspace_id, len(ready))
            return assignments

        for task, bot in plan_assignments(ready, available):
            assignments.append(_assign(db, task, bot))

    logger.info(
        "Scheduled %d task(s) in workspace %s", len(assignments), workspace_id
    )
    return assignments


def assign_to_available_bot(
    db: sqlite3.Connection,
    workspace_id: str,
    task_id: str,
    bot_group: str | None = None,
) -> Assignment | None:
    """Assign one task to the first bot with capacity, without committing.

    Meant to run inside the caller's write transaction. Returns None when
    no bot in the workspace (or group) has capacity.
    """
    task = tasks_mod.require_task(db, task_id)
    available = find_available_bots(db, workspace_id, bot_group=bot_group)
    if not available:
        return None
    return _assign(db, task, available[0])


def _assign(db: sqlite3.Connection, task: Task, bot: BotCapacity) -> Assignment:
    bot_task_id = bots_mod.create_bot_task(db, bot.id, task.id)
    if task.status == "todo":
        tasks_mod.set_task_status(db, task.id, "in_progress", old_status=task.status)
    tasks_mod._log_event(db, task.id, "assigned_to_bot", None, bot.id)
    logger.debug("Assigned task %s to bot %s (%s)", task.id, bot.id, bot_task_id)
    return Assignment(task_id=task.id, bot_id=bot.id, bot_task_id=bot_task_id)


def _done_task_ids(db: sqlite3.Connection, candidate_ids: set[str]) -> set[str]:
    if not candidate_ids:
        return set()
    ids = sorted(candidate_ids)
    placeholders = ", ".join("?" for _ in ids)
    rows = db.execute(
        f"SELECT id FROM tasks WHERE status = 'done' AND id IN ({placeholders})",
        ids,
    ).fetchall()
    return {r["id"] for r in rows}


def _tasks_with_active_assignments(db: sqlite3.Connection, task_ids: list[str]) -> set[str]:
    if not task_ids:
        return set()
    placeholders = ", ".join("?" for _ in task_ids)
    rows = db.execute(
        f"""SELECT DISTINCT task_id FROM bot_tasks
            WHERE status IN ('pending', 'running') AND task_id IN ({placeholders})""",
        task_ids,
    ).fetchall()
    return {r["task_id"] for r in rows}
