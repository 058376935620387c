"""Tests for task management operations."""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from fleet_orchestrator.core import projects as projects_mod
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.db.engine import init_db
from fleet_orchestrator.errors import NotFoundError, ValidationError


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        projects_mod.create_workspace(conn, "ws", "Test Workspace")
        projects_mod.create_project(conn, "test", "ws", "Test Project")
        yield conn
        conn.close()


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_multiple_spaces(self):
        assert tasks_mod.slugify("  too   many   spaces  ") == "too-many-spaces"

    def test_truncation(self):
        long_title = "a" * 100
        assert len(tasks_mod.slugify(long_title)) <= 60


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Build login page", "test")
        assert task.id == "build-login-page"
        assert task.title == "Build login page"
        assert task.status == "todo"
        assert task.priority == "medium"
        assert task.project_id == "test"

    def test_create_duplicate_gets_suffix(self, db):
        t1 = tasks_mod.create_task(db, "Build login page", "test")
        t2 = tasks_mod.create_task(db, "Build login page", "test")
        assert t1.id == "build-login-page"
        assert t2.id == "build-login-page-2"

    def test_create_in_unknown_project(self, db):
        with pytest.raises(NotFoundError):
            tasks_mod.create_task(db, "Orphan", "nope")

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "nonexistent") is None
        with pytest.raises(NotFoundError):
            tasks_mod.require_task(db, "nonexistent")

    def test_list_tasks_by_workspace(self, db):
        tasks_mod.create_task(db, "Task 1", "test")
        tasks_mod.create_task(db, "Task 2", "test")
        projects_mod.create_workspace(db, "other", "Other")
        projects_mod.create_project(db, "elsewhere", "other", "Elsewhere")
        tasks_mod.create_task(db, "Task 3", "elsewhere")
        assert [t.id for t in tasks_mod.list_tasks(db, workspace_id="ws")] == ["task-1", "task-2"]

    def test_list_tasks_by_status(self, db):
        tasks_mod.create_task(db, "Task A", "test")
        tasks_mod.create_task(db, "Task B", "test")
        tasks_mod.update_task_status(db, "task-a", "in_progress")
        todos = tasks_mod.list_tasks(db, "test", status="todo")
        assert len(todos) == 1
        assert todos[0].id == "task-b"

    def test_tags_are_deduplicated(self, db):
        task = tasks_mod.create_task(db, "Tagged", "test", tags=["ui", "ui", "auth"])
        assert task.tags == ["ui", "auth"]


class TestTaskStatus:
    def test_update_status(self, db):
        tasks_mod.create_task(db, "Status test", "test")
        task = tasks_mod.update_task_status(db, "status-test", "in_progress")
        assert task.status == "in_progress"

    def test_invalid_status(self, db):
        tasks_mod.create_task(db, "Bad status", "test")
        with pytest.raises(ValidationError, match="Invalid status"):
            tasks_mod.update_task_status(db, "bad-status", "in-review")

    def test_missing_task_returns_none(self, db):
        assert tasks_mod.update_task_status(db, "ghost", "done") is None

    def test_done_sets_completed_at(self, db):
        tasks_mod.create_task(db, "Done test", "test")
        task = tasks_mod.update_task_status(db, "done-test", "done")
        assert task.completed_at is not None

    def test_events_logged(self, db):
        tasks_mod.create_task(db, "Event test", "test")
        tasks_mod.update_task_status(db, "event-test", "in_progress")
        events = tasks_mod.get_task_events(db, "event-test")
        assert len(events) == 2  # created + status_changed
        assert events[0].event_type == "created"
        assert events[1].event_type == "status_changed"
        assert events[1].old_value == "todo"
        assert events[1].new_value == "in_progress"


class TestPriority:
    def test_create_with_priority(self, db):
        task = tasks_mod.create_task(db, "Urgent", "test", priority="urgent")
        assert task.priority == "urgent"

    def test_invalid_priority(self, db):
        with pytest.raises(ValidationError, match="Invalid priority"):
            tasks_mod.create_task(db, "P0", "test", priority=0)

    def test_update_priority_logged(self, db):
        tasks_mod.create_task(db, "Prio event", "test")
        task = tasks_mod.update_task_priority(db, "prio-event", "high")
        assert task.priority == "high"
        events = tasks_mod.get_task_events(db, "prio-event")
        prio_events = [e for e in events if e.event_type == "priority_changed"]
        assert len(prio_events) == 1
        assert prio_events[0].old_value == "medium"
        assert prio_events[0].new_value == "high"


class TestTagsAndSubtasks:
    def test_add_tag_is_set_semantic(self, db):
        tasks_mod.create_task(db, "Taggable", "test")
        tasks_mod.add_tag(db, "taggable", "urgent-fix")
        task = tasks_mod.add_tag(db, "taggable", "urgent-fix")
        assert task.tags == ["urgent-fix"]

    def test_add_tag_missing_task(self, db):
        assert tasks_mod.add_tag(db, "ghost", "x") is None

    def test_add_subtask(self, db):
        tasks_mod.create_task(db, "Big task", "test")
        tasks_mod.add_subtask(db, "big-task", "Step one")
        tasks_mod.add_subtask(db, "big-task", "Step two")
        subs = tasks_mod.list_subtasks(db, "big-task")
        assert [s.title for s in subs] == ["Step one", "Step two"]

    def test_add_subtask_missing_task(self, db):
        with pytest.raises(NotFoundError):
            tasks_mod.add_subtask(db, "ghost", "Nothing")


class TestAddRemoveDependency:
    def test_create_with_deps(self, db):
        tasks_mod.create_task(db, "First", "test")
        tasks_mod.create_task(db, "Second", "test", depends_on=["first"])
        assert tasks_mod.get_task(db, "second").depends_on == ["first"]

    def test_add_dependency(self, db):
        tasks_mod.create_task(db, "Task A", "test")
        tasks_mod.create_task(db, "Task B", "test")
        task = tasks_mod.add_dependency(db, "task-b", "task-a")
        assert "task-a" in task.depends_on

    def test_add_dependency_idempotent(self, db):
        tasks_mod.create_task(db, "Task X", "test")
        tasks_mod.create_task(db, "Task Y", "test")
        tasks_mod.add_dependency(db, "task-y", "task-x")
        task = tasks_mod.add_dependency(db, "task-y", "task-x")
        assert task.depends_on.count("task-x") == 1

    def test_add_dependency_nonexistent_dep(self, db):
        tasks_mod.create_task(db, "Solo", "test")
        with pytest.raises(NotFoundError, match="not found"):
            tasks_mod.add_dependency(db, "solo", "nonexistent")

    def test_self_dependency_rejected(self, db):
        tasks_mod.create_task(db, "Loop", "test")
        with pytest.raises(ValidationError):
            tasks_mod.add_dependency(db, "loop", "loop")

    def test_remove_dependency(self, db):
        tasks_mod.create_task(db, "Dep A", "test")
        tasks_mod.create_task(db, "Dep B", "test", depends_on=["dep-a"])
        task = tasks_mod.remove_dependency(db, "dep-b", "dep-a")
        assert "dep-a" not in task.depends_on

    def test_dependency_events_logged(self, db):
        tasks_mod.create_task(db, "Log A", "test")
        tasks_mod.create_task(db, "Log B", "test")
        tasks_mod.add_dependency(db, "log-b", "log-a")
        tasks_mod.remove_dependency(db, "log-b", "log-a")
        events = tasks_mod.get_task_events(db, "log-b")
        added = [e for e in events if e.event_type == "dependency_added"]
        removed = [e for e in events if e.event_type == "dependency_removed"]
        assert added[0].new_value == "log-a"
        assert removed[0].old_value == "log-a"


class TestScheduledTasks:
    def test_due_task_is_started(self, db):
        tasks_mod.create_task(db, "Nightly", "test")
        tasks_mod.schedule_task(db, "nightly", datetime(2024, 1, 1, 2, 0))
        started = tasks_mod.process_scheduled_tasks(db, now=datetime(2024, 1, 1, 3, 0))
        assert started == ["nightly"]
        assert tasks_mod.get_task(db, "nightly").status == "in_progress"

    def test_future_task_left_alone(self, db):
        tasks_mod.create_task(db, "Later", "test")
        when = datetime(2024, 1, 1, 2, 0)
        tasks_mod.schedule_task(db, "later", when)
        assert tasks_mod.process_scheduled_tasks(db, now=when - timedelta(minutes=1)) == []
        assert tasks_mod.get_task(db, "later").status == "todo"
