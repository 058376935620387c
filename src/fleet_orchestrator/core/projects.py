"""Workspace and project management operations."""

import sqlite3
from datetime import datetime

from fleet_orchestrator.db.models import Project, Workspace
from fleet_orchestrator.errors import NotFoundError


def create_workspace(
    db: sqlite3.Connection,
    workspace_id: str,
    name: str,
    slack_channel: str | None = None,
) -> Workspace:
    """Create a new workspace."""
    db.execute(
        "INSERT INTO workspaces (id, name, slack_channel) VALUES (?, ?, ?)",
        (workspace_id, name, slack_channel),
    )
    db.commit()
    return get_workspace(db, workspace_id)


def get_workspace(db: sqlite3.Connection, workspace_id: str) -> Workspace | None:
    """Get a workspace by ID."""
    row = db.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
    if not row:
        return None
    return _row_to_workspace(row)


def require_workspace(db: sqlite3.Connection, workspace_id: str) -> Workspace:
    """Get a workspace by ID, raising NotFoundError if it does not exist."""
    workspace = get_workspace(db, workspace_id)
    if not workspace:
        raise NotFoundError(f"Workspace not found: {workspace_id}")
    return workspace


def list_workspaces(db: sqlite3.Connection) -> list[Workspace]:
    """List all workspaces."""
    rows = db.execute("SELECT * FROM workspaces ORDER BY created_at, id").fetchall()
    return [_row_to_workspace(r) for r in rows]


def ensure_default_workspace(db: sqlite3.Connection, workspace_id: str = "default") -> Workspace:
    """Ensure a workspace and its default project exist, creating them if needed."""
    workspace = get_workspace(db, workspace_id)
    if not workspace:
        name = "Default Workspace" if workspace_id == "default" else workspace_id
        workspace = create_workspace(db, workspace_id, name)
    if not get_project(db, workspace_id):
        create_project(db, workspace_id, workspace_id, "Default Project")
    return workspace


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    workspace_id: str,
    name: str,
    description: str = "",
) -> Project:
    """Create a new project inside a workspace."""
    require_workspace(db, workspace_id)
    db.execute(
        """INSERT INTO projects (id, workspace_id, name, description)
           VALUES (?, ?, ?, ?)""",
        (project_id, workspace_id, name, description),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection, workspace_id: str | None = None) -> list[Project]:
    """List projects, optionally restricted to one workspace."""
    if workspace_id is None:
        rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    else:
        rows = db.execute(
            "SELECT * FROM projects WHERE workspace_id = ? ORDER BY created_at DESC",
            (workspace_id,),
        ).fetchall()
    return [_row_to_project(r) for r in rows]


def _row_to_workspace(row: sqlite3.Row) -> Workspace:
    return Workspace(
        id=row["id"],
        name=row["name"],
        slack_channel=row["slack_channel"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        description=row["description"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
