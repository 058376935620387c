"""JSON-friendly dicts for records returned by the core."""

from dataclasses import asdict, is_dataclass
from datetime import datetime
from typing import Any


def to_dict(obj: Any) -> Any:
    """Convert a dataclass (or list of them) to plain JSON-serializable values."""
    if isinstance(obj, list):
        return [to_dict(o) for o in obj]
    if is_dataclass(obj) and not isinstance(obj, type):
        return _clean(asdict(obj))
    return _clean(obj)


def _clean(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _clean(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clean(v) for v in value]
    return value


def workflow_dict(workflow) -> dict:
    from fleet_orchestrator.core.workflows import definition_to_dict

    return {
        "id": workflow.id,
        "workspace_id": workflow.workspace_id,
        "name": workflow.name,
        "definition": definition_to_dict(workflow.definition),
        "created_at": workflow.created_at.isoformat() if workflow.created_at else None,
        "updated_at": workflow.updated_at.isoformat() if workflow.updated_at else None,
    }


def run_dict(run, steps=None) -> dict:
    d = {
        "id": run.id,
        "workflow_id": run.workflow_id,
        "status": run.status,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }
    if steps is not None:
        d["steps"] = to_dict(steps)
    return d
