"""Data models for the fleet orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

TASK_STATUSES = ("todo", "in_progress", "done", "cancelled")
TASK_PRIORITIES = ("urgent", "high", "medium", "low")
BOT_STATUSES = ("idle", "working", "error", "offline")
BOT_TASK_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
ACTIVE_BOT_TASK_STATUSES = ("pending", "running")

STEP_TYPES = ("bot_task", "approval", "wait", "parallel")
FAILURE_POLICIES = ("stop", "continue", "retry")
RUN_STEP_STATUSES = ("pending", "running", "completed", "failed", "skipped")
TERMINAL_STEP_STATUSES = frozenset({"completed", "failed", "skipped"})
TERMINAL_RUN_STATUSES = frozenset({"completed", "failed"})

CONDITION_OPERATORS = ("eq", "neq", "gt", "lt", "contains", "in")
ACTION_TYPES = (
    "update_status",
    "add_tag",
    "notify",
    "create_subtask",
    "escalate",
    "send_to_channel",
)
ESCALATION_TRIGGERS = ("bot_failure", "task_overdue", "approval_timeout")
SEVERITIES = ("info", "warning", "critical")


@dataclass
class Workspace:
    id: str
    name: str
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Project:
    id: str
    workspace_id: str
    name: str
    description: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "todo"
    priority: str = "medium"
    tags: list[str] = field(default_factory=list)
    due_at: datetime | None = None
    scheduled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Subtask:
    id: int | None = None
    task_id: str = ""
    title: str = ""
    done: bool = False
    created_at: datetime | None = None


@dataclass
class Bot:
    id: str
    workspace_id: str
    name: str
    status: str = "offline"
    max_concurrent_tasks: int = 1
    capabilities: list[str] = field(default_factory=list)
    bot_group: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class BotTask:
    id: str
    bot_id: str
    task_id: str
    status: str = "pending"
    retry_count: int = 0
    max_retries: int = 0
    retry_after: datetime | None = None
    timeout_minutes: int | None = None
    output_summary: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class Step:
    """One node of a workflow definition."""

    id: str
    name: str
    type: str
    bot_group_id: str | None = None
    depends_on: list[str] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkflowDefinition:
    steps: list[Step] = field(default_factory=list)
    on_failure: str = "stop"


@dataclass
class Workflow:
    id: str
    workspace_id: str
    name: str
    definition: WorkflowDefinition
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class WorkflowRun:
    id: str
    workflow_id: str
    status: str = "running"
    definition: WorkflowDefinition | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class WorkflowRunStep:
    id: int | None = None
    workflow_run_id: str = ""
    step_id: str = ""
    status: str = "pending"
    attempts: int = 0
    bot_task_id: str | None = None
    result: str | None = None
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class Condition:
    field: str
    operator: str
    value: Any = None


@dataclass
class Action:
    type: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class AutomationRule:
    id: int | None = None
    workspace_id: str = ""
    name: str = ""
    trigger: str = ""
    conditions: list[Condition] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class EscalationRule:
    id: int | None = None
    workspace_id: str = ""
    trigger: str = ""
    threshold: int = 3
    escalate_to_user_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Alert:
    id: int | None = None
    workspace_id: str = ""
    type: str = ""
    severity: str = "warning"
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    acknowledged_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Notification:
    id: int | None = None
    user_id: str = ""
    type: str = ""
    title: str = ""
    body: str = ""
    link: str | None = None
    read_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Channel:
    id: int | None = None
    workspace_id: str = ""
    type: str = ""
    name: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    events: list[str] = field(default_factory=lambda: ["*"])
    min_severity: str = "info"
    active: bool = True
    created_at: datetime | None = None


@dataclass
class ChannelDelivery:
    id: int | None = None
    channel_id: int | None = None
    event: str = ""
    payload: str = "{}"
    status: str = "pending"
    attempts: int = 0
    response_status: int | None = None
    error_message: str | None = None
    created_at: datetime | None = None
