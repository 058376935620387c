"""Automation rules: condition evaluation and typed action execution.

A rule belongs to a workspace and fires on a trigger name. Its conditions
are ANDed against the event payload; when they all hold, its actions run in
order. An action that cannot run reports ``executed=False`` with a reason
instead of raising, so one bad action never stops the others.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from fleet_orchestrator.core import alerts
from fleet_orchestrator.core import tasks as tasks_mod
from fleet_orchestrator.core.projects import require_workspace
from fleet_orchestrator.db.models import (
    ACTION_TYPES,
    CONDITION_OPERATORS,
    SEVERITIES,
    TASK_STATUSES,
    Action,
    AutomationRule,
    Condition,
)
from fleet_orchestrator.errors import NotFoundError, OrchestratorError, ValidationError
from fleet_orchestrator.integrations.channels import (
    ChannelMessage,
    ChannelSink,
    dispatch_best_effort,
)

logger = logging.getLogger(__name__)


@dataclass
class RuleContext:
    workspace_id: str
    task_id: str | None = None
    bot_id: str | None = None

    @property
    def metadata(self) -> dict[str, Any]:
        return {"taskId": self.task_id, "botId": self.bot_id}


@dataclass
class ActionResult:
    executed: bool
    detail: str


@dataclass
class RuleEvaluation:
    matched: int = 0
    actions_executed: int = 0
    results: list[dict] = field(default_factory=list)


# ── Parsing ─────────────────────────────────────────────────────────────────


def parse_conditions(raw: str | list) -> list[Condition]:
    """Build conditions from JSON text or a list of dicts/Conditions."""
    items = _load_list(raw, "conditions")
    conditions = []
    for item in items:
        if isinstance(item, Condition):
            conditions.append(item)
            continue
        if not isinstance(item, dict) or not isinstance(item.get("field"), str):
            raise ValidationError(f"Invalid condition: {item!r}")
        conditions.append(
            Condition(field=item["field"], operator=item.get("operator", ""), value=item.get("value"))
        )
    return conditions


def parse_actions(raw: str | list) -> list[Action]:
    """Build actions from JSON text or a list of dicts/Actions."""
    items = _load_list(raw, "actions")
    actions = []
    for item in items:
        if isinstance(item, Action):
            actions.append(item)
            continue
        if not isinstance(item, dict) or not isinstance(item.get("type"), str):
            raise ValidationError(f"Invalid action: {item!r}")
        params = item.get("params") or {}
        if not isinstance(params, dict):
            raise ValidationError(f"Action '{item['type']}' params must be an object")
        actions.append(Action(type=item["type"], params=params))
    return actions


def _load_list(raw: str | list, what: str) -> list:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid {what} JSON: {e}") from e
    if not isinstance(raw, list):
        raise ValidationError(f"{what.capitalize()} must be a list")
    return raw


# ── Conditions ──────────────────────────────────────────────────────────────


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _same(a: Any, b: Any) -> bool:
    # True == 1 in Python; a rule comparing booleans must not match numbers.
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def _check(condition: Condition, actual: Any) -> bool:
    expected = condition.value
    op = condition.operator
    if op == "eq":
        return _same(actual, expected)
    if op == "neq":
        return not _same(actual, expected)
    if op == "gt":
        return _is_number(actual) and _is_number(expected) and actual > expected
    if op == "lt":
        return _is_number(actual) and _is_number(expected) and actual < expected
    if op == "contains":
        return isinstance(actual, str) and isinstance(expected, str) and expected in actual
    if op == "in":
        return isinstance(expected, list) and any(_same(actual, v) for v in expected)
    return False


def evaluate_conditions(conditions: list[Condition], payload: dict[str, Any]) -> bool:
    """True when every condition holds for the payload. Empty means true."""
    return all(_check(c, payload.get(c.field)) for c in conditions)


# ── Actions ─────────────────────────────────────────────────────────────────


def _update_status(db, params, context, sink) -> ActionResult:
    if not context.task_id:
        return ActionResult(False, "no taskId")
    status = params.get("status")
    if status not in TASK_STATUSES:
        return ActionResult(False, f"invalid status '{status}'")
    task = tasks_mod.get_task(db, context.task_id)
    if not task:
        return ActionResult(False, "task not found")
    tasks_mod.set_task_status(db, task.id, status, old_status=task.status)
    db.commit()
    return ActionResult(True, f"status -> {status}")


def _add_tag(db, params, context, sink) -> ActionResult:
    if not context.task_id:
        return ActionResult(False, "no taskId")
    tag = params.get("tag")
    if not tag:
        return ActionResult(False, "no tag")
    if not tasks_mod.add_tag(db, context.task_id, str(tag)):
        return ActionResult(False, "task not found")
    return ActionResult(True, f"added tag '{tag}'")


def _notify(db, params, context, sink) -> ActionResult:
    message = params.get("message") or "An automation rule was triggered"
    user_id = params.get("userId")
    if not user_id and sink is None:
        return ActionResult(False, "no target user or channel")
    if user_id:
        alerts.create_notification(db, user_id, "automation", "Automation Rule Triggered", message)
    dispatch_best_effort(
        sink,
        context.workspace_id,
        ChannelMessage(
            event="automation.notify",
            title="Automation Rule Triggered",
            body=message,
            severity="info",
            metadata=context.metadata,
        ),
    )
    return ActionResult(True, "notification sent")


def _create_subtask(db, params, context, sink) -> ActionResult:
    if not context.task_id:
        return ActionResult(False, "no taskId")
    if not tasks_mod.get_task(db, context.task_id):
        return ActionResult(False, "task not found")
    tasks_mod.add_subtask(db, context.task_id, params.get("title") or "Auto-generated subtask")
    return ActionResult(True, "subtask created")


def _escalate(db, params, context, sink) -> ActionResult:
    message = params.get("message") or "Automated escalation triggered"
    alerts.create_alert(
        db, context.workspace_id, "escalation", message,
        severity="warning", metadata=context.metadata,
    )
    dispatch_best_effort(
        sink,
        context.workspace_id,
        ChannelMessage(
            event="automation.escalation",
            title="Escalation Triggered",
            body=message,
            severity="warning",
            metadata=context.metadata,
        ),
    )
    return ActionResult(True, "escalation alert created")


def _send_to_channel(db, params, context, sink) -> ActionResult:
    severity = params.get("severity") or "info"
    if severity not in SEVERITIES:
        return ActionResult(False, f"invalid severity '{severity}'")
    if sink is None:
        return ActionResult(False, "no channel sink configured")
    dispatch_best_effort(
        sink,
        context.workspace_id,
        ChannelMessage(
            event=params.get("event") or "automation.channel",
            title=params.get("title") or "Rule Action",
            body=params.get("message") or "Channel notification from rule",
            severity=severity,
            metadata=context.metadata,
        ),
    )
    return ActionResult(True, "dispatched to channels")


_ACTION_HANDLERS: dict[str, Callable[..., ActionResult]] = {
    "update_status": _update_status,
    "add_tag": _add_tag,
    "notify": _notify,
    "create_subtask": _create_subtask,
    "escalate": _escalate,
    "send_to_channel": _send_to_channel,
}


def execute_action(
    db: sqlite3.Connection,
    action: Action,
    context: RuleContext,
    sink: ChannelSink | None = None,
) -> ActionResult:
    """Run one action against the context's task/bot/workspace."""
    handler = _ACTION_HANDLERS.get(action.type)
    if handler is None:
        return ActionResult(False, f"unknown action type: {action.type}")
    try:
        return handler(db, action.params, context, sink)
    except (OrchestratorError, sqlite3.Error) as e:
        logger.warning("Action %s failed: %s", action.type, e)
        return ActionResult(False, str(e))


def evaluate_rules(
    db: sqlite3.Connection,
    trigger: str,
    payload: dict[str, Any],
    context: RuleContext,
    sink: ChannelSink | None = None,
) -> RuleEvaluation:
    """Run every active rule of the context's workspace registered for a trigger."""
    rows = db.execute(
        """SELECT * FROM automation_rules
           WHERE workspace_id = ? AND trigger = ? AND active = 1
           ORDER BY id""",
        (context.workspace_id, trigger),
    ).fetchall()

    evaluation = RuleEvaluation()
    for row in rows:
        try:
            conditions = parse_conditions(row["conditions"])
            actions = parse_actions(row["actions"])
        except ValidationError as e:
            logger.warning("Skipping rule %s (%s): %s", row["id"], row["name"], e)
            continue

        if not evaluate_conditions(conditions, payload):
            continue

        evaluation.matched += 1
        trace = []
        for action in actions:
            result = execute_action(db, action, context, sink)
            if result.executed:
                evaluation.actions_executed += 1
            trace.append(f"{action.type}: {result.detail}")
        evaluation.results.append({"rule": row["name"], "actions": trace})

    if evaluation.matched:
        logger.info(
            "Trigger %s matched %d rule(s), executed %d action(s)",
            trigger, evaluation.matched, evaluation.actions_executed,
        )
    return evaluation


# ── Rule CRUD ───────────────────────────────────────────────────────────────


def _validated(conditions, actions) -> tuple[list[Condition], list[Action]]:
    parsed_conditions = parse_conditions(conditions)
    parsed_actions = parse_actions(actions)
    for c in parsed_conditions:
        if c.operator not in CONDITION_OPERATORS:
            raise ValidationError(
                f"Invalid operator '{c.operator}'. Must be one of: {', '.join(CONDITION_OPERATORS)}"
            )
    for a in parsed_actions:
        if a.type not in ACTION_TYPES:
            raise ValidationError(
                f"Invalid action type '{a.type}'. Must be one of: {', '.join(ACTION_TYPES)}"
            )
    return parsed_conditions, parsed_actions


def _dump_conditions(conditions: list[Condition]) -> str:
    return json.dumps([{"field": c.field, "operator": c.operator, "value": c.value} for c in conditions])


def _dump_actions(actions: list[Action]) -> str:
    return json.dumps([{"type": a.type, "params": a.params} for a in actions])


def create_rule(
    db: sqlite3.Connection,
    workspace_id: str,
    name: str,
    trigger: str,
    conditions: str | list | None = None,
    actions: str | list | None = None,
    active: bool = True,
) -> AutomationRule:
    """Create an automation rule after validating its operators and action types."""
    require_workspace(db, workspace_id)
    if not trigger:
        raise ValidationError("A rule needs a trigger")
    parsed_conditions, parsed_actions = _validated(conditions or [], actions or [])
    cur = db.execute(
        """INSERT INTO automation_rules (workspace_id, name, trigger, conditions, actions, active)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            workspace_id,
            name,
            trigger,
            _dump_conditions(parsed_conditions),
            _dump_actions(parsed_actions),
            int(active),
        ),
    )
    db.commit()
    return get_rule(db, cur.lastrowid)


def update_rule(
    db: sqlite3.Connection,
    rule_id: int,
    name: str | None = None,
    trigger: str | None = None,
    conditions: str | list | None = None,
    actions: str | list | None = None,
    active: bool | None = None,
) -> AutomationRule:
    rule = get_rule(db, rule_id)
    if not rule:
        raise NotFoundError(f"Rule not found: {rule_id}")
    parsed_conditions, parsed_actions = _validated(
        conditions if conditions is not None else rule.conditions,
        actions if actions is not None else rule.actions,
    )
    db.execute(
        """UPDATE automation_rules
           SET name = ?, trigger = ?, conditions = ?, actions = ?, active = ?,
               updated_at = datetime('now')
           WHERE id = ?""",
        (
            name or rule.name,
            trigger or rule.trigger,
            _dump_conditions(parsed_conditions),
            _dump_actions(parsed_actions),
            int(rule.active if active is None else active),
            rule_id,
        ),
    )
    db.commit()
    return get_rule(db, rule_id)


def delete_rule(db: sqlite3.Connection, rule_id: int) -> bool:
    """Delete a rule. Returns False if it did not exist."""
    cur = db.execute("DELETE FROM automation_rules WHERE id = ?", (rule_id,))
    db.commit()
    return cur.rowcount > 0


def get_rule(db: sqlite3.Connection, rule_id: int) -> AutomationRule | None:
    row = db.execute("SELECT * FROM automation_rules WHERE id = ?", (rule_id,)).fetchone()
    if not row:
        return None
    return _row_to_rule(row)


def list_rules(
    db: sqlite3.Connection,
    workspace_id: str,
    trigger: str | None = None,
    active_only: bool = False,
) -> list[AutomationRule]:
    query = "SELECT * FROM automation_rules WHERE workspace_id = ?"
    params: list = [workspace_id]
    if trigger:
        query += " AND trigger = ?"
        params.append(trigger)
    if active_only:
        query += " AND active = 1"
    query += " ORDER BY id"
    rows = db.execute(query, params).fetchall()
    return [_row_to_rule(r) for r in rows]


def _row_to_rule(row: sqlite3.Row) -> AutomationRule:
    return AutomationRule(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        trigger=row["trigger"],
        conditions=parse_conditions(row["conditions"]),
        actions=parse_actions(row["actions"]),
        active=bool(row["active"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
