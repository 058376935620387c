"""Threshold escalations over bot failures, overdue tasks and stalled approvals."""

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from fleet_orchestrator.core import alerts
from fleet_orchestrator.core.projects import list_workspaces, require_workspace
from fleet_orchestrator.core.tasks import process_scheduled_tasks
from fleet_orchestrator.db.engine import timestamp, utcnow
from fleet_orchestrator.db.models import ESCALATION_TRIGGERS, EscalationRule
from fleet_orchestrator.errors import NotFoundError, ValidationError
from fleet_orchestrator.integrations.channels import (
    BackgroundDispatcher,
    ChannelMessage,
    ChannelSink,
    dispatch_best_effort,
)

logger = logging.getLogger(__name__)


@dataclass
class EscalationResult:
    rule_id: int
    trigger: str
    alert_created: bool
    notification_sent: bool
    subject_id: str | None = None


@dataclass
class EscalationCheck:
    results: list[EscalationResult] = field(default_factory=list)
    rules_checked: int = 0


@dataclass
class _Breach:
    subject_id: str
    severity: str
    title: str
    message: str
    metadata: dict


# ── Rule CRUD ───────────────────────────────────────────────────────────────


def create_escalation_rule(
    db: sqlite3.Connection,
    workspace_id: str,
    trigger: str,
    threshold: int = 3,
    escalate_to_user_id: str | None = None,
) -> EscalationRule:
    """Create an escalation rule.

    The threshold is a failure count for ``bot_failure`` and a number of
    hours for ``task_overdue`` and ``approval_timeout``.
    """
    require_workspace(db, workspace_id)
    if trigger not in ESCALATION_TRIGGERS:
        raise ValidationError(
            f"Invalid trigger '{trigger}'. Must be one of: {', '.join(ESCALATION_TRIGGERS)}"
        )
    _check_threshold(threshold)
    cur = db.execute(
        """INSERT INTO escalation_rules (workspace_id, trigger, threshold, escalate_to_user_id)
           VALUES (?, ?, ?, ?)""",
        (workspace_id, trigger, threshold, escalate_to_user_id),
    )
    db.commit()
    return get_escalation_rule(db, cur.lastrowid)


def update_escalation_rule(
    db: sqlite3.Connection,
    rule_id: int,
    threshold: int | None = None,
    escalate_to_user_id: str | None = None,
) -> EscalationRule:
    rule = get_escalation_rule(db, rule_id)
    if not rule:
        raise NotFoundError(f"Escalation rule not found: {rule_id}")
    if threshold is not None:
        _check_threshold(threshold)
    db.execute(
        """UPDATE escalation_rules
           SET threshold = ?, escalate_to_user_id = ?, updated_at = datetime('now')
           WHERE id = ?""",
        (
            rule.threshold if threshold is None else threshold,
            escalate_to_user_id or rule.escalate_to_user_id,
            rule_id,
        ),
    )
    db.commit()
    return get_escalation_rule(db, rule_id)


def delete_escalation_rule(db: sqlite3.Connection, rule_id: int) -> bool:
    cur = db.execute("DELETE FROM escalation_rules WHERE id = ?", (rule_id,))
    db.commit()
    return cur.rowcount > 0


def get_escalation_rule(db: sqlite3.Connection, rule_id: int) -> EscalationRule | None:
    row = db.execute("SELECT * FROM escalation_rules WHERE id = ?", (rule_id,)).fetchone()
    if not row:
        return None
    return _row_to_rule(row)


def list_escalation_rules(db: sqlite3.Connection, workspace_id: str) -> list[EscalationRule]:
    rows = db.execute(
        "SELECT * FROM escalation_rules WHERE workspace_id = ? ORDER BY id",
        (workspace_id,),
    ).fetchall()
    return [_row_to_rule(r) for r in rows]


def _check_threshold(threshold):
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
        raise ValidationError("threshold must be a positive integer")


# ── Detection ───────────────────────────────────────────────────────────────


def _bot_failures(db: sqlite3.Connection, workspace_id: str, rule: EscalationRule, now: datetime):
    rows = db.execute(
        """SELECT bt.bot_id, b.name, COUNT(*) AS fail_count
           FROM bot_tasks bt JOIN bots b ON b.id = bt.bot_id
           WHERE b.workspace_id = ? AND bt.status = 'failed'
           GROUP BY bt.bot_id, b.name
           ORDER BY bt.bot_id""",
        (workspace_id,),
    ).fetchall()
    for row in rows:
        if row["fail_count"] < rule.threshold:
            continue
        yield _Breach(
            subject_id=row["bot_id"],
            severity="critical",
            title="Bot Failure Escalation",
            message=(
                f"Bot {row['name']} has {row['fail_count']} failed tasks "
                f"(threshold: {rule.threshold})"
            ),
            metadata={"botId": row["bot_id"], "failCount": row["fail_count"]},
        )


def _overdue_tasks(db: sqlite3.Connection, workspace_id: str, rule: EscalationRule, now: datetime):
    cutoff = timestamp(now - timedelta(hours=rule.threshold))
    rows = db.execute(
        """SELECT t.id, t.title, t.due_at FROM tasks t
           JOIN projects p ON p.id = t.project_id
           WHERE p.workspace_id = ? AND t.due_at IS NOT NULL AND t.due_at < ?
             AND t.status != 'done'
           ORDER BY t.due_at, t.id""",
        (workspace_id, cutoff),
    ).fetchall()
    for row in rows:
        yield _Breach(
            subject_id=row["id"],
            severity="warning",
            title="Overdue Task Escalation",
            message=f'Task "{row["title"]}" is overdue',
            metadata={"taskId": row["id"], "dueAt": row["due_at"]},
        )


def _stalled_approvals(db: sqlite3.Connection, workspace_id: str, rule: EscalationRule, now: datetime):
    cutoff = timestamp(now - timedelta(hours=rule.threshold))
    rows = db.execute(
        """SELECT s.workflow_run_id, s.step_id, s.started_at, r.definition, w.name
           FROM workflow_run_steps s
           JOIN workflow_runs r ON r.id = s.workflow_run_id
           JOIN workflows w ON w.id = r.workflow_id
           WHERE w.workspace_id = ? AND r.status = 'running' AND s.status = 'running'
             AND s.started_at < ?
           ORDER BY s.started_at, s.id""",
        (workspace_id, cutoff),
    ).fetchall()
    for row in rows:
        steps = json.loads(row["definition"] or "{}").get("steps", [])
        step = next((s for s in steps if s.get("id") == row["step_id"]), None)
        if not step or step.get("type") != "approval":
            continue
        yield _Breach(
            subject_id=f"{row['workflow_run_id']}:{row['step_id']}",
            severity="warning",
            title="Approval Timeout Escalation",
            message=(
                f"Approval step '{step.get('name') or row['step_id']}' of workflow "
                f"\"{row['name']}\" has waited more than {rule.threshold}h"
            ),
            metadata={"runId": row["workflow_run_id"], "stepId": row["step_id"]},
        )


_DETECTORS = {
    "bot_failure": _bot_failures,
    "task_overdue": _overdue_tasks,
    "approval_timeout": _stalled_approvals,
}


def check_escalations(
    db: sqlite3.Connection,
    workspace_id: str,
    sink: ChannelSink | None = None,
    now: datetime | None = None,
) -> EscalationCheck:
    """Evaluate every escalation rule of a workspace.

    Each breach raises an alert, a notification when the rule names a user,
    and a channel message, every time the check runs.
    """
    require_workspace(db, workspace_id)
    now = now or utcnow()
    rules = list_escalation_rules(db, workspace_id)
    check = EscalationCheck(rules_checked=len(rules))

    for rule in rules:
        detector = _DETECTORS.get(rule.trigger)
        if detector is None:
            logger.warning("Escalation rule %s has unknown trigger %s", rule.id, rule.trigger)
            continue
        for breach in detector(db, workspace_id, rule, now):
            check.results.append(_raise(db, workspace_id, rule, breach, sink))

    if check.results:
        logger.info(
            "Raised %d escalation(s) in workspace %s", len(check.results), workspace_id
        )
    return check


def _raise(
    db: sqlite3.Connection,
    workspace_id: str,
    rule: EscalationRule,
    breach: _Breach,
    sink: ChannelSink | None,
) -> EscalationResult:
    metadata = {**breach.metadata, "ruleId": rule.id, "subjectId": breach.subject_id}
    alerts.create_alert(
        db, workspace_id, "escalation", breach.message,
        severity=breach.severity, metadata=metadata,
    )

    notification_sent = False
    if rule.escalate_to_user_id:
        alerts.create_notification(
            db, rule.escalate_to_user_id, "escalation", breach.title, breach.message
        )
        notification_sent = True

    dispatch_best_effort(
        sink,
        workspace_id,
        ChannelMessage(
            event=f"escalation.{rule.trigger}",
            title=breach.title,
            body=breach.message,
            severity=breach.severity,
            metadata=metadata,
        ),
    )
    return EscalationResult(
        rule_id=rule.id,
        trigger=rule.trigger,
        alert_created=True,
        notification_sent=notification_sent,
        subject_id=breach.subject_id,
    )


def _row_to_rule(row: sqlite3.Row) -> EscalationRule:
    return EscalationRule(
        id=row["id"],
        workspace_id=row["workspace_id"],
        trigger=row["trigger"],
        threshold=row["threshold"],
        escalate_to_user_id=row["escalate_to_user_id"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


# ── Background monitor ──────────────────────────────────────────────────────


class EscalationMonitor:
    """Background thread that periodically checks escalations in every workspace.

    Each pass also starts tasks whose scheduled time has passed.
    """

    def __init__(
        self,
        db_path: Path,
        poll_interval: float = 60.0,
        slack_token: str | None = None,
        channel_backoff: tuple[float, ...] = (1.0, 4.0, 16.0),
        channel_timeout: float = 10.0,
    ):
        self.db_path = db_path
        self.poll_interval = poll_interval
        self.sink = BackgroundDispatcher(
            db_path,
            slack_token=slack_token,
            backoff=channel_backoff,
            timeout=channel_timeout,
        )
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the monitor thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="escalation-monitor", daemon=True
        )
        self._thread.start()
        logger.info("Escalation monitor started (every %ss)", self.poll_interval)

    def stop(self):
        """Signal the monitor thread to stop and drain pending channel messages."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        self.sink.close(timeout=30)
        logger.info("Escalation monitor stopped")

    def _run(self):
        """Main monitor loop."""
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Error in escalation monitor loop")
            self._stop_event.wait(self.poll_interval)

    def run_once(self) -> dict[str, EscalationCheck]:
        """Run one pass over all workspaces. Returns the check per workspace."""
        from fleet_orchestrator.db.engine import init_db

        db = init_db(self.db_path)
        try:
            process_scheduled_tasks(db)
            checks = {}
            for workspace in list_workspaces(db):
                checks[workspace.id] = check_escalations(db, workspace.id, sink=self.sink)
            return checks
        finally:
            db.close()
