"""Alerts and in-app notifications raised by rules and escalations."""

import json
import logging
import sqlite3
from datetime import datetime

from fleet_orchestrator.db.engine import timestamp
from fleet_orchestrator.db.models import SEVERITIES, Alert, Notification
from fleet_orchestrator.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def create_alert(
    db: sqlite3.Connection,
    workspace_id: str,
    type: str,
    message: str,
    severity: str = "warning",
    metadata: dict | None = None,
    commit: bool = True,
) -> Alert:
    """Record an alert for a workspace."""
    if severity not in SEVERITIES:
        raise ValidationError(
            f"Invalid severity '{severity}'. Must be one of: {', '.join(SEVERITIES)}"
        )
    cur = db.execute(
        """INSERT INTO alerts (workspace_id, type, severity, message, metadata)
           VALUES (?, ?, ?, ?, ?)""",
        (workspace_id, type, severity, message, json.dumps(metadata or {})),
    )
    if commit:
        db.commit()
    logger.info("Alert [%s] %s: %s", severity, type, message)
    return get_alert(db, cur.lastrowid)


def get_alert(db: sqlite3.Connection, alert_id: int) -> Alert | None:
    row = db.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
    if not row:
        return None
    return _row_to_alert(row)


def list_alerts(
    db: sqlite3.Connection,
    workspace_id: str,
    unacknowledged_only: bool = False,
) -> list[Alert]:
    """List a workspace's alerts, newest first."""
    query = "SELECT * FROM alerts WHERE workspace_id = ?"
    if unacknowledged_only:
        query += " AND acknowledged_at IS NULL"
    query += " ORDER BY created_at DESC, id DESC"
    rows = db.execute(query, (workspace_id,)).fetchall()
    return [_row_to_alert(r) for r in rows]


def acknowledge_alert(db: sqlite3.Connection, alert_id: int) -> Alert:
    """Mark an alert acknowledged. Acknowledging twice keeps the first time."""
    if not get_alert(db, alert_id):
        raise NotFoundError(f"Alert not found: {alert_id}")
    db.execute(
        "UPDATE alerts SET acknowledged_at = COALESCE(acknowledged_at, ?) WHERE id = ?",
        (timestamp(), alert_id),
    )
    db.commit()
    return get_alert(db, alert_id)


def create_notification(
    db: sqlite3.Connection,
    user_id: str,
    type: str,
    title: str,
    body: str = "",
    link: str | None = None,
    commit: bool = True,
) -> Notification:
    """Write an in-app notification for a user."""
    cur = db.execute(
        """INSERT INTO notifications (user_id, type, title, body, link)
           VALUES (?, ?, ?, ?, ?)""",
        (user_id, type, title, body, link),
    )
    if commit:
        db.commit()
    row = db.execute("SELECT * FROM notifications WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_notification(row)


def list_notifications(
    db: sqlite3.Connection,
    user_id: str,
    unread_only: bool = False,
) -> list[Notification]:
    query = "SELECT * FROM notifications WHERE user_id = ?"
    if unread_only:
        query += " AND read_at IS NULL"
    query += " ORDER BY created_at DESC, id DESC"
    rows = db.execute(query, (user_id,)).fetchall()
    return [_row_to_notification(r) for r in rows]


def mark_notification_read(db: sqlite3.Connection, notification_id: int) -> Notification:
    row = db.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
    if not row:
        raise NotFoundError(f"Notification not found: {notification_id}")
    db.execute(
        "UPDATE notifications SET read_at = COALESCE(read_at, ?) WHERE id = ?",
        (timestamp(), notification_id),
    )
    db.commit()
    row = db.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
    return _row_to_notification(row)


def _row_to_alert(row: sqlite3.Row) -> Alert:
    return Alert(
        id=row["id"],
        workspace_id=row["workspace_id"],
        type=row["type"],
        severity=row["severity"],
        message=row["message"],
        metadata=json.loads(row["metadata"] or "{}"),
        acknowledged_at=_parse_dt(row["acknowledged_at"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_notification(row: sqlite3.Row) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        title=row["title"],
        body=row["body"],
        link=row["link"],
        read_at=_parse_dt(row["read_at"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
