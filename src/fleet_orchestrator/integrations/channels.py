"""Outbound channel dispatch for alerts and automation events.

Callers in the core hand a ``ChannelMessage`` to a sink through
``dispatch_best_effort``; a failing sink is logged and never interrupts the
caller. ``ChannelDispatcher`` is the database-backed sink: it fans a message
out to every matching channel of a workspace and records one delivery row
per channel. ``BackgroundDispatcher`` runs it on a worker thread so callers
return without waiting on retries.
"""

import hashlib
import hmac
import json
import logging
import queue
import re
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

import httpx
from slack_sdk.errors import SlackApiError

from fleet_orchestrator.core.alerts import create_notification
from fleet_orchestrator.core.projects import require_workspace
from fleet_orchestrator.db.engine import init_db
from fleet_orchestrator.db.models import SEVERITIES, Channel, ChannelDelivery
from fleet_orchestrator.errors import NotFoundError, ValidationError
from fleet_orchestrator.integrations import slack

logger = logging.getLogger(__name__)

CHANNEL_TYPES = ("slack", "slack_webhook", "discord_webhook", "webhook", "in_app")
SEVERITY_LEVELS = {"info": 0, "warning": 1, "critical": 2}
DISCORD_COLORS = {"info": 0x3498DB, "warning": 0xF39C12, "critical": 0xE74C3C}
MAX_ATTEMPTS = 3


@dataclass
class ChannelMessage:
    event: str
    title: str
    body: str
    severity: str = "info"
    metadata: dict[str, Any] = field(default_factory=dict)


class ChannelSink(Protocol):
    def dispatch(self, workspace_id: str, message: ChannelMessage) -> Any: ...


@dataclass
class DispatchSummary:
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass
class DeliveryResult:
    success: bool
    status: int | None = None
    error: str | None = None


def dispatch_best_effort(sink: ChannelSink | None, workspace_id: str, message: ChannelMessage):
    """Hand a message to a sink, logging and discarding any failure."""
    if sink is None:
        return
    try:
        sink.dispatch(workspace_id, message)
    except Exception:
        logger.exception("Channel dispatch failed for event %s", message.event)


def match_event_glob(event: str, pattern: str) -> bool:
    """Match a dotted event name against a glob.

    ``*`` matches one segment and ``**`` any run of characters; a bare ``*``
    or ``**`` matches every event.
    """
    if pattern in ("*", "**"):
        return True
    regex = "".join(
        ".*" if token == "**" else "[^.]+" if token == "*" else re.escape(token)
        for token in re.split(r"(\*\*|\*)", pattern)
    )
    return re.fullmatch(regex, event) is not None


# ── Payload formats ─────────────────────────────────────────────────────────


def format_discord_payload(message: ChannelMessage) -> dict:
    return {
        "embeds": [
            {
                "title": message.title,
                "description": message.body,
                "color": DISCORD_COLORS.get(message.severity, DISCORD_COLORS["info"]),
                "footer": {"text": f"Event: {message.event}"},
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ]
    }


def format_webhook_payload(message: ChannelMessage, secret: str) -> tuple[bytes, str]:
    """Serialize a message for a generic webhook and sign it with HMAC-SHA256."""
    body = json.dumps(
        {
            "event": message.event,
            "severity": message.severity,
            "title": message.title,
            "body": message.body,
            "metadata": message.metadata,
            "timestamp": int(time.time() * 1000),
        }
    ).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return body, signature


# ── Dispatcher ──────────────────────────────────────────────────────────────


class ChannelDispatcher:
    """Deliver messages to a workspace's configured channels."""

    def __init__(
        self,
        db: sqlite3.Connection,
        slack_token: str | None = None,
        backoff: tuple[float, ...] = (1.0, 4.0, 16.0),
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.slack_token = slack_token
        self.backoff = backoff or (0.0,)
        self.timeout = timeout
        self._sleep = sleep

    @classmethod
    def from_config(cls, db: sqlite3.Connection, config) -> "ChannelDispatcher":
        return cls(
            db,
            slack_token=config.slack_bot_token,
            backoff=config.channel_backoff,
            timeout=config.channel_timeout,
        )

    def dispatch(self, workspace_id: str, message: ChannelMessage) -> DispatchSummary:
        """Send a message to every active channel whose filters accept it."""
        summary = DispatchSummary()
        level = SEVERITY_LEVELS.get(message.severity, 0)

        for channel in list_channels(self.db, workspace_id, active_only=True):
            if level < SEVERITY_LEVELS.get(channel.min_severity, 0):
                continue
            if not any(match_event_glob(message.event, p) for p in channel.events):
                continue

            summary.dispatched += 1
            if channel.type == "in_app":
                result, attempts = self._deliver_in_app(channel, message), 1
            else:
                result, attempts = self._deliver_with_retry(channel, message)

            _record_delivery(self.db, channel, message, result, attempts)
            if result.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
                logger.warning(
                    "Delivery of %s to channel %s (%s) failed: %s",
                    message.event, channel.name, channel.type, result.error,
                )

        self.db.commit()
        return summary

    def _deliver_in_app(self, channel: Channel, message: ChannelMessage) -> DeliveryResult:
        user_id = channel.config.get("userId")
        if user_id:
            create_notification(
                self.db, user_id, message.event, message.title, message.body, commit=False
            )
        return DeliveryResult(success=True)

    def _deliver_with_retry(
        self, channel: Channel, message: ChannelMessage
    ) -> tuple[DeliveryResult, int]:
        result = DeliveryResult(success=False, error="No attempt made")
        attempts = 0
        for attempt in range(MAX_ATTEMPTS):
            if attempt:
                self._sleep(self.backoff[min(attempt - 1, len(self.backoff) - 1)])
            attempts += 1
            try:
                result = self._deliver(channel, message)
            except (httpx.HTTPError, SlackApiError, slack.SlackError, OSError) as e:
                result = DeliveryResult(success=False, error=str(e))
            if result.success:
                break
        return result, attempts

    def _deliver(self, channel: Channel, message: ChannelMessage) -> DeliveryResult:
        if channel.type == "slack":
            target = channel.config.get("channel")
            if not target:
                return DeliveryResult(success=False, error="No Slack channel configured")
            slack.send_message(
                self.slack_token,
                target,
                text=message.title,
                blocks=slack.format_channel_message(
                    message.event, message.title, message.body, message.severity
                ),
            )
            return DeliveryResult(success=True)

        url = channel.config.get("url")
        if not url:
            return DeliveryResult(success=False, error="No URL configured")

        if channel.type == "slack_webhook":
            status = slack.send_webhook(
                url,
                text=message.title,
                blocks=slack.format_channel_message(
                    message.event, message.title, message.body, message.severity
                ),
                timeout=self.timeout,
            )
            return _http_result(status)

        with httpx.Client(timeout=self.timeout) as client:
            if channel.type == "discord_webhook":
                response = client.post(url, json=format_discord_payload(message))
            elif channel.type == "webhook":
                body, signature = format_webhook_payload(message, channel.config.get("secret", ""))
                response = client.post(
                    url,
                    content=body,
                    headers={
                        "Content-Type": "application/json",
                        "X-Webhook-Signature": f"sha256={signature}",
                    },
                )
            else:
                return DeliveryResult(success=False, error=f"Unknown channel type: {channel.type}")
        return _http_result(response.status_code)


def _http_result(status: int) -> DeliveryResult:
    ok = 200 <= status < 300
    return DeliveryResult(success=ok, status=status, error=None if ok else f"HTTP {status}")


def _record_delivery(
    db: sqlite3.Connection,
    channel: Channel,
    message: ChannelMessage,
    result: DeliveryResult,
    attempts: int,
):
    db.execute(
        """INSERT INTO channel_deliveries
           (channel_id, event, payload, status, attempts, response_status, error_message)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            channel.id,
            message.event,
            json.dumps(asdict(message), default=str),
            "delivered" if result.success else "failed",
            attempts,
            result.status,
            result.error,
        ),
    )


class BackgroundDispatcher:
    """Sink that delivers messages on a worker thread with its own connection.

    ``dispatch`` only queues the message, so callers never wait on channel
    retries. ``close`` drains the queue and stops the worker.
    """

    def __init__(
        self,
        db_path: Path,
        slack_token: str | None = None,
        backoff: tuple[float, ...] = (1.0, 4.0, 16.0),
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db_path = db_path
        self.slack_token = slack_token
        self.backoff = backoff
        self.timeout = timeout
        self._sleep = sleep
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, config) -> "BackgroundDispatcher":
        return cls(
            config.db_path,
            slack_token=config.slack_bot_token,
            backoff=config.channel_backoff,
            timeout=config.channel_timeout,
        )

    def dispatch(self, workspace_id: str, message: ChannelMessage) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._run, name="channel-dispatch", daemon=True
                )
                self._thread.start()
        self._queue.put((workspace_id, message))

    def join(self):
        """Block until every queued message has been handled."""
        self._queue.join()

    def close(self, timeout: float | None = None):
        """Drain the queue, then stop the worker thread."""
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._queue.put(None)
        thread.join(timeout)

    def _run(self):
        db = None
        try:
            while True:
                item = self._queue.get()
                try:
                    if item is None:
                        return
                    workspace_id, message = item
                    if db is None:
                        db = init_db(self.db_path)
                    dispatcher = ChannelDispatcher(
                        db,
                        slack_token=self.slack_token,
                        backoff=self.backoff,
                        timeout=self.timeout,
                        sleep=self._sleep,
                    )
                    dispatcher.dispatch(workspace_id, message)
                except Exception:
                    logger.exception("Background dispatch failed")
                finally:
                    self._queue.task_done()
        finally:
            if db is not None:
                db.close()


# ── Channel configuration ───────────────────────────────────────────────────


def create_channel(
    db: sqlite3.Connection,
    workspace_id: str,
    type: str,
    name: str,
    config: dict | None = None,
    events: list[str] | None = None,
    min_severity: str = "info",
) -> Channel:
    """Configure an outbound channel for a workspace."""
    require_workspace(db, workspace_id)
    config = config or {}
    if type not in CHANNEL_TYPES:
        raise ValidationError(
            f"Invalid channel type '{type}'. Must be one of: {', '.join(CHANNEL_TYPES)}"
        )
    if min_severity not in SEVERITIES:
        raise ValidationError(
            f"Invalid severity '{min_severity}'. Must be one of: {', '.join(SEVERITIES)}"
        )
    if type in ("slack_webhook", "discord_webhook", "webhook") and not config.get("url"):
        raise ValidationError(f"A {type} channel needs a 'url' in its config")
    if type == "slack" and not config.get("channel"):
        raise ValidationError("A slack channel needs a 'channel' in its config")

    cur = db.execute(
        """INSERT INTO channels (workspace_id, type, name, config, events, min_severity)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            workspace_id,
            type,
            name,
            json.dumps(config),
            json.dumps(events or ["*"]),
            min_severity,
        ),
    )
    db.commit()
    return get_channel(db, cur.lastrowid)


def get_channel(db: sqlite3.Connection, channel_id: int) -> Channel | None:
    row = db.execute("SELECT * FROM channels WHERE id = ?", (channel_id,)).fetchone()
    if not row:
        return None
    return _row_to_channel(row)


def list_channels(
    db: sqlite3.Connection,
    workspace_id: str,
    active_only: bool = False,
) -> list[Channel]:
    query = "SELECT * FROM channels WHERE workspace_id = ?"
    if active_only:
        query += " AND active = 1"
    query += " ORDER BY id"
    rows = db.execute(query, (workspace_id,)).fetchall()
    return [_row_to_channel(r) for r in rows]


def set_channel_active(db: sqlite3.Connection, channel_id: int, active: bool) -> Channel:
    if not get_channel(db, channel_id):
        raise NotFoundError(f"Channel not found: {channel_id}")
    db.execute("UPDATE channels SET active = ? WHERE id = ?", (int(active), channel_id))
    db.commit()
    return get_channel(db, channel_id)


def list_deliveries(
    db: sqlite3.Connection,
    channel_id: int | None = None,
    limit: int = 50,
) -> list[ChannelDelivery]:
    """Most recent delivery records, optionally for one channel."""
    if channel_id is None:
        rows = db.execute(
            "SELECT * FROM channel_deliveries ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
    else:
        rows = db.execute(
            "SELECT * FROM channel_deliveries WHERE channel_id = ? ORDER BY id DESC LIMIT ?",
            (channel_id, limit),
        ).fetchall()
    return [_row_to_delivery(r) for r in rows]


def _row_to_channel(row: sqlite3.Row) -> Channel:
    return Channel(
        id=row["id"],
        workspace_id=row["workspace_id"],
        type=row["type"],
        name=row["name"],
        config=json.loads(row["config"] or "{}"),
        events=json.loads(row["events"] or '["*"]'),
        min_severity=row["min_severity"],
        active=bool(row["active"]),
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_delivery(row: sqlite3.Row) -> ChannelDelivery:
    return ChannelDelivery(
        id=row["id"],
        channel_id=row["channel_id"],
        event=row["event"],
        payload=row["payload"],
        status=row["status"],
        attempts=row["attempts"],
        response_status=row["response_status"],
        error_message=row["error_message"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
