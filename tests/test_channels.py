"""Tests for outbound channel dispatch."""

import hashlib
import hmac
import json
import tempfile
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from fleet_orchestrator.core import alerts as alerts_mod
from fleet_orchestrator.core import projects as projects_mod
from fleet_orchestrator.db.engine import init_db
from fleet_orchestrator.errors import ValidationError
from fleet_orchestrator.integrations import channels
from fleet_orchestrator.integrations import slack as slack_mod
from fleet_orchestrator.integrations.channels import (
    BackgroundDispatcher,
    ChannelDispatcher,
    ChannelMessage,
)


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.ensure_default_workspace(conn, "ws")
        yield conn
        conn.close()


@pytest.fixture
def dispatcher(db):
    sleeps = []
    d = ChannelDispatcher(db, backoff=(1.0, 4.0, 16.0), sleep=sleeps.append)
    d.sleeps = sleeps
    return d


def _mock_http(mock_client_cls, *statuses):
    client = mock_client_cls.return_value.__enter__.return_value
    client.post.side_effect = [MagicMock(status_code=s) for s in statuses]
    return client


MESSAGE = ChannelMessage(event="escalation.bot_failure", title="Bot down", body="b", severity="critical")


class TestEventGlob:
    @pytest.mark.parametrize(
        "event, pattern, expected",
        [
            ("escalation.bot_failure", "*", True),
            ("escalation.bot_failure", "escalation.*", True),
            ("escalation.bot_failure", "automation.*", False),
            ("a.b.c", "a.*", False),
            ("a.b.c", "a.**", True),
            ("task.done", "task.done", True),
        ],
    )
    def test_match(self, event, pattern, expected):
        assert channels.match_event_glob(event, pattern) is expected


class TestPayloads:
    def test_webhook_signature(self):
        body, signature = channels.format_webhook_payload(MESSAGE, "s3cret")
        expected = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        assert signature == expected
        data = json.loads(body)
        assert data["event"] == "escalation.bot_failure"
        assert data["severity"] == "critical"

    def test_discord_color_by_severity(self):
        payload = channels.format_discord_payload(MESSAGE)
        assert payload["embeds"][0]["color"] == channels.DISCORD_COLORS["critical"]

    def test_slack_blocks(self):
        blocks = slack_mod.format_channel_message("e.x", "Title", "Body", "warning")
        assert blocks[0]["text"]["text"] == "Title"
        assert ":warning:" in blocks[2]["elements"][0]["text"]


class TestChannelConfig:
    def test_webhook_needs_url(self, db):
        with pytest.raises(ValidationError, match="url"):
            channels.create_channel(db, "ws", "webhook", "Hook")

    def test_invalid_type(self, db):
        with pytest.raises(ValidationError, match="Invalid channel type"):
            channels.create_channel(db, "ws", "pager", "Pager")

    def test_defaults(self, db):
        channel = channels.create_channel(db, "ws", "in_app", "Inbox", {"userId": "u1"})
        assert channel.events == ["*"]
        assert channel.min_severity == "info"
        assert channel.active is True


class TestDispatcher:
    @patch("fleet_orchestrator.integrations.channels.httpx.Client")
    def test_webhook_delivered_with_signature(self, mock_client_cls, db, dispatcher):
        channels.create_channel(db, "ws", "webhook", "Hook", {"url": "https://h.example", "secret": "k"})
        client = _mock_http(mock_client_cls, 200)

        summary = dispatcher.dispatch("ws", MESSAGE)

        assert summary == channels.DispatchSummary(dispatched=1, succeeded=1, failed=0)
        headers = client.post.call_args.kwargs["headers"]
        assert headers["X-Webhook-Signature"].startswith("sha256=")
        delivery = channels.list_deliveries(db)[0]
        assert delivery.status == "delivered"
        assert delivery.attempts == 1
        assert delivery.response_status == 200

    @patch("fleet_orchestrator.integrations.channels.httpx.Client")
    def test_retries_with_backoff_then_fails(self, mock_client_cls, db, dispatcher):
        channels.create_channel(db, "ws", "discord_webhook", "Discord", {"url": "https://d.example"})
        _mock_http(mock_client_cls, 500, 502, 503)

        summary = dispatcher.dispatch("ws", MESSAGE)

        assert summary.failed == 1
        assert dispatcher.sleeps == [1.0, 4.0]
        delivery = channels.list_deliveries(db)[0]
        assert delivery.status == "failed"
        assert delivery.attempts == 3
        assert delivery.error_message == "HTTP 503"

    @patch("fleet_orchestrator.integrations.channels.httpx.Client")
    def test_transport_error_recovers(self, mock_client_cls, db, dispatcher):
        channels.create_channel(db, "ws", "webhook", "Hook", {"url": "https://h.example"})
        client = mock_client_cls.return_value.__enter__.return_value
        client.post.side_effect = [httpx.ConnectError("refused"), MagicMock(status_code=204)]

        summary = dispatcher.dispatch("ws", MESSAGE)

        assert summary.succeeded == 1
        assert channels.list_deliveries(db)[0].attempts == 2

    def test_severity_and_event_filters(self, db, dispatcher):
        channels.create_channel(db, "ws", "in_app", "Critical only", {"userId": "u1"}, min_severity="critical")
        channels.create_channel(db, "ws", "in_app", "Automation", {"userId": "u2"}, events=["automation.*"])

        dispatcher.dispatch("ws", ChannelMessage(event="automation.notify", title="t", body="b", severity="info"))

        assert alerts_mod.list_notifications(db, "u1") == []
        assert len(alerts_mod.list_notifications(db, "u2")) == 1

    def test_inactive_channel_skipped(self, db, dispatcher):
        channel = channels.create_channel(db, "ws", "in_app", "Inbox", {"userId": "u1"})
        channels.set_channel_active(db, channel.id, False)
        assert dispatcher.dispatch("ws", MESSAGE).dispatched == 0

    def test_slack_without_token_fails(self, db, dispatcher):
        channels.create_channel(db, "ws", "slack", "Ops", {"channel": "#ops"})
        summary = dispatcher.dispatch("ws", MESSAGE)
        assert summary.failed == 1
        assert "SLACK_BOT_TOKEN" in channels.list_deliveries(db)[0].error_message

    @patch("fleet_orchestrator.integrations.slack.get_client")
    def test_slack_posts_blocks(self, mock_get_client, db):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "1.0"}
        mock_get_client.return_value = client
        channels.create_channel(db, "ws", "slack", "Ops", {"channel": "#ops"})

        summary = ChannelDispatcher(db, slack_token="xoxb-test").dispatch("ws", MESSAGE)

        assert summary.succeeded == 1
        kwargs = client.chat_postMessage.call_args.kwargs
        assert kwargs["channel"] == "#ops"
        assert kwargs["blocks"][0]["text"]["text"] == "Bot down"


class TestBestEffort:
    def test_failing_sink_is_swallowed(self):
        sink = MagicMock()
        sink.dispatch.side_effect = RuntimeError("boom")
        channels.dispatch_best_effort(sink, "ws", MESSAGE)
        sink.dispatch.assert_called_once_with("ws", MESSAGE)

    def test_none_sink(self):
        channels.dispatch_best_effort(None, "ws", MESSAGE)


class TestBackgroundDispatcher:
    @pytest.fixture
    def db_path(self):
        with tempfile.TemporaryDirectory() as tmp:
            db_path = Path(tmp) / "test.db"
            conn = init_db(db_path)
            projects_mod.ensure_default_workspace(conn, "ws")
            conn.close()
            yield db_path

    @patch("fleet_orchestrator.integrations.channels.httpx.Client")
    def test_dispatch_does_not_wait_for_retries(self, mock_client_cls, db_path):
        conn = init_db(db_path)
        channels.create_channel(conn, "ws", "webhook", "Hook", {"url": "https://h.example"})
        _mock_http(mock_client_cls, 500, 500, 500)
        release = threading.Event()
        sink = BackgroundDispatcher(db_path, backoff=(1.0, 4.0), sleep=lambda s: release.wait(5))

        sink.dispatch("ws", MESSAGE)
        assert channels.list_deliveries(conn) == []

        release.set()
        sink.close()
        delivery = channels.list_deliveries(conn)[0]
        assert delivery.status == "failed"
        assert delivery.attempts == 3
        conn.close()

    def test_close_drains_in_app_deliveries(self, db_path):
        conn = init_db(db_path)
        channels.create_channel(conn, "ws", "in_app", "Inbox", {"userId": "u1"})
        sink = BackgroundDispatcher(db_path)

        sink.dispatch("ws", MESSAGE)
        sink.dispatch("ws", MESSAGE)
        sink.close()

        assert len(alerts_mod.list_notifications(conn, "u1")) == 2
        conn.close()

    @patch.object(ChannelDispatcher, "dispatch", side_effect=[RuntimeError("boom"), None])
    def test_worker_survives_failed_dispatch(self, mock_dispatch, db_path):
        sink = BackgroundDispatcher(db_path)
        sink.dispatch("ws", MESSAGE)
        sink.dispatch("ws", MESSAGE)
        sink.join()
        assert mock_dispatch.call_count == 2
        sink.close()
