"""Slack Web API and incoming-webhook integration."""

from dataclasses import dataclass


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


SEVERITY_EMOJI = {
    "info": ":information_source:",
    "warning": ":warning:",
    "critical": ":rotating_light:",
}


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def send_webhook(
    url: str,
    text: str,
    blocks: list[dict] | None = None,
    timeout: float = 10.0,
) -> int:
    """Post to a Slack incoming webhook. Returns the HTTP status code."""
    from slack_sdk.webhook import WebhookClient

    client = WebhookClient(url, timeout=int(timeout))
    response = client.send(text=text, blocks=blocks)
    return response.status_code


def format_channel_message(
    event: str,
    title: str,
    body: str,
    severity: str = "info",
) -> list[dict]:
    """Format an orchestrator event as Slack blocks."""
    emoji = SEVERITY_EMOJI.get(severity, ":grey_question:")
    return [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": title},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": body or " "},
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f"{emoji} *Event:* `{event}` | *Severity:* {severity}",
                }
            ],
        },
    ]
