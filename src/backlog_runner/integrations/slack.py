"""Slack Web API integration."""

import logging
from dataclasses import dataclass

from backlog_runner.events import EventKind, RunEvent

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


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

    response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_task_notification(event: RunEvent) -> list[dict]:
    """Format a task outcome event as Slack blocks."""
    emoji = ":white_check_mark:" if event.kind is EventKind.SUCCESS else ":red_circle:"
    task = f" (`{event.task_id}`)" if event.task_id else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *Backlog Runner*{task}\n{event.message}",
            },
        }
    ]


class SlackNotifier:
    """Event subscriber posting task outcomes to a Slack channel.

    Only `source="task"` success and error events are sent. Delivery
    failures are logged and never reach the engine.
    """

    def __init__(self, token: str, channel: str):
        self.token = token
        self.channel = channel

    def wants(self, event: RunEvent) -> bool:
        return event.source == "task" and event.kind in (EventKind.SUCCESS, EventKind.ERROR)

    def __call__(self, event: RunEvent) -> None:
        if not self.wants(event):
            return
        try:
            send_message(
                self.token,
                self.channel,
                event.message,
                blocks=format_task_notification(event),
            )
        except Exception:
            logger.exception("Failed to post Slack notification to %s", self.channel)


def attach_notifier(config, events):
    """Subscribe a SlackNotifier when a token and channel are configured."""
    if not (config.slack_bot_token and config.slack_channel):
        return None
    notifier = SlackNotifier(config.slack_bot_token, config.slack_channel)
    events.subscribe(notifier)
    return notifier
