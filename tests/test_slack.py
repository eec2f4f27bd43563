"""Tests for Slack notifications."""

from unittest.mock import MagicMock, patch

import pytest

from backlog_runner.config import Config
from backlog_runner.events import EventLog
from backlog_runner.integrations.slack import (
    SlackError,
    SlackNotifier,
    attach_notifier,
    format_task_notification,
    send_message,
)


def test_send_message_requires_token():
    with pytest.raises(SlackError):
        send_message(None, "#dev", "hi")


@patch("backlog_runner.integrations.slack.get_client")
def test_send_message(mock_get_client):
    client = MagicMock()
    client.chat_postMessage.return_value = {"channel": "C1", "ts": "123.45"}
    mock_get_client.return_value = client

    message = send_message("xoxb-1", "#dev", "hi")

    assert message.ts == "123.45"
    client.chat_postMessage.assert_called_once_with(channel="#dev", text="hi", blocks=None)


@patch("backlog_runner.integrations.slack.send_message")
def test_notifier_posts_task_outcomes_only(mock_send):
    events = EventLog()
    events.subscribe(SlackNotifier("xoxb-1", "#dev"))

    events.info("Starting task: A", source="task", task_id="task-1.md")
    events.success("Committed: feat: implement A", source="workspace")
    events.success("Task completed: A", source="task", task_id="task-1.md")
    events.error("Task failed: boom", source="task", task_id="task-2.md")

    assert [c.args[2] for c in mock_send.call_args_list] == [
        "Task completed: A",
        "Task failed: boom",
    ]


@patch("backlog_runner.integrations.slack.send_message", side_effect=RuntimeError("down"))
def test_notifier_failure_is_logged(mock_send, caplog):
    events = EventLog()
    events.subscribe(SlackNotifier("xoxb-1", "#dev"))
    event = events.success("Task completed: A", source="task")
    assert event.message == "Task completed: A"
    assert "Failed to post Slack notification" in caplog.text


def test_format_task_notification():
    event = EventLog().error("Task failed: boom", source="task", task_id="task-2.md")
    text = format_task_notification(event)[0]["text"]["text"]
    assert ":red_circle:" in text
    assert "`task-2.md`" in text


def test_attach_notifier_requires_token_and_channel():
    events = EventLog()
    assert attach_notifier(Config(), events) is None
    assert attach_notifier(Config(slack_bot_token="xoxb-1"), events) is None
    notifier = attach_notifier(Config(slack_bot_token="xoxb-1", slack_channel="#dev"), events)
    assert isinstance(notifier, SlackNotifier)
