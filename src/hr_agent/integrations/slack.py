"""Slack Web API integration."""

from dataclasses import dataclass


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


def format_task_failure(
    task_id: int,
    task_type: str,
    error: str | None,
    correlation_id: int | None = None,
) -> list[dict]:
    """Format a failed task as Slack blocks."""
    issue = f" | Issue: #{correlation_id}" if correlation_id is not None else ""
    detail = f"\n```{error[:500]}```" if error else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":x: *Task failed*\n`{task_type}` (task {task_id}){issue}{detail}",
            },
        }
    ]


def format_agent_error(name: str, reason: str | None) -> list[dict]:
    """Format a coding agent failure as Slack blocks."""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":warning: *Coding agent error*\n`{name}`: {reason or 'unknown'}",
            },
        }
    ]
