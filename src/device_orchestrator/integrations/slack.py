"""Slack Web API integration for run notifications."""

import logging
from dataclasses import dataclass

from device_orchestrator.core.planning import OrchestratorResult

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

    from slack_sdk.errors import SlackApiError
    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_run_notification(run_id: int | None, task: str, result: OrchestratorResult) -> list[dict]:
    """Format a finished run as Slack blocks."""
    if result.is_cancelled:
        emoji, status = ":white_circle:", "cancelled"
    elif result.success:
        emoji, status = ":white_check_mark:", "completed"
    else:
        emoji, status = ":red_circle:", "failed"

    succeeded = sum(1 for r in result.sub_task_results if r.success)
    total = len(result.sub_task_results)
    run_label = f" (run `{run_id}`)" if run_id is not None else ""

    blocks = [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"{emoji} *Device run {status}*{run_label}\n*{task}*\n"
                    f"Sub-tasks: {succeeded}/{total} succeeded"
                ),
            },
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": result.summary[:2900]},
        },
    ]
    for r in result.sub_task_results:
        mark = ":heavy_check_mark:" if r.success else ":x:"
        blocks.append({
            "type": "context",
            "elements": [{
                "type": "mrkdwn",
                "text": f"{mark} `{r.task_id}` {r.steps_executed} steps, {r.execution_time_ms / 1000:.1f}s",
            }],
        })
    return blocks


def notify_run_completion(
    token: str | None,
    channel: str | None,
    run_id: int | None,
    task: str,
    result: OrchestratorResult,
) -> SlackMessage | None:
    """Post a run summary. Best effort: failures are logged, never raised."""
    if not token or not channel:
        return None
    try:
        return send_message(
            token,
            channel,
            text=f"Device run finished: {task}",
            blocks=format_run_notification(run_id, task, result),
        )
    except SlackError:
        logger.exception("Failed to send Slack notification for run %s", run_id)
        return None
