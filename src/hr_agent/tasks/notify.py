"""Failure notifications."""

import asyncio
import logging

from hr_agent.config import Config
from hr_agent.core.events import Event, EventBus
from hr_agent.integrations import slack as slack_mod

logger = logging.getLogger(__name__)


class FailureNotifier:
    """Posts terminal task failures and coding agent errors to Slack."""

    def __init__(self, config: Config):
        self.token = config.slack_bot_token
        self.channel = config.slack_channel

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.channel)

    def register(self, bus: EventBus):
        bus.on(Event.TASK_FAILED, self.on_task_failed)
        bus.on(Event.WORKER_ERROR, self.on_worker_error)

    async def on_task_failed(self, payload: dict):
        blocks = slack_mod.format_task_failure(
            payload["task_id"],
            payload.get("task_type", "?"),
            payload.get("error"),
            payload.get("correlation_id"),
        )
        await self._send(f"Task {payload['task_id']} failed", blocks)

    async def on_worker_error(self, payload: dict):
        blocks = slack_mod.format_agent_error(payload.get("name", "?"), payload.get("reason"))
        await self._send(f"Coding agent {payload.get('name')} error", blocks)

    async def _send(self, text: str, blocks: list[dict]):
        if not self.enabled:
            return
        try:
            await asyncio.to_thread(slack_mod.send_message, self.token, self.channel, text, blocks)
        except Exception:
            logger.exception("Failed to send Slack notification")
