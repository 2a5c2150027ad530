"""Coding agent session health check."""

import hashlib
import json
import logging
import re

from hr_agent.integrations.agent_client import AgentClientError, message_text
from hr_agent.tasks.base import BaseTask, TaskContext, TaskResult

logger = logging.getLogger(__name__)

# An agent that printed a raw tool-call block instead of running it stalls until nudged.
XML_TAG_PATTERN = re.compile(r"<[a-zA-Z][^>]*>.*?</[a-zA-Z][^>]*>", re.DOTALL)

CONTINUE_PROMPT = "continue"


def fingerprint(message: dict) -> str:
    return hashlib.sha1(json.dumps(message, sort_keys=True, default=str).encode()).hexdigest()[:16]


def contains_xml(message: dict | None) -> bool:
    for part in (message or {}).get("parts") or []:
        if part.get("type") == "text" and part.get("text") and XML_TAG_PATTERN.search(part["text"]):
            return True
    return False


class CaStatusCheckTask(BaseTask):
    """Snapshot an agent's latest session and nudge it if it stalled."""

    name = "ca_status_check"

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.validate_params(params, ["caId", "caName"])
        ca_id, ca_name = params["caId"], params["caName"]
        snapshot: dict = {"caId": ca_id, "session_id": None, "message_count": 0, "fingerprint": None}

        try:
            async with self.services.agent_client(ca_name) as client:
                sessions = await client.list_sessions()
                if not sessions:
                    return TaskResult(success=True, data={**snapshot, "action": "no_session"})

                session_id = sessions[0]["id"]
                messages = await client.list_messages(session_id)
                snapshot["session_id"] = session_id
                snapshot["message_count"] = len(messages)
                if not messages:
                    return TaskResult(success=True, data={**snapshot, "action": "no_messages"})

                latest = messages[-1]
                snapshot["fingerprint"] = fingerprint(latest)
                snapshot["last_message"] = message_text(latest)
                if contains_xml(latest):
                    logger.info("Agent %s stalled on a raw tool call; sending continue", ca_name)
                    await client.send_prompt(session_id, CONTINUE_PROMPT)
                    return TaskResult(success=True, data={**snapshot, "action": "sent_continue"})
        except AgentClientError as e:
            logger.warning("Status check for %s failed: %s", ca_name, e)
            return TaskResult.fail(str(e))

        return TaskResult(success=True, data={**snapshot, "action": "ok"})
