"""Issue-to-pull-request workflow steps.

Each step ends by naming the next one, so one issue walks through
issue_processing -> create_ca -> connect_ca -> ai_coding -> create_pr -> destroy_ca.
"""

import asyncio
import logging

from hr_agent.core import agents as agents_mod
from hr_agent.core import issues as issues_mod
from hr_agent.db.models import (
    CA_BUSY,
    CA_ERROR,
    CA_IDLE,
    PR_SUBMITTED,
    TAG_AGENT_CODING,
    TAG_MANAGES_CA,
    TAG_REQUIRES_CA,
    TAG_RUNTIME_LONG,
)
from hr_agent.integrations.agent_client import AgentClientError, message_id
from hr_agent.integrations.docker import DockerError
from hr_agent.tasks.base import BaseTask, TaskContext, TaskResult

logger = logging.getLogger(__name__)

CODING_PROMPT = """Resolve the following GitHub issue by changing the code.

## Issue #{number}: {title}

### Description
{body}

### Requirements
1. Work in /home/workspace/repo
2. Analyse the request and implement it
3. Add tests for any new API
4. Run the test suite and make sure it passes
5. Commit your changes

Start now."""


class IssueProcessingTask(BaseTask):
    name = "issue_processing"

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.validate_params(params, ["issueNumber"])
        number = int(params["issueNumber"])
        db = self.services.db

        if params.get("title"):
            issues_mod.upsert_issue(
                db,
                number,
                params["title"],
                body=params.get("body") or "",
                url=params.get("url"),
                labels=params.get("labels"),
            )
        elif issues_mod.get_issue(db, number) is None:
            return TaskResult.fail(f"Issue #{number} not found")

        logger.info("Processing issue #%s (task %s)", number, context.task_id)
        return TaskResult(
            success=True,
            data={"issueNumber": number},
            next_task="create_ca",
            next_params={"issueNumber": number},
        )


class CreateCaTask(BaseTask):
    """Confirms the coding agent the scheduler bound to this task is up."""

    name = "create_ca"
    needs_ca = True
    tags = (TAG_REQUIRES_CA, TAG_MANAGES_CA)

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.validate_params(params, ["issueNumber"])
        if not context.ca_name:
            return TaskResult.fail("No coding agent bound to task")
        expected = f"{self.services.config.ca_name_prefix}{params['issueNumber']}"
        if context.ca_name != expected:
            return TaskResult.fail(f"Bound to {context.ca_name}, expected {expected}")

        info = await asyncio.to_thread(self.services.runtime.inspect_container, context.ca_name)
        if info is None or not info.running:
            state = info.state if info else "missing"
            return TaskResult.fail(f"Container {context.ca_name} is {state}")

        self.update_metadata(
            context.task_id,
            {"caName": context.ca_name, "caId": context.ca_id, "containerId": info.id},
        )
        return TaskResult(
            success=True,
            data={"caName": context.ca_name, "containerId": info.id},
            next_task="connect_ca",
            next_params={"issueNumber": params["issueNumber"], "caName": context.ca_name},
        )


class ConnectCaTask(BaseTask):
    name = "connect_ca"
    dependencies = ("create_ca",)
    tags = (TAG_MANAGES_CA,)

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.validate_params(params, ["issueNumber", "caName"])
        ca_name = params["caName"]
        config = self.services.config

        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.ca_ready_timeout
        async with self.services.agent_client(ca_name) as client:
            while not await client.is_ready():
                if loop.time() >= deadline:
                    return TaskResult.fail(
                        f"Agent server in {ca_name} not reachable after {config.ca_ready_timeout}s"
                    )
                await asyncio.sleep(config.ca_ready_poll)

        self.update_metadata(context.task_id, {"caName": ca_name, "connected": True})
        return TaskResult(
            success=True,
            data={"caName": ca_name},
            next_task="ai_coding",
            next_params={"issueNumber": params["issueNumber"], "caName": ca_name},
        )


class AiCodingTask(BaseTask):
    name = "ai_coding"
    dependencies = ("connect_ca",)
    needs_ca = True
    tags = (TAG_REQUIRES_CA, TAG_AGENT_CODING, TAG_RUNTIME_LONG)

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.validate_params(params, ["issueNumber"])
        number = int(params["issueNumber"])
        ca_name = params.get("caName") or context.ca_name
        if not ca_name:
            return TaskResult.fail("No coding agent bound to task")

        issue = issues_mod.get_issue(self.services.db, number)
        if issue is None:
            return TaskResult.fail(f"Issue #{number} not found")

        config = self.services.config
        try:
            async with self.services.agent_client(ca_name) as client:
                session = await client.create_session(f"Issue #{number}: {issue.title}")
                self.update_metadata(context.task_id, {"caName": ca_name, "sessionId": session["id"]})
                prompt = CODING_PROMPT.format(
                    number=number,
                    title=issue.title,
                    body=issue.body or "No description provided",
                )
                reply = await client.send_prompt(
                    session["id"], prompt, model=config.agent_model, timeout=config.task_timeout
                )
        except AgentClientError as e:
            return TaskResult.fail(str(e))

        reply_id = message_id(reply)
        self.update_metadata(context.task_id, {"messageId": reply_id})
        return TaskResult(
            success=True,
            data={"sessionId": session["id"], "messageId": reply_id},
            next_task="create_pr",
            next_params={"issueNumber": number, "caName": ca_name, "sessionId": session["id"]},
        )


class CreatePrTask(BaseTask):
    name = "create_pr"
    dependencies = ("ai_coding",)

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.validate_params(params, ["issueNumber", "caName"])
        number = int(params["issueNumber"])
        db = self.services.db

        issue = issues_mod.get_issue(db, number)
        if issue is None:
            return TaskResult.fail(f"Issue #{number} not found")

        pr = issues_mod.get_pull_request_for_issue(db, number)
        existing = pr is not None
        if not existing:
            pr = issues_mod.create_pull_request(
                db,
                number,
                f"Fix #{number}: {issue.title}",
                body="Automated pull request created by hr-agent",
            )
        self.update_metadata(context.task_id, {"prId": pr.id})

        return TaskResult(
            success=True,
            data={"prId": pr.id, "existing": existing},
            final_status=PR_SUBMITTED,
            next_task="destroy_ca",
            next_params={"issueNumber": number, "caName": params["caName"], "prId": pr.id},
        )


class DestroyCaTask(BaseTask):
    name = "destroy_ca"
    dependencies = ("create_pr",)
    tags = (TAG_MANAGES_CA,)

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.validate_params(params, ["caName"])
        ca_name = params["caName"]
        pool = self.services.pool

        if pool.get_by_name(ca_name) is None:
            return TaskResult(success=True, data={"caName": ca_name, "alreadyGone": True})
        if not await pool.destroy_by_name(ca_name):
            return TaskResult.fail(f"Could not destroy coding agent {ca_name}")
        return TaskResult(success=True, data={"caName": ca_name, "destroyed": True})


class CheckCaTask(BaseTask):
    name = "check_ca"
    tags = (TAG_MANAGES_CA,)

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.validate_params(params, ["caName"])
        info = await asyncio.to_thread(self.services.runtime.inspect_container, params["caName"])
        data = {
            "caName": params["caName"],
            "exists": info is not None,
            "state": info.state if info else None,
            "running": bool(info and info.running),
        }
        self.update_metadata(context.task_id, {"check": data})
        return TaskResult(success=True, data=data)


class RestartCaTask(BaseTask):
    """Restarts an agent's container and puts an errored agent back in service."""

    name = "restart_ca"
    tags = (TAG_MANAGES_CA,)

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.validate_params(params, ["caName"])
        ca_name = params["caName"]
        agent = self.services.pool.get_by_name(ca_name)
        if agent is None:
            return TaskResult.fail(f"Coding agent {ca_name} not found")
        if agent.status == CA_BUSY:
            return TaskResult.fail(f"Coding agent {ca_name} is busy")

        runtime = self.services.runtime
        try:
            await asyncio.to_thread(runtime.stop_container, ca_name)
            await asyncio.to_thread(runtime.start_container, ca_name)
        except DockerError as e:
            return TaskResult.fail(str(e))

        info = await asyncio.to_thread(runtime.inspect_container, ca_name)
        if info is None or not info.running:
            state = info.state if info else "missing"
            return TaskResult.fail(f"Container {ca_name} is {state} after restart")

        if agent.status == CA_ERROR:
            agents_mod.update_agent(
                self.services.db, agent.id, status=CA_IDLE, container_id=info.id
            )
        logger.info("Restarted coding agent %s", ca_name)
        return TaskResult(success=True, data={"caName": ca_name, "containerId": info.id})


class StopCaTask(BaseTask):
    """Stops an agent's container, keeping it for inspection. The agent is taken out of service."""

    name = "stop_ca"
    tags = (TAG_MANAGES_CA,)

    async def execute(self, params: dict, context: TaskContext) -> TaskResult:
        self.validate_params(params, ["caName"])
        ca_name = params["caName"]
        pool = self.services.pool
        agent = pool.get_by_name(ca_name)
        if agent is None:
            return TaskResult.fail(f"Coding agent {ca_name} not found")
        if agent.status == CA_BUSY:
            return TaskResult.fail(f"Coding agent {ca_name} is busy")

        try:
            await asyncio.to_thread(self.services.runtime.stop_container, ca_name)
        except DockerError as e:
            return TaskResult.fail(str(e))

        pool.mark_error(agent.id, "stopped on request")
        return TaskResult(success=True, data={"caName": ca_name, "stopped": True})
