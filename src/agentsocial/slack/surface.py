"""Slack implementation of the presentation surface.

Replies are threaded under the message that carried the command: the
command's correlation id is that message's ``ts``.
"""

from __future__ import annotations

from typing import Any

import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from agentsocial.core.lifecycle import CommandLifecycle
from agentsocial.core.types import ExecutionResult
from agentsocial.slack.blockkit import operation_approval_blocks, plan_approval_blocks

logger = structlog.get_logger()


class SlackSurface:
    def __init__(self, client: AsyncWebClient, agent_name: str = "Agent") -> None:
        self.client = client
        self.agent_name = agent_name

    async def acknowledge(self, lifecycle: CommandLifecycle) -> None:
        await self._post(
            lifecycle.conversation_id,
            f":hourglass_flowing_sand: [{self.agent_name}] Planning: \"{lifecycle.command[:200]}\"...",
            thread_ts=lifecycle.correlation_id,
        )

    async def send_plan(self, lifecycle: CommandLifecycle, plan_text: str) -> None:
        await self._post(
            lifecycle.conversation_id,
            plan_text,
            thread_ts=lifecycle.correlation_id,
            blocks=plan_approval_blocks(plan_text, lifecycle.correlation_id, lifecycle.command),
        )

    async def send_result(self, lifecycle: CommandLifecycle, result: ExecutionResult, text: str) -> None:
        if result.success:
            message = f":white_check_mark: {text}"
        elif result.timed_out:
            message = f":alarm_clock: The agent was stopped after running too long.\n{text}"
        else:
            message = f":x: The agent reported an error:\n{text}"
        await self._post(lifecycle.conversation_id, message, thread_ts=lifecycle.correlation_id)

    async def send_error(self, lifecycle: CommandLifecycle, error: Exception) -> None:
        await self._post(
            lifecycle.conversation_id,
            f":x: System error, your request could not be run: {error}",
            thread_ts=lifecycle.correlation_id,
        )

    async def send_denied(self, lifecycle: CommandLifecycle) -> None:
        await self._post(
            lifecycle.conversation_id,
            ":no_entry: Plan denied. Nothing was executed.",
            thread_ts=lifecycle.correlation_id,
        )

    async def send_proactive(self, tenant_id: str, conversation_id: str, message: str) -> bool:
        return await self._post(conversation_id, f":loudspeaker: *Notification*\n{message}")

    async def request_operation_approval(self, lifecycle: CommandLifecycle, prompt: str) -> None:
        await self._post(
            lifecycle.conversation_id,
            f"Confirmation required: {prompt}",
            thread_ts=lifecycle.correlation_id,
            blocks=operation_approval_blocks(prompt, lifecycle.conversation_id),
        )

    async def _post(
        self,
        channel: str,
        text: str,
        thread_ts: str | None = None,
        blocks: list[dict[str, Any]] | None = None,
    ) -> bool:
        kwargs: dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            kwargs["thread_ts"] = thread_ts
        if blocks:
            kwargs["blocks"] = blocks
        try:
            await self.client.chat_postMessage(**kwargs)
        except SlackApiError as e:
            logger.warning(
                "slack_post_failed",
                channel=channel,
                error=e.response.get("error", str(e)),
            )
            return False
        return True
