"""Slack event handlers for AgentSocial.

Handles:
- App mentions (@bot) and direct messages → new command
- Plan card buttons → approve / deny the plan
- Confirmation card buttons → answer the running agent on stdin

The handler bodies are plain coroutines so they can be driven without a
Bolt app; ``register_handlers`` only wires them up.
"""

from __future__ import annotations

import re
from typing import Any

import structlog
from slack_bolt.async_app import AsyncAck, AsyncApp

from agentsocial.core.lifecycle import CommandEngine
from agentsocial.platforms.base import CommandEvent, DecisionEvent
from agentsocial.slack.blockkit import (
    OP_APPROVE_ACTION,
    OP_DENY_ACTION,
    PLAN_APPROVE_ACTION,
    PLAN_DENY_ACTION,
    decision_blocks,
)

logger = structlog.get_logger()

MAX_COMMAND_LENGTH = 4000

_MENTION_RE = re.compile(r"<@[A-Z0-9]+(?:\|[^>]*)?>")
# Control chars except \t, \n, \r
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def clean_command_text(text: str) -> str:
    """Strip bot mentions and control characters, cap the length."""
    text = _MENTION_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    if len(text) > MAX_COMMAND_LENGTH:
        text = text[:MAX_COMMAND_LENGTH]
    return text.strip()


async def handle_message_event(engine: CommandEngine, event: dict[str, Any]) -> None:
    """Turn a mention or DM into a command for the engine."""
    if event.get("bot_id") or event.get("subtype"):
        return
    channel_id = event.get("channel")
    event_ts = event.get("ts")
    if not channel_id or not event_ts:
        return

    text = clean_command_text(event.get("text", ""))
    if not text:
        return

    await engine.handle_command(
        CommandEvent(
            tenant_id=engine.tenant_id,
            conversation_id=channel_id,
            text=text,
            correlation_id=event_ts,
        )
    )


async def handle_plan_action(engine: CommandEngine, body: dict[str, Any], client: Any, approved: bool) -> None:
    action = body.get("actions", [{}])[0]
    correlation_id = action.get("value", "")
    user_name = body.get("user", {}).get("name") or body.get("user", {}).get("id", "someone")
    logger.info("plan_decision", correlation_id=correlation_id, approved=approved, user=user_name)

    await _close_card(body, client, "Approved" if approved else "Denied", user_name)
    await engine.handle_decision(DecisionEvent(correlation_id=correlation_id, approved=approved))


async def handle_operation_action(engine: CommandEngine, body: dict[str, Any], client: Any, approved: bool) -> None:
    action = body.get("actions", [{}])[0]
    conversation_id = action.get("value") or body.get("channel", {}).get("id", "")
    user_name = body.get("user", {}).get("name") or body.get("user", {}).get("id", "someone")

    delivered = engine.handle_operation_decision(engine.tenant_id, conversation_id, approved)
    if delivered:
        await _close_card(body, client, "Allowed" if approved else "Rejected", user_name)
    else:
        await _close_card(body, client, "Expired (the run already finished)", user_name)


async def _close_card(body: dict[str, Any], client: Any, decision: str, user: str) -> None:
    channel = body.get("channel", {}).get("id")
    message = body.get("message", {})
    ts = message.get("ts")
    if not channel or not ts or client is None:
        return
    try:
        await client.chat_update(
            channel=channel,
            ts=ts,
            text=message.get("text", ""),
            blocks=decision_blocks(message.get("text", ""), decision, user),
        )
    except Exception as e:
        logger.warning("slack_card_update_failed", channel=channel, error=str(e))


def register_handlers(app: AsyncApp, engine: CommandEngine) -> None:
    """Register all Slack event handlers with the Bolt app."""

    @app.event("app_mention")
    async def on_app_mention(event: dict[str, Any]) -> None:
        await handle_message_event(engine, event)

    @app.event("message")
    async def on_message(event: dict[str, Any]) -> None:
        # Channel messages arrive as app_mention; only DMs are taken here
        if event.get("channel_type") != "im":
            return
        await handle_message_event(engine, event)

    @app.action(PLAN_APPROVE_ACTION)
    async def on_plan_approve(ack: AsyncAck, body: dict[str, Any], client: Any) -> None:
        await ack()
        await handle_plan_action(engine, body, client, approved=True)

    @app.action(PLAN_DENY_ACTION)
    async def on_plan_deny(ack: AsyncAck, body: dict[str, Any], client: Any) -> None:
        await ack()
        await handle_plan_action(engine, body, client, approved=False)

    @app.action(OP_APPROVE_ACTION)
    async def on_op_approve(ack: AsyncAck, body: dict[str, Any], client: Any) -> None:
        await ack()
        await handle_operation_action(engine, body, client, approved=True)

    @app.action(OP_DENY_ACTION)
    async def on_op_deny(ack: AsyncAck, body: dict[str, Any], client: Any) -> None:
        await ack()
        await handle_operation_action(engine, body, client, approved=False)
