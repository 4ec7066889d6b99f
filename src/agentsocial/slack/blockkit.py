"""Block Kit payloads for plan approval and in-run confirmation prompts."""

from __future__ import annotations

from typing import Any

PLAN_APPROVE_ACTION = "agentsocial_plan_approve"
PLAN_DENY_ACTION = "agentsocial_plan_deny"
OP_APPROVE_ACTION = "agentsocial_op_approve"
OP_DENY_ACTION = "agentsocial_op_deny"

MAX_SECTION_TEXT_CHARS = 3000
_TRUNCATION_BUFFER = 30
_TRUNCATION_SPLIT_RATIO = 0.5


def plan_approval_blocks(plan_text: str, correlation_id: str, command: str = "") -> list[dict[str, Any]]:
    """Plan preview with Execute / Deny buttons.

    The button value is the correlation id of the command, which is all the
    decision handler needs to find the lifecycle again.
    """
    blocks: list[dict[str, Any]] = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": ":clipboard: *Execution plan ready*"},
        },
    ]
    if command:
        blocks.append({
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": _truncate(f"Request: {command}", 300)}],
        })
    blocks.append({
        "type": "section",
        "text": {"type": "mrkdwn", "text": _truncate(plan_text, MAX_SECTION_TEXT_CHARS)},
    })
    blocks.append(_buttons(
        approve=("Execute plan", PLAN_APPROVE_ACTION),
        deny=("Deny", PLAN_DENY_ACTION),
        value=correlation_id,
    ))
    return blocks


def operation_approval_blocks(prompt: str, conversation_id: str) -> list[dict[str, Any]]:
    """Confirmation prompt raised by the running agent itself."""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":warning: *Confirmation Required*\n\n```{_truncate(prompt, 2000)}```",
            },
        },
        _buttons(
            approve=("Allow", OP_APPROVE_ACTION),
            deny=("Reject", OP_DENY_ACTION),
            value=conversation_id,
        ),
    ]


def decision_blocks(original_text: str, decision: str, user: str) -> list[dict[str, Any]]:
    """Replacement for an answered card: same text, buttons gone."""
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": _truncate(original_text, MAX_SECTION_TEXT_CHARS)},
        },
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"{decision} by {user}"}],
        },
    ]


def _buttons(approve: tuple[str, str], deny: tuple[str, str], value: str) -> dict[str, Any]:
    return {
        "type": "actions",
        "elements": [
            {
                "type": "button",
                "text": {"type": "plain_text", "text": approve[0]},
                "style": "primary",
                "action_id": approve[1],
                "value": value,
            },
            {
                "type": "button",
                "text": {"type": "plain_text", "text": deny[0]},
                "style": "danger",
                "action_id": deny[1],
                "value": value,
            },
        ],
    }


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    cutoff = max_len - _TRUNCATION_BUFFER
    last_newline = text.rfind("\n", 0, cutoff)
    if last_newline > cutoff * _TRUNCATION_SPLIT_RATIO:
        return text[:last_newline] + "\n\n_...truncated_"
    return text[:cutoff] + "\n\n_...truncated_"
