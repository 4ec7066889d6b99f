"""Slack integration: handlers, Block Kit cards, presentation surface."""

from agentsocial.slack.blockkit import operation_approval_blocks, plan_approval_blocks
from agentsocial.slack.handlers import clean_command_text, register_handlers
from agentsocial.slack.surface import SlackSurface

__all__ = [
    "SlackSurface",
    "clean_command_text",
    "operation_approval_blocks",
    "plan_approval_blocks",
    "register_handlers",
]
