"""Chat platform boundary: inbound events and the presentation surface."""

from agentsocial.platforms.base import (
    CommandEvent,
    DecisionEvent,
    PresentationSurface,
    format_result_text,
    truncate_message,
)

__all__ = [
    "CommandEvent",
    "DecisionEvent",
    "PresentationSurface",
    "format_result_text",
    "truncate_message",
]
