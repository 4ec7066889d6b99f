"""Exception hierarchy for the command execution engine.

Only ``WorkspaceError`` and ``SpawnError`` ever reject a queued task.
A non-zero agent exit is reported in-band through ``ExecutionResult``.
"""

from __future__ import annotations


class AgentSocialError(Exception):
    """Root exception for all AgentSocial domain errors."""


class ConfigError(AgentSocialError):
    """Settings file is missing required data or cannot be parsed."""


class WorkspaceError(AgentSocialError):
    """The isolated workspace directory cannot be created or accessed."""


class CredentialProjectionError(AgentSocialError):
    """A single credential artifact could not be linked or copied.

    Never raised out of a run; collected in the projection report.
    """

    def __init__(self, filename: str, reason: str) -> None:
        super().__init__(f"{filename}: {reason}")
        self.filename = filename
        self.reason = reason


class SpawnError(AgentSocialError):
    """The agent executable could not be launched at all."""

    def __init__(self, executable: str, reason: str) -> None:
        super().__init__(f"Failed to launch {executable!r}: {reason}")
        self.executable = executable
        self.reason = reason


class InvalidTransition(AgentSocialError):
    """A lifecycle was asked to move to a state it cannot reach."""

    def __init__(self, current: object, requested: object) -> None:
        super().__init__(f"Cannot transition from {current} to {requested}")
        self.current = current
        self.requested = requested
