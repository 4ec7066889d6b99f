"""AgentSocial core: process runner, conversation queue, command lifecycle."""

from agentsocial.core.errors import (
    AgentSocialError,
    ConfigError,
    CredentialProjectionError,
    InvalidTransition,
    SpawnError,
    WorkspaceError,
)
from agentsocial.core.types import ExecutionResult, RunMode, Task, task_key

__all__ = [
    "AgentSocialError",
    "ConfigError",
    "CredentialProjectionError",
    "ExecutionResult",
    "InvalidTransition",
    "RunMode",
    "SpawnError",
    "Task",
    "WorkspaceError",
    "task_key",
]
