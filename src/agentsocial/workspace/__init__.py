"""Session workspaces: per-conversation directories and credential projection."""

from agentsocial.workspace.credentials import CredentialProjector, ProjectionReport
from agentsocial.workspace.resolver import WorkspaceResolver, conversation_digest

__all__ = [
    "CredentialProjector",
    "ProjectionReport",
    "WorkspaceResolver",
    "conversation_digest",
]
