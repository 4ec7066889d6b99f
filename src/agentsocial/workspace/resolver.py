"""Per-conversation session workspaces.

Each tenant+conversation pair gets its own directory:
    {sessions_root}/{tenant_id}/{md5(conversation_id)}/
    └── .gemini/          agent state, sessions and projected credentials

The conversation id comes straight from the chat platform, so it is hashed
before it touches the filesystem. The tenant id is validated instead: it is
a configured app id and must already be a single safe path segment.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

import aiofiles.os
import structlog

from agentsocial.core.errors import WorkspaceError

logger = structlog.get_logger()

AGENT_STATE_DIR = ".gemini"


def conversation_digest(conversation_id: str) -> str:
    """Fixed-length path segment for an arbitrary conversation id."""
    return hashlib.md5(conversation_id.encode("utf-8")).hexdigest()


def _check_segment(tenant_id: str) -> str:
    if not tenant_id or tenant_id in (".", "..") or "/" in tenant_id or "\\" in tenant_id or "\x00" in tenant_id:
        raise WorkspaceError(f"Tenant id is not a safe path segment: {tenant_id!r}")
    return tenant_id


class WorkspaceResolver:
    """Maps (tenant, conversation) to an isolated directory under one root."""

    def __init__(self, sessions_root: Path) -> None:
        self.sessions_root = Path(sessions_root)

    def path_for(self, tenant_id: str, conversation_id: str) -> Path:
        """Pure path computation, no I/O."""
        return self.sessions_root / _check_segment(tenant_id) / conversation_digest(conversation_id)

    def resolve(self, tenant_id: str, conversation_id: str) -> Path:
        """Return the workspace path, creating it if absent."""
        path = self.path_for(tenant_id, conversation_id)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"Cannot create workspace {path}: {e}") from e
        return path

    async def ensure(self, tenant_id: str, conversation_id: str) -> Path:
        """Async variant of :meth:`resolve` for use on the event loop."""
        path = self.path_for(tenant_id, conversation_id)
        try:
            await aiofiles.os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"Cannot create workspace {path}: {e}") from e

        logger.debug(
            "workspace_ensured",
            tenant_id=tenant_id,
            workspace=str(path),
        )
        return path

    def agent_state_dir(self, workspace: Path) -> Path:
        return workspace / AGENT_STATE_DIR
