"""Expose the operator's agent login inside isolated workspaces.

The agent CLI keeps its OAuth tokens in a single global directory
(``~/.gemini``). Each workspace gets its own agent home so that session
files never mix between conversations, which means the login has to be
made visible there too. Links are preferred so that secret bytes are not
duplicated; a private copy is the fallback where links are not allowed.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles.os
import structlog

from agentsocial.core.errors import CredentialProjectionError

logger = structlog.get_logger()

PRIVATE_FILE_MODE = 0o600


@dataclass
class ProjectionReport:
    """What happened to each credential artifact for one workspace."""

    linked: list[str] = field(default_factory=list)
    copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[CredentialProjectionError] = field(default_factory=list)


class CredentialProjector:
    """Links or copies named credential files into a workspace's agent home."""

    def __init__(
        self,
        source_dir: Path,
        filenames: tuple[str, ...] | list[str],
        state_dir_name: str = ".gemini",
    ) -> None:
        self.source_dir = Path(source_dir)
        self.filenames = tuple(filenames)
        self.state_dir_name = state_dir_name
        self._projected: set[Path] = set()

    def already_projected(self, workspace: Path) -> bool:
        return Path(workspace) in self._projected

    async def project_once(self, workspace: Path) -> ProjectionReport | None:
        """Project credentials the first time a workspace is seen by this process."""
        workspace = Path(workspace)
        if workspace in self._projected:
            return None
        report = await self.project(workspace)
        self._projected.add(workspace)
        return report

    async def project(self, workspace: Path) -> ProjectionReport:
        """Best effort: a failing file is logged and skipped, never raised."""
        report = ProjectionReport()
        target_dir = Path(workspace) / self.state_dir_name

        try:
            await aiofiles.os.makedirs(target_dir, exist_ok=True)
        except OSError as e:
            logger.warning("credential_dir_create_failed", target=str(target_dir), error=str(e))
            report.errors.append(CredentialProjectionError(self.state_dir_name, str(e)))
            return report

        for name in self.filenames:
            source = self.source_dir / name
            target = target_dir / name

            if not source.is_file():
                report.skipped.append(name)
                continue
            # lexists: a dangling link still counts as present, never overwrite
            if os.path.lexists(target):
                report.skipped.append(name)
                continue

            try:
                await aiofiles.os.symlink(source, target)
                report.linked.append(name)
                continue
            except (OSError, NotImplementedError) as e:
                logger.debug("credential_link_failed", file=name, error=str(e))

            try:
                await asyncio.to_thread(shutil.copyfile, source, target)
                await asyncio.to_thread(os.chmod, target, PRIVATE_FILE_MODE)
                report.copied.append(name)
            except OSError as e:
                logger.warning(
                    "credential_projection_failed",
                    file=name,
                    workspace=str(workspace),
                    error=str(e),
                )
                report.errors.append(CredentialProjectionError(name, str(e)))

        logger.info(
            "credentials_projected",
            workspace=str(workspace),
            linked=len(report.linked),
            copied=len(report.copied),
            failed=len(report.errors),
        )
        return report
