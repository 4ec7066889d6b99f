"""Tests for workspace resolution and credential projection."""

from __future__ import annotations

import hashlib
import os
import stat

import aiofiles.os
import pytest

from agentsocial.core.errors import WorkspaceError
from agentsocial.workspace import CredentialProjector, WorkspaceResolver, conversation_digest


# ─────────────────────────────────────────────────────────────────────────────
# WorkspaceResolver
# ─────────────────────────────────────────────────────────────────────────────


class TestWorkspaceResolver:
    def test_path_layout(self, tmp_path):
        resolver = WorkspaceResolver(tmp_path)
        path = resolver.path_for("bot", "C1/../../etc")
        assert path == tmp_path / "bot" / hashlib.md5(b"C1/../../etc").hexdigest()
        assert path.parent.parent == tmp_path

    def test_deterministic_and_distinct(self, tmp_path):
        resolver = WorkspaceResolver(tmp_path)
        assert resolver.path_for("bot", "C1") == resolver.path_for("bot", "C1")
        assert resolver.path_for("bot", "C1") != resolver.path_for("bot", "C2")
        assert resolver.path_for("a", "C1") != resolver.path_for("b", "C1")

    def test_digest_is_fixed_length(self):
        assert len(conversation_digest("x" * 10_000)) == 32

    @pytest.mark.parametrize("tenant", ["", ".", "..", "a/b", "a\\b"])
    def test_unsafe_tenant_rejected(self, tmp_path, tenant):
        with pytest.raises(WorkspaceError):
            WorkspaceResolver(tmp_path).path_for(tenant, "C1")

    def test_resolve_creates_directory(self, tmp_path):
        path = WorkspaceResolver(tmp_path / "sessions").resolve("bot", "C1")
        assert path.is_dir()

    def test_resolve_failure(self, tmp_path):
        blocker = tmp_path / "sessions"
        blocker.write_text("not a directory")
        with pytest.raises(WorkspaceError):
            WorkspaceResolver(blocker).resolve("bot", "C1")

    @pytest.mark.asyncio
    async def test_ensure_is_idempotent(self, tmp_path):
        resolver = WorkspaceResolver(tmp_path)
        first = await resolver.ensure("bot", "C1")
        (first / "marker").write_text("keep")
        second = await resolver.ensure("bot", "C1")
        assert first == second
        assert (second / "marker").read_text() == "keep"

    def test_agent_state_dir(self, tmp_path):
        assert WorkspaceResolver(tmp_path).agent_state_dir(tmp_path / "ws").name == ".gemini"


# ─────────────────────────────────────────────────────────────────────────────
# CredentialProjector
# ─────────────────────────────────────────────────────────────────────────────


class TestCredentialProjector:
    @pytest.mark.asyncio
    async def test_links_present_files(self, tmp_path, credentials_dir):
        ws = tmp_path / "ws"
        projector = CredentialProjector(credentials_dir, ("oauth_creds.json", "settings.json"))
        report = await projector.project(ws)

        target = ws / ".gemini" / "oauth_creds.json"
        assert report.linked == ["oauth_creds.json"]
        assert report.skipped == ["settings.json"]
        assert target.is_symlink()
        assert target.read_text() == '{"token": "secret"}'

    @pytest.mark.asyncio
    async def test_never_overwrites(self, tmp_path, credentials_dir):
        ws = tmp_path / "ws"
        state = ws / ".gemini"
        state.mkdir(parents=True)
        (state / "oauth_creds.json").write_text("mine")

        report = await CredentialProjector(credentials_dir, ("oauth_creds.json",)).project(ws)
        assert report.skipped == ["oauth_creds.json"]
        assert (state / "oauth_creds.json").read_text() == "mine"

    @pytest.mark.asyncio
    async def test_dangling_link_counts_as_present(self, tmp_path, credentials_dir):
        ws = tmp_path / "ws"
        state = ws / ".gemini"
        state.mkdir(parents=True)
        os.symlink(tmp_path / "gone", state / "oauth_creds.json")

        report = await CredentialProjector(credentials_dir, ("oauth_creds.json",)).project(ws)
        assert report.skipped == ["oauth_creds.json"]

    @pytest.mark.asyncio
    async def test_copy_fallback_is_private(self, tmp_path, credentials_dir, monkeypatch):
        async def no_symlinks(*args, **kwargs):
            raise OSError("symlinks not permitted")

        monkeypatch.setattr(aiofiles.os, "symlink", no_symlinks)
        ws = tmp_path / "ws"
        report = await CredentialProjector(credentials_dir, ("oauth_creds.json",)).project(ws)

        target = ws / ".gemini" / "oauth_creds.json"
        assert report.copied == ["oauth_creds.json"]
        assert not target.is_symlink()
        assert target.read_text() == '{"token": "secret"}'
        assert stat.S_IMODE(target.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_failures_are_reported_not_raised(self, tmp_path, credentials_dir, monkeypatch):
        async def no_symlinks(*args, **kwargs):
            raise OSError("symlinks not permitted")

        def no_copy(*args, **kwargs):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr(aiofiles.os, "symlink", no_symlinks)
        monkeypatch.setattr("agentsocial.workspace.credentials.shutil.copyfile", no_copy)
        report = await CredentialProjector(credentials_dir, ("oauth_creds.json",)).project(tmp_path / "ws")

        assert report.linked == report.copied == []
        (error,) = report.errors
        assert error.filename == "oauth_creds.json"

    @pytest.mark.asyncio
    async def test_project_once(self, tmp_path, credentials_dir):
        ws = tmp_path / "ws"
        projector = CredentialProjector(credentials_dir, ("oauth_creds.json",))
        assert await projector.project_once(ws) is not None
        assert projector.already_projected(ws)
        assert await projector.project_once(ws) is None
