"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                        # Run all tests
    pytest tests/test_executor.py -v     # Run specific test file

The executor tests drive a real subprocess: ``fake_agent`` writes a small
Python script that stands in for the agent CLI. It appends its argv to a
JSONL log and behaves according to ``FAKE_AGENT_MODE``.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import stat
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

from agentsocial.core.executor import GeminiExecutor
from agentsocial.core.invocation import InvocationBuilder
from agentsocial.core.types import ExecutionResult, Task, task_key
from agentsocial.workspace.credentials import CredentialProjector
from agentsocial.workspace.resolver import WorkspaceResolver

FAKE_AGENT_BODY = '''
import json
import os
import sys
import time

args = sys.argv[1:]
log = os.environ.get("FAKE_AGENT_LOG")
if log:
    with open(log, "a", encoding="utf-8") as f:
        f.write(json.dumps(args) + "\\n")

if args == ["--version"]:
    print("0.9.0-fake")
    sys.exit(0)

mode = os.environ.get("FAKE_AGENT_MODE", "echo")
prompt = args[args.index("-p") + 1] if "-p" in args else ""

if mode == "echo":
    print("agent says: " + prompt.splitlines()[0])
elif mode == "resume_miss":
    if "--resume" in args:
        sys.stderr.write("Error resuming session: No previous sessions found for this project.\\n")
        sys.exit(1)
    print("fresh session")
elif mode == "always_resume_miss":
    sys.stderr.write("No previous sessions found\\n")
    sys.exit(1)
elif mode == "fail":
    sys.stderr.write("boom\\n")
    sys.exit(3)
elif mode == "approval":
    sys.stdout.write("Allow execution of rm -rf build? (y/n) ")
    sys.stdout.flush()
    answer = sys.stdin.readline().strip()
    print("")
    print("answer=" + answer)
elif mode == "notify":
    print("working")
    sys.stdout.flush()
    print("[NOTIFY] build finished")
    print("done")
elif mode == "notify_many":
    for step in ("lint", "build", "deploy"):
        print("[NOTIFY] " + step + " ok")
        sys.stdout.flush()
    print("done")
elif mode == "env":
    print(json.dumps({
        "home": os.environ.get("GEMINI_CLI_HOME"),
        "app_id": os.environ.get("AGENTSOCIAL_APP_ID"),
        "chat_id": os.environ.get("AGENTSOCIAL_CHAT_ID"),
        "otel": os.environ.get("OTEL_SDK_DISABLED"),
        "cwd": os.getcwd(),
    }))
elif mode == "sleep":
    print("starting")
    sys.stdout.flush()
    time.sleep(30)
'''


class FakeAgent:
    """Handle on the fake agent script and its argv log."""

    def __init__(self, path: Path, log: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        self.path = path
        self.log = log
        self._monkeypatch = monkeypatch

    def set_mode(self, mode: str) -> None:
        self._monkeypatch.setenv("FAKE_AGENT_MODE", mode)

    def calls(self) -> list[list[str]]:
        if not self.log.exists():
            return []
        return [json.loads(line) for line in self.log.read_text().splitlines() if line]


@pytest.fixture
def fake_agent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeAgent:
    script = tmp_path / "fake-agent"
    script.write_text(f"#!{sys.executable}\n{FAKE_AGENT_BODY}", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    log = tmp_path / "calls.jsonl"
    monkeypatch.setenv("FAKE_AGENT_LOG", str(log))
    monkeypatch.setenv("FAKE_AGENT_MODE", "echo")
    return FakeAgent(script, log, monkeypatch)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def credentials_dir(tmp_path: Path) -> Path:
    creds = tmp_path / "home-gemini"
    creds.mkdir()
    (creds / "oauth_creds.json").write_text('{"token": "secret"}')
    return creds


@pytest.fixture
def make_executor(tmp_path: Path, fake_agent: FakeAgent, credentials_dir: Path) -> Callable[..., GeminiExecutor]:
    def _make(**kwargs: Any) -> GeminiExecutor:
        kwargs.setdefault("run_timeout_seconds", 20.0)
        kwargs.setdefault("kill_grace_seconds", 2.0)
        executable = kwargs.pop("executable", str(fake_agent.path))
        return GeminiExecutor(
            resolver=WorkspaceResolver(tmp_path / "sessions"),
            projector=CredentialProjector(credentials_dir, ("oauth_creds.json", "google_accounts.json")),
            builder=InvocationBuilder(executable=executable),
            **kwargs,
        )

    return _make


# ─────────────────────────────────────────────────────────────────────────────
# In-memory doubles for queue / engine tests
# ─────────────────────────────────────────────────────────────────────────────


class FakeExecutor:
    """Scriptable stand-in for GeminiExecutor.

    ``gate(command)`` holds a run until the returned event is set.
    ``results`` maps ``"<mode>:<command>"`` or ``"<command>"`` to an
    ExecutionResult or an exception to raise.
    ``prompts`` maps a command to a confirmation prompt emitted mid-run.
    """

    def __init__(self) -> None:
        self.tasks: list[Task] = []
        self.started: list[str] = []
        self.finished: list[str] = []
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.results: dict[str, ExecutionResult | Exception] = {}
        self.prompts: dict[str, str] = {}
        self.notifications: dict[str, str] = {}
        self.responses: list[tuple[str, str, str]] = []
        self.live: set[str] = set()
        self.disposed = False

    def gate(self, command: str) -> asyncio.Event:
        return self.gates.setdefault(command, asyncio.Event())

    def running_keys(self) -> list[str]:
        return sorted(self.live)

    async def run(self, task: Task) -> ExecutionResult:
        key = task.key
        self.tasks.append(task)
        self.started.append(task.command)
        self.active[key] = self.active.get(key, 0) + 1
        self.max_active[key] = max(self.max_active.get(key, 0), self.active[key])
        self.live.add(key)
        try:
            if task.command in self.notifications and task.on_notify is not None:
                await _maybe_await(task.on_notify(self.notifications[task.command]))
            if task.command in self.prompts and task.on_approval_prompt is not None:
                await _maybe_await(task.on_approval_prompt(self.prompts[task.command]))
            if task.command in self.gates:
                await self.gates[task.command].wait()
            outcome = self.results.get(
                f"{task.run_mode.value}:{task.command}",
                self.results.get(task.command, ExecutionResult(0, f"done: {task.command}", "")),
            )
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.active[key] -= 1
            self.live.discard(key)
            self.finished.append(task.command)

    def respond(self, tenant_id: str, conversation_id: str, text: str) -> bool:
        if task_key(tenant_id, conversation_id) not in self.live:
            return False
        self.responses.append((tenant_id, conversation_id, text))
        return True

    async def dispose(self) -> None:
        self.disposed = True


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class FakeSurface:
    """Records every presentation call as ``(method, payload)``."""

    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.fail_on = fail_on or set()

    def _record(self, method: str, payload: Any) -> None:
        self.calls.append((method, payload))
        if method in self.fail_on:
            raise RuntimeError(f"{method} transport down")

    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]

    def payloads(self, method: str) -> list[Any]:
        return [p for m, p in self.calls if m == method]

    async def acknowledge(self, lifecycle) -> None:
        self._record("acknowledge", lifecycle.correlation_id)

    async def send_plan(self, lifecycle, plan_text: str) -> None:
        self._record("send_plan", plan_text)

    async def send_result(self, lifecycle, result: ExecutionResult, text: str) -> None:
        self._record("send_result", text)

    async def send_error(self, lifecycle, error: Exception) -> None:
        self._record("send_error", error)

    async def send_denied(self, lifecycle) -> None:
        self._record("send_denied", lifecycle.correlation_id)

    async def send_proactive(self, tenant_id: str, conversation_id: str, message: str) -> bool:
        self._record("send_proactive", (tenant_id, conversation_id, message))
        return True

    async def request_operation_approval(self, lifecycle, prompt: str) -> None:
        self._record("request_operation_approval", prompt)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll the event loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fake_surface() -> FakeSurface:
    return FakeSurface()
