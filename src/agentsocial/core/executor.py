"""Agent process runner.

Architecture:
    Task → workspace + credentials → Invocation → subprocess
         → stdout/stderr readers → OutputScanner → CallbackRelay + buffers
         → ExecutionResult

One external process per live tenant+conversation key. The running-process
registry is owned by the executor instance and is only touched from the
event loop, so it needs no lock: inserts and removals happen between
awaits.

Stdin is an approval side channel. Each live process gets a small bounded
queue drained by a writer coroutine; ``respond`` just puts a token on it.
No registered process (the run already finished) is a normal outcome and
the token is dropped.

Auto runs resume the latest session of the workspace. A brand-new
conversation has none, and the agent then exits non-zero with a
recognisable message on stderr. That case gets exactly one retry without
``--resume``; whatever the retry returns is final.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

import structlog

from agentsocial.config import Settings, settings
from agentsocial.core.errors import SpawnError
from agentsocial.core.invocation import Invocation, InvocationBuilder, shell_command
from agentsocial.core.output import OutputEvent, OutputKind, OutputScanner
from agentsocial.core.types import ExecutionResult, RunMode, Task, task_key
from agentsocial.workspace.credentials import CredentialProjector
from agentsocial.workspace.resolver import AGENT_STATE_DIR, WorkspaceResolver

logger = structlog.get_logger()

RESUME_MISS_SIGNATURES: tuple[str, ...] = (
    "No previous sessions found",
    "Error resuming session",
)

READ_CHUNK_BYTES = 4096


def is_resume_miss(stderr: str) -> bool:
    """True if stderr says there was no session to resume."""
    return any(sig in stderr for sig in RESUME_MISS_SIGNATURES)


async def _spawn(invocation: Invocation, **kwargs: Any) -> asyncio.subprocess.Process:
    # A batch shim is parsed by cmd.exe, so its arguments need cmd quoting
    if invocation.shell:
        return await asyncio.create_subprocess_shell(shell_command(invocation), **kwargs)
    return await asyncio.create_subprocess_exec(*invocation.argv, **kwargs)


class CallbackRelay:
    """Delivers one attempt's output callbacks in the order they were emitted.

    Sync callbacks run inline. Async ones are chained so each starts only
    after the previous one settled. ``drain`` lets the attempt wait for the
    chain before it returns, so a notification posted by the agent lands
    before the final result.
    """

    def __init__(self, key: str, registry: set[asyncio.Task[Any]]) -> None:
        self.key = key
        self._registry = registry
        self._tail: asyncio.Task[None] | None = None
        self.pending = 0

    def call(self, callback: Callable[[str], Any], arg: str) -> None:
        """Call a sync or async callback; its failure never breaks the run."""
        try:
            result = callback(arg)
        except Exception as e:
            logger.warning("output_callback_failed", key=self.key, error=str(e))
            return
        if inspect.isawaitable(result):
            self._chain(result)

    def _chain(self, awaitable: Any) -> None:
        tail = asyncio.ensure_future(self._after(self._tail, awaitable))
        self._tail = tail
        self.pending += 1
        self._registry.add(tail)
        tail.add_done_callback(self._settled)

    async def _after(self, previous: asyncio.Task[None] | None, awaitable: Any) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        try:
            await awaitable
        except Exception as e:
            logger.warning("output_callback_failed", key=self.key, error=str(e))

    def _settled(self, fut: asyncio.Task[None]) -> None:
        self._registry.discard(fut)
        self.pending -= 1

    async def drain(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for every queued callback."""
        if self._tail is None or self._tail.done():
            return True
        _, not_done = await asyncio.wait([self._tail], timeout=timeout)
        if not_done:
            logger.warning(
                "output_callbacks_still_pending",
                key=self.key,
                pending=self.pending,
                grace_s=timeout,
            )
            return False
        return True


class AgentExecutor(Protocol):
    """What the queue and the lifecycle need from an agent backend."""

    async def run(self, task: Task) -> ExecutionResult: ...

    def respond(self, tenant_id: str, conversation_id: str, text: str) -> bool: ...

    async def dispose(self) -> None: ...


@dataclass
class RunningProcess:
    """Registry entry for one live agent process."""

    key: str
    process: asyncio.subprocess.Process
    stdin_channel: asyncio.Queue[str]
    started_at: float = field(default_factory=time.monotonic)
    writer: asyncio.Task[None] | None = None


class GeminiExecutor:
    """Runs the Gemini CLI in per-conversation agent homes."""

    def __init__(
        self,
        resolver: WorkspaceResolver,
        projector: CredentialProjector,
        builder: InvocationBuilder,
        run_timeout_seconds: float = 1800.0,
        kill_grace_seconds: float = 5.0,
        stdin_channel_size: int = 8,
        callback_grace_seconds: float = 10.0,
    ) -> None:
        self.resolver = resolver
        self.projector = projector
        self.builder = builder
        self.run_timeout_seconds = run_timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.stdin_channel_size = stdin_channel_size
        self.callback_grace_seconds = callback_grace_seconds
        self._running: dict[str, RunningProcess] = {}
        self._callback_tasks: set[asyncio.Task[Any]] = set()
        self.spawn_count = 0

    # ── Public API ─────────────────────────────────────────────────────

    def running_keys(self) -> list[str]:
        return list(self._running)

    def is_running(self, tenant_id: str, conversation_id: str) -> bool:
        return task_key(tenant_id, conversation_id) in self._running

    async def run(self, task: Task) -> ExecutionResult:
        """Run one task to completion.

        Raises WorkspaceError or SpawnError only. A failing agent is an
        ExecutionResult with a non-zero exit code.
        """
        workspace = await self.resolver.ensure(task.tenant_id, task.conversation_id)
        await self.projector.project_once(workspace)

        invocation = self._build(task, workspace, resume=None)
        result = await self._attempt(task, invocation)

        if (
            task.run_mode is RunMode.AUTO
            and result.exit_code not in (0, None)
            and is_resume_miss(result.stderr)
        ):
            logger.info(
                "agent_resume_miss_retrying",
                key=task.key,
                exit_code=result.exit_code,
            )
            retry = self._build(task, workspace, resume=False)
            result = await self._attempt(task, retry)
            result.attempts = 2

        return result

    def respond(self, tenant_id: str, conversation_id: str, text: str) -> bool:
        """Queue a line for the live process's stdin.

        Returns False when no process is live for the key or its channel is
        full. Neither is an error: the process may have just exited.
        """
        key = task_key(tenant_id, conversation_id)
        handle = self._running.get(key)
        if handle is None:
            logger.debug("respond_no_process", key=key)
            return False
        try:
            handle.stdin_channel.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning("respond_channel_full", key=key)
            return False
        logger.info("respond_queued", key=key)
        return True

    async def dispose(self) -> None:
        """Terminate every live process. Used at shutdown only."""
        handles = list(self._running.values())
        self._running.clear()
        for handle in handles:
            if handle.writer is not None:
                handle.writer.cancel()
        await asyncio.gather(
            *(self._terminate(h.process) for h in handles),
            return_exceptions=True,
        )
        if handles:
            logger.info("executor_disposed", terminated=len(handles))

    async def agent_version(self) -> str | None:
        """``<agent> --version`` output, or None if the binary is unusable."""
        try:
            proc = await _spawn(
                self.builder.version_invocation(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=30)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("agent_version_check_failed", executable=self.builder.executable, error=str(e))
            return None
        if proc.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace").strip()

    # ── Internals ──────────────────────────────────────────────────────

    def _build(self, task: Task, workspace: Path, resume: bool | None) -> Invocation:
        return self.builder.build(
            task.run_mode,
            task.command,
            task.project_root,
            workspace=workspace,
            resume=resume,
            sandbox=task.sandbox,
            tenant_id=task.tenant_id,
            conversation_id=task.conversation_id,
        )

    async def _attempt(self, task: Task, invocation: Invocation) -> ExecutionResult:
        key = task.key
        env = {**os.environ, **invocation.env}

        try:
            process = await _spawn(
                invocation,
                cwd=str(task.project_root),
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(
                "agent_spawn_failed",
                key=key,
                executable=invocation.executable,
                error=str(e),
            )
            raise SpawnError(invocation.executable, str(e)) from e

        self.spawn_count += 1
        handle = RunningProcess(
            key=key,
            process=process,
            stdin_channel=asyncio.Queue(maxsize=self.stdin_channel_size),
        )
        if key in self._running:
            logger.error("process_handle_already_registered", key=key)
        self._running[key] = handle
        handle.writer = asyncio.create_task(self._pump_stdin(handle), name=f"stdin-{key}")

        logger.info(
            "agent_process_started",
            key=key,
            pid=process.pid,
            mode=task.run_mode.value,
            resume=invocation.resumes,
        )

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        relay = CallbackRelay(key, self._callback_tasks)
        timed_out = False
        t0 = time.monotonic()

        try:
            readers = asyncio.gather(
                self._read_stream(process.stdout, stdout_parts, task, relay, relay_notify=True),
                self._read_stream(process.stderr, stderr_parts, task, relay, relay_notify=False),
            )
            timeout = self.run_timeout_seconds if self.run_timeout_seconds > 0 else None
            try:
                await asyncio.wait_for(self._wait_all(process, readers), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning("agent_run_timed_out", key=key, timeout_s=timeout)
                await self._terminate(process)
        finally:
            if process.returncode is None:
                await self._terminate(process)
            if self._running.get(key) is handle:
                del self._running[key]
            if handle.writer is not None:
                handle.writer.cancel()

        # Relays emitted before exit reach the chat before the result does
        await relay.drain(self.callback_grace_seconds)

        stderr = "".join(stderr_parts)
        if timed_out:
            stderr += f"\nagent run timed out after {self.run_timeout_seconds:g}s"

        logger.info(
            "agent_process_exited",
            key=key,
            exit_code=None if timed_out else process.returncode,
            elapsed_ms=round((time.monotonic() - t0) * 1000),
        )
        return ExecutionResult(
            exit_code=None if timed_out else process.returncode,
            stdout="".join(stdout_parts),
            stderr=stderr,
            timed_out=timed_out,
        )

    @staticmethod
    async def _wait_all(process: asyncio.subprocess.Process, readers: asyncio.Future[Any]) -> None:
        await readers
        await process.wait()

    async def _read_stream(
        self,
        stream: asyncio.StreamReader | None,
        sink: list[str],
        task: Task,
        relay: CallbackRelay,
        relay_notify: bool,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        scanner = OutputScanner()

        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self._handle_text(text, scanner.feed(text), sink, task, relay, relay_notify)

        text = decoder.decode(b"", final=True)
        self._handle_text(text, scanner.feed(text) + scanner.flush(), sink, task, relay, relay_notify)

    def _handle_text(
        self,
        text: str,
        events: list[OutputEvent],
        sink: list[str],
        task: Task,
        relay: CallbackRelay,
        relay_notify: bool,
    ) -> None:
        if text:
            sink.append(text)
            if task.on_output is not None:
                relay.call(task.on_output, text)
        for event in events:
            if event.kind is OutputKind.APPROVAL_PROMPT and task.on_approval_prompt is not None:
                relay.call(task.on_approval_prompt, event.text)
            elif event.kind is OutputKind.NOTIFY and relay_notify and task.on_notify is not None:
                relay.call(task.on_notify, event.text)

    async def _pump_stdin(self, handle: RunningProcess) -> None:
        stdin = handle.process.stdin
        if stdin is None:
            return
        while True:
            text = await handle.stdin_channel.get()
            try:
                stdin.write(f"{text}\n".encode("utf-8"))
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.warning("stdin_write_failed", key=handle.key, error=str(e))
                return

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()


def create_executor(agent_type: str = "gemini", config: Settings | None = None) -> GeminiExecutor:
    """Pick the executor variant for a configured agent type."""
    config = config or settings
    normalized = agent_type.strip().lower()
    if normalized not in ("gemini", "gemini cli", "gemini-cli"):
        logger.warning("unknown_agent_type_fallback", agent_type=agent_type, fallback="gemini")

    return GeminiExecutor(
        resolver=WorkspaceResolver(config.sessions_root),
        projector=CredentialProjector(
            config.agent_credentials_dir,
            config.credential_files,
            state_dir_name=AGENT_STATE_DIR,
        ),
        builder=InvocationBuilder(
            executable=config.agent_bin,
            agent_home_env=config.agent_home_env,
        ),
        run_timeout_seconds=config.run_timeout_seconds,
        kill_grace_seconds=config.kill_grace_seconds,
        stdin_channel_size=config.stdin_channel_size,
        callback_grace_seconds=config.callback_grace_seconds,
    )
