"""Argument vectors for launching the agent CLI.

Plan runs are advisory: ``--approval-mode plan`` plus an instruction that
asks for a plan only, and never a resumed session so the plan reflects the
current tree. Auto runs get ``--yolo`` and resume the latest session of
the workspace.

The instruction text comes from chat users, so it always travels as a
single argv element. The one exception is Windows, where the agent is an
npm ``.cmd`` shim that only ``cmd.exe`` can start. Such invocations are
marked ``shell`` and launched from the line ``shell_command`` renders, in
which every argument is quoted and every cmd metacharacter caret-escaped.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from agentsocial.core.types import RunMode

PLAN_SUFFIX = (
    "(Please only output a detailed execution plan text, "
    "do not execute any tools or modify any files.)"
)

APPROVAL_MODE_FLAG = "--approval-mode"
YOLO_FLAG = "--yolo"
RESUME_FLAG = "--resume"
RESUME_LATEST = "latest"
INCLUDE_FLAG = "--include-directories"
SANDBOX_FLAG = "--sandbox"
PROMPT_FLAG = "-p"

# Interpreter that runs npm .cmd shims on Windows
WINDOWS_SHIM = ("cmd", "/c")

_CMD_META_RE = re.compile(r'([()\]\[%!^"`<>&|;, *?])')


@dataclass(frozen=True)
class Invocation:
    """Exactly what to exec: program, arguments and environment overrides.

    ``shell`` invocations go through ``cmd.exe``: spawn them from
    ``shell_command(invocation)``, never from ``argv``.
    """

    executable: str
    args: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    shell: bool = False

    @property
    def argv(self) -> list[str]:
        if self.shell:
            return [*WINDOWS_SHIM, self.executable, *self.args]
        return [self.executable, *self.args]

    @property
    def resumes(self) -> bool:
        return RESUME_FLAG in self.args


class InvocationBuilder:
    """Pure builder; holds only static configuration."""

    def __init__(
        self,
        executable: str = "gemini",
        agent_home_env: str = "GEMINI_CLI_HOME",
        platform: str | None = None,
    ) -> None:
        self.executable = executable
        self.agent_home_env = agent_home_env
        self.platform = platform or sys.platform

    def build(
        self,
        run_mode: RunMode,
        command: str,
        project_root: Path | str,
        *,
        workspace: Path | str | None = None,
        resume: bool | None = None,
        sandbox: bool = False,
        tenant_id: str | None = None,
        conversation_id: str | None = None,
    ) -> Invocation:
        """Build the invocation for one attempt.

        ``resume`` defaults to True for auto runs. Plan runs never resume,
        whatever is passed.
        """
        run_mode = RunMode(run_mode)
        args: list[str] = []

        if run_mode is RunMode.PLAN:
            args += [APPROVAL_MODE_FLAG, "plan"]
            prompt = f"{command}\n\n{PLAN_SUFFIX}"
        else:
            args.append(YOLO_FLAG)
            if resume is None or resume:
                args += [RESUME_FLAG, RESUME_LATEST]
            prompt = command

        args += [INCLUDE_FLAG, str(project_root)]
        if sandbox:
            args.append(SANDBOX_FLAG)
        args += [PROMPT_FLAG, prompt]

        env: dict[str, str] = {"OTEL_SDK_DISABLED": "true"}
        if workspace is not None:
            env[self.agent_home_env] = str(workspace)
        if tenant_id is not None:
            env["AGENTSOCIAL_APP_ID"] = tenant_id
        if conversation_id is not None:
            env["AGENTSOCIAL_CHAT_ID"] = conversation_id

        return Invocation(
            executable=self.executable,
            args=tuple(args),
            env=env,
            shell=self._needs_shim(self.executable),
        )

    def version_invocation(self) -> Invocation:
        """``<agent> --version``, used as an installation check."""
        return Invocation(self.executable, ("--version",), shell=self._needs_shim(self.executable))

    def _needs_shim(self, executable: str) -> bool:
        if not self.platform.startswith("win"):
            return False
        return not executable.lower().endswith((".exe", ".com"))


def cmd_quote(arg: str, double_escape: bool = True) -> str:
    """Quote one argument for a ``cmd.exe`` command line.

    Backslashes before a quote are doubled and the quote escaped, as the C
    runtime expects; then every cmd metacharacter gets a caret. Batch shims
    re-parse their arguments through ``%*``, hence the second escape.
    """
    arg = re.sub(r'(\\*)"', r'\1\1\\"', arg)
    arg = re.sub(r"(\\*)\Z", r"\1\1", arg)
    arg = f'"{arg}"'
    arg = _CMD_META_RE.sub(r"^\1", arg)
    if double_escape:
        arg = _CMD_META_RE.sub(r"^\1", arg)
    return arg


def shell_command(invocation: Invocation) -> str:
    """The ``cmd.exe`` command line for a shell invocation."""
    parts = [_CMD_META_RE.sub(r"^\1", invocation.executable)]
    parts += [cmd_quote(arg) for arg in invocation.args]
    return " ".join(parts)
