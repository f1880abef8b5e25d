"""
Tool invocation boundary.

Each scan stage hands its stage id, the tool it wants, the ignore-list
derived from the exception policy and a timeout to a ToolInvoker and gets
back the raw tool output plus the process exit status. Scanners exit
non-zero when they find something, so a non-zero exit status is data, not
an error; only a tool that cannot be run at all raises ToolInvocationError.

No invocation is ever retried here.
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Sequence

from depaudit.exceptions import ToolInvocationError
from depaudit.logging_config import get_logger

if TYPE_CHECKING:
    from depaudit.config import PipelineConfig

logger = get_logger("invoker")

# How long a killed tool gets to close its pipes before they are abandoned
_DRAIN_SECONDS = 5.0


@dataclass(frozen=True)
class ToolOutput:
    """
    Raw output of one tool invocation.

    ``raw`` is the stream holding the tool's report (``stream`` names it);
    ``secondary`` is whatever the tool wrote to the other stream.
    """

    raw: str
    exit_status: int
    secondary: str = ""
    stream: str = "stdout"

    @property
    def secondary_stream(self) -> str:
        return "stderr" if self.stream == "stdout" else "stdout"


@dataclass(frozen=True)
class ToolCommand:
    """How to run one tool: argv, ignore flag and report stream."""

    command: Sequence[str]
    ignore_flag: str | None = None
    output_stream: str = "stdout"


class ToolInvoker(ABC):
    """
    Abstract tool invocation layer.

    Subclasses must implement ``invoke``; ``cancel`` aborts in-flight
    invocations and makes later ones fail fast until ``reset`` is called.
    """

    @abstractmethod
    def invoke(
        self,
        stage_id: str,
        ignore_list: Sequence[str],
        timeout: float,
        tool: str | None = None,
    ) -> ToolOutput:
        """
        Run ``tool`` of stage ``stage_id`` (its first tool when None).

        Raises:
            ToolInvocationError: If the tool could not be run or timed out
        """
        ...

    def cancel(self) -> None:
        """Abort running invocations. Default: nothing to abort."""
        return None

    def reset(self) -> None:
        """Accept work again after a cancel. Default: nothing to reset."""
        return None


class SubprocessInvoker(ToolInvoker):
    """
    Run scanners as child processes.

    Commands are executed without a shell, in the project directory, each in
    its own process group so that a timeout or cancel also stops the helper
    processes a tool spawns (``cargo audit`` runs ``cargo-audit``). When a
    tool declares an ignore flag, each ignored id is appended as
    ``<flag> <id>``.

    Example:
        invoker = SubprocessInvoker({
            "vulnerability": {
                "cargo-audit": ToolCommand(["cargo", "audit", "--json"]),
                "cargo-deny": ToolCommand(
                    ["cargo", "deny", "--format", "json", "check"],
                    output_stream="stderr",
                ),
            },
        }, cwd=Path("."))
        output = invoker.invoke("vulnerability", ["RUSTSEC-2023-0071"], 600, tool="cargo-deny")
    """

    def __init__(
        self,
        tools: Mapping[str, Mapping[str, ToolCommand]],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._tools = {stage: dict(commands) for stage, commands in tools.items()}
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._processes: set[subprocess.Popen[str]] = set()

    @classmethod
    def from_config(cls, config: "PipelineConfig") -> "SubprocessInvoker":
        return cls(
            tools={
                stage: {
                    name: ToolCommand(tool.command, tool.ignore_flag, tool.output_stream)
                    for name, tool in cfg.enabled_tools().items()
                }
                for stage, cfg in config.stages.items()
            },
            cwd=config.project_dir,
        )

    def resolve(self, stage_id: str, tool: str | None = None) -> tuple[str, ToolCommand]:
        """Name and command of ``tool``, or of the stage's first tool."""
        commands = self._tools.get(stage_id) or {}
        if tool is None:
            tool = next(iter(commands), None)
        spec = commands.get(tool) if tool is not None else None
        if spec is None or not spec.command:
            raise ToolInvocationError("No command configured", stage=stage_id, tool=tool)
        return tool, spec

    def build_command(
        self,
        stage_id: str,
        ignore_list: Sequence[str],
        tool: str | None = None,
    ) -> list[str]:
        _, spec = self.resolve(stage_id, tool)
        command = list(spec.command)
        if spec.ignore_flag:
            for identifier in ignore_list:
                command.extend([spec.ignore_flag, identifier])
        return command

    def invoke(
        self,
        stage_id: str,
        ignore_list: Sequence[str],
        timeout: float,
        tool: str | None = None,
    ) -> ToolOutput:
        if self._cancelled.is_set():
            raise ToolInvocationError("Invocation cancelled", stage=stage_id, tool=tool)

        name, spec = self.resolve(stage_id, tool)
        command = self.build_command(stage_id, ignore_list, name)
        if shutil.which(command[0]) is None:
            raise ToolInvocationError(
                f"{command[0]} not found in PATH",
                stage=stage_id,
                tool=name,
            )

        logger.info(f"[{stage_id}] Executing {name}: {' '.join(command)}")

        try:
            process = subprocess.Popen(
                command,
                cwd=self._cwd,
                env=self._env or os.environ.copy(),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as e:
            raise ToolInvocationError(
                f"Could not start {command[0]}: {e.strerror or e}",
                stage=stage_id,
                tool=name,
            ) from e

        with self._lock:
            self._processes.add(process)

        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            _stop_group(process, kill=True)
            _drain(process)
            raise ToolInvocationError(
                f"Timed out after {timeout:g}s",
                stage=stage_id,
                tool=name,
                timed_out=True,
            ) from e
        finally:
            with self._lock:
                self._processes.discard(process)

        if self._cancelled.is_set():
            raise ToolInvocationError("Invocation cancelled", stage=stage_id, tool=name)

        logger.debug(f"[{stage_id}] {name} exit status {process.returncode}")
        stdout, stderr = stdout or "", stderr or ""
        if spec.output_stream == "stderr":
            return ToolOutput(stderr, process.returncode, secondary=stdout, stream="stderr")
        return ToolOutput(stdout, process.returncode, secondary=stderr, stream="stdout")

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            processes = list(self._processes)
        for process in processes:
            logger.info(f"Terminating process group {process.pid}")
            _stop_group(process, kill=False)

    def reset(self) -> None:
        self._cancelled.clear()


def _stop_group(process: subprocess.Popen[str], kill: bool) -> None:
    """SIGKILL (or SIGTERM) the tool and everything it spawned."""
    if os.name != "posix":
        if kill:
            process.kill()
        else:
            process.terminate()
        return
    try:
        # started with start_new_session, so the group id is the child's pid
        os.killpg(process.pid, signal.SIGKILL if kill else signal.SIGTERM)
    except ProcessLookupError:
        pass


def _drain(process: subprocess.Popen[str]) -> None:
    try:
        process.communicate(timeout=_DRAIN_SECONDS)
    except subprocess.TimeoutExpired:
        # a helper escaped the process group and still holds the pipes
        logger.warning(f"pid {process.pid} did not release its output, abandoning it")
        for pipe in (process.stdout, process.stderr):
            if pipe is not None:
                pipe.close()
        process.wait()
