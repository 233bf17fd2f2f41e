"""Bounded command execution inside a workspace.

Commands run as a fresh session (``start_new_session=True``) so the whole
process group can be signalled on timeout or when the output cap is reached.
Every call awaits the child's exit before it returns or raises, so no
subprocess outlives the call.

Two collection strategies exist:

``buffered``
    Collects stdout/stderr up to ``max_output_bytes``.  Exceeding the cap
    kills the process and raises :class:`~devsandbox.errors.OutputTooLarge`
    with the partial output attached.
``streaming``
    Reads incrementally into the same bounded buffer, but reaching the cap is
    not an error: the process is terminated (SIGTERM, then SIGKILL after a
    grace delay) and the bounded result is returned with ``truncated=True``.

``is_large_output_command`` picks ``streaming`` for commands that are likely
to produce a lot of output; callers may force either strategy.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import time
from dataclasses import dataclass
from typing import Any, Dict, Literal, Protocol, Sequence, Tuple

from ..config import SandboxSettings
from ..errors import OutputTooLarge, ProcessError, Timeout, ValidationError
from ..policy.paths import PathConfinementValidator
from ..utils.telemetry import emit_event
from ..workspace import WorkspaceContext

LOGGER = logging.getLogger(__name__)

ExecutionStrategy = Literal["buffered", "streaming"]

_CHUNK_SIZE = 64 * 1024
_ALWAYS_LARGE = frozenset({"find", "tree", "du", "yes"})
_RECURSIVE_LONG_FLAGS = frozenset({"--recursive", "--dereference-recursive"})
_GIT_LIMIT_FLAGS = ("-n", "--max-count", "-1", "-2", "-3", "-4", "-5", "-6", "-7", "-8", "-9")


@dataclass(slots=True)
class CommandRequest:
    """A command to execute: an argv plus an optional working directory."""

    argv: Tuple[str, ...]
    working_directory: str | None = None

    @classmethod
    def from_string(cls, command: str, working_directory: str | None = None) -> "CommandRequest":
        return cls(argv=tuple(shlex.split(command)), working_directory=working_directory)

    @classmethod
    def coerce(cls, value: "CommandRequest | str | Sequence[str]") -> "CommandRequest":
        if isinstance(value, CommandRequest):
            return value
        if isinstance(value, str):
            return cls.from_string(value)
        return cls(argv=tuple(str(part) for part in value))


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of a bounded command execution."""

    argv: Tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int | None
    truncated: bool
    duration_ms: int
    strategy: ExecutionStrategy = "buffered"

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.truncated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "argv": list(self.argv),
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "truncated": self.truncated,
            "duration_ms": self.duration_ms,
            "strategy": self.strategy,
        }


@dataclass(slots=True)
class PrimitiveResult:
    """Result of the opaque "run argv in workspace" primitive."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class WorkspacePrimitive(Protocol):
    """Run ``argv`` inside the isolated environment behind ``ctx``."""

    async def run(
        self,
        ctx: WorkspaceContext,
        argv: Sequence[str],
        *,
        working_directory: str | None = None,
        timeout_ms: int | None = None,
    ) -> PrimitiveResult: ...


def _program(argv: Sequence[str]) -> str:
    return os.path.basename(argv[0]) if argv else ""


def _has_short_flag(arguments: Sequence[str], letters: str) -> bool:
    for argument in arguments:
        if argument.startswith("-") and not argument.startswith("--"):
            if any(letter in argument[1:] for letter in letters):
                return True
    return False


def is_large_output_command(argv: Sequence[str]) -> bool:
    """Heuristically flag commands that are likely to produce large output."""

    program = _program(argv)
    arguments = list(argv[1:])
    if program in _ALWAYS_LARGE:
        return True
    if any(argument in _RECURSIVE_LONG_FLAGS for argument in arguments):
        return True
    if program == "ls" and _has_short_flag(arguments, "R"):
        return True
    if program in {"grep", "egrep", "fgrep", "rg", "cp", "chmod"} and _has_short_flag(arguments, "rR"):
        return True
    if program == "tail" and _has_short_flag(arguments, "fF"):
        return True
    if program == "git" and arguments and arguments[0] == "log":
        return not any(argument.startswith(_GIT_LIMIT_FLAGS) for argument in arguments[1:])
    if program in {"npm", "pnpm", "yarn"} and arguments and arguments[0] in {"ls", "list"}:
        return any(argument in {"--all", "-a"} or argument.startswith("--depth") for argument in arguments[1:])
    return False


class _OutputBudget:
    """Shared byte budget for stdout and stderr."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.used = 0
        self.stdout = bytearray()
        self.stderr = bytearray()
        self.exceeded = False
        self.exhausted = asyncio.Event()

    def feed(self, name: str, chunk: bytes) -> bool:
        """Append ``chunk``; return ``False`` once the budget is spent."""
        if self.exceeded:
            return False
        buffer = self.stdout if name == "stdout" else self.stderr
        remaining = self.limit - self.used
        if len(chunk) > remaining:
            buffer.extend(chunk[:remaining])
            self.used = self.limit
            self.exceeded = True
            self.exhausted.set()
            return False
        buffer.extend(chunk)
        self.used += len(chunk)
        return True


async def _pump(stream: asyncio.StreamReader | None, budget: _OutputBudget, name: str) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        if not chunk:
            return
        if not budget.feed(name, chunk):
            return


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Send ``sig`` to the child's process group, falling back to the child."""
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        if process.returncode is None:
            process.send_signal(sig)


async def _kill_group(process: asyncio.subprocess.Process) -> None:
    _signal_group(process, signal.SIGKILL)
    await process.wait()


async def _terminate_group(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """SIGTERM the group, escalating to SIGKILL after ``grace_seconds``."""
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        LOGGER.debug("Process %s ignored SIGTERM; escalating to SIGKILL", process.pid)
        await _kill_group(process)


class BoundedExecutor:
    """Run commands in a workspace under a timeout and an output-byte cap."""

    def __init__(
        self,
        settings: SandboxSettings | None = None,
        *,
        validator: PathConfinementValidator | None = None,
    ) -> None:
        self._settings = settings or SandboxSettings()
        self._validator = validator or PathConfinementValidator()

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    async def execute(
        self,
        ctx: WorkspaceContext,
        command: CommandRequest | str | Sequence[str],
        *,
        timeout_ms: int | None = None,
        max_output_bytes: int | None = None,
        strategy: ExecutionStrategy | None = None,
        check: bool = True,
    ) -> ExecutionResult:
        """Execute ``command`` inside ``ctx`` and return its bounded result.

        Raises :class:`Timeout`, :class:`OutputTooLarge` (buffered strategy
        only) or :class:`ProcessError` (spawn failure, or non-zero exit when
        ``check`` is true).  Path problems with the working directory raise
        :class:`ValidationError` before anything is spawned.
        """

        request = CommandRequest.coerce(command)
        if not request.argv:
            raise ValidationError("Command is empty.", rule="CMD001")
        cwd = self._validator.require(request.working_directory or ".", ctx.workspace_root)
        timeout_ms = timeout_ms if timeout_ms is not None else self._settings.default_timeout_ms
        limit = max_output_bytes if max_output_bytes is not None else self._settings.max_output_bytes
        if timeout_ms <= 0 or limit <= 0:
            raise ValidationError(
                "timeout_ms and max_output_bytes must be positive.",
                details={"timeout_ms": timeout_ms, "max_output_bytes": limit},
            )
        chosen: ExecutionStrategy = strategy or (
            "streaming" if is_large_output_command(request.argv) else "buffered"
        )
        argv = ctx.execution_handle.wrap(request.argv)

        LOGGER.debug("Executing %s in %s (strategy=%s, timeout=%sms)", argv, cwd, chosen, timeout_ms)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                env=ctx.execution_handle.environment(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as error:
            raise ProcessError(
                f"Failed to start {argv[0]}: {error}",
                details={"argv": argv, "cwd": str(cwd)},
            ) from error

        budget = _OutputBudget(limit)
        timed_out = False
        try:
            try:
                await asyncio.wait_for(self._collect(process, budget), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                timed_out = True
                await _kill_group(process)
        finally:
            if process.returncode is None:
                await _kill_group(process)

        result = ExecutionResult(
            argv=tuple(argv),
            stdout=budget.stdout.decode("utf-8", errors="replace"),
            stderr=budget.stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode,
            truncated=budget.exceeded,
            duration_ms=int((time.monotonic() - started) * 1000),
            strategy=chosen,
        )

        if timed_out:
            emit_event("command_timeout", argv=argv, timeout_ms=timeout_ms, duration_ms=result.duration_ms)
            raise Timeout(f"Command timed out after {timeout_ms} ms: {shlex.join(argv)}", result=result)
        if budget.exceeded:
            emit_event("command_output_capped", argv=argv, limit=limit, strategy=chosen)
            if chosen == "buffered":
                raise OutputTooLarge(
                    f"Command output exceeded {limit} bytes: {shlex.join(argv)}",
                    result=result,
                    details={"max_output_bytes": limit},
                )
        emit_event(
            "command_executed",
            argv=argv,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            truncated=result.truncated,
            strategy=chosen,
        )
        if check and not result.truncated and result.exit_code != 0:
            raise ProcessError(
                f"Command exited with status {result.exit_code}: {shlex.join(argv)}",
                result=result,
            )
        return result

    async def _collect(self, process: asyncio.subprocess.Process, budget: _OutputBudget) -> None:
        """Drain both pipes until EOF or until the byte budget is spent."""
        readers = [
            asyncio.ensure_future(_pump(process.stdout, budget, "stdout")),
            asyncio.ensure_future(_pump(process.stderr, budget, "stderr")),
        ]
        exhausted = asyncio.ensure_future(budget.exhausted.wait())
        try:
            pending = set(readers)
            while pending and not budget.exceeded:
                done, _ = await asyncio.wait(pending | {exhausted}, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
            if budget.exceeded:
                await _terminate_group(process, self._settings.kill_grace_ms / 1000)
                await asyncio.wait(readers, timeout=max(self._settings.kill_grace_ms / 1000, 1.0))
            for reader in readers:
                if reader.done() and not reader.cancelled():
                    reader.result()
            await process.wait()
        finally:
            for task in (*readers, exhausted):
                if not task.done():
                    task.cancel()


class ExecutorPrimitive:
    """:class:`WorkspacePrimitive` backed by :class:`BoundedExecutor`.

    Non-zero exit codes are reported, not raised; timeouts and output caps
    still raise.
    """

    def __init__(self, executor: BoundedExecutor) -> None:
        self._executor = executor

    async def run(
        self,
        ctx: WorkspaceContext,
        argv: Sequence[str],
        *,
        working_directory: str | None = None,
        timeout_ms: int | None = None,
    ) -> PrimitiveResult:
        result = await self._executor.execute(
            ctx,
            CommandRequest(argv=tuple(argv), working_directory=working_directory),
            timeout_ms=timeout_ms,
            check=False,
        )
        exit_code = result.exit_code if result.exit_code is not None else -1
        return PrimitiveResult(exit_code=exit_code, stdout=result.stdout, stderr=result.stderr)


__all__ = [
    "BoundedExecutor",
    "CommandRequest",
    "ExecutionResult",
    "ExecutionStrategy",
    "ExecutorPrimitive",
    "PrimitiveResult",
    "WorkspacePrimitive",
    "is_large_output_command",
]
