"""Lifecycle management for a workspace's singleton dev server.

One :class:`DevServerSupervisor` exists per workspace (see
:class:`SupervisorRegistry`).  ``start``, ``stop`` and ``restart`` share one
``asyncio.Lock``, so mutating calls run one at a time in submission order and
concurrent callers cannot race past the restart limiter.

Restarts are guarded by a circuit breaker held in :class:`RestartState`:

* a restart inside the cooldown window raises :class:`CooldownActive`;
* once ``max_restarts`` restarts were accepted, further restarts raise
  :class:`MaxRestartsExceeded` until an explicit ``stop()`` followed by
  ``start()`` resets the counter.

Accepted restarts stamp the state *before* stopping and starting the server,
so a restart that later fails still counts.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Sequence

from ..config import SandboxSettings
from ..errors import CooldownActive, MaxRestartsExceeded, ProcessError, SandboxError
from ..policy.commands import CommandSafetyClassifier
from ..utils.telemetry import emit_event
from ..workspace import WorkspaceContext
from .executor import PrimitiveResult, WorkspacePrimitive
from .logs import LogMonitor

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Any]

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_URL_PATTERNS = (
    re.compile(r"-\s*Local:\s+(?:https?://)?(\S+)", re.IGNORECASE),
    re.compile(r"ready on\s+(?:https?://)?(\S+)", re.IGNORECASE),
    re.compile(r"Local:\s+(?:https?://)?(\S+)", re.IGNORECASE),
)
_HOST_PORT = re.compile(r"^(?P<host>\[[^\]]+\]|[^:/\s]+):(?P<port>\d{2,5})")
_CONTAINER_HOSTS = frozenset({"0.0.0.0", "127.0.0.1", "[::]", "[::1]", "localhost"})
_URL_SCAN_LINES = 200


class SupervisorPhase(str, Enum):
    """States of the dev-server supervisor."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    COOLDOWN_BLOCKED = "cooldown_blocked"


@dataclass(frozen=True, slots=True)
class RestartState:
    """Circuit-breaker bookkeeping for restarts.

    ``last_restart_at`` is a wall-clock timestamp in seconds; ``0.0`` means
    no restart has happened since the last reset.
    """

    last_restart_at: float = 0.0
    restart_count: int = 0
    cooldown_ms: int = 10_000
    max_restarts: int = 5

    def remaining_cooldown_ms(self, now: float) -> int:
        if self.last_restart_at <= 0:
            return 0
        elapsed_ms = (now - self.last_restart_at) * 1000
        return max(0, int(self.cooldown_ms - elapsed_ms))

    def refusal(self, now: float) -> SandboxError | None:
        """Return the error a restart at ``now`` would raise, or ``None``."""

        if self.restart_count >= self.max_restarts:
            return MaxRestartsExceeded(self.restart_count, self.max_restarts)
        remaining = self.remaining_cooldown_ms(now)
        if remaining > 0:
            return CooldownActive(remaining, details={"restart_count": self.restart_count})
        return None

    def accept(self, now: float) -> "RestartState":
        """Return the state after accepting a restart at ``now``; raise if refused."""

        refusal = self.refusal(now)
        if refusal is not None:
            raise refusal
        return replace(self, last_restart_at=now, restart_count=self.restart_count + 1)

    def reset(self) -> "RestartState":
        return replace(self, last_restart_at=0.0, restart_count=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_restart_at": self.last_restart_at,
            "restart_count": self.restart_count,
            "cooldown_ms": self.cooldown_ms,
            "max_restarts": self.max_restarts,
        }


@dataclass(slots=True)
class DevServerStatus:
    """Snapshot of the dev-server process."""

    is_running: bool
    pid: int | None = None
    port: int | None = None
    url: str | None = None
    pids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"is_running": self.is_running, "pid": self.pid, "port": self.port, "url": self.url, "pids": self.pids}


@dataclass(slots=True)
class StartOutcome:
    status: Literal["started", "already-running"]
    message: str
    server: DevServerStatus

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "message": self.message, **self.server.to_dict()}


@dataclass(slots=True)
class StopOutcome:
    was_running: bool
    message: str

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"was_running": self.was_running, "message": self.message}


@dataclass(slots=True)
class RestartOutcome:
    reason: str
    message: str
    restart_count: int
    server: DevServerStatus
    stop_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.server.is_running

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "message": self.message,
            "restart_count": self.restart_count,
            "stop_error": self.stop_error,
            **self.server.to_dict(),
        }


@dataclass(slots=True)
class HealthReport:
    port: int
    healthy: bool
    status_code: int | None = None
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"port": self.port, "healthy": self.healthy, "status_code": self.status_code, "detail": self.detail}


def normalise_url(raw: str) -> tuple[str | None, int | None]:
    """Map a URL printed inside the workspace onto one reachable from outside."""

    candidate = _ANSI_ESCAPE.sub("", raw).strip().rstrip("/")
    for prefix in ("http://", "https://"):
        if candidate.startswith(prefix):
            candidate = candidate[len(prefix):]
    match = _HOST_PORT.match(candidate)
    if not match:
        return None, None
    host = match.group("host")
    port = int(match.group("port"))
    if host in _CONTAINER_HOSTS:
        host = "localhost"
    return f"http://{host}:{port}", port


def detect_url(log_lines: Sequence[str]) -> tuple[str | None, int | None]:
    """Return the most recent dev-server URL announced in ``log_lines``."""

    for line in reversed(log_lines):
        clean = _ANSI_ESCAPE.sub("", line)
        for pattern in _URL_PATTERNS:
            match = pattern.search(clean)
            if match:
                url, port = normalise_url(match.group(1))
                if url is not None:
                    return url, port
    return None, None


def _parse_pids(output: str) -> List[int]:
    return [int(token) for token in output.split() if token.isdigit()]


class DevServerSupervisor:
    """Start, stop and restart the dev server of one workspace."""

    def __init__(
        self,
        ctx: WorkspaceContext,
        *,
        primitive: WorkspacePrimitive,
        settings: SandboxSettings | None = None,
        classifier: CommandSafetyClassifier | None = None,
        clock: Clock = time.time,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._ctx = ctx
        self._primitive = primitive
        self._settings = settings or SandboxSettings()
        self._classifier = classifier or CommandSafetyClassifier()
        self._clock = clock
        self._sleep = sleep
        self._logs = LogMonitor(ctx, primitive=primitive, settings=self._settings)
        self._lock = asyncio.Lock()
        self._state = RestartState(cooldown_ms=self._settings.cooldown_ms, max_restarts=self._settings.max_restarts)
        self._phase = SupervisorPhase.STOPPED
        self._blocked = False
        self._cold_stopped = False

    @property
    def restart_state(self) -> RestartState:
        return self._state

    @property
    def phase(self) -> SupervisorPhase:
        if self._blocked and self._state.refusal(self._clock()) is not None:
            return SupervisorPhase.COOLDOWN_BLOCKED
        return self._phase

    @property
    def context(self) -> WorkspaceContext:
        return self._ctx

    async def status(self) -> DevServerStatus:
        """Report whether the dev server runs, with its pid and announced port."""

        pids: List[int] = []
        for pattern in self._settings.dev_process_patterns:
            result = await self._run(["pgrep", "-f", pattern])
            if result.exit_code == 0:
                pids = _parse_pids(result.stdout)
                if pids:
                    break
            elif result.exit_code != 1:
                raise ProcessError(
                    f"pgrep failed: {result.stderr.strip() or result.exit_code}",
                    details={"exit_code": result.exit_code, "stderr": result.stderr},
                )
        if not pids:
            return DevServerStatus(is_running=False)
        url, port = None, None
        tail = await self._logs.tail(_URL_SCAN_LINES)
        if tail.exists:
            url, port = detect_url(tail.lines)
        return DevServerStatus(is_running=True, pid=pids[0], port=port, url=url, pids=pids)

    async def start(self) -> StartOutcome:
        """Start the dev server unless it is already running.

        An explicit start following an explicit :meth:`stop` is a cold cycle
        and resets the restart counter.
        """

        async with self._lock:
            if self._cold_stopped:
                self._state = self._state.reset()
                self._cold_stopped = False
                self._blocked = False
                emit_event("dev_server_restart_state_reset", workspace=self._ctx.workspace_root)
            return await self._start_locked()

    async def stop(self) -> StopOutcome:
        """Stop every process matching the dev-server patterns."""

        async with self._lock:
            outcome = await self._stop_locked()
            self._cold_stopped = True
            return outcome

    async def restart(self, reason: str = "") -> RestartOutcome:
        """Restart the dev server, subject to the cooldown and restart budget."""

        async with self._lock:
            now = self._clock()
            try:
                self._state = self._state.accept(now)
            except (CooldownActive, MaxRestartsExceeded) as refusal:
                self._blocked = True
                emit_event(
                    "dev_server_restart_refused",
                    workspace=self._ctx.workspace_root,
                    reason=reason,
                    error=refusal.code,
                    **self._state.to_dict(),
                )
                raise
            self._blocked = False
            self._cold_stopped = False
            emit_event(
                "dev_server_restart_accepted",
                workspace=self._ctx.workspace_root,
                reason=reason,
                **self._state.to_dict(),
            )
            LOGGER.info(
                "Restarting dev server for %s (%s/%s): %s",
                self._ctx.project_name,
                self._state.restart_count,
                self._state.max_restarts,
                reason or "no reason given",
            )

            self._phase = SupervisorPhase.RESTARTING
            stop_error: str | None = None
            try:
                await self._stop_locked()
            except SandboxError as error:
                stop_error = str(error)
                LOGGER.warning("Stop step failed during restart of %s: %s", self._ctx.project_name, error)

            started = await self._start_locked()
            message = f"Dev server restarted ({self._state.restart_count}/{self._state.max_restarts})."
            if started.status == "already-running":
                message = "Dev server was still running after the stop step; it was left in place."
            if stop_error:
                message = f"{message} Stop step failed: {stop_error}"
            return RestartOutcome(
                reason=reason,
                message=message,
                restart_count=self._state.restart_count,
                server=started.server,
                stop_error=stop_error,
            )

    async def check_health(self, port: int | None = None) -> HealthReport:
        """Probe ``http://localhost:<port>`` from inside the workspace."""

        if port is None:
            port = (await self.status()).port or 3000
        result = await self._run(
            ["curl", "-s", "-o", "/dev/null", "-w", "%{http_code}", "-m", "5", f"http://localhost:{port}"]
        )
        code_text = result.stdout.strip()
        if result.exit_code != 0 or not code_text.isdigit() or code_text == "000":
            return HealthReport(port=port, healthy=False, detail="service_down")
        status_code = int(code_text)
        return HealthReport(port=port, healthy=status_code < 500, status_code=status_code)

    def launch_argv(self) -> List[str]:
        """Return the argv that launches the dev server in the background."""

        command = self._settings.dev_command
        self._classifier.require(command)
        log_path = self._logs.log_path()
        script = (
            f"mkdir -p {shlex.quote(self._settings.log_dir)} && "
            f"nohup {command} > {shlex.quote(log_path)} 2>&1 & echo $!"
        )
        return ["bash", "-c", script]

    async def _start_locked(self) -> StartOutcome:
        current = await self.status()
        if current.is_running:
            self._phase = SupervisorPhase.RUNNING
            return StartOutcome(status="already-running", message="Dev server is already running.", server=current)

        self._phase = SupervisorPhase.STARTING
        try:
            launched = await self._run(self.launch_argv())
            if not launched.ok:
                raise ProcessError(
                    f"Failed to launch dev server: {launched.stderr.strip() or launched.exit_code}",
                    details={"exit_code": launched.exit_code, "stdout": launched.stdout, "stderr": launched.stderr},
                )
            server = await self._wait_until_running()
            if not server.is_running:
                tail = await self._logs.tail(20)
                raise ProcessError(
                    f"Dev server did not start within {self._settings.start_wait_ms} ms.",
                    details={"log_tail": tail.lines, "launch_output": launched.stdout.strip()},
                )
            self._phase = SupervisorPhase.RUNNING
        finally:
            if self._phase is SupervisorPhase.STARTING:
                self._phase = SupervisorPhase.STOPPED

        emit_event("dev_server_started", workspace=self._ctx.workspace_root, pid=server.pid, url=server.url)
        message = "Dev server started."
        if server.url:
            message = f"Dev server started at {server.url}."
        return StartOutcome(status="started", message=message, server=server)

    async def _wait_until_running(self) -> DevServerStatus:
        deadline = self._settings.start_wait_ms / 1000
        interval = self._settings.poll_interval_ms / 1000
        waited = 0.0
        while True:
            server = await self.status()
            if server.is_running or waited >= deadline:
                return server
            await self._sleep(interval)
            waited += interval

    async def _stop_locked(self) -> StopOutcome:
        was_running = False
        for pattern in self._settings.dev_process_patterns:
            result = await self._run(["pkill", "-f", pattern])
            if result.exit_code == 0:
                was_running = True
            elif result.exit_code != 1:
                raise ProcessError(
                    f"pkill failed: {result.stderr.strip() or result.exit_code}",
                    details={"exit_code": result.exit_code, "stderr": result.stderr},
                )
        self._phase = SupervisorPhase.STOPPED
        emit_event("dev_server_stopped", workspace=self._ctx.workspace_root, was_running=was_running)
        message = "Dev server stopped." if was_running else "No dev server found."
        return StopOutcome(was_running=was_running, message=message)

    async def _run(self, argv: Sequence[str]) -> PrimitiveResult:
        return await self._primitive.run(self._ctx, list(argv), working_directory=".")


class SupervisorRegistry:
    """Hands out exactly one supervisor per workspace root."""

    def __init__(self, factory: Callable[[WorkspaceContext], DevServerSupervisor]) -> None:
        self._factory = factory
        self._supervisors: Dict[str, DevServerSupervisor] = {}

    def get(self, ctx: WorkspaceContext) -> DevServerSupervisor:
        supervisor = self._supervisors.get(ctx.key)
        if supervisor is None:
            supervisor = self._factory(ctx)
            self._supervisors[ctx.key] = supervisor
        return supervisor

    def __len__(self) -> int:
        return len(self._supervisors)


__all__ = [
    "DevServerStatus",
    "DevServerSupervisor",
    "HealthReport",
    "RestartOutcome",
    "RestartState",
    "StartOutcome",
    "StopOutcome",
    "SupervisorPhase",
    "SupervisorRegistry",
    "detect_url",
    "normalise_url",
]
