from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Sequence, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from devsandbox.config import SandboxSettings  # noqa: E402
from devsandbox.tools.executor import PrimitiveResult  # noqa: E402
from devsandbox.workspace import WorkspaceContext, create_workspace_context  # noqa: E402

Response = Union[PrimitiveResult, Callable[[List[str]], PrimitiveResult]]

DEV_LOG = "\n".join(
    [
        "> app@0.1.0 dev",
        "> next dev",
        "",
        "   ▲ Next.js 14.2.3",
        "   - Local:        http://0.0.0.0:3000",
        "",
        " ✓ Ready in 2.1s",
    ]
)


class FakePrimitive:
    """In-memory stand-in for the workspace primitive.

    Simulates one dev-server process: ``pgrep`` reports it while
    ``running`` is set, ``pkill`` clears it and the ``bash -c`` launcher sets
    it.  ``responses`` overrides the result per program name.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.running = False
        self.pid = 4242
        self.log_text = DEV_LOG
        self.responses: Dict[str, Response] = {}

    def programs(self) -> List[str]:
        return [argv[0] for argv in self.calls]

    async def run(
        self,
        ctx: WorkspaceContext,
        argv: Sequence[str],
        *,
        working_directory: str | None = None,
        timeout_ms: int | None = None,
    ) -> PrimitiveResult:
        command = list(argv)
        self.calls.append(command)
        override = self.responses.get(command[0])
        if override is not None:
            return override(command) if callable(override) else override
        program = command[0]
        if program == "pgrep":
            return PrimitiveResult(0, f"{self.pid}\n", "") if self.running else PrimitiveResult(1, "", "")
        if program == "pkill":
            if self.running:
                self.running = False
                return PrimitiveResult(0, "", "")
            return PrimitiveResult(1, "", "")
        if program == "bash":
            self.running = True
            return PrimitiveResult(0, f"{self.pid}\n", "")
        if program == "tail":
            count = int(command[2])
            lines = self.log_text.splitlines()[-count:]
            return PrimitiveResult(0, "\n".join(lines) + "\n", "")
        if program == "curl":
            return PrimitiveResult(0, "200", "") if self.running else PrimitiveResult(7, "000", "")
        return PrimitiveResult(0, "", "")


class FakeClock:
    """Manually advanced wall clock in seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass(slots=True)
class Workspace:
    """Fixture payload: a real workspace directory plus its settings."""

    root: Path
    settings: SandboxSettings
    ctx: WorkspaceContext
    sleeps: List[float] = field(default_factory=list)

    def write(self, relative: str, content: str) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


@pytest.fixture()
def workspace(tmp_path: Path) -> Workspace:
    """Create ``<tmp>/workspaces/demo_app`` and a context rooted there."""

    settings = SandboxSettings(
        workspace_root_pattern=str(tmp_path / "workspaces" / "{project}"),
        start_wait_ms=3_000,
        poll_interval_ms=500,
    )
    ctx = create_workspace_context("demo-app", settings, create=True)
    return Workspace(root=ctx.workspace_root, settings=settings, ctx=ctx)


@pytest.fixture()
def primitive() -> FakePrimitive:
    return FakePrimitive()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
