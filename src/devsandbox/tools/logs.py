"""Bounded access to the workspace's log files."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..config import SandboxSettings
from ..errors import ProcessError, ValidationError
from ..policy.paths import PathConfinementValidator
from ..workspace import WorkspaceContext
from .executor import WorkspacePrimitive

LOGGER = logging.getLogger(__name__)

DEFAULT_ERROR_KEYWORD = "error"
DEFAULT_SEARCH_LINES = 1_000
DEFAULT_SEARCH_LIMIT = 100


@dataclass(slots=True)
class LogTail:
    """Lines read from the end of a log file."""

    log_file: str
    requested_lines: int
    lines: List[str] = field(default_factory=list)
    keyword: str | None = None
    exists: bool = True

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "log_file": self.log_file,
            "requested_lines": self.requested_lines,
            "returned_lines": len(self.lines),
            "keyword": self.keyword,
            "exists": self.exists,
            "lines": list(self.lines),
        }


def _missing_file(stderr: str) -> bool:
    return "No such file" in stderr or "cannot open" in stderr


class LogMonitor:
    """Read and search log files under the workspace's log directory."""

    def __init__(
        self,
        ctx: WorkspaceContext,
        *,
        primitive: WorkspacePrimitive,
        settings: SandboxSettings | None = None,
        validator: PathConfinementValidator | None = None,
    ) -> None:
        self._ctx = ctx
        self._primitive = primitive
        self._settings = settings or SandboxSettings()
        self._validator = validator or PathConfinementValidator()

    def log_path(self, log_file: str | None = None) -> str:
        """Return the workspace-relative path of ``log_file`` inside the log directory."""

        name = (log_file or self._settings.dev_log_file).strip()
        if not name or os.path.basename(name) != name or name in {".", ".."}:
            raise ValidationError(
                f"Log file must be a plain file name inside {self._settings.log_dir}/: {log_file!r}",
                rule="LOG001",
            )
        relative = os.path.join(self._settings.log_dir, name)
        self._validator.require(relative, self._ctx.workspace_root)
        return relative

    async def tail(
        self,
        lines: int | None = None,
        *,
        log_file: str | None = None,
        keyword: str | None = None,
    ) -> LogTail:
        """Return the last ``lines`` lines (default 3000, never more than 10000)."""

        count = self._settings.clamp_log_lines(lines)
        relative = self.log_path(log_file)
        result = await self._primitive.run(self._ctx, ["tail", "-n", str(count), relative], working_directory=".")
        if result.exit_code != 0:
            if _missing_file(result.stderr):
                return LogTail(log_file=relative, requested_lines=count, keyword=keyword, exists=False)
            raise ProcessError(
                f"Failed to read {relative}: {result.stderr.strip() or 'tail failed'}",
                details={"exit_code": result.exit_code, "stderr": result.stderr},
            )
        content = result.stdout.splitlines()
        if keyword:
            needle = keyword.lower()
            content = [line for line in content if needle in line.lower()]
        return LogTail(log_file=relative, requested_lines=count, lines=content, keyword=keyword)

    async def search_errors(
        self,
        keyword: str = DEFAULT_ERROR_KEYWORD,
        *,
        lines: int = DEFAULT_SEARCH_LINES,
        limit: int = DEFAULT_SEARCH_LIMIT,
        log_file: str | None = None,
    ) -> LogTail:
        """Case-insensitive search over the recent log, keeping the last ``limit`` matches."""

        tail = await self.tail(lines, log_file=log_file, keyword=keyword or DEFAULT_ERROR_KEYWORD)
        if limit > 0 and len(tail.lines) > limit:
            tail.lines = tail.lines[-limit:]
        return tail

    async def list_files(self) -> List[str]:
        """Return the ``*.log`` files in the log directory, sorted by name."""

        log_dir = self._settings.log_dir
        self._validator.require(log_dir, self._ctx.workspace_root)
        result = await self._primitive.run(
            self._ctx,
            ["find", log_dir, "-maxdepth", "1", "-type", "f", "-name", "*.log"],
            working_directory=".",
        )
        if result.exit_code != 0:
            if _missing_file(result.stderr):
                return []
            raise ProcessError(
                f"Failed to list {log_dir}: {result.stderr.strip() or 'find failed'}",
                details={"exit_code": result.exit_code, "stderr": result.stderr},
            )
        names = {os.path.basename(line.strip()) for line in result.stdout.splitlines() if line.strip()}
        return sorted(names)


__all__ = ["LogMonitor", "LogTail"]
