"""Error taxonomy shared by the sandbox core.

Every failure raised inside the core derives from :class:`SandboxError`.  The
tool router converts these into structured results, so callers outside the
core never see them as exceptions.  Each error carries a stable ``code`` and a
``details`` mapping with whatever context the caller needs to recover (a
suggested path, partial output, the remaining cooldown, ...).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from .tools.executor import ExecutionResult


class SandboxError(RuntimeError):
    """Base class for recoverable failures produced by the sandbox core."""

    code = "sandbox_error"

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable view of the error."""

        return {"error": self.code, "message": str(self), "details": dict(self.details)}


class ConfigError(SandboxError):
    """Raised when configuration cannot be loaded or fails validation."""

    code = "config_error"


class ValidationError(SandboxError):
    """A path or command was rejected before any side effect ran."""

    code = "validation"

    def __init__(
        self,
        message: str,
        *,
        rule: str | None = None,
        suggested_path: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        payload = dict(details or {})
        if rule is not None:
            payload.setdefault("rule", rule)
        if suggested_path is not None:
            payload.setdefault("suggested_path", suggested_path)
        super().__init__(message, details=payload)
        self.rule = rule
        self.suggested_path = suggested_path


class _ResultCarryingError(SandboxError):
    """Execution failure that keeps whatever output the process produced."""

    def __init__(
        self,
        message: str,
        *,
        result: "ExecutionResult | None" = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        payload = dict(details or {})
        if result is not None:
            payload.setdefault("stdout", result.stdout)
            payload.setdefault("stderr", result.stderr)
            payload.setdefault("exit_code", result.exit_code)
            payload.setdefault("truncated", result.truncated)
            payload.setdefault("duration_ms", result.duration_ms)
        super().__init__(message, details=payload)
        self.result = result


class Timeout(_ResultCarryingError):
    """The process exceeded its wall-clock budget and was killed."""

    code = "timeout"


class OutputTooLarge(_ResultCarryingError):
    """The process exceeded its output cap and was killed."""

    code = "output_too_large"


class ProcessError(_ResultCarryingError):
    """The process could not be spawned or exited with a non-zero status."""

    code = "process_error"


class FileAccessError(SandboxError):
    """A confined file operation failed at the filesystem level."""

    code = "file_error"


class DiffError(SandboxError):
    """Base class for diff rejections; a rejected diff is never partially applied."""

    code = "diff_error"


class PatchConflict(DiffError):
    """Hunk context does not match the target text."""

    code = "patch_conflict"


class ApplyError(DiffError):
    """The diff text is malformed and cannot be applied."""

    code = "apply_error"


class CooldownActive(SandboxError):
    """A restart was refused because the previous one happened too recently."""

    code = "cooldown_active"

    def __init__(self, remaining_ms: int, *, details: Mapping[str, Any] | None = None) -> None:
        payload = dict(details or {})
        payload.setdefault("remaining_ms", remaining_ms)
        super().__init__(
            f"Restart refused: cooldown active, retry in {remaining_ms} ms.",
            details=payload,
        )
        self.remaining_ms = remaining_ms


class MaxRestartsExceeded(SandboxError):
    """A restart was refused because the restart budget is exhausted."""

    code = "max_restarts_exceeded"

    def __init__(self, restart_count: int, max_restarts: int) -> None:
        super().__init__(
            f"Restart refused: {restart_count} of {max_restarts} restarts used. "
            "Stop and start the dev server explicitly to reset the counter.",
            details={"restart_count": restart_count, "max_restarts": max_restarts},
        )
        self.restart_count = restart_count
        self.max_restarts = max_restarts


__all__ = [
    "ApplyError",
    "ConfigError",
    "CooldownActive",
    "DiffError",
    "FileAccessError",
    "MaxRestartsExceeded",
    "OutputTooLarge",
    "PatchConflict",
    "ProcessError",
    "SandboxError",
    "Timeout",
    "ValidationError",
]
