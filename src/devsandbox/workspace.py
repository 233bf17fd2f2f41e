"""Workspace contexts binding a project to its confined root directory."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Mapping, Sequence, Tuple

from .config import SandboxSettings
from .errors import ValidationError
from .utils.naming import normalize_project_name


class WorkspaceStatus(str, Enum):
    """Lifecycle states reported for a workspace."""

    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ExecutionHandle:
    """Opaque reference to the isolated environment that runs commands.

    ``launcher`` is prefixed to every argv, e.g. ``("docker", "exec", "-i",
    "<container>")``.  An empty launcher runs commands directly on the host
    inside the workspace directory.
    """

    name: str = "local"
    launcher: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    def wrap(self, argv: Sequence[str]) -> list[str]:
        return [*self.launcher, *argv]

    def environment(self) -> dict[str, str]:
        merged = os.environ.copy()
        merged.update({str(key): str(value) for key, value in self.env.items()})
        return merged


@dataclass(frozen=True, slots=True)
class WorkspaceContext:
    """Immutable description of one project's workspace."""

    project_name: str
    workspace_root: Path
    execution_handle: ExecutionHandle = field(default_factory=ExecutionHandle)
    status: WorkspaceStatus = WorkspaceStatus.STOPPED

    def with_status(self, status: WorkspaceStatus) -> "WorkspaceContext":
        return replace(self, status=status)

    @property
    def key(self) -> str:
        """Stable identity used to look up per-workspace state."""
        return os.path.realpath(self.workspace_root)


def resolve_workspace_root(project_name: str, settings: SandboxSettings) -> Path:
    """Return the absolute workspace root for ``project_name``."""

    normalized = normalize_project_name(project_name)
    root = Path(settings.workspace_root_pattern.format(project=normalized)).expanduser()
    if not root.is_absolute():
        root = Path.cwd() / root
    return Path(os.path.abspath(root))


def create_workspace_context(
    project_name: str,
    settings: SandboxSettings,
    *,
    handle: ExecutionHandle | None = None,
    create: bool = False,
) -> WorkspaceContext:
    """Build a :class:`WorkspaceContext` rooted at ``<root>/<project-name>``.

    The project name is normalised first (``my-app`` becomes ``my_app``).  When
    ``create`` is true the directory is created if it does not exist yet.
    """

    if not project_name or not project_name.strip():
        raise ValidationError("Project name must not be empty.", rule="WS001")
    normalized = normalize_project_name(project_name)
    root = resolve_workspace_root(normalized, settings)
    if create:
        root.mkdir(parents=True, exist_ok=True)
    if handle is None:
        handle = ExecutionHandle(launcher=tuple(settings.launcher))
    return WorkspaceContext(project_name=normalized, workspace_root=root, execution_handle=handle)


__all__ = [
    "ExecutionHandle",
    "WorkspaceContext",
    "WorkspaceStatus",
    "create_workspace_context",
    "resolve_workspace_root",
]
