"""Path confinement for workspace file and command operations.

Every path handed to the sandbox is resolved to its real, symlink-free absolute
form *before* it is compared against the workspace root.  Lexical
normalisation alone is not enough: a symlink inside the workspace that points
elsewhere would otherwise pass a prefix check.

Rejections carry a rule code from ``PATH_RULES`` plus a suggested path that
re-roots the requested basename under the workspace.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Any, Dict, Iterable, Tuple

from ..errors import ValidationError
from .rules import RuleDefinition

PathLike = str | os.PathLike[str]

PATH_RULES: Dict[str, RuleDefinition] = {
    "PATH001": RuleDefinition(
        code="PATH001",
        title="Empty path",
        detail="Paths must contain at least one non-whitespace character.",
    ),
    "PATH002": RuleDefinition(
        code="PATH002",
        title="Control characters",
        detail="Paths must not contain NUL or other control characters.",
    ),
    "PATH003": RuleDefinition(
        code="PATH003",
        title="Outside workspace",
        detail="The resolved real path must equal the workspace root or live beneath it.",
    ),
    "PATH004": RuleDefinition(
        code="PATH004",
        title="Sensitive system path",
        detail="System trees such as /etc, /root, /proc and /sys are never reachable.",
    ),
    "PATH005": RuleDefinition(
        code="PATH005",
        title="Credential file",
        detail="Environment files and key material (.env, .ssh, .aws, private keys) are off limits.",
    ),
    "PATH006": RuleDefinition(
        code="PATH006",
        title="node_modules root",
        detail="The workspace's top-level node_modules tree is managed by the package manager.",
    ),
    "PATH007": RuleDefinition(
        code="PATH007",
        title="Git internals",
        detail="Files under .git are managed by git and may contain executable hooks.",
    ),
}

DEFAULT_SENSITIVE_PREFIXES: Tuple[str, ...] = ("/etc", "/root", "/proc", "/sys", "/dev", "/boot")
_CREDENTIAL_DIRS = frozenset({".ssh", ".aws", ".gnupg", ".docker"})
_CREDENTIAL_FILES = frozenset({"id_rsa", "id_dsa", "id_ecdsa", "id_ed25519", ".netrc", ".pypirc"})
_ENV_TEMPLATES = frozenset({".env.example", ".env.sample", ".env.template"})


@dataclass(slots=True)
class PathCheck:
    """Outcome of validating a single path."""

    path: str
    ok: bool
    resolved: str | None = None
    rule: str | None = None
    reason: str | None = None
    suggested_path: str | None = None

    @property
    def rejected(self) -> bool:
        return not self.ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "ok": self.ok,
            "resolved": self.resolved,
            "rule": self.rule,
            "reason": self.reason,
            "suggested_path": self.suggested_path,
        }


def _has_control_characters(value: str) -> bool:
    return any(ord(char) < 32 or ord(char) == 127 for char in value)


def _is_within(candidate: str, root: str) -> bool:
    """Return whether real path ``candidate`` equals ``root`` or sits beneath it."""
    if candidate == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return candidate.startswith(prefix)


def _is_credential_part(part: str) -> bool:
    if part in _ENV_TEMPLATES:
        return False
    if part == ".env" or part.startswith(".env."):
        return True
    return part in _CREDENTIAL_DIRS or part in _CREDENTIAL_FILES


class PathConfinementValidator:
    """Reject paths that escape a workspace root or touch sensitive locations."""

    def __init__(
        self,
        *,
        sensitive_prefixes: Iterable[str] = DEFAULT_SENSITIVE_PREFIXES,
        protect_node_modules: bool = True,
        protect_git: bool = True,
    ) -> None:
        self._sensitive_prefixes = tuple(prefix.rstrip("/") for prefix in sensitive_prefixes)
        self._protect_node_modules = protect_node_modules
        self._protect_git = protect_git

    def validate(self, path: PathLike, workspace_root: PathLike) -> PathCheck:
        """Check ``path`` against ``workspace_root`` without raising."""

        raw = os.fspath(path)
        root_display = os.path.abspath(os.fspath(workspace_root))

        if not raw or not raw.strip():
            return self._reject(raw, root_display, "PATH001", "Path is empty.")
        if _has_control_characters(raw):
            return self._reject(raw, root_display, "PATH002", "Path contains control characters.")

        root_real = os.path.realpath(root_display)
        candidate = raw if os.path.isabs(raw) else os.path.join(root_real, raw)
        resolved = os.path.realpath(candidate)

        sensitive = self._matching_sensitive_prefix(resolved, root_real)
        if sensitive is not None:
            return self._reject(
                raw,
                root_display,
                "PATH004",
                f"Path resolves into the protected system tree {sensitive}.",
                resolved=resolved,
            )

        if not _is_within(resolved, root_real):
            return self._reject(
                raw,
                root_display,
                "PATH003",
                f"Path resolves to {resolved}, outside the workspace root {root_real}.",
                resolved=resolved,
            )

        parts = PurePath(os.path.relpath(resolved, root_real)).parts
        if any(_is_credential_part(part) for part in parts):
            return self._reject(raw, root_display, "PATH005", "Path targets a credential file.", resolved=resolved)
        if self._protect_node_modules and parts and parts[0] == "node_modules":
            return self._reject(
                raw,
                root_display,
                "PATH006",
                "Path reaches into the workspace's node_modules tree.",
                resolved=resolved,
            )
        if self._protect_git and ".git" in parts:
            return self._reject(raw, root_display, "PATH007", "Path targets git internals.", resolved=resolved)

        return PathCheck(path=raw, ok=True, resolved=resolved)

    def require(self, path: PathLike, workspace_root: PathLike) -> Path:
        """Return the resolved path or raise :class:`ValidationError`."""

        check = self.validate(path, workspace_root)
        if not check.ok:
            raise ValidationError(
                check.reason or "Path rejected.",
                rule=check.rule,
                suggested_path=check.suggested_path,
                details={"path": check.path},
            )
        assert check.resolved is not None
        return Path(check.resolved)

    def _matching_sensitive_prefix(self, resolved: str, root_real: str) -> str | None:
        for prefix in self._sensitive_prefixes:
            if _is_within(root_real, prefix):
                # The workspace itself lives under this tree; confinement covers it.
                continue
            if _is_within(resolved, prefix):
                return prefix
        return None

    def _reject(
        self,
        raw: str,
        root: str,
        rule: str,
        reason: str,
        *,
        resolved: str | None = None,
    ) -> PathCheck:
        return PathCheck(
            path=raw,
            ok=False,
            resolved=resolved,
            rule=rule,
            reason=reason,
            suggested_path=suggest_path(raw, root),
        )


def suggest_path(raw: str, workspace_root: PathLike) -> str:
    """Re-root the basename of ``raw`` under ``workspace_root``."""

    root = os.path.abspath(os.fspath(workspace_root))
    cleaned = "".join(char for char in raw if not (ord(char) < 32 or ord(char) == 127))
    basename = os.path.basename(cleaned.replace("\\", "/").rstrip("/")).strip()
    if basename in {"", ".", ".."} or _is_credential_part(basename):
        return root
    return os.path.join(root, basename)


_DEFAULT_VALIDATOR = PathConfinementValidator()


def validate_path(path: PathLike, workspace_root: PathLike) -> PathCheck:
    """Validate ``path`` with the default validator."""

    return _DEFAULT_VALIDATOR.validate(path, workspace_root)


__all__ = [
    "DEFAULT_SENSITIVE_PREFIXES",
    "PATH_RULES",
    "PathCheck",
    "PathConfinementValidator",
    "suggest_path",
    "validate_path",
]
