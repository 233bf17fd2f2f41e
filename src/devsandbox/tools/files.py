"""Confined file operations for a workspace.

Every path goes through :class:`PathConfinementValidator` before the
filesystem is touched.  Writes are atomic (temporary file plus
``os.replace``) and diff-based edits are all-or-nothing: the file on disk is
only replaced once every hunk applied.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from ..config import SandboxSettings
from ..errors import FileAccessError
from ..policy.paths import PathConfinementValidator
from ..utils.telemetry import emit_event
from ..workspace import WorkspaceContext
from . import diff as diff_engine

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_READ_BYTES = 2_000_000
DEFAULT_LIST_LIMIT = 1_000
_NOT_DESCENDED = {".git", "node_modules", ".next", "__pycache__", ".venv"}


@dataclass(slots=True)
class FileContent:
    path: str
    content: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "content": self.content, "size": self.size}


@dataclass(slots=True)
class DirectoryEntry:
    path: str
    is_dir: bool
    size: int | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "type": "directory" if self.is_dir else "file", "size": self.size}


@dataclass(slots=True)
class DirectoryListing:
    path: str
    entries: List[DirectoryEntry] = field(default_factory=list)
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "entries": [entry.to_dict() for entry in self.entries],
            "truncated": self.truncated,
        }


@dataclass(slots=True)
class FileEdit:
    """Result of a write or diff application."""

    path: str
    created: bool
    additions: int
    deletions: int
    diff: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "created": self.created,
            "additions": self.additions,
            "deletions": self.deletions,
            "diff": self.diff,
        }


class WorkspaceFiles:
    """Read, write, list and patch files below one workspace root."""

    def __init__(
        self,
        ctx: WorkspaceContext,
        *,
        settings: SandboxSettings | None = None,
        validator: PathConfinementValidator | None = None,
        max_read_bytes: int = DEFAULT_MAX_READ_BYTES,
    ) -> None:
        self._ctx = ctx
        self._settings = settings or SandboxSettings()
        self._validator = validator or PathConfinementValidator()
        self._max_read_bytes = max_read_bytes

    @property
    def root(self) -> Path:
        return Path(os.path.realpath(self._ctx.workspace_root))

    def resolve(self, path: str) -> Path:
        """Return the confined absolute path or raise :class:`ValidationError`."""
        return self._validator.require(path, self._ctx.workspace_root)

    def relative(self, resolved: Path) -> str:
        try:
            relative = resolved.relative_to(self.root).as_posix()
        except ValueError:
            return resolved.as_posix()
        return relative or "."

    def read_file(self, path: str) -> FileContent:
        resolved = self.resolve(path)
        relative = self.relative(resolved)
        if not resolved.exists():
            raise FileAccessError(f"File not found: {relative}", details={"path": relative})
        if resolved.is_dir():
            raise FileAccessError(f"Path is a directory: {relative}", details={"path": relative})
        size = resolved.stat().st_size
        if size > self._max_read_bytes:
            raise FileAccessError(
                f"File {relative} is {size} bytes, above the {self._max_read_bytes} byte read limit.",
                details={"path": relative, "size": size, "limit": self._max_read_bytes},
            )
        try:
            content = resolved.read_text(encoding="utf-8")
        except UnicodeDecodeError as error:
            raise FileAccessError(f"File {relative} is not valid UTF-8 text.", details={"path": relative}) from error
        except OSError as error:
            raise FileAccessError(f"Failed to read {relative}: {error}", details={"path": relative}) from error
        return FileContent(path=relative, content=content, size=size)

    def _current_text(self, resolved: Path) -> str | None:
        if not resolved.exists():
            return None
        if resolved.is_dir():
            relative = self.relative(resolved)
            raise FileAccessError(f"Path is a directory: {relative}", details={"path": relative})
        return self.read_file(self.relative(resolved)).content

    def _write_atomic(self, resolved: Path, content: str) -> None:
        relative = self.relative(resolved)
        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                newline="",
                dir=resolved.parent,
                prefix=f".{resolved.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                handle.write(content)
                temp_path = Path(handle.name)
            if resolved.exists():
                os.chmod(temp_path, resolved.stat().st_mode & 0o7777)
            os.replace(temp_path, resolved)
        except OSError as error:
            raise FileAccessError(f"Failed to write {relative}: {error}", details={"path": relative}) from error

    def write_file(self, path: str, content: str) -> FileEdit:
        """Replace (or create) ``path`` with ``content``."""

        resolved = self.resolve(path)
        relative = self.relative(resolved)
        previous = self._current_text(resolved)
        patch = diff_engine.generate(previous or "", content, from_file=f"a/{relative}", to_file=f"b/{relative}")
        counts = diff_engine.stats(patch)
        self._write_atomic(resolved, content)
        emit_event(
            "file_written",
            path=relative,
            created=previous is None,
            additions=counts.additions,
            deletions=counts.deletions,
        )
        return FileEdit(
            path=relative,
            created=previous is None,
            additions=counts.additions,
            deletions=counts.deletions,
            diff=patch,
        )

    def propose_diff(self, path: str, new_content: str, *, context: int = 3) -> str:
        """Return the diff that would turn the current file into ``new_content``."""

        resolved = self.resolve(path)
        relative = self.relative(resolved)
        current = self._current_text(resolved) or ""
        return diff_engine.generate(
            current,
            new_content,
            context,
            from_file=f"a/{relative}",
            to_file=f"b/{relative}",
        )

    def apply_diff(self, path: str, diff_text: str) -> FileEdit:
        """Apply ``diff_text`` to ``path``; the file is untouched if any hunk fails."""

        resolved = self.resolve(path)
        relative = self.relative(resolved)
        previous = self._current_text(resolved)
        updated = diff_engine.apply(previous or "", diff_text)
        counts = diff_engine.stats(diff_text)
        if previous is None or updated != previous:
            self._write_atomic(resolved, updated)
        LOGGER.info("Applied diff to %s (+%d/-%d)", relative, counts.additions, counts.deletions)
        return FileEdit(
            path=relative,
            created=previous is None,
            additions=counts.additions,
            deletions=counts.deletions,
            diff=diff_text,
        )

    def list_directory(
        self,
        path: str = ".",
        *,
        recursive: bool = False,
        show_hidden: bool = False,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> DirectoryListing:
        """List ``path``; recursion skips VCS and dependency directories."""

        resolved = self.resolve(path)
        relative = self.relative(resolved)
        if not resolved.exists():
            raise FileAccessError(f"Directory not found: {relative}", details={"path": relative})
        if not resolved.is_dir():
            raise FileAccessError(f"Path is not a directory: {relative}", details={"path": relative})

        listing = DirectoryListing(path=relative)
        pending = [resolved]
        while pending:
            directory = pending.pop(0)
            try:
                children = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
            except OSError as error:
                raise FileAccessError(
                    f"Failed to list {self.relative(directory)}: {error}",
                    details={"path": self.relative(directory)},
                ) from error
            for child in children:
                if not show_hidden and child.name.startswith("."):
                    continue
                if len(listing.entries) >= limit:
                    listing.truncated = True
                    return listing
                is_dir = child.is_dir()
                size = None if is_dir else child.lstat().st_size
                listing.entries.append(DirectoryEntry(path=self.relative(child), is_dir=is_dir, size=size))
                if recursive and is_dir and not child.is_symlink() and child.name not in _NOT_DESCENDED:
                    pending.append(child)
        return listing


__all__ = ["DirectoryEntry", "DirectoryListing", "FileContent", "FileEdit", "WorkspaceFiles"]
