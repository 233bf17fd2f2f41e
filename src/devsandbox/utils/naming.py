"""Project-name normalisation for workspace directories."""

from __future__ import annotations

import re
from typing import Pattern

_INVALID_CHARS: Pattern[str] = re.compile(r"[^A-Za-z0-9_.]+")
_UNDERSCORE_COLLAPSE = re.compile(r"_{2,}")


def normalize_project_name(value: str | None, *, fallback: str = "project", max_length: int = 64) -> str:
    """Map ``value`` onto the directory name used for its workspace.

    Hyphens and any other character outside ``[A-Za-z0-9_.]`` become
    underscores, so ``my-app`` and ``my_app`` address the same workspace.
    Names made only of dots are replaced by ``fallback`` because they would
    otherwise resolve to the parent directory.
    """
    source = (value or "").strip()
    slug = _INVALID_CHARS.sub("_", source)
    slug = _UNDERSCORE_COLLAPSE.sub("_", slug).strip("_")
    if not slug.strip("."):
        slug = fallback
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("_.") or fallback
    return slug


__all__ = ["normalize_project_name"]
