"""Shared rule metadata for the path and command policies.

Both policies expose a registry (``PATH_RULES`` / ``COMMAND_RULES``) mapping a
rule code to a :class:`RuleDefinition`.  ``devsandbox classify --explain`` and
``devsandbox check-path --explain`` use :func:`explain_rule` to add the title
and detail of the rejecting rule to the printed verdict.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


@dataclass(slots=True, frozen=True)
class RuleDefinition:
    """Metadata describing a policy rule."""

    code: str
    title: str
    detail: str


def explain_rule(registry: Mapping[str, RuleDefinition], code: Optional[str]) -> Dict[str, Any]:
    """Return ``title``/``detail`` for ``code``, or an empty mapping when it is unknown."""

    rule = registry.get(code) if code else None
    if rule is None:
        return {}
    return {"title": rule.title, "detail": rule.detail}


__all__ = ["RuleDefinition", "explain_rule"]
