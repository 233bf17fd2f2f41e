"""Unified diff generation, validation and application for in-memory text.

Diffs are produced with :class:`difflib.SequenceMatcher` and always carry
explicit ``-a,b +c,d`` ranges plus ``\\ No newline at end of file`` markers, so
``apply(original, generate(original, modified)) == modified`` holds exactly,
including for texts without a trailing newline.

Application is all-or-nothing: every hunk is located against the original
text first and the result is only assembled once all of them matched.  A hunk
whose context moved is accepted at the nearest matching position after the
previous hunk; the shift is reported in telemetry.
"""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple

from ..errors import ApplyError, PatchConflict
from ..utils.telemetry import emit_event

LOGGER = logging.getLogger(__name__)

NO_NEWLINE_MARKER = "\\ No newline at end of file"
_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? \+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_PREAMBLE_PREFIXES = (
    "diff ",
    "index ",
    "new file mode",
    "deleted file mode",
    "old mode",
    "new mode",
    "similarity index",
    "dissimilarity index",
    "rename from",
    "rename to",
    "copy from",
    "copy to",
)


class LineType(str, Enum):
    """Kinds of lines inside a hunk."""

    ADD = "add"
    REMOVE = "remove"
    CONTEXT = "context"


_PREFIX = {LineType.CONTEXT: " ", LineType.ADD: "+", LineType.REMOVE: "-"}
_SWAPPED = {LineType.CONTEXT: LineType.CONTEXT, LineType.ADD: LineType.REMOVE, LineType.REMOVE: LineType.ADD}


@dataclass(slots=True)
class DiffLine:
    """One hunk line; ``newline`` is false when the source line lacks a trailing newline."""

    type: LineType
    content: str
    newline: bool = True

    @property
    def text(self) -> str:
        return self.content + "\n" if self.newline else self.content


@dataclass(slots=True)
class Hunk:
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: List[DiffLine] = field(default_factory=list)

    def old_block(self) -> List[str]:
        return [line.text for line in self.lines if line.type is not LineType.ADD]

    def new_block(self) -> List[str]:
        return [line.text for line in self.lines if line.type is not LineType.REMOVE]

    @property
    def header(self) -> str:
        return f"@@ -{self.old_start},{self.old_lines} +{self.new_start},{self.new_lines} @@"


@dataclass(slots=True)
class DiffDocument:
    """A single-file unified diff."""

    old_file: str | None = None
    new_file: str | None = None
    hunks: List[Hunk] = field(default_factory=list)


@dataclass(slots=True)
class DiffStats:
    additions: int
    deletions: int

    def to_dict(self) -> Dict[str, int]:
        return {"additions": self.additions, "deletions": self.deletions}


@dataclass(slots=True)
class DiffValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


def _split_lines(text: str) -> List[str]:
    """Split on ``\\n`` only, keeping line endings."""
    if not text:
        return []
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _diff_line(line_type: LineType, raw: str) -> DiffLine:
    if raw.endswith("\n"):
        return DiffLine(line_type, raw[:-1], True)
    return DiffLine(line_type, raw, False)


def _header_path(value: str) -> str:
    return value.split("\t", 1)[0].strip()


def render(document: DiffDocument) -> str:
    """Serialise ``document`` as unified diff text."""

    output: List[str] = []
    if document.old_file is not None or document.new_file is not None:
        output.append(f"--- {document.old_file or '/dev/null'}")
        output.append(f"+++ {document.new_file or '/dev/null'}")
    for hunk in document.hunks:
        output.append(hunk.header)
        for line in hunk.lines:
            output.append(_PREFIX[line.type] + line.content)
            if not line.newline:
                output.append(NO_NEWLINE_MARKER)
    return "\n".join(output) + "\n" if output else ""


def generate(
    original: str,
    modified: str,
    context: int = 3,
    *,
    from_file: str = "a/file",
    to_file: str = "b/file",
) -> str:
    """Return a unified diff turning ``original`` into ``modified``."""

    if context < 0:
        raise ValueError("context must be non-negative")
    old = _split_lines(original)
    new = _split_lines(modified)
    matcher = difflib.SequenceMatcher(None, old, new, autojunk=False)
    hunks: List[Hunk] = []
    for group in matcher.get_grouped_opcodes(context):
        lines: List[DiffLine] = []
        for tag, i1, i2, j1, j2 in group:
            if tag == "equal":
                lines.extend(_diff_line(LineType.CONTEXT, raw) for raw in old[i1:i2])
                continue
            if tag in {"replace", "delete"}:
                lines.extend(_diff_line(LineType.REMOVE, raw) for raw in old[i1:i2])
            if tag in {"replace", "insert"}:
                lines.extend(_diff_line(LineType.ADD, raw) for raw in new[j1:j2])
        old_first, old_last = group[0][1], group[-1][2]
        new_first, new_last = group[0][3], group[-1][4]
        old_count = old_last - old_first
        new_count = new_last - new_first
        hunks.append(
            Hunk(
                old_start=old_first + 1 if old_count else old_first,
                old_lines=old_count,
                new_start=new_first + 1 if new_count else new_first,
                new_lines=new_count,
                lines=lines,
            )
        )
    return render(DiffDocument(old_file=from_file, new_file=to_file, hunks=hunks))


class _Parser:
    """Line-oriented unified diff parser.

    In strict mode problems are collected in ``errors``; otherwise the first
    problem raises :class:`ApplyError`.
    """

    def __init__(self, *, strict: bool) -> None:
        self.strict = strict
        self.errors: List[str] = []
        self.document = DiffDocument()
        self._hunk: Hunk | None = None
        self._old_left = 0
        self._new_left = 0

    def fail(self, message: str, *, line: int | None = None) -> None:
        if self.strict:
            self.errors.append(message)
            return
        raise ApplyError(message, details={"line": line} if line is not None else None)

    def parse(self, diff_text: str) -> DiffDocument:
        raw_lines = diff_text.split("\n")
        if raw_lines and raw_lines[-1] == "":
            raw_lines.pop()
        for number, line in enumerate(raw_lines, start=1):
            if self._in_body():
                if self._body_line(number, line):
                    continue
                self._close_short_hunk(number)
            self._outside_line(number, line)
        if self._in_body():
            self._close_short_hunk(len(raw_lines) + 1)
        if self.strict:
            if self.document.old_file is None:
                self.errors.append("missing '---' file header")
            if self.document.new_file is None:
                self.errors.append("missing '+++' file header")
            if not self.document.hunks:
                self.errors.append("no hunk header of the form '@@ -a,b +c,d @@' found")
        return self.document

    def _in_body(self) -> bool:
        return self._hunk is not None and (self._old_left > 0 or self._new_left > 0)

    def _body_line(self, number: int, line: str) -> bool:
        """Consume one line of an open hunk; return ``False`` if it does not belong there."""
        hunk = self._hunk
        assert hunk is not None
        if line.startswith("\\"):
            if hunk.lines:
                hunk.lines[-1].newline = False
            else:
                self.fail(f"line {number}: no-newline marker before any hunk line", line=number)
            return True
        prefix = line[:1]
        if prefix == "" or prefix == " ":
            if prefix == "":
                if self.strict:
                    self.errors.append(f"line {number}: content line has no ' ', '+' or '-' prefix")
            hunk.lines.append(DiffLine(LineType.CONTEXT, line[1:]))
            self._old_left -= 1
            self._new_left -= 1
        elif prefix == "-":
            hunk.lines.append(DiffLine(LineType.REMOVE, line[1:]))
            self._old_left -= 1
        elif prefix == "+":
            hunk.lines.append(DiffLine(LineType.ADD, line[1:]))
            self._new_left -= 1
        else:
            return False
        if self._old_left < 0 or self._new_left < 0:
            self.fail(
                f"line {number}: hunk {len(self.document.hunks)} has more lines than its header declares",
                line=number,
            )
            self._old_left = max(self._old_left, 0)
            self._new_left = max(self._new_left, 0)
        return True

    def _close_short_hunk(self, number: int) -> None:
        self.fail(
            f"line {number}: hunk {len(self.document.hunks)} ended early, "
            f"missing {self._old_left} original and {self._new_left} modified line(s)",
            line=number,
        )
        self._old_left = 0
        self._new_left = 0

    def _outside_line(self, number: int, line: str) -> None:
        if line.startswith("\\"):
            if self._hunk is not None and self._hunk.lines:
                self._hunk.lines[-1].newline = False
            else:
                self.fail(f"line {number}: stray no-newline marker", line=number)
            return
        match = _HUNK_HEADER.match(line)
        if match:
            old_count = int(match.group("old_count")) if match.group("old_count") is not None else 1
            new_count = int(match.group("new_count")) if match.group("new_count") is not None else 1
            self._hunk = Hunk(
                old_start=int(match.group("old_start")),
                old_lines=old_count,
                new_start=int(match.group("new_start")),
                new_lines=new_count,
            )
            self.document.hunks.append(self._hunk)
            self._old_left = old_count
            self._new_left = new_count
            if old_count == 0 and new_count == 0:
                self.fail(f"line {number}: hunk declares no lines", line=number)
            return
        if line.startswith("@@"):
            self.fail(f"line {number}: malformed hunk header {line!r}", line=number)
            return
        if line.startswith("--- "):
            if self.document.hunks or self.document.old_file is not None:
                self.fail(f"line {number}: diffs touching several files are not supported", line=number)
                return
            self.document.old_file = _header_path(line[4:])
            return
        if line.startswith("+++ "):
            if self.document.new_file is not None:
                self.fail(f"line {number}: duplicate '+++' header", line=number)
                return
            self.document.new_file = _header_path(line[4:])
            return
        if not line.strip() or line.startswith(_PREAMBLE_PREFIXES):
            return
        if self.document.hunks and line[:1] in {" ", "+", "-"}:
            self.fail(
                f"line {number}: hunk {len(self.document.hunks)} has more lines than its header declares",
                line=number,
            )
            return
        if self.strict:
            self.errors.append(f"line {number}: unexpected text outside a hunk: {line[:60]!r}")


def parse(diff_text: str) -> DiffDocument:
    """Parse ``diff_text``; raise :class:`ApplyError` when it is malformed."""

    if not diff_text or not diff_text.strip():
        raise ApplyError("Diff text is empty.")
    document = _Parser(strict=False).parse(diff_text)
    if not document.hunks and document.old_file is None and document.new_file is None:
        raise ApplyError("Diff text contains no file headers or hunks.")
    return document


def validate(diff_text: str) -> DiffValidation:
    """Check structure without applying: headers, hunk headers, prefixes and counts."""

    if not diff_text or not diff_text.strip():
        return DiffValidation(valid=False, errors=["diff text is empty"])
    parser = _Parser(strict=True)
    parser.parse(diff_text)
    return DiffValidation(valid=not parser.errors, errors=parser.errors)


def _locate(lines: List[str], block: List[str], expected: int, cursor: int) -> List[int]:
    """Return candidate positions for ``block``: the declared one if it matches, else every forward match."""
    size = len(block)
    if not block:
        return [expected] if cursor <= expected <= len(lines) else []
    if cursor <= expected <= len(lines) - size and lines[expected : expected + size] == block:
        return [expected]
    return [
        position
        for position in range(cursor, len(lines) - size + 1)
        if lines[position : position + size] == block
    ]


def apply(original: str, diff_text: str) -> str:
    """Apply ``diff_text`` to ``original`` and return the new text.

    Raises :class:`ApplyError` for malformed diffs and :class:`PatchConflict`
    when a hunk's context cannot be found.  Nothing is applied unless every
    hunk matches.
    """

    try:
        document = parse(diff_text)
    except ApplyError as error:
        emit_event("diff_apply_failed", error=error.code, message=str(error))
        raise

    lines = _split_lines(original)
    pieces: List[str] = []
    adjustments: List[Dict[str, int]] = []
    cursor = 0
    for index, hunk in enumerate(document.hunks, start=1):
        block = hunk.old_block()
        expected = hunk.old_start - 1 if hunk.old_lines else hunk.old_start
        candidates = _locate(lines, block, expected, cursor)
        if len(candidates) != 1:
            reason = "matches several places in" if candidates else "does not match"
            emit_event("diff_apply_failed", error=PatchConflict.code, hunk=index, header=hunk.header)
            raise PatchConflict(
                f"Hunk {index} ({hunk.header}) {reason} the current text.",
                details={
                    "hunk": index,
                    "header": hunk.header,
                    "expected_line": expected + 1,
                    "candidates": [position + 1 for position in candidates],
                },
            )
        position = candidates[0]
        if position != expected:
            adjustments.append({"hunk": index, "offset": position - expected})
        pieces.extend(lines[cursor:position])
        pieces.extend(hunk.new_block())
        cursor = position + len(block)
    pieces.extend(lines[cursor:])

    counts = _count(document)
    emit_event(
        "diff_apply_succeeded",
        hunks=len(document.hunks),
        additions=counts.additions,
        deletions=counts.deletions,
        adjustments=adjustments,
    )
    if adjustments:
        LOGGER.info("Applied diff with shifted hunks: %s", adjustments)
    return "".join(pieces)


def _reorder_changes(lines: List[DiffLine]) -> List[DiffLine]:
    """Within each run of changed lines, emit removals before additions."""
    ordered: List[DiffLine] = []
    removals: List[DiffLine] = []
    additions: List[DiffLine] = []
    for line in lines:
        if line.type is LineType.CONTEXT:
            ordered.extend(removals)
            ordered.extend(additions)
            removals, additions = [], []
            ordered.append(line)
        elif line.type is LineType.REMOVE:
            removals.append(line)
        else:
            additions.append(line)
    ordered.extend(removals)
    ordered.extend(additions)
    return ordered


def reverse(diff_text: str) -> str:
    """Return the diff that undoes ``diff_text``."""

    document = parse(diff_text)
    hunks: List[Hunk] = []
    for hunk in document.hunks:
        swapped = [DiffLine(_SWAPPED[line.type], line.content, line.newline) for line in hunk.lines]
        hunks.append(
            Hunk(
                old_start=hunk.new_start,
                old_lines=hunk.new_lines,
                new_start=hunk.old_start,
                new_lines=hunk.old_lines,
                lines=_reorder_changes(swapped),
            )
        )
    return render(DiffDocument(old_file=document.new_file, new_file=document.old_file, hunks=hunks))


def _count(document: DiffDocument) -> DiffStats:
    additions = sum(1 for hunk in document.hunks for line in hunk.lines if line.type is LineType.ADD)
    deletions = sum(1 for hunk in document.hunks for line in hunk.lines if line.type is LineType.REMOVE)
    return DiffStats(additions=additions, deletions=deletions)


def stats(diff_text: str) -> DiffStats:
    """Count added and removed lines, ignoring file headers."""

    return _count(parse(diff_text))


class DiffEngine:
    """Stateless facade over the module-level diff functions."""

    def __init__(self, context: int = 3) -> None:
        self.context = context

    def generate(self, original: str, modified: str, context: int | None = None, **headers: str) -> str:
        return generate(original, modified, self.context if context is None else context, **headers)

    def apply(self, original: str, diff_text: str) -> str:
        return apply(original, diff_text)

    def validate(self, diff_text: str) -> DiffValidation:
        return validate(diff_text)

    def reverse(self, diff_text: str) -> str:
        return reverse(diff_text)

    def stats(self, diff_text: str) -> DiffStats:
        return stats(diff_text)

    def parse(self, diff_text: str) -> DiffDocument:
        return parse(diff_text)


__all__ = [
    "DiffDocument",
    "DiffEngine",
    "DiffLine",
    "DiffStats",
    "DiffValidation",
    "Hunk",
    "LineType",
    "NO_NEWLINE_MARKER",
    "apply",
    "generate",
    "parse",
    "render",
    "reverse",
    "stats",
    "validate",
]
