from __future__ import annotations

import textwrap

import pytest

from devsandbox.errors import ApplyError, PatchConflict
from devsandbox.tools import diff as diff_engine
from devsandbox.tools.diff import NO_NEWLINE_MARKER, DiffEngine, LineType

ORIGINAL = "".join(f"line {index}\n" for index in range(1, 31))


def _modified() -> str:
    lines = ORIGINAL.splitlines(keepends=True)
    lines[2] = "line three\n"
    del lines[14]
    lines.insert(25, "inserted\n")
    return "".join(lines)


def test_generate_matches_reference_hunk() -> None:
    text = diff_engine.generate("a\nb\nc", "a\nx\nc")

    assert "@@ -1,3 +1,3 @@" in text
    assert "-b\n" in text
    assert "+x\n" in text
    assert text.startswith("--- a/file\n+++ b/file\n")


def test_generate_is_deterministic_and_empty_for_identical_inputs() -> None:
    assert diff_engine.generate(ORIGINAL, _modified()) == diff_engine.generate(ORIGINAL, _modified())
    unchanged = diff_engine.generate(ORIGINAL, ORIGINAL, from_file="a/x.ts", to_file="b/x.ts")
    assert unchanged == "--- a/x.ts\n+++ b/x.ts\n"
    assert diff_engine.apply(ORIGINAL, unchanged) == ORIGINAL


@pytest.mark.parametrize(
    ("original", "modified"),
    [
        (ORIGINAL, _modified()),
        ("a\nb\nc", "a\nx\nc"),
        ("a\nb\nc\n", "a\nb\nc"),
        ("a\nb\nc", "a\nb\nc\n"),
        ("", "fresh file\nwith two lines\n"),
        ("to be removed\n", ""),
        ("one\n", "zero\none\ntwo\n"),
        ("x\r\ny\r\n", "x\r\nz\r\n"),
    ],
)
def test_apply_and_reverse_round_trip(original: str, modified: str) -> None:
    patch = diff_engine.generate(original, modified)
    assert diff_engine.apply(original, patch) == modified
    assert diff_engine.apply(modified, diff_engine.reverse(patch)) == original


def test_zero_context_round_trip() -> None:
    patch = diff_engine.generate(ORIGINAL, _modified(), context=0)
    assert diff_engine.apply(ORIGINAL, patch) == _modified()
    assert diff_engine.apply(_modified(), diff_engine.reverse(patch)) == ORIGINAL


def test_missing_trailing_newline_is_marked() -> None:
    patch = diff_engine.generate("a\nb", "a\nc")
    assert patch.splitlines()[-4:] == ["-b", NO_NEWLINE_MARKER, "+c", NO_NEWLINE_MARKER]
    document = diff_engine.parse(patch)
    assert [line.newline for line in document.hunks[0].lines] == [True, False, False]


def test_reverse_swaps_headers_ranges_and_lines() -> None:
    patch = diff_engine.generate("a\nb\nc\n", "a\nx\ny\nc\n", from_file="a/app.ts", to_file="b/app.ts")
    reversed_patch = diff_engine.reverse(patch)

    assert reversed_patch.splitlines() == [
        "--- b/app.ts",
        "+++ a/app.ts",
        "@@ -1,4 +1,3 @@",
        " a",
        "-x",
        "-y",
        "+b",
        " c",
    ]


def test_apply_tolerates_shifted_context() -> None:
    patch = diff_engine.generate(ORIGINAL, _modified())
    shifted = "header 1\nheader 2\n" + ORIGINAL
    assert diff_engine.apply(shifted, patch) == "header 1\nheader 2\n" + _modified()


def test_conflicting_context_raises_and_applies_nothing() -> None:
    patch = diff_engine.generate(ORIGINAL, _modified())
    drifted = ORIGINAL.replace("line 16\n", "line sixteen\n")
    with pytest.raises(PatchConflict) as excinfo:
        diff_engine.apply(drifted, patch)
    assert excinfo.value.code == "patch_conflict"
    assert excinfo.value.details["hunk"] == 2


def test_ambiguous_context_is_a_conflict() -> None:
    patch = textwrap.dedent(
        """\
        --- a/f
        +++ b/f
        @@ -10,2 +10,2 @@
         same
        -old
        +new
        """
    )
    text = "same\nold\nother\nsame\nold\n"
    with pytest.raises(PatchConflict) as excinfo:
        diff_engine.apply(text, patch)
    assert excinfo.value.details["candidates"] == [1, 4]


def test_malformed_diffs_raise_apply_error() -> None:
    with pytest.raises(ApplyError):
        diff_engine.apply("a\n", "")
    with pytest.raises(ApplyError):
        diff_engine.apply("a\n", "just some prose\n")
    with pytest.raises(ApplyError):
        diff_engine.apply("a\nb\n", "--- a/f\n+++ b/f\n@@ -1,3 +1,3 @@\n a\n-b\n+c\n")
    with pytest.raises(ApplyError):
        diff_engine.apply("a\n", "--- a/f\n+++ b/f\n@@ -1 +1 @ broken\n")


def test_headers_without_hunks_are_a_no_op() -> None:
    assert diff_engine.apply("keep\n", "--- a/f\n+++ b/f\n") == "keep\n"


def test_validate_accepts_generated_diffs() -> None:
    result = diff_engine.validate(diff_engine.generate(ORIGINAL, _modified()))
    assert result.valid
    assert result.errors == []


def test_validate_reports_structural_problems() -> None:
    missing_headers = diff_engine.validate("@@ -1,1 +1,1 @@\n-a\n+b\n")
    assert not missing_headers.valid
    assert "missing '---' file header" in missing_headers.errors
    assert "missing '+++' file header" in missing_headers.errors

    no_hunks = diff_engine.validate("--- a/f\n+++ b/f\n")
    assert any("no hunk header" in error for error in no_hunks.errors)

    bad_prefix = diff_engine.validate("--- a/f\n+++ b/f\n@@ -1,2 +1,2 @@\n a\n\n-b\n+c\n")
    assert not bad_prefix.valid
    assert any("no ' ', '+' or '-' prefix" in error for error in bad_prefix.errors)

    short = diff_engine.validate("--- a/f\n+++ b/f\n@@ -1,3 +1,3 @@\n a\n-b\n+c\n")
    assert any("ended early" in error for error in short.errors)

    assert diff_engine.validate("").errors == ["diff text is empty"]


def test_parse_defaults_missing_counts_to_one() -> None:
    document = diff_engine.parse("--- a/f\n+++ b/f\n@@ -3 +3 @@\n-x\n+y\n")
    hunk = document.hunks[0]
    assert (hunk.old_start, hunk.old_lines, hunk.new_start, hunk.new_lines) == (3, 1, 3, 1)
    assert [line.type for line in hunk.lines] == [LineType.REMOVE, LineType.ADD]


def test_parse_ignores_git_preamble_and_timestamps() -> None:
    patch = "diff --git a/f b/f\nindex 123..456 100644\n--- a/f\t2024-01-01 00:00:00\n+++ b/f\t2024-01-02\n@@ -1 +1 @@\n-x\n+y\n"
    document = diff_engine.parse(patch)
    assert document.old_file == "a/f"
    assert document.new_file == "b/f"
    assert diff_engine.apply("x\n", patch) == "y\n"


def test_stats_counts_lines_but_not_headers() -> None:
    patch = diff_engine.generate("--- keep\nb\n", "--- keep\nc\nd\n")
    stats = diff_engine.stats(patch)
    assert stats.to_dict() == {"additions": 2, "deletions": 1}


def test_engine_facade_uses_its_context() -> None:
    engine = DiffEngine(context=1)
    patch = engine.generate(ORIGINAL, _modified())
    assert engine.validate(patch).valid
    assert engine.apply(ORIGINAL, patch) == _modified()
    assert engine.stats(patch).additions == 2
    assert len(engine.parse(patch).hunks) == 3
