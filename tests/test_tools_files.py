from __future__ import annotations

import pytest

from devsandbox.errors import FileAccessError, PatchConflict, ValidationError
from devsandbox.tools import diff as diff_engine
from devsandbox.tools.files import WorkspaceFiles


def _files(workspace, **kwargs) -> WorkspaceFiles:
    return WorkspaceFiles(workspace.ctx, settings=workspace.settings, **kwargs)


def test_read_file_returns_content_and_size(workspace) -> None:
    workspace.write("src/app.ts", "export const answer = 42;\n")
    content = _files(workspace).read_file("src/app.ts")

    assert content.path == "src/app.ts"
    assert content.content == "export const answer = 42;\n"
    assert content.size == len("export const answer = 42;\n")


def test_read_file_failures(workspace) -> None:
    files = _files(workspace, max_read_bytes=16)
    workspace.write("big.txt", "x" * 64)
    (workspace.root / "src").mkdir()
    (workspace.root / "blob.bin").write_bytes(b"\xff\xfe\x00")

    with pytest.raises(FileAccessError) as missing:
        files.read_file("nope.txt")
    assert missing.value.details["path"] == "nope.txt"
    with pytest.raises(FileAccessError):
        files.read_file("src")
    with pytest.raises(FileAccessError) as too_big:
        files.read_file("big.txt")
    assert too_big.value.details["limit"] == 16
    with pytest.raises(FileAccessError):
        files.read_file("blob.bin")


def test_paths_outside_the_workspace_are_refused(workspace, tmp_path) -> None:
    files = _files(workspace)
    outside = tmp_path / "outside.txt"

    with pytest.raises(ValidationError):
        files.read_file("../../outside.txt")
    with pytest.raises(ValidationError):
        files.write_file(str(outside), "escape")
    with pytest.raises(ValidationError):
        files.write_file(".env", "SECRET=1\n")
    assert not outside.exists()
    assert not (workspace.root / ".env").exists()


def test_write_file_creates_parents_and_reports_counts(workspace) -> None:
    files = _files(workspace)

    created = files.write_file("src/components/Button.tsx", "a\nb\n")
    assert created.created is True
    assert created.additions == 2
    assert created.deletions == 0
    assert (workspace.root / "src/components/Button.tsx").read_text(encoding="utf-8") == "a\nb\n"

    updated = files.write_file("src/components/Button.tsx", "a\nc\n")
    assert updated.created is False
    assert (updated.additions, updated.deletions) == (1, 1)
    assert "-b" in updated.diff and "+c" in updated.diff
    leftovers = [path.name for path in (workspace.root / "src/components").iterdir()]
    assert leftovers == ["Button.tsx"]


def test_propose_diff_does_not_touch_the_file(workspace) -> None:
    workspace.write("README.md", "# Demo\n")
    files = _files(workspace)

    patch = files.propose_diff("README.md", "# Demo app\n")

    assert patch.startswith("--- a/README.md\n+++ b/README.md\n")
    assert (workspace.root / "README.md").read_text(encoding="utf-8") == "# Demo\n"
    assert diff_engine.apply("# Demo\n", patch) == "# Demo app\n"


def test_apply_diff_updates_the_file(workspace) -> None:
    workspace.write("src/index.ts", "one\ntwo\nthree\n")
    files = _files(workspace)
    patch = files.propose_diff("src/index.ts", "one\n2\nthree\n")

    edit = files.apply_diff("src/index.ts", patch)

    assert edit.created is False
    assert (edit.additions, edit.deletions) == (1, 1)
    assert (workspace.root / "src/index.ts").read_text(encoding="utf-8") == "one\n2\nthree\n"


def test_apply_diff_can_create_a_file(workspace) -> None:
    files = _files(workspace)
    patch = diff_engine.generate("", "hello\n", from_file="a/new.txt", to_file="b/new.txt")

    edit = files.apply_diff("new.txt", patch)

    assert edit.created is True
    assert (workspace.root / "new.txt").read_text(encoding="utf-8") == "hello\n"


def test_conflicting_diff_leaves_the_file_unchanged(workspace) -> None:
    original = "".join(f"row {index}\n" for index in range(1, 21))
    path = workspace.write("data.txt", original)
    files = _files(workspace)
    modified = original.replace("row 3\n", "row three\n").replace("row 17\n", "row seventeen\n")
    patch = diff_engine.generate(original, modified)

    path.write_text(original.replace("row 18\n", "row eighteen\n"), encoding="utf-8")
    with pytest.raises(PatchConflict):
        files.apply_diff("data.txt", patch)

    assert "row 3\n" in path.read_text(encoding="utf-8")


def test_list_directory(workspace) -> None:
    workspace.write("package.json", "{}\n")
    workspace.write("src/app.ts", "")
    workspace.write("src/lib/util.ts", "")
    workspace.write(".gitignore", "node_modules\n")
    workspace.write("node_modules/react/index.js", "")
    files = _files(workspace)

    flat = files.list_directory()
    assert [entry.path for entry in flat.entries] == ["node_modules", "src", "package.json"]
    assert flat.entries[2].size == 3
    assert flat.entries[1].is_dir

    hidden = files.list_directory(show_hidden=True)
    assert ".gitignore" in [entry.path for entry in hidden.entries]

    deep = files.list_directory(recursive=True)
    paths = [entry.path for entry in deep.entries]
    assert "src/lib/util.ts" in paths
    assert "node_modules/react" not in paths

    capped = files.list_directory(recursive=True, limit=2)
    assert capped.truncated is True
    assert len(capped.entries) == 2


def test_list_directory_rejects_files_and_missing_paths(workspace) -> None:
    workspace.write("package.json", "{}\n")
    files = _files(workspace)
    with pytest.raises(FileAccessError):
        files.list_directory("package.json")
    with pytest.raises(FileAccessError):
        files.list_directory("missing")
