from __future__ import annotations

from pathlib import Path

import pytest

from devsandbox.config import SandboxSettings
from devsandbox.errors import ValidationError
from devsandbox.utils.naming import normalize_project_name
from devsandbox.workspace import ExecutionHandle, WorkspaceStatus, create_workspace_context, resolve_workspace_root


def _settings(tmp_path: Path, **overrides) -> SandboxSettings:
    return SandboxSettings(workspace_root_pattern=str(tmp_path / "ws" / "{project}"), **overrides)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("my-app", "my_app"),
        ("my_app", "my_app"),
        ("  Shop Front!! ", "Shop_Front"),
        ("v1.2-beta", "v1.2_beta"),
        ("..", "project"),
        ("../../etc", ".._.._etc"),
    ],
)
def test_normalize_project_name(raw: str, expected: str) -> None:
    assert normalize_project_name(raw) == expected


def test_hyphen_and_underscore_share_a_workspace(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    assert resolve_workspace_root("my-app", settings) == resolve_workspace_root("my_app", settings)
    assert resolve_workspace_root("my-app", settings) == tmp_path / "ws" / "my_app"


def test_create_workspace_context(tmp_path: Path) -> None:
    ctx = create_workspace_context("web-shop", _settings(tmp_path, launcher=["env"]), create=True)

    assert ctx.project_name == "web_shop"
    assert ctx.workspace_root.is_dir()
    assert ctx.execution_handle.launcher == ("env",)
    assert ctx.status is WorkspaceStatus.STOPPED
    assert ctx.with_status(WorkspaceStatus.RUNNING).status is WorkspaceStatus.RUNNING
    assert ctx.key == str(ctx.workspace_root.resolve())


def test_context_is_not_created_unless_asked(tmp_path: Path) -> None:
    ctx = create_workspace_context("lazy", _settings(tmp_path))
    assert not ctx.workspace_root.exists()


@pytest.mark.parametrize("name", ["", "   "])
def test_empty_project_name_is_rejected(tmp_path: Path, name: str) -> None:
    with pytest.raises(ValidationError) as excinfo:
        create_workspace_context(name, _settings(tmp_path))
    assert excinfo.value.rule == "WS001"


def test_execution_handle_wraps_argv_and_merges_env() -> None:
    handle = ExecutionHandle(name="box", launcher=("docker", "exec", "-i", "box"), env={"CI": "1"})
    assert handle.wrap(["npm", "test"]) == ["docker", "exec", "-i", "box", "npm", "test"]
    assert handle.environment()["CI"] == "1"
    assert "PATH" in handle.environment()
