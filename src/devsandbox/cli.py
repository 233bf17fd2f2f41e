"""CLI commands for operating a sandboxed project workspace."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .config import DEFAULT_CONFIG_PATH, DEFAULT_CONFIG_TEMPLATE, SandboxSettings, load_settings
from .errors import ConfigError, SandboxError
from .policy.commands import COMMAND_RULES, CommandSafetyClassifier
from .policy.paths import PATH_RULES, PathConfinementValidator
from .policy.rules import explain_rule
from .router import ToolName, ToolResult, ToolRouter
from .tools import diff as diff_engine
from .utils.telemetry import serialise_event_value
from .workspace import WorkspaceContext, create_workspace_context

APP_HELP = "Sandboxed dev-workspace tooling: path and command checks, bounded execution, dev server and diffs."
DEFAULT_CONFIG_NAME = str(DEFAULT_CONFIG_PATH)
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(help=APP_HELP)
devserver_app = typer.Typer(help="Manage the workspace dev server.")
diff_app = typer.Typer(help="Generate, apply and inspect unified diffs.")
app.add_typer(devserver_app, name="devserver")
app.add_typer(diff_app, name="diff")

_CONFIG_OPTION = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file.")
_PROJECT_OPTION = typer.Option(..., "--project", "-p", help="Project whose workspace to use.")
_EXPLAIN_OPTION = typer.Option(False, "--explain", help="Add the title and detail of the rejecting rule.")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)."),
) -> None:
    """Configure logging before running a command."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _load(config: str) -> SandboxSettings:
    try:
        return load_settings(Path(config))
    except ConfigError as error:
        typer.echo(f"Failed to load config: {error}", err=True)
        raise typer.Exit(code=1) from error


def _context(project: str, settings: SandboxSettings, *, create: bool = False) -> WorkspaceContext:
    try:
        return create_workspace_context(project, settings, create=create)
    except SandboxError as error:
        raise typer.BadParameter(str(error), param_hint="--project") from error


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, default=serialise_event_value))


def _report(result: ToolResult) -> None:
    """Print ``result`` and exit non-zero when the tool failed."""
    _echo_json(result.to_dict())
    if not result.success:
        raise typer.Exit(code=1)


def _invoke(project: str, config: str, tool: ToolName, parameters: Dict[str, Any]) -> None:
    settings = _load(config)
    ctx = _context(project, settings, create=True)
    router = ToolRouter(ctx, settings=settings)
    _report(asyncio.run(router.invoke(tool, parameters)))


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as error:
        raise typer.BadParameter(f"Cannot read {path}: {error}") from error


@app.command("init-config")
def init_config(
    path: str = typer.Option(DEFAULT_CONFIG_NAME, "--path", help="Where to write the configuration file."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write a configuration file with the default sandbox settings."""
    target = Path(path)
    if target.exists() and not force:
        typer.echo(f"{target} already exists; use --force to overwrite.")
        raise typer.Exit(code=1)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    typer.echo(f"Wrote {target}")


@app.command("check-path")
def check_path(
    path: str = typer.Argument(..., help="Path to validate, absolute or workspace-relative."),
    project: str = _PROJECT_OPTION,
    config: str = _CONFIG_OPTION,
    explain: bool = _EXPLAIN_OPTION,
) -> None:
    """Check whether PATH is confined to the project's workspace."""
    settings = _load(config)
    ctx = _context(project, settings)
    check = PathConfinementValidator().validate(path, ctx.workspace_root)
    payload = check.to_dict()
    if explain:
        payload.update(explain_rule(PATH_RULES, check.rule))
    _echo_json(payload)
    if not check.ok:
        raise typer.Exit(code=1)


@app.command()
def classify(
    command: List[str] = typer.Argument(..., help="Command line to classify."),
    explain: bool = _EXPLAIN_OPTION,
) -> None:
    """Classify a command as safe or unsafe without running it."""
    text = command[0] if len(command) == 1 else command
    result = CommandSafetyClassifier().classify(text)
    payload = result.to_dict()
    if explain:
        payload.update(explain_rule(COMMAND_RULES, result.rule))
    _echo_json(payload)
    if result.unsafe:
        raise typer.Exit(code=1)


@app.command()
def run(
    command: str = typer.Argument(..., help="Command line to run inside the workspace."),
    project: str = _PROJECT_OPTION,
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Workspace-relative working directory."),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout-ms", min=1, help="Wall-clock limit."),
    streaming: bool = typer.Option(False, "--streaming", help="Truncate large output instead of failing."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Classify COMMAND and run it with the configured bounds."""
    parameters: Dict[str, Any] = {"command": command, "working_directory": cwd, "timeout_ms": timeout_ms}
    if streaming:
        parameters["strategy"] = "streaming"
    _invoke(project, config, ToolName.RUN_COMMAND, parameters)


@app.command("tail-logs")
def tail_logs(
    project: str = _PROJECT_OPTION,
    lines: Optional[int] = typer.Option(None, "--lines", "-n", help="Number of lines (capped at 10000)."),
    keyword: Optional[str] = typer.Option(None, "--keyword", "-k", help="Case-insensitive filter."),
    log_file: Optional[str] = typer.Option(None, "--file", help="Log file name inside the log directory."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Print the end of the dev server log."""
    _invoke(project, config, ToolName.READ_LOG_TAIL, {"lines": lines, "keyword": keyword, "log_file": log_file})


@devserver_app.command("status")
def devserver_status(project: str = _PROJECT_OPTION, config: str = _CONFIG_OPTION) -> None:
    """Report whether the dev server is running and where."""
    _invoke(project, config, ToolName.DEV_SERVER_STATUS, {})


@devserver_app.command("start")
def devserver_start(project: str = _PROJECT_OPTION, config: str = _CONFIG_OPTION) -> None:
    """Start the dev server unless it is already running."""
    _invoke(project, config, ToolName.DEV_SERVER_START, {})


@devserver_app.command("stop")
def devserver_stop(project: str = _PROJECT_OPTION, config: str = _CONFIG_OPTION) -> None:
    """Stop every dev server process of the workspace."""
    _invoke(project, config, ToolName.DEV_SERVER_STOP, {})


@devserver_app.command("restart")
def devserver_restart(
    project: str = _PROJECT_OPTION,
    reason: str = typer.Option("", "--reason", help="Why the restart is needed."),
    config: str = _CONFIG_OPTION,
) -> None:
    """Restart the dev server, subject to cooldown and restart budget."""
    _invoke(project, config, ToolName.DEV_SERVER_RESTART, {"reason": reason})


@diff_app.command("make")
def diff_make(
    original: Path = typer.Argument(..., help="Original file."),
    modified: Path = typer.Argument(..., help="Modified file."),
    context: int = typer.Option(3, "--context", "-U", min=0, help="Lines of context."),
) -> None:
    """Print a unified diff from ORIGINAL to MODIFIED."""
    text = diff_engine.generate(
        _read_text(original),
        _read_text(modified),
        context,
        from_file=f"a/{original.name}",
        to_file=f"b/{modified.name}",
    )
    typer.echo(text, nl=False)


@diff_app.command("apply")
def diff_apply(
    target: Path = typer.Argument(..., help="File to patch."),
    patch: Path = typer.Argument(..., help="Unified diff to apply."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the result here instead of stdout."),
    in_place: bool = typer.Option(False, "--in-place", help="Overwrite TARGET with the result."),
) -> None:
    """Apply PATCH to TARGET; nothing is written unless every hunk applies."""
    try:
        updated = diff_engine.apply(_read_text(target), _read_text(patch))
    except SandboxError as error:
        typer.echo(f"Error [{error.code}]: {error}", err=True)
        raise typer.Exit(code=1) from error
    destination = target if in_place else output
    if destination is None:
        typer.echo(updated, nl=False)
        return
    try:
        destination.write_text(updated, encoding="utf-8")
    except OSError as error:
        typer.echo(f"Failed to write {destination}: {error}", err=True)
        raise typer.Exit(code=1) from error
    typer.echo(f"Wrote {destination}")


@diff_app.command("reverse")
def diff_reverse(patch: Path = typer.Argument(..., help="Unified diff to invert.")) -> None:
    """Print the diff that undoes PATCH."""
    try:
        typer.echo(diff_engine.reverse(_read_text(patch)), nl=False)
    except SandboxError as error:
        typer.echo(f"Error [{error.code}]: {error}", err=True)
        raise typer.Exit(code=1) from error


@diff_app.command("stats")
def diff_stats(patch: Path = typer.Argument(..., help="Unified diff to count.")) -> None:
    """Print added and removed line counts."""
    try:
        _echo_json(diff_engine.stats(_read_text(patch)).to_dict())
    except SandboxError as error:
        typer.echo(f"Error [{error.code}]: {error}", err=True)
        raise typer.Exit(code=1) from error


@diff_app.command("check")
def diff_check(patch: Path = typer.Argument(..., help="Unified diff to validate.")) -> None:
    """Validate the structure of PATCH without applying it."""
    result = diff_engine.validate(_read_text(patch))
    _echo_json(result.to_dict())
    if not result.valid:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
