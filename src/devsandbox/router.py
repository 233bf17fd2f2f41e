"""Dispatch boundary mapping tool names to their concrete implementations.

Parameters are validated against a closed set of pydantic records before any
side effect runs.  Every :class:`SandboxError` and every parameter failure is
converted into a structured :class:`ToolResult`; only programming errors
propagate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.type_adapter import TypeAdapter

from .config import SandboxSettings
from .errors import SandboxError
from .policy.commands import CommandSafetyClassifier
from .policy.paths import PathConfinementValidator
from .tools.devserver import DevServerSupervisor, SupervisorRegistry
from .tools.executor import BoundedExecutor, CommandRequest, ExecutorPrimitive, WorkspacePrimitive
from .tools.files import WorkspaceFiles
from .tools.logs import LogMonitor
from .utils.telemetry import emit_event
from .workspace import WorkspaceContext

LOGGER = logging.getLogger(__name__)

_SHELL_METACHARACTERS = frozenset("|&;<>()$`*?[]{}~\n")


class ToolName(str, Enum):
    """Tools exposed to the agent."""

    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    LIST_DIRECTORY = "list_directory"
    RUN_COMMAND = "run_command"
    PROPOSE_DIFF = "propose_diff"
    APPLY_DIFF = "apply_diff"
    DEV_SERVER_START = "dev_server_start"
    DEV_SERVER_STOP = "dev_server_stop"
    DEV_SERVER_RESTART = "dev_server_restart"
    DEV_SERVER_STATUS = "dev_server_status"
    DEV_SERVER_HEALTH = "dev_server_health"
    READ_LOG_TAIL = "read_log_tail"
    SEARCH_ERROR_LOGS = "search_error_logs"
    LIST_LOG_FILES = "list_log_files"


class _Params(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NoParams(_Params):
    pass


class ReadFileParams(_Params):
    path: str


class WriteFileParams(_Params):
    path: str
    content: str


class ListDirectoryParams(_Params):
    path: str = "."
    recursive: bool = False
    show_hidden: bool = False


class RunCommandParams(_Params):
    command: str | List[str]
    working_directory: str | None = None
    timeout_ms: int | None = Field(default=None, gt=0)
    strategy: Literal["buffered", "streaming"] | None = None


class ProposeDiffParams(_Params):
    path: str
    new_content: str
    context: int = Field(default=3, ge=0)


class ApplyDiffParams(_Params):
    path: str
    diff: str


class DevServerRestartParams(_Params):
    reason: str = ""


class DevServerHealthParams(_Params):
    port: int | None = Field(default=None, gt=0, lt=65536)


class ReadLogTailParams(_Params):
    lines: int | None = None
    log_file: str | None = None
    keyword: str | None = None


class SearchErrorLogsParams(_Params):
    keyword: str = "error"
    lines: int = Field(default=1_000, gt=0)
    limit: int = Field(default=100, gt=0)
    log_file: str | None = None


@dataclass(slots=True)
class ToolResult:
    """Structured outcome returned to the agent for every tool call."""

    success: bool
    data: Any = None
    error: str | None = None
    message: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        if self.message is not None:
            payload["message"] = self.message
        return payload


ToolRunner = Callable[[Any], Awaitable[ToolResult]]


@dataclass(slots=True)
class ToolEntry:
    """Metadata describing how to execute a single tool."""

    request_model: type[BaseModel]
    runner: ToolRunner


def _command_argv(command: str | List[str]) -> List[str]:
    if isinstance(command, list):
        return [str(part) for part in command]
    if any(char in _SHELL_METACHARACTERS for char in command):
        return ["sh", "-c", command]
    return list(CommandRequest.from_string(command).argv)


class ToolRouter:
    """Dispatch table mapping tool names to handlers bound to one workspace."""

    def __init__(
        self,
        ctx: WorkspaceContext,
        *,
        settings: SandboxSettings | None = None,
        executor: BoundedExecutor | None = None,
        primitive: WorkspacePrimitive | None = None,
        validator: PathConfinementValidator | None = None,
        classifier: CommandSafetyClassifier | None = None,
        supervisors: SupervisorRegistry | None = None,
    ) -> None:
        self._ctx = ctx
        self._settings = settings or SandboxSettings()
        self._validator = validator or PathConfinementValidator()
        self._classifier = classifier or CommandSafetyClassifier()
        self._executor = executor or BoundedExecutor(self._settings, validator=self._validator)
        self._primitive = primitive or ExecutorPrimitive(self._executor)
        self._files = WorkspaceFiles(ctx, settings=self._settings, validator=self._validator)
        self._logs = LogMonitor(ctx, primitive=self._primitive, settings=self._settings, validator=self._validator)
        self._supervisors = supervisors or SupervisorRegistry(self._make_supervisor)
        self._registry: Dict[ToolName, ToolEntry] = {
            ToolName.READ_FILE: ToolEntry(ReadFileParams, self._read_file),
            ToolName.WRITE_FILE: ToolEntry(WriteFileParams, self._write_file),
            ToolName.LIST_DIRECTORY: ToolEntry(ListDirectoryParams, self._list_directory),
            ToolName.RUN_COMMAND: ToolEntry(RunCommandParams, self._run_command),
            ToolName.PROPOSE_DIFF: ToolEntry(ProposeDiffParams, self._propose_diff),
            ToolName.APPLY_DIFF: ToolEntry(ApplyDiffParams, self._apply_diff),
            ToolName.DEV_SERVER_START: ToolEntry(NoParams, self._dev_server_start),
            ToolName.DEV_SERVER_STOP: ToolEntry(NoParams, self._dev_server_stop),
            ToolName.DEV_SERVER_RESTART: ToolEntry(DevServerRestartParams, self._dev_server_restart),
            ToolName.DEV_SERVER_STATUS: ToolEntry(NoParams, self._dev_server_status),
            ToolName.DEV_SERVER_HEALTH: ToolEntry(DevServerHealthParams, self._dev_server_health),
            ToolName.READ_LOG_TAIL: ToolEntry(ReadLogTailParams, self._read_log_tail),
            ToolName.SEARCH_ERROR_LOGS: ToolEntry(SearchErrorLogsParams, self._search_error_logs),
            ToolName.LIST_LOG_FILES: ToolEntry(NoParams, self._list_log_files),
        }

    @property
    def supervisor(self) -> DevServerSupervisor:
        return self._supervisors.get(self._ctx)

    def available_tools(self) -> Iterable[ToolName]:
        """Return the tools currently registered with the router."""
        return self._registry.keys()

    async def invoke(self, tool_name: ToolName | str, parameters: Mapping[str, Any] | BaseModel | None = None) -> ToolResult:
        """Validate ``parameters`` for ``tool_name`` and run the tool."""

        try:
            name = self._normalize_tool(tool_name)
        except KeyError as error:
            return ToolResult(success=False, error="unknown_tool", message=error.args[0])
        entry = self._registry[name]
        try:
            request = self._coerce_payload(parameters, entry.request_model)
        except ValueError as error:
            return ToolResult(success=False, error="invalid_parameters", message=str(error))

        try:
            result = await entry.runner(request)
        except SandboxError as error:
            LOGGER.info("Tool %s failed with %s: %s", name.value, error.code, error)
            emit_event("tool_failed", tool=name, error=error.code, message=str(error))
            return ToolResult(success=False, data=error.details or None, error=error.code, message=str(error))
        emit_event("tool_invoked", tool=name, success=result.success)
        return result

    @staticmethod
    def _normalize_tool(tool: ToolName | str) -> ToolName:
        """Resolve ``tool`` into a concrete ``ToolName`` enum member."""
        if isinstance(tool, ToolName):
            return tool
        try:
            return ToolName(tool)
        except ValueError as error:
            valid = ", ".join(item.value for item in ToolName)
            raise KeyError(f"Unknown tool '{tool}'. Expected one of: {valid}") from error

    @staticmethod
    def _coerce_payload(payload: Any, request_type: type[BaseModel]) -> BaseModel:
        """Validate or convert ``payload`` into the ``request_type`` instance."""
        if isinstance(payload, request_type):
            return payload
        adapter = TypeAdapter(request_type)
        try:
            return adapter.validate_python(payload if payload is not None else {})
        except ValidationError as error:
            raise ValueError(f"Parameters for {request_type.__name__} did not validate: {error}") from error

    def _make_supervisor(self, ctx: WorkspaceContext) -> DevServerSupervisor:
        return DevServerSupervisor(ctx, primitive=self._primitive, settings=self._settings, classifier=self._classifier)

    async def _read_file(self, params: ReadFileParams) -> ToolResult:
        content = self._files.read_file(params.path)
        return ToolResult(success=True, data=content.to_dict())

    async def _write_file(self, params: WriteFileParams) -> ToolResult:
        edit = self._files.write_file(params.path, params.content)
        verb = "Created" if edit.created else "Updated"
        return ToolResult(success=True, data=edit.to_dict(), message=f"{verb} {edit.path}")

    async def _list_directory(self, params: ListDirectoryParams) -> ToolResult:
        listing = self._files.list_directory(params.path, recursive=params.recursive, show_hidden=params.show_hidden)
        return ToolResult(success=True, data=listing.to_dict())

    async def _run_command(self, params: RunCommandParams) -> ToolResult:
        self._classifier.require(params.command)
        argv = _command_argv(params.command)
        result = await self._executor.execute(
            self._ctx,
            CommandRequest(argv=tuple(argv), working_directory=params.working_directory),
            timeout_ms=params.timeout_ms,
            strategy=params.strategy,
        )
        message = "Output truncated at the byte cap." if result.truncated else None
        return ToolResult(success=True, data=result.to_dict(), message=message)

    async def _propose_diff(self, params: ProposeDiffParams) -> ToolResult:
        patch = self._files.propose_diff(params.path, params.new_content, context=params.context)
        return ToolResult(success=True, data={"path": params.path, "diff": patch})

    async def _apply_diff(self, params: ApplyDiffParams) -> ToolResult:
        edit = self._files.apply_diff(params.path, params.diff)
        return ToolResult(
            success=True,
            data=edit.to_dict(),
            message=f"Applied diff to {edit.path} (+{edit.additions}/-{edit.deletions})",
        )

    async def _dev_server_start(self, params: NoParams) -> ToolResult:
        outcome = await self.supervisor.start()
        return ToolResult(success=True, data=outcome.to_dict(), message=outcome.message)

    async def _dev_server_stop(self, params: NoParams) -> ToolResult:
        outcome = await self.supervisor.stop()
        return ToolResult(success=True, data=outcome.to_dict(), message=outcome.message)

    async def _dev_server_restart(self, params: DevServerRestartParams) -> ToolResult:
        outcome = await self.supervisor.restart(params.reason)
        return ToolResult(success=True, data=outcome.to_dict(), message=outcome.message)

    async def _dev_server_status(self, params: NoParams) -> ToolResult:
        supervisor = self.supervisor
        status = await supervisor.status()
        data = status.to_dict()
        data["phase"] = supervisor.phase.value
        data["restart_state"] = supervisor.restart_state.to_dict()
        return ToolResult(success=True, data=data)

    async def _dev_server_health(self, params: DevServerHealthParams) -> ToolResult:
        report = await self.supervisor.check_health(params.port)
        return ToolResult(success=report.healthy, data=report.to_dict(), message=report.detail)

    async def _read_log_tail(self, params: ReadLogTailParams) -> ToolResult:
        tail = await self._logs.tail(params.lines, log_file=params.log_file, keyword=params.keyword)
        message = None if tail.exists else f"{tail.log_file} does not exist yet."
        return ToolResult(success=True, data=tail.to_dict(), message=message)

    async def _search_error_logs(self, params: SearchErrorLogsParams) -> ToolResult:
        tail = await self._logs.search_errors(
            params.keyword,
            lines=params.lines,
            limit=params.limit,
            log_file=params.log_file,
        )
        return ToolResult(success=True, data=tail.to_dict(), message=f"{len(tail.lines)} matching line(s)")

    async def _list_log_files(self, params: NoParams) -> ToolResult:
        names = await self._logs.list_files()
        return ToolResult(success=True, data={"log_dir": self._settings.log_dir, "files": names})


__all__ = [
    "ApplyDiffParams",
    "DevServerHealthParams",
    "DevServerRestartParams",
    "ListDirectoryParams",
    "NoParams",
    "ProposeDiffParams",
    "ReadFileParams",
    "ReadLogTailParams",
    "RunCommandParams",
    "SearchErrorLogsParams",
    "ToolEntry",
    "ToolName",
    "ToolResult",
    "ToolRouter",
    "WriteFileParams",
]
