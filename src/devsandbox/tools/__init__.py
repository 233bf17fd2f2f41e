"""Tool integrations exposed to the agent runtime."""

from .devserver import DevServerSupervisor, RestartState, SupervisorPhase, SupervisorRegistry
from .diff import DiffEngine, DiffStats, DiffValidation
from .executor import BoundedExecutor, CommandRequest, ExecutionResult, ExecutorPrimitive, PrimitiveResult
from .files import WorkspaceFiles
from .logs import LogMonitor, LogTail

__all__ = [
    "BoundedExecutor",
    "CommandRequest",
    "DevServerSupervisor",
    "DiffEngine",
    "DiffStats",
    "DiffValidation",
    "ExecutionResult",
    "ExecutorPrimitive",
    "LogMonitor",
    "LogTail",
    "PrimitiveResult",
    "RestartState",
    "SupervisorPhase",
    "SupervisorRegistry",
    "WorkspaceFiles",
]
