"""Bounded auto-repair loop.

The loop repeatedly invokes a caller-supplied async step (one agent turn that
performs tool calls), assesses the outcome and decides whether to stop, ask
the user, or grant another repair attempt.  It always terminates within
``max_attempts + 1`` iterations.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List

from .config import SandboxSettings
from .errors import SandboxError
from .utils.telemetry import emit_event

LOGGER = logging.getLogger(__name__)

_ERROR_SIGNALS = re.compile(r"\b(?:error|errors|failed|failure|failing|exception|traceback|problem|problems)\b", re.IGNORECASE)
_FAILED_CALLS_FOR_HIGH_RISK = 2


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class RepairStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_USER = "awaiting_user"

    @property
    def terminal(self) -> bool:
        return self is not RepairStatus.IN_PROGRESS


@dataclass(slots=True)
class ToolCallRecord:
    """One tool call made during a step."""

    tool_name: str
    success: bool
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {"tool_name": self.tool_name, "success": self.success, "error": self.error}


@dataclass(slots=True)
class StepResult:
    """What a single agent turn reports back to the loop.

    ``risk_level`` and ``needs_repair`` are optional overrides from a caller
    that classified the turn itself.  A caller risk can only raise the
    assessed level.
    """

    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    response_text: str = ""
    risk_level: RiskLevel | None = None
    needs_repair: bool | None = None

    @property
    def failed_calls(self) -> List[ToolCallRecord]:
        return [call for call in self.tool_calls if not call.success]


@dataclass(slots=True)
class Assessment:
    needs_repair: bool
    risk_level: RiskLevel
    reason: str
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "needs_repair": self.needs_repair,
            "risk_level": self.risk_level.value,
            "reason": self.reason,
            "issues": list(self.issues),
        }


@dataclass(slots=True)
class RepairSession:
    """Mutable state of one repair run; terminal once ``status`` leaves in-progress."""

    max_attempts: int = 3
    attempt: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    status: RepairStatus = RepairStatus.IN_PROGRESS
    reason: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "risk_level": self.risk_level.value,
            "status": self.status.value,
            "reason": self.reason,
        }


@dataclass(slots=True)
class RepairCycle:
    """Telemetry for a single iteration."""

    index: int
    instruction: str
    assessment: Assessment
    status: RepairStatus
    tool_calls: List[ToolCallRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "instruction": self.instruction,
            "assessment": self.assessment.to_dict(),
            "status": self.status.value,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
        }


@dataclass(slots=True)
class RepairOutcome:
    session: RepairSession
    cycles: List[RepairCycle] = field(default_factory=list)
    message: str = ""
    next_steps: List[str] = field(default_factory=list)
    concerns: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.session.status is RepairStatus.COMPLETED

    @property
    def status(self) -> RepairStatus:
        return self.session.status

    @property
    def iterations(self) -> int:
        return len(self.cycles)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "cycles": [cycle.to_dict() for cycle in self.cycles],
            "message": self.message,
            "next_steps": list(self.next_steps),
            "concerns": list(self.concerns),
        }


@dataclass(slots=True)
class RepairSettings:
    """Runtime configuration for the auto-repair loop."""

    max_attempts: int = 3
    backoff_seconds: float = 0.0

    @classmethod
    def from_settings(cls, settings: SandboxSettings) -> "RepairSettings":
        return cls(max_attempts=settings.max_repair_attempts)


StepFunction = Callable[[str, RepairSession], Awaitable[StepResult]]


def assess(result: StepResult) -> Assessment:
    """Decide whether ``result`` needs another repair and how risky it is."""

    failed = result.failed_calls
    issues = [f"Tool {call.tool_name} failed: {call.error or 'unknown error'}" for call in failed]
    if failed:
        risk = RiskLevel.HIGH if len(failed) > _FAILED_CALLS_FOR_HIGH_RISK else RiskLevel.MEDIUM
        assessment = Assessment(True, risk, f"{len(failed)} tool call(s) failed", issues)
    elif _ERROR_SIGNALS.search(result.response_text or ""):
        assessment = Assessment(True, RiskLevel.LOW, "The response reports errors or problems.", issues)
    else:
        assessment = Assessment(False, RiskLevel.LOW, "Task completed; no further repair needed.", issues)

    if result.needs_repair is not None and result.needs_repair != assessment.needs_repair:
        assessment.needs_repair = result.needs_repair
        assessment.reason = "Caller marked the step as needing repair." if result.needs_repair else "Caller marked the step as complete."
    if result.risk_level is not None and result.risk_level.rank > assessment.risk_level.rank:
        assessment.risk_level = result.risk_level
    return assessment


def follow_up_instruction(assessment: Assessment) -> str:
    """Build the instruction for the next repair iteration."""

    lines = ["Please repair the following problems automatically.", "", "Detected issues:"]
    if assessment.issues:
        lines.extend(f"- {issue}" for issue in assessment.issues)
    else:
        lines.append("- (no failing tool calls; see the previous response)")
    lines.extend(["", f"Goal: {assessment.reason}", "", "Analyse the cause, plan a fix and apply it."])
    return "\n".join(lines)


def _final_message(session: RepairSession) -> str:
    if session.status is RepairStatus.COMPLETED:
        return f"Task completed after {session.attempt} automatic repair(s)."
    if session.status is RepairStatus.AWAITING_USER:
        return "Waiting for the user: a decision is needed before continuing."
    if session.reason == "aborted":
        return "Auto-repair aborted."
    return f"Auto-repair failed: the problem persisted after {session.max_attempts} repair attempt(s)."


def _next_steps(session: RepairSession) -> List[str]:
    if session.status is RepairStatus.COMPLETED:
        return ["Continue with the next task."]
    if session.status is RepairStatus.AWAITING_USER:
        return ["Review the changes made so far.", "Confirm whether further adjustments are needed."]
    return ["Check the error logs.", "Consider resolving the problem manually."]


def _concerns(session: RepairSession) -> List[str]:
    concerns: List[str] = []
    if session.attempt >= 2:
        concerns.append("Several repair attempts were needed; the problem may be complex.")
    if session.risk_level is RiskLevel.HIGH:
        concerns.append("High-risk situation; a manual review is recommended.")
    return concerns


class AutoRepairLoop:
    """Drive a step function until it completes, escalates or runs out of budget."""

    def __init__(
        self,
        settings: RepairSettings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or RepairSettings()
        self._sleep = sleep

    async def run(
        self,
        instruction: str,
        step: StepFunction,
        *,
        abort: asyncio.Event | None = None,
    ) -> RepairOutcome:
        session = RepairSession(max_attempts=self.settings.max_attempts)
        outcome = RepairOutcome(session=session)
        current = instruction

        while not session.status.terminal:
            if abort is not None and abort.is_set():
                session.status = RepairStatus.FAILED
                session.reason = "aborted"
                LOGGER.info("Auto-repair aborted before iteration %d", outcome.iterations + 1)
                break
            if outcome.cycles and self.settings.backoff_seconds > 0:
                await self._sleep(self.settings.backoff_seconds)

            index = outcome.iterations + 1
            try:
                result = await step(current, session)
            except SandboxError as error:
                LOGGER.warning("Repair step %d raised %s: %s", index, error.code, error)
                result = StepResult(tool_calls=[ToolCallRecord("step", False, f"{error.code}: {error}")])

            assessment = assess(result)
            session.risk_level = assessment.risk_level
            if not assessment.needs_repair:
                session.status = RepairStatus.COMPLETED
                session.reason = assessment.reason
            elif assessment.risk_level is RiskLevel.HIGH:
                session.status = RepairStatus.AWAITING_USER
                session.reason = assessment.reason
            elif session.attempt >= session.max_attempts:
                session.status = RepairStatus.FAILED
                session.reason = f"Repair budget of {session.max_attempts} attempt(s) exhausted: {assessment.reason}"
            else:
                session.attempt += 1
                LOGGER.info("Granting repair attempt %d/%d: %s", session.attempt, session.max_attempts, assessment.reason)

            outcome.cycles.append(
                RepairCycle(
                    index=index,
                    instruction=current,
                    assessment=assessment,
                    status=session.status,
                    tool_calls=list(result.tool_calls),
                )
            )
            emit_event(
                "repair_cycle",
                index=index,
                status=session.status,
                attempt=session.attempt,
                risk_level=assessment.risk_level,
                needs_repair=assessment.needs_repair,
                reason=assessment.reason,
            )
            if not session.status.terminal:
                current = follow_up_instruction(assessment)

        outcome.message = _final_message(session)
        outcome.next_steps = _next_steps(session)
        outcome.concerns = _concerns(session)
        emit_event("repair_finished", **session.to_dict(), iterations=outcome.iterations)
        return outcome


__all__ = [
    "Assessment",
    "AutoRepairLoop",
    "RepairCycle",
    "RepairOutcome",
    "RepairSession",
    "RepairSettings",
    "RepairStatus",
    "RiskLevel",
    "StepResult",
    "ToolCallRecord",
    "assess",
    "follow_up_instruction",
]
