"""
Type definitions for Browser Operator.

Provides typed dataclasses for the data shapes that flow through the
control loop: goals, world state, step records, runs and responses.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class RunStatus(str, Enum):
    """Lifecycle status of a run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timedOut"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


@dataclass(frozen=True)
class Goal:
    """What the user wants done. Immutable once a run starts."""
    user_prompt: str
    start_url: Optional[str] = None
    max_steps: Optional[int] = None  # None: the operator default
    allowed_domains: Optional[tuple[str, ...]] = None
    constraints: tuple[str, ...] = ()
    success_criteria: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_prompt": self.user_prompt,
            "start_url": self.start_url,
            "max_steps": self.max_steps,
            "allowed_domains": list(self.allowed_domains) if self.allowed_domains else None,
            "constraints": list(self.constraints),
            "success_criteria": list(self.success_criteria),
        }


@dataclass(frozen=True)
class CandidateElement:
    """An interactive element ranked by selector stability.

    Attributes:
        selector: Selector the executor can act on
        label: Human-readable label (text, aria-label, placeholder...)
        role: Explicit or implicit ARIA role
        tier: Priority tier of the selector strategy (0 = most stable)
    """
    selector: str
    label: str
    role: str
    tier: int

    def to_dict(self) -> dict[str, Any]:
        return {"selector": self.selector, "label": self.label, "role": self.role}


@dataclass(frozen=True)
class WorldState:
    """Bounded snapshot of the browser at a cycle boundary.

    Recomputed fresh every cycle, never reused across cycles.
    """
    url: str
    title: str
    dom_summary: str
    candidates: tuple[CandidateElement, ...]
    step_index: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "dom_summary": self.dom_summary,
            "candidates": [c.to_dict() for c in self.candidates],
            "step_index": self.step_index,
            "timestamp": self.timestamp,
        }


@dataclass
class ActionResult:
    """Outcome of executing one tool call."""
    success: bool
    payload: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: int = 1
    screenshot_ref: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {"success": self.success, "attempts": self.attempts}
        if self.payload is not None:
            result["payload"] = self.payload
        if self.error is not None:
            result["error"] = self.error
            result["error_kind"] = self.error_kind
        if self.screenshot_ref is not None:
            result["screenshot_ref"] = self.screenshot_ref
        return result


@dataclass(frozen=True)
class StepRecord:
    """One append-only log entry per cycle."""
    step_index: int
    tool_call: dict[str, Any]
    result: dict[str, Any]
    duration_ms: int
    success: bool
    error: Optional[str] = None
    screenshot_ref: Optional[str] = None
    url: str = ""
    rationale: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def action(self) -> str:
        return self.tool_call.get("name", "unknown")

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_index": self.step_index,
            "timestamp": self.timestamp,
            "url": self.url,
            "rationale": self.rationale,
            "tool_call": self.tool_call,
            "result": self.result,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "screenshot_ref": self.screenshot_ref,
        }


@dataclass
class Run:
    """One execution of the control loop against a single goal.

    Owned by the orchestrator. The status becomes terminal exactly once.
    """
    goal: Goal
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.RUNNING
    steps: list[StepRecord] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    final_result: Optional[str] = None
    error: Optional[str] = None
    success: bool = False

    def finish(
        self,
        status: RunStatus,
        final_result: Optional[str] = None,
        error: Optional[str] = None,
        success: bool = False,
    ) -> None:
        """Move to a terminal status.

        Raises:
            RuntimeError: If the run is already terminal or status is not terminal
        """
        if self.status.is_terminal:
            raise RuntimeError(f"Run {self.id} already finished as {self.status.value}")
        if not status.is_terminal:
            raise RuntimeError("Cannot finish a run with a non-terminal status")
        self.status = status
        self.final_result = final_result
        self.error = error
        self.success = success
        self.end_time = time.time()

    @property
    def duration_ms(self) -> int:
        end = self.end_time if self.end_time is not None else time.time()
        return int((end - self.start_time) * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal.to_dict(),
            "status": self.status.value,
            "steps": len(self.steps),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "final_result": self.final_result,
            "error": self.error,
            "success": self.success,
        }


@dataclass
class RunResponse:
    """Result handed back to the caller of a run."""
    run_id: str
    status: RunStatus
    success: bool
    result: str
    steps: int
    duration_ms: int
    error: Optional[str] = None

    @classmethod
    def from_run(cls, run: Run) -> "RunResponse":
        return cls(
            run_id=run.id,
            status=run.status,
            success=run.success,
            result=run.final_result or "",
            steps=len(run.steps),
            duration_ms=run.duration_ms,
            error=run.error,
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire format of the run response."""
        data: dict[str, Any] = {
            "runId": self.run_id,
            "status": self.status.value,
            "success": self.success,
            "result": self.result,
            "steps": self.steps,
            "duration": self.duration_ms,
        }
        if self.error:
            data["error"] = self.error
        return data
