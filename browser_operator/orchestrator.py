"""
Orchestrator for Browser Operator.

Provides the control loop that drives one run: observe, reason, check,
execute, record. Every failure mode resolves to a terminal run.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .approver import Approver, get_approver
from .config import OperatorConfig
from .driver import BrowserDriver, DriverFactory, PlaywrightDriver
from .errors import (
    ActionError,
    BudgetExceeded,
    FatalBrowserError,
    OperatorError,
    PolicyViolation,
    ReasoningError,
    RepeatedFailureError,
    RunCancelled,
)
from .executor import ActionExecutor
from .llm_client import Reasoner, ReasoningClient
from .memory import RunStore
from .observer import StateObserver
from .recorder import RunRecorder
from .safety import SafetyGuard
from .tool_schemas import ActionDecision, NavigateArgs, NavigateCall, describe_tool_call, tool_call_to_dict
from .types import ActionResult, Goal, Run, RunResponse, RunStatus, StepRecord, WorldState
from .utils import format_action_for_history, parse_domain, truncate_text


logger = logging.getLogger(__name__)


MAX_HINTS = 5


@dataclass
class _LoopState:
    """Mutable bookkeeping for one run's loop."""
    run: Run
    goal: Goal
    config: OperatorConfig
    driver: BrowserDriver
    reasoner: Reasoner
    recorder: RunRecorder
    guard: SafetyGuard
    observer: StateObserver
    executor: ActionExecutor
    history: list[dict[str, Any]] = field(default_factory=list)
    last_world: Optional[WorldState] = None
    last_extract: Optional[str] = None
    policy_rejections: int = 0
    started: float = field(default_factory=time.monotonic)


def _payload_text(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False, default=str)


class Orchestrator:
    """Main control loop that drives the browser toward a goal.

    Usage:
        orchestrator = Orchestrator(OperatorConfig())
        response = await orchestrator.run(Goal("Find the page heading", start_url="https://example.com"))
    """

    def __init__(
        self,
        config: OperatorConfig,
        driver_factory: Optional[DriverFactory] = None,
        reasoner: Optional[Reasoner] = None,
        approver: Optional[Approver] = None,
        store: Optional[RunStore] = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Operator configuration
            driver_factory: Async factory for the browser driver (default: Playwright)
            reasoner: Reasoner to use (default: a ReasoningClient per run)
            approver: Confirmation gate (default: from config.approval_mode)
            store: Optional shared run store
        """
        self.config = config
        self.driver_factory = driver_factory or PlaywrightDriver.open
        self.reasoner = reasoner
        self.approver = approver or get_approver(config.approval_mode, config.auto_approve)
        self.store = store
        self.current_run: Optional[Run] = None
        self._stop_event = asyncio.Event()
        self._running = False

    def stop(self) -> None:
        """Ask the run to stop at the next cycle boundary.

        A stop requested before a run starts applies to that run. The
        request is cleared once the run ends.
        """
        self._stop_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    async def run(
        self,
        goal: Goal,
        start_url: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> RunResponse:
        """Run the loop until the goal completes, a budget runs out, or an error ends it.

        Never raises for run-level failures; the response carries the
        terminal status. Task cancellation is honored and re-raised after
        the session is torn down.

        Raises:
            RuntimeError: If this orchestrator is already running a goal
        """
        if self._running:
            raise RuntimeError("Orchestrator is already running a goal; use one orchestrator per concurrent run")
        self._running = True
        try:
            return await self._run(goal, start_url, run_id)
        finally:
            self._running = False
            self._stop_event.clear()

    async def _run(self, goal: Goal, start_url: Optional[str], run_id: Optional[str]) -> RunResponse:
        if start_url and not goal.start_url:
            goal = replace(goal, start_url=start_url)
        if goal.max_steps is None:
            goal = replace(goal, max_steps=self.config.max_steps)
        config = self.config.for_goal(goal)

        run = Run(goal=goal) if run_id is None else Run(goal=goal, id=run_id)
        self.current_run = run

        try:
            config.ensure_directories()
            recorder = RunRecorder(run, config.runs_dir, store=self.store, enable_console=config.enable_console)
            recorder.start()
        except OSError as e:
            logger.error(f"Could not prepare run directory: {e}")
            run.finish(RunStatus.FAILED, error=f"{type(e).__name__}: {e}")
            return RunResponse.from_run(run)

        logger.info(f"Run {run.id} started: {goal.user_prompt}")
        reasoner = self.reasoner or ReasoningClient(config)
        driver: Optional[BrowserDriver] = None
        state: Optional[_LoopState] = None

        try:
            driver = await self.driver_factory(config)
            state = self._make_state(run, goal, config, driver, reasoner, recorder)
            await self._initialize(state)
            await self._loop(state)
        except asyncio.CancelledError:
            logger.info(f"Run {run.id} cancelled")
            self._finish(run, RunStatus.FAILED, error=str(RunCancelled()))
            raise
        except BudgetExceeded as e:
            logger.info(f"Run {run.id} budget exhausted: {e}")
            self._finish(run, RunStatus.TIMED_OUT, final_result=self._partial_result(state), error=str(e))
        except RunCancelled as e:
            logger.info(f"Run {run.id} stopped")
            self._finish(run, RunStatus.FAILED, final_result=self._partial_result(state), error=str(e))
        except OperatorError as e:
            logger.warning(f"Run {run.id} failed: {type(e).__name__}: {e}")
            self._finish(run, RunStatus.FAILED, final_result=self._partial_result(state),
                         error=f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"Run {run.id} crashed")
            self._finish(run, RunStatus.FAILED, error=f"{type(e).__name__}: {e}")
        finally:
            await self._teardown(driver, reasoner)
            if not run.status.is_terminal:
                self._finish(run, RunStatus.FAILED, error="Run ended without a terminal status")
            recorder.finish()
            logger.info(f"Run {run.id} finished: {run.status.value} after {len(run.steps)} steps")

        return RunResponse.from_run(run)

    def _make_state(self, run, goal, config, driver, reasoner, recorder) -> _LoopState:
        on_selector_outcome = self.store.record_selector_outcome if self.store is not None else None
        return _LoopState(
            run=run,
            goal=goal,
            config=config,
            driver=driver,
            reasoner=reasoner,
            recorder=recorder,
            guard=SafetyGuard(config.safety),
            observer=StateObserver(config.max_candidates, config.summary_max_chars),
            executor=ActionExecutor(
                driver,
                config,
                screenshots_dir=recorder.screenshots_dir,
                on_selector_outcome=on_selector_outcome,
            ),
        )

    async def _teardown(self, driver: Optional[BrowserDriver], reasoner: Reasoner) -> None:
        if driver is not None:
            try:
                await driver.close()
            except Exception as e:
                logger.warning(f"Error closing browser session: {type(e).__name__}: {e}")
        if self.reasoner is None:
            try:
                await reasoner.aclose()
            except Exception as e:
                logger.warning(f"Error closing reasoning client: {type(e).__name__}: {e}")

    def _finish(self, run: Run, status: RunStatus, final_result: Optional[str] = None,
                error: Optional[str] = None, success: bool = False) -> None:
        if run.status.is_terminal:
            return
        run.finish(status, final_result=final_result, error=error, success=success)

    def _partial_result(self, state: Optional[_LoopState]) -> Optional[str]:
        """Progress summary for runs that end without completing."""
        if state is None:
            return None
        text = f"Stopped after {len(state.run.steps)} steps without completing the goal."
        if state.last_world is not None:
            text += f" Last page: {state.last_world.title or 'Untitled'} ({state.last_world.url})."
        if state.last_extract:
            text += f" Last extracted: {truncate_text(state.last_extract, 500)}"
        return text

    # =========================================================================
    # Loop
    # =========================================================================

    def _check_boundary(self, state: _LoopState) -> None:
        """Stop signal and budgets, checked before every cycle."""
        if self._stop_event.is_set():
            raise RunCancelled()
        max_steps = state.goal.max_steps
        if len(state.run.steps) >= max_steps:
            raise BudgetExceeded(f"Step budget of {max_steps} exhausted")
        max_duration = state.config.max_duration_s
        if max_duration is not None and time.monotonic() - state.started >= max_duration:
            raise BudgetExceeded(f"Time budget of {max_duration}s exhausted")

    async def _initialize(self, state: _LoopState) -> None:
        """Open the start URL, if any. Not counted as a step."""
        start_url = state.goal.start_url
        if not start_url:
            return

        tool_call = NavigateCall(name="navigate", args=NavigateArgs(url=start_url))
        verdict = state.guard.check(tool_call, state.driver.url)
        if not verdict.allowed:
            raise PolicyViolation(verdict.violation.check, f"Start URL rejected: {verdict.violation.reason}")
        if verdict.needs_confirmation:
            rationale = f"Open the start URL for: {state.goal.user_prompt}"
            if not await self.approver.request_approval(tool_call, verdict.reason, rationale):
                raise PolicyViolation("confirmation", f"Start URL not confirmed: {verdict.reason}")
        if verdict.wait_s > 0:
            await asyncio.sleep(verdict.wait_s)

        result = await state.executor.execute(tool_call, 0)
        state.guard.record_action(verdict.domain)
        if not result.success:
            raise ActionError(f"Could not open start URL {start_url}: {result.error}", kind=result.error_kind or "navigation")

    async def _loop(self, state: _LoopState) -> None:
        while True:
            self._check_boundary(state)
            finished = await self._cycle(state, len(state.run.steps))
            if finished:
                return

    async def _decide(self, state: _LoopState, step_index: int) -> tuple[ActionDecision, WorldState]:
        """Observe and reason, retrying invalid or failed reasoning up to the budget."""
        last_error: Optional[ReasoningError] = None
        for attempt in range(state.config.retry_budget + 1):
            world = await state.observer.observe(state.driver, step_index)
            state.last_world = world
            try:
                decision = await state.reasoner.decide(
                    state.goal,
                    world,
                    state.history[-state.config.history_length:],
                    hints=self._hints(world.url),
                    repair=attempt > 0,
                )
                return decision, world
            except ReasoningError as e:
                last_error = e
                state.recorder.record_retry(step_index, attempt + 1, e)
        raise last_error

    def _hints(self, url: str) -> list[str]:
        if self.store is None:
            return []
        domain = parse_domain(url)
        if not domain:
            return []
        return [
            f"{row['selector']} ({row['success_count']} ok, {row['failure_count']} failed)"
            for row in self.store.best_selectors(domain, MAX_HINTS)
        ]

    async def _cycle(self, state: _LoopState, step_index: int) -> bool:
        """Run one observe-reason-check-execute-record cycle.

        Returns:
            True when the run reached a terminal status
        """
        decision, world = await self._decide(state, step_index)
        tool_call = decision.tool
        logger.debug(f"Step {step_index} proposed: {describe_tool_call(tool_call)}")
        call = tool_call_to_dict(tool_call)
        started = time.monotonic()

        if tool_call.name == "complete":
            args = tool_call.args
            result = ActionResult(success=True, payload=args.model_dump(exclude_none=True))
            self._record(state, step_index, call, result, started, world, decision.rationale)
            final = args.result or args.reason or state.last_extract or ""
            self._finish(state.run, RunStatus.COMPLETED, final_result=final, success=args.success)
            return True

        # Safety check
        verdict = state.guard.check(tool_call, state.driver.url)
        violation = verdict.violation
        if verdict.allowed and verdict.needs_confirmation:
            approved = await self.approver.request_approval(tool_call, verdict.reason, decision.rationale)
            if not approved:
                guidance = await self.approver.notify_denial()
                reason = f"Confirmation denied: {verdict.reason}"
                if guidance:
                    reason += f". User guidance: {guidance}"
                violation = PolicyViolation("confirmation", reason)

        if violation is not None:
            state.policy_rejections += 1
            result = ActionResult(success=False, error=str(violation), error_kind="policy_violation", attempts=0)
            self._record(state, step_index, call, result, started, world, decision.rationale)
            if state.policy_rejections > state.config.max_policy_rejections:
                raise violation
            return False
        state.policy_rejections = 0

        if verdict.wait_s > 0:
            logger.debug(f"Cooling down {verdict.wait_s:.2f}s before acting on {verdict.domain}")
            await asyncio.sleep(verdict.wait_s)

        # Execute
        try:
            result = await state.executor.execute(tool_call, step_index)
        except RepeatedFailureError as e:
            state.guard.record_action(verdict.domain)
            if e.result is not None:
                self._record(state, step_index, call, e.result, started, world, decision.rationale)
            raise
        except FatalBrowserError as e:
            result = ActionResult(success=False, error=str(e), error_kind="fatal")
            self._record(state, step_index, call, result, started, world, decision.rationale)
            raise
        state.guard.record_action(verdict.domain)

        if result.success and tool_call.name == "extract":
            state.last_extract = _payload_text(result.payload)

        self._record(state, step_index, call, result, started, world, decision.rationale)
        return False

    def _record(self, state: _LoopState, step_index: int, call: dict[str, Any], result: ActionResult,
                started: float, world: WorldState, rationale: str) -> None:
        record = StepRecord(
            step_index=step_index,
            tool_call=call,
            result=result.to_dict(),
            duration_ms=int((time.monotonic() - started) * 1000),
            success=result.success,
            error=result.error,
            screenshot_ref=result.screenshot_ref,
            url=world.url,
            rationale=rationale,
        )
        state.recorder.record_step(record)

        if result.success:
            outcome, text = "ok", _payload_text(result.payload)
        elif result.error_kind == "policy_violation":
            outcome, text = "rejected", result.error or ""
        else:
            outcome, text = "failed", result.error or ""
        state.history.append(
            format_action_for_history(step_index, call["name"], call.get("args", {}), outcome, text)
        )
