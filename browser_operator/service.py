"""
Run service for Browser Operator.

Runs goals concurrently, each as its own asyncio task with its own
orchestrator and browser session, and exposes the set of active runs.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .approver import Approver
from .config import OperatorConfig
from .driver import DriverFactory
from .llm_client import Reasoner
from .memory import RunStore
from .orchestrator import Orchestrator
from .recorder import configure_logging
from .tool_schemas import RunRequest
from .types import RunResponse


logger = logging.getLogger(__name__)


ReasonerFactory = Callable[[OperatorConfig], Reasoner]

# Finished responses kept for wait() after a run ends
MAX_FINISHED_RUNS = 100


@dataclass
class _ActiveRun:
    run_id: str
    request: RunRequest
    orchestrator: Orchestrator
    task: "asyncio.Task[RunResponse]"


class OperatorService:
    """Registry of runs started through one service instance."""

    def __init__(
        self,
        config: Optional[OperatorConfig] = None,
        store: Optional[RunStore] = None,
        driver_factory: Optional[DriverFactory] = None,
        reasoner_factory: Optional[ReasonerFactory] = None,
        approver: Optional[Approver] = None,
    ):
        self.config = config or OperatorConfig()
        if self.config.enable_console:
            configure_logging(self.config.debug)
        self._owns_store = store is None and self.config.store_path is not None
        self.store = store if store is not None else (
            RunStore(self.config.store_path) if self.config.store_path is not None else None
        )
        self.driver_factory = driver_factory
        self.reasoner_factory = reasoner_factory
        self.approver = approver
        self._runs: dict[str, _ActiveRun] = {}
        self._finished: "OrderedDict[str, RunResponse]" = OrderedDict()

    @staticmethod
    def _coerce(request: Union[RunRequest, dict[str, Any], str]) -> RunRequest:
        if isinstance(request, RunRequest):
            return request
        if isinstance(request, str):
            return RunRequest.from_json(request)
        return RunRequest.model_validate(request)

    async def _execute(self, orchestrator: Orchestrator, request: RunRequest, run_id: str,
                       reasoner: Optional[Reasoner]) -> RunResponse:
        try:
            return await orchestrator.run(request.to_goal(), run_id=run_id)
        finally:
            if reasoner is not None:
                await reasoner.aclose()

    def start(self, request: Union[RunRequest, dict[str, Any], str]) -> str:
        """Start a run in the background.

        Must be called from within a running event loop.

        Returns:
            The run id

        Raises:
            pydantic.ValidationError: If the request is invalid
        """
        request = self._coerce(request)
        reasoner = self.reasoner_factory(self.config) if self.reasoner_factory else None
        orchestrator = Orchestrator(
            self.config,
            driver_factory=self.driver_factory,
            reasoner=reasoner,
            approver=self.approver,
            store=self.store,
        )
        run_id = uuid.uuid4().hex
        task = asyncio.get_running_loop().create_task(
            self._execute(orchestrator, request, run_id, reasoner),
            name=f"run-{run_id[:8]}",
        )
        self._runs[run_id] = _ActiveRun(run_id, request, orchestrator, task)
        task.add_done_callback(lambda done: self._on_run_done(run_id, done))
        logger.info(f"Started run {run_id}: {request.goal}")
        return run_id

    def _on_run_done(self, run_id: str, task: "asyncio.Task[RunResponse]") -> None:
        """Drop a finished run from the registry and keep its response."""
        self._runs.pop(run_id, None)
        if task.cancelled():
            logger.info(f"Run {run_id} task was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Run {run_id} task raised {type(error).__name__}: {error}")
            return
        self._finished[run_id] = task.result()
        while len(self._finished) > MAX_FINISHED_RUNS:
            self._finished.popitem(last=False)

    async def wait(self, run_id: str) -> RunResponse:
        """Wait for a run to finish and return its response.

        Responses of recently finished runs stay available.

        Raises:
            KeyError: If the run id is unknown
        """
        active = self._runs.get(run_id)
        if active is not None:
            return await active.task
        if run_id in self._finished:
            return self._finished[run_id]
        raise KeyError(f"Unknown run: {run_id}")

    async def run(self, request: Union[RunRequest, dict[str, Any], str]) -> RunResponse:
        """Run a goal to completion."""
        return await self.wait(self.start(request))

    def stop(self, run_id: str) -> bool:
        """Ask a run to stop at its next cycle boundary.

        Returns:
            True if the run was active
        """
        active = self._runs.get(run_id)
        if active is None or active.task.done():
            return False
        active.orchestrator.stop()
        return True

    def active_runs(self) -> list[dict[str, Any]]:
        """Runs that have not finished yet."""
        runs = []
        for active in self._runs.values():
            if active.task.done():
                continue
            run = active.orchestrator.current_run
            runs.append({
                "runId": active.run_id,
                "goal": active.request.goal,
                "status": run.status.value if run else "starting",
                "steps": len(run.steps) if run else 0,
                "startTime": run.start_time if run else None,
            })
        return runs

    @property
    def active_count(self) -> int:
        return sum(1 for active in self._runs.values() if not active.task.done())

    async def close(self) -> None:
        """Stop all active runs, wait for them, and release the store."""
        for run_id in list(self._runs):
            self.stop(run_id)
        tasks = [active.task for active in self._runs.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()
        if self._owns_store and self.store is not None:
            self.store.close()
