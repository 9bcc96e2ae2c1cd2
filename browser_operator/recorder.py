"""
Logging and artifact management for Browser Operator.

Handles JSONL step and event logs, the screenshot directory, the final
markdown report, and rich console output for a single run.
"""

import json
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .memory import RunStore
from .types import Run, RunStatus, StepRecord
from .utils import is_password_field, slugify, truncate_text


logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

STATUS_STYLES = {
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "red",
    RunStatus.TIMED_OUT: "yellow",
    RunStatus.RUNNING: "cyan",
}


def configure_logging(debug: bool = False) -> None:
    """Route module loggers through a rich handler."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=debug)],
        force=True,
    )
    # Keep third-party chatter out of the step stream
    for noisy in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def redact_tool_call(tool_call: dict[str, Any]) -> dict[str, Any]:
    """Remove typed password text from a serialized ToolCall."""
    if tool_call.get("name") != "type":
        return tool_call
    args = tool_call.get("args", {})
    if not is_password_field(args.get("selector", "")):
        return tool_call
    redacted = dict(tool_call)
    redacted["args"] = {**args, "text": REDACTED}
    return redacted


def _format_args(args: dict[str, Any]) -> str:
    return ", ".join(f"{k}={v!r}" for k, v in args.items())


def synthesize_report(run: Run, events: list[dict[str, Any]]) -> str:
    """Build the human-readable markdown report of a finished run.

    Args:
        run: The run, with its full StepRecord sequence
        events: Retry and lifecycle events in order

    Returns:
        Markdown text
    """
    goal = run.goal
    lines = [
        "# Run Report",
        "",
        f"**Run ID:** {run.id}",
        f"**Status:** {run.status.value}",
        f"**Success:** {'yes' if run.success else 'no'}",
        f"**Duration:** {run.duration_ms / 1000:.2f}s",
        f"**Steps:** {len(run.steps)}",
        "",
        "## Goal",
        "",
        goal.user_prompt,
        "",
    ]
    if goal.start_url:
        lines += [f"**Start URL:** {goal.start_url}", ""]
    if goal.constraints:
        lines.append("**Constraints:**")
        lines += [f"- {c}" for c in goal.constraints]
        lines.append("")
    if goal.success_criteria:
        lines.append("**Success criteria:**")
        lines += [f"- {c}" for c in goal.success_criteria]
        lines.append("")

    lines += ["## Execution Steps", ""]
    if not run.steps:
        lines += ["(no steps recorded)", ""]
    for record in run.steps:
        call = redact_tool_call(record.tool_call)
        lines.append(f"### Step {record.step_index}: {record.action}")
        lines.append("")
        if record.rationale:
            lines += [f"**Reasoning:** {record.rationale}", ""]
        lines += [f"**Action:** `{record.action}({_format_args(call.get('args', {}))})`", ""]
        lines += [f"**Result:** {'Success' if record.success else 'Failed'}", ""]
        if record.error:
            lines += [f"**Error:** {record.error}", ""]
        if record.screenshot_ref:
            lines += [f"**Screenshot:** [View]({record.screenshot_ref})", ""]
        lines.append(f"**Duration:** {record.duration_ms}ms")
        lines += [f"**URL:** {record.url}", "", "---", ""]

    retries = [e for e in events if e.get("event") == "reasoning_retry"]
    if retries:
        lines += ["## Reasoning Retries", ""]
        for event in retries:
            lines.append(
                f"- step {event.get('step_index')}, attempt {event.get('attempt')}: "
                f"{event.get('kind')}: {event.get('error')}"
            )
        lines.append("")

    lines += ["## Final Result", ""]
    if run.final_result:
        lines += [run.final_result, ""]
    if run.error:
        lines += [f"**Error:** {run.error}", ""]
    if not run.final_result and not run.error:
        lines += ["(none)", ""]

    return "\n".join(lines)


class RunRecorder:
    """Manages logging and artifacts for a single run."""

    def __init__(
        self,
        run: Run,
        runs_dir: Path,
        store: Optional[RunStore] = None,
        enable_console: bool = True,
        console: Optional[Console] = None,
    ):
        """Initialize the run recorder.

        Args:
            run: The run being recorded (its step list is appended to here)
            runs_dir: Parent directory for run directories
            store: Optional shared run store
            enable_console: Whether to print to console
            console: Optional console to print to
        """
        self.run = run
        self.store = store
        self.console = (console or Console()) if enable_console else None
        self.events: list[dict[str, Any]] = []

        # Create run directory
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_dir = Path(runs_dir) / f"{timestamp}_{slugify(run.goal.user_prompt)}_{run.id[:8]}"
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.screenshots_dir = self.run_dir / "screenshots"
        self.screenshots_dir.mkdir(exist_ok=True)

        self.steps_file = self.run_dir / "steps.jsonl"
        self.steps_file.touch()
        self.events_file = self.run_dir / "events.jsonl"
        self.events_file.touch()
        self.report_file = self.run_dir / "report.md"

    @property
    def next_index(self) -> int:
        return len(self.run.steps)

    def _append_jsonl(self, path: Path, data: dict[str, Any]) -> None:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(data, default=str) + "\n")

    def start(self) -> None:
        """Record the run start."""
        if self.store is not None:
            self.store.save_run(self.run)
        self.record_event("run_started", goal=self.run.goal.to_dict())
        self.print_header()

    def record_step(self, record: StepRecord) -> None:
        """Append a step record to the run and its log.

        Raises:
            ValueError: If the step index is not the next one in sequence
        """
        expected = self.next_index
        if record.step_index != expected:
            raise ValueError(
                f"Out-of-order step index {record.step_index} (expected {expected})"
            )

        self.run.steps.append(record)

        persisted = replace(record, tool_call=redact_tool_call(record.tool_call))
        self._append_jsonl(self.steps_file, {"run_id": self.run.id, **persisted.to_dict()})
        if self.store is not None:
            self.store.append_step(self.run.id, persisted)

        self.print_step(record)

    def record_event(self, event: str, **data: Any) -> None:
        """Append a lifecycle or retry event."""
        entry = {
            "event": event,
            "run_id": self.run.id,
            "timestamp": datetime.now().isoformat(),
            **data,
        }
        self.events.append(entry)
        self._append_jsonl(self.events_file, entry)
        if self.store is not None:
            self.store.append_event(self.run.id, event, data)

    def record_retry(self, step_index: int, attempt: int, error) -> None:
        """Log a failed reasoning attempt. Not a step."""
        logger.info(f"Reasoning attempt {attempt} failed at step {step_index}: {error}")
        self.record_event(
            "reasoning_retry",
            step_index=step_index,
            attempt=attempt,
            kind=getattr(error, "kind", type(error).__name__),
            error=str(error),
            raw=truncate_text(getattr(error, "raw", None) or "", 500),
        )
        if self.console:
            self.console.print(f"  [yellow]↻[/yellow] [dim]Reasoning retry {attempt}: {error}[/dim]")

    def finish(self) -> Path:
        """Write the report and final records once the run is terminal.

        Returns:
            Path to the report
        """
        self.record_event(
            "run_finished",
            status=self.run.status.value,
            steps=len(self.run.steps),
            error=self.run.error,
        )
        self.report_file.write_text(synthesize_report(self.run, self.events), encoding="utf-8")
        if self.store is not None:
            self.store.save_run(self.run)

        if self.run.final_result:
            self.print_final_answer(self.run.final_result)
        self.print_summary()
        return self.report_file

    # =========================================================================
    # Console output
    # =========================================================================

    def print_header(self) -> None:
        """Print the run header to console."""
        if not self.console:
            return

        self.console.print()
        self.console.print(Panel(
            f"[bold cyan]Goal:[/bold cyan] {self.run.goal.user_prompt}",
            title="Browser Operator",
            border_style="cyan",
        ))
        self.console.print()

    def print_step(self, record: StepRecord) -> None:
        """Print a step and its outcome to the console."""
        if not self.console:
            return

        call = redact_tool_call(record.tool_call)
        step_text = Text()
        step_text.append(f"Step {record.step_index}: ", style="bold")
        step_text.append(record.action, style="bold cyan")
        args_str = _format_args(call.get("args", {}))
        if args_str:
            step_text.append(f"({truncate_text(args_str, 120)})", style="dim")

        self.console.print(step_text)
        if record.rationale:
            self.console.print(f"  [dim]Rationale:[/dim] {record.rationale}")
        if record.success:
            self.console.print(f"  [green]✓[/green] {record.duration_ms}ms")
        else:
            self.console.print(f"  [red]✗[/red] {record.error}")
        self.console.print()

    def print_final_answer(self, answer: str) -> None:
        """Print the final answer to console."""
        if not self.console:
            return

        self.console.print()
        self.console.print(Panel(
            answer,
            title="Final Answer",
            border_style="green" if self.run.success else "yellow",
        ))

    def print_summary(self) -> None:
        """Print the run summary to console."""
        if not self.console:
            return

        style = STATUS_STYLES.get(self.run.status, "white")
        table = Table(title="Run Summary", show_header=False)
        table.add_column("Property", style="dim")
        table.add_column("Value")

        table.add_row("Status", f"[{style}]{self.run.status.value}[/{style}]")
        table.add_row("Steps Executed", str(len(self.run.steps)))
        table.add_row("Duration", f"{self.run.duration_ms / 1000:.2f}s")
        if self.run.error:
            table.add_row("Error", self.run.error)
        table.add_row("Logs Directory", str(self.run_dir))
        table.add_row("Screenshots", str(len(list(self.screenshots_dir.glob("*.png")))))

        self.console.print()
        self.console.print(table)
