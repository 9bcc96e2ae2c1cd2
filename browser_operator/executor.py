"""
Action executor for Browser Operator.

Maps validated ToolCalls to driver primitives with a bounded timeout per
attempt, local retry of transient failures, and repeat-failure detection.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .config import OperatorConfig
from .driver import BrowserDriver
from .errors import ActionError, FatalBrowserError, RepeatedFailureError, TransientActionError
from .observer import extract_content
from .types import ActionResult
from .utils import parse_domain, truncate_text


logger = logging.getLogger(__name__)


# Called with (domain, selector, success) after selector-based actions
SelectorOutcomeCallback = Callable[[str, str, bool], None]

SELECTOR_ACTIONS = {"click", "type", "query", "extract", "waitFor"}

# Extra time over the driver's own timeout before the attempt is abandoned
ATTEMPT_SLACK_S = 2.0


class ActionExecutor:
    """Executes browser actions via a BrowserDriver."""

    def __init__(
        self,
        driver: BrowserDriver,
        config: OperatorConfig,
        screenshots_dir: Optional[Path] = None,
        on_selector_outcome: Optional[SelectorOutcomeCallback] = None,
    ):
        """Initialize the executor.

        Args:
            driver: Browser driver to act on
            config: Operator configuration (timeouts, retry bounds)
            screenshots_dir: Directory for saving screenshots
            on_selector_outcome: Optional hook for selector statistics
        """
        self.driver = driver
        self.config = config
        self.screenshots_dir = screenshots_dir
        self.on_selector_outcome = on_selector_outcome

        self._failure_kind: Optional[str] = None
        self._failure_streak = 0

        self._handlers = {
            "navigate": self._navigate,
            "click": self._click,
            "type": self._type,
            "extract": self._extract,
            "waitFor": self._wait_for,
            "screenshot": self._screenshot,
            "scroll": self._scroll,
            "query": self._query,
            "goBack": self._go_back,
        }

    @property
    def failure_streak(self) -> tuple[Optional[str], int]:
        return self._failure_kind, self._failure_streak

    def _timeout_ms(self, tool_call) -> int:
        if tool_call.name in ("navigate", "goBack"):
            return self.config.navigation_timeout_ms
        return getattr(tool_call.args, "timeout_ms", None) or self.config.action_timeout_ms

    async def execute(self, tool_call, step_index: int) -> ActionResult:
        """Execute one ToolCall.

        Transient failures are retried with exponential backoff. Non-transient
        failures come back as an unsuccessful ActionResult.

        Raises:
            FatalBrowserError: If the browser session is gone
            RepeatedFailureError: If the same failure kind repeats beyond the bound
            ValueError: For actions with no browser counterpart (complete)
        """
        handler = self._handlers.get(tool_call.name)
        if handler is None:
            raise ValueError(f"No browser action for {tool_call.name!r}")
        timeout_ms = self._timeout_ms(tool_call)
        attempt_timeout_s = timeout_ms / 1000.0 + ATTEMPT_SLACK_S
        max_attempts = max(1, self.config.action_retry_attempts)
        domain = parse_domain(self.driver.url)

        result: Optional[ActionResult] = None
        last_transient: Optional[TransientActionError] = None

        for attempt in range(1, max_attempts + 1):
            try:
                payload = await asyncio.wait_for(
                    handler(tool_call.args, step_index, timeout_ms), timeout=attempt_timeout_s
                )
                result = ActionResult(success=True, payload=payload, attempts=attempt)
                if tool_call.name == "screenshot":
                    result.screenshot_ref = payload["path"]
                break
            except asyncio.TimeoutError:
                last_transient = TransientActionError(
                    f"{tool_call.name} did not finish within {attempt_timeout_s:.1f}s", kind="timeout"
                )
            except FatalBrowserError:
                raise
            except TransientActionError as e:
                last_transient = e
            except ActionError as e:
                result = ActionResult(success=False, error=str(e), error_kind=e.kind, attempts=attempt)
                break

            if attempt < max_attempts:
                delay_s = self.config.action_retry_backoff_ms * (2 ** (attempt - 1)) / 1000.0
                logger.debug(
                    f"Transient failure on {tool_call.name} (attempt {attempt}/{max_attempts}): "
                    f"{last_transient}; retrying in {delay_s:.2f}s"
                )
                await asyncio.sleep(delay_s)

        if result is None:
            kind = "selector_not_found" if last_transient.kind in ("not_attached", "not_visible") else "timeout"
            result = ActionResult(
                success=False,
                error=f"{last_transient} (after {max_attempts} attempts)",
                error_kind=kind,
                attempts=max_attempts,
            )

        self._report_selector(tool_call, domain, result.success)
        self._track_failures(result)
        return result

    def _report_selector(self, tool_call, domain: str, success: bool) -> None:
        if self.on_selector_outcome is None or tool_call.name not in SELECTOR_ACTIONS:
            return
        selector = getattr(tool_call.args, "selector", None)
        if selector and domain:
            self.on_selector_outcome(domain, selector, success)

    def _track_failures(self, result: ActionResult) -> None:
        if result.success:
            self._failure_kind = None
            self._failure_streak = 0
            return

        if result.error_kind == self._failure_kind:
            self._failure_streak += 1
        else:
            self._failure_kind = result.error_kind
            self._failure_streak = 1

        if self._failure_streak > self.config.max_repeated_failures:
            raise RepeatedFailureError(
                self._failure_kind or "action_failed",
                self._failure_streak,
                result.error or "",
                result=result,
            )

    def _bound(self, payload: Any) -> Any:
        """Keep extracted payloads within the configured size."""
        limit = self.config.extract_max_chars
        if isinstance(payload, str):
            return truncate_text(payload, limit)
        if isinstance(payload, list):
            bounded = list(payload)
            while bounded and len(json.dumps(bounded, ensure_ascii=False)) > limit:
                bounded.pop()
            return bounded
        return payload

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _navigate(self, args, step_index, timeout_ms):
        return await self.driver.navigate(args.url, wait_until=args.wait_until, timeout_ms=timeout_ms)

    async def _click(self, args, step_index, timeout_ms):
        return await self.driver.click(args.selector, timeout_ms=timeout_ms)

    async def _type(self, args, step_index, timeout_ms):
        return await self.driver.type(
            args.selector, args.text, clear=args.clear, submit=args.submit, timeout_ms=timeout_ms
        )

    async def _extract(self, args, step_index, timeout_ms):
        if args.selector:
            text = await self.driver.extract(args.selector, timeout_ms=timeout_ms)
            return self._bound(text)
        html = await self.driver.content()
        payload = await asyncio.to_thread(
            extract_content, html, args.mode, self.driver.url, self.config.extract_max_chars
        )
        return self._bound(payload)

    async def _wait_for(self, args, step_index, timeout_ms):
        return await self.driver.wait_for(selector=args.selector, state=args.state, timeout_ms=timeout_ms)

    async def _screenshot(self, args, step_index, timeout_ms):
        if self.screenshots_dir is None:
            raise ActionError("Screenshots directory not configured", kind="invalid_argument")
        path = Path(self.screenshots_dir) / f"step_{step_index:03d}.png"
        saved = await self.driver.screenshot(path, full_page=args.full_page)
        return {"path": str(saved), "purpose": args.purpose}

    async def _scroll(self, args, step_index, timeout_ms):
        return await self.driver.scroll(direction=args.direction, amount=args.amount)

    async def _query(self, args, step_index, timeout_ms):
        return await self.driver.query(args.selector)

    async def _go_back(self, args, step_index, timeout_ms):
        return await self.driver.go_back(timeout_ms=timeout_ms)
