"""
Browser driver for Browser Operator.

One driver interface over Playwright's async API. How the browser session is
obtained (local launch, remote CDP endpoint, fast local launch) is a pluggable
session strategy selected by configuration.
"""

import contextlib
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    Route,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import OperatorConfig
from .errors import ActionError, FatalBrowserError, OperatorError, TransientActionError


# Get logger for this module
logger = logging.getLogger(__name__)


# Resource patterns to block in fast mode
FAST_MODE_BLOCKED_PATTERNS = [
    # Images
    r".*\.(png|jpg|jpeg|webp|gif|svg|ico|bmp|tiff)(\?.*)?$",
    # Fonts
    r".*\.(woff|woff2|ttf|otf|eot)(\?.*)?$",
    # Media
    r".*\.(mp4|webm|mp3|wav|ogg|avi|mov|flv)(\?.*)?$",
]

_blocked_patterns_compiled = [re.compile(p, re.IGNORECASE) for p in FAST_MODE_BLOCKED_PATTERNS]

STEALTH_ARGS = ["--disable-blink-features=AutomationControlled"]

STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
"""

# Error text fragments meaning the session itself is gone
FATAL_MARKERS = (
    "target closed",
    "target page, context or browser has been closed",
    "browser has been closed",
    "browser closed",
    "context closed",
    "connection closed",
    "has been disconnected",
)

# Settle wait after actions that may trigger navigation
SETTLE_TIMEOUT_MS = 5000


def classify_playwright_error(exc: Exception, what: str) -> OperatorError:
    """Translate a Playwright exception into the operator error taxonomy."""
    message = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__
    lowered = str(exc).lower()

    if any(marker in lowered for marker in FATAL_MARKERS):
        return FatalBrowserError(f"{what}: {message}")
    if isinstance(exc, PlaywrightTimeoutError):
        return TransientActionError(f"{what}: {message}", kind="timeout")
    if "net::err_" in lowered:
        return ActionError(f"{what}: {message}", kind="navigation")
    if "execution context was destroyed" in lowered or "navigation interrupted" in lowered:
        return TransientActionError(f"{what}: {message}", kind="navigation_pending")
    if "not attached" in lowered or "element is not visible" in lowered:
        return TransientActionError(f"{what}: {message}", kind="not_attached")
    if "selector" in lowered and ("parse" in lowered or "unknown engine" in lowered or "not a valid" in lowered):
        return ActionError(f"{what}: {message}", kind="invalid_selector")
    return ActionError(f"{what}: {message}", kind="action_failed")


@contextlib.contextmanager
def translate_errors(what: str) -> Iterator[None]:
    """Re-raise Playwright errors as operator errors."""
    try:
        yield
    except PlaywrightError as e:
        raise classify_playwright_error(e, what) from e


class BrowserDriver(ABC):
    """Low-level browser primitives used by the observer and executor.

    Every primitive performs its own readiness wait and honors a timeout.
    Implementations raise TransientActionError, ActionError or
    FatalBrowserError rather than library-specific exceptions.
    """

    @property
    @abstractmethod
    def url(self) -> str:
        """Current page URL."""

    @abstractmethod
    async def title(self) -> str:
        """Current page title."""

    @abstractmethod
    async def content(self) -> str:
        """Current page HTML."""

    @abstractmethod
    async def navigate(self, url: str, wait_until: str = "domcontentloaded", timeout_ms: int = 30000) -> dict[str, Any]:
        """Navigate and wait for the load state."""

    @abstractmethod
    async def click(self, selector: str, timeout_ms: int = 10000) -> dict[str, Any]:
        """Wait for the element to be visible, then click it."""

    @abstractmethod
    async def type(
        self,
        selector: str,
        text: str,
        clear: bool = True,
        submit: bool = False,
        timeout_ms: int = 10000,
    ) -> dict[str, Any]:
        """Wait for the input to be visible, then type into it."""

    @abstractmethod
    async def extract(self, selector: str, timeout_ms: int = 10000) -> str:
        """Inner text of the first element matching the selector."""

    @abstractmethod
    async def wait_for(
        self,
        selector: Optional[str] = None,
        state: Optional[str] = None,
        timeout_ms: int = 10000,
    ) -> dict[str, Any]:
        """Wait for an element to appear or the page to reach a load state."""

    @abstractmethod
    async def screenshot(self, path: Path, full_page: bool = False) -> Path:
        """Save a PNG screenshot to path."""

    @abstractmethod
    async def scroll(self, direction: str = "down", amount: Optional[int] = None) -> dict[str, Any]:
        """Scroll the page."""

    @abstractmethod
    async def query(self, selector: str) -> dict[str, Any]:
        """Inspect an element without interacting with it."""

    @abstractmethod
    async def go_back(self, timeout_ms: int = 30000) -> dict[str, Any]:
        """Navigate back in history."""

    @abstractmethod
    async def close(self) -> None:
        """Release the browser session. Safe to call more than once."""


DriverFactory = Callable[[OperatorConfig], Awaitable[BrowserDriver]]


# =============================================================================
# Session Strategies
# =============================================================================

class SessionStrategy(ABC):
    """How a browser session is acquired."""

    owns_browser: bool = True

    @abstractmethod
    async def acquire(
        self, playwright: Playwright, config: OperatorConfig
    ) -> tuple[Optional[Browser], BrowserContext]:
        """Return the browser (if any) and a context to work in."""

    def _context_options(self, config: OperatorConfig) -> dict[str, Any]:
        return {
            "viewport": {"width": config.viewport_width, "height": config.viewport_height},
            "user_agent": config.user_agent,
        }

    async def _prepare_context(self, context: BrowserContext, config: OperatorConfig) -> None:
        if config.stealth:
            await context.add_init_script(STEALTH_INIT_SCRIPT)


class LocalLaunchStrategy(SessionStrategy):
    """Launch a local Chromium."""

    async def acquire(self, playwright, config):
        args = list(STEALTH_ARGS) if config.stealth else []
        browser = await playwright.chromium.launch(headless=config.headless, args=args)
        context = await browser.new_context(**self._context_options(config))
        await self._prepare_context(context, config)
        return browser, context


class FastLaunchStrategy(LocalLaunchStrategy):
    """Local launch that blocks images, fonts and media for faster loads."""

    @staticmethod
    def should_block(url: str) -> bool:
        return any(pattern.match(url) for pattern in _blocked_patterns_compiled)

    async def _route_handler(self, route: Route) -> None:
        url = route.request.url
        if self.should_block(url):
            logger.debug(f"Fast mode: blocking {url}")
            await route.abort()
        else:
            await route.continue_()

    async def acquire(self, playwright, config):
        browser, context = await super().acquire(playwright, config)
        logger.info("Fast mode enabled: blocking images, fonts, and media")
        await context.route("**/*", self._route_handler)
        return browser, context


class RemoteCDPStrategy(SessionStrategy):
    """Attach to a remote (e.g. cloud-hosted) browser over CDP."""

    async def acquire(self, playwright, config):
        if not config.cdp_url:
            raise FatalBrowserError("browser_mode 'cdp' requires cdp_url (or OPERATOR_CDP_URL)")
        browser = await playwright.chromium.connect_over_cdp(config.cdp_url)
        if browser.contexts:
            context = browser.contexts[0]
        else:
            context = await browser.new_context(**self._context_options(config))
        await self._prepare_context(context, config)
        return browser, context


SESSION_STRATEGIES: dict[str, type[SessionStrategy]] = {
    "local": LocalLaunchStrategy,
    "fast": FastLaunchStrategy,
    "cdp": RemoteCDPStrategy,
}


def create_session_strategy(config: OperatorConfig) -> SessionStrategy:
    """Pick the session strategy for the configured browser mode."""
    try:
        return SESSION_STRATEGIES[config.browser_mode]()
    except KeyError:
        raise ValueError(f"Unknown browser_mode: {config.browser_mode}") from None


# =============================================================================
# Playwright Driver
# =============================================================================

class PlaywrightDriver(BrowserDriver):
    """BrowserDriver over one Playwright page.

    Usage:
        driver = await PlaywrightDriver.open(config)
        try:
            await driver.navigate("https://example.com")
        finally:
            await driver.close()
    """

    def __init__(
        self,
        playwright: Playwright,
        browser: Optional[Browser],
        context: BrowserContext,
        page: Page,
        config: OperatorConfig,
    ):
        self._playwright = playwright
        self._browser = browser
        self._context = context
        self._page = page
        self.config = config
        self._closed = False

    @classmethod
    async def open(cls, config: OperatorConfig) -> "PlaywrightDriver":
        """Start Playwright and acquire a session with the configured strategy.

        Raises:
            FatalBrowserError: If the browser cannot be launched or reached
        """
        strategy = create_session_strategy(config)
        playwright = await async_playwright().start()
        try:
            browser, context = await strategy.acquire(playwright, config)
            page = context.pages[0] if context.pages else await context.new_page()
        except PlaywrightError as e:
            await playwright.stop()
            raise FatalBrowserError(f"Could not start browser session: {e}") from e
        except FatalBrowserError:
            await playwright.stop()
            raise

        page.set_default_timeout(config.action_timeout_ms)
        page.set_default_navigation_timeout(config.navigation_timeout_ms)
        logger.debug(f"Browser session opened ({config.browser_mode})")
        return cls(playwright, browser, context, page, config)

    @property
    def url(self) -> str:
        return self._page.url

    async def title(self) -> str:
        with translate_errors("title"):
            return await self._page.title()

    async def content(self) -> str:
        with translate_errors("content"):
            return await self._page.content()

    async def _settle(self) -> None:
        # Actions may or may not navigate
        try:
            await self._page.wait_for_load_state("domcontentloaded", timeout=SETTLE_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            logger.debug("Page did not settle within %sms", SETTLE_TIMEOUT_MS)

    async def _wait_visible(self, selector: str, timeout_ms: int):
        locator = self._page.locator(selector)
        try:
            await locator.first.wait_for(state="visible", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            with translate_errors(f"count {selector}"):
                count = await locator.count()
            if count == 0:
                raise TransientActionError(
                    f"Element not attached: {selector}", kind="not_attached"
                ) from e
            raise TransientActionError(
                f"Element not visible: {selector}", kind="not_visible"
            ) from e
        except PlaywrightError as e:
            raise classify_playwright_error(e, f"wait for {selector}") from e
        return locator.first

    async def navigate(self, url, wait_until="domcontentloaded", timeout_ms=30000):
        with translate_errors(f"navigate {url}"):
            response = await self._page.goto(url, wait_until=wait_until, timeout=timeout_ms)
            title = await self._page.title()
        status = response.status if response is not None else None
        if status is not None and status >= 400:
            raise ActionError(f"Navigation to {url} returned HTTP {status}", kind="http_error")
        return {"url": self._page.url, "title": title, "status": status}

    async def click(self, selector, timeout_ms=10000):
        element = await self._wait_visible(selector, timeout_ms)
        with translate_errors(f"click {selector}"):
            await element.click(timeout=timeout_ms)
        await self._settle()
        return {"selector": selector, "url": self._page.url}

    async def type(self, selector, text, clear=True, submit=False, timeout_ms=10000):
        element = await self._wait_visible(selector, timeout_ms)
        with translate_errors(f"type into {selector}"):
            if clear:
                await element.fill(text, timeout=timeout_ms)
            else:
                await element.press_sequentially(text, timeout=timeout_ms)
            if submit:
                await element.press("Enter", timeout=timeout_ms)
        if submit:
            await self._settle()
        return {"selector": selector, "chars_typed": len(text), "submitted": submit}

    async def extract(self, selector, timeout_ms=10000):
        locator = self._page.locator(selector)
        try:
            await locator.first.wait_for(state="attached", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise TransientActionError(f"Element not attached: {selector}", kind="not_attached") from e
        except PlaywrightError as e:
            raise classify_playwright_error(e, f"extract {selector}") from e
        with translate_errors(f"extract {selector}"):
            return await locator.first.inner_text(timeout=timeout_ms)

    async def wait_for(self, selector=None, state=None, timeout_ms=10000):
        if selector:
            await self._wait_visible(selector, timeout_ms)
            return {"selector": selector, "appeared": True}
        if state:
            with translate_errors(f"wait for {state}"):
                await self._page.wait_for_load_state(state, timeout=timeout_ms)
            return {"state": state, "ready": True}
        raise ActionError("waitFor needs a selector or a state", kind="invalid_argument")

    async def screenshot(self, path, full_page=False):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with translate_errors("screenshot"):
            await self._page.screenshot(path=str(path), full_page=full_page)
        return path

    async def scroll(self, direction="down", amount=None):
        with translate_errors(f"scroll {direction}"):
            position = await self._page.evaluate(
                """
                ([direction, amount]) => {
                    const step = amount || window.innerHeight;
                    if (direction === 'down') window.scrollBy(0, step);
                    else if (direction === 'up') window.scrollBy(0, -step);
                    else if (direction === 'top') window.scrollTo(0, 0);
                    else if (direction === 'bottom') window.scrollTo(0, document.body.scrollHeight);
                    return window.scrollY;
                }
                """,
                [direction, amount],
            )
        return {"direction": direction, "scroll_y": position}

    async def query(self, selector):
        locator = self._page.locator(selector)
        with translate_errors(f"query {selector}"):
            count = await locator.count()
            if count == 0:
                raise ActionError(f"Element not found: {selector}", kind="selector_not_found")
            first = locator.first
            text = await first.inner_text()
            visible = await first.is_visible()
        return {"selector": selector, "count": count, "text": text, "visible": visible}

    async def go_back(self, timeout_ms=30000):
        with translate_errors("go back"):
            response = await self._page.go_back(wait_until="domcontentloaded", timeout=timeout_ms)
        if response is None and self._page.url in ("", "about:blank"):
            raise ActionError("No previous page in history", kind="no_history")
        return {"url": self._page.url}

    async def close(self) -> None:
        """Close context, browser and Playwright. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True

        # Close in reverse order
        for name, closer in (
            ("context", self._context.close),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._playwright.stop),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except PlaywrightError as e:
                logger.debug(f"Ignoring error while closing {name}: {e}")
        logger.debug("Browser session closed")
