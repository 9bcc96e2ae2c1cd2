"""
Shared fixtures: an in-memory browser driver and a scripted reasoner.
"""

from pathlib import Path
from typing import Any, Optional, Sequence

import pytest
from bs4 import BeautifulSoup

from browser_operator.config import OperatorConfig, SafetyPolicy
from browser_operator.driver import BrowserDriver
from browser_operator.errors import ActionError, TransientActionError
from browser_operator.llm_client import Reasoner
from browser_operator.tool_schemas import ActionDecision


HELLO_PAGE = "<html><head><title>Greeting</title></head><body><h1>Hello</h1></body></html>"


class FakeDriver(BrowserDriver):
    """In-memory multi-page site.

    ``pages`` maps URLs to HTML. Navigating to an unknown URL fails like a
    DNS error. Every executed primitive is appended to ``actions``.
    """

    def __init__(self, pages: dict[str, str], start_url: str = "about:blank"):
        self.pages = dict(pages)
        self._url = start_url
        self._back: list[str] = []
        self.navigations: list[str] = []
        self.actions: list[tuple[str, Any]] = []
        self.closed = False

    def _soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.pages.get(self._url, "<html><body></body></html>"), "html.parser")

    def _find(self, selector: str):
        soup = self._soup()
        if selector.startswith('text="') and selector.endswith('"'):
            wanted = selector[6:-1]
            match = None
            for tag in soup.find_all(True):
                if tag.get_text(" ", strip=True) == wanted:
                    match = tag
            return match
        return soup.select_one(selector)

    @property
    def url(self) -> str:
        return self._url

    async def title(self) -> str:
        title = self._soup().title
        return title.get_text(strip=True) if title else ""

    async def content(self) -> str:
        return self.pages.get(self._url, "<html><body></body></html>")

    async def navigate(self, url, wait_until="domcontentloaded", timeout_ms=30000):
        self.navigations.append(url)
        self.actions.append(("navigate", url))
        if url not in self.pages:
            raise ActionError(f"net::ERR_NAME_NOT_RESOLVED at {url}", kind="navigation")
        self._back.append(self._url)
        self._url = url
        return {"url": url, "title": await self.title()}

    async def click(self, selector, timeout_ms=10000):
        element = self._find(selector)
        if element is None:
            raise TransientActionError(f"Element not attached: {selector}", kind="not_attached")
        self.actions.append(("click", selector))
        href = element.get("href") if element.name == "a" else None
        if href and href in self.pages:
            await self.navigate(href)
        return {"selector": selector, "url": self._url}

    async def type(self, selector, text, clear=True, submit=False, timeout_ms=10000):
        if self._find(selector) is None:
            raise TransientActionError(f"Element not attached: {selector}", kind="not_attached")
        self.actions.append(("type", selector, text))
        return {"selector": selector, "chars_typed": len(text), "submitted": submit}

    async def extract(self, selector, timeout_ms=10000):
        element = self._find(selector)
        if element is None:
            raise TransientActionError(f"Element not attached: {selector}", kind="not_attached")
        self.actions.append(("extract", selector))
        return element.get_text(" ", strip=True)

    async def wait_for(self, selector=None, state=None, timeout_ms=10000):
        if selector and self._find(selector) is None:
            raise TransientActionError(f"Element not attached: {selector}", kind="not_attached")
        return {"selector": selector, "state": state}

    async def screenshot(self, path, full_page=False):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x89PNG fake")
        self.actions.append(("screenshot", str(path)))
        return path

    async def scroll(self, direction="down", amount=None):
        self.actions.append(("scroll", direction))
        return {"direction": direction, "scroll_y": 0}

    async def query(self, selector):
        element = self._find(selector)
        if element is None:
            raise ActionError(f"Element not found: {selector}", kind="selector_not_found")
        return {"selector": selector, "count": 1, "text": element.get_text(" ", strip=True), "visible": True}

    async def go_back(self, timeout_ms=30000):
        if not self._back:
            raise ActionError("No previous page in history", kind="no_history")
        self._url = self._back.pop()
        return {"url": self._url}

    async def close(self) -> None:
        self.closed = True


def decision(name: str, rationale: str = "", **args: Any) -> ActionDecision:
    """Build a validated decision for one tool."""
    return ActionDecision.model_validate({"rationale": rationale, "tool": {"name": name, "args": args}})


class ScriptedReasoner(Reasoner):
    """Plays back a fixed script of decisions.

    Items may be ActionDecisions or exceptions to raise. Once the script
    runs out the last item repeats.
    """

    def __init__(self, script: Sequence[Any]):
        self.script = list(script)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def decide(self, goal, world, history, hints=(), repair=False):
        index = min(len(self.calls), len(self.script) - 1)
        self.calls.append({
            "world": world,
            "history": list(history),
            "hints": list(hints),
            "repair": repair,
        })
        item = self.script[index]
        if isinstance(item, Exception):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True


def driver_factory_for(driver: BrowserDriver):
    """Async driver factory that always hands out the given driver."""
    async def factory(config):
        return driver
    return factory


@pytest.fixture
def config(tmp_path) -> OperatorConfig:
    """Fast, quiet configuration writing into tmp_path."""
    return OperatorConfig(
        model_endpoint="http://reasoner.test/v1",
        model="test-model",
        api_key="test-key",
        runs_dir=tmp_path / "runs",
        enable_console=False,
        action_retry_backoff_ms=1,
        safety=SafetyPolicy(rate_limit_ms=0),
    )


@pytest.fixture
def hello_driver() -> FakeDriver:
    return FakeDriver({"https://example.com/": HELLO_PAGE})
