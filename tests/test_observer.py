"""
Tests for candidate ranking, page summaries and extraction helpers.
"""

import asyncio
from unittest.mock import patch

import pytest

from browser_operator import observer
from browser_operator.errors import FatalBrowserError, TransientActionError
from browser_operator.observer import (
    StateObserver,
    extract_links,
    extract_raw,
    extract_tables,
    is_generated_id,
    rank_candidates,
    summarize_page,
)

from conftest import HELLO_PAGE, FakeDriver


MIXED_PAGE = """
<html><body>
  <a href="/about">About us</a>
  <button data-testid="submit-btn">Send</button>
  <input id="email" type="email" placeholder="Email">
  <button aria-label="Close dialog">X</button>
  <input name="q" type="text">
  <button id="a1b2c3d4e5f6g7h8i9j0k1">Generated</button>
  <input type="hidden" name="csrf" value="token">
  <div hidden><button data-testid="ghost">Ghost</button></div>
  <span role="button"></span>
</body></html>
"""


class TestRankCandidates:
    """Tests for selector priority ranking."""

    def test_priority_order(self):
        selectors = [c.selector for c in rank_candidates(MIXED_PAGE)]
        assert selectors == [
            '[data-testid="submit-btn"]',
            '[aria-label="Close dialog"]',
            "#email",
            '[name="q"]',
            'text="About us"',
            'text="Generated"',
            "role=button",
        ]

    def test_tiers_are_non_decreasing(self):
        tiers = [c.tier for c in rank_candidates(MIXED_PAGE)]
        assert tiers == sorted(tiers)

    def test_labels_and_roles(self):
        by_selector = {c.selector: c for c in rank_candidates(MIXED_PAGE)}
        assert by_selector["#email"].label == "Email"
        assert by_selector["#email"].role == "textbox"
        assert by_selector['text="About us"'].role == "link"
        assert by_selector['[aria-label="Close dialog"]'].label == "Close dialog"

    def test_hidden_elements_skipped(self):
        selectors = [c.selector for c in rank_candidates(MIXED_PAGE)]
        assert '[data-testid="ghost"]' not in selectors
        assert '[name="csrf"]' not in selectors

    def test_inline_style_hidden_skipped(self):
        html = '<button style="display: none" id="secret">S</button><button id="shown">V</button>'
        assert [c.selector for c in rank_candidates(html)] == ["#shown"]

    def test_duplicate_name_not_used(self):
        html = '<input name="opt" placeholder="One"><input name="opt" placeholder="Two">'
        selectors = [c.selector for c in rank_candidates(html)]
        assert '[name="opt"]' not in selectors

    def test_dedupe_and_limit(self):
        buttons = "".join(f'<button data-testid="b{i}">B{i}</button>' for i in range(50))
        html = f"<body>{buttons}<a href='/x'>More</a><a href='/y'>More</a></body>"
        candidates = rank_candidates(html, limit=30)
        assert len(candidates) == 30
        assert candidates[0].selector == '[data-testid="b0"]'

        links_only = rank_candidates("<a href='/x'>More</a><a href='/y'>More</a>")
        assert [c.selector for c in links_only] == ['text="More"']

    def test_deterministic(self):
        assert rank_candidates(MIXED_PAGE) == rank_candidates(MIXED_PAGE)

    def test_generated_ids(self):
        assert is_generated_id("a1b2c3d4e5f6g7h8i9j0k1")
        assert is_generated_id("random-42")
        assert is_generated_id(":r1:")
        assert not is_generated_id("search-box")


class TestSummarizePage:
    """Tests for bounded page summaries."""

    def test_structure(self):
        h2s = "".join(f"<h2>Section {i}</h2><p>Body text {i}.</p>" for i in range(1, 8))
        html = f"<html><head><title>T</title></head><body><h1>Main Title</h1>{h2s}</body></html>"
        summary = summarize_page(html, "https://example.com/", "T")

        assert summary.startswith("URL: https://example.com/\nTitle: T\n")
        assert "Main Headings:\n  - Main Title" in summary
        subheadings = summary.split("Subheadings:\n")[1].split("\n\n")[0]
        assert subheadings.count("  - ") == 5
        assert "Content:" in summary

    def test_capped(self):
        html = "<body><h1>Big</h1>" + "<p>" + ("lorem ipsum " * 2000) + "</p></body>"
        summary = summarize_page(html, "https://example.com/", "Big", max_chars=500)
        assert len(summary) <= 500

    def test_short_page_uses_body_text(self):
        summary = summarize_page(HELLO_PAGE, "https://example.com/", "Greeting")
        assert "Hello" in summary.split("Content:")[1]

    def test_boilerplate_removed_from_fallback(self):
        html = "<body><nav>Menu Links</nav><main><p>Real content</p></main><script>var x=1;</script></body>"
        summary = summarize_page(html, "https://example.com/", "")
        content = summary.split("Content:")[1]
        assert "Real content" in content
        assert "var x" not in content
        assert "Title: Untitled" in summary

    def test_deterministic(self):
        first = summarize_page(MIXED_PAGE, "https://example.com/", "Mixed")
        second = summarize_page(MIXED_PAGE, "https://example.com/", "Mixed")
        assert first == second


NAV_PAGE = """
<html><body>
  <nav><a href="/home">Home</a></nav>
  <main><h1>Short</h1><button id="go">Go</button></main>
  <footer><a href="/terms">Terms</a></footer>
</body></html>
"""


class TestDigestPage:
    """Tests for the single-parse summary and ranking used by the observer."""

    @pytest.mark.parametrize("html", [MIXED_PAGE, NAV_PAGE, HELLO_PAGE])
    def test_matches_separate_functions(self, html):
        summary, candidates = observer.digest_page(html, "https://example.com/", "Page", 30, 2500)
        assert summary == summarize_page(html, "https://example.com/", "Page", 2500)
        assert candidates == rank_candidates(html, 30)

    def test_boilerplate_links_still_ranked(self):
        _, candidates = observer.digest_page(NAV_PAGE, "https://example.com/", "Page")
        assert {c.selector for c in candidates} == {"#go", 'text="Home"', 'text="Terms"'}

    def test_parses_page_once(self):
        with patch.object(observer, "_parse", wraps=observer._parse) as mock_parse:
            observer.digest_page(NAV_PAGE, "https://example.com/", "Page")
        full_parses = [c for c in mock_parse.call_args_list if c.args[0] == NAV_PAGE]
        assert len(full_parses) == 1


class TestExtractionHelpers:
    """Tests for table, link and raw extraction."""

    def test_tables(self):
        html = """
        <table>
          <thead><tr><th>Name</th><th>Price</th></tr></thead>
          <tbody><tr><td>A</td><td>1</td></tr><tr><td>B</td><td>2</td></tr></tbody>
        </table>
        <table><tr><td>k</td><td>v</td></tr><tr><td>x</td><td>y</td></tr></table>
        """
        tables = extract_tables(html)
        assert tables[0] == [{"Name": "A", "Price": "1"}, {"Name": "B", "Price": "2"}]
        assert tables[1] == [{"k": "x", "v": "y"}]

    def test_links(self):
        html = (
            '<a href="/a">A</a><a href="javascript:void(0)">J</a>'
            '<a href="https://x.org/b">B</a><a href="/empty"></a>'
        )
        links = extract_links(html, "https://example.com/dir/")
        assert links == [
            {"text": "A", "href": "https://example.com/a"},
            {"text": "B", "href": "https://x.org/b"},
        ]

    def test_links_capped(self):
        html = "".join(f'<a href="/p{i}">P{i}</a>' for i in range(150))
        assert len(extract_links(html, "https://example.com/")) == 100

    def test_raw_text(self):
        html = "<body><p>One</p><script>ignored()</script><p>Two</p></body>"
        assert extract_raw(html) == "One Two"


class FlakyDriver(FakeDriver):
    """Fails the first content reads while a navigation settles."""

    def __init__(self, pages, start_url, failures):
        super().__init__(pages, start_url)
        self.failures = failures

    async def content(self):
        if self.failures > 0:
            self.failures -= 1
            raise TransientActionError("Execution context was destroyed", kind="navigation_pending")
        return await super().content()


class ClosedDriver(FakeDriver):
    async def content(self):
        raise FatalBrowserError("Target closed")


class TestStateObserver:
    """Tests for WorldState capture."""

    def test_observe(self, hello_driver):
        hello_driver._url = "https://example.com/"
        world = asyncio.run(StateObserver().observe(hello_driver, 3))
        assert world.url == "https://example.com/"
        assert world.title == "Greeting"
        assert world.step_index == 3
        assert "Hello" in world.dom_summary
        assert world.candidates == ()

    def test_parsing_runs_in_worker_thread(self, hello_driver):
        hello_driver._url = "https://example.com/"
        with patch("asyncio.to_thread", wraps=asyncio.to_thread) as mock_thread:
            asyncio.run(StateObserver().observe(hello_driver, 0))
        assert mock_thread.call_args.args[0] is observer.digest_page

    def test_retries_while_settling(self, monkeypatch):
        monkeypatch.setattr(observer, "CONTENT_READ_BACKOFF_S", 0)
        driver = FlakyDriver({"https://example.com/": HELLO_PAGE}, "https://example.com/", failures=2)
        world = asyncio.run(StateObserver().observe(driver, 0))
        assert "Hello" in world.dom_summary

    def test_gives_up_after_three_reads(self, monkeypatch):
        monkeypatch.setattr(observer, "CONTENT_READ_BACKOFF_S", 0)
        driver = FlakyDriver({"https://example.com/": HELLO_PAGE}, "https://example.com/", failures=5)
        with pytest.raises(TransientActionError):
            asyncio.run(StateObserver().observe(driver, 0))

    def test_fatal_propagates(self):
        with pytest.raises(FatalBrowserError):
            asyncio.run(StateObserver().observe(ClosedDriver({}), 0))

    def test_bounded(self):
        buttons = "".join(f'<button data-testid="b{i}">B{i}</button>' for i in range(80))
        driver = FakeDriver({"https://example.com/": f"<body>{buttons}</body>"}, "https://example.com/")
        world = asyncio.run(StateObserver(max_candidates=10, summary_max_chars=300).observe(driver, 0))
        assert len(world.candidates) == 10
        assert len(world.dom_summary) <= 300
