"""
State observer for Browser Operator.

Turns the live page into a bounded WorldState: a compact text summary plus a
ranked list of interactive elements with stable selectors. The ranking and
summary functions are pure so the same HTML always gives the same result.
"""

import asyncio
import logging
import re
from typing import Any, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from readability import Document
from readability.readability import Unparseable

from .driver import BrowserDriver
from .errors import TransientActionError
from .types import CandidateElement, WorldState
from .utils import clean_text, truncate_text


logger = logging.getLogger(__name__)


INTERACTIVE_SELECTOR = (
    "a[href], button, input, textarea, select, summary, [role], [contenteditable]"
)

TEST_ID_ATTRS = ("data-testid", "data-test-id", "data-test", "data-qa")

# Selector strategy tiers, most stable first
TIER_TEST_ID = 0
TIER_ARIA_LABEL = 1
TIER_ID = 2
TIER_NAME = 3
TIER_TEXT = 4
TIER_ROLE = 5

BOILERPLATE_TAGS = ["script", "style", "noscript", "nav", "header", "footer", "aside", "form"]

_GENERATED_ID = re.compile(r"^[a-z0-9-]{20,}$", re.IGNORECASE)
_CSS_IDENT = re.compile(r"^[A-Za-z][\w-]*$")

MAX_LABEL_CHARS = 50
MAX_TEXT_SELECTOR_CHARS = 50
MAX_LINKS = 100
MIN_READABLE_CHARS = 100

CONTENT_READ_ATTEMPTS = 3
CONTENT_READ_BACKOFF_S = 0.5


def _parse(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "lxml")


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _is_hidden(element: Tag) -> bool:
    if element.name == "input" and (element.get("type") or "").lower() == "hidden":
        return True
    node: Optional[Tag] = element
    while node is not None and isinstance(node, Tag):
        if node.has_attr("hidden"):
            return True
        if (node.get("aria-hidden") or "").lower() == "true":
            return True
        style = (node.get("style") or "").replace(" ", "").lower()
        if "display:none" in style or "visibility:hidden" in style:
            return True
        node = node.parent
    return False


def _implicit_role(element: Tag) -> str:
    explicit = element.get("role")
    if explicit:
        return explicit.strip()
    name = element.name
    if name == "a":
        return "link"
    if name in ("button", "summary"):
        return "button"
    if name == "input":
        input_type = (element.get("type") or "text").lower()
        if input_type in ("submit", "button", "reset", "image"):
            return "button"
        if input_type in ("checkbox", "radio"):
            return input_type
        return "textbox"
    if name == "textarea":
        return "textbox"
    if name == "select":
        return "combobox"
    if element.has_attr("contenteditable"):
        return "textbox"
    return "generic"


def _visible_text(element: Tag) -> str:
    return clean_text(element.get_text(" "))


def _label_for(element: Tag) -> str:
    for candidate in (
        element.get("aria-label"),
        _visible_text(element),
        element.get("value") if element.name == "input" else None,
        element.get("placeholder"),
        element.get("title"),
        element.get("alt"),
    ):
        if candidate and candidate.strip():
            return truncate_text(clean_text(candidate), MAX_LABEL_CHARS)
    return ""


def is_generated_id(element_id: str) -> bool:
    """Check if an id looks auto-generated (hashes, framework ids)."""
    return (
        bool(_GENERATED_ID.match(element_id))
        or "random" in element_id.lower()
        or element_id.startswith(":")
    )


def _selector_for(element: Tag, name_counts: dict[str, int], role: str, label: str) -> tuple[str, int]:
    """Highest-priority selector available for an element, with its tier."""
    for attr in TEST_ID_ATTRS:
        value = element.get(attr)
        if value:
            return f'[{attr}="{_quote(value)}"]', TIER_TEST_ID

    aria_label = element.get("aria-label")
    if aria_label and aria_label.strip():
        return f'[aria-label="{_quote(aria_label)}"]', TIER_ARIA_LABEL

    element_id = element.get("id")
    if element_id and not is_generated_id(element_id):
        if _CSS_IDENT.match(element_id):
            return f"#{element_id}", TIER_ID
        return f'[id="{_quote(element_id)}"]', TIER_ID

    name = element.get("name")
    if name and name_counts.get(name, 0) == 1:
        return f'[name="{_quote(name)}"]', TIER_NAME

    text = _visible_text(element)
    if text and len(text) <= MAX_TEXT_SELECTOR_CHARS:
        return f'text="{_quote(text)}"', TIER_TEXT

    if label:
        return f'role={role}[name="{_quote(label)}"]', TIER_ROLE
    return f"role={role}", TIER_ROLE


def rank_candidates(html: str, limit: int = 30) -> list[CandidateElement]:
    """Rank the page's interactive elements by selector stability.

    Args:
        html: Page HTML
        limit: Maximum number of candidates

    Returns:
        Candidates sorted by (tier, document order), unique by selector
    """
    return _rank(_parse(html), limit)


def _rank(soup: BeautifulSoup, limit: int) -> list[CandidateElement]:
    name_counts: dict[str, int] = {}
    for tagged in soup.find_all(attrs={"name": True}):
        name_counts[tagged["name"]] = name_counts.get(tagged["name"], 0) + 1

    ranked: list[tuple[int, int, CandidateElement]] = []
    for order, element in enumerate(soup.select(INTERACTIVE_SELECTOR)):
        if _is_hidden(element):
            continue
        role = _implicit_role(element)
        label = _label_for(element)
        selector, tier = _selector_for(element, name_counts, role, label)
        ranked.append((tier, order, CandidateElement(selector=selector, label=label, role=role, tier=tier)))

    ranked.sort(key=lambda item: (item[0], item[1]))

    seen: set[str] = set()
    candidates: list[CandidateElement] = []
    for _, _, candidate in ranked:
        if candidate.selector in seen:
            continue
        seen.add(candidate.selector)
        candidates.append(candidate)
        if len(candidates) >= limit:
            break
    return candidates


def _stripped_text(soup: BeautifulSoup) -> str:
    """Body text without boilerplate. Removes elements from ``soup`` in place."""
    for element in soup(BOILERPLATE_TAGS):
        element.decompose()
    body = soup.body or soup
    return clean_text(body.get_text(" "))


def _readable_text(html: str) -> str:
    if not html or not html.strip():
        return ""
    try:
        summary_html = Document(html).summary(html_partial=True)
    except Unparseable as e:
        logger.debug(f"Readability could not parse page: {e}")
        return ""
    return clean_text(_parse(summary_html).get_text(" "))


def main_content(html: str, soup: Optional[BeautifulSoup] = None) -> str:
    """Main readable text of a page, readability first, stripped body second.

    A ``soup`` already parsed from ``html`` is reused for the fallback and
    is left without its boilerplate elements.
    """
    text = _readable_text(html)
    if len(text) < MIN_READABLE_CHARS:
        fallback = _stripped_text(soup if soup is not None else _parse(html))
        if len(fallback) > len(text):
            text = fallback
    return text


def summarize_page(html: str, url: str, title: str, max_chars: int = 2500) -> str:
    """Build the bounded text summary sent to the reasoning service.

    Format::

        URL: ...
        Title: ...

        Main Headings:
          - ...
        Subheadings:
          - ...

        Content:
        ...
    """
    return _summarize(_parse(html), html, url, title, max_chars)


def _summarize(soup: BeautifulSoup, html: str, url: str, title: str, max_chars: int) -> str:
    h1s = [t for t in (_visible_text(h) for h in soup.find_all("h1")) if t][:3]
    h2s = [t for t in (_visible_text(h) for h in soup.find_all("h2")) if t][:5]

    lines = [f"URL: {url}", f"Title: {title or 'Untitled'}", ""]
    if h1s:
        lines.append("Main Headings:")
        lines.extend(f"  - {h}" for h in h1s)
        lines.append("")
    if h2s:
        lines.append("Subheadings:")
        lines.extend(f"  - {h}" for h in h2s)
        lines.append("")
    lines.append("Content:")
    lines.append(main_content(html, soup) or "(no readable content)")

    return truncate_text("\n".join(lines), max_chars)


def digest_page(html: str, url: str, title: str, max_candidates: int = 30,
                max_chars: int = 2500) -> tuple[str, list[CandidateElement]]:
    """Summary and ranked candidates from a single parse of the page.

    Same result as ``summarize_page`` and ``rank_candidates``.
    """
    soup = _parse(html)
    # Rank first: the summary strips boilerplate from the tree
    candidates = _rank(soup, max_candidates)
    return _summarize(soup, html, url, title, max_chars), candidates


# =============================================================================
# Extraction helpers
# =============================================================================

def extract_article(html: str, max_chars: int = 4000) -> str:
    """Readable article text."""
    return truncate_text(main_content(html), max_chars)


def extract_raw(html: str, max_chars: int = 4000) -> str:
    """All body text without scripts and styles."""
    soup = _parse(html)
    for element in soup(["script", "style", "noscript"]):
        element.decompose()
    body = soup.body or soup
    return truncate_text(clean_text(body.get_text(" ")), max_chars)


def extract_tables(html: str) -> list[list[dict[str, str]]]:
    """Tables as lists of row dicts keyed by header text.

    Headers come from ``thead`` when present, otherwise from the first row.
    Missing headers become ``col_<n>``.
    """
    soup = _parse(html)
    tables: list[list[dict[str, str]]] = []

    for table in soup.find_all("table"):
        headers = [_visible_text(cell) for cell in table.select("thead th, thead td")]
        rows = table.find_all("tr")
        if not headers and rows:
            headers = [_visible_text(cell) for cell in rows[0].find_all(["th", "td"])]
            rows = rows[1:]

        data: list[dict[str, str]] = []
        for row in rows:
            if row.find_parent("thead") is not None:
                continue
            cells = row.find_all(["td", "th"])
            if not cells:
                continue
            record = {}
            for index, cell in enumerate(cells):
                key = headers[index] if index < len(headers) and headers[index] else f"col_{index}"
                record[key] = _visible_text(cell)
            data.append(record)

        if data:
            tables.append(data)
    return tables


def extract_links(html: str, base_url: str = "", limit: int = MAX_LINKS) -> list[dict[str, str]]:
    """Anchors with text, as absolute ``{text, href}`` dicts."""
    soup = _parse(html)
    links: list[dict[str, str]] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        text = _visible_text(anchor)
        if not text or not href or href.lower().startswith("javascript:"):
            continue
        links.append({"text": truncate_text(text, 100), "href": urljoin(base_url, href)})
        if len(links) >= limit:
            break
    return links


def extract_content(html: str, mode: str, base_url: str = "", max_chars: int = 4000) -> Any:
    """Dispatch an extraction mode to its helper."""
    if mode == "article":
        return extract_article(html, max_chars)
    if mode == "table":
        return extract_tables(html)
    if mode == "links":
        return extract_links(html, base_url)
    return extract_raw(html, max_chars)


# =============================================================================
# Observer
# =============================================================================

class StateObserver:
    """Captures a fresh WorldState from the driver each cycle."""

    def __init__(self, max_candidates: int = 30, summary_max_chars: int = 2500):
        self.max_candidates = max_candidates
        self.summary_max_chars = summary_max_chars

    async def _read_page(self, driver: BrowserDriver) -> tuple[str, str]:
        last_error: Optional[TransientActionError] = None
        for attempt in range(1, CONTENT_READ_ATTEMPTS + 1):
            try:
                html = await driver.content()
                title = await driver.title()
                return html, title
            except TransientActionError as e:
                # Navigation still settling
                last_error = e
                logger.debug(f"Page read attempt {attempt} failed: {e}")
                await asyncio.sleep(CONTENT_READ_BACKOFF_S * attempt)
        raise last_error

    async def observe(self, driver: BrowserDriver, step_index: int) -> WorldState:
        """Capture the current page as a WorldState.

        Raises:
            TransientActionError: If the page could not be read after retries
            FatalBrowserError: If the session is gone
        """
        html, title = await self._read_page(driver)
        url = driver.url
        # Parsing large pages would otherwise stall other runs on the loop
        summary, candidates = await asyncio.to_thread(
            digest_page, html, url, title, self.max_candidates, self.summary_max_chars
        )
        return WorldState(
            url=url,
            title=title,
            dom_summary=summary,
            candidates=tuple(candidates),
            step_index=step_index,
        )
