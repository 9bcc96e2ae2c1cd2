"""
Utility functions for Browser Operator.

Provides helpers for text processing, URLs, and history formatting.
"""

import fnmatch
import re
from typing import Any, Optional
from urllib.parse import urlparse


def truncate_text(text: str, max_chars: int, suffix: str = "...") -> str:
    """Truncate text to a maximum number of characters.

    Args:
        text: Text to truncate
        max_chars: Maximum number of characters
        suffix: Suffix to add when truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_chars:
        return text
    return text[:max_chars - len(suffix)] + suffix


def clean_text(text: str) -> str:
    """Collapse runs of whitespace and strip."""
    return re.sub(r'\s+', ' ', text).strip()


def extract_json_from_response(response: str) -> Optional[str]:
    """Extract JSON from a response that might contain markdown or extra text.

    Args:
        response: Raw response string

    Returns:
        Extracted JSON string, or None if not found
    """
    # Try to find JSON in code blocks first
    code_block_pattern = r'```(?:json)?\s*(\{[\s\S]*?\})\s*```'
    match = re.search(code_block_pattern, response)
    if match:
        return match.group(1)

    # Try to find a raw JSON object
    json_pattern = r'\{[\s\S]*\}'
    match = re.search(json_pattern, response)
    if match:
        return match.group(0)

    return None


def parse_domain(url: str) -> str:
    """Extract the lowercase host from a URL.

    Args:
        url: Full URL (a bare host is accepted too)

    Returns:
        Host name (e.g., "example.com"), or "" for non-web URLs
    """
    if not url:
        return ""
    if "://" not in url and not url.startswith(("about:", "data:", "javascript:")):
        url = f"https://{url}"
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return ""
    return (parsed.hostname or "").lower()


def domain_matches(host: str, pattern: str) -> bool:
    """Check a host against an allow/block list entry.

    Matches the exact host, any subdomain of it, or an fnmatch wildcard
    such as ``*.example.org``.
    """
    host = host.lower().rstrip(".")
    pattern = pattern.lower().strip().rstrip(".")
    if not host or not pattern:
        return False
    if "*" in pattern or "?" in pattern:
        return fnmatch.fnmatch(host, pattern)
    return host == pattern or host.endswith("." + pattern)


def is_password_field(selector: str) -> bool:
    """Check if a selector likely refers to a password field."""
    password_patterns = [
        r'password',
        r'type=["\']?password',
        r'#pass',
        r'\.pass',
        r'passwd',
        r'pwd',
    ]
    selector_lower = selector.lower()
    return any(re.search(p, selector_lower) for p in password_patterns)


def format_action_for_history(
    step_index: int,
    action: str,
    args: dict[str, Any],
    outcome: str,
    result: str,
) -> dict[str, Any]:
    """Format an action for the bounded history sent to the reasoning service.

    Args:
        step_index: Step the action belongs to
        action: Action name
        args: Action arguments
        outcome: "ok", "failed" or "rejected"
        result: Result or error text

    Returns:
        Formatted history entry
    """
    # Truncate long values
    formatted_args = {}
    for key, value in args.items():
        if isinstance(value, str) and len(value) > 100:
            formatted_args[key] = truncate_text(value, 100)
        else:
            formatted_args[key] = value

    return {
        "step": step_index,
        "action": action,
        "args": formatted_args,
        "outcome": outcome,
        "result": truncate_text(result, 300),
    }


def slugify(text: str, max_length: int = 30) -> str:
    """Convert text to a filesystem-safe slug."""
    slug = re.sub(r'[^\w\s-]', '', text.lower())
    slug = re.sub(r'[-\s]+', '_', slug).strip('_')
    return slug[:max_length] or "run"


PAYMENT_DOMAINS = {
    "paypal.com",
    "stripe.com",
    "checkout.stripe.com",
    "pay.google.com",
    "checkout.shopify.com",
}

PAYMENT_PATHS = ('/checkout', '/payment', '/pay/', '/cart/checkout', '/billing')


def is_payment_url(url: str) -> bool:
    """Check if a URL is likely a payment page.

    Args:
        url: URL to check

    Returns:
        True if the host is a known payment provider or the path is a payment path
    """
    host = parse_domain(url)
    if any(domain_matches(host, d) for d in PAYMENT_DOMAINS):
        return True
    url_lower = url.lower()
    return any(p in url_lower for p in PAYMENT_PATHS)
