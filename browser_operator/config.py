"""
Configuration management for Browser Operator.

Provides configuration dataclasses and environment variable loading.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from dotenv import load_dotenv

if TYPE_CHECKING:
    from .types import Goal

# Load environment variables from .env file if present
load_dotenv()


def get_base_dir() -> Path:
    """Get the base directory for browser operator data."""
    return Path.home() / ".browser_operator"


def get_runs_dir() -> Path:
    """Get the directory for run logs."""
    return get_base_dir() / "runs"


def get_store_path() -> Path:
    """Get the path of the shared run store database."""
    return get_base_dir() / "operator.db"


# Keywords that route an action to the confirmation gate
SENSITIVE_KEYWORDS = (
    "checkout", "payment", "purchase", "delete", "buy now", "place order",
    "submit order", "confirm order", "credit card", "card number", "subscribe",
    "close account", "deactivate", "transfer funds",
)


@dataclass
class SafetyPolicy:
    """Policy evaluated by the safety guard before every action."""

    allowed_domains: Optional[list[str]] = None
    blocked_domains: list[str] = field(default_factory=list)

    # Minimum interval between executed actions on the same domain
    rate_limit_ms: int = 500

    # Maximum executed actions per domain within one run (None = unlimited)
    max_actions_per_domain: Optional[int] = None

    sensitive_keywords: tuple[str, ...] = SENSITIVE_KEYWORDS

    # Extra URL substrings that always need confirmation
    require_confirmation: list[str] = field(default_factory=list)


@dataclass
class OperatorConfig:
    """Configuration for the browser operator."""

    # LLM settings
    model_endpoint: str = field(
        default_factory=lambda: os.getenv(
            "OPERATOR_ENDPOINT",
            "http://127.0.0.1:1234/v1"
        )
    )
    model: str = field(
        default_factory=lambda: os.getenv(
            "OPERATOR_MODEL",
            "qwen2.5:7b"
        )
    )
    api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("OPERATOR_API_KEY")
    )
    temperature: float = 0.0
    max_tokens: int = 1000
    reasoning_timeout_s: float = 60.0

    # Browser settings
    headless: bool = True
    browser_mode: str = "local"  # local | cdp | fast
    cdp_url: Optional[str] = field(
        default_factory=lambda: os.getenv("OPERATOR_CDP_URL")
    )
    stealth: bool = False
    viewport_width: int = 1280
    viewport_height: int = 800
    user_agent: str = (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    # Timeouts (ms)
    navigation_timeout_ms: int = 30000
    action_timeout_ms: int = 10000

    # Loop ceilings
    max_steps: int = 30
    retry_budget: int = 2
    action_retry_attempts: int = 3
    action_retry_backoff_ms: int = 250
    max_repeated_failures: int = 3
    max_policy_rejections: int = 3
    max_duration_s: Optional[float] = None

    # Content limits
    history_length: int = 5
    max_candidates: int = 30
    summary_max_chars: int = 2500
    extract_max_chars: int = 4000

    # Safety
    safety: SafetyPolicy = field(default_factory=SafetyPolicy)
    approval_mode: str = "deny"  # deny | console | auto
    auto_approve: bool = False

    # Artifacts
    runs_dir: Path = field(default_factory=get_runs_dir)
    store_path: Optional[Path] = None
    enable_console: bool = True

    # Debug mode - enables verbose logging (off by default)
    debug: bool = field(
        default_factory=lambda: os.getenv("OPERATOR_DEBUG", "").lower() in ("1", "true", "yes")
    )

    def __post_init__(self):
        if self.browser_mode not in ("local", "cdp", "fast"):
            raise ValueError(f"Unknown browser_mode: {self.browser_mode}")
        if self.approval_mode not in ("deny", "console", "auto"):
            raise ValueError(f"Unknown approval_mode: {self.approval_mode}")
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        if self.retry_budget < 0:
            raise ValueError("retry_budget must not be negative")
        self.runs_dir = Path(self.runs_dir)

    def for_goal(self, goal: "Goal") -> "OperatorConfig":
        """Derive the per-run configuration for a goal.

        The goal's allowed domains, when given, replace the policy's.
        """
        if not goal.allowed_domains:
            return self
        safety = replace(self.safety, allowed_domains=list(goal.allowed_domains))
        return replace(self, safety=safety)

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        if self.store_path is not None:
            Path(self.store_path).parent.mkdir(parents=True, exist_ok=True)


# Default configuration values for documentation
DEFAULTS = {
    "model_endpoint": "http://127.0.0.1:1234/v1",
    "model": "qwen2.5:7b",
    "headless": True,
    "browser_mode": "local",
    "max_steps": 30,
    "retry_budget": 2,
    "action_retry_attempts": 3,
    "max_repeated_failures": 3,
    "max_policy_rejections": 3,
    "navigation_timeout_ms": 30000,
    "action_timeout_ms": 10000,
    "history_length": 5,
    "max_candidates": 30,
    "summary_max_chars": 2500,
    "rate_limit_ms": 500,
}
