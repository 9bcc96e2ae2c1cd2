"""
Safety guard for Browser Operator.

Evaluates every proposed action against the run's policy before it reaches
the browser: domain allow/block lists, per-domain cooldown, per-domain action
budget and sensitive-action detection.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import SafetyPolicy
from .errors import PolicyViolation
from .tool_schemas import tool_call_to_dict
from .utils import domain_matches, is_payment_url, parse_domain


logger = logging.getLogger(__name__)


# Actions that change page or account state
INTERACTIVE_ACTIONS = {"navigate", "click", "type"}


@dataclass
class GuardVerdict:
    """Outcome of a safety check.

    Attributes:
        allowed: False when a check rejected the action
        needs_confirmation: True when the action must be confirmed first
        wait_s: Cooldown to sleep before executing
        violation: The rejection, when not allowed
        domain: Domain the action is attributed to
        reason: Why confirmation is needed
    """
    allowed: bool = True
    needs_confirmation: bool = False
    wait_s: float = 0.0
    violation: Optional[PolicyViolation] = None
    domain: str = ""
    reason: str = ""

    @classmethod
    def reject(cls, check: str, reason: str, domain: str = "") -> "GuardVerdict":
        return cls(allowed=False, violation=PolicyViolation(check, reason), domain=domain)


class SafetyGuard:
    """Pre-execution policy checks for one run."""

    def __init__(self, policy: SafetyPolicy, clock: Callable[[], float] = time.monotonic):
        self.policy = policy
        self._clock = clock
        self._action_counts: dict[str, int] = {}
        self._last_action_time: dict[str, float] = {}

    def is_domain_allowed(self, domain: str) -> tuple[bool, str]:
        """Check a host against the blocklist, then the allowlist."""
        for blocked in self.policy.blocked_domains:
            if domain_matches(domain, blocked):
                return False, f"Domain {domain} is blocked"

        if self.policy.allowed_domains:
            if not any(domain_matches(domain, allowed) for allowed in self.policy.allowed_domains):
                return False, f"Domain {domain} not in allowlist"

        return True, ""

    def cooldown_remaining(self, domain: str) -> float:
        """Seconds to wait before the next action on a domain."""
        if not domain or not self.policy.rate_limit_ms:
            return 0.0
        last = self._last_action_time.get(domain)
        if last is None:
            return 0.0
        elapsed = self._clock() - last
        return max(0.0, self.policy.rate_limit_ms / 1000.0 - elapsed)

    def sensitivity_reason(self, tool_call, current_url: str) -> Optional[str]:
        """Why an action needs confirmation, or None."""
        if tool_call.name not in INTERACTIVE_ACTIONS:
            return None

        urls = [current_url]
        if tool_call.name == "navigate":
            urls.append(tool_call.args.url)

        for url in urls:
            if not url:
                continue
            url_lower = url.lower()
            for pattern in self.policy.require_confirmation:
                if pattern.lower() in url_lower:
                    return f"URL matches confirmation pattern '{pattern}'"
            if is_payment_url(url):
                return f"Payment page: {url}"

        args_text = json.dumps(tool_call_to_dict(tool_call)["args"]).lower()
        for keyword in self.policy.sensitive_keywords:
            if keyword in args_text:
                return f"Sensitive action ({keyword})"
        for url in urls:
            if url and any(keyword in url.lower() for keyword in self.policy.sensitive_keywords):
                return f"Sensitive URL: {url}"
        return None

    def check(self, tool_call, current_url: str) -> GuardVerdict:
        """Run all checks in order: domain, rate limit, step budget, sensitivity.

        Args:
            tool_call: Proposed ToolCall
            current_url: URL of the page the action would run on

        Returns:
            GuardVerdict (never raises)
        """
        if tool_call.name == "complete":
            return GuardVerdict()

        if tool_call.name == "navigate":
            target = tool_call.args.url
            domain = parse_domain(target)
            if not domain:
                return GuardVerdict.reject("domain", f"Unsupported URL: {target}")
        else:
            domain = parse_domain(current_url)

        # Domain
        if domain:
            allowed, reason = self.is_domain_allowed(domain)
            if not allowed:
                logger.info(f"Rejected {tool_call.name}: {reason}")
                return GuardVerdict.reject("domain", reason, domain)

        # Rate limit
        wait_s = self.cooldown_remaining(domain)

        # Step budget
        limit = self.policy.max_actions_per_domain
        if domain and limit is not None and self._action_counts.get(domain, 0) >= limit:
            reason = f"Max actions ({limit}) reached for {domain}"
            logger.info(f"Rejected {tool_call.name}: {reason}")
            return GuardVerdict.reject("step_budget", reason, domain)

        # Sensitivity
        sensitive = self.sensitivity_reason(tool_call, current_url)

        return GuardVerdict(
            allowed=True,
            needs_confirmation=sensitive is not None,
            wait_s=wait_s,
            domain=domain,
            reason=sensitive or "",
        )

    def record_action(self, domain: str) -> None:
        """Count an executed action toward cooldown and budget."""
        if not domain:
            return
        self._last_action_time[domain] = self._clock()
        self._action_counts[domain] = self._action_counts.get(domain, 0) + 1

    def action_count(self, domain: str) -> int:
        return self._action_counts.get(domain, 0)

    def reset(self) -> None:
        """Reset counters (e.g., between runs)."""
        self._action_counts.clear()
        self._last_action_time.clear()
