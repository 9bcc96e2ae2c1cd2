"""
Tests for the pre-execution safety guard.
"""

import pytest

from browser_operator.config import SafetyPolicy
from browser_operator.safety import SafetyGuard
from browser_operator.tool_schemas import parse_tool_call


def call(name, **args):
    return parse_tool_call({"name": name, "args": args})


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def guard():
    return SafetyGuard(SafetyPolicy(allowed_domains=["example.com"], rate_limit_ms=0))


class TestDomainChecks:
    """Tests for allowlist and blocklist enforcement."""

    def test_allowed_navigation(self, guard):
        verdict = guard.check(call("navigate", url="https://www.example.com/docs"), "about:blank")
        assert verdict.allowed
        assert verdict.domain == "www.example.com"

    def test_disallowed_navigation(self, guard):
        verdict = guard.check(call("navigate", url="https://evil.org/"), "https://example.com/")
        assert not verdict.allowed
        assert verdict.violation.check == "domain"
        assert "evil.org" in verdict.violation.reason

    def test_wildcard_allowlist(self):
        guard = SafetyGuard(SafetyPolicy(allowed_domains=["*.example.org"], rate_limit_ms=0))
        assert guard.check(call("navigate", url="https://api.example.org/"), "").allowed
        assert not guard.check(call("navigate", url="https://example.net/"), "").allowed

    def test_blocklist_wins(self):
        guard = SafetyGuard(SafetyPolicy(
            allowed_domains=["example.com"],
            blocked_domains=["ads.example.com"],
            rate_limit_ms=0,
        ))
        allowed, reason = guard.is_domain_allowed("ads.example.com")
        assert not allowed
        assert "blocked" in reason

    def test_no_allowlist_allows_everything_not_blocked(self):
        guard = SafetyGuard(SafetyPolicy(blocked_domains=["bad.com"], rate_limit_ms=0))
        assert guard.is_domain_allowed("anything.net") == (True, "")
        assert not guard.is_domain_allowed("bad.com")[0]

    def test_non_web_navigation_rejected(self, guard):
        verdict = guard.check(call("navigate", url="file:///etc/passwd"), "https://example.com/")
        assert not verdict.allowed
        assert verdict.violation.check == "domain"

    def test_page_actions_use_current_domain(self, guard):
        verdict = guard.check(call("click", selector="#next"), "https://other.net/page")
        assert not verdict.allowed

    def test_blank_page_actions_pass(self, guard):
        assert guard.check(call("scroll"), "about:blank").allowed


class TestCooldown:
    """Tests for the per-domain rate limit."""

    def test_wait_after_recent_action(self):
        clock = FakeClock()
        guard = SafetyGuard(SafetyPolicy(rate_limit_ms=500), clock=clock)
        guard.record_action("example.com")

        clock.now += 0.2
        verdict = guard.check(call("scroll"), "https://example.com/")
        assert verdict.allowed
        assert verdict.wait_s == pytest.approx(0.3)

    def test_no_wait_after_interval(self):
        clock = FakeClock()
        guard = SafetyGuard(SafetyPolicy(rate_limit_ms=500), clock=clock)
        guard.record_action("example.com")

        clock.now += 1.0
        assert guard.cooldown_remaining("example.com") == 0.0

    def test_domains_are_independent(self):
        clock = FakeClock()
        guard = SafetyGuard(SafetyPolicy(rate_limit_ms=500), clock=clock)
        guard.record_action("example.com")
        assert guard.cooldown_remaining("other.org") == 0.0


class TestStepBudget:
    def test_budget_exhausted(self):
        guard = SafetyGuard(SafetyPolicy(rate_limit_ms=0, max_actions_per_domain=2))
        for _ in range(2):
            assert guard.check(call("scroll"), "https://example.com/").allowed
            guard.record_action("example.com")

        verdict = guard.check(call("scroll"), "https://example.com/")
        assert not verdict.allowed
        assert verdict.violation.check == "step_budget"
        assert guard.action_count("example.com") == 2

    def test_reset(self):
        guard = SafetyGuard(SafetyPolicy(rate_limit_ms=0, max_actions_per_domain=1))
        guard.record_action("example.com")
        guard.reset()
        assert guard.check(call("scroll"), "https://example.com/").allowed


class TestSensitivity:
    """Tests for confirmation routing."""

    def test_sensitive_click(self, guard):
        verdict = guard.check(call("click", selector='text="Place Order"'), "https://example.com/cart")
        assert verdict.allowed
        assert verdict.needs_confirmation
        assert "place order" in verdict.reason

    def test_payment_page(self, guard):
        verdict = guard.check(call("click", selector="#continue"), "https://example.com/checkout")
        assert verdict.needs_confirmation

    def test_confirmation_pattern(self):
        guard = SafetyGuard(SafetyPolicy(rate_limit_ms=0, require_confirmation=["/admin"]))
        verdict = guard.check(call("navigate", url="https://example.com/admin/users"), "about:blank")
        assert verdict.needs_confirmation
        assert "/admin" in verdict.reason

    def test_read_only_actions_not_gated(self, guard):
        verdict = guard.check(call("extract", selector="#delete-warning"), "https://example.com/checkout")
        assert verdict.allowed
        assert not verdict.needs_confirmation

    def test_plain_click_not_gated(self, guard):
        verdict = guard.check(call("click", selector="#next-page"), "https://example.com/list")
        assert not verdict.needs_confirmation

    def test_complete_never_gated(self):
        guard = SafetyGuard(SafetyPolicy(allowed_domains=["example.com"], max_actions_per_domain=0))
        verdict = guard.check(call("complete", success=True, result="done"), "https://evil.org/checkout")
        assert verdict.allowed
        assert not verdict.needs_confirmation
        assert verdict.wait_s == 0.0
