"""
Error taxonomy for Browser Operator.

Components raise these; only the orchestrator turns them into terminal
run states.
"""

from typing import Optional


class OperatorError(Exception):
    """Base class for all operator errors."""


class ActionError(OperatorError):
    """Non-transient action failure.

    Not fatal to the run: the message is fed back to the reasoning step
    so it can pick another selector or approach.

    Attributes:
        kind: Short failure class used for repeat detection
            (e.g. "selector_not_found", "navigation", "invalid_argument")
    """

    def __init__(self, message: str, kind: str = "action_failed"):
        super().__init__(message)
        self.kind = kind


class TransientActionError(ActionError):
    """Element not yet attached, navigation still settling, readiness timeout.

    Retried locally by the action executor.
    """

    def __init__(self, message: str, kind: str = "not_ready"):
        super().__init__(message, kind=kind)


class RepeatedFailureError(OperatorError):
    """The same class of action failure repeated beyond the allowed bound."""

    def __init__(self, kind: str, count: int, last_error: str = "", result=None):
        super().__init__(
            f"Action failure '{kind}' repeated {count} times in a row: {last_error}"
        )
        self.kind = kind
        self.count = count
        # ActionResult of the failure that crossed the bound
        self.result = result


class PolicyViolation(OperatorError):
    """A proposed action was rejected by the safety guard.

    Attributes:
        check: Which check rejected it (domain, rate_limit, step_budget, sensitivity)
        reason: Human-readable reason, fed back to the reasoning step
    """

    def __init__(self, check: str, reason: str):
        super().__init__(f"{check}: {reason}")
        self.check = check
        self.reason = reason


class ReasoningError(OperatorError):
    """The reasoning service was unreachable or returned unusable output.

    Attributes:
        kind: "unreachable", "timeout" or "invalid_output"
        raw: Raw response text when available (for the retry log)
    """

    def __init__(self, message: str, kind: str = "invalid_output", raw: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.raw = raw


class FatalBrowserError(OperatorError):
    """Browser session crashed, was closed, or the driver is unreachable."""


class BudgetExceeded(OperatorError):
    """Step or time budget exhausted. Ends the run as timed out, not failed."""


class RunCancelled(OperatorError):
    """An external stop signal was honored at a cycle boundary."""

    def __init__(self, message: str = "Run cancelled"):
        super().__init__(message)
