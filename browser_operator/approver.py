"""
Approval system abstraction for Browser Operator.

Provides a unified interface for confirming sensitive actions, whether the
operator runs interactively or unattended.
"""

import asyncio
import json
from abc import ABC, abstractmethod

from rich.console import Console
from rich.prompt import Prompt

from .tool_schemas import tool_call_to_dict


class Approver(ABC):
    """Abstract base class for action approval handlers."""

    @abstractmethod
    async def request_approval(self, tool_call, reason: str, rationale: str) -> bool:
        """Request approval for a sensitive action.

        Args:
            tool_call: The proposed ToolCall
            reason: Why the safety guard flagged it
            rationale: The model's rationale

        Returns:
            True if the action may run
        """

    async def notify_denial(self) -> str:
        """Guidance for the next action after a denial, or empty string."""
        return ""


class ConsoleApprover(Approver):
    """CLI approval via Rich prompts.

    Prompts run in a worker thread so the event loop keeps serving other runs.
    """

    def __init__(self, console: Console = None):
        self.console = console or Console()

    def _ask(self, tool_call, reason: str, rationale: str) -> bool:
        call = tool_call_to_dict(tool_call)

        self.console.print()
        self.console.print(f"[bold]Action:[/bold] {call['name']}")
        self.console.print(f"[bold]Arguments:[/bold] {json.dumps(call.get('args', {}))}")
        self.console.print(f"[bold]Flagged:[/bold] [red]{reason}[/red]")
        self.console.print(f"[bold]Rationale:[/bold] {rationale}")
        self.console.print()

        response = Prompt.ask(
            "[yellow]Approve action?[/yellow]",
            choices=["y", "n"],
            default="n",
            console=self.console,
        )
        return response == "y"

    async def request_approval(self, tool_call, reason, rationale):
        return await asyncio.to_thread(self._ask, tool_call, reason, rationale)

    def _ask_guidance(self) -> str:
        self.console.print()
        return Prompt.ask(
            "[yellow]Action denied. Provide guidance for next action (or press Enter to let agent retry)[/yellow]",
            default="",
            console=self.console,
        )

    async def notify_denial(self) -> str:
        return await asyncio.to_thread(self._ask_guidance)


class AutoApprover(Approver):
    """Automatically approve all actions.

    Used when auto-approve is enabled, and in tests.
    """

    async def request_approval(self, tool_call, reason, rationale):
        return True


class DenyApprover(Approver):
    """Deny every sensitive action. The default for unattended runs."""

    async def request_approval(self, tool_call, reason, rationale):
        return False


def get_approver(mode: str = "deny", auto_approve: bool = False) -> Approver:
    """Get the appropriate approver for the given mode.

    Args:
        mode: "deny", "console", or "auto"
        auto_approve: If True, always return AutoApprover

    Returns:
        Appropriate Approver instance
    """
    if auto_approve or mode == "auto":
        return AutoApprover()

    if mode == "console":
        return ConsoleApprover()

    return DenyApprover()
