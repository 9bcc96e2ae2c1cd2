"""
LLM client for Browser Operator.

Provides an async OpenAI-compatible client that turns a goal, a WorldState
and a bounded history into one validated ActionDecision.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import httpx
from pydantic import ValidationError

from .config import OperatorConfig
from .errors import ReasoningError
from .tool_schemas import ActionDecision, decision_json_schema
from .types import Goal, WorldState
from .utils import extract_json_from_response, truncate_text


logger = logging.getLogger(__name__)


class Reasoner(ABC):
    """Anything that can choose the next action."""

    @abstractmethod
    async def decide(
        self,
        goal: Goal,
        world: WorldState,
        history: Sequence[dict[str, Any]],
        hints: Sequence[str] = (),
        repair: bool = False,
    ) -> ActionDecision:
        """Choose exactly one next action.

        Raises:
            ReasoningError: If no valid decision could be obtained
        """

    async def aclose(self) -> None:
        """Release resources held by the reasoner."""
        return None


class ReasoningClient(Reasoner):
    """Client for OpenAI-compatible chat completion APIs."""

    SYSTEM_PROMPT = """You are a browser automation agent that accomplishes goals on the web.

You receive the goal, the current page state and your recent actions, and must choose a SINGLE next action.

CRITICAL: You MUST respond with ONLY valid JSON, no markdown, no prose, no explanation outside the JSON.

Your response must follow this exact schema:
{
  "rationale": "short reason for this action",
  "tool": {"name": "<tool name>", "args": { ... }}
}

Tools and their arguments:
- navigate: { "url": "https://...", "wait_until": "load|domcontentloaded|networkidle" }
- click: { "selector": "...", "timeout_ms": 10000 }
- type: { "selector": "...", "text": "...", "submit": true/false, "clear": true/false }
- extract: { "mode": "article|table|raw|links", "selector": "optional element selector" }
- waitFor: { "selector": "..." } OR { "state": "load|domcontentloaded|networkidle" }
- screenshot: { "purpose": "optional description", "full_page": false }
- scroll: { "direction": "down|up|top|bottom", "amount": 800 }
- query: { "selector": "..." }
- goBack: {}
- complete: { "success": true/false, "result": "final answer", "reason": "why, when success is false" }

RULES:
1. Use selectors from the Interactive Elements list whenever possible - they are ranked by stability
2. After typing in a search box, set "submit": true or click the search button
3. NEVER repeat an action that just failed - pick another selector or approach
4. Extract the information you need before calling complete
5. Call complete with success=false when the goal cannot be achieved
6. Stay within the allowed domains and respect the constraints

Selector tips:
- [data-testid="..."] and [aria-label="..."] selectors are the most stable
- Use text="..." selectors for visible text
- If clicks keep failing, navigate directly to a link URL instead"""

    REPAIR_PROMPT = """Your previous response was not valid.

Please respond with ONLY valid JSON, no markdown code blocks, no explanation.
Just the raw JSON object starting with { and ending with }

The required format is:
{
  "rationale": "...",
  "tool": {"name": "navigate|click|type|extract|waitFor|screenshot|scroll|query|goBack|complete", "args": { ... }}
}"""

    _response_schema: Optional[dict[str, Any]] = None

    def __init__(self, config: OperatorConfig, client: Optional[httpx.AsyncClient] = None):
        """Initialize the reasoning client.

        Args:
            config: Operator configuration
            client: Optional pre-built HTTP client
        """
        self.config = config
        self.endpoint = config.model_endpoint.rstrip("/")
        self.model = config.model

        self.headers = {"Content-Type": "application/json"}
        if config.api_key:
            self.headers["Authorization"] = f"Bearer {config.api_key}"

        self.client = client or httpx.AsyncClient(timeout=config.reasoning_timeout_s)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    @classmethod
    def response_schema(cls) -> dict[str, Any]:
        if cls._response_schema is None:
            cls._response_schema = decision_json_schema()
        return cls._response_schema

    # =========================================================================
    # Prompt building
    # =========================================================================

    def build_messages(
        self,
        goal: Goal,
        world: WorldState,
        history: Sequence[dict[str, Any]],
        hints: Sequence[str] = (),
        repair: bool = False,
    ) -> list[dict[str, str]]:
        """Build the chat messages for one decision."""
        messages = [
            {"role": "system", "content": self.SYSTEM_PROMPT},
            {"role": "user", "content": self._format_goal(goal, world)},
        ]

        recent = list(history)[-self.config.history_length:]
        state_text = f"""Current Page State:
{world.dom_summary}

Interactive Elements:
{self._format_candidates(world)}

Recent Actions:
{self._format_history(recent)}
"""
        if hints:
            state_text += "\nSelectors that worked before on this site:\n"
            state_text += "\n".join(f"- {h}" for h in hints)
            state_text += "\n"

        state_text += "\nWhat is your next action? Respond with JSON only."
        messages.append({"role": "user", "content": state_text})

        if repair:
            messages.append({"role": "assistant", "content": "I apologize for the invalid response."})
            messages.append({"role": "user", "content": self.REPAIR_PROMPT})

        return messages

    def _format_goal(self, goal: Goal, world: WorldState) -> str:
        text = f"Goal: {goal.user_prompt}\n"
        if goal.start_url:
            text += f"Start URL: {goal.start_url}\n"
        if goal.constraints:
            text += "\nConstraints:\n" + "\n".join(f"- {c}" for c in goal.constraints) + "\n"
        if goal.success_criteria:
            text += "\nSuccess Criteria:\n" + "\n".join(f"- {c}" for c in goal.success_criteria) + "\n"
        if goal.allowed_domains:
            text += "\nAllowed domains: " + ", ".join(goal.allowed_domains) + "\n"
        if goal.max_steps:
            text += f"\nStep {world.step_index + 1} of at most {goal.max_steps}."
        else:
            text += f"\nStep {world.step_index + 1}."
        return text

    def _format_candidates(self, world: WorldState) -> str:
        """Format ranked candidates for the prompt."""
        if not world.candidates:
            return "(no interactive elements found)"
        return "\n".join(
            f"- [{c.role}] {c.label or '(no label)'} -> {c.selector}"
            for c in world.candidates
        )

    def _format_history(self, history: Sequence[dict[str, Any]]) -> str:
        """Format action history for the prompt."""
        if not history:
            return "(no previous actions)"

        formatted = []
        for item in history:
            args = json.dumps(item.get("args", {}), ensure_ascii=False)
            formatted.append(
                f"- step {item.get('step', '?')}: {item.get('action', 'unknown')}({args}) "
                f"-> {item.get('outcome', '?')}: {item.get('result', '')}"
            )
        return "\n".join(formatted)

    # =========================================================================
    # Transport
    # =========================================================================

    async def chat_completion(self, messages: list[dict[str, str]]) -> str:
        """Send one chat completion request.

        Returns:
            The assistant's response content

        Raises:
            ReasoningError: On transport errors, timeouts, non-2xx or a malformed envelope
        """
        url = f"{self.endpoint}/chat/completions"
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "action_decision",
                    "schema": self.response_schema(),
                    "strict": False,
                },
            },
        }

        try:
            response = await self.client.post(url, json=payload, headers=self.headers)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise ReasoningError(f"Reasoning service timed out: {e}", kind="timeout") from e
        except httpx.HTTPStatusError as e:
            raise ReasoningError(
                f"Reasoning service returned HTTP {e.response.status_code}",
                kind="unreachable",
            ) from e
        except httpx.HTTPError as e:
            raise ReasoningError(f"Reasoning service unreachable: {e}", kind="unreachable") from e
        except ValueError as e:
            raise ReasoningError(f"Response body is not JSON: {e}", kind="invalid_output") from e

        return self._content_from_envelope(data)

    def _content_from_envelope(self, data: Any) -> str:
        try:
            message = data["choices"][0]["message"]
            content = message.get("content")
            if not content and message.get("tool_calls"):
                # Native tool calling instead of structured content
                function = message["tool_calls"][0]["function"]
                content = json.dumps({
                    "tool": {"name": function["name"], "args": json.loads(function.get("arguments") or "{}")}
                })
        except (KeyError, IndexError, TypeError, AttributeError, json.JSONDecodeError) as e:
            raise ReasoningError(
                f"Malformed completion envelope: {e}",
                kind="invalid_output",
                raw=truncate_text(json.dumps(data, default=str), 500),
            ) from e
        if not content:
            raise ReasoningError("Empty completion content", kind="invalid_output", raw="")
        return content

    # =========================================================================
    # Parsing
    # =========================================================================

    def parse_decision(self, raw_response: str) -> ActionDecision:
        """Parse and validate a raw response as an ActionDecision.

        A bare ``{"name": ..., "args": ...}`` object is accepted as the tool.

        Raises:
            ReasoningError: If the response is not valid JSON or fails validation
        """
        try:
            data = parse_json_with_recovery(raw_response)
        except json.JSONDecodeError as e:
            raise ReasoningError(
                f"Response is not valid JSON: {e}", kind="invalid_output", raw=raw_response
            ) from e

        if isinstance(data, dict) and "tool" not in data and "name" in data:
            data = {"rationale": data.pop("rationale", ""), "tool": data}

        try:
            return ActionDecision.model_validate(data)
        except ValidationError as e:
            raise ReasoningError(
                f"Response failed validation: {e.error_count()} error(s): {e.errors()[0]['msg']}",
                kind="invalid_output",
                raw=raw_response,
            ) from e

    async def decide(self, goal, world, history, hints=(), repair=False) -> ActionDecision:
        """Get the next action from the reasoning service."""
        messages = self.build_messages(goal, world, history, hints=hints, repair=repair)
        raw_response = await self.chat_completion(messages)
        decision = self.parse_decision(raw_response)
        logger.debug(f"Decision at step {world.step_index}: {decision.tool.name} ({decision.rationale})")
        return decision


def parse_json_with_recovery(raw_response: str) -> Any:
    """Parse JSON with multiple recovery strategies.

    Args:
        raw_response: Raw response that should contain JSON

    Returns:
        Parsed JSON value

    Raises:
        json.JSONDecodeError: If all parsing attempts fail
    """
    # Strategy 1: Try to extract from markdown/prose
    json_str = extract_json_from_response(raw_response)
    if json_str:
        try:
            return json.loads(json_str)
        except json.JSONDecodeError:
            pass

    # Strategy 2: Try raw response
    try:
        return json.loads(raw_response.strip())
    except json.JSONDecodeError:
        pass

    # Strategy 3: Remove trailing commas before } or ]
    cleaned = re.sub(r',\s*([}\]])', r'\1', raw_response.strip())
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Strategy 4: Find first { to last }
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start != -1 and end != -1 and end > start:
        try:
            return json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            pass

    raise json.JSONDecodeError("Could not parse JSON from response", raw_response, 0)
