"""
Typed tool schemas for Browser Operator.

Provides Pydantic models for every action the reasoning service may choose.
Responses are treated as untrusted and validated against these before use -
no freeform dicts reach the browser.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid")


def _require_selector(v: str) -> str:
    if not v or not v.strip():
        raise ValueError("Selector cannot be empty")
    return v.strip()


# =============================================================================
# Argument Schemas
# =============================================================================

class NavigateArgs(_Args):
    """Navigate to a URL."""

    url: str = Field(description="Absolute URL to navigate to")
    wait_until: Literal["load", "domcontentloaded", "networkidle"] = Field(
        default="domcontentloaded",
        description="When to consider navigation complete"
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("URL cannot be empty")
        # Basic validation - allow http, https, and file protocols
        if not v.startswith(("http://", "https://", "file://", "about:")):
            # Assume https if no protocol
            v = f"https://{v}"
        return v


class ClickArgs(_Args):
    """Click an element."""

    selector: str = Field(description="Element selector (CSS, text=, role=)")
    timeout_ms: Optional[int] = Field(default=None, ge=100, le=60000)

    @field_validator("selector")
    @classmethod
    def validate_selector(cls, v: str) -> str:
        return _require_selector(v)


class TypeArgs(_Args):
    """Type text into an input."""

    selector: str = Field(description="Input selector")
    text: str = Field(description="Text to type")
    submit: bool = Field(default=False, description="Press Enter after typing")
    clear: bool = Field(default=True, description="Clear the field first")
    timeout_ms: Optional[int] = Field(default=None, ge=100, le=60000)

    @field_validator("selector")
    @classmethod
    def validate_selector(cls, v: str) -> str:
        return _require_selector(v)


class ExtractArgs(_Args):
    """Extract content from the page."""

    mode: Literal["article", "table", "raw", "links"] = Field(
        default="raw",
        description="article: main text | table: rows | raw: all text | links: anchors"
    )
    selector: Optional[str] = Field(
        default=None,
        description="Extract the inner text of this element instead"
    )


class WaitForArgs(_Args):
    """Wait for an element or a load state."""

    selector: Optional[str] = None
    state: Optional[Literal["load", "domcontentloaded", "networkidle"]] = None
    timeout_ms: Optional[int] = Field(default=None, ge=100, le=60000)


class ScreenshotArgs(_Args):
    """Capture the viewport or the full page."""

    purpose: Optional[str] = None
    full_page: bool = False


class ScrollArgs(_Args):
    """Scroll the page."""

    direction: Literal["down", "up", "top", "bottom"] = "down"
    amount: Optional[int] = Field(default=None, ge=1, le=20000)


class QueryArgs(_Args):
    """Inspect an element without interacting with it."""

    selector: str

    @field_validator("selector")
    @classmethod
    def validate_selector(cls, v: str) -> str:
        return _require_selector(v)


class GoBackArgs(_Args):
    """Navigate back in history."""


class CompleteArgs(_Args):
    """Signal that the goal is achieved, or cannot be achieved."""

    success: bool
    result: Optional[str] = None
    reason: Optional[str] = None


# =============================================================================
# Tool Call Variants
# =============================================================================

class NavigateCall(BaseModel):
    name: Literal["navigate"]
    args: NavigateArgs


class ClickCall(BaseModel):
    name: Literal["click"]
    args: ClickArgs


class TypeCall(BaseModel):
    name: Literal["type"]
    args: TypeArgs


class ExtractCall(BaseModel):
    name: Literal["extract"]
    args: ExtractArgs = Field(default_factory=ExtractArgs)


class WaitForCall(BaseModel):
    name: Literal["waitFor"]
    args: WaitForArgs = Field(default_factory=WaitForArgs)


class ScreenshotCall(BaseModel):
    name: Literal["screenshot"]
    args: ScreenshotArgs = Field(default_factory=ScreenshotArgs)


class ScrollCall(BaseModel):
    name: Literal["scroll"]
    args: ScrollArgs = Field(default_factory=ScrollArgs)


class QueryCall(BaseModel):
    name: Literal["query"]
    args: QueryArgs


class GoBackCall(BaseModel):
    name: Literal["goBack"]
    args: GoBackArgs = Field(default_factory=GoBackArgs)


class CompleteCall(BaseModel):
    name: Literal["complete"]
    args: CompleteArgs


ToolCall = Annotated[
    Union[
        NavigateCall,
        ClickCall,
        TypeCall,
        ExtractCall,
        WaitForCall,
        ScreenshotCall,
        ScrollCall,
        QueryCall,
        GoBackCall,
        CompleteCall,
    ],
    Field(discriminator="name"),
]

TOOL_NAMES = (
    "navigate", "click", "type", "extract", "waitFor",
    "screenshot", "scroll", "query", "goBack", "complete",
)


class ActionDecision(BaseModel):
    """Structured response expected from the reasoning service."""

    rationale: str = Field(default="", description="Short reason for this action")
    tool: ToolCall


_tool_call_adapter: TypeAdapter = TypeAdapter(ToolCall)


def parse_tool_call(data: dict[str, Any]):
    """Validate a raw dict as one ToolCall variant.

    Raises:
        pydantic.ValidationError: If the dict is not a valid ToolCall
    """
    return _tool_call_adapter.validate_python(data)


def decision_json_schema() -> dict[str, Any]:
    """JSON schema of ActionDecision for structured-output requests."""
    return ActionDecision.model_json_schema()


def tool_call_to_dict(tool_call) -> dict[str, Any]:
    """Serialize a ToolCall for logs and history."""
    return tool_call.model_dump(mode="json", exclude_none=True)


def describe_tool_call(tool_call, max_chars: int = 120) -> str:
    """One-line rendering like ``click(selector='#go')``."""
    args = tool_call.args.model_dump(exclude_none=True)
    rendered = ", ".join(f"{k}={v!r}" for k, v in args.items())
    text = f"{tool_call.name}({rendered})"
    if len(text) > max_chars:
        text = text[:max_chars - 3] + "..."
    return text


# =============================================================================
# Run Request
# =============================================================================

class RunRequest(BaseModel):
    """Request to start a run."""

    model_config = ConfigDict(populate_by_name=True)

    goal: str = Field(min_length=1, description="Natural-language goal")
    start_url: Optional[str] = Field(default=None, alias="startUrl")
    max_steps: Optional[int] = Field(default=None, ge=1, le=500, alias="maxSteps")
    allowed_domains: Optional[list[str]] = Field(default=None, alias="allowedDomains")
    constraints: list[str] = Field(default_factory=list)
    success_criteria: list[str] = Field(default_factory=list, alias="successCriteria")

    @field_validator("goal")
    @classmethod
    def validate_goal(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Goal cannot be blank")
        return v.strip()

    @field_validator("allowed_domains")
    @classmethod
    def normalize_domains(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return None
        return [d.strip().lower() for d in v if d and d.strip()]

    def to_goal(self):
        """Convert to an immutable Goal."""
        from .types import Goal

        return Goal(
            user_prompt=self.goal,
            start_url=self.start_url,
            max_steps=self.max_steps,
            allowed_domains=tuple(self.allowed_domains) if self.allowed_domains else None,
            constraints=tuple(self.constraints),
            success_criteria=tuple(self.success_criteria),
        )

    @classmethod
    def from_json(cls, raw: str) -> "RunRequest":
        return cls.model_validate_json(raw)
