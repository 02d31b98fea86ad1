"""Tool interface and name-keyed registry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from time import perf_counter
from typing import Any, ClassVar

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from district_assistant.agent.permissions import has_permissions, has_student_context
from district_assistant.errors import NotFoundError
from district_assistant.types import (
    Citation,
    IntentCategory,
    ToolCall,
    ToolDefinition,
    ToolResult,
    ToolTrace,
    UserContext,
)

logger = structlog.get_logger(__name__)

DEFAULT_CONFIDENCE = 0.9


class ToolParams(BaseModel):
    """Base parameter model; tools subclass it to declare their inputs."""

    model_config = ConfigDict(extra="ignore")


class Tool(ABC):
    """Base class for every tool the router can call.

    `execute` is the only entry point. It checks permissions and student
    context, validates parameters against `params_model`, then runs
    `_execute`. Whatever happens, the caller gets a `ToolResult`; failures
    carry a machine-readable code in `metadata["error"]`.
    """

    definition: ClassVar[ToolDefinition]
    params_model: ClassVar[type[ToolParams]] = ToolParams

    @property
    def name(self) -> str:
        return self.definition.name

    def can_execute(self, user: UserContext) -> bool:
        return has_permissions(user, self.definition.required_permissions)

    async def execute(self, call: ToolCall) -> ToolResult:
        started = perf_counter()
        if not self.can_execute(call.user):
            return self.failure(
                f"PERMISSION_DENIED: role '{call.user.role.value}' may not use {self.name}",
                "You don't have permission to access this information.",
                started=started,
            )
        if self.definition.requires_student_context and not has_student_context(
            call.user, call.intent.entities
        ):
            return self.failure(
                "MISSING_STUDENT_CONTEXT: no student could be identified for this request",
                "Please tell me which student you are asking about.",
                started=started,
            )
        try:
            params = self.params_model.model_validate(call.params)
        except ValidationError as exc:
            return self.failure(
                f"INVALID_PARAMS: {exc.error_count()} invalid parameter(s) for {self.name}",
                "I couldn't understand the details of that request.",
                started=started,
            )

        try:
            result = await self._execute(params, call)
        except Exception as exc:
            logger.exception("tool_execution_error", tool=self.name)
            return self.failure(
                f"EXECUTION_ERROR: {exc}",
                "Something went wrong while looking that up.",
                started=started,
            )

        result.metadata["tool_name"] = self.name
        result.metadata["execution_time_ms"] = (perf_counter() - started) * 1000.0
        if result.success:
            result.metadata.setdefault("confidence", DEFAULT_CONFIDENCE)
        return result

    @abstractmethod
    async def _execute(self, params: Any, call: ToolCall) -> ToolResult:
        """Tool-specific work; `params` is an instance of `params_model`."""

    def success(
        self,
        content: str,
        *,
        confidence: float = DEFAULT_CONFIDENCE,
        citations: list[Citation] | None = None,
        data: Any = None,
        suggested_actions: list[str] | None = None,
        requires_follow_up: bool = False,
        **metadata: Any,
    ) -> ToolResult:
        payload: dict[str, Any] = {"tool_name": self.name, "confidence": confidence, **metadata}
        if data is not None:
            payload["data"] = data
        return ToolResult(
            success=True,
            content=content,
            citations=citations or [],
            metadata=payload,
            suggested_actions=suggested_actions or [],
            requires_follow_up=requires_follow_up,
        )

    def failure(
        self,
        error: str,
        content: str = "",
        *,
        started: float | None = None,
        **metadata: Any,
    ) -> ToolResult:
        payload: dict[str, Any] = {
            "tool_name": self.name,
            "error": error,
            "confidence": 0.0,
            **metadata,
        }
        if started is not None:
            payload["execution_time_ms"] = (perf_counter() - started) * 1000.0
        return ToolResult(success=False, content=content or error, metadata=payload)


class ToolRegistry:
    """Stores tools by name; each name may be registered once."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._observers: list[Callable[[ToolTrace], None]] = []

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def add_observer(self, observer: Callable[[ToolTrace], None]) -> None:
        """Add a callback invoked after each tool execution; adding it twice is a no-op."""
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: Callable[[ToolTrace], None]) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise NotFoundError(f"Unknown tool: {name}")
        return tool

    def all(self) -> list[Tool]:
        return list(self._tools.values())

    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]

    def tools_for_intent(self, category: IntentCategory) -> list[Tool]:
        return [tool for tool in self._tools.values() if category in tool.definition.handled_intents]

    def accessible_tools(self, category: IntentCategory, user: UserContext) -> list[Tool]:
        return [tool for tool in self.tools_for_intent(category) if tool.can_execute(user)]

    async def execute(self, name: str, call: ToolCall) -> ToolResult:
        tool = self.require(name)
        start = perf_counter()
        result = await tool.execute(call)
        latency_ms = (perf_counter() - start) * 1000.0

        if self._observers:
            trace = ToolTrace(
                name=name,
                input_payload=dict(call.params),
                output_preview=result.content[:320],
                latency_ms=latency_ms,
                success=result.success,
            )
            for observer in list(self._observers):
                observer(trace)
        return result

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
