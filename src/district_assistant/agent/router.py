"""Tool selection and time-boxed execution."""

from __future__ import annotations

import asyncio
import json
from time import perf_counter
from typing import Any

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from district_assistant.agent.escalation import ESCALATION_TOOL_NAME
from district_assistant.agent.registry import Tool, ToolRegistry
from district_assistant.config import RouterConfig
from district_assistant.llm import CompletionClient
from district_assistant.types import (
    ClassifiedIntent,
    ConversationContext,
    ConversationMessage,
    DistrictProfile,
    EscalationReason,
    ExecutionResult,
    IntentCategory,
    RoutingDecision,
    ToolCall,
    ToolResult,
    ToolSelection,
    UserContext,
)

logger = structlog.get_logger(__name__)

_SELECTOR_SYSTEM = """You are a tool routing assistant for a school district assistant.
Select the best tools to answer the user's request.

Available tools:
{tools}

User context:
- Role: {role}
- Has linked children: {has_children}

Rules:
1. Select tools that can best answer the user's question.
2. Use several tools only when they provide complementary information.
3. Priority runs from 1 (highest) to 10 (lowest).
4. Recommend escalation if the request needs human judgment.
5. Never select more than {max_tools} tools.

Respond with ONLY valid JSON:
{{"selectedTools": [{{"toolName": "name", "priority": 1, "reasoning": "why", "parameters": {{}}}}],
 "overallReasoning": "why", "shouldEscalate": false, "escalationReason": null}}"""


class SelectedTool(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tool_name: str = Field(validation_alias=AliasChoices("toolName", "tool_name", "name"))
    priority: int = Field(default=1, ge=1, le=10)
    reasoning: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class SelectionReply(BaseModel):
    model_config = ConfigDict(extra="ignore")

    selected_tools: list[SelectedTool] = Field(
        default_factory=list, validation_alias=AliasChoices("selectedTools", "selected_tools")
    )
    overall_reasoning: str = Field(
        default="", validation_alias=AliasChoices("overallReasoning", "overall_reasoning")
    )
    should_escalate: bool = Field(
        default=False, validation_alias=AliasChoices("shouldEscalate", "should_escalate")
    )
    escalation_reason: str | None = Field(
        default=None, validation_alias=AliasChoices("escalationReason", "escalation_reason")
    )


class ToolRouter:
    """Routes a classified intent to tools and runs them.

    Routing order: mandatory escalation, permitted candidates, simple
    routing, then the model-assisted selector with a category heuristic as
    its fallback. Execution never raises; timeouts and unknown tools become
    failed `ToolResult`s.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        client: CompletionClient | None = None,
        config: RouterConfig | None = None,
    ) -> None:
        self.registry = registry
        self.client = client
        self.config = config or RouterConfig()

    async def route(
        self,
        intent: ClassifiedIntent,
        user: UserContext,
        conversation: ConversationContext | None = None,
    ) -> RoutingDecision:
        mandatory = self._mandatory_escalation(intent)
        if mandatory is not None:
            logger.info("routing_mandatory_escalation", strategy=mandatory.strategy, reasoning=mandatory.reasoning)
            return mandatory

        candidates = self.registry.tools_for_intent(intent.category)
        permitted = [tool for tool in candidates if tool.can_execute(user)]
        if not permitted:
            reason = (
                EscalationReason.AUTHORIZATION_REQUIRED if candidates else EscalationReason.COMPLEX_QUERY
            )
            return RoutingDecision(
                selected_tools=[],
                reasoning="No permitted tools handle this request",
                requires_escalation=True,
                escalation_reason=reason,
                strategy="no_permitted_tools",
            )

        primary = self._simple_match(intent, permitted)
        if primary is not None:
            return RoutingDecision(
                selected_tools=[
                    ToolSelection(
                        name=primary.name,
                        priority=1,
                        reasoning=f"{primary.name} handles {intent.category.value}",
                    )
                ],
                reasoning=f"Single tool match for {intent.category.value}",
                strategy="simple",
            )

        client = self.client
        if client is None:
            return self._heuristic(intent, permitted)
        try:
            return await self._select_with_model(client, intent, permitted, user, conversation)
        except Exception as exc:
            logger.warning("tool_selection_failed", error=str(exc))
            return self._heuristic(intent, permitted)

    async def execute(
        self,
        decision: RoutingDecision,
        intent: ClassifiedIntent,
        user: UserContext,
        history: list[ConversationMessage] | None = None,
        *,
        district: DistrictProfile | None = None,
        active_child_id: str | None = None,
    ) -> ExecutionResult:
        started = perf_counter()
        base = ToolCall(
            params={},
            intent=intent,
            user=user,
            history=list(history or []),
            district=district,
            active_child_id=active_child_id,
        )
        selections = sorted(decision.selected_tools, key=lambda item: item.priority)
        if self.config.parallel_execution:
            results = list(
                await asyncio.gather(*(self._run(selection, base) for selection in selections))
            )
        else:
            results = await self._run_sequential(selections, base)

        if decision.requires_escalation and not any(
            selection.name == ESCALATION_TOOL_NAME for selection in selections
        ):
            results.append(await self._run(self._escalation_selection(decision), base))

        return _aggregate(results, decision, (perf_counter() - started) * 1000.0)

    def _mandatory_escalation(self, intent: ClassifiedIntent) -> RoutingDecision | None:
        if intent.category is IntentCategory.EMERGENCY:
            reason = EscalationReason.EMERGENCY
            text = "Emergency detected; immediate escalation required"
        elif intent.urgency.is_elevated and intent.should_escalate:
            reason = EscalationReason.SAFETY_CONCERN
            text = "High urgency with an escalation flag; handing to staff"
        elif intent.confidence < self.config.mandatory_escalation_confidence:
            reason = EscalationReason.LOW_CONFIDENCE
            text = "Intent classification confidence too low; escalating for review"
        else:
            return None
        return RoutingDecision(
            selected_tools=[],
            reasoning=text,
            requires_escalation=True,
            escalation_reason=reason,
            strategy="mandatory_escalation",
        )

    def _simple_match(self, intent: ClassifiedIntent, permitted: list[Tool]) -> Tool | None:
        if len(permitted) == 1:
            return permitted[0]
        if intent.confidence > self.config.simple_routing_confidence:
            primary = [
                tool
                for tool in permitted
                if tool.definition.handled_intents and tool.definition.handled_intents[0] is intent.category
            ]
            if len(primary) == 1:
                return primary[0]
        return None

    async def _select_with_model(
        self,
        client: CompletionClient,
        intent: ClassifiedIntent,
        permitted: list[Tool],
        user: UserContext,
        conversation: ConversationContext | None,
    ) -> RoutingDecision:
        described = [
            {
                "name": tool.name,
                "description": tool.definition.description,
                "handles": [category.value for category in tool.definition.handled_intents],
                "requiresStudentContext": tool.definition.requires_student_context,
            }
            for tool in permitted
        ]
        system = _SELECTOR_SYSTEM.format(
            tools=json.dumps(described, indent=2),
            role=user.role.value,
            has_children=bool(user.child_ids),
            max_tools=self.config.max_tools,
        )
        prompt_lines = [
            f'User query: "{intent.original_query}"',
            f"Intent category: {intent.category.value}",
            f"Confidence: {intent.confidence:.2f}",
            f"Entities: {json.dumps(intent.entities, default=str)}",
            f"Urgency: {intent.urgency.value}",
        ]
        if conversation is not None and conversation.topics:
            prompt_lines.append(f"Recent conversation topics: {', '.join(conversation.topics)}")
        prompt_lines.append("Select the tool(s) and explain why. Respond with JSON only.")

        reply = await client.complete_json(
            "\n".join(prompt_lines),
            SelectionReply,
            system=system,
            attempts=self.config.json_attempts,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            timeout_seconds=self.config.selection_timeout_seconds,
        )

        allowed = {tool.name for tool in permitted}
        chosen: list[ToolSelection] = []
        for item in sorted(reply.selected_tools, key=lambda entry: entry.priority):
            if item.tool_name not in allowed or any(sel.name == item.tool_name for sel in chosen):
                continue
            chosen.append(
                ToolSelection(
                    name=item.tool_name,
                    priority=item.priority,
                    params=item.parameters,
                    reasoning=item.reasoning,
                )
            )
        chosen = chosen[: self.config.max_tools]
        if not chosen:
            logger.info("tool_selection_empty", proposed=[item.tool_name for item in reply.selected_tools])
            return self._heuristic(intent, permitted)

        reason = None
        if reply.should_escalate:
            reason = EscalationReason(reply.escalation_reason or EscalationReason.COMPLEX_QUERY.value)
        return RoutingDecision(
            selected_tools=chosen,
            reasoning=reply.overall_reasoning,
            requires_escalation=reply.should_escalate,
            escalation_reason=reason,
            strategy="model",
        )

    def _heuristic(self, intent: ClassifiedIntent, permitted: list[Tool]) -> RoutingDecision:
        matching = [tool for tool in permitted if intent.category in tool.definition.handled_intents]
        if not matching:
            return RoutingDecision(
                selected_tools=[],
                reasoning="No tools match the intent category",
                requires_escalation=True,
                escalation_reason=EscalationReason.COMPLEX_QUERY,
                strategy="heuristic",
            )
        low_confidence = intent.confidence < self.config.heuristic_escalation_confidence
        return RoutingDecision(
            selected_tools=[
                ToolSelection(
                    name=tool.name,
                    priority=position,
                    reasoning=f"{tool.name} handles {intent.category.value}",
                )
                for position, tool in enumerate(matching[: self.config.max_tools], start=1)
            ],
            reasoning="Routing by intent category",
            requires_escalation=low_confidence,
            escalation_reason=EscalationReason.LOW_CONFIDENCE if low_confidence else None,
            strategy="heuristic",
        )

    @staticmethod
    def _escalation_selection(decision: RoutingDecision) -> ToolSelection:
        reason = decision.escalation_reason or EscalationReason.COMPLEX_QUERY
        return ToolSelection(
            name=ESCALATION_TOOL_NAME,
            priority=1,
            params={
                "reason": reason.value,
                "additional_context": decision.reasoning,
                "is_safety_escalation": reason is EscalationReason.SAFETY_CONCERN,
            },
            reasoning=decision.reasoning,
        )

    async def _run_sequential(self, selections: list[ToolSelection], base: ToolCall) -> list[ToolResult]:
        results: list[ToolResult] = []
        for selection in selections:
            result = await self._run(selection, base)
            results.append(result)
            if not result.success and "CRITICAL" in (result.error or ""):
                logger.warning("sequential_execution_stopped", tool=selection.name, error=result.error)
                break
        return results

    async def _run(self, selection: ToolSelection, base: ToolCall) -> ToolResult:
        tool = self.registry.get(selection.name)
        if tool is None:
            return _failed(selection.name, f"TOOL_NOT_FOUND: {selection.name}", 0.0)

        call = ToolCall(
            params=dict(selection.params),
            intent=base.intent,
            user=base.user,
            history=base.history,
            district=base.district,
            active_child_id=base.active_child_id,
        )
        budget = tool.definition.timeout_ms / 1000.0
        started = perf_counter()
        try:
            return await asyncio.wait_for(self.registry.execute(selection.name, call), timeout=budget)
        except asyncio.TimeoutError:
            logger.warning("tool_timeout", tool=selection.name, timeout_ms=tool.definition.timeout_ms)
            return _failed(
                selection.name,
                f"TIMEOUT: {selection.name} exceeded {tool.definition.timeout_ms}ms",
                (perf_counter() - started) * 1000.0,
            )
        except Exception as exc:
            logger.exception("tool_dispatch_error", tool=selection.name)
            return _failed(selection.name, f"EXECUTION_ERROR: {exc}", (perf_counter() - started) * 1000.0)


def _failed(name: str, error: str, elapsed_ms: float) -> ToolResult:
    return ToolResult(
        success=False,
        content="",
        metadata={"tool_name": name, "error": error, "confidence": 0.0, "execution_time_ms": elapsed_ms},
    )


def _aggregate(results: list[ToolResult], decision: RoutingDecision, elapsed_ms: float) -> ExecutionResult:
    successful = [result for result in results if result.success]
    if not successful:
        combined = 0.0
    else:
        reported = [result.confidence for result in successful if result.confidence is not None]
        combined = sum(reported) / len(reported) if reported else 0.5

    actions = dict.fromkeys(action for result in results for action in result.suggested_actions)
    return ExecutionResult(
        tool_results=results,
        all_successful=bool(results) and len(successful) == len(results),
        combined_confidence=combined,
        total_execution_time_ms=elapsed_ms,
        requires_follow_up=decision.requires_escalation or any(r.requires_follow_up for r in results),
        suggested_actions=list(actions),
    )
