"""
loop.py - tool-calling conversation loop for one user turn

The model is called until it answers without tool calls. Tool calls run one
at a time in the order the model issued them; each is risk-assessed, audited,
confirmed when HIGH, executed through the registry and answered with exactly
one tool message. Tool failures become error results the model can react to;
only model transport errors, empty answers and the iteration cap end the turn
with an exception.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from aiq.agent.context_manager import THRESHOLD_COMPRESS_HISTORY, Compressor, flatten_messages, unflatten_history
from aiq.agent.guards import unverified_completion_correction
from aiq.agent.messages import SYSTEM, ChatResponse, Message, ToolCall, ToolResult
from aiq.agent.providers.base import ChatRequest, ProviderAdapter, ToolSchema
from aiq.agent.skills import DEFAULT_EVICTION_QUERIES, Priority, Skill, SkillsProvider
from aiq.agent.system_prompts import PromptLoader, build_base_prompt, build_system_prompt
from aiq.agent.tool_registry import Tool, ToolContext, ToolRegistry
from aiq.db.client import QueryResult
from aiq.errors import AgentLoopError, EmptyResponseError, MaxIterationsError, ModelCallError, ToolArgumentsError
from aiq.observability.logging import get_runtime_logger
from aiq.observability.metrics import RuntimeMetrics, get_runtime_metrics
from aiq.observability.redaction import redact
from aiq.security.risk import RiskLevel
from aiq.services.audit_service import AuditSink
from aiq.services.confirmation_service import ConfirmationService
from aiq.trace import new_turn
from aiq.ui.base import NullUI, UserInterface

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
OUTPUT_MODES = ("full", "streaming")


@dataclass(slots=True)
class TurnResult:
    text: str
    last_query_result: QueryResult | None = None
    messages: list[Message] = field(default_factory=list)


def resolve_output_mode(args: dict[str, Any]) -> str:
    """Explicit ``output_mode`` wins; otherwise definitive tasks print in full."""
    mode = args.get("output_mode")
    if mode in OUTPUT_MODES:
        return mode
    if args.get("task_type") == "definitive":
        return "full"
    return "streaming"


def encode_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)


class ToolCallLoop:
    def __init__(
        self,
        *,
        provider: ProviderAdapter,
        model: str,
        registry: ToolRegistry,
        ui: UserInterface | None = None,
        audit: AuditSink | None = None,
        compressor: Compressor | None = None,
        skills: SkillsProvider | None = None,
        prompt_loader: PromptLoader | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_tokens: int = 4096,
        metrics: RuntimeMetrics | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.registry = registry
        self.ui = ui or NullUI()
        self.audit = audit
        self.compressor = compressor
        self.skills = skills
        self.prompt_loader = prompt_loader or PromptLoader()
        self.max_iterations = max_iterations if max_iterations > 0 else DEFAULT_MAX_ITERATIONS
        self.max_tokens = max_tokens
        self.metrics = metrics or get_runtime_metrics()
        self.confirmations = ConfirmationService(self.ui)
        self.runtime_logger = get_runtime_logger()

    async def run(
        self,
        user_input: str,
        *,
        schema_context: str = "",
        database_type: str = "",
        history: list[dict[str, str]] | None = None,
        prior_messages: list[Message] | None = None,
    ) -> TurnResult:
        """Run one user turn.

        ``prior_messages`` (full structured history, tool calls included) takes
        precedence over ``history``, the flattened ``{role, content}`` form.

        Raises:
            ModelCallError: the model call failed.
            EmptyResponseError: the model answered with nothing and no tool succeeded.
            MaxIterationsError: the iteration cap was reached.
        """
        new_turn()
        self.metrics.turns_total += 1
        try:
            return await self._run(user_input, schema_context, database_type, history or [], prior_messages)
        except AgentLoopError as exc:
            self.metrics.turns_failed_total += 1
            self.runtime_logger.warning("turn failed: %s", exc, extra={"outcome": exc.code})
            raise

    async def _run(
        self,
        user_input: str,
        schema_context: str,
        database_type: str,
        history: list[dict[str, str]],
        prior_messages: list[Message] | None,
    ) -> TurnResult:
        # free mode whenever there is nothing to run SQL against
        if "execute_sql" not in self.registry:
            schema_context = ""
        base_prompt = build_base_prompt(
            schema_context=schema_context,
            database_type=database_type,
            loader=self.prompt_loader,
        )
        skills = self._load_skills(user_input)
        system_prompt = build_system_prompt(base_prompt, skills)

        legacy = [Message(role=entry.get("role", "user"), content=entry.get("content", "")) for entry in history]
        # history is only sent when prior_messages is empty
        if self.compressor is not None and legacy and not prior_messages:
            result = await self.compressor.compress(
                [f"{msg.role}: {msg.content}" for msg in legacy], skills, system_prompt, user_input
            )
            if result.compressed:
                self.metrics.compressions_total += 1
                legacy = unflatten_history(result.compressed_history)
                skills = result.remaining_skills
                system_prompt = build_system_prompt(base_prompt, skills)

        messages: list[Message] = [Message.system(system_prompt)]
        if prior_messages:
            messages.extend(msg for msg in prior_messages if msg.role != SYSTEM)
        else:
            messages.extend(legacy)
        messages.append(Message.user(user_input))
        turn_start = len(messages) - 1

        tool_schemas = self.registry.to_schemas()
        guard_enabled = "execute_sql" in self.registry
        had_success = False
        last_query_result: QueryResult | None = None

        for iteration in range(self.max_iterations):
            turn_start, skills = await self._compress_in_flight(messages, turn_start, skills, base_prompt)

            response = await self._call_model(messages, tool_schemas, iteration)
            messages.append(Message.assistant(response.text, response.tool_calls))

            if not response.tool_calls:
                content = response.text
                if response.finish_reason == "stop":
                    if content or had_success:
                        return TurnResult(text=content, last_query_result=last_query_result, messages=messages)
                    raise EmptyResponseError("empty response from model", messages=messages)
                if content:
                    correction = (
                        unverified_completion_correction(user_input, content, had_success) if guard_enabled else None
                    )
                    if correction is not None:
                        logger.info("text-only answer to a database request; asking the model to call the tool")
                        self.metrics.hallucination_corrections_total += 1
                        messages.append(Message.system(correction))
                        continue
                    return TurnResult(text=content, last_query_result=last_query_result, messages=messages)
                if had_success:
                    return TurnResult(text="", last_query_result=last_query_result, messages=messages)
                raise EmptyResponseError(
                    f"empty response from model (finish_reason={response.finish_reason})", messages=messages
                )

            for tool_call in response.tool_calls:
                payload, query_result = await self._process_tool_call(tool_call, iteration)
                status = str(payload.get("status", "success"))
                result = ToolResult(tool_call_id=tool_call.id, content=encode_payload(payload), status=status)
                messages.append(result.to_message())
                if status == "success":
                    had_success = True
                if query_result is not None:
                    last_query_result = query_result

        raise MaxIterationsError(f"maximum iterations ({self.max_iterations}) reached", messages=messages)

    async def _call_model(
        self, messages: list[Message], tool_schemas: list[ToolSchema], iteration: int
    ) -> ChatResponse:
        request = ChatRequest(
            model=self.model,
            messages=list(messages),
            tools=tool_schemas,
            max_tokens=self.max_tokens,
            temperature=0.0,
        )
        logger.debug("iteration=%d messages=%d", iteration, len(messages))
        self.metrics.model_calls_total += 1
        stop_loading = self.ui.show_loading("Thinking...")
        try:
            return await self.provider.chat(request)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise ModelCallError(f"LLM call failed: {exc}", messages=messages) from exc
        finally:
            stop_loading()

    async def _compress_in_flight(
        self,
        messages: list[Message],
        turn_start: int,
        skills: list[Skill],
        base_prompt: str,
    ) -> tuple[int, list[Skill]]:
        """Compress the history before the current turn once the window is 80% full.

        ``messages`` is edited in place. The current user message and everything
        after it are never touched. Returns the new index of the current user
        message and the skills that survived.
        """
        if self.compressor is None or turn_start <= 1:
            return turn_start, skills
        system_prompt = messages[0].content
        flat = flatten_messages(messages[1:])
        if self.compressor.utilization(system_prompt, flat, "") < THRESHOLD_COMPRESS_HISTORY:
            return turn_start, skills

        prefix = flatten_messages(messages[1:turn_start])
        tail = "\n".join(flatten_messages(messages[turn_start:]))
        result = await self.compressor.compress(prefix, skills, system_prompt, tail)
        if not result.compressed:
            return turn_start, skills

        self.metrics.compressions_total += 1
        context = [Message.user(entry) for entry in result.compressed_history]
        messages[1:turn_start] = context
        if result.remaining_skills != skills:
            messages[0] = Message.system(build_system_prompt(base_prompt, result.remaining_skills))
        logger.info("history compressed in flight: %d -> %d messages", turn_start - 1, len(context))
        return 1 + len(context), result.remaining_skills

    async def _process_tool_call(self, tool_call: ToolCall, iteration: int) -> tuple[dict[str, Any], QueryResult | None]:
        try:
            args = tool_call.parse_arguments()
        except ToolArgumentsError as exc:
            self.ui.show_error(f"Tool [{tool_call.name}] failed: {exc}")
            self.metrics.increment_tool_failure(tool_call.name)
            return {"status": "error", "error": str(exc)}, None

        decision = self.registry.assess_risk(tool_call.name, args)
        if self.audit is not None:
            self.audit.record(tool_name=tool_call.name, decision=decision.level.value, rationale=decision.rationale)
        self.runtime_logger.info(
            "tool call %s args=%s",
            tool_call.name,
            json.dumps(redact(args), ensure_ascii=False, default=str),
            extra={
                "iteration": iteration,
                "tool_name": tool_call.name,
                "tool_call_id": tool_call.id,
                "risk": decision.level.value,
            },
        )

        tool = self.registry.get(tool_call.name)
        if tool is None:
            self.ui.show_error(f"Tool [{tool_call.name}] failed: unknown tool")
            self.metrics.increment_tool_failure(tool_call.name)
            return {"status": "error", "error": f"unknown tool: {tool_call.name}"}, None

        if decision.level is RiskLevel.HIGH:
            question = tool.show_confirmation(self.ui, args)
            if not await self.confirmations.ask(question):
                self.metrics.confirmations_declined_total += 1
                self.ui.show_warning(tool.cancelled_warning)
                self.runtime_logger.info(
                    "tool call declined",
                    extra={"tool_name": tool.name, "tool_call_id": tool_call.id, "outcome": "cancelled"},
                )
                return {"status": "cancelled", "message": tool.cancelled_message}, None
        elif not tool.show_elapsed:
            self.ui.show_info(tool.describe_call(args))

        return await self._execute(tool, tool_call, args)

    async def _execute(
        self, tool: Tool, tool_call: ToolCall, args: dict[str, Any]
    ) -> tuple[dict[str, Any], QueryResult | None]:
        ctx = ToolContext(ui=self.ui, output_mode=resolve_output_mode(args))
        self.metrics.increment_tool_call(tool.name)

        started = time.monotonic()
        if tool.show_elapsed:
            self.ui.show_info(f"⏳ {tool.describe_call(args)}")
            payload = await self.registry.execute(tool.name, args, ctx)
        else:
            stop_loading = self.ui.show_loading(tool.waiting_label)
            try:
                payload = await self.registry.execute(tool.name, args, ctx)
            finally:
                stop_loading()
        elapsed = time.monotonic() - started

        status = payload.get("status")
        query_result = tool.query_result(payload)
        if status != "success":
            self.metrics.increment_tool_failure(tool.name)
            self._show_failure(tool, payload, elapsed)
        elif tool.show_elapsed:
            self.ui.show_success(f"Tool [{tool.name}] completed ({elapsed:.1f}s)")
        else:
            payload = tool.present(payload, self.ui)
            if not payload.get("displayed"):
                self.ui.show_success(f"Tool [{tool.name}] executed successfully")

        self.runtime_logger.info(
            "tool call finished",
            extra={
                "tool_name": tool.name,
                "tool_call_id": tool_call.id,
                "duration_ms": int(elapsed * 1000),
                "outcome": status,
                "exit_code": payload.get("exit_code"),
            },
        )
        return payload, query_result

    def _show_failure(self, tool: Tool, payload: dict[str, Any], elapsed: float) -> None:
        error = payload.get("error") or payload.get("message") or "unknown error"
        if not tool.show_elapsed:
            self.ui.show_error(f"Tool [{tool.name}] failed: {error}")
        elif "exit_code" in payload:
            self.ui.show_error(f"Tool [{tool.name}] failed with exit code {payload['exit_code']} ({elapsed:.1f}s)")
        else:
            self.ui.show_error(f"Tool [{tool.name}] failed: {error} ({elapsed:.1f}s)")

    def _load_skills(self, user_input: str) -> list[Skill]:
        if self.skills is None:
            return []
        metadata = self.skills.get_metadata()
        if not metadata:
            return []
        matched = self.skills.match(user_input, metadata)
        evicted = self.skills.evict_unused_skills(DEFAULT_EVICTION_QUERIES)
        if evicted:
            self.ui.show_info(f"Evicted {len(evicted)} unused skill(s): {', '.join(evicted)}")
        if not matched:
            return []

        for md in matched:
            self.skills.track_usage(md.name, user_input)
            self.skills.set_priority(md.name, Priority.RELEVANT)
        try:
            loaded = self.skills.load_skills([md.name for md in matched])
        except Exception as exc:
            self.ui.show_warning(f"Failed to load some skills: {exc}")
            return []

        descriptions = {md.name: md.description for md in matched}
        for skill in loaded:
            self.skills.set_priority(skill.name, Priority.ACTIVE)
            skill.priority = Priority.ACTIVE
        if loaded:
            shown = [
                f"{skill.name} - {descriptions[skill.name]}" if descriptions.get(skill.name) else skill.name
                for skill in loaded
            ]
            self.ui.show_info(f"Loaded {len(loaded)} skill(s): {', '.join(shown)}")
        return loaded
