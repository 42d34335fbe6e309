"""Unit tests for aiq/agent/loop.py and related components."""
from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from aiq.agent.context_manager import Compressor
from aiq.agent.guards import MUST_CALL_TOOL_MESSAGE
from aiq.agent.loop import ToolCallLoop, resolve_output_mode
from aiq.agent.messages import ChatResponse, Message, ToolCall
from aiq.agent.providers.base import ChatRequest, ProviderAdapter
from aiq.agent.skills import Priority, Skill, SkillMetadata
from aiq.agent.tool_registry import Tool, ToolContext, ToolRegistry
from aiq.db.client import QueryResult
from aiq.errors import EmptyResponseError, MaxIterationsError, ModelCallError
from aiq.observability.metrics import RuntimeMetrics
from aiq.security.risk import display_rule
from aiq.services.audit_service import MemoryAuditLog
from aiq.tools.sql_tools import ExecuteSqlTool, RenderChartTool


# ─── Helpers ──────────────────────────────────────────────────────────────────

class MockProvider(ProviderAdapter):
    """Provider that returns a preset sequence of ChatResponses and records requests."""

    def __init__(self, responses: list[ChatResponse]) -> None:
        self._responses = list(responses)
        self._idx = 0
        self.requests: list[ChatRequest] = []

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        resp = self._responses[self._idx]
        self._idx = min(self._idx + 1, len(self._responses) - 1)
        return resp


class BrokenProvider(ProviderAdapter):
    async def chat(self, request: ChatRequest) -> ChatResponse:
        raise ConnectionError("connection reset by peer")


class RecordingRolling:
    def __init__(self, ui: RecordingUI) -> None:
        self.ui = ui

    def add_line(self, line: str) -> None:
        self.ui.events.append(("rolling", line))

    def finish(self) -> None:
        self.ui.events.append(("rolling_finish", ""))


class RecordingUI:
    def __init__(self, approve: bool = True) -> None:
        self.approve = approve
        self.prompts: list[str] = []
        self.events: list[tuple[str, Any]] = []

    async def confirm(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self.approve

    def show_loading(self, label: str):
        self.events.append(("loading", label))
        return lambda: self.events.append(("loading_stop", label))

    def show_info(self, message: str) -> None:
        self.events.append(("info", message))

    def show_success(self, message: str) -> None:
        self.events.append(("success", message))

    def show_warning(self, message: str) -> None:
        self.events.append(("warning", message))

    def show_error(self, message: str) -> None:
        self.events.append(("error", message))

    def show_code(self, code: str, language: str = "sql") -> None:
        self.events.append(("code", code))

    def stream_line(self, line: str) -> None:
        self.events.append(("line", line))

    def rolling_output(self, height: int) -> RecordingRolling:
        return RecordingRolling(self)

    def display_table(self, columns: list[str], rows: list[list[str]]) -> None:
        self.events.append(("table", (columns, rows)))

    def display_chart(self, output: str, chart_type: str, title: str) -> None:
        self.events.append(("chart", title))

    def of(self, kind: str) -> list[Any]:
        return [value for event, value in self.events if event == kind]


class FakeSqlClient:
    engine = "sqlite"

    def __init__(self, result: QueryResult | None = None, error: Exception | None = None) -> None:
        self.result = result or QueryResult(columns=["id", "name"], rows=[["1", "ada"], ["2", "bob"]])
        self.error = error
        self.queries: list[str] = []

    async def query(self, sql: str) -> QueryResult:
        self.queries.append(sql)
        if self.error is not None:
            raise self.error
        return self.result

    async def describe_schema(self) -> str:
        return "CREATE TABLE users(id INTEGER, name TEXT);"

    async def close(self) -> None:
        pass


class EchoTool(Tool):
    name = "echo"
    description = "Echo the message back"
    input_schema = {"type": "object", "properties": {"msg": {"type": "string"}}}
    risk_rules = (display_rule,)

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        self.calls.append(args)
        return {"status": "success", "echo": args.get("msg", "")}


class CancelledTool(EchoTool):
    name = "slow"

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        raise asyncio.CancelledError


class FakeSkills:
    def __init__(self) -> None:
        self.priorities: dict[str, Priority] = {}
        self.tracked: list[tuple[str, str]] = []

    def get_metadata(self) -> list[SkillMetadata]:
        return [SkillMetadata("sales", "sales reporting"), SkillMetadata("ops", "operations")]

    def match(self, query: str, metadata: list[SkillMetadata]) -> list[SkillMetadata]:
        return [md for md in metadata if md.name in query]

    def load_skills(self, names: list[str]) -> list[Skill]:
        return [Skill(name, "", f"{name} guidance") for name in names]

    def evict_unused_skills(self, window: int) -> list[str]:
        return ["stale"]

    def track_usage(self, name: str, query: str) -> None:
        self.tracked.append((name, query))

    def set_priority(self, name: str, priority: Priority) -> None:
        self.priorities[name] = priority


def _tool_call_response(name: str, args: dict | str | None = None, call_id: str = "call_1") -> ChatResponse:
    arguments = args if isinstance(args, str) else json.dumps(args or {})
    return ChatResponse(
        finish_reason="tool_calls",
        text="",
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)],
    )


def _end_response(text: str = "Done.") -> ChatResponse:
    return ChatResponse(finish_reason="stop", text=text)


def _make_loop(provider: ProviderAdapter, *tools: Tool, ui: RecordingUI | None = None, **kwargs) -> ToolCallLoop:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return ToolCallLoop(
        provider=provider,
        model="test-model",
        registry=registry,
        ui=ui or RecordingUI(),
        metrics=kwargs.pop("metrics", RuntimeMetrics()),
        **kwargs,
    )


def _tool_payloads(messages: list[Message]) -> list[dict]:
    return [json.loads(msg.content) for msg in messages if msg.role == "tool"]


# ─── Success path tests ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_text_answer_without_tools():
    provider = MockProvider([_end_response("Hello!")])
    result = await _make_loop(provider).run("hi")

    assert result.text == "Hello!"
    assert [m.role for m in result.messages] == ["system", "user", "assistant"]
    assert result.last_query_result is None


@pytest.mark.asyncio
async def test_single_tool_call_then_answer():
    echo = EchoTool()
    provider = MockProvider([_tool_call_response("echo", {"msg": "ping"}), _end_response("pong")])
    audit = MemoryAuditLog()
    result = await _make_loop(provider, echo, audit=audit).run("say ping")

    assert result.text == "pong"
    assert echo.calls == [{"msg": "ping"}]
    assert [m.role for m in result.messages] == ["system", "user", "assistant", "tool", "assistant"]
    tool_message = result.messages[3]
    assert tool_message.tool_call_id == "call_1"
    assert json.loads(tool_message.content) == {"status": "success", "echo": "ping"}
    assert audit.lines == ["Tool: echo, RiskLevel: low, Reason: display only"]


@pytest.mark.asyncio
async def test_multiple_tool_calls_run_in_issue_order():
    echo = EchoTool()
    response = ChatResponse(
        finish_reason="tool_calls",
        text="",
        tool_calls=[
            ToolCall(id="a", name="echo", arguments='{"msg": "first"}'),
            ToolCall(id="b", name="echo", arguments='{"msg": "second"}'),
        ],
    )
    provider = MockProvider([response, _end_response()])
    result = await _make_loop(provider, echo).run("twice")

    assert [call["msg"] for call in echo.calls] == ["first", "second"]
    assert [m.tool_call_id for m in result.messages if m.role == "tool"] == ["a", "b"]


@pytest.mark.asyncio
async def test_empty_stop_after_successful_tool_is_success():
    provider = MockProvider([_tool_call_response("echo", {"msg": "x"}), _end_response("")])
    result = await _make_loop(provider, EchoTool()).run("do it")
    assert result.text == ""


@pytest.mark.asyncio
async def test_tool_schemas_sent_to_model():
    provider = MockProvider([_end_response()])
    await _make_loop(provider, EchoTool()).run("hi")

    schema = provider.requests[0].tools[0]
    assert schema.name == "echo"
    assert {"msg", "risk_level", "task_type"} <= set(schema.input_schema["properties"])


# ─── Fatal error tests ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_empty_response_is_fatal():
    provider = MockProvider([_end_response("")])
    metrics = RuntimeMetrics()
    with pytest.raises(EmptyResponseError) as excinfo:
        await _make_loop(provider, metrics=metrics).run("hi")

    assert [m.role for m in excinfo.value.messages] == ["system", "user", "assistant"]
    assert metrics.turns_failed_total == 1


@pytest.mark.asyncio
async def test_empty_non_stop_response_is_fatal():
    provider = MockProvider([ChatResponse(finish_reason="length", text="")])
    with pytest.raises(EmptyResponseError):
        await _make_loop(provider).run("hi")


@pytest.mark.asyncio
async def test_max_iterations_is_fatal():
    provider = MockProvider([_tool_call_response("echo", {"msg": "again"})])
    with pytest.raises(MaxIterationsError) as excinfo:
        await _make_loop(provider, EchoTool(), max_iterations=10).run("loop forever")

    assert len(provider.requests) == 10
    assert len([m for m in excinfo.value.messages if m.role == "tool"]) == 10


@pytest.mark.asyncio
async def test_model_transport_error_is_fatal():
    ui = RecordingUI()
    with pytest.raises(ModelCallError, match="LLM call failed"):
        await _make_loop(BrokenProvider(), ui=ui).run("hi")
    assert ui.of("loading") == ["Thinking..."]
    assert ui.of("loading_stop") == ["Thinking..."]


# ─── Confirmation tests ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_declined_drop_is_cancelled_and_loop_continues():
    client = FakeSqlClient()
    ui = RecordingUI(approve=False)
    audit = MemoryAuditLog()
    metrics = RuntimeMetrics()
    provider = MockProvider([
        _tool_call_response("execute_sql", {"sql": "DROP TABLE users"}),
        _end_response("Okay, I left the table alone."),
    ])
    loop = _make_loop(provider, ExecuteSqlTool(client), ui=ui, audit=audit, metrics=metrics)
    result = await loop.run("drop the users table", schema_context="users(id)", database_type="sqlite")

    assert client.queries == []
    assert ui.prompts == ["Execute this query?"]
    assert ui.of("code") == ["DROP TABLE users"]
    assert ui.of("warning") == ["Query execution cancelled."]
    assert _tool_payloads(result.messages) == [
        {"status": "cancelled", "message": "query execution cancelled by user"}
    ]
    assert result.text == "Okay, I left the table alone."
    assert audit.lines[0].startswith("Tool: execute_sql, RiskLevel: high")
    assert metrics.confirmations_declined_total == 1


@pytest.mark.asyncio
async def test_approved_high_risk_call_executes():
    client = FakeSqlClient(result=QueryResult())
    provider = MockProvider([
        _tool_call_response("execute_sql", {"sql": "DELETE FROM users"}),
        _end_response("Deleted."),
    ])
    result = await _make_loop(provider, ExecuteSqlTool(client), ui=RecordingUI(approve=True)).run("delete users")

    assert client.queries == ["DELETE FROM users"]
    assert _tool_payloads(result.messages)[0]["status"] == "success"


@pytest.mark.asyncio
async def test_low_hint_skips_confirmation():
    client = FakeSqlClient(result=QueryResult())
    ui = RecordingUI(approve=False)
    provider = MockProvider([
        _tool_call_response("execute_sql", {"sql": "DROP TABLE tmp", "risk_level": "low"}),
        _end_response("Dropped."),
    ])
    await _make_loop(provider, ExecuteSqlTool(client), ui=ui).run("drop tmp")

    assert ui.prompts == []
    assert client.queries == ["DROP TABLE tmp"]


@pytest.mark.asyncio
async def test_cancelled_confirmation_counts_as_decline():
    class CancellingUI(RecordingUI):
        async def confirm(self, prompt: str) -> bool:
            raise asyncio.CancelledError

    client = FakeSqlClient()
    provider = MockProvider([
        _tool_call_response("execute_sql", {"sql": "DROP TABLE users"}),
        _end_response("Understood."),
    ])
    result = await _make_loop(provider, ExecuteSqlTool(client), ui=CancellingUI()).run("drop users")

    assert client.queries == []
    assert _tool_payloads(result.messages)[0]["status"] == "cancelled"


# ─── Tool failure tests ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_invalid_arguments_become_error_result():
    echo = EchoTool()
    provider = MockProvider([_tool_call_response("echo", "{not json"), _end_response("Sorry.")])
    result = await _make_loop(provider, echo).run("hi")

    payload = _tool_payloads(result.messages)[0]
    assert payload["status"] == "error"
    assert "failed to parse tool arguments" in payload["error"]
    assert echo.calls == []
    assert result.text == "Sorry."


@pytest.mark.asyncio
async def test_unknown_tool_becomes_error_result():
    provider = MockProvider([_tool_call_response("launch_rockets", {}), _end_response("No can do.")])
    result = await _make_loop(provider, EchoTool()).run("launch")

    assert _tool_payloads(result.messages) == [{"status": "error", "error": "unknown tool: launch_rockets"}]


@pytest.mark.asyncio
async def test_tool_failure_is_classified():
    client = FakeSqlClient(error=Exception("Table 'orders' doesn't exist"))
    ui = RecordingUI()
    provider = MockProvider([
        _tool_call_response("execute_sql", {"sql": "SELECT * FROM orders"}),
        _end_response("The orders table is missing."),
    ])
    metrics = RuntimeMetrics()
    result = await _make_loop(provider, ExecuteSqlTool(client), ui=ui, metrics=metrics).run("show orders")

    payload = _tool_payloads(result.messages)[0]
    assert payload["status"] == "error"
    assert payload["error_type"] == "resource_not_found"
    assert payload["affected_resources"] == ["orders"]
    assert ui.of("error") == ["Tool [execute_sql] failed: Table 'orders' doesn't exist"]
    assert metrics.tool_failures_total == {"execute_sql": 1}


@pytest.mark.asyncio
async def test_cancelled_tool_becomes_error_result():
    provider = MockProvider([_tool_call_response("slow", {}), _end_response("Gave up.")])
    result = await _make_loop(provider, CancelledTool()).run("wait")

    payload = _tool_payloads(result.messages)[0]
    assert payload["status"] == "error"
    assert "cancelled" in payload["error"]
    assert result.text == "Gave up."


# ─── Result presentation tests ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sql_results_are_displayed_and_simplified_for_the_model():
    client = FakeSqlClient()
    ui = RecordingUI()
    provider = MockProvider([
        _tool_call_response("execute_sql", {"sql": "SELECT id, name FROM users"}),
        _end_response(""),
    ])
    result = await _make_loop(provider, ExecuteSqlTool(client), ui=ui).run("show users")

    assert ui.of("table") == [(["id", "name"], [["1", "ada"], ["2", "bob"]])]
    assert "2 row(s) in set" in ui.of("line")
    payload = _tool_payloads(result.messages)[0]
    assert payload["status"] == "success"
    assert payload["displayed"] is True
    assert payload["row_count"] == 2
    assert "rows" not in payload
    assert result.last_query_result == QueryResult(columns=["id", "name"], rows=[["1", "ada"], ["2", "bob"]])
    assert result.text == ""


@pytest.mark.asyncio
async def test_chart_is_displayed_and_simplified():
    ui = RecordingUI()
    args = {"columns": ["category", "total"], "rows": [["a", "1"], ["b", "3"]], "chart_type": "bar"}
    provider = MockProvider([_tool_call_response("render_chart", args), _end_response("")])
    result = await _make_loop(provider, RenderChartTool(), ui=ui).run("chart it")

    assert ui.of("chart") == ["Chart (2 rows)"]
    payload = _tool_payloads(result.messages)[0]
    assert payload["displayed"] is True
    assert "output" not in payload


# ─── Hallucination guard tests ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_claimed_success_without_tool_is_corrected():
    client = FakeSqlClient(result=QueryResult())
    metrics = RuntimeMetrics()
    provider = MockProvider([
        ChatResponse(finish_reason="length", text="I dropped the table successfully."),
        _tool_call_response("execute_sql", {"sql": "DROP TABLE users", "risk_level": "low"}),
        _end_response("Dropped."),
    ])
    loop = _make_loop(provider, ExecuteSqlTool(client), metrics=metrics)
    result = await loop.run("DROP TABLE users", schema_context="users(id)")

    corrections = [m.content for m in result.messages[1:] if m.role == "system"]
    assert corrections == [MUST_CALL_TOOL_MESSAGE]
    assert client.queries == ["DROP TABLE users"]
    assert metrics.hallucination_corrections_total == 1


@pytest.mark.asyncio
async def test_description_without_tool_gets_must_call_correction():
    provider = MockProvider([
        ChatResponse(finish_reason="length", text="I will run SELECT * FROM users for you."),
        _end_response("Fine."),
    ])
    result = await _make_loop(provider, ExecuteSqlTool(FakeSqlClient())).run("select all users")

    assert [m.content for m in result.messages[1:] if m.role == "system"] == [MUST_CALL_TOOL_MESSAGE]


@pytest.mark.asyncio
async def test_guard_is_off_in_free_mode():
    provider = MockProvider([ChatResponse(finish_reason="length", text="Here is how to SELECT rows.")])
    result = await _make_loop(provider, EchoTool()).run("how do I SELECT rows?")
    assert result.text == "Here is how to SELECT rows."


# ─── Prompt and history tests ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_free_mode_prompt_without_sql_tool():
    provider = MockProvider([_end_response()])
    await _make_loop(provider, EchoTool()).run("hi", schema_context="ignored")

    system = provider.requests[0].messages[0]
    assert system.role == "system"
    assert "FREE MODE" in system.content
    assert "<EXECUTION>" in system.content


@pytest.mark.asyncio
async def test_database_mode_prompt_includes_schema():
    provider = MockProvider([_end_response()])
    loop = _make_loop(provider, ExecuteSqlTool(FakeSqlClient()))
    await loop.run("hi", schema_context="CREATE TABLE users(id INT);", database_type="sqlite")

    system = provider.requests[0].messages[0].content
    assert "DATABASE MODE" in system
    assert "CREATE TABLE users(id INT);" in system
    assert "Database engine type: sqlite" in system


@pytest.mark.asyncio
async def test_prior_messages_replace_old_system_prompt():
    prior = [
        Message.system("old system prompt"),
        Message.user("earlier question"),
        Message.assistant("earlier answer"),
    ]
    provider = MockProvider([_end_response()])
    await _make_loop(provider).run("new question", prior_messages=prior, history=[{"role": "user", "content": "x"}])

    sent = provider.requests[0].messages
    assert [m.role for m in sent] == ["system", "user", "assistant", "user"]
    assert sent[0].content != "old system prompt"
    assert sent[-1].content == "new question"


@pytest.mark.asyncio
async def test_legacy_history_is_used_without_prior_messages():
    history = [{"role": "user", "content": "q1"}, {"role": "assistant", "content": "a1"}]
    provider = MockProvider([_end_response()])
    await _make_loop(provider).run("q2", history=history)

    sent = provider.requests[0].messages
    assert [(m.role, m.content) for m in sent[1:]] == [("user", "q1"), ("assistant", "a1"), ("user", "q2")]


@pytest.mark.asyncio
async def test_oversized_legacy_history_is_compressed_before_the_loop():
    history = [{"role": "user", "content": "x" * 1000} for _ in range(40)]
    provider = MockProvider([_end_response()])
    metrics = RuntimeMetrics()
    loop = _make_loop(provider, compressor=Compressor(context_window=5000), metrics=metrics)
    await loop.run("latest", history=history)

    sent = provider.requests[0].messages
    assert sent[1].content.startswith("[Previous conversation:")
    assert len(sent) < 40
    assert sent[-1].content == "latest"
    assert metrics.compressions_total >= 1


@pytest.mark.asyncio
async def test_in_flight_compression_keeps_current_turn():
    prior: list[Message] = []
    for i in range(30):
        prior.append(Message.user(f"question {i} " + "x" * 600))
        prior.append(Message.assistant(f"answer {i} " + "y" * 600))
    provider = MockProvider([_end_response()])
    loop = _make_loop(provider, compressor=Compressor(context_window=4000))
    await loop.run("current question", prior_messages=prior)

    sent = provider.requests[0].messages
    assert sent[0].role == "system"
    assert sent[1].content.startswith("[Previous conversation:")
    assert sent[-1].content == "current question"
    assert len(sent) < len(prior)


@pytest.mark.asyncio
async def test_legacy_history_is_not_compressed_when_prior_messages_are_sent():
    calls: list[str] = []

    async def summarizer(prompt: str) -> str:
        calls.append(prompt)
        return "summary"

    history = [{"role": "user", "content": "x" * 1000} for _ in range(40)]
    prior = [Message.user("q1"), Message.assistant("a1")]
    provider = MockProvider([_end_response()])
    metrics = RuntimeMetrics()
    loop = _make_loop(
        provider, compressor=Compressor(context_window=5000, summarizer=summarizer), metrics=metrics
    )
    await loop.run("q2", history=history, prior_messages=prior)

    sent = provider.requests[0].messages
    assert [(m.role, m.content) for m in sent[1:]] == [("user", "q1"), ("assistant", "a1"), ("user", "q2")]
    assert calls == []
    assert metrics.compressions_total == 0


# ─── Skills tests ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_matched_skills_are_loaded_into_the_prompt():
    skills = FakeSkills()
    ui = RecordingUI()
    provider = MockProvider([_end_response()])
    await _make_loop(provider, ui=ui, skills=skills).run("monthly sales numbers")

    system = provider.requests[0].messages[0].content
    assert "sales guidance" in system
    assert "ops guidance" not in system
    assert skills.tracked == [("sales", "monthly sales numbers")]
    assert skills.priorities == {"sales": Priority.ACTIVE}
    assert "Evicted 1 unused skill(s): stale" in ui.of("info")
    assert "Loaded 1 skill(s): sales - sales reporting" in ui.of("info")


@pytest.mark.asyncio
async def test_skill_load_failure_is_a_warning():
    class BrokenSkills(FakeSkills):
        def load_skills(self, names: list[str]) -> list[Skill]:
            raise OSError("skills directory unreadable")

    ui = RecordingUI()
    provider = MockProvider([_end_response("still works")])
    result = await _make_loop(provider, ui=ui, skills=BrokenSkills()).run("sales")

    assert result.text == "still works"
    assert ui.of("warning") == ["Failed to load some skills: skills directory unreadable"]


# ─── Output mode tests ──────────────────────────────────────────────────────────

def test_resolve_output_mode():
    assert resolve_output_mode({"output_mode": "full"}) == "full"
    assert resolve_output_mode({"output_mode": "streaming", "task_type": "definitive"}) == "streaming"
    assert resolve_output_mode({"task_type": "definitive"}) == "full"
    assert resolve_output_mode({"task_type": "exploratory"}) == "streaming"
    assert resolve_output_mode({"output_mode": "bogus"}) == "streaming"
    assert resolve_output_mode({}) == "streaming"
