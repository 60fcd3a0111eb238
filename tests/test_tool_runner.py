"""Tests for sequential tool execution."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from docchat.ai.errors import CancellationError, ErrorCode
from docchat.ai.orchestration.cancellation import CancellationToken
from docchat.ai.orchestration.tool_runner import ToolRunner, preview_arguments
from docchat.ai.orchestration.types import AccumulatedToolCall, ToolCallRequest, ToolCallStatus
from docchat.ai.tools.builtin import register_builtin_tools
from docchat.ai.tools.registry import DuplicateToolError, ToolRegistry, ToolSpec


@pytest.mark.asyncio
async def test_run_returns_tool_result(echo_registry: ToolRegistry) -> None:
    runner = ToolRunner(echo_registry)

    execution = await runner.run(ToolCallRequest("c1", "echo", '{"text": "hi"}'))

    assert execution.success
    assert execution.result == {"echo": "hi"}
    assert execution.status is ToolCallStatus.DONE
    assert execution.content() == '{"echo": "hi"}'


@pytest.mark.asyncio
async def test_accumulated_calls_are_accepted(echo_registry: ToolRegistry) -> None:
    runner = ToolRunner(echo_registry)

    execution = await runner.run(AccumulatedToolCall(index=0, name="echo", args_text='{"text": "x"}'))

    assert execution.call.id == "call_0"
    assert execution.success


@pytest.mark.asyncio
async def test_unknown_tool_becomes_error_result(echo_registry: ToolRegistry) -> None:
    execution = await ToolRunner(echo_registry).run(ToolCallRequest("c1", "missing", "{}"))

    assert not execution.success
    assert execution.result["error"] == ErrorCode.TOOL_NOT_FOUND
    assert execution.result["details"]["available"] == ["echo"]


@pytest.mark.asyncio
@pytest.mark.parametrize("arguments", ['{"text": ', "[1, 2]", '"just a string"'])
async def test_malformed_arguments_become_error_result(echo_registry: ToolRegistry, arguments: str) -> None:
    execution = await ToolRunner(echo_registry).run(ToolCallRequest("c1", "echo", arguments))

    assert not execution.success
    assert execution.result["error"] == ErrorCode.INVALID_TOOL_ARGUMENTS
    assert set(execution.result) >= {"error", "message"}


@pytest.mark.asyncio
async def test_schema_mismatch_becomes_error_result(echo_registry: ToolRegistry) -> None:
    execution = await ToolRunner(echo_registry).run(ToolCallRequest("c1", "echo", '{"text": 5}'))

    assert execution.result["error"] == ErrorCode.INVALID_TOOL_ARGUMENTS
    assert execution.result["details"]["path"] == "text"


@pytest.mark.asyncio
async def test_empty_arguments_parse_to_empty_object() -> None:
    registry = ToolRegistry()
    seen: list[Mapping[str, Any]] = []
    registry.register_function(ToolSpec("noop", "No-op"), lambda args: seen.append(args) or "ok")

    execution = await ToolRunner(registry).run(ToolCallRequest("c1", "noop", ""))

    assert execution.success
    assert seen == [{}]
    assert execution.content() == "ok"


@pytest.mark.asyncio
async def test_raising_tool_becomes_error_result() -> None:
    registry = ToolRegistry()

    def explode(_args: Mapping[str, Any]) -> None:
        raise RuntimeError("boom")

    registry.register_function(ToolSpec("explode", "Always fails"), explode)

    execution = await ToolRunner(registry).run(ToolCallRequest("c1", "explode", "{}"))

    assert not execution.success
    assert execution.result["error"] == ErrorCode.TOOL_EXECUTION_FAILED
    assert "boom" in execution.result["message"]


@pytest.mark.asyncio
async def test_async_tool_and_timeout() -> None:
    registry = ToolRegistry()

    async def slow(_args: Mapping[str, Any]) -> str:
        await asyncio.sleep(1)
        return "late"

    async def fast(args: Mapping[str, Any]) -> str:
        return f"fast:{args.get('n')}"

    registry.register_function(ToolSpec("slow", "Sleeps"), slow)
    registry.register_function(ToolSpec("fast", "Returns"), fast)
    runner = ToolRunner(registry, timeout=0.01)

    timed_out = await runner.run(ToolCallRequest("c1", "slow", "{}"))
    quick = await runner.run(ToolCallRequest("c2", "fast", '{"n": 2}'))

    assert timed_out.result["error"] == ErrorCode.TOOL_EXECUTION_FAILED
    assert "timed out" in timed_out.result["message"]
    assert quick.result == "fast:2"


@pytest.mark.asyncio
async def test_run_all_is_sequential_and_reports_status(echo_registry: ToolRegistry) -> None:
    order: list[str] = []
    registry = ToolRegistry()

    async def record(args: Mapping[str, Any]) -> str:
        order.append(f"start:{args['n']}")
        await asyncio.sleep(0)
        order.append(f"end:{args['n']}")
        return str(args["n"])

    registry.register_function(ToolSpec("record", "Records"), record)
    statuses: list[tuple[int, ToolCallStatus]] = []
    calls = [ToolCallRequest(f"c{n}", "record", f'{{"n": {n}}}') for n in range(3)]

    executions = await ToolRunner(registry).run_all(
        calls, on_status=lambda index, status, _preview: statuses.append((index, status))
    )

    assert [execution.result for execution in executions] == ["0", "1", "2"]
    assert order == ["start:0", "end:0", "start:1", "end:1", "start:2", "end:2"]
    assert statuses[:3] == [(0, ToolCallStatus.PENDING), (1, ToolCallStatus.PENDING), (2, ToolCallStatus.PENDING)]
    assert statuses[3:] == [
        (0, ToolCallStatus.RUNNING),
        (0, ToolCallStatus.DONE),
        (1, ToolCallStatus.RUNNING),
        (1, ToolCallStatus.DONE),
        (2, ToolCallStatus.RUNNING),
        (2, ToolCallStatus.DONE),
    ]


@pytest.mark.asyncio
async def test_failure_does_not_abort_siblings(echo_registry: ToolRegistry) -> None:
    calls = [
        ToolCallRequest("c1", "echo", "not json"),
        ToolCallRequest("c2", "echo", '{"text": "ok"}'),
    ]

    executions = await ToolRunner(echo_registry).run_all(calls)

    assert [execution.success for execution in executions] == [False, True]


@pytest.mark.asyncio
async def test_run_all_stops_before_next_dispatch_when_cancelled() -> None:
    registry = ToolRegistry()
    token = CancellationToken()
    ran: list[int] = []

    def first(_args: Mapping[str, Any]) -> str:
        ran.append(1)
        token.cancel()
        return "done"

    registry.register_function(ToolSpec("first", "Cancels"), first)
    registry.register_function(ToolSpec("second", "Never runs"), lambda _args: ran.append(2))

    with pytest.raises(CancellationError):
        await ToolRunner(registry).run_all(
            [ToolCallRequest("a", "first"), ToolCallRequest("b", "second")],
            cancel_token=token,
        )

    assert ran == [1]


def test_preview_arguments_truncates() -> None:
    assert preview_arguments("x" * 10) == "x" * 10
    preview = preview_arguments("y" * 500)
    assert len(preview) == 120
    assert preview.endswith("...")


def test_registry_rejects_duplicates_and_renders_openai_tools(echo_registry: ToolRegistry) -> None:
    with pytest.raises(DuplicateToolError):
        echo_registry.register_function(ToolSpec("echo", "again"), lambda _args: None)

    register_builtin_tools(echo_registry)
    tools = echo_registry.to_openai_tools()

    assert [tool["function"]["name"] for tool in tools] == ["echo", "get_current_time"]
    assert tools[0]["type"] == "function"
    assert tools[0]["function"]["parameters"]["required"] == ["text"]


@pytest.mark.asyncio
async def test_builtin_current_time_tool() -> None:
    registry = register_builtin_tools(ToolRegistry())

    execution = await ToolRunner(registry).run(ToolCallRequest("c1", "get_current_time", "{}"))

    assert execution.success
    assert execution.result["now"].endswith("+00:00")
