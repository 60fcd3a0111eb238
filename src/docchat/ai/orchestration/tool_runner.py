"""Executes model-requested tool calls against the tool registry.

Per-call failures never escape :meth:`ToolRunner.run`. They are converted into
an error result object (``{"error": ..., "message": ...}``) that is returned
to the model as the tool message content, so sibling calls and the turn
itself keep going.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, List, Mapping, Sequence

from jsonschema import SchemaError
from jsonschema.exceptions import best_match
from jsonschema.validators import validator_for

from ..errors import ChatEngineError, ToolArgumentError, ToolExecutionError, ToolNotFoundError
from ..tools.registry import Tool, ToolRegistry
from .cancellation import CancellationToken
from .types import AccumulatedToolCall, ToolCallRequest, ToolCallStatus, ToolExecution

__all__ = [
    "ToolRunner",
    "StatusCallback",
    "preview_arguments",
    "preview_result",
    "ARGS_PREVIEW_LIMIT",
    "RESULT_PREVIEW_LIMIT",
]

LOGGER = logging.getLogger(__name__)

ARGS_PREVIEW_LIMIT = 120
RESULT_PREVIEW_LIMIT = 200

StatusCallback = Callable[[int, ToolCallStatus, str], None]


def preview_arguments(args_text: str, limit: int = ARGS_PREVIEW_LIMIT) -> str:
    """Shorten raw argument text for status display."""

    text = args_text or ""
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def preview_result(execution: ToolExecution, limit: int = RESULT_PREVIEW_LIMIT) -> str:
    return execution.content()[:limit]


class ToolRunner:
    """Runs tool calls one at a time.

    Args:
        registry: Where tools are looked up by name.
        timeout: Optional per-call limit in seconds. ``None`` disables it.
        validate_arguments: Check arguments against each tool's JSON Schema.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        timeout: float | None = None,
        validate_arguments: bool = True,
    ) -> None:
        self._registry = registry
        self._timeout = timeout
        self._validate = validate_arguments

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def run(self, call: ToolCallRequest | AccumulatedToolCall) -> ToolExecution:
        request = call.to_request() if isinstance(call, AccumulatedToolCall) else call
        start = time.perf_counter()
        try:
            tool = self._resolve(request)
            arguments = request.parse_arguments()
            if self._validate:
                self._validate_arguments(tool, request, arguments)
            result = await self._invoke(tool, request, arguments)
        except ChatEngineError as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            LOGGER.warning("Tool %s failed: %s", request.name or "<unnamed>", exc.message)
            return ToolExecution(
                call=request,
                success=False,
                result=exc.to_dict(),
                error=exc,
                duration_ms=duration_ms,
            )
        duration_ms = (time.perf_counter() - start) * 1000
        LOGGER.debug("Tool %s completed in %.1fms", request.name, duration_ms)
        return ToolExecution(call=request, success=True, result=result, duration_ms=duration_ms)

    async def run_all(
        self,
        calls: Sequence[ToolCallRequest | AccumulatedToolCall],
        *,
        cancel_token: CancellationToken | None = None,
        on_status: StatusCallback | None = None,
    ) -> List[ToolExecution]:
        """Run ``calls`` sequentially in the given order.

        Cancellation is checked before each dispatch and after each call; a
        call that was already running finishes but its result is discarded.

        Raises:
            CancellationError: If ``cancel_token`` fired.
        """

        requests = [call.to_request() if isinstance(call, AccumulatedToolCall) else call for call in calls]
        if on_status is not None:
            for position, request in enumerate(requests):
                on_status(position, ToolCallStatus.PENDING, preview_arguments(request.arguments_json))

        executions: List[ToolExecution] = []
        for position, request in enumerate(requests):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            if on_status is not None:
                on_status(position, ToolCallStatus.RUNNING, preview_arguments(request.arguments_json))
            execution = await self.run(request)
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            if on_status is not None:
                on_status(position, execution.status, preview_result(execution))
            executions.append(execution)
        return executions

    def _resolve(self, request: ToolCallRequest) -> Tool:
        tool = self._registry.get(request.name) if request.name else None
        if tool is None:
            raise ToolNotFoundError(
                message=f"Unknown tool: {request.name or '<missing name>'}",
                details={"tool": request.name, "available": self._registry.names()},
            )
        return tool

    def _validate_arguments(self, tool: Tool, request: ToolCallRequest, arguments: Mapping[str, Any]) -> None:
        schema = tool.spec.schema()
        try:
            validator_cls = validator_for(schema)
            validator_cls.check_schema(schema)
        except SchemaError as exc:
            LOGGER.warning("Tool %s has an invalid parameter schema: %s", request.name, exc.message)
            return
        error = best_match(validator_cls(schema).iter_errors(dict(arguments)))
        if error is None:
            return
        location = "/".join(str(part) for part in error.absolute_path) or "<root>"
        raise ToolArgumentError(
            message=f"Arguments for '{request.name}' do not match the schema at {location}: {error.message}",
            details={"tool": request.name, "path": location},
        )

    async def _invoke(self, tool: Tool, request: ToolCallRequest, arguments: Mapping[str, Any]) -> Any:
        try:
            if self._timeout is not None:
                return await asyncio.wait_for(tool.run(arguments), timeout=self._timeout)
            return await tool.run(arguments)
        except asyncio.TimeoutError as exc:
            raise ToolExecutionError(
                message=f"Tool '{request.name}' timed out after {self._timeout}s",
                details={"tool": request.name},
            ) from exc
        except ChatEngineError:
            raise
        except Exception as exc:
            raise ToolExecutionError(
                message=f"Tool '{request.name}' failed: {exc}",
                details={"tool": request.name, "exception": type(exc).__name__},
            ) from exc
