"""Lifecycle tracking of tool calls and the stream events they produce."""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from kirostream.events import (
    SSEEvent,
    ToolCall,
    ToolCallError,
    ToolCallRequest,
    ToolCallResult,
    ToolExecution,
    ToolExecutionStatus,
)

logger = logging.getLogger(__name__)

# Block index 0 is reserved for the text content block.
_FIRST_TOOL_BLOCK_INDEX = 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _millis(delta: timedelta) -> int:
    return delta // timedelta(milliseconds=1)


def _parse_arguments(text: str) -> dict[str, Any]:
    """Decode a JSON object of tool arguments; raises ValueError if it is not one."""
    value = json.loads(text)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("tool arguments must be a JSON object")
    return value


def _arguments_or_empty(tool_call: ToolCall) -> dict[str, Any]:
    try:
        return _parse_arguments(tool_call.function.arguments)
    except ValueError as exc:
        logger.warning(
            "failed to parse arguments of tool %s (%s): %s",
            tool_call.id,
            tool_call.function.name,
            exc,
        )
        return {}


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


class ToolLifecycleManager:
    """Tracks active and completed tool calls and their content block indices."""

    def __init__(self) -> None:
        self._active: dict[str, ToolExecution] = {}
        self._completed: dict[str, ToolExecution] = {}
        self._block_indices: dict[str, int] = {}
        self._next_block_index = _FIRST_TOOL_BLOCK_INDEX
        self._text_intro_generated = False

    def reset(self) -> None:
        """Forget every tool and start block numbering over."""
        self._active = {}
        self._completed = {}
        self._block_indices = {}
        self._next_block_index = _FIRST_TOOL_BLOCK_INDEX
        self._text_intro_generated = False

    def handle_tool_call_request(self, request: ToolCallRequest) -> list[SSEEvent]:
        """Register the requested tools and return their content block events."""
        events: list[SSEEvent] = []

        if not self._text_intro_generated and request.tool_calls:
            events.extend(self._text_introduction(request.tool_calls[0]))
            self._text_intro_generated = True

        for tool_call in request.tool_calls:
            existing = self._active.get(tool_call.id)
            if existing is not None:
                logger.debug(
                    "tool %s (%s) already active with status %s, updating arguments",
                    tool_call.id,
                    tool_call.function.name,
                    existing.status,
                )
                arguments = _arguments_or_empty(tool_call)
                if arguments:
                    existing.arguments = arguments
                continue

            arguments = _arguments_or_empty(tool_call)
            execution = ToolExecution(
                id=tool_call.id,
                name=tool_call.function.name,
                start_time=_now(),
                status=ToolExecutionStatus.PENDING,
                arguments=arguments,
                block_index=self._assign_block_index(tool_call.id),
            )
            self._active[tool_call.id] = execution
            logger.debug(
                "started tool %s (%s) at block %d",
                tool_call.id,
                tool_call.function.name,
                execution.block_index,
            )

            events.append(
                SSEEvent(
                    event="content_block_start",
                    data={
                        "type": "content_block_start",
                        "index": execution.block_index,
                        "content_block": {
                            "type": "tool_use",
                            "id": tool_call.id,
                            "name": tool_call.function.name,
                            "input": {},
                        },
                    },
                )
            )

            if arguments:
                events.append(
                    SSEEvent(
                        event="content_block_delta",
                        data={
                            "type": "content_block_delta",
                            "index": execution.block_index,
                            "delta": {
                                "type": "input_json_delta",
                                "partial_json": _dump(arguments),
                            },
                        },
                    )
                )

            execution.status = ToolExecutionStatus.RUNNING

        return events

    def handle_tool_call_result(self, result: ToolCallResult) -> list[SSEEvent]:
        """Complete an active tool and return the event closing its block."""
        execution = self._active.get(result.tool_call_id)
        if execution is None:
            logger.warning("result for unknown tool call %s", result.tool_call_id)
            return []

        execution.end_time = _now()
        execution.result = result.result
        execution.status = ToolExecutionStatus.COMPLETED

        self._completed[result.tool_call_id] = execution
        del self._active[result.tool_call_id]

        return [
            SSEEvent(
                event="content_block_stop",
                data={"type": "content_block_stop", "index": execution.block_index},
            )
        ]

    def handle_tool_call_error(self, error_info: ToolCallError) -> list[SSEEvent]:
        """Fail an active tool and return an error event and the closing block event."""
        execution = self._active.get(error_info.tool_call_id)
        if execution is None:
            logger.warning("error for unknown tool call %s", error_info.tool_call_id)
            return []

        now = _now()
        execution.end_time = now
        execution.error = error_info.error
        execution.status = ToolExecutionStatus.ERROR
        logger.warning(
            "tool %s (%s) failed after %d ms: %s",
            error_info.tool_call_id,
            execution.name,
            _millis(now - execution.start_time),
            error_info.error,
        )

        events = [
            SSEEvent(
                event="error",
                data={
                    "type": "error",
                    "error": {
                        "type": "tool_error",
                        "message": error_info.error,
                        "tool_call_id": error_info.tool_call_id,
                    },
                },
            ),
            SSEEvent(
                event="content_block_stop",
                data={"type": "content_block_stop", "index": execution.block_index},
            ),
        ]

        self._completed[error_info.tool_call_id] = execution
        del self._active[error_info.tool_call_id]
        return events

    def get_tool_execution(self, tool_id: str) -> ToolExecution | None:
        """The execution record of a tool, active or completed, if known."""
        return self._active.get(tool_id) or self._completed.get(tool_id)

    def active_tools(self) -> dict[str, ToolExecution]:
        """A copy of the map of active tools."""
        return dict(self._active)

    def completed_tools(self) -> dict[str, ToolExecution]:
        """A copy of the map of completed tools."""
        return dict(self._completed)

    def _assign_block_index(self, tool_id: str) -> int:
        index = self._block_indices.get(tool_id)
        if index is None:
            index = self._next_block_index
            self._block_indices[tool_id] = index
            self._next_block_index += 1
        return index

    def block_index(self, tool_id: str) -> int | None:
        """The content block index assigned to a tool, or None if it has none."""
        return self._block_indices.get(tool_id)

    def _text_introduction(self, first_tool: ToolCall) -> list[SSEEvent]:
        # Block 0 is opened and closed by the surrounding stream; only text is added here.
        return [
            SSEEvent(
                event="content_block_delta",
                data={
                    "type": "content_block_delta",
                    "index": 0,
                    "delta": {"type": "text_delta", "text": self._intro_text(first_tool.function.name)},
                },
            )
        ]

    @staticmethod
    def _intro_text(_tool_name: str) -> str:
        return ""

    def generate_tool_summary(self) -> dict[str, Any]:
        """Counts, total execution time in ms and success rate of the tools."""
        active_count = len(self._active)
        completed_count = len(self._completed)
        error_count = sum(
            1 for tool in self._completed.values() if tool.status is ToolExecutionStatus.ERROR
        )
        total_time = sum(
            _millis(tool.end_time - tool.start_time)
            for tool in self._completed.values()
            if tool.end_time is not None
        )
        denominator = completed_count + active_count
        numerator = completed_count - error_count
        if denominator:
            success_rate = numerator / denominator
        else:
            success_rate = math.nan if numerator == 0 else math.copysign(math.inf, numerator)
        return {
            "active_tools": active_count,
            "completed_tools": completed_count,
            "error_tools": error_count,
            "total_execution_time": total_time,
            "success_rate": success_rate,
        }

    def update_tool_arguments(self, tool_id: str, arguments: dict[str, Any]) -> None:
        """Replace the arguments of an active or completed tool."""
        execution = self._active.get(tool_id) or self._completed.get(tool_id)
        if execution is None:
            logger.warning("no tool %s to update arguments for", tool_id)
            return
        execution.arguments = arguments

    def update_tool_arguments_from_json(self, tool_id: str, json_args: str) -> None:
        """Replace a tool's arguments from JSON text; invalid JSON is logged and ignored."""
        try:
            arguments = _parse_arguments(json_args)
        except ValueError as exc:
            logger.warning("failed to parse arguments JSON for tool %s: %r (%s)", tool_id, json_args, exc)
            return
        self.update_tool_arguments(tool_id, arguments)