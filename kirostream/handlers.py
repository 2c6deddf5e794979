"""Handlers that turn decoded event stream messages into server-sent events."""

from __future__ import annotations

import json
import logging
from typing import Any

from kirostream.aggregator import StreamingJSONAggregator
from kirostream.events import (
    MESSAGE_STATUS_IN_PROGRESS,
    EventStreamMessage,
    EventTypes,
    FullAssistantResponseEvent,
    ParseError,
    SSEEvent,
    ToolCall,
    ToolCallError,
    ToolCallFunction,
    ToolCallRequest,
    ToolCallResult,
    ToolUseEvent,
    parse_full_assistant_response_event,
)
from kirostream.session import SessionManager
from kirostream.tools import ToolLifecycleManager

logger = logging.getLogger(__name__)

_TOOL_COMPLETED_RESULT = "Tool execution completed via toolUseEvent"


def _decode_text(payload: bytes | str) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode("utf-8", errors="replace")
    return payload


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _load_object(payload: bytes | str) -> dict[str, Any]:
    """Decode a JSON object payload; raises ParseError otherwise."""
    try:
        data = json.loads(_decode_text(payload))
    except ValueError as exc:
        raise ParseError("invalid JSON", exc) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseError("payload must be a JSON object")
    return data


def _string_or_empty(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _strict_string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ParseError(f"field {key!r} must be a string")
    return value


def _text_delta(text: str) -> SSEEvent:
    return SSEEvent(
        event="content_block_delta",
        data={
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": text},
        },
    )


def convert_input_to_string(input: Any) -> str:
    """Render a tool input as JSON text; strings pass through, None becomes ``{}``."""
    if input is None:
        return "{}"
    if isinstance(input, str):
        return input
    try:
        return _dump(input)
    except (TypeError, ValueError) as exc:
        logger.warning("failed to convert tool input to JSON: %s", exc)
        return "{}"


def is_tool_call_event(payload: bytes | str) -> bool:
    """Whether the raw payload looks like a tool call fragment."""
    text = _decode_text(payload)
    return (
        '"toolUseId":' in text
        or '"tool_use_id":' in text
        or ('"name":' in text and '"input":' in text)
    )


def is_streaming_response(event: FullAssistantResponseEvent | None) -> bool:
    """Whether the event carries partial content or is still in progress."""
    return event is not None and (
        event.message_status == MESSAGE_STATUS_IN_PROGRESS or event.content != ""
    )


class CompletionEventHandler:
    """Handles whole completion events."""

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        """Return a single ``completion`` event; raises ParseError on bad JSON."""
        data = _load_object(message.payload)

        tool_calls: list[ToolCall] = []
        raw_calls = data.get("tool_calls")
        if isinstance(raw_calls, list):
            for raw in raw_calls:
                if not isinstance(raw, dict):
                    continue
                function = raw.get("function")
                function = function if isinstance(function, dict) else {}
                tool_calls.append(
                    ToolCall(
                        id=_string_or_empty(raw, "id"),
                        type=_string_or_empty(raw, "type"),
                        function=ToolCallFunction(
                            name=_string_or_empty(function, "name"),
                            arguments=_string_or_empty(function, "arguments"),
                        ),
                    )
                )

        return [
            SSEEvent(
                event="completion",
                data={
                    "type": "completion",
                    "content": _string_or_empty(data, "content"),
                    "finish_reason": _string_or_empty(data, "finish_reason"),
                    "tool_calls": tool_calls,
                    "raw_data": data,
                },
            )
        ]


class CompletionChunkEventHandler:
    """Handles streamed completion chunks, collecting their content."""

    def __init__(self, completion_buffer: list[str] | None = None) -> None:
        self.completion_buffer = completion_buffer if completion_buffer is not None else []

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        """Return a text delta, plus a block stop when a finish reason is given."""
        data = _load_object(message.payload)
        content = _string_or_empty(data, "content")
        delta = _string_or_empty(data, "delta")
        finish_reason = _string_or_empty(data, "finish_reason")

        self.completion_buffer.append(content)

        events = [_text_delta(delta or content)]
        if finish_reason:
            events.append(
                SSEEvent(
                    event="content_block_stop",
                    data={"type": "content_block_stop", "index": 0, "finish_reason": finish_reason},
                )
            )
        return events


class ToolCallRequestHandler:
    """Handles standard tool call request events."""

    def __init__(self, tool_manager: ToolLifecycleManager) -> None:
        self.tool_manager = tool_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        """Register the requested tool; raises ParseError on bad JSON."""
        data = _load_object(message.payload)
        tool_call_id = _string_or_empty(data, "toolCallId")
        tool_name = _string_or_empty(data, "toolName")
        raw_input = data.get("input")
        tool_input = raw_input if isinstance(raw_input, dict) else {}

        arguments = "{}"
        if tool_input:
            try:
                arguments = _dump(tool_input)
            except (TypeError, ValueError):
                arguments = "{}"

        tool_call = ToolCall(
            id=tool_call_id,
            type="function",
            function=ToolCallFunction(name=tool_name, arguments=arguments),
        )
        logger.debug("tool call request %s (%s): %r", tool_call_id, tool_name, tool_input)
        return self.tool_manager.handle_tool_call_request(ToolCallRequest(tool_calls=[tool_call]))


class ToolCallErrorHandler:
    """Handles tool call error events."""

    def __init__(self, tool_manager: ToolLifecycleManager) -> None:
        self.tool_manager = tool_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        """Fail the named tool; raises ParseError on malformed payloads."""
        data = _load_object(message.payload)
        error_info = ToolCallError(
            tool_call_id=_strict_string(data, "tool_call_id"),
            error=_strict_string(data, "error"),
        )
        return self.tool_manager.handle_tool_call_error(error_info)


class SessionStartHandler:
    """Handles session start events."""

    def __init__(self, session_manager: SessionManager) -> None:
        self.session_manager = session_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        """Start the session if an id is given and echo the event data."""
        data = _load_object(message.payload)
        session_id = data.get("sessionId")
        if not isinstance(session_id, str):
            session_id = _string_or_empty(data, "session_id")
        if session_id:
            self.session_manager.session_id = session_id
            self.session_manager.start_session()
        return [SSEEvent(event=EventTypes.SESSION_START, data=data)]


class SessionEndHandler:
    """Handles session end events."""

    def __init__(self, session_manager: SessionManager) -> None:
        self.session_manager = session_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        """End the session; return the echoed event and the session's own end event."""
        data = _load_object(message.payload)
        end_events = self.session_manager.end_session()
        return [SSEEvent(event=EventTypes.SESSION_END, data=data), *end_events]


class StandardAssistantResponseEventHandler:
    """Handles assistant response events in their full, streaming and legacy forms."""

    def __init__(self, tool_manager: ToolLifecycleManager) -> None:
        self.tool_manager = tool_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        """Turn an assistant response event into content block events."""
        if is_tool_call_event(message.payload):
            logger.debug("assistant response carries a tool call")
            return self._handle_tool_call(message)

        try:
            event = parse_full_assistant_response_event(message.payload)
        except ParseError:
            logger.debug("not a full assistant response event, trying legacy format")
            return self._handle_legacy(message.payload)

        if is_streaming_response(event):
            return self._handle_streaming(event)
        return self._handle_full(event)

    def _handle_tool_call(self, message: EventStreamMessage) -> list[SSEEvent]:
        try:
            evt = ToolUseEvent.from_json(message.payload)
        except ParseError as exc:
            logger.warning("failed to parse tool call event: %s", exc)
            return []
        tool_call = ToolCall(
            id=evt.tool_use_id,
            type="function",
            function=ToolCallFunction(name=evt.name, arguments=convert_input_to_string(evt.input)),
        )
        return self.tool_manager.handle_tool_call_request(ToolCallRequest(tool_calls=[tool_call]))

    @staticmethod
    def _handle_streaming(event: FullAssistantResponseEvent) -> list[SSEEvent]:
        return [_text_delta(event.content)] if event.content else []

    @staticmethod
    def _handle_full(event: FullAssistantResponseEvent) -> list[SSEEvent]:
        if not event.content:
            return []
        return [
            SSEEvent(
                event="content_block_start",
                data={
                    "type": "content_block_start",
                    "index": 0,
                    "content_block": {"type": "text", "text": event.content},
                },
            ),
            _text_delta(event.content),
            SSEEvent(
                event="content_block_stop",
                data={"type": "content_block_stop", "index": 0},
            ),
        ]

    @staticmethod
    def _handle_legacy(payload: bytes | str) -> list[SSEEvent]:
        text = _decode_text(payload).strip()
        if text and not text.startswith("{"):
            return [_text_delta(text)]
        try:
            data = _load_object(payload)
        except ParseError as exc:
            logger.warning("cannot parse legacy payload: %s", exc)
            return []
        content = data.get("content")
        if isinstance(content, str) and content:
            return [_text_delta(content)]
        return []


class LegacyToolUseEventHandler:
    """Handles tool use events, registering tools and aggregating streamed input."""

    def __init__(self, tool_manager: ToolLifecycleManager, aggregator: StreamingJSONAggregator) -> None:
        self.tool_manager = tool_manager
        self.aggregator = aggregator

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        """Register a new tool, stream input deltas, or complete the tool on stop."""
        try:
            evt = ToolUseEvent.from_json(message.payload)
        except ParseError as exc:
            logger.warning("failed to parse tool use event: %s (payload %r)", exc, message.payload)
            return []

        if not evt.name or not evt.tool_use_id:
            logger.warning(
                "tool use event lacks required fields: name=%r toolUseId=%r",
                evt.name,
                evt.tool_use_id,
            )
            if not evt.name and not evt.tool_use_id:
                return []

        input_text = convert_input_to_string(evt.input)

        if evt.tool_use_id not in self.tool_manager.active_tools():
            # The first event of a tool carries a whole input object, never a fragment.
            logger.debug("registering tool %s (%s)", evt.tool_use_id, evt.name)
            tool_call = ToolCall(
                id=evt.tool_use_id,
                type="function",
                function=ToolCallFunction(name=evt.name, arguments=input_text),
            )
            return self.tool_manager.handle_tool_call_request(ToolCallRequest(tool_calls=[tool_call]))

        if evt.stop:
            complete, full_input = self.aggregator.process_tool_data(
                evt.tool_use_id, evt.name, "", True, -1
            )
            if complete:
                if full_input not in ("", "{}"):
                    self._apply_arguments(evt.tool_use_id, full_input)
                result = ToolCallResult(tool_call_id=evt.tool_use_id, result=_TOOL_COMPLETED_RESULT)
                return self.tool_manager.handle_tool_call_result(result)

        if input_text in ("", "{}"):
            return []

        complete, _ = self.aggregator.process_tool_data(
            evt.tool_use_id, evt.name, input_text, evt.stop, -1
        )
        if complete:
            return []

        if not evt.tool_use_id:
            logger.warning("tool input fragment without toolUseId: %r", input_text)
            return []

        index = self.tool_manager.block_index(evt.tool_use_id)
        if index is None:
            logger.warning(
                "input fragment for unregistered tool %s (%s): %r",
                evt.tool_use_id,
                evt.name,
                input_text,
            )
            return []

        return [
            SSEEvent(
                event="content_block_delta",
                data={
                    "type": "content_block_delta",
                    "index": index,
                    "delta": {"type": "input_json_delta", "partial_json": input_text},
                },
            )
        ]

    def _apply_arguments(self, tool_use_id: str, full_input: str) -> None:
        try:
            arguments = json.loads(full_input)
        except ValueError as exc:
            logger.warning("aggregated arguments of %s are not valid JSON: %s", tool_use_id, exc)
            return
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            logger.warning("aggregated arguments of %s are not a JSON object", tool_use_id)
            return
        self.tool_manager.update_tool_arguments(tool_use_id, arguments)