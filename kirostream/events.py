"""Event stream message types, tool call records and assistant response events."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any

MESSAGE_STATUS_COMPLETED = "COMPLETED"
MESSAGE_STATUS_IN_PROGRESS = "IN_PROGRESS"
CONTENT_TYPE_MARKDOWN = "text/markdown"


class ValueType(IntEnum):
    """Header value types of the binary event stream format."""

    BOOL_TRUE = 0
    BOOL_FALSE = 1
    BYTE = 2
    SHORT = 3
    INTEGER = 4
    LONG = 5
    BYTE_ARRAY = 6
    STRING = 7
    TIMESTAMP = 8
    UUID = 9


@dataclass(frozen=True)
class HeaderValue:
    """A decoded header value together with its wire type."""

    type: int
    value: Any


class MessageTypes:
    """Values of the ``:message-type`` header."""

    EVENT = "event"
    ERROR = "error"
    EXCEPTION = "exception"


class EventTypes:
    """Values of the ``:event-type`` header."""

    COMPLETION = "completion"
    COMPLETION_CHUNK = "completion_chunk"

    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESULT = "tool_call_result"
    TOOL_CALL_ERROR = "tool_call_error"
    TOOL_EXECUTION_START = "tool_execution_start"
    TOOL_EXECUTION_END = "tool_execution_end"

    SESSION_START = "session_start"
    SESSION_END = "session_end"

    ASSISTANT_RESPONSE_EVENT = "assistantResponseEvent"
    TOOL_USE_EVENT = "toolUseEvent"


def _string_header(headers: dict[str, HeaderValue], name: str, default: str) -> str:
    header = headers.get(name)
    if header is not None and isinstance(header.value, str):
        return header.value
    return default


@dataclass
class EventStreamMessage:
    """One decoded message of the event stream."""

    headers: dict[str, HeaderValue] = field(default_factory=dict)
    payload: bytes = b""

    def message_type(self) -> str:
        """The message type, ``"event"`` when absent or not a string."""
        return _string_header(self.headers, ":message-type", MessageTypes.EVENT)

    def event_type(self) -> str:
        """The event type, empty when absent or not a string."""
        return _string_header(self.headers, ":event-type", "")

    def content_type(self) -> str:
        """The content type, ``"application/json"`` by default."""
        return _string_header(self.headers, ":content-type", "application/json")


class ToolExecutionStatus(Enum):
    """Lifecycle state of a tool execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ToolExecution:
    """State of a single tool call."""

    id: str
    name: str
    start_time: datetime = field(default_factory=_now)
    end_time: datetime | None = None
    status: ToolExecutionStatus = ToolExecutionStatus.PENDING
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str = ""
    block_index: int = 0


@dataclass
class ToolCallFunction:
    """Function name and JSON-encoded arguments of a tool call."""

    name: str = ""
    arguments: str = ""


@dataclass
class ToolCall:
    """A single tool call."""

    id: str = ""
    type: str = ""
    function: ToolCallFunction = field(default_factory=ToolCallFunction)


@dataclass
class ToolCallRequest:
    """A batch of tool calls."""

    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class ToolCallResult:
    """The result of a tool call; execution time is in milliseconds."""

    tool_call_id: str
    result: Any = None
    execution_time: int = 0


@dataclass
class ToolCallError:
    """A failed tool call."""

    tool_call_id: str
    error: str = ""


@dataclass
class SessionInfo:
    """Identity and timing of a session."""

    session_id: str
    start_time: datetime
    end_time: datetime | None = None


class ParseError(ValueError):
    """Raised when stream data or a payload cannot be parsed."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"parse error: {self.message}, cause: {self.cause}"
        return f"parse error: {self.message}"


@dataclass
class SSEEvent:
    """A server-sent event: a name and its data."""

    event: str
    data: Any = None


def _load_json(payload: bytes | str) -> Any:
    text = payload.decode("utf-8", errors="replace") if isinstance(payload, (bytes, bytearray)) else payload
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ParseError("invalid JSON", exc) from exc


def _str_field(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ParseError(f"field {key!r} must be a string")
    return value


def _bool_field(data: dict[str, Any], key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ParseError(f"field {key!r} must be a boolean")
    return value


@dataclass
class ToolUseEvent:
    """A tool use fragment; ``input`` is either an object or a JSON text fragment."""

    name: str = ""
    tool_use_id: str = ""
    input: Any = None
    stop: bool = False

    @classmethod
    def from_json(cls, payload: bytes | str) -> ToolUseEvent:
        """Decode a tool use event; raises ParseError on malformed data."""
        data = _load_json(payload)
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ParseError("tool use event must be a JSON object")
        return cls(
            name=_str_field(data, "name"),
            tool_use_id=_str_field(data, "toolUseId"),
            input=data.get("input"),
            stop=_bool_field(data, "stop"),
        )


@dataclass
class FullAssistantResponseEvent:
    """An assistant response event with its main fields."""

    content: str = ""
    conversation_id: str = ""
    message_id: str = ""
    message_status: str = ""
    content_type: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FullAssistantResponseEvent:
        """Build an event from decoded JSON; raises ParseError on wrong field types."""
        if data is None:
            return cls()
        return cls(
            content=_str_field(data, "content"),
            conversation_id=_str_field(data, "conversationId"),
            message_id=_str_field(data, "messageId"),
            message_status=_str_field(data, "messageStatus"),
            content_type=_str_field(data, "contentType"),
        )

    @classmethod
    def from_legacy(cls, content: str) -> FullAssistantResponseEvent:
        """Build a completed markdown event from plain legacy content."""
        return cls(
            content=content,
            message_status=MESSAGE_STATUS_COMPLETED,
            content_type=CONTENT_TYPE_MARKDOWN,
        )


_MAIN_FIELDS = ("content", "conversationId", "messageId")


def parse_full_assistant_response_event(payload: bytes | str) -> FullAssistantResponseEvent:
    """Parse a full assistant response event, rejecting bare tool call fragments."""
    data = _load_json(payload)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ParseError("assistant response payload must be a JSON object")

    nested = data.get("assistantResponseEvent")
    if isinstance(nested, dict):
        data = nested

    is_tool_fragment = "toolUseId" in data and "name" in data
    has_main_fields = any(key in data and data[key] != "" for key in _MAIN_FIELDS)

    if is_tool_fragment and not has_main_fields:
        raise ParseError("payload is a tool call fragment, not a full assistant response event")

    return FullAssistantResponseEvent.from_dict(data)