"""Dispatch of decoded event stream messages to their event handlers."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from kirostream.aggregator import StreamingJSONAggregator
from kirostream.events import EventStreamMessage, EventTypes, MessageTypes, SSEEvent
from kirostream.handlers import (
    CompletionChunkEventHandler,
    CompletionEventHandler,
    LegacyToolUseEventHandler,
    SessionEndHandler,
    SessionStartHandler,
    StandardAssistantResponseEventHandler,
    ToolCallErrorHandler,
    ToolCallRequestHandler,
)
from kirostream.session import SessionManager
from kirostream.tools import ToolLifecycleManager

logger = logging.getLogger(__name__)

_PREVIEW_LENGTH = 100


class _EventHandler(Protocol):
    def handle(self, message: EventStreamMessage) -> list[SSEEvent]: ...


def _decode_fault_payload(payload: bytes) -> dict[str, Any] | None:
    """Decode an error or exception payload, falling back to its raw text."""
    if not payload:
        return None
    text = payload.decode("utf-8", errors="replace")
    try:
        data = json.loads(text)
    except ValueError as exc:
        logger.warning("failed to parse fault payload: %s", exc)
        return {"message": text}
    if data is None or isinstance(data, dict):
        return data
    logger.warning("fault payload is not a JSON object")
    return {"message": text}


def _string_of(data: dict[str, Any] | None, key: str) -> str:
    if data is None:
        return ""
    value = data.get(key)
    return value if isinstance(value, str) else ""


class CompliantMessageProcessor:
    """Routes each message to the handler for its message and event type."""

    def __init__(self) -> None:
        self.session_manager = SessionManager()
        self.tool_manager = ToolLifecycleManager()
        self._completion_buffer: list[str] = []
        self.aggregator = StreamingJSONAggregator(self.tool_manager.update_tool_arguments_from_json)
        self._handlers: dict[str, _EventHandler] = {
            EventTypes.COMPLETION: CompletionEventHandler(),
            EventTypes.COMPLETION_CHUNK: CompletionChunkEventHandler(self._completion_buffer),
            EventTypes.TOOL_CALL_REQUEST: ToolCallRequestHandler(self.tool_manager),
            EventTypes.TOOL_CALL_ERROR: ToolCallErrorHandler(self.tool_manager),
            EventTypes.SESSION_START: SessionStartHandler(self.session_manager),
            EventTypes.SESSION_END: SessionEndHandler(self.session_manager),
            EventTypes.ASSISTANT_RESPONSE_EVENT: StandardAssistantResponseEventHandler(self.tool_manager),
            EventTypes.TOOL_USE_EVENT: LegacyToolUseEventHandler(self.tool_manager, self.aggregator),
        }

    def reset(self) -> None:
        """Reset the session, the tools and the collected completion text."""
        self.session_manager.reset()
        self.tool_manager.reset()
        self._completion_buffer.clear()

    def process_message(self, message: EventStreamMessage) -> list[SSEEvent]:
        """Turn one message into events; handler failures raise ParseError."""
        message_type = message.message_type()
        event_type = message.event_type()
        preview = message.payload[:_PREVIEW_LENGTH].decode("utf-8", errors="replace")
        if len(message.payload) > _PREVIEW_LENGTH:
            preview += "..."
        logger.debug(
            "processing message type=%s event=%s payload_len=%d preview=%r",
            message_type,
            event_type,
            len(message.payload),
            preview,
        )

        if message_type == MessageTypes.EVENT:
            return self._process_event(message, event_type)
        if message_type == MessageTypes.ERROR:
            return self._process_error(message)
        if message_type == MessageTypes.EXCEPTION:
            return self._process_exception(message)
        logger.warning("unknown message type %r", message_type)
        return []

    def _process_event(self, message: EventStreamMessage, event_type: str) -> list[SSEEvent]:
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("unknown event type %r (known: %s)", event_type, sorted(self._handlers))
            return []
        return handler.handle(message)

    @staticmethod
    def _process_error(message: EventStreamMessage) -> list[SSEEvent]:
        data = _decode_fault_payload(message.payload)
        return [
            SSEEvent(
                event="error",
                data={
                    "type": "error",
                    "error_code": _string_of(data, "__type"),
                    "error_message": _string_of(data, "message"),
                    "raw_data": data,
                },
            )
        ]

    @staticmethod
    def _process_exception(message: EventStreamMessage) -> list[SSEEvent]:
        data = _decode_fault_payload(message.payload)
        return [
            SSEEvent(
                event="exception",
                data={
                    "type": "exception",
                    "exception_type": _string_of(data, "__type"),
                    "exception_message": _string_of(data, "message"),
                    "raw_data": data,
                },
            )
        ]

    def completion_text(self) -> str:
        """All completion chunk content collected so far."""
        return "".join(self._completion_buffer)