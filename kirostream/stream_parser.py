"""Parsing of whole or streamed event stream responses into events and a summary."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from kirostream.events import (
    EventStreamMessage,
    EventTypes,
    MessageTypes,
    ParseError,
    SessionInfo,
    SSEEvent,
    ToolExecution,
)
from kirostream.framing import DEFAULT_MAX_ERRORS, RobustEventStreamParser, TooManyErrors
from kirostream.processor import CompliantMessageProcessor

logger = logging.getLogger(__name__)

_CONTENT_BLOCK_EVENTS = frozenset({"content_block_start", "content_block_stop", "content_block_delta"})
_TOOL_EVENTS = frozenset({EventTypes.TOOL_CALL_REQUEST, EventTypes.TOOL_CALL_ERROR})
_COMPLETION_EVENTS = frozenset(
    {EventTypes.COMPLETION, EventTypes.COMPLETION_CHUNK, EventTypes.ASSISTANT_RESPONSE_EVENT}
)
_SESSION_EVENTS = frozenset({EventTypes.SESSION_START, EventTypes.SESSION_END})


@dataclass
class ParseSummary:
    """Counts and flags describing a parsed response."""

    total_messages: int = 0
    total_events: int = 0
    message_types: dict[str, int] = field(default_factory=dict)
    event_types: dict[str, int] = field(default_factory=dict)
    has_tool_calls: bool = False
    has_completions: bool = False
    has_errors: bool = False
    has_session_events: bool = False
    tool_summary: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParseResult:
    """Everything obtained from parsing a response."""

    messages: list[EventStreamMessage]
    events: list[SSEEvent]
    tool_executions: dict[str, ToolExecution]
    active_tools: dict[str, ToolExecution]
    session_info: SessionInfo
    summary: ParseSummary
    errors: list[ParseError] = field(default_factory=list)

    def completion_text(self) -> str:
        """The concatenated text of all content block deltas."""
        parts: list[str] = []
        for event in self.events:
            if event.event != "content_block_delta" or not isinstance(event.data, dict):
                continue
            delta = event.data.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("text"), str):
                parts.append(delta["text"])
        return "".join(parts)

    def tool_calls(self) -> list[ToolExecution]:
        """Completed tools followed by active ones."""
        return [*self.tool_executions.values(), *self.active_tools.values()]


def _is_tool_use_block(event: SSEEvent) -> bool:
    if event.event not in _CONTENT_BLOCK_EVENTS or not isinstance(event.data, dict):
        return False
    block = event.data.get("content_block")
    return isinstance(block, dict) and block.get("type") == "tool_use"


class CompliantEventStreamParser:
    """Frames binary stream data into messages and processes them into events."""

    def __init__(self, max_errors: int = DEFAULT_MAX_ERRORS) -> None:
        self._framer = RobustEventStreamParser(max_errors)
        self.processor = CompliantMessageProcessor()

    def reset(self) -> None:
        """Clear buffered data, error counts and processing state."""
        self._framer.reset()
        self.processor.reset()

    def _frame(self, data: bytes) -> list[EventStreamMessage]:
        try:
            return self._framer.parse_stream(data)
        except TooManyErrors as exc:
            logger.warning("event stream partly failed to parse: %s", exc)
            return exc.messages

    def parse_response(self, stream_data: bytes) -> ParseResult:
        """Parse a complete response; per-message failures are collected in ``errors``."""
        messages = self._frame(stream_data)
        events: list[SSEEvent] = []
        errors: list[ParseError] = []

        for index, message in enumerate(messages):
            try:
                events.extend(self.processor.process_message(message))
            except ParseError as exc:
                errors.append(ParseError(f"failed to process message {index}", exc))
                logger.warning(
                    "failed to process message %d (type %s, event %s): %s",
                    index,
                    message.message_type(),
                    message.event_type(),
                    exc,
                )

        if errors:
            logger.debug(
                "parsed %d messages into %d events with %d errors",
                len(messages),
                len(events),
                len(errors),
            )

        tools = self.processor.tool_manager
        return ParseResult(
            messages=messages,
            events=events,
            tool_executions=tools.completed_tools(),
            active_tools=tools.active_tools(),
            session_info=self.processor.session_manager.session_info(),
            summary=self._summarize(messages, events),
            errors=errors,
        )

    def parse_stream(self, data: bytes) -> list[SSEEvent]:
        """Feed more stream data and return the events it completes."""
        events: list[SSEEvent] = []
        for message in self._frame(data):
            try:
                events.extend(self.processor.process_message(message))
            except ParseError as exc:
                logger.warning("failed to process streamed message: %s", exc)
        return events

    def _summarize(self, messages: list[EventStreamMessage], events: list[SSEEvent]) -> ParseSummary:
        summary = ParseSummary(total_messages=len(messages), total_events=len(events))

        for message in messages:
            message_type = message.message_type()
            summary.message_types[message_type] = summary.message_types.get(message_type, 0) + 1
            if message_type in (MessageTypes.ERROR, MessageTypes.EXCEPTION):
                summary.has_errors = True

            event_type = message.event_type()
            if not event_type:
                continue
            summary.event_types[event_type] = summary.event_types.get(event_type, 0) + 1
            if event_type in _TOOL_EVENTS:
                summary.has_tool_calls = True
            elif event_type in _COMPLETION_EVENTS:
                summary.has_completions = True
            elif event_type in _SESSION_EVENTS:
                summary.has_session_events = True

        for event in events:
            summary.event_types[event.event] = summary.event_types.get(event.event, 0) + 1
            if _is_tool_use_block(event):
                summary.has_tool_calls = True

        summary.tool_summary = self.processor.tool_manager.generate_tool_summary()
        return summary