"""Framing of the binary event stream into messages, with error recovery."""

from __future__ import annotations

import logging
import string
import threading

from kirostream.events import EventStreamMessage, HeaderValue, ParseError
from kirostream.headers import HeaderParser, _default_headers

logger = logging.getLogger(__name__)

MIN_MESSAGE_SIZE = 16
MAX_MESSAGE_SIZE = 16 * 1024 * 1024
DEFAULT_MAX_ERRORS = 10

_PRELUDE_SIZE = 12
_TRAILER_SIZE = 4
_TOOL_USE_PREFIX = "tooluse_"
_ID_CHARS = frozenset(string.ascii_letters + string.digits + "_-")
_ID_LEADERS = frozenset('": {')
_CORRUPT_PATTERNS = ("tooluluse_", "tooluse_tooluse_")


class TooManyErrors(ParseError):
    """Raised when the error count reaches the limit; carries the messages decoded so far."""

    def __init__(self, error_count: int, messages: list[EventStreamMessage]) -> None:
        super().__init__(f"too many errors ({error_count}), parsing stopped")
        self.error_count = error_count
        self.messages = messages


def is_valid_tool_use_id(tool_use_id: str) -> bool:
    """Whether ``tool_use_id`` looks like a well-formed ``tooluse_`` identifier."""
    if not tool_use_id.startswith(_TOOL_USE_PREFIX):
        return False
    if not 20 <= len(tool_use_id) <= 50:
        logger.debug("tool_use_id has unusual length: %r (%d)", tool_use_id, len(tool_use_id))
        return False
    if not all(char in _ID_CHARS for char in tool_use_id[len(_TOOL_USE_PREFIX):]):
        logger.debug("tool_use_id contains invalid characters: %r", tool_use_id)
        return False
    if any(pattern in tool_use_id for pattern in _CORRUPT_PATTERNS):
        logger.warning("tool_use_id looks corrupted: %r", tool_use_id)
        return False
    return True


class RobustEventStreamParser:
    """Buffers stream bytes and decodes complete messages, skipping bad data."""

    def __init__(self, max_errors: int = DEFAULT_MAX_ERRORS) -> None:
        self.max_errors = max_errors
        self.error_count = 0
        self._header_parser = HeaderParser()
        self._buffer = bytearray()
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Clear the error count and any buffered bytes."""
        self.error_count = 0
        self._buffer.clear()

    def parse_stream(self, data: bytes) -> list[EventStreamMessage]:
        """Feed bytes and return every message completed by them.

        Raises TooManyErrors, holding the decoded messages, once the error
        count reaches ``max_errors``.
        """
        with self._lock:
            self._buffer += data
            messages: list[EventStreamMessage] = []

            while len(self._buffer) >= MIN_MESSAGE_SIZE:
                total_length = int.from_bytes(self._buffer[:4], "big")
                if not MIN_MESSAGE_SIZE <= total_length <= MAX_MESSAGE_SIZE:
                    del self._buffer[:1]
                    self.error_count += 1
                    logger.warning("skipping invalid message prelude (total length %d)", total_length)
                    continue
                if len(self._buffer) < total_length:
                    break

                message_data = bytes(self._buffer[:total_length])
                del self._buffer[:total_length]
                try:
                    messages.append(self.parse_single_message(message_data))
                except ParseError as exc:
                    logger.warning("failed to parse message: %s", exc)
                    self.error_count += 1

            if self.error_count >= self.max_errors:
                raise TooManyErrors(self.error_count, messages)
            return messages

    def parse_single_message(self, data: bytes) -> EventStreamMessage:
        """Decode exactly one whole message; raises ParseError on malformed framing."""
        data = bytes(data)
        if len(data) < MIN_MESSAGE_SIZE:
            raise ParseError("insufficient data length")

        self._header_parser.reset()

        total_length = int.from_bytes(data[0:4], "big")
        header_length = int.from_bytes(data[4:8], "big")

        if total_length != len(data):
            raise ParseError(
                f"length mismatch: expected {total_length} bytes, got {len(data)} bytes"
            )
        if total_length < MIN_MESSAGE_SIZE:
            raise ParseError(f"invalid total message length: {total_length}")
        if total_length > MAX_MESSAGE_SIZE:
            raise ParseError(f"message too large: {total_length}")
        if header_length > total_length - MIN_MESSAGE_SIZE:
            raise ParseError(f"invalid header length: {header_length}")

        header_data = data[_PRELUDE_SIZE:_PRELUDE_SIZE + header_length]
        payload_start = _PRELUDE_SIZE + header_length
        payload_end = total_length - _TRAILER_SIZE
        if payload_start > payload_end:
            raise ParseError(
                f"invalid payload bounds: start={payload_start}, end={payload_end}, data_len={len(data)}"
            )
        payload = data[payload_start:payload_end]
        logger.debug("payload: %r", payload)

        headers = self._decode_headers(header_data)
        message = EventStreamMessage(headers=headers, payload=payload)
        self._check_tool_use_ids(message)
        return message

    def _decode_headers(self, header_data: bytes) -> dict[str, HeaderValue]:
        if not header_data:
            logger.debug("empty header section, using default headers")
            return _default_headers()
        parser = self._header_parser
        try:
            return dict(parser.parse_headers(header_data))
        except ParseError as exc:
            if parser.is_header_parse_recoverable(parser.state):
                logger.warning("header parsing partly failed, using parsed headers: %s", exc)
                headers = parser.force_complete_header_parsing(parser.state)
            else:
                logger.warning("header parsing failed, using default headers: %s", exc)
                headers = _default_headers()
            parser.reset()
            return headers

    def _check_tool_use_ids(self, message: EventStreamMessage) -> None:
        if not message.payload:
            return
        text = message.payload.decode("utf-8", errors="replace")
        if "tool_use_id" not in text and "toolUseId" not in text:
            return
        for tool_use_id in self.extract_tool_use_ids(text):
            if not is_valid_tool_use_id(tool_use_id):
                logger.warning(
                    "possibly corrupted tool_use_id %r (message %s, event %s)",
                    tool_use_id,
                    message.message_type(),
                    message.event_type(),
                )

    def extract_tool_use_ids(self, payload: str) -> list[str]:
        """Return every well-formed ``tooluse_`` identifier found in ``payload``."""
        found: list[str] = []
        position = 0
        while True:
            start = payload.find(_TOOL_USE_PREFIX, position)
            if start == -1:
                return found
            position = start + 1
            if start > 0 and payload[start - 1] not in _ID_LEADERS:
                continue

            end = start + len(_TOOL_USE_PREFIX)
            while end < len(payload) and payload[end] in _ID_CHARS:
                end += 1
            if end == start + len(_TOOL_USE_PREFIX):
                continue

            candidate = payload[start:end]
            if is_valid_tool_use_id(candidate):
                found.append(candidate)
            else:
                logger.warning("skipping malformed tool_use_id %r", candidate)