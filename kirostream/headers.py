"""Resumable parser for the header section of event stream messages."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from kirostream.events import EventTypes, HeaderValue, MessageTypes, ParseError, ValueType

logger = logging.getLogger(__name__)

_INSUFFICIENT = "insufficient data: more data needed to continue parsing"


class ParsePhase(IntEnum):
    """Where the header parser stands inside the current header."""

    READ_NAME_LENGTH = 0
    READ_NAME = 1
    READ_VALUE_TYPE = 2
    READ_VALUE_LENGTH = 3
    READ_VALUE = 4


@dataclass
class HeaderParseState:
    """Parser state kept between calls so that parsing can resume on more data."""

    phase: ParsePhase = ParsePhase.READ_NAME_LENGTH
    current_header: int = 0
    name_length: int = 0
    value_type: int = 0
    value_length: int = 0
    partial_name: bytes | None = None
    partial_value: bytes | None = None
    partial_length: bytes | None = None
    parsed_headers: dict[str, HeaderValue] = field(default_factory=dict)

    def reset(self) -> None:
        """Return to the initial state, dropping parsed headers."""
        self.phase = ParsePhase.READ_NAME_LENGTH
        self.current_header = 0
        self.name_length = 0
        self.value_type = 0
        self.value_length = 0
        self.partial_name = None
        self.partial_value = None
        self.partial_length = None
        self.parsed_headers = {}

    def is_complete(self) -> bool:
        """True when between headers and at least one header was parsed."""
        return self.phase == ParsePhase.READ_NAME_LENGTH and bool(self.parsed_headers)

    def _next_header(self) -> None:
        self.current_header += 1
        self.name_length = 0
        self.value_type = 0
        self.value_length = 0
        self.partial_name = None
        self.partial_value = None
        self.partial_length = None
        self.phase = ParsePhase.READ_NAME_LENGTH


def _default_headers() -> dict[str, HeaderValue]:
    return {
        ":message-type": HeaderValue(ValueType.STRING, MessageTypes.EVENT),
        ":event-type": HeaderValue(ValueType.STRING, EventTypes.ASSISTANT_RESPONSE_EVENT),
        ":content-type": HeaderValue(ValueType.STRING, "application/json"),
    }


def _as_value_type(raw: int) -> int:
    try:
        return ValueType(raw)
    except ValueError:
        return raw


def _fixed(data: bytes, size: int, kind: str) -> bytes:
    if len(data) != size:
        raise ValueError(f"{kind} value needs {size} bytes, got {len(data)}")
    return data


def _decode_value(value_type: int, data: bytes) -> Any:
    """Decode a header value of the given wire type; raises ValueError on bad length."""
    if value_type == ValueType.BOOL_TRUE:
        return True
    if value_type == ValueType.BOOL_FALSE:
        return False
    if value_type == ValueType.BYTE:
        return int.from_bytes(_fixed(data, 1, "BYTE"), "big", signed=True)
    if value_type == ValueType.SHORT:
        return int.from_bytes(_fixed(data, 2, "SHORT"), "big", signed=True)
    if value_type == ValueType.INTEGER:
        return int.from_bytes(_fixed(data, 4, "INTEGER"), "big", signed=True)
    if value_type in (ValueType.LONG, ValueType.TIMESTAMP):
        kind = "LONG" if value_type == ValueType.LONG else "TIMESTAMP"
        return int.from_bytes(_fixed(data, 8, kind), "big", signed=True)
    if value_type == ValueType.BYTE_ARRAY:
        return bytes(data)
    if value_type == ValueType.STRING:
        return data.decode("utf-8", errors="replace")
    if value_type == ValueType.UUID:
        if len(data) == 16:
            return "-".join(
                data[start:end].hex() for start, end in ((0, 4), (4, 6), (6, 8), (8, 10), (10, 16))
            )
        return data.decode("utf-8", errors="replace")
    logger.warning("unknown header value type %d", value_type)
    return bytes(data)


class HeaderParser:
    """Parses event stream headers, keeping state so that parsing can resume."""

    def __init__(self) -> None:
        self.state = HeaderParseState()
        self._phases: dict[ParsePhase, Callable[[bytes, int, HeaderParseState], tuple[int, bool]]] = {
            ParsePhase.READ_NAME_LENGTH: self._read_name_length,
            ParsePhase.READ_NAME: self._read_name,
            ParsePhase.READ_VALUE_TYPE: self._read_value_type,
            ParsePhase.READ_VALUE_LENGTH: self._read_value_length,
            ParsePhase.READ_VALUE: self._read_value,
        }

    def parse_headers(self, data: bytes) -> dict[str, HeaderValue]:
        """Parse header bytes with the parser's own state; raises ParseError."""
        if not data:
            return {}
        return self.parse_headers_with_state(data, self.state)

    def parse_headers_with_state(self, data: bytes, state: HeaderParseState) -> dict[str, HeaderValue]:
        """Parse header bytes, resuming from ``state``.

        Raises ParseError when the data ends inside a header and nothing can be
        recovered; the state keeps what was read so a later call can continue.
        """
        data = bytes(data)
        if not data:
            return state.parsed_headers if state.parsed_headers else {}

        offset = 0
        while offset < len(data):
            offset, need_more = self._phases[state.phase](data, offset, state)
            if need_more:
                logger.debug(
                    "header parsing needs more data (phase %d, %d bytes, %d headers)",
                    state.phase,
                    offset,
                    len(state.parsed_headers),
                )
                raise ParseError(_INSUFFICIENT)

        if state.phase != ParsePhase.READ_NAME_LENGTH:
            logger.debug("data ended inside a header (phase %d)", state.phase)
            if state.parsed_headers:
                return self.force_complete_header_parsing(state)
            raise ParseError(_INSUFFICIENT)

        return state.parsed_headers

    @staticmethod
    def _read_name_length(data: bytes, offset: int, state: HeaderParseState) -> tuple[int, bool]:
        if offset >= len(data):
            return offset, True
        name_length = data[offset]
        if name_length == 0:
            raise ParseError(f"invalid header name length: {name_length}")
        state.name_length = name_length
        state.partial_name = b""
        state.phase = ParsePhase.READ_NAME
        return offset + 1, False

    @staticmethod
    def _read_name(data: bytes, offset: int, state: HeaderParseState) -> tuple[int, bool]:
        have = state.partial_name or b""
        remaining = state.name_length - len(have)
        if len(data) - offset < remaining:
            state.partial_name = have + data[offset:]
            return len(data), True
        state.partial_name = have + data[offset : offset + remaining]
        state.phase = ParsePhase.READ_VALUE_TYPE
        return offset + remaining, False

    @staticmethod
    def _read_value_type(data: bytes, offset: int, state: HeaderParseState) -> tuple[int, bool]:
        if offset >= len(data):
            return offset, True
        state.value_type = _as_value_type(data[offset])
        state.phase = ParsePhase.READ_VALUE_LENGTH
        return offset + 1, False

    @staticmethod
    def _read_value_length(data: bytes, offset: int, state: HeaderParseState) -> tuple[int, bool]:
        have = state.partial_length or b""
        remaining = 2 - len(have)
        if len(data) - offset < remaining:
            state.partial_length = have + data[offset:]
            return len(data), True
        length_bytes = have + data[offset : offset + remaining]
        state.value_length = int.from_bytes(length_bytes, "big")
        state.partial_value = b""
        state.partial_length = None
        state.phase = ParsePhase.READ_VALUE
        return offset + remaining, False

    @staticmethod
    def _read_value(data: bytes, offset: int, state: HeaderParseState) -> tuple[int, bool]:
        have = state.partial_value or b""
        remaining = state.value_length - len(have)
        if len(data) - offset < remaining:
            state.partial_value = have + data[offset:]
            return len(data), True
        value_bytes = have + data[offset : offset + remaining]
        name = (state.partial_name or b"").decode("utf-8", errors="replace")
        try:
            value = _decode_value(state.value_type, value_bytes)
        except ValueError as exc:
            logger.warning("skipping header %r of type %d: %s", name, state.value_type, exc)
        else:
            state.parsed_headers[name] = HeaderValue(state.value_type, value)
        state._next_header()
        return offset + remaining, False

    def reset(self) -> None:
        """Reset the parser state."""
        self.state.reset()

    def is_header_parse_recoverable(self, state: HeaderParseState) -> bool:
        """Whether enough headers were parsed to carry on after a failure."""
        return bool(state.parsed_headers)

    def force_complete_header_parsing(self, state: HeaderParseState) -> dict[str, HeaderValue]:
        """Return the parsed headers with the key headers filled in by defaults."""
        defaults = _default_headers()
        if not state.parsed_headers:
            return defaults
        result = dict(state.parsed_headers)
        for name, value in defaults.items():
            result.setdefault(name, value)
        return result


def _string_value(headers: dict[str, HeaderValue], name: str, default: str) -> str:
    header = headers.get(name)
    if header is not None and isinstance(header.value, str):
        return header.value
    return default


def get_message_type_from_headers(headers: dict[str, HeaderValue]) -> str:
    """The ``:message-type`` header, ``"event"`` by default."""
    return _string_value(headers, ":message-type", MessageTypes.EVENT)


def get_event_type_from_headers(headers: dict[str, HeaderValue]) -> str:
    """The ``:event-type`` header, empty by default."""
    return _string_value(headers, ":event-type", "")


def get_content_type_from_headers(headers: dict[str, HeaderValue]) -> str:
    """The ``:content-type`` header, ``"application/json"`` by default."""
    return _string_value(headers, ":content-type", "application/json")