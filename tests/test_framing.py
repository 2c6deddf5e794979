import zlib

import pytest

from kirostream.events import EventTypes, MessageTypes, ParseError, ValueType
from kirostream.framing import (
    RobustEventStreamParser,
    TooManyErrors,
    is_valid_tool_use_id,
)

VALID_ID = "tooluse_abcdefghijklmnopqrstuv"


def string_header(name: str, value: str) -> bytes:
    name_bytes = name.encode()
    value_bytes = value.encode()
    return (
        bytes([len(name_bytes)])
        + name_bytes
        + bytes([ValueType.STRING])
        + len(value_bytes).to_bytes(2, "big")
        + value_bytes
    )


def frame(headers: bytes, payload: bytes) -> bytes:
    total = 12 + len(headers) + len(payload) + 4
    prelude = total.to_bytes(4, "big") + len(headers).to_bytes(4, "big")
    body = prelude + zlib.crc32(prelude).to_bytes(4, "big") + headers + payload
    return body + zlib.crc32(body).to_bytes(4, "big")


def event_message(event_type: str, payload: bytes) -> bytes:
    headers = string_header(":message-type", "event") + string_header(":event-type", event_type)
    return frame(headers, payload)


def test_parse_single_message_reads_headers_and_payload():
    parser = RobustEventStreamParser()
    message = parser.parse_single_message(event_message("completion", b'{"content":"hi"}'))
    assert message.message_type() == "event"
    assert message.event_type() == "completion"
    assert message.payload == b'{"content":"hi"}'
    assert message.content_type() == "application/json"


def test_empty_headers_get_defaults():
    parser = RobustEventStreamParser()
    message = parser.parse_single_message(frame(b"", b"hello"))
    assert message.message_type() == MessageTypes.EVENT
    assert message.event_type() == EventTypes.ASSISTANT_RESPONSE_EVENT
    assert message.payload == b"hello"


def test_too_short_data_raises():
    parser = RobustEventStreamParser()
    with pytest.raises(ParseError):
        parser.parse_single_message(b"\x00" * 8)


def test_length_mismatch_raises():
    parser = RobustEventStreamParser()
    data = event_message("completion", b"{}")
    with pytest.raises(ParseError):
        parser.parse_single_message(data + b"\x00")


def test_header_length_too_large_raises():
    parser = RobustEventStreamParser()
    data = bytearray(frame(b"", b"abcd"))
    data[4:8] = (100).to_bytes(4, "big")
    with pytest.raises(ParseError):
        parser.parse_single_message(bytes(data))


def test_recoverable_header_failure_keeps_parsed_headers():
    parser = RobustEventStreamParser()
    headers = string_header(":event-type", "toolUseEvent") + b"\x00\x00"
    message = parser.parse_single_message(frame(headers, b"{}"))
    assert message.event_type() == "toolUseEvent"
    assert message.message_type() == "event"
    assert message.content_type() == "application/json"


def test_unrecoverable_header_failure_uses_defaults():
    parser = RobustEventStreamParser()
    message = parser.parse_single_message(frame(b"\x00\x00\x00", b"{}"))
    assert message.event_type() == EventTypes.ASSISTANT_RESPONSE_EVENT
    assert message.message_type() == MessageTypes.EVENT


def test_parse_stream_waits_for_whole_message():
    parser = RobustEventStreamParser()
    data = event_message("completion_chunk", b'{"delta":"x"}')
    middle = len(data) // 2
    assert parser.parse_stream(data[:middle]) == []
    messages = parser.parse_stream(data[middle:])
    assert len(messages) == 1
    assert messages[0].event_type() == "completion_chunk"
    assert messages[0].payload == b'{"delta":"x"}'


def test_parse_stream_returns_messages_in_order():
    parser = RobustEventStreamParser()
    data = event_message("session_start", b"{}") + event_message("session_end", b"{}")
    messages = parser.parse_stream(data)
    assert [m.event_type() for m in messages] == ["session_start", "session_end"]
    assert parser.error_count == 0


def test_parse_stream_skips_garbage_and_counts_errors():
    parser = RobustEventStreamParser()
    data = b"\x00" + event_message("completion", b"{}")
    messages = parser.parse_stream(data)
    assert [m.event_type() for m in messages] == ["completion"]
    assert parser.error_count == 1


def test_parse_stream_raises_too_many_errors_with_messages():
    parser = RobustEventStreamParser(max_errors=1)
    data = b"\x00" + event_message("completion", b"{}")
    with pytest.raises(TooManyErrors) as info:
        parser.parse_stream(data)
    assert info.value.error_count == 1
    assert [m.event_type() for m in info.value.messages] == ["completion"]


def test_reset_clears_buffer_and_errors():
    parser = RobustEventStreamParser()
    data = event_message("completion", b"{}")
    parser.parse_stream(b"\x00" + data[:10])
    parser.reset()
    assert parser.error_count == 0
    messages = parser.parse_stream(data)
    assert len(messages) == 1
    assert messages[0].event_type() == "completion"


def test_extract_tool_use_ids_finds_valid_id():
    parser = RobustEventStreamParser()
    payload = '{"toolUseId":"' + VALID_ID + '","name":"x"}'
    assert parser.extract_tool_use_ids(payload) == [VALID_ID]


def test_extract_tool_use_ids_skips_bad_leader_and_corrupt_ids():
    parser = RobustEventStreamParser()
    payload = '{"a":"x' + VALID_ID + '","b":"tooluse_tooluse_abcdefghijkl"}'
    assert parser.extract_tool_use_ids(payload) == []


def test_is_valid_tool_use_id():
    assert is_valid_tool_use_id(VALID_ID) is True
    assert is_valid_tool_use_id("tooluse_short") is False
    assert is_valid_tool_use_id("tooluse_abcdefghij.klmnopq") is False
    assert is_valid_tool_use_id("tooluse_tooluse_abcdefghij") is False
    assert is_valid_tool_use_id("call_abcdefghijklmnopqrstuv") is False