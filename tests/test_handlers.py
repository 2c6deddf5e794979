import json

import pytest

from kirostream.aggregator import StreamingJSONAggregator
from kirostream.events import (
    EventStreamMessage,
    EventTypes,
    FullAssistantResponseEvent,
    ParseError,
    ToolCall,
    ToolCallFunction,
    ToolCallRequest,
    ToolExecutionStatus,
)
from kirostream.handlers import (
    CompletionChunkEventHandler,
    CompletionEventHandler,
    LegacyToolUseEventHandler,
    SessionEndHandler,
    SessionStartHandler,
    StandardAssistantResponseEventHandler,
    ToolCallErrorHandler,
    ToolCallRequestHandler,
    convert_input_to_string,
    is_streaming_response,
    is_tool_call_event,
)
from kirostream.session import SessionManager
from kirostream.tools import ToolLifecycleManager


def _message(obj):
    if isinstance(obj, (bytes, str)):
        payload = obj.encode("utf-8") if isinstance(obj, str) else obj
    else:
        payload = json.dumps(obj, ensure_ascii=False).encode("utf-8")
    return EventStreamMessage(payload=payload)


def _tool_event(name, tool_use_id, tool_input, stop):
    return _message({"name": name, "toolUseId": tool_use_id, "input": tool_input, "stop": stop})


@pytest.fixture
def legacy():
    manager = ToolLifecycleManager()
    aggregator = StreamingJSONAggregator(
        lambda tool_use_id, params: manager.update_tool_arguments_from_json(tool_use_id, params)
    )
    return manager, aggregator, LegacyToolUseEventHandler(manager, aggregator)


def test_legacy_one_shot_complete_data(legacy):
    manager, _, handler = legacy
    tool_input = {
        "query": "测试查询",
        "maxResults": 10,
        "filters": {"category": "技术", "language": "zh-CN"},
    }
    events = handler.handle(_tool_event("search_database", "test-tool-001", tool_input, True))
    assert events

    active = manager.active_tools()
    assert "test-tool-001" in active
    tool = active["test-tool-001"]
    assert tool.name == "search_database"
    assert tool.arguments["query"] == "测试查询"
    assert tool.arguments["maxResults"] == 10
    assert tool.arguments["filters"] == {"category": "技术", "language": "zh-CN"}


def test_legacy_streaming_fragments(legacy):
    manager, _, handler = legacy
    tool_id = "test-tool-002"
    events1 = handler.handle(_tool_event("write_file", tool_id, {}, False))
    assert events1

    events2 = handler.handle(_tool_event("write_file", tool_id, '{"path":"/tmp/test.txt","con', False))
    assert [e.event for e in events2] == ["content_block_delta"]
    assert events2[0].data["index"] == 1
    assert events2[0].data["delta"]["partial_json"] == '{"path":"/tmp/test.txt","con'

    handler.handle(_tool_event("write_file", tool_id, 'tent":"测试内容"}', True))
    completed = manager.completed_tools()
    assert tool_id in completed
    assert completed[tool_id].name == "write_file"
    assert completed[tool_id].status is ToolExecutionStatus.COMPLETED


def test_legacy_empty_parameters(legacy):
    manager, _, handler = legacy
    events = handler.handle(_tool_event("get_current_time", "test-tool-003", {}, True))
    assert events
    active = manager.active_tools()
    assert "test-tool-003" in active
    assert active["test-tool-003"].name == "get_current_time"
    assert active["test-tool-003"].arguments == {}


def test_legacy_memory_leak_prevention(legacy):
    manager, aggregator, handler = legacy
    tool_id = "test-tool-leak"
    handler.handle(_tool_event("test_tool", tool_id, {}, False))
    handler.handle(_tool_event("test_tool", tool_id, '{"initial":"data"', False))
    assert aggregator.is_streaming(tool_id)

    events = handler.handle(_tool_event("test_tool", tool_id, "}", True))
    assert not aggregator.is_streaming(tool_id)
    assert [e.event for e in events] == ["content_block_stop"]
    assert tool_id in manager.completed_tools()


def test_legacy_stop_with_aggregated_arguments(legacy):
    manager, _, handler = legacy
    tool_id = "test-tool-args"
    handler.handle(_tool_event("read", tool_id, {}, False))
    handler.handle(_tool_event("read", tool_id, '{"file":"a.txt"}', False))
    handler.handle(_tool_event("read", tool_id, None, True))
    assert manager.completed_tools()[tool_id].arguments == {"file": "a.txt"}


def test_legacy_skips_event_without_name_and_id(legacy):
    manager, _, handler = legacy
    assert handler.handle(_tool_event("", "", {"a": 1}, True)) == []
    assert manager.active_tools() == {}


def test_legacy_invalid_json_returns_nothing(legacy):
    manager, _, handler = legacy
    assert handler.handle(_message(b"{not json")) == []
    assert manager.active_tools() == {}


def test_legacy_empty_fragment_for_active_tool(legacy):
    _, _, handler = legacy
    handler.handle(_tool_event("t", "test-tool-005", {}, False))
    assert handler.handle(_tool_event("t", "test-tool-005", {}, False)) == []


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, "{}"),
        ('{"key":"value"}', '{"key":"value"}'),
        ({}, "{}"),
        ({"query": "测试", "limit": 10}, '{"limit":10,"query":"测试"}'),
    ],
)
def test_convert_input_to_string(value, expected):
    assert convert_input_to_string(value) == expected


def test_convert_input_to_string_unserializable():
    assert convert_input_to_string({"x": object()}) == "{}"


@pytest.mark.parametrize(
    "payload, expected",
    [
        (b'{"toolUseId":"x"}', True),
        (b'{"tool_use_id":"x"}', True),
        (b'{"name":"n","input":{}}', True),
        (b'{"name":"n"}', False),
        (b'{"content":"hello"}', False),
    ],
)
def test_is_tool_call_event(payload, expected):
    assert is_tool_call_event(payload) is expected


def test_is_streaming_response():
    assert is_streaming_response(None) is False
    assert is_streaming_response(FullAssistantResponseEvent(content="x")) is True
    assert is_streaming_response(FullAssistantResponseEvent(message_status="IN_PROGRESS")) is True
    assert is_streaming_response(FullAssistantResponseEvent(message_status="COMPLETED")) is False


def test_completion_handler():
    payload = {
        "content": "done",
        "finish_reason": "stop",
        "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}],
    }
    events = CompletionEventHandler().handle(_message(payload))
    assert len(events) == 1
    data = events[0].data
    assert events[0].event == "completion"
    assert data["content"] == "done"
    assert data["finish_reason"] == "stop"
    assert data["tool_calls"] == [
        ToolCall(id="c1", type="function", function=ToolCallFunction(name="f", arguments="{}"))
    ]


def test_completion_handler_rejects_bad_json():
    with pytest.raises(ParseError):
        CompletionEventHandler().handle(_message(b"oops"))


def test_completion_chunk_handler_buffers_content():
    buffer = []
    handler = CompletionChunkEventHandler(buffer)
    first = handler.handle(_message({"content": "Hel"}))
    second = handler.handle(_message({"content": "lo", "delta": "LO", "finish_reason": "end"}))
    assert buffer == ["Hel", "lo"]
    assert first[0].data["delta"]["text"] == "Hel"
    assert second[0].data["delta"]["text"] == "LO"
    assert second[1].event == "content_block_stop"
    assert second[1].data["finish_reason"] == "end"


def test_tool_call_request_handler():
    manager = ToolLifecycleManager()
    events = ToolCallRequestHandler(manager).handle(
        _message({"toolCallId": "call-1", "toolName": "search", "input": {"q": "x"}})
    )
    assert [e.event for e in events] == ["content_block_delta", "content_block_start", "content_block_delta"]
    assert events[2].data["delta"]["partial_json"] == '{"q":"x"}'
    assert manager.active_tools()["call-1"].arguments == {"q": "x"}


def test_tool_call_error_handler():
    manager = ToolLifecycleManager()
    manager.handle_tool_call_request(
        ToolCallRequest(tool_calls=[ToolCall(id="call-2", type="function", function=ToolCallFunction("f", "{}"))])
    )
    events = ToolCallErrorHandler(manager).handle(_message({"tool_call_id": "call-2", "error": "boom"}))
    assert [e.event for e in events] == ["error", "content_block_stop"]
    assert events[0].data["error"]["message"] == "boom"
    assert manager.completed_tools()["call-2"].status is ToolExecutionStatus.ERROR


def test_tool_call_error_handler_rejects_wrong_type():
    with pytest.raises(ParseError):
        ToolCallErrorHandler(ToolLifecycleManager()).handle(_message({"tool_call_id": 5}))


def test_session_start_handler_sets_id():
    session = SessionManager()
    events = SessionStartHandler(session).handle(_message({"session_id": "sess-1"}))
    assert session.session_id == "sess-1"
    assert session.is_active is True
    assert events[0].event == EventTypes.SESSION_START
    assert events[0].data == {"session_id": "sess-1"}


def test_session_end_handler():
    session = SessionManager()
    session.start_session()
    events = SessionEndHandler(session).handle(_message({"reason": "done"}))
    assert [e.event for e in events] == [EventTypes.SESSION_END, EventTypes.SESSION_END]
    assert events[0].data == {"reason": "done"}
    assert events[1].data["duration"] >= 0
    assert session.is_active is False


def test_assistant_handler_streaming_content():
    handler = StandardAssistantResponseEventHandler(ToolLifecycleManager())
    events = handler.handle(_message({"content": "hi there"}))
    assert len(events) == 1
    assert events[0].data["delta"]["text"] == "hi there"


def test_assistant_handler_full_without_content():
    handler = StandardAssistantResponseEventHandler(ToolLifecycleManager())
    assert handler.handle(_message({"conversationId": "conv-1", "messageStatus": "COMPLETED"})) == []


def test_assistant_handler_plain_text_legacy():
    handler = StandardAssistantResponseEventHandler(ToolLifecycleManager())
    events = handler.handle(_message(b"  plain words  "))
    assert events[0].data["delta"]["text"] == "plain words"


def test_assistant_handler_legacy_json_fallback():
    handler = StandardAssistantResponseEventHandler(ToolLifecycleManager())
    events = handler.handle(_message({"content": "hi", "messageStatus": 5}))
    assert [e.data["delta"]["text"] for e in events] == ["hi"]


def test_assistant_handler_broken_json():
    handler = StandardAssistantResponseEventHandler(ToolLifecycleManager())
    assert handler.handle(_message(b"{broken")) == []


def test_assistant_handler_tool_call():
    manager = ToolLifecycleManager()
    handler = StandardAssistantResponseEventHandler(manager)
    events = handler.handle(_message({"name": "ls", "toolUseId": "tooluse_abc", "input": {"dir": "/"}}))
    assert "content_block_start" in [e.event for e in events]
    assert manager.active_tools()["tooluse_abc"].arguments == {"dir": "/"}