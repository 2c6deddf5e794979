# kirostream

`kirostream` decodes binary event streams. Each message in the stream is a
length-prefixed frame: a 12-byte prelude (total length, header length and a
prelude checksum), a block of typed headers, a payload, and a 4-byte trailing
checksum. The checksums are not verified.

The package turns these messages into Server-Sent Event structures in the
Anthropic style, such as `content_block_start`, `content_block_delta` and
`content_block_stop`. It also tracks the lifecycle of tool calls. Streamed
tool-argument fragments are joined back into complete JSON. It uses only the
standard library.

## Installation

```
pip install kirostream
```

## Parsing a complete response

```python
from kirostream.stream_parser import CompliantEventStreamParser


def frame(event_type: str, payload: bytes) -> bytes:
    name = b":event-type"
    value = event_type.encode()
    headers = bytes([len(name)]) + name + bytes([7]) + len(value).to_bytes(2, "big") + value
    total = 12 + len(headers) + len(payload) + 4
    return (
        total.to_bytes(4, "big")
        + len(headers).to_bytes(4, "big")
        + b"\0" * 4
        + headers
        + payload
        + b"\0" * 4
    )


raw = frame("assistantResponseEvent", b'{"content": "Hello"}')

parser = CompliantEventStreamParser()
result = parser.parse_response(raw)

print(result.completion_text())           # Hello
for tool in result.tool_calls():          # completed tools, then active ones
    print(tool.id, tool.name, tool.arguments)

print(result.summary.total_messages, result.summary.has_completions)
print(result.errors)                      # ParseError per message that failed
```

`ParseResult` holds these fields:

- `messages`, `events`, `tool_executions` (completed tools) and
  `active_tools`.
- `session_info`, a `SessionInfo`.
- `summary`, a `ParseSummary` with message and event type counts, flags and a
  tool summary.
- `errors`.

## Incremental parsing

You can feed chunks as they arrive. An incomplete frame stays buffered until
the rest of its bytes come in.

```python
parser = CompliantEventStreamParser()
for chunk in chunks:
    for event in parser.parse_stream(chunk):
        print(event.event, event.data)
```

`CompliantEventStreamParser(max_errors=10)` sets the error limit of the framer.
When the limit is reached, the messages decoded so far are still processed.
`reset()` clears buffered bytes, error counts, tools and session state.

## Event types handled

The `:event-type` header selects the handler:

- `assistantResponseEvent` produces text content blocks. If the payload looks
  like a tool call, it registers a tool call instead.
- `toolUseEvent` registers a tool on its first event. Later events produce
  `input_json_delta` deltas and collect the input fragments. On `stop`, the
  fragments are parsed and the tool's block is closed.
- `completion` and `completion_chunk` produce a completion event and text
  deltas.
- `tool_call_request` and `tool_call_error` register a tool, or fail it with an
  `error` event.
- `session_start` and `session_end` update the session.

Messages whose `:message-type` is `error` or `exception` become `error` or
`exception` events. Unknown event types produce no events.

## Lower-level pieces

- `kirostream.framing.RobustEventStreamParser` splits bytes into
  `EventStreamMessage` frames. If a frame has an invalid total length, it skips
  one byte and tries again. It raises `TooManyErrors`, which carries the
  messages decoded so far, once the error count reaches `max_errors`.
  `is_valid_tool_use_id` checks `tooluse_` identifiers.
- `kirostream.headers.HeaderParser` decodes the typed header block. Its state
  is kept between calls, so a header block split across chunks can be resumed.
  Missing key headers can be filled in with `force_complete_header_parsing`.
- `kirostream.processor.CompliantMessageProcessor` routes each message to its
  handler. `completion_text()` returns the collected completion chunk content.
- `kirostream.tools.ToolLifecycleManager` assigns content block indices to
  tool calls, starting at 1; index 0 is the text block. It records active and
  completed executions and produces a summary.
- `kirostream.aggregator.StreamingJSONAggregator` joins argument fragments. It
  holds back a UTF-8 character split across fragments and parses the buffer
  when the stop signal arrives.
- `kirostream.session.SessionManager` tracks the session id and timing.

Diagnostics go through the standard `logging` module, under the module names
above.

## What it does not do

`kirostream` only decodes bytes you give it. It does not open network
connections. It does not send requests upstream, and it does not serve or
write SSE responses over HTTP. It provides no command-line tool and no
server. The `SSEEvent` values it returns are plain data for your own code to
send.

## Running the tests

```
pip install -e ".[test]"
pytest
```