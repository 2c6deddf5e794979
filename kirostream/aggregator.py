"""Aggregation of streamed tool-call JSON fragments."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

ToolParamsCallback = Callable[[str, str], None]


def _lead_width(byte: int) -> int:
    """Length of the UTF-8 sequence started by ``byte``; 0 for non-lead bytes."""
    if byte & 0xE0 == 0xC0:
        return 2
    if byte & 0xF0 == 0xE0:
        return 3
    if byte & 0xF8 == 0xF0:
        return 4
    return 0


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant {name}")


@dataclass
class _JSONStreamer:
    tool_use_id: str
    tool_name: str
    buffer: bytearray = field(default_factory=bytearray)
    incomplete_utf8: bytes = b""
    fragment_count: int = 0
    total_bytes: int = 0
    has_valid_json: bool = False
    result: dict[str, Any] | None = field(default_factory=dict)

    def append_fragment(self, fragment: bytes) -> None:
        self.buffer += self._ensure_utf8_integrity(fragment)
        self.fragment_count += 1
        self.total_bytes += len(fragment)

    def _ensure_utf8_integrity(self, fragment: bytes) -> bytes:
        """Hold back a truncated trailing UTF-8 sequence until the next fragment."""
        n = len(fragment)
        if n == 0:
            return fragment
        for i in range(n - 1, max(n - 5, -1), -1):
            byte = fragment[i]
            if byte & 0x80 == 0:
                break
            width = _lead_width(byte)
            if width:
                if n - i < width:
                    self.incomplete_utf8 = fragment[i:]
                    return fragment[:i]
                break
        if self.incomplete_utf8:
            combined = self.incomplete_utf8 + fragment
            self.incomplete_utf8 = b""
            return self._ensure_utf8_integrity(combined)
        return fragment

    def try_parse(self) -> str:
        if not self.buffer:
            return "empty"
        text = bytes(self.buffer).decode("utf-8", errors="replace")
        stripped = text.strip()
        if stripped in ("{}", "[]"):
            self.result = {} if stripped == "{}" else None
            self.has_valid_json = True
            return "complete"
        try:
            parsed = json.loads(text, parse_constant=_reject_constant)
        except ValueError:
            return "invalid"
        if parsed is not None and not isinstance(parsed, dict):
            return "invalid"
        self.result = parsed
        self.has_valid_json = True
        return "complete"


class StreamingJSONAggregator:
    """Collects tool input fragments per tool call and parses them on stop."""

    def __init__(self, callback: ToolParamsCallback | None = None) -> None:
        self._streamers: dict[str, _JSONStreamer] = {}
        self._lock = threading.Lock()
        self._callback = callback

    def process_tool_data(
        self,
        tool_use_id: str,
        name: str,
        input: str | bytes,
        stop: bool,
        fragment_index: int = -1,
    ) -> tuple[bool, str]:
        """Add a fragment; on stop return ``(True, full_json)``, else ``(False, "")``."""
        with self._lock:
            streamer = self._streamers.get(tool_use_id)
            if streamer is None:
                streamer = _JSONStreamer(tool_use_id=tool_use_id, tool_name=name)
                self._streamers[tool_use_id] = streamer
                logger.debug("created JSON streamer for %s (%s)", tool_use_id, name)

            if input:
                fragment = input.encode("utf-8") if isinstance(input, str) else bytes(input)
                streamer.append_fragment(fragment)

            if not stop:
                return False, ""

            status = streamer.try_parse()
            if streamer.has_valid_json and streamer.result is not None:
                full_input = json.dumps(
                    streamer.result, ensure_ascii=False, separators=(",", ":"), sort_keys=True
                )
            else:
                if streamer.fragment_count == 0 and streamer.total_bytes == 0:
                    logger.debug("tool %s has no arguments", streamer.tool_name)
                else:
                    logger.error(
                        "tool %s (%s): no valid JSON after %d fragments (%s): %r",
                        streamer.tool_name,
                        tool_use_id,
                        streamer.fragment_count,
                        status,
                        bytes(streamer.buffer),
                    )
                full_input = "{}"

            del self._streamers[tool_use_id]

        if self._callback is not None:
            self._callback(tool_use_id, full_input)
        return True, full_input

    def is_streaming(self, tool_use_id: str) -> bool:
        """Whether fragments are currently being collected for ``tool_use_id``."""
        with self._lock:
            return tool_use_id in self._streamers