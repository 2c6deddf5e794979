"""Tracking of a single streaming session."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from kirostream.events import EventTypes, SessionInfo, SSEEvent


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _rfc3339(moment: datetime) -> str:
    text = moment.isoformat(timespec="seconds")
    return text[:-6] + "Z" if text.endswith("+00:00") else text


class SessionManager:
    """Holds the id, timing and activity of a session."""

    def __init__(self) -> None:
        self.session_id = str(uuid.uuid4())
        self.start_time = _now()
        self.end_time: datetime | None = None
        self.is_active = False

    def start_session(self) -> list[SSEEvent]:
        """Mark the session active and return its start event."""
        self.is_active = True
        self.start_time = _now()
        return [
            SSEEvent(
                event=EventTypes.SESSION_START,
                data={
                    "type": EventTypes.SESSION_START,
                    "session_id": self.session_id,
                    "timestamp": _rfc3339(self.start_time),
                },
            )
        ]

    def end_session(self) -> list[SSEEvent]:
        """Mark the session ended and return its end event with duration in ms."""
        now = _now()
        self.end_time = now
        self.is_active = False
        return [
            SSEEvent(
                event=EventTypes.SESSION_END,
                data={
                    "type": EventTypes.SESSION_END,
                    "session_id": self.session_id,
                    "timestamp": _rfc3339(now),
                    "duration": (now - self.start_time) // timedelta(milliseconds=1),
                },
            )
        ]

    def session_info(self) -> SessionInfo:
        """A snapshot of the session's id and timing."""
        return SessionInfo(session_id=self.session_id, start_time=self.start_time, end_time=self.end_time)

    def reset(self) -> None:
        """Start over with a fresh id and an inactive session."""
        self.session_id = str(uuid.uuid4())
        self.start_time = _now()
        self.end_time = None
        self.is_active = False