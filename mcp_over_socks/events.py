"""Incremental parser for the text/event-stream wire format."""

from dataclasses import dataclass
from typing import List, Optional

MAX_LINE_SIZE = 10 * 1024 * 1024


@dataclass
class StreamEvent:
    data: str
    event: Optional[str] = None
    id: Optional[str] = None


def _field_value(line: str, prefix: str) -> str:
    value = line[len(prefix):]
    if value.startswith(" "):
        value = value[1:]
    return value


class EventStreamParser:
    """Turns arbitrary text chunks into complete events.

    Chunks may split lines anywhere; a partial line is held back until its
    terminator arrives. Lines end with ``\\n``, ``\\r\\n`` or ``\\r``.
    """

    def __init__(self, max_line_size: int = MAX_LINE_SIZE):
        self.max_line_size = max_line_size
        self._buffer = ""
        self._data: List[str] = []
        self._event: Optional[str] = None
        self._id: Optional[str] = None
        # the previous chunk ended in \r, so a leading \n belongs to it
        self._skip_lf = False

    def feed(self, chunk: str) -> List[StreamEvent]:
        if self._skip_lf and chunk:
            if chunk.startswith("\n"):
                chunk = chunk[1:]
            self._skip_lf = False
        self._buffer += chunk
        events = []

        while True:
            index = self._line_end()
            if index is None:
                break
            line = self._buffer[:index]
            if self._buffer[index] == "\r":
                if index + 1 == len(self._buffer):
                    self._skip_lf = True
                elif self._buffer[index + 1] == "\n":
                    index += 1
            self._buffer = self._buffer[index + 1:]

            event = self.feed_line(line)
            if event is not None:
                events.append(event)

        if len(self._buffer) > self.max_line_size:
            raise ValueError(f"event stream line exceeds {self.max_line_size} bytes")
        return events

    def _line_end(self) -> Optional[int]:
        found = [i for i in (self._buffer.find("\n"), self._buffer.find("\r")) if i != -1]
        return min(found) if found else None

    def feed_line(self, line: str) -> Optional[StreamEvent]:
        if line == "":
            return self._dispatch()

        if line.startswith(":"):
            return None
        if line.startswith("data:"):
            self._data.append(_field_value(line, "data:"))
        elif line.startswith("event:"):
            self._event = _field_value(line, "event:")
        elif line.startswith("id:"):
            self._id = _field_value(line, "id:")
        return None

    def _dispatch(self) -> Optional[StreamEvent]:
        if not self._data:
            self._event = None
            self._id = None
            return None
        event = StreamEvent(data="\n".join(self._data), event=self._event, id=self._id)
        self._data = []
        self._event = None
        self._id = None
        return event


def parse_events(text: str) -> List[StreamEvent]:
    """Parse a complete payload; a trailing unterminated event is discarded."""
    return EventStreamParser().feed(text)
