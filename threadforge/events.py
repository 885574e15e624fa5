"""
Typed events emitted by a running turn.

The event union is closed: progress | thinking | token | response | done | error.
Every event carries a ``content`` string (empty for ``done`` when there is
nothing to report).
"""
from dataclasses import dataclass
from enum import Enum


class EventType(str, Enum):
    PROGRESS = "progress"
    THINKING = "thinking"
    TOKEN = "token"
    RESPONSE = "response"
    DONE = "done"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.DONE, EventType.ERROR})


@dataclass(frozen=True)
class StreamEvent:
    type: EventType
    content: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict:
        return {"type": self.type.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> "StreamEvent":
        """Build an event from a decoded wire payload; raises ValueError on unknown types."""
        content = data.get("content")
        return cls(EventType(data["type"]), "" if content is None else str(content))

    @classmethod
    def progress(cls, content: str) -> "StreamEvent":
        return cls(EventType.PROGRESS, content)

    @classmethod
    def thinking(cls, content: str) -> "StreamEvent":
        return cls(EventType.THINKING, content)

    @classmethod
    def token(cls, content: str) -> "StreamEvent":
        return cls(EventType.TOKEN, content)

    @classmethod
    def response(cls, content: str) -> "StreamEvent":
        return cls(EventType.RESPONSE, content)

    @classmethod
    def done(cls, content: str = "") -> "StreamEvent":
        return cls(EventType.DONE, content)

    @classmethod
    def error(cls, content: str) -> "StreamEvent":
        return cls(EventType.ERROR, content)
