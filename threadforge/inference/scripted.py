"""
Backends that answer without a remote model.

``ScriptedBackend`` replays fixed increment sequences, one script per call.
A script item is one of:

  - ``ModelIncrement``   yielded as-is
  - ``Exception``        raised at that point of the stream
  - ``Pause``            waits on an asyncio.Event (or sleeps) before continuing

``EchoBackend`` replies with the last user message; it backs the ``echo``
development mode.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Union

from threadforge.inference.base import ModelBackend, ModelIncrement, ModelRequest

logger = logging.getLogger(__name__)


@dataclass
class Pause:
    event: Optional[asyncio.Event] = None
    seconds: float = 0.0

    async def wait(self) -> None:
        if self.event is not None:
            await self.event.wait()
        if self.seconds:
            await asyncio.sleep(self.seconds)


ScriptItem = Union[ModelIncrement, Exception, Pause]


class ScriptedBackend(ModelBackend):

    def __init__(self, *scripts: list[ScriptItem],
                 responder: Optional[Callable[[ModelRequest], list[ScriptItem]]] = None):
        super().__init__()
        if not scripts and responder is None:
            raise ValueError("ScriptedBackend needs at least one script or a responder")
        self._scripts = list(scripts)
        self._responder = responder
        self.requests: list[ModelRequest] = []

    def _script_for(self, request: ModelRequest) -> list[ScriptItem]:
        if self._responder is not None:
            return self._responder(request)
        call_index = len(self.requests) - 1
        # The last script repeats once the list is exhausted
        return self._scripts[min(call_index, len(self._scripts) - 1)]

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelIncrement]:
        self.requests.append(request)
        for item in self._script_for(request):
            if isinstance(item, Pause):
                await item.wait()
            elif isinstance(item, Exception):
                raise item
            else:
                yield item


def _last_user_text(request: ModelRequest) -> str:
    for m in reversed(request.messages):
        if m.get("role") == "user":
            return str(m.get("content") or "")
    return ""


class EchoBackend(ModelBackend):
    """Streams ``echo: <last user message>`` back word by word."""

    def __init__(self, delay: float = 0.0):
        super().__init__()
        self.delay = delay

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelIncrement]:
        text = f"echo: {_last_user_text(request)}"
        yield ModelIncrement.progress(f"{request.model_name} is answering")
        words = text.split(" ")
        for i, word in enumerate(words):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield ModelIncrement.token(word if i == len(words) - 1 else word + " ")
        yield ModelIncrement.done(token_count=len(words))
