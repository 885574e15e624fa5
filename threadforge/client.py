"""
Client-side helpers for talking to a ThreadForge server.

  - RetryPolicy          bounded exponential backoff
  - ThreadSocketClient   WebSocket client (aiohttp) that reconnects with the policy
  - stream_chat          reads the request-scoped SSE stream (httpx)
  - poll_until_stable    detects turn completion without a stream

The server does not replay events missed while disconnected; after a
reconnect, callers re-read history (``on_reconnect`` / ``poll_until_stable``).
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional

import aiohttp
import httpx

from threadforge.errors import Busy, NotFound, TransportError, ValidationError
from threadforge.events import StreamEvent
from threadforge.transports.sse import FrameDecoder

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


def _auth_headers(token: Optional[str]) -> dict:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _raise_for_detail(status: int, body: str) -> None:
    try:
        detail = json.loads(body).get("detail") or {}
    except (ValueError, AttributeError):
        detail = {}
    message = detail.get("message", body) if isinstance(detail, dict) else str(detail)
    if status == 404:
        raise NotFound("resource", message)
    if status == 409:
        raise Busy(message)
    if status == 400:
        raise ValidationError("request", message)
    raise TransportError(f"HTTP {status}: {message}")


# ─────────────────────────────────────────────
# WebSocket client
# ─────────────────────────────────────────────

class ThreadSocketClient:
    """Persistent connection to one thread's bidirectional channel."""

    def __init__(
        self,
        base_url: str,
        thread_id: str,
        token: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        on_reconnect: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.thread_id = thread_id
        self.token = token
        self.policy = policy or RetryPolicy()
        self.on_reconnect = on_reconnect
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._closing = False

    @property
    def url(self) -> str:
        ws_base = self.base_url.replace("https://", "wss://").replace("http://", "ws://")
        return f"{ws_base}/ws/agent-chat?threadId={self.thread_id}"

    async def __aenter__(self) -> "ThreadSocketClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def connect(self) -> None:
        """Open the socket, retrying per the policy. Raises TransportError when exhausted."""
        if self._session is None:
            self._session = aiohttp.ClientSession(headers=_auth_headers(self.token))
        last_error: Optional[Exception] = None
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                self._ws = await self._session.ws_connect(self.url, heartbeat=30)
                logger.info(f"Connected to thread {self.thread_id} (attempt {attempt})")
                return
            except aiohttp.WSServerHandshakeError as e:
                # Rejected (auth / unknown thread): retrying cannot help
                raise TransportError(f"WebSocket handshake rejected: {e.status} {e.message}") from e
            except (aiohttp.ClientError, OSError) as e:
                last_error = e
                if attempt == self.policy.max_attempts:
                    break
                delay = self.policy.delay(attempt)
                logger.warning(f"WebSocket connect failed ({e}); retry {attempt}/{self.policy.max_attempts} in {delay:.1f}s")
                await asyncio.sleep(delay)
        raise TransportError(f"Could not connect to {self.url}: {last_error}")

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _send(self, payload: dict) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("WebSocket is not connected")
        await self._ws.send_json(payload)

    async def send_message(self, content: str) -> None:
        await self._send({"type": "message", "content": content})

    async def cancel(self) -> None:
        await self._send({"type": "cancel"})

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield server events; reconnect transparently after an unexpected drop."""
        while not self._closing:
            if self._ws is None:
                await self.connect()
                if self.on_reconnect is not None:
                    await self.on_reconnect()
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    yield StreamEvent.from_dict(json.loads(msg.data))
                except (ValueError, KeyError, TypeError):
                    logger.debug(f"Ignoring malformed frame: {msg.data[:120]!r}")
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                              aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                if self._closing:
                    return
                logger.warning(f"WebSocket to thread {self.thread_id} dropped ({msg.type.name}); reconnecting")
                self._ws = None

    async def send_and_collect(self, content: str) -> list[StreamEvent]:
        """Start a turn and gather its events up to the terminal one."""
        await self.send_message(content)
        collected = []
        async for event in self.events():
            collected.append(event)
            if event.is_terminal:
                break
        return collected


# ─────────────────────────────────────────────
# SSE reader
# ─────────────────────────────────────────────

async def stream_chat(
    base_url: str,
    thread_id: str,
    content: str,
    token: Optional[str] = None,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[StreamEvent]:
    """POST a message and yield the turn's events until the terminal one.

    Admission failures raise NotFound, Busy or ValidationError before any event.
    """
    decoder = FrameDecoder()
    async with httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout, connect=10.0),
                                 transport=transport) as client:
        async with client.stream(
            "POST", f"/api/threads/{thread_id}/chat-stream",
            json={"content": content}, headers=_auth_headers(token),
        ) as resp:
            if resp.status_code >= 400:
                body = (await resp.aread()).decode("utf-8", errors="replace")
                _raise_for_detail(resp.status_code, body)
            async for chunk in resp.aiter_text():
                for event in decoder.feed(chunk):
                    yield event
                    if event.is_terminal:
                        return
            for event in decoder.flush():
                yield event


# ─────────────────────────────────────────────
# Poll until stable
# ─────────────────────────────────────────────

@dataclass
class PollResult:
    messages: list[dict] = field(default_factory=list)
    stable: bool = False
    polls: int = 0


def history_fingerprint(messages: list[dict]) -> tuple:
    if not messages:
        return (0,)
    last = messages[-1]
    return (len(messages), last.get("id"), len(last.get("content") or ""), last.get("state"))


async def _fetch_history(client: httpx.AsyncClient, thread_id: str, page_size: int = 200) -> list[dict]:
    messages: list[dict] = []
    while True:
        resp = await client.get(f"/api/threads/{thread_id}/messages",
                                params={"limit": page_size, "offset": len(messages)})
        if resp.status_code >= 400:
            _raise_for_detail(resp.status_code, resp.text)
        page = resp.json()
        messages.extend(page)
        if len(page) < page_size:
            return messages


async def poll_until_stable(
    client: httpx.AsyncClient,
    thread_id: str,
    interval: float = 1.0,
    max_polls: int = 60,
    stable_rounds: int = 2,
) -> PollResult:
    """Poll history until it stops changing and the server reports no running turn.

    Gives up after ``max_polls`` rounds with ``stable=False``.
    """
    previous = None
    unchanged = 0
    messages: list[dict] = []
    for poll in range(1, max_polls + 1):
        messages = await _fetch_history(client, thread_id)
        fingerprint = history_fingerprint(messages)
        unchanged = unchanged + 1 if fingerprint == previous else 0
        previous = fingerprint
        if unchanged + 1 >= stable_rounds:
            resp = await client.get(f"/api/threads/{thread_id}/processing")
            if resp.status_code >= 400:
                _raise_for_detail(resp.status_code, resp.text)
            if not resp.json().get("processing"):
                return PollResult(messages=messages, stable=True, polls=poll)
        await asyncio.sleep(interval)
    return PollResult(messages=messages, stable=False, polls=max_polls)

