"""
StreamSessionManager: the per-thread exclusivity gate and event fan-out.

One session exists per thread while a turn runs on it. ``begin_session`` is an
atomic check-and-set under a single asyncio lock; nothing else reads or writes
the session map. Transports subscribe per thread, independently of any
session, so a socket can stay attached across turns and a reconnecting
client can attach mid-turn (it only sees events published after attaching).
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from threadforge.config import SESSION_SWEEP_INTERVAL, TURN_IDLE_TIMEOUT
from threadforge.errors import Busy, SessionLeak
from threadforge.events import StreamEvent

logger = logging.getLogger(__name__)

ABORTED_REASON = "The turn stopped responding and was aborted."


class TurnStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(eq=False)
class SessionHandle:
    thread_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    outcome: Optional[TurnStatus] = None

    @property
    def closed(self) -> bool:
        return self.outcome is not None

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()


class Subscription:
    """A transport's view of one thread's event stream."""

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        self.queue: asyncio.Queue[StreamEvent] = asyncio.Queue()

    async def get(self, timeout: Optional[float] = None) -> StreamEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class StreamSessionManager:

    def __init__(self, idle_timeout: float = TURN_IDLE_TIMEOUT):
        self.idle_timeout = idle_timeout
        self._lock = asyncio.Lock()
        self._sessions: dict[str, SessionHandle] = {}
        self._subscribers: dict[str, set[Subscription]] = {}

    # ─────────────────────────────────────────────
    # Exclusivity gate
    # ─────────────────────────────────────────────

    async def begin_session(self, thread_id: str) -> SessionHandle:
        """Claim the thread's turn slot or raise Busy. Never queues."""
        async with self._lock:
            if thread_id in self._sessions:
                raise Busy(thread_id)
            handle = SessionHandle(thread_id=thread_id)
            self._sessions[thread_id] = handle
        logger.debug(f"Session {handle.id[:8]} opened on thread {thread_id}")
        return handle

    async def end_session(
        self,
        handle: SessionHandle,
        outcome: TurnStatus,
        final_event: Optional[StreamEvent] = None,
    ) -> bool:
        """Release the thread's slot. Returns False if the handle was already released.

        ``final_event`` is delivered before the slot is freed, so subscribers
        always see a turn's terminal event before any event of the next turn.
        """
        async with self._lock:
            if handle.closed:
                return False
            if final_event is not None:
                self._fan_out(handle, final_event)
            handle.outcome = outcome
            if self._sessions.get(handle.thread_id) is handle:
                del self._sessions[handle.thread_id]
        elapsed = time.monotonic() - handle.started_at
        logger.debug(f"Session {handle.id[:8]} on thread {handle.thread_id} ended: {outcome.value} ({elapsed:.1f}s)")
        return True

    def is_processing(self, thread_id: str) -> bool:
        return thread_id in self._sessions

    def active_threads(self) -> list[str]:
        return list(self._sessions)

    def request_cancel(self, thread_id: str) -> bool:
        """Signal the running turn on ``thread_id`` to stop. False if nothing is running."""
        handle = self._sessions.get(thread_id)
        if handle is None:
            return False
        handle.cancel_event.set()
        logger.info(f"Cancellation requested for thread {thread_id}")
        return True

    # ─────────────────────────────────────────────
    # Fan-out
    # ─────────────────────────────────────────────

    def publish(self, handle: SessionHandle, event: StreamEvent) -> None:
        """Deliver one event to every transport attached to the handle's thread."""
        if handle.closed:
            logger.debug(f"Dropping {event.type.value} event from released session {handle.id[:8]}")
            return
        self._fan_out(handle, event)

    def _fan_out(self, handle: SessionHandle, event: StreamEvent) -> None:
        handle.last_activity = time.monotonic()
        for sub in self._subscribers.get(handle.thread_id, ()):
            sub.queue.put_nowait(event)

    def attach(self, thread_id: str) -> Subscription:
        sub = Subscription(thread_id)
        self._subscribers.setdefault(thread_id, set()).add(sub)
        return sub

    def detach(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.thread_id)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.thread_id]

    def subscriber_count(self, thread_id: str) -> int:
        return len(self._subscribers.get(thread_id, ()))

    # ─────────────────────────────────────────────
    # Stale-session sweep
    # ─────────────────────────────────────────────

    async def sweep(self, now: Optional[float] = None) -> list[str]:
        """Force-release sessions idle for more than twice the turn idle ceiling.

        The executor enforces the ceiling itself, so a session found here is a
        leak: it is logged as CRITICAL, its subscribers get a terminal error
        and the slot is freed.
        """
        now = time.monotonic() if now is None else now
        limit = 2 * self.idle_timeout
        stale = [h for h in list(self._sessions.values()) if now - h.last_activity > limit]
        released = []
        for handle in stale:
            leak = SessionLeak(handle.thread_id, now - handle.last_activity)
            logger.critical(f"Invariant violation: {leak}")
            handle.cancel_event.set()
            if await self.end_session(handle, TurnStatus.FAILED,
                                      StreamEvent.error(ABORTED_REASON)):
                released.append(handle.thread_id)
        return released

    async def run_sweeper(self, interval: float = SESSION_SWEEP_INTERVAL) -> None:
        """Background loop; cancelled on shutdown."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Session sweep failed: {e}")
