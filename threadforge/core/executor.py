"""
TurnExecutor: drives one conversational turn on one thread.

    begin_turn  validate -> claim the thread's session -> persist the user message
    run         build model input -> stream increments -> persist -> end session

Every increment is forwarded to the session manager as soon as it arrives.
Progress increments are stored as ``tool`` messages (tool_name ``progress``);
thinking text is stored in a single ``tool`` message (tool_name ``thinking``)
that is created on the first chunk and grown in place while the turn runs.
The assistant reply is appended exactly once, when the turn ends:

    completed  full text (a ``response`` snapshot replaces streamed tokens)
    cancelled  accumulated token text, state ``partial``, only if non-empty
    failed     nothing; the user message stays so re-sending is safe
"""
import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import aiosqlite

from threadforge.config import (
    MEMORY_WINDOW_SIZE,
    MODEL_BACKOFF_BASE,
    MODEL_MAX_RETRIES,
    MODEL_REQUEST_TIMEOUT,
    SUB_AGENT_MEMORY_WINDOW,
    SUB_AGENT_WAIT_TIMEOUT,
    TURN_IDLE_TIMEOUT,
)
from threadforge.core.sessions import ABORTED_REASON, SessionHandle, StreamSessionManager, TurnStatus
from threadforge.db import crud
from threadforge.db.models import Agent, Message
from threadforge.errors import (
    DelegationRefused,
    ModelFailure,
    ThreadForgeError,
    TurnTimeout,
    ValidationError,
)
from threadforge.events import StreamEvent
from threadforge.inference.base import (
    IncrementKind,
    ModelIncrement,
    ModelRequest,
    classify_failure,
    is_rate_limit_text,
)
from threadforge.inference.registry import BackendRegistry

logger = logging.getLogger(__name__)

LEAD_SYSTEM_PROMPT = (
    "You are the lead game designer coordinating a small design team. Answer the user "
    "directly when you can. For larger pieces of work, hand self-contained tasks to "
    "specialised sub-agents with the delegate_task tool and summarise what you dispatched."
)

RATE_LIMITED_REASON = "The model is rate limited right now. Please retry in a moment."
GENERIC_FAILURE_REASON = "The model failed to produce a reply. Please try again."


class TurnCancelled(Exception):
    """Raised inside a turn when its cancel signal is observed."""


@dataclass(eq=False)
class Turn:
    owner_id: str
    agent: Agent
    thread_id: str
    content: str
    handle: SessionHandle
    user_message: Message
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: TurnStatus = TurnStatus.PENDING
    text: str = ""
    thinking: str = ""
    thinking_message_id: Optional[str] = None
    tokens_forwarded: bool = False
    token_count: int = 0
    attempts: int = 0
    assistant_message: Optional[Message] = None
    failure: Optional[ThreadForgeError] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in (TurnStatus.COMPLETED, TurnStatus.FAILED, TurnStatus.CANCELLED)


class TurnExecutor:

    def __init__(
        self,
        db: aiosqlite.Connection,
        sessions: StreamSessionManager,
        backends: BackendRegistry,
        spawner=None,
        idle_timeout: float = TURN_IDLE_TIMEOUT,
        max_retries: int = MODEL_MAX_RETRIES,
        backoff_base: float = MODEL_BACKOFF_BASE,
        memory_window: int = MEMORY_WINDOW_SIZE,
        sub_agent_memory_window: int = SUB_AGENT_MEMORY_WINDOW,
        delegation_wait_timeout: float = SUB_AGENT_WAIT_TIMEOUT,
    ):
        self.db = db
        self.sessions = sessions
        self.backends = backends
        self.spawner = spawner
        self.idle_timeout = idle_timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.memory_window = memory_window
        self.sub_agent_memory_window = sub_agent_memory_window
        self.delegation_wait_timeout = delegation_wait_timeout
        self._tasks: set[asyncio.Task] = set()

    # ─────────────────────────────────────────────
    # Admission
    # ─────────────────────────────────────────────

    async def begin_turn(self, owner_id: str, thread_id: str, content: str) -> Turn:
        """Admit a turn: NotFound / ValidationError / Busy surface here, before anything runs."""
        if not isinstance(content, str):
            raise ValidationError("content", "must be a string")
        if not content.strip():
            raise ValidationError("content", "message content must not be empty")
        agent = await crud.thread_agent(self.db, thread_id, owner_id=owner_id)
        if not agent.is_active:
            raise ValidationError("thread_id", f"agent '{agent.name}' is inactive; its thread is read-only")

        handle = await self.sessions.begin_session(thread_id)
        try:
            user_message = await crud.msg_append(self.db, thread_id, "user", content)
        except BaseException:
            await self.sessions.end_session(handle, TurnStatus.FAILED)
            raise
        turn = Turn(owner_id=owner_id, agent=agent, thread_id=thread_id, content=content,
                    handle=handle, user_message=user_message)
        logger.info(f"Turn {turn.id} admitted on thread {thread_id} (agent {agent.name})")
        return turn

    def launch(self, turn: Turn) -> asyncio.Task:
        """Run ``turn`` in the background; it outlives whichever transport started it."""
        task = asyncio.create_task(self.run(turn), name=f"turn-{turn.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def chat(self, owner_id: str, thread_id: str, content: str) -> Turn:
        """Send a message and wait for the final outcome, without intermediate events."""
        turn = await self.begin_turn(owner_id, thread_id, content)
        return await self.run(turn)

    @property
    def running_count(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.wait(list(self._tasks))

    # ─────────────────────────────────────────────
    # Execution
    # ─────────────────────────────────────────────

    async def run(self, turn: Turn) -> Turn:
        """Drive ``turn`` to a terminal state. Outcomes are recorded on the turn, not raised."""
        turn.status = TurnStatus.RUNNING
        try:
            request = await self._build_request(turn)
            await self._drive(turn, request)
            await self._complete(turn)
        except TurnCancelled:
            await self._cancel(turn)
        except (ModelFailure, TurnTimeout) as e:
            await self._fail(turn, e)
        except asyncio.CancelledError:
            await self._cancel(turn)
            raise
        except Exception as e:
            logger.exception(f"Turn {turn.id} crashed")
            await self._fail(turn, ModelFailure(f"{type(e).__name__}: {e}"))
        finally:
            if not turn.handle.closed:
                await self.sessions.end_session(turn.handle, turn.status if turn.finished else TurnStatus.FAILED)
            if self.spawner is not None and not turn.agent.is_sub_agent:
                self.spawner.conclude(turn.thread_id)
        return turn

    async def _build_request(self, turn: Turn) -> ModelRequest:
        agent = turn.agent
        window = self.sub_agent_memory_window if agent.is_sub_agent else self.memory_window
        # +1: the newest entry is this turn's user message
        dialogue = await crud.msg_recent_dialogue(self.db, turn.thread_id, window + 1)
        system_prompt = agent.system_prompt or LEAD_SYSTEM_PROMPT
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": m.role, "content": m.content} for m in dialogue)
        return ModelRequest(
            provider=agent.provider,
            model_name=agent.model_name,
            messages=messages,
            allow_delegation=self.spawner is not None and not agent.is_sub_agent,
            timeout=MODEL_REQUEST_TIMEOUT,
        )

    async def _drive(self, turn: Turn, request: ModelRequest) -> None:
        backend = self.backends.get(turn.agent.provider)
        while True:
            turn.attempts += 1
            try:
                await self._consume(turn, backend.stream(request))
                return
            except ModelFailure as e:
                retry_no = turn.attempts
                if not e.retryable or turn.tokens_forwarded or retry_no > self.max_retries:
                    raise
                delay = (2 ** (retry_no - 1)) * self.backoff_base + random.uniform(0.3, 1.2)
                logger.warning(
                    f"Turn {turn.id}: retryable model failure ({e.reason}); "
                    f"retry {retry_no}/{self.max_retries} in {delay:.1f}s"
                )
                await self._progress(turn, f"Model unavailable, retrying ({retry_no}/{self.max_retries})")
                await self._pause(turn, delay)

    async def _pause(self, turn: Turn, seconds: float) -> None:
        """Sleep between attempts; a cancel signal cuts the wait short."""
        try:
            await asyncio.wait_for(turn.handle.cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise TurnCancelled()

    async def _consume(self, turn: Turn, stream: AsyncIterator[ModelIncrement]) -> None:
        """Forward increments until a terminal one, the cancel signal, or the idle ceiling."""
        increments = stream.__aiter__()
        cancel_wait = asyncio.ensure_future(turn.handle.cancel_event.wait())
        next_inc = None
        try:
            while True:
                if turn.handle.cancel_requested:
                    raise TurnCancelled()
                next_inc = asyncio.ensure_future(increments.__anext__())
                done, _ = await asyncio.wait(
                    {next_inc, cancel_wait},
                    timeout=self.idle_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_inc not in done:
                    next_inc.cancel()
                    await asyncio.wait({next_inc})
                    if cancel_wait in done:
                        raise TurnCancelled()
                    raise TurnTimeout(self.idle_timeout)
                try:
                    inc = next_inc.result()
                except StopAsyncIteration:
                    # Stream closed without a terminal increment: treat as done
                    return
                except ModelFailure:
                    raise
                except Exception as e:
                    raise classify_failure(e) from e
                if await self._apply(turn, inc):
                    return
        finally:
            cancel_wait.cancel()
            if next_inc is not None and not next_inc.done():
                next_inc.cancel()
                await asyncio.wait({next_inc})
            aclose = getattr(increments, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _apply(self, turn: Turn, inc: ModelIncrement) -> bool:
        """Handle one increment. Returns True for the terminal ``done``."""
        kind = inc.kind
        logger.debug(f"Turn {turn.id}: {kind.value} {inc.content[:60]!r}")
        if kind is IncrementKind.PROGRESS:
            await self._progress(turn, inc.content)
        elif kind is IncrementKind.THINKING:
            await self._thinking(turn, inc.content)
        elif kind is IncrementKind.TOKEN:
            turn.text += inc.content
            turn.tokens_forwarded = True
            self.sessions.publish(turn.handle, StreamEvent.token(inc.content))
        elif kind is IncrementKind.RESPONSE:
            # Whole-content snapshot: authoritative over streamed deltas
            turn.text = inc.content
            turn.tokens_forwarded = True
            self.sessions.publish(turn.handle, StreamEvent.response(inc.content))
        elif kind is IncrementKind.DELEGATE:
            await self._delegate(turn, inc)
        elif kind is IncrementKind.DONE:
            turn.token_count = inc.token_count
            return True
        elif kind is IncrementKind.ERROR:
            limited = is_rate_limit_text(inc.content)
            raise ModelFailure(inc.content or "model reported an error", retryable=limited, rate_limited=limited)
        else:
            raise ValueError(f"Unhandled increment kind: {kind!r}")
        return False

    async def _progress(self, turn: Turn, content: str) -> None:
        self.sessions.publish(turn.handle, StreamEvent.progress(content))
        if turn.handle.closed:
            return
        await crud.msg_append(self.db, turn.thread_id, "tool", content, tool_name="progress")

    async def _thinking(self, turn: Turn, chunk: str) -> None:
        turn.thinking += chunk
        self.sessions.publish(turn.handle, StreamEvent.thinking(chunk))
        if turn.handle.closed:
            return
        if turn.thinking_message_id is None:
            msg = await crud.msg_append(self.db, turn.thread_id, "tool", turn.thinking,
                                        tool_name="thinking", state="streaming")
            turn.thinking_message_id = msg.id
        else:
            await crud.msg_append_content(self.db, turn.thinking_message_id, chunk)

    async def _finish_thinking(self, turn: Turn, state: str) -> None:
        if turn.thinking_message_id is not None:
            await crud.msg_finalize(self.db, turn.thinking_message_id, state)
            turn.thinking_message_id = None

    async def _delegate(self, turn: Turn, inc: ModelIncrement) -> None:
        if self.spawner is None:
            await self._progress(turn, "Delegation is not available on this server")
            return
        try:
            delegation = await self.spawner.spawn(turn.owner_id, turn.thread_id, inc.type_tag, inc.content)
        except DelegationRefused:
            logger.warning(f"Turn {turn.id}: sub-agent {turn.agent.name} tried to delegate further")
            await self._progress(turn, "Sub-agents cannot delegate further; continuing without delegation")
            return
        except ValidationError as e:
            await self._progress(turn, f"Delegation rejected: {e.reason}")
            return
        label = delegation.agent.display_name
        await self._progress(turn, f"Delegating to {label} ({delegation.agent.name})")
        if not inc.wait:
            return

        await self._progress(turn, f"Waiting for {label} (up to {self.delegation_wait_timeout:g}s)")
        cancel_wait = asyncio.ensure_future(turn.handle.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {delegation.task, cancel_wait},
                timeout=self.delegation_wait_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()
        if delegation.task not in done and cancel_wait in done:
            # The sub-turn keeps running; its result is reported on its own thread
            raise TurnCancelled()
        if not done:
            await self._progress(turn, f"{label} is still working")
            return
        result = delegation.outcome()
        if result.ok:
            await self._progress(turn, f"{label} finished: {result.content[:200]}")
        else:
            await self._progress(turn, f"{label} failed: {result.content}")

    # ─────────────────────────────────────────────
    # Terminal transitions
    # ─────────────────────────────────────────────

    async def _complete(self, turn: Turn) -> None:
        if turn.handle.closed:
            await self._abandon(turn)
            return
        text = turn.text
        if not text.strip():
            pending = self.spawner.pending_count(turn.thread_id) if self.spawner is not None else 0
            if not pending:
                raise ModelFailure("model returned an empty reply")
            text = (
                f"{pending} sub-agent task{'s' if pending != 1 else ''} dispatched. "
                "Their replies will appear in the team threads."
            )
        await self._finish_thinking(turn, "complete")
        turn.assistant_message = await crud.msg_append(
            self.db, turn.thread_id, "assistant", text, token_count=turn.token_count
        )
        turn.status = TurnStatus.COMPLETED
        await self.sessions.end_session(turn.handle, TurnStatus.COMPLETED, StreamEvent.done(text))
        logger.info(f"Turn {turn.id} completed on thread {turn.thread_id} ({len(text)} chars)")

    async def _cancel(self, turn: Turn) -> None:
        if turn.handle.closed:
            await self._abandon(turn)
            return
        turn.status = TurnStatus.CANCELLED
        await self._finish_thinking(turn, "partial")
        if turn.text:
            turn.assistant_message = await crud.msg_append(
                self.db, turn.thread_id, "assistant", turn.text, state="partial"
            )
        await self.sessions.end_session(turn.handle, TurnStatus.CANCELLED, StreamEvent.done(turn.text))
        logger.info(f"Turn {turn.id} cancelled on thread {turn.thread_id} ({len(turn.text)} chars kept)")

    async def _fail(self, turn: Turn, exc: ThreadForgeError) -> None:
        if turn.handle.closed:
            await self._abandon(turn)
            return
        turn.status = TurnStatus.FAILED
        turn.failure = exc
        if isinstance(exc, TurnTimeout):
            turn.error = f"The model stopped responding (no progress for {exc.seconds:g}s)."
        elif isinstance(exc, ModelFailure) and exc.rate_limited:
            turn.error = RATE_LIMITED_REASON
        else:
            turn.error = GENERIC_FAILURE_REASON
        logger.error(f"Turn {turn.id} failed on thread {turn.thread_id}: {exc}")
        try:
            await self._finish_thinking(turn, "partial")
        finally:
            await self.sessions.end_session(turn.handle, TurnStatus.FAILED, StreamEvent.error(turn.error))

    async def _abandon(self, turn: Turn) -> None:
        """End a turn whose slot the stale-session sweep already released.

        Another turn may own the thread by now, so nothing is appended; only this
        turn's own thinking record is closed.
        """
        turn.status = TurnStatus.FAILED
        turn.failure = TurnTimeout(2 * self.idle_timeout)
        turn.error = ABORTED_REASON
        logger.warning(f"Turn {turn.id} on thread {turn.thread_id} woke after its session was released; "
                       f"{len(turn.text)} chars of reply dropped")
        await self._finish_thinking(turn, "partial")
