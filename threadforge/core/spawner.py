"""
SubAgentSpawner: creates sub-agents for a lead turn and runs their turns.

Each delegation creates a sub-agent with its own thread, then runs the
delegated task as that thread's first turn in a background task. The task
always resolves to a DelegationResult: a failed sub-turn is reported as data
and never fails the lead turn.

Sub-agents spawned during a lead turn are retired (set inactive, thread
archived) once that lead turn has ended and all of their sub-turns finished.
"""
import asyncio
import logging
from dataclasses import dataclass

import aiosqlite

from threadforge.core import agent_types
from threadforge.core.sessions import TurnStatus
from threadforge.db import crud
from threadforge.db.models import Agent
from threadforge.errors import NotFound, ThreadForgeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegationResult:
    agent_name: str
    thread_id: str
    ok: bool
    content: str


@dataclass(eq=False)
class Delegation:
    agent: Agent
    task: "asyncio.Task[DelegationResult]"

    def outcome(self) -> DelegationResult:
        """Result of a finished sub-turn task, with crashes folded into a failed result."""
        if self.task.cancelled():
            return DelegationResult(self.agent.name, self.agent.thread_id, False, "cancelled")
        exc = self.task.exception()
        if exc is not None:
            return DelegationResult(self.agent.name, self.agent.thread_id, False, f"{type(exc).__name__}: {exc}")
        return self.task.result()


class SubAgentSpawner:

    def __init__(self, db: aiosqlite.Connection, executor=None):
        self.db = db
        self.executor = executor
        # parent thread id -> delegations of the lead turn currently running there
        self._open: dict[str, list[Delegation]] = {}
        self._background: set[asyncio.Task] = set()

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def spawn(self, owner_id: str, parent_thread_id: str, type_tag: str | None, task_text: str) -> Delegation:
        """Create a sub-agent under ``parent_thread_id`` and dispatch ``task_text`` to it.

        Raises DelegationRefused when the parent thread belongs to a sub-agent.
        """
        if self.executor is None:
            raise RuntimeError("SubAgentSpawner has no executor attached")
        type_tag = type_tag or agent_types.DEFAULT_TYPE
        kind = agent_types.resolve(type_tag)
        agent = await crud.agent_create_sub(
            self.db, owner_id, parent_thread_id, type_tag,
            display_name=kind.label,
            description=task_text[:200],
            system_prompt=kind.prompt,
        )
        task = asyncio.create_task(self._run_sub_turn(owner_id, agent, task_text), name=f"delegation-{agent.name}")
        self._track(task)
        delegation = Delegation(agent=agent, task=task)
        self._open.setdefault(parent_thread_id, []).append(delegation)
        logger.info(f"Delegated to {agent.name} from thread {parent_thread_id}")
        return delegation

    async def _run_sub_turn(self, owner_id: str, agent: Agent, task_text: str) -> DelegationResult:
        try:
            turn = await self.executor.begin_turn(owner_id, agent.thread_id, task_text)
        except ThreadForgeError as e:
            logger.warning(f"Sub-turn for {agent.name} could not start: {e}")
            return DelegationResult(agent.name, agent.thread_id, False, str(e))
        await self.executor.run(turn)
        if turn.status is TurnStatus.COMPLETED and turn.assistant_message is not None:
            return DelegationResult(agent.name, agent.thread_id, True, turn.assistant_message.content)
        return DelegationResult(agent.name, agent.thread_id, False, turn.error or turn.status.value)

    def pending_count(self, parent_thread_id: str) -> int:
        return sum(1 for d in self._open.get(parent_thread_id, ()) if not d.task.done())

    def conclude(self, parent_thread_id: str) -> asyncio.Task | None:
        """Schedule retirement of the sub-agents spawned by the lead turn that just ended."""
        delegations = self._open.pop(parent_thread_id, [])
        if not delegations:
            return None
        task = asyncio.create_task(self._retire(parent_thread_id, delegations), name=f"retire-{parent_thread_id[:8]}")
        self._track(task)
        return task

    async def _retire(self, parent_thread_id: str, delegations: list[Delegation]) -> list[DelegationResult]:
        await asyncio.wait([d.task for d in delegations])
        results = [d.outcome() for d in delegations]
        for d in delegations:
            try:
                await crud.agent_set_active(self.db, d.agent.id, False)
            except NotFound:
                logger.debug(f"Sub-agent {d.agent.name} was deleted before retirement")
        ok = sum(1 for r in results if r.ok)
        logger.info(
            f"Retired {len(delegations)} sub-agent(s) of thread {parent_thread_id} "
            f"({ok} completed, {len(results) - ok} failed)"
        )
        return results

    @property
    def background_count(self) -> int:
        return len(self._background)

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.wait(list(self._background))

    async def wait_idle(self) -> None:
        """Wait until every sub-turn and retirement scheduled so far has finished."""
        while self._background:
            await asyncio.wait(list(self._background))
