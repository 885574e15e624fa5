"""
Runtime: wires store, session manager, executor and spawner together and
exposes the owner-scoped operations shared by the REST, WebSocket and MCP
surfaces.
"""
import asyncio
import logging
from typing import Optional

import aiosqlite

from threadforge.config import MESSAGE_PAGE_DEFAULT, SESSION_SWEEP_INTERVAL, TURN_IDLE_TIMEOUT
from threadforge.core import agent_types
from threadforge.core.executor import Turn, TurnExecutor
from threadforge.core.sessions import StreamSessionManager
from threadforge.core.spawner import SubAgentSpawner
from threadforge.db import crud
from threadforge.db.models import Agent, Message, Thread
from threadforge.errors import Busy
from threadforge.inference.registry import BackendFactory, BackendRegistry

logger = logging.getLogger(__name__)


class Runtime:

    def __init__(
        self,
        db: aiosqlite.Connection,
        backend_factory: Optional[BackendFactory] = None,
        idle_timeout: float = TURN_IDLE_TIMEOUT,
        **executor_options,
    ):
        self.db = db
        self.sessions = StreamSessionManager(idle_timeout=idle_timeout)
        self.backends = BackendRegistry(backend_factory)
        self.spawner = SubAgentSpawner(db)
        self.executor = TurnExecutor(
            db, self.sessions, self.backends,
            spawner=self.spawner, idle_timeout=idle_timeout, **executor_options,
        )
        self.spawner.executor = self.executor
        self._sweeper: Optional[asyncio.Task] = None

    def start(self, sweep_interval: float = SESSION_SWEEP_INTERVAL) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self.sessions.run_sweeper(sweep_interval), name="session-sweeper")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.wait({self._sweeper})
            self._sweeper = None
        await self.executor.shutdown()
        await self.spawner.shutdown()
        await self.backends.aclose()

    async def wait_idle(self) -> None:
        """Wait for all background turns, sub-turns and retirements (tests, shutdown)."""
        while self.executor.running_count or self.spawner.background_count:
            await self.executor.wait_idle()
            await self.spawner.wait_idle()

    # ─────────────────────────────────────────────
    # Agents
    # ─────────────────────────────────────────────

    async def create_lead(
        self, owner_id: str, provider: str, model_name: str, display_name: Optional[str] = None
    ) -> tuple[Agent, Thread]:
        return await crud.agent_create_lead(self.db, owner_id, provider, model_name, display_name)

    async def list_agents(self, owner_id: str) -> list[Agent]:
        return await crud.agent_list(self.db, owner_id)

    async def delete_agent(self, owner_id: str, agent_id: str) -> dict:
        """Cascade-delete an agent. Refused with Busy while any affected thread has a running turn."""
        agent = await crud.agent_get(self.db, agent_id, owner_id=owner_id)
        affected = [agent.thread_id]
        if not agent.is_sub_agent:
            affected.extend(s.thread_id for s in await crud.agent_list_subs(self.db, agent.thread_id, active_only=False))
        for thread_id in affected:
            if thread_id and self.sessions.is_processing(thread_id):
                raise Busy(thread_id)
        return await crud.agent_delete(self.db, owner_id, agent_id)

    async def team(self, owner_id: str, thread_id: str) -> list[dict]:
        """Active sub-agents of a lead thread with their working state."""
        await crud.thread_get(self.db, thread_id, owner_id=owner_id)
        subs = await crud.agent_list_subs(self.db, thread_id, active_only=True)
        team = []
        for sub in subs:
            entry = agent_to_dict(sub)
            entry["status"] = "WORKING" if self.sessions.is_processing(sub.thread_id) else "IDLE"
            team.append(entry)
        return team

    # ─────────────────────────────────────────────
    # Threads and turns
    # ─────────────────────────────────────────────

    async def list_messages(
        self, owner_id: str, thread_id: str, limit: int = MESSAGE_PAGE_DEFAULT, offset: int = 0
    ) -> list[Message]:
        await crud.thread_get(self.db, thread_id, owner_id=owner_id)
        return await crud.msg_list(self.db, thread_id, limit=limit, offset=offset)

    async def is_processing(self, owner_id: str, thread_id: str) -> bool:
        await crud.thread_get(self.db, thread_id, owner_id=owner_id)
        return self.sessions.is_processing(thread_id)

    async def start_turn(self, owner_id: str, thread_id: str, content: str) -> Turn:
        turn = await self.executor.begin_turn(owner_id, thread_id, content)
        self.executor.launch(turn)
        return turn

    async def chat(self, owner_id: str, thread_id: str, content: str) -> Turn:
        return await self.executor.chat(owner_id, thread_id, content)

    async def cancel(self, owner_id: str, thread_id: str) -> bool:
        await crud.thread_get(self.db, thread_id, owner_id=owner_id)
        return self.sessions.request_cancel(thread_id)


# ─────────────────────────────────────────────
# Serialization shared by REST and MCP
# ─────────────────────────────────────────────

def agent_to_dict(a: Agent) -> dict:
    d = {
        "id": a.id,
        "name": a.name,
        "display_name": a.display_name,
        "description": a.description,
        "provider": a.provider,
        "model_name": a.model_name,
        "thread_id": a.thread_id,
        "parent_thread_id": a.parent_thread_id,
        "is_active": a.is_active,
        "is_sub_agent": a.is_sub_agent,
        "created_at": a.created_at.isoformat(),
    }
    if a.is_sub_agent:
        d.update(agent_types.describe(agent_types.type_from_name(a.name)))
    return d


def thread_to_dict(t: Thread) -> dict:
    return {
        "id": t.id,
        "agent_id": t.agent_id,
        "title": t.title,
        "status": t.status,
        "message_count": t.message_count,
        "last_message_at": t.last_message_at.isoformat() if t.last_message_at else None,
        "created_at": t.created_at.isoformat(),
    }


def message_to_dict(m: Message) -> dict:
    return {
        "id": m.id,
        "thread_id": m.thread_id,
        "role": m.role,
        "content": m.content,
        "tool_name": m.tool_name,
        "state": m.state,
        "token_count": m.token_count,
        "seq": m.seq,
        "created_at": m.created_at.isoformat(),
    }
