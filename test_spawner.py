"""
Delegation tests: a lead turn hands tasks to sub-agents that run their own
turns on their own threads.
"""
import asyncio
import re

import aiosqlite
import pytest

from threadforge.core.runtime import Runtime, agent_to_dict
from threadforge.core.sessions import TurnStatus
from threadforge.db import crud
from threadforge.db.database import init_schema
from threadforge.errors import Busy, DelegationRefused, ModelFailure
from threadforge.events import EventType
from threadforge.inference.base import ModelIncrement
from threadforge.inference.scripted import Pause, ScriptedBackend

OWNER = "owner-a"


async def _make_db():
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    return db


async def _make_runtime(lead_script, sub_script, **options):
    """Lead requests (delegation allowed) get ``lead_script``; sub-agent requests get ``sub_script``."""
    db = await _make_db()
    backend = ScriptedBackend(responder=lambda req: lead_script if req.allow_delegation else sub_script)
    rt = Runtime(db, backend_factory=lambda provider: backend, **options)
    lead, thread = await rt.create_lead(OWNER, "openai", "gpt-5.2", "Lead")
    return db, rt, lead, thread.id


async def _teardown(db, rt):
    await rt.stop()
    await db.close()


async def _contents(db, thread_id, role=None, tool_name=None):
    msgs = await crud.msg_list(db, thread_id, limit=200)
    return [m.content for m in msgs if (role is None or m.role == role) and (tool_name is None or m.tool_name == tool_name)]


async def _wait_processing(rt, thread_id):
    for _ in range(200):
        if rt.sessions.is_processing(thread_id):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"thread {thread_id} never started a turn")


@pytest.mark.asyncio
async def test_delegated_task_runs_on_its_own_sub_agent_thread():
    db, rt, lead, thread_id = await _make_runtime(
        [ModelIncrement.delegate("levelDesigner", "Design level 1"),
         ModelIncrement.token("Dispatched the level work."),
         ModelIncrement.done()],
        [ModelIncrement.token("Level plan"), ModelIncrement.done()],
    )
    try:
        turn = await rt.chat(OWNER, thread_id, "Plan the first world")
        await rt.wait_idle()
        assert turn.status is TurnStatus.COMPLETED

        agents = await rt.list_agents(OWNER)
        assert [a.id for a in agents][0] == lead.id
        assert len(agents) == 2
        sub = agents[1]
        assert re.fullmatch(r"levelDesigner-[0-9a-f]{8}", sub.name)
        assert sub.parent_thread_id == thread_id
        assert sub.display_name == "Level Designer"

        assert await _contents(db, sub.thread_id) == ["Design level 1", "Level plan"]
        progress = await _contents(db, thread_id, tool_name="progress")
        assert progress == [f"Delegating to Level Designer ({sub.name})"]
        assert await _contents(db, thread_id, role="assistant") == ["Dispatched the level work."]

        # Retired once the lead turn and the sub-turn are over
        assert sub.is_active is False
        assert (await crud.thread_get(db, sub.thread_id)).status == "archived"

        info = agent_to_dict(sub)
        assert info["type"] == "levelDesigner"
        assert info["label"] == "Level Designer"
    finally:
        await _teardown(db, rt)


@pytest.mark.asyncio
async def test_sub_agent_uses_type_prompt_and_short_window():
    db, rt, _, thread_id = await _make_runtime(
        [ModelIncrement.delegate("combatDesigner", "Tune the boss"), ModelIncrement.token("ok"), ModelIncrement.done()],
        [ModelIncrement.token("tuned"), ModelIncrement.done()],
    )
    try:
        await rt.chat(OWNER, thread_id, "go")
        await rt.wait_idle()
        backend = rt.backends.get("openai")
        sub_request = next(r for r in backend.requests if not r.allow_delegation)
        assert sub_request.messages[0]["role"] == "system"
        assert "combat designer" in sub_request.messages[0]["content"]
        assert sub_request.messages[1:] == [{"role": "user", "content": "Tune the boss"}]
    finally:
        await _teardown(db, rt)


@pytest.mark.asyncio
async def test_unknown_type_tag_falls_back_to_generic_label():
    db, rt, _, thread_id = await _make_runtime(
        [ModelIncrement.delegate("soundDesigner", "Compose a theme"), ModelIncrement.token("ok"), ModelIncrement.done()],
        [ModelIncrement.token("theme"), ModelIncrement.done()],
    )
    try:
        await rt.chat(OWNER, thread_id, "go")
        await rt.wait_idle()
        sub = (await rt.list_agents(OWNER))[1]
        assert sub.name.startswith("soundDesigner-")
        info = agent_to_dict(sub)
        assert info["type"] == "soundDesigner"
        assert info["label"] == "General Agent"
    finally:
        await _teardown(db, rt)


@pytest.mark.asyncio
async def test_lead_without_text_reports_pending_delegations():
    gate = asyncio.Event()
    db, rt, _, thread_id = await _make_runtime(
        [ModelIncrement.delegate("levelDesigner", "Design level 1"), ModelIncrement.done()],
        [Pause(gate), ModelIncrement.token("Level plan"), ModelIncrement.done()],
    )
    try:
        turn = await rt.chat(OWNER, thread_id, "Plan it")
        assert turn.status is TurnStatus.COMPLETED
        assert turn.assistant_message.content.startswith("1 sub-agent task dispatched.")

        sub = (await rt.list_agents(OWNER))[1]
        await _wait_processing(rt, sub.thread_id)
        team = await rt.team(OWNER, thread_id)
        assert [(t["name"], t["status"]) for t in team] == [(sub.name, "WORKING")]

        gate.set()
        await rt.wait_idle()
        assert await rt.team(OWNER, thread_id) == []
        assert await _contents(db, sub.thread_id, role="assistant") == ["Level plan"]
    finally:
        gate.set()
        await _teardown(db, rt)


@pytest.mark.asyncio
async def test_waiting_delegation_reports_the_sub_agent_reply():
    db, rt, _, thread_id = await _make_runtime(
        [ModelIncrement.delegate("narrativeDesigner", "Write the intro", wait=True),
         ModelIncrement.token("Summary"),
         ModelIncrement.done()],
        [ModelIncrement.token("Once upon a time"), ModelIncrement.done()],
    )
    try:
        await rt.chat(OWNER, thread_id, "Story please")
        await rt.wait_idle()
        progress = await _contents(db, thread_id, tool_name="progress")
        assert "Narrative Designer finished: Once upon a time" in progress
    finally:
        await _teardown(db, rt)


@pytest.mark.asyncio
async def test_cancel_interrupts_a_lead_waiting_on_its_sub_agent():
    gate = asyncio.Event()
    db, rt, _, thread_id = await _make_runtime(
        [ModelIncrement.token("a"),
         ModelIncrement.delegate("levelDesigner", "Design level 1", wait=True),
         ModelIncrement.token("b"),
         ModelIncrement.done()],
        [Pause(gate), ModelIncrement.token("Level plan"), ModelIncrement.done()],
        delegation_wait_timeout=30,
    )
    try:
        events = rt.sessions.attach(thread_id)
        turn = await rt.start_turn(OWNER, thread_id, "Plan it")
        while True:
            event = await events.get(timeout=5)
            if event.type is EventType.PROGRESS and event.content.startswith("Waiting for"):
                break

        assert await rt.cancel(OWNER, thread_id) is True
        terminal = await events.get(timeout=2)
        while not terminal.is_terminal:
            terminal = await events.get(timeout=2)
        assert terminal.type is EventType.DONE
        assert terminal.content == "a"
        assert not rt.sessions.is_processing(thread_id)

        gate.set()
        await rt.wait_idle()
        assert turn.status is TurnStatus.CANCELLED
        assert await _contents(db, thread_id, role="assistant") == ["a"]
        sub = (await rt.list_agents(OWNER))[1]
        assert await _contents(db, sub.thread_id, role="assistant") == ["Level plan"]
        assert sub.is_active is False
    finally:
        gate.set()
        await _teardown(db, rt)


@pytest.mark.asyncio
async def test_failed_sub_turn_is_reported_and_lead_still_completes():
    db, rt, _, thread_id = await _make_runtime(
        [ModelIncrement.delegate("levelDesigner", "Design level 1", wait=True),
         ModelIncrement.token("I asked the level designer."),
         ModelIncrement.done()],
        [ModelFailure("model exploded")],
    )
    try:
        turn = await rt.chat(OWNER, thread_id, "Plan it")
        await rt.wait_idle()
        assert turn.status is TurnStatus.COMPLETED

        sub = (await rt.list_agents(OWNER))[1]
        assert await _contents(db, sub.thread_id) == ["Design level 1"]
        progress = await _contents(db, thread_id, tool_name="progress")
        assert any(p.startswith("Level Designer failed:") for p in progress)
        assert sub.is_active is False
    finally:
        await _teardown(db, rt)


@pytest.mark.asyncio
async def test_sub_agents_cannot_delegate_further():
    db, rt, _, thread_id = await _make_runtime(
        [ModelIncrement.delegate("levelDesigner", "Design level 1"), ModelIncrement.token("ok"), ModelIncrement.done()],
        [ModelIncrement.delegate("juniorDesigner", "Do the boring part"),
         ModelIncrement.token("did it myself"),
         ModelIncrement.done()],
    )
    try:
        await rt.chat(OWNER, thread_id, "go")
        await rt.wait_idle()
        agents = await rt.list_agents(OWNER)
        assert len(agents) == 2
        sub = agents[1]
        assert "Sub-agents cannot delegate further; continuing without delegation" in \
            await _contents(db, sub.thread_id, tool_name="progress")
        assert await _contents(db, sub.thread_id, role="assistant") == ["did it myself"]

        with pytest.raises(DelegationRefused):
            await rt.spawner.spawn(OWNER, sub.thread_id, "juniorDesigner", "again")
    finally:
        await _teardown(db, rt)


@pytest.mark.asyncio
async def test_invalid_type_tag_is_reported_not_fatal():
    db, rt, _, thread_id = await _make_runtime(
        [ModelIncrement.delegate("not a tag!", "whatever"), ModelIncrement.token("fine"), ModelIncrement.done()],
        [ModelIncrement.token("unused"), ModelIncrement.done()],
    )
    try:
        turn = await rt.chat(OWNER, thread_id, "go")
        assert turn.status is TurnStatus.COMPLETED
        assert len(await rt.list_agents(OWNER)) == 1
        progress = await _contents(db, thread_id, tool_name="progress")
        assert progress and progress[0].startswith("Delegation rejected:")
    finally:
        await _teardown(db, rt)


@pytest.mark.asyncio
async def test_delete_is_refused_while_a_sub_agent_works_then_cascades():
    gate = asyncio.Event()
    db, rt, lead, thread_id = await _make_runtime(
        [ModelIncrement.delegate("levelDesigner", "Design level 1"), ModelIncrement.token("ok"), ModelIncrement.done()],
        [Pause(gate), ModelIncrement.token("Level plan"), ModelIncrement.done()],
    )
    try:
        await rt.chat(OWNER, thread_id, "go")
        sub = (await rt.list_agents(OWNER))[1]
        await _wait_processing(rt, sub.thread_id)

        with pytest.raises(Busy):
            await rt.delete_agent(OWNER, lead.id)

        gate.set()
        await rt.wait_idle()
        deleted = await rt.delete_agent(OWNER, lead.id)
        assert deleted["agents"] == 2
        assert deleted["threads"] == 2
        assert await rt.list_agents(OWNER) == []
        async with db.execute("SELECT COUNT(*) AS c FROM messages") as cur:
            assert (await cur.fetchone())["c"] == 0
    finally:
        gate.set()
        await _teardown(db, rt)
