"""
CRUD operations for ThreadForge.
All functions are async and receive the aiosqlite connection from the caller.

Ordering contract: every message gets a bus-wide ``seq`` allocated inside the
same transaction as its insert, so reading a thread by ``seq`` reproduces the
exact append order. Messages are never reordered; only a message still in the
``streaming`` state may have its content replaced or grown.
"""
import re
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from threadforge.config import MESSAGE_PAGE_MAX
from threadforge.db.database import transaction
from threadforge.db.models import Agent, Thread, Message
from threadforge.errors import DelegationRefused, NotFound, ValidationError

logger = logging.getLogger(__name__)

ROLES = {"user", "assistant", "system", "tool"}
MESSAGE_STATES = {"complete", "streaming", "partial"}
PROVIDERS = ("openai", "anthropic", "gemini")

_TYPE_TAG_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _suffix() -> str:
    return uuid.uuid4().hex[:8]


def normalize_provider(provider: str) -> str:
    value = (provider or "").strip().lower()
    if value not in PROVIDERS:
        raise ValidationError("provider", f"unsupported model provider '{provider}', expected one of {PROVIDERS}")
    return value


# ─────────────────────────────────────────────
# Sequence counter (global, bus-wide)
# ─────────────────────────────────────────────

async def next_seq(db: aiosqlite.Connection) -> int:
    """Increment and return the next global sequence number.

    Must be called inside ``transaction(db)``; the caller's commit publishes
    the new value together with the row that uses it.
    """
    async with db.execute(
        "UPDATE seq_counter SET val = val + 1 WHERE id = 1 RETURNING val"
    ) as cur:
        row = await cur.fetchone()
    return row["val"]


# ─────────────────────────────────────────────
# Agent + Thread creation
# ─────────────────────────────────────────────

async def agent_create_lead(
    db: aiosqlite.Connection,
    owner_id: str,
    provider: str,
    model_name: str,
    display_name: Optional[str] = None,
    system_prompt: Optional[str] = None,
) -> tuple[Agent, Thread]:
    """Create a lead agent and its thread atomically. The thread starts empty."""
    provider = normalize_provider(provider)
    model_name = (model_name or "").strip()
    if not model_name:
        raise ValidationError("model_name", "must not be empty")
    display_name = (display_name or "").strip() or model_name

    aid = str(uuid.uuid4())
    tid = str(uuid.uuid4())
    name = f"{provider}-{model_name}-{_suffix()}"
    now = _now()

    async with transaction(db):
        await db.execute(
            "INSERT INTO agents (id, owner_id, name, display_name, description, provider, model_name, "
            "system_prompt, parent_thread_id, is_active, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, 1, ?)",
            (aid, owner_id, name, display_name, "", provider, model_name, system_prompt, now),
        )
        await db.execute(
            "INSERT INTO threads (id, agent_id, title, status, message_count, created_at) "
            "VALUES (?, ?, 'New Chat', 'active', 0, ?)",
            (tid, aid, now),
        )
    logger.info(f"Lead agent created: {aid} '{name}' thread={tid}")
    agent = Agent(
        id=aid, owner_id=owner_id, name=name, display_name=display_name, description="",
        provider=provider, model_name=model_name, system_prompt=system_prompt, thread_id=tid,
        parent_thread_id=None, is_active=True, created_at=_parse_dt(now),
    )
    thread = Thread(id=tid, agent_id=aid, title="New Chat", status="active", message_count=0,
                    last_message_at=None, created_at=_parse_dt(now))
    return agent, thread


async def agent_create_sub(
    db: aiosqlite.Connection,
    owner_id: str,
    parent_thread_id: str,
    type_tag: str,
    display_name: Optional[str] = None,
    description: str = "",
    system_prompt: Optional[str] = None,
) -> Agent:
    """Create a sub-agent of the lead owning ``parent_thread_id``, with its own thread.

    The sub-agent inherits the lead's provider and model. Only lead threads may
    be parents: delegation is a single level deep.
    """
    if not _TYPE_TAG_RE.match(type_tag or ""):
        raise ValidationError("type_tag", f"'{type_tag}' is not a valid agent type tag")
    parent = await thread_agent(db, parent_thread_id, owner_id=owner_id)
    if parent.is_sub_agent:
        raise DelegationRefused(parent_thread_id)

    aid = str(uuid.uuid4())
    tid = str(uuid.uuid4())
    name = f"{type_tag}-{_suffix()}"
    display_name = display_name or type_tag
    now = _now()

    async with transaction(db):
        await db.execute(
            "INSERT INTO agents (id, owner_id, name, display_name, description, provider, model_name, "
            "system_prompt, parent_thread_id, is_active, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)",
            (aid, owner_id, name, display_name, description, parent.provider, parent.model_name,
             system_prompt, parent_thread_id, now),
        )
        await db.execute(
            "INSERT INTO threads (id, agent_id, title, status, message_count, created_at) "
            "VALUES (?, ?, ?, 'active', 0, ?)",
            (tid, aid, display_name, now),
        )
    logger.info(f"Sub-agent created: {aid} '{name}' parent_thread={parent_thread_id} thread={tid}")
    return Agent(
        id=aid, owner_id=owner_id, name=name, display_name=display_name, description=description,
        provider=parent.provider, model_name=parent.model_name, system_prompt=system_prompt,
        thread_id=tid, parent_thread_id=parent_thread_id, is_active=True, created_at=_parse_dt(now),
    )


# ─────────────────────────────────────────────
# Agent queries and lifecycle
# ─────────────────────────────────────────────

_AGENT_SELECT = (
    "SELECT agents.*, threads.id AS thread_id FROM agents "
    "LEFT JOIN threads ON threads.agent_id = agents.id"
)


async def agent_get(db: aiosqlite.Connection, agent_id: str, owner_id: Optional[str] = None) -> Agent:
    async with db.execute(f"{_AGENT_SELECT} WHERE agents.id = ?", (agent_id,)) as cur:
        row = await cur.fetchone()
    if row is None or (owner_id is not None and row["owner_id"] != owner_id):
        raise NotFound("agent", agent_id)
    return _row_to_agent(row)


async def agent_list(db: aiosqlite.Connection, owner_id: str) -> list[Agent]:
    """Every agent visible to ``owner_id``: each lead (newest first) followed by its sub-agents."""
    async with db.execute(
        f"{_AGENT_SELECT} WHERE agents.owner_id = ? ORDER BY agents.created_at DESC, agents.rowid DESC",
        (owner_id,),
    ) as cur:
        rows = await cur.fetchall()
    agents = [_row_to_agent(r) for r in rows]

    subs_by_parent: dict[str, list[Agent]] = {}
    for a in agents:
        if a.is_sub_agent:
            subs_by_parent.setdefault(a.parent_thread_id, []).append(a)

    ordered: list[Agent] = []
    for a in agents:
        if a.is_sub_agent:
            continue
        ordered.append(a)
        ordered.extend(subs_by_parent.pop(a.thread_id, []))
    # Sub-agents whose lead is gone should not exist; keep them visible if they do.
    for orphans in subs_by_parent.values():
        ordered.extend(orphans)
    return ordered


async def agent_list_subs(
    db: aiosqlite.Connection, parent_thread_id: str, active_only: bool = True
) -> list[Agent]:
    sql = f"{_AGENT_SELECT} WHERE agents.parent_thread_id = ?"
    if active_only:
        sql += " AND agents.is_active = 1"
    async with db.execute(sql + " ORDER BY agents.created_at ASC, agents.rowid ASC", (parent_thread_id,)) as cur:
        rows = await cur.fetchall()
    return [_row_to_agent(r) for r in rows]


async def agent_set_active(db: aiosqlite.Connection, agent_id: str, active: bool) -> None:
    """Activate or deactivate an agent. Inactive agents keep full history, read-only."""
    async with transaction(db):
        async with db.execute(
            "UPDATE agents SET is_active = ? WHERE id = ?", (1 if active else 0, agent_id)
        ) as cur:
            updated = cur.rowcount
        if updated == 0:
            raise NotFound("agent", agent_id)
        await db.execute(
            "UPDATE threads SET status = ? WHERE agent_id = ?",
            ("active" if active else "archived", agent_id),
        )
    logger.info(f"Agent {agent_id} set active={active}")


async def agent_delete(db: aiosqlite.Connection, owner_id: str, agent_id: str) -> dict:
    """Hard-delete an agent with its thread and messages.

    Deleting a lead also deletes every sub-agent spawned from its thread,
    together with their threads and messages.
    """
    agent = await agent_get(db, agent_id, owner_id=owner_id)
    victim_ids = [agent.id]
    if not agent.is_sub_agent and agent.thread_id:
        async with db.execute(
            "SELECT id FROM agents WHERE parent_thread_id = ?", (agent.thread_id,)
        ) as cur:
            victim_ids.extend(r["id"] for r in await cur.fetchall())

    marks = ",".join("?" for _ in victim_ids)
    async with transaction(db):
        async with db.execute(
            f"DELETE FROM messages WHERE thread_id IN (SELECT id FROM threads WHERE agent_id IN ({marks}))",
            victim_ids,
        ) as cur:
            messages_deleted = cur.rowcount
        async with db.execute(f"DELETE FROM threads WHERE agent_id IN ({marks})", victim_ids) as cur:
            threads_deleted = cur.rowcount
        async with db.execute(f"DELETE FROM agents WHERE id IN ({marks})", victim_ids) as cur:
            agents_deleted = cur.rowcount
    logger.info(
        f"Agent deleted: {agent_id} (agents={agents_deleted}, threads={threads_deleted}, "
        f"messages={messages_deleted})"
    )
    return {"agents": agents_deleted, "threads": threads_deleted, "messages": messages_deleted}


def _row_to_agent(row: aiosqlite.Row) -> Agent:
    keys = row.keys()
    return Agent(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        display_name=row["display_name"],
        description=row["description"] or "",
        provider=row["provider"],
        model_name=row["model_name"],
        system_prompt=row["system_prompt"] if "system_prompt" in keys else None,
        thread_id=row["thread_id"] if "thread_id" in keys else None,
        parent_thread_id=row["parent_thread_id"],
        is_active=bool(row["is_active"]),
        created_at=_parse_dt(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Thread queries
# ─────────────────────────────────────────────

async def thread_get(db: aiosqlite.Connection, thread_id: str, owner_id: Optional[str] = None) -> Thread:
    async with db.execute(
        "SELECT threads.*, agents.owner_id AS owner_id FROM threads "
        "JOIN agents ON agents.id = threads.agent_id WHERE threads.id = ?",
        (thread_id,),
    ) as cur:
        row = await cur.fetchone()
    if row is None or (owner_id is not None and row["owner_id"] != owner_id):
        raise NotFound("thread", thread_id)
    return _row_to_thread(row)


async def thread_agent(db: aiosqlite.Connection, thread_id: str, owner_id: Optional[str] = None) -> Agent:
    """Return the agent owning ``thread_id``."""
    async with db.execute(f"{_AGENT_SELECT} WHERE threads.id = ?", (thread_id,)) as cur:
        row = await cur.fetchone()
    if row is None or (owner_id is not None and row["owner_id"] != owner_id):
        raise NotFound("thread", thread_id)
    return _row_to_agent(row)


async def thread_latest_seq(db: aiosqlite.Connection, thread_id: str) -> int:
    """Return the highest seq number in the thread, or 0 if no messages exist yet."""
    async with db.execute(
        "SELECT MAX(seq) AS max_seq FROM messages WHERE thread_id = ?", (thread_id,)
    ) as cur:
        row = await cur.fetchone()
    return row["max_seq"] or 0


def _row_to_thread(row: aiosqlite.Row) -> Thread:
    return Thread(
        id=row["id"],
        agent_id=row["agent_id"],
        title=row["title"],
        status=row["status"],
        message_count=row["message_count"],
        last_message_at=_parse_dt(row["last_message_at"]) if row["last_message_at"] else None,
        created_at=_parse_dt(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Message CRUD
# ─────────────────────────────────────────────

async def msg_append(
    db: aiosqlite.Connection,
    thread_id: str,
    role: str,
    content: str,
    tool_name: Optional[str] = None,
    state: str = "complete",
    token_count: int = 0,
) -> Message:
    """Append one message to the end of a thread and bump the thread's stats."""
    if role not in ROLES:
        raise ValidationError("role", f"'{role}' is not one of {sorted(ROLES)}")
    if tool_name is not None and role != "tool":
        raise ValidationError("tool_name", "only tool-role messages carry a tool name")
    if state not in MESSAGE_STATES:
        raise ValidationError("state", f"'{state}' is not one of {sorted(MESSAGE_STATES)}")

    owner = await thread_agent(db, thread_id)
    if not owner.is_active:
        raise ValidationError("thread_id", f"agent '{owner.name}' is inactive; its thread is read-only")

    mid = str(uuid.uuid4())
    now = _now()
    async with transaction(db):
        seq = await next_seq(db)
        await db.execute(
            "INSERT INTO messages (id, thread_id, role, content, tool_name, state, token_count, seq, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (mid, thread_id, role, content, tool_name, state, token_count, seq, now),
        )
        await db.execute(
            "UPDATE threads SET message_count = message_count + 1, last_message_at = ? WHERE id = ?",
            (now, thread_id),
        )
    logger.debug(f"Message appended: seq={seq} role={role} tool={tool_name} thread={thread_id}")
    return Message(
        id=mid, thread_id=thread_id, role=role, content=content, tool_name=tool_name,
        state=state, token_count=token_count, seq=seq, created_at=_parse_dt(now),
    )


async def msg_update_content(
    db: aiosqlite.Connection,
    message_id: str,
    content: str,
    state: Optional[str] = None,
) -> None:
    """Replace the content of a still-streaming message, optionally finalizing its state."""
    if state is not None and state not in MESSAGE_STATES:
        raise ValidationError("state", f"'{state}' is not one of {sorted(MESSAGE_STATES)}")
    async with transaction(db):
        await _require_streaming(db, message_id)
        await db.execute(
            "UPDATE messages SET content = ?, state = ? WHERE id = ?",
            (content, state or "streaming", message_id),
        )


async def _require_streaming(db: aiosqlite.Connection, message_id: str) -> None:
    async with db.execute("SELECT state FROM messages WHERE id = ?", (message_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        raise NotFound("message", message_id)
    if row["state"] != "streaming":
        raise ValidationError("message_id", "only a message of a running turn can be updated")


async def msg_append_content(db: aiosqlite.Connection, message_id: str, chunk: str) -> None:
    """Grow a still-streaming message by ``chunk`` without rewriting what it already holds."""
    async with transaction(db):
        async with db.execute(
            "UPDATE messages SET content = content || ? WHERE id = ? AND state = 'streaming'",
            (chunk, message_id),
        ) as cur:
            updated = cur.rowcount
        if updated == 0:
            await _require_streaming(db, message_id)


async def msg_finalize(db: aiosqlite.Connection, message_id: str, state: str) -> None:
    """Close a streaming message as ``complete`` or ``partial``; its content is kept as is."""
    if state not in MESSAGE_STATES or state == "streaming":
        raise ValidationError("state", f"'{state}' does not close a streaming message")
    async with transaction(db):
        async with db.execute(
            "UPDATE messages SET state = ? WHERE id = ? AND state = 'streaming'", (state, message_id)
        ) as cur:
            updated = cur.rowcount
        if updated == 0:
            await _require_streaming(db, message_id)


async def msg_list(
    db: aiosqlite.Connection,
    thread_id: str,
    limit: int = 50,
    offset: int = 0,
) -> list[Message]:
    """Page through a thread oldest-first. ``limit`` is capped at MESSAGE_PAGE_MAX; zero or less reads nothing."""
    limit = min(int(limit), MESSAGE_PAGE_MAX)
    if limit <= 0:
        return []
    offset = max(0, int(offset))
    async with db.execute(
        "SELECT * FROM messages WHERE thread_id = ? ORDER BY seq ASC LIMIT ? OFFSET ?",
        (thread_id, limit, offset),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]


async def msg_recent_dialogue(db: aiosqlite.Connection, thread_id: str, window: int) -> list[Message]:
    """Newest ``window`` user/assistant messages, returned in chronological order."""
    async with db.execute(
        "SELECT * FROM messages WHERE thread_id = ? AND role IN ('user', 'assistant') "
        "ORDER BY seq DESC LIMIT ?",
        (thread_id, max(0, window)),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in reversed(rows)]


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        thread_id=row["thread_id"],
        role=row["role"],
        content=row["content"],
        tool_name=row["tool_name"],
        state=row["state"],
        token_count=row["token_count"],
        seq=row["seq"],
        created_at=_parse_dt(row["created_at"]),
    )
