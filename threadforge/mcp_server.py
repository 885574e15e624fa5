"""
MCP Server for ThreadForge.

Exposes agent, history and chat operations as MCP tools plus read-only
resources. Mounted onto the FastAPI app via SSE transport, or served over
stdio by ``stdio_main.py``. Both bind the runtime they run against with
``bind_runtime`` before the first request.
"""
import json
import logging
from contextvars import ContextVar
from typing import Any, Optional

import mcp.types as types
from mcp.server import Server

from threadforge.config import HOST, PORT, VERSION, get_config_dict
from threadforge.core import agent_types
from threadforge.core.runtime import Runtime, agent_to_dict
from threadforge.db import crud
from threadforge.tools.dispatch import dispatch_tool, resolve_owner

logger = logging.getLogger(__name__)

server = Server("ThreadForge")

_runtime: Optional[Runtime] = None

# Per-connection owner, resolved from the bearer token when the SSE connection
# (or the stdio process) starts. Each connection runs in its own asyncio Task,
# so concurrent clients never see each other's owner.
_session_owner: ContextVar[str | None] = ContextVar("session_owner", default=None)


def bind_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime


def set_session_owner(owner: Optional[str]) -> None:
    _session_owner.set(owner)


def session_owner() -> str:
    """Owner for resources; tools resolve theirs in dispatch_tool."""
    return resolve_owner({}, _session_owner.get())


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("MCP server is not bound to a runtime")
    return _runtime


_OWNER_PROP = {
    "type": "string",
    "description": "Owner scope in development mode only. Ignored when the server requires API tokens.",
}


# ═════════════════════════════════════════════
# TOOLS
# ═════════════════════════════════════════════

@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [
        # ── Agents ─────────────────────────────
        types.Tool(
            name="agent_list",
            description="List every agent of the owner: each lead agent followed by its sub-agents.",
            inputSchema={"type": "object", "properties": {"owner_id": _OWNER_PROP}},
        ),
        types.Tool(
            name="agent_create",
            description="Create a lead agent together with its (empty) conversation thread.",
            inputSchema={
                "type": "object",
                "properties": {
                    "provider":     {"type": "string", "enum": ["openai", "anthropic", "gemini"]},
                    "model_name":   {"type": "string", "description": "Model identifier, e.g. gpt-5.2."},
                    "display_name": {"type": "string", "description": "Optional. Defaults to the model name."},
                    "owner_id":     _OWNER_PROP,
                },
                "required": ["provider", "model_name"],
            },
        ),
        types.Tool(
            name="agent_delete",
            description=(
                "Delete an agent with its thread and messages. Deleting a lead agent also deletes "
                "all of its sub-agents. Refused while a turn is running."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "agent_id": {"type": "string"},
                    "confirm":  {"type": "boolean", "description": "Must be true."},
                    "owner_id": _OWNER_PROP,
                },
                "required": ["agent_id", "confirm"],
            },
        ),
        types.Tool(
            name="team_list",
            description="List the active sub-agents of a lead thread and whether each is WORKING or IDLE.",
            inputSchema={
                "type": "object",
                "properties": {"thread_id": {"type": "string"}, "owner_id": _OWNER_PROP},
                "required": ["thread_id"],
            },
        ),

        # ── History ────────────────────────────
        types.Tool(
            name="msg_list",
            description="Fetch a page of a thread's messages, oldest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "thread_id": {"type": "string"},
                    "limit":     {"type": "integer", "default": 50, "description": "At most 200; 0 returns an empty page."},
                    "offset":    {"type": "integer", "default": 0},
                    "include_side_channel": {
                        "type": "boolean",
                        "default": True,
                        "description": "If false, drop tool-role progress/thinking records.",
                    },
                    "owner_id":  _OWNER_PROP,
                },
                "required": ["thread_id"],
            },
        ),
        types.Tool(
            name="thread_processing",
            description="Check whether a thread currently has a running turn.",
            inputSchema={
                "type": "object",
                "properties": {"thread_id": {"type": "string"}, "owner_id": _OWNER_PROP},
                "required": ["thread_id"],
            },
        ),

        # ── Chat ───────────────────────────────
        types.Tool(
            name="chat_send",
            description=(
                "Send a user message to an agent's thread. With wait=true (default) returns the final "
                "assistant reply; with wait=false returns immediately and the turn runs in the background."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "thread_id": {"type": "string"},
                    "content":   {"type": "string"},
                    "wait":      {"type": "boolean", "default": True},
                    "owner_id":  _OWNER_PROP,
                },
                "required": ["thread_id", "content"],
            },
        ),
        types.Tool(
            name="chat_cancel",
            description="Ask the running turn on a thread to stop. Partial reply text is kept.",
            inputSchema={
                "type": "object",
                "properties": {"thread_id": {"type": "string"}, "owner_id": _OWNER_PROP},
                "required": ["thread_id"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.Content]:
    return await dispatch_tool(get_runtime(), name, arguments, session_owner=_session_owner.get())


# ═════════════════════════════════════════════
# RESOURCES
# ═════════════════════════════════════════════

@server.list_resources()
async def list_resources() -> list[types.Resource]:
    rt = get_runtime()
    agents = await crud.agent_list(rt.db, session_owner())
    resources = [
        types.Resource(
            uri="forge://config",
            name="Server Configuration",
            description="Turn timeout, context window and retry settings of this server.",
            mimeType="application/json",
        ),
        types.Resource(
            uri="forge://agent-types",
            name="Sub-agent Types",
            description="Sub-agent types a lead agent can delegate to, with labels and colors.",
            mimeType="application/json",
        ),
        types.Resource(
            uri="forge://agents",
            name="Agents",
            description="All agents of this session's owner.",
            mimeType="application/json",
        ),
    ]
    for a in agents:
        if not a.thread_id:
            continue
        resources.append(types.Resource(
            uri=f"forge://threads/{a.thread_id}/transcript",
            name=f"Transcript: {a.display_name[:40]}",
            description=f"Conversation history of agent '{a.name}'",
            mimeType="text/plain",
        ))
    return resources


@server.read_resource()
async def read_resource(uri: types.AnyUrl) -> str:
    rt = get_runtime()
    uri_str = str(uri)

    if uri_str == "forge://config":
        return json.dumps({**get_config_dict(), "version": VERSION, "endpoint": f"http://{HOST}:{PORT}"}, indent=2)

    if uri_str == "forge://agent-types":
        return json.dumps([agent_types.describe(tag) for tag in agent_types.AGENT_TYPES], indent=2)

    if uri_str == "forge://agents":
        agents = await crud.agent_list(rt.db, session_owner())
        return json.dumps([agent_to_dict(a) for a in agents], indent=2)

    # forge://threads/{id}/transcript
    if uri_str.startswith("forge://threads/") and uri_str.endswith("/transcript"):
        thread_id = uri_str.split("/")[3]
        agent = await crud.thread_agent(rt.db, thread_id, owner_id=session_owner())
        lines = [f"# {agent.display_name} ({agent.name})\n"]
        offset = 0
        while True:
            page = await crud.msg_list(rt.db, thread_id, limit=200, offset=offset)
            for m in page:
                label = f"{m.role}/{m.tool_name}" if m.tool_name else m.role
                lines.append(f"[seq={m.seq}] {label}: {m.content}")
            if len(page) < 200:
                break
            offset += len(page)
        return "\n".join(lines)

    return f"Unknown resource URI: {uri_str}"
