"""
Tool dispatch layer for the ThreadForge MCP server.

Each handler takes the runtime and the tool arguments and returns MCP content
blocks with a JSON payload. Domain errors are reported in the payload as
``{"error": {"code", "message"}}`` rather than raised into the MCP session.
"""
import json
import logging
from typing import Any, Optional

import mcp.types as types

from threadforge.config import API_TOKENS, DEV_OWNER_ID, MESSAGE_PAGE_DEFAULT
from threadforge.core.runtime import Runtime, agent_to_dict, message_to_dict, thread_to_dict
from threadforge.core.sessions import TurnStatus
from threadforge.errors import ThreadForgeError, Unauthorized, ValidationError

logger = logging.getLogger(__name__)


def _json(payload: Any) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload))]


def _require(arguments: dict[str, Any], key: str) -> Any:
    value = arguments.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(key, "is required")
    return value


def resolve_owner(arguments: dict[str, Any], session_owner: Optional[str]) -> str:
    """Owner a tool call acts for.

    With API tokens configured only the owner authenticated for the MCP session
    counts and an ``owner_id`` argument is ignored. In development mode (no
    tokens) the argument picks the owner, defaulting to the local one.
    """
    if API_TOKENS:
        if session_owner is None:
            raise Unauthorized("MCP session is not authenticated")
        return session_owner
    return session_owner or arguments.get("owner_id") or DEV_OWNER_ID


async def handle_agent_list(rt: Runtime, owner: str, arguments: dict[str, Any]) -> list[types.TextContent]:
    agents = await rt.list_agents(owner)
    return _json([agent_to_dict(a) for a in agents])


async def handle_agent_create(rt: Runtime, owner: str, arguments: dict[str, Any]) -> list[types.TextContent]:
    agent, thread = await rt.create_lead(
        owner,
        provider=_require(arguments, "provider"),
        model_name=_require(arguments, "model_name"),
        display_name=arguments.get("display_name"),
    )
    return _json({"agent": agent_to_dict(agent), "thread": thread_to_dict(thread)})


async def handle_agent_delete(rt: Runtime, owner: str, arguments: dict[str, Any]) -> list[types.TextContent]:
    if not arguments.get("confirm"):
        return _json({"error": {"code": "validation_error",
                                "message": "Deletion aborted: confirm must be true. This action is irreversible."}})
    deleted = await rt.delete_agent(owner, _require(arguments, "agent_id"))
    return _json({"ok": True, "deleted": deleted})


async def handle_msg_list(rt: Runtime, owner: str, arguments: dict[str, Any]) -> list[types.TextContent]:
    msgs = await rt.list_messages(
        owner,
        _require(arguments, "thread_id"),
        limit=arguments.get("limit", MESSAGE_PAGE_DEFAULT),
        offset=arguments.get("offset", 0),
    )
    if not arguments.get("include_side_channel", True):
        msgs = [m for m in msgs if m.role != "tool"]
    return _json([message_to_dict(m) for m in msgs])


async def handle_thread_processing(rt: Runtime, owner: str, arguments: dict[str, Any]) -> list[types.TextContent]:
    thread_id = _require(arguments, "thread_id")
    processing = await rt.is_processing(owner, thread_id)
    return _json({"thread_id": thread_id, "processing": processing})


async def handle_chat_send(rt: Runtime, owner: str, arguments: dict[str, Any]) -> list[types.TextContent]:
    thread_id = _require(arguments, "thread_id")
    content = arguments.get("content") or ""
    if not arguments.get("wait", True):
        turn = await rt.start_turn(owner, thread_id, content)
        return _json({"accepted": True, "turn_id": turn.id, "user_message_id": turn.user_message.id})

    turn = await rt.chat(owner, thread_id, content)
    if turn.status is TurnStatus.COMPLETED:
        return _json({"status": turn.status.value, "reply": message_to_dict(turn.assistant_message)})
    return _json({"status": turn.status.value,
                  "error": {"code": turn.failure.code if turn.failure else "cancelled",
                            "message": turn.error or "turn cancelled"}})


async def handle_chat_cancel(rt: Runtime, owner: str, arguments: dict[str, Any]) -> list[types.TextContent]:
    cancelled = await rt.cancel(owner, _require(arguments, "thread_id"))
    return _json({"ok": cancelled})


async def handle_team_list(rt: Runtime, owner: str, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _json(await rt.team(owner, _require(arguments, "thread_id")))


TOOLS_DISPATCH = {
    "agent_list": handle_agent_list,
    "agent_create": handle_agent_create,
    "agent_delete": handle_agent_delete,
    "msg_list": handle_msg_list,
    "thread_processing": handle_thread_processing,
    "chat_send": handle_chat_send,
    "chat_cancel": handle_chat_cancel,
    "team_list": handle_team_list,
}


async def dispatch_tool(
    rt: Runtime, name: str, arguments: dict[str, Any], session_owner: Optional[str] = None
) -> list[types.Content]:
    handler = TOOLS_DISPATCH.get(name)
    if handler is None:
        raise ValueError(f"Unknown tool: {name}")
    arguments = arguments or {}
    try:
        owner = resolve_owner(arguments, session_owner)
        return await handler(rt, owner, arguments)
    except ThreadForgeError as e:
        logger.info(f"[{name}] {e.code}: {e}")
        return _json({"error": {"code": e.code, "message": str(e)}})
