"""
ThreadForge main entry point.

Starts a FastAPI HTTP server that:
  1. Serves the agent / thread REST API at /api
  2. Streams turn events over SSE (POST /api/threads/{id}/chat-stream)
     and over a per-thread WebSocket (/ws/agent-chat?threadId=...)
  3. Mounts the MCP Server (SSE + JSON-RPC) at /mcp
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket
from fastapi.responses import JSONResponse, StreamingResponse
from mcp.server.sse import SseServerTransport
from pydantic import BaseModel, ConfigDict, Field
from starlette.background import BackgroundTask

from threadforge.config import (
    API_TOKENS,
    DEV_OWNER_ID,
    HOST,
    MESSAGE_PAGE_DEFAULT,
    PORT,
    VERSION,
    get_config_dict,
    save_config_dict,
)
from threadforge.core.runtime import Runtime, agent_to_dict, message_to_dict, thread_to_dict
from threadforge.core.sessions import TurnStatus
from threadforge.db import database
from threadforge.errors import ThreadForgeError
from threadforge.inference.registry import BackendFactory
from threadforge import mcp_server
from threadforge.transports.sse import stream_session
from threadforge.transports.websocket import serve_socket

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("threadforge")


# ── Suppress leftover ASGI RuntimeErrors caused by client disconnects ──────────
class _AsgiDisconnectFilter(logging.Filter):
    """
    Filters uvicorn 'Exception in ASGI application' records caused by clients
    that drop a streaming response early. The turn keeps running; this is
    transport noise, not a failure.
    """
    _NOISE = (
        "Unexpected ASGI message 'http.response.start'",
        "Expected ASGI message 'http.response.body'",
        "ClientDisconnected",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        return not any(n in record.getMessage() for n in self._NOISE)


for _ln in ("uvicorn.error", "uvicorn"):
    logging.getLogger(_ln).addFilter(_AsgiDisconnectFilter())


# ─────────────────────────────────────────────
# Auth: bearer token -> owner id
# ─────────────────────────────────────────────

def owner_for_token(token: Optional[str]) -> str:
    if not API_TOKENS:
        return DEV_OWNER_ID
    if token and token in API_TOKENS:
        return API_TOKENS[token]
    raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "missing or invalid token"})


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


async def current_owner(authorization: Optional[str] = Header(default=None)) -> str:
    return owner_for_token(_bearer(authorization))


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


# ─────────────────────────────────────────────
# Request bodies
# ─────────────────────────────────────────────

class AgentCreate(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    provider: str
    model_name: str
    display_name: Optional[str] = None


class ChatRequest(BaseModel):
    content: str


class ConfigUpdate(BaseModel):
    HOST: Optional[str] = None
    PORT: Optional[int] = Field(default=None, ge=1, le=65535)
    TURN_IDLE_TIMEOUT: Optional[float] = Field(default=None, gt=0)
    MEMORY_WINDOW_SIZE: Optional[int] = Field(default=None, ge=1)
    MODEL_MAX_RETRIES: Optional[int] = Field(default=None, ge=0)
    SUB_AGENT_WAIT_TIMEOUT: Optional[float] = Field(default=None, gt=0)


class _SseCompletedResponse:
    """
    Sentinel returned from the MCP SSE endpoint after connect_sse() exits.
    The SSE transport already sent the full HTTP response through
    request._send; returning a real Response would start a second one.
    """
    async def __call__(self, scope, receive, send):
        pass


def create_app(
    db_path: Optional[str] = None,
    backend_factory: Optional[BackendFactory] = None,
    start_sweeper: bool = True,
    **runtime_options,
) -> FastAPI:
    """Build the application. ``db_path``/``backend_factory`` override the configured defaults."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: open DB, build runtime
        if db_path is None:
            db = await database.get_db()
        else:
            db = await database.connect(db_path)
        runtime = Runtime(db, backend_factory=backend_factory, **runtime_options)
        if start_sweeper:
            runtime.start()
        app.state.runtime = runtime
        mcp_server.bind_runtime(runtime)
        logger.info(f"ThreadForge running at http://{HOST}:{PORT}")
        yield
        # Shutdown: stop turns, close DB
        mcp_server.bind_runtime(None)
        await runtime.stop()
        if db_path is None:
            await database.close_db()
        else:
            await db.close()

    app = FastAPI(
        title="ThreadForge",
        description="Multi-agent chat orchestration with streamed turns.",
        version=VERSION,
        lifespan=lifespan,
    )

    @app.exception_handler(ThreadForgeError)
    async def _domain_error(request: Request, exc: ThreadForgeError):
        return JSONResponse(status_code=exc.http_status,
                            content={"detail": {"code": exc.code, "message": str(exc)}})

    # ─────────────────────────────────────────────
    # Agents
    # ─────────────────────────────────────────────

    @app.get("/api/agents")
    async def api_agents(owner: str = Depends(current_owner), rt: Runtime = Depends(get_runtime)):
        agents = await rt.list_agents(owner)
        return [agent_to_dict(a) for a in agents]

    @app.post("/api/agents", status_code=201)
    async def api_create_agent(body: AgentCreate, owner: str = Depends(current_owner),
                               rt: Runtime = Depends(get_runtime)):
        agent, thread = await rt.create_lead(owner, body.provider, body.model_name, body.display_name)
        return {"agent": agent_to_dict(agent), "thread": thread_to_dict(thread)}

    @app.delete("/api/agents/{agent_id}")
    async def api_delete_agent(agent_id: str, owner: str = Depends(current_owner),
                               rt: Runtime = Depends(get_runtime)):
        deleted = await rt.delete_agent(owner, agent_id)
        return {"ok": True, "deleted": deleted}

    # ─────────────────────────────────────────────
    # Threads
    # ─────────────────────────────────────────────

    @app.get("/api/threads/{thread_id}/messages")
    async def api_messages(thread_id: str, limit: int = MESSAGE_PAGE_DEFAULT, offset: int = 0,
                           owner: str = Depends(current_owner), rt: Runtime = Depends(get_runtime)):
        msgs = await rt.list_messages(owner, thread_id, limit=limit, offset=offset)
        return [message_to_dict(m) for m in msgs]

    @app.get("/api/threads/{thread_id}/processing")
    async def api_processing(thread_id: str, owner: str = Depends(current_owner),
                             rt: Runtime = Depends(get_runtime)):
        return {"thread_id": thread_id, "processing": await rt.is_processing(owner, thread_id)}

    @app.get("/api/threads/{thread_id}/team")
    async def api_team(thread_id: str, owner: str = Depends(current_owner), rt: Runtime = Depends(get_runtime)):
        return await rt.team(owner, thread_id)

    @app.post("/api/threads/{thread_id}/chat")
    async def api_chat(thread_id: str, body: ChatRequest, owner: str = Depends(current_owner),
                       rt: Runtime = Depends(get_runtime)):
        """Synchronous turn: blocks until the final reply, no intermediate events."""
        turn = await rt.chat(owner, thread_id, body.content)
        if turn.status is TurnStatus.COMPLETED:
            return {"status": turn.status.value, "message": message_to_dict(turn.assistant_message)}
        if turn.status is TurnStatus.FAILED and turn.failure is not None:
            return JSONResponse(status_code=turn.failure.http_status,
                                content={"detail": {"code": turn.failure.code, "message": turn.error}})
        partial = message_to_dict(turn.assistant_message) if turn.assistant_message else None
        return {"status": turn.status.value, "message": partial}

    @app.post("/api/threads/{thread_id}/chat-stream")
    async def api_chat_stream(thread_id: str, body: ChatRequest, owner: str = Depends(current_owner),
                              rt: Runtime = Depends(get_runtime)):
        """Request-scoped event stream. Admission errors are plain HTTP errors, before any frame."""
        turn = await rt.executor.begin_turn(owner, thread_id, body.content)
        sub = rt.sessions.attach(thread_id)
        rt.executor.launch(turn)
        return StreamingResponse(
            stream_session(rt.sessions, sub),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            background=BackgroundTask(rt.sessions.detach, sub),
        )

    @app.post("/api/threads/{thread_id}/cancel")
    async def api_cancel(thread_id: str, owner: str = Depends(current_owner), rt: Runtime = Depends(get_runtime)):
        return {"ok": await rt.cancel(owner, thread_id)}

    # ─────────────────────────────────────────────
    # WebSocket
    # ─────────────────────────────────────────────

    @app.websocket("/ws/agent-chat")
    async def ws_agent_chat(websocket: WebSocket, thread_id: str = Query(alias="threadId"),
                            token: Optional[str] = Query(default=None)):
        try:
            owner = owner_for_token(token or _bearer(websocket.headers.get("authorization")))
        except HTTPException:
            await websocket.close(code=4401, reason="unauthorized")
            return
        await serve_socket(websocket, websocket.app.state.runtime, owner, thread_id)

    # ─────────────────────────────────────────────
    # MCP SSE Transport (mounted at /mcp)
    # ─────────────────────────────────────────────

    sse_transport = SseServerTransport("/mcp/messages/")

    def _mcp_owner(request: Request) -> str:
        token = request.query_params.get("token") or _bearer(request.headers.get("authorization"))
        return owner_for_token(token)

    @app.get("/mcp/sse")
    async def mcp_sse_endpoint(request: Request):
        """MCP SSE endpoint consumed by MCP clients. Tools act for the token's owner."""
        try:
            owner = _mcp_owner(request)
        except HTTPException as e:
            return JSONResponse(status_code=e.status_code, content={"detail": e.detail})
        mcp_server.set_session_owner(owner)
        logger.info(f"MCP SSE session opened for owner {owner}")
        try:
            async with sse_transport.connect_sse(request.scope, request.receive, request._send) as streams:
                await mcp_server.server.run(
                    streams[0], streams[1],
                    mcp_server.server.create_initialization_options(),
                )
        except Exception as exc:
            # Mostly normal disconnects (anyio.ClosedResourceError, ...)
            logger.debug("MCP SSE session ended: %s: %s", type(exc).__name__, exc)
        return _SseCompletedResponse()

    async def mcp_post_message(scope, receive, send):
        """Raw ASGI app: the transport sends its own 202 Accepted. Requires a valid token too."""
        try:
            _mcp_owner(Request(scope, receive))
        except HTTPException as e:
            await JSONResponse(status_code=e.status_code, content={"detail": e.detail})(scope, receive, send)
            return
        await sse_transport.handle_post_message(scope, receive, send)

    app.mount("/mcp/messages/", app=mcp_post_message)

    # ─────────────────────────────────────────────
    # Settings
    # ─────────────────────────────────────────────

    @app.get("/api/config")
    async def api_get_config(owner: str = Depends(current_owner)):
        return get_config_dict()

    @app.put("/api/config")
    async def api_put_config(body: ConfigUpdate, owner: str = Depends(current_owner)):
        """Persist settings to data/config.json. Environment variables still win; applied on restart."""
        saved = save_config_dict(body.model_dump(exclude_none=True))
        logger.info(f"Settings updated by {owner}: {sorted(saved)}")
        return {"ok": True, "saved": saved, "restart_required": True}

    # ─────────────────────────────────────────────
    # Health check
    # ─────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "ThreadForge", "version": VERSION}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("threadforge.main:app", host=HOST, port=PORT)
