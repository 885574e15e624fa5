import asyncio
import argparse
import logging
import os

from mcp.server.stdio import stdio_server

from threadforge.config import API_TOKENS
from threadforge.core.runtime import Runtime
from threadforge.db import database
from threadforge.mcp_server import bind_runtime, server, set_session_owner


async def main():
    parser = argparse.ArgumentParser(description="ThreadForge MCP stdio mode")
    parser.add_argument("--db", type=str, default=None, help="SQLite path (defaults to THREADFORGE_DB)")
    parser.add_argument("--token", type=str, default=os.getenv("THREADFORGE_MCP_TOKEN"),
                        help="API token the session acts for (required when THREADFORGE_API_TOKENS is set)")
    args = parser.parse_args()

    db = await database.connect(args.db) if args.db else await database.get_db()
    runtime = Runtime(db)
    runtime.start()
    bind_runtime(runtime)
    # Unknown tokens leave the session unauthenticated; tools then answer "unauthorized"
    set_session_owner(API_TOKENS.get(args.token) if args.token else None)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )
    finally:
        bind_runtime(None)
        await runtime.stop()
        if args.db:
            await db.close()
        else:
            await database.close_db()


def run():
    # Disable logging to stdout to avoid corrupting MCP JSON-RPC
    logging.getLogger().setLevel(logging.CRITICAL)
    asyncio.run(main())


if __name__ == "__main__":
    run()
