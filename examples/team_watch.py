"""
examples/team_watch.py: Send one message over SSE, then watch the sub-agent team

1. Streams a single turn through POST /api/threads/{id}/chat-stream
2. Lists the lead thread's team until every sub-agent is IDLE or retired
3. Prints each sub-agent's final reply once its history has settled

Usage:
    python -m examples.team_watch --thread <lead thread id> "Plan the first world"
"""
import asyncio
import argparse

import httpx

from threadforge.client import poll_until_stable, stream_chat
from threadforge.events import EventType

BASE_URL = "http://127.0.0.1:39780"


async def main(thread_id: str, content: str):
    async for event in stream_chat(BASE_URL, thread_id, content):
        if event.type is EventType.TOKEN:
            print(event.content, end="", flush=True)
        elif event.type is EventType.PROGRESS:
            print(f"\n  [progress] {event.content}")
        elif event.is_terminal:
            print(f"\n[{event.type.value}] {event.content[:200]}")

    async with httpx.AsyncClient(base_url=BASE_URL, timeout=30) as client:
        seen: dict[str, dict] = {}
        while True:
            team = (await client.get(f"/api/threads/{thread_id}/team")).json()
            for member in team:
                seen[member["thread_id"]] = member
            working = [m for m in team if m["status"] == "WORKING"]
            print(f"[Team] {len(team)} active, {len(working)} working")
            if not working:
                break
            await asyncio.sleep(2)

        for sub_thread, member in seen.items():
            result = await poll_until_stable(client, sub_thread, interval=1, max_polls=30)
            replies = [m for m in result.messages if m["role"] == "assistant"]
            reply = replies[-1]["content"] if replies else "(no reply)"
            print(f"\n[{member['label']}] {member['name']}:\n{reply}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--thread", required=True, type=str)
    parser.add_argument("content", type=str)
    args = parser.parse_args()
    asyncio.run(main(args.thread, args.content))
