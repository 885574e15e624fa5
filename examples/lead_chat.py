"""
examples/lead_chat.py: Scripted conversation with a lead agent over WebSocket

1. Creates a lead agent (and its thread) via REST
2. Opens the thread's WebSocket and sends a few prompts, one turn at a time
3. Prints every event as it arrives; thinking and progress go to the side channel
4. Optionally cancels the last turn after a handful of tokens

Usage:
    python -m examples.lead_chat --provider openai --model gpt-5.2 --rounds 3

Run this AFTER starting the server (THREADFORGE_MODEL_BACKEND=echo works without API keys):
    python -m threadforge.cli
"""
import asyncio
import argparse

import httpx

from threadforge.client import ThreadSocketClient
from threadforge.events import EventType

BASE_URL = "http://127.0.0.1:39780"

PROMPTS = [
    "We are making a small roguelike. What should the core loop be?",
    "Design the first level and hand the layout work to a level designer.",
    "Summarise what the team is working on.",
]


async def main(provider: str, model: str, rounds: int, cancel_after: int):
    async with httpx.AsyncClient(base_url=BASE_URL, timeout=30) as client:
        r = await client.post("/api/agents", json={"provider": provider, "model_name": model})
        if r.status_code != 201:
            print(f"[Lead] Create failed: {r.status_code} {r.text}"); return
        agent, thread = r.json()["agent"], r.json()["thread"]
        print(f"[Lead] Created '{agent['name']}' with thread {thread['id']}")

    async def on_reconnect():
        print("[Lead] Reconnected; events sent while offline are in the history")

    async with ThreadSocketClient(BASE_URL, thread["id"], on_reconnect=on_reconnect) as ws:
        for i in range(rounds):
            prompt = PROMPTS[i % len(PROMPTS)]
            print(f"\n[You] → {prompt}")
            await ws.send_message(prompt)
            tokens = 0
            async for event in ws.events():
                if event.type is EventType.TOKEN:
                    tokens += 1
                    print(event.content, end="", flush=True)
                    if cancel_after and i == rounds - 1 and tokens == cancel_after:
                        await ws.cancel()
                elif event.type in (EventType.PROGRESS, EventType.THINKING):
                    print(f"\n  [{event.type.value}] {event.content}")
                elif event.type is EventType.RESPONSE:
                    print(f"\n[Lead] {event.content}")
                elif event.type is EventType.ERROR:
                    print(f"\n[Lead] ✗ {event.content}")
                    break
                else:
                    print(f"\n[Lead] ✓ turn finished ({len(event.content)} chars)")
                    break


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--provider", default="openai", type=str)
    parser.add_argument("--model", default="gpt-5.2", type=str)
    parser.add_argument("--rounds", default=3, type=int)
    parser.add_argument("--cancel-after", default=0, type=int, help="Cancel the last turn after N tokens")
    args = parser.parse_args()
    asyncio.run(main(args.provider, args.model, args.rounds, args.cancel_after))
