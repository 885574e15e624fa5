"""Print every agent of an owner as a lead/sub-agent tree with thread stats."""
import asyncio
import argparse
import json

from threadforge.config import DEV_OWNER_ID
from threadforge.core.runtime import agent_to_dict, thread_to_dict
from threadforge.db import crud
from threadforge.db.database import close_db, get_db


async def main(owner_id: str):
    db = await get_db()
    try:
        out = []
        for a in await crud.agent_list(db, owner_id):
            entry = agent_to_dict(a)
            if a.thread_id:
                entry["thread"] = thread_to_dict(await crud.thread_get(db, a.thread_id))
                entry["thread"]["latest_seq"] = await crud.thread_latest_seq(db, a.thread_id)
            out.append(entry)
        print(json.dumps(out, indent=2, default=str))
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--owner", default=DEV_OWNER_ID, type=str)
    asyncio.run(main(parser.parse_args().owner))
