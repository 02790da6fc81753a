"""Concurrency demo: fires /match/trigger concurrently against the ASGI app and
then checks that no deliverer went over capacity and no sender request holds
more than one active offer.
This runs in-process and doesn't require the server to be started separately.
Run: python sample_data.py && python concurrency_demo.py
"""
import asyncio
from main import app
from db import get_session
from capacity import one_to_one_violations, system_capacity_stats
from config import get_settings
import httpx


async def run():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        tasks = [client.post("/match/trigger") for _ in range(10)]
        res = await asyncio.gather(*tasks)
        for r in res:
            print(r.status_code, r.json())

    with get_session() as session:
        stats = system_capacity_stats(session, get_settings().max_deliverer_capacity)
        print("deliverers over capacity:", stats["deliverers_over_capacity"])
        print("sender requests with several active offers:", one_to_one_violations(session))


if __name__ == "__main__":
    asyncio.run(run())
