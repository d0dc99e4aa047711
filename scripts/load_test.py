"""Concurrent transfer load against the ledger service.

Seeds two accounts by redeeming a voucher into the first, fires alternating
transfers between them, then checks that no money was lost or created.
"""

import argparse
import asyncio
import statistics
import time
from decimal import Decimal
from uuid import uuid4

import httpx


async def send_transfer(client: httpx.AsyncClient, sender: str, recipient: str, amount: str):
    """Send one transfer and return (status_code, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post(
            "/operations/transfer",
            json={"sender_id": sender, "recipient_id": recipient, "amount": amount},
            headers={"x-trace-id": str(uuid4())},
        )
        return resp.status_code, (time.perf_counter() - started) * 1000
    except httpx.HTTPError:
        return 599, (time.perf_counter() - started) * 1000


async def balance(client: httpx.AsyncClient, account_id: str) -> Decimal:
    resp = await client.get(f"/accounts/{account_id}")
    resp.raise_for_status()
    return Decimal(str(resp.json()["balance"]))


async def run(total: int, concurrency: int, base_url: str, api_key: str, amount: str) -> None:
    """Execute a bounded-concurrency transfer run and print summary stats."""

    a, b = f"load-a-{uuid4().hex[:8]}", f"load-b-{uuid4().hex[:8]}"
    sem = asyncio.Semaphore(concurrency)
    async with httpx.AsyncClient(base_url=base_url, timeout=10.0, headers={"x-api-key": api_key}) as client:
        for account_id in (a, b):
            (await client.post("/accounts", json={"account_id": account_id})).raise_for_status()
        seed = await client.post("/operations/redeem", json={"customer_id": a, "voucher_face_value": "1000.00"})
        seed.raise_for_status()
        start_total = await balance(client, a)
        commission_before = Decimal(str((await client.get("/commission")).json()["balance"]))

        async def worker(i: int):
            async with sem:
                sender, recipient = (a, b) if i % 2 == 0 else (b, a)
                return await send_transfer(client, sender, recipient, amount)

        results = await asyncio.gather(*(worker(i) for i in range(total)))
        end_total = await balance(client, a) + await balance(client, b)
        commission_after = Decimal(str((await client.get("/commission")).json()["balance"]))

    codes = [code for code, _ in results]
    lats = sorted(latency for _, latency in results)

    def pct(p):
        return lats[min(len(lats) - 1, max(0, int((p / 100.0) * len(lats)) - 1))] if lats else 0.0

    print(f"total={total}")
    print(f"committed={sum(1 for c in codes if c == 200)}")
    print(f"insufficient_funds={codes.count(409)}")
    print(f"lock_timeouts={codes.count(503)}")
    print(f"p50_ms={pct(50):.2f} p95_ms={pct(95):.2f} p99_ms={pct(99):.2f} avg_ms={statistics.mean(lats):.2f}")
    conserved = end_total + (commission_after - commission_before) == start_total
    print(f"conserved={conserved}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=200)
    parser.add_argument("--concurrency", type=int, default=20)
    parser.add_argument("--base-url", default="http://localhost:8004")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--amount", default="10.00")
    args = parser.parse_args()
    asyncio.run(run(args.total, args.concurrency, args.base_url, args.api_key, args.amount))
