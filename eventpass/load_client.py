#!/usr/bin/env python3
"""
EventPass duplicate-delivery client (async)

Simulates a gateway/client pair that retries aggressively:
  1) POST /api/payments/create-order/{event}   -> {paymentId, orderId}
  2) POST /mockpay/{paymentId}/complete        -> signed callback payload
  3) POST /api/payments/verify  x N, all at once, with that same payload

Exactly one of the N verify calls must succeed; the rest must come back as
AlreadyFinalized. Each round uses its own user so rounds do not collide on
the one-registration-per-(user, event) rule.

Usage:
  python -m eventpass.load_client --base http://localhost:8000 \
      --event evt_1 --auth-secret "$AUTH_SECRET" --rounds 20 --duplicates 16

Notes:
- Needs the server running with GATEWAY=mock.
"""

import asyncio
import time
import argparse
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx
import jwt


def _token(secret: str, user_id: str) -> str:
    return jwt.encode({"sub": user_id}, secret, algorithm="HS256")


@dataclass
class Round:
    ok: bool
    user_id: str
    outcomes: Counter = field(default_factory=Counter)
    t_verify: float = 0.0
    err: Optional[str] = None

    @property
    def exactly_once(self) -> bool:
        n = sum(self.outcomes.values())
        return (
            self.outcomes.get("success", 0) == 1
            and self.outcomes.get("AlreadyFinalized", 0) == n - 1
        )


@dataclass
class Stats:
    rounds: List[Round] = field(default_factory=list)

    def add(self, r: Round):
        self.rounds.append(r)

    def summary(self) -> Dict[str, float]:
        done = [r for r in self.rounds if r.ok]
        lat = [r.t_verify for r in done]
        totals: Counter = Counter()
        for r in done:
            totals.update(r.outcomes)
        return {
            "rounds": len(self.rounds),
            "ok": len(done),
            "exactly_once": sum(1 for r in done if r.exactly_once),
            "error": sum(1 for r in self.rounds if not r.ok),
            "success": totals.get("success", 0),
            "already_finalized": totals.get("AlreadyFinalized", 0),
            "other": sum(
                v for k, v in totals.items()
                if k not in ("success", "AlreadyFinalized")
            ),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Duplicate Delivery Summary ===")
        print(
            f"Rounds: {int(s['rounds'])}   OK: {int(s['ok'])}   "
            f"Exactly-once: {int(s['exactly_once'])}   "
            f"ERROR: {int(s['error'])}"
        )
        print(
            f"Verify responses: success {int(s['success'])}   "
            f"AlreadyFinalized {int(s['already_finalized'])}   "
            f"other {int(s['other'])}"
        )
        print(f"Avg burst time: {s['avg_s']:.3f}s   "
              f"Wall time: {elapsed_s:.3f}s")
        for r in self.rounds:
            if r.ok and not r.exactly_once:
                print(f"  !! user {r.user_id}: {dict(r.outcomes)}")
            if not r.ok:
                print(f"  !! user {r.user_id}: {r.err}")


def _outcome(resp: httpx.Response) -> str:
    try:
        j = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if resp.status_code == 200 and j.get("success"):
        return "success"
    return j.get("error") or f"HTTP {resp.status_code}"


async def one_round(
    client: httpx.AsyncClient,
    base: str,
    event_id: str,
    auth_secret: str,
    duplicates: int,
) -> Round:
    user_id = f"load_{uuid.uuid4().hex[:12]}"
    r = Round(ok=False, user_id=user_id)
    headers = {"authorization": f"Bearer {_token(auth_secret, user_id)}"}

    # 1) create order
    try:
        resp = await client.post(
            f"{base}/api/payments/create-order/{event_id}",
            headers=headers, timeout=30.0,
        )
        resp.raise_for_status()
        payment_id = resp.json()["paymentId"]
    except Exception as e:
        r.err = f"create-order: {e}"
        return r

    # 2) pay at the mock gateway
    try:
        resp = await client.post(
            f"{base}/mockpay/{payment_id}/complete",
            headers=headers, timeout=30.0,
        )
        resp.raise_for_status()
        callback = resp.json()
    except Exception as e:
        r.err = f"mockpay: {e}"
        return r

    # 3) burst of identical verify posts
    t0 = time.perf_counter()
    try:
        responses = await asyncio.gather(*[
            client.post(
                f"{base}/api/payments/verify",
                json=callback, headers=headers, timeout=30.0,
            )
            for _ in range(duplicates)
        ])
    except Exception as e:
        r.err = f"verify: {e}"
        return r
    r.t_verify = time.perf_counter() - t0
    r.outcomes.update(_outcome(x) for x in responses)
    r.ok = True
    return r


async def run_load(
    base: str,
    event_id: str,
    auth_secret: str,
    rounds: int,
    duplicates: int,
    concurrency: int,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency * duplicates,
        max_connections=concurrency * duplicates,
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "EventPassLoad/1.0"}
    ) as client:

        async def worker():
            async with sem:
                stats.add(await one_round(
                    client, base, event_id, auth_secret, duplicates
                ))

        await asyncio.gather(*[worker() for _ in range(rounds)])

    return stats


def main():
    ap = argparse.ArgumentParser(
        description="EventPass duplicate-delivery client"
    )
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--event", required=True,
                    help="Event id with an open registration deadline")
    ap.add_argument("--auth-secret", required=True,
                    help="AUTH_SECRET of the server, to mint user tokens")
    ap.add_argument("--rounds", type=int, default=10,
                    help="Number of checkouts to run")
    ap.add_argument("--duplicates", type=int, default=8,
                    help="Identical verify posts per checkout")
    ap.add_argument("--concurrency", type=int, default=4,
                    help="Rounds in flight at once")
    args = ap.parse_args()

    if args.duplicates < 2:
        print("Warning: fewer than 2 duplicates exercises no race.")

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        event_id=args.event,
        auth_secret=args.auth_secret,
        rounds=args.rounds,
        duplicates=args.duplicates,
        concurrency=args.concurrency,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
