#!/usr/bin/env python3
"""
GatePass webhook replay (async)

Signs a gateway event envelope and POSTs it to a webhook URL, optionally
fanned out to many concurrent deliveries of the very same body. Useful to
re-drive a delivery the gateway gave up on, and to watch duplicate
deliveries collapse into one settlement.

Usage:
  python -m gatepass.replay --url http://localhost:8000/api/payments/webhook \
                            --reference PSK_123 --reservation-ids r1,r2

  python -m gatepass.replay --url http://localhost:8000/api/payments/webhook \
                            --body-file captured.json --total 50 \
                            --concurrency 50

The secret defaults to $WEBHOOK_SECRET (then $PAYSTACK_SECRET_KEY).
"""

import argparse
import asyncio
import json
import os
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .gateway import sign_payload


def build_envelope(
    reference: str,
    reservation_ids: Optional[List[str]] = None,
    amount: int = 0,
    currency: str = "GHS",
    event: str = "charge.success",
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {}
    if reservation_ids:
        metadata["reservation_ids"] = ",".join(reservation_ids)
    return {
        "event": event,
        "data": {
            "reference": reference,
            "status": "success",
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
        },
    }


def signed_delivery(
    body: bytes, secret: str, header: str = "x-signature"
) -> Tuple[bytes, Dict[str, str]]:
    return body, {
        "content-type": "application/json",
        header: sign_payload(body, secret),
    }


@dataclass
class Result:
    status: int  # 0 when the request never got an answer
    elapsed: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def histogram(self) -> Dict[int, int]:
        return dict(sorted(Counter(r.status for r in self.results).items()))

    def summary(self) -> Dict[str, float]:
        lat = sorted(r.elapsed for r in self.results if r.status)

        def pct(p):
            if not lat:
                return 0.0
            k = int(max(0, min(len(lat)-1, round(p/100*(len(lat)-1)))))
            return lat[k]
        return {
            "total": len(self.results),
            "errors": sum(1 for r in self.results if not r.status),
            "p50_s": pct(50),
            "p99_s": pct(99),
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Replay Summary ===")
        print("Status histogram: " + "   ".join(
            f"{code or 'ERR'}: {n}" for code, n in self.histogram().items()
        ))
        print(
            f"Total: {int(s['total'])}   Transport errors: "
            f"{int(s['errors'])}   p50 {s['p50_s']:.3f}s   "
            f"p99 {s['p99_s']:.3f}s"
        )
        print(f"Wall time: {elapsed_s:.3f}s")


async def deliver(
    client: httpx.AsyncClient, url: str, body: bytes, headers: Dict[str, str]
) -> Result:
    t0 = time.perf_counter()
    try:
        resp = await client.post(url, content=body, headers=headers)
    except httpx.HTTPError as e:
        return Result(status=0, err=str(e))
    return Result(status=resp.status_code, elapsed=time.perf_counter() - t0)


async def run_replay(
    url: str,
    body: bytes,
    headers: Dict[str, str],
    total: int = 1,
    concurrency: int = 1,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Stats:
    sem = asyncio.Semaphore(max(1, concurrency))
    stats = Stats()
    async with httpx.AsyncClient(
        timeout=timeout, transport=transport,
        headers={"User-Agent": "GatePassReplay/1.0"},
    ) as client:

        async def worker():
            async with sem:
                stats.add(await deliver(client, url, body, headers))

        await asyncio.gather(*(worker() for _ in range(total)))
    return stats


def main(argv: Optional[List[str]] = None):
    ap = argparse.ArgumentParser(description="GatePass webhook replay")
    ap.add_argument("--url", required=True, help="Webhook URL")
    ap.add_argument("--reference", help="Gateway transaction reference")
    ap.add_argument("--reservation-ids", default="",
                    help="Comma-separated reservation ids for metadata")
    ap.add_argument("--amount", type=int, default=0,
                    help="Charged amount in minor units")
    ap.add_argument("--currency", default="GHS")
    ap.add_argument("--body-file",
                    help="Replay a captured raw envelope instead")
    ap.add_argument("--secret", default=(
        os.getenv("WEBHOOK_SECRET") or os.getenv("PAYSTACK_SECRET_KEY", "")
    ))
    ap.add_argument("--legacy-header", action="store_true",
                    help="Sign into X-Paystack-Signature")
    ap.add_argument("--total", type=int, default=1,
                    help="Total deliveries")
    ap.add_argument("--concurrency", type=int, default=1,
                    help="Concurrent deliveries")
    args = ap.parse_args(argv)

    if not args.secret:
        ap.error("no signing secret (set --secret or WEBHOOK_SECRET)")

    if args.body_file:
        with open(args.body_file, "rb") as f:
            body = f.read()
    elif args.reference:
        ids = [p.strip() for p in args.reservation_ids.split(",") if p.strip()]
        body = json.dumps(build_envelope(
            args.reference, ids, args.amount, args.currency
        )).encode()
    else:
        ap.error("either --reference or --body-file is required")

    header = "x-paystack-signature" if args.legacy_header else "x-signature"
    body, headers = signed_delivery(body, args.secret, header)

    print(
        f"Replaying to {args.url}  total={args.total}  "
        f"concurrency={args.concurrency}"
    )
    t0 = time.perf_counter()
    stats = asyncio.run(run_replay(
        args.url, body, headers, args.total, args.concurrency
    ))
    stats.print(time.perf_counter() - t0)


if __name__ == "__main__":
    main()
