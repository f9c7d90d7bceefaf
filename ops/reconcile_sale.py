"""
Record one externally settled sale that never reached the ledger.

    python -m ops.reconcile_sale --slug abc12345 --buyer 0x... --seller 0x... \
        --price 5 --chain-id 8453 --timestamp 2025-01-30T12:00:00Z --tx-hash 0x... --yes

Runs as a dry run unless --yes is given.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
import urllib.request
import urllib.error


DEFAULT_BASE_URL = os.getenv("MARKET_BASE_URL", "http://localhost:8000")
DEFAULT_ADMIN_KEY = os.getenv("INTERNAL_ADMIN_KEY", "")

DEFAULT_TIMEOUT_SECONDS = 30


def http_post(url: str, payload: dict[str, Any], admin_key: str) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url=url,
        data=data,
        method="POST",
        headers={
            "Content-Type": "application/json",
            "X-Internal-Admin-Key": admin_key,
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=DEFAULT_TIMEOUT_SECONDS) as resp:
            raw = resp.read().decode("utf-8")
            return json.loads(raw) if raw else {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        print(f"HTTP {e.code} {e.reason} for {url}", file=sys.stderr)
        if body:
            print(body, file=sys.stderr)
        return {"error": {"status": e.code, "reason": e.reason, "body": body}}
    except urllib.error.URLError as e:
        print(f"Network error for {url}: {e}", file=sys.stderr)
        return {"error": {"reason": str(e)}}


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 (a trailing Z is accepted) or unix milliseconds."""
    if value.isdigit():
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Reconcile a settled sale missing from the ledger.")
    p.add_argument("--slug", required=True)
    p.add_argument("--buyer", required=True, help="buyer wallet address")
    p.add_argument("--seller", required=True, help="seller wallet address (must match the listing)")
    p.add_argument("--price", required=True, help="USDC amount actually paid, e.g. 5 or 0.75")
    p.add_argument("--chain-id", required=True, type=int)
    p.add_argument("--timestamp", required=True, help="settlement time, ISO-8601 or unix ms")
    p.add_argument("--tx-hash", default=None)
    p.add_argument("--base-url", default=DEFAULT_BASE_URL)
    p.add_argument("--admin-key", default=DEFAULT_ADMIN_KEY)
    p.add_argument("--dry-run", action="store_true", help="report what would be recorded")
    p.add_argument("--yes", action="store_true", help="required to write the transaction (safety)")
    return p


def build_payload(args: argparse.Namespace) -> dict[str, Any]:
    try:
        price = Decimal(args.price)
    except InvalidOperation:
        raise ValueError(f"invalid price: {args.price}")
    return {
        "listingSlug": args.slug.strip(),
        "buyerAddress": args.buyer.strip(),
        "sellerAddress": args.seller.strip(),
        "priceUsdc": str(price),
        "chainId": args.chain_id,
        "timestamp": parse_timestamp(args.timestamp).isoformat(),
        "txHash": args.tx_hash,
        "dryRun": args.dry_run or not args.yes,
    }


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if not args.admin_key:
        print("Missing INTERNAL_ADMIN_KEY (env) or --admin-key", file=sys.stderr)
        return 2

    try:
        payload = build_payload(args)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2

    if payload["dryRun"]:
        print("Dry run: nothing will be written. Re-run with --yes to record.", file=sys.stderr)

    resp = http_post(f"{args.base_url.rstrip('/')}/v1/internal/reconciliations", payload, args.admin_key)
    print(json.dumps(resp, indent=2, ensure_ascii=False))
    return 0 if "error" not in resp else 1


if __name__ == "__main__":
    raise SystemExit(main())
