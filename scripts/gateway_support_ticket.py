"""Fetch gateway diagnostics from a running payment service.

Prints either the most recent gateway log entries or the support-ticket
summary for one BD-Traceid, ready to paste into a BillDesk support request.
"""

import argparse
import json
import os

import requests


def fetch(base_url: str, api_key: str, path: str, params: dict | None = None) -> dict:
    resp = requests.get(
        f"{base_url.rstrip('/')}{path}",
        headers={"x-api-key": api_key},
        params=params,
        timeout=10,
    )
    resp.raise_for_status()
    return resp.json()


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--base-url", default=os.getenv("PAYMENTS_URL", "http://localhost:8000"))
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--trace-id", help="BD-Traceid to summarise; omit to list recent entries")
    parser.add_argument("--count", type=int, default=10)
    args = parser.parse_args()

    try:
        if args.trace_id:
            payload = fetch(args.base_url, args.api_key, f"/ops/billdesk-logs/support-ticket/{args.trace_id}")
            ticket = payload["ticket"]
            ticket.pop("full_logs", None)
            print(json.dumps(ticket, indent=2))
        else:
            payload = fetch(args.base_url, args.api_key, "/ops/billdesk-logs/recent", {"count": args.count})
            for entry in payload["logs"]:
                print(f"{entry['timestamp']} {entry['type']:<8} trace={entry['trace_id']} order={entry['order_number']}")
    except requests.HTTPError as exc:
        print(f"Request failed: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
