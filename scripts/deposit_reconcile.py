"""Fetch and print the balance reconciliation report JSON.

Exits non-zero when any user's balance disagrees with their ledger.
"""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for balance invariant checks."""

    parser = argparse.ArgumentParser(description="Fetch deposit scanner reconciliation report.")
    parser.add_argument("--scanner-url", default="http://localhost:8010")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", ""))
    parser.add_argument("--limit", type=int, default=1000)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.scanner_url}/reconciliation",
        params={"limit": args.limit},
        headers={"x-api-key": args.api_key},
        timeout=10.0,
    )
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if report["mismatched_count"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
