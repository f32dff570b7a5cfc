"""Trigger one reconciliation sweep and print its report JSON."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for on-demand reconciliation of pending payments."""

    parser = argparse.ArgumentParser(description="Poll the gateway for stale pending payments.")
    parser.add_argument("--payments-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="dev-secret")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--min-age-seconds", type=int, default=60)
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.payments_url}/internal/reconcile",
        params={"limit": args.limit, "min_age_seconds": args.min_age_seconds},
        headers={"x-api-key": args.api_key},
        timeout=120.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
