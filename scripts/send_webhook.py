"""Deliver a signed gateway webhook to a running payments service.

Useful for replaying a missed notification or for out-of-order and
duplicate-delivery testing.
"""

import argparse
import hashlib
import json

import httpx


def authorization_header(username: str, password: str) -> str:
    """Header value the gateway sends: sha256 of `username:password`."""

    return hashlib.sha256(f"{username}:{password}".encode("utf-8")).hexdigest()


def main() -> None:
    """Parse CLI args and POST one webhook body."""

    parser = argparse.ArgumentParser(description="Send a signed payment webhook.")
    parser.add_argument("--payments-url", default="http://localhost:8000")
    parser.add_argument("--username", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--state", default="COMPLETED", help="COMPLETED, FAILED, CANCELLED, EXPIRED, ...")
    parser.add_argument("--event", default="checkout.order.completed")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same body this many times")
    args = parser.parse_args()

    body = {"event": args.event, "payload": {"orderId": args.order_id, "state": args.state}}
    headers = {"Authorization": authorization_header(args.username, args.password)}
    with httpx.Client(timeout=10.0) as client:
        for _ in range(args.repeat):
            resp = client.post(f"{args.payments_url}/payments/webhook", json=body, headers=headers)
            print(f"status={resp.status_code} body={json.dumps(resp.json())}")


if __name__ == "__main__":
    main()
