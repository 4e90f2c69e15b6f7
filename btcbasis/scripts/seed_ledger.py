#!/usr/bin/env python3
"""
btcbasis/scripts/seed_ledger.py

Seeds a demo company through the running API: three purchases, one
received and one sent transaction, then asks for the sent transaction's
cost basis (write-through) and prints the FIFO slices.

Usage:
    uvicorn btcbasis.main:app          # in one shell
    python btcbasis/scripts/seed_ledger.py [--base-url http://127.0.0.1:8000]
"""

import argparse
import sys

import requests

SEED_PURCHASES = [
    {"purchase_date": "2024-01-10T12:00:00Z", "amount_btc": "0.5", "cost_basis_usd": "10000"},
    {"purchase_date": "2024-02-10T12:00:00Z", "amount_btc": "0.3", "cost_basis_usd": "7000"},
    {"purchase_date": "2024-03-10T12:00:00Z", "amount_btc": "0.2", "cost_basis_usd": "5000"},
]

SEED_TRANSACTIONS = [
    {"tx_type": "received", "amount_btc": "0.05", "timestamp": "2024-03-15T09:00:00Z"},
    {"tx_type": "sent", "amount_btc": "0.6", "usd_value": "39000", "timestamp": "2024-04-01T12:00:00Z"},
]


def post(session: requests.Session, url: str, payload: dict) -> dict:
    r = session.post(url, json=payload)
    if not r.ok:
        print(f"FAIL: POST {url} => {r.status_code} {r.text}")
        sys.exit(1)
    return r.json()


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed a demo ledger via the API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--company", default="Demo Co")
    args = parser.parse_args()

    api = f"{args.base_url.rstrip('/')}/api/companies"
    session = requests.Session()

    company = post(session, f"{api}/", {"name": args.company})
    cid = company["id"]
    print(f"Created company {cid} ({company['name']})")

    for lot in SEED_PURCHASES:
        created = post(session, f"{api}/{cid}/purchases", lot)
        print(f"  lot {created['id']}: {created['amount_btc']} BTC for ${created['cost_basis_usd']}")

    sent_id = None
    for tx in SEED_TRANSACTIONS:
        created = post(session, f"{api}/{cid}/transactions", tx)
        print(f"  tx {created['id']}: {created['tx_type']} {created['amount_btc']} BTC")
        if created["tx_type"] == "sent":
            sent_id = created["id"]

    summary = post(session, f"{api}/{cid}/cost-basis/{sent_id}", {})
    print(f"\nCost basis for tx {sent_id}: ${summary['cost_basis_usd']} "
          f"(gain/loss ${summary['gain_loss_usd']})")
    for lot in summary["lots"]:
        print(f"  lot {lot['purchase_id']}: {lot['btc_used']} BTC => ${lot['cost_basis_used']}")
    if summary["insufficient_btc"]:
        print(f"WARNING: only {summary['amount_matched']} of {summary['amount_requested']} BTC matched")
    return 0


if __name__ == "__main__":
    sys.exit(main())
