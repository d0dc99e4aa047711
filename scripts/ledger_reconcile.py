"""Reconcile ledger operations and print a JSON report."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for per-operation reconciliation checks."""

    parser = argparse.ArgumentParser(description="Check that ledger operations carry their exact external flow.")
    parser.add_argument("operation_ids", nargs="+")
    parser.add_argument("--ledger-url", default="http://localhost:8004")
    parser.add_argument("--api-key", default="dev-secret")
    args = parser.parse_args()

    reports = []
    with httpx.Client(timeout=10.0, headers={"x-api-key": args.api_key}) as client:
        for operation_id in args.operation_ids:
            resp = client.get(f"{args.ledger_url}/reconciliation/{operation_id}")
            resp.raise_for_status()
            reports.append(resp.json())
    imbalanced = [r["operation_id"] for r in reports if not r["balanced"]]
    print(json.dumps({"checked": len(reports), "imbalanced": imbalanced, "reports": reports}, indent=2))
    if imbalanced:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
