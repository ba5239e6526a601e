#!/usr/bin/env python3
"""
Renew FIC webhook subscriptions expiring within the lead window.

Usage (from project root):
    python scripts/renew_subscriptions.py [--days 15] [--dry-run]
"""

import argparse
import os
import sys

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from src.services.subscriptions import renew_expiring_subscriptions


def main():
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--days", type=int, default=None, help="lead window in days")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    result = renew_expiring_subscriptions(lead_days=args.days, dry_run=args.dry_run)
    print(f"Renewal sweep up to {result.cutoff.isoformat()} ({result.lead_days} days)")
    for item in result.items:
        line = f"  {item.result:<16} {item.remote_id} (account {item.account_id})"
        if item.error:
            line += f": {item.error}"
        print(line)
    print(f"renewed={result.renewed} skipped_expired={result.skipped_expired} failed={result.failed}")
    sys.exit(1 if result.failed else 0)


if __name__ == "__main__":
    main()
