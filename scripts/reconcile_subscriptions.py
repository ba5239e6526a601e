#!/usr/bin/env python3
"""
Reconcile FIC webhook subscriptions against the remote subscription lists.

Usage (from project root):
    python scripts/reconcile_subscriptions.py [--account ACCOUNT_ID] [--apply]

Without --apply the pass is a dry run. Exits non-zero when any account reported errors.
"""

import argparse
import os
import sys

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from src.services.reconciler import run_reconciliation


def main():
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--account", dest="account_id", default=None)
    parser.add_argument("--apply", action="store_true", help="write changes (default: dry run)")
    args = parser.parse_args()

    result = run_reconciliation(account_id=args.account_id, dry_run=not args.apply)
    print(f"Reconciliation ({'dry run' if result.dry_run else 'applied'}) for {len(result.accounts)} account(s)")
    failures = 0
    for report in result.accounts:
        print(
            f"  account {report.account_id}: remote={report.remote_count} "
            f"unchanged={report.matched_unchanged} updated={report.updated} "
            f"group_corrected={report.group_key_corrected} misrouted_recreated={report.misrouted_recreated} "
            f"new={report.newly_discovered} missing_remotely={report.deactivated_missing} errored={report.errored}"
        )
        for error in report.errors:
            print(f"    ! {error}")
        failures += report.errored
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
