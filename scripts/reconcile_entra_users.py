#!/usr/bin/env python3
"""
Link legacy users that already have an Entra account.

A migration can create the Entra user and then fail to mark the legacy
record (database outage, process crash). This script finds unmigrated
active users whose email already exists in Entra and stores the Entra
object id on the legacy record.

Usage:
    python scripts/reconcile_entra_users.py --dry-run --limit 50
    python scripts/reconcile_entra_users.py --limit 1000
    python scripts/reconcile_entra_users.py --all --yes

Environment variables required:
    DB_URL (or DB_HOST, DB_PORT, DB_USER, DB_PASSWORD, DB_NAME)
    ENTRA_TENANT_ID, ENTRA_CLIENT_ID, ENTRA_CLIENT_SECRET, ENTRA_TENANT_NAME
"""

import argparse
import asyncio
import sys
from typing import Optional

from bridge.core.logging import setup_logging
from bridge.schemas.migration import ReconciliationReport
from bridge.services.errors import BridgeError
from bridge.services.graph_service import GraphService
from bridge.services.reconciliation_service import ReconciliationService


def print_summary(report: ReconciliationReport) -> None:
    print("\n" + "=" * 80)
    print("RECONCILIATION SUMMARY" + (" (DRY RUN)" if report.dry_run else ""))
    print("=" * 80)
    print(f"Users checked: {report.checked}")
    print(f"{'Would link' if report.dry_run else 'Linked'}: {report.linked}")
    print(f"Not in Entra: {report.missing_remotely}")
    print(f"Errors: {report.errors}")

    for item in report.items:
        if item.status == "error":
            print(f"  ✗ User {item.user_id} ({item.email}): {item.error}")
        else:
            print(f"  ✓ User {item.user_id} ({item.email}) -> {item.entra_user_id}")

    print("=" * 80)


async def run(limit: Optional[int], dry_run: bool) -> ReconciliationReport:
    graph = GraphService()
    try:
        service = ReconciliationService(identity=graph)
        return await service.reconcile(limit=limit, dry_run=dry_run)
    finally:
        await graph.aclose()


def main():
    """Main function."""
    parser = argparse.ArgumentParser(
        description="Link unmigrated legacy users that already exist in Entra"
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Number of users to check (default: 100)",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Check every unmigrated active user (ignores --limit)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report matches without updating the database",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Do not ask for confirmation",
    )
    args = parser.parse_args()

    limit = None if args.all else args.limit
    if limit is not None and limit < 1:
        parser.error("--limit must be at least 1")

    setup_logging()

    print("=" * 80)
    print("RECONCILE LEGACY USERS WITH ENTRA")
    print("=" * 80)
    print(f"Limit: {'all' if limit is None else limit}")
    print(f"Dry run: {args.dry_run}")
    print("=" * 80)

    if not args.dry_run and not args.yes:
        response = input("\nThis will update legacy user records. Continue? (yes/no): ")
        if response.lower() not in ["yes", "y"]:
            print("Aborted.")
            return

    try:
        report = asyncio.run(run(limit, args.dry_run))
    except (BridgeError, ValueError) as e:
        print(f"\n❌ Fatal error: {e}")
        sys.exit(1)

    print_summary(report)
    if report.errors:
        sys.exit(2)


if __name__ == "__main__":
    main()
