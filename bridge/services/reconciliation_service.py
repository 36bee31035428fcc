"""
Reconciliation of legacy users against Entra.

Heals the window where an Entra user was created but the local record was
never marked: every unmigrated active user is looked up in Entra by email,
and found identities are linked back with the same conditional update the
migration uses.
"""

import json
from typing import Any, Optional

from bridge.core.logging import get_logger
from bridge.schemas.migration import ReconciliationItem, ReconciliationReport
from bridge.services import graph_service as graph_module
from bridge.services import user_store as store_module
from bridge.services.errors import BridgeError

logger = get_logger(__name__)


class ReconciliationService:
    def __init__(self, store: Optional[Any] = None, identity: Optional[Any] = None):
        self._store = store
        self._identity = identity

    @property
    def store(self):
        return self._store or store_module.user_store

    @property
    def identity(self):
        return self._identity or graph_module.graph_service

    async def reconcile(
        self, limit: Optional[int] = None, dry_run: bool = False
    ) -> ReconciliationReport:
        """
        Link unmigrated local users that already have an Entra identity.

        Args:
            limit: Maximum number of local users to check
            dry_run: Report what would be linked without writing

        Returns:
            ReconciliationReport with counts and one item per user that was
            linked, would be linked, or failed

        Raises:
            StoreUnavailableError: The candidate list could not be fetched
        """
        candidates = await self.store.list_unmigrated(limit=limit, active_only=True)
        report = ReconciliationReport(dry_run=dry_run)

        for user in candidates:
            report.checked += 1
            try:
                remote = await self.identity.get_user_by_email(user.email)
                if remote is None:
                    report.missing_remotely += 1
                    continue

                entra_user_id = remote["id"]
                if dry_run:
                    status = "would_link"
                elif await self.store.mark_migrated(user.id, entra_user_id):
                    status = "linked"
                else:
                    # Migrated by someone else since the candidate fetch
                    continue

                report.linked += 1
                report.items.append(
                    ReconciliationItem(
                        user_id=user.id,
                        email=user.email,
                        status=status,
                        entra_user_id=entra_user_id,
                    )
                )
            except BridgeError as e:
                report.errors += 1
                report.items.append(
                    ReconciliationItem(
                        user_id=user.id, email=user.email, status="error", error=e.message
                    )
                )
                logger.warning(
                    "Reconciliation failed for user",
                    extra={"user_id": user.id, "error": e.message, "error_kind": e.kind},
                )

        logger.info(
            json.dumps(
                {
                    "event": "reconciliation_completed",
                    "dry_run": dry_run,
                    "checked": report.checked,
                    "linked": report.linked,
                    "missing_remotely": report.missing_remotely,
                    "errors": report.errors,
                }
            )
        )
        return report


reconciliation_service = ReconciliationService()
