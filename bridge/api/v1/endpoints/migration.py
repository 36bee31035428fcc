"""
Migration endpoints: bulk and single-user migration, cancellation,
reconciliation and progress.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status

from bridge.api.deps import require_admin_api_key
from bridge.core.logging import get_logger
from bridge.schemas.migration import (
    BulkMigrationRequest,
    BulkMigrationResponse,
    CancelMigrationResponse,
    MigrationProgressResponse,
    MigrationStatusResponse,
    ReconcileRequest,
    ReconciliationReport,
    SingleMigrationRequest,
    SingleMigrationResponse,
)
from bridge.services.errors import (
    BridgeError,
    StoreUnavailableError,
    UserNotFoundError,
)
from bridge.services.migration_service import (
    BulkMigrationOptions,
    MigrationRunControl,
    migration_service,
)
from bridge.services.reconciliation_service import reconciliation_service

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


def _store_unavailable(e: StoreUnavailableError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": "Datastore unavailable", "details": e.message},
    )


@router.post(
    "/start", response_model=BulkMigrationResponse, response_model_exclude_none=True
)
async def start_bulk_migration(
    request: Optional[BulkMigrationRequest] = Body(None),
):
    """
    Migrate unmigrated active users to Entra in chunks.

    Users are processed oldest first, ``batchSize`` at a time, pausing
    ``delayBetweenBatches`` milliseconds between chunks. Per-user failures
    are reported in ``results``; the call itself succeeds unless the
    candidate list cannot be loaded.

    Raises:
        503: Datastore unavailable
    """
    request = request or BulkMigrationRequest()
    options = BulkMigrationOptions(
        batch_size=request.batch_size,
        delay_between_batches_ms=request.delay_between_batches,
        limit=request.limit,
        send_emails=request.send_emails,
    )
    control = MigrationRunControl(timeout_seconds=request.timeout_seconds)

    try:
        result = await migration_service.bulk_migrate(options, control)
    except StoreUnavailableError as e:
        raise _store_unavailable(e)

    return BulkMigrationResponse(
        message=(
            "Bulk migration cancelled" if result.cancelled else "Bulk migration completed"
        ),
        run_id=result.run_id,
        cancelled=result.cancelled,
        summary=result.summary,
        results=result.results,
    )


@router.post(
    "/user/{user_id}",
    response_model=SingleMigrationResponse,
    response_model_exclude_none=True,
)
async def migrate_user(
    user_id: int, request: Optional[SingleMigrationRequest] = Body(None)
):
    """
    Migrate one user.

    Raises:
        404: Unknown user
        409: User skipped (already migrated or already in Entra)
        400: Migration failed
        503: Datastore unavailable
    """
    send_email = request.send_email if request else False
    try:
        outcome = await migration_service.migrate_single_user(
            user_id, send_email=send_email
        )
    except UserNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        )
    except StoreUnavailableError as e:
        raise _store_unavailable(e)
    except BridgeError as e:
        logger.warning(
            "Single user migration failed",
            extra={"user_id": user_id, "error": e.message, "error_kind": e.kind},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Migration failed",
                "details": e.message,
                "errorKind": e.kind,
            },
        )

    if outcome.status == "skipped":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "Migration skipped",
                "details": outcome.reason,
                "data": outcome.model_dump(by_alias=True, exclude_none=True),
            },
        )

    return SingleMigrationResponse(message="User migrated successfully", data=outcome)


@router.post("/cancel", response_model=CancelMigrationResponse)
async def cancel_migrations(run_id: Optional[str] = None):
    """Cancel running bulk migrations, or only ``run_id`` when given."""
    cancelled = migration_service.cancel_runs(run_id)
    return CancelMigrationResponse(
        message=(
            f"Cancelled {len(cancelled)} migration run(s)"
            if cancelled
            else "No active migration runs"
        ),
        cancelled_runs=cancelled,
    )


@router.post("/reconcile", response_model=ReconciliationReport)
async def reconcile_migrations(request: Optional[ReconcileRequest] = Body(None)):
    """Link unmigrated users that already exist in Entra."""
    request = request or ReconcileRequest()
    try:
        return await reconciliation_service.reconcile(
            limit=request.limit, dry_run=request.dry_run
        )
    except StoreUnavailableError as e:
        raise _store_unavailable(e)


@router.get("/status", response_model=MigrationStatusResponse)
async def migration_status():
    try:
        stats = await migration_service.get_progress()
    except StoreUnavailableError as e:
        raise _store_unavailable(e)
    return MigrationStatusResponse(
        status="operational", timestamp=datetime.now(timezone.utc), stats=stats
    )


@router.get("/progress", response_model=MigrationProgressResponse)
async def migration_progress():
    try:
        stats = await migration_service.get_progress()
    except StoreUnavailableError as e:
        raise _store_unavailable(e)
    return MigrationProgressResponse(message="Migration progress", data=stats)
