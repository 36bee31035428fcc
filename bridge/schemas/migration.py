"""
Pydantic schemas for bulk and single-user migration.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bridge.core.config import settings

OutcomeStatus = Literal["migrated", "skipped", "failed"]

SKIP_ALREADY_MIGRATED = "already migrated"
SKIP_EXISTS_REMOTELY = "already exists remotely"
SKIP_USER_NOT_FOUND = "user not found"


class CamelModel(BaseModel):
    """Base model exposing camelCase field names on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BulkMigrationRequest(CamelModel):
    batch_size: int = Field(
        settings.MIGRATION_DEFAULT_BATCH_SIZE,
        ge=1,
        le=200,
        description="Users migrated concurrently per chunk",
    )
    delay_between_batches: int = Field(
        settings.MIGRATION_DEFAULT_DELAY_MS,
        ge=1000,
        description="Pause between chunks in milliseconds",
    )
    limit: Optional[int] = Field(
        None, ge=1, description="Maximum number of users to process"
    )
    send_emails: bool = Field(
        False, description="Email temporary passwords to migrated users"
    )
    timeout_seconds: Optional[int] = Field(
        None, ge=1, description="Stop starting new chunks after this many seconds"
    )


class SingleMigrationRequest(CamelModel):
    send_email: bool = False


class MigrationOutcome(CamelModel):
    """Result of one migration attempt for one user."""

    user_id: int
    email: Optional[str] = None
    status: OutcomeStatus
    entra_user_id: Optional[str] = None
    temporary_password: Optional[str] = None
    reason: Optional[str] = Field(None, description="Why the user was skipped")
    error: Optional[str] = Field(None, description="Failure detail")
    error_kind: Optional[str] = None

    @classmethod
    def migrated(
        cls,
        user_id: int,
        email: str,
        entra_user_id: str,
        temporary_password: Optional[str] = None,
    ) -> "MigrationOutcome":
        return cls(
            user_id=user_id,
            email=email,
            status="migrated",
            entra_user_id=entra_user_id,
            temporary_password=temporary_password,
        )

    @classmethod
    def skipped(
        cls, user_id: int, reason: str, email: Optional[str] = None
    ) -> "MigrationOutcome":
        return cls(user_id=user_id, email=email, status="skipped", reason=reason)

    @classmethod
    def failed(
        cls,
        user_id: int,
        error: str,
        error_kind: str,
        email: Optional[str] = None,
    ) -> "MigrationOutcome":
        return cls(
            user_id=user_id,
            email=email,
            status="failed",
            error=error,
            error_kind=error_kind,
        )


class BatchSummary(CamelModel):
    total_processed: int
    successful: int
    failed: int
    skipped: int


class BatchResult(CamelModel):
    """Aggregate of one bulk migration run, outcomes in candidate order."""

    run_id: str
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False
    results: List[MigrationOutcome] = []

    @classmethod
    def from_outcomes(
        cls, run_id: str, outcomes: List[MigrationOutcome], cancelled: bool = False
    ) -> "BatchResult":
        return cls(
            run_id=run_id,
            total_processed=len(outcomes),
            successful=sum(1 for o in outcomes if o.status == "migrated"),
            failed=sum(1 for o in outcomes if o.status == "failed"),
            skipped=sum(1 for o in outcomes if o.status == "skipped"),
            cancelled=cancelled,
            results=list(outcomes),
        )

    @property
    def summary(self) -> BatchSummary:
        return BatchSummary(
            total_processed=self.total_processed,
            successful=self.successful,
            failed=self.failed,
            skipped=self.skipped,
        )


class BulkMigrationResponse(CamelModel):
    message: str
    run_id: str
    cancelled: bool
    summary: BatchSummary
    results: List[MigrationOutcome]


class SingleMigrationResponse(CamelModel):
    message: str
    data: MigrationOutcome


class MigrationProgress(CamelModel):
    total: int
    migrated: int
    pending: int
    percent_complete: float


class MigrationStatusResponse(CamelModel):
    status: str
    timestamp: datetime
    stats: MigrationProgress


class MigrationProgressResponse(CamelModel):
    message: str
    data: MigrationProgress


class CancelMigrationResponse(CamelModel):
    message: str
    cancelled_runs: List[str]


class ReconcileRequest(CamelModel):
    limit: Optional[int] = Field(None, ge=1)
    dry_run: bool = False


class ReconciliationItem(CamelModel):
    user_id: int
    email: str
    status: Literal["linked", "would_link", "missing_remotely", "error"]
    entra_user_id: Optional[str] = None
    error: Optional[str] = None


class ReconciliationReport(CamelModel):
    dry_run: bool = False
    checked: int = 0
    linked: int = 0
    missing_remotely: int = 0
    errors: int = 0
    items: List[ReconciliationItem] = []
