"""
Migration of legacy users to Entra External ID.

This service handles:
- Deciding whether a user should be migrated
- Migrating a single user with a generated temporary password
- Migrating a user at login with their verified password (JIT)
- Bulk migration in sequential chunks with a pause between chunks
- Cancelling running bulk migrations

A user is only ever marked migrated through a conditional update that
applies while the flag is still false, and attempts for the same user id
are serialised within the process.
"""

import asyncio
import json
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from bridge.core.config import settings
from bridge.core.logging import get_logger
from bridge.core.metrics import get_metrics_collector
from bridge.schemas.migration import (
    SKIP_ALREADY_MIGRATED,
    SKIP_EXISTS_REMOTELY,
    SKIP_USER_NOT_FOUND,
    BatchResult,
    MigrationOutcome,
    MigrationProgress,
)
from bridge.schemas.user import LocalUser
from bridge.services import graph_service as graph_module
from bridge.services import notification_queue as notification_module
from bridge.services import user_store as store_module
from bridge.services.errors import (
    BridgeError,
    InconsistentStateError,
    RemoteCreateFailedError,
    RemoteError,
    StoreUnavailableError,
    UserNotFoundError,
)
from bridge.utils.password_generator import generate_secure_password

logger = get_logger(__name__)


@dataclass(frozen=True)
class Decision:
    proceed: bool
    reason: Optional[str] = None


PROCEED = Decision(proceed=True)


@dataclass
class BulkMigrationOptions:
    batch_size: int = settings.MIGRATION_DEFAULT_BATCH_SIZE
    delay_between_batches_ms: int = settings.MIGRATION_DEFAULT_DELAY_MS
    limit: Optional[int] = None
    send_emails: bool = False


class MigrationRunControl:
    """Cancellation flag and optional deadline for one bulk run."""

    def __init__(
        self, run_id: Optional[str] = None, timeout_seconds: Optional[float] = None
    ):
        self.run_id = run_id or uuid.uuid4().hex
        self.deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds else None
        )
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def should_stop(self) -> bool:
        return self.cancelled or self.expired

    def _remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    async def _wait_cancelled(self, timeout: Optional[float]) -> None:
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def wait(self, seconds: float) -> bool:
        """
        Sleep for ``seconds``, waking early on cancellation or deadline.

        Returns:
            True if the run should stop
        """
        remaining = self._remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        await self._wait_cancelled(seconds)
        return self.should_stop()

    async def stopped(self) -> None:
        """Return once the run is cancelled or its deadline passes."""
        await self._wait_cancelled(self._remaining())


class KeyedLocks:
    """One asyncio.Lock per key, discarded once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[Any, asyncio.Lock] = {}
        self._users: Dict[Any, int] = defaultdict(int)

    def _forget(self, key: Any) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    def _release(self, key: Any) -> None:
        self._locks[key].release()
        self._forget(key)

    @asynccontextmanager
    async def hold(self, key: Any) -> AsyncIterator["LockHold"]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(key)
            raise

        hold = LockHold()
        try:
            yield hold
        finally:
            pending = hold.pending
            if pending is not None and not pending.done():
                pending.add_done_callback(lambda _: self._release(key))
            else:
                self._release(key)

    def __len__(self) -> int:
        return len(self._locks)


class LockHold:
    """Lets a holder keep its lock until a detached task finishes."""

    def __init__(self):
        self.pending: Optional[asyncio.Future] = None

    def keep_until(self, future: asyncio.Future) -> None:
        self.pending = future


class MigrationService:
    """Migrates legacy users into Entra."""

    def __init__(
        self,
        store: Optional[Any] = None,
        identity: Optional[Any] = None,
        notifier: Optional[Any] = None,
    ):
        self._store = store
        self._identity = identity
        self._notifier = notifier
        self._locks = KeyedLocks()
        self._active_runs: Dict[str, MigrationRunControl] = {}

    # Collaborators default to the module singletons, looked up per call

    @property
    def store(self):
        return self._store or store_module.user_store

    @property
    def identity(self):
        return self._identity or graph_module.graph_service

    @property
    def notifier(self):
        return self._notifier or notification_module.notification_queue

    # Decision

    async def decide(self, user: LocalUser) -> Decision:
        """
        Decide whether ``user`` should be migrated.

        Rules, first match wins:
        1. already flagged as migrated locally
        2. an Entra user with this email already exists

        Raises:
            RemoteError: If the existence check itself fails
        """
        if user.migrated_to_entra:
            return Decision(proceed=False, reason=SKIP_ALREADY_MIGRATED)
        if await self.identity.user_exists(user.email):
            return Decision(proceed=False, reason=SKIP_EXISTS_REMOTELY)
        return PROCEED

    # Single user

    def _report_inconsistent(
        self, user: LocalUser, entra_user_id: str, mode: str, error: str
    ) -> None:
        get_metrics_collector().record_inconsistent_state(mode)
        logger.error(
            json.dumps(
                {
                    "event": "migration_inconsistent_state",
                    "user_id": user.id,
                    "email": user.email,
                    "entra_user_id": entra_user_id,
                    "mode": mode,
                    "error": error,
                }
            )
        )

    async def _create_and_mark(
        self, user: LocalUser, password: str, force_change: bool, mode: str
    ) -> str:
        try:
            entra_user_id = await self.identity.create_user(
                user, password, force_change=force_change
            )
        except RemoteError as e:
            raise RemoteCreateFailedError(
                f"Failed to create Entra user: {e.message}", cause_kind=e.kind
            ) from e

        try:
            marked = await self.store.mark_migrated(user.id, entra_user_id)
        except StoreUnavailableError as e:
            self._report_inconsistent(user, entra_user_id, mode, str(e))
            raise InconsistentStateError(
                "Entra user created but the local record could not be updated",
                user_id=user.id,
                entra_user_id=entra_user_id,
            ) from e

        if not marked:
            self._report_inconsistent(
                user, entra_user_id, mode, "user was migrated concurrently"
            )
            raise InconsistentStateError(
                "Entra user created but the user was already marked migrated",
                user_id=user.id,
                entra_user_id=entra_user_id,
            )
        return entra_user_id

    async def _create_and_mark_shielded(
        self,
        hold: LockHold,
        user: LocalUser,
        password: str,
        force_change: bool,
        mode: str,
    ) -> str:
        """
        Run create and mark as one unit that cancellation cannot split.

        A cancelled caller returns at once; the unit finishes in the
        background and the per-user lock stays held until it does.
        """
        task = asyncio.ensure_future(
            self._create_and_mark(user, password, force_change=force_change, mode=mode)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            hold.keep_until(task)
            task.add_done_callback(
                lambda done: self._log_detached_create(user, mode, done)
            )
            raise

    @staticmethod
    def _log_detached_create(user: LocalUser, mode: str, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        logger.warning(
            json.dumps(
                {
                    "event": "detached_create_finished",
                    "user_id": user.id,
                    "mode": mode,
                    "entra_user_id": None if error else task.result(),
                    "error": str(error) if error else None,
                }
            )
        )

    def user_lock(self, user_id: int):
        """Hold the per-user migration lock for ``user_id``."""
        return self._locks.hold(user_id)

    async def migrate_single_user(
        self, user_id: int, send_email: bool = False, mode: str = "single"
    ) -> MigrationOutcome:
        """
        Migrate one user with a generated temporary password.

        Args:
            user_id: Legacy user id
            send_email: Queue an email with the temporary password
            mode: Label for metrics and logs (single or batch)

        Returns:
            A migrated or skipped outcome

        Raises:
            UserNotFoundError: Unknown user id
            StoreUnavailableError: Datastore failure before any remote call
            RemoteError: The existence check failed
            RemoteCreateFailedError: Entra rejected the new user; nothing changed
            InconsistentStateError: Entra user created, local mark failed
        """
        metrics = get_metrics_collector()
        try:
            async with self._locks.hold(user_id) as hold:
                user = await self.store.get_user(user_id)

                decision = await self.decide(user)
                if not decision.proceed:
                    metrics.record_migration_outcome("skipped", mode)
                    logger.info(
                        "Migration skipped",
                        extra={"user_id": user_id, "reason": decision.reason, "mode": mode},
                    )
                    return MigrationOutcome.skipped(
                        user_id, decision.reason or "", email=user.email
                    )

                temporary_password = generate_secure_password(
                    settings.TEMPORARY_PASSWORD_LENGTH
                )
                entra_user_id = await self._create_and_mark_shielded(
                    hold, user, temporary_password, force_change=True, mode=mode
                )
        except UserNotFoundError:
            raise
        except BridgeError:
            metrics.record_migration_outcome("failed", mode)
            raise

        metrics.record_migration_outcome("migrated", mode)
        logger.info(
            json.dumps(
                {
                    "event": "user_migrated",
                    "user_id": user_id,
                    "entra_user_id": entra_user_id,
                    "mode": mode,
                }
            )
        )

        if send_email:
            self.notifier.submit(user.email, temporary_password, user_id=user_id)

        return MigrationOutcome.migrated(
            user_id, user.email, entra_user_id, temporary_password
        )

    async def migrate_with_password(
        self, user: LocalUser, password: str
    ) -> MigrationOutcome:
        """
        Migrate a user at login, reusing the password they just proved.

        The Entra account keeps that password without a forced change.
        Raises the same errors as migrate_single_user.
        """
        metrics = get_metrics_collector()
        try:
            async with self._locks.hold(user.id) as hold:
                # Re-read under the lock; another attempt may have finished
                current = await self.store.get_user(user.id)

                decision = await self.decide(current)
                if not decision.proceed:
                    metrics.record_migration_outcome("skipped", "jit")
                    return MigrationOutcome.skipped(
                        current.id, decision.reason or "", email=current.email
                    )

                entra_user_id = await self._create_and_mark_shielded(
                    hold, current, password, force_change=False, mode="jit"
                )
        except BridgeError:
            metrics.record_migration_outcome("failed", "jit")
            raise

        metrics.record_migration_outcome("migrated", "jit")
        logger.info(
            json.dumps(
                {
                    "event": "user_migrated",
                    "user_id": user.id,
                    "entra_user_id": entra_user_id,
                    "mode": "jit",
                }
            )
        )
        return MigrationOutcome.migrated(user.id, current.email, entra_user_id)

    # Bulk

    @staticmethod
    def _outcome_for(user: LocalUser, result: Any) -> MigrationOutcome:
        if isinstance(result, MigrationOutcome):
            return result
        if isinstance(result, UserNotFoundError):
            return MigrationOutcome.skipped(user.id, SKIP_USER_NOT_FOUND, user.email)
        if isinstance(result, BridgeError):
            return MigrationOutcome.failed(
                user.id, result.message, result.kind, email=user.email
            )
        if isinstance(result, Exception):
            logger.error(
                "Unexpected error migrating user",
                exc_info=result,
                extra={"user_id": user.id},
            )
            return MigrationOutcome.failed(
                user.id, str(result) or type(result).__name__, "internal", user.email
            )
        raise result

    async def _run_chunk(
        self,
        chunk: List[LocalUser],
        options: BulkMigrationOptions,
        control: MigrationRunControl,
    ) -> Tuple[List[MigrationOutcome], bool]:
        """
        Migrate one chunk concurrently, racing it against the run control.

        When the run is cancelled or its deadline passes, members still in
        flight are cancelled and reported as failed with kind ``cancelled``.

        Returns:
            The outcomes in chunk order and whether the chunk was interrupted
        """
        tasks = [
            asyncio.ensure_future(
                self.migrate_single_user(
                    user.id, send_email=options.send_emails, mode="batch"
                )
            )
            for user in chunk
        ]
        stop = asyncio.ensure_future(control.stopped())
        try:
            everything = asyncio.gather(*tasks, return_exceptions=True)
            await asyncio.wait({everything, stop}, return_when=asyncio.FIRST_COMPLETED)
            interrupted = not everything.done()
            if interrupted:
                for task in tasks:
                    task.cancel()
                await everything
        finally:
            stop.cancel()
            for task in tasks:
                task.cancel()

        outcomes = []
        for user, task in zip(chunk, tasks):
            if task.cancelled():
                outcomes.append(
                    MigrationOutcome.failed(
                        user.id,
                        "Migration cancelled before completion",
                        "cancelled",
                        email=user.email,
                    )
                )
            else:
                outcomes.append(
                    self._outcome_for(user, task.exception() or task.result())
                )
        return outcomes, interrupted

    async def bulk_migrate(
        self,
        options: BulkMigrationOptions,
        control: Optional[MigrationRunControl] = None,
    ) -> BatchResult:
        """
        Migrate unmigrated active users, oldest first.

        Candidates are split into consecutive chunks of ``batch_size``. Each
        chunk runs concurrently and the next one starts only after the whole
        chunk finished and ``delay_between_batches_ms`` elapsed. Per-user
        errors become failed outcomes.

        Raises:
            StoreUnavailableError: The candidate list could not be fetched
        """
        control = control or MigrationRunControl()
        self._active_runs[control.run_id] = control
        metrics = get_metrics_collector()
        outcomes: List[MigrationOutcome] = []
        stopped = False

        try:
            with metrics.track_batch():
                candidates = await self.store.list_unmigrated(
                    limit=options.limit, active_only=True
                )
                chunks = [
                    candidates[i : i + options.batch_size]
                    for i in range(0, len(candidates), options.batch_size)
                ]
                logger.info(
                    json.dumps(
                        {
                            "event": "bulk_migration_started",
                            "run_id": control.run_id,
                            "candidates": len(candidates),
                            "chunks": len(chunks),
                            "batch_size": options.batch_size,
                        }
                    )
                )

                for index, chunk in enumerate(chunks):
                    if control.should_stop():
                        stopped = True
                        break

                    chunk_outcomes, interrupted = await self._run_chunk(
                        chunk, options, control
                    )
                    outcomes.extend(chunk_outcomes)
                    logger.info(
                        "Migration chunk completed",
                        extra={
                            "run_id": control.run_id,
                            "chunk": index + 1,
                            "chunks": len(chunks),
                            "processed": len(outcomes),
                        },
                    )

                    if interrupted:
                        stopped = True
                        break

                    if index < len(chunks) - 1:
                        if await control.wait(options.delay_between_batches_ms / 1000):
                            stopped = True
                            break
        finally:
            self._active_runs.pop(control.run_id, None)

        result = BatchResult.from_outcomes(control.run_id, outcomes, cancelled=stopped)
        logger.info(
            json.dumps(
                {
                    "event": "bulk_migration_completed",
                    "run_id": control.run_id,
                    "total_processed": result.total_processed,
                    "successful": result.successful,
                    "failed": result.failed,
                    "skipped": result.skipped,
                    "cancelled": result.cancelled,
                }
            )
        )
        return result

    @property
    def active_runs(self) -> List[str]:
        return list(self._active_runs)

    def cancel_runs(self, run_id: Optional[str] = None) -> List[str]:
        """Cancel one active run, or all of them when ``run_id`` is None."""
        cancelled = []
        for active_id, control in list(self._active_runs.items()):
            if run_id is None or active_id == run_id:
                control.cancel()
                cancelled.append(active_id)
        if cancelled:
            logger.info(
                json.dumps({"event": "bulk_migration_cancelled", "run_ids": cancelled})
            )
        return cancelled

    async def get_progress(self) -> MigrationProgress:
        return await self.store.get_migration_stats()


migration_service = MigrationService()
