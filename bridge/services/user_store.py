"""
Async access to the legacy user store.

Each call runs the synchronous CRUD function in the default thread pool with
its own session, and returns detached pydantic snapshots so no ORM object
crosses back into the event loop.
"""

import asyncio
from typing import Any, Callable, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bridge.core.logging import get_logger
from bridge.crud import user as user_crud
from bridge.db.database import get_session_local
from bridge.schemas.migration import MigrationProgress
from bridge.schemas.user import LocalUser
from bridge.services.errors import StoreUnavailableError, UserNotFoundError

logger = get_logger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[], Session]


async def run_in_session(
    session_factory: Optional[SessionFactory],
    operation: str,
    fn: Callable[..., T],
    *args: Any,
) -> T:
    """
    Run ``fn(db, *args)`` in a worker thread with a fresh session.

    Database errors are rolled back and re-raised as StoreUnavailableError.
    """

    def call() -> T:
        factory = session_factory or get_session_local()
        db = factory()
        try:
            return fn(db, *args)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                "Datastore operation failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise StoreUnavailableError(
                f"Datastore unavailable during {operation}", {"operation": operation}
            ) from e
        finally:
            db.close()

    return await asyncio.to_thread(call)


def _snapshot(user) -> Optional[LocalUser]:
    return LocalUser.model_validate(user) if user is not None else None


class UserStore:
    """LocalUserStore backed by SQLAlchemy."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory

    async def _run(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        return await run_in_session(self._session_factory, operation, fn, *args)

    async def find_by_id(self, user_id: int) -> Optional[LocalUser]:
        return await self._run(
            "find_by_id",
            lambda db, uid: _snapshot(user_crud.get_user_by_id(db, uid)),
            user_id,
        )

    async def get_user(self, user_id: int) -> LocalUser:
        """Like find_by_id, but raises UserNotFoundError for unknown ids."""
        user = await self.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def find_by_email(self, email: str) -> Optional[LocalUser]:
        return await self._run(
            "find_by_email",
            lambda db, e: _snapshot(user_crud.get_user_by_email(db, e)),
            email,
        )

    async def find_by_entra_id(self, entra_user_id: str) -> Optional[LocalUser]:
        return await self._run(
            "find_by_entra_id",
            lambda db, eid: _snapshot(user_crud.get_user_by_entra_id(db, eid)),
            entra_user_id,
        )

    async def list_unmigrated(
        self, limit: Optional[int] = None, active_only: bool = True
    ) -> List[LocalUser]:
        """Unmigrated users, oldest first."""

        def fetch(db: Session, lim: Optional[int], active: bool) -> List[LocalUser]:
            users = user_crud.get_users_for_migration(db, limit=lim, active_only=active)
            return [LocalUser.model_validate(u) for u in users]

        return await self._run("list_unmigrated", fetch, limit, active_only)

    async def mark_migrated(self, user_id: int, entra_user_id: str) -> bool:
        """
        Flip the migrated flag if it is still false.

        Returns:
            False when another writer got there first
        """
        return await self._run(
            "mark_migrated", user_crud.mark_user_as_migrated, user_id, entra_user_id
        )

    async def update_password_hash(self, user_id: int, password_hash: str) -> bool:
        return await self._run(
            "update_password_hash",
            user_crud.update_user_password_hash,
            user_id,
            password_hash,
        )

    async def get_migration_stats(self) -> MigrationProgress:
        stats = await self._run("get_migration_stats", user_crud.get_migration_stats)
        return MigrationProgress(**stats)


user_store = UserStore()
