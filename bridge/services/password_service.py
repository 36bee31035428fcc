"""
Password update and reset for legacy users, mirrored to Entra once migrated.
"""

import asyncio
import json
from typing import Any, Optional

from bridge.core.config import settings
from bridge.core.logging import get_logger
from bridge.core.security import get_password_hash
from bridge.schemas.password import PasswordChangeResult
from bridge.services import graph_service as graph_module
from bridge.services import migration_service as migration_module
from bridge.services import user_store as store_module
from bridge.services.errors import RemoteError, UserNotFoundError
from bridge.utils.password_generator import generate_secure_password

logger = get_logger(__name__)


class PasswordService:
    def __init__(
        self,
        store: Optional[Any] = None,
        identity: Optional[Any] = None,
        migrator: Optional[Any] = None,
    ):
        self._store = store
        self._identity = identity
        self._migrator = migrator

    @property
    def store(self):
        return self._store or store_module.user_store

    @property
    def identity(self):
        return self._identity or graph_module.graph_service

    @property
    def migrator(self):
        return self._migrator or migration_module.migration_service

    async def _apply(
        self, user_id: int, new_password: str, force_change: bool
    ) -> PasswordChangeResult:
        password_hash = await asyncio.to_thread(get_password_hash, new_password)

        # Same lock as migration, so the Entra state read here stays current
        async with self.migrator.user_lock(user_id):
            user = await self.store.get_user(user_id)
            if not await self.store.update_password_hash(user_id, password_hash):
                raise UserNotFoundError(user_id)

            result = PasswordChangeResult(
                user_id=user_id, updated_in_db=True, updated_in_entra=False
            )

            if user.migrated_to_entra and user.entra_user_id:
                try:
                    await self.identity.update_user_password(
                        user.entra_user_id, new_password, force_change=force_change
                    )
                    result.updated_in_entra = True
                except RemoteError as e:
                    # The legacy store stays authoritative; report the Entra failure
                    result.entra_error = e.message
                    logger.error(
                        json.dumps(
                            {
                                "event": "entra_password_update_failed",
                                "user_id": user_id,
                                "entra_user_id": user.entra_user_id,
                                "error": e.message,
                                "error_kind": e.kind,
                            }
                        )
                    )

        logger.info(
            "Password changed",
            extra={
                "user_id": user_id,
                "updated_in_entra": result.updated_in_entra,
                "force_change": force_change,
            },
        )
        return result

    async def update_password(
        self, user_id: int, new_password: str
    ) -> PasswordChangeResult:
        """
        Set a new password chosen by the user.

        Raises:
            UserNotFoundError: Unknown user id
            StoreUnavailableError: Datastore failure
        """
        return await self._apply(user_id, new_password, force_change=False)

    async def reset_password(self, user_id: int) -> tuple[str, PasswordChangeResult]:
        """
        Replace the password with a generated temporary one.

        Entra will require the user to change it at next sign-in.

        Returns:
            The temporary password and the change result
        """
        temporary_password = generate_secure_password(
            settings.TEMPORARY_PASSWORD_LENGTH
        )
        result = await self._apply(user_id, temporary_password, force_change=True)
        return temporary_password, result


password_service = PasswordService()
