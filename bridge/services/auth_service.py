"""
Legacy login with just-in-time migration to Entra.
"""

import asyncio
import json
from typing import Any, Dict, Optional

from bridge.core.logging import get_logger
from bridge.core.security import create_access_token, verify_password
from bridge.schemas.user import LocalUser, UserPublic
from bridge.services import migration_service as migration_module
from bridge.services import user_store as store_module
from bridge.services.errors import InvalidCredentialsError

logger = get_logger(__name__)


class AuthService:
    """Authenticates legacy users and migrates them opportunistically."""

    def __init__(self, store: Optional[Any] = None, migrator: Optional[Any] = None):
        self._store = store
        self._migrator = migrator

    @property
    def store(self):
        return self._store or store_module.user_store

    @property
    def migrator(self):
        return self._migrator or migration_module.migration_service

    async def authenticate(self, email: str, password: str) -> LocalUser:
        """
        Verify legacy credentials.

        Raises:
            InvalidCredentialsError: Unknown email, inactive account or wrong password
            StoreUnavailableError: Datastore failure
        """
        user = await self.store.find_by_email(email)
        if user is None or not user.is_active:
            raise InvalidCredentialsError()
        if not await asyncio.to_thread(verify_password, password, user.password):
            raise InvalidCredentialsError()
        return user

    async def _migrate_quietly(self, user: LocalUser, password: str) -> LocalUser:
        """Best-effort JIT migration; returns the user as it now stands."""
        try:
            outcome = await self.migrator.migrate_with_password(user, password)
        except Exception as e:
            # Login must succeed regardless of migration
            logger.warning(
                json.dumps(
                    {
                        "event": "jit_migration_failed",
                        "user_id": user.id,
                        "error": str(e),
                        "error_kind": getattr(e, "kind", type(e).__name__),
                    }
                )
            )
            return user

        if outcome.status == "migrated":
            return user.model_copy(
                update={
                    "migrated_to_entra": True,
                    "entra_user_id": outcome.entra_user_id,
                }
            )
        logger.info(
            "JIT migration skipped",
            extra={"user_id": user.id, "reason": outcome.reason},
        )
        return user

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        """
        Authenticate and issue a session token.

        Unmigrated users are migrated to Entra with the password they just
        used. Migration problems are logged and never affect the login.

        Returns:
            Dictionary with ``token`` and ``user`` (UserPublic)
        """
        user = await self.authenticate(email, password)

        if not user.migrated_to_entra:
            user = await self._migrate_quietly(user, password)

        token = create_access_token(
            {
                "sub": str(user.id),
                "userId": user.id,
                "email": user.email,
                "username": user.username,
                "migratedToEntra": user.migrated_to_entra,
            }
        )
        logger.info(
            "Login successful",
            extra={"user_id": user.id, "migrated_to_entra": user.migrated_to_entra},
        )
        return {"token": token, "user": UserPublic.model_validate(user)}


auth_service = AuthService()
