"""
Durable record of which Entra users have completed a sign-in.
"""

from typing import Optional

from bridge.core.logging import get_logger
from bridge.crud import sign_in as sign_in_crud
from bridge.services.user_store import SessionFactory, run_in_session

logger = get_logger(__name__)


class SignInTracker:
    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory

    async def has_signed_in(self, entra_user_id: str) -> bool:
        return await run_in_session(
            self._session_factory,
            "has_signed_in",
            sign_in_crud.has_signed_in,
            entra_user_id,
        )

    async def record_sign_in(self, entra_user_id: str) -> int:
        """
        Record a completed sign-in.

        Returns:
            The number of sign-ins recorded for the user so far
        """

        def record(db, uid: str) -> int:
            return sign_in_crud.record_sign_in(db, uid).sign_in_count

        count = await run_in_session(
            self._session_factory, "record_sign_in", record, entra_user_id
        )
        logger.info(
            "Sign-in recorded",
            extra={"entra_user_id": entra_user_id, "sign_in_count": count},
        )
        return count


sign_in_tracker = SignInTracker()
