"""
Error taxonomy shared by the migration services.

Endpoints translate these into HTTP responses; the batch orchestrator turns
per-user errors into failed outcomes.
"""

from typing import Any, Dict, Optional


class BridgeError(Exception):
    """Base class for every error raised by the migration bridge."""

    kind = "internal"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidArgumentError(BridgeError, ValueError):
    """Raised when a caller supplies an out-of-range argument."""

    kind = "invalid_argument"


class UserNotFoundError(BridgeError):
    """Raised when a legacy user id does not exist."""

    kind = "not_found"

    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} not found", {"user_id": user_id})
        self.user_id = user_id


class StoreUnavailableError(BridgeError):
    """Raised when the legacy datastore cannot be reached or queried."""

    kind = "store_unavailable"


class InvalidCredentialsError(BridgeError):
    """Raised when a login attempt does not match a stored password."""

    kind = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password"):
        super().__init__(message)


class RemoteError(BridgeError):
    """Base class for Microsoft Graph failures."""

    kind = "remote"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class RemoteUnavailableError(RemoteError):
    """Graph could not be reached, timed out, or kept throttling after retries."""

    kind = "remote_unavailable"


class RemoteConflictError(RemoteError):
    """Graph reported that the identity already exists."""

    kind = "remote_conflict"


class RemoteValidationError(RemoteError):
    """Graph rejected the request payload (e.g. password complexity)."""

    kind = "remote_validation"


class RemoteNotFoundError(RemoteError):
    """Graph has no object with the requested id."""

    kind = "remote_not_found"


class RemoteCreateFailedError(BridgeError):
    """
    Creating the remote identity failed; nothing was written locally.

    ``cause_kind`` carries the kind of the underlying remote error.
    """

    kind = "remote_create_failed"

    def __init__(self, message: str, cause_kind: str = "remote"):
        super().__init__(message, {"cause_kind": cause_kind})
        self.cause_kind = cause_kind


class InconsistentStateError(BridgeError):
    """
    A remote identity exists but the local record could not be marked.

    Needs reconciliation: the remote id is kept so the link can be restored.
    """

    kind = "inconsistent_state"

    def __init__(self, message: str, user_id: int, entra_user_id: str):
        super().__init__(
            message, {"user_id": user_id, "entra_user_id": entra_user_id}
        )
        self.user_id = user_id
        self.entra_user_id = entra_user_id
