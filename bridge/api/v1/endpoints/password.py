"""
Admin endpoints for password update and reset.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from bridge.api.deps import require_admin_api_key
from bridge.schemas.password import (
    PasswordResetResponse,
    PasswordUpdateRequest,
    PasswordUpdateResponse,
)
from bridge.services.errors import StoreUnavailableError, UserNotFoundError
from bridge.services.password_service import password_service

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


def _translate(e: Exception) -> HTTPException:
    if isinstance(e, UserNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": "Datastore unavailable", "details": str(e)},
    )


@router.post("/update/{user_id}", response_model=PasswordUpdateResponse)
async def update_password(user_id: int, request: PasswordUpdateRequest):
    """
    Set a user's password in the legacy store, and in Entra once migrated.

    An Entra failure is reported in ``data.entraError`` without undoing the
    legacy update.
    """
    try:
        result = await password_service.update_password(user_id, request.password)
    except (UserNotFoundError, StoreUnavailableError) as e:
        raise _translate(e)
    return PasswordUpdateResponse(message="Password updated successfully", data=result)


@router.post("/reset/{user_id}", response_model=PasswordResetResponse)
async def reset_password(user_id: int):
    """Replace a user's password with a generated temporary one."""
    try:
        temporary_password, result = await password_service.reset_password(user_id)
    except (UserNotFoundError, StoreUnavailableError) as e:
        raise _translate(e)
    return PasswordResetResponse(
        message="Password reset successfully",
        temporary_password=temporary_password,
        data=result,
    )
