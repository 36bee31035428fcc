"""
Legacy login endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from bridge.core.logging import get_logger
from bridge.core.security import decode_access_token
from bridge.schemas.auth import LoginRequest, LoginResponse, LogoutResponse
from bridge.services.auth_service import auth_service
from bridge.services.errors import InvalidCredentialsError, StoreUnavailableError

logger = get_logger(__name__)

router = APIRouter()
security = HTTPBearer(auto_error=False)


@router.post("/login", response_model=LoginResponse)
async def login(request: LoginRequest):
    """
    Legacy login with just-in-time migration.

    Authenticates against the legacy store and returns a session token.
    Users not yet in Entra are migrated on the way, keeping the password
    they just used. The response depends only on the credentials; a failed
    migration is logged and retried on a later login or bulk run.

    Raises:
        401: Wrong email or password
        503: Datastore unavailable
    """
    try:
        result = await auth_service.login(str(request.email), request.password)
    except InvalidCredentialsError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    except StoreUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "Datastore unavailable", "details": e.message},
        )

    return LoginResponse(
        message="Login successful", token=result["token"], user=result["user"]
    )


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    """
    Stateless logout; clients discard their token.

    A valid bearer token only identifies the user in the logs.
    """
    claims = decode_access_token(credentials.credentials) if credentials else None
    logger.info(
        "Logout",
        extra={"user_id": claims.get("userId") if claims else None},
    )
    return LogoutResponse(message="Logout successful")
