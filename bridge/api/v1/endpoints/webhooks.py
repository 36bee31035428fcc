"""
Callbacks for Entra custom authentication extensions.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from bridge.api.deps import require_webhook_secret
from bridge.schemas.webhook import AuthenticationEvent
from bridge.services.webhook_service import webhook_service

router = APIRouter(dependencies=[Depends(require_webhook_secret)])


@router.post("/check-dummy-user-first-sign-in")
async def check_dummy_user_first_sign_in(event: AuthenticationEvent):
    """
    onAttributeCollectionSubmit handler.

    Dummy accounts that have never completed a sign-in get a block page
    (HTTP 403); all other users continue with the default behaviour.
    """
    response = await webhook_service.check_first_sign_in(event)
    return JSONResponse(status_code=response.http_status, content=response.to_payload())


@router.post("/check-dummy-user-first-sign-in-token-issuance-start")
async def check_dummy_user_first_sign_in_token_issuance_start(
    event: AuthenticationEvent,
):
    """onTokenIssuanceStart handler: records the sign-in and adds legacy claims."""
    response = await webhook_service.handle_token_issuance_start(event)
    return JSONResponse(status_code=response.http_status, content=response.to_payload())
