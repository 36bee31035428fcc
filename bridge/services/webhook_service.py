"""
Handlers for Entra custom authentication extension events.

- attributeCollectionSubmit: block first sign-in of dummy accounts
- tokenIssuanceStart: record the sign-in and add legacy claims to the token
"""

import json
from typing import Any, Dict, Optional

from bridge.core.config import settings
from bridge.core.logging import get_logger
from bridge.schemas.webhook import (
    ATTRIBUTE_COLLECTION_SUBMIT_DATA,
    CONTINUE_WITH_DEFAULT,
    PROVIDE_CLAIMS_FOR_TOKEN,
    SHOW_BLOCK_PAGE,
    TOKEN_ISSUANCE_START_DATA,
    AuthenticationEvent,
    WebhookAction,
    WebhookResponse,
    WebhookResponseData,
)
from bridge.services import extension_schema as schema_module
from bridge.services import graph_service as graph_module
from bridge.services import sign_in_tracker as tracker_module
from bridge.services import user_store as store_module
from bridge.services.errors import BridgeError

logger = get_logger(__name__)

BLOCK_TITLE = "Access Denied"
BLOCK_MESSAGE = (
    "Dummy user accounts are restricted from signing in for the first time. "
    "Please contact your system administrator for assistance."
)


def continue_response(
    user: Optional[Dict[str, Optional[str]]] = None, with_status: bool = True
) -> WebhookResponse:
    data = WebhookResponseData(
        odata_type=ATTRIBUTE_COLLECTION_SUBMIT_DATA,
        actions=[WebhookAction(odata_type=CONTINUE_WITH_DEFAULT)],
    )
    if not with_status:
        return WebhookResponse(data=data)
    return WebhookResponse(
        status="success",
        status_code=200,
        message="Authentication allowed",
        user=user,
        data=data,
    )


def block_response(user: Optional[Dict[str, Optional[str]]] = None) -> WebhookResponse:
    return WebhookResponse(
        status="blocked",
        status_code=403,
        message="Dummy user blocked on first sign-in",
        user=user,
        data=WebhookResponseData(
            odata_type=ATTRIBUTE_COLLECTION_SUBMIT_DATA,
            actions=[
                WebhookAction(
                    odata_type=SHOW_BLOCK_PAGE, title=BLOCK_TITLE, message=BLOCK_MESSAGE
                )
            ],
        ),
    )


class WebhookService:
    def __init__(
        self,
        tracker: Optional[Any] = None,
        schema: Optional[Any] = None,
        identity: Optional[Any] = None,
        store: Optional[Any] = None,
    ):
        self._tracker = tracker
        self._schema = schema
        self._identity = identity
        self._store = store

    @property
    def tracker(self):
        return self._tracker or tracker_module.sign_in_tracker

    @property
    def schema(self):
        return self._schema or schema_module.extension_schema

    @property
    def identity(self):
        return self._identity or graph_module.graph_service

    @property
    def store(self):
        return self._store or store_module.user_store

    async def read_dummy_flag(self, event: AuthenticationEvent) -> Optional[str]:
        """
        Read the dummy-user flag from the event, falling back to Graph.

        Graph is only asked for fully qualified extension properties.
        """
        attribute = settings.DUMMY_USER_ATTRIBUTE
        flag = await self.schema.lookup(event.attributes, attribute)
        if flag is not None:
            return flag

        user = event.user
        if not user or not user.id:
            return None
        select = [
            name
            for name in await self.schema.resolve(attribute)
            if name.startswith("extension_")
        ]
        if not select:
            return None
        remote_attributes = await self.identity.get_user_attributes(
            user.id, select=select
        )
        return await self.schema.lookup(remote_attributes, attribute)

    async def check_first_sign_in(self, event: AuthenticationEvent) -> WebhookResponse:
        """
        Decide an attributeCollectionSubmit event.

        Dummy users without a recorded sign-in are blocked; everyone else
        continues. Internal errors never block a sign-in.
        """
        event_user = event.user
        user_id = event_user.id if event_user else None
        user_info = {"id": user_id, "email": event_user.mail if event_user else None}

        try:
            flag = await self.read_dummy_flag(event)
            is_dummy = (
                flag is not None
                and flag.strip().upper() == settings.DUMMY_USER_FLAG_VALUE.upper()
            )
            if not is_dummy:
                return continue_response(user_info)

            if user_id and await self.tracker.has_signed_in(user_id):
                logger.info(
                    "Dummy user allowed, previously signed in",
                    extra={"entra_user_id": user_id},
                )
                return continue_response(user_info)

            logger.info(
                json.dumps({"event": "dummy_user_blocked", "entra_user_id": user_id})
            )
            return block_response(user_info)

        except Exception as e:
            logger.error(
                json.dumps(
                    {
                        "event": "dummy_user_check_failed",
                        "entra_user_id": user_id,
                        "error": str(e),
                    }
                )
            )
            return continue_response(with_status=False)

    async def handle_token_issuance_start(
        self, event: AuthenticationEvent
    ) -> WebhookResponse:
        """Record the sign-in and provide legacy claims for the token."""
        event_user = event.user
        user_id = event_user.id if event_user else None
        claims: Dict[str, Any] = {"migratedFromLegacy": "false"}

        if user_id:
            try:
                await self.tracker.record_sign_in(user_id)
            except BridgeError as e:
                logger.error(
                    json.dumps(
                        {
                            "event": "sign_in_record_failed",
                            "entra_user_id": user_id,
                            "error": str(e),
                        }
                    )
                )

            try:
                local_user = await self.store.find_by_entra_id(user_id)
            except BridgeError as e:
                logger.error(
                    "Legacy user lookup failed",
                    extra={"entra_user_id": user_id, "error": str(e)},
                )
                local_user = None

            if local_user is not None:
                claims = {
                    "legacyUserId": str(local_user.id),
                    "migratedFromLegacy": "true",
                }

        return WebhookResponse(
            data=WebhookResponseData(
                odata_type=TOKEN_ISSUANCE_START_DATA,
                actions=[
                    WebhookAction(odata_type=PROVIDE_CLAIMS_FOR_TOKEN, claims=claims)
                ],
            )
        )


webhook_service = WebhookService()
