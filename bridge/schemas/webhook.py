"""
Pydantic schemas for Entra custom authentication extension callbacks.

Only the parts of the event payload the bridge reads are modelled; anything
else Entra sends is accepted and ignored.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

ATTRIBUTE_COLLECTION_SUBMIT_DATA = (
    "microsoft.graph.onAttributeCollectionSubmitResponseData"
)
SHOW_BLOCK_PAGE = "microsoft.graph.attributeCollectionSubmit.showBlockPage"
CONTINUE_WITH_DEFAULT = (
    "microsoft.graph.attributeCollectionSubmit.continueWithDefaultBehavior"
)
TOKEN_ISSUANCE_START_DATA = "microsoft.graph.onTokenIssuanceStartResponseData"
PROVIDE_CLAIMS_FOR_TOKEN = "microsoft.graph.tokenIssuanceStart.provideClaimsForToken"


class _EventModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class EventUser(_EventModel):
    id: Optional[str] = None
    mail: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")


class AuthenticationContext(_EventModel):
    correlation_id: Optional[str] = Field(None, alias="correlationId")
    user: Optional[EventUser] = None


class UserSignUpInfo(_EventModel):
    # Keyed by attribute name, each value is {"value": ..., "attributeType": ...}
    attributes: Dict[str, Any] = {}


class AuthenticationEventData(_EventModel):
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    authentication_context: Optional[AuthenticationContext] = Field(
        None, alias="authenticationContext"
    )
    user_sign_up_info: Optional[UserSignUpInfo] = Field(
        None, alias="userSignUpInfo"
    )


class AuthenticationEvent(_EventModel):
    type: Optional[str] = None
    source: Optional[str] = None
    data: Optional[AuthenticationEventData] = None

    @property
    def user(self) -> Optional[EventUser]:
        if self.data and self.data.authentication_context:
            return self.data.authentication_context.user
        return None

    @property
    def attributes(self) -> Dict[str, Any]:
        if self.data and self.data.user_sign_up_info:
            return self.data.user_sign_up_info.attributes
        return {}


class WebhookAction(BaseModel):
    odata_type: str = Field(..., alias="@odata.type")
    title: Optional[str] = None
    message: Optional[str] = None
    claims: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True)


class WebhookResponseData(BaseModel):
    odata_type: str = Field(..., alias="@odata.type")
    actions: List[WebhookAction]

    model_config = ConfigDict(populate_by_name=True)


class WebhookResponse(BaseModel):
    """Callback response; ``http_status`` is the HTTP code, not serialised."""

    status: Optional[str] = None
    status_code: Optional[int] = Field(None, alias="statusCode")
    message: Optional[str] = None
    user: Optional[Dict[str, Optional[str]]] = None
    data: WebhookResponseData

    model_config = ConfigDict(populate_by_name=True)

    @property
    def http_status(self) -> int:
        return self.status_code or 200

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
