"""
Microsoft Graph service for Entra External ID user management.

This service handles:
- Obtaining app-only Graph access tokens (client credentials)
- Looking up users by their email sign-in identity
- Creating users for migrated legacy accounts
- Updating user passwords
- Reading user and extension attributes
- Retrying throttled and failed requests with exponential backoff
"""

import asyncio
import json
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from bridge.core.config import settings
from bridge.core.logging import get_logger
from bridge.core.metrics import get_metrics_collector
from bridge.schemas.user import LocalUser
from bridge.services.errors import (
    RemoteConflictError,
    RemoteError,
    RemoteNotFoundError,
    RemoteUnavailableError,
    RemoteValidationError,
)

logger = get_logger(__name__)

# Graph reports duplicate identities as 400 with one of these markers
_CONFLICT_MARKERS = ("already exists", "ObjectConflict")

_MAIL_NICKNAME_INVALID = re.compile(r"[^A-Za-z0-9._-]")


def escape_odata_string(value: str) -> str:
    """Escape a value for use inside a single-quoted OData literal."""
    return value.replace("'", "''")


class GraphService:
    """Service for interacting with Microsoft Graph."""

    def __init__(
        self,
        tenant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        tenant_name: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        redis_client: Optional[Any] = None,
    ):
        """
        Initialize the Graph service.

        Arguments default to the values in settings; ``transport`` lets tests
        route requests to an in-process handler.
        """
        self.tenant_id = tenant_id or settings.ENTRA_TENANT_ID
        self.client_id = client_id or settings.ENTRA_CLIENT_ID
        self._client_secret = client_secret or settings.ENTRA_CLIENT_SECRET
        self.tenant_name = tenant_name or settings.ENTRA_TENANT_NAME

        for name, value in (
            ("ENTRA_TENANT_ID", self.tenant_id),
            ("ENTRA_CLIENT_ID", self.client_id),
            ("ENTRA_CLIENT_SECRET", self._client_secret),
            ("ENTRA_TENANT_NAME", self.tenant_name),
        ):
            if not value:
                logger.error(f"{name} is required but not configured")
                raise ValueError(f"{name} is required but not configured")

        self.base_url = settings.GRAPH_API_BASE.rstrip("/")
        self.token_url = (
            f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token"
        )
        self.max_retries = (
            settings.GRAPH_MAX_RETRIES if max_retries is None else max_retries
        )
        self.backoff_base = (
            settings.GRAPH_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        )
        self.backoff_max = (
            settings.GRAPH_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        )

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._token_lock = asyncio.Lock()

        self.token_cache_key = f"entra:graph_token:{self.tenant_id}"
        self._redis_client = redis_client
        if self._redis_client is None and settings.REDIS_URL:
            self._redis_client = aioredis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=10,
                socket_timeout=10,
                retry_on_timeout=True,
            )
            logger.info(
                json.dumps(
                    {"event": "graph_token_cache_initialised", "source": "redis"}
                )
            )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.GRAPH_TIMEOUT_SECONDS),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the pooled HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._redis_client is not None:
            await self._redis_client.aclose()

    # Token handling

    async def _read_cached_token(self) -> Optional[str]:
        if self._redis_client is not None:
            try:
                cached_data = await self._redis_client.get(self.token_cache_key)
                if cached_data:
                    token_data = json.loads(cached_data)
                    expires_at = datetime.fromisoformat(token_data["expires_at"])
                    if datetime.now(timezone.utc) < expires_at:
                        return token_data["token"]
            except (RedisError, json.JSONDecodeError, KeyError) as e:
                logger.warning(f"Failed to read Graph token from Redis: {e}")

        if (
            self._access_token
            and self._token_expires_at
            and datetime.now(timezone.utc) < self._token_expires_at
        ):
            return self._access_token
        return None

    async def _cache_token(self) -> None:
        if self._redis_client is None or self._token_expires_at is None:
            return
        ttl = int(
            (self._token_expires_at - datetime.now(timezone.utc)).total_seconds()
        )
        if ttl <= 0:
            return
        try:
            await self._redis_client.setex(
                self.token_cache_key,
                ttl,
                json.dumps(
                    {
                        "token": self._access_token,
                        "expires_at": self._token_expires_at.isoformat(),
                    }
                ),
            )
        except RedisError as e:
            logger.warning(f"Failed to cache Graph token in Redis: {e}")

    async def _invalidate_token(self) -> None:
        self._access_token = None
        self._token_expires_at = None
        if self._redis_client is not None:
            try:
                await self._redis_client.delete(self.token_cache_key)
            except RedisError as e:
                logger.warning(f"Failed to drop Graph token from Redis: {e}")

    async def _get_access_token(self) -> str:
        """
        Get a valid Graph access token.

        Checks Redis first (shared across workers), then the in-memory
        cache, then requests a new token.
        """
        async with self._token_lock:
            token = await self._read_cached_token()
            if token:
                return token

            logger.info(json.dumps({"event": "graph_access_token_requested"}))
            try:
                response = await self._get_client().post(
                    self.token_url,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self._client_secret,
                        "scope": settings.GRAPH_SCOPE,
                        "grant_type": "client_credentials",
                    },
                )
            except httpx.HTTPError as e:
                raise RemoteUnavailableError(
                    f"Failed to acquire Graph access token: {e}"
                ) from e

            if response.status_code != 200:
                logger.error(
                    json.dumps(
                        {
                            "event": "graph_access_token_failed",
                            "status_code": response.status_code,
                            "response": response.text[:500],
                        }
                    )
                )
                raise RemoteUnavailableError(
                    "Failed to acquire Graph access token",
                    status_code=response.status_code,
                )

            token_data = response.json()
            self._access_token = token_data["access_token"]
            # 5 minute buffer before the real expiry
            expires_in = int(token_data.get("expires_in", 3600))
            self._token_expires_at = datetime.now(timezone.utc) + timedelta(
                seconds=max(expires_in - 300, 0)
            )
            await self._cache_token()
            return self._access_token

    # Request plumbing

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2**attempt))

    def _retry_delay(self, response: httpx.Response, attempt: int) -> float:
        """Delay before retrying, preferring the server's Retry-After."""
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(self.backoff_max, max(0.0, float(retry_after)))
            except ValueError:
                pass
        return self._backoff(attempt)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
            return error.get("message") or error.get("code") or response.text
        except (ValueError, AttributeError):
            return response.text

    def _map_error(self, response: httpx.Response) -> RemoteError:
        status_code = response.status_code
        message = self._error_message(response)
        details = {"status_code": status_code}

        if status_code == 409 or (
            status_code == 400 and any(m in message for m in _CONFLICT_MARKERS)
        ):
            return RemoteConflictError(message, status_code, details)
        if status_code in (400, 422):
            return RemoteValidationError(message, status_code, details)
        if status_code == 404:
            return RemoteNotFoundError(message, status_code, details)
        return RemoteError(message, status_code, details)

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Make a Graph request with retries.

        429 and 5xx responses and transport errors are retried with
        exponential backoff, honouring Retry-After. A 401 drops the cached
        token and is retried once.
        """
        metrics = get_metrics_collector()
        url = f"{self.base_url}{path}"
        token_refreshed = False
        attempt = 0

        while True:
            token = await self._get_access_token()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            }
            try:
                response = await self._get_client().request(
                    method, url, headers=headers, json=json_body, params=params
                )
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise RemoteUnavailableError(
                        f"Graph request failed: {type(e).__name__}"
                    ) from e
                delay = self._backoff(attempt)
                metrics.record_graph_retry("transport")
                logger.warning(
                    f"Graph transport error, retrying in {delay}s "
                    f"(attempt {attempt + 1}/{self.max_retries})",
                    extra={"method": method, "path": path, "error": str(e)},
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            metrics.record_graph_request(method, response.status_code)

            if response.status_code == 401 and not token_refreshed:
                token_refreshed = True
                await self._invalidate_token()
                continue

            if response.status_code == 429 or response.status_code >= 500:
                if attempt >= self.max_retries:
                    raise RemoteUnavailableError(
                        f"Graph unavailable after {attempt + 1} attempts",
                        status_code=response.status_code,
                    )
                delay = self._retry_delay(response, attempt)
                reason = "throttled" if response.status_code == 429 else "server_error"
                metrics.record_graph_retry(reason)
                logger.warning(
                    f"Graph {reason}, retrying in {delay}s "
                    f"(attempt {attempt + 1}/{self.max_retries})",
                    extra={"method": method, "path": path},
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue

            if response.status_code >= 400:
                raise self._map_error(response)

            return response

    # User operations

    async def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """
        Find a user by their email sign-in identity.

        Args:
            email: Email address used as issuerAssignedId

        Returns:
            Graph user object or None if no user matches
        """
        identity_filter = (
            f"identities/any(id:id/issuer eq '{escape_odata_string(self.tenant_name)}'"
            f" and id/issuerAssignedId eq '{escape_odata_string(email)}')"
        )
        response = await self._request(
            "GET",
            "/users",
            params={
                "$filter": identity_filter,
                "$select": "id,displayName,identities,accountEnabled",
            },
        )
        users = response.json().get("value", [])
        return users[0] if users else None

    async def user_exists(self, email: str) -> bool:
        return await self.get_user_by_email(email) is not None

    async def create_user(
        self, user: LocalUser, password: str, force_change: bool = True
    ) -> str:
        """
        Create an Entra user for a legacy account.

        Args:
            user: Legacy user snapshot
            password: Initial password
            force_change: Require a password change at next sign-in

        Returns:
            Object id of the new Entra user
        """
        timestamp = int(time.time() * 1000)
        nickname = _MAIL_NICKNAME_INVALID.sub("", user.username) or "user"
        body = {
            "accountEnabled": user.is_active,
            "displayName": user.username,
            "mailNickname": f"{nickname}_{timestamp}",
            "userPrincipalName": f"{nickname}_{timestamp}@{self.tenant_name}",
            "identities": [
                {
                    "signInType": "emailAddress",
                    "issuer": self.tenant_name,
                    "issuerAssignedId": user.email,
                }
            ],
            "passwordProfile": {
                "forceChangePasswordNextSignIn": force_change,
                "password": password,
            },
            "passwordPolicies": "DisablePasswordExpiration",
        }

        response = await self._request("POST", "/users", json_body=body)
        entra_user_id = response.json().get("id")
        if not entra_user_id:
            raise RemoteError("Graph create user response did not include an id")

        logger.info(
            json.dumps(
                {
                    "event": "entra_user_created",
                    "user_id": user.id,
                    "entra_user_id": entra_user_id,
                    "force_change": force_change,
                }
            )
        )
        return entra_user_id

    async def update_user_password(
        self, entra_user_id: str, password: str, force_change: bool = False
    ) -> None:
        await self._request(
            "PATCH",
            f"/users/{entra_user_id}",
            json_body={
                "passwordProfile": {
                    "forceChangePasswordNextSignIn": force_change,
                    "password": password,
                }
            },
        )
        logger.info(
            json.dumps(
                {
                    "event": "entra_password_updated",
                    "entra_user_id": entra_user_id,
                    "force_change": force_change,
                }
            )
        )

    async def get_user_attributes(
        self, entra_user_id: str, select: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Fetch a user object, optionally restricted to ``select`` properties."""
        params = {"$select": ",".join(select)} if select else None
        response = await self._request(
            "GET", f"/users/{entra_user_id}", params=params
        )
        return response.json()

    async def get_extension_properties(self, app_id: str) -> List[Dict[str, Any]]:
        """List directory extension properties registered on an application."""
        response = await self._request(
            "GET",
            f"/applications(appId='{escape_odata_string(app_id)}')/extensionProperties",
        )
        return response.json().get("value", [])

    async def health_check(self) -> bool:
        try:
            await self._get_access_token()
            return True
        except RemoteError as e:
            logger.warning(f"Graph health check failed: {e}")
            return False


class DisabledGraphService:
    """Stand-in used when Entra is not configured; every call fails cleanly."""

    tenant_name: Optional[str] = None

    def _unavailable(self) -> RemoteUnavailableError:
        return RemoteUnavailableError("Entra integration is not configured")

    async def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        raise self._unavailable()

    async def user_exists(self, email: str) -> bool:
        raise self._unavailable()

    async def create_user(
        self, user: LocalUser, password: str, force_change: bool = True
    ) -> str:
        raise self._unavailable()

    async def update_user_password(
        self, entra_user_id: str, password: str, force_change: bool = False
    ) -> None:
        raise self._unavailable()

    async def get_user_attributes(
        self, entra_user_id: str, select: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        raise self._unavailable()

    async def get_extension_properties(self, app_id: str) -> List[Dict[str, Any]]:
        raise self._unavailable()

    async def health_check(self) -> bool:
        return False

    async def aclose(self) -> None:
        return None


graph_service: Any
try:
    graph_service = GraphService()
except Exception as e:  # pragma: no cover - depends on environment
    logger.warning(
        json.dumps(
            {
                "event": "graph_service_initialization_failed",
                "error": str(e),
                "note": "Using DisabledGraphService",
            }
        )
    )
    graph_service = DisabledGraphService()
