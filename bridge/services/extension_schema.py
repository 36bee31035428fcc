"""
Typed lookup of Entra directory extension attributes.

Custom user attributes appear in Entra payloads under their fully qualified
extension name (``extension_<appIdWithoutDashes>_<name>``). The registered
names are fetched from Graph once, cached, and resolved in a fixed fallback
order:

1. names registered on the extensions application ending in ``_<name>``
2. the name derived from the configured extensions application id
3. the bare attribute name
"""

import time
from typing import Any, Callable, Dict, List, Optional

from bridge.core.config import settings
from bridge.core.logging import get_logger
from bridge.services import graph_service as graph_module
from bridge.services.errors import RemoteError

logger = get_logger(__name__)


def qualified_extension_name(app_id: str, attribute: str) -> str:
    return f"extension_{app_id.replace('-', '')}_{attribute}"


class ExtensionSchemaMap:
    """Cached map from logical attribute names to payload keys."""

    def __init__(
        self,
        identity: Optional[Any] = None,
        app_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._identity = identity
        self.app_id = app_id if app_id is not None else settings.ENTRA_EXTENSIONS_APP_ID
        self.ttl_seconds = (
            settings.EXTENSION_SCHEMA_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        )
        self._clock = clock
        self._registered: Optional[List[str]] = None
        self._fetched_at: Optional[float] = None

    @property
    def identity(self):
        return self._identity or graph_module.graph_service

    def _is_fresh(self) -> bool:
        return (
            self._registered is not None
            and self._fetched_at is not None
            and self._clock() - self._fetched_at < self.ttl_seconds
        )

    async def registered_names(self) -> List[str]:
        """Extension property names registered on the extensions app."""
        if self._is_fresh():
            return self._registered or []
        if not self.app_id:
            return []

        try:
            properties = await self.identity.get_extension_properties(self.app_id)
        except RemoteError as e:
            # Keep serving the last known schema, if any
            logger.warning(
                "Extension schema fetch failed",
                extra={"app_id": self.app_id, "error": str(e)},
            )
            return self._registered or []

        self._registered = [p["name"] for p in properties if p.get("name")]
        self._fetched_at = self._clock()
        logger.info(
            "Extension schema loaded",
            extra={"app_id": self.app_id, "count": len(self._registered)},
        )
        return self._registered

    async def resolve(self, attribute: str) -> List[str]:
        """Candidate payload keys for ``attribute`` in lookup order."""
        suffix = f"_{attribute}".lower()
        candidates = [
            name
            for name in await self.registered_names()
            if name.lower().endswith(suffix)
        ]
        if self.app_id:
            candidates.append(qualified_extension_name(self.app_id, attribute))
        candidates.append(attribute)

        seen = set()
        ordered = []
        for name in candidates:
            if name.lower() not in seen:
                seen.add(name.lower())
                ordered.append(name)
        return ordered

    async def lookup(self, attributes: Dict[str, Any], attribute: str) -> Optional[str]:
        """
        Read ``attribute`` from an event or Graph attribute dictionary.

        Values may be plain or wrapped as ``{"value": ...}``.

        Returns:
            The value as a string, or None when absent
        """
        by_key = {key.lower(): value for key, value in attributes.items()}
        for name in await self.resolve(attribute):
            if name.lower() not in by_key:
                continue
            value = by_key[name.lower()]
            if isinstance(value, dict):
                value = value.get("value")
            if value is None:
                continue
            return str(value)
        return None

    def invalidate(self) -> None:
        self._registered = None
        self._fetched_at = None


extension_schema = ExtensionSchemaMap()
