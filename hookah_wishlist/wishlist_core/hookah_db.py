from __future__ import annotations

import json
import logging
import time
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hookah_wishlist.wishlist_core.config import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_CACHE_ENTRIES = 512


class CatalogError(RuntimeError):
    """Raised when the hookah-db catalog cannot answer a request."""


class Tobacco(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: str = ""
    brand: str = ""
    flavor: str = ""
    description: Optional[str] = None
    strength: Optional[str] = None
    image: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")


class TobaccoSearchResult(BaseModel):
    results: List[Tobacco] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20


def _normalize_tobacco_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    normalized = dict(payload)
    if normalized.get("id") is not None:
        normalized["id"] = str(normalized["id"])
    brand = normalized.get("brand")
    if isinstance(brand, dict):
        normalized["brand"] = str(brand.get("name") or "")
    return normalized


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _names_from_payload(payload: Any) -> List[str]:
    items = payload.get("data") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        return []
    names: List[str] = []
    for item in items:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict) and item.get("name"):
            names.append(str(item["name"]))
    return names


class HookahDbClient:
    """Read-only client for the hookah-db catalog with a small TTL cache."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        cache_ttl_seconds: int = 300,
        max_cache_entries: int = MAX_CACHE_ENTRIES,
    ) -> None:
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key.strip()
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.max_cache_entries = max(1, max_cache_entries)
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "HookahDbClient":
        config = settings or get_settings()
        return cls(
            base_url=config.hookah_db_api_url,
            api_key=config.hookah_db_api_key,
            timeout_seconds=config.hookah_db_timeout_seconds,
            cache_ttl_seconds=config.catalog_cache_ttl_seconds,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    @staticmethod
    def _cache_key(endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        return f"{endpoint}:{json.dumps(params or {}, sort_keys=True)}"

    def _get_cached(self, key: str) -> Any:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if time.monotonic() - stored_at > self.cache_ttl_seconds:
                del self._cache[key]
                return None
        logger.debug("Catalog cache hit for key: %s", key)
        return value

    def _set_cached(self, key: str, value: Any) -> None:
        if self.cache_ttl_seconds <= 0:
            return
        now = time.monotonic()
        with self._lock:
            expired = [k for k, (stored_at, _) in self._cache.items() if now - stored_at > self.cache_ttl_seconds]
            for k in expired:
                del self._cache[k]
            self._cache.pop(key, None)
            # Oldest entries go first once the cache is full.
            while len(self._cache) >= self.max_cache_entries:
                del self._cache[next(iter(self._cache))]
            self._cache[key] = (now, value)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.info("Catalog cache cleared")

    @staticmethod
    def _safe_error_message(exc: Exception) -> str:
        if isinstance(exc, httpx.HTTPStatusError):
            return f"hookah-db HTTP error: {exc.response.status_code}"
        if isinstance(exc, httpx.RequestError):
            return f"hookah-db connection error: {exc}"
        return f"hookah-db error: {exc}"

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        query = {key: value for key, value in (params or {}).items() if value is not None}
        logger.debug("hookah-db request: GET %s %s", path, query)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.get(
                f"{self.base_url}{path}",
                params=query,
                headers=self._headers(),
            )
        response.raise_for_status()
        if not response.text:
            return {}
        return response.json()

    async def search_tobaccos(
        self,
        query: Optional[str] = None,
        brand: Optional[str] = None,
        flavor: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> TobaccoSearchResult:
        params = {"search": query, "brand": brand, "flavor": flavor, "page": page, "limit": page_size}
        cache_key = self._cache_key("/tobaccos", params)
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        try:
            payload = await self._get_json("/tobaccos", params)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error searching tobaccos: %s", self._safe_error_message(exc))
            raise CatalogError("Failed to search tobaccos. Please try again later.") from exc

        body = payload if isinstance(payload, dict) else {"data": payload}
        raw_items = body.get("data") or body.get("results") or []
        try:
            results = [
                Tobacco.model_validate(_normalize_tobacco_payload(item))
                for item in raw_items
                if isinstance(item, dict)
            ]
        except ValidationError as exc:
            raise CatalogError("hookah-db returned malformed tobacco data.") from exc

        result = TobaccoSearchResult(
            results=results,
            total=_as_int(body.get("total") or body.get("count"), default=len(results)),
            page=page,
            page_size=page_size,
        )
        self._set_cached(cache_key, result)
        return result

    async def get_tobacco(self, tobacco_id: str) -> Optional[Tobacco]:
        if tobacco_id in ("", ".", ".."):
            return None
        path = "/tobaccos/" + quote(tobacco_id, safe="")
        cache_key = self._cache_key(path)
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        try:
            payload = await self._get_json(path)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            logger.error("Error getting tobacco %s: %s", tobacco_id, self._safe_error_message(exc))
            raise CatalogError("Failed to get tobacco details. Please try again later.") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error getting tobacco %s: %s", tobacco_id, self._safe_error_message(exc))
            raise CatalogError("Failed to get tobacco details. Please try again later.") from exc

        body = payload.get("data", payload) if isinstance(payload, dict) else None
        if not isinstance(body, dict) or not body:
            return None
        try:
            tobacco = Tobacco.model_validate(_normalize_tobacco_payload(body))
        except ValidationError as exc:
            raise CatalogError("hookah-db returned malformed tobacco data.") from exc

        self._set_cached(cache_key, tobacco)
        return tobacco

    async def _get_names(self, path: str, label: str) -> List[str]:
        cache_key = self._cache_key(path)
        cached = self._get_cached(cache_key)
        if cached is not None:
            return list(cached)

        try:
            payload = await self._get_json(path)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error getting %s: %s", label, self._safe_error_message(exc))
            raise CatalogError(f"Failed to get {label}. Please try again later.") from exc

        names = _names_from_payload(payload)
        self._set_cached(cache_key, names)
        return list(names)

    async def get_brands(self) -> List[str]:
        return await self._get_names("/brands", "brands")

    async def get_flavors(self) -> List[str]:
        return await self._get_names("/flavors", "flavors")
