from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from hookah_wishlist.wishlist_core.config import Settings, get_settings
from hookah_wishlist.wishlist_core.hookah_db import CatalogError, HookahDbClient
from hookah_wishlist.wishlist_core.search import SearchService
from hookah_wishlist.wishlist_core.storage import Storage, StorageError, build_storage
from hookah_wishlist.wishlist_core.telegram_webapp import (
    INIT_DATA_HEADER,
    Authenticated,
    Rejected,
    TelegramInitDataAuthenticator,
    extract_init_data,
)
from hookah_wishlist.wishlist_core.wishlist import (
    DuplicateWishlistItemError,
    Wishlist,
    WishlistError,
    WishlistItemNotFoundError,
    WishlistNotFoundError,
    WishlistService,
)

logger = logging.getLogger(__name__)


class TelegramAuthError(Exception):
    def __init__(self, decision: Rejected) -> None:
        super().__init__(decision.message)
        self.decision = decision


class AddWishlistItemPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tobacco_id: Optional[str] = Field(default=None, alias="tobaccoId", max_length=128)
    notes: Optional[str] = Field(default=None, max_length=500)


def _wishlist_summary(wishlist: Wishlist) -> dict:
    return {
        "userId": wishlist.user_id,
        "items": [item.model_dump(by_alias=True) for item in wishlist.items],
        "total": len(wishlist.items),
        "updatedAt": wishlist.updated_at,
    }


def _error_status(exc: WishlistError) -> int:
    if isinstance(exc, DuplicateWishlistItemError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (WishlistNotFoundError, WishlistItemNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_400_BAD_REQUEST


def create_app(
    settings: Settings | None = None,
    *,
    storage: Storage | None = None,
    catalog_client: HookahDbClient | None = None,
) -> FastAPI:
    cfg = settings or get_settings()
    authenticator = TelegramInitDataAuthenticator(cfg.telegram_bot_token)
    search_service = SearchService(catalog_client or HookahDbClient.from_settings(cfg))
    wishlist_service = WishlistService(storage or build_storage(cfg), search_service)

    app = FastAPI(title="hookah-wishlist")
    app.state.search_service = search_service
    app.state.wishlist_service = wishlist_service
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.mini_app_url] if cfg.mini_app_url else ["*"],
        allow_credentials=bool(cfg.mini_app_url),
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", INIT_DATA_HEADER],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.exception("%s %s -> ERROR (%.0fms)", request.method, request.url.path, elapsed_ms)
            raise
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info("%s %s -> %s (%.0fms)", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    @app.exception_handler(TelegramAuthError)
    async def telegram_auth_error_handler(request: Request, exc: TelegramAuthError):
        decision = exc.decision
        return JSONResponse(
            status_code=decision.http_status,
            content={"error": decision.message, "code": decision.code.value},
        )

    @app.exception_handler(WishlistError)
    async def wishlist_error_handler(request: Request, exc: WishlistError):
        return JSONResponse(status_code=_error_status(exc), content={"error": str(exc)})

    @app.exception_handler(CatalogError)
    async def catalog_error_handler(request: Request, exc: CatalogError):
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"error": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"})
            messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "; ".join(messages) or "Invalid request"},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == status.HTTP_404_NOT_FOUND and exc.detail == "Not Found":
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"error": "Not found", "path": request.url.path},
            )
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    def require_telegram_user(request: Request) -> Authenticated:
        init_data = extract_init_data(request.headers, request.query_params)
        decision = authenticator.authenticate(init_data)
        if isinstance(decision, Rejected):
            if decision.http_status >= 500:
                logger.error("Mini App auth unavailable on %s: %s", request.url.path, decision.code.value)
            else:
                logger.warning("Mini App auth rejected on %s: %s", request.url.path, decision.code.value)
            raise TelegramAuthError(decision)
        return decision

    @app.get("/health")
    @app.get("/api/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/v1/auth/me")
    async def auth_me(auth: Authenticated = Depends(require_telegram_user)):
        return {"ok": True, "userId": auth.user_id, "user": auth.identity.to_dict()}

    @app.get("/api/v1/wishlist")
    async def get_wishlist(auth: Authenticated = Depends(require_telegram_user)):
        logger.info("API: get wishlist for user %s", auth.user_id)
        wishlist = await wishlist_service.get_wishlist_with_details(auth.user_id)
        if wishlist is None:
            return {"userId": auth.user_id, "items": [], "total": 0}
        return {
            "userId": wishlist.user_id,
            "items": [item.model_dump(by_alias=True) for item in wishlist.items],
            "total": len(wishlist.items),
            "createdAt": wishlist.created_at,
            "updatedAt": wishlist.updated_at,
        }

    @app.post("/api/v1/wishlist")
    async def add_wishlist_item(
        payload: AddWishlistItemPayload,
        auth: Authenticated = Depends(require_telegram_user),
    ):
        tobacco_id = (payload.tobacco_id or "").strip()
        if not tobacco_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="tobaccoId is required")
        logger.info("API: add tobacco %s for user %s", tobacco_id, auth.user_id)
        wishlist = wishlist_service.add_item(auth.user_id, tobacco_id, payload.notes)
        return {"success": True, "wishlist": _wishlist_summary(wishlist)}

    @app.delete("/api/v1/wishlist/{tobacco_id}")
    async def remove_wishlist_item(tobacco_id: str, auth: Authenticated = Depends(require_telegram_user)):
        logger.info("API: remove tobacco %s for user %s", tobacco_id, auth.user_id)
        wishlist = wishlist_service.remove_item(auth.user_id, tobacco_id.strip())
        return {"success": True, "wishlist": _wishlist_summary(wishlist)}

    @app.delete("/api/v1/wishlist")
    async def clear_wishlist(auth: Authenticated = Depends(require_telegram_user)):
        logger.info("API: clear wishlist for user %s", auth.user_id)
        wishlist_service.clear_wishlist(auth.user_id)
        return {"success": True, "message": "Wishlist cleared successfully"}

    @app.get("/api/v1/search")
    async def search_tobaccos(
        query: Optional[str] = None,
        brand: Optional[str] = None,
        flavor: Optional[str] = None,
        page: int = Query(default=1, ge=1),
        page_size: int = Query(default=20, ge=1, le=100, alias="pageSize"),
        auth: Authenticated = Depends(require_telegram_user),
    ):
        # A free-text query wins over the brand filter, which wins over flavor.
        normalized_query = (query or "").strip()
        normalized_brand = (brand or "").strip()
        normalized_flavor = (flavor or "").strip()
        if normalized_query:
            logger.info("API: search %r by user %s", normalized_query, auth.user_id)
            result = await search_service.search(normalized_query, page, page_size)
        elif normalized_brand:
            logger.info("API: search brand %r by user %s", normalized_brand, auth.user_id)
            result = await search_service.search_by_brand(normalized_brand, page, page_size)
        elif normalized_flavor:
            logger.info("API: search flavor %r by user %s", normalized_flavor, auth.user_id)
            result = await search_service.search_by_flavor(normalized_flavor, page, page_size)
        else:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="query parameter is required")
        return {
            "results": [item.model_dump(by_alias=True) for item in result.results],
            "total": result.total,
            "page": result.page,
            "pageSize": result.page_size,
        }

    @app.get("/api/v1/search/brands")
    async def search_brands(auth: Authenticated = Depends(require_telegram_user)):
        return {"brands": await search_service.get_available_brands()}

    @app.get("/api/v1/search/flavors")
    async def search_flavors(auth: Authenticated = Depends(require_telegram_user)):
        return {"flavors": await search_service.get_available_flavors()}

    @app.get("/api/v1/search/tobacco/{tobacco_id}")
    async def tobacco_details(tobacco_id: str, auth: Authenticated = Depends(require_telegram_user)):
        tobacco = await search_service.get_tobacco_details(tobacco_id)
        if tobacco is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tobacco not found")
        return tobacco.model_dump(by_alias=True)

    return app
