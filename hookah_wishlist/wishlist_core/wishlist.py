from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from threading import Lock
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from hookah_wishlist.wishlist_core.hookah_db import CatalogError, Tobacco
from hookah_wishlist.wishlist_core.search import SearchService
from hookah_wishlist.wishlist_core.storage import Storage

logger = logging.getLogger(__name__)


class WishlistError(Exception):
    """Base class for wishlist domain errors."""


class DuplicateWishlistItemError(WishlistError):
    def __init__(self) -> None:
        super().__init__("Tobacco already in wishlist")


class WishlistNotFoundError(WishlistError):
    def __init__(self) -> None:
        super().__init__("Wishlist not found")


class WishlistItemNotFoundError(WishlistError):
    def __init__(self) -> None:
        super().__init__("Tobacco not found in wishlist")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WishlistItem(_CamelModel):
    tobacco_id: str = Field(min_length=1)
    added_at: str
    notes: Optional[str] = None


class Wishlist(_CamelModel):
    user_id: int
    items: List[WishlistItem] = Field(default_factory=list)
    created_at: str
    updated_at: str


class WishlistItemWithDetails(WishlistItem):
    tobacco: Optional[Tobacco] = None


class WishlistWithDetails(Wishlist):
    items: List[WishlistItemWithDetails] = Field(default_factory=list)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def wishlist_key(user_id: int) -> str:
    return f"wishlist_{user_id}"


class WishlistService:
    def __init__(self, storage: Storage, search_service: Optional[SearchService] = None) -> None:
        self.storage = storage
        self.search_service = search_service
        self._lock = Lock()

    def get_wishlist(self, user_id: int) -> Optional[Wishlist]:
        payload = self.storage.get(wishlist_key(user_id))
        if payload is None:
            return None
        return Wishlist.model_validate(payload)

    async def get_wishlist_with_details(self, user_id: int) -> Optional[WishlistWithDetails]:
        wishlist = self.get_wishlist(user_id)
        if wishlist is None:
            return None

        tobaccos = await asyncio.gather(*(self._lookup_tobacco(item.tobacco_id) for item in wishlist.items))
        items = [
            WishlistItemWithDetails(**item.model_dump(), tobacco=tobacco)
            for item, tobacco in zip(wishlist.items, tobaccos)
        ]
        return WishlistWithDetails(
            user_id=wishlist.user_id,
            items=items,
            created_at=wishlist.created_at,
            updated_at=wishlist.updated_at,
        )

    async def _lookup_tobacco(self, tobacco_id: str) -> Optional[Tobacco]:
        if self.search_service is None:
            return None
        try:
            return await self.search_service.get_tobacco_details(tobacco_id)
        except CatalogError as exc:
            logger.warning("Tobacco details unavailable for %s: %s", tobacco_id, exc)
            return None

    def create_wishlist(self, user_id: int) -> Wishlist:
        logger.info("Creating wishlist for user %s", user_id)
        now = _utc_now()
        wishlist = Wishlist(user_id=user_id, items=[], created_at=now, updated_at=now)
        self.save_wishlist(wishlist)
        return wishlist

    def save_wishlist(self, wishlist: Wishlist) -> None:
        self.storage.set(wishlist_key(wishlist.user_id), wishlist.model_dump(by_alias=True))

    def add_item(self, user_id: int, tobacco_id: str, notes: Optional[str] = None) -> Wishlist:
        logger.info("Adding tobacco %s to wishlist for user %s", tobacco_id, user_id)
        with self._lock:
            wishlist = self.get_wishlist(user_id) or self.create_wishlist(user_id)
            if any(item.tobacco_id == tobacco_id for item in wishlist.items):
                raise DuplicateWishlistItemError()

            now = _utc_now()
            wishlist.items.append(WishlistItem(tobacco_id=tobacco_id, added_at=now, notes=notes))
            wishlist.updated_at = now
            self.save_wishlist(wishlist)
        return wishlist

    def remove_item(self, user_id: int, tobacco_id: str) -> Wishlist:
        logger.info("Removing tobacco %s from wishlist for user %s", tobacco_id, user_id)
        with self._lock:
            wishlist = self.get_wishlist(user_id)
            if wishlist is None:
                raise WishlistNotFoundError()

            remaining = [item for item in wishlist.items if item.tobacco_id != tobacco_id]
            if len(remaining) == len(wishlist.items):
                raise WishlistItemNotFoundError()

            wishlist.items = remaining
            wishlist.updated_at = _utc_now()
            self.save_wishlist(wishlist)
        return wishlist

    def clear_wishlist(self, user_id: int) -> None:
        logger.info("Clearing wishlist for user %s", user_id)
        with self._lock:
            wishlist = self.get_wishlist(user_id)
            if wishlist is None:
                raise WishlistNotFoundError()
            wishlist.items = []
            wishlist.updated_at = _utc_now()
            self.save_wishlist(wishlist)


def format_wishlist(wishlist: Optional[WishlistWithDetails]) -> str:
    if wishlist is None or not wishlist.items:
        return (
            "📋 Your wishlist is empty.\n\n"
            "Use /search to find tobaccos and /add to add them to your wishlist."
        )

    lines = [f"📋 Your Wishlist ({len(wishlist.items)} items)", ""]
    for index, item in enumerate(wishlist.items, start=1):
        tobacco = item.tobacco
        brand = tobacco.brand if tobacco and tobacco.brand else "Unknown"
        name = tobacco.name if tobacco and tobacco.name else "Unknown"
        lines.append(f"{index}. {brand} - {name}")
        lines.append(f"   🏷️ ID: {item.tobacco_id}")
        if tobacco and tobacco.flavor:
            lines.append(f"   🍃 Flavor: {tobacco.flavor}")
        if item.notes:
            lines.append(f"   📝 Notes: {item.notes}")
        lines.append(f"   ➕ Added: {item.added_at[:10]}")
        lines.append("")
    lines.append("Use /remove <tobacco_id> to remove items from your wishlist")
    return "\n".join(lines)
