from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from hookah_wishlist.wishlist_core.hookah_db import HookahDbClient, Tobacco, TobaccoSearchResult

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def _normalize_paging(page: int, page_size: int) -> tuple[int, int]:
    return max(1, int(page)), min(MAX_PAGE_SIZE, max(1, int(page_size)))


class SearchService:
    def __init__(self, client: HookahDbClient) -> None:
        self.client = client

    async def search(self, query: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> TobaccoSearchResult:
        page, page_size = _normalize_paging(page, page_size)
        logger.info("Searching tobaccos for query %r (page=%s)", query, page)
        result = await self.client.search_tobaccos(query=query, page=page, page_size=page_size)
        logger.info("Found %s tobaccos matching %r", result.total, query)
        return result

    async def search_by_brand(self, brand: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> TobaccoSearchResult:
        page, page_size = _normalize_paging(page, page_size)
        return await self.client.search_tobaccos(brand=brand, page=page, page_size=page_size)

    async def search_by_flavor(self, flavor: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> TobaccoSearchResult:
        page, page_size = _normalize_paging(page, page_size)
        return await self.client.search_tobaccos(flavor=flavor, page=page, page_size=page_size)

    async def get_tobacco_details(self, tobacco_id: str) -> Optional[Tobacco]:
        return await self.client.get_tobacco(tobacco_id)

    async def get_available_brands(self) -> List[str]:
        return await self.client.get_brands()

    async def get_available_flavors(self) -> List[str]:
        return await self.client.get_flavors()


def format_search_results(results: Sequence[Tobacco], page: int, total: int) -> str:
    if not results:
        return "No tobaccos found. Try a different search term."

    lines = [f"📊 Search Results (Page {page})", f"Found {total} tobacco(s)", ""]
    for index, tobacco in enumerate(results, start=1):
        lines.append(f"{index}. {tobacco.brand} - {tobacco.name}")
        lines.append(f"   🏷️ ID: {tobacco.id}")
        if tobacco.flavor:
            lines.append(f"   🍃 Flavor: {tobacco.flavor}")
        if tobacco.strength:
            lines.append(f"   💪 Strength: {tobacco.strength}")
        lines.append("")
    lines.append("Use /add <tobacco_id> to add to your wishlist")
    return "\n".join(lines)
