from enum import Enum
from typing import List, Optional, Protocol
import logging
import math

from pydantic import BaseModel

from models import ImageMeta, ImagesResponse, Pagination, RangeResult
from arkiv_client import EntityPage, PageCursor, PAGE_SIZE, RemoteStoreError, parse_entity
from cache import PageCache
from progress import (
    COMPLETE,
    CONNECTING,
    FILTERING,
    SORTING,
    NullProgress,
    ProgressObserver,
)


logger = logging.getLogger(__name__)


class EntitySource(Protocol):
    async def query_page(self, cursor: Optional[PageCursor] = None) -> EntityPage:
        ...

    async def get_entity_payload(self, key: str) -> Optional[bytes]:
        ...


class FetchState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class PageWalk(BaseModel):
    """Pages seen by one cursor walk, in remote order"""
    pages: List[List[ImageMeta]] = []
    exhausted: bool = False


def sort_by_id_desc(images: List[ImageMeta]) -> List[ImageMeta]:
    """Newest first by numeric id; non-numeric ids count as 0"""
    return sorted(images, key=lambda image: image.numeric_id, reverse=True)


def filter_by_prompt(images: List[ImageMeta], search: str) -> List[ImageMeta]:
    """Case-insensitive substring match on the prompt"""
    needle = search.lower()
    return [image for image in images if needle in image.prompt.lower()]


class ImageCatalog:
    """Assembles pages of the remote image collection through the page cache"""

    def __init__(self, cache: PageCache, client: EntitySource, page_size: int = PAGE_SIZE):
        self.cache = cache
        self.client = client
        self.page_size = page_size
        self.fetch_state = FetchState.IDLE

    async def _walk_pages(
        self,
        progress: ProgressObserver,
        end_page: Optional[int] = None,
        label: str = "Loaded",
    ) -> PageWalk:
        """Walk the remote cursor from page 1, caching each page.

        Stops after `end_page` when given, otherwise when the cursor is
        exhausted. The state and pages are local to this walk; concurrent
        walks share only the cache.
        """
        state = FetchState.FETCHING
        self.fetch_state = state
        walk = PageWalk()
        cursor: Optional[PageCursor] = None
        loaded = 0

        while state is FetchState.FETCHING:
            try:
                page = await self.client.query_page(cursor)
            except Exception:
                self.fetch_state = FetchState.FAILED
                raise

            images = [parse_entity(entity) for entity in page.entities]
            walk.pages.append(images)
            page_number = len(walk.pages)
            self.cache.put(page_number, images)
            loaded += len(images)
            progress.report(f"{label} page {page_number}", loaded)

            if page.exhausted:
                self.cache.set_total_pages(page_number)
                walk.exhausted = True
                state = FetchState.EXHAUSTED
            elif end_page is not None and page_number >= end_page:
                state = FetchState.IDLE
            else:
                cursor = page.next_cursor

        self.fetch_state = state
        logger.debug("Fetched %d pages (%d images), state %s", len(walk.pages), loaded, state.value)
        return walk

    async def fetch_range(
        self,
        start_idx: int,
        end_idx: int,
        progress: Optional[ProgressObserver] = None,
    ) -> RangeResult:
        """Serve [start_idx, end_idx) of the collection, fetching only the pages needed"""
        progress = progress or NullProgress()
        if start_idx < 0 or end_idx <= start_idx:
            return RangeResult(images=[], has_more=False, total_fetched=max(start_idx, 0))

        start_page = start_idx // self.page_size + 1
        end_page = (end_idx - 1) // self.page_size + 1

        if not self.cache.is_fresh():
            self.cache.begin_epoch()

        images: List[ImageMeta] = []
        if self.cache.missing_pages(start_page, end_page):
            logger.info("Fetching pages up to %d for range %d-%d", end_page, start_idx, end_idx)
            walk = await self._walk_pages(progress, end_page=end_page)
            for page in walk.pages[start_page - 1:end_page]:
                images.extend(page)
            if walk.exhausted:
                has_more = end_page < len(walk.pages)
            else:
                # The walk stopped on a live cursor at end_page
                has_more = True
        else:
            total_pages = self.cache.total_pages
            last_page = end_page if total_pages is None else min(end_page, total_pages)
            cached = self.cache.assemble(start_page, last_page)
            if cached is None:
                raise RemoteStoreError("Page cache was invalidated while reading a range")
            images = cached
            has_more = total_pages is None or end_page < total_pages

        offset = start_idx % self.page_size
        images = images[offset:offset + (end_idx - start_idx)]

        return RangeResult(
            images=images,
            has_more=has_more,
            total_fetched=start_idx + len(images),
        )

    async def fetch_all(self, progress: Optional[ProgressObserver] = None) -> List[ImageMeta]:
        """The whole collection, sorted newest id first"""
        progress = progress or NullProgress()

        if self.cache.is_fresh():
            if self.cache.snapshot is not None:
                return self.cache.snapshot
            if self.cache.total_known:
                images = self.cache.assemble(1, self.cache.total_pages)
                if images is not None:
                    return self._store_snapshot(images, progress)
                logger.info("Page cache incomplete, refetching whole collection")

        self.cache.begin_epoch()
        walk = await self._walk_pages(progress, label="Fetching")
        if not walk.exhausted:
            raise RemoteStoreError("Collection walk ended before the cursor was exhausted")
        images = [image for page in walk.pages for image in page]
        return self._store_snapshot(images, progress)

    def _store_snapshot(self, images: List[ImageMeta], progress: ProgressObserver) -> List[ImageMeta]:
        progress.report(SORTING, len(images))
        sorted_images = sort_by_id_desc(images)
        if self.cache.is_complete():
            self.cache.set_snapshot(sorted_images)
        else:
            logger.info("Page cache changed during fetch, snapshot not stored")
        return sorted_images

    async def list_images(
        self,
        page: int = 1,
        per_page: int = 100,
        search: str = "",
        progress: Optional[ProgressObserver] = None,
    ) -> ImagesResponse:
        """One page of the listing, optionally filtered by prompt"""
        progress = progress or NullProgress()
        progress.report(CONNECTING)

        start_idx = (page - 1) * per_page
        end_idx = start_idx + per_page
        search = (search or "").strip()

        if search:
            images = await self.fetch_all(progress)
            progress.report(FILTERING, len(images))
            matches = filter_by_prompt(images, search)
            total = len(matches)
            page_images = matches[start_idx:end_idx]
            has_more = end_idx < total
        else:
            result = await self.fetch_range(start_idx, end_idx, progress)
            page_images = result.images
            has_more = result.has_more
            known_total = self.cache.item_count()
            if known_total is not None:
                total = known_total
                has_more = end_idx < known_total
            else:
                total = result.total_fetched + (1 if has_more else 0)

        progress.report(COMPLETE, len(page_images))
        return ImagesResponse(
            images=page_images,
            pagination=Pagination(
                page=page,
                per_page=per_page,
                total=total,
                total_pages=math.ceil(total / per_page) if total else 0,
                has_more=has_more,
            ),
        )

    async def fetch_image(self, key: str) -> Optional[bytes]:
        """Payload bytes of one image; never cached"""
        return await self.client.get_entity_payload(key)
