import time
from typing import Callable, Dict, List, Optional

from models import ImageMeta


DEFAULT_TTL_SECONDS = 300.0


def is_fresh(epoch: Optional[float], ttl: float, now: float) -> bool:
    """True when data stamped at `epoch` may still be served at `now`"""
    if epoch is None:
        return False
    return now - epoch < ttl


class PageCache:
    """In-memory cache of remote pages, all belonging to a single epoch.

    Pages are keyed by their 1-based number in the remote ordering. The cache
    also tracks the total page count once a walk has seen the remote cursor
    run out, and the sorted snapshot of the whole collection. Nothing is
    invalidated partially: when the epoch goes stale everything is dropped.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self._clock = clock

        self._pages: Dict[int, List[ImageMeta]] = {}
        self._snapshot: Optional[List[ImageMeta]] = None
        self.total_pages: Optional[int] = None
        self.epoch: Optional[float] = None

    def now(self) -> float:
        return self._clock()

    def is_fresh(self, now: Optional[float] = None) -> bool:
        """Whether the current epoch is still within the TTL"""
        return is_fresh(self.epoch, self.ttl, self.now() if now is None else now)

    def invalidate(self):
        """Drop every page, the known total and the snapshot"""
        self._pages.clear()
        self._snapshot = None
        self.total_pages = None
        self.epoch = None

    def begin_epoch(self):
        """Start a new fetch session on an empty cache"""
        self.invalidate()
        self.epoch = self.now()

    def get(self, page_number: int) -> Optional[List[ImageMeta]]:
        return self._pages.get(page_number)

    def put(self, page_number: int, items: List[ImageMeta]):
        """Store a page, replacing what was cached under that number"""
        if self.epoch is None:
            self.epoch = self.now()
        self._pages[page_number] = list(items)
        self._snapshot = None

    @property
    def page_count(self) -> int:
        return len(self._pages)

    @property
    def total_known(self) -> bool:
        return self.total_pages is not None

    def set_total_pages(self, total: int):
        """Record the page count discovered from an exhausted cursor"""
        self.total_pages = total
        for page_number in [n for n in self._pages if n > total]:
            del self._pages[page_number]

    def missing_pages(self, start_page: int, end_page: int) -> List[int]:
        """Pages in [start_page, end_page] that are not cached, capped at the known total"""
        if self.total_pages is not None:
            end_page = min(end_page, self.total_pages)
        return [n for n in range(start_page, end_page + 1) if n not in self._pages]

    def assemble(self, start_page: int, end_page: int) -> Optional[List[ImageMeta]]:
        """Concatenate pages in order, or None if any of them is absent"""
        items: List[ImageMeta] = []
        for page_number in range(start_page, end_page + 1):
            page = self._pages.get(page_number)
            if page is None:
                return None
            items.extend(page)
        return items

    def item_count(self) -> Optional[int]:
        """Size of the whole collection, None until every page is known"""
        if self.total_pages is None:
            return None
        items = self.assemble(1, self.total_pages)
        return None if items is None else len(items)

    @property
    def snapshot(self) -> Optional[List[ImageMeta]]:
        return self._snapshot

    def set_snapshot(self, items: List[ImageMeta]):
        """Store the sorted collection; requires every page of the epoch"""
        if not self.is_complete():
            raise ValueError("Snapshot requires every page of the collection to be cached")
        self._snapshot = list(items)

    def is_complete(self) -> bool:
        """Whether every page up to the known total is cached"""
        return self.total_pages is not None and self.assemble(1, self.total_pages) is not None
