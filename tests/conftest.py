"""
Pytest fixtures for the image gateway.
Provides an in-memory entity source, a controllable clock and a wired catalog.
"""

import asyncio
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from arkiv_client import Attribute, EntityPage, PageCursor, RawEntity, RemoteStoreError
from cache import PageCache
from catalog import ImageCatalog
from main import create_app


def make_entity(index: int, id_value, prompt: str = "", payload: Optional[bytes] = None) -> RawEntity:
    attributes = [Attribute(key="prompt", value=prompt)]
    if id_value is not None:
        attributes.append(Attribute(key="id", value=id_value))
    return RawEntity(key=f"0x{index:04x}", attributes=attributes, payload=payload)


def make_entities(count: int) -> list[RawEntity]:
    """Entities ordered newest first, as the store returns them"""
    return [make_entity(i, str(count - i), f"image number {i}") for i in range(count)]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeEntitySource:
    """Serves entities in fixed pages behind an offset cursor"""

    def __init__(self, entities: list[RawEntity], page_size: int = 50):
        self.entities = list(entities)
        self.page_size = page_size
        self.query_calls = 0
        self.payload_calls = 0
        self.error: Optional[Exception] = None
        self.fail_after: Optional[int] = None

    async def query_page(self, cursor: Optional[PageCursor] = None) -> EntityPage:
        self.query_calls += 1
        if self.error is not None:
            raise self.error
        if self.fail_after is not None and self.query_calls > self.fail_after:
            raise RemoteStoreError("connection reset")

        offset = int(cursor.token) if cursor else 0
        chunk = self.entities[offset:offset + self.page_size]
        next_offset = offset + self.page_size
        next_cursor = None
        if next_offset < len(self.entities):
            next_cursor = PageCursor(token=str(next_offset), block_number="0x10")
        return EntityPage(entities=chunk, next_cursor=next_cursor)

    async def get_entity_payload(self, key: str) -> Optional[bytes]:
        self.payload_calls += 1
        for entity in self.entities:
            if entity.key == key:
                return entity.payload
        return None


class YieldingEntitySource(FakeEntitySource):
    """Gives up the event loop before every page, like a real network call"""

    async def query_page(self, cursor: Optional[PageCursor] = None) -> EntityPage:
        await asyncio.sleep(0)
        return await super().query_page(cursor)


class RecordingProgress:
    def __init__(self):
        self.events: list[tuple[str, Optional[int]]] = []

    def report(self, status: str, count: Optional[int] = None) -> None:
        self.events.append((status, count))

    @property
    def statuses(self) -> list[str]:
        return [status for status, _ in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def page_cache(clock) -> PageCache:
    return PageCache(ttl=300, clock=clock)


@pytest.fixture
def source() -> FakeEntitySource:
    return FakeEntitySource(make_entities(120))


@pytest.fixture
def catalog(page_cache, source) -> ImageCatalog:
    return ImageCatalog(page_cache, source)


@pytest.fixture
def progress() -> RecordingProgress:
    return RecordingProgress()


@pytest.fixture
def api_client(catalog):
    with TestClient(create_app(catalog)) as client:
        yield client
