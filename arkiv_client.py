import httpx
import itertools
import logging
import re
from typing import Optional, List, Dict, Any, Union

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from models import ImageMeta


logger = logging.getLogger(__name__)

PAGE_SIZE = 50
ENTITY_KEY = re.compile(r"0x[0-9a-fA-F]+")


class RemoteStoreError(Exception):
    """Raised when the entity store cannot be reached or answers with an error"""


class Attribute(BaseModel):
    key: str
    value: Union[str, int, float, None] = None


class RawEntity(BaseModel):
    """Entity as returned by the store, before projection"""
    key: str
    attributes: List[Attribute] = []
    payload: Optional[bytes] = None


class PageCursor(BaseModel):
    """Position of the next page; pins later pages to the block of the first one"""
    token: str
    block_number: Optional[str] = None


class EntityPage(BaseModel):
    entities: List[RawEntity]
    next_cursor: Optional[PageCursor] = None

    @property
    def exhausted(self) -> bool:
        return self.next_cursor is None


def parse_entity(entity: RawEntity) -> ImageMeta:
    """Project a raw entity onto ImageMeta, first matching attribute wins"""
    values: Dict[str, str] = {}
    for attribute in entity.attributes:
        if attribute.key in ("id", "prompt") and attribute.key not in values:
            values[attribute.key] = str(attribute.value) if attribute.value else ""

    return ImageMeta(
        key=entity.key,
        id=values.get("id", ""),
        prompt=values.get("prompt", ""),
    )


class RpcEntity(BaseModel):
    """Entity record as found in an arkiv_query result"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    key: str
    value: Optional[str] = None
    string_attributes: Optional[List[Attribute]] = None
    numeric_attributes: Optional[List[Attribute]] = None


class QueryResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    data: Optional[List[RpcEntity]] = None
    block_number: Union[str, int, None] = None
    cursor: Union[str, int, None] = None


def _decode_payload(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    hex_value = value[2:] if value.startswith("0x") else value
    try:
        return bytes.fromhex(hex_value)
    except ValueError as exc:
        raise RemoteStoreError("Payload is not valid hex") from exc


def _parse_result(result: Any) -> QueryResult:
    if not isinstance(result, dict):
        raise RemoteStoreError("arkiv_query returned no result")
    try:
        return QueryResult.model_validate(result)
    except ValidationError as exc:
        raise RemoteStoreError(f"Malformed store response: {exc}") from exc


def _entity_from_rpc(data: RpcEntity) -> RawEntity:
    attributes = list(data.string_attributes or [])
    attributes.extend(data.numeric_attributes or [])
    return RawEntity(
        key=data.key,
        attributes=attributes,
        payload=_decode_payload(data.value),
    )


class ArkivClient:
    """JSON-RPC client for the Arkiv entity store, scoped to one owner"""

    def __init__(
        self,
        rpc_url: str,
        owner_address: str,
        entity_type: Optional[str] = None,
        app_name: Optional[str] = None,
        page_size: int = PAGE_SIZE,
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.owner_address = owner_address
        self.entity_type = entity_type
        self.app_name = app_name
        self.page_size = page_size
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._request_ids = itertools.count(1)

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    def build_query(self) -> str:
        """Query string selecting this owner's image entities"""
        clauses = []
        if self.entity_type:
            clauses.append(f'type = "{self.entity_type}"')
        if self.app_name:
            clauses.append(f'app = "{self.app_name}"')
        clauses.append(f"$owner = {self.owner_address}")
        return " && ".join(clauses)

    async def _call(self, method: str, params: List[Any]) -> Any:
        body = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self.client.post(self.rpc_url, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise RemoteStoreError(f"{method} request failed: {e}") from e
        except ValueError as e:
            raise RemoteStoreError(f"{method} returned invalid JSON") from e

        if not isinstance(data, dict):
            raise RemoteStoreError(f"{method} returned an unexpected response")
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise RemoteStoreError(f"{method} failed: {message}")
        return data.get("result")

    async def query_page(self, cursor: Optional[PageCursor] = None) -> EntityPage:
        """Fetch one page of metadata, newest id first, without payloads"""
        options: Dict[str, Any] = {
            "includeData": {
                "key": True,
                "attributes": True,
                "payload": False,
            },
            "orderBy": [{"name": "id", "type": "number", "desc": True}],
            "resultsPerPage": self.page_size,
        }
        if cursor is not None:
            options["cursor"] = cursor.token
            if cursor.block_number is not None:
                options["atBlock"] = cursor.block_number

        result = _parse_result(await self._call("arkiv_query", [self.build_query(), options]))

        entities = [_entity_from_rpc(item) for item in result.data or []]
        next_cursor = None
        if result.cursor:
            block_number = result.block_number
            if cursor is not None and cursor.block_number is not None:
                block_number = cursor.block_number
            next_cursor = PageCursor(
                token=str(result.cursor),
                block_number=str(block_number) if block_number is not None else None,
            )
        return EntityPage(entities=entities, next_cursor=next_cursor)

    async def get_entity(self, key: str) -> Optional[RawEntity]:
        """Fetch a single entity with its payload"""
        if not ENTITY_KEY.fullmatch(key):
            return None
        options = {
            "includeData": {"key": True, "attributes": True, "payload": True},
            "resultsPerPage": 1,
        }
        result = await self._call("arkiv_query", [f"$key = {key}", options])
        if result is None:
            return None
        items = _parse_result(result).data or []
        if not items:
            return None
        return _entity_from_rpc(items[0])

    async def get_entity_payload(self, key: str) -> Optional[bytes]:
        """Get the raw payload of an entity, None if missing or unreachable"""
        try:
            entity = await self.get_entity(key)
        except RemoteStoreError as e:
            logger.warning("Failed to fetch entity %s: %s", key, e)
            return None
        if entity is None:
            return None
        return entity.payload or None
