import re

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, List


DECIMAL_ID = re.compile(r"\s*[+-]?[0-9]+\s*")


class ApiModel(BaseModel):
    """Base for response bodies, serialized with camelCase keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImageMeta(ApiModel):
    """Projected metadata of one image entity"""
    key: str
    id: str = ""
    prompt: str = ""

    @property
    def numeric_id(self) -> int:
        """Integer value of id for sorting, 0 when it is not a decimal number"""
        if DECIMAL_ID.fullmatch(self.id):
            return int(self.id)
        return 0


class Pagination(ApiModel):
    page: int
    per_page: int
    total: int
    total_pages: int
    has_more: bool = False


class ImagesResponse(ApiModel):
    """Response model for one page of the image listing"""
    images: List[ImageMeta]
    pagination: Pagination


class RangeResult(ApiModel):
    """Slice of the collection served by a range fetch"""
    images: List[ImageMeta]
    has_more: bool
    total_fetched: int


class ImageInfo(ApiModel):
    key: str
    size: int


class ProgressUpdate(ApiModel):
    """Status line pushed while a fetch is running"""
    status: str
    count: Optional[int] = None
