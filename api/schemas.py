# api/schemas.py
# Request and response models mirroring the gallery front end's /api calls

from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from core.models import ImageRecord, TextSearchPage
from utils.color_utils import to_hex


class ImageMetadata(BaseModel):
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list, description="Dominant colors as #RRGGBB, most prevalent first")
    ai_processing_status: str
    error: Optional[str] = None


class ImageItem(BaseModel):
    id: int
    filename: str
    original_path: str
    thumbnail_path: str
    uploaded_at: datetime
    metadata: ImageMetadata

    @classmethod
    def from_record(cls, record: ImageRecord) -> "ImageItem":
        return cls(
            id=record.id,
            filename=record.filename,
            original_path=record.original_path,
            thumbnail_path=record.thumbnail_path,
            uploaded_at=record.uploaded_at,
            metadata=ImageMetadata(
                description=record.description,
                tags=list(record.tags),
                colors=[to_hex(color) for color in record.colors],
                ai_processing_status=record.status.value,
                error=record.error,
            ),
        )


def to_items(records: List[ImageRecord]) -> List[ImageItem]:
    return [ImageItem.from_record(record) for record in records]


class SearchRequest(BaseModel):
    query: str = ""
    page: int = 1
    limit: int = 20


class SearchResponse(BaseModel):
    images: List[ImageItem]
    total: int
    page: int
    limit: int
    has_more: bool

    @classmethod
    def from_page(cls, page: TextSearchPage) -> "SearchResponse":
        return cls(
            images=to_items(page.images),
            total=page.total,
            page=page.page,
            limit=page.limit,
            has_more=page.has_more,
        )


class SimilarRequest(BaseModel):
    image_id: int
    limit: int = 10


class ColorFilterRequest(BaseModel):
    color: Union[str, List[int]] = Field(..., description="#RRGGBB, #RGB, rgb(r, g, b) or [r, g, b]")
    limit: int = 20


class DeleteResponse(BaseModel):
    deleted: int


class RebuildResponse(BaseModel):
    vectors: int
    colors: int


class HealthResponse(BaseModel):
    status: str
    images: int
    vector_index: int
    color_index: int
    approximate: bool
