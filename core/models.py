# core/models.py

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Tuple

import numpy as np

RGB = Tuple[int, int, int]


class ProcessingStatus(str, Enum):
    """Lifecycle of an uploaded image"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def normalize_tags(tags: Iterable[str]) -> List[str]:
    """Lower-case, strip and deduplicate tags; sorted for stable output"""
    cleaned = {tag.strip().lower() for tag in tags if tag and tag.strip()}
    return sorted(cleaned)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ImageRecord:
    """
    Stored image with its extracted metadata.

    The feature vector is only meaningful when status is COMPLETED; pending
    and failed records carry no vector and are never indexed.
    """
    filename: str
    original_path: str = ""
    thumbnail_path: str = ""
    id: Optional[int] = None
    uploaded_at: datetime = field(default_factory=utcnow)
    uploaded_by: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    colors: List[RGB] = field(default_factory=list)
    vector: Optional[np.ndarray] = None
    status: ProcessingStatus = ProcessingStatus.PENDING
    error: Optional[str] = None

    def __post_init__(self):
        self.tags = normalize_tags(self.tags)
        self.colors = [tuple(int(c) for c in color) for color in self.colors]
        self.status = ProcessingStatus(self.status)

    @property
    def is_completed(self) -> bool:
        return self.status == ProcessingStatus.COMPLETED


@dataclass
class ExtractionResult:
    """Output of a feature extractor for one image"""
    vector: np.ndarray
    tags: List[str] = field(default_factory=list)
    description: Optional[str] = None
    colors: List[RGB] = field(default_factory=list)


@dataclass(frozen=True)
class CallerIdentity:
    """Verified caller, passed explicitly with every request"""
    user_id: str
    email: Optional[str] = None


@dataclass
class TextSearchPage:
    """One page of text search results"""
    images: List[ImageRecord]
    total: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total
