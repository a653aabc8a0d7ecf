# core/search_service.py

import logging
from typing import List, Optional, Tuple

from core.color_index import ColorIndex
from core.database import FeatureStore
from core.errors import EmptyIndexError, NotFound, ValidationError
from core.models import CallerIdentity, ImageRecord, TextSearchPage
from core.vector_index import VectorIndex
from security.auth import require_caller
from utils.color_utils import parse_color

logger = logging.getLogger(__name__)


class SearchService:
    """
    Read-only query surface over the store and both indexes.

    Every call needs a verified caller and is stateless: all parameters come
    with the request. Index hits are resolved back to records through the
    store, and anything the store no longer has as completed is dropped, so a
    stale index entry never reaches a caller.
    """

    def __init__(self, store: FeatureStore, vector_index: VectorIndex,
                 color_index: ColorIndex, max_page_size: int = 100,
                 max_results: int = 100):
        self.store = store
        self.vector_index = vector_index
        self.color_index = color_index
        self.max_page_size = max_page_size
        self.max_results = max_results

    def _check_page(self, page: int, page_size: int):
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= page_size <= self.max_page_size:
            raise ValidationError(f"page size must be between 1 and {self.max_page_size}")

    def _check_limit(self, limit: int):
        if not 1 <= limit <= self.max_results:
            raise ValidationError(f"limit must be between 1 and {self.max_results}")

    def get_images(self, caller: Optional[CallerIdentity], page: int = 1,
                   page_size: int = 20) -> List[ImageRecord]:
        """Gallery page, newest first"""
        require_caller(caller)
        self._check_page(page, page_size)
        return self.store.list(page, page_size)

    def get_image(self, caller: Optional[CallerIdentity], image_id: int) -> ImageRecord:
        require_caller(caller)
        return self.store.get(image_id)

    def search_by_text(self, caller: Optional[CallerIdentity], query: str,
                       page: int = 1, page_size: int = 20) -> TextSearchPage:
        """Token search over filename, description and tags"""
        require_caller(caller)
        self._check_page(page, page_size)
        images, total = self.store.search_text(query, page, page_size)
        return TextSearchPage(images=images, total=total, page=page, limit=page_size)

    def find_similar(self, caller: Optional[CallerIdentity], image_id: int,
                     limit: int = 10) -> List[ImageRecord]:
        """
        Completed images closest to image_id, excluding image_id itself

        Raises:
            NotFound: image_id does not exist
        """
        require_caller(caller)
        self._check_limit(limit)
        record = self.store.get(image_id)
        if not record.is_completed:
            return []

        try:
            hits = self.vector_index.query_similar_to(image_id, limit)
        except NotFound:
            # Completed in the store but not indexed yet, or index mid-recovery
            logger.info("Image %s is not in the vector index", image_id)
            return []
        return self._resolve(hits)

    def filter_by_color(self, caller: Optional[CallerIdentity], color,
                        limit: int = 20) -> List[ImageRecord]:
        """
        Completed images whose dominant colors are closest to color

        Raises:
            InvalidColorError: color is not a recognizable color value
        """
        require_caller(caller)
        self._check_limit(limit)
        target = parse_color(color)
        hits = self.color_index.query(target, limit)
        return self._resolve(hits)

    def _resolve(self, hits: List[Tuple[int, float]]) -> List[ImageRecord]:
        records = self.store.get_many(image_id for image_id, _ in hits)
        resolved = []
        for image_id, _ in hits:
            record = records.get(image_id)
            if record is None or not record.is_completed:
                logger.debug("Dropping stale index entry %s", image_id)
                continue
            resolved.append(record)
        return resolved

    def query_vector(self, caller: Optional[CallerIdentity], vector,
                     limit: int = 10) -> List[ImageRecord]:
        """Completed images closest to an arbitrary feature vector"""
        require_caller(caller)
        self._check_limit(limit)
        try:
            hits = self.vector_index.query(vector, limit)
        except EmptyIndexError:
            return []
        return self._resolve(hits)
