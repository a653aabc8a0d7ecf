# core/context.py

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import SystemConfig
from core.color_index import ColorIndex
from core.database import FeatureStore
from core.feature_extractors import FeatureExtractor, build_extractor
from core.ingestion import IngestionPipeline
from core.search_service import SearchService
from core.vector_index import VectorIndex
from security.auth import TokenAuthenticator
from security.input_validation import SecurityValidator
from utils.file_utils import ImageFileStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """All long-lived service objects, wired from one SystemConfig"""
    config: SystemConfig
    store: FeatureStore
    vector_index: VectorIndex
    color_index: ColorIndex
    pipeline: IngestionPipeline
    search: SearchService
    authenticator: TokenAuthenticator

    @classmethod
    def from_config(cls, config: SystemConfig,
                    extractor: Optional[FeatureExtractor] = None,
                    recover: bool = True) -> 'ServiceContext':
        """
        Build the service graph

        Args:
            config: Loaded system configuration
            extractor: Feature extractor override; built from config if omitted
            recover: Rebuild indexes from the store and resume pending work
        """
        fe = config.feature_extraction
        extractor = extractor or build_extractor(fe)
        dimension = extractor.dimension

        store = FeatureStore(config.database_path, dimension=dimension)
        vector_index = VectorIndex.from_config(dimension, config.vector_index)
        color_index = ColorIndex.from_config(config.color_index, max_colors=fe.max_colors)

        pipeline = IngestionPipeline(
            store=store,
            vector_index=vector_index,
            color_index=color_index,
            extractor=extractor,
            file_store=ImageFileStore(config.upload_dir, config.thumbnail_dir),
            validator=SecurityValidator(int(config.max_upload_mb * 1024 * 1024)),
            n_workers=config.n_workers,
            thumbnail_size=config.thumbnail_size,
        )
        search = SearchService(
            store=store,
            vector_index=vector_index,
            color_index=color_index,
            max_page_size=config.search.max_page_size,
            max_results=config.search.max_results,
        )

        context = cls(
            config=config,
            store=store,
            vector_index=vector_index,
            color_index=color_index,
            pipeline=pipeline,
            search=search,
            authenticator=TokenAuthenticator(config.auth.tokens),
        )

        if recover:
            counts = pipeline.rebuild_indexes()
            resumed = pipeline.resume_pending()
            logger.info("Startup recovery: %d vectors, %d color entries, %d resumed",
                        counts['vectors'], counts['colors'], resumed)
        return context

    def close(self):
        self.pipeline.close()
        self.store.close()


def initialize_directories(config: SystemConfig):
    """Create necessary directories"""
    Path(config.data_dir).mkdir(parents=True, exist_ok=True)
    Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)
    Path(config.upload_dir).mkdir(parents=True, exist_ok=True)
    Path(config.thumbnail_dir).mkdir(parents=True, exist_ok=True)
