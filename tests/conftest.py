# tests/conftest.py

import threading

import cv2
import numpy as np
import pytest

from core.color_index import ColorIndex
from core.database import FeatureStore
from core.feature_extractors import FeatureExtractor, HistogramFeatureExtractor
from core.ingestion import IngestionPipeline
from core.models import CallerIdentity
from core.vector_index import VectorIndex
from utils.file_utils import ImageFileStore

# BGR, the way cv2 stores pixels
RED = (0, 0, 255)
BLUE = (255, 0, 0)
GREEN = (0, 200, 0)


def solid_image(bgr, size=(64, 64)) -> np.ndarray:
    img = np.zeros((size[1], size[0], 3), dtype=np.uint8)
    img[:] = bgr
    return img


def encode(image: np.ndarray, ext: str = '.png') -> bytes:
    ok, buf = cv2.imencode(ext, image)
    assert ok
    return buf.tobytes()


def solid_png(bgr, size=(64, 64)) -> bytes:
    return encode(solid_image(bgr, size))


class BlockingExtractor(FeatureExtractor):
    """Histogram extractor that parks inside extract until released"""

    def __init__(self):
        super().__init__()
        self._inner = HistogramFeatureExtractor()
        self.dimension = self._inner.dimension
        self.started = threading.Event()
        self.release = threading.Event()

    def embed(self, image):
        return self._inner.embed(image)

    def extract(self, data):
        self.started.set()
        assert self.release.wait(10), "extractor was never released"
        return super().extract(data)


class FailingExtractor(FeatureExtractor):
    dimension = 128

    def embed(self, image):
        raise RuntimeError("model exploded")


@pytest.fixture
def caller():
    return CallerIdentity(user_id="alice")


@pytest.fixture
def store(tmp_path):
    feature_store = FeatureStore(str(tmp_path / "images.db"), dimension=128)
    yield feature_store
    feature_store.close()


@pytest.fixture
def vector_index():
    return VectorIndex(dimension=128)


@pytest.fixture
def color_index():
    return ColorIndex()


@pytest.fixture
def file_store(tmp_path):
    return ImageFileStore(str(tmp_path / "uploads"), str(tmp_path / "thumbnails"))


@pytest.fixture
def make_pipeline(store, vector_index, color_index, file_store):
    """Factory so tests can swap the extractor"""
    pipelines = []

    def factory(extractor=None, n_workers=2):
        pipeline = IngestionPipeline(
            store=store,
            vector_index=vector_index,
            color_index=color_index,
            extractor=extractor or HistogramFeatureExtractor(),
            file_store=file_store,
            n_workers=n_workers,
        )
        pipelines.append(pipeline)
        return pipeline

    yield factory
    for pipeline in pipelines:
        pipeline.close()
