import logging
from abc import ABC, abstractmethod
from typing import List, Sequence, Tuple

import cv2
import numpy as np

from core.errors import ExtractionError
from core.models import RGB, ExtractionResult
from utils.color_utils import color_names
from utils.image_utils import decode_image, limit_dimension

logger = logging.getLogger(__name__)


class FeatureExtractor(ABC):
    """
    Turns encoded image bytes into a feature vector plus display metadata.

    Subclasses provide the vector; color analysis, tags and the description
    are shared so every backend fills the gallery metadata the same way.
    """

    dimension: int

    def __init__(self, max_colors: int = 5, max_image_dimension: int = 1024):
        self.max_colors = max_colors
        self.max_image_dimension = max_image_dimension

    @abstractmethod
    def embed(self, image: np.ndarray) -> np.ndarray:
        """Return the feature vector for a BGR image"""

    def extract(self, data: bytes) -> ExtractionResult:
        """
        Extract vector, tags, description and dominant colors

        Raises:
            ExtractionError: if the bytes cannot be decoded
        """
        image = decode_image(data)
        if image is None:
            raise ExtractionError("Cannot decode image data")
        image = limit_dimension(image, self.max_image_dimension)

        vector = np.asarray(self.embed(image), dtype=np.float32).reshape(-1)
        colors = dominant_colors(image, self.max_colors)
        tags, description = self._describe(image, colors)

        return ExtractionResult(vector=vector, tags=tags,
                                description=description, colors=colors)

    def _describe(self, image: np.ndarray, colors: List[RGB]) -> Tuple[List[str], str]:
        h, w = image.shape[:2]
        if w > h * 1.1:
            orientation = 'landscape'
        elif h > w * 1.1:
            orientation = 'portrait'
        else:
            orientation = 'square'

        tags = [orientation]

        brightness = float(cv2.cvtColor(image, cv2.COLOR_BGR2HSV)[..., 2].mean())
        if brightness < 70:
            tags.append('dark')
        elif brightness > 185:
            tags.append('bright')

        if self._detect_blur(image):
            tags.append('blurry')

        names = color_names(colors[:3])
        tags.extend(names)

        description = f"{orientation.capitalize()} image"
        if names:
            description += f" with mostly {', '.join(names)} tones"
        return tags, description

    @staticmethod
    def _detect_blur(image: np.ndarray, threshold: float = 100.0) -> bool:
        """Detect if image is blurry using Laplacian variance"""
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        laplacian_var = cv2.Laplacian(gray, cv2.CV_64F).var()
        return laplacian_var < threshold


def dominant_colors(image: np.ndarray, max_colors: int = 5) -> List[RGB]:
    """
    Dominant colors of a BGR image, most prevalent first, as RGB triples.

    Pixels of a downscaled copy are clustered with k-means; cluster centres
    are ordered by the number of pixels assigned to them.
    """
    small = limit_dimension(image, 64)
    pixels = small.reshape(-1, 3).astype(np.float32)
    distinct = np.unique(pixels, axis=0).shape[0]
    k = min(max_colors, distinct)
    if k == 0:
        return []

    cv2.setRNGSeed(0)
    criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 20, 1.0)
    _, labels, centers = cv2.kmeans(pixels, k, None, criteria, 3, cv2.KMEANS_PP_CENTERS)

    counts = np.bincount(labels.flatten(), minlength=k)
    colors: List[RGB] = []
    for idx in np.argsort(-counts, kind='stable'):
        if counts[idx] == 0:
            continue
        b, g, r = (int(round(float(c))) for c in centers[idx])
        rgb = (min(max(r, 0), 255), min(max(g, 0), 255), min(max(b, 0), 255))
        if rgb not in colors:
            colors.append(rgb)
    return colors


class HistogramFeatureExtractor(FeatureExtractor):
    """
    HSV color histogram embedding - fast, dependency-light default
    """

    def __init__(self, bins: Sequence[int] = (8, 4, 4), **kwargs):
        super().__init__(**kwargs)
        self.bins = tuple(int(b) for b in bins)
        if len(self.bins) != 3:
            raise ValueError("histogram_bins needs one entry per HSV channel")
        self.dimension = int(np.prod(self.bins))

    def embed(self, image: np.ndarray) -> np.ndarray:
        hsv = cv2.cvtColor(image, cv2.COLOR_BGR2HSV)
        hist = cv2.calcHist([hsv], [0, 1, 2], None, list(self.bins),
                            [0, 180, 0, 256, 0, 256])
        # Square root damps dominant bins before L2 normalisation
        vector = np.sqrt(hist.flatten())
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector


class CLIPFeatureExtractor(FeatureExtractor):
    """
    CLIP-based feature extraction - semantic similarity, robust to blur
    """

    def __init__(self, model_name: str = "openai/clip-vit-base-patch32",
                 device: str = 'cpu', **kwargs):
        super().__init__(**kwargs)
        import torch
        from transformers import CLIPModel, CLIPProcessor

        self._torch = torch
        self.device = device
        self.model = CLIPModel.from_pretrained(model_name)
        self.processor = CLIPProcessor.from_pretrained(model_name)
        self.model.to(device)
        self.model.eval()
        self.dimension = int(self.model.config.projection_dim)

    def embed(self, image: np.ndarray) -> np.ndarray:
        """Extract CLIP embeddings"""
        image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        with self._torch.no_grad():
            inputs = self.processor(images=image_rgb, return_tensors="pt")
            inputs = {k: v.to(self.device) for k, v in inputs.items()}
            image_features = self.model.get_image_features(**inputs)
            image_features = image_features / image_features.norm(dim=-1, keepdim=True)

        return image_features.cpu().numpy().flatten()


def build_extractor(config) -> FeatureExtractor:
    """
    Create the extractor named by config.backend.

    Raises:
        ValueError: unknown backend, or a vector dimension that differs from
            the deployment's configured dimension
    """
    common = dict(max_colors=config.max_colors,
                  max_image_dimension=config.max_image_dimension)

    if config.backend == 'histogram':
        extractor = HistogramFeatureExtractor(bins=config.histogram_bins, **common)
    elif config.backend == 'clip':
        device = 'cpu'
        if config.use_gpu:
            import torch
            device = 'cuda' if torch.cuda.is_available() else 'cpu'
        extractor = CLIPFeatureExtractor(model_name=config.model_name, device=device, **common)
    else:
        raise ValueError(f"Unknown feature extraction backend: {config.backend}")

    if extractor.dimension != config.dimension:
        raise ValueError(
            f"{config.backend} extractor produces {extractor.dimension}-d vectors, "
            f"configured dimension is {config.dimension}"
        )
    logger.info("Using %s feature extractor (%d dimensions)", config.backend, extractor.dimension)
    return extractor
