# core/color_index.py

import logging
import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from core.errors import ValidationError
from core.locks import ReadWriteLock
from utils.color_utils import RGB, delta_e, parse_color, rgb_to_lab

logger = logging.getLogger(__name__)

BucketKey = Tuple[int, int, int]


class _ColorTable:
    """Bucket map plus per-image CIELAB colors; guarded by ColorIndex"""

    def __init__(self, step: int):
        self.step = step
        self.buckets: Dict[BucketKey, Set[int]] = {}
        self.keys: Dict[int, Set[BucketKey]] = {}
        self.labs: Dict[int, np.ndarray] = {}

    def bucket_of(self, rgb: Sequence[int]) -> BucketKey:
        return tuple(int(c) // self.step for c in rgb)

    def index(self, image_id: int, colors: List[RGB], labs: np.ndarray):
        self.remove(image_id)
        if not colors:
            return
        keys = {self.bucket_of(rgb) for rgb in colors}
        for key in keys:
            self.buckets.setdefault(key, set()).add(image_id)
        self.keys[image_id] = keys
        self.labs[image_id] = labs

    def remove(self, image_id: int) -> bool:
        keys = self.keys.pop(image_id, None)
        if keys is None:
            return False
        for key in keys:
            members = self.buckets[key]
            members.discard(image_id)
            if not members:
                del self.buckets[key]
        self.labs.pop(image_id, None)
        return True

    def query(self, target: RGB, target_lab: np.ndarray, limit: int,
              max_candidates: int, settle_rings: int) -> List[Tuple[int, float]]:
        origin = self.bucket_of(target)

        # Group non-empty buckets by Chebyshev distance from the target bucket
        rings: Dict[int, List[BucketKey]] = defaultdict(list)
        for key in self.buckets:
            ring = max(abs(a - b) for a, b in zip(key, origin))
            rings[ring].append(key)

        candidates: Set[int] = set()
        enough_at: Optional[int] = None
        # At most one pass per grid level
        for ring in sorted(rings):
            if enough_at is not None and ring > enough_at + settle_rings:
                break
            for key in rings[ring]:
                candidates.update(self.buckets[key])
            if len(candidates) >= max_candidates:
                logger.debug("Color query hit candidate cap at ring %d", ring)
                break
            if enough_at is None and len(candidates) >= limit:
                enough_at = ring

        scored = [
            (float(delta_e(self.labs[image_id], target_lab).min()), image_id)
            for image_id in candidates
        ]
        scored.sort()
        return [(image_id, distance) for distance, image_id in scored[:limit]]


class ColorIndex:
    """
    Maps quantized RGB buckets to the images whose dominant colors fall in them.

    A query starts in the target color's bucket and widens one quantization
    step at a time (rings of neighbouring buckets) until enough candidates
    are found. Candidates are ranked by CIE76 distance in CIELAB between the
    target and their closest dominant color, so ranking follows perceived
    similarity rather than raw RGB distance.
    """

    def __init__(self, quantization_step: int = 32, max_colors: int = 5,
                 max_candidates: int = 10000, settle_rings: int = 1):
        if not 1 <= quantization_step <= 256:
            raise ValueError("quantization_step must be between 1 and 256")
        self.quantization_step = quantization_step
        self.max_colors = max_colors
        self.max_candidates = max_candidates
        self.settle_rings = settle_rings
        self._table = _ColorTable(quantization_step)
        self._lock = ReadWriteLock()
        self._rebuild_lock = threading.Lock()
        self._journal: Optional[List[Tuple[str, int, Optional[Tuple[List[RGB], np.ndarray]]]]] = None

    @classmethod
    def from_config(cls, config, max_colors: int = 5) -> 'ColorIndex':
        return cls(
            quantization_step=config.quantization_step,
            max_colors=max_colors,
            max_candidates=config.max_candidates,
            settle_rings=config.settle_rings,
        )

    def _prepare(self, colors) -> Tuple[List[RGB], np.ndarray]:
        """Parse up to max_colors colors (in prevalence order) and convert to CIELAB"""
        parsed = [parse_color(color) for color in list(colors)[:self.max_colors]]
        return parsed, rgb_to_lab(parsed)

    def index(self, image_id: int, colors: Iterable):
        """Register image_id under its dominant colors, replacing prior buckets"""
        parsed, labs = self._prepare(colors)
        with self._lock.write():
            self._table.index(int(image_id), parsed, labs)
            if self._journal is not None:
                self._journal.append(('index', int(image_id), (parsed, labs)))

    def remove(self, image_id: int):
        """Remove image_id from every bucket"""
        with self._lock.write():
            self._table.remove(int(image_id))
            if self._journal is not None:
                self._journal.append(('remove', int(image_id), None))

    def query(self, target_color, limit: int) -> List[Tuple[int, float]]:
        """
        Find images with a dominant color close to target_color.

        Args:
            target_color: RGB triple or any string accepted by parse_color
            limit: Maximum number of results

        Returns:
            (image_id, delta E) pairs ascending by distance, then by id
        """
        if limit < 0:
            raise ValidationError("limit must be >= 0")
        target = parse_color(target_color)
        if limit == 0:
            return []
        target_lab = rgb_to_lab([target])[0]
        with self._lock.read():
            return self._table.query(target, target_lab, limit,
                                     self.max_candidates, self.settle_rings)

    def rebuild(self, entries: Iterable[Tuple[int, Iterable]]) -> int:
        """Replace the whole index; concurrent updates are replayed onto the new table"""
        with self._rebuild_lock:
            with self._lock.write():
                self._journal = []
            try:
                table = _ColorTable(self.quantization_step)
                for image_id, colors in entries:
                    try:
                        parsed, labs = self._prepare(colors)
                    except ValidationError as e:
                        logger.warning("Skipping image %s during rebuild: %s", image_id, e)
                        continue
                    table.index(int(image_id), parsed, labs)

                with self._lock.write():
                    for op, image_id, payload in self._journal:
                        if op == 'index':
                            table.index(image_id, *payload)
                        else:
                            table.remove(image_id)
                    self._table = table
            finally:
                with self._lock.write():
                    self._journal = None

        logger.info("Color index rebuilt with %d entries", len(self))
        return len(self)

    @property
    def bucket_count(self) -> int:
        with self._lock.read():
            return len(self._table.buckets)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._table.keys)

    def __contains__(self, image_id) -> bool:
        with self._lock.read():
            return int(image_id) in self._table.keys
