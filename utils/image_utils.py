"""
Image utility functions
"""

import cv2
import numpy as np
from typing import Optional, Tuple

def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes to a BGR array, None if undecodable"""
    if not data:
        return None
    buffer = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if img is None or img.size == 0:
        return None
    return img

def resize_maintain_aspect(image: np.ndarray,
                          target_size: Tuple[int, int]) -> np.ndarray:
    """Resize image maintaining aspect ratio"""
    h, w = image.shape[:2]
    target_w, target_h = target_size

    scale = min(target_w / w, target_h / h)
    new_w = max(1, int(w * scale))
    new_h = max(1, int(h * scale))

    return cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)

def limit_dimension(image: np.ndarray, max_dimension: int = 1024) -> np.ndarray:
    """Shrink image so its longer side is at most max_dimension"""
    h, w = image.shape[:2]

    if max(h, w) <= max_dimension:
        return image

    return resize_maintain_aspect(image, (max_dimension, max_dimension))

def make_thumbnail(image: np.ndarray, size: int = 300) -> bytes:
    """Encode a JPEG thumbnail fitting in a size x size box"""
    thumb = limit_dimension(image, size)
    ok, encoded = cv2.imencode('.jpg', thumb, [cv2.IMWRITE_JPEG_QUALITY, 85])
    if not ok:
        raise ValueError("Thumbnail encoding failed")
    return encoded.tobytes()
