# core/errors.py


class GalleryError(Exception):
    """Base class for all gallery service errors"""


class ValidationError(GalleryError):
    """Malformed input: wrong vector dimension, bad color, missing field"""


class InvalidColorError(ValidationError):
    """Color value could not be parsed"""


class NotFound(GalleryError):
    """Unknown image identifier"""

    def __init__(self, image_id):
        super().__init__(f"Image {image_id} not found")
        self.image_id = image_id


class Unauthorized(GalleryError):
    """Request without a verified caller identity"""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class EmptyIndexError(GalleryError):
    """Query against an index with no entries"""


class ExtractionError(GalleryError):
    """Feature extraction failed for an image"""
