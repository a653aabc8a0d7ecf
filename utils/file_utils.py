"""
File operation utilities
"""

import uuid
from pathlib import Path
from typing import List, Tuple

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.gif', '.tiff', '.webp'}

def get_image_files(directory: str, recursive: bool = True) -> List[str]:
    """Get all image files in directory"""
    path = Path(directory)
    pattern = '**/*' if recursive else '*'

    image_files = [
        f for f in path.glob(pattern)
        if f.is_file() and f.suffix.lower() in IMAGE_EXTENSIONS
    ]

    return sorted(str(f) for f in image_files)

def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"


class ImageFileStore:
    """
    Writes original uploads and their thumbnails to local directories.

    Only the resulting paths are tracked by the gallery; durability of the
    files themselves is left to whatever backs these directories.
    """

    def __init__(self, upload_dir: str, thumbnail_dir: str):
        self.upload_dir = Path(upload_dir)
        self.thumbnail_dir = Path(thumbnail_dir)
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.thumbnail_dir.mkdir(parents=True, exist_ok=True)

    def save(self, filename: str, data: bytes, thumbnail: bytes) -> Tuple[str, str]:
        """Store original and thumbnail bytes, returning their paths"""
        stem = uuid.uuid4().hex
        original = self.upload_dir / f"{stem}_{filename}"
        thumb = self.thumbnail_dir / f"{stem}_thumb.jpg"
        original.write_bytes(data)
        thumb.write_bytes(thumbnail)
        return str(original), str(thumb)

    def read(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def remove(self, *paths: str):
        """Delete stored files; already missing files are ignored"""
        for path in paths:
            if path:
                Path(path).unlink(missing_ok=True)
