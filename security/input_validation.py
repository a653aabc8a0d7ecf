# security/input_validation.py

import os
import re
from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from core.errors import ValidationError
from utils.file_utils import IMAGE_EXTENSIONS
from utils.image_utils import decode_image

class SecurityValidator:
    """
    Validate inputs for security
    """

    ALLOWED_EXTENSIONS = IMAGE_EXTENSIONS
    MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MB

    def __init__(self, max_file_size: Optional[int] = None):
        self.max_file_size = max_file_size or self.MAX_FILE_SIZE

    def validate_upload(self, filename: str, data: bytes) -> Tuple[str, np.ndarray]:
        """
        Validate one uploaded image payload

        Returns:
            Sanitized filename and the decoded BGR image

        Raises:
            ValidationError: missing name, empty or oversized payload,
                unsupported extension, or bytes that are not an image
        """
        if not filename:
            raise ValidationError("filename is required")

        safe_name = self.sanitize_filename(filename)
        if Path(safe_name).suffix.lower() not in self.ALLOWED_EXTENSIONS:
            raise ValidationError(f"Unsupported file type: {filename}")

        if not data:
            raise ValidationError(f"Empty upload: {filename}")
        if len(data) > self.max_file_size:
            raise ValidationError(
                f"{filename} exceeds the {self.max_file_size // (1024 * 1024)} MB upload limit"
            )

        # Verify actual content (not just extension)
        image = decode_image(data)
        if image is None:
            raise ValidationError(f"{filename} is not a readable image")

        return safe_name, image

    @staticmethod
    def sanitize_filename(filename: str) -> str:
        """
        Sanitize filename to prevent injection attacks
        """
        # Remove path separators
        filename = filename.replace('/', '_').replace('\\', '_')

        # Remove special characters
        filename = re.sub(r'[^\w\s.-]', '', filename).strip()

        # No hidden files or empty names
        filename = filename.lstrip('.') or 'upload'

        # Limit length
        if len(filename) > 255:
            name, ext = os.path.splitext(filename)
            filename = name[:250] + ext

        return filename

    @staticmethod
    def validate_directory(directory: str, allow_system_dirs: bool = False) -> bool:
        """
        Validate directory path
        """
        dir_path = Path(directory).resolve()

        # Check if directory exists
        if not dir_path.is_dir():
            return False

        # Prevent access to system directories
        if not allow_system_dirs:
            system_dirs = {
                Path('/etc'), Path('/sys'), Path('/proc'),
                Path('C:\\Windows'), Path('C:\\Program Files')
            }

            for sys_dir in system_dirs:
                if sys_dir.exists() and dir_path.is_relative_to(sys_dir):
                    return False

        # Check permissions
        return os.access(dir_path, os.R_OK)
