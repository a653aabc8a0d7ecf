"""
Color parsing and perceptual color space helpers
"""

import re
from typing import Iterable, List, Sequence, Tuple, Union

import cv2
import numpy as np

from core.errors import InvalidColorError

RGB = Tuple[int, int, int]

_HEX_RE = re.compile(r'^#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$')
_RGB_RE = re.compile(r'^rgb\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*\)$', re.IGNORECASE)

# Reference palette used to turn dominant colors into searchable tags
NAMED_COLORS = {
    'black': (0, 0, 0),
    'white': (255, 255, 255),
    'gray': (128, 128, 128),
    'red': (220, 20, 30),
    'orange': (255, 140, 0),
    'yellow': (250, 220, 40),
    'green': (40, 160, 60),
    'teal': (0, 128, 128),
    'blue': (30, 80, 220),
    'purple': (128, 50, 160),
    'pink': (245, 150, 190),
    'brown': (130, 80, 40),
}


def parse_color(value: Union[str, Sequence[int]]) -> RGB:
    """
    Parse a color given as '#RGB', '#RRGGBB' (leading '#' optional),
    'rgb(r, g, b)' or a sequence of three 0-255 integers.

    Raises:
        InvalidColorError: when the value is not a recognizable color
    """
    if isinstance(value, str):
        text = value.strip()
        match = _HEX_RE.match(text)
        if match:
            digits = match.group(1)
            if len(digits) == 3:
                digits = ''.join(ch * 2 for ch in digits)
            return tuple(int(digits[i:i + 2], 16) for i in (0, 2, 4))
        match = _RGB_RE.match(text)
        if match:
            return _checked_rgb(int(part) for part in match.groups())
        raise InvalidColorError(f"Malformed color value: {value!r}")

    if isinstance(value, (list, tuple)) and len(value) == 3:
        if not all(isinstance(part, (int, np.integer)) and not isinstance(part, bool)
                   for part in value):
            raise InvalidColorError(f"Malformed color value: {value!r}")
        return _checked_rgb(value)

    raise InvalidColorError(f"Malformed color value: {value!r}")


def _checked_rgb(parts: Iterable[int]) -> RGB:
    rgb = tuple(int(part) for part in parts)
    if any(channel < 0 or channel > 255 for channel in rgb):
        raise InvalidColorError(f"Color channel out of range: {rgb}")
    return rgb


def to_hex(rgb: Sequence[int]) -> str:
    """Format an RGB triple as '#RRGGBB'"""
    return '#{:02X}{:02X}{:02X}'.format(*(int(c) for c in rgb))


def rgb_to_lab(colors: Sequence[Sequence[int]]) -> np.ndarray:
    """
    Convert RGB triples to CIELAB.

    Args:
        colors: n RGB triples with channels in 0-255

    Returns:
        Array of shape (n, 3): L in [0, 100], a and b roughly in [-128, 127]
    """
    rgb = np.asarray(colors, dtype=np.float32).reshape(1, -1, 3) / 255.0
    if rgb.shape[1] == 0:
        return np.empty((0, 3), dtype=np.float32)
    lab = cv2.cvtColor(rgb, cv2.COLOR_RGB2Lab)
    return lab.reshape(-1, 3)


def delta_e(lab_a: np.ndarray, lab_b: np.ndarray) -> np.ndarray:
    """CIE76 color difference (Euclidean distance in CIELAB)"""
    return np.linalg.norm(lab_a - lab_b, axis=-1)


_NAMED_LAB = rgb_to_lab(list(NAMED_COLORS.values()))
_NAMES = list(NAMED_COLORS.keys())


def closest_color_name(rgb: Sequence[int]) -> str:
    """Name of the palette entry perceptually closest to rgb"""
    distances = delta_e(_NAMED_LAB, rgb_to_lab([rgb])[0])
    return _NAMES[int(np.argmin(distances))]


def color_names(colors: Sequence[Sequence[int]]) -> List[str]:
    """Distinct palette names for colors, in input order"""
    names = []
    for rgb in colors:
        name = closest_color_name(rgb)
        if name not in names:
            names.append(name)
    return names
