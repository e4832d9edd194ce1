"""
color.py - Hue fingerprint math and color parsing.

Hues are scalars in [0, 1) on a circle (0 = red, 1/3 = green, 2/3 = blue).
Colors are RGB tuples with 0-255 integer channels; OpenCV images are BGR,
so convert with ``rgb_to_bgr`` before drawing.
"""

import re

import numpy as np

RGB = tuple[int, int, int]

_HUE_EPSILON = 1e-6   # guards against division by a near-zero chroma

_HEX_PATTERN = re.compile(r"^#?([0-9a-fA-F]{6})$")

NAMED_COLORS: dict[str, RGB] = {
    "red": (255, 0, 0),
    "green": (0, 255, 0),
    "blue": (0, 0, 255),
    "yellow": (255, 255, 0),
    "cyan": (0, 255, 255),
    "magenta": (255, 0, 255),
    "white": (255, 255, 255),
    "black": (0, 0, 0),
}


def rgb_to_hue(rgb) -> float:
    """Project an RGB color onto the hexagonal hue circle.

    Works for any channel scale (0-1 or 0-255); gray colors map to 0.

    Parameters
    ----------
    rgb : sequence of 3 numbers
        Red, green, blue.

    Returns
    -------
    float
        Hue in [0, 1).
    """
    r, g, b = (float(c) for c in rgb)

    if g < b:
        p = (b, g, -1.0, 2.0 / 3.0)
    else:
        p = (g, b, 0.0, -1.0 / 3.0)

    if r < p[0]:
        q = (p[0], p[1], p[3], r)
    else:
        q = (r, p[1], p[2], p[0])

    chroma = q[0] - min(q[3], q[1])
    hue = abs((q[3] - q[1]) / (6.0 * chroma + _HUE_EPSILON) + q[2])
    return hue % 1.0


def hue_to_rgb(hue: float) -> RGB:
    """Fully saturated, full brightness RGB color for a hue."""
    h = hue % 1.0
    r = abs(h * 6.0 - 3.0) - 1.0
    g = 2.0 - abs(h * 6.0 - 2.0)
    b = 2.0 - abs(h * 6.0 - 4.0)
    return tuple(int(round(float(np.clip(c, 0.0, 1.0)) * 255)) for c in (r, g, b))


def hue_distance(a: float, b: float) -> float:
    """Circular distance between two hues, in [0, 0.5]."""
    diff = abs((a % 1.0) - (b % 1.0))
    if diff > 0.5:
        diff = 1.0 - diff
    return diff


def contrasting_color(hue: float) -> RGB:
    """The color half way round the hue circle from ``hue``."""
    return hue_to_rgb((hue + 0.5) % 1.0)


def sample_hue(image: np.ndarray, x: float, y: float) -> float:
    """Hue of the BGR pixel at (x, y), clamped to the image bounds."""
    h, w = image.shape[:2]
    col = int(np.clip(int(x), 0, w - 1))
    row = int(np.clip(int(y), 0, h - 1))
    b, g, r = image[row, col][:3]
    return rgb_to_hue((r, g, b))


def rgb_to_bgr(color: RGB) -> tuple[int, int, int]:
    return (int(color[2]), int(color[1]), int(color[0]))


def parse_color(value) -> RGB:
    """Parse a color from config: a name, "#RRGGBB", or [R, G, B] (0-255).

    Raises
    ------
    ValueError
        If the value is not a recognised color.
    """
    if isinstance(value, str):
        name = value.strip().lower()
        if name in NAMED_COLORS:
            return NAMED_COLORS[name]
        match = _HEX_PATTERN.match(name)
        if match is None:
            raise ValueError(f"Invalid color: {value!r}")
        hex_value = match.group(1)
        return (
            int(hex_value[0:2], 16),
            int(hex_value[2:4], 16),
            int(hex_value[4:6], 16),
        )

    if isinstance(value, (list, tuple)) and len(value) == 3:
        channels = [int(c) for c in value]
        if any(c < 0 or c > 255 for c in channels):
            raise ValueError(f"Color channels must be 0-255, got {value!r}")
        return tuple(channels)

    raise ValueError(f"Unsupported color value: {value!r}")
