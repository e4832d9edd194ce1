"""
coordinate_transform.py - Camera image <-> projected canvas mapping.

Provides:
  1. order_corners()          - consistent winding order for a detected quad
  2. compute_rectification()  - camera quad -> canvas rectangle homography
  3. transform_points()       - apply a 3x3 projective matrix to points
  4. image_to_canvas()        - rectified pixel -> canvas-centred, y-up coords

The rectification is computed once per calibration and applied to every
frame before segmentation (see surface.CalibrationProfile.rectify).
"""

from enum import Enum

import cv2 as cv
import numpy as np


# ------------------------------------------------------------------ #
# Rotation modes                                                       #
# ------------------------------------------------------------------ #

class RotationMode(str, Enum):
    """Physical orientation of the projector relative to the camera."""

    NONE = "none"
    MIRROR_VERTICAL = "mirror_vertical"
    MIRROR_HORIZONTAL = "mirror_horizontal"
    MIRROR_BOTH = "mirror_both"


def destination_corners(
    rotation_mode: RotationMode,
    width: float,
    height: float,
) -> np.ndarray:
    """Canvas rectangle corners in the order matching ordered source corners.

    Each rotation mode is a fixed permutation, so the rectified output is
    already in display orientation and needs no separate flip.
    """
    w, h = float(width), float(height)
    mode = RotationMode(rotation_mode)

    if mode is RotationMode.NONE:
        points = [(0, 0), (w, 0), (w, h), (0, h)]
    elif mode is RotationMode.MIRROR_BOTH:
        points = [(w, h), (0, h), (0, 0), (w, 0)]
    elif mode is RotationMode.MIRROR_HORIZONTAL:
        points = [(0, h), (w, h), (w, 0), (0, 0)]
    else:   # MIRROR_VERTICAL
        points = [(w, 0), (0, 0), (0, h), (w, h)]

    return np.array(points, dtype=np.float32)


# ------------------------------------------------------------------ #
# Corner ordering                                                      #
# ------------------------------------------------------------------ #

def order_corners(points) -> np.ndarray:
    """Order four corner points by polar angle around their centroid.

    In image coordinates (y down) ascending angle gives top-left,
    top-right, bottom-right, bottom-left for an upright quad. Angle
    sorting alone cannot tell which corner starts the sequence for a
    quad rotated near 45 degrees, so when the first point is not up and
    left of the third one the order is rotated by one position.

    Parameters
    ----------
    points : array-like, shape (4, 2) or (4, 1, 2)

    Returns
    -------
    np.ndarray, shape (4, 2), float32
    """
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2)
    if len(pts) != 4:
        raise ValueError(f"Expected 4 corner points, got {len(pts)}")

    center = pts.mean(axis=0)
    angles = np.arctan2(pts[:, 1] - center[1], pts[:, 0] - center[0])
    ordered = pts[np.argsort(angles, kind="stable")]

    if ordered[0, 0] > ordered[2, 0] or ordered[0, 1] > ordered[2, 1]:
        ordered = np.roll(ordered, 1, axis=0)

    return ordered


# ------------------------------------------------------------------ #
# Rectification                                                        #
# ------------------------------------------------------------------ #

def compute_rectification(
    ordered_corners,
    rotation_mode: RotationMode,
    width: int,
    height: int,
) -> np.ndarray:
    """Projective transform from the camera quad to the canvas rectangle.

    Parameters
    ----------
    ordered_corners : array-like, shape (4, 2)
        Output of ``order_corners``.
    rotation_mode : RotationMode
        Selects the destination corner permutation.
    width, height : int
        Canvas (display) resolution in pixels.

    Returns
    -------
    np.ndarray, shape (3, 3), float64
    """
    src = np.asarray(ordered_corners, dtype=np.float32).reshape(4, 2)
    dst = destination_corners(rotation_mode, width, height)
    return cv.getPerspectiveTransform(src, dst)


def transform_points(points, matrix: np.ndarray) -> np.ndarray:
    """Apply a 3x3 projective matrix to an (N, 2) array of points."""
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 1, 2)
    return cv.perspectiveTransform(pts, np.asarray(matrix, dtype=np.float64)).reshape(-1, 2)


def warp_to_canvas(
    image: np.ndarray,
    matrix: np.ndarray,
    size: tuple[int, int],
) -> np.ndarray:
    """Warp a camera image onto the canvas of ``size`` = (width, height)."""
    return cv.warpPerspective(image, matrix, (int(size[0]), int(size[1])))


def image_to_canvas(
    x_px: float,
    y_px: float,
    size: tuple[int, int],
) -> tuple[float, float]:
    """Rectified pixel position -> canvas coordinates.

    The canvas origin is the centre of the surface and y grows upward,
    which is what the rendering side expects.
    """
    width, height = size
    return (float(x_px) - width / 2.0, height / 2.0 - float(y_px))
