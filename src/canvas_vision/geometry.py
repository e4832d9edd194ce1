"""
geometry.py - Contour math shared by calibration, capture and tracking.

Contours are accepted in either OpenCV layout, (N, 1, 2) as returned by
cv.findContours or plain (N, 2). Functions that return contours keep the
(N, 1, 2) layout so the result can go straight back into OpenCV.
"""

import math

import cv2 as cv
import numpy as np

from .errors import DegenerateContourError


def as_points(contour) -> np.ndarray:
    """View a contour as an (N, 2) array."""
    return np.asarray(contour).reshape(-1, 2)


def contour_area(contour) -> float:
    return float(cv.contourArea(as_points(contour).astype(np.float32)))


def contour_perimeter(contour) -> float:
    return float(cv.arcLength(as_points(contour).astype(np.float32), True))


def centroid_and_orientation(contour) -> tuple[tuple[float, float], float]:
    """Centroid from image moments and a cheap orientation angle.

    The orientation is the angle (degrees, [0, 360)) from the centroid to
    the contour point farthest from it. It follows rotation but cannot
    tell a shape from its mirror image.

    Raises
    ------
    DegenerateContourError
        If the contour encloses no area.
    """
    pts = as_points(contour).astype(np.float32)
    if len(pts) < 3:
        raise DegenerateContourError(f"Contour has only {len(pts)} points")

    moments = cv.moments(pts)
    if abs(moments["m00"]) < 1e-9:
        raise DegenerateContourError("Contour area is zero")

    cx = moments["m10"] / moments["m00"]
    cy = moments["m01"] / moments["m00"]

    offsets = pts.astype(np.float64) - (cx, cy)
    far = offsets[int(np.argmax(np.hypot(offsets[:, 0], offsets[:, 1])))]
    angle = math.degrees(math.atan2(far[1], far[0])) % 360.0

    return (float(cx), float(cy)), angle


def angle_difference(a: float, b: float) -> float:
    """Smallest absolute difference between two angles in degrees, [0, 180]."""
    diff = abs(a - b) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


def rotate_points(points, angle_deg: float, center=(0.0, 0.0)) -> np.ndarray:
    """Rotate (N, 2) points counter-clockwise (y-up frame) about ``center``."""
    pts = as_points(points).astype(np.float64)
    theta = math.radians(angle_deg)
    c, s = math.cos(theta), math.sin(theta)
    rot = np.array([[c, -s], [s, c]])
    origin = np.asarray(center, dtype=np.float64)
    return (pts - origin) @ rot.T + origin


def to_canvas_points(contour, size: tuple[int, int]) -> np.ndarray:
    """Rectified image pixels -> canvas coordinates (centred, y-up)."""
    width, height = size
    pts = as_points(contour).astype(np.float64)
    return np.column_stack((pts[:, 0] - width / 2.0, height / 2.0 - pts[:, 1]))


def canvas_to_image_points(points, size: tuple[int, int]) -> np.ndarray:
    """Inverse of ``to_canvas_points``."""
    width, height = size
    pts = as_points(points).astype(np.float64)
    return np.column_stack((pts[:, 0] + width / 2.0, height / 2.0 - pts[:, 1]))


def place_contour(canonical, centroid, orientation: float, size: tuple[int, int]) -> np.ndarray:
    """Pose a canonical template contour on the canvas, as image pixels (N, 1, 2) int32."""
    posed = rotate_points(canonical, orientation) + np.asarray(centroid, dtype=np.float64)
    return np.round(canvas_to_image_points(posed, size)).astype(np.int32).reshape(-1, 1, 2)


def normalize_contour(contour, size: tuple[int, int]):
    """Bring a contour into the placement-independent template frame.

    The contour is moved to canvas coordinates (which mirrors y), made
    relative to its own centroid, and rotated by minus its orientation so
    its farthest point lies on the positive x axis.

    Returns
    -------
    (np.ndarray, (float, float), float)
        Canonical (N, 2) float32 points, canvas centroid, canvas orientation.
    """
    canvas = to_canvas_points(contour, size)
    centroid, orientation = centroid_and_orientation(canvas)
    centered = canvas - centroid
    canonical = rotate_points(centered, -orientation).astype(np.float32)
    return canonical, centroid, orientation


def is_within_image(contour, width: int, height: int, margin: int = 1) -> bool:
    """True if the contour's bounding box stays clear of the image border."""
    pts = np.round(as_points(contour)).astype(np.int32)
    x, y, w, h = cv.boundingRect(pts)
    return (
        x > margin
        and y > margin
        and x + w < width - margin
        and y + h < height - margin
    )


# ------------------------------------------------------------------ #
# Distances and merging                                                #
# ------------------------------------------------------------------ #

def _bbox_gap(a: np.ndarray, b: np.ndarray) -> float:
    """Lower bound on the point distance between two point sets."""
    a_min, a_max = a.min(axis=0), a.max(axis=0)
    b_min, b_max = b.min(axis=0), b.max(axis=0)
    dx = max(b_min[0] - a_max[0], a_min[0] - b_max[0], 0.0)
    dy = max(b_min[1] - a_max[1], a_min[1] - b_max[1], 0.0)
    return math.hypot(dx, dy)


def min_distance(a, b) -> float:
    """Smallest Euclidean distance between any point of ``a`` and of ``b``."""
    pa = as_points(a).astype(np.float64)
    pb = as_points(b).astype(np.float64)
    diff = pa[:, None, :] - pb[None, :, :]
    return float(np.sqrt((diff ** 2).sum(axis=2)).min())


def _within_margin(a, b, margin: float) -> bool:
    pa = as_points(a).astype(np.float64)
    pb = as_points(b).astype(np.float64)
    if _bbox_gap(pa, pb) > margin:
        return False
    return min_distance(pa, pb) <= margin


def merge_nearby_contours(contours, margin: float) -> list[np.ndarray]:
    """Union contours that come within ``margin`` pixels of each other.

    Lighting often splits one object into several edge fragments. Any
    two contours with a point pair within ``margin`` are replaced by the
    convex hull of their combined points, repeatedly, until no pair is
    that close. Contours that never merge are returned unchanged, so
    applying the function to its own output is a no-op.
    """
    merged = [np.asarray(c) for c in contours]

    changed = True
    while changed:
        changed = False
        for i in range(len(merged)):
            for j in range(i + 1, len(merged)):
                if not _within_margin(merged[i], merged[j], margin):
                    continue
                union = np.vstack((as_points(merged[i]), as_points(merged[j])))
                dtype = np.int32 if union.dtype == np.int32 else np.float32
                merged[i] = cv.convexHull(union.astype(dtype))
                del merged[j]
                changed = True
                break
            if changed:
                break

    return merged
