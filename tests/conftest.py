"""Shared fixtures: synthetic camera frames, profiles and templates.

Everything is drawn with OpenCV so the tests need no image files and no
camera.
"""
import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from canvas_vision.config import CalibrationConfig, SegmentationConfig, TrackingConfig
from canvas_vision.coordinate_transform import RotationMode, compute_rectification, order_corners
from canvas_vision.frame_source import StaticFrameSource
from canvas_vision.surface import CalibrationProfile
from canvas_vision.templates import ObjectTemplate

CANVAS_SIZE = (320, 240)            # (width, height) of the rectified canvas
CAMERA_SIZE = (640, 480)
SURFACE_GRAY = 200
PROJECTION_QUAD = [(120, 90), (520, 110), (500, 380), (140, 400)]
RED_BGR = (0, 0, 200)


# ---- drawing helpers ------------------------------------------------

def blank_image(size=CANVAS_SIZE, value=SURFACE_GRAY):
    width, height = size
    return np.full((height, width, 3), value, np.uint8)


def square_points(center, half, angle_deg=0.0):
    """Corners of a square, rotated about its centre, as (4, 2) float."""
    theta = np.radians(angle_deg)
    c, s = np.cos(theta), np.sin(theta)
    base = np.array([(-half, -half), (half, -half), (half, half), (-half, half)], float)
    rot = np.array([[c, -s], [s, c]])
    return base @ rot.T + np.asarray(center, float)


def draw_polygon(image, points, color):
    out = image.copy()
    pts = np.round(np.asarray(points)).astype(np.int32).reshape(-1, 1, 2)
    cv2.fillPoly(out, [pts], color)
    return out


def with_square(image, center, half, color=RED_BGR, angle_deg=0.0):
    return draw_polygon(image, square_points(center, half, angle_deg), color)


def projection_frame(quad=PROJECTION_QUAD, size=CAMERA_SIZE, background=20):
    """Dark camera frame with the projector's white rectangle on it."""
    return draw_polygon(blank_image(size, background), quad, (255, 255, 255))


def square_template(name="square", half=20.0, white_hue=0.0, color_hue=0.0,
                    check_color_match=True, color=(0, 255, 255)):
    return ObjectTemplate(
        name=name,
        canonical_contour=square_points((0.0, 0.0), half),
        white_hue=white_hue,
        color_hue=color_hue,
        assigned_color=color,
        check_color_match=check_color_match,
    )


# ---- fixtures -------------------------------------------------------

@pytest.fixture
def identity_profile():
    """Profile whose rectification is the identity on a 320x240 camera."""
    width, height = CANVAS_SIZE
    corners = order_corners([(0, 0), (width, 0), (width, height), (0, height)])
    matrix = compute_rectification(corners, RotationMode.NONE, width, height)
    return CalibrationProfile(
        corners=corners,
        rectification_matrix=matrix,
        output_size=CANVAS_SIZE,
        base_image=blank_image(),
    )


@pytest.fixture
def calib_cfg():
    return CalibrationConfig(
        output_width=CANVAS_SIZE[0],
        output_height=CANVAS_SIZE[1],
        use_pattern=False,
        detect_settle_s=0.2,
        base_image_settle_s=0.5,
    )


@pytest.fixture
def seg_cfg():
    return SegmentationConfig()


@pytest.fixture
def tracking_cfg():
    return TrackingConfig()


@pytest.fixture
def source():
    return StaticFrameSource()


@pytest.fixture
def checkerboard():
    """White-bordered 10x7-square board, i.e. 9x6 inner corners."""
    square = 40
    cols, rows = 10, 7
    margin = square
    image = np.full((rows * square + 2 * margin, cols * square + 2 * margin), 255, np.uint8)
    for r in range(rows):
        for c in range(cols):
            if (r + c) % 2 == 0:
                y0, x0 = margin + r * square, margin + c * square
                image[y0:y0 + square, x0:x0 + square] = 0
    return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
