"""
preprocess.py - Frame preprocessing for calibration and segmentation.

Two chains live here:

  Corner detection (calibration):
    1. BGR -> Grayscale
    2. Gaussian blur (reduce noise)
    3. Binary threshold band (swept by the calibrator)

  Object segmentation (template capture and tracking):
    1. |base - current|  (background difference)
    2. HSV value channel
    3. Bilateral filter (smooth, keep edges sharp)
    4. Canny edge detection
    5. Morphological close (bridge edge gaps into closed outlines)
"""

import cv2 as cv
import numpy as np

from .config import SegmentationConfig


def to_bgr(frame: np.ndarray) -> np.ndarray:
    """Return a 3-channel BGR view of a gray, BGR or BGRA frame."""
    if frame.ndim == 2:
        return cv.cvtColor(frame, cv.COLOR_GRAY2BGR)
    if frame.shape[2] == 4:
        return cv.cvtColor(frame, cv.COLOR_BGRA2BGR)
    return frame


# ------------------------------------------------------------------ #
# Calibration chain                                                    #
# ------------------------------------------------------------------ #

def gray_blurred(frame: np.ndarray, blur_kernel: int = 5) -> np.ndarray:
    """Grayscale + Gaussian blur (kernel size must be odd)."""
    if frame.ndim == 3:
        gray = cv.cvtColor(to_bgr(frame), cv.COLOR_BGR2GRAY)
    else:
        gray = frame
    return cv.GaussianBlur(gray, (blur_kernel, blur_kernel), 0)


def threshold_band(gray: np.ndarray, low: int, step: int) -> np.ndarray:
    """Binary mask of pixels brighter than ``low``.

    Set pixels get the value ``low + step``, which is non-zero for every
    band in the sweep, so the mask can go straight into cv.findContours.
    """
    _, mask = cv.threshold(gray, low, low + step, cv.THRESH_BINARY)
    return mask


# ------------------------------------------------------------------ #
# Segmentation chain                                                   #
# ------------------------------------------------------------------ #

def difference_image(base: np.ndarray, current: np.ndarray) -> np.ndarray:
    """Absolute per-channel difference between two frames of equal shape."""
    base = to_bgr(base)
    current = to_bgr(current)
    if base.shape != current.shape:
        raise ValueError(
            f"Frame shape {current.shape} does not match base image {base.shape}"
        )
    return cv.absdiff(base, current)


def value_channel(image: np.ndarray) -> np.ndarray:
    """HSV value (max of B, G, R) of a color image."""
    if image.ndim == 2:
        return image
    hsv = cv.cvtColor(to_bgr(image), cv.COLOR_BGR2HSV)
    return hsv[:, :, 2]


def edge_mask(
    gray: np.ndarray,
    cfg: SegmentationConfig | None = None,
) -> np.ndarray:
    """Closed edge image of a single-channel difference image."""
    cfg = cfg or SegmentationConfig()

    smoothed = cv.bilateralFilter(
        gray, cfg.bilateral_diameter, cfg.bilateral_sigma_color, cfg.bilateral_sigma_space
    )
    edges = cv.Canny(smoothed, cfg.canny_low, cfg.canny_high)

    kernel = cv.getStructuringElement(cv.MORPH_RECT, (cfg.close_kernel, cfg.close_kernel))
    return cv.morphologyEx(edges, cv.MORPH_CLOSE, kernel)


def segment(
    base: np.ndarray,
    current: np.ndarray,
    cfg: SegmentationConfig | None = None,
) -> np.ndarray:
    """Full segmentation chain: background difference -> closed edges.

    Parameters
    ----------
    base : np.ndarray
        Rectified BGR image of the empty surface.
    current : np.ndarray
        Rectified BGR frame to segment, same shape as ``base``.

    Returns
    -------
    np.ndarray
        Binary edge mask (single-channel, dtype uint8).
    """
    return edge_mask(value_channel(difference_image(base, current)), cfg)


def external_contours(mask: np.ndarray) -> list[np.ndarray]:
    contours, _ = cv.findContours(mask, cv.RETR_EXTERNAL, cv.CHAIN_APPROX_SIMPLE)
    return list(contours)
