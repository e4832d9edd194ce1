"""
calibration.py - Lens intrinsics from a checkerboard pattern.

Computes the camera matrix and distortion coefficients needed to
correct lens distortion (barrel/pincushion). Two ways in:

  * single view: the surface calibrator looks for the pattern projected
    onto (or laid on) the table and solves from that one image;
  * offline: run_camera_calibration.py collects many views from a
    directory or a live camera, and saves the result to JSON which the
    calibrator can preload.

A missing pattern is not an error. ``find_pattern_corners`` and
``calibrate_from_pattern`` return None and the caller skips undistortion.
"""

import glob
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

import cv2 as cv
import numpy as np

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# Data                                                                 #
# ------------------------------------------------------------------ #

_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
DEFAULT_INTRINSICS_PATH = os.path.join(_PROJECT_ROOT, "config", "camera_calibration.json")

DEFAULT_BOARD_SIZE = (9, 6)     # inner corners (cols, rows)

_SUBPIX_CRITERIA = (cv.TERM_CRITERIA_EPS + cv.TERM_CRITERIA_MAX_ITER, 30, 0.1)


@dataclass
class LensIntrinsics:
    """Camera matrix and distortion of one lens."""

    camera_matrix: np.ndarray       # 3x3 intrinsic matrix
    dist_coeffs: np.ndarray         # [k1, k2, p1, p2, k3]
    image_size: tuple[int, int]     # (width, height) the solve was run at
    rms_error: float                # reprojection error, lower is better

    # Precomputed undistort maps for fast remapping
    map1: Optional[np.ndarray] = field(default=None, repr=False)
    map2: Optional[np.ndarray] = field(default=None, repr=False)


def board_object_points(board_size: tuple[int, int], square_size: float = 1.0) -> np.ndarray:
    """Planar 3D corner grid (0,0,0), (1,0,0), ... scaled by ``square_size``."""
    objp = np.zeros((board_size[0] * board_size[1], 3), np.float32)
    objp[:, :2] = np.mgrid[0:board_size[0], 0:board_size[1]].T.reshape(-1, 2)
    return objp * square_size


def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv.cvtColor(image, cv.COLOR_BGRA2GRAY)
    return cv.cvtColor(image, cv.COLOR_BGR2GRAY)


# ------------------------------------------------------------------ #
# Single view (surface calibration)                                    #
# ------------------------------------------------------------------ #

def find_pattern_corners(
    image: np.ndarray,
    board_size: tuple[int, int] = DEFAULT_BOARD_SIZE,
) -> Optional[np.ndarray]:
    """Locate and sub-pixel refine every inner corner of a checkerboard.

    Returns
    -------
    np.ndarray of shape (cols * rows, 1, 2), float32, or None
        None unless the full grid was found (exact corner count).
    """
    gray = _to_gray(image)
    found, corners = cv.findChessboardCorners(
        gray, board_size, cv.CALIB_CB_ADAPTIVE_THRESH + cv.CALIB_CB_NORMALIZE_IMAGE
    )
    expected = board_size[0] * board_size[1]
    if not found or corners is None or len(corners) != expected:
        return None

    return cv.cornerSubPix(gray, corners, (11, 11), (-1, -1), _SUBPIX_CRITERIA)


def calibrate_from_pattern(
    image: np.ndarray,
    board_size: tuple[int, int] = DEFAULT_BOARD_SIZE,
) -> Optional[LensIntrinsics]:
    """Solve lens intrinsics from one view of the checkerboard.

    Returns None when the pattern is not fully visible, or when the solve
    itself fails on a degenerate view.
    """
    corners = find_pattern_corners(image, board_size)
    if corners is None:
        logger.info("Checkerboard %dx%d not found", *board_size)
        return None

    h, w = image.shape[:2]
    try:
        rms, camera_matrix, dist_coeffs, _, _ = cv.calibrateCamera(
            [board_object_points(board_size)], [corners], (w, h), None, None
        )
    except cv.error as e:
        logger.warning("Lens calibration solve failed: %s", e)
        return None

    logger.info("Lens calibrated from pattern, RMS reprojection error %.4f", rms)
    result = LensIntrinsics(
        camera_matrix=camera_matrix,
        dist_coeffs=dist_coeffs,
        image_size=(w, h),
        rms_error=float(rms),
    )
    _compute_maps(result)
    return result


# ------------------------------------------------------------------ #
# Calibrate from images                                                #
# ------------------------------------------------------------------ #

def _solve(obj_points, img_points, image_size) -> LensIntrinsics:
    if len(obj_points) < 3:
        raise ValueError(
            f"Only {len(obj_points)} valid views found. "
            "Need at least 3 (10+ recommended) for reliable calibration."
        )

    logger.info("Running cv.calibrateCamera() with %d views", len(obj_points))
    rms, camera_matrix, dist_coeffs, _, _ = cv.calibrateCamera(
        obj_points, img_points, image_size, None, None
    )
    logger.info("RMS reprojection error: %.4f", rms)
    logger.debug("Camera matrix:\n%s", camera_matrix)
    logger.debug("Distortion coefficients: %s", dist_coeffs.ravel())

    result = LensIntrinsics(
        camera_matrix=camera_matrix,
        dist_coeffs=dist_coeffs,
        image_size=image_size,
        rms_error=float(rms),
    )
    _compute_maps(result)
    return result


def calibrate_from_images(
    image_paths: list[str],
    board_size: tuple[int, int] = DEFAULT_BOARD_SIZE,
    square_size_mm: float = 25.0,
    show_corners: bool = False,
) -> LensIntrinsics:
    """Run lens calibration from a set of checkerboard images.

    Parameters
    ----------
    image_paths : list[str]
        Paths to checkerboard images (at least 10 recommended).
    board_size : (cols, rows)
        Number of inner corners in the checkerboard.
    square_size_mm : float
        Physical size of one checkerboard square in mm.
    show_corners : bool
        If True, display detected corners for visual verification.

    Raises
    ------
    ValueError
        If fewer than 3 images contain the full pattern.
    """
    objp = board_object_points(board_size, square_size_mm)

    obj_points = []
    img_points = []
    image_size = None

    logger.info("Processing %d images (board %dx%d, square %.1f mm)",
                len(image_paths), board_size[0], board_size[1], square_size_mm)

    for i, path in enumerate(image_paths):
        img = cv.imread(path)
        if img is None:
            logger.warning("[%d] skip, cannot read: %s", i + 1, path)
            continue

        if image_size is None:
            image_size = (img.shape[1], img.shape[0])
        elif (img.shape[1], img.shape[0]) != image_size:
            logger.warning("[%d] skip, size differs from first image: %s", i + 1, path)
            continue

        corners = find_pattern_corners(img, board_size)
        if corners is None:
            logger.info("[%d] skip, no corners found: %s", i + 1, os.path.basename(path))
            continue

        obj_points.append(objp)
        img_points.append(corners)
        logger.info("[%d] ok: %s", i + 1, os.path.basename(path))

        if show_corners:
            vis = img.copy()
            cv.drawChessboardCorners(vis, board_size, corners, True)
            cv.imshow("Checkerboard Corners", vis)
            cv.waitKey(300)

    if show_corners:
        cv.destroyWindow("Checkerboard Corners")

    return _solve(obj_points, img_points, image_size)


def collect_image_paths(directory: str) -> list[str]:
    """All .jpg / .jpeg / .png files in ``directory``, sorted."""
    paths = []
    for pattern in ("*.jpg", "*.jpeg", "*.png"):
        paths.extend(glob.glob(os.path.join(directory, pattern)))
    return sorted(paths)


# ------------------------------------------------------------------ #
# Live capture calibration                                             #
# ------------------------------------------------------------------ #

def calibrate_live(
    source,
    board_size: tuple[int, int] = DEFAULT_BOARD_SIZE,
    square_size_mm: float = 25.0,
    num_captures: int = 15,
    save_images_dir: str | None = None,
) -> LensIntrinsics:
    """Interactive calibration, capturing checkerboard views from a live source.

    SPACE captures the current view when the full grid is visible, 'q'
    finishes early.

    Parameters
    ----------
    source : FrameSource or any object with .read() method
        The camera/video source.
    num_captures : int
        How many valid captures to collect.
    save_images_dir : str or None
        If provided, save captured images here for later re-calibration.
    """
    objp = board_object_points(board_size, square_size_mm)

    obj_points = []
    img_points = []
    image_size = None

    if save_images_dir:
        os.makedirs(save_images_dir, exist_ok=True)

    logger.info("Live capture, collecting %d views", num_captures)
    captured = 0

    while captured < num_captures:
        frame = source.read()
        if frame is None:
            break

        gray = _to_gray(frame)
        if image_size is None:
            image_size = (gray.shape[1], gray.shape[0])

        # Fast check only, refinement happens on capture
        found, corners = cv.findChessboardCorners(
            gray, board_size, cv.CALIB_CB_ADAPTIVE_THRESH + cv.CALIB_CB_FAST_CHECK
        )

        vis = frame.copy()
        if found:
            cv.drawChessboardCorners(vis, board_size, corners, found)

        status = f"Captured: {captured}/{num_captures}"
        status += " | CORNERS FOUND, press SPACE" if found else " | Move checkerboard..."
        cv.putText(vis, status, (10, 30), cv.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 0), 2)
        cv.imshow("Calibration", vis)

        key = cv.waitKey(30) & 0xFF

        if key == ord(" ") and found:
            refined = cv.cornerSubPix(gray, corners, (11, 11), (-1, -1), _SUBPIX_CRITERIA)
            obj_points.append(objp)
            img_points.append(refined)
            captured += 1
            logger.info("[%d/%d] captured", captured, num_captures)

            if save_images_dir:
                cv.imwrite(os.path.join(save_images_dir, f"calib_{captured:03d}.jpg"), frame)

        elif key == ord("q"):
            break

    cv.destroyWindow("Calibration")
    return _solve(obj_points, img_points, image_size)


# ------------------------------------------------------------------ #
# Save / Load                                                          #
# ------------------------------------------------------------------ #

def save_intrinsics(result: LensIntrinsics, path: str = DEFAULT_INTRINSICS_PATH):
    """Save intrinsics to a JSON file."""
    data = {
        "camera_matrix": np.asarray(result.camera_matrix).tolist(),
        "dist_coeffs": np.asarray(result.dist_coeffs).tolist(),
        "image_size": list(result.image_size),
        "rms_error": result.rms_error,
    }
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    logger.info("Saved lens intrinsics to %s", path)


def load_intrinsics(path: str = DEFAULT_INTRINSICS_PATH) -> LensIntrinsics:
    """Load intrinsics from a JSON file written by ``save_intrinsics``."""
    with open(path, "r") as f:
        data = json.load(f)

    result = LensIntrinsics(
        camera_matrix=np.array(data["camera_matrix"], dtype=np.float64),
        dist_coeffs=np.array(data["dist_coeffs"], dtype=np.float64),
        image_size=tuple(int(v) for v in data["image_size"]),
        rms_error=float(data["rms_error"]),
    )
    _compute_maps(result)
    return result


def intrinsics_exist(path: str = DEFAULT_INTRINSICS_PATH) -> bool:
    return os.path.isfile(path)


def resolve_intrinsics_path(path: str | None = None) -> str:
    """Configured intrinsics path, relative paths taken from the project root."""
    path = path or DEFAULT_INTRINSICS_PATH
    if not os.path.isabs(path):
        path = os.path.join(_PROJECT_ROOT, path)
    return path


# ------------------------------------------------------------------ #
# Undistort                                                            #
# ------------------------------------------------------------------ #

def _compute_maps(result: LensIntrinsics):
    """Precompute the undistortion remap tables for fast per-frame use."""
    w, h = result.image_size
    result.map1, result.map2 = cv.initUndistortRectifyMap(
        result.camera_matrix, result.dist_coeffs, None, result.camera_matrix, (w, h), cv.CV_16SC2
    )


def undistort_frame(frame: np.ndarray, intrinsics: Optional[LensIntrinsics]) -> np.ndarray:
    """Undistort a single frame.

    Uses the precomputed maps when the frame has the calibrated size, and
    falls back to cv.undistort otherwise. ``None`` intrinsics mean no lens
    model is available and the frame is returned unchanged.
    """
    if intrinsics is None:
        return frame

    h, w = frame.shape[:2]
    if (w, h) != tuple(intrinsics.image_size):
        return cv.undistort(frame, intrinsics.camera_matrix, intrinsics.dist_coeffs)

    if intrinsics.map1 is None or intrinsics.map2 is None:
        _compute_maps(intrinsics)
    return cv.remap(frame, intrinsics.map1, intrinsics.map2, cv.INTER_LINEAR)
