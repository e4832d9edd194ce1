"""
surface.py - Surface calibration: projected rectangle -> canvas profile.

Flow (driven by ``SurfaceCalibrator.update(now)``):

    recalibrate()
      -> [settle] grab frame, find the projected quad (threshold sweep)
      -> rectification matrix for the display resolution
      -> optional: checkerboard in the rectified view -> lens intrinsics
      -> [settle] grab the empty surface, undistort + rectify -> base image
      -> publish CalibrationProfile

The profile is immutable. Recalibration publishes a new one, and
``recapture_base_image()`` publishes a copy with a fresh base image.
Failures leave the previously published profile in place.
"""

import json
import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

import cv2 as cv
import numpy as np

from .calibration import LensIntrinsics, calibrate_from_pattern, undistort_frame
from .config import CalibrationConfig
from .coordinate_transform import (
    RotationMode,
    compute_rectification,
    order_corners,
    warp_to_canvas,
)
from .errors import CalibrationRequiredError, Failure
from .geometry import is_within_image
from .preprocess import external_contours, gray_blurred, threshold_band
from .scheduling import SettleSequence, Step, monotonic_now

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# Profile                                                              #
# ------------------------------------------------------------------ #

@dataclass(frozen=True, eq=False)
class CalibrationProfile:
    """Published result of a successful surface calibration."""

    corners: np.ndarray                 # (4, 2) ordered camera-image points
    rectification_matrix: np.ndarray    # 3x3, camera image -> canvas
    output_size: tuple[int, int]        # canvas (width, height)
    rotation_mode: RotationMode = RotationMode.NONE
    intrinsics: Optional[LensIntrinsics] = None
    base_image: Optional[np.ndarray] = None

    def rectify(self, frame: np.ndarray) -> np.ndarray:
        """Undistort (when intrinsics exist) then warp a camera frame to the canvas."""
        return warp_to_canvas(
            undistort_frame(frame, self.intrinsics),
            self.rectification_matrix,
            self.output_size,
        )

    def with_base_image(self, base_image: np.ndarray) -> "CalibrationProfile":
        return replace(self, base_image=base_image)

    @property
    def has_base_image(self) -> bool:
        return self.base_image is not None


def save_profile(profile: CalibrationProfile, path: str):
    """Save a profile as JSON, with the base image as a PNG next to it."""
    base_path = None
    if profile.base_image is not None:
        base_path = os.path.splitext(path)[0] + "_base.png"
        cv.imwrite(base_path, profile.base_image)

    payload = {
        "corners": np.asarray(profile.corners).tolist(),
        "rectification_matrix": np.asarray(profile.rectification_matrix).tolist(),
        "output_size": list(profile.output_size),
        "rotation_mode": RotationMode(profile.rotation_mode).value,
        "base_image": os.path.basename(base_path) if base_path else None,
    }
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w") as f:
        json.dump(payload, f, indent=2)
    logger.info("Saved calibration profile to %s", path)


def load_profile(path: str, intrinsics: Optional[LensIntrinsics] = None) -> CalibrationProfile:
    """Load a profile written by ``save_profile``.

    Lens intrinsics live in their own file (see calibration.py) and are
    attached by the caller.
    """
    with open(path, "r") as f:
        payload = json.load(f)

    base_image = None
    if payload.get("base_image"):
        base_path = os.path.join(os.path.dirname(path), payload["base_image"])
        base_image = cv.imread(base_path)
        if base_image is None:
            raise FileNotFoundError(f"Cannot read base image: {base_path}")

    return CalibrationProfile(
        corners=np.array(payload["corners"], dtype=np.float32),
        rectification_matrix=np.array(payload["rectification_matrix"], dtype=np.float64),
        output_size=tuple(int(v) for v in payload["output_size"]),
        rotation_mode=RotationMode(payload.get("rotation_mode", "none")),
        intrinsics=intrinsics,
        base_image=base_image,
    )


# ------------------------------------------------------------------ #
# Corner detection                                                     #
# ------------------------------------------------------------------ #

def detect_projection_corners(
    image: np.ndarray,
    step: int = 10,
    min_area: float = 100.0,
    margin: int = 1,
    blur_kernel: int = 5,
    epsilon: float = 0.02,
) -> Optional[np.ndarray]:
    """Find the projected rectangle in a raw camera frame.

    Sweeps binary thresholds 0, step, 2*step, ... below 255 - step. For
    each band the largest external contour is approximated to a polygon;
    the first convex quadrilateral that is not noise sized and whose
    bounding box sits strictly inside the frame wins.

    Parameters
    ----------
    image : np.ndarray
        Raw BGR (or BGRA / gray) camera frame.
    step : int
        Threshold band width.
    min_area : float
        Noise floor in square pixels.
    margin : int
        Required gap between the quad's bounding box and the frame border.

    Returns
    -------
    np.ndarray of shape (4, 2), float32, or None
        Corners in ``order_corners`` order, None if no band succeeded.
    """
    gray = gray_blurred(image, blur_kernel)
    height, width = gray.shape[:2]

    for low in range(0, 255 - step, step):
        mask = threshold_band(gray, low, step)
        contours = external_contours(mask)
        if not contours:
            continue

        largest = max(contours, key=cv.contourArea)
        approx = cv.approxPolyDP(largest, cv.arcLength(largest, True) * epsilon, True)

        if len(approx) != 4 or not cv.isContourConvex(approx):
            continue
        if cv.contourArea(approx) < min_area:
            continue
        if not is_within_image(approx, width, height, margin):
            continue

        logger.debug("Projection quad found at threshold %d", low)
        return order_corners(approx)

    return None


def build_profile(
    frame: np.ndarray,
    cfg: CalibrationConfig | None = None,
    intrinsics: Optional[LensIntrinsics] = None,
) -> tuple[Optional[CalibrationProfile], Optional[Failure]]:
    """One-shot calibration of a single frame, without a base image.

    Returns the profile or the failure that stopped it. A missing
    checkerboard is not fatal: the profile keeps ``intrinsics``.
    """
    cfg = cfg or CalibrationConfig()

    corners = detect_projection_corners(
        frame,
        step=cfg.threshold_step,
        min_area=cfg.min_rectangle_area,
        margin=cfg.border_margin,
        blur_kernel=cfg.blur_kernel,
        epsilon=cfg.approx_epsilon,
    )
    if corners is None:
        return None, Failure("corner_detection", "No rectangle found")

    mode = RotationMode(cfg.rotation_mode)
    matrix = compute_rectification(corners, mode, cfg.output_width, cfg.output_height)
    profile = CalibrationProfile(
        corners=corners,
        rectification_matrix=matrix,
        output_size=cfg.output_size,
        rotation_mode=mode,
        intrinsics=intrinsics,
    )

    if cfg.use_pattern:
        found = calibrate_from_pattern(profile.rectify(frame), cfg.pattern_size)
        if found is None:
            return profile, Failure("pattern", "Calibration pattern not found")
        profile = replace(profile, intrinsics=found)

    return profile, None


# ------------------------------------------------------------------ #
# State machine                                                        #
# ------------------------------------------------------------------ #

class CalibrationState(str, Enum):
    UNINITIALIZED = "uninitialized"
    DETECTING = "detecting"
    RECTANGLE_FOUND = "rectangle_found"
    NO_RECTANGLE = "no_rectangle"
    PATTERN_CALIBRATING = "pattern_calibrating"
    PATTERN_FOUND = "pattern_found"
    PATTERN_MISSING = "pattern_missing"
    BASE_IMAGE_CAPTURED = "base_image_captured"
    READY = "ready"


class SurfaceCalibrator:
    """Runs the calibration phases against a live frame source.

    Parameters
    ----------
    source : object with .read()
        Returns the current BGR camera frame, or None.
    cfg : CalibrationConfig
    intrinsics : LensIntrinsics or None
        Preloaded lens model. A checkerboard found during calibration
        replaces it for that profile.
    on_overlay : callable(bool) or None
        Asked to show (True) or hide (False) the calibration target on
        the projector. Hidden before the base image is grabbed.
    """

    def __init__(
        self,
        source,
        cfg: CalibrationConfig | None = None,
        intrinsics: Optional[LensIntrinsics] = None,
        on_overlay: Optional[Callable[[bool], None]] = None,
    ):
        self.source = source
        self.cfg = cfg or CalibrationConfig()
        self.preloaded_intrinsics = intrinsics
        self.on_overlay = on_overlay

        self.state = CalibrationState.UNINITIALIZED
        self.failure: Optional[Failure] = None
        self._profile: Optional[CalibrationProfile] = None
        self._candidate: Optional[CalibrationProfile] = None
        self._sequence: Optional[SettleSequence] = None

    # ---- published data --------------------------------------------

    @property
    def profile(self) -> Optional[CalibrationProfile]:
        """Latest published profile (None until the first success)."""
        return self._profile

    @property
    def is_ready(self) -> bool:
        return self._profile is not None and self._profile.has_base_image

    @property
    def busy(self) -> bool:
        return self._sequence is not None and self._sequence.pending

    def require_profile(self) -> CalibrationProfile:
        if self._profile is None or not self._profile.has_base_image:
            raise CalibrationRequiredError("Surface is not calibrated")
        return self._profile

    def adopt(self, profile: CalibrationProfile):
        """Publish a profile calibrated elsewhere, e.g. one loaded from disk."""
        self._cancel()
        self.failure = None
        self._candidate = None
        self._profile = profile
        self.state = CalibrationState.READY if profile.has_base_image else CalibrationState.RECTANGLE_FOUND
        logger.info("Adopted calibration profile (%dx%d)", *profile.output_size)

    # ---- phase triggers --------------------------------------------

    def recalibrate(self, now: Optional[float] = None):
        """Start (or restart) the full calibration sequence."""
        self._cancel()
        self.failure = None
        self._candidate = None
        self.state = CalibrationState.DETECTING
        self._show_overlay(True)

        self._sequence = SettleSequence("calibration", [
            Step("detect", self.cfg.detect_settle_s, self._detect_step),
            Step("base_image", self.cfg.base_image_settle_s, self._base_image_step),
        ]).start(now)
        logger.info("Calibration started")

    def recapture_base_image(self, now: Optional[float] = None):
        """Grab a new base image for the current profile, keeping its geometry.

        Raises
        ------
        CalibrationRequiredError
            If no profile has been published yet.
        """
        if self._profile is None:
            raise CalibrationRequiredError("Cannot capture a base image before calibration")

        self._cancel()
        self.failure = None
        self._candidate = self._profile
        self._show_overlay(False)

        self._sequence = SettleSequence("base_image", [
            Step("base_image", self.cfg.base_image_settle_s, self._base_image_step),
        ]).start(now)
        logger.info("Base image recapture started")

    def update(self, now: Optional[float] = None) -> CalibrationState:
        """Run whatever is due. Call from the owner's tick."""
        if self._sequence is not None:
            self._sequence.poll(monotonic_now(now))
        return self.state

    # ---- steps -----------------------------------------------------

    def _detect_step(self, now: float) -> bool:
        frame = self.source.read()
        if frame is None:
            return self._fail(CalibrationState.NO_RECTANGLE,
                              Failure("corner_detection", "No camera frame available"))

        cfg = replace(self.cfg, use_pattern=False)
        profile, failure = build_profile(frame, cfg, self.preloaded_intrinsics)
        if profile is None:
            return self._fail(CalibrationState.NO_RECTANGLE, failure)

        self.state = CalibrationState.RECTANGLE_FOUND
        logger.info("Projection rectangle found: %s", profile.corners.tolist())

        if self.cfg.use_pattern:
            self.state = CalibrationState.PATTERN_CALIBRATING
            found = calibrate_from_pattern(profile.rectify(frame), self.cfg.pattern_size)
            if found is None:
                self.state = CalibrationState.PATTERN_MISSING
                self.failure = Failure("pattern", "Calibration pattern not found")
                logger.info("No calibration pattern, continuing without a new lens model")
            else:
                self.state = CalibrationState.PATTERN_FOUND
                profile = replace(profile, intrinsics=found)

        self._candidate = profile
        self._show_overlay(False)
        return True

    def _base_image_step(self, now: float) -> bool:
        frame = self.source.read()
        if frame is None:
            return self._fail(self.state, Failure("base_image", "No camera frame available"))

        self._profile = self._candidate.with_base_image(self._candidate.rectify(frame))
        self._candidate = None
        self.state = CalibrationState.BASE_IMAGE_CAPTURED
        logger.info("Base image captured (%dx%d)", *self._profile.output_size)

        self.state = CalibrationState.READY
        return True

    # ---- helpers ---------------------------------------------------

    def _fail(self, state: CalibrationState, failure: Failure) -> bool:
        self.state = state
        self.failure = failure
        logger.warning("Calibration failed: %s", failure)
        return False

    def _cancel(self):
        if self._sequence is not None:
            self._sequence.cancel()
        self._sequence = None

    def _show_overlay(self, visible: bool):
        if self.on_overlay is not None:
            self.on_overlay(visible)
