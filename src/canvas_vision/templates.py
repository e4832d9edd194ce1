"""
templates.py - Object templates and the capture flow that builds them.

A template is the pose-normalized silhouette of one physical object
plus two hue samples of its centroid pixel:

    white_hue  object under neutral light, sampled right away
    color_hue  object while its assigned color is projected onto it

Capture (driven by ``TemplateBuilder.update(now)``):

    begin(name)  ->  capture()
      -> [settle] grab frame, rectify, background difference, contour
      -> normalize, sample white hue, ask for the assigned color
      -> [settle] grab frame, sample color hue
      -> template ready, commit() appends it to the store
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Optional

import cv2 as cv
import numpy as np

from .color import RGB, contrasting_color, sample_hue
from .config import SegmentationConfig, TemplateConfig
from .errors import CalibrationRequiredError, DegenerateContourError, Failure
from .geometry import (
    as_points,
    centroid_and_orientation,
    contour_area,
    contour_perimeter,
    is_within_image,
    merge_nearby_contours,
    normalize_contour,
)
from .preprocess import external_contours, segment
from .scheduling import SettleSequence, Step, monotonic_now

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# Data                                                                 #
# ------------------------------------------------------------------ #

@dataclass(frozen=True, eq=False)
class ObjectTemplate:
    """Reusable fingerprint of one physical object."""

    name: str
    canonical_contour: np.ndarray   # (N, 2) float32, centroid-relative, y-up
    white_hue: float
    color_hue: float
    assigned_color: RGB
    check_color_match: bool = True

    def __post_init__(self):
        pts = as_points(self.canonical_contour).astype(np.float32)
        if len(pts) < 3:
            raise DegenerateContourError(f"Template {self.name!r} has only {len(pts)} points")
        if contour_area(pts) <= 0.0:
            raise DegenerateContourError(f"Template {self.name!r} has zero area")
        object.__setattr__(self, "canonical_contour", pts)

    @property
    def area(self) -> float:
        return contour_area(self.canonical_contour)

    @property
    def perimeter(self) -> float:
        return contour_perimeter(self.canonical_contour)

    def __repr__(self):
        return (
            f"ObjectTemplate(name={self.name!r}, points={len(self.canonical_contour)}, "
            f"area={self.area:.0f}, white_hue={self.white_hue:.3f}, "
            f"color_hue={self.color_hue:.3f})"
        )


class TemplateStore:
    """Ordered, append-only template collection."""

    def __init__(self, templates=()):
        self._templates: list[ObjectTemplate] = []
        for template in templates:
            self.append(template)

    def append(self, template: ObjectTemplate):
        self._templates.append(template)
        logger.info("Template %r stored (%d total)", template.name, len(self._templates))

    def find(self, name: str) -> Optional[ObjectTemplate]:
        for template in self._templates:
            if template.name == name:
                return template
        return None

    @property
    def names(self) -> list[str]:
        return [t.name for t in self._templates]

    @property
    def smallest_area(self) -> Optional[float]:
        if not self._templates:
            return None
        return min(t.area for t in self._templates)

    def __iter__(self) -> Iterator[ObjectTemplate]:
        return iter(list(self._templates))

    def __len__(self):
        return len(self._templates)

    def __getitem__(self, index) -> ObjectTemplate:
        return self._templates[index]


@dataclass
class ObjectCapture:
    """Result of isolating one object in a rectified frame."""

    contour: np.ndarray                 # image-space contour, (N, 1, 2)
    canonical: np.ndarray               # normalized (N, 2) points
    centroid_px: tuple[float, float]    # image-space centroid, for hue sampling
    centroid: tuple[float, float]       # canvas-space centroid
    orientation: float
    mask: np.ndarray = field(repr=False, default=None)


# ------------------------------------------------------------------ #
# Segmentation                                                         #
# ------------------------------------------------------------------ #

def find_object_contour(
    mask: np.ndarray,
    cfg: SegmentationConfig | None = None,
) -> Optional[np.ndarray]:
    """Pick the newly placed object from a closed-edge mask.

    The largest contour wins unless it touches the border, in which case
    the next largest is used. None if the winner's area is outside
    [min_area_fraction, max_area_fraction] of the image.
    """
    cfg = cfg or SegmentationConfig()
    height, width = mask.shape[:2]

    contours = merge_nearby_contours(external_contours(mask), cfg.merge_margin)
    if not contours:
        return None

    ranked = sorted(contours, key=contour_area, reverse=True)
    chosen = ranked[0]
    if not is_within_image(chosen, width, height, cfg.border_margin):
        if len(ranked) < 2:
            return None
        chosen = ranked[1]

    canvas_area = float(width * height)
    area = contour_area(chosen)
    if area < canvas_area * cfg.min_area_fraction or area > canvas_area * cfg.max_area_fraction:
        logger.debug("Object contour area %.0f outside [%.0f, %.0f]",
                     area, canvas_area * cfg.min_area_fraction,
                     canvas_area * cfg.max_area_fraction)
        return None

    return chosen


def extract_object(
    base: np.ndarray,
    rectified: np.ndarray,
    cfg: SegmentationConfig | None = None,
) -> tuple[Optional[ObjectCapture], np.ndarray]:
    """Background difference + contour selection + pose normalization.

    Returns
    -------
    (ObjectCapture or None, np.ndarray)
        The capture (None when no object was found) and the edge mask.
    """
    mask = segment(base, rectified, cfg)
    contour = find_object_contour(mask, cfg)
    if contour is None:
        return None, mask

    height, width = rectified.shape[:2]
    try:
        centroid_px, _ = centroid_and_orientation(contour)
        canonical, centroid, orientation = normalize_contour(contour, (width, height))
    except DegenerateContourError:
        return None, mask

    return ObjectCapture(
        contour=np.asarray(contour).reshape(-1, 1, 2),
        canonical=canonical,
        centroid_px=centroid_px,
        centroid=centroid,
        orientation=orientation,
        mask=mask,
    ), mask


# ------------------------------------------------------------------ #
# Builder                                                              #
# ------------------------------------------------------------------ #

class CaptureState(str, Enum):
    IDLE = "idle"
    SETTLING = "settling"
    PROJECTING_COLOR = "projecting_color"
    CAPTURED = "captured"
    NO_OBJECT = "no_object"
    COMMITTED = "committed"


@dataclass
class CaptureRequest:
    name: str
    color: Optional[RGB] = None
    check_color_match: bool = True


class TemplateBuilder:
    """Captures templates one object at a time.

    Parameters
    ----------
    source : object with .read()
        Current BGR camera frame supplier.
    store : TemplateStore
        Committed templates are appended here.
    profile : CalibrationProfile or None
        Must be set (with a base image) before ``capture``.
    on_project_color : callable or None
        Called with the RGB color to project onto the object, and with
        None once the color hue has been sampled.
    """

    def __init__(
        self,
        source,
        store: TemplateStore,
        profile=None,
        cfg: TemplateConfig | None = None,
        seg_cfg: SegmentationConfig | None = None,
        on_project_color: Optional[Callable[[Optional[RGB]], None]] = None,
    ):
        self.source = source
        self.store = store
        self.profile = profile
        self.cfg = cfg or TemplateConfig()
        self.seg_cfg = seg_cfg or SegmentationConfig()
        self.on_project_color = on_project_color

        self.state = CaptureState.IDLE
        self.failure: Optional[Failure] = None
        self.request: Optional[CaptureRequest] = None
        self._sequence: Optional[SettleSequence] = None
        self._reset_buffers()

    def _reset_buffers(self):
        self.template: Optional[ObjectTemplate] = None
        self.capture_result: Optional[ObjectCapture] = None
        self.last_mask: Optional[np.ndarray] = None
        self._white_hue: Optional[float] = None
        self._color: Optional[RGB] = None

    @property
    def busy(self) -> bool:
        return self._sequence is not None and self._sequence.pending

    # ---- phase triggers --------------------------------------------

    def begin(self, name: str, color: Optional[RGB] = None, check_color_match: bool = True):
        """Name the next object to capture."""
        self._cancel()
        self._reset_buffers()
        self.failure = None
        self.request = CaptureRequest(name, color, check_color_match)
        self.state = CaptureState.IDLE
        logger.info("Ready to capture %r", name)

    def capture(self, now: Optional[float] = None):
        """Start the capture sequence for the current request.

        Raises
        ------
        CalibrationRequiredError
            If no calibrated profile with a base image is set.
        """
        if self.profile is None or self.profile.base_image is None:
            raise CalibrationRequiredError("Template capture needs a calibrated surface")
        if self.request is None:
            self.begin(f"object_{len(self.store) + 1}")

        self._cancel()
        self._reset_buffers()
        self.failure = None
        self.state = CaptureState.SETTLING

        self._sequence = SettleSequence("template", [
            Step("object", self.cfg.settle_s, self._object_step),
            Step("color_hue", self.cfg.color_settle_s, self._color_step),
        ]).start(now)

    def reinitialize(self, now: Optional[float] = None):
        """Drop the in-progress template and capture again after the settle delay."""
        if self._color is not None:
            self._project(None)
        self.capture(now)

    def commit(self) -> Optional[ObjectTemplate]:
        """Append the captured template to the store."""
        if self.template is None:
            logger.warning("Nothing to commit, no template captured")
            return None

        template = self.template
        self.store.append(template)
        self.template = None
        self.request = None
        self.state = CaptureState.COMMITTED
        return template

    def update(self, now: Optional[float] = None) -> CaptureState:
        if self._sequence is not None:
            self._sequence.poll(monotonic_now(now))
        return self.state

    # ---- steps -----------------------------------------------------

    def _grab_rectified(self) -> Optional[np.ndarray]:
        frame = self.source.read()
        if frame is None:
            return None
        return self.profile.rectify(frame)

    def _object_step(self, now: float) -> bool:
        rectified = self._grab_rectified()
        if rectified is None:
            return self._fail("No camera frame available")

        capture, self.last_mask = extract_object(self.profile.base_image, rectified, self.seg_cfg)
        if capture is None:
            return self._fail("No object detected")

        self.capture_result = capture
        self._white_hue = sample_hue(rectified, *capture.centroid_px)
        self._color = self.request.color or contrasting_color(self._white_hue)
        logger.info("Object %r found at %s, white hue %.3f",
                    self.request.name, tuple(round(c, 1) for c in capture.centroid),
                    self._white_hue)

        self.state = CaptureState.PROJECTING_COLOR
        self._project(self._color)
        return True

    def _color_step(self, now: float) -> bool:
        rectified = self._grab_rectified()
        self._project(None)
        if rectified is None:
            return self._fail("No camera frame available")

        color_hue = sample_hue(rectified, *self.capture_result.centroid_px)
        self.template = ObjectTemplate(
            name=self.request.name,
            canonical_contour=self.capture_result.canonical,
            white_hue=self._white_hue,
            color_hue=color_hue,
            assigned_color=self._color,
            check_color_match=self.request.check_color_match,
        )
        self.state = CaptureState.CAPTURED
        logger.info("Template captured: %r", self.template)
        return True

    # ---- helpers ---------------------------------------------------

    def _fail(self, reason: str) -> bool:
        self.state = CaptureState.NO_OBJECT
        self.failure = Failure("object_capture", reason)
        logger.warning("Capture of %r failed: %s", self.request.name, reason)
        return False

    def _project(self, color: Optional[RGB]):
        if self.on_project_color is not None:
            self.on_project_color(color)

    def _cancel(self):
        if self._sequence is not None:
            self._sequence.cancel()
        self._sequence = None


def draw_template(
    template: ObjectTemplate,
    size: tuple[int, int] = (200, 200),
    color: tuple[int, int, int] = (255, 255, 255),
) -> np.ndarray:
    """Render a template's canonical silhouette, centred, for previews."""
    width, height = size
    canvas = np.zeros((height, width, 3), np.uint8)
    pts = template.canonical_contour.astype(np.float64)
    span = max(np.abs(pts).max(), 1.0)
    scale = 0.45 * min(width, height) / span
    px = np.column_stack((width / 2.0 + pts[:, 0] * scale, height / 2.0 - pts[:, 1] * scale))
    cv.fillPoly(canvas, [np.round(px).astype(np.int32).reshape(-1, 1, 2)], color)
    return canvas
