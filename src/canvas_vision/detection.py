"""
detection.py - Per-tick candidate extraction and template matching.

Segments a rectified frame against the base image, turns each external
contour into a DetectionCandidate (canvas-space centroid, orientation,
centroid hue) and scores candidates against the template store with
Hu-moment shape distance plus an optional hue check.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import cv2 as cv
import numpy as np

from .color import hue_distance, sample_hue
from .config import SegmentationConfig, TrackingConfig
from .errors import DegenerateContourError
from .geometry import (
    centroid_and_orientation,
    contour_area,
    merge_nearby_contours,
    to_canvas_points,
)
from .preprocess import external_contours, segment
from .templates import ObjectTemplate

logger = logging.getLogger(__name__)


@dataclass
class DetectionCandidate:
    """One silhouette seen in the current tick."""

    raw_contour: np.ndarray         # image-space contour, (N, 1, 2)
    area: float                     # pixels
    hue: float                      # centroid pixel hue in [0, 1)
    centroid: tuple[float, float]   # canvas space (centred, y-up)
    orientation: float              # degrees [0, 360), canvas space
    canvas_contour: np.ndarray = None   # (N, 2) canvas-space points


@dataclass
class Match:
    candidate: DetectionCandidate
    template: ObjectTemplate
    score: float


def extract_candidates(
    base: np.ndarray,
    rectified: np.ndarray,
    min_area: float = 0.0,
    cfg: SegmentationConfig | None = None,
) -> tuple[list[DetectionCandidate], np.ndarray]:
    """Segment a rectified frame and build candidates in descending area.

    Parameters
    ----------
    base : np.ndarray
        Rectified base image of the empty surface.
    rectified : np.ndarray
        Rectified current frame.
    min_area : float
        Extraction stops at the first contour smaller than this.

    Returns
    -------
    (list[DetectionCandidate], np.ndarray)
        Candidates (largest first) and the edge mask they came from.
    """
    cfg = cfg or SegmentationConfig()
    mask = segment(base, rectified, cfg)
    height, width = rectified.shape[:2]

    contours = merge_nearby_contours(external_contours(mask), cfg.merge_margin)
    ranked = sorted(((contour_area(c), c) for c in contours),
                    key=lambda item: item[0], reverse=True)

    candidates = []
    for area, contour in ranked:
        if area < min_area:
            break

        canvas_pts = to_canvas_points(contour, (width, height))
        try:
            (cx_px, cy_px), _ = centroid_and_orientation(contour)
            centroid, orientation = centroid_and_orientation(canvas_pts)
        except DegenerateContourError:
            continue

        candidates.append(DetectionCandidate(
            raw_contour=np.asarray(contour).reshape(-1, 1, 2),
            area=area,
            hue=sample_hue(rectified, cx_px, cy_px),
            centroid=centroid,
            orientation=orientation,
            canvas_contour=canvas_pts.astype(np.float32),
        ))

    return candidates, mask


def shape_score(contour_a, contour_b) -> float:
    """Hu-moment shape distance (cv.CONTOURS_MATCH_I1). Lower is more similar."""
    a = np.asarray(contour_a, dtype=np.float32).reshape(-1, 1, 2)
    b = np.asarray(contour_b, dtype=np.float32).reshape(-1, 1, 2)
    return float(cv.matchShapes(a, b, cv.CONTOURS_MATCH_I1, 0.0))


def hue_matches(hue: float, template: ObjectTemplate, margin: float) -> bool:
    """True if ``hue`` is within ``margin`` of either template hue sample."""
    return (
        hue_distance(hue, template.white_hue) <= margin
        or hue_distance(hue, template.color_hue) <= margin
    )


def match_candidate(
    candidate: DetectionCandidate,
    templates: Iterable[ObjectTemplate],
    cfg: TrackingConfig | None = None,
) -> Optional[Match]:
    """Best accepted template for a candidate, or None.

    A template accepts when the shape score is below ``match_threshold``
    and, if it checks color, the candidate hue is within ``hue_margin``
    of its white or color hue. With ``max_area_ratio`` set, templates
    whose area differs from the candidate's by more than that factor are
    skipped. The lowest score wins.
    """
    cfg = cfg or TrackingConfig()
    contour = candidate.canvas_contour
    if contour is None:
        contour = candidate.raw_contour

    best = None
    for template in templates:
        if cfg.max_area_ratio is not None:
            ratio = max(candidate.area, template.area) / max(min(candidate.area, template.area), 1e-9)
            if ratio > cfg.max_area_ratio:
                continue

        score = shape_score(contour, template.canonical_contour)
        if score >= cfg.match_threshold:
            continue
        if template.check_color_match and not hue_matches(candidate.hue, template, cfg.hue_margin):
            logger.debug("Shape matched %r (%.3f) but hue %.3f did not",
                         template.name, score, candidate.hue)
            continue

        if best is None or score < best.score:
            best = Match(candidate, template, score)

    return best
