import numpy as np
import pytest

from canvas_vision.config import TrackingConfig
from canvas_vision.detection import (
    DetectionCandidate,
    extract_candidates,
    hue_matches,
    match_candidate,
    shape_score,
)
from canvas_vision.geometry import contour_area
from canvas_vision.templates import ObjectTemplate

from conftest import blank_image, square_points, square_template, with_square


def _candidate(points, hue=0.0):
    pts = np.asarray(points, dtype=np.float32)
    return DetectionCandidate(
        raw_contour=np.round(pts).astype(np.int32).reshape(-1, 1, 2),
        area=contour_area(pts),
        hue=hue,
        centroid=tuple(pts.mean(axis=0)),
        orientation=0.0,
        canvas_contour=pts,
    )


def _triangle_template():
    return ObjectTemplate(
        name="triangle",
        canonical_contour=np.array([(-20, -15), (20, -15), (0, 25)], float),
        white_hue=0.0,
        color_hue=0.0,
        assigned_color=(0, 255, 255),
    )


class TestShapeScore:
    def test_rotated_and_moved_square_is_similar(self):
        a = square_points((0, 0), 20)
        b = square_points((50, -30), 20, angle_deg=90)
        assert shape_score(a, b) < 0.2

    def test_identical_contours_score_zero(self):
        a = square_points((0, 0), 20, angle_deg=30)
        assert shape_score(a, a) == pytest.approx(0.0, abs=1e-6)


class TestHueMatches:
    def test_either_sample_matches(self):
        template = square_template(white_hue=0.1, color_hue=0.6)
        assert hue_matches(0.12, template, 0.08)
        assert hue_matches(0.55, template, 0.08)
        assert not hue_matches(0.35, template, 0.08)

    def test_wraps_around_red(self):
        template = square_template(white_hue=0.98, color_hue=0.5)
        assert hue_matches(0.02, template, 0.08)


class TestMatchCandidate:
    def test_scaled_square_matches_by_default(self):
        candidate = _candidate(square_points((0, 0), 60))
        match = match_candidate(candidate, [square_template(half=20)], TrackingConfig())
        assert match is not None
        assert match.score < 0.2

    def test_area_ratio_limit_rejects_scaled_square(self):
        candidate = _candidate(square_points((0, 0), 60))
        cfg = TrackingConfig(max_area_ratio=1.5)
        assert match_candidate(candidate, [square_template(half=20)], cfg) is None
        close = _candidate(square_points((0, 0), 22))
        assert match_candidate(close, [square_template(half=20)], cfg) is not None

    def test_hue_mismatch_rejects(self):
        candidate = _candidate(square_points((0, 0), 20), hue=0.5)
        assert match_candidate(candidate, [square_template()], TrackingConfig()) is None

    def test_hue_within_margin_accepts(self):
        candidate = _candidate(square_points((0, 0), 20), hue=0.05)
        assert match_candidate(candidate, [square_template()], TrackingConfig()) is not None

    def test_color_check_can_be_disabled(self):
        candidate = _candidate(square_points((0, 0), 20), hue=0.5)
        template = square_template(check_color_match=False)
        assert match_candidate(candidate, [template], TrackingConfig()).template is template

    def test_lowest_score_wins(self):
        square = square_template()
        candidate = _candidate(square_points((10, 10), 20, angle_deg=15))
        match = match_candidate(candidate, [_triangle_template(), square], TrackingConfig())
        assert match.template is square

    def test_no_templates(self):
        assert match_candidate(_candidate(square_points((0, 0), 20)), [], TrackingConfig()) is None


class TestExtractCandidates:
    def _frame(self):
        frame = with_square(blank_image(), (160, 120), 30)
        return with_square(frame, (270, 60), 15)

    def test_largest_first_in_canvas_space(self, seg_cfg):
        candidates, mask = extract_candidates(blank_image(), self._frame(), cfg=seg_cfg)
        assert len(candidates) == 2
        assert candidates[0].area > candidates[1].area
        big, small = candidates
        assert np.allclose(big.centroid, (0.0, 0.0), atol=2.0)
        assert np.allclose(small.centroid, (110.0, 60.0), atol=2.0)
        assert big.hue == pytest.approx(0.0, abs=0.01)
        assert big.canvas_contour.shape[1] == 2
        assert mask.shape == (240, 320)

    def test_min_area_stops_extraction(self, seg_cfg):
        candidates, _ = extract_candidates(blank_image(), self._frame(), min_area=2000, cfg=seg_cfg)
        assert len(candidates) == 1
        assert candidates[0].area >= 2000

    def test_empty_surface(self, seg_cfg):
        candidates, _ = extract_candidates(blank_image(), blank_image(), cfg=seg_cfg)
        assert candidates == []
