import numpy as np
import pytest

from canvas_vision.errors import DegenerateContourError
from canvas_vision.geometry import (
    angle_difference,
    canvas_to_image_points,
    centroid_and_orientation,
    contour_area,
    is_within_image,
    merge_nearby_contours,
    min_distance,
    normalize_contour,
    place_contour,
    rotate_points,
    to_canvas_points,
)


def _box(x0, y0, x1, y1):
    return np.array([[[x0, y0]], [[x1, y0]], [[x1, y1]], [[x0, y1]]], np.int32)


class TestCentroidAndOrientation:
    def test_square_centroid(self):
        (cx, cy), _ = centroid_and_orientation([(0, 0), (10, 0), (10, 10), (0, 10)])
        assert cx == pytest.approx(5.0)
        assert cy == pytest.approx(5.0)

    def test_orientation_points_at_farthest_vertex(self):
        (cx, cy), angle = centroid_and_orientation([(0, 0), (30, 0), (0, 10)])
        assert (cx, cy) == pytest.approx((10.0, 10.0 / 3.0))
        expected = np.degrees(np.arctan2(-10.0 / 3.0, 20.0)) % 360.0
        assert angle == pytest.approx(expected)
        assert 0.0 <= angle < 360.0

    def test_collinear_contour_is_degenerate(self):
        with pytest.raises(DegenerateContourError):
            centroid_and_orientation([(0, 0), (5, 0), (10, 0)])

    def test_degenerate_is_a_zero_division(self):
        with pytest.raises(ZeroDivisionError):
            centroid_and_orientation([(0, 0), (1, 1)])


class TestNormalizeContour:
    TRIANGLE = np.array([(100, 100), (160, 100), (100, 120)], float)

    def test_canonical_is_centred_and_unrotated(self):
        canonical, _, _ = normalize_contour(self.TRIANGLE, (320, 240))
        (cx, cy), angle = centroid_and_orientation(canonical)
        assert (cx, cy) == pytest.approx((0.0, 0.0), abs=1e-3)
        assert angle_difference(angle, 0.0) < 1e-3

    def test_rotation_does_not_change_canonical_shape(self):
        center = self.TRIANGLE.mean(axis=0)
        rotated = rotate_points(self.TRIANGLE, 37.0, center)
        a, _, _ = normalize_contour(self.TRIANGLE, (320, 240))
        b, _, orientation_b = normalize_contour(rotated, (320, 240))
        assert np.allclose(a, b, atol=1e-2)

    def test_centroid_is_in_canvas_space(self):
        square = [(150, 110), (170, 110), (170, 130), (150, 130)]
        _, centroid, _ = normalize_contour(square, (320, 240))
        assert centroid == pytest.approx((0.0, 0.0), abs=1e-6)


class TestCanvasMapping:
    def test_y_axis_points_up(self):
        pts = to_canvas_points([(0, 0), (320, 240)], (320, 240))
        assert pts.tolist() == [[-160.0, 120.0], [160.0, -120.0]]

    def test_canvas_to_image_inverts(self):
        pts = np.array([(12.5, 40.0), (300.0, 7.0)])
        back = canvas_to_image_points(to_canvas_points(pts, (320, 240)), (320, 240))
        assert np.allclose(back, pts)

    def test_place_contour_puts_template_at_centroid(self):
        canonical = np.array([(-10, -10), (10, -10), (10, 10), (-10, 10)], np.float32)
        placed = place_contour(canonical, (0.0, 0.0), 0.0, (320, 240))
        assert placed.shape == (4, 1, 2)
        assert placed.reshape(-1, 2).mean(axis=0).tolist() == [160.0, 120.0]


class TestMergeNearbyContours:
    def test_close_contours_merge_into_hull(self):
        a = _box(0, 0, 20, 20)
        b = _box(25, 0, 45, 20)
        merged = merge_nearby_contours([a, b], margin=10)
        assert len(merged) == 1
        assert contour_area(merged[0]) == pytest.approx(45 * 20)

    def test_distant_contours_stay_unchanged(self):
        a = _box(0, 0, 20, 20)
        far = _box(200, 200, 220, 220)
        merged = merge_nearby_contours([a, far], margin=10)
        assert len(merged) == 2
        assert np.array_equal(merged[1], far)

    def test_merging_chains_transitively(self):
        boxes = [_box(0, 0, 10, 10), _box(15, 0, 25, 10), _box(30, 0, 40, 10)]
        assert len(merge_nearby_contours(boxes, margin=6)) == 1

    def test_idempotent(self):
        contours = [
            _box(0, 0, 20, 20), _box(24, 2, 40, 18),
            _box(100, 100, 130, 120), _box(135, 100, 150, 125),
            _box(250, 10, 260, 20),
        ]
        once = merge_nearby_contours(contours, margin=8)
        twice = merge_nearby_contours(once, margin=8)
        assert len(once) == len(twice)
        for a, b in zip(once, twice):
            assert np.array_equal(a, b)

    def test_min_distance(self):
        assert min_distance(_box(0, 0, 20, 20), _box(25, 0, 45, 20)) == pytest.approx(5.0)


def test_is_within_image():
    assert is_within_image(_box(10, 10, 50, 50), 100, 100)
    assert not is_within_image(_box(0, 10, 50, 50), 100, 100)
    assert not is_within_image(_box(10, 10, 99, 50), 100, 100)


@pytest.mark.parametrize("a, b, expected", [
    (10.0, 11.5, 1.5),
    (359.5, 0.2, 0.7),
    (0.0, 180.0, 180.0),
    (350.0, 10.0, 20.0),
])
def test_angle_difference(a, b, expected):
    assert angle_difference(a, b) == pytest.approx(expected)
    assert angle_difference(b, a) == pytest.approx(expected)
