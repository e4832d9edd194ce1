import itertools

import numpy as np
import pytest

from canvas_vision.coordinate_transform import (
    RotationMode,
    compute_rectification,
    destination_corners,
    image_to_canvas,
    order_corners,
    transform_points,
    warp_to_canvas,
)

QUADS = [
    [(10, 10), (110, 10), (110, 60), (10, 60)],                 # upright
    [(120, 90), (520, 110), (500, 380), (140, 400)],            # skewed
    [(100, 20), (180, 100), (100, 180), (20, 100)],             # diamond
    [(300, 40), (330, 60), (310, 95), (280, 75)],               # rotated ~30 deg
]


class TestOrderCorners:
    def test_upright_rectangle_order(self):
        shuffled = [(110, 60), (10, 10), (10, 60), (110, 10)]
        ordered = order_corners(shuffled)
        assert ordered.tolist() == [[10, 10], [110, 10], [110, 60], [10, 60]]

    @pytest.mark.parametrize("quad", QUADS)
    def test_idempotent(self, quad):
        once = order_corners(quad)
        assert np.array_equal(order_corners(once), once)

    @pytest.mark.parametrize("quad", QUADS)
    def test_independent_of_input_order(self, quad):
        expected = order_corners(quad)
        for perm in itertools.permutations(quad):
            assert np.array_equal(order_corners(perm), expected)

    def test_accepts_opencv_layout(self):
        pts = np.array(QUADS[1], np.int32).reshape(-1, 1, 2)
        assert order_corners(pts).shape == (4, 2)

    def test_rejects_wrong_count(self):
        with pytest.raises(ValueError):
            order_corners([(0, 0), (1, 0), (1, 1)])


class TestRectification:
    @pytest.mark.parametrize("mode", list(RotationMode))
    @pytest.mark.parametrize("quad", QUADS)
    def test_corners_map_to_destination(self, mode, quad):
        ordered = order_corners(quad)
        matrix = compute_rectification(ordered, mode, 1280, 720)
        mapped = transform_points(ordered, matrix)
        assert np.allclose(mapped, destination_corners(mode, 1280, 720), atol=0.05)

    def test_modes_are_distinct_permutations(self):
        corners = {tuple(map(tuple, destination_corners(m, 4, 3))) for m in RotationMode}
        assert len(corners) == 4
        for mode in RotationMode:
            assert sorted(map(tuple, destination_corners(mode, 4, 3))) == \
                sorted([(0, 0), (4, 0), (4, 3), (0, 3)])

    def test_mode_accepts_string_value(self):
        assert np.array_equal(destination_corners("mirror_both", 2, 1),
                              destination_corners(RotationMode.MIRROR_BOTH, 2, 1))

    def test_warp_output_size(self):
        image = np.zeros((480, 640, 3), np.uint8)
        matrix = compute_rectification(order_corners(QUADS[1]), RotationMode.NONE, 320, 240)
        assert warp_to_canvas(image, matrix, (320, 240)).shape == (240, 320, 3)


def test_image_to_canvas():
    assert image_to_canvas(0, 0, (100, 50)) == (-50.0, 25.0)
    assert image_to_canvas(50, 25, (100, 50)) == (0.0, 0.0)
