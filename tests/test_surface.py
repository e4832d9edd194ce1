from dataclasses import replace

import numpy as np
import pytest

from canvas_vision.coordinate_transform import RotationMode, order_corners
from canvas_vision.errors import CalibrationRequiredError
from canvas_vision.surface import (
    CalibrationState,
    SurfaceCalibrator,
    build_profile,
    detect_projection_corners,
    load_profile,
    save_profile,
)

from conftest import CANVAS_SIZE, PROJECTION_QUAD, blank_image, projection_frame


class TestDetectProjectionCorners:
    def test_finds_skewed_quad(self):
        corners = detect_projection_corners(projection_frame())
        assert corners is not None
        assert corners.shape == (4, 2)
        assert np.allclose(corners, order_corners(PROJECTION_QUAD), atol=5)

    def test_blank_frame_has_no_rectangle(self):
        assert detect_projection_corners(blank_image((640, 480), 20)) is None
        assert detect_projection_corners(blank_image((640, 480), 0)) is None

    def test_quad_touching_border_is_rejected(self):
        quad = [(0, 90), (520, 110), (500, 380), (0, 400)]
        assert detect_projection_corners(projection_frame(quad)) is None

    def test_tiny_quad_is_noise(self):
        quad = [(300, 200), (304, 200), (304, 204), (300, 204)]
        assert detect_projection_corners(projection_frame(quad)) is None


class TestBuildProfile:
    def test_profile_rectifies_to_canvas(self, calib_cfg):
        frame = projection_frame()
        profile, failure = build_profile(frame, calib_cfg)
        assert failure is None
        assert profile.output_size == CANVAS_SIZE
        assert profile.intrinsics is None

        rectified = profile.rectify(frame)
        assert rectified.shape == (CANVAS_SIZE[1], CANVAS_SIZE[0], 3)
        assert rectified[10:-10, 10:-10].min() == 255

    def test_no_rectangle_reports_failure(self, calib_cfg):
        profile, failure = build_profile(blank_image((640, 480), 20), calib_cfg)
        assert profile is None
        assert failure.phase == "corner_detection"

    def test_missing_pattern_keeps_profile(self, calib_cfg):
        cfg = replace(calib_cfg, use_pattern=True)
        profile, failure = build_profile(projection_frame(), cfg)
        assert profile is not None
        assert profile.intrinsics is None
        assert failure.phase == "pattern"

    def test_with_base_image_publishes_a_copy(self, calib_cfg):
        profile, _ = build_profile(projection_frame(), calib_cfg)
        base = blank_image()
        updated = profile.with_base_image(base)
        assert updated is not profile
        assert profile.base_image is None
        assert updated.base_image is base
        assert updated.rectification_matrix is profile.rectification_matrix

    def test_save_and_load(self, calib_cfg, tmp_path):
        profile, _ = build_profile(projection_frame(), replace(calib_cfg, rotation_mode="mirror_vertical"))
        profile = profile.with_base_image(blank_image())
        path = str(tmp_path / "profile.json")
        save_profile(profile, path)

        loaded = load_profile(path)
        assert loaded.rotation_mode is RotationMode.MIRROR_VERTICAL
        assert loaded.output_size == profile.output_size
        assert np.allclose(loaded.corners, profile.corners)
        assert np.allclose(loaded.rectification_matrix, profile.rectification_matrix)
        assert np.array_equal(loaded.base_image, profile.base_image)


class TestSurfaceCalibrator:
    def _calibrator(self, source, cfg, **kwargs):
        overlay = []
        calibrator = SurfaceCalibrator(source, cfg, on_overlay=overlay.append, **kwargs)
        return calibrator, overlay

    def test_full_sequence(self, source, calib_cfg):
        source.set_frame(projection_frame())
        calibrator, overlay = self._calibrator(source, calib_cfg)
        assert calibrator.state is CalibrationState.UNINITIALIZED

        calibrator.recalibrate(now=0.0)
        assert calibrator.state is CalibrationState.DETECTING
        assert overlay == [True]

        assert calibrator.update(0.1) is CalibrationState.DETECTING
        assert source.reads == 0

        assert calibrator.update(0.2) is CalibrationState.RECTANGLE_FOUND
        assert overlay == [True, False]
        assert calibrator.profile is None

        assert calibrator.update(0.7) is CalibrationState.READY
        assert calibrator.is_ready
        assert calibrator.profile.base_image.shape == (CANVAS_SIZE[1], CANVAS_SIZE[0], 3)
        assert calibrator.failure is None

    def test_no_rectangle_is_not_retried(self, source, calib_cfg):
        source.set_frame(blank_image((640, 480), 20))
        calibrator, _ = self._calibrator(source, calib_cfg)
        calibrator.recalibrate(0.0)

        assert calibrator.update(0.2) is CalibrationState.NO_RECTANGLE
        assert calibrator.failure.phase == "corner_detection"
        calibrator.update(10.0)
        assert calibrator.state is CalibrationState.NO_RECTANGLE
        assert source.reads == 1
        assert calibrator.profile is None

    def test_pattern_missing_continues_without_intrinsics(self, source, calib_cfg):
        source.set_frame(projection_frame())
        calibrator, _ = self._calibrator(source, replace(calib_cfg, use_pattern=True))
        calibrator.recalibrate(0.0)

        assert calibrator.update(0.2) is CalibrationState.PATTERN_MISSING
        assert calibrator.failure.phase == "pattern"
        assert calibrator.update(0.7) is CalibrationState.READY
        assert calibrator.profile.intrinsics is None

    def test_recalibrate_cancels_in_flight_sequence(self, source, calib_cfg):
        source.set_frame(projection_frame())
        calibrator, _ = self._calibrator(source, calib_cfg)
        calibrator.recalibrate(0.0)
        calibrator.recalibrate(0.1)

        calibrator.update(0.25)
        assert source.reads == 0
        calibrator.update(0.3)
        assert source.reads == 1

    def test_failed_recalibration_keeps_previous_profile(self, source, calib_cfg):
        source.set_frame(projection_frame())
        calibrator, _ = self._calibrator(source, calib_cfg)
        calibrator.recalibrate(0.0)
        calibrator.update(0.2)
        calibrator.update(0.7)
        first = calibrator.profile

        source.set_frame(blank_image((640, 480), 20))
        calibrator.recalibrate(1.0)
        calibrator.update(1.2)
        assert calibrator.state is CalibrationState.NO_RECTANGLE
        assert calibrator.profile is first

    def test_recapture_base_image(self, source, calib_cfg):
        source.set_frame(projection_frame())
        calibrator, overlay = self._calibrator(source, calib_cfg)
        calibrator.recalibrate(0.0)
        calibrator.update(0.2)
        calibrator.update(0.7)
        first = calibrator.profile

        source.set_frame(projection_frame(background=60))
        calibrator.recapture_base_image(1.0)
        assert overlay[-1] is False
        calibrator.update(1.5)

        second = calibrator.profile
        assert second is not first
        assert np.array_equal(second.corners, first.corners)
        assert calibrator.state is CalibrationState.READY
        assert first.base_image is not second.base_image

    def test_recapture_before_calibration_raises(self, source, calib_cfg):
        calibrator, _ = self._calibrator(source, calib_cfg)
        with pytest.raises(CalibrationRequiredError):
            calibrator.recapture_base_image(0.0)
        with pytest.raises(CalibrationRequiredError):
            calibrator.require_profile()

    def test_missing_frame_is_a_failure(self, source, calib_cfg):
        calibrator, _ = self._calibrator(source, calib_cfg)
        calibrator.recalibrate(0.0)
        assert calibrator.update(0.2) is CalibrationState.NO_RECTANGLE
        assert "frame" in calibrator.failure.reason

    def test_adopted_profile_is_ready(self, source, calib_cfg, identity_profile):
        calibrator, overlay = self._calibrator(source, calib_cfg)
        calibrator.adopt(identity_profile)
        assert calibrator.profile is identity_profile
        assert calibrator.state is CalibrationState.READY
        assert calibrator.require_profile() is identity_profile
        assert overlay == []

        source.set_frame(blank_image(value=90))
        calibrator.recapture_base_image(0.0)
        assert calibrator.update(0.5) is CalibrationState.READY
        assert calibrator.profile.base_image[120, 160].tolist() == [90, 90, 90]
