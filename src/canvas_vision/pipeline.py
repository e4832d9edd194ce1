"""
pipeline.py - Command-line driver with live OpenCV windows.

Wires the calibrator, template builder and tracking engine to a frame
source and two windows:

  "Canvas"   what the projector shows: the calibration target, the
             color projected during template capture, and an outline
             per tracked instance (hidden while a detection pass runs)
  "Camera"   the raw camera frame, with the detected quad drawn on it

Keys:
  c  recalibrate             b  recapture base image
  n  capture next object     r  retry current capture
  a  accept captured object  d  start / stop detection
  q  quit
"""

import logging
import time
from typing import Optional

import cv2 as cv
import numpy as np

from .calibration import intrinsics_exist, load_intrinsics, resolve_intrinsics_path
from .color import rgb_to_bgr
from .config import VisionConfig, load_config
from .errors import CalibrationRequiredError
from .frame_source import open_source
from .geometry import place_contour
from .log import setup_logging
from .surface import CalibrationState, SurfaceCalibrator, load_profile
from .templates import CaptureState, TemplateBuilder, TemplateStore
from .tracking import (
    InstanceAppeared,
    InstanceDisappeared,
    ProxiesResumed,
    ProxiesSuspended,
    RotationChanged,
    TrackingEngine,
)

logger = logging.getLogger(__name__)

CANVAS_WINDOW = "Canvas"
CAMERA_WINDOW = "Camera"
MASK_WINDOW = "Mask"


class PipelineApp:
    """Owns the three components and turns key presses into phase triggers."""

    def __init__(self, cfg: VisionConfig, source, intrinsics=None):
        self.cfg = cfg
        self.source = source
        self.store = TemplateStore()

        self.calibrator = SurfaceCalibrator(
            source, cfg.calibration, intrinsics, on_overlay=self._on_overlay
        )
        self.builder = TemplateBuilder(
            source, self.store, None, cfg.template, cfg.segmentation,
            on_project_color=self._on_project_color,
        )
        self.engine = TrackingEngine(source, self.store, None, cfg.tracking, cfg.segmentation)
        self.engine.subscribe(self._on_event)

        self.profile = None
        self.message = ""
        self._overlay_visible = False
        self._projected_color = None
        self._proxies_hidden = False
        self._pending_objects = list(cfg.template.objects)

    # ---- profile sharing -------------------------------------------

    def use_profile(self, profile):
        """Hand a (new) published profile to the builder and the engine.

        A profile that did not come from the calibrator (e.g. loaded from
        disk) is adopted by it first, so base-image recapture works on it.
        """
        if self.calibrator.profile is not profile:
            self.calibrator.adopt(profile)
        self.profile = profile
        self.builder.profile = profile
        self.engine.profile = profile

    # ---- callbacks -------------------------------------------------

    def _on_overlay(self, visible: bool):
        self._overlay_visible = visible

    def _on_project_color(self, color):
        self._projected_color = color

    def _on_event(self, event):
        if isinstance(event, ProxiesSuspended):
            self._proxies_hidden = True
        elif isinstance(event, ProxiesResumed):
            self._proxies_hidden = False
        elif isinstance(event, InstanceAppeared):
            print(f"[pipeline] + {event.instance.name} #{event.instance.instance_id} "
                  f"at ({event.instance.centroid[0]:.0f}, {event.instance.centroid[1]:.0f})")
        elif isinstance(event, InstanceDisappeared):
            print(f"[pipeline] - {event.instance.name} #{event.instance.instance_id}")
        elif isinstance(event, RotationChanged):
            print(f"[pipeline]   {event.instance.name} #{event.instance.instance_id} "
                  f"rotated {event.previous:.1f} -> {event.current:.1f} deg")

    # ---- keyboard --------------------------------------------------

    def handle_key(self, key: int, now: Optional[float] = None) -> bool:
        """Dispatch one key press. Returns False when the user quits."""
        if key == ord("q"):
            return False

        try:
            if key == ord("c"):
                self.engine.stop()
                self.calibrator.recalibrate(now)
                self.message = "Calibrating..."
            elif key == ord("b"):
                self.calibrator.recapture_base_image(now)
                self.message = "Capturing base image..."
            elif key == ord("n"):
                self._begin_next()
                self.builder.capture(now)
                self.message = f"Capturing {self.builder.request.name}..."
            elif key == ord("r"):
                self.builder.reinitialize(now)
                self.message = "Retrying capture..."
            elif key == ord("a"):
                template = self.builder.commit()
                self.message = f"Stored {template.name}" if template else "Nothing to store"
            elif key == ord("d"):
                self.engine.toggle(now)
                self.message = "Detecting" if self.engine.active else "Detection stopped"
        except CalibrationRequiredError as e:
            self.message = f"{e}. Press 'c' to calibrate."
            logger.warning("%s", e)

        return True

    def _begin_next(self):
        if self.builder.state is CaptureState.CAPTURED or self.builder.request is not None:
            return
        if self._pending_objects:
            request = self._pending_objects.pop(0)
            self.builder.begin(request.name, request.color, request.check_color_match)
        else:
            self.builder.begin(f"object_{len(self.store) + 1}")

    # ---- tick ------------------------------------------------------

    def step(self, now: Optional[float] = None):
        """Advance every component by one scheduling step."""
        self.calibrator.update(now)
        published = self.calibrator.profile
        if published is not None and published is not self.profile:
            self.use_profile(published)
            self.message = "Calibrated. Press 'n' to capture an object."

        if self.calibrator.state is CalibrationState.NO_RECTANGLE and not self.calibrator.busy:
            self.message = f"{self.calibrator.failure}. Press 'c' to retry."

        self.builder.update(now)
        if self.builder.failure is not None and not self.builder.busy:
            self.message = f"{self.builder.failure}. Press 'r' to retry."
        elif self.builder.state is CaptureState.CAPTURED:
            self.message = "Captured. 'a' to accept, 'r' to retry."

        self.engine.update(now)

    # ---- drawing ---------------------------------------------------

    def render_canvas(self) -> np.ndarray:
        width, height = self.cfg.calibration.output_size
        canvas = np.zeros((height, width, 3), np.uint8)

        if self._overlay_visible:
            canvas[:] = 255
            return canvas

        if self._projected_color is not None:
            canvas[:] = rgb_to_bgr(self._projected_color)
            return canvas

        if not self._proxies_hidden:
            for instance in self.engine.instances:
                contour = place_contour(instance.template.canonical_contour,
                                        instance.centroid, instance.orientation, (width, height))
                color = rgb_to_bgr(instance.template.assigned_color)
                cv.drawContours(canvas, [contour], -1, color, self.cfg.display.line_thickness)

        self._draw_message(canvas)
        return canvas

    def render_camera(self, frame: np.ndarray) -> np.ndarray:
        vis = frame.copy()
        profile = self.profile
        if profile is not None:
            quad = np.round(profile.corners).astype(np.int32).reshape(-1, 1, 2)
            cv.polylines(vis, [quad], True, tuple(self.cfg.display.overlay_color),
                         self.cfg.display.line_thickness)
        return vis

    def debug_mask(self) -> Optional[np.ndarray]:
        if self.engine.active and self.engine.last_mask is not None:
            return self.engine.last_mask
        return self.builder.last_mask

    def _draw_message(self, canvas: np.ndarray):
        if not self.message:
            return
        cv.putText(
            canvas, self.message, (12, 28),
            cv.FONT_HERSHEY_SIMPLEX,
            self.cfg.display.font_scale,
            tuple(self.cfg.display.text_color),
            2,
            cv.LINE_AA,
        )


# ------------------------------------------------------------------ #
# Main pipeline                                                        #
# ------------------------------------------------------------------ #

def run_pipeline(
    config_path: str | None = None,
    source_override: str | None = None,
    profile_path: str | None = None,
):
    """Run the interactive pipeline until 'q' is pressed.

    Parameters
    ----------
    config_path : str or None
        Path to YAML config. Defaults to config/vision_config.yaml.
    source_override : str or None
        Video path or camera index replacing ``input.source``.
    profile_path : str or None
        Saved calibration profile to start from instead of calibrating.
    """
    cfg = load_config(config_path)
    setup_logging(cfg.logging.verbose, cfg.logging.log_file)

    intrinsics = None
    intrinsics_path = resolve_intrinsics_path(cfg.calibration.intrinsics_path)
    if intrinsics_exist(intrinsics_path):
        intrinsics = load_intrinsics(intrinsics_path)
        print(f"[pipeline] Lens intrinsics loaded (RMS={intrinsics.rms_error:.4f})")
    else:
        print("[pipeline] No lens intrinsics found - skipping undistortion until a pattern is seen.")

    source_arg = source_override if source_override is not None else cfg.input.source
    source = open_source(source_arg, cfg.input.backend, cfg.input.loop,
                         cfg.calibration.output_size)
    delay = max(1, int(1000 / getattr(source, "fps", 30.0)))
    print(f"[pipeline] Opened {source}")

    app = PipelineApp(cfg, source, intrinsics)
    if profile_path:
        app.use_profile(load_profile(profile_path, intrinsics))
        app.message = "Profile loaded. Press 'n' to capture an object."
    else:
        app.calibrator.recalibrate(time.monotonic())

    cv.namedWindow(CANVAS_WINDOW, cv.WINDOW_NORMAL)
    if cfg.display.fullscreen_canvas:
        cv.setWindowProperty(CANVAS_WINDOW, cv.WND_PROP_FULLSCREEN, cv.WINDOW_FULLSCREEN)

    print("[pipeline] Keys: c=calibrate b=base n=capture r=retry a=accept d=detect q=quit\n")

    try:
        while True:
            frame = source.read()
            if frame is None:
                print("[pipeline] End of source.")
                break

            app.step(time.monotonic())

            cv.imshow(CANVAS_WINDOW, app.render_canvas())
            cv.imshow(CAMERA_WINDOW, app.render_camera(frame))
            mask = app.debug_mask()
            if cfg.display.show_mask and mask is not None:
                cv.imshow(MASK_WINDOW, mask)

            key = cv.waitKey(delay) & 0xFF
            if key != 0xFF and not app.handle_key(key, time.monotonic()):
                print("\n[pipeline] Quit by user.")
                break
    finally:
        source.release()
        cv.destroyAllWindows()
