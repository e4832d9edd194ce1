"""
frame_source.py - Unified frame sources: video file / USB camera, Pi camera, static image.

All sources expose read()/release() and work as context managers. The
pipeline is latest-wins: each read() returns the newest frame available,
older ones are never queued.
"""

import logging
from typing import Optional, Union

import cv2 as cv
import numpy as np

logger = logging.getLogger(__name__)


class FrameSource:
    """Reads frames through cv.VideoCapture.

    Usage:
        src = FrameSource("path/to/video.mov")   # or FrameSource(0)
        while True:
            frame = src.read()
            if frame is None:
                break
            ...
        src.release()
    """

    def __init__(self, source: Union[str, int], loop: bool = True):
        """
        Parameters
        ----------
        source : str or int
            Path to a video file, or a camera index. Numeric strings
            ("0", "1") are treated as camera indices.
        loop : bool
            If True, restart a video file from the beginning when it ends.
        """
        if isinstance(source, str) and source.isdigit():
            source = int(source)
        self._source = source
        self._loop = loop and not isinstance(source, int)
        self._cap = cv.VideoCapture(source)

        if not self._cap.isOpened():
            raise FileNotFoundError(f"Cannot open video source: {source}")

    # ---- properties ------------------------------------------------

    @property
    def is_camera(self) -> bool:
        return isinstance(self._source, int)

    @property
    def fps(self) -> float:
        """Frames per second reported by the source."""
        return self._cap.get(cv.CAP_PROP_FPS) or 30.0

    @property
    def width(self) -> int:
        return int(self._cap.get(cv.CAP_PROP_FRAME_WIDTH))

    @property
    def height(self) -> int:
        return int(self._cap.get(cv.CAP_PROP_FRAME_HEIGHT))

    # ---- core API --------------------------------------------------

    def read(self) -> Optional[np.ndarray]:
        """Return the newest BGR frame, or None if the source is exhausted."""
        if self.is_camera:
            # Drop whatever the driver buffered and decode only the latest.
            self._cap.grab()

        ret, frame = self._cap.read()

        if not ret:
            if self._loop:
                self._cap.set(cv.CAP_PROP_POS_FRAMES, 0)
                ret, frame = self._cap.read()
            if not ret:
                return None

        return frame

    def release(self):
        """Release the underlying capture."""
        self._cap.release()

    # ---- context manager -------------------------------------------

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.release()

    def __repr__(self):
        return (
            f"FrameSource(source={self._source!r}, "
            f"{self.width}x{self.height} @ {self.fps:.1f} fps)"
        )


class StaticFrameSource:
    """Serves an in-memory frame that the caller can swap at any time.

    Used for offline replays of still images and by the tests.
    """

    def __init__(self, frame: Optional[np.ndarray] = None):
        self.frame = frame
        self.reads = 0

    @classmethod
    def from_file(cls, path: str) -> "StaticFrameSource":
        frame = cv.imread(path)
        if frame is None:
            raise FileNotFoundError(f"Cannot read image: {path}")
        return cls(frame)

    def set_frame(self, frame: Optional[np.ndarray]):
        self.frame = frame

    def read(self) -> Optional[np.ndarray]:
        self.reads += 1
        return None if self.frame is None else self.frame.copy()

    def release(self):
        self.frame = None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.release()


class PiCameraSource:
    """Raspberry Pi camera through picamera2 (install the ``pi`` extra).

    picamera2 is imported on construction, so the rest of the package
    works on machines without it.
    """

    def __init__(self, width: int = 1280, height: int = 720):
        from picamera2 import Picamera2

        self._cam = Picamera2()
        config = self._cam.create_preview_configuration(
            main={"format": "RGB888", "size": (width, height)}
        )
        self._cam.configure(config)
        self._cam.start()
        self._width = width
        self._height = height
        logger.info("Pi camera started at %dx%d", width, height)

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    def read(self) -> Optional[np.ndarray]:
        # RGB888 in picamera2 is laid out B, G, R in memory, i.e. OpenCV BGR.
        frame = self._cam.capture_array()
        if frame is None:
            return None
        if frame.ndim == 3 and frame.shape[2] == 4:
            frame = cv.cvtColor(frame, cv.COLOR_BGRA2BGR)
        return frame

    def release(self):
        self._cam.stop()
        self._cam.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.release()


def open_source(source: Union[str, int], backend: str = "opencv", loop: bool = True,
                size: tuple[int, int] = (1280, 720)):
    """Frame source for the configured backend."""
    if backend == "picamera":
        return PiCameraSource(*size)
    return FrameSource(source, loop=loop)
