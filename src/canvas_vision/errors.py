"""
errors.py - Exceptions and failure records for the perception pipeline.

Hard errors (a missing calibration, a bad config file) are raised.
Geometry that simply was not found in a frame is not an exception: the
phase records a ``Failure`` and the orchestrator decides when to retry.
"""

from dataclasses import dataclass


class VisionError(Exception):
    """Base class for canvas_vision errors."""


class ConfigError(VisionError):
    """Invalid or unreadable configuration."""


class CalibrationRequiredError(VisionError):
    """Capture or detection was requested before a calibration profile exists."""


class DegenerateContourError(VisionError, ZeroDivisionError):
    """Contour has zero area, so its moments (and centroid) are undefined."""


@dataclass(frozen=True)
class Failure:
    """A recoverable, non-fatal outcome of one pipeline phase."""

    phase: str      # e.g. "corner_detection", "pattern", "object_capture"
    reason: str     # human readable, suitable for retry instructions

    def __str__(self):
        return f"{self.phase}: {self.reason}"
