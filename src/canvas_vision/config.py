"""
config.py - YAML configuration for the perception pipeline.

Every tunable has a default, so an empty (or missing) file is valid.
Sections map one-to-one onto dataclasses; unknown keys are rejected so a
typo in the YAML does not silently fall back to a default.

Example (config/vision_config.yaml):

    tracking:
      match_threshold: 0.2
      hue_margin: 0.08
      max_instances_per_template: 2
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Optional, Union

import yaml

from .color import RGB, parse_color
from .errors import ConfigError

logger = logging.getLogger(__name__)

_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
DEFAULT_CONFIG_PATH = os.path.join(_PROJECT_ROOT, "config", "vision_config.yaml")


# ------------------------------------------------------------------ #
# Sections                                                             #
# ------------------------------------------------------------------ #

@dataclass
class InputConfig:
    """Where frames come from."""

    source: Union[str, int] = 0         # video path or camera index
    backend: str = "opencv"             # "opencv" or "picamera"
    loop: bool = True                   # restart video files at the end

    def __post_init__(self):
        if self.backend not in ("opencv", "picamera"):
            raise ValueError(f"backend must be 'opencv' or 'picamera', got {self.backend!r}")


@dataclass
class CalibrationConfig:
    """Surface calibration: corner sweep, lens pattern and settle delays."""

    output_width: int = 1280            # projector / canvas resolution
    output_height: int = 720
    rotation_mode: str = "none"
    blur_kernel: int = 5
    threshold_step: int = 10
    min_rectangle_area: float = 100.0   # px, smaller quads are noise
    border_margin: int = 1
    approx_epsilon: float = 0.02        # fraction of perimeter for approxPolyDP
    use_pattern: bool = True
    pattern_cols: int = 9               # inner corners
    pattern_rows: int = 6
    detect_settle_s: float = 0.2
    base_image_settle_s: float = 0.5
    intrinsics_path: Optional[str] = None

    def __post_init__(self):
        if self.output_width <= 0 or self.output_height <= 0:
            raise ValueError("output size must be positive")
        if self.blur_kernel % 2 == 0:
            raise ValueError(f"blur_kernel must be odd, got {self.blur_kernel}")
        if self.threshold_step <= 0:
            raise ValueError("threshold_step must be positive")

    @property
    def output_size(self) -> tuple[int, int]:
        return (self.output_width, self.output_height)

    @property
    def pattern_size(self) -> tuple[int, int]:
        return (self.pattern_cols, self.pattern_rows)


@dataclass
class SegmentationConfig:
    """Background-difference edge segmentation and contour filtering."""

    bilateral_diameter: int = 9
    bilateral_sigma_color: float = 50.0
    bilateral_sigma_space: float = 50.0
    canny_low: float = 1.0
    canny_high: float = 75.0
    close_kernel: int = 3
    merge_margin: float = 10.0          # px, fragments closer than this merge
    min_area_fraction: float = 0.005    # of canvas area, captured objects
    max_area_fraction: float = 0.5
    border_margin: int = 1

    def __post_init__(self):
        if not 0.0 <= self.min_area_fraction < self.max_area_fraction <= 1.0:
            raise ValueError("area fractions must satisfy 0 <= min < max <= 1")
        if self.merge_margin < 0:
            raise ValueError("merge_margin must not be negative")


@dataclass
class ObjectRequest:
    """A physical object the scene needs a template for."""

    name: str
    color: Optional[RGB] = None         # None = contrasting color of its hue
    check_color_match: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "ObjectRequest":
        color = data.get("color")
        return cls(
            name=str(data["name"]),
            color=parse_color(color) if color is not None else None,
            check_color_match=bool(data.get("check_color_match", True)),
        )


@dataclass
class TemplateConfig:
    """Template capture timing and the objects to capture."""

    settle_s: float = 0.2               # before grabbing the object frame
    color_settle_s: float = 0.2         # while the assigned color is projected
    objects: list[ObjectRequest] = field(default_factory=list)


@dataclass
class TrackingConfig:
    """Detection tick, matching and identity tunables."""

    tick_interval_s: float = 1.0
    match_threshold: float = 0.2        # matchShapes I1, lower = more similar
    hue_margin: float = 0.08
    position_margin: float = 20.0       # px per identity position bucket
    size_margin: float = 20.0           # px of perimeter per size bucket
    max_instances_per_template: int = 1
    min_candidate_area_ratio: float = 0.9
    rotation_threshold_deg: float = 1.0
    max_area_ratio: Optional[float] = None  # set to make matching scale-sensitive

    def __post_init__(self):
        if self.tick_interval_s <= 0:
            raise ValueError("tick_interval_s must be positive")
        if self.position_margin <= 0 or self.size_margin <= 0:
            raise ValueError("position_margin and size_margin must be positive")
        if self.max_instances_per_template < 1:
            raise ValueError("max_instances_per_template must be at least 1")
        if self.max_area_ratio is not None and self.max_area_ratio < 1.0:
            raise ValueError("max_area_ratio must be >= 1")


@dataclass
class DisplayConfig:
    """Debug preview drawn by the command-line driver."""

    show_mask: bool = True
    fullscreen_canvas: bool = False
    overlay_color: list = field(default_factory=lambda: [0, 255, 0])
    text_color: list = field(default_factory=lambda: [255, 255, 255])
    font_scale: float = 0.6
    line_thickness: int = 2


@dataclass
class LoggingConfig:
    verbose: bool = False
    log_file: Optional[str] = None


# ------------------------------------------------------------------ #
# Root                                                                 #
# ------------------------------------------------------------------ #

def _section(cls, data, name: str):
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{name}' must be a mapping, got {type(data).__name__}")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in section '{name}': {', '.join(unknown)}")

    try:
        return cls(**data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid section '{name}': {e}") from e


@dataclass
class VisionConfig:
    input: InputConfig = field(default_factory=InputConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    segmentation: SegmentationConfig = field(default_factory=SegmentationConfig)
    template: TemplateConfig = field(default_factory=TemplateConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "VisionConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(unknown)}")

        template_data = dict(data.get("template") or {})
        try:
            objects = [ObjectRequest.from_dict(o) for o in template_data.pop("objects", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid template object entry: {e}") from e
        template = _section(TemplateConfig, template_data, "template")
        template.objects = objects

        return cls(
            input=_section(InputConfig, data.get("input"), "input"),
            calibration=_section(CalibrationConfig, data.get("calibration"), "calibration"),
            segmentation=_section(SegmentationConfig, data.get("segmentation"), "segmentation"),
            template=template,
            tracking=_section(TrackingConfig, data.get("tracking"), "tracking"),
            display=_section(DisplayConfig, data.get("display"), "display"),
            logging=_section(LoggingConfig, data.get("logging"), "logging"),
        )


def load_config(config_path: Optional[str] = None) -> VisionConfig:
    """Load the YAML configuration file.

    Parameters
    ----------
    config_path : str or None
        Path to YAML config. Defaults to config/vision_config.yaml; when
        that default file does not exist the built-in defaults are used.

    Raises
    ------
    ConfigError
        If an explicit path is missing or the file is not valid.
    """
    if config_path is None:
        if not os.path.isfile(DEFAULT_CONFIG_PATH):
            logger.info("No config file at %s, using defaults", DEFAULT_CONFIG_PATH)
            return VisionConfig()
        config_path = DEFAULT_CONFIG_PATH

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed YAML in {config_path}: {e}") from e

    logger.debug("Loaded config from %s", config_path)
    return VisionConfig.from_dict(data)
