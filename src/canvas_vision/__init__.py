from .errors import (
    VisionError,
    ConfigError,
    CalibrationRequiredError,
    DegenerateContourError,
    Failure,
)
from .config import VisionConfig, load_config
from .frame_source import FrameSource, StaticFrameSource, PiCameraSource, open_source
from .coordinate_transform import (
    RotationMode,
    order_corners,
    compute_rectification,
    transform_points,
    image_to_canvas,
)
from .geometry import (
    centroid_and_orientation,
    merge_nearby_contours,
    normalize_contour,
)
from .color import rgb_to_hue, hue_distance, contrasting_color
from .calibration import (
    LensIntrinsics,
    calibrate_from_pattern,
    calibrate_from_images,
    calibrate_live,
    save_intrinsics,
    load_intrinsics,
    undistort_frame,
)
from .surface import (
    CalibrationProfile,
    CalibrationState,
    SurfaceCalibrator,
    detect_projection_corners,
    save_profile,
    load_profile,
)
from .templates import ObjectTemplate, TemplateStore, TemplateBuilder, CaptureState
from .detection import DetectionCandidate, extract_candidates, match_candidate, shape_score
from .tracking import (
    IdentityKey,
    TrackedInstance,
    TrackingEngine,
    InstanceAppeared,
    InstanceUpdated,
    InstanceDisappeared,
    RotationChanged,
    ProxiesSuspended,
    ProxiesResumed,
)
from .pipeline import run_pipeline
