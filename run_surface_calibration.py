#!/usr/bin/env python3
"""
run_surface_calibration.py - Calibrate the projected surface offline.

Finds the projected rectangle in one frame, computes the rectification
and (if a checkerboard is visible) lens intrinsics, grabs the empty
surface as base image and saves the profile for run_vision.py --profile.

Usage:
    python run_surface_calibration.py --image target.png --base empty.png
    python run_surface_calibration.py --source 0

Output: config/surface_profile.json (+ config/surface_profile_base.png)
"""

import argparse
import os
import sys

import cv2 as cv
import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "src"))

from canvas_vision.calibration import intrinsics_exist, load_intrinsics, resolve_intrinsics_path
from canvas_vision.config import load_config
from canvas_vision.coordinate_transform import RotationMode, transform_points
from canvas_vision.errors import ConfigError
from canvas_vision.frame_source import FrameSource
from canvas_vision.log import setup_logging
from canvas_vision.surface import build_profile, save_profile


def _read_image(path: str) -> np.ndarray:
    image = cv.imread(path)
    if image is None:
        print(f"ERROR: Cannot read image '{path}'")
        sys.exit(1)
    return image


def main():
    parser = argparse.ArgumentParser(
        description="Detect the projected canvas and save a calibration profile."
    )
    parser.add_argument("--config", type=str, default=None,
                        help="YAML config (default: config/vision_config.yaml)")
    parser.add_argument("--image", type=str, default=None,
                        help="Camera image showing the projected calibration target")
    parser.add_argument("--base", type=str, default=None,
                        help="Camera image of the empty surface (default: --image)")
    parser.add_argument("--source", type=str, default=None,
                        help="Camera index or video path, used when --image is not given")
    parser.add_argument("--rotation", type=str, default=None,
                        choices=[m.value for m in RotationMode],
                        help="Override calibration.rotation_mode")
    parser.add_argument("--output", type=str, default="config/surface_profile.json",
                        help="Output file path (default: config/surface_profile.json)")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    setup_logging(args.verbose)
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    calib_cfg = cfg.calibration
    if args.rotation:
        calib_cfg.rotation_mode = args.rotation

    intrinsics = None
    intrinsics_path = resolve_intrinsics_path(calib_cfg.intrinsics_path)
    if intrinsics_exist(intrinsics_path):
        intrinsics = load_intrinsics(intrinsics_path)

    if args.image:
        target = _read_image(args.image)
        base = _read_image(args.base) if args.base else target
    elif args.source is not None:
        with FrameSource(args.source, loop=False) as source:
            target = source.read()
            input("Remove the calibration target, then press Enter...")
            base = source.read()
        if target is None or base is None:
            print("ERROR: Could not read frames from the source.")
            sys.exit(1)
    else:
        print("ERROR: Provide --image or --source.")
        sys.exit(1)

    profile, failure = build_profile(target, calib_cfg, intrinsics)
    if profile is None:
        print(f"ERROR: {failure}")
        print("  Make sure the entire projected area is visible and contrasts")
        print("  with the surface underneath.")
        sys.exit(1)
    if failure is not None:
        print(f"Note: {failure} - continuing without a new lens model.")

    profile = profile.with_base_image(profile.rectify(base))
    save_profile(profile, args.output)

    print(f"\nSurface calibration complete! Saved to: {args.output}")
    print(f"  Output size: {profile.output_size[0]}x{profile.output_size[1]}, "
          f"rotation: {profile.rotation_mode.value}")
    print(f"  Lens model: {'yes' if profile.intrinsics is not None else 'none'}")

    # Quick sanity check: the corners should land on the canvas rectangle
    print("\n  Verification (camera -> canvas):")
    for src, dst in zip(profile.corners, transform_points(profile.corners,
                                                         profile.rectification_matrix)):
        print(f"    ({src[0]:.0f}, {src[1]:.0f}) -> ({dst[0]:.1f}, {dst[1]:.1f})")


if __name__ == "__main__":
    main()
