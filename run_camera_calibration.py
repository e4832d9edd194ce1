#!/usr/bin/env python3
"""
run_camera_calibration.py - Calibrate lens intrinsics (distortion).

This script handles two modes:

  1. FROM IMAGES (no live camera needed):
     Place checkerboard photos in a folder and run:
       python run_camera_calibration.py --dir path/to/images/

  2. LIVE CAPTURE:
     Pass a camera index or video and capture views interactively:
       python run_camera_calibration.py --source 0

Output: config/camera_calibration.json, preloaded by the surface
calibrator on the next run.
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "src"))

from canvas_vision.calibration import (
    calibrate_from_images,
    calibrate_live,
    collect_image_paths,
    save_intrinsics,
)
from canvas_vision.frame_source import FrameSource
from canvas_vision.log import setup_logging


def main():
    parser = argparse.ArgumentParser(
        description="Lens intrinsic calibration using a checkerboard pattern."
    )
    parser.add_argument(
        "--dir", type=str, default=None,
        help="Directory containing checkerboard images (.jpg/.png). "
             "If not provided, live capture mode is used.",
    )
    parser.add_argument(
        "--board-cols", type=int, default=9,
        help="Number of inner corners (columns) in the checkerboard (default: 9)",
    )
    parser.add_argument(
        "--board-rows", type=int, default=6,
        help="Number of inner corners (rows) in the checkerboard (default: 6)",
    )
    parser.add_argument(
        "--square-size", type=float, default=25.0,
        help="Size of one checkerboard square in mm (default: 25.0)",
    )
    parser.add_argument(
        "--source", type=str, default=None,
        help="Camera index or video path for live capture mode",
    )
    parser.add_argument(
        "--output", type=str, default="config/camera_calibration.json",
        help="Output file path (default: config/camera_calibration.json)",
    )
    parser.add_argument(
        "--num-captures", type=int, default=15,
        help="Number of views to capture in live mode (default: 15)",
    )
    parser.add_argument("--show", action="store_true",
                        help="Show detected corners while processing a directory")
    parser.add_argument("-v", "--verbose", action="store_true")

    args = parser.parse_args()
    setup_logging(args.verbose)
    board_size = (args.board_cols, args.board_rows)

    try:
        if args.dir:
            # --- Mode 1: From images ---
            image_paths = collect_image_paths(args.dir)
            if not image_paths:
                print(f"ERROR: No images found in '{args.dir}'")
                sys.exit(1)

            print(f"Found {len(image_paths)} images in '{args.dir}'")
            result = calibrate_from_images(
                image_paths,
                board_size=board_size,
                square_size_mm=args.square_size,
                show_corners=args.show,
            )
        else:
            # --- Mode 2: Live capture ---
            if not args.source:
                print("ERROR: Live capture mode requires --source (camera index or video path).")
                sys.exit(1)

            with FrameSource(args.source, loop=False) as source:
                result = calibrate_live(
                    source,
                    board_size=board_size,
                    square_size_mm=args.square_size,
                    num_captures=args.num_captures,
                    save_images_dir="config/calibration_images",
                )
    except (ValueError, FileNotFoundError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    save_intrinsics(result, args.output)
    print(f"\nCalibration complete! Saved to: {args.output}")
    print(f"  RMS error: {result.rms_error:.4f} (< 0.5 is good)")


if __name__ == "__main__":
    main()
