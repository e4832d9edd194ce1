#!/usr/bin/env python3
"""
run_vision.py - Entry point for the interactive canvas vision pipeline.

Usage:
    python run_vision.py                              # uses default config
    python run_vision.py config/custom.yaml           # uses a custom config
    python run_vision.py --source 0                   # camera index 0
    python run_vision.py --profile config/profile.json
"""

import argparse
import os
import sys

# Ensure the src/ layout is importable without installing
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "src"))

from canvas_vision.errors import ConfigError
from canvas_vision.pipeline import run_pipeline


def main():
    parser = argparse.ArgumentParser(
        description="Projector-camera perception pipeline with live preview."
    )
    parser.add_argument("config", nargs="?", default=None,
                        help="YAML config (default: config/vision_config.yaml)")
    parser.add_argument("--source", type=str, default=None,
                        help="Video path or camera index, overrides input.source")
    parser.add_argument("--profile", type=str, default=None,
                        help="Saved calibration profile (see run_surface_calibration.py)")
    args = parser.parse_args()

    try:
        run_pipeline(args.config, args.source, args.profile)
    except (ConfigError, FileNotFoundError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
