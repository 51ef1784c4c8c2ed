from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import numpy as np

from stereomeasure.core.area import mask_surface_area
from stereomeasure.core.image_io import load_mask
from stereomeasure.intrinsics import CalibrationError, recover_intrinsics, sensor_calibration_from_dict
from stereomeasure.log import setup_logger
from stereomeasure.rig import CameraRole, RigConfigError, load_rig_config
from stereomeasure.telemetry import JsonlTelemetryStore


def _cmd_intrinsics(args: argparse.Namespace) -> int:
    data = json.loads(Path(args.calibration).read_text(encoding="utf-8"))
    intr = recover_intrinsics(sensor_calibration_from_dict(data))
    print(json.dumps(intr.to_dict(), sort_keys=True))
    return 0


def _cmd_undistort(args: argparse.Namespace) -> int:
    rig = load_rig_config(args.rig).rig
    x, y = rig.undistort(CameraRole(args.camera), args.x, args.y, method=args.method)
    print(json.dumps({"x": float(x), "y": float(y)}, sort_keys=True))
    return 0


def _cmd_depth(args: argparse.Namespace) -> int:
    rig = load_rig_config(args.rig).rig
    z = np.atleast_1d(rig.depth(np.asarray(args.disparity, dtype=np.float64)))
    for d, zi in zip(args.disparity, z):
        print(json.dumps({"disparity_px": float(d), "depth_mm": float(zi)}, sort_keys=True))
    return 0


def _cmd_area(args: argparse.Namespace) -> int:
    rig = load_rig_config(args.rig).rig
    if args.mask is not None:
        mask = load_mask(args.mask)
        count = int(np.count_nonzero(mask))
        area = mask_surface_area(mask, args.depth_mm, rig.focal_length_px)
    else:
        count = int(args.mask_pixels)
        area = float(rig.surface_area(count, args.depth_mm))
    out = {
        "depth_mm": float(args.depth_mm),
        "mask_pixels": count,
        "pixel_area_mm2": float(rig.pixel_area(args.depth_mm)),
        "area_mm2": area,
    }
    print(json.dumps(out, sort_keys=True))
    return 0


def _cmd_telemetry(args: argparse.Namespace) -> int:
    store = JsonlTelemetryStore(args.log)
    for rec in store.records(args.session):
        print(json.dumps(rec.to_dict(), sort_keys=True))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="stereomeasure")
    parser.add_argument("--log-level", type=str, default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file", type=Path, default=None, help="Also write a rotating debug log here.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    intr = sub.add_parser("intrinsics", help="Recover lens intrinsics from a sensor calibration JSON.")
    intr.add_argument("calibration", type=Path)

    und = sub.add_parser("undistort", help="Correct one raw pixel for lens distortion.")
    und.add_argument("--rig", type=Path, required=True)
    und.add_argument("--camera", type=str, default="main", choices=[r.value for r in CameraRole])
    und.add_argument("--x", type=float, required=True)
    und.add_argument("--y", type=float, required=True)
    und.add_argument("--method", type=str, default="newton", choices=["newton", "fixed_point"])

    dep = sub.add_parser("depth", help="Triangulate depth (mm) from main-camera disparities (px).")
    dep.add_argument("--rig", type=Path, required=True)
    dep.add_argument("disparity", type=float, nargs="+")

    area = sub.add_parser("area", help="Surface area (mm^2) of a mask at a given depth.")
    area.add_argument("--rig", type=Path, required=True)
    area.add_argument("--depth-mm", type=float, required=True)
    src = area.add_mutually_exclusive_group(required=True)
    src.add_argument("--mask-pixels", type=int, help="Number of pixels in the mask.")
    src.add_argument("--mask", type=Path, help="Mask image; non-zero pixels count.")

    tel = sub.add_parser("telemetry", help="Print the telemetry records of one session (newest first).")
    tel.add_argument("log", type=Path)
    tel.add_argument("--session", type=str, required=True)

    args = parser.parse_args(argv)
    setup_logger(args.log_level, args.log_file)

    commands = {
        "intrinsics": _cmd_intrinsics,
        "undistort": _cmd_undistort,
        "depth": _cmd_depth,
        "area": _cmd_area,
        "telemetry": _cmd_telemetry,
    }
    try:
        return commands[args.cmd](args)
    except (RigConfigError, CalibrationError, json.JSONDecodeError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
