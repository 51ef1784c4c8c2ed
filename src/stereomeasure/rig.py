from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import numpy as np

from stereomeasure.core.area import pixel_area_at_depth, representative_depth, surface_area
from stereomeasure.core.distortion import UndistortMethod, undistort_points
from stereomeasure.core.triangulation import DEGENERATE_DEPTH_MM, depth_from_disparity
from stereomeasure.intrinsics import (
    LensIntrinsics,
    SensorCalibration,
    lens_intrinsics_from_dict,
    recover_intrinsics,
    sensor_calibration_from_dict,
)
from stereomeasure.orientation import LEVEL_TOLERANCE_DEG, LevelingGate
from stereomeasure.telemetry import DEFAULT_QUEUE_SIZE, TelemetryStore, TelemetryWriter

logger = logging.getLogger(__name__)

RIG_SCHEMA_VERSION = "stereomeasure.rig.v0"

# Main-to-ultrawide distance, not calibrated per unit.
BASELINE_ESTIMATE_MM = 12.0

# Sensors with a longer primary focal length are the main camera, shorter the ultrawide.
FOCAL_THRESHOLD_MM = 3.0


class RigConfigError(ValueError):
    pass


class CameraRole(str, enum.Enum):
    MAIN = "main"
    ULTRAWIDE = "ultra"


@dataclass(frozen=True)
class PhysicalSensor:
    sensor_id: str
    calibration: SensorCalibration


@dataclass(frozen=True)
class RegionMeasurement:
    depth_mm: float
    area_mm2: float
    valid_points: int


@dataclass(frozen=True)
class StereoRig:
    """
    The main/ultrawide pair used for triangulation.

    Depth and area use the main sensor's focal length; disparities are expected
    in main-camera pixels.
    """

    main: LensIntrinsics
    ultra: LensIntrinsics
    baseline_mm: float = BASELINE_ESTIMATE_MM
    main_id: str | None = None
    ultra_id: str | None = None

    @property
    def focal_length_px(self) -> float:
        return float(self.main.focal_length_x)

    def intrinsics(self, role: CameraRole | str) -> LensIntrinsics:
        return self.main if CameraRole(role) is CameraRole.MAIN else self.ultra

    def undistort(
        self, role: CameraRole | str, x: np.ndarray, y: np.ndarray, method: UndistortMethod = "newton"
    ) -> tuple[np.ndarray, np.ndarray]:
        return undistort_points(x, y, self.intrinsics(role), method=method)

    def undistort_main(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        return self.undistort(CameraRole.MAIN, x, y)

    def undistort_ultra(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        return self.undistort(CameraRole.ULTRAWIDE, x, y)

    def depth(self, disparity_px: np.ndarray) -> np.ndarray:
        return depth_from_disparity(self.focal_length_px, self.baseline_mm, disparity_px)

    def pixel_area(self, depth_mm: np.ndarray) -> np.ndarray:
        return pixel_area_at_depth(depth_mm, self.focal_length_px)

    def surface_area(self, mask_pixel_count: np.ndarray, depth_mm: np.ndarray) -> np.ndarray:
        return surface_area(mask_pixel_count, depth_mm, self.focal_length_px)

    def measure_region(self, disparities_px: np.ndarray, mask_pixel_count: int) -> RegionMeasurement:
        """
        Area of a masked region from the disparities matched inside it.

        The median depth of the usable disparities stands for the whole region.
        Without any usable disparity both depth and area are the degenerate sentinel.
        """
        d = np.asarray(disparities_px, dtype=np.float64).reshape(-1)
        depths = np.atleast_1d(self.depth(d))
        n_valid = int(np.count_nonzero(np.isfinite(depths) & (depths > DEGENERATE_DEPTH_MM)))
        z = representative_depth(depths)
        if z == DEGENERATE_DEPTH_MM:
            return RegionMeasurement(depth_mm=DEGENERATE_DEPTH_MM, area_mm2=DEGENERATE_DEPTH_MM, valid_points=0)
        return RegionMeasurement(depth_mm=z, area_mm2=float(self.surface_area(mask_pixel_count, z)), valid_points=n_valid)


def classify_sensor(calibration: SensorCalibration, focal_threshold_mm: float = FOCAL_THRESHOLD_MM) -> CameraRole | None:
    f_mm = calibration.primary_focal_length_mm
    if f_mm is None:
        return None
    if f_mm > focal_threshold_mm:
        return CameraRole.MAIN
    if f_mm < focal_threshold_mm:
        return CameraRole.ULTRAWIDE
    return None


def select_stereo_pair(
    sensors: Iterable[PhysicalSensor],
    baseline_mm: float = BASELINE_ESTIMATE_MM,
    focal_threshold_mm: float = FOCAL_THRESHOLD_MM,
) -> StereoRig | None:
    """
    Pick the main and ultrawide sensors behind one logical camera.

    Sensors are tagged by primary focal length; the last sensor seen for a role
    wins. Returns None unless both roles are filled.
    """
    found: dict[CameraRole, PhysicalSensor] = {}
    for sensor in sensors:
        role = classify_sensor(sensor.calibration, focal_threshold_mm)
        if role is None:
            logger.debug("sensor %s has no usable focal length; skipped", sensor.sensor_id)
            continue
        found[role] = sensor

    main = found.get(CameraRole.MAIN)
    ultra = found.get(CameraRole.ULTRAWIDE)
    if main is None or ultra is None:
        logger.info("no stereo pair: main=%s ultra=%s", getattr(main, "sensor_id", None), getattr(ultra, "sensor_id", None))
        return None

    logger.info("stereo pair found: main=%s ultra=%s", main.sensor_id, ultra.sensor_id)
    return StereoRig(
        main=recover_intrinsics(main.calibration),
        ultra=recover_intrinsics(ultra.calibration),
        baseline_mm=float(baseline_mm),
        main_id=main.sensor_id,
        ultra_id=ultra.sensor_id,
    )


@dataclass(frozen=True)
class LevelingConfig:
    tolerance_deg: float = LEVEL_TOLERANCE_DEG
    log_non_level: bool = False
    queue_size: int = DEFAULT_QUEUE_SIZE


@dataclass(frozen=True)
class RigConfig:
    rig: StereoRig
    leveling: LevelingConfig = field(default_factory=LevelingConfig)

    def make_gate(
        self, store: TelemetryStore, session_id: str | None = None, **kwargs: Any
    ) -> tuple[LevelingGate, TelemetryWriter]:
        """
        A LevelingGate wired to `store` through a TelemetryWriter sized by `leveling.queue_size`.

        The caller owns the writer and must close it to flush pending records.
        Extra keyword arguments (on_sample, luminosity, clock) go to the gate.
        """
        writer = TelemetryWriter(store, maxsize=self.leveling.queue_size)
        gate = LevelingGate(
            tolerance_deg=self.leveling.tolerance_deg,
            log_non_level=self.leveling.log_non_level,
            sink=writer.submit,
            session_id=session_id,
            **kwargs,
        )
        return gate, writer



def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise RigConfigError(msg)


def _number(value: Any, name: str, cast: type = float) -> Any:
    try:
        return cast(value)
    except (TypeError, ValueError) as e:
        raise RigConfigError(f"{name} must be a number") from e


def _parse_camera(name: str, data: Any) -> LensIntrinsics:
    _require(isinstance(data, dict), f"{name} must be an object")
    if "intrinsics" in data:
        intr = data["intrinsics"]
        _require(isinstance(intr, dict), f"{name}.intrinsics must be an object")
        for key in ("fx", "fy", "cx", "cy"):
            _require(intr.get(key) is not None, f"{name}.intrinsics.{key} is required")
        dist = intr.get("distortion")
        _require(dist is None or isinstance(dist, (list, tuple)), f"{name}.intrinsics.distortion must be a list or null")
        try:
            return lens_intrinsics_from_dict(intr)
        except (TypeError, ValueError) as e:
            raise RigConfigError(f"{name}.intrinsics: {e}") from e
    calib = data.get("calibration", {})
    _require(isinstance(calib, dict), f"{name}.calibration must be an object")
    for key in ("physical_size_mm", "pixel_array_size"):
        v = calib.get(key)
        _require(v is None or (isinstance(v, (list, tuple)) and len(v) == 2), f"{name}.calibration.{key} must be [w,h]")
    try:
        return recover_intrinsics(sensor_calibration_from_dict(calib))
    except (TypeError, ValueError) as e:
        raise RigConfigError(f"{name}.calibration: {e}") from e


def parse_rig_config(data: dict[str, Any]) -> RigConfig:
    _require(isinstance(data, dict), "rig config must be a JSON object")
    _require(data.get("schema_version") == RIG_SCHEMA_VERSION, f"schema_version must be {RIG_SCHEMA_VERSION}")

    baseline = _number(data.get("baseline_mm", BASELINE_ESTIMATE_MM), "baseline_mm")
    _require(baseline > 0.0, "baseline_mm must be > 0")
    _require("main" in data and "ultra" in data, "main and ultra cameras are required")

    main = _parse_camera("main", data["main"])
    ultra = _parse_camera("ultra", data["ultra"])

    lev = data.get("leveling", {})
    _require(isinstance(lev, dict), "leveling must be an object")
    tol = _number(lev.get("tolerance_deg", LEVEL_TOLERANCE_DEG), "leveling.tolerance_deg")
    _require(tol > 0.0, "leveling.tolerance_deg must be > 0")
    log_non_level = lev.get("log_non_level", False)
    _require(isinstance(log_non_level, bool), "leveling.log_non_level must be true|false")
    queue_size = _number(lev.get("queue_size", DEFAULT_QUEUE_SIZE), "leveling.queue_size", int)
    _require(queue_size >= 1, "leveling.queue_size must be >= 1")

    return RigConfig(
        rig=StereoRig(main=main, ultra=ultra, baseline_mm=baseline, main_id=data["main"].get("id"), ultra_id=data["ultra"].get("id")),
        leveling=LevelingConfig(tolerance_deg=tol, log_non_level=log_non_level, queue_size=queue_size),
    )


def load_rig_config(path: Path) -> RigConfig:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise RigConfigError(f"{path}: invalid JSON ({e})") from e
    return parse_rig_config(data)


def rig_config_to_dict(config: RigConfig) -> dict[str, Any]:
    rig = config.rig

    def _camera(intr: LensIntrinsics, sensor_id: str | None) -> dict[str, Any]:
        out: dict[str, Any] = {"intrinsics": intr.to_dict()}
        if sensor_id is not None:
            out["id"] = sensor_id
        return out

    return {
        "schema_version": RIG_SCHEMA_VERSION,
        "baseline_mm": float(rig.baseline_mm),
        "main": _camera(rig.main, rig.main_id),
        "ultra": _camera(rig.ultra, rig.ultra_id),
        "leveling": {
            "tolerance_deg": float(config.leveling.tolerance_deg),
            "log_non_level": bool(config.leveling.log_non_level),
            "queue_size": int(config.leveling.queue_size),
        },
    }


def save_rig_config(path: Path, config: RigConfig) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(rig_config_to_dict(config), indent=2, sort_keys=True), encoding="utf-8")
    return path
