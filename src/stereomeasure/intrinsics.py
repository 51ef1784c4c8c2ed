from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

from stereomeasure.core.distortion import BrownDistortion, brown_from_sequence

logger = logging.getLogger(__name__)

# Fallback sensor geometry, used field by field when the hardware layer leaves one out.
DEFAULT_FOCAL_LENGTH_MM = 4.7
DEFAULT_SENSOR_WIDTH_MM = 6.4
DEFAULT_IMAGE_WIDTH_PX = 4000
DEFAULT_IMAGE_HEIGHT_PX = 3000

N_DISTORTION = 5


class CalibrationError(ValueError):
    pass


@dataclass(frozen=True)
class LensIntrinsics:
    """
    Optical model of one physical sensor.

    `distortion` is ordered (k1, k2, k3, p1, p2). None or an empty tuple means an
    ideal pinhole lens. The field is stored as a tuple so that equality and hashing
    compare coefficients element-wise.
    """

    focal_length_x: float
    focal_length_y: float
    principal_point_x: float
    principal_point_y: float
    distortion: tuple[float, ...] | None = None

    def __post_init__(self) -> None:
        if self.distortion is not None:
            object.__setattr__(self, "distortion", tuple(float(v) for v in self.distortion))

    @property
    def has_distortion(self) -> bool:
        return bool(self.distortion)

    @property
    def brown(self) -> BrownDistortion:
        return brown_from_sequence(self.distortion)

    def camera_matrix(self) -> np.ndarray:
        return np.array(
            [
                [float(self.focal_length_x), 0.0, float(self.principal_point_x)],
                [0.0, float(self.focal_length_y), float(self.principal_point_y)],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "fx": float(self.focal_length_x),
            "fy": float(self.focal_length_y),
            "cx": float(self.principal_point_x),
            "cy": float(self.principal_point_y),
            "distortion": None if self.distortion is None else list(self.distortion),
        }


def lens_intrinsics_from_dict(d: dict[str, Any]) -> LensIntrinsics:
    dist = d.get("distortion")
    return LensIntrinsics(
        focal_length_x=float(d["fx"]),
        focal_length_y=float(d["fy"]),
        principal_point_x=float(d["cx"]),
        principal_point_y=float(d["cy"]),
        distortion=None if dist is None else tuple(float(v) for v in dist),
    )


@dataclass(frozen=True)
class SensorCalibration:
    """
    Raw calibration fields exposed by the camera hardware layer for one sensor.

    Every field is optional; consumer devices expose them inconsistently.
    """

    intrinsic_calibration: Sequence[float] | None = None  # factory [fx, fy, cx, cy, k1, k2, k3, p1, p2]
    focal_lengths_mm: Sequence[float] | None = None
    physical_size_mm: tuple[float, float] | None = None  # (width, height)
    pixel_array_size: tuple[int, int] | None = None  # (width, height)

    @property
    def primary_focal_length_mm(self) -> float | None:
        if not self.focal_lengths_mm:
            return None
        return float(self.focal_lengths_mm[0])


def sensor_calibration_from_dict(d: dict[str, Any]) -> SensorCalibration:
    if not isinstance(d, dict):
        raise CalibrationError("calibration must be a JSON object")

    def _values(key: str, cast: type) -> tuple | None:
        v = d.get(key)
        if v is None:
            return None
        if not isinstance(v, (list, tuple)):
            raise CalibrationError(f"{key} must be a list")
        try:
            return tuple(cast(x) for x in v)
        except (TypeError, ValueError) as e:
            raise CalibrationError(f"{key} must contain numbers") from e

    def _pair(key: str, cast: type) -> tuple | None:
        v = _values(key, cast)
        if v is not None and len(v) != 2:
            raise CalibrationError(f"{key} must be [w,h]")
        return v

    return SensorCalibration(
        intrinsic_calibration=_values("intrinsic_calibration", float),
        focal_lengths_mm=_values("focal_lengths_mm", float),
        physical_size_mm=_pair("physical_size_mm", float),
        pixel_array_size=_pair("pixel_array_size", int),
    )


def estimate_focal_length_px(focal_length_mm: float, sensor_width_mm: float, image_width_px: int) -> float:
    """Pinhole similar triangles: f_px = f_mm / sensor_width_mm * image_width_px."""
    return (float(focal_length_mm) / float(sensor_width_mm)) * float(image_width_px)


def recover_intrinsics(calibration: SensorCalibration | None = None) -> LensIntrinsics:
    """
    Best-effort LensIntrinsics for one sensor. Never raises.

    The factory intrinsic calibration wins when present. Without it, the focal
    length in pixels is estimated from sensor geometry and the lens is assumed
    ideal (all-zero distortion). Missing geometry fields fall back to defaults.
    """
    if calibration is None:
        calibration = SensorCalibration()

    factory = calibration.intrinsic_calibration
    if factory is not None and len(factory) >= 4:
        fx, fy, cx, cy = (float(v) for v in factory[:4])
        extra = [float(v) for v in factory[4:]]
        distortion: tuple[float, ...] | None = None
        if len(extra) >= N_DISTORTION:
            distortion = tuple(extra[:N_DISTORTION])
        else:
            logger.debug("factory calibration has %d distortion terms; assuming ideal lens", len(extra))
        return LensIntrinsics(fx, fy, cx, cy, distortion)

    if factory is not None:
        logger.info("factory calibration too short (%d values); estimating from sensor geometry", len(factory))

    f_mm = calibration.primary_focal_length_mm
    if f_mm is None:
        f_mm = DEFAULT_FOCAL_LENGTH_MM
    w_mm = DEFAULT_SENSOR_WIDTH_MM if calibration.physical_size_mm is None else float(calibration.physical_size_mm[0])
    if not w_mm > 0.0:
        logger.info("unusable sensor width %r; using %.1fmm", w_mm, DEFAULT_SENSOR_WIDTH_MM)
        w_mm = DEFAULT_SENSOR_WIDTH_MM
    if calibration.pixel_array_size is None:
        w_px, h_px = DEFAULT_IMAGE_WIDTH_PX, DEFAULT_IMAGE_HEIGHT_PX
    else:
        w_px, h_px = calibration.pixel_array_size

    f_px = estimate_focal_length_px(f_mm, w_mm, w_px)
    logger.info("estimated intrinsics from geometry: f=%.3fmm sensor_w=%.3fmm image=%dx%d -> f_px=%.2f", f_mm, w_mm, w_px, h_px, f_px)
    return LensIntrinsics(
        focal_length_x=f_px,
        focal_length_y=f_px,
        principal_point_x=w_px / 2.0,
        principal_point_y=h_px / 2.0,
        distortion=(0.0,) * N_DISTORTION,
    )
