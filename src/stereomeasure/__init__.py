from stereomeasure.core.area import ground_sample_distance, mask_surface_area, pixel_area_at_depth, surface_area
from stereomeasure.core.distortion import BrownDistortion, distort_points, undistort_points
from stereomeasure.core.triangulation import DEGENERATE_DEPTH_MM, depth_from_disparity, is_degenerate_depth
from stereomeasure.intrinsics import LensIntrinsics, SensorCalibration, recover_intrinsics
from stereomeasure.orientation import LevelingGate, OrientationSample, SensorState, is_level
from stereomeasure.rig import StereoRig, load_rig_config, select_stereo_pair
from stereomeasure.telemetry import JsonlTelemetryStore, MemoryTelemetryStore, TelemetryRecord, TelemetryWriter

__all__ = [
    "BrownDistortion",
    "DEGENERATE_DEPTH_MM",
    "JsonlTelemetryStore",
    "LensIntrinsics",
    "LevelingGate",
    "MemoryTelemetryStore",
    "OrientationSample",
    "SensorCalibration",
    "SensorState",
    "StereoRig",
    "TelemetryRecord",
    "TelemetryWriter",
    "depth_from_disparity",
    "distort_points",
    "ground_sample_distance",
    "is_degenerate_depth",
    "is_level",
    "load_rig_config",
    "mask_surface_area",
    "pixel_area_at_depth",
    "recover_intrinsics",
    "select_stereo_pair",
    "surface_area",
    "undistort_points",
]
