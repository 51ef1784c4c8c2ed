"""
Depth from disparity for a rectified, horizontally offset camera pair.

Z = f_px * B / d, with a single sentinel for disparities too small to triangulate.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from stereomeasure.intrinsics import LensIntrinsics

# Below this, the point is at optical infinity or the match failed.
MIN_DISPARITY_PX = 0.1

# Returned instead of NaN/Inf for degenerate disparity. Real depths are always > 0.
DEGENERATE_DEPTH_MM = 0.0


def depth_from_disparity(f_px: float, baseline_mm: float, disparity_px: np.ndarray) -> np.ndarray:
    """
    Depth in mm along the optical axis.

    Disparities below MIN_DISPARITY_PX (negative and NaN included) map to
    DEGENERATE_DEPTH_MM. Focal length and baseline are not validated.
    """
    d = np.asarray(disparity_px, dtype=np.float64)
    valid = d >= MIN_DISPARITY_PX
    safe = np.where(valid, d, 1.0)
    z = np.where(valid, (float(f_px) * float(baseline_mm)) / safe, DEGENERATE_DEPTH_MM)
    return z[()] if z.ndim == 0 else z


def is_degenerate_depth(depth_mm: np.ndarray) -> np.ndarray:
    z = np.asarray(depth_mm, dtype=np.float64)
    out = ~(z > DEGENERATE_DEPTH_MM)
    return out[()] if out.ndim == 0 else out


def point_from_disparity(
    u_px: np.ndarray,
    v_px: np.ndarray,
    disparity_px: np.ndarray,
    intrinsics: "LensIntrinsics",
    baseline_mm: float,
) -> np.ndarray:
    """
    Back-project (u, v, d) into camera coordinates (X, Y, Z) in mm.

    Pixels are expected to be undistorted already. Degenerate disparities give (0, 0, 0).
    Returns an array of shape (..., 3).
    """
    u = np.asarray(u_px, dtype=np.float64)
    v = np.asarray(v_px, dtype=np.float64)
    z = np.asarray(depth_from_disparity(intrinsics.focal_length_x, baseline_mm, disparity_px), dtype=np.float64)
    x = (u - intrinsics.principal_point_x) * z / intrinsics.focal_length_x
    y = (v - intrinsics.principal_point_y) * z / intrinsics.focal_length_y
    return np.stack(np.broadcast_arrays(x, y, z), axis=-1)
