from __future__ import annotations

import numpy as np

from stereomeasure.core.triangulation import DEGENERATE_DEPTH_MM


def ground_sample_distance(depth_mm: np.ndarray, f_px: float) -> np.ndarray:
    """Size of one pixel on a fronto-parallel surface at `depth_mm` (mm / px)."""
    return np.asarray(depth_mm, dtype=np.float64) / float(f_px)


def pixel_area_at_depth(depth_mm: np.ndarray, f_px: float) -> np.ndarray:
    """Area covered by one pixel at `depth_mm` (mm^2 / px)."""
    gsd = ground_sample_distance(depth_mm, f_px)
    return gsd * gsd


def surface_area(mask_pixel_count: np.ndarray, depth_mm: np.ndarray, f_px: float) -> np.ndarray:
    """
    Area in mm^2 of `mask_pixel_count` pixels seen at one uniform depth.

    Assumes a locally planar surface perpendicular to the optical axis; strong depth
    gradients across the mask are not accounted for.
    """
    return np.asarray(mask_pixel_count, dtype=np.float64) * pixel_area_at_depth(depth_mm, f_px)


def mask_surface_area(mask: np.ndarray, depth_mm: float, f_px: float) -> float:
    count = int(np.count_nonzero(np.asarray(mask)))
    return float(surface_area(count, depth_mm, f_px))


def representative_depth(depth_mm: np.ndarray) -> float:
    """
    Median of the valid (non-sentinel, finite) depths, or the sentinel if none remain.
    """
    z = np.asarray(depth_mm, dtype=np.float64).reshape(-1)
    z = z[np.isfinite(z) & (z > DEGENERATE_DEPTH_MM)]
    if z.size == 0:
        return DEGENERATE_DEPTH_MM
    return float(np.median(z))
