from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Sequence

import numpy as np

if TYPE_CHECKING:
    from stereomeasure.intrinsics import LensIntrinsics

UndistortMethod = Literal["newton", "fixed_point"]

DEFAULT_UNDISTORT_ITERATIONS = 5


@dataclass(frozen=True)
class BrownDistortion:
    """
    Brown-Conrady distortion on normalized camera coordinates (x=X/Z, y=Y/Z).

    Parameters follow common OpenCV naming:
      radial: k1, k2, k3
      tangential: p1, p2
    """

    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0

    @property
    def is_identity(self) -> bool:
        return self.k1 == 0.0 and self.k2 == 0.0 and self.k3 == 0.0 and self.p1 == 0.0 and self.p2 == 0.0

    def distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        r4 = r2 * r2
        r6 = r4 * r2
        radial = 1.0 + self.k1 * r2 + self.k2 * r4 + self.k3 * r6
        x2 = x * x
        y2 = y * y
        xy = x * y
        x_tan = 2.0 * self.p1 * xy + self.p2 * (r2 + 2.0 * x2)
        y_tan = self.p1 * (r2 + 2.0 * y2) + 2.0 * self.p2 * xy
        xd = x * radial + x_tan
        yd = y * radial + y_tan
        return xd, yd

    def jacobian(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Partial derivatives of distort() at (x, y).

        Returns (dxd_dx, dxd_dy, dyd_dx, dyd_dy).
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        r4 = r2 * r2
        radial = 1.0 + self.k1 * r2 + self.k2 * r4 + self.k3 * r4 * r2
        # d(radial)/d(r2)
        dradial = self.k1 + 2.0 * self.k2 * r2 + 3.0 * self.k3 * r4
        cross = 2.0 * x * y * dradial + 2.0 * self.p1 * x + 2.0 * self.p2 * y
        dxd_dx = radial + 2.0 * x * x * dradial + 2.0 * self.p1 * y + 6.0 * self.p2 * x
        dyd_dy = radial + 2.0 * y * y * dradial + 6.0 * self.p1 * y + 2.0 * self.p2 * x
        return dxd_dx, cross, cross, dyd_dy

    def undistort(
        self,
        xd: np.ndarray,
        yd: np.ndarray,
        iterations: int = DEFAULT_UNDISTORT_ITERATIONS,
        method: UndistortMethod = "newton",
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Iterative inverse of distort().

        The estimate starts at the distorted point and is refined for exactly
        `iterations` steps; there is no convergence test and no failure mode.

        - "fixed_point": subtract the forward residual from the estimate. This is a
          simplified gradient step, good for the smooth, mild curves of phone lenses
          near the image center.
        - "newton": solve the 2x2 Jacobian system per step. Where the Jacobian is
          singular or non-finite the step degrades to the fixed-point update.
        """
        if method not in ("newton", "fixed_point"):
            raise ValueError("method must be newton|fixed_point")
        xd = np.asarray(xd, dtype=np.float64)
        yd = np.asarray(yd, dtype=np.float64)
        x = xd.copy()
        y = yd.copy()
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            for _ in range(int(iterations)):
                x_est, y_est = self.distort(x, y)
                ex = x_est - xd
                ey = y_est - yd
                if method == "fixed_point":
                    x = x - ex
                    y = y - ey
                    continue
                a, b, c, d = self.jacobian(x, y)
                det = a * d - b * c
                ok = np.isfinite(det) & (np.abs(det) > 1e-12)
                safe = np.where(ok, det, 1.0)
                step_x = np.where(ok, (d * ex - b * ey) / safe, ex)
                step_y = np.where(ok, (a * ey - c * ex) / safe, ey)
                x = x - step_x
                y = y - step_y
        return x, y


def brown_from_sequence(coeffs: Sequence[float] | None) -> BrownDistortion:
    """Build from the [k1, k2, k3, p1, p2] ordering; missing entries are 0."""
    c = [float(v) for v in (coeffs or ())][:5]
    c += [0.0] * (5 - len(c))
    return BrownDistortion(k1=c[0], k2=c[1], k3=c[2], p1=c[3], p2=c[4])


def _is_ideal(intrinsics: "LensIntrinsics") -> bool:
    return not intrinsics.has_distortion or intrinsics.brown.is_identity


def normalize_points(x: np.ndarray, y: np.ndarray, intrinsics: "LensIntrinsics") -> tuple[np.ndarray, np.ndarray]:
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    xn = (x - intrinsics.principal_point_x) / intrinsics.focal_length_x
    yn = (y - intrinsics.principal_point_y) / intrinsics.focal_length_y
    return xn, yn


def denormalize_points(xn: np.ndarray, yn: np.ndarray, intrinsics: "LensIntrinsics") -> tuple[np.ndarray, np.ndarray]:
    xn = np.asarray(xn, dtype=np.float64)
    yn = np.asarray(yn, dtype=np.float64)
    return xn * intrinsics.focal_length_x + intrinsics.principal_point_x, yn * intrinsics.focal_length_y + intrinsics.principal_point_y


def distort_points(x: np.ndarray, y: np.ndarray, intrinsics: "LensIntrinsics") -> tuple[np.ndarray, np.ndarray]:
    """
    Forward projection in pixel space: ideal (undistorted) pixel -> raw sensor pixel.
    """
    if _is_ideal(intrinsics):
        return np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64)
    xn, yn = normalize_points(x, y, intrinsics)
    xd, yd = intrinsics.brown.distort(xn, yn)
    return denormalize_points(xd, yd, intrinsics)


def undistort_points(
    x: np.ndarray,
    y: np.ndarray,
    intrinsics: "LensIntrinsics",
    iterations: int = DEFAULT_UNDISTORT_ITERATIONS,
    method: UndistortMethod = "newton",
) -> tuple[np.ndarray, np.ndarray]:
    """
    Correct raw sensor pixels for lens distortion.

    Lenses without distortion (no coefficients, or all zero) are returned unchanged,
    bit for bit.
    Otherwise the point is normalized with (fx, fy, cx, cy), inverted through
    BrownDistortion.undistort and mapped back to pixels.
    """
    if _is_ideal(intrinsics):
        return np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64)
    xn, yn = normalize_points(x, y, intrinsics)
    xu, yu = intrinsics.brown.undistort(xn, yn, iterations=iterations, method=method)
    return denormalize_points(xu, yu, intrinsics)
