"""
Device orientation from gravity + magnetic field, and the leveling gate.

Convention: device frame x right, y up along the screen, z out of the screen.
The rotation maps device coordinates to a world frame whose rows are
(East, North, Up). A device lying flat, screen up, top edge pointing north
has pitch = roll = azimuth = 0.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Literal

import numpy as np

from stereomeasure.telemetry import TelemetryRecord, new_session_id

logger = logging.getLogger(__name__)

SensorKind = Literal["gravity", "magnetic"]

STANDARD_GRAVITY = 9.80665
# Below 10% of g the device is in free fall and gravity gives no direction.
FREE_FALL_GRAVITY_SQUARED = 0.01 * STANDARD_GRAVITY * STANDARD_GRAVITY
# |E x A| below this means the field is (anti)parallel to gravity, or absent.
MIN_EAST_NORM = 0.1

LEVEL_TOLERANCE_DEG = 5.0


def rotation_matrix(gravity: np.ndarray, geomagnetic: np.ndarray) -> np.ndarray | None:
    """
    Device -> world rotation from a gravity-like and a magnetic-field-like vector.

    Returns None when the pair does not define an orientation.
    """
    a = np.asarray(gravity, dtype=np.float64).reshape(3)
    e = np.asarray(geomagnetic, dtype=np.float64).reshape(3)
    if not (np.all(np.isfinite(a)) and np.all(np.isfinite(e))):
        return None
    if float(a @ a) < FREE_FALL_GRAVITY_SQUARED:
        return None
    h = np.cross(e, a)
    norm_h = float(np.linalg.norm(h))
    if norm_h < MIN_EAST_NORM:
        return None
    h = h / norm_h
    a = a / float(np.linalg.norm(a))
    m = np.cross(a, h)
    return np.stack([h, m, a], axis=0)


def orientation_angles(R: np.ndarray) -> tuple[float, float, float]:
    """(azimuth, pitch, roll) in radians from a rotation_matrix() result."""
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)
    azimuth = math.atan2(R[0, 1], R[1, 1])
    pitch = math.asin(max(-1.0, min(1.0, -R[2, 1])))
    roll = math.atan2(-R[2, 0], R[2, 2])
    return azimuth, pitch, roll


def is_level(pitch_deg: float, roll_deg: float, tolerance_deg: float = LEVEL_TOLERANCE_DEG) -> bool:
    return abs(pitch_deg) < tolerance_deg and abs(roll_deg) < tolerance_deg


@dataclass(frozen=True)
class OrientationSample:
    pitch_deg: float
    roll_deg: float
    azimuth_deg: float
    is_level: bool


def orientation_sample(
    gravity: np.ndarray,
    geomagnetic: np.ndarray,
    tolerance_deg: float = LEVEL_TOLERANCE_DEG,
) -> OrientationSample | None:
    R = rotation_matrix(gravity, geomagnetic)
    if R is None:
        return None
    azimuth, pitch, roll = (math.degrees(v) for v in orientation_angles(R))
    return OrientationSample(
        pitch_deg=pitch,
        roll_deg=roll,
        azimuth_deg=azimuth,
        is_level=is_level(pitch, roll, tolerance_deg),
    )


class SensorState:
    """
    The latest gravity and magnetic readings of one sensing session.

    Unresolved until both vectors have been seen once, then resolved until reset().
    The pair is written and read under one lock so a snapshot never mixes a
    stale vector with a fresh one.
    """

    def __init__(self) -> None:
        self._gravity: np.ndarray | None = None
        self._magnetic: np.ndarray | None = None
        self._lock = threading.Lock()

    @property
    def resolved(self) -> bool:
        with self._lock:
            return self._gravity is not None and self._magnetic is not None

    def update(self, kind: SensorKind, vector: np.ndarray) -> tuple[np.ndarray, np.ndarray] | None:
        """Latch `vector`; return the (gravity, magnetic) pair if resolved."""
        v = np.array(vector, dtype=np.float64).reshape(3)
        with self._lock:
            if kind == "gravity":
                self._gravity = v
            elif kind == "magnetic":
                self._magnetic = v
            else:
                raise ValueError("kind must be gravity|magnetic")
            if self._gravity is None or self._magnetic is None:
                return None
            return self._gravity.copy(), self._magnetic.copy()

    def snapshot(self) -> tuple[np.ndarray, np.ndarray] | None:
        with self._lock:
            if self._gravity is None or self._magnetic is None:
                return None
            return self._gravity.copy(), self._magnetic.copy()

    def reset(self) -> None:
        with self._lock:
            self._gravity = None
            self._magnetic = None


class LevelingGate:
    """
    Turns raw sensor readings into orientation samples and gated telemetry.

    Each update after both vectors are known yields one OrientationSample, which
    goes to `on_sample`. Level samples (and all samples with `log_non_level`)
    also go to `sink` as a TelemetryRecord. `sink` should not block; hand it
    TelemetryWriter.submit.
    """

    def __init__(
        self,
        state: SensorState | None = None,
        *,
        tolerance_deg: float = LEVEL_TOLERANCE_DEG,
        on_sample: Callable[[OrientationSample], None] | None = None,
        sink: Callable[[TelemetryRecord], object] | None = None,
        session_id: str | None = None,
        log_non_level: bool = False,
        luminosity: Callable[[], float | None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state = state if state is not None else SensorState()
        self.tolerance_deg = float(tolerance_deg)
        self.on_sample = on_sample
        self.sink = sink
        self.session_id = session_id if session_id is not None else new_session_id()
        self.log_non_level = bool(log_non_level)
        self.luminosity = luminosity
        self.clock = clock
        self._last_sample: OrientationSample | None = None

    @property
    def resolved(self) -> bool:
        return self.state.resolved

    @property
    def last_sample(self) -> OrientationSample | None:
        return self._last_sample

    def restart(self, session_id: str | None = None) -> str:
        """Forget both latched vectors and start a new telemetry session."""
        self.state.reset()
        self._last_sample = None
        self.session_id = session_id if session_id is not None else new_session_id()
        logger.info("leveling session restarted: %s", self.session_id)
        return self.session_id

    def update_gravity(self, vector: np.ndarray) -> OrientationSample | None:
        return self.update("gravity", vector)

    def update_magnetic(self, vector: np.ndarray) -> OrientationSample | None:
        return self.update("magnetic", vector)

    def update(self, kind: SensorKind, vector: np.ndarray) -> OrientationSample | None:
        pair = self.state.update(kind, vector)
        if pair is None:
            return None
        sample = orientation_sample(pair[0], pair[1], self.tolerance_deg)
        if sample is None:
            logger.debug("degenerate gravity/magnetic pair; no orientation")
            return None
        self._last_sample = sample
        if self.on_sample is not None:
            self.on_sample(sample)
        if self.sink is not None and (sample.is_level or self.log_non_level):
            self.sink(self._record(sample))
        return sample

    def _record(self, sample: OrientationSample) -> TelemetryRecord:
        lux = self.luminosity() if self.luminosity is not None else None
        return TelemetryRecord(
            timestamp_ms=int(self.clock() * 1000),
            session_id=self.session_id,
            pitch=sample.pitch_deg,
            roll=sample.roll_deg,
            azimuth=sample.azimuth_deg,
            luminosity=0.0 if lux is None else float(lux),
        )
