import math
import threading

import numpy as np
import pytest

from stereomeasure.orientation import (
    LevelingGate,
    SensorState,
    is_level,
    orientation_sample,
    rotation_matrix,
)

G = 9.81
# Northern-hemisphere field, device flat and facing north: horizontal part along +y, dipping down.
FIELD_NORTH = np.array([0.0, 22.0, -40.0])


def _gravity_pitched(deg: float) -> np.ndarray:
    t = math.radians(deg)
    return G * np.array([0.0, math.sin(t), math.cos(t)])


def _gravity_rolled(deg: float) -> np.ndarray:
    t = math.radians(deg)
    return G * np.array([math.sin(t), 0.0, math.cos(t)])


def test_flat_device_facing_north():
    s = orientation_sample(np.array([0.0, 0.0, G]), FIELD_NORTH)
    assert s is not None
    assert s.pitch_deg == pytest.approx(0.0, abs=1e-9)
    assert s.roll_deg == pytest.approx(0.0, abs=1e-9)
    assert s.azimuth_deg == pytest.approx(0.0, abs=1e-9)
    assert s.is_level


def test_flat_device_facing_east_has_azimuth_90():
    s = orientation_sample(np.array([0.0, 0.0, G]), np.array([-22.0, 0.0, -40.0]))
    assert s.azimuth_deg == pytest.approx(90.0)


def test_rotation_is_orthonormal():
    R = rotation_matrix(_gravity_pitched(20.0) + np.array([0.5, 0.0, 0.0]), FIELD_NORTH)
    assert np.allclose(R @ R.T, np.eye(3))
    assert np.linalg.det(R) == pytest.approx(1.0)


def test_pitch_and_roll_magnitudes_follow_tilt():
    s = orientation_sample(_gravity_pitched(30.0), FIELD_NORTH)
    assert abs(s.pitch_deg) == pytest.approx(30.0)
    assert s.roll_deg == pytest.approx(0.0, abs=1e-9)
    assert not s.is_level

    s = orientation_sample(_gravity_rolled(12.0), FIELD_NORTH)
    assert abs(s.roll_deg) == pytest.approx(12.0)
    assert s.pitch_deg == pytest.approx(0.0, abs=1e-9)


def test_level_threshold_boundary():
    assert is_level(4.99, 0.0)
    assert not is_level(5.01, 0.0)
    assert is_level(0.0, -4.99)
    assert not is_level(0.0, -5.01)
    assert not is_level(5.0, 0.0)
    assert is_level(5.01, 0.0, tolerance_deg=6.0)


def test_level_threshold_from_sensor_vectors():
    assert orientation_sample(_gravity_pitched(4.99), FIELD_NORTH).is_level
    assert not orientation_sample(_gravity_pitched(5.01), FIELD_NORTH).is_level


@pytest.mark.parametrize(
    "gravity, field",
    [
        (np.array([0.0, 0.0, 0.5]), FIELD_NORTH),  # free fall
        (np.array([0.0, 0.0, G]), np.array([0.0, 0.0, -40.0])),  # field parallel to gravity
        (np.array([0.0, 0.0, G]), np.array([np.nan, 1.0, 1.0])),
    ],
)
def test_degenerate_vectors_give_no_orientation(gravity, field):
    assert rotation_matrix(gravity, field) is None
    assert orientation_sample(gravity, field) is None


def test_gate_latches_until_both_vectors_seen():
    samples = []
    gate = LevelingGate(on_sample=samples.append)

    assert gate.update_gravity([0.0, 0.0, G]) is None
    assert gate.update_gravity([0.0, 0.1, G]) is None
    assert samples == []
    assert not gate.resolved

    first = gate.update_magnetic(FIELD_NORTH)
    assert first is not None
    assert gate.resolved
    assert samples == [first]

    gate.update_gravity(_gravity_pitched(10.0))
    gate.update_magnetic(FIELD_NORTH * 1.01)
    gate.update_gravity([0.0, 0.0, G])
    assert len(samples) == 4
    assert gate.last_sample is samples[-1]


def test_gate_uses_most_recent_vectors():
    gate = LevelingGate()
    gate.update_magnetic(FIELD_NORTH)
    gate.update_gravity(_gravity_pitched(30.0))
    s = gate.update_gravity([0.0, 0.0, G])
    assert s.is_level


def test_gate_logs_only_level_samples():
    records = []
    gate = LevelingGate(sink=records.append, session_id="session-a", clock=lambda: 1700000000.25, luminosity=lambda: 320.0)
    gate.update_gravity([0.0, 0.0, G])
    gate.update_magnetic(FIELD_NORTH)
    gate.update_gravity(_gravity_pitched(20.0))
    gate.update_gravity(_gravity_rolled(2.0))

    assert len(records) == 2
    rec = records[0]
    assert rec.session_id == "session-a"
    assert rec.timestamp_ms == 1700000000250
    assert rec.luminosity == 320.0
    assert abs(records[1].roll) == pytest.approx(2.0)


def test_gate_can_log_non_level_samples():
    records = []
    gate = LevelingGate(sink=records.append, log_non_level=True)
    gate.update_gravity(_gravity_pitched(20.0))
    gate.update_magnetic(FIELD_NORTH)
    assert len(records) == 1
    assert abs(records[0].pitch) == pytest.approx(20.0)
    assert records[0].luminosity == 0.0


def test_gate_restart_starts_a_new_session():
    records = []
    gate = LevelingGate(sink=records.append, session_id="session-a")
    gate.update_gravity([0.0, 0.0, G])
    gate.update_magnetic(FIELD_NORTH)
    assert gate.last_sample is not None

    assert gate.restart("session-b") == "session-b"
    assert not gate.resolved
    assert gate.last_sample is None
    assert gate.update_gravity([0.0, 0.0, G]) is None

    gate.update_magnetic(FIELD_NORTH)
    assert [r.session_id for r in records] == ["session-a", "session-b"]

    fresh = gate.restart()
    assert fresh not in ("session-a", "session-b")
    assert gate.session_id == fresh


def test_degenerate_update_produces_nothing():
    samples, records = [], []
    gate = LevelingGate(on_sample=samples.append, sink=records.append)
    gate.update_gravity([0.0, 0.0, G])
    gate.update_magnetic([0.0, 0.0, -40.0])
    assert samples == [] and records == []
    assert gate.resolved


def test_sensor_state_rejects_unknown_kind():
    with pytest.raises(ValueError):
        SensorState().update("gyro", [0.0, 0.0, 1.0])


def test_sensor_state_snapshot_is_a_copy():
    state = SensorState()
    g = np.array([0.0, 0.0, G])
    state.update("gravity", g)
    assert state.snapshot() is None
    state.update("magnetic", FIELD_NORTH)
    g[2] = 0.0
    gravity, _ = state.snapshot()
    assert gravity[2] == G


def test_gate_concurrent_updates():
    samples = []
    lock = threading.Lock()

    def on_sample(s):
        with lock:
            samples.append(s)

    gate = LevelingGate(on_sample=on_sample)
    gate.update_gravity([0.0, 0.0, G])
    gate.update_magnetic(FIELD_NORTH)

    def feed(kind, vec):
        for _ in range(200):
            gate.update(kind, vec)

    threads = [
        threading.Thread(target=feed, args=("gravity", [0.0, 0.0, G])),
        threading.Thread(target=feed, args=("magnetic", FIELD_NORTH)),
        threading.Thread(target=feed, args=("gravity", _gravity_rolled(1.0))),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(samples) == 2 + 600
    assert all(s.is_level for s in samples)
