from __future__ import annotations

import itertools
import json
from pathlib import Path

import numpy as np
import pytest

from stereomeasure.core.triangulation import DEGENERATE_DEPTH_MM
from stereomeasure.intrinsics import LensIntrinsics, SensorCalibration
from stereomeasure.telemetry import MemoryTelemetryStore
from stereomeasure.rig import (
    BASELINE_ESTIMATE_MM,
    CameraRole,
    LevelingConfig,
    PhysicalSensor,
    RigConfig,
    RigConfigError,
    StereoRig,
    load_rig_config,
    parse_rig_config,
    save_rig_config,
    select_stereo_pair,
)


def _rig_dict() -> dict:
    return {
        "schema_version": "stereomeasure.rig.v0",
        "baseline_mm": 12.0,
        "main": {
            "id": "2",
            "intrinsics": {"fx": 1000.0, "fy": 1000.0, "cx": 500.0, "cy": 400.0, "distortion": [-0.1, 0, 0, 0, 0]},
        },
        "ultra": {"id": "3", "calibration": {"focal_lengths_mm": [2.2]}},
    }


def _simple_rig() -> StereoRig:
    return StereoRig(main=LensIntrinsics(1000.0, 1000.0, 500.0, 400.0), ultra=LensIntrinsics(600.0, 600.0, 500.0, 400.0))


def test_select_stereo_pair_by_focal_length():
    sensors = [
        PhysicalSensor("2", SensorCalibration(focal_lengths_mm=[5.6], intrinsic_calibration=[4000, 4000, 2000, 1500])),
        PhysicalSensor("3", SensorCalibration(focal_lengths_mm=[1.9])),
        PhysicalSensor("4", SensorCalibration(focal_lengths_mm=[3.0])),
        PhysicalSensor("5", SensorCalibration()),
    ]
    rig = select_stereo_pair(sensors)
    assert rig is not None
    assert (rig.main_id, rig.ultra_id) == ("2", "3")
    assert rig.main.focal_length_x == 4000.0
    assert rig.ultra.focal_length_x == pytest.approx(1.9 / 6.4 * 4000)
    assert rig.baseline_mm == BASELINE_ESTIMATE_MM


def test_select_stereo_pair_requires_both_roles():
    assert select_stereo_pair([PhysicalSensor("2", SensorCalibration(focal_lengths_mm=[5.6]))]) is None
    assert select_stereo_pair([]) is None


def test_rig_depth_and_area_use_main_focal_length():
    rig = _simple_rig()
    assert rig.depth(10.0) == 1200.0
    assert rig.depth(0.05) == DEGENERATE_DEPTH_MM
    assert rig.pixel_area(200.0) == pytest.approx(0.04)
    assert rig.surface_area(500, 200.0) == pytest.approx(20.0)


def test_measure_region_uses_median_valid_depth():
    rig = _simple_rig()
    m = rig.measure_region([10.0, 10.0, 0.0, 12.0], mask_pixel_count=1000)
    assert m.depth_mm == 1200.0
    assert m.valid_points == 3
    assert m.area_mm2 == pytest.approx(1000 * 1.44)


def test_measure_region_ignores_infinite_disparity():
    m = _simple_rig().measure_region([10.0, 10.0, float("inf"), 12.0], mask_pixel_count=1000)
    assert m.valid_points == 3
    assert m.depth_mm == 1200.0


def test_measure_region_without_valid_disparity():
    m = _simple_rig().measure_region([0.0, 0.01], mask_pixel_count=1000)
    assert m.depth_mm == DEGENERATE_DEPTH_MM
    assert m.area_mm2 == DEGENERATE_DEPTH_MM
    assert m.valid_points == 0


def test_rig_undistort_per_role():
    rig = StereoRig(
        main=LensIntrinsics(1000.0, 1000.0, 500.0, 400.0, (-0.1, 0.0, 0.0, 0.0, 0.0)),
        ultra=LensIntrinsics(600.0, 600.0, 500.0, 400.0),
    )
    assert rig.undistort_ultra(900.0, 100.0) == (900.0, 100.0)
    x, _ = rig.undistort_main(900.0, 400.0)
    assert x > 900.0
    assert rig.intrinsics("ultra") is rig.ultra
    assert rig.intrinsics(CameraRole.MAIN) is rig.main


def test_parse_rig_config():
    cfg = parse_rig_config(_rig_dict())
    assert cfg.rig.main == LensIntrinsics(1000.0, 1000.0, 500.0, 400.0, (-0.1, 0.0, 0.0, 0.0, 0.0))
    assert cfg.rig.ultra.focal_length_x == pytest.approx(2.2 / 6.4 * 4000)
    assert cfg.rig.main_id == "2"
    assert cfg.leveling == LevelingConfig()


def test_parse_rig_config_leveling_section():
    data = _rig_dict()
    data["leveling"] = {"tolerance_deg": 3.0, "log_non_level": True, "queue_size": 8}
    cfg = parse_rig_config(data)
    assert cfg.leveling == LevelingConfig(tolerance_deg=3.0, log_non_level=True, queue_size=8)


@pytest.mark.parametrize(
    "mutate",
    [
        lambda d: d.update(schema_version="stereomeasure.rig.v1"),
        lambda d: d.update(baseline_mm=0.0),
        lambda d: d.update(baseline_mm="wide"),
        lambda d: d.pop("ultra"),
        lambda d: d["main"]["intrinsics"].pop("fx"),
        lambda d: d["main"]["intrinsics"].update(distortion=0.1),
        lambda d: d["ultra"]["calibration"].update(pixel_array_size=[4000]),
        lambda d: d.update(leveling={"log_non_level": "yes"}),
        lambda d: d.update(leveling={"queue_size": 0}),
    ],
)
def test_parse_rig_config_rejects(mutate):
    data = _rig_dict()
    mutate(data)
    with pytest.raises(RigConfigError):
        parse_rig_config(data)


def test_save_and_load_rig_config(tmp_path: Path):
    cfg = RigConfig(rig=_simple_rig(), leveling=LevelingConfig(tolerance_deg=4.0))
    path = save_rig_config(tmp_path / "rig.json", cfg)
    assert load_rig_config(path) == cfg


def test_load_rig_config_invalid_json(tmp_path: Path):
    path = tmp_path / "rig.json"
    path.write_text("{", encoding="utf-8")
    with pytest.raises(RigConfigError):
        load_rig_config(path)


def test_load_rig_config_from_file(tmp_path: Path):
    path = tmp_path / "rig.json"
    path.write_text(json.dumps(_rig_dict()), encoding="utf-8")
    assert load_rig_config(path).rig.baseline_mm == 12.0


def _level_and_tilted_readings(gate) -> None:
    g = 9.81
    t = np.radians(4.0)
    gate.update_magnetic([0.0, 22.0, -40.0])
    gate.update_gravity([0.0, g * np.sin(t), g * np.cos(t)])
    gate.update_gravity([0.0, 0.0, g])


@pytest.mark.parametrize("log_non_level, expected_pitches", [(True, [4.0, 0.0]), (False, [0.0])])
def test_gate_from_rig_file_follows_leveling_section(tmp_path: Path, log_non_level, expected_pitches):
    data = _rig_dict()
    data["leveling"] = {"tolerance_deg": 3.0, "log_non_level": log_non_level, "queue_size": 4}
    path = tmp_path / "rig.json"
    path.write_text(json.dumps(data), encoding="utf-8")

    store = MemoryTelemetryStore()
    ticks = itertools.count(1)
    gate, writer = load_rig_config(path).make_gate(store, session_id="walk-1", clock=lambda: float(next(ticks)))
    assert gate.tolerance_deg == 3.0
    with writer:
        _level_and_tilted_readings(gate)
    assert writer.dropped == 0

    records = store.records("walk-1")
    # newest first
    assert [abs(r.pitch) for r in reversed(records)] == pytest.approx(expected_pitches, abs=1e-9)
