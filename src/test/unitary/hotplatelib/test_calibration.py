import json
from pathlib import Path

import pytest

from hotplatelib.calibration import CalibrationData, InterfaceLimits, SafetyLimits
from hotplatelib.errors import ConfigurationError


def test_calibration_round_trips_through_json(tmp_path: Path) -> None:
    calibration = CalibrationData(
        temperatures=[{'resistance': 2.0, 'temperature': 225.0}, {'resistance': 1.0, 'temperature': 25.0}],
        thermal_resistance=[{'temperature': 100.0, 'value': 2.5}],
        heat_capacity=[{'temperature': 100.0, 'value': 40.0}],
        predictor={'kind': 'single-pole', 'tau': 12.0},
        limits=InterfaceLimits(max_power=90.0),
        safety=SafetyLimits(cut_off_temperature=260.0),
    )
    path = tmp_path / 'calibration.json'
    calibration.save(str(path))

    loaded = CalibrationData.load(str(path))
    assert loaded.limits.max_power == 90.0
    assert loaded.safety.cut_off_temperature == 260.0
    assert loaded.predictor == {'kind': 'single-pole', 'tau': 12.0}
    assert loaded.temperature_curve().value(1.5) == pytest.approx(125.0)
    assert loaded.thermal_resistance_curve().value(200.0) == 2.5
    assert loaded.power_level_curve() is None


def test_load_ignores_unknown_keys(tmp_path: Path) -> None:
    path = tmp_path / 'calibration.json'
    path.write_text(json.dumps({'temperatures': [], 'colour': 'blue', 'limits': {'max_power': 60, 'x': 1}}),
                    encoding='utf-8')
    loaded = CalibrationData.load(str(path))
    assert loaded.limits.max_power == 60
    assert loaded.temperatures == []


def test_load_rejects_non_object(tmp_path: Path) -> None:
    path = tmp_path / 'calibration.json'
    path.write_text('[1, 2, 3]', encoding='utf-8')
    with pytest.raises(ConfigurationError):
        CalibrationData.load(str(path))


def test_set_temperature_curve_orders_by_resistance() -> None:
    calibration = CalibrationData(temperatures=[{'resistance': 3.0, 'temperature': 300.0}])
    curve = calibration.temperature_curve()
    curve.add(1.0, 20.0)
    calibration.set_temperature_curve(curve)
    assert [r['resistance'] for r in calibration.temperatures] == [1.0, 3.0]


def test_interface_power_bounds() -> None:
    limits = InterfaceLimits(min_power=1.0, max_power=100.0)
    limits.validate_power_bounds(1.0, 100.0)
    with pytest.raises(ConfigurationError):
        limits.validate_power_bounds(0.5, 50.0)
    with pytest.raises(ConfigurationError):
        limits.validate_power_bounds(10.0, 150.0)
    with pytest.raises(ConfigurationError):
        limits.validate_power_bounds(50.0, 10.0)


def test_interface_voltage_bounds() -> None:
    limits = InterfaceLimits()
    limits.validate_voltage_bounds(2.0, 24.0)
    with pytest.raises(ConfigurationError):
        limits.validate_voltage_bounds(0.5, 24.0)


def test_invalid_interface_limits_fail_at_construction() -> None:
    with pytest.raises(ConfigurationError):
        InterfaceLimits(min_power=50.0, max_power=10.0)


def test_measurable_current_defaults_to_minimum_current() -> None:
    assert InterfaceLimits(min_current=0.2).current_floor == 0.2
    assert InterfaceLimits(min_current=0.2, measurable_current=0.05).current_floor == 0.05
