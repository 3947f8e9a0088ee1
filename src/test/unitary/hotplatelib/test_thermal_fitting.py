import pytest

from hotplatelib.errors import ParameterError
from hotplatelib.thermal_fitting import (
    assembly_thermal_resistance,
    estimate_steady_state,
    thermal_resistance_from_steady_state,
)
from hotplatelib.tick import Tick


def test_steady_state_of_a_settled_hold() -> None:
    ticks = [Tick(now=t * 10.0, power=20.0, temperature=225.0) for t in range(11)]
    estimate = estimate_steady_state(ticks)
    assert estimate.power == pytest.approx(20.0)
    assert estimate.temperature == pytest.approx(225.0)


def test_steady_state_averages_mean_and_trend() -> None:
    ticks = [Tick(now=t * 10.0, power=10.0, temperature=100.0 + 5.0 * t) for t in range(11)]
    estimate = estimate_steady_state(ticks, horizon=60.0)

    assert estimate.mean_temperature == pytest.approx(125.0)
    # trend of 0.5 C/s extrapolated to t = 160 s
    assert estimate.regress_temperature == pytest.approx(180.0)
    assert estimate.temperature == pytest.approx(152.5)
    assert estimate.power == pytest.approx(10.0)


def test_steady_state_prefers_predicted_temperature() -> None:
    ticks = [Tick(now=t * 10.0, power=10.0, temperature=300.0, predict_temperature=150.0) for t in range(5)]
    assert estimate_steady_state(ticks).temperature == pytest.approx(150.0)


def test_steady_state_needs_a_time_span() -> None:
    with pytest.raises(ParameterError):
        estimate_steady_state([Tick(now=0.0, temperature=100.0)])
    with pytest.raises(ParameterError):
        estimate_steady_state([Tick(now=5.0, temperature=100.0), Tick(now=5.0, temperature=101.0)])


def test_thermal_resistance_from_steady_state() -> None:
    assert thermal_resistance_from_steady_state(20.0, 225.0, 25.0) == pytest.approx(10.0)
    with pytest.raises(ParameterError):
        thermal_resistance_from_steady_state(0.0, 225.0, 25.0)


def test_assembly_thermal_resistance_in_parallel_with_uncovered_plate() -> None:
    # half the plate uncovered: 8 K/W in parallel with the assembly gives 2 K/W
    rth = assembly_thermal_resistance(2.0, 4.0, covered_area=50.0, hotplate_area=100.0)
    assert 1.0 / rth + 1.0 / 8.0 == pytest.approx(1.0 / 2.0)


def test_assembly_covering_whole_plate() -> None:
    assert assembly_thermal_resistance(2.0, 4.0, covered_area=120.0, hotplate_area=100.0) == 2.0
    with pytest.raises(ParameterError):
        assembly_thermal_resistance(2.0, 4.0, covered_area=10.0, hotplate_area=0.0)
