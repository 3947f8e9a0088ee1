import pytest

from hotplatelib.errors import ParameterError
from hotplatelib.steady_state import SteadyStateDetector


def test_detector_enters_and_leaves_steady_state() -> None:
    detector = SteadyStateDetector(smoothing=0.6, threshold=0.1, samples=3, reset=0.2)
    sequence = [10.0, 11.0, 12.0, 13.0, 13.05, 13.08, 13.09, 13.09, 13.08, 13.08, 13.09]

    results = [detector.check(value) for value in sequence]

    assert results[:10] == [False] * 10
    assert results[10] is True
    assert detector.is_steady()
    assert detector.count == 3

    assert detector.check(13.5) is True
    assert detector.count == 4

    assert detector.check(13.73) is False
    assert detector.count == 0
    assert not detector.is_steady()


def test_first_measurement_only_seeds() -> None:
    detector = SteadyStateDetector()
    assert detector.check(20.0) is False
    assert detector.previous_measurement == 20.0
    assert detector.filtered_delta is None
    assert detector.last_delta is None
    assert detector.count == 0


def test_second_measurement_seeds_filter_directly() -> None:
    detector = SteadyStateDetector(smoothing=0.9)
    detector.check(20.0)
    detector.check(23.0)
    assert detector.filtered_delta == pytest.approx(3.0)
    assert detector.last_delta == pytest.approx(3.0)


def test_hold_band_keeps_count_before_steady() -> None:
    detector = SteadyStateDetector(smoothing=0.5, threshold=1.0, samples=5, reset=2.0)
    detector.check(0.0)
    detector.check(0.5)      # filtered 0.5 -> count 1
    assert detector.count == 1
    detector.check(2.0)      # filtered 1.0 -> between threshold and reset
    assert detector.count == 1
    detector.check(6.0)      # filtered 2.5 -> reset
    assert detector.count == 0


def test_reset_clears_state() -> None:
    detector = SteadyStateDetector()
    for value in (1.0, 1.0, 1.0):
        detector.check(value)
    detector.reset(5.0)
    assert detector.previous_measurement == 5.0
    assert detector.filtered_delta is None
    assert detector.last_delta is None
    assert detector.count == 0
    assert detector.state()['previous_measurement'] == 5.0


def test_default_reset_threshold() -> None:
    detector = SteadyStateDetector(threshold=0.2)
    assert detector.parameters()['reset'] == pytest.approx(0.3)


@pytest.mark.parametrize('kwargs', [
    {'smoothing': 0.0},
    {'smoothing': 1.0},
    {'threshold': 0.0},
    {'samples': 0},
    {'threshold': 0.1, 'reset': 0.1},
])
def test_invalid_parameters_are_rejected(kwargs: dict) -> None:
    with pytest.raises(ParameterError):
        SteadyStateDetector(**kwargs)
