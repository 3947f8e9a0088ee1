import pytest

from hotplatelib.calibration import CalibrationData, InterfaceLimits, SafetyLimits
from hotplatelib.controllers import (
    ControllerKind,
    FeedForwardController,
    HysteresisLatch,
    HystereticController,
    create_controller,
)
from hotplatelib.errors import ConfigurationError
from hotplatelib.piecewise_linear import PiecewiseLinear
from hotplatelib.predictors import SinglePoleFilterPredictor
from hotplatelib.rtd import RTDTemperatureEstimator
from hotplatelib.tick import Tick


def _rtd() -> RTDTemperatureEstimator:
    return RTDTemperatureEstimator(PiecewiseLinear([(1.0, 25.0), (2.0, 225.0)]))


def _resistance(temperature: float) -> float:
    return 1.0 + (temperature - 25.0) / 200.0


def _hysteretic(**kwargs) -> HystereticController:
    kwargs.setdefault('power_levels', PiecewiseLinear([(0.0, 40.0), (300.0, 80.0)]))
    return HystereticController(rtd=_rtd(), **kwargs)


# ---------------------------------------------------------------------------
# Hysteretic
# ---------------------------------------------------------------------------

@pytest.mark.parametrize('temperature,target,expected', [
    (125.0, 150.0, 60.0),   # below target: on-curve power at the target
    (125.0, 125.0, 0.0),    # tie goes OFF
    (180.0, 150.0, 0.0),
])
def test_threshold_control_without_band(temperature: float, target: float, expected: float) -> None:
    controller = _hysteretic()
    tick = Tick(resistance=_resistance(temperature), then_temperature=target)
    assert controller.process(tick) == pytest.approx(expected)
    assert tick.set_power == pytest.approx(expected)


def test_hysteresis_band() -> None:
    controller = _hysteretic(hysteresis_low=5.0, hysteresis_high=5.0)
    states = []
    for temperature in (90.0, 103.0, 106.0, 97.0, 94.0):
        controller.process(Tick(resistance=_resistance(temperature), then_temperature=100.0))
        states.append(controller.latch)
    on, off = HysteresisLatch.ON, HysteresisLatch.OFF
    assert states == [on, on, off, off, on]


def test_hysteretic_runs_predictor_every_tick() -> None:
    controller = _hysteretic()
    assert isinstance(controller.predictor, SinglePoleFilterPredictor)
    tick = Tick(resistance=_resistance(100.0), then_temperature=150.0)
    controller.process(tick)
    assert tick.predict_temperature == pytest.approx(100.0)


def test_default_power_curve_is_flat_at_max_power() -> None:
    controller = HystereticController(rtd=_rtd(), max_power=70.0)
    assert controller.process(Tick(resistance=_resistance(50.0), then_temperature=200.0)) == 70.0


def test_cut_off_forces_floor_power() -> None:
    controller = _hysteretic(safety=SafetyLimits(cut_off_temperature=200.0), min_power=2.0)
    tick = Tick(resistance=_resistance(210.0), then_temperature=250.0)
    assert controller.process(tick) == 2.0


def test_disabled_cut_off_lets_hysteretic_power_through() -> None:
    controller = _hysteretic(safety=SafetyLimits(cut_off_temperature=200.0), min_power=2.0)
    controller.cutoff_enabled = False
    tick = Tick(resistance=_resistance(210.0), then_temperature=250.0)
    assert controller.process(tick) == pytest.approx(40.0 + 250.0 / 300.0 * 40.0)


def test_hysteretic_without_power_levels_is_a_configuration_error() -> None:
    controller = _hysteretic()
    controller.power_levels = PiecewiseLinear()
    with pytest.raises(ConfigurationError):
        controller.process(Tick(resistance=_resistance(100.0), then_temperature=150.0))
    # OFF needs no curve
    assert controller.process(Tick(resistance=_resistance(180.0), then_temperature=150.0)) == 0.0


def test_power_limit_curve_caps_output() -> None:
    controller = _hysteretic()
    controller.set_power_limit(0.0, 50.0)
    assert controller.process(Tick(resistance=_resistance(100.0), then_temperature=150.0)) == 50.0

    controller.enable_limits(False)
    assert controller.process(Tick(resistance=_resistance(100.0), then_temperature=150.0)) == 60.0


def test_no_temperature_holds_last_power() -> None:
    controller = _hysteretic()
    tick = Tick(then_temperature=150.0)
    assert controller.process(tick) is None
    assert tick.set_power is None


def test_hysteretic_power_bounds_must_fit_interface() -> None:
    with pytest.raises(ConfigurationError):
        HystereticController(rtd=_rtd(), limits=InterfaceLimits(max_power=100.0), max_power=150.0)


def test_hysteretic_reset_clears_latch() -> None:
    controller = _hysteretic()
    controller.process(Tick(resistance=_resistance(100.0), then_temperature=150.0))
    assert controller.latch is HysteresisLatch.ON
    controller.reset()
    assert controller.latch is None


# ---------------------------------------------------------------------------
# Feed-forward
# ---------------------------------------------------------------------------

def _feed_forward(r: float = 0.5, c: float = 40.0, **kwargs) -> FeedForwardController:
    return FeedForwardController(
        rtd=_rtd(),
        thermal_resistance=PiecewiseLinear([(0.0, r)]),
        heat_capacity=PiecewiseLinear([(0.0, c)]),
        **kwargs,
    )


def test_feed_forward_requires_thermal_curves() -> None:
    with pytest.raises(ConfigurationError):
        FeedForwardController(rtd=_rtd(), heat_capacity=PiecewiseLinear([(0.0, 40.0)]))
    with pytest.raises(ConfigurationError):
        FeedForwardController(rtd=_rtd(), thermal_resistance=PiecewiseLinear([(0.0, 0.5)]))


def test_feed_forward_power_terms() -> None:
    controller = _feed_forward(smoothing=0.5)
    tick = Tick(temperature=100.0, then_temperature=102.0, now_temperature=120.0, ambient=25.0)

    power = controller.required_power(tick)

    r, c, period, pid = 0.5, 40.0, 1.5, 0.3
    kp = pid / r
    ki = period * kp / r / c * pid
    ff = c * 2.0 / period + r * 77.0
    unfiltered = ff + kp * 20.0 + ki * 20.0
    assert tick.error == pytest.approx(20.0)
    assert tick.ff_power == pytest.approx(ff)
    assert tick.p_power == pytest.approx(kp * 20.0)
    assert tick.i_power == pytest.approx(ki * 20.0)
    assert tick.unfiltered_power == pytest.approx(unfiltered)
    assert power == pytest.approx(0.5 * unfiltered)


def test_feed_forward_clamps_to_max_power() -> None:
    controller = _feed_forward(smoothing=0.0)
    tick = Tick(temperature=25.0, then_temperature=250.0, now_temperature=250.0, ambient=25.0)
    assert controller.required_power(tick) == controller.limits.max_power


def test_feed_forward_small_error_requests_holding_power() -> None:
    controller = _feed_forward(smoothing=0.0)
    tick = Tick(temperature=100.0, then_temperature=102.0, now_temperature=105.0, ambient=25.0)
    assert controller.required_power(tick) == pytest.approx(0.1)


def test_feed_forward_temperature_smoothing() -> None:
    controller = _feed_forward(predict_time_constant=27.0)
    controller.required_power(Tick(temperature=100.0, then_temperature=150.0, ambient=25.0))
    controller.required_power(Tick(temperature=110.0, then_temperature=150.0, ambient=25.0))
    alpha = 1.5 / 28.5
    assert controller.smoothed_temperature == pytest.approx(alpha * 100.0 + (1.0 - alpha) * 110.0)


def test_feed_forward_anti_windup() -> None:
    controller = _feed_forward(anti_windup_factor=0.003, smoothing=0.0)
    # ki = 0.0135, bound = 120 / ki * 0.003 ~ 26.7
    for _ in range(3):
        controller.required_power(Tick(temperature=100.0, then_temperature=102.0, now_temperature=120.0,
                                       ambient=25.0))
    assert controller.error_sum == pytest.approx(40.0)


def test_output_smoothing_sources() -> None:
    assert _feed_forward(smoothing=0.2).output_smoothing(1.5) == 0.2
    assert _feed_forward(smoothing_time=3.0).output_smoothing(1.5) == pytest.approx(2.0 / 3.0)
    assert _feed_forward().output_smoothing(1.5) == pytest.approx(0.66)


def test_feed_forward_reset() -> None:
    controller = _feed_forward(smoothing=0.0)
    controller.required_power(Tick(temperature=100.0, then_temperature=102.0, now_temperature=120.0, ambient=25.0))
    controller.reset()
    assert controller.smoothed_temperature is None
    assert controller.error_sum == 0.0
    assert controller.previous_power == 0.0


def test_feed_forward_tune_recovers_parameters() -> None:
    limits = InterfaceLimits(max_power=5000.0)
    source = _feed_forward(c=2.0, limits=limits, smoothing_time=5.0, pid_factor=0.5)
    ticks = []
    for i in range(40):
        tick = Tick(now=i * 1.5, temperature=60.0 + i, then_temperature=110.0, now_temperature=130.0,
                    ambient=25.0)
        tick.power = source.required_power(tick)
        ticks.append(tick)

    controller = _feed_forward(c=2.0, limits=limits)
    tuned = controller.tune(ticks, parallel=1)

    assert tuned['smoothing_time'] == pytest.approx(5.0, abs=0.05)
    assert tuned['pid_factor'] == pytest.approx(0.5, abs=0.002)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def _calibration() -> CalibrationData:
    return CalibrationData(
        temperatures=[{'resistance': 1.0, 'temperature': 25.0}, {'resistance': 2.0, 'temperature': 225.0}],
        thermal_resistance=[{'temperature': 100.0, 'value': 0.5}],
        heat_capacity=[{'temperature': 100.0, 'value': 40.0}],
        predictor={'kind': 'single-pole', 'tau': 12.0},
    )


def test_create_feed_forward_from_calibration() -> None:
    controller = create_controller('feed-forward', _calibration(), pid_factor=0.4)
    assert isinstance(controller, FeedForwardController)
    assert controller.KIND is ControllerKind.FEED_FORWARD
    assert controller.pid_factor == 0.4
    assert isinstance(controller.predictor, SinglePoleFilterPredictor)
    assert controller.predictor.tau == 12.0

    tick = Tick(resistance=1.5, then_temperature=130.0, now_temperature=150.0, ambient=25.0)
    assert controller.process(tick) is not None
    assert tick.temperature == pytest.approx(125.0)


def test_create_hysteretic_without_calibration() -> None:
    controller = create_controller(ControllerKind.HYSTERETIC, hysteresis_low=2.0)
    assert isinstance(controller, HystereticController)
    assert controller.hysteresis_low == 2.0


def test_create_controller_errors() -> None:
    with pytest.raises(ConfigurationError):
        create_controller('pid')
    with pytest.raises(ConfigurationError):
        create_controller('feed-forward')
