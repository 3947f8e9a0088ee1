#
# ABOUT
# Hotplate power controllers. Each tick the controller estimates the
# element temperature from its resistance, advances its predictor and
# decides how much power to request, subject to the supply's limits and
# the configured safety cut-off. Two strategies are provided: hysteretic
# on/off control and feed-forward with a PI correction.

# LICENSE
# This program or module is free software: you can redistribute it and/or
# modify it under the terms of the GNU General Public License as published
# by the Free Software Foundation, either version 2 of the License, or
# version 3 of the License, or (at your option) any later version. It is
# provided for educational purposes and is distributed in the hope that
# it will be useful, but WITHOUT ANY WARRANTY; without even the implied
# warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See
# the GNU General Public License for more details.

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from typing import Any, Final

from hotplatelib.calibration import CalibrationData, InterfaceLimits, SafetyLimits
from hotplatelib.errors import ConfigurationError, ParameterError
from hotplatelib.optimizer import minimize
from hotplatelib.piecewise_linear import PiecewiseLinear
from hotplatelib.predictors import Predictor, SinglePoleFilterPredictor, create_predictor
from hotplatelib.rtd import RTDTemperatureEstimator
from hotplatelib.tick import Tick


_log: Final[logging.Logger] = logging.getLogger(__name__)

DEFAULT_SMOOTHING: Final[float] = 0.66
DEFAULT_HOLDING_POWER: Final[float] = 0.1
"""Power requested in place of zero so resistance stays measurable."""


class ControllerKind(enum.Enum):
    HYSTERETIC = 'hysteretic'
    FEED_FORWARD = 'feed-forward'


class HysteresisLatch(enum.Enum):
    """ON/OFF memory of a hysteretic controller."""

    ON = 'on'
    OFF = 'off'

    def should_turn_off(self, temperature: float, upper: float) -> bool:
        return self is HysteresisLatch.ON and temperature >= upper

    def should_turn_on(self, temperature: float, lower: float) -> bool:
        return self is HysteresisLatch.OFF and temperature < lower

    def next(self, temperature: float, lower: float, upper: float) -> HysteresisLatch:
        if self.should_turn_off(temperature, upper):
            return HysteresisLatch.OFF
        if self.should_turn_on(temperature, lower):
            return HysteresisLatch.ON
        return self


# ---------------------------------------------------------------------------
# Base controller
# ---------------------------------------------------------------------------

class Controller:
    """Shared tick pipeline: RTD estimate, prediction, limited power.

    Args:
        rtd: Resistance to temperature estimator.
        predictor: Plate temperature predictor; pass-through by default.
        limits: Power supply limits.
        safety: Cut-off temperature and temperature dependent power caps.
        thermal_resistance: Temperature to thermal resistance curve.
        heat_capacity: Temperature to heat capacity curve.
    """

    KIND: ControllerKind

    def __init__(
        self,
        rtd: RTDTemperatureEstimator | None = None,
        predictor: Predictor | None = None,
        limits: InterfaceLimits | None = None,
        safety: SafetyLimits | None = None,
        thermal_resistance: PiecewiseLinear | None = None,
        heat_capacity: PiecewiseLinear | None = None,
    ) -> None:
        self.limits: InterfaceLimits = limits if limits is not None else InterfaceLimits()
        self.rtd: RTDTemperatureEstimator = (
            rtd if rtd is not None else RTDTemperatureEstimator(limits=self.limits))
        self.predictor: Predictor = predictor if predictor is not None else Predictor()
        self.safety: SafetyLimits = safety if safety is not None else SafetyLimits()
        self.thermal_resistance: PiecewiseLinear | None = thermal_resistance
        self.heat_capacity: PiecewiseLinear | None = heat_capacity
        self.min_power: float = self.limits.min_power
        self.power_limits: PiecewiseLinear | None = self.safety.power_limit_curve()
        self.limits_enabled: bool = True
        self.cutoff_enabled: bool = True

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def get_temperature(self, tick: Tick) -> float | None:
        return self.rtd.estimate(tick)

    def predict_temperature(self, tick: Tick) -> float | None:
        return self.predictor.predict(tick)

    def required_power(self, tick: Tick) -> float:
        raise NotImplementedError

    def power_limited(self, tick: Tick) -> float:
        """Required power with the safety cut-off and power caps applied."""
        power = self.required_power(tick)
        temperature = tick.temperature
        if temperature is None:
            return power

        cutoff = self.safety.cut_off_temperature
        if self.cutoff_enabled and cutoff is not None and temperature >= cutoff:
            _log.debug('Cut-off: %.1f >= %.1f', temperature, cutoff)
            return self.min_power

        if self.limits_enabled and self.power_limits is not None:
            limit = self.power_limits.value(temperature)
            if limit is not None and power > limit:
                return limit
        return power

    def process(self, tick: Tick) -> float | None:
        """Run one tick through the whole pipeline.

        Returns ``None`` when the temperature cannot be measured this tick;
        the caller should hold the last commanded power.
        """
        if self.get_temperature(tick) is None:
            return None
        self.predict_temperature(tick)
        power = self.power_limited(tick)
        tick.set_power = power
        return power

    # ------------------------------------------------------------------
    # Configuration helpers
    # ------------------------------------------------------------------

    def enable_limits(self, flag: bool = True) -> None:
        self.limits_enabled = flag

    def set_power_limit(self, temperature: float, power: float) -> None:
        if self.power_limits is None:
            self.power_limits = PiecewiseLinear()
        self.power_limits.add(temperature, power)

    def thermal_resistance_at(self, temperature: float) -> float:
        """Thermal resistance at *temperature*.

        Raises:
            ConfigurationError: If no curve is configured or it yields zero.
        """
        if self.thermal_resistance is None or len(self.thermal_resistance) == 0:
            raise ConfigurationError('thermal resistance calibration not specified')
        value = self.thermal_resistance.value(temperature)
        if not value:
            raise ConfigurationError(f'thermal resistance is zero at {temperature:.1f}')
        return value

    def heat_capacity_at(self, temperature: float) -> float:
        """Heat capacity at *temperature*.

        Raises:
            ConfigurationError: If no curve is configured or it yields zero.
        """
        if self.heat_capacity is None or len(self.heat_capacity) == 0:
            raise ConfigurationError('heat capacity calibration not specified')
        value = self.heat_capacity.value(temperature)
        if not value:
            raise ConfigurationError(f'heat capacity is zero at {temperature:.1f}')
        return value

    def reset(self) -> None:
        self.predictor.reset()


# ---------------------------------------------------------------------------
# Hysteretic controller
# ---------------------------------------------------------------------------

class HystereticController(Controller):
    """Bang-bang control with an optional hysteresis band.

    While ON the controller requests the on-curve power at the target
    temperature, while OFF it requests the floor power. It turns OFF at
    ``target + high`` and back ON below ``target - low``. With no band it
    is plain threshold control, ties going OFF.

    The predictor, a single-pole filter by default, runs every tick to
    supply ``predict_temperature`` but does not drive the switching.
    """

    KIND = ControllerKind.HYSTERETIC

    def __init__(
        self,
        rtd: RTDTemperatureEstimator | None = None,
        predictor: Predictor | None = None,
        limits: InterfaceLimits | None = None,
        safety: SafetyLimits | None = None,
        power_levels: PiecewiseLinear | None = None,
        hysteresis_low: float = 0.0,
        hysteresis_high: float = 0.0,
        min_power: float | None = None,
        max_power: float | None = None,
        **kwargs: Any,
    ) -> None:
        if predictor is None:
            predictor = SinglePoleFilterPredictor()
        super().__init__(rtd=rtd, predictor=predictor, limits=limits, safety=safety, **kwargs)

        self.min_power: float = self.limits.min_power if min_power is None else float(min_power)
        self.max_power: float = self.limits.max_power if max_power is None else float(max_power)
        self.limits.validate_power_bounds(self.min_power, self.max_power)

        if power_levels is None or len(power_levels) == 0:
            power_levels = PiecewiseLinear([(0.0, self.max_power)])
        self.power_levels: PiecewiseLinear = power_levels
        self.hysteresis_low: float = max(float(hysteresis_low), 0.0)
        self.hysteresis_high: float = max(float(hysteresis_high), 0.0)
        self.latch: HysteresisLatch | None = None

    def set_power_level(self, temperature: float, power: float) -> None:
        self.power_levels.add(temperature, power)

    def required_power(self, tick: Tick) -> float:
        temperature = tick.temperature
        target = tick.then_temperature
        if temperature is None or target is None:
            _log.warning('No temperature or target; requesting floor power')
            return self.min_power

        if self.latch is None:
            self.latch = HysteresisLatch.ON if temperature < target else HysteresisLatch.OFF

        upper = target + self.hysteresis_high
        lower = target - self.hysteresis_low
        self.latch = self.latch.next(temperature, lower, upper)

        if self.latch is HysteresisLatch.OFF:
            return self.min_power
        power = self.power_levels.value(target)
        if power is None:
            raise ConfigurationError('hysteretic controller has no power levels')
        return power

    def reset(self) -> None:
        super().reset()
        self.latch = None


# ---------------------------------------------------------------------------
# Feed-forward controller
# ---------------------------------------------------------------------------

class FeedForwardController(Controller):
    """Feed-forward from a thermal model plus a PI correction.

    The feed-forward term is the power needed to move the plate to the
    target over one period and hold it above ambient, from the
    temperature dependent thermal resistance ``R`` and heat capacity ``C``::

        ff = max(0, C * (target - T) / period + R * (target - ambient))

    where ``T`` is a smoothed temperature. PI gains derive from ``R``, ``C``
    and *pid_factor*. The integrator stops accumulating once it reaches
    ``max_power / ki * anti_windup_factor``. The output is exponentially
    smoothed against the previous output.

    Args:
        predict_time_constant: Time constant of the temperature smoothing.
            The previous smoothed value is weighted by
            ``period / (period + tau)``.
        pid_factor: Scale of the PI gains.
        anti_windup_factor: Scale of the integrator bound.
        smoothing: Output smoothing factor in [0, 1).
        smoothing_time: Output smoothing time constant, used when
            *smoothing* is not given.
        min_error: Below this error the holding power is requested.
        holding_power: Power requested in the low error state.
        max_power: Output ceiling; the interface maximum by default.

    Raises:
        ConfigurationError: If either thermal curve is missing.
    """

    KIND = ControllerKind.FEED_FORWARD

    def __init__(
        self,
        rtd: RTDTemperatureEstimator | None = None,
        predictor: Predictor | None = None,
        limits: InterfaceLimits | None = None,
        safety: SafetyLimits | None = None,
        thermal_resistance: PiecewiseLinear | None = None,
        heat_capacity: PiecewiseLinear | None = None,
        predict_time_constant: float = 27.0,
        pid_factor: float = 0.3,
        anti_windup_factor: float = 0.15,
        smoothing: float | None = None,
        smoothing_time: float | None = None,
        min_error: float = 10.0,
        holding_power: float = DEFAULT_HOLDING_POWER,
        max_power: float | None = None,
    ) -> None:
        super().__init__(
            rtd=rtd, predictor=predictor, limits=limits, safety=safety,
            thermal_resistance=thermal_resistance, heat_capacity=heat_capacity,
        )
        if thermal_resistance is None or len(thermal_resistance) == 0:
            raise ConfigurationError('controller calibration thermal-resistance not specified')
        if heat_capacity is None or len(heat_capacity) == 0:
            raise ConfigurationError('controller calibration heat-capacity not specified')
        if predict_time_constant < 0.0:
            raise ParameterError('predict time constant must be non-negative')
        if smoothing is not None and not 0.0 <= smoothing < 1.0:
            raise ParameterError('smoothing must be in [0, 1)')

        self.max_power: float = self.limits.max_power if max_power is None else float(max_power)
        self.limits.validate_power_bounds(0.0, self.max_power)

        self.predict_time_constant: float = float(predict_time_constant)
        self.pid_factor: float = float(pid_factor)
        self.anti_windup_factor: float = float(anti_windup_factor)
        self.smoothing: float | None = smoothing
        self.smoothing_time: float | None = smoothing_time
        self.min_error: float = float(min_error)
        self.holding_power: float = float(holding_power)

        self.smoothed_temperature: float | None = None
        self.error_sum: float = 0.0
        self.previous_power: float = 0.0

    def output_smoothing(self, period: float) -> float:
        if self.smoothing is not None:
            return self.smoothing
        if self.smoothing_time is not None:
            return 1.0 - period / (period + self.smoothing_time)
        return DEFAULT_SMOOTHING

    def required_power(self, tick: Tick) -> float:
        raw = tick.temperature
        target = tick.then_temperature
        if raw is None or target is None:
            _log.warning('No temperature or target; requesting holding power')
            return self.holding_power

        period = tick.period
        ambient = self.rtd.resolve_ambient(tick)

        # alpha weights the previous smoothed value, not the new reading
        alpha = period / (period + self.predict_time_constant)
        if self.smoothed_temperature is None:
            smoothed = raw
        else:
            smoothed = alpha * self.smoothed_temperature + (1.0 - alpha) * raw
        self.smoothed_temperature = smoothed

        delta_t = target - smoothed
        offset_t = target - ambient
        r = self.thermal_resistance_at(target)
        c = self.heat_capacity_at(target)

        now_temperature = tick.now_temperature if tick.now_temperature is not None else target
        error = now_temperature - smoothed

        kp = self.pid_factor / r
        ki = period * kp / r / c * self.pid_factor
        bound = self.max_power / ki * self.anti_windup_factor if ki > 0.0 else 0.0
        if abs(self.error_sum) < bound:
            self.error_sum += error

        ff_power = max(0.0, c * delta_t / period + r * offset_t)
        p_power = kp * error
        i_power = ki * self.error_sum
        power = ff_power + p_power + i_power

        tick.error = error
        tick.error_sum = self.error_sum
        tick.ff_power = ff_power
        tick.p_power = p_power
        tick.i_power = i_power
        tick.unfiltered_power = power

        smoothing = self.output_smoothing(period)
        power = (1.0 - smoothing) * power + smoothing * self.previous_power

        if error < self.min_error:
            power = self.holding_power
        elif power > self.max_power:
            power = self.max_power
        elif power < 0.0:
            power = 0.0

        self.previous_power = power
        return power

    def reset(self) -> None:
        super().reset()
        self.smoothed_temperature = None
        self.error_sum = 0.0
        self.previous_power = 0.0

    def tune(
        self,
        history: Iterable[Tick],
        reference: str = 'power',
        **options: Any,
    ) -> dict[str, float]:
        """Fit ``smoothing_time`` and ``pid_factor`` by replaying *history*.

        The cost is the squared difference between the replayed output and
        the *reference* column. An explicit ``smoothing`` is cleared so the
        fitted time constant takes effect.
        """
        ticks = [t for t in history if t.is_timer and t.temperature is not None
                 and getattr(t, reference) is not None]
        if not ticks:
            raise ParameterError(f'no ticks with temperature and {reference} to tune against')
        self.smoothing = None

        def cost(args: list[float]) -> float:
            self.smoothing_time, self.pid_factor = args
            self.reset()
            sum2 = 0.0
            for tick in ticks:
                err = self.required_power(tick) - getattr(tick, reference)
                sum2 += err * err
            return sum2

        options.setdefault('lower_constraint', [0.0, 0.001])
        options.setdefault('threshold', 0.001)
        _log.info('Tuning feed-forward controller over %d ticks', len(ticks))
        smoothing_time, pid_factor = minimize(cost, [(0.0, 100.0), (0.01, 2.0)], **options)

        self.smoothing_time = smoothing_time
        self.pid_factor = pid_factor
        self.reset()
        _log.info('Tuned smoothing_time=%.4f, pid_factor=%.4f', smoothing_time, pid_factor)
        return {'smoothing_time': smoothing_time, 'pid_factor': pid_factor}


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_controller(
    kind: ControllerKind | str,
    calibration: CalibrationData | None = None,
    **options: Any,
) -> Controller:
    """Build a controller of *kind* wired up from *calibration*.

    Remaining *options* are passed to the controller constructor.

    Raises:
        ConfigurationError: If *kind* is unknown or mandatory calibration
            is missing.
    """
    try:
        kind = ControllerKind(kind)
    except ValueError as exc:
        raise ConfigurationError(f'Unknown controller kind: {kind}') from exc

    if calibration is None:
        calibration = CalibrationData()

    rtd = RTDTemperatureEstimator(calibration.temperature_curve(), calibration.limits)
    predictor = None
    if calibration.predictor:
        predictor_kind = calibration.predictor.get('kind')
        if predictor_kind is None:
            raise ConfigurationError('calibration predictor has no kind')
        predictor = create_predictor(predictor_kind, **calibration.predictor)

    common: dict[str, Any] = {
        'rtd': rtd,
        'predictor': predictor,
        'limits': calibration.limits,
        'safety': calibration.safety,
    }

    if kind is ControllerKind.HYSTERETIC:
        return HystereticController(
            power_levels=calibration.power_level_curve(),
            thermal_resistance=calibration.thermal_resistance_curve(),
            heat_capacity=calibration.heat_capacity_curve(),
            **common, **options,
        )
    return FeedForwardController(
        thermal_resistance=calibration.thermal_resistance_curve(),
        heat_capacity=calibration.heat_capacity_curve(),
        **common, **options,
    )
