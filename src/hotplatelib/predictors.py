#
# ABOUT
# Hotplate surface temperature predictors. The heating element responds
# faster than the plate it heats, so the element temperature measured via
# its resistance leads the plate. Predictors estimate the lagging plate
# temperature from element temperature and power history, and fit their
# parameters offline against a reference thermometer.

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
import math
from collections.abc import Iterable, Sequence
from typing import Any, Final

from hotplatelib.errors import ConfigurationError, ParameterError
from hotplatelib.filters import LinearSigmoidWeight, LowPassFilter
from hotplatelib.optimizer import minimize
from hotplatelib.rtd import DEFAULT_AMBIENT
from hotplatelib.tick import Tick, TickHistory


_log: Final[logging.Logger] = logging.getLogger(__name__)

_MIN_DELTA_P: Final[float] = 1e-4
"""Floor on the smoothed power change before taking its logarithm."""


class PredictorKind(enum.Enum):
    PASSTHROUGH = 'passthrough'
    SINGLE_POLE = 'single-pole'
    LOSSY = 'lossy'
    TWO_STAGE = 'two-stage'


def _timer_ticks(history: Iterable[Tick]) -> list[Tick]:
    return [t for t in history if t.is_timer]


# ---------------------------------------------------------------------------
# Base predictor
# ---------------------------------------------------------------------------

class Predictor:
    """Pass-through predictor and shared tuning machinery.

    Subclasses list their tunable attributes in :attr:`PARAMETERS` and
    override :meth:`predict` and :meth:`reset`.
    """

    KIND: PredictorKind = PredictorKind.PASSTHROUGH
    PARAMETERS: tuple[str, ...] = ()

    def __init__(self) -> None:
        self.last_prediction: float | None = None

    def predict(self, tick: Tick) -> float | None:
        prediction = tick.temperature
        self.last_prediction = prediction
        tick.predict_temperature = prediction
        return prediction

    def reset(self) -> None:
        """Clear all filter state so the next tick starts afresh."""
        self.last_prediction = None

    def tune(self, history: Iterable[Tick], **options: Any) -> dict[str, Any]:
        return {}

    def parameters(self) -> dict[str, Any]:
        params: dict[str, Any] = {'kind': self.KIND.value}
        params.update({name: getattr(self, name) for name in self.PARAMETERS})
        return params

    def _tune(
        self,
        samples: Sequence[Tick],
        names: Sequence[str],
        bounds: Sequence[tuple[float, float]],
        prediction: str = 'predict_temperature',
        expected: str = 'device_temperature',
        bias: bool = False,
        bias_scale: float = 20.0,
        **options: Any,
    ) -> dict[str, float]:
        """Fit the attributes *names* by replaying *samples*.

        The cost is the sum of squared differences between the *prediction*
        and *expected* tick fields over timer ticks. With *bias*, errors at
        higher temperatures above ambient are weighted more heavily, one
        extra unit of weight per *bias_scale* degrees.

        Remaining *options* are passed through to :func:`minimize`.
        """
        ticks = _timer_ticks(samples)
        if not ticks:
            raise ParameterError('no timer ticks to tune against')
        _log.info('Tuning %s over %d ticks', ', '.join(names), len(ticks))

        def cost(args: list[float]) -> float:
            for name, value in zip(names, args, strict=True):
                setattr(self, name, value)
            self.reset()

            sum2 = 0.0
            for tick in ticks:
                self.predict(tick)
                actual = getattr(tick, prediction)
                reference = getattr(tick, expected)
                if actual is None or reference is None:
                    continue
                err2 = (actual - reference) ** 2
                if bias:
                    ambient = tick.ambient if tick.ambient is not None else DEFAULT_AMBIENT
                    err2 *= max(1, math.floor((reference - ambient) / bias_scale))
                sum2 += err2
            return sum2

        values = minimize(cost, bounds, **options)

        tuned: dict[str, float] = {}
        for name, value in zip(names, values, strict=True):
            setattr(self, name, value)
            tuned[name] = value
        self.reset()
        _log.info('Tuned %s', ', '.join(f'{k}={v:.4f}' for k, v in tuned.items()))
        return tuned

    def __repr__(self) -> str:
        inner = ', '.join(f'{name}={getattr(self, name):.3f}' for name in self.PARAMETERS)
        return f'{type(self).__name__}({inner})'


# ---------------------------------------------------------------------------
# Single pole filters
# ---------------------------------------------------------------------------

class SinglePoleFilterPredictor(Predictor):
    """Low-pass filter of the element temperature with time constant *tau*."""

    KIND = PredictorKind.SINGLE_POLE
    PARAMETERS = ('tau',)

    def __init__(
        self,
        tau: float = 27.0,
        time_cut_off: float = 240.0,
        temperature_cut_off: float = 120.0,
    ) -> None:
        super().__init__()
        self.tau: float = float(tau)
        self.time_cut_off: float = float(time_cut_off)
        self.temperature_cut_off: float = float(temperature_cut_off)
        self._filter = LowPassFilter(self.tau)

    def predict(self, tick: Tick) -> float | None:
        if tick.temperature is None:
            return self.last_prediction
        prediction = self._filter.next(tick.temperature, period=tick.period)
        self.last_prediction = prediction
        tick.predict_temperature = prediction
        return prediction

    def reset(self) -> None:
        super().reset()
        self._filter.reset(tau=max(self.tau, 0.0))

    def tune(self, history: Iterable[Tick], **options: Any) -> dict[str, Any]:
        samples = TickHistory(history).filter_samples(self.time_cut_off, self.temperature_cut_off)
        options.setdefault('lower_constraint', [0.0])
        options.setdefault('threshold', 0.001)
        return self._tune(list(samples), ['tau'], [(0.0, 100.0)], **options)


class LossyFilterPredictor(Predictor):
    """Low-pass filter towards a fraction of the element's rise above ambient.

    ``loss_factor`` accounts for the plate settling below the element
    temperature while heat flows through it.
    """

    KIND = PredictorKind.LOSSY
    PARAMETERS = ('tau', 'loss_factor')

    def __init__(
        self,
        tau: float = 27.0,
        loss_factor: float = 0.925,
        time_cut_off: float = 240.0,
        temperature_cut_off: float = 120.0,
    ) -> None:
        super().__init__()
        if loss_factor <= 0.0 or loss_factor > 1.0:
            raise ParameterError('loss factor must be in (0, 1]')
        self.tau: float = float(tau)
        self.loss_factor: float = float(loss_factor)
        self.time_cut_off: float = float(time_cut_off)
        self.temperature_cut_off: float = float(temperature_cut_off)

    def predict(self, tick: Tick) -> float | None:
        temperature = tick.temperature
        if temperature is None:
            return self.last_prediction

        last = self.last_prediction
        if last is None:
            prediction = temperature
        else:
            ambient = tick.ambient if tick.ambient is not None else DEFAULT_AMBIENT
            alpha = tick.period / (tick.period + self.tau)
            rise = (temperature - ambient) * self.loss_factor
            prediction = ambient + rise * alpha + (1.0 - alpha) * (last - ambient)

        self.last_prediction = prediction
        tick.predict_temperature = prediction
        return prediction

    def tune(self, history: Iterable[Tick], **options: Any) -> dict[str, Any]:
        samples = TickHistory(history).filter_samples(self.time_cut_off, self.temperature_cut_off)
        options.setdefault('lower_constraint', [0.0, 0.8])
        options.setdefault('upper_constraint', [None, 1.0])
        options.setdefault('threshold', 0.001)
        return self._tune(list(samples), ['tau', 'loss_factor'], [(0.0, 100.0), (0.8, 1.0)], **options)


# ---------------------------------------------------------------------------
# Two stage back predictor
# ---------------------------------------------------------------------------

class TwoStageBackPredictor(Predictor):
    """Plate temperature from a two-stage thermal model of the hotplate.

    The heating element (stage one) and the plate (stage two) are treated
    as cascaded first-order thermal masses. Two estimates are blended:

    * back-prediction, which inverts the element heat balance
      ``T_plate = T_heater - (P_lpf - C_heater * dT_heater / period) * R_int``
      using low-pass filtered power;
    * a plain low-pass filter of the element temperature.

    The blend weight is a sigmoid of the log of the smoothed, normalised
    power change, so rapid power changes favour the back-prediction and
    steady power favours the filter.

    Args:
        r_int: Thermal resistance between element and plate, K/W.
        c_heater: Heat capacity of the element, J/K.
        power_time_constant: Time constant of the power filter, seconds.
        th_time_constant: Time constant of the element temperature filter.
        delta_p_time_constant: Time constant of the power change filter.
        mixture_gradient: Sigmoid gradient over ``ln(dP)``.
        mixture_offset: Sigmoid offset.
        max_power: Initial power normalisation; grows to the largest
            power seen.
        power_change_threshold: Relative power change below which the
            element temperature is treated as varying linearly over the
            period.
    """

    KIND = PredictorKind.TWO_STAGE
    PARAMETERS = (
        'r_int', 'c_heater', 'power_time_constant', 'th_time_constant',
        'delta_p_time_constant', 'mixture_gradient', 'mixture_offset',
    )

    def __init__(
        self,
        r_int: float = 1.0,
        c_heater: float = 1.0,
        power_time_constant: float = 6.0,
        th_time_constant: float = 27.0,
        delta_p_time_constant: float = 3.0,
        mixture_gradient: float = -2.0,
        mixture_offset: float = -4.6,
        max_power: float = 90.0,
        power_change_threshold: float = 0.05,
    ) -> None:
        super().__init__()
        if max_power <= 0.0:
            raise ParameterError('max power must be positive')
        self.r_int: float = float(r_int)
        self.c_heater: float = float(c_heater)
        self.power_time_constant: float = float(power_time_constant)
        self.th_time_constant: float = float(th_time_constant)
        self.delta_p_time_constant: float = float(delta_p_time_constant)
        self.mixture_gradient: float = float(mixture_gradient)
        self.mixture_offset: float = float(mixture_offset)
        self.max_power: float = float(max_power)
        self.power_change_threshold: float = float(power_change_threshold)
        self.tuning_lpf_reset: bool = False

        self._weight = LinearSigmoidWeight(self.mixture_gradient, self.mixture_offset)
        self._power_lpf = LowPassFilter(self.power_time_constant)
        self._th_lpf = LowPassFilter(self.th_time_constant)
        self._delta_p_lpf = LowPassFilter(self.delta_p_time_constant)

        self.last_th: float | None = None
        self.last_power: float | None = None
        self.last_delta_t: float | None = None

    def reset(self) -> None:
        super().reset()
        self._weight.initialize(self.mixture_gradient, self.mixture_offset)
        self._power_lpf.reset(tau=max(self.power_time_constant, 0.0))
        self._th_lpf.reset(tau=max(self.th_time_constant, 0.0))
        self._delta_p_lpf.reset(tau=max(self.delta_p_time_constant, 0.0))
        self.last_th = None
        self.last_power = None
        self.last_delta_t = None

    def _effective_power(self, tick: Tick) -> float:
        """Average power over the period.

        The supply applies a new setting ``last_update_delay`` seconds into
        the period, so the previous setting was in effect until then.
        """
        if self.last_power is None:
            return tick.power
        period = tick.period
        delay = min(tick.last_update_delay, period)
        return (delay * self.last_power + (period - delay) * tick.power) / period

    def _effective_temperature(self, tick: Tick) -> float:
        """Average element temperature over the period."""
        temperature = tick.temperature
        if temperature is None:
            raise ParameterError('tick has no element temperature')
        last_th = self.last_th
        if last_th is None:
            return temperature

        power = tick.power
        last_power = self.last_power if self.last_power is not None else power
        largest = max(power, last_power)
        change = abs(power - last_power) / largest if largest > 0.0 else 0.0

        if self.last_delta_t is None or change < self.power_change_threshold:
            self.last_delta_t = temperature - last_th
            return (temperature + last_th) / 2.0

        period = tick.period
        delay = min(tick.last_update_delay, period)
        # element temperature when the power setting changed
        change_t = last_th + self.last_delta_t * delay / period
        effective = (change_t + (last_th * delay + (period - delay) * temperature) / period) / 2.0

        remaining = period - delay
        if remaining > 0.0:
            self.last_delta_t = (temperature - change_t) * period / remaining
        else:
            self.last_delta_t = temperature - last_th
        return effective

    def predict(self, tick: Tick) -> float | None:
        temperature = tick.temperature
        if temperature is None:
            return self.last_prediction

        self.max_power = max(self.max_power, tick.power)
        period = tick.period

        if self.last_th is None:
            prediction = temperature
            tick.lpf_prediction = prediction
            tick.back_prediction = prediction
            self._power_lpf.reset(tick.power, period=period)
            self._th_lpf.reset(prediction, period=period)
            self._delta_p_lpf.set_period(period)
        else:
            last_th = self.last_th
            last_power = self.last_power if self.last_power is not None else tick.power

            power = self._effective_power(tick)
            heater = self._effective_temperature(tick)
            lpf_power = self._power_lpf.next(power, period=period)
            back = heater - (lpf_power - self.c_heater * (temperature - last_th) / period) * self.r_int
            tick.back_prediction = back

            lpf_th = self._th_lpf.next(temperature, period=period)
            tick.lpf_prediction = lpf_th

            norm_delta_p = abs(tick.power - last_power) / self.max_power
            lpf_delta_p = max(_MIN_DELTA_P, self._delta_p_lpf.next(norm_delta_p, period=period))
            weight = self._weight.weight(math.log(lpf_delta_p))
            tick.mixing_weight = weight

            prediction = weight * back + (1.0 - weight) * lpf_th

            # element still rising above the prediction: do not let the prediction fall
            if (
                self.last_prediction is not None
                and temperature > prediction
                and temperature - last_th > 0.0
                and prediction < self.last_prediction
            ):
                prediction = self.last_prediction

        self.last_th = temperature
        self.last_power = tick.power
        self.last_prediction = prediction
        tick.predict_temperature = prediction

        if self.tuning_lpf_reset and tick.device_temperature is not None:
            self._th_lpf.reset(tick.device_temperature)
        else:
            self._th_lpf.reset(prediction)
        return prediction

    def tune(self, history: Iterable[Tick], **options: Any) -> dict[str, Any]:
        """Fit parameters in three stages.

        Element model first, against the back-prediction; then the element
        temperature filter, against the filter output with the filter
        reseeded from the reference each tick; then the blend parameters,
        against the final prediction.
        """
        samples = _timer_ticks(history)
        threshold = options.pop('threshold', 0.001)

        _log.info('Tuning two stage predictor: element model')
        primary = self._tune(
            samples,
            ['r_int', 'c_heater', 'power_time_constant'],
            [(0.001, 100.0), (0.3, 100.0), (0.001, 10.0)],
            prediction='back_prediction',
            lower_constraint=[0.001, 0.3, 0.001],
            upper_constraint=[100.0, 100.0, 10.0],
            threshold=threshold,
            **options,
        )

        _log.info('Tuning two stage predictor: element temperature filter')
        self.tuning_lpf_reset = True
        try:
            secondary = self._tune(
                samples,
                ['th_time_constant'],
                [(0.0, 200.0)],
                prediction='lpf_prediction',
                lower_constraint=[0.001],
                upper_constraint=[2000.0],
                threshold=threshold,
                **options,
            )
        finally:
            self.tuning_lpf_reset = False

        _log.info('Tuning two stage predictor: mixture')
        mixture = self._tune(
            samples,
            ['delta_p_time_constant', 'mixture_gradient', 'mixture_offset'],
            [(0.01, 30.0), (-100.0, 100.0), (-100.0, 100.0)],
            lower_constraint=[0.01, None, None],
            threshold=threshold,
            **options,
        )

        return {**primary, **secondary, **mixture}


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_PREDICTORS: Final[dict[PredictorKind, type[Predictor]]] = {
    PredictorKind.PASSTHROUGH: Predictor,
    PredictorKind.SINGLE_POLE: SinglePoleFilterPredictor,
    PredictorKind.LOSSY: LossyFilterPredictor,
    PredictorKind.TWO_STAGE: TwoStageBackPredictor,
}


def create_predictor(kind: PredictorKind | str, /, **params: Any) -> Predictor:
    """Build a predictor of *kind* from persisted parameters.

    Parameter names may use hyphens or underscores. A ``kind`` key in
    *params* is ignored.

    Raises:
        ConfigurationError: If *kind* is unknown or a parameter is not
            accepted by the predictor.
    """
    try:
        kind = PredictorKind(kind)
    except ValueError as exc:
        raise ConfigurationError(f'Unknown predictor kind: {kind}') from exc

    kwargs = {k.replace('-', '_'): v for k, v in params.items() if k != 'kind'}
    cls = _PREDICTORS[kind]
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ConfigurationError(f'Invalid parameters for {kind.value} predictor: {exc}') from exc
