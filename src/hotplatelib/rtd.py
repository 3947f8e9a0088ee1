#
# ABOUT
# Heating element as resistance temperature detector: converts measured
# voltage and current into element resistance and then temperature via a
# piecewise-linear calibration curve, bootstrapping that curve from a
# single point using the temperature coefficient of copper.

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

import logging
from typing import Final, TYPE_CHECKING

from hotplatelib.calibration import InterfaceLimits
from hotplatelib.errors import ParameterError, TemperatureRateError
from hotplatelib.piecewise_linear import Breakpoint, PiecewiseLinear

if TYPE_CHECKING:
    from hotplatelib.tick import Tick


_log: Final[logging.Logger] = logging.getLogger(__name__)

ALPHA_CU: Final[float] = 0.00393
"""Temperature coefficient of resistance of copper, per degree Celsius."""

DEFAULT_AMBIENT: Final[float] = 25.0

_AMBIENT_MARGIN: Final[float] = 5.0
"""Readings more than this above the default ambient are not ambient."""


class RTDTemperatureEstimator:
    """Estimate heating element temperature from its resistance.

    Args:
        calibration_points: Resistance to temperature curve. An empty curve
            is seeded from the first reading, a single point curve is
            extended to two points using :data:`ALPHA_CU`.
        limits: Power supply limits; only the measurable current floor is
            used here.
        default_ambient: Ambient temperature assumed when nothing better is
            known.
        maximum_temperature_rate: Optional plausibility limit in degrees per
            second. Readings changing faster raise
            :class:`TemperatureRateError`.
    """

    def __init__(
        self,
        calibration_points: PiecewiseLinear | None = None,
        limits: InterfaceLimits | None = None,
        default_ambient: float = DEFAULT_AMBIENT,
        maximum_temperature_rate: float | None = None,
    ) -> None:
        if maximum_temperature_rate is not None and maximum_temperature_rate <= 0.0:
            raise ParameterError('maximum temperature rate must be positive')
        self.curve: PiecewiseLinear = calibration_points if calibration_points is not None else PiecewiseLinear()
        self.limits: InterfaceLimits = limits if limits is not None else InterfaceLimits()
        self.default_ambient: float = float(default_ambient)
        self.maximum_temperature_rate: float | None = maximum_temperature_rate
        self.bootstrap_disabled: bool = False
        self.last_temperature: float | None = None

    def resolve_ambient(self, tick: Tick) -> float:
        """Ambient temperature for *tick*, written back to ``tick.ambient``.

        A value already on the tick wins. Otherwise the reference device's
        cold junction reading is used, replaced by the device's hot reading
        when that is lower and plausibly ambient. Failing both, the measured
        element temperature is used if plausibly ambient, else the default.
        """
        if tick.ambient is not None:
            return tick.ambient

        limit = self.default_ambient + _AMBIENT_MARGIN
        ambient = tick.device_ambient
        device = tick.device_temperature
        if device is not None and device < limit and (ambient is None or device < ambient):
            ambient = device
        if ambient is None and tick.temperature is not None and tick.temperature < limit:
            ambient = tick.temperature
        if ambient is None:
            ambient = self.default_ambient

        _log.info('Ambient temperature: %.1f', ambient)
        tick.ambient = ambient
        return ambient

    def _bootstrap(self, resistance: float, tick: Tick) -> None:
        if len(self.curve) == 0 and not self.bootstrap_disabled:
            ambient = self.resolve_ambient(tick)
            self.curve.add_named(resistance, ambient, 'ambient')
            _log.warning('Auto-adding calibration point at T=%s, R=%s (name: ambient)', ambient, resistance)

        if len(self.curve) == 1:
            r0 = self.curve.points[0].x
            t0 = self.curve.points[0].y
            if t0 == 20.0:
                t1 = 19.0
                r1 = r0 * (1.0 - ALPHA_CU)
            else:
                t1 = 20.0
                r1 = r0 / (1.0 + ALPHA_CU * (t0 - t1))
            _log.warning('Auto-adding calibration point at T=%s, R=%s (name: interpolated)', t1, r1)
            self.curve.add_named(r1, t1, 'interpolated')

    def estimate(self, tick: Tick) -> float | None:
        """Temperature for *tick*, or ``None`` when it cannot be measured.

        ``tick.resistance`` is used when already set, otherwise it is
        computed from voltage and current. Too little current leaves the
        temperature undefined for this tick, whichever way the resistance
        was obtained.

        Raises:
            TemperatureRateError: If a rate limit is configured and exceeded.
        """
        current = tick.current
        if current is not None and current < self.limits.current_floor:
            _log.warning('Current %s A too low to measure resistance', current)
            return None

        resistance = tick.resistance
        if resistance is None:
            if current is None or tick.voltage is None:
                _log.warning('No voltage or current to measure resistance')
                return None
            resistance = tick.voltage / current
            tick.resistance = resistance

        self._bootstrap(resistance, tick)

        temperature = self.curve.value(resistance)
        if temperature is None:
            _log.warning('No calibration points; temperature undefined')
            return None

        if self.maximum_temperature_rate is not None and self.last_temperature is not None and tick.period > 0.0:
            rate = abs(temperature - self.last_temperature) / tick.period
            if rate > self.maximum_temperature_rate:
                raise TemperatureRateError(
                    f'Temperature rate of change ({rate:.3f}) exceeds maximum rate of '
                    f'{self.maximum_temperature_rate}')

        self.last_temperature = temperature
        tick.temperature = temperature
        return temperature

    def reset_calibration(self, disable_bootstrap: bool = True) -> None:
        """Discard all calibration points.

        With *disable_bootstrap* the empty curve is not reseeded from the
        next reading; used while calibrating from scratch.
        """
        self.curve = PiecewiseLinear()
        self.bootstrap_disabled = disable_bootstrap
        self.last_temperature = None

    def set_point(self, temperature: float, resistance: float) -> None:
        self.curve.add(resistance, temperature)

    def points(self) -> list[Breakpoint]:
        return self.curve.points
