#
# ABOUT
# Steady-state thermal resistance measurement. Holds at a test temperature
# are sampled, the settling power and temperature are extrapolated from
# the tail of the hold, and the thermal resistance to ambient follows from
# the steady-state heat balance. An assembly under test that covers part
# of the plate is separated from the plate's own losses by treating the
# two as parallel conduction paths.

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
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

import numpy as np
from scipy.stats import linregress

from hotplatelib.errors import ParameterError
from hotplatelib.tick import Tick


_log: Final[logging.Logger] = logging.getLogger(__name__)


@dataclass
class SteadyStateEstimate:
    """Extrapolated steady state of a temperature hold."""

    power: float
    temperature: float
    mean_power: float
    mean_temperature: float
    regress_power: float
    regress_temperature: float


def _sample_temperature(tick: Tick) -> float:
    if tick.predict_temperature is not None:
        return tick.predict_temperature
    if tick.temperature is None:
        raise ParameterError(f'tick at {tick.now:.1f}s has no temperature')
    return tick.temperature


def estimate_steady_state(ticks: Sequence[Tick], horizon: float = 60.0) -> SteadyStateEstimate:
    """Predict where power and temperature settle at the end of a hold.

    Two estimates are averaged: the sample mean, which lags a still
    settling hold, and a straight-line trend extrapolated *horizon* seconds
    past the last sample, which overshoots it.

    The predicted temperature is preferred over the raw element
    temperature where a tick has one.

    Args:
        ticks: Timer ticks from the tail of a hold.
        horizon: Extrapolation distance past the last tick, seconds.

    Returns:
        A :class:`SteadyStateEstimate`.

    Raises:
        ParameterError: If fewer than two ticks are given.
    """
    if len(ticks) < 2:
        raise ParameterError('at least two samples are needed to estimate steady state')

    times = np.array([t.now for t in ticks], dtype=np.float64)
    powers = np.array([t.power for t in ticks], dtype=np.float64)
    temperatures = np.array([_sample_temperature(t) for t in ticks], dtype=np.float64)

    mean_power = float(np.mean(powers))
    mean_temperature = float(np.mean(temperatures))

    when = float(times[-1]) + horizon
    if np.ptp(times) == 0.0:
        raise ParameterError('samples must span a non-zero time interval')
    power_fit = linregress(times, powers)
    temperature_fit = linregress(times, temperatures)
    regress_power = float(power_fit.intercept + power_fit.slope * when)
    regress_temperature = float(temperature_fit.intercept + temperature_fit.slope * when)

    _log.info('Mean power %.3f W, mean temperature %.2f', mean_power, mean_temperature)
    _log.info('Regressed power %.3f W, regressed temperature %.2f', regress_power, regress_temperature)

    return SteadyStateEstimate(
        power=(mean_power + regress_power) / 2.0,
        temperature=(mean_temperature + regress_temperature) / 2.0,
        mean_power=mean_power,
        mean_temperature=mean_temperature,
        regress_power=regress_power,
        regress_temperature=regress_temperature,
    )


def thermal_resistance_from_steady_state(power: float, temperature: float, ambient: float) -> float:
    """Thermal resistance to ambient, ``(T - ambient) / P``, in K/W."""
    if power <= 0.0:
        raise ParameterError('steady-state power must be positive')
    return (temperature - ambient) / power


def assembly_thermal_resistance(
    total: float,
    hotplate: float,
    covered_area: float,
    hotplate_area: float,
) -> float:
    """Thermal resistance of an assembly sitting on the hotplate.

    The uncovered part of the plate loses heat like the bare plate scaled
    by area, in parallel with the assembly. With nothing uncovered the
    assembly accounts for the whole measured resistance.

    Args:
        total: Measured resistance of plate plus assembly.
        hotplate: Resistance of the bare plate.
        covered_area: Plate area under the assembly.
        hotplate_area: Total plate area.
    """
    if hotplate_area <= 0.0:
        raise ParameterError('hotplate area must be positive')
    uncovered = hotplate_area - min(covered_area, hotplate_area)
    if uncovered <= 0.0:
        return total

    uncovered_rth = hotplate * hotplate_area / uncovered
    if math.isclose(uncovered_rth, total):
        raise ParameterError('assembly thermal resistance is unbounded')
    return total * uncovered_rth / (uncovered_rth - total)
