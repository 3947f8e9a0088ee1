#
# ABOUT
# Signal-conditioning primitives shared by predictors and controllers:
# a first-order (single-pole) IIR low-pass filter and a sigmoid mixing
# weight over a linear function of its input.

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
from collections.abc import Sequence
from typing import Final, TYPE_CHECKING

import numpy as np

from hotplatelib.errors import ParameterError
from hotplatelib.optimizer import minimize

if TYPE_CHECKING:
    from numpy.typing import NDArray  # pylint: disable=unused-import


_log: Final[logging.Logger] = logging.getLogger(__name__)

_EXP_CLIP: Final[float] = 500.0
"""Max absolute exponent passed to numpy.exp to avoid overflow."""


def safe_sigmoid(x: NDArray | float) -> NDArray | float:
    """Numerically stable sigmoid: 1 / (1 + exp(-x))."""
    x_clipped = np.clip(x, -_EXP_CLIP, _EXP_CLIP)
    return 1.0 / (1.0 + np.exp(-x_clipped))


def filter_alpha(period: float, tau: float) -> float:
    """Weight of the newest sample in a single-pole filter."""
    return period / (period + tau)


class LowPassFilter:
    """First-order IIR filter ``y = alpha * x + (1 - alpha) * y_prev``.

    ``alpha = period / (period + tau)``. The first sample after construction
    or :meth:`reset` passes straight through and seeds the filter.
    """

    __slots__ = ('tau', 'period', 'alpha', 'value')

    def __init__(self, tau: float, period: float = 1.0) -> None:
        self.tau: float = 0.0
        self.period: float = 1.0
        self.alpha: float = 1.0
        self.value: float | None = None
        self.set_tau(tau, period)

    def set_tau(self, tau: float, period: float | None = None) -> None:
        if tau is None or tau < 0.0:
            raise ParameterError('tau must be non-negative for a low pass filter')
        self.tau = float(tau)
        if period is None:
            self.alpha = filter_alpha(self.period, self.tau)
        else:
            self.set_period(period)

    def set_period(self, period: float) -> None:
        if period <= 0.0:
            raise ParameterError('period must be positive for a low pass filter')
        self.period = float(period)
        self.alpha = filter_alpha(self.period, self.tau)

    def next(self, value: float, period: float | None = None) -> float:
        if period is not None and period != self.period:
            self.set_period(period)
        if self.value is None:
            self.value = float(value)
        else:
            self.value = self.alpha * value + (1.0 - self.alpha) * self.value
        return self.value

    def reset(
        self,
        value: float | None = None,
        *,
        tau: float | None = None,
        period: float | None = None,
    ) -> float | None:
        self.value = value
        if tau is not None:
            self.set_tau(tau, period)
        elif period is not None:
            self.set_period(period)
        return value

    def tune(
        self,
        inputs: Sequence[float],
        expected: Sequence[float],
        upper_bound: float = 500.0,
        threshold: float = 0.001,
        parallel: int | None = 1,
    ) -> dict[str, float]:
        """Fit ``tau`` so the filtered *inputs* track *expected*."""
        x = np.asarray(inputs, dtype=np.float64)
        y = np.asarray(expected, dtype=np.float64)
        if len(x) != len(y):
            raise ParameterError('inputs and expected must have the same length')

        def cost(args: list[float]) -> float:
            self.set_tau(max(args[0], 0.0))
            self.value = None
            sum2 = 0.0
            for xi, yi in zip(x, y, strict=True):
                err = self.next(float(xi)) - float(yi)
                sum2 += err * err
            return sum2

        (tau,) = minimize(
            cost,
            [(0.0, upper_bound)],
            threshold=threshold,
            lower_constraint=[0.0],
            parallel=parallel,
        )
        self.set_tau(tau)
        self.value = None
        _log.info('Low pass filter tuned: tau=%.4f', tau)
        return {'tau': tau}

    def __repr__(self) -> str:
        return f'LowPassFilter(tau={self.tau:g}, period={self.period:g})'


class LinearSigmoidWeight:
    """Mixing weight ``sigmoid(gradient * value + offset)`` in (0, 1)."""

    __slots__ = ('gradient', 'offset')

    def __init__(self, gradient: float, offset: float) -> None:
        self.gradient: float = float(gradient)
        self.offset: float = float(offset)

    def initialize(self, gradient: float, offset: float) -> None:
        self.gradient = float(gradient)
        self.offset = float(offset)

    def weight(self, value: float) -> float:
        return float(safe_sigmoid(self.gradient * value + self.offset))
