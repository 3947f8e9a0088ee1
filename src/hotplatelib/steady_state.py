#
# ABOUT
# Steady-state detection over a stream of measurements using an IIR
# filtered rate of change and a two-band hysteretic sample counter.

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
from typing import Final

from hotplatelib.errors import ParameterError


_log: Final[logging.Logger] = logging.getLogger(__name__)


class SteadyStateDetector:
    """Detect when a measured signal has stopped changing.

    Each call to :meth:`check` computes the delta from the previous
    measurement and low-pass filters it::

        filtered = smoothing * filtered + (1 - smoothing) * delta

    While not yet steady, a sample counts towards steady state only if
    ``|filtered| < threshold``; it resets the count if ``|filtered| > reset``
    and leaves the count alone in between. Once steady, every sample with
    ``|filtered| <= reset`` keeps counting and anything above ``reset`` drops
    out immediately.

    Args:
        smoothing: Filter coefficient in the open interval (0, 1). Larger
            values respond more slowly.
        threshold: Entry threshold for the filtered delta.
        samples: Number of qualifying samples required.
        reset: Exit threshold, must exceed *threshold*. Defaults to
            ``1.5 * threshold``.

    Raises:
        ParameterError: If any parameter is out of range.
    """

    def __init__(
        self,
        smoothing: float = 0.9,
        threshold: float = 0.0001,
        samples: int = 10,
        reset: float | None = None,
    ) -> None:
        if reset is None:
            reset = threshold * 1.5

        if smoothing <= 0.0 or smoothing >= 1.0:
            raise ParameterError('smoothing must be greater than 0 and less than 1')
        if threshold <= 0.0:
            raise ParameterError('threshold must be positive')
        if samples < 1:
            raise ParameterError('samples must be at least 1')
        if reset <= threshold:
            raise ParameterError('reset must be greater than threshold')

        self.smoothing: float = float(smoothing)
        self.threshold: float = float(threshold)
        self.samples: int = int(samples)
        self.reset_threshold: float = float(reset)

        self.previous_measurement: float | None = None
        self.filtered_delta: float | None = None
        self.last_delta: float | None = None
        self.count: int = 0

    def check(self, measurement: float) -> bool:
        """Feed one measurement and return whether steady state holds."""
        if self.previous_measurement is None:
            self.previous_measurement = measurement
            return False

        delta = measurement - self.previous_measurement

        if self.filtered_delta is None:
            self.filtered_delta = delta
        else:
            self.filtered_delta = (
                self.smoothing * self.filtered_delta + (1.0 - self.smoothing) * delta
            )

        self.last_delta = delta
        self.previous_measurement = measurement

        magnitude = abs(self.filtered_delta)
        if self.count < self.samples:
            if magnitude < self.threshold:
                self.count += 1
            elif magnitude > self.reset_threshold:
                self.count = 0
        elif magnitude <= self.reset_threshold:
            self.count += 1
        else:
            _log.debug('Steady state lost: filtered delta %.6g > %.6g', magnitude, self.reset_threshold)
            self.count = 0

        return self.is_steady()

    def is_steady(self) -> bool:
        return self.count >= self.samples

    def reset(self, value: float | None = None) -> SteadyStateDetector:
        """Clear all state, optionally seeding the previous measurement."""
        self.previous_measurement = value
        self.filtered_delta = None
        self.last_delta = None
        self.count = 0
        return self

    def state(self) -> dict[str, float | int | None]:
        return {
            'filtered_delta': self.filtered_delta,
            'count': self.count,
            'previous_measurement': self.previous_measurement,
            'last_delta': self.last_delta,
        }

    def parameters(self) -> dict[str, float | int]:
        return {
            'smoothing': self.smoothing,
            'threshold': self.threshold,
            'samples': self.samples,
            'reset': self.reset_threshold,
        }
