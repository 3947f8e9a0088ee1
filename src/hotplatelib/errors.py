#
# ABOUT
# Exception hierarchy shared by the hotplate estimation, control and
# tuning modules.

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


class HotplateError(Exception):
    """Base class for all hotplatelib errors."""


class ParameterError(HotplateError, ValueError):
    """A constructor or function received an out-of-range parameter."""


class ConfigurationError(HotplateError, ValueError):
    """Calibration or configuration data is missing or inconsistent."""


class InvalidBounds(ParameterError):
    """Optimiser search bounds or grid resolution are invalid."""


class SearchDepthExceeded(HotplateError, RuntimeError):
    """The optimiser ran out of iterations before converging.

    The bounds of the last iteration are kept on :attr:`bounds` so the
    caller can report where the search was heading.
    """

    def __init__(self, message: str, bounds: list[tuple[float, float]] | None = None) -> None:
        super().__init__(message)
        self.bounds: list[tuple[float, float]] = list(bounds or [])


class TemperatureRateError(HotplateError, RuntimeError):
    """Measured temperature changed faster than is physically plausible."""
