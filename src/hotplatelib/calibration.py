#
# ABOUT
# Persisted calibration and configuration records: resistance/temperature
# calibration points, thermal-resistance and heat-capacity curves, fitted
# predictor parameters, power supply interface limits and controller
# safety limits. All records round-trip through JSON.

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

import json
import logging
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Final

from hotplatelib.errors import ConfigurationError
from hotplatelib.piecewise_linear import PiecewiseLinear


_log: Final[logging.Logger] = logging.getLogger(__name__)


def _filtered(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    valid_names = {f.name for f in fields(cls)}
    unknown = sorted(k for k in data if k not in valid_names)
    if unknown:
        _log.debug('Ignoring unknown %s keys: %s', cls.__name__, ', '.join(unknown))
    return {k: v for k, v in data.items() if k in valid_names}


# ---------------------------------------------------------------------------
# Interface limits
# ---------------------------------------------------------------------------

@dataclass
class InterfaceLimits:
    """Output range of the power supply and the current measurement floor."""

    min_power: float = 0.0
    max_power: float = 120.0
    min_voltage: float = 1.0
    max_voltage: float = 30.0
    min_current: float = 0.1
    max_current: float = 10.0
    measurable_current: float | None = None

    def __post_init__(self) -> None:
        if self.min_power < 0.0 or self.min_power > self.max_power:
            raise ConfigurationError(
                f'invalid interface power range [{self.min_power}, {self.max_power}]')
        if self.min_voltage < 0.0 or self.min_voltage > self.max_voltage:
            raise ConfigurationError(
                f'invalid interface voltage range [{self.min_voltage}, {self.max_voltage}]')
        if self.min_current < 0.0 or self.min_current > self.max_current:
            raise ConfigurationError(
                f'invalid interface current range [{self.min_current}, {self.max_current}]')

    @property
    def current_floor(self) -> float:
        """Smallest current at which resistance is considered measurable."""
        if self.measurable_current:
            return self.measurable_current
        return self.min_current

    def validate_power_bounds(self, lower: float, upper: float) -> None:
        """Raise if ``[lower, upper]`` is not inside the interface power range.

        Raises:
            ConfigurationError: If the range is inverted or exceeds the
                interface limits.
        """
        if lower > upper:
            raise ConfigurationError(f'power range [{lower}, {upper}] is inverted')
        if lower < self.min_power:
            raise ConfigurationError(
                f'minimum power {lower} is below the interface minimum {self.min_power}')
        if upper > self.max_power:
            raise ConfigurationError(
                f'maximum power {upper} is above the interface maximum {self.max_power}')

    def validate_voltage_bounds(self, lower: float, upper: float) -> None:
        if lower > upper:
            raise ConfigurationError(f'voltage range [{lower}, {upper}] is inverted')
        if lower < self.min_voltage or upper > self.max_voltage:
            raise ConfigurationError(
                f'voltage range [{lower}, {upper}] exceeds the interface range '
                f'[{self.min_voltage}, {self.max_voltage}]')

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InterfaceLimits:
        return cls(**_filtered(cls, data))


# ---------------------------------------------------------------------------
# Controller safety limits
# ---------------------------------------------------------------------------

@dataclass
class SafetyLimits:
    """Cut-off temperature and an optional temperature to max-power curve."""

    cut_off_temperature: float | None = None
    power_limits: list[dict[str, float]] = field(default_factory=list)

    def power_limit_curve(self) -> PiecewiseLinear | None:
        if not self.power_limits:
            return None
        return PiecewiseLinear.from_records(self.power_limits, 'temperature', 'power')

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SafetyLimits:
        return cls(**_filtered(cls, data))


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

@dataclass
class CalibrationData:
    """Calibration produced by tuning and consumed at construction time.

    ``temperatures`` holds ``{resistance, temperature}`` records,
    ``thermal_resistance`` and ``heat_capacity`` hold ``{temperature, value}``
    records, ``power_levels`` holds ``{temperature, power}`` records and
    ``predictor`` holds fitted predictor parameters including ``kind``.
    """

    temperatures: list[dict[str, float]] = field(default_factory=list)
    thermal_resistance: list[dict[str, float]] = field(default_factory=list)
    heat_capacity: list[dict[str, float]] = field(default_factory=list)
    power_levels: list[dict[str, float]] = field(default_factory=list)
    predictor: dict[str, Any] = field(default_factory=dict)
    limits: InterfaceLimits = field(default_factory=InterfaceLimits)
    safety: SafetyLimits = field(default_factory=SafetyLimits)

    # ------------------------------------------------------------------
    # Estimators
    # ------------------------------------------------------------------

    def temperature_curve(self) -> PiecewiseLinear:
        """Resistance to temperature estimator."""
        return PiecewiseLinear.from_records(self.temperatures, 'resistance', 'temperature')

    def thermal_resistance_curve(self) -> PiecewiseLinear | None:
        if not self.thermal_resistance:
            return None
        return PiecewiseLinear.from_records(self.thermal_resistance, 'temperature', 'value')

    def heat_capacity_curve(self) -> PiecewiseLinear | None:
        if not self.heat_capacity:
            return None
        return PiecewiseLinear.from_records(self.heat_capacity, 'temperature', 'value')

    def power_level_curve(self) -> PiecewiseLinear | None:
        if not self.power_levels:
            return None
        return PiecewiseLinear.from_records(self.power_levels, 'temperature', 'power')

    def set_temperature_curve(self, curve: PiecewiseLinear) -> None:
        """Replace the stored calibration points, ordered by resistance."""
        self.temperatures = curve.to_records('resistance', 'temperature')

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CalibrationData:
        kwargs = _filtered(cls, data)
        if isinstance(kwargs.get('limits'), dict):
            kwargs['limits'] = InterfaceLimits.from_dict(kwargs['limits'])
        if isinstance(kwargs.get('safety'), dict):
            kwargs['safety'] = SafetyLimits.from_dict(kwargs['safety'])
        for key in ('temperatures', 'thermal_resistance', 'heat_capacity', 'power_levels'):
            if key in kwargs and not isinstance(kwargs[key], list):
                raise ConfigurationError(f'calibration {key} must be a list of records')
        return cls(**kwargs)

    def save(self, filepath: str) -> None:
        """Save calibration to a JSON file."""
        with open(filepath, 'w', encoding='utf-8') as fh:
            json.dump(self.to_dict(), fh, indent=2)
        _log.info('Saved calibration to %s', filepath)

    @classmethod
    def load(cls, filepath: str) -> CalibrationData:
        """Load calibration from a JSON file."""
        with open(filepath, encoding='utf-8') as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ConfigurationError(f'{filepath}: calibration must be a JSON object')
        calibration = cls.from_dict(data)
        _log.info('Loaded calibration from %s', filepath)
        return calibration
