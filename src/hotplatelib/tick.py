#
# ABOUT
# Per-sample tick context passed through the estimation, prediction and
# control stages, and an index-addressed tick history used for offline
# tuning and replay. Histories load from and save to CSV logs.

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

import csv
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, fields
from typing import Final, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray  # pylint: disable=unused-import


_log: Final[logging.Logger] = logging.getLogger(__name__)

TIMER_EVENT: Final[str] = 'timerEvent'
"""Event name of the periodic sample tick."""


@dataclass
class Tick:
    """State of one sample period.

    Input fields are filled by the transport and the profile scheduler.
    Each processing stage writes only its own outputs: the RTD estimator
    writes ``resistance``/``temperature``, the predictor writes
    ``predict_temperature`` and its diagnostics, the controller writes
    ``set_power`` and its diagnostics.
    """

    # Inputs
    voltage: float | None = None
    current: float | None = None
    period: float = 1.5
    ambient: float | None = None
    now: float = 0.0
    now_temperature: float | None = None
    then_temperature: float | None = None
    power: float = 0.0
    device_temperature: float | None = None
    device_ambient: float | None = None
    last_update_delay: float = 0.0
    event: str = TIMER_EVENT

    # RTD estimator outputs
    resistance: float | None = None
    temperature: float | None = None

    # Predictor outputs
    predict_temperature: float | None = None
    back_prediction: float | None = None
    lpf_prediction: float | None = None
    mixing_weight: float | None = None

    # Controller outputs
    set_power: float | None = None
    error: float | None = None
    error_sum: float | None = None
    ff_power: float | None = None
    p_power: float | None = None
    i_power: float | None = None
    unfiltered_power: float | None = None

    @property
    def is_timer(self) -> bool:
        return self.event == TIMER_EVENT

    def to_dict(self) -> dict[str, float | str | None]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


_FIELD_NAMES: Final[list[str]] = [f.name for f in fields(Tick)]
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset(n for n in _FIELD_NAMES if n != 'event')


def _field_name(column: str) -> str:
    """Map a log column header onto a :class:`Tick` field name."""
    return column.strip().replace('-', '_')


class TickHistory:
    """Append-only, index-addressed sequence of ticks."""

    __slots__ = ('_ticks',)

    def __init__(self, ticks: Iterable[Tick] = ()) -> None:
        self._ticks: list[Tick] = list(ticks)

    def append(self, tick: Tick) -> int:
        """Append *tick* and return its index."""
        self._ticks.append(tick)
        return len(self._ticks) - 1

    def __getitem__(self, index: int) -> Tick:
        return self._ticks[index]

    def __len__(self) -> int:
        return len(self._ticks)

    def __iter__(self) -> Iterator[Tick]:
        return iter(self._ticks)

    def previous(self, index: int) -> Tick | None:
        """The tick before *index*, or ``None`` for the first one."""
        if index <= 0:
            return None
        return self._ticks[index - 1]

    def timer_ticks(self) -> list[Tick]:
        return [t for t in self._ticks if t.is_timer]

    def column(self, name: str) -> NDArray:
        """Values of field *name* across all ticks; missing values are NaN."""
        attr = _field_name(name)
        if attr not in _FLOAT_FIELDS:
            raise KeyError(f'Unknown tick field: {name}')
        values = [getattr(t, attr) for t in self._ticks]
        return np.array([np.nan if v is None else v for v in values], dtype=np.float64)

    def filter_samples(
        self,
        time_cut_off: float = 240.0,
        temperature_cut_off: float = 120.0,
        expected: str = 'device_temperature',
    ) -> TickHistory:
        """Timer ticks up to the last one that is early or hot enough.

        A timer tick qualifies when ``now < time_cut_off`` or its *expected*
        field exceeds ``temperature_cut_off``. Everything after the last
        qualifying tick is the cool-down tail and is dropped.
        """
        attr = _field_name(expected)
        last = -1
        for i, tick in enumerate(self._ticks):
            if not tick.is_timer:
                continue
            value = getattr(tick, attr)
            if tick.now < time_cut_off or (value is not None and value > temperature_cut_off):
                last = i
        kept = [t for t in self._ticks[:last + 1] if t.is_timer]
        _log.debug('Filtered %d of %d ticks for tuning', len(kept), len(self._ticks))
        return TickHistory(kept)

    # ------------------------------------------------------------------
    # CSV persistence
    # ------------------------------------------------------------------

    @classmethod
    def load_csv(cls, filepath: str) -> TickHistory:
        """Load a history from a CSV log.

        Column headers may use hyphens (``now-temperature``) or underscores.
        Unknown columns are ignored and empty cells become ``None``.
        """
        history = cls()
        with open(filepath, newline='', encoding='utf-8') as fh:
            reader = csv.DictReader(fh)
            if reader.fieldnames is None:
                raise ValueError(f'{filepath}: no header row')
            mapping = {col: _field_name(col) for col in reader.fieldnames}
            unknown = [col for col, name in mapping.items() if name not in _FIELD_NAMES]
            if unknown:
                _log.debug('Ignoring columns %s in %s', ', '.join(unknown), filepath)
            for row_no, row in enumerate(reader, start=2):
                kwargs: dict[str, float | str] = {}
                for col, raw in row.items():
                    name = mapping.get(col)
                    if name not in _FIELD_NAMES or raw is None or raw.strip() == '':
                        continue
                    if name == 'event':
                        kwargs[name] = raw.strip()
                        continue
                    try:
                        kwargs[name] = float(raw)
                    except ValueError as exc:
                        raise ValueError(f'{filepath}:{row_no}: bad value for {col}: {raw!r}') from exc
                history.append(Tick(**kwargs))
        _log.info('Loaded %d ticks from %s', len(history), filepath)
        return history

    def save_csv(self, filepath: str, columns: Iterable[str] | None = None) -> None:
        """Write the history as CSV with hyphenated column headers."""
        names = _FIELD_NAMES if columns is None else [_field_name(c) for c in columns]
        with open(filepath, 'w', newline='', encoding='utf-8') as fh:
            writer = csv.writer(fh)
            writer.writerow([n.replace('_', '-') for n in names])
            for tick in self._ticks:
                writer.writerow(['' if getattr(tick, n) is None else getattr(tick, n) for n in names])
        _log.info('Saved %d ticks to %s', len(self._ticks), filepath)
