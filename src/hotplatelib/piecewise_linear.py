#
# ABOUT
# Ordered-breakpoint calibration curve with linear interpolation inside
# the calibrated range and linear extrapolation beyond it.

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

from bisect import bisect_left, bisect_right
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class Breakpoint:
    """A single calibration point."""

    x: float
    y: float
    attributes: dict[str, Any] | None = None


class PiecewiseLinear:
    """Piecewise-linear estimator over breakpoints unique and ascending in ``x``.

    Attributes returned by :meth:`estimate` follow the segment rule used by
    the calibration code: inside the range the *upper* point of the
    bracketing segment names the segment, outside the range the *nearest*
    end point does.
    """

    __slots__ = ('_points',)

    def __init__(self, points: Iterable[tuple[float, float]] = ()) -> None:
        self._points: list[Breakpoint] = []
        for x, y in points:
            self.add(x, y)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add(self, x: float, y: float, attributes: dict[str, Any] | None = None) -> PiecewiseLinear:
        """Insert a point, replacing any existing point with the same ``x``.

        Returns the estimator so calls may be chained.
        """
        x = float(x)
        point = Breakpoint(x, float(y), attributes)
        idx = bisect_left(self._xs(), x)
        if idx < len(self._points) and self._points[idx].x == x:
            self._points[idx] = point
        else:
            self._points.insert(idx, point)
        return self

    def add_named(self, x: float, y: float, name: str) -> PiecewiseLinear:
        return self.add(x, y, {'name': name})

    def set_named(self, x: float, y: float, name: str) -> PiecewiseLinear:
        """Move the point called *name* to ``(x, y)``."""
        for i, point in enumerate(self._points):
            if point.attributes and point.attributes.get('name') == name:
                del self._points[i]
                break
        return self.add_named(x, y, name)

    def add_records(
        self,
        records: Iterable[Mapping[str, Any]],
        x_key: str,
        y_key: str,
    ) -> PiecewiseLinear:
        """Add points from persisted calibration records.

        Records missing either key are skipped. The record itself becomes the
        point's attributes.
        """
        for record in records:
            if x_key in record and y_key in record:
                self.add(float(record[x_key]), float(record[y_key]), dict(record))
        return self

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping[str, Any]],
        x_key: str,
        y_key: str,
    ) -> PiecewiseLinear:
        return cls().add_records(records, x_key, y_key)

    def to_records(self, x_key: str, y_key: str) -> list[dict[str, Any]]:
        """Serialise in ascending ``x`` order."""
        records: list[dict[str, Any]] = []
        for point in self._points:
            record: dict[str, Any] = {}
            if point.attributes:
                record.update(point.attributes)
            record[x_key] = point.x
            record[y_key] = point.y
            records.append(record)
        return records

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def estimate(self, x: float) -> tuple[float, dict[str, Any] | None] | None:
        """Return ``(y, attributes)`` for *x*, or ``None`` when empty."""
        pts = self._points
        if not pts:
            return None

        if len(pts) == 1:
            return pts[0].y, pts[0].attributes

        if x < pts[0].x:
            return self._from_segment(x, pts[0], pts[1], pts[0])

        if x > pts[-1].x:
            return self._from_segment(x, pts[-2], pts[-1], pts[-1])

        idx = bisect_right(self._xs(), x)
        if pts[idx - 1].x == x:
            return pts[idx - 1].y, pts[idx - 1].attributes

        return self._from_segment(x, pts[idx - 1], pts[idx], pts[idx])

    def value(self, x: float) -> float | None:
        """Estimated ``y`` only."""
        result = self.estimate(x)
        if result is None:
            return None
        return result[0]

    @property
    def points(self) -> list[Breakpoint]:
        return list(self._points)

    @property
    def start(self) -> float | None:
        return self._points[0].x if self._points else None

    @property
    def end(self) -> float | None:
        return self._points[-1].x if self._points else None

    def __len__(self) -> int:
        return len(self._points)

    def __repr__(self) -> str:
        inner = ', '.join(f'({p.x:g}, {p.y:g})' for p in self._points)
        return f'PiecewiseLinear([{inner}])'

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _xs(self) -> list[float]:
        return [p.x for p in self._points]

    @staticmethod
    def _from_segment(
        x: float,
        lo: Breakpoint,
        hi: Breakpoint,
        named: Breakpoint,
    ) -> tuple[float, dict[str, Any] | None]:
        y = lo.y + (hi.y - lo.y) * (x - lo.x) / (hi.x - lo.x)
        return y, named.attributes
