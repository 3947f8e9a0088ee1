#
# ABOUT
# Derivative-free N-dimensional minimiser used for offline tuning of
# predictor and controller parameters. Evaluates the objective over a
# regular grid, re-centres and shrinks the search bounds around the best
# point and repeats until every dimension has converged. Grid evaluation
# can be spread across forked worker processes.

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

import itertools
import logging
import multiprocessing
import os
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from hotplatelib.errors import InvalidBounds, ParameterError, SearchDepthExceeded

if TYPE_CHECKING:
    from multiprocessing.connection import Connection
    from multiprocessing.process import BaseProcess


_log: Final[logging.Logger] = logging.getLogger(__name__)

Objective = Callable[[list[float]], float]

DEFAULT_STEPS: Final[int] = 30
MIN_STEPS: Final[int] = 4
DEFAULT_THRESHOLD: Final[float] = 0.001
DEFAULT_DEPTH: Final[int] = 100

_ACCELERATION: Final[float] = 5.0
"""Step multiplier when bounds are widened on the same side twice running."""


@dataclass(slots=True)
class _Bound:
    lo: float
    hi: float
    extended: int = 0   # -1 widened below last pass, +1 above, 0 neither

    @property
    def range(self) -> float:
        return self.hi - self.lo


@dataclass(slots=True)
class _GridResult:
    best: list[float]
    best_y: float
    worst_y: float


@dataclass(slots=True)
class _Worker:
    process: BaseProcess
    conn: Connection


def count_cores() -> int:
    """Number of CPUs available for parallel grid evaluation."""
    return os.cpu_count() or 1


# ---------------------------------------------------------------------------
# Grid evaluation
# ---------------------------------------------------------------------------

def _precise_steps(lower: float, upper: float, steps: int) -> list[float]:
    """Return ``steps + 1`` grid values with both end points exact.

    Values are counted in from each end so rounding error never pushes the
    outermost interior points past the bounds.
    """
    values = [lower] * (steps + 1)
    values[steps] = upper
    span = upper - lower
    for i in range(steps >> 1, 0, -1):
        offset = i * span / steps
        values[i] = lower + offset
        values[steps - i] = upper - offset
    return values


def _grid_search(
    objective: Objective,
    bounds: Sequence[tuple[float, float]],
    steps: Sequence[int],
) -> _GridResult:
    args = [lo for lo, _ in bounds]
    best = list(args)
    best_y = objective(list(args))
    worst_y = best_y

    axes = [_precise_steps(lo, hi, n) for (lo, hi), n in zip(bounds, steps, strict=True)]
    for point in itertools.product(*axes):
        args = list(point)
        y = objective(args)
        if y < best_y:
            best_y = y
            best = args
        if y > worst_y:
            worst_y = y

    return _GridResult(best=best, best_y=best_y, worst_y=worst_y)


# ---------------------------------------------------------------------------
# Worker processes
# ---------------------------------------------------------------------------

def _worker_loop(objective: Objective, conn: Connection) -> None:
    while True:
        task = conn.recv()
        if task is None:
            break
        bounds, steps = task
        local = _grid_search(objective, bounds, steps)
        conn.send((local.best, local.best_y, local.worst_y))
    conn.close()


def _spawn_workers(objective: Objective, count: int) -> list[_Worker]:
    ctx = multiprocessing.get_context('fork')
    workers: list[_Worker] = []
    _log.debug('Spawning %d optimiser workers', count)
    for _ in range(count):
        parent_conn, child_conn = ctx.Pipe()
        process = ctx.Process(target=_worker_loop, args=(objective, child_conn), daemon=True)
        process.start()
        child_conn.close()
        workers.append(_Worker(process=process, conn=parent_conn))
    return workers


def _shutdown_workers(workers: list[_Worker]) -> None:
    for worker in workers:
        try:
            worker.conn.send(None)
        except (BrokenPipeError, OSError):
            _log.debug('Worker %s already gone', worker.process.pid)
    for worker in workers:
        worker.process.join()
        worker.conn.close()


def _split_bounds(
    bounds: Sequence[tuple[float, float]],
    steps: Sequence[int],
    count: int,
) -> list[tuple[list[tuple[float, float]], list[int]]]:
    """Partition the widest dimension into at most *count* adjacent sub-grids.

    The grid points of that dimension are dealt out in contiguous runs, so
    the sub-grids together cover exactly the points of the serial grid,
    upper bound included. Runs that would be empty are dropped.
    """
    widest = 0
    widest_range = 0.0
    for i, (lo, hi) in enumerate(bounds):
        if hi - lo > widest_range:
            widest_range = hi - lo
            widest = i

    lo, hi = bounds[widest]
    points = _precise_steps(lo, hi, steps[widest])
    n = len(points)

    tasks: list[tuple[list[tuple[float, float]], list[int]]] = []
    for k in range(count):
        first = k * n // count
        last = (k + 1) * n // count - 1
        if last < first:
            continue
        sub_bounds = list(bounds)
        sub_steps = list(steps)
        sub_bounds[widest] = (points[first], points[last])
        sub_steps[widest] = last - first
        tasks.append((sub_bounds, sub_steps))
    return tasks


def _task_workers(
    workers: list[_Worker],
    bounds: Sequence[tuple[float, float]],
    steps: Sequence[int],
) -> _GridResult:
    tasks = _split_bounds(bounds, steps, len(workers))
    busy = workers[:len(tasks)]
    for worker, task in zip(busy, tasks, strict=True):
        worker.conn.send(task)

    first, *rest = busy
    result = _GridResult(*first.conn.recv())
    for worker in rest:
        local = _GridResult(*worker.conn.recv())
        if local.best_y < result.best_y:
            result.best = local.best
            result.best_y = local.best_y
        if local.worst_y > result.worst_y:
            result.worst_y = local.worst_y
    return result


# ---------------------------------------------------------------------------
# Bounds adaptation
# ---------------------------------------------------------------------------

def _next_bound(
    best: float,
    bound: _Bound,
    step: float,
    steps: int,
    lower: float | None,
    upper: float | None,
) -> _Bound:
    bottom = best - step
    top = best + step
    extended = bound.extended

    if bottom < bound.lo:
        if extended < 0:
            step *= _ACCELERATION
        bottom -= step * (steps - 2)
        # nudge the top as well so the next pass is more likely to land inside
        top += step
        extended = -1
    elif top > bound.hi:
        if extended > 0:
            step *= _ACCELERATION
        top += step * (steps - 2)
        bottom -= step
        extended = 1

    if lower is not None and bottom < lower:
        bottom = lower
        extended = 0
    if upper is not None and top > upper:
        top = upper
        extended = 0

    return _Bound(bottom, top, extended)


def _per_dimension(value, n: int, default, name: str) -> list:
    if value is None:
        return [default] * n
    if isinstance(value, (int, float)):
        return [value] * n
    values = list(value)
    if len(values) != n:
        raise ParameterError(f'{name} has {len(values)} entries for {n} dimensions')
    return [default if v is None else v for v in values]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def minimize(
    objective: Objective,
    bounds: Sequence[tuple[float, float]],
    *,
    steps: int | Sequence[int | None] = DEFAULT_STEPS,
    threshold: float | Sequence[float | None] = DEFAULT_THRESHOLD,
    lower_constraint: Sequence[float | None] | None = None,
    upper_constraint: Sequence[float | None] | None = None,
    y_threshold: float | None = None,
    depth: int = DEFAULT_DEPTH,
    parallel: int | None = None,
) -> list[float]:
    """Find the argument vector minimising *objective* by adaptive grid search.

    Each iteration evaluates ``objective`` on a ``steps + 1`` point grid per
    dimension. The bounds are then re-centred on the best point, one grid
    step either side. When the best point sits on an edge the bounds are
    widened past that edge instead, so minima outside the initial bounds can
    still be found unless a hard constraint stops the drift.

    Args:
        objective: Callable taking a list of floats and returning a cost.
            Must be free of side effects that matter across processes.
        bounds: ``(lo, hi)`` initial search range per dimension.
        steps: Grid resolution, scalar or per dimension (minimum 4).
        threshold: Convergence width, scalar or per dimension.
        lower_constraint: Optional hard lower limit per dimension.
        upper_constraint: Optional hard upper limit per dimension.
        y_threshold: Stop early once the best cost is at or below this.
        depth: Maximum number of iterations.
        parallel: Worker process count; defaults to the number of cores.
            ``1`` evaluates in-process.

    Returns:
        The best argument vector found.

    Raises:
        InvalidBounds: If any ``lo > hi`` or any resolution is below 4.
        ParameterError: If a threshold or the depth is not positive.
        SearchDepthExceeded: If *depth* iterations pass without convergence.
    """
    n = len(bounds)
    if n == 0:
        raise InvalidBounds('at least one search dimension is required')

    state: list[_Bound] = []
    for i, bound in enumerate(bounds):
        lo, hi = float(bound[0]), float(bound[1])
        if lo > hi:
            raise InvalidBounds(f'bounds[{i}] is out of order: [{lo}, {hi}]')
        state.append(_Bound(lo, hi))

    step_counts = [int(s) for s in _per_dimension(steps, n, DEFAULT_STEPS, 'steps')]
    for i, s in enumerate(step_counts):
        if s < MIN_STEPS:
            raise InvalidBounds(f'invalid steps for dimension {i}: {s}, must be at least {MIN_STEPS}')

    thresholds = [float(t) for t in _per_dimension(threshold, n, DEFAULT_THRESHOLD, 'threshold')]
    for i, t in enumerate(thresholds):
        if t <= 0.0:
            raise ParameterError(f'invalid threshold for dimension {i}: {t}, must be positive')

    if depth <= 0:
        raise ParameterError(f'invalid depth: {depth}, must be positive')

    lower = _per_dimension(lower_constraint, n, None, 'lower_constraint')
    upper = _per_dimension(upper_constraint, n, None, 'upper_constraint')

    if parallel is None:
        parallel = count_cores()
    if parallel > 1 and 'fork' not in multiprocessing.get_all_start_methods():
        _log.warning('fork start method unavailable; optimising in a single process')
        parallel = 1

    started = time.monotonic()
    workers = _spawn_workers(objective, parallel) if parallel > 1 else []

    try:
        remaining = depth
        while remaining > 0:
            remaining -= 1
            current = [(b.lo, b.hi) for b in state]
            _log.debug(
                'limits: %s',
                ', '.join(f'[{lo:.6f}, {hi:.6f}]' for lo, hi in current),
            )

            if workers:
                result = _task_workers(workers, current, step_counts)
            else:
                result = _grid_search(objective, current, step_counts)

            ranges = [b.range for b in state]
            converged = all(r <= t for r, t in zip(ranges, thresholds, strict=True))
            if converged or (y_threshold is not None and result.best_y <= y_threshold):
                _log.info(
                    'Minimum found at [%s], cost=%.6g after %d iteration(s), %.3f s',
                    ', '.join(f'{v:.6f}' for v in result.best),
                    result.best_y, depth - remaining, time.monotonic() - started,
                )
                return result.best

            state = [
                _next_bound(result.best[i], b, ranges[i] / step_counts[i], step_counts[i], lower[i], upper[i])
                for i, b in enumerate(state)
            ]
            _log.debug(
                'best-y: %.6g, worst-y: %.6g, depth: %d',
                result.best_y, result.worst_y, remaining,
            )
    finally:
        if workers:
            _shutdown_workers(workers)

    final = [(b.lo, b.hi) for b in state]
    raise SearchDepthExceeded(f'Search depth exceeded after {depth} iterations', bounds=final)
