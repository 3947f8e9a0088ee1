#
# ABOUT
# Offline tuning tool for hotplate predictors and thermal calibration.
# Fits predictor parameters against a logged run, replays logged runs
# through a fitted predictor and measures steady-state thermal resistance.

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

import argparse
import json
import logging
import sys
from typing import Any, Final

import numpy as np

from hotplatelib.calibration import CalibrationData
from hotplatelib.errors import HotplateError, SearchDepthExceeded
from hotplatelib.optimizer import count_cores
from hotplatelib.predictors import Predictor, PredictorKind, create_predictor
from hotplatelib.rtd import RTDTemperatureEstimator
from hotplatelib.thermal_fitting import estimate_steady_state, thermal_resistance_from_steady_state
from hotplatelib.tick import TickHistory


_log: Final[logging.Logger] = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_history(path: str, calibration_path: str | None) -> TickHistory:
    """Load a logged run, estimating temperatures where the log has none."""
    history = TickHistory.load_csv(path)
    if calibration_path is None:
        return history

    calibration = CalibrationData.load(calibration_path)
    rtd = RTDTemperatureEstimator(calibration.temperature_curve(), calibration.limits)
    for tick in history:
        if tick.temperature is None:
            rtd.estimate(tick)
    return history


def _load_params(path: str) -> dict[str, Any]:
    with open(path, encoding='utf-8') as fh:
        data = json.load(fh)
    if isinstance(data, dict) and 'predictor' in data and 'kind' not in data:
        # full calibration file
        data = data['predictor']
    if not isinstance(data, dict) or 'kind' not in data:
        raise ValueError(f'{path}: no predictor kind found')
    return data


def _rmse(history: TickHistory, prediction: str, expected: str) -> float:
    predicted = history.column(prediction)
    reference = history.column(expected)
    mask = ~(np.isnan(predicted) | np.isnan(reference))
    if not np.any(mask):
        raise ValueError(f'no ticks have both {prediction} and {expected}')
    return float(np.sqrt(np.mean((predicted[mask] - reference[mask]) ** 2)))


def _print_params(predictor: Predictor) -> None:
    params = predictor.parameters()
    header = f'{"Parameter":<24} {"Value":>12}'
    print(header)
    print('-' * len(header))
    for name, value in params.items():
        if name == 'kind':
            continue
        print(f'{name:<24} {value:>12.6f}')


# ---------------------------------------------------------------------------
# Subcommand: tune
# ---------------------------------------------------------------------------

def _cmd_tune(args: argparse.Namespace) -> int:
    """Fit predictor parameters against a logged run."""
    history = _load_history(args.history, args.calibration)
    print(f'Loaded {len(history)} ticks from {args.history}')

    predictor = create_predictor(args.predictor)
    print(f'Tuning {args.predictor} predictor with {args.parallel} worker(s)...')

    try:
        tuned = predictor.tune(history, parallel=args.parallel, depth=args.depth)
    except SearchDepthExceeded as exc:
        print(f'Error: {exc}', file=sys.stderr)
        for i, (lo, hi) in enumerate(exc.bounds):
            print(f'  dimension {i}: [{lo:.6f}, {hi:.6f}]', file=sys.stderr)
        return 1

    if not tuned:
        print('Nothing to tune for this predictor.')
    print()
    _print_params(predictor)

    params = predictor.parameters()
    with open(args.output, 'w', encoding='utf-8') as fh:
        json.dump(params, fh, indent=2)
    print(f'\nParameters saved to: {args.output}')
    return 0


# ---------------------------------------------------------------------------
# Subcommand: replay
# ---------------------------------------------------------------------------

def _cmd_replay(args: argparse.Namespace) -> int:
    """Replay a logged run through a fitted predictor and report the error."""
    history = _load_history(args.history, args.calibration)
    params = _load_params(args.params)
    predictor = create_predictor(params['kind'], **params)
    print(f'Replaying {len(history)} ticks through {predictor!r}')

    predictor.reset()
    for tick in history.timer_ticks():
        predictor.predict(tick)

    rmse = _rmse(history, 'predict_temperature', args.expected)
    print(f'RMSE:        {rmse:.4f} C')

    if args.output:
        history.save_csv(args.output)
        print(f'Replayed history saved to: {args.output}')

    if args.plot:
        _plot_replay(history, args.expected, rmse)
    return 0


def _plot_replay(history: TickHistory, expected: str, rmse: float) -> None:
    """Show matplotlib figure with element, predicted and reference temperature."""
    try:
        import matplotlib.pyplot as plt
    except ImportError:
        print('Warning: matplotlib not available, skipping plot.',
              file=sys.stderr)
        return

    try:
        time_min = history.column('now') / 60.0
        fig, ax = plt.subplots(figsize=(12, 6))
        fig.suptitle(f'Predictor replay (RMSE={rmse:.2f} C)', fontsize=14)
        ax.plot(time_min, history.column('temperature'), 'g-', label='Element', linewidth=1.0)
        ax.plot(time_min, history.column('predict_temperature'), 'r--', label='Predicted', linewidth=1.5)
        ax.plot(time_min, history.column(expected), 'b-', label='Reference', linewidth=1.5)
        ax.set_xlabel('Time (min)')
        ax.set_ylabel('Temperature (C)')
        ax.legend(loc='lower right')
        ax.grid(True, alpha=0.3)

        plt.tight_layout()
        plt.show()
    except Exception as exc:
        print(f'Warning: Could not display plot: {exc}', file=sys.stderr)


# ---------------------------------------------------------------------------
# Subcommand: rth
# ---------------------------------------------------------------------------

def _cmd_rth(args: argparse.Namespace) -> int:
    """Estimate thermal resistance to ambient from the tail of a hold."""
    history = _load_history(args.history, args.calibration)
    ticks = history.timer_ticks()
    if not ticks:
        print('Error: no timer ticks in history', file=sys.stderr)
        return 1

    end = ticks[-1].now
    tail = [t for t in ticks if t.now >= end - args.window]
    estimate = estimate_steady_state(tail, horizon=args.horizon)

    ambient = args.ambient
    if ambient is None:
        ambient = tail[0].ambient if tail[0].ambient is not None else 25.0
    rth = thermal_resistance_from_steady_state(estimate.power, estimate.temperature, ambient)

    print(f'Samples:     {len(tail)}')
    print(f'Power:       {estimate.power:.3f} W')
    print(f'Temperature: {estimate.temperature:.2f} C')
    print(f'Ambient:     {ambient:.2f} C')
    print(f'R_th:        {rth:.4f} K/W')
    return 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build the top-level argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog='hotplate-tune',
        description='Offline tuning of hotplate predictors and thermal calibration.',
    )
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help='Enable verbose (DEBUG) logging.',
    )

    sub = parser.add_subparsers(dest='command', required=True,
                                help='Available subcommands')

    # ── tune ───────────────────────────────────────────────────────────
    p_tune = sub.add_parser(
        'tune',
        help='Fit predictor parameters against a logged run.',
    )
    p_tune.add_argument(
        'history',
        help='CSV log of a run with a reference device temperature.',
    )
    p_tune.add_argument(
        '--predictor', default=PredictorKind.TWO_STAGE.value,
        choices=[k.value for k in PredictorKind],
        help='Predictor to tune (default: two-stage).',
    )
    p_tune.add_argument(
        '--calibration',
        help='Calibration JSON used to estimate missing temperatures.',
    )
    p_tune.add_argument(
        '-o', '--output', default='predictor.json',
        help='Output path for the fitted parameters (default: predictor.json).',
    )
    p_tune.add_argument(
        '--parallel', type=int, default=count_cores(),
        help='Worker processes for the optimiser (default: number of cores).',
    )
    p_tune.add_argument(
        '--depth', type=int, default=100,
        help='Maximum optimiser iterations per stage (default: 100).',
    )

    # ── replay ─────────────────────────────────────────────────────────
    p_replay = sub.add_parser(
        'replay',
        help='Replay a logged run through fitted predictor parameters.',
    )
    p_replay.add_argument(
        'history',
        help='CSV log of a run.',
    )
    p_replay.add_argument(
        '--params', required=True,
        help='Predictor parameters or calibration JSON.',
    )
    p_replay.add_argument(
        '--calibration',
        help='Calibration JSON used to estimate missing temperatures.',
    )
    p_replay.add_argument(
        '--expected', default='device-temperature',
        help='Reference column for the error report (default: device-temperature).',
    )
    p_replay.add_argument(
        '-o', '--output',
        help='Write the replayed history with predictions to this CSV.',
    )
    p_replay.add_argument(
        '--plot', action='store_true',
        help='Show element, predicted and reference temperature (requires matplotlib).',
    )

    # ── rth ────────────────────────────────────────────────────────────
    p_rth = sub.add_parser(
        'rth',
        help='Estimate thermal resistance from the tail of a temperature hold.',
    )
    p_rth.add_argument(
        'history',
        help='CSV log ending in a temperature hold.',
    )
    p_rth.add_argument(
        '--calibration',
        help='Calibration JSON used to estimate missing temperatures.',
    )
    p_rth.add_argument(
        '--window', type=float, default=240.0,
        help='Seconds at the end of the log to use (default: 240).',
    )
    p_rth.add_argument(
        '--horizon', type=float, default=60.0,
        help='Seconds past the last sample to extrapolate (default: 60).',
    )
    p_rth.add_argument(
        '--ambient', type=float,
        help='Ambient temperature; taken from the log by default.',
    )

    return parser


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

_COMMANDS = {
    'tune':   _cmd_tune,
    'replay': _cmd_replay,
    'rth':    _cmd_rth,
}


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.  Returns an exit code (0 = success)."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(levelname)s: %(name)s: %(message)s',
    )

    handler = _COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except FileNotFoundError as exc:
        print(f'Error: {exc}', file=sys.stderr)
        return 1
    except (ValueError, HotplateError) as exc:
        print(f'Error: {exc}', file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print('\nInterrupted.', file=sys.stderr)
        return 130


if __name__ == '__main__':
    sys.exit(main())
