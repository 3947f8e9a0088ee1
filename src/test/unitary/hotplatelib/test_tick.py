from pathlib import Path

import numpy as np
import pytest

from hotplatelib.tick import Tick, TickHistory


def _history() -> TickHistory:
    history = TickHistory()
    for i in range(6):
        history.append(Tick(now=i * 100.0, temperature=25.0 + 10 * i, device_temperature=200.0 - 30 * i))
    history.append(Tick(now=250.0, event='keyEvent'))
    return history


def test_history_is_index_addressed() -> None:
    history = TickHistory()
    assert history.append(Tick(now=0.0)) == 0
    assert history.append(Tick(now=1.5)) == 1
    assert len(history) == 2
    assert history[1].now == 1.5
    assert history.previous(1) is history[0]
    assert history.previous(0) is None


def test_timer_ticks_skip_other_events() -> None:
    history = _history()
    assert len(history) == 7
    assert len(history.timer_ticks()) == 6


def test_column_uses_nan_for_missing_values() -> None:
    history = TickHistory([Tick(temperature=20.0), Tick(), Tick(temperature=30.0)])
    column = history.column('temperature')
    assert column[0] == 20.0
    assert np.isnan(column[1])
    assert history.column('predict-temperature').shape == (3,)
    with pytest.raises(KeyError):
        history.column('nonsense')


def test_filter_samples_drops_cool_down_tail() -> None:
    # now < 240 or device temperature > 120
    # device temperatures: 200, 170, 140, 110, 80, 50
    filtered = _history().filter_samples()
    assert [t.now for t in filtered] == [0.0, 100.0, 200.0]


def test_csv_round_trip(tmp_path: Path) -> None:
    history = _history()
    history[0].predict_temperature = 24.5
    path = tmp_path / 'run.csv'
    history.save_csv(str(path))

    header = path.read_text(encoding='utf-8').splitlines()[0]
    assert 'predict-temperature' in header

    loaded = TickHistory.load_csv(str(path))
    assert len(loaded) == len(history)
    assert loaded[0].predict_temperature == 24.5
    assert loaded[1].predict_temperature is None
    assert loaded[6].event == 'keyEvent'
    assert loaded[3].device_temperature == pytest.approx(110.0)


def test_load_csv_accepts_underscored_and_unknown_columns(tmp_path: Path) -> None:
    path = tmp_path / 'log.csv'
    path.write_text(
        'now,now_temperature,device-temperature,stage\n'
        '0,25,24.5,preheat\n'
        '1.5,26,,preheat\n',
        encoding='utf-8',
    )
    history = TickHistory.load_csv(str(path))
    assert len(history) == 2
    assert history[1].now_temperature == 26.0
    assert history[1].device_temperature is None
    assert history[0].is_timer


def test_load_csv_reports_bad_values(tmp_path: Path) -> None:
    path = tmp_path / 'bad.csv'
    path.write_text('now,temperature\n0,hot\n', encoding='utf-8')
    with pytest.raises(ValueError, match='bad value'):
        TickHistory.load_csv(str(path))
