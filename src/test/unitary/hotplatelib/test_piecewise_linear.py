import pytest

from hotplatelib.piecewise_linear import PiecewiseLinear


def _curve() -> PiecewiseLinear:
    return PiecewiseLinear([(0.0, 0.0), (10.0, 10.0), (20.0, 40.0), (30.0, 90.0)])


def test_estimate_interpolates_and_extrapolates() -> None:
    curve = _curve()
    assert curve.value(15.0) == pytest.approx(25.0)
    assert curve.value(25.0) == pytest.approx(65.0)
    assert curve.value(-5.0) == pytest.approx(-5.0)
    assert curve.value(35.0) == pytest.approx(115.0)


@pytest.mark.parametrize('x,y', [(0.0, 0.0), (10.0, 10.0), (20.0, 40.0), (30.0, 90.0)])
def test_estimate_returns_stored_value_at_breakpoints(x: float, y: float) -> None:
    assert _curve().value(x) == y


def test_empty_curve_has_no_estimate() -> None:
    curve = PiecewiseLinear()
    assert curve.estimate(1.0) is None
    assert curve.value(1.0) is None
    assert curve.start is None
    assert curve.end is None


def test_single_point_is_constant() -> None:
    curve = PiecewiseLinear().add(5.0, 42.0, {'name': 'only'})
    assert curve.estimate(-100.0) == (42.0, {'name': 'only'})
    assert curve.estimate(100.0) == (42.0, {'name': 'only'})


def test_add_replaces_point_with_same_x() -> None:
    curve = PiecewiseLinear()
    curve.add(1.0, 10.0, {'name': 'old'}).add(2.0, 20.0).add(3.0, 30.0)
    curve.add(2.0, 25.0)

    assert len(curve) == 3
    assert [p.x for p in curve.points] == [1.0, 2.0, 3.0]
    replaced = curve.points[1]
    assert replaced.y == 25.0
    assert replaced.attributes is None

    curve.add(1.0, 11.0)
    assert curve.points[0].attributes is None


def test_add_keeps_points_sorted() -> None:
    curve = PiecewiseLinear([(3.0, 3.0), (1.0, 1.0), (2.0, 2.0)])
    assert [p.x for p in curve.points] == [1.0, 2.0, 3.0]
    assert curve.start == 1.0
    assert curve.end == 3.0


def test_attributes_follow_segment_rule() -> None:
    curve = PiecewiseLinear()
    curve.add_named(0.0, 0.0, 'low').add_named(10.0, 10.0, 'mid').add_named(20.0, 40.0, 'high')

    assert curve.estimate(-1.0)[1] == {'name': 'low'}
    assert curve.estimate(5.0)[1] == {'name': 'mid'}
    assert curve.estimate(15.0)[1] == {'name': 'high'}
    assert curve.estimate(25.0)[1] == {'name': 'high'}
    assert curve.estimate(10.0)[1] == {'name': 'mid'}


def test_set_named_moves_named_point() -> None:
    curve = PiecewiseLinear()
    curve.add(0.0, 0.0).add_named(5.0, 5.0, 'ambient').add(10.0, 10.0)
    curve.set_named(6.0, 8.0, 'ambient')

    assert len(curve) == 3
    assert [p.x for p in curve.points] == [0.0, 6.0, 10.0]
    assert curve.value(6.0) == 8.0


def test_records_round_trip_in_ascending_order() -> None:
    records = [
        {'resistance': 2.0, 'temperature': 225.0},
        {'resistance': 1.0, 'temperature': 25.0},
        {'temperature': 100.0},
    ]
    curve = PiecewiseLinear.from_records(records, 'resistance', 'temperature')
    assert len(curve) == 2

    out = curve.to_records('resistance', 'temperature')
    assert out == [
        {'resistance': 1.0, 'temperature': 25.0},
        {'resistance': 2.0, 'temperature': 225.0},
    ]
    again = PiecewiseLinear.from_records(out, 'resistance', 'temperature')
    assert again.value(1.5) == pytest.approx(125.0)
