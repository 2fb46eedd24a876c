import math

import pytest

from techroute.errors import DistanceProviderError
from techroute.estimator import DistanceEstimator, EstimateContext
from techroute.geo import haversine_km

CENTRE = (52.2297, 21.0122)
WOLA = (52.2300, 20.9800)
MOKOTOW = (52.1850, 21.0250)


def test_estimate_uses_haversine_and_default_speed():
    est = DistanceEstimator(speed_kmph=30.0)
    result = est.estimate(CENTRE, WOLA)
    assert result.distance_km == pytest.approx(haversine_km(CENTRE, WOLA))
    assert result.duration_min == pytest.approx(result.distance_km / 30.0 * 60.0)


def test_identical_points_cost_nothing():
    est = DistanceEstimator()
    assert est.estimate(CENTRE, CENTRE) == (0.0, 0.0)
    assert est.computed_pairs == 0


def test_each_unordered_pair_computed_once():
    est = DistanceEstimator()
    first = est.estimate(CENTRE, WOLA)
    again = est.estimate(WOLA, CENTRE)
    assert first == again
    assert est.computed_pairs == 1


def test_district_speeds_average_both_ends():
    est = DistanceEstimator(speed_kmph=30.0, district_speeds={"Wola": 20.0, "Mokotów": 40.0})
    result = est.estimate(WOLA, MOKOTOW, EstimateContext("Wola", "Mokotów"))
    assert result.duration_min == pytest.approx(result.distance_km / 30.0 * 60.0)

    est = DistanceEstimator(speed_kmph=30.0, district_speeds={"Wola": 20.0})
    result = est.estimate(WOLA, MOKOTOW, EstimateContext("Wola", "Nowhere"))
    assert result.duration_min == pytest.approx(result.distance_km / 20.0 * 60.0)


def test_missing_traffic_provider_degrades_to_heuristic():
    est = DistanceEstimator(speed_kmph=30.0, use_live_traffic=True)
    result = est.estimate(CENTRE, MOKOTOW)
    assert est.degraded
    assert "unavailable" in est.degraded_reason
    assert math.isfinite(result.duration_min) and result.duration_min > 0


def test_traffic_multiplier_slows_travel():
    calls = []

    def provider(origin, destination, context):
        calls.append((origin, destination))
        return 1.5

    est = DistanceEstimator(speed_kmph=30.0, traffic_provider=provider, use_live_traffic=True)
    result = est.estimate(CENTRE, WOLA)
    assert result.duration_min == pytest.approx(result.distance_km / 30.0 * 60.0 * 1.5)
    assert not est.degraded
    assert len(calls) == 1


def test_failing_provider_is_not_called_again():
    calls = []

    def provider(origin, destination, context):
        calls.append(origin)
        raise DistanceProviderError("traffic feed down", provider="city-feed")

    est = DistanceEstimator(traffic_provider=provider, use_live_traffic=True)
    est.estimate(CENTRE, WOLA)
    est.estimate(CENTRE, MOKOTOW)
    assert len(calls) == 1
    assert est.degraded
    assert "traffic feed down" in est.degraded_reason


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), 0.0, -1.0])
def test_invalid_multiplier_degrades(bad):
    est = DistanceEstimator(speed_kmph=30.0, traffic_provider=lambda o, d, c: bad, use_live_traffic=True)
    result = est.estimate(CENTRE, WOLA)
    assert est.degraded
    assert result.duration_min == pytest.approx(result.distance_km / 30.0 * 60.0)


def test_precompute_builds_symmetric_matrix_and_freezes():
    est = DistanceEstimator()
    points = [CENTRE, WOLA, MOKOTOW, WOLA]
    matrix = est.precompute(points, max_workers=3)
    assert matrix.size == 4
    assert est.frozen
    assert est.computed_pairs == 3
    for i in range(4):
        assert matrix.distance(i, i) == 0.0
        for j in range(4):
            assert matrix.distance(i, j) == matrix.distance(j, i)
            assert matrix.duration(i, j) == matrix.duration(j, i)
    assert matrix.distance(1, 3) == 0.0
    assert matrix.distance(0, 1) == pytest.approx(haversine_km(CENTRE, WOLA))


def test_frozen_cache_rejects_new_pairs():
    est = DistanceEstimator()
    est.precompute([CENTRE, WOLA])
    assert est.estimate(WOLA, CENTRE).distance_km > 0
    with pytest.raises(RuntimeError):
        est.estimate(CENTRE, MOKOTOW)


def test_non_positive_speed_rejected():
    with pytest.raises(ValueError):
        DistanceEstimator(speed_kmph=0)
