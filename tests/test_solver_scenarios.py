import math

import pytest

from techroute.control import CancellationToken
from techroute.data import generate_request
from techroute.errors import InputValidationError, ScoringUnavailableError
from techroute.estimator import DistanceEstimator
from techroute.instance import Solution, build_instance
from techroute.models import RunState, UnassignedReason, parse_request
from techroute.solver import RouteOptimizationRun, optimize_many, optimize_routes
from techroute.validator import validate_and_repair

CENTRE = {"lat": 52.2297, "lng": 21.0122}


def make_tech(id, districts, **extra):
    tech = {"id": id, "name": f"Technician {id}", "home": CENTRE, "districts": list(districts)}
    tech.update(extra)
    return tech


def make_job(id, lat, lng, district, priority="medium", duration=45, **extra):
    job = {
        "id": id,
        "location": {"lat": lat, "lng": lng},
        "district": district,
        "priority": priority,
        "durationMinutes": duration,
    }
    job.update(extra)
    return job


ALL_DISTRICTS = ["Śródmieście", "Wola", "Mokotów", "Żoliborz"]


def ten_job_request(**options):
    priorities = ["urgent", "urgent", "high", "high", "high", "high", "medium", "medium", "medium", "medium"]
    spots = [
        (52.2297, 21.0122, "Śródmieście"),
        (52.2300, 20.9800, "Wola"),
        (52.1850, 21.0250, "Mokotów"),
        (52.2700, 21.0000, "Żoliborz"),
        (52.2350, 21.0200, "Śródmieście"),
        (52.2200, 20.9700, "Wola"),
        (52.1900, 21.0100, "Mokotów"),
        (52.2600, 20.9900, "Żoliborz"),
        (52.2400, 21.0050, "Śródmieście"),
        (52.2450, 20.9600, "Wola"),
    ]
    jobs = [make_job(f"J{i + 1:02d}", lat, lng, d, priority=priorities[i]) for i, (lat, lng, d) in enumerate(spots)]
    request = {
        "date": "2025-03-10",
        "technicians": [make_tech(t, ALL_DISTRICTS) for t in ("A", "B", "C")],
        "jobs": jobs,
        "maxJobsPerTechnician": 4,
        "seed": 7,
        "maxIterations": 800,
    }
    request.update(options)
    return request


def assert_invariants(payload, result):
    jobs = {j["id"]: j for j in payload["jobs"]}
    techs = {t["id"]: t for t in payload["technicians"]}
    placed = [s.job_id for r in result.routes for s in r.stops]
    unassigned = [u.job_id for u in result.unassigned_jobs]
    assert sorted(placed + unassigned) == sorted(jobs)
    assert len(set(placed)) == len(placed)
    cap = payload.get("maxJobsPerTechnician")
    for route in result.routes:
        tech = techs[route.technician_id]
        assert len(route.stops) <= (cap or tech.get("maxJobsPerDay", 8))
        for stop in route.stops:
            assert jobs[stop.job_id]["district"] in tech["districts"]
        assert 0.0 <= route.efficiency <= 1.0
    assert result.metrics.objective_value <= result.metrics.initial_objective_value + 1e-6


def test_all_jobs_assigned_across_three_technicians():
    payload = ten_job_request()
    result = optimize_routes(payload)
    assert_invariants(payload, result)
    assert result.unassigned_jobs == []
    placed = {s.job_id for r in result.routes for s in r.stops}
    assert {"J01", "J02"} <= placed
    assert result.metrics.status is RunState.COMPLETED
    assert result.metrics.partial is False
    assert result.metrics.degraded is False
    assert result.metrics.average_jobs_per_technician == pytest.approx(10 / 3, abs=1e-4)


def test_job_outside_service_area_is_unassigned():
    payload = {
        "date": "2025-03-10",
        "technicians": [make_tech("A", ["Wola"])],
        "jobs": [
            make_job("J1", 52.2300, 20.9800, "Wola"),
            make_job("J2", 52.2200, 20.9700, "Wola"),
            make_job("J3", 52.1850, 21.0250, "Mokotów"),
        ],
    }
    result = optimize_routes(payload)
    assert_invariants(payload, result)
    assert [(u.job_id, u.reason) for u in result.unassigned_jobs] == [("J3", UnassignedReason.DISTRICT_MISMATCH)]
    route = result.routes[0]
    assert route.district_coverage == ["Wola"]
    assert route.stops[0].arrival_estimate >= "08:00"


def test_capacity_one_with_three_urgent_jobs():
    payload = {
        "date": "2025-03-10",
        "technicians": [make_tech("A", ["Wola"]), make_tech("B", ["Wola"])],
        "jobs": [
            make_job("J1", 52.2300, 20.9800, "Wola", priority="urgent"),
            make_job("J2", 52.2200, 20.9700, "Wola", priority="urgent"),
            make_job("J3", 52.2450, 20.9600, "Wola", priority="urgent"),
        ],
        "maxJobsPerTechnician": 1,
    }
    result = optimize_routes(payload)
    assert_invariants(payload, result)
    assert sorted(len(r.stops) for r in result.routes) == [1, 1]
    assert len(result.unassigned_jobs) == 1
    assert result.unassigned_jobs[0].reason is UnassignedReason.CAPACITY_EXHAUSTED


def test_tiny_budget_returns_valid_partial_result():
    payload = generate_request(3, n_jobs=25, n_technicians=3, date="2025-03-10", timeBudgetMs=1)
    result = optimize_routes(payload)
    assert_invariants(payload, result)
    assert result.metrics.partial is True
    assert result.metrics.status is RunState.TIMED_OUT
    assert result.routes


def test_missing_traffic_provider_degrades_gracefully():
    payload = ten_job_request(realTimeTraffic=True)
    result = optimize_routes(payload)
    assert_invariants(payload, result)
    assert result.metrics.degraded is True
    assert any("traffic provider" in reason for reason in result.metrics.degraded_reasons)
    for route in result.routes:
        assert math.isfinite(route.total_distance_km) and route.total_distance_km > 0


def test_traffic_provider_slows_routes():
    base = optimize_routes(ten_job_request(realTimeTraffic=True))
    slowed = optimize_routes(ten_job_request(realTimeTraffic=True), traffic_provider=lambda o, d, c: 2.0)
    assert slowed.metrics.degraded is False
    base_travel = sum(r.travel_duration_min for r in base.routes)
    slowed_travel = sum(r.travel_duration_min for r in slowed.routes)
    assert slowed_travel > base_travel


def test_same_seed_gives_identical_routes():
    first = optimize_routes(ten_job_request(seed=99))
    second = optimize_routes(ten_job_request(seed=99))
    assert [[s.job_id for s in r.stops] for r in first.routes] == [[s.job_id for s in r.stops] for r in second.routes]
    assert first.metrics.objective_value == second.metrics.objective_value


def test_genetic_algorithm_run():
    payload = ten_job_request(algorithm="genetic", genetic={"populationSize": 10, "eliteCount": 2, "generations": 15})
    result = optimize_routes(payload)
    assert_invariants(payload, result)
    assert result.metrics.algorithm.value == "genetic"
    assert result.metrics.iterations == 15


def test_ai_enhanced_uses_scorer_and_survives_its_failure():
    calls = []

    def scorer(assignment):
        calls.append(assignment)
        if len(calls) > 5:
            raise ScoringUnavailableError("model endpoint offline")
        return 0.0

    result = optimize_routes(ten_job_request(algorithm="ai_enhanced"), scorer=scorer)
    assert len(calls) == 6
    assert result.metrics.degraded is True
    assert any("model endpoint offline" in r for r in result.metrics.degraded_reasons)
    assert result.unassigned_jobs == []


def test_ai_enhanced_without_scorer_is_degraded():
    result = optimize_routes(ten_job_request(algorithm="ai_enhanced"))
    assert result.metrics.degraded is True
    assert result.unassigned_jobs == []


def test_cancelled_run_reports_partial_result():
    token = CancellationToken()
    token.cancel()
    payload = ten_job_request()
    run = RouteOptimizationRun(parse_request(payload), cancel_token=token)
    result = run.execute()
    assert_invariants(payload, result)
    assert result.metrics.status is RunState.CANCELLED
    assert result.metrics.partial is True
    assert result.metrics.iterations == 0
    assert run.history == [
        RunState.PENDING,
        RunState.CONSTRUCTING,
        RunState.IMPROVING,
        RunState.VALIDATING,
        RunState.CANCELLED,
    ]


def test_technician_subset_is_respected():
    payload = ten_job_request(technicianIds=["B", "C"], maxJobsPerTechnician=5)
    result = optimize_routes(payload)
    assert {r.technician_id for r in result.routes} <= {"B", "C"}
    assert len(result.unassigned_jobs) == 0


def test_optimize_many_keeps_request_order():
    requests = [ten_job_request(date=f"2025-03-1{d}") for d in range(3)]
    results = optimize_many(requests, max_workers=2)
    assert [str(r.date) for r in results] == ["2025-03-10", "2025-03-11", "2025-03-12"]
    for payload, result in zip(requests, results):
        assert_invariants(payload, result)


def test_result_serializes_with_camel_case_keys():
    data = optimize_routes(ten_job_request()).to_dict()
    assert set(data) == {"date", "routes", "unassignedJobs", "metrics"}
    stop = data["routes"][0]["stops"][0]
    assert {"jobId", "arrivalEstimate", "cumulativeDistanceKm", "district"} <= set(stop)
    assert data["metrics"]["status"] == "completed"


@pytest.mark.parametrize(
    "change, message",
    [
        ({"jobs": []}, "No jobs provided"),
        ({"technicians": []}, "No technicians provided"),
        ({"technicianIds": ["Z"]}, "Unknown technician IDs: Z"),
        ({"technicianIds": []}, "No technicians selected"),
    ],
)
def test_unusable_requests_raise(change, message):
    payload = ten_job_request(**change)
    with pytest.raises(InputValidationError) as excinfo:
        optimize_routes(payload)
    assert message in excinfo.value.errors


def test_schema_errors_raise_input_validation_error():
    payload = ten_job_request()
    payload["jobs"][0]["priority"] = "critical"
    with pytest.raises(InputValidationError) as excinfo:
        optimize_routes(payload)
    assert any("priority" in e for e in excinfo.value.errors)


@pytest.mark.parametrize("seed", range(8))
def test_urgent_promotion_never_raises_objective_with_tiny_priority_weight(seed):
    payload = generate_request(
        seed,
        n_jobs=14,
        n_technicians=2,
        date="2025-03-10",
        maxJobsPerTechnician=5,
        weights={"priority": 1e-6},
        maxIterations=600,
    )
    result = optimize_routes(payload)
    assert_invariants(payload, result)
    assert result.metrics.validation_violations == []


def test_zero_priority_weight_is_rejected():
    with pytest.raises(InputValidationError) as excinfo:
        optimize_routes(ten_job_request(weights={"priority": 0}))
    assert any("weights.priority" in e for e in excinfo.value.errors)


def test_validator_violations_are_reported_in_metrics():
    payload = {
        "date": "2025-03-10",
        "technicians": [make_tech("A", ["Wola"])],
        "jobs": [make_job("J1", 52.2300, 20.9800, "Wola", priority="urgent")],
    }
    request = parse_request(payload)
    run = RouteOptimizationRun(request)
    instance = build_instance(request, request.selected_technicians(), DistanceEstimator())
    # The urgent job is left out although the technician is idle.
    report = validate_and_repair(instance, Solution(routes=[[]], unassigned=[0]))
    result = run._shape_result(
        instance,
        report,
        iterations=0,
        objective_value=0.0,
        initial_objective_value=0.0,
        degraded_reasons=[],
        status=RunState.COMPLETED,
    )
    assert len(result.metrics.validation_violations) == 1
    assert "J1" in result.metrics.validation_violations[0]
    assert result.to_dict()["metrics"]["validationViolations"] == result.metrics.validation_violations
