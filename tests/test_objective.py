import math

import pytest

from techroute.estimator import DistanceMatrix
from techroute.feasibility import schedule_route
from techroute.instance import RoutingInstance
from techroute.models import ObjectiveWeights, ServiceJob, Technician, parse_request
from techroute.objective import Objective, route_cost, route_efficiency


def make_job(id, priority="medium", window=None):
    job = {
        "id": id,
        "location": {"lat": 52.23, "lng": 20.98},
        "district": "Wola",
        "priority": priority,
        "durationMinutes": 30,
    }
    if window:
        job["timeWindow"] = {"start": window[0], "end": window[1]}
    return ServiceJob.model_validate(job)


def make_instance(jobs, capacities=(1, 1), hours=("08:00", "17:00"), prioritize_urgent=True):
    technicians = [
        Technician.model_validate({"id": tid, "districts": ["Wola"], "workingHours": {"start": hours[0], "end": hours[1]}})
        for tid in ("A", "B")
    ]
    # Every leg is 10 minutes and 5 km.
    n = len(technicians) + len(jobs)
    durations = [[0.0 if i == j else 10.0 for j in range(n)] for i in range(n)]
    distances = [[0.0 if i == j else 5.0 for j in range(n)] for i in range(n)]
    return RoutingInstance(
        technicians=technicians,
        jobs=list(jobs),
        matrix=DistanceMatrix(distances, durations),
        capacities=list(capacities),
        eligible=[(0, 1)] * len(jobs),
        prioritize_urgent=prioritize_urgent,
    )


def test_lateness_counts_for_urgent_and_high_only():
    jobs = [
        make_job("J1", "urgent", ("08:00", "08:05")),
        make_job("J2", "high", ("08:00", "08:05")),
        make_job("J3", "medium", ("08:00", "08:05")),
    ]
    inst = make_instance(jobs)
    objective = Objective(inst)
    # Arrival at 08:10 is five minutes past each window.
    urgent, high, medium = (schedule_route(inst, 0, [j]) for j in range(3))
    assert urgent.lateness == (5.0,)
    assert objective.lateness_penalty(urgent) == pytest.approx(5 / 60 * 2)
    assert objective.lateness_penalty(high) == pytest.approx(5 / 60 * 1)
    assert objective.lateness_penalty(medium) == 0.0


def test_evaluate_combines_weighted_terms():
    jobs = [
        make_job("J1", "urgent", ("08:00", "08:05")),
        make_job("J2", "medium"),
        make_job("J3", "high"),
    ]
    inst = make_instance(jobs, capacities=(1, 1))
    objective = Objective(inst, ObjectiveWeights(priority=1000, capacity=100, workload=1))
    # A runs two jobs over a capacity of one; B stays home; J3 is unassigned.
    schedules = [schedule_route(inst, 0, [0, 1]), schedule_route(inst, 1, [])]
    evaluation = objective.evaluate(schedules, [2])

    assert evaluation.travel == 30.0
    assert evaluation.priority_violation == pytest.approx(4 + 5 / 60 * 2)
    assert evaluation.capacity_violation == 1.0
    # Route durations 90 and 0 minutes; the idle technician counts.
    assert evaluation.workload_imbalance == pytest.approx(45.0)
    assert evaluation.value == pytest.approx(30 + 1000 * (4 + 5 / 60 * 2) + 100 + 45)


def test_unassigned_weights_follow_priority():
    jobs = [make_job("J1", "urgent"), make_job("J2", "high"), make_job("J3", "medium"), make_job("J4", "low")]
    objective = Objective(make_instance(jobs))
    assert [objective.unassigned_weight(j) for j in range(4)] == [8.0, 4.0, 2.0, 1.0]

    flat = Objective(make_instance(jobs, prioritize_urgent=False))
    assert [flat.unassigned_weight(j) for j in range(4)] == [1.0, 1.0, 1.0, 1.0]


def test_scorer_is_added_to_objective():
    inst = make_instance([make_job("J1"), make_job("J2")])
    seen = []

    def scorer(assignment):
        seen.append(assignment)
        return 12.5

    base = Objective(inst)
    scored = Objective(inst, scorer=scorer)
    schedules = [schedule_route(inst, 0, [0]), schedule_route(inst, 1, [1])]
    assert scored.evaluate(schedules, []).value == pytest.approx(base.evaluate(schedules, []).value + 12.5)
    assert seen == [{"A": ["J1"], "B": ["J2"]}]


def test_non_finite_score_drops_the_scorer():
    inst = make_instance([make_job("J1")])
    objective = Objective(inst, scorer=lambda assignment: math.nan)
    schedules = [schedule_route(inst, 0, [0]), schedule_route(inst, 1, [])]
    evaluation = objective.evaluate(schedules, [])
    assert evaluation.external == 0.0
    assert objective.scorer is None
    assert objective.generation == 1
    assert "non-finite" in objective.degraded_reason


def test_route_efficiency_is_clamped():
    inst = make_instance([make_job("J1")])
    schedule = schedule_route(inst, 0, [0])
    assert route_efficiency(schedule, inst.technicians[0]) == pytest.approx(1 - 20 / 540)

    short = make_instance([make_job("J1")], hours=("08:00", "08:10"))
    schedule = schedule_route(short, 0, [0])
    assert schedule.travel_min > short.technicians[0].working_hours.length
    assert route_efficiency(schedule, short.technicians[0]) == 0.0


def test_route_cost_uses_vehicle_profiles():
    request = parse_request(
        {
            "date": "2025-03-10",
            "jobs": [{"id": "J1", "location": {"lat": 52.23, "lng": 20.98}, "district": "Wola"}],
            "technicians": [{"id": "A", "districts": ["Wola"]}],
            "costProfiles": {"van": {"costPerKm": 1.0, "costPerMinute": 0.5}},
        }
    )
    # 10 km over 60 minutes.
    assert route_cost(10, 60, request.cost_profile_for("van")) == pytest.approx(10 + 30)
    assert route_cost(10, 60, request.cost_profile_for("truck")) == pytest.approx(9 + 95)
    assert route_cost(10, 60, request.cost_profile_for("car")) == pytest.approx(4.5 + 70)
    assert route_cost(10, 60, request.cost_profile_for("scooter")) == pytest.approx(6 + 80)
