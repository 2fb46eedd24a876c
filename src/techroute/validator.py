"""
Final feasibility pass over an improved solution.

Every invariant is re-checked. Violations are repaired only by evicting the
offending job to the unassigned list; routes are never reordered here.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from techroute.construction import best_insertion
from techroute.feasibility import classify_unplaced, schedule_route
from techroute.instance import RoutingInstance, Solution
from techroute.models import Priority, UnassignedReason

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    solution: Solution
    reasons: Dict[int, UnassignedReason]
    repairs: List[str] = field(default_factory=list)
    violations: List[str] = field(default_factory=list)


def _urgent_has_slot(instance: RoutingInstance, routes: List[List[int]], j: int) -> bool:
    if best_insertion(instance, routes, j) is not None:
        return True
    for t in instance.eligible[j]:
        for pos, k in enumerate(routes[t]):
            if instance.jobs[k].priority is Priority.URGENT:
                continue
            seq = list(routes[t])
            seq[pos] = j
            if schedule_route(instance, t, seq).feasible:
                return True
    return False


def validate_and_repair(instance: RoutingInstance, solution: Solution) -> ValidationReport:
    repairs: List[str] = []
    evicted: Dict[int, UnassignedReason] = {}
    seen = set()
    routes: List[List[int]] = []

    for t, route in enumerate(solution.routes):
        tech = instance.technicians[t]
        kept: List[int] = []
        for j in route:
            job = instance.jobs[j]
            if j in seen:
                repairs.append(f"job {job.id} placed twice; dropped copy from {tech.id}")
                continue
            seen.add(j)
            if not instance.serves(t, j):
                evicted[j] = UnassignedReason.DISTRICT_MISMATCH
                repairs.append(f"job {job.id} ({job.district}) evicted from {tech.id}: district not served")
                continue
            kept.append(j)

        excess = len(kept) - instance.capacities[t]
        if excess > 0:
            # Lowest priority first, later stops first among equals.
            order = sorted(range(len(kept)), key=lambda pos: (instance.jobs[kept[pos]].priority.rank, -pos))
            drop = set(order[:excess])
            for pos in sorted(drop):
                j = kept[pos]
                evicted[j] = UnassignedReason.CAPACITY_EXHAUSTED
                repairs.append(f"job {instance.jobs[j].id} evicted from {tech.id}: over capacity")
            kept = [j for pos, j in enumerate(kept) if pos not in drop]

        while kept:
            schedule = schedule_route(instance, t, kept)
            if schedule.feasible:
                break
            j = kept.pop(schedule.violation_index)
            evicted[j] = UnassignedReason.TIME_WINDOW_VIOLATION
            repairs.append(f"job {instance.jobs[j].id} evicted from {tech.id}: starts after shift end")
        routes.append(kept)

    placed = {j for route in routes for j in route}
    listed = set()
    for j in solution.unassigned:
        if j in placed:
            repairs.append(f"job {instance.jobs[j].id} both placed and unassigned; kept placement")
        listed.add(j)
    missing = [j for j in range(instance.num_jobs) if j not in placed and j not in listed and j not in evicted]
    for j in missing:
        repairs.append(f"job {instance.jobs[j].id} missing from solution; marked unassigned")

    reasons: Dict[int, UnassignedReason] = {}
    for j in range(instance.num_jobs):
        if j in placed:
            continue
        reasons[j] = evicted.get(j) or classify_unplaced(instance, j, routes)

    violations: List[str] = []
    if instance.prioritize_urgent:
        for j in sorted(reasons):
            job = instance.jobs[j]
            if job.priority is Priority.URGENT and _urgent_has_slot(instance, routes, j):
                violations.append(f"urgent job {job.id} unassigned although a feasible slot exists")

    for message in repairs:
        logger.warning("Validator repair: %s", message)
    for message in violations:
        logger.warning("Validator check failed: %s", message)

    unassigned = [j for j in range(instance.num_jobs) if j in reasons]
    return ValidationReport(
        solution=Solution(routes=routes, unassigned=unassigned),
        reasons=reasons,
        repairs=repairs,
        violations=violations,
    )
