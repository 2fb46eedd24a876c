"""
Greedy cheapest-insertion construction of the initial solution.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from techroute.control import RunControl
from techroute.feasibility import RouteSchedule, has_capacity, schedule_route
from techroute.instance import RoutingInstance, Solution

logger = logging.getLogger(__name__)

# (cost, resulting route duration, technician id, position), technician, position, schedule
Insertion = Tuple[Tuple[float, float, str, int], int, int, RouteSchedule]


def insertion_order(instance: RoutingInstance) -> List[int]:
    """
    Priority desc, duration desc, id asc. Priority is ignored when urgent jobs
    are not prioritized.
    """

    def key(j: int):
        job = instance.jobs[j]
        rank = job.priority.rank if instance.prioritize_urgent else 0
        return (-rank, -job.duration, job.id)

    return sorted(range(instance.num_jobs), key=key)


def insertion_cost(instance: RoutingInstance, t: int, route: Sequence[int], pos: int, j: int) -> float:
    prev = t if pos == 0 else instance.job_node(route[pos - 1])
    nxt = t if pos == len(route) else instance.job_node(route[pos])
    node = instance.job_node(j)
    return (
        instance.travel_minutes(prev, node)
        + instance.travel_minutes(node, nxt)
        - instance.travel_minutes(prev, nxt)
    )


def best_insertion(instance: RoutingInstance, routes: Sequence[Sequence[int]], j: int) -> Optional[Insertion]:
    """
    Cheapest feasible (technician, position) for job j, or None.
    """
    best: Optional[Insertion] = None
    for t in instance.eligible[j]:
        route = routes[t]
        if not has_capacity(len(route), instance.capacities[t]):
            continue
        tech_id = instance.technicians[t].id
        for pos in range(len(route) + 1):
            candidate = list(route[:pos]) + [j] + list(route[pos:])
            schedule = schedule_route(instance, t, candidate)
            if not schedule.feasible:
                continue
            # Rounded so floating noise does not defeat the tie-breakers.
            key = (round(insertion_cost(instance, t, route, pos, j), 9), round(schedule.duration_min, 9), tech_id, pos)
            if best is None or key < best[0]:
                best = (key, t, pos, schedule)
    return best


def first_fit(instance: RoutingInstance, routes: Sequence[Sequence[int]], j: int) -> Optional[int]:
    """
    First technician (by id) that can take job j at the end of its route.
    """
    for t in instance.eligible[j]:
        route = routes[t]
        if not has_capacity(len(route), instance.capacities[t]):
            continue
        if schedule_route(instance, t, list(route) + [j]).feasible:
            return t
    return None


def construct_initial(instance: RoutingInstance, control: Optional[RunControl] = None) -> Solution:
    """
    Insert jobs one by one at their cheapest feasible position. Once the run is
    cancelled or out of time, remaining jobs are appended first-fit so every
    job still ends up placed or unassigned.
    """
    routes: List[List[int]] = [[] for _ in instance.technicians]
    unassigned: List[int] = []
    fast_path = 0
    for j in insertion_order(instance):
        if control is not None and control.should_stop():
            t = first_fit(instance, routes, j)
            fast_path += 1
            if t is None:
                unassigned.append(j)
            else:
                routes[t].append(j)
            continue
        found = best_insertion(instance, routes, j)
        if found is None:
            unassigned.append(j)
            continue
        _, t, pos, _ = found
        routes[t].insert(pos, j)

    if fast_path:
        logger.info("Construction interrupted; %d jobs placed first-fit", fast_path)
    logger.debug(
        "Constructed %d routes, %d jobs unassigned",
        sum(1 for r in routes if r),
        len(unassigned),
    )
    return Solution(routes=routes, unassigned=unassigned)
