"""
Hard-constraint rules for placing jobs on technicians, and route scheduling.

Hard rules: district affinity, per-technician capacity, and service at every
stop starting no later than the technician's shift end. A job's preferred
time window is soft; lateness is reported, not rejected.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from techroute.instance import RoutingInstance
from techroute.models import ServiceJob, Technician, UnassignedReason


@dataclass(frozen=True)
class RouteSchedule:
    technician: int
    sequence: Tuple[int, ...]
    arrivals: Tuple[float, ...]
    starts: Tuple[float, ...]
    departures: Tuple[float, ...]
    cumulative_km: Tuple[float, ...]
    lateness: Tuple[float, ...]
    travel_min: float
    distance_km: float
    service_min: float
    shift_start: float
    end_minute: float
    overtime_min: float
    violation_index: Optional[int]

    @property
    def feasible(self) -> bool:
        return self.violation_index is None

    @property
    def duration_min(self) -> float:
        """
        Minutes from leaving home to getting back, waits included.
        """
        return self.end_minute - self.shift_start


def serves_district(technician: Technician, job: ServiceJob) -> bool:
    return technician.serves(job.district)


def has_capacity(route_length: int, capacity: int) -> bool:
    return route_length < capacity


def schedule_route(instance: RoutingInstance, t: int, sequence: Sequence[int]) -> RouteSchedule:
    """
    Walk `sequence` from technician t's home at shift start and back home.
    """
    tech = instance.technicians[t]
    shift_start = float(tech.working_hours.start)
    shift_end = float(tech.working_hours.end)
    matrix = instance.matrix

    clock = shift_start
    prev = t
    travel = distance = service = 0.0
    arrivals: List[float] = []
    starts: List[float] = []
    departures: List[float] = []
    cumulative: List[float] = []
    lateness: List[float] = []
    violation: Optional[int] = None

    for pos, j in enumerate(sequence):
        node = instance.job_node(j)
        leg = matrix.duration(prev, node)
        travel += leg
        distance += matrix.distance(prev, node)
        arrival = clock + leg
        job = instance.jobs[j]
        start = arrival
        late = 0.0
        window = job.time_window if instance.respect_time_windows else None
        if window is not None:
            start = max(arrival, float(window.start))
            late = max(0.0, start - window.end)
        if start > shift_end and violation is None:
            violation = pos
        departure = start + job.duration
        service += job.duration
        arrivals.append(arrival)
        starts.append(start)
        departures.append(departure)
        cumulative.append(distance)
        lateness.append(late)
        clock = departure
        prev = node

    if sequence:
        travel += matrix.duration(prev, t)
        distance += matrix.distance(prev, t)
        clock += matrix.duration(prev, t)

    return RouteSchedule(
        technician=t,
        sequence=tuple(sequence),
        arrivals=tuple(arrivals),
        starts=tuple(starts),
        departures=tuple(departures),
        cumulative_km=tuple(cumulative),
        lateness=tuple(lateness),
        travel_min=travel,
        distance_km=distance,
        service_min=service,
        shift_start=shift_start,
        end_minute=clock,
        overtime_min=max(0.0, clock - shift_end),
        violation_index=violation,
    )


def can_host(instance: RoutingInstance, t: int, sequence: Sequence[int]) -> bool:
    """
    True when technician t may run `sequence` without breaking a hard rule.
    """
    if len(sequence) > instance.capacities[t]:
        return False
    if any(not instance.serves(t, j) for j in sequence):
        return False
    return schedule_route(instance, t, sequence).feasible


def classify_unplaced(instance: RoutingInstance, j: int, routes: Sequence[Sequence[int]]) -> UnassignedReason:
    eligible = instance.eligible[j]
    if not eligible:
        return UnassignedReason.DISTRICT_MISMATCH
    if all(not has_capacity(len(routes[t]), instance.capacities[t]) for t in eligible):
        return UnassignedReason.CAPACITY_EXHAUSTED
    return UnassignedReason.TIME_WINDOW_VIOLATION
