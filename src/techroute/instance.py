"""
Indexed snapshot of one run: technicians, jobs, travel matrix, capacities.

Matrix nodes 0..T-1 are technician homes, T..T+J-1 are jobs. Solutions refer to
technicians and jobs by list index.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from techroute import config
from techroute.estimator import DistanceEstimator, DistanceMatrix
from techroute.models import OptimizationRequest, ServiceJob, Technician


@dataclass
class RoutingInstance:
    technicians: List[Technician]
    jobs: List[ServiceJob]
    matrix: DistanceMatrix
    capacities: List[int]
    # Technician indices serving each job's district, in technician id order.
    eligible: List[Tuple[int, ...]]
    prioritize_urgent: bool = True
    respect_time_windows: bool = True
    _eligible_sets: List[frozenset] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        self._eligible_sets = [frozenset(e) for e in self.eligible]

    @property
    def num_technicians(self) -> int:
        return len(self.technicians)

    @property
    def num_jobs(self) -> int:
        return len(self.jobs)

    def job_node(self, j: int) -> int:
        return len(self.technicians) + j

    def travel_minutes(self, a: int, b: int) -> float:
        return self.matrix.duration(a, b)

    def serves(self, t: int, j: int) -> bool:
        return t in self._eligible_sets[j]


@dataclass
class Solution:
    routes: List[List[int]]
    unassigned: List[int]

    def copy(self) -> "Solution":
        return Solution([list(r) for r in self.routes], list(self.unassigned))

    def placed(self) -> Dict[int, int]:
        """
        job index -> technician index for every placed job.
        """
        return {j: t for t, route in enumerate(self.routes) for j in route}

    def assignment(self, instance: RoutingInstance) -> Dict[str, List[str]]:
        return {
            instance.technicians[t].id: [instance.jobs[j].id for j in route]
            for t, route in enumerate(self.routes)
        }


def build_instance(
    request: OptimizationRequest,
    technicians: List[Technician],
    estimator: DistanceEstimator,
    max_workers: int = config.RUN.matrix_workers,
) -> RoutingInstance:
    """
    Precompute the travel matrix for every home and job location and index the run.
    """
    jobs = list(request.jobs)
    points = [t.home.point for t in technicians] + [j.point for j in jobs]
    districts = [None] * len(technicians) + [j.district for j in jobs]
    matrix = estimator.precompute(points, districts, max_workers=max_workers)
    eligible = [tuple(t for t, tech in enumerate(technicians) if tech.serves(job.district)) for job in jobs]
    return RoutingInstance(
        technicians=technicians,
        jobs=jobs,
        matrix=matrix,
        capacities=[request.capacity_for(t) for t in technicians],
        eligible=eligible,
        prioritize_urgent=request.prioritize_urgent,
        respect_time_windows=request.respect_time_windows,
    )
