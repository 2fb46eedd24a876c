"""
Objective function for route search, plus per-route efficiency and cost.

    J = travel + λ1·priority_violation + λ2·capacity_violation + λ3·workload_imbalance

An optional external scorer is added on top for the ai_enhanced algorithm.
"""

import logging
import math
import statistics
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from techroute import config
from techroute.errors import ScoringUnavailableError
from techroute.feasibility import RouteSchedule
from techroute.instance import RoutingInstance
from techroute.models import CostProfile, ObjectiveWeights, Technician

logger = logging.getLogger(__name__)

# technician id -> ordered job ids; returns a value added to J (lower is better).
RouteScorer = Callable[[Dict[str, List[str]]], float]


@dataclass(frozen=True)
class Evaluation:
    value: float
    travel: float
    priority_violation: float
    capacity_violation: float
    workload_imbalance: float
    external: float = 0.0


class Objective:
    def __init__(
        self,
        instance: RoutingInstance,
        weights: Optional[ObjectiveWeights] = None,
        scorer: Optional[RouteScorer] = None,
    ):
        self.instance = instance
        self.weights = weights or ObjectiveWeights()
        self.scorer = scorer
        # Bumped whenever the scorer drops out, so cached values can be recomputed.
        self.generation = 0
        self.degraded_reason: Optional[str] = None

    def unassigned_weight(self, j: int) -> float:
        if not self.instance.prioritize_urgent:
            return 1.0
        return config.UNASSIGNED_WEIGHTS[self.instance.jobs[j].priority.value]

    def lateness_penalty(self, schedule: RouteSchedule) -> float:
        total = 0.0
        for pos, j in enumerate(schedule.sequence):
            late = schedule.lateness[pos]
            if late <= 0:
                continue
            weight = config.LATENESS_WEIGHTS.get(self.instance.jobs[j].priority.value)
            if weight:
                total += late / 60.0 * weight
        return total

    def evaluate(self, schedules: Sequence[RouteSchedule], unassigned: Iterable[int]) -> Evaluation:
        travel = sum(s.travel_min for s in schedules)
        priority = sum(self.unassigned_weight(j) for j in unassigned)
        priority += sum(self.lateness_penalty(s) for s in schedules)
        capacity = float(
            sum(max(0, len(s.sequence) - self.instance.capacities[s.technician]) for s in schedules)
        )
        durations = [s.duration_min for s in schedules]
        imbalance = statistics.pstdev(durations) if len(durations) > 1 else 0.0
        external = self._external_score(schedules)
        value = (
            travel
            + self.weights.priority * priority
            + self.weights.capacity * capacity
            + self.weights.workload * imbalance
            + external
        )
        return Evaluation(
            value=value,
            travel=travel,
            priority_violation=priority,
            capacity_violation=capacity,
            workload_imbalance=imbalance,
            external=external,
        )

    def _external_score(self, schedules: Sequence[RouteSchedule]) -> float:
        if self.scorer is None:
            return 0.0
        assignment = {
            self.instance.technicians[s.technician].id: [self.instance.jobs[j].id for j in s.sequence]
            for s in schedules
        }
        try:
            score = float(self.scorer(assignment))
        except ScoringUnavailableError as exc:
            self.disable_scorer(f"route scorer failed: {exc}")
            return 0.0
        if not math.isfinite(score):
            self.disable_scorer(f"route scorer returned non-finite score {score!r}")
            return 0.0
        return score

    def disable_scorer(self, reason: str) -> None:
        self.scorer = None
        self.generation += 1
        self.degraded_reason = reason
        logger.warning("Falling back to base objective: %s", reason)


def route_efficiency(schedule: RouteSchedule, technician: Technician) -> float:
    """
    1 - travel / available shift time, clamped to [0, 1].
    """
    available = technician.working_hours.length
    if available <= 0:
        return 0.0
    return min(1.0, max(0.0, 1.0 - schedule.travel_min / available))


def route_cost(distance_km: float, duration_min: float, profile: CostProfile) -> float:
    return distance_km * profile.cost_per_km + duration_min * profile.cost_per_minute
