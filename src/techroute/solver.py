"""
Public entry point: optimize one day's technician routes.

A run goes pending -> constructing -> improving -> validating -> completed, or
ends cancelled / timed_out. Interrupted runs still return the validated best
solution found, flagged partial. Only input validation raises.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List, Mapping, Optional, Sequence, Union

from techroute.construction import construct_initial
from techroute.control import CancellationToken, RunControl
from techroute.errors import InputValidationError
from techroute.estimator import DistanceEstimator, TrafficProvider
from techroute.feasibility import schedule_route
from techroute.geo import minutes_to_hhmm
from techroute.improver import improve
from techroute.instance import RoutingInstance, build_instance
from techroute.models import (
    Algorithm,
    OptimizationRequest,
    OptimizationResult,
    Route,
    RouteStop,
    RunMetrics,
    RunState,
    UnassignedJob,
    parse_request,
)
from techroute.objective import Objective, RouteScorer, route_cost, route_efficiency
from techroute.validator import ValidationReport, validate_and_repair

logger = logging.getLogger(__name__)

RequestLike = Union[OptimizationRequest, Mapping[str, Any]]


class RouteOptimizationRun:
    """
    One optimization run over an immutable request snapshot.
    """

    def __init__(
        self,
        request: OptimizationRequest,
        traffic_provider: Optional[TrafficProvider] = None,
        scorer: Optional[RouteScorer] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.request = request
        self.traffic_provider = traffic_provider
        self.scorer = scorer
        self.state = RunState.PENDING
        self.control = RunControl(cancel_token, request.time_budget_ms)
        self.history: List[RunState] = [RunState.PENDING]

    def _transition(self, state: RunState) -> None:
        logger.debug("Run %s: %s -> %s", self.request.date, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def execute(self) -> OptimizationResult:
        request = self.request
        technicians = request.selected_technicians()
        if not technicians:
            raise InputValidationError(["No technicians selected"])
        logger.info(
            "Optimizing %d jobs over %d technicians for %s (%s)",
            len(request.jobs),
            len(technicians),
            request.date,
            request.algorithm.value,
        )

        estimator = DistanceEstimator(
            speed_kmph=request.speed_kmph,
            district_speeds=request.district_speed_table(),
            traffic_provider=self.traffic_provider,
            use_live_traffic=request.real_time_traffic,
        )
        instance = build_instance(request, technicians, estimator)

        scorer = self.scorer if request.algorithm is Algorithm.AI_ENHANCED else None
        objective = Objective(instance, request.weights, scorer)
        degraded_reasons: List[str] = []
        if request.algorithm is Algorithm.AI_ENHANCED and scorer is None:
            degraded_reasons.append("route scorer unavailable, using base objective")
            logger.warning("ai_enhanced run without a route scorer; using base objective")

        self._transition(RunState.CONSTRUCTING)
        initial = construct_initial(instance, self.control)

        self._transition(RunState.IMPROVING)
        outcome = improve(
            instance,
            initial,
            objective,
            self.control,
            algorithm=request.algorithm,
            annealing=request.annealing,
            genetic=request.genetic,
            max_iterations=request.max_iterations,
            seed=request.seed,
        )

        self._transition(RunState.VALIDATING)
        report = validate_and_repair(instance, outcome.solution)
        evaluation = outcome.evaluation
        if report.repairs:
            schedules = [schedule_route(instance, t, r) for t, r in enumerate(report.solution.routes)]
            evaluation = objective.evaluate(schedules, report.solution.unassigned)

        if estimator.degraded and estimator.degraded_reason:
            degraded_reasons.append(estimator.degraded_reason)
        if objective.degraded_reason:
            degraded_reasons.append(objective.degraded_reason)

        terminal = self.control.stop_reason or RunState.COMPLETED
        self._transition(terminal)
        if terminal is RunState.CANCELLED:
            logger.info("Run %s cancelled; returning best solution found", request.date)
        elif terminal is RunState.TIMED_OUT:
            logger.info("Run %s hit its %s ms budget; returning best solution found", request.date, request.time_budget_ms)

        result = self._shape_result(
            instance,
            report,
            iterations=outcome.iterations,
            objective_value=evaluation.value,
            initial_objective_value=outcome.initial_evaluation.value,
            degraded_reasons=degraded_reasons,
            status=terminal,
        )
        logger.info(
            "Run %s %s: %d routes, %d unassigned, J=%.2f (initial %.2f), %.0f ms",
            request.date,
            terminal.value,
            len(result.routes),
            len(result.unassigned_jobs),
            result.metrics.objective_value,
            result.metrics.initial_objective_value,
            result.metrics.wall_clock_ms,
        )
        return result

    def _shape_result(
        self,
        instance: RoutingInstance,
        report: ValidationReport,
        iterations: int,
        objective_value: float,
        initial_objective_value: float,
        degraded_reasons: List[str],
        status: RunState,
    ) -> OptimizationResult:
        request = self.request
        routes: List[Route] = []
        for t, sequence in enumerate(report.solution.routes):
            if not sequence:
                continue
            tech = instance.technicians[t]
            schedule = schedule_route(instance, t, sequence)
            stops = []
            coverage: List[str] = []
            for pos, j in enumerate(sequence):
                job = instance.jobs[j]
                if job.district not in coverage:
                    coverage.append(job.district)
                stops.append(
                    RouteStop(
                        job_id=job.id,
                        district=job.district,
                        arrival_estimate=minutes_to_hhmm(schedule.starts[pos]),
                        arrival_minute=round(schedule.arrivals[pos], 2),
                        departure_minute=round(schedule.departures[pos], 2),
                        cumulative_distance_km=round(schedule.cumulative_km[pos], 2),
                        cumulative_duration_min=round(schedule.arrivals[pos] - schedule.shift_start, 2),
                        lateness_minutes=round(schedule.lateness[pos], 2),
                    )
                )
            profile = request.cost_profile_for(tech.vehicle_type)
            routes.append(
                Route(
                    technician_id=tech.id,
                    technician_name=tech.name,
                    vehicle_type=tech.vehicle_type,
                    stops=stops,
                    total_distance_km=round(schedule.distance_km, 2),
                    total_duration_min=round(schedule.duration_min, 2),
                    travel_duration_min=round(schedule.travel_min, 2),
                    overtime_minutes=round(schedule.overtime_min, 2),
                    estimated_cost=round(route_cost(schedule.distance_km, schedule.duration_min, profile), 2),
                    efficiency=round(route_efficiency(schedule, tech), 4),
                    district_coverage=coverage,
                )
            )

        unassigned = [
            UnassignedJob(job_id=instance.jobs[j].id, priority=instance.jobs[j].priority, reason=report.reasons[j])
            for j in report.solution.unassigned
        ]
        assigned = sum(len(r.stops) for r in routes)
        metrics = RunMetrics(
            iterations=iterations,
            objective_value=round(objective_value, 4),
            initial_objective_value=round(initial_objective_value, 4),
            wall_clock_ms=round(self.control.elapsed_ms(), 2),
            partial=status is not RunState.COMPLETED,
            degraded=bool(degraded_reasons),
            degraded_reasons=degraded_reasons,
            status=status,
            algorithm=request.algorithm,
            seed=request.seed,
            total_distance_km=round(sum(r.total_distance_km for r in routes), 2),
            total_duration_min=round(sum(r.total_duration_min for r in routes), 2),
            total_cost=round(sum(r.estimated_cost for r in routes), 2),
            average_jobs_per_technician=round(assigned / instance.num_technicians, 4),
            efficiency_score=round(sum(r.efficiency for r in routes) / len(routes), 4) if routes else 0.0,
            validation_repairs=len(report.repairs),
            validation_violations=list(report.violations),
        )
        return OptimizationResult(date=request.date, routes=routes, unassigned_jobs=unassigned, metrics=metrics)


def optimize_routes(
    request: RequestLike,
    *,
    traffic_provider: Optional[TrafficProvider] = None,
    scorer: Optional[RouteScorer] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> OptimizationResult:
    """
    Assign and sequence one day's jobs across technicians.

    Raises InputValidationError for unusable input; everything else (unplaced
    jobs, degraded estimates, timeouts, cancellation) is reported in the result.
    """
    parsed = parse_request(request)
    return RouteOptimizationRun(parsed, traffic_provider, scorer, cancel_token).execute()


def optimize_many(
    requests: Sequence[RequestLike],
    *,
    max_workers: Optional[int] = None,
    traffic_provider: Optional[TrafficProvider] = None,
    scorer: Optional[RouteScorer] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> List[OptimizationResult]:
    """
    Run independent requests (other dates or technician subsets) on a bounded
    worker pool. Results come back in request order.
    """
    if not requests:
        return []
    workers = max_workers or min(len(requests), os.cpu_count() or 1)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [
            pool.submit(
                optimize_routes,
                request,
                traffic_provider=traffic_provider,
                scorer=scorer,
                cancel_token=cancel_token,
            )
            for request in requests
        ]
        return [future.result() for future in futures]
