"""
Metaheuristic improvement of a constructed solution.

Simulated annealing (also used by ai_enhanced, whose objective carries an
external scorer) and a permutation genetic algorithm search over relocate, swap
and 2-opt moves. The best solution seen is always kept, so stopping early never
throws away progress. Afterwards each long route is re-sequenced with OR-Tools
and, when urgent jobs are prioritized, any urgent job still unassigned is
promoted into a feasible slot.
"""

import logging
import math
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ortools.constraint_solver import pywrapcp, routing_enums_pb2

from techroute import config
from techroute.construction import best_insertion
from techroute.control import RunControl
from techroute.feasibility import RouteSchedule, schedule_route
from techroute.instance import RoutingInstance, Solution
from techroute.models import Algorithm, AnnealingParams, GeneticParams, Priority
from techroute.objective import Evaluation, Objective

logger = logging.getLogger(__name__)

EPSILON = 1e-9

# Per-technician replacement routes, and the new unassigned pool.
Proposal = Tuple[Dict[int, List[int]], List[int]]


class SearchState:
    """
    A solution with its schedules and evaluation. Route lists are never mutated
    in place; moves build new lists and share the untouched ones.
    """

    __slots__ = ("routes", "unassigned", "schedules", "evaluation", "_positions")

    def __init__(
        self,
        routes: List[List[int]],
        unassigned: List[int],
        schedules: List[RouteSchedule],
        evaluation: Evaluation,
    ):
        self.routes = routes
        self.unassigned = unassigned
        self.schedules = schedules
        self.evaluation = evaluation
        self._positions: Optional[Dict[int, Tuple[int, int]]] = None

    @property
    def value(self) -> float:
        return self.evaluation.value

    @property
    def positions(self) -> Dict[int, Tuple[int, int]]:
        """
        job -> (technician, position) for placed jobs.
        """
        if self._positions is None:
            self._positions = {j: (t, pos) for t, route in enumerate(self.routes) for pos, j in enumerate(route)}
        return self._positions

    def to_solution(self) -> Solution:
        return Solution([list(r) for r in self.routes], list(self.unassigned))


@dataclass
class SearchOutcome:
    solution: Solution
    evaluation: Evaluation
    initial_evaluation: Evaluation
    iterations: int
    promoted: int = 0


def build_state(instance: RoutingInstance, objective: Objective, routes: List[List[int]], unassigned: List[int]) -> SearchState:
    schedules = [schedule_route(instance, t, r) for t, r in enumerate(routes)]
    return SearchState(routes, unassigned, schedules, objective.evaluate(schedules, unassigned))


def _rescore(objective: Objective, state: SearchState) -> SearchState:
    return SearchState(state.routes, state.unassigned, state.schedules, objective.evaluate(state.schedules, state.unassigned))


def apply_proposal(
    instance: RoutingInstance,
    objective: Objective,
    state: SearchState,
    changes: Dict[int, List[int]],
    unassigned: List[int],
) -> Optional[SearchState]:
    """
    New state with `changes` applied, or None if a changed route breaks a hard rule.
    """
    routes = list(state.routes)
    schedules = list(state.schedules)
    for t, seq in changes.items():
        if len(seq) > instance.capacities[t]:
            return None
        if any(not instance.serves(t, j) for j in seq):
            return None
        schedule = schedule_route(instance, t, seq)
        if not schedule.feasible:
            return None
        routes[t] = seq
        schedules[t] = schedule
    return SearchState(routes, unassigned, schedules, objective.evaluate(schedules, unassigned))


class MoveGenerator:
    def __init__(self, instance: RoutingInstance, rng: random.Random):
        self.instance = instance
        self.rng = rng

    def propose(self, state: SearchState) -> Optional[Proposal]:
        roll = self.rng.random()
        if roll < 0.45:
            return self.relocate(state)
        if roll < 0.8:
            return self.swap(state)
        return self.two_opt(state)

    def relocate(self, state: SearchState) -> Optional[Proposal]:
        """
        Move one job (placed or unassigned) to a random position of a serving route.
        """
        j = self.rng.randrange(self.instance.num_jobs)
        eligible = self.instance.eligible[j]
        if not eligible:
            return None
        target = self.rng.choice(eligible)
        dst = list(state.routes[target])
        loc = state.positions.get(j)
        if loc is None:
            dst.insert(self.rng.randint(0, len(dst)), j)
            return {target: dst}, [u for u in state.unassigned if u != j]
        t, pos = loc
        if t == target:
            if len(dst) < 2:
                return None
            dst.pop(pos)
            new_pos = self.rng.randint(0, len(dst))
            if new_pos == pos:
                return None
            dst.insert(new_pos, j)
            return {t: dst}, state.unassigned
        src = list(state.routes[t])
        src.pop(pos)
        dst.insert(self.rng.randint(0, len(dst)), j)
        return {t: src, target: dst}, state.unassigned

    def swap(self, state: SearchState) -> Optional[Proposal]:
        """
        Exchange two jobs between routes, within a route, or with the unassigned pool.
        """
        if self.instance.num_jobs < 2:
            return None
        a, b = self.rng.sample(range(self.instance.num_jobs), 2)
        loc_a, loc_b = state.positions.get(a), state.positions.get(b)
        if loc_a is None and loc_b is None:
            return None
        if loc_a is None:
            a, b = b, a
            loc_a, loc_b = loc_b, loc_a
        ta, pa = loc_a
        if loc_b is None:
            if not self.instance.serves(ta, b):
                return None
            # A placed urgent job never goes back to the pool; promotion would undo it.
            if self.instance.prioritize_urgent and self.instance.jobs[a].priority is Priority.URGENT:
                return None
            route = list(state.routes[ta])
            route[pa] = b
            return {ta: route}, [a if u == b else u for u in state.unassigned]
        tb, pb = loc_b
        if ta == tb:
            route = list(state.routes[ta])
            route[pa], route[pb] = route[pb], route[pa]
            return {ta: route}, state.unassigned
        if not (self.instance.serves(tb, a) and self.instance.serves(ta, b)):
            return None
        ra, rb = list(state.routes[ta]), list(state.routes[tb])
        ra[pa], rb[pb] = b, a
        return {ta: ra, tb: rb}, state.unassigned

    def two_opt(self, state: SearchState) -> Optional[Proposal]:
        """
        Reverse a sub-sequence of one route.
        """
        candidates = [t for t, route in enumerate(state.routes) if len(route) >= 2]
        if not candidates:
            return None
        t = self.rng.choice(candidates)
        route = state.routes[t]
        i, k = sorted(self.rng.sample(range(len(route)), 2))
        return {t: route[:i] + route[i:k + 1][::-1] + route[k + 1:]}, state.unassigned


def anneal(
    instance: RoutingInstance,
    objective: Objective,
    initial: SearchState,
    control: RunControl,
    params: AnnealingParams,
    max_iterations: int,
    rng: random.Random,
) -> Tuple[SearchState, int]:
    """
    Simulated annealing with geometric cooling. Returns the best state seen and
    the number of iterations run.
    """
    moves = MoveGenerator(instance, rng)
    current = best = initial
    temperature = params.initial_temperature
    generation = objective.generation
    iterations = 0
    while iterations < max_iterations and temperature > params.min_temperature:
        if control.should_stop():
            break
        iterations += 1
        proposal = moves.propose(current)
        if proposal is not None:
            candidate = apply_proposal(instance, objective, current, *proposal)
            if objective.generation != generation:
                generation = objective.generation
                current, best = _rescore(objective, current), _rescore(objective, best)
                if candidate is not None:
                    candidate = _rescore(objective, candidate)
            if candidate is not None:
                delta = candidate.value - current.value
                if delta <= 0 or rng.random() < math.exp(-delta / temperature):
                    current = candidate
                    if current.value < best.value - EPSILON:
                        best = current
        temperature *= params.cooling_rate
    logger.debug("Annealing stopped after %d iterations at T=%.4f, best J=%.2f", iterations, temperature, best.value)
    return best, iterations


def decode(instance: RoutingInstance, objective: Objective, chromosome: Sequence[int]) -> SearchState:
    """
    Walk the permutation and append each job to the serving technician with the
    cheapest feasible append; jobs nobody can take stay unassigned.
    """
    techs = instance.technicians
    routes: List[List[int]] = [[] for _ in techs]
    clocks = [float(t.working_hours.start) for t in techs]
    last = list(range(len(techs)))
    unassigned: List[int] = []
    for j in chromosome:
        node = instance.job_node(j)
        job = instance.jobs[j]
        window = job.time_window if instance.respect_time_windows else None
        best = None
        for t in instance.eligible[j]:
            if len(routes[t]) >= instance.capacities[t]:
                continue
            start = clocks[t] + instance.travel_minutes(last[t], node)
            if window is not None:
                start = max(start, float(window.start))
            if start > techs[t].working_hours.end:
                continue
            cost = (
                instance.travel_minutes(last[t], node)
                + instance.travel_minutes(node, t)
                - instance.travel_minutes(last[t], t)
            )
            key = (round(cost, 9), t)
            if best is None or key < best[0]:
                best = (key, t, start)
        if best is None:
            unassigned.append(j)
            continue
        _, t, start = best
        routes[t].append(j)
        clocks[t] = start + job.duration
        last[t] = node
    return build_state(instance, objective, routes, unassigned)


def order_crossover(parent_a: Sequence[int], parent_b: Sequence[int], rng: random.Random) -> List[int]:
    """
    OX1: keep a slice of parent_a, fill the rest in parent_b's order.
    """
    n = len(parent_a)
    if n < 2:
        return list(parent_a)
    i, k = sorted(rng.sample(range(n), 2))
    middle = list(parent_a[i:k + 1])
    taken = set(middle)
    rest = [g for g in parent_b if g not in taken]
    return rest[:i] + middle + rest[i:]


def relocate_mutation(chromosome: Sequence[int], rng: random.Random) -> List[int]:
    child = list(chromosome)
    if len(child) < 2:
        return child
    gene = child.pop(rng.randrange(len(child)))
    child.insert(rng.randint(0, len(child)), gene)
    return child


def _tournament(scored: Sequence[Tuple[SearchState, List[int]]], size: int, rng: random.Random) -> List[int]:
    picks = [rng.randrange(len(scored)) for _ in range(size)]
    winner = min(picks, key=lambda i: (scored[i][0].value, i))
    return scored[winner][1]


def evolve(
    instance: RoutingInstance,
    objective: Objective,
    initial: SearchState,
    control: RunControl,
    params: GeneticParams,
    rng: random.Random,
) -> Tuple[SearchState, int]:
    """
    Elitist genetic search over job permutations, seeded with the constructed
    solution. Returns the best state seen and the number of generations run.
    """
    seed_chromosome = [j for route in initial.routes for j in route] + list(initial.unassigned)
    population = [seed_chromosome] + [
        rng.sample(seed_chromosome, len(seed_chromosome)) for _ in range(params.population_size - 1)
    ]
    scored = [(decode(instance, objective, c), c) for c in population]
    best = initial
    for state, _ in scored:
        if state.value < best.value - EPSILON:
            best = state

    generation = objective.generation
    generations = 0
    for _ in range(params.generations):
        if control.should_stop():
            break
        generations += 1
        if objective.generation != generation:
            generation = objective.generation
            scored = [(_rescore(objective, s), c) for s, c in scored]
            best = _rescore(objective, best)
        ranked = sorted(range(len(scored)), key=lambda i: (scored[i][0].value, i))
        next_generation = [scored[i] for i in ranked[:params.elite_count]]
        while len(next_generation) < params.population_size:
            parent_a = _tournament(scored, params.tournament_size, rng)
            parent_b = _tournament(scored, params.tournament_size, rng)
            child = order_crossover(parent_a, parent_b, rng)
            if rng.random() < params.mutation_rate:
                child = relocate_mutation(child, rng)
            next_generation.append((decode(instance, objective, child), child))
        scored = next_generation
        for state, _ in scored:
            if state.value < best.value - EPSILON:
                best = state
    logger.debug("Genetic search stopped after %d generations, best J=%.2f", generations, best.value)
    return best, generations


def sequence_with_ortools(
    instance: RoutingInstance,
    t: int,
    sequence: Sequence[int],
    time_limit_ms: Optional[float] = None,
) -> Optional[List[int]]:
    """
    Re-order one technician's jobs as a closed tour from home, minimizing travel
    time with the OR-Tools routing solver.
    """
    nodes = [t] + [instance.job_node(j) for j in sequence]
    # Solver arcs are integers; keep centiminute resolution.
    costs = [[int(round(instance.travel_minutes(a, b) * 100)) for b in nodes] for a in nodes]

    manager = pywrapcp.RoutingIndexManager(len(nodes), 1, 0)
    routing = pywrapcp.RoutingModel(manager)

    def travel_callback(from_index: int, to_index: int) -> int:
        return costs[manager.IndexToNode(from_index)][manager.IndexToNode(to_index)]

    transit_index = routing.RegisterTransitCallback(travel_callback)
    routing.SetArcCostEvaluatorOfAllVehicles(transit_index)

    search_parameters = pywrapcp.DefaultRoutingSearchParameters()
    search_parameters.first_solution_strategy = routing_enums_pb2.FirstSolutionStrategy.PATH_CHEAPEST_ARC
    search_parameters.local_search_metaheuristic = routing_enums_pb2.LocalSearchMetaheuristic.GREEDY_DESCENT
    if time_limit_ms is not None:
        search_parameters.time_limit.FromMilliseconds(max(1, int(time_limit_ms)))
    search_parameters.log_search = False

    solution = routing.SolveWithParameters(search_parameters)
    if not solution:
        return None
    order: List[int] = []
    index = solution.Value(routing.NextVar(routing.Start(0)))
    while not routing.IsEnd(index):
        order.append(sequence[manager.IndexToNode(index) - 1])
        index = solution.Value(routing.NextVar(index))
    return order


def polish_sequences(
    instance: RoutingInstance,
    objective: Objective,
    state: SearchState,
    control: RunControl,
    min_stops: int = config.RUN.polish_min_stops,
) -> SearchState:
    """
    Keep an OR-Tools re-sequencing of a route only when it is feasible and lowers J.
    """
    for t in range(instance.num_technicians):
        route = state.routes[t]
        if len(route) < min_stops:
            continue
        if control.should_stop():
            break
        order = sequence_with_ortools(instance, t, route, control.remaining_ms())
        if order is None or order == route:
            continue
        candidate = apply_proposal(instance, objective, state, {t: order}, state.unassigned)
        if candidate is not None and candidate.value < state.value - EPSILON:
            state = candidate
    return state


def _cheapest_replacement(
    instance: RoutingInstance, routes: Sequence[Sequence[int]], j: int
) -> Optional[Tuple[int, int, int]]:
    """
    (technician, position, evicted job) where urgent job j can take the place of
    the lowest-priority job it outranks.
    """
    best = None
    urgent_rank = Priority.URGENT.rank
    for t in instance.eligible[j]:
        tech_id = instance.technicians[t].id
        for pos, k in enumerate(routes[t]):
            rank = instance.jobs[k].priority.rank
            if rank >= urgent_rank:
                continue
            seq = list(routes[t])
            seq[pos] = j
            schedule = schedule_route(instance, t, seq)
            if not schedule.feasible:
                continue
            key = (rank, round(schedule.duration_min, 9), tech_id, pos)
            if best is None or key < best[0]:
                best = (key, t, pos, k)
    if best is None:
        return None
    _, t, pos, k = best
    return t, pos, k


def promote_urgent(instance: RoutingInstance, objective: Objective, state: SearchState) -> Tuple[SearchState, int]:
    """
    Place every unassigned urgent job that has a feasible slot: free capacity
    first, otherwise in place of a lower-priority job, which is then re-inserted
    elsewhere if it fits.
    """
    routes = [list(r) for r in state.routes]
    unassigned = list(state.unassigned)
    promoted = 0
    urgent = sorted(
        (j for j in unassigned if instance.jobs[j].priority is Priority.URGENT),
        key=lambda j: instance.jobs[j].id,
    )
    for j in urgent:
        found = best_insertion(instance, routes, j)
        if found is not None:
            _, t, pos, _ = found
            routes[t].insert(pos, j)
            unassigned.remove(j)
            promoted += 1
            continue
        replacement = _cheapest_replacement(instance, routes, j)
        if replacement is None:
            continue
        t, pos, evicted = replacement
        routes[t][pos] = j
        unassigned.remove(j)
        promoted += 1
        found = best_insertion(instance, routes, evicted)
        if found is None:
            unassigned.append(evicted)
        else:
            _, t2, pos2, _ = found
            routes[t2].insert(pos2, evicted)
    if not promoted:
        return state, 0
    logger.info("Promoted %d unassigned urgent jobs", promoted)
    return build_state(instance, objective, routes, unassigned), promoted


def improve(
    instance: RoutingInstance,
    initial: Solution,
    objective: Objective,
    control: RunControl,
    algorithm: Algorithm = Algorithm.SIMULATED_ANNEALING,
    annealing: Optional[AnnealingParams] = None,
    genetic: Optional[GeneticParams] = None,
    max_iterations: int = config.RUN.max_iterations,
    seed: Optional[int] = None,
) -> SearchOutcome:
    rng = random.Random(seed)
    start = build_state(instance, objective, [list(r) for r in initial.routes], list(initial.unassigned))

    if algorithm is Algorithm.GENETIC:
        best, iterations = evolve(instance, objective, start, control, genetic or GeneticParams(), rng)
    else:
        best, iterations = anneal(
            instance, objective, start, control, annealing or AnnealingParams(), max_iterations, rng
        )

    if not control.should_stop():
        best = polish_sequences(instance, objective, best, control)
    promoted = 0
    if instance.prioritize_urgent:
        best, promoted = promote_urgent(instance, objective, best)
        # Promotion may cost more than the search saved. The constructed
        # solution inserts urgent jobs first, so promoting it is usually a no-op.
        fallback, fallback_promoted = promote_urgent(instance, objective, _rescore(objective, start))
        best = _rescore(objective, best)
        if fallback.value < best.value - EPSILON:
            logger.info("Promotion raised the objective; keeping the constructed solution")
            best, promoted = fallback, fallback_promoted

    # Score both ends under the same objective; the scorer may have dropped out mid-run.
    generation = objective.generation
    final_eval = objective.evaluate(best.schedules, best.unassigned)
    initial_eval = objective.evaluate(start.schedules, start.unassigned)
    if objective.generation != generation:
        final_eval = objective.evaluate(best.schedules, best.unassigned)
        initial_eval = objective.evaluate(start.schedules, start.unassigned)

    return SearchOutcome(
        solution=best.to_solution(),
        evaluation=final_eval,
        initial_evaluation=initial_eval,
        iterations=iterations,
        promoted=promoted,
    )
