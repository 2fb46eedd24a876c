"""
Travel distance/duration estimation for one optimization run.

Distances are great-circle (haversine); durations use an average urban speed
for the districts at both ends, optionally scaled by a live traffic/weather
multiplier from an external provider. Every unordered coordinate pair is
computed at most once per run. After `precompute` the cache is frozen and only
read.
"""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from techroute import config
from techroute.errors import DistanceProviderError
from techroute.geo import Point, haversine_km, travel_time_minutes

logger = logging.getLogger(__name__)


class Estimate(NamedTuple):
    distance_km: float
    duration_min: float


class EstimateContext(NamedTuple):
    origin_district: Optional[str] = None
    destination_district: Optional[str] = None


# (origin, destination, context) -> duration multiplier, >1 means slower.
TrafficProvider = Callable[[Point, Point, EstimateContext], float]


def _pair_key(a: Point, b: Point) -> Tuple[Point, Point]:
    return (a, b) if a <= b else (b, a)


class DistanceMatrix:
    """
    Frozen index-based view over the estimates for one run's locations.
    """

    def __init__(self, distances: Sequence[Sequence[float]], durations: Sequence[Sequence[float]]):
        self._distances = tuple(tuple(row) for row in distances)
        self._durations = tuple(tuple(row) for row in durations)

    @property
    def size(self) -> int:
        return len(self._distances)

    def distance(self, i: int, j: int) -> float:
        return self._distances[i][j]

    def duration(self, i: int, j: int) -> float:
        return self._durations[i][j]


class DistanceEstimator:
    def __init__(
        self,
        speed_kmph: float = config.DEFAULT_SPEED_KMPH,
        district_speeds: Optional[Mapping[str, float]] = None,
        traffic_provider: Optional[TrafficProvider] = None,
        use_live_traffic: bool = False,
    ):
        if speed_kmph <= 0:
            raise ValueError("speed_kmph must be positive")
        self.speed_kmph = speed_kmph
        self.district_speeds: Dict[str, float] = dict(district_speeds or {})
        self.traffic_provider = traffic_provider
        self.use_live_traffic = use_live_traffic
        self.computed_pairs = 0
        self.degraded = False
        self.degraded_reason: Optional[str] = None
        self._cache: Dict[Tuple[Point, Point], Estimate] = {}
        self._lock = threading.Lock()
        self._frozen = False
        self._provider_failed = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def estimate(self, origin: Point, destination: Point, context: Optional[EstimateContext] = None) -> Estimate:
        """
        Distance (km) and duration (min) between two (lat, lng) points.
        """
        if origin == destination:
            return Estimate(0.0, 0.0)
        key = _pair_key(origin, destination)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        if self._frozen:
            raise RuntimeError(f"distance cache is frozen and has no entry for {origin} -> {destination}")
        result = self._compute(origin, destination, context or EstimateContext())
        with self._lock:
            existing = self._cache.get(key)
            if existing is not None:
                return existing
            self._cache[key] = result
            self.computed_pairs += 1
        return result

    def _speed_for(self, context: EstimateContext) -> float:
        speeds = [
            self.district_speeds[d]
            for d in (context.origin_district, context.destination_district)
            if d is not None and d in self.district_speeds
        ]
        if not speeds:
            return self.speed_kmph
        return sum(speeds) / len(speeds)

    def _compute(self, origin: Point, destination: Point, context: EstimateContext) -> Estimate:
        distance = haversine_km(origin, destination)
        duration = travel_time_minutes(distance, self._speed_for(context))
        if self.use_live_traffic:
            duration *= self._traffic_multiplier(origin, destination, context)
        return Estimate(distance, duration)

    def _traffic_multiplier(self, origin: Point, destination: Point, context: EstimateContext) -> float:
        if self.traffic_provider is None:
            self._mark_degraded("traffic provider unavailable, using heuristic speeds")
            return 1.0
        if self._provider_failed:
            return 1.0
        try:
            multiplier = float(self.traffic_provider(origin, destination, context))
        except (DistanceProviderError, OSError, TimeoutError) as exc:
            self._provider_failed = True
            self._mark_degraded(f"traffic provider failed: {exc}")
            return 1.0
        if not math.isfinite(multiplier) or multiplier <= 0:
            self._provider_failed = True
            self._mark_degraded(f"traffic provider returned invalid multiplier {multiplier!r}")
            return 1.0
        return multiplier

    def _mark_degraded(self, reason: str) -> None:
        with self._lock:
            if self.degraded:
                return
            self.degraded = True
            self.degraded_reason = reason
        logger.warning("Distance estimates degraded: %s", reason)

    def precompute(
        self,
        points: Sequence[Point],
        districts: Optional[Sequence[Optional[str]]] = None,
        max_workers: int = config.RUN.matrix_workers,
    ) -> DistanceMatrix:
        """
        Estimate every pair among `points` on a thread pool, then freeze the cache
        and return the index-based matrix.
        """
        if districts is None:
            districts = [None] * len(points)
        unique: List[Point] = []
        unique_district: List[Optional[str]] = []
        position: Dict[Point, int] = {}
        for point, district in zip(points, districts):
            if point not in position:
                position[point] = len(unique)
                unique.append(point)
                unique_district.append(district)

        def fill_row(i: int) -> None:
            for j in range(i + 1, len(unique)):
                self.estimate(unique[i], unique[j], EstimateContext(unique_district[i], unique_district[j]))

        workers = max(1, min(max_workers, len(unique)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            # list() re-raises any worker exception here.
            list(pool.map(fill_row, range(len(unique))))
        self.freeze()
        logger.debug("Precomputed %d location pairs over %d workers", self.computed_pairs, workers)

        n = len(points)
        distances = [[0.0] * n for _ in range(n)]
        durations = [[0.0] * n for _ in range(n)]
        for i in range(n):
            for j in range(i + 1, n):
                est = self.estimate(points[i], points[j])
                distances[i][j] = distances[j][i] = est.distance_km
                durations[i][j] = durations[j][i] = est.duration_min
        return DistanceMatrix(distances, durations)
