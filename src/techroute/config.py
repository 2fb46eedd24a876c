"""
Tunable defaults for the technician route optimizer.

Every number that steers estimation, construction or search lives here so it can
be adjusted without touching algorithmic code. Request models take their
defaults from these values.
"""

import os
from dataclasses import dataclass
from typing import Dict, Tuple

# Warsaw centre; used when a technician snapshot carries no home location.
WARSAW_CENTER: Tuple[float, float] = (52.2297, 21.0122)

DEFAULT_SPEED_KMPH = 30.0

# Average urban speed per district. City-centre districts are congested.
DISTRICT_SPEEDS_KMPH: Dict[str, float] = {
    "Śródmieście": 18.0,
    "Wola": 24.0,
    "Ochota": 24.0,
    "Mokotów": 25.0,
    "Żoliborz": 26.0,
    "Praga-Północ": 24.0,
    "Praga-Południe": 27.0,
    "Bielany": 30.0,
    "Bemowo": 30.0,
    "Targówek": 30.0,
    "Ursynów": 32.0,
    "Włochy": 32.0,
    "Ursus": 34.0,
    "Wilanów": 34.0,
    "Białołęka": 36.0,
    "Rembertów": 38.0,
    "Wawer": 38.0,
}

JOB_TYPE_DURATIONS: Dict[str, float] = {
    "emergency": 120.0,
    "installation": 240.0,
    "repair": 90.0,
    "maintenance": 60.0,
    "inspection": 45.0,
}
FALLBACK_JOB_DURATION = 90.0

DEFAULT_WORKING_HOURS: Tuple[int, int] = (8 * 60, 17 * 60)
DEFAULT_MAX_JOBS_PER_DAY = 8

# Weight of an unassigned job in the priority violation term, by priority.
UNASSIGNED_WEIGHTS: Dict[str, float] = {"urgent": 8.0, "high": 4.0, "medium": 2.0, "low": 1.0}
# Weight per hour of lateness for stops whose priority is in the SLA set.
LATENESS_WEIGHTS: Dict[str, float] = {"urgent": 2.0, "high": 1.0}


@dataclass(frozen=True)
class ObjectiveDefaults:
    priority: float = 1000.0
    capacity: float = 100.0
    workload: float = 1.0


@dataclass(frozen=True)
class AnnealingDefaults:
    initial_temperature: float = 50.0
    cooling_rate: float = 0.995
    min_temperature: float = 0.01


@dataclass(frozen=True)
class GeneticDefaults:
    population_size: int = 30
    elite_count: int = 6
    generations: int = 120
    mutation_rate: float = 0.3
    tournament_size: int = 3


@dataclass(frozen=True)
class CostDefaults:
    cost_per_km: float = 0.6
    cost_per_minute: float = 80.0 / 60.0


@dataclass(frozen=True)
class RunDefaults:
    time_budget_ms: int = 30_000
    max_iterations: int = 5_000
    # OR-Tools sequence polish only pays off on longer routes.
    polish_min_stops: int = 4
    matrix_workers: int = 4


OBJECTIVE = ObjectiveDefaults()
ANNEALING = AnnealingDefaults()
GENETIC = GeneticDefaults()
COST = CostDefaults()
RUN = RunDefaults()

VEHICLE_COST_PROFILES: Dict[str, CostDefaults] = {
    "van": COST,
    "car": CostDefaults(cost_per_km=0.45, cost_per_minute=70.0 / 60.0),
    "truck": CostDefaults(cost_per_km=0.9, cost_per_minute=95.0 / 60.0),
}


@dataclass(frozen=True)
class ServerSettings:
    """
    Settings for the HTTP surface, read from the environment.
    """

    port: int = 5000
    max_workers: int = 4
    time_budget_ms: int = RUN.time_budget_ms
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServerSettings":
        return cls(
            port=int(os.environ.get("PORT", 5000)),
            max_workers=int(os.environ.get("TECHROUTE_MAX_WORKERS", os.cpu_count() or 4)),
            time_budget_ms=int(os.environ.get("TECHROUTE_TIME_BUDGET_MS", RUN.time_budget_ms)),
            log_level=os.environ.get("TECHROUTE_LOG_LEVEL", "INFO").upper(),
        )
