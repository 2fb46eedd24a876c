"""
Request and result models for technician route optimization.

Input snapshots (jobs, technicians) and run configuration are validated here;
anything that gets past `parse_request` is safe to hand to the solver. JSON
field names are camelCase, Python attributes snake_case, and either spelling is
accepted on input.
"""

import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from techroute import config
from techroute.errors import InputValidationError
from techroute.geo import Point, hhmm_to_minutes


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK: Dict[Priority, int] = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.URGENT: 4,
}


class JobType(str, Enum):
    INSTALLATION = "installation"
    REPAIR = "repair"
    MAINTENANCE = "maintenance"
    INSPECTION = "inspection"
    EMERGENCY = "emergency"


class Algorithm(str, Enum):
    SIMULATED_ANNEALING = "simulated_annealing"
    GENETIC = "genetic"
    AI_ENHANCED = "ai_enhanced"


class UnassignedReason(str, Enum):
    CAPACITY_EXHAUSTED = "capacity_exhausted"
    DISTRICT_MISMATCH = "district_mismatch"
    TIME_WINDOW_VIOLATION = "time_window_violation"


class RunState(str, Enum):
    PENDING = "pending"
    CONSTRUCTING = "constructing"
    IMPROVING = "improving"
    VALIDATING = "validating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class GeoPoint(_Model):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)

    @property
    def point(self) -> Point:
        return (self.lat, self.lng)


class TimeWindow(_Model):
    """
    Minutes after midnight. "HH:MM" strings are accepted for either bound.
    """

    start: int = Field(ge=0, le=24 * 60)
    end: int = Field(ge=0, le=24 * 60)

    @field_validator("start", "end", mode="before")
    @classmethod
    def _parse_clock(cls, value: Any) -> Any:
        if isinstance(value, str) and ":" in value:
            return hhmm_to_minutes(value)
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if self.start >= self.end:
            raise ValueError("time window start must be before its end")
        return self

    @property
    def length(self) -> int:
        return self.end - self.start


class ServiceJob(_Model):
    id: str = Field(min_length=1)
    location: GeoPoint
    address: str = "Unknown address"
    duration_minutes: Optional[float] = Field(default=None, gt=0)
    priority: Priority = Priority.MEDIUM
    job_type: JobType = JobType.MAINTENANCE
    equipment_tag: Optional[str] = None
    district: str = "Unknown"
    time_window: Optional[TimeWindow] = None

    @property
    def duration(self) -> float:
        if self.duration_minutes is not None:
            return float(self.duration_minutes)
        return config.JOB_TYPE_DURATIONS.get(self.job_type.value, config.FALLBACK_JOB_DURATION)

    @property
    def point(self) -> Point:
        return self.location.point


def _default_home() -> GeoPoint:
    lat, lng = config.WARSAW_CENTER
    return GeoPoint(lat=lat, lng=lng)


def _default_hours() -> TimeWindow:
    start, end = config.DEFAULT_WORKING_HOURS
    return TimeWindow(start=start, end=end)


class Technician(_Model):
    id: str = Field(min_length=1)
    name: str = ""
    home: GeoPoint = Field(default_factory=_default_home)
    vehicle_type: str = "van"
    districts: FrozenSet[str] = Field(min_length=1)
    working_hours: TimeWindow = Field(default_factory=_default_hours)
    max_jobs_per_day: int = Field(default=config.DEFAULT_MAX_JOBS_PER_DAY, gt=0)

    def serves(self, district: str) -> bool:
        return district in self.districts


class ObjectiveWeights(_Model):
    priority: float = Field(default=config.OBJECTIVE.priority, gt=0)
    capacity: float = Field(default=config.OBJECTIVE.capacity, ge=0)
    workload: float = Field(default=config.OBJECTIVE.workload, ge=0)


class CostProfile(_Model):
    cost_per_km: float = Field(default=config.COST.cost_per_km, ge=0)
    cost_per_minute: float = Field(default=config.COST.cost_per_minute, ge=0)


class AnnealingParams(_Model):
    initial_temperature: float = Field(default=config.ANNEALING.initial_temperature, gt=0)
    cooling_rate: float = Field(default=config.ANNEALING.cooling_rate, gt=0, lt=1)
    min_temperature: float = Field(default=config.ANNEALING.min_temperature, gt=0)

    @model_validator(mode="after")
    def _check_floor(self) -> "AnnealingParams":
        if self.min_temperature >= self.initial_temperature:
            raise ValueError("minTemperature must be below initialTemperature")
        return self


class GeneticParams(_Model):
    population_size: int = Field(default=config.GENETIC.population_size, ge=2)
    elite_count: int = Field(default=config.GENETIC.elite_count, ge=1)
    generations: int = Field(default=config.GENETIC.generations, gt=0)
    mutation_rate: float = Field(default=config.GENETIC.mutation_rate, ge=0, le=1)
    tournament_size: int = Field(default=config.GENETIC.tournament_size, ge=2)

    @model_validator(mode="after")
    def _check_elite(self) -> "GeneticParams":
        if self.elite_count >= self.population_size:
            raise ValueError("eliteCount must be smaller than populationSize")
        return self


class OptimizationRequest(_Model):
    date: datetime.date
    technician_ids: Optional[List[str]] = None
    technicians: List[Technician] = Field(default_factory=list)
    jobs: List[ServiceJob] = Field(default_factory=list)
    max_jobs_per_technician: Optional[int] = Field(default=None, gt=0)
    prioritize_urgent: bool = True
    respect_time_windows: bool = True
    algorithm: Algorithm = Algorithm.SIMULATED_ANNEALING
    weights: ObjectiveWeights = Field(default_factory=ObjectiveWeights)
    cost_profiles: Dict[str, CostProfile] = Field(default_factory=dict)
    annealing: AnnealingParams = Field(default_factory=AnnealingParams)
    genetic: GeneticParams = Field(default_factory=GeneticParams)
    seed: Optional[int] = None
    time_budget_ms: Optional[int] = Field(default=config.RUN.time_budget_ms, gt=0)
    max_iterations: int = Field(default=config.RUN.max_iterations, gt=0)
    speed_kmph: float = Field(default=config.DEFAULT_SPEED_KMPH, gt=0)
    district_speeds: Dict[str, float] = Field(default_factory=dict)
    real_time_traffic: bool = False

    @field_validator("district_speeds")
    @classmethod
    def _positive_speeds(cls, value: Dict[str, float]) -> Dict[str, float]:
        bad = sorted(name for name, speed in value.items() if speed <= 0)
        if bad:
            raise ValueError(f"district speeds must be positive: {', '.join(bad)}")
        return value

    def selected_technicians(self) -> List[Technician]:
        """
        Technicians taking part in this run, ordered by id.
        """
        if self.technician_ids is None:
            chosen = list(self.technicians)
        else:
            wanted = set(self.technician_ids)
            chosen = [t for t in self.technicians if t.id in wanted]
        return sorted(chosen, key=lambda t: t.id)

    def capacity_for(self, technician: Technician) -> int:
        if self.max_jobs_per_technician is not None:
            return self.max_jobs_per_technician
        return technician.max_jobs_per_day

    def cost_profile_for(self, vehicle_type: str) -> CostProfile:
        if vehicle_type in self.cost_profiles:
            return self.cost_profiles[vehicle_type]
        builtin = config.VEHICLE_COST_PROFILES.get(vehicle_type, config.COST)
        return CostProfile(cost_per_km=builtin.cost_per_km, cost_per_minute=builtin.cost_per_minute)

    def district_speed_table(self) -> Dict[str, float]:
        table = dict(config.DISTRICT_SPEEDS_KMPH)
        table.update(self.district_speeds)
        return table


class RouteStop(_Model):
    job_id: str
    district: str
    arrival_estimate: str
    arrival_minute: float = Field(ge=0)
    departure_minute: float = Field(ge=0)
    cumulative_distance_km: float = Field(ge=0)
    cumulative_duration_min: float = Field(ge=0)
    lateness_minutes: float = Field(default=0.0, ge=0)


class Route(_Model):
    technician_id: str
    technician_name: str
    vehicle_type: str
    stops: List[RouteStop]
    total_distance_km: float = Field(ge=0)
    total_duration_min: float = Field(ge=0)
    travel_duration_min: float = Field(ge=0)
    overtime_minutes: float = Field(ge=0)
    estimated_cost: float = Field(ge=0)
    efficiency: float = Field(ge=0, le=1)
    district_coverage: List[str]


class UnassignedJob(_Model):
    job_id: str
    priority: Priority
    reason: UnassignedReason


class RunMetrics(_Model):
    iterations: int = Field(ge=0)
    objective_value: float
    initial_objective_value: float
    wall_clock_ms: float = Field(ge=0)
    partial: bool
    degraded: bool
    degraded_reasons: List[str] = Field(default_factory=list)
    status: RunState
    algorithm: Algorithm
    seed: Optional[int] = None
    total_distance_km: float = Field(ge=0)
    total_duration_min: float = Field(ge=0)
    total_cost: float = Field(ge=0)
    average_jobs_per_technician: float = Field(ge=0)
    efficiency_score: float = Field(ge=0, le=1)
    validation_repairs: int = Field(default=0, ge=0)
    validation_violations: List[str] = Field(default_factory=list)


class OptimizationResult(_Model):
    date: datetime.date
    routes: List[Route]
    unassigned_jobs: List[UnassignedJob]
    metrics: RunMetrics

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def _format_validation_error(exc: ValidationError) -> List[str]:
    messages = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err.get("loc", ()))
        messages.append(f"{where}: {err['msg']}" if where else err["msg"])
    return messages


def parse_request(payload: Union[OptimizationRequest, Mapping[str, Any]]) -> OptimizationRequest:
    """
    Validate a request (model or JSON-shaped mapping) and check the cross-field
    rules pydantic cannot express. Raises InputValidationError listing every problem.
    """
    if isinstance(payload, OptimizationRequest):
        request = payload
    else:
        try:
            request = OptimizationRequest.model_validate(payload)
        except ValidationError as exc:
            raise InputValidationError(_format_validation_error(exc)) from exc

    errors: List[str] = []
    if not request.jobs:
        errors.append("No jobs provided")
    if not request.technicians:
        errors.append("No technicians provided")

    seen_jobs = set()
    for job in request.jobs:
        if job.id in seen_jobs:
            errors.append(f"Duplicate job ID: {job.id}")
        seen_jobs.add(job.id)

    seen_techs = set()
    for tech in request.technicians:
        if tech.id in seen_techs:
            errors.append(f"Duplicate technician ID: {tech.id}")
        seen_techs.add(tech.id)

    if request.technician_ids is not None:
        unknown = sorted(set(request.technician_ids) - seen_techs)
        if unknown:
            errors.append(f"Unknown technician IDs: {', '.join(unknown)}")
        if not request.technician_ids:
            errors.append("No technicians selected")

    if errors:
        raise InputValidationError(errors)
    return request
