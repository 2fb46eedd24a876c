"""
Sample data generation for Warsaw service days.

Jobs are sampled inside district bounding boxes, technicians are based near the
centre of their first district. Everything is driven by `random.Random(seed)`,
so a seed always yields the same request.
"""

import datetime
import random
from typing import Any, Dict, List, Optional, Tuple

from techroute import config
from techroute.geo import minutes_to_hhmm

# name -> centre (lat, lng) and bounds (south, west, north, east)
WARSAW_DISTRICTS: Dict[str, Dict[str, Tuple[float, ...]]] = {
    "Śródmieście": {"center": (52.2297, 21.0122), "bounds": (52.2200, 21.0000, 52.2500, 21.0400)},
    "Wilanów": {"center": (52.1700, 21.1000), "bounds": (52.1600, 21.0800, 52.1800, 21.1200)},
    "Mokotów": {"center": (52.1850, 21.0250), "bounds": (52.1700, 21.0000, 52.2000, 21.0500)},
    "Żoliborz": {"center": (52.2700, 21.0000), "bounds": (52.2500, 20.9700, 52.2900, 21.0300)},
    "Ursynów": {"center": (52.1500, 21.0600), "bounds": (52.1300, 21.0300, 52.1700, 21.0900)},
    "Wola": {"center": (52.2300, 20.9800), "bounds": (52.2100, 20.9500, 52.2500, 21.0100)},
    "Praga-Południe": {"center": (52.2200, 21.0700), "bounds": (52.2000, 21.0400, 52.2400, 21.1000)},
    "Targówek": {"center": (52.2900, 21.0650), "bounds": (52.2700, 21.0300, 52.3100, 21.1000)},
    "Bemowo": {"center": (52.2500, 20.9350), "bounds": (52.2300, 20.9000, 52.2700, 20.9700)},
    "Bielany": {"center": (52.2800, 20.9500), "bounds": (52.2600, 20.9200, 52.3000, 20.9800)},
}

DISTRICT_NAMES: List[str] = list(WARSAW_DISTRICTS)

STREETS: Dict[str, List[str]] = {
    "Śródmieście": ["Nowy Świat", "Krakowskie Przedmieście", "Marszałkowska", "Aleje Jerozolimskie"],
    "Wilanów": ["Wilanowska", "Branickiego", "Sarmacka", "Klimczaka"],
    "Mokotów": ["Puławska", "Niepodległości", "Domaniewska", "Woronicza"],
    "Żoliborz": ["Słowackiego", "Mickiewicza", "Krasińskiego", "Plac Wilsona"],
    "Ursynów": ["Pileckiego", "Rosoła", "Stryjeńskich", "Komisji Edukacji Narodowej"],
    "Wola": ["Solidarności", "Leszno", "Chłodna", "Towarowa"],
    "Praga-Południe": ["Grochowska", "Saska", "Francuska", "Waszyngtona"],
    "Targówek": ["Bródnowska", "Malborska", "Św. Wincentego", "Handlowa"],
    "Bemowo": ["Powstańców Śląskich", "Górczewska", "Lazurowa", "Dywizjonu 303"],
    "Bielany": ["Marymoncka", "Kasprowicza", "Żeromskiego", "Wólczyńska"],
}

# Sample durations stay short so a default 08:00-17:00 shift holds several jobs.
JOB_TYPE_WEIGHTS: List[Tuple[str, float]] = [
    ("maintenance", 0.35),
    ("repair", 0.25),
    ("inspection", 0.2),
    ("installation", 0.1),
    ("emergency", 0.1),
]
PRIORITY_WEIGHTS: List[Tuple[str, float]] = [
    ("low", 0.2),
    ("medium", 0.45),
    ("high", 0.25),
    ("urgent", 0.1),
]
FIRST_NAMES = ["Anna", "Piotr", "Katarzyna", "Tomasz", "Magdalena", "Paweł", "Agnieszka", "Marek"]
LAST_NAMES = ["Nowak", "Kowalski", "Wiśniewska", "Wójcik", "Kamińska", "Lewandowski", "Zielińska", "Szymański"]
VEHICLE_TYPES = ["van", "van", "car", "truck"]


def _weighted(rng: random.Random, choices: List[Tuple[str, float]]) -> str:
    names = [name for name, _ in choices]
    weights = [w for _, w in choices]
    return rng.choices(names, weights=weights, k=1)[0]


def random_point_in(rng: random.Random, district: str) -> Dict[str, float]:
    """
    Uniform point inside a district's bounding box.
    """
    south, west, north, east = WARSAW_DISTRICTS[district]["bounds"]
    return {"lat": round(rng.uniform(south, north), 6), "lng": round(rng.uniform(west, east), 6)}


def district_of(lat: float, lng: float) -> Optional[str]:
    """
    First district whose bounding box contains the point, if any.
    """
    for name, info in WARSAW_DISTRICTS.items():
        south, west, north, east = info["bounds"]
        if south <= lat <= north and west <= lng <= east:
            return name
    return None


def generate_jobs(
    seed: int,
    n: int = 20,
    districts: Optional[List[str]] = None,
    duration_range: Tuple[int, int] = (30, 90),
    window_share: float = 0.3,
    day_window: Tuple[int, int] = config.DEFAULT_WORKING_HOURS,
) -> List[Dict[str, Any]]:
    """
    Generate n service jobs spread over `districts` (default: all).
    About `window_share` of them get a preferred time window of 1-3 hours.
    """
    rng = random.Random(seed)
    pool = districts or DISTRICT_NAMES
    jobs: List[Dict[str, Any]] = []
    for i in range(n):
        district = rng.choice(pool)
        job_type = _weighted(rng, JOB_TYPE_WEIGHTS)
        street = rng.choice(STREETS.get(district, ["Główna"]))
        job: Dict[str, Any] = {
            "id": f"J{i + 1:03d}",
            "location": random_point_in(rng, district),
            "address": f"ul. {street} {rng.randint(1, 120)}, Warszawa",
            "durationMinutes": rng.randint(duration_range[0], duration_range[1]),
            "priority": _weighted(rng, PRIORITY_WEIGHTS),
            "jobType": job_type,
            "district": district,
            "timeWindow": None,
        }
        if job_type in ("installation", "repair"):
            job["equipmentTag"] = f"HVAC-{rng.randint(1000, 9999)}"
        if rng.random() < window_share:
            day_start, day_end = day_window
            span = rng.randint(60, 180)
            start = rng.randint(day_start, max(day_start, day_end - span))
            end = min(day_end, start + span)
            job["timeWindow"] = {"start": minutes_to_hhmm(start), "end": minutes_to_hhmm(end)}
        jobs.append(job)
    return jobs


def generate_technicians(
    seed: int,
    n: int = 3,
    districts: Optional[List[str]] = None,
    districts_per_technician: int = 4,
    max_jobs_per_day: int = config.DEFAULT_MAX_JOBS_PER_DAY,
) -> List[Dict[str, Any]]:
    """
    Generate n technicians. Service areas rotate through the district pool so
    every district is covered when n * districts_per_technician >= len(pool).
    """
    rng = random.Random(seed)
    pool = districts or DISTRICT_NAMES
    per_tech = max(1, min(districts_per_technician, len(pool)))
    technicians: List[Dict[str, Any]] = []
    for i in range(n):
        offset = (i * per_tech) % len(pool)
        served = [pool[(offset + k) % len(pool)] for k in range(per_tech)]
        lat, lng = WARSAW_DISTRICTS[served[0]]["center"] if served[0] in WARSAW_DISTRICTS else config.WARSAW_CENTER
        technicians.append(
            {
                "id": f"T{i + 1:02d}",
                "name": f"{rng.choice(FIRST_NAMES)} {rng.choice(LAST_NAMES)}",
                "home": {"lat": lat, "lng": lng},
                "vehicleType": rng.choice(VEHICLE_TYPES),
                "districts": served,
                "workingHours": {
                    "start": minutes_to_hhmm(config.DEFAULT_WORKING_HOURS[0]),
                    "end": minutes_to_hhmm(config.DEFAULT_WORKING_HOURS[1]),
                },
                "maxJobsPerDay": max_jobs_per_day,
            }
        )
    return technicians


def generate_request(
    seed: int,
    n_jobs: int = 20,
    n_technicians: int = 3,
    date: Optional[str] = None,
    **options: Any,
) -> Dict[str, Any]:
    """
    A complete JSON-shaped optimization request. Extra keyword options are
    copied into the request as-is (e.g. algorithm="genetic").
    """
    request: Dict[str, Any] = {
        "date": date or str(datetime.date.today()),
        "technicians": generate_technicians(seed, n=n_technicians),
        "jobs": generate_jobs(seed + 1, n=n_jobs),
        "seed": seed,
    }
    request.update(options)
    return request
