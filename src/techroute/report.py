"""
Reporting utilities: text summaries and route analytics over optimization results.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from techroute.models import OptimizationResult

ResultLike = Union[OptimizationResult, Mapping[str, Any]]

# Share of total distance reported as saved against unoptimized routing.
COST_SAVINGS_RATE = 0.15
TOP_TECHNICIANS = 5


def _as_dict(result: ResultLike) -> Dict[str, Any]:
    if isinstance(result, OptimizationResult):
        return result.to_dict()
    return dict(result)


def format_result(result: ResultLike) -> str:
    """
    Render a human-readable summary of one optimization result.
    """
    data = _as_dict(result)
    metrics = data.get("metrics", {})
    lines = []
    lines.append(
        f"Date: {data.get('date')} [{metrics.get('algorithm')}, {metrics.get('status')}]"
        f" J={metrics.get('objectiveValue', 0):.2f} (initial {metrics.get('initialObjectiveValue', 0):.2f})"
    )
    for route in data.get("routes", []):
        lines.append(
            f"- {route['technicianId']} {route.get('technicianName', '')}".rstrip()
            + f": {len(route['stops'])} jobs, {route['totalDistanceKm']:.1f} km,"
            f" {route['totalDurationMin']:.1f} min, overtime {route.get('overtimeMinutes', 0):.1f} min,"
            f" cost {route['estimatedCost']:.2f}, efficiency {route['efficiency']:.2f}"
        )
        for idx, stop in enumerate(route.get("stops", []), start=1):
            late = stop.get("latenessMinutes", 0)
            suffix = f" late {late:.1f} min" if late else ""
            lines.append(
                f"  {idx}. {stop['jobId']} ({stop['district']}) at {stop['arrivalEstimate']}"
                f" km {stop['cumulativeDistanceKm']:.1f}{suffix}"
            )
    unassigned = data.get("unassignedJobs", [])
    if unassigned:
        lines.append("Unassigned: " + ", ".join(f"{u['jobId']} ({u['reason']})" for u in unassigned))
    if metrics.get("degraded"):
        lines.append("Degraded: " + "; ".join(metrics.get("degradedReasons", [])))
    return "\n".join(lines)


def route_analytics(results: Iterable[ResultLike], district: Optional[str] = None) -> Dict[str, Any]:
    """
    Aggregate route metrics over many results.

    With `district`, only routes with at least one stop in that district count.
    """
    routes: List[Dict[str, Any]] = []
    for result in results:
        for route in _as_dict(result).get("routes", []):
            if district is None or any(stop["district"] == district for stop in route.get("stops", [])):
                routes.append(route)

    total_distance = sum(r["totalDistanceKm"] for r in routes)
    average_efficiency = sum(r["efficiency"] for r in routes) / len(routes) if routes else 0.0

    by_technician: Dict[str, List[float]] = {}
    names: Dict[str, str] = {}
    for route in routes:
        by_technician.setdefault(route["technicianId"], []).append(route["efficiency"])
        names[route["technicianId"]] = route.get("technicianName", "")
    ranked = sorted(
        by_technician.items(),
        key=lambda item: (-sum(item[1]) / len(item[1]), item[0]),
    )
    top = [
        {
            "technicianId": tech_id,
            "technicianName": names[tech_id],
            "routes": len(values),
            "averageEfficiency": round(sum(values) / len(values), 4),
        }
        for tech_id, values in ranked[:TOP_TECHNICIANS]
    ]

    per_district: Dict[str, Dict[str, float]] = {}
    for route in routes:
        for name in route.get("districtCoverage") or sorted({s["district"] for s in route.get("stops", [])}):
            acc = per_district.setdefault(name, {"routeCount": 0, "distance": 0.0, "efficiency": 0.0})
            acc["routeCount"] += 1
            acc["distance"] += route["totalDistanceKm"]
            acc["efficiency"] += route["efficiency"]
    # Best districts first; a list keeps the order through JSON encoders that sort keys.
    district_performance = [
        {
            "district": name,
            "routeCount": int(acc["routeCount"]),
            "averageDistance": round(acc["distance"] / acc["routeCount"], 2),
            "averageEfficiency": round(acc["efficiency"] / acc["routeCount"], 4),
        }
        for name, acc in per_district.items()
    ]
    district_performance.sort(key=lambda d: (-d["averageEfficiency"], d["district"]))

    return {
        "totalRoutes": len(routes),
        "averageEfficiency": round(average_efficiency, 4),
        "totalDistance": round(total_distance, 2),
        "costSavings": round(total_distance * COST_SAVINGS_RATE, 2),
        "topPerformingTechnicians": top,
        "districtPerformance": district_performance,
    }
