import logging
import os
import sys
from typing import Any, Dict, List

from flask import Flask, jsonify, request
from flask_cors import CORS

# Ensure src/ is on path when running as a script
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from techroute.config import ServerSettings
from techroute.data import generate_request
from techroute.errors import InputValidationError
from techroute.models import parse_request
from techroute.report import format_result, route_analytics
from techroute.solver import optimize_many, optimize_routes

settings = ServerSettings.from_env()
logger = logging.getLogger("techroute.api")

app = Flask(__name__)
CORS(app)


def _with_budget(body: Dict[str, Any]) -> Dict[str, Any]:
    # Server-wide default budget unless the caller sets one.
    if "timeBudgetMs" not in body and "time_budget_ms" not in body:
        body = dict(body, timeBudgetMs=settings.time_budget_ms)
    return body


def _validation_failed(exc: InputValidationError):
    return jsonify({"error": "Invalid optimization request", "details": exc.errors}), 400


@app.route("/api/routes/optimize", methods=["POST"])
def api_optimize():
    body = request.get_json(force=True, silent=True) or {}
    if not isinstance(body, dict):
        return jsonify({"error": "Invalid optimization request", "details": ["request body must be a JSON object"]}), 400
    try:
        result = optimize_routes(_with_budget(body))
    except InputValidationError as exc:
        return _validation_failed(exc)
    logger.debug("%s", format_result(result))
    return jsonify(result.to_dict())


@app.route("/api/routes/optimize-batch", methods=["POST"])
def api_optimize_batch():
    body = request.get_json(force=True, silent=True) or {}
    raw = body.get("requests") if isinstance(body, dict) else None
    if not isinstance(raw, list) or not raw:
        return jsonify({"error": "Invalid optimization request", "details": ["requests must be a non-empty list"]}), 400

    # Validate everything up front so one bad entry does not waste the others' work.
    parsed = []
    details: List[str] = []
    for idx, item in enumerate(raw):
        try:
            parsed.append(parse_request(_with_budget(item if isinstance(item, dict) else {})))
        except InputValidationError as exc:
            details.extend(f"requests[{idx}]: {msg}" for msg in exc.errors)
    if details:
        return jsonify({"error": "Invalid optimization request", "details": details}), 400

    results = optimize_many(parsed, max_workers=min(settings.max_workers, len(parsed)))
    return jsonify({"results": [r.to_dict() for r in results]})


@app.route("/api/routes/analytics", methods=["POST"])
def api_analytics():
    body = request.get_json(force=True, silent=True) or {}
    results = body.get("results") if isinstance(body, dict) else None
    if not isinstance(results, list):
        return jsonify({"error": "Invalid analytics request", "details": ["results must be a list"]}), 400
    try:
        analytics = route_analytics(results, district=body.get("district"))
    except (KeyError, TypeError, AttributeError) as exc:
        return jsonify({"error": "Invalid analytics request", "details": [f"malformed result: {exc}"]}), 400
    return jsonify(analytics)


@app.route("/api/sample", methods=["GET"])
def api_sample():
    try:
        jobs = int(request.args.get("jobs", 20))
        technicians = int(request.args.get("technicians", 3))
        seed = int(request.args.get("seed", 42))
    except ValueError:
        return jsonify({"error": "Invalid sample request", "details": ["jobs, technicians and seed must be integers"]}), 400
    if jobs <= 0 or technicians <= 0:
        return jsonify({"error": "Invalid sample request", "details": ["jobs and technicians must be positive"]}), 400
    return jsonify(generate_request(seed, n_jobs=jobs, n_technicians=technicians, date=request.args.get("date")))


if __name__ == "__main__":
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.run(host="0.0.0.0", port=settings.port, debug=False)
