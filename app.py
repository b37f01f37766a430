"""
SiteGrade JSON API.

    GET  /api/grading/layers              layer catalog and scale profiles
    POST /api/grading                     grade a coordinate, wait for the batch
    POST /api/grading/jobs                queue a grading run (202)
    GET  /api/grading/jobs/<id>           poll a queued run
    POST /api/grading/jobs/<id>/cancel    stop a queued or running run
    GET  /healthz, /api/health            liveness, raster service health
"""
import os
import logging
import uuid
from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv
from sg_trace import TraceContext, set_trace, clear_trace
from grading_errors import GradingError
from grading_orchestrator import build_tasks, estimate_grading_time, grade_location
from grading_result import batch_to_dict
from layer_config import (
    CATEGORY_LABELS,
    GRADING_POLICY_TABLE,
    SCALE_ORDER,
    LayerCategory,
)
from models import (
    init_db, create_job, get_job, request_cancel, FINAL_STATUSES,
)
import health_monitor

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry (only when SENTRY_DSN is set)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions
    from grading_errors import RasterUpstreamError

    # Upstream raster failures end up in a layer's error list; report them
    # as breadcrumbs on whatever event follows, not as events of their own.
    _BREADCRUMB_ONLY = (
        (RasterUpstreamError, "wms"),
        (requests.exceptions.RequestException, "http"),
    )

    def _sentry_before_send(event, hint):
        exc_type, exc_value, _ = hint.get("exc_info") or (None, None, None)
        if exc_type is None:
            return event
        for error_type, category in _BREADCRUMB_ONLY:
            if issubclass(exc_type, error_type):
                sentry_sdk.add_breadcrumb(
                    category=category,
                    message=str(exc_value or ""),
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("SITEGRADE_RELEASE"),
        environment=os.environ.get("SITEGRADE_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Behind one reverse proxy: take the client address from X-Forwarded-For
# so rate limits and logs key on the caller, not the proxy.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limits.  Grading endpoints get their own, tighter limit: one request
# fans out to hundreds of upstream reads.  Storage is per process, so the
# effective limit scales with the gunicorn worker count.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_GRADE = os.environ.get("RATE_LIMIT_GRADE", "20/hour")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Request IDs (also used as the trace id and stored on queued jobs)
# ---------------------------------------------------------------------------
@app.before_request
def _assign_request_id():
    g.request_id = uuid.uuid4().hex[:10]


@app.after_request
def _echo_request_id(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

class RequestValidationError(ValueError):
    """Client sent an unusable grading request (HTTP 400)."""


def _parse_coordinate(data):
    try:
        lat = float(data["lat"])
        lng = float(data["lng"])
    except KeyError as e:
        raise RequestValidationError(f"{e.args[0]} is required") from None
    except (TypeError, ValueError):
        raise RequestValidationError("lat and lng must be numbers") from None
    if not -90.0 <= lat <= 90.0:
        raise RequestValidationError("lat must be between -90 and 90")
    if not -180.0 <= lng <= 180.0:
        raise RequestValidationError("lng must be between -180 and 180")
    return lat, lng


def _parse_grading_request(data):
    """Validate a grading request body. Returns a dict of grade_location kwargs."""
    if not isinstance(data, dict):
        raise RequestValidationError("JSON object body required")
    lat, lng = _parse_coordinate(data)

    layer_ids = data.get("layer_ids")
    if layer_ids is not None:
        if not isinstance(layer_ids, list) or not all(isinstance(x, str) for x in layer_ids):
            raise RequestValidationError("layer_ids must be a list of strings")
        if not layer_ids:
            raise RequestValidationError("layer_ids must not be empty")
        unknown = [lid for lid in layer_ids if lid not in GRADING_POLICY_TABLE]
        if unknown:
            raise RequestValidationError(f"Unknown layer ids: {unknown}")

    scale_ceiling = data.get("scale_ceiling")
    if scale_ceiling is not None and scale_ceiling not in SCALE_ORDER:
        raise RequestValidationError(
            f"scale_ceiling must be one of {list(SCALE_ORDER)}"
        )

    return {
        "lat": lat,
        "lng": lng,
        "layer_ids": layer_ids,
        "scale_ceiling": scale_ceiling,
    }


def _estimate_for(params):
    table = GRADING_POLICY_TABLE
    if params.get("layer_ids"):
        table = table.subset(params["layer_ids"])
    estimate = estimate_grading_time(build_tasks(table, params.get("scale_ceiling")))
    return {
        "task_count": estimate.task_count,
        "eta_seconds": round(estimate.eta_seconds, 1),
        "serial_seconds": round(estimate.serial_seconds, 1),
    }


# ---------------------------------------------------------------------------
# Layer catalog
# ---------------------------------------------------------------------------

@app.route("/api/grading/layers")
def list_layers():
    """Layer catalog grouped by category, with each layer's grading policy."""
    grouped = {category: [] for category in LayerCategory}
    for layer in GRADING_POLICY_TABLE.layers():
        policy = GRADING_POLICY_TABLE.get_policy(layer.layer_id)
        grouped[layer.category].append({
            "layer_id": layer.layer_id,
            "display_name": layer.display_name,
            "unit": layer.unit,
            "value_kind": layer.value_kind.value,
            "methods": [m.value for m in policy.ordered_methods()],
            "base_scale": policy.base_scale,
            "priority": policy.priority,
            "critical": policy.critical,
        })
    categories = [
        {
            "category": category.value,
            "label": CATEGORY_LABELS[category],
            "layers": layers,
        }
        for category, layers in grouped.items()
        if layers
    ]
    scales = {
        name: {
            "radius_meters": profile.radius_meters,
            "grid_resolution_meters": profile.grid_resolution_meters,
            "max_samples": profile.max_samples,
            "description": profile.description,
        }
        for name, profile in GRADING_POLICY_TABLE.scales.items()
    }
    return jsonify({"categories": categories, "scales": scales})


# ---------------------------------------------------------------------------
# Synchronous grading
# ---------------------------------------------------------------------------

@app.route("/api/grading", methods=["POST"])
@limiter.limit(RATE_LIMIT_GRADE)
def grade():
    """Grade a coordinate and return the finished batch.

    Accepts JSON: {"lat": 52.09, "lng": 5.12, "layer_ids"?: [...], "scale_ceiling"?: "quick"}
    """
    try:
        params = _parse_grading_request(request.get_json(silent=True))
    except RequestValidationError as e:
        return jsonify({"error": str(e)}), 400

    request_id = getattr(g, "request_id", "unknown")
    trace_ctx = TraceContext(trace_id=request_id)
    set_trace(trace_ctx)
    try:
        batch = grade_location(**params)
    except (GradingError, ValueError) as e:
        return jsonify({"error": str(e)}), 400
    finally:
        trace_ctx.log_summary()
        clear_trace()

    payload = batch_to_dict(batch)
    payload["request_id"] = request_id
    return jsonify(payload)


# ---------------------------------------------------------------------------
# Async grading jobs
# ---------------------------------------------------------------------------

@app.route("/api/grading/jobs", methods=["POST"])
@limiter.limit(RATE_LIMIT_GRADE)
def create_grading_job():
    """Queue a grading run for the background worker. Returns 202 with job_id."""
    try:
        params = _parse_grading_request(request.get_json(silent=True))
    except RequestValidationError as e:
        return jsonify({"error": str(e)}), 400

    job_id = create_job(
        params["lat"],
        params["lng"],
        layer_ids=params["layer_ids"],
        scale_ceiling=params["scale_ceiling"],
        request_id=getattr(g, "request_id", None),
    )
    logger.info("Queued grading job %s (%.5f, %.5f)", job_id, params["lat"], params["lng"])
    return jsonify({
        "job_id": job_id,
        "status": "queued",
        "estimate": _estimate_for(params),
    }), 202


@app.route("/api/grading/jobs/<job_id>")
@limiter.exempt
def grading_job_status(job_id):
    """
    Polling endpoint for async grading. Returns JSON:
    {job_id, status, final, progress, result?, error?}
    status: queued | running | done | failed | cancelled
    """
    job = get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404
    payload = {
        "job_id": job["job_id"],
        "status": job["status"],
        "final": job["status"] in FINAL_STATUSES,
        "cancel_requested": job["cancel_requested"],
        "progress": {
            "layers_completed": job["layers_completed"],
            "layers_total": job["layers_total"],
            "current_layer_title": job["current_layer_title"],
            "tasks_completed": job["tasks_completed"],
            "tasks_total": job["tasks_total"],
        },
    }
    if job.get("result") is not None:
        payload["result"] = job["result"]
    if job.get("error"):
        payload["error"] = job["error"]
    return jsonify(payload)


@app.route("/api/grading/jobs/<job_id>/cancel", methods=["POST"])
def cancel_grading_job(job_id):
    """Request cancellation. Finished tasks stay in the job's partial result."""
    job = get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404
    if not request_cancel(job_id):
        return jsonify({
            "error": f"Job already {job['status']}",
            "status": job["status"],
        }), 409
    job = get_job(job_id)
    return jsonify({
        "job_id": job_id,
        "status": job["status"],
        "cancel_requested": True,
    })


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    return jsonify({
        "status": "ok",
        "layers": len(GRADING_POLICY_TABLE),
    })


@app.route("/api/health")
@limiter.exempt
def api_health():
    """Raster service health per WMS endpoint (probe result, else recent call outcomes)."""
    services = health_monitor.get_status()
    statuses = {s["status"] for s in services.values()}
    if "down" in statuses:
        overall = "down"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "ok"
    return jsonify({"status": overall, "services": services})


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({
        "error": "Too many requests. Please wait and try again.",
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"error": "Internal server error"}), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

init_db()


def _start_background_threads():
    # Under gunicorn these are started per worker by gunicorn_config.post_fork.
    from worker import start_worker
    start_worker()
    health_monitor.start_monitor()


if __name__ == "__main__":
    _start_background_threads()
    app.run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 5001)),
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
    )
elif os.environ.get("START_WORKER") == "1":
    try:
        _start_background_threads()
    except Exception:
        logger.exception("START_WORKER=1 set but background threads failed to start")
