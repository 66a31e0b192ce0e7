"""
Admin routes: health check and metrics
"""
import time

from quart import Blueprint, jsonify

from school_proximity.metrics import get_metrics

bp = Blueprint('admin', __name__)


@bp.route('/healthz')
async def healthz():
    """Lightweight health endpoint returning component status."""
    from school_proximity import app as app_module

    running = sum(1 for h in app_module.active_runs.values() if not h.done)
    status = {
        'app': 'ok',
        'time': time.time(),
        'ready': app_module.pipeline is not None,
        'active_runs': running,
        'cache_entries': len(app_module.pipeline.cache) if app_module.pipeline is not None else 0,
    }
    return jsonify(status)


@bp.route('/metrics/json')
async def metrics_json():
    """Return simple JSON metrics (counters and latency summaries)"""
    return jsonify(get_metrics())


def register(app):
    """Register admin blueprint with app"""
    app.register_blueprint(bp)
