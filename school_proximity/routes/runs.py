"""
Run routes: start, inspect, cancel and save proximity runs
"""
import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List

from quart import Blueprint, jsonify, request

from school_proximity.models import AmenityCandidate, OriginEntity, TravelMode, destination_category
from school_proximity.services.orchestrator import CancellationToken
from school_proximity.services.persistence import save_results

logger = logging.getLogger(__name__)

bp = Blueprint('runs', __name__)


def _app():
    from school_proximity import app as app_module
    return app_module


def _parse_origins(raw: Any) -> List[OriginEntity]:
    if not isinstance(raw, list) or not raw:
        raise ValueError('origins must be a non-empty list')
    origins = []
    for record in raw:
        if not isinstance(record, dict):
            raise ValueError('each origin must be an object')
        origins.append(OriginEntity.from_record(record))
    return origins


def _parse_destinations(raw: Any, category_key: str) -> List[AmenityCandidate]:
    if not isinstance(raw, list) or not raw:
        raise ValueError('destinations must be a non-empty list')
    destinations = []
    for record in raw:
        if not isinstance(record, dict):
            raise ValueError('each destination must be an object')
        destinations.append(AmenityCandidate.from_record(record, category_key))
    if not any(d.location is not None for d in destinations):
        raise ValueError('no destination has usable coordinates')
    return destinations


async def _drive(handle, origins, category, travel_mode, destinations=None):
    """Run the orchestrator in the background and keep its report on the handle."""
    try:
        handle.report = await handle.orchestrator.run(
            origins, category, travel_mode, token=handle.token, destinations=destinations)
    except Exception:
        logger.exception("[RUNS] Run %s crashed", handle.run_id)
        raise
    finally:
        handle.finished_at = time.time()
    logger.info("[RUNS] Run %s finished: %s", handle.run_id, handle.report.summary())


def _run_status(handle) -> Dict[str, Any]:
    status = {
        'run_id': handle.run_id,
        'category': handle.category,
        'travel_mode': handle.travel_mode,
        'created_at': handle.created_at,
        'progress': handle.orchestrator.progress,
        'summary': handle.report.summary() if handle.report is not None else None,
    }
    status['state'] = status['progress']['state']
    task = handle.task
    # a crash outside the orchestrator leaves no report behind
    if task is not None and task.done() and not task.cancelled() and task.exception() is not None:
        status['state'] = 'failed'
        status['error'] = str(task.exception())
    if handle.save_report is not None:
        status['saved'] = handle.save_report.to_dict()
    return status


@bp.route('/api/runs', methods=['POST'])
async def start_run():
    """Start a background run for a list of origins"""
    app_module = _app()
    pipeline = app_module.pipeline
    if pipeline is None:
        return jsonify({'error': 'service not ready'}), 503

    payload = await request.get_json(silent=True) or {}
    try:
        origins = _parse_origins(payload.get('origins'))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    category_name = str(payload.get('category') or '')
    category = pipeline.config.get_category(category_name)
    destinations = None
    if payload.get('destinations') is not None:
        # routing to a caller-supplied set; the category only labels results
        category = category or destination_category(category_name)
        try:
            destinations = _parse_destinations(payload['destinations'], category.key)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
    if category is None:
        return jsonify({'error': f"unknown category: {payload.get('category')}",
                        'categories': sorted(pipeline.config.categories)}), 400

    try:
        travel_mode = TravelMode(payload.get('travel_mode') or TravelMode.WALKING.value)
    except ValueError:
        return jsonify({'error': f"unknown travel_mode: {payload.get('travel_mode')}",
                        'travel_modes': [m.value for m in TravelMode]}), 400

    runs_config = pipeline.config.runs_config
    app_module.prune_runs(app_module.active_runs, runs_config.retention_sec, runs_config.max_finished)

    run_id = uuid.uuid4().hex
    handle = app_module.RunHandle(
        run_id=run_id,
        orchestrator=pipeline.new_orchestrator(),
        token=CancellationToken(),
        category=category.key,
        travel_mode=travel_mode.value,
    )
    handle.task = asyncio.create_task(_drive(handle, origins, category, travel_mode, destinations))
    app_module.active_runs[run_id] = handle

    logger.info("[RUNS] Started run %s: %d origins, category=%s, mode=%s, destinations=%s",
                run_id, len(origins), category.key, travel_mode.value,
                len(destinations) if destinations is not None else 'discovered')
    body = {'run_id': run_id, 'total': len(origins)}
    if destinations is not None:
        body['destinations'] = len(destinations)
    return jsonify(body), 202


@bp.route('/api/runs/<run_id>')
async def get_run(run_id):
    handle = _app().active_runs.get(run_id)
    if handle is None:
        return jsonify({'error': 'run not found'}), 404
    return jsonify(_run_status(handle))


@bp.route('/api/runs/<run_id>', methods=['DELETE'])
async def delete_run(run_id):
    """Forget a finished run and its results"""
    active_runs = _app().active_runs
    handle = active_runs.get(run_id)
    if handle is None:
        return jsonify({'error': 'run not found'}), 404
    if not handle.finished:
        return jsonify({'error': 'run still in progress; cancel it first'}), 409
    del active_runs[run_id]
    logger.info("[RUNS] Deleted run %s", run_id)
    return jsonify({'run_id': run_id, 'deleted': True})


@bp.route('/api/runs/<run_id>/results')
async def get_run_results(run_id):
    """Result documents so far, plus invalid and no-result origin ids once finished"""
    handle = _app().active_runs.get(run_id)
    if handle is None:
        return jsonify({'error': 'run not found'}), 404

    report = handle.report
    results = report.results if report is not None else handle.orchestrator.results
    return jsonify({
        'run_id': run_id,
        'state': handle.orchestrator.state.value,
        'results': [r.to_document() for r in results],
        'invalid': [o.id for o in report.invalid] if report is not None else [],
        'no_results': [o.id for o in report.no_results] if report is not None else [],
    })


@bp.route('/api/runs/<run_id>/cancel', methods=['POST'])
async def cancel_run(run_id):
    handle = _app().active_runs.get(run_id)
    if handle is None:
        return jsonify({'error': 'run not found'}), 404
    if not handle.done:
        handle.token.cancel()
        logger.info("[RUNS] Cancellation requested for run %s", run_id)
    return jsonify({'run_id': run_id, 'cancel_requested': not handle.done,
                    'state': handle.orchestrator.state.value}), 202


@bp.route('/api/runs/<run_id>/save', methods=['POST'])
async def save_run(run_id):
    """Bulk-save a finished run's results to the configured store"""
    app_module = _app()
    handle = app_module.active_runs.get(run_id)
    if handle is None:
        return jsonify({'error': 'run not found'}), 404
    if not handle.done:
        return jsonify({'error': 'run still in progress'}), 409

    store = app_module.pipeline.result_store() if app_module.pipeline is not None else None
    if store is None:
        return jsonify({'error': 'no result store configured'}), 503

    chunk_size = app_module.pipeline.config.persistence_config.chunk_size
    handle.save_report = await save_results(store, handle.report.results, chunk_size=chunk_size)
    return jsonify(handle.save_report.to_dict())


@bp.route('/api/categories')
async def list_categories():
    pipeline = _app().pipeline
    if pipeline is None:
        return jsonify({'error': 'service not ready'}), 503
    return jsonify([
        {'key': c.key, 'label': c.label, 'searchable': c.tag is not None}
        for c in pipeline.config.categories.values()
    ])


def register(app):
    """Register runs blueprint with app"""
    app.register_blueprint(bp)
