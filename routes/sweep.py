"""
Sweep API - sample ingestion, ranked results, correlation and history.

Provides REST endpoints and SSE streaming for a SweepSession stored on the
Flask app (see init_sweep).
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Generator, Optional

import numpy as np
from flask import Blueprint, Flask, Response, current_app, jsonify, request

from utils.sse import format_sse
from utils.sweep import ConfigError, DeviceCategory, SweepSession

logger = logging.getLogger('sweep.routes')

# Blueprint
sweep_bp = Blueprint('sweep', __name__, url_prefix='/api/sweep')

EXTENSION_KEY = 'sweep'


class BadSample(ValueError):
    """Ingest payload that cannot be turned into a sample."""


def init_sweep(app: Flask, session: Optional[SweepSession] = None) -> SweepSession:
    """Attach a sweep session to the app and register the blueprint."""
    session = session or SweepSession()
    app.extensions[EXTENSION_KEY] = session
    if sweep_bp.name not in app.blueprints:
        app.register_blueprint(sweep_bp)
    return session


def get_session() -> SweepSession:
    return current_app.extensions[EXTENSION_KEY]


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================


def _number(data: dict, key: str, required: bool = True) -> Optional[float]:
    value = data.get(key)
    if value is None:
        if required:
            raise BadSample(f'Missing field: {key}')
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise BadSample(f'Field {key} must be a number')
    try:
        number = float(value)
    except OverflowError as e:
        raise BadSample(f'Field {key} is out of range') from e
    if not math.isfinite(number):
        raise BadSample(f'Field {key} must be finite')
    return number


def _text(data: dict, key: str, required: bool = True) -> Optional[str]:
    value = data.get(key)
    if value is None or value == '':
        if required:
            raise BadSample(f'Missing field: {key}')
        return None
    return str(value)


def _timestamp(data: dict) -> Optional[datetime]:
    value = data.get('timestamp')
    if value is None:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise BadSample(f'Invalid timestamp: {value}') from e


def _array(data: dict, key: str) -> np.ndarray:
    if key not in data:
        raise BadSample(f'Missing field: {key}')
    try:
        values = np.asarray(data[key], dtype=float)
    except (TypeError, ValueError, OverflowError) as e:
        raise BadSample(f'Field {key} must be numeric') from e
    if values.size == 0:
        raise BadSample(f'Field {key} is empty')
    return values


def _entity_response(entity) -> dict:
    return {'status': 'accepted', 'entity': entity.to_dict() if entity else None}


# =============================================================================
# INGEST HANDLERS
# =============================================================================


def _ingest_bluetooth(session: SweepSession, data: dict) -> dict:
    entity = session.bluetooth.process_advertisement(
        _text(data, 'identifier'),
        _number(data, 'rssi'),
        name=_text(data, 'name', required=False),
        timestamp=_timestamp(data),
        latitude=_number(data, 'latitude', required=False),
        longitude=_number(data, 'longitude', required=False),
        manufacturer_prefix=_text(data, 'manufacturer_prefix', required=False),
    )
    return _entity_response(entity)


def _ingest_wifi(session: SweepSession, data: dict) -> dict:
    kind = data.get('kind', 'access_point')
    timestamp = _timestamp(data)

    if kind == 'access_point':
        entity = session.network.process_access_point(
            _text(data, 'ssid'),
            _text(data, 'bssid'),
            _number(data, 'rssi'),
            timestamp=timestamp,
            latitude=_number(data, 'latitude', required=False),
            longitude=_number(data, 'longitude', required=False),
        )
    elif kind == 'service':
        entity = session.network.process_service(
            _text(data, 'name'),
            _text(data, 'service_type'),
            domain=_text(data, 'domain', required=False),
            timestamp=timestamp,
        )
    elif kind == 'broadcast':
        port = _number(data, 'port')
        entity = session.network.process_broadcast(
            _text(data, 'address'),
            int(port),
            _number(data, 'rssi'),
            timestamp=timestamp,
        )
    else:
        raise BadSample(f'Unknown wifi sample kind: {kind}')
    return _entity_response(entity)


def _ingest_emf(session: SweepSession, data: dict) -> dict:
    latitude = _number(data, 'latitude', required=False)
    longitude = _number(data, 'longitude', required=False)
    if latitude is not None and longitude is not None:
        session.magnetic.update_location(latitude, longitude)

    timestamp = _timestamp(data)
    if 'magnitude' in data:
        reading = session.magnetic.process_magnitude(_number(data, 'magnitude'), timestamp)
    else:
        reading = session.magnetic.process_field(
            _number(data, 'x'), _number(data, 'y'), _number(data, 'z'), timestamp
        )

    if reading is None:
        return {'status': 'ignored', 'reading': None}
    return {
        'status': 'accepted',
        'reading': {
            'magnitude': reading.magnitude,
            'baseline': reading.baseline,
            'threshold': reading.threshold,
            'is_anomaly': reading.is_anomaly,
            'frequency_hz': reading.frequency_hz,
            'anomaly_score': reading.anomaly_score,
            'level': reading.level.value if reading.level else None,
        },
    }


def _ingest_ir(session: SweepSession, data: dict) -> dict:
    illuminated = data.get('illuminated', False)
    if not isinstance(illuminated, bool):
        raise BadSample('Field illuminated must be a boolean')
    entities = session.optical.process_frame(
        _array(data, 'frame'),
        illuminated,
        timestamp=_timestamp(data),
        bssid=_text(data, 'bssid', required=False),
    )
    return {'status': 'accepted', 'entities': [e.to_dict() for e in entities]}


def _ingest_acoustic(session: SweepSession, data: dict) -> dict:
    sample_rate = _number(data, 'sample_rate')
    if sample_rate <= 0:
        raise BadSample('Field sample_rate must be positive')
    entity = session.acoustic.process_buffer(
        _array(data, 'samples'),
        sample_rate,
        timestamp=_timestamp(data),
    )
    return _entity_response(entity)


_INGEST_HANDLERS = {
    DeviceCategory.BLUETOOTH: _ingest_bluetooth,
    DeviceCategory.WIFI: _ingest_wifi,
    DeviceCategory.EMF: _ingest_emf,
    DeviceCategory.IR: _ingest_ir,
    DeviceCategory.ACOUSTIC: _ingest_acoustic,
}


# =============================================================================
# ROUTES
# =============================================================================


@sweep_bp.route('/status', methods=['GET'])
def get_status():
    """Session, detector, pipeline and collaborator status."""
    return jsonify(get_session().status())


@sweep_bp.route('/start', methods=['POST'])
def start_sweep():
    get_session().start()
    return jsonify({'status': 'started'})


@sweep_bp.route('/stop', methods=['POST'])
def stop_sweep():
    get_session().stop()
    return jsonify({'status': 'stopped'})


@sweep_bp.route('/results', methods=['GET'])
def list_results():
    """
    Accepted scan results, highest severity first.

    Query parameters:
        - type: Category filter ('bluetooth', 'wifi', 'emf', 'ir', 'acoustic')
        - grouped: When 'true', group results by section key
    """
    results = get_session().pipeline.results()

    category = request.args.get('type')
    if category:
        try:
            wanted = DeviceCategory(category)
        except ValueError:
            return jsonify({'error': f'Unknown type: {category}'}), 400
        results = [r for r in results if r.type == wanted]

    if request.args.get('grouped', 'false').lower() == 'true':
        sections: dict[str, list[dict]] = {}
        for result in results:
            sections.setdefault(result.section_key, []).append(result.to_dict())
        return jsonify({'count': len(results), 'sections': sections})

    return jsonify({
        'count': len(results),
        'results': [r.to_dict() for r in results],
    })


@sweep_bp.route('/entities', methods=['GET'])
def list_entities():
    """Every tracked entity regardless of severity."""
    category = request.args.get('type')
    wanted = None
    if category:
        try:
            wanted = DeviceCategory(category)
        except ValueError:
            return jsonify({'error': f'Unknown type: {category}'}), 400

    entities = get_session().registry.entities(wanted)
    entities.sort(key=lambda e: e.severity_score, reverse=True)
    return jsonify({
        'count': len(entities),
        'entities': [e.to_dict() for e in entities],
    })


@sweep_bp.route('/correlation', methods=['GET'])
def get_correlation():
    engine = get_session().engine
    last_alert = engine.last_alert
    return jsonify({
        'window_seconds': engine.window_seconds,
        'events': [e.to_dict() for e in engine.current_events()],
        'alert_count': engine.alert_count,
        'last_alert': last_alert.to_dict() if last_alert else None,
    })


@sweep_bp.route('/correlation/reset', methods=['POST'])
def reset_correlation():
    get_session().engine.reset()
    return jsonify({'status': 'reset'})


@sweep_bp.route('/ingest/<category>', methods=['POST'])
def ingest(category: str):
    """
    Ingest one sensor sample.

    Path parameters:
        - category: 'bluetooth', 'wifi', 'emf', 'ir' or 'acoustic'

    Returns:
        JSON with the updated entity (or reading), 400 on malformed input,
        409 when the detector is stopped.
    """
    try:
        device_category = DeviceCategory(category)
    except ValueError:
        return jsonify({'error': f'Unknown category: {category}'}), 404

    session = get_session()
    if not session.detector(device_category).is_active:
        return jsonify({'error': f'{category} detector is stopped'}), 409

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'Expected a JSON object'}), 400

    try:
        body = _INGEST_HANDLERS[device_category](session, data)
    except BadSample as e:
        logger.warning(f"Rejected {category} sample: {e}")
        return jsonify({'error': str(e)}), 400

    return jsonify(body)


@sweep_bp.route('/history', methods=['GET'])
def get_history():
    manager = get_session().history
    # Include batches still waiting for the writer thread
    manager.flush()
    history = manager.load_history()
    limit = request.args.get('limit', type=int)
    if limit:
        history = history[-limit:]
    return jsonify({
        'count': len(history),
        'results': [r.to_dict() for r in history],
    })


@sweep_bp.route('/history', methods=['DELETE'])
def clear_history():
    if not get_session().history.clear_history():
        return jsonify({'status': 'error', 'message': 'Failed to clear history'}), 500
    return jsonify({'status': 'cleared'})


@sweep_bp.route('/config', methods=['GET'])
def get_config():
    return jsonify(get_session().config.to_dict())


@sweep_bp.route('/config', methods=['POST'])
def update_config():
    data: Any = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return jsonify({'status': 'error', 'message': 'No settings provided'}), 400

    session = get_session()
    try:
        changed = session.apply_config(data)
    except ConfigError as e:
        return jsonify({'status': 'error', 'message': str(e)}), 400

    return jsonify({
        'status': 'success',
        'changed': changed,
        'config': session.config.to_dict(),
    })


@sweep_bp.route('/stream', methods=['GET'])
def stream_events():
    """
    SSE event stream of published result sets and correlation alerts.

    Returns:
        Server-Sent Events stream.
    """
    session = get_session()

    def event_generator() -> Generator[str, None, None]:
        for event in session.stream_events(timeout=1.0):
            yield format_sse(event, event=event.get('type', 'message'))

    return Response(
        event_generator(),
        mimetype='text/event-stream',
        headers={
            'Cache-Control': 'no-cache',
            'Connection': 'keep-alive',
            'X-Accel-Buffering': 'no',
        }
    )
