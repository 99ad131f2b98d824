from flask import Blueprint, current_app, jsonify, request
import os

from . import writes
from .datastore import get_config, list_runners, load_snapshot
from .table import SnapshotError, build_table
from .timeutil import normalize_instant, to_iso


bp = Blueprint('main', __name__)


def _error(message: str, status: int = 400):
    return {'error': message}, status


def _load_table() -> dict:
    """Fresh store read + full derivation; never served from a cache."""
    return build_table(load_snapshot())


def _table_response():
    try:
        table = _load_table()
    except SnapshotError as e:
        current_app.logger.exception("Store snapshot failed validation")
        return _error(str(e), 500)
    resp = jsonify(table)
    resp.headers['Cache-Control'] = 'no-store'
    return resp


def _json_body():
    return request.get_json(silent=True)


@bp.errorhandler(writes.WriteError)
def _write_error(e):
    return _error(e.message, e.status)


@bp.route('/health/db')
def health_db():
    """Database connectivity check; always HTTP 200 with a status body."""
    url = os.environ.get('DATABASE_URL')
    if not url:
        return {
            'connected': False,
            'status': 'no_database_url',
            'message': 'DATABASE_URL is not set.',
        }
    try:
        import psycopg2  # type: ignore
        with psycopg2.connect(url, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute('SELECT current_user, current_database(), version()')
                user, db, ver = cur.fetchone()
        return {
            'connected': True,
            'status': 'ok',
            'user': user,
            'database': db,
            'server_version': (ver or '').split('\n')[0],
        }
    except Exception as e:  # pragma: no cover - best-effort health output
        return {
            'connected': False,
            'status': 'error',
            'error': str(e),
        }


@bp.route('/api/table')
def table():
    return _table_response()


@bp.route('/api/config', methods=['GET'])
def config():
    cfg = get_config()
    return {
        'race_start_time': normalize_instant(cfg.get('race_start_time')),
        'finish_time': normalize_instant(cfg.get('finish_time')),
    }


@bp.route('/api/runners', methods=['GET'])
def runners():
    """Runner roster for the runners panel, ordered by runner_number."""
    return {'runners': list_runners()}


@bp.route('/api/config', methods=['PATCH'])
def update_config():
    writes.update_config(_json_body())
    return {'ok': True}


@bp.route('/api/legs/<leg>', methods=['PATCH'])
def update_leg(leg):
    writes.update_leg(leg, _json_body())
    return {'ok': True}


@bp.route('/api/legs/<leg>/pace', methods=['PATCH'])
def update_leg_pace(leg):
    """Pace edit from the table; responds with the re-derived table."""
    body = _json_body()
    if not isinstance(body, dict) or 'pace' not in body:
        return _error('Invalid body')
    writes.set_leg_pace(leg, body['pace'])
    return _table_response()


@bp.route('/api/leg-inputs/<leg>', methods=['PATCH'])
def update_leg_input(leg):
    writes.update_leg_input(leg, _json_body())
    return {'ok': True}


@bp.route('/api/leg-inputs/reset-actuals', methods=['POST'])
def reset_actuals():
    updated = writes.reset_actual_start_times()
    return {'ok': True, 'updated': updated}


@bp.route('/api/runners/<runner_number>', methods=['PATCH'])
def update_runner(runner_number):
    row = writes.update_runner(runner_number, _json_body())
    return {
        'runner_number': row['runner_number'],
        'name': row.get('name') or '',
        'default_estimated_pace_spm': row.get('default_estimated_pace_spm'),
        'updated_at': to_iso(row.get('updated_at')),
    }


@bp.route('/api/admin/import-legs', methods=['POST'])
def import_legs():
    updated = writes.import_legs(_json_body())
    return {'ok': True, 'updated': updated}
