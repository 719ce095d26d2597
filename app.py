import logging
import platform
import time

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_migrate import Migrate
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from auth import (ADMIN_ROLES, MONITOR_ROLES, change_user_role, current_user,
                  login_required, login_user, logout_user, roles_required)
from config import Config
from credentials import (VALIDATOR_ROLES, credential_state, get_active_credential,
                         issue_credential, pending_credentials,
                         recent_validations, resolve_scanned_payload,
                         validate_credential)
from errors import AlreadyValidated, InvalidRequest, NotFound, VotingError
from models import AuditLog, User, db, utcnow
from qr import qr_payload_document, render_qr_data_uri
from voting import (active_candidates, cast_vote, dashboard_stats,
                    monitoring_stats, vote_tally, voting_status)

api = Blueprint('api', __name__, url_prefix='/api')
migrate = Migrate()


def create_app(config_class=Config, overrides=None):
    app = Flask(__name__)
    app.config.from_object(config_class)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config['LOG_LEVEL'],
                        format='[%(asctime)s] %(levelname)s %(name)s: %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')
    app.logger.setLevel(app.config['LOG_LEVEL'])

    db.init_app(app)
    migrate.init_app(app, db)
    app.register_blueprint(api)
    register_error_handlers(app)
    return app


def register_error_handlers(app):
    @app.errorhandler(VotingError)
    def voting_error(error):
        if error.status_code >= 500:
            app.logger.error('Request to %s failed: %s', request.path, error.code)
        else:
            app.logger.info('Request to %s refused: %s', request.path, error.code)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify({'success': False, 'error': error.name.lower().replace(' ', '_'),
                        'message': error.description}), error.code

    @app.errorhandler(Exception)
    def internal_error(error):
        app.logger.exception('Unhandled error on %s', request.path)
        return jsonify({'success': False, 'error': 'storage_failure',
                        'message': 'Internal server error'}), 500


def get_json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidRequest('Invalid JSON format')
    return data


def optional_field(data, name, kind, label):
    value = data.get(name)
    # bool is an int subclass; JSON true is never an id.
    if value is not None and (isinstance(value, bool) or not isinstance(value, kind)):
        raise InvalidRequest('%s is invalid' % label)
    return value


def credential_response(credential):
    data = credential.to_dict()
    data['state'] = credential_state(credential)
    data['qr_code_image'] = render_qr_data_uri(qr_payload_document(credential))
    return data


# Auth     <---------------------------------------------------------------->

@api.route('/auth/login', methods=['POST'])
def login():
    data = get_json_body()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password')

    if not email or not password:
        raise InvalidRequest('Email and password are required')

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        raise InvalidRequest('Invalid credentials')

    login_user(user)
    return jsonify({'success': True, 'user': user.to_dict()})


@api.route('/auth/logout', methods=['POST'])
def logout():
    logout_user()
    return jsonify({'success': True})


@api.route('/auth/me')
@login_required
def me():
    return jsonify({'success': True, 'user': current_user().to_dict()})


# Voter    <---------------------------------------------------------------->

@api.route('/credential', methods=['POST'])
@login_required
def generate_credential():
    credential = issue_credential(current_user().id)
    return jsonify({'success': True, 'session': credential_response(credential)})


@api.route('/credential')
@login_required
def active_credential():
    credential = get_active_credential(current_user().id)
    if credential is None:
        raise NotFound('No active voting session found')
    return jsonify({'success': True, 'session': credential_response(credential)})


@api.route('/voting-status')
@login_required
def get_voting_status():
    return jsonify(voting_status(current_user()))


@api.route('/candidates')
def list_candidates():
    return jsonify({'candidates': [c.to_dict() for c in active_candidates()]})


@api.route('/vote', methods=['POST'])
@login_required
def vote():
    data = get_json_body()
    candidate_id = optional_field(data, 'candidate_id', int, 'Candidate ID')
    if not candidate_id:
        raise InvalidRequest('Candidate ID is required')

    new_vote = cast_vote(current_user().id, candidate_id)
    return jsonify({
        'success': True,
        'message': 'Vote recorded successfully',
        'vote': {'id': new_vote.id, 'candidate_id': new_vote.candidate_id},
    })


@api.route('/vote/stats')
def vote_stats():
    return jsonify(vote_tally())


# Staff    <---------------------------------------------------------------->

@api.route('/staff/resolve', methods=['POST'])
@roles_required(*VALIDATOR_ROLES)
def resolve_scan():
    data = get_json_body()
    payload = optional_field(data, 'payload', str, 'Scanned payload')
    if not payload:
        raise InvalidRequest('Scanned payload is required')

    credential = resolve_scanned_payload(payload)
    return jsonify({'success': True, 'session': credential.to_dict(include_voter=True)})


@api.route('/staff/validate', methods=['POST'])
@roles_required(*VALIDATOR_ROLES)
def validate():
    data = get_json_body()
    credential_id = optional_field(data, 'credential_id', int, 'Credential ID')
    redeem_code = optional_field(data, 'redeem_code', str, 'Redeem code')
    payload = optional_field(data, 'payload', str, 'Scanned payload')

    if payload:
        credential_id = resolve_scanned_payload(payload).id
    if credential_id is None and not redeem_code:
        raise InvalidRequest('QR code or redeem code is required')

    try:
        credential = validate_credential(current_user().id,
                                         credential_id=credential_id,
                                         redeem_code=redeem_code,
                                         ip_address=request.remote_addr)
    except AlreadyValidated as e:
        # Duplicate scans and client retries land here; nothing changed.
        return jsonify({
            'success': True,
            'already_validated': True,
            'message': 'Credential was already validated, the voter may proceed',
            'details': e.details,
        })

    return jsonify({
        'success': True,
        'already_validated': False,
        'message': 'Session validated successfully',
        'session': credential.to_dict(include_voter=True),
    })


@api.route('/staff/pending')
@roles_required(*VALIDATOR_ROLES)
def pending_sessions():
    return jsonify({'sessions': [c.to_dict(include_voter=True) for c in pending_credentials()]})


@api.route('/staff/recent-validations')
@roles_required(*VALIDATOR_ROLES)
def get_recent_validations():
    return jsonify({'sessions': [c.to_dict(include_voter=True) for c in recent_validations()]})


@api.route('/staff/stats')
@roles_required(*VALIDATOR_ROLES)
def stats():
    return jsonify({'stats': dashboard_stats()})


# Monitoring  <------------------------------------------------------------->

@api.route('/monitoring/logs')
@roles_required(*MONITOR_ROLES)
def monitoring_logs():
    logs = AuditLog.query.order_by(AuditLog.created_at.desc()).limit(100).all()
    return jsonify({'logs': [entry.to_dict() for entry in logs]})


@api.route('/monitoring/stats')
@roles_required(*MONITOR_ROLES)
def get_monitoring_stats():
    return jsonify(monitoring_stats())


@api.route('/monitoring/system-status')
@roles_required(*MONITOR_ROLES)
def system_status():
    started = time.monotonic()
    try:
        db.session.execute(text('SELECT 1'))
        database = {'ok': True, 'latency_ms': round((time.monotonic() - started) * 1000, 2)}
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error('Database ping failed: %s', e)
        database = {'ok': False, 'latency_ms': None}

    return jsonify({
        'server_time': utcnow().isoformat(),
        'python_version': platform.python_version(),
        'database': database,
        'stats': monitoring_stats()['stats'] if database['ok'] else None,
    })


# Admin    <---------------------------------------------------------------->

@api.route('/admin/users/<int:user_id>', methods=['PUT'])
@roles_required(*ADMIN_ROLES)
def update_user_role(user_id):
    data = get_json_body()
    role = optional_field(data, 'role', str, 'Role')
    if not role:
        raise InvalidRequest('Role is required')

    user = change_user_role(current_user().id, user_id, role,
                            ip_address=request.remote_addr)
    return jsonify({'success': True, 'user': user.to_dict()})


if __name__ == '__main__':
    create_app().run(debug=True)
