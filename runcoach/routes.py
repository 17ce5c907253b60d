from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Any, Dict, Optional

from flask import Blueprint, Response, current_app, jsonify, request

from .errors import PersistenceError
from .models import (
    PositionFix,
    Roadmap,
    UserProfile,
    WorkoutReflection,
    WorkoutSession,
    parse_timestamp,
    utcnow,
)
from .services import milestones as milestone_engine
from .services.weekly_progress import weekly_progress
from .services.workout_analysis import RECENT_WINDOW
from .services.workout_session import WorkoutSessionMachine, WorkoutState

main_bp = Blueprint('main', __name__)

logger = logging.getLogger(__name__)


def _user_id() -> str:
    return request.headers.get('X-User-Id') or current_app.settings.default_user_id


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _error(message: str, status: int, **extra: Any) -> tuple[Response, int]:
    body = {'error': message}
    body.update(extra)
    return jsonify(body), status


def _number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f'{name} must be a number.')
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f'{name} must be a number.') from None
    if not math.isfinite(number):
        raise ValueError(f'{name} must be a finite number.')
    return number


def _exertion(value: Any) -> Optional[int]:
    """Optional runner-reported RPE, an integer from 1 to 10."""

    if value is None:
        return None
    number = _number(value, 'perceived_exertion')
    if not number.is_integer() or not 1 <= number <= 10:
        raise ValueError('perceived_exertion must be an integer from 1 to 10.')
    return int(number)


def _serialize_roadmap(roadmap: Roadmap) -> Dict[str, Any]:
    data = roadmap.to_record()
    current = milestone_engine.current_milestone(roadmap)
    data.update(
        {
            'completed_count': roadmap.completed_count,
            'progress_percentage': round(roadmap.progress_percentage, 1),
            'current_milestone_id': current.id if current else None,
        }
    )
    return data


def _serialize_session(session: WorkoutSession) -> Dict[str, Any]:
    data = session.to_record()
    pace = session.pace_min_per_km
    data['pace_min_per_km'] = round(pace, 2) if pace else None
    return data


def _serialize_reflection(reflection: WorkoutReflection) -> Dict[str, Any]:
    return reflection.to_record()


def _machine(user_id: str) -> Optional[WorkoutSessionMachine]:
    with current_app.active_workouts_lock:
        return current_app.active_workouts.get(user_id)


def _workout_state(user_id: str, changed: bool) -> Response:
    machine = _machine(user_id)
    if machine is None:
        body = {'state': WorkoutState.IDLE.value, 'distance_meters': 0.0, 'duration_seconds': 0.0}
    else:
        body = machine.snapshot().to_dict()
    body['changed'] = changed
    return jsonify(body)


@main_bp.errorhandler(PersistenceError)
def handle_persistence_error(exc: PersistenceError):
    logger.warning('routes.persistence_error: %s', exc)
    return _error(str(exc), 503)


@main_bp.route('/healthz')
def healthz() -> Response:
    return jsonify({'status': 'ok', 'ai_configured': current_app.ai_service.is_configured})


@main_bp.route('/api/workouts/start', methods=['POST'])
def start_workout() -> Response:
    user_id = _user_id()
    with current_app.active_workouts_lock:
        machine = current_app.active_workouts.get(user_id)
        if machine is None or machine.state is WorkoutState.ENDED:
            machine = WorkoutSessionMachine(
                user_id,
                tick_interval=current_app.settings.tick_interval_seconds,
            )
            current_app.active_workouts[user_id] = machine
    changed = machine.start()
    return _workout_state(user_id, changed)


@main_bp.route('/api/workouts/pause', methods=['POST'])
def pause_workout() -> Response:
    user_id = _user_id()
    machine = _machine(user_id)
    changed = machine.pause() if machine else False
    return _workout_state(user_id, changed)


@main_bp.route('/api/workouts/resume', methods=['POST'])
def resume_workout() -> Response:
    user_id = _user_id()
    machine = _machine(user_id)
    changed = machine.resume() if machine else False
    return _workout_state(user_id, changed)


@main_bp.route('/api/workouts/current')
def current_workout() -> Response:
    return _workout_state(_user_id(), False)


@main_bp.route('/api/workouts/fixes', methods=['POST'])
def ingest_fixes():
    user_id = _user_id()
    payload = _payload()
    raw_fixes = payload.get('fixes') if 'fixes' in payload else [payload]
    if not isinstance(raw_fixes, list):
        return _error('fixes must be a list.', 400)

    try:
        fixes = [
            PositionFix(
                timestamp=parse_timestamp(item.get('timestamp')) or utcnow(),
                latitude=_number(item.get('latitude'), 'latitude'),
                longitude=_number(item.get('longitude'), 'longitude'),
                horizontal_accuracy_m=_number(item.get('horizontal_accuracy'), 'horizontal_accuracy'),
            )
            for item in raw_fixes
            if isinstance(item, dict)
        ]
    except ValueError as exc:
        return _error(str(exc), 400)

    machine = _machine(user_id)
    if machine is not None:
        for fix in fixes:
            machine.ingest_fix(fix)
    return _workout_state(user_id, False)


@main_bp.route('/api/workouts/end', methods=['POST'])
def end_workout():
    user_id = _user_id()
    payload = _payload()
    try:
        calories = _number(payload.get('calories', 0.0), 'calories')
        if calories < 0:
            raise ValueError('calories must be non-negative.')
        exertion = _exertion(payload.get('perceived_exertion'))
    except ValueError as exc:
        return _error(str(exc), 400)

    machine = _machine(user_id)
    session = machine.end(calories, perceived_exertion=exertion) if machine else None
    if session is None:
        return _error('There is no workout in progress to end.', 409)

    with current_app.active_workouts_lock:
        if current_app.active_workouts.get(user_id) is machine:
            del current_app.active_workouts[user_id]

    profile, current_milestone, recent = _analysis_context(user_id, session)

    try:
        outcome = current_app.session_coordinator.complete_workout(
            session,
            user_goal=profile.goal,
            current_milestone=current_milestone,
            recent_sessions=recent,
        )
    except PersistenceError as exc:
        pending = current_app.session_coordinator.pending(session.id)
        return _error(
            str(exc),
            503,
            session=_serialize_session(pending.session) if pending else _serialize_session(session),
            reflection=_serialize_reflection(pending.reflection) if pending else None,
            retry_url=f'/api/sessions/{session.id}/retry',
        )

    return _completed_response(user_id, outcome), 201


@main_bp.route('/api/sessions')
def list_sessions() -> Response:
    limit = request.args.get('limit', default=20, type=int)
    sessions = current_app.storage_service.list_sessions(_user_id(), limit=max(1, min(limit, 100)))
    return jsonify({'sessions': [_serialize_session(item) for item in sessions]})


@main_bp.route('/api/sessions/<session_id>/reflection')
def session_reflection(session_id: str):
    reflection = current_app.storage_service.get_reflection_for_session(session_id)
    if reflection is None:
        return _error('No reflection stored for this session.', 404)
    return jsonify(_serialize_reflection(reflection))


@main_bp.route('/api/sessions/<session_id>/retry', methods=['POST'])
def retry_session(session_id: str):
    try:
        outcome = current_app.session_coordinator.retry(session_id)
    except KeyError:
        return _error('Nothing is waiting to be saved for this session.', 404)
    return _completed_response(outcome.session.user_id, outcome), 200


@main_bp.route('/api/roadmap', methods=['GET'])
def get_roadmap():
    roadmap = current_app.roadmap_service.fetch_roadmap(_user_id())
    if roadmap is None:
        return _error('No roadmap yet. Generate one first.', 404)
    return jsonify(_serialize_roadmap(roadmap))


@main_bp.route('/api/roadmap', methods=['POST'])
def generate_roadmap():
    profile = current_app.storage_service.fetch_profile(_user_id())
    roadmap = current_app.roadmap_service.generate_roadmap(profile)
    return jsonify(_serialize_roadmap(roadmap)), 201


@main_bp.route('/api/roadmap/milestones/<milestone_id>/toggle', methods=['POST'])
def toggle_milestone(milestone_id: str):
    user_id = _user_id()
    roadmap = current_app.roadmap_service.fetch_roadmap(user_id)
    if roadmap is None:
        return _error('No roadmap yet. Generate one first.', 404)
    if roadmap.find_milestone(milestone_id) is None:
        return _error('Unknown milestone.', 404)
    updated = current_app.roadmap_service.toggle_milestone(user_id, milestone_id)
    return jsonify(_serialize_roadmap(updated))


@main_bp.route('/api/profile', methods=['GET'])
def get_profile() -> Response:
    return jsonify(current_app.storage_service.fetch_profile(_user_id()).to_record())


@main_bp.route('/api/profile', methods=['PUT'])
def update_profile() -> Response:
    user_id = _user_id()
    current = current_app.storage_service.fetch_profile(user_id).to_record()
    current.update({key: value for key, value in _payload().items() if key in current and key != 'user_id'})
    profile = UserProfile.from_record(user_id, current)
    current_app.storage_service.save_profile(profile)
    return jsonify(profile.to_record())


@main_bp.route('/api/progress/weekly')
def weekly() -> Response:
    user_id = _user_id()
    profile = current_app.storage_service.fetch_profile(user_id)
    now = utcnow()
    sessions = current_app.storage_service.list_sessions(user_id, since=now - timedelta(days=7))
    return jsonify(weekly_progress(sessions, profile.ideal_frequency, now=now).to_dict())


def _analysis_context(user_id: str, session: WorkoutSession):
    """Goal, open milestone and recent sessions for the analysis prompt.

    The workout has already ended at this point, so a failing read only
    narrows the prompt instead of losing the session.
    """

    storage = current_app.storage_service
    try:
        profile = storage.fetch_profile(user_id)
    except PersistenceError:
        logger.warning('routes.profile_unavailable user=%s', user_id, exc_info=True)
        profile = UserProfile.from_record(user_id, None)

    try:
        milestone = current_app.roadmap_service.current_milestone(user_id)
    except PersistenceError:
        logger.warning('routes.roadmap_unavailable user=%s', user_id, exc_info=True)
        milestone = None

    try:
        recent = storage.list_sessions(user_id, since=session.start_time - RECENT_WINDOW)
    except PersistenceError:
        logger.warning('routes.history_unavailable user=%s', user_id, exc_info=True)
        recent = []

    return profile, milestone, recent


def _completed_response(user_id: str, outcome) -> Response:
    """Body for a saved workout.

    ``roadmap_error`` is set when the roadmap could not be updated or read;
    ``retry_url`` is set while the workout is still pending.
    """

    roadmap_errors = [str(exc) for exc in outcome.listener_errors]
    try:
        roadmap = current_app.roadmap_service.fetch_roadmap(user_id)
    except PersistenceError as exc:
        logger.warning('routes.roadmap_unavailable user=%s', user_id, exc_info=True)
        roadmap_errors.append(str(exc))
        roadmap = None
    signal = outcome.reflection.milestone_progress
    pending = current_app.session_coordinator.pending(outcome.session.id) is not None
    return jsonify(
        {
            'session': _serialize_session(outcome.session),
            'reflection': _serialize_reflection(outcome.reflection),
            'used_fallback': outcome.used_fallback,
            'analysis_error': str(outcome.analysis_error) if outcome.analysis_error else None,
            'milestone_achieved': bool(signal and signal.achieved),
            'roadmap': _serialize_roadmap(roadmap) if roadmap else None,
            'roadmap_error': '; '.join(roadmap_errors) if roadmap_errors else None,
            'retry_url': f'/api/sessions/{outcome.session.id}/retry' if pending else None,
        }
    )
