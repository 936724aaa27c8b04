from functools import wraps
from typing import Dict
import time

import pydantic
from flask import current_app, request
from flask_socketio import join_room, leave_room, emit

from roulette import socketio
from roulette.channel import NAMESPACE, announce_join, presence, publish, publish_presence, room_name
from roulette.errors import RouletteError, ValidationError
from roulette.messages import PresenceMeta, parse_envelope
from roulette.validation import normalize_room_code, require_int

_end_deadline: Dict[str, float] = {}


def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _reports_errors(handler):
    """Answer a bad event with an `error` event to the sender instead of raising."""
    @wraps(handler)
    def wrapper(data=None):
        try:
            return handler(data)
        except RouletteError as exc:
            emit('error', {'message': exc.message})
        except pydantic.ValidationError as exc:
            emit('error', {'message': f'Invalid presence: {exc.error_count()} invalid field(s)'})
    return wrapper


def handle_connect():
    emit('connected', {'message': f'Connected to {NAMESPACE}'})


def _drop_member(room_code: str, roster) -> None:
    publish_presence(room_code)
    if not roster:
        _schedule_end_if_empty(room_code)


def handle_disconnect(*args):
    room_code, roster = presence.untrack(_get_sid())
    if not room_code:
        return
    current_app.logger.info(f"[presence] room={room_code} left sid={_get_sid()} remaining={len(roster)}")
    _drop_member(room_code, roster)


@_reports_errors
def handle_join_room(data):
    data = data or {}
    room_code = normalize_room_code(data.get('room_code'))
    player_id = data.get('player_id')
    meta = PresenceMeta(
        id=require_int(player_id, 'player_id') if player_id is not None else None,
        name=(data.get('name') or '').strip(),
    )
    join_room(room_name(room_code))
    roster, previous = presence.track(room_code, _get_sid(), meta)
    _cancel_scheduled_end(room_code)
    if previous:
        # A socket sits in one room at a time
        leave_room(room_name(previous))
        current_app.logger.info(f"[presence] room={previous} moved sid={_get_sid()} to={room_code}")
        _drop_member(previous, presence.roster(previous))
    current_app.logger.info(f"[presence] room={room_code} joined player={meta.id} online={len(roster)}")
    emit('joined', {'room': room_name(room_code), 'room_code': room_code})
    publish_presence(room_code)
    announce_join(room_code, meta.id, meta.name, skip_sid=_get_sid())


@_reports_errors
def handle_leave_room(data):
    room_code = normalize_room_code((data or {}).get('room_code'))
    if presence.room_of(_get_sid()) != room_code:
        raise ValidationError(f'Not a member of room {room_code}')
    leave_room(room_name(room_code))
    emit('left', {'room': room_name(room_code), 'room_code': room_code})
    _, roster = presence.untrack(_get_sid())
    _drop_member(room_code, roster)


@_reports_errors
def handle_broadcast(data):
    room_code = presence.room_of(_get_sid())
    if not room_code:
        raise ValidationError('Join a room before broadcasting')
    envelope = parse_envelope(data)
    publish(room_code, envelope, skip_sid=_get_sid())


def handle_ping(data):
    emit('pong', data or {})

# ---- Empty room lifecycle helpers ----

def _end_room(room_code: str) -> None:
    from roulette.services.games.session import end_session
    _end_deadline.pop(room_code, None)
    end_session(room_code)


def _schedule_end_if_empty(room_code: str) -> None:
    app = current_app._get_current_object()
    # In tests, end immediately for determinism; in prod, allow a grace period
    if app.config.get('TESTING'):
        _end_room(room_code)
        return
    delay_sec = float(app.config.get('EMPTY_ROOM_GRACE_SEC', 2.0))
    _end_deadline[room_code] = time.time() + delay_sec

    def _runner(code: str, deadline: float):
        sleep_for = max(0.0, deadline - time.time())
        if sleep_for:
            socketio.sleep(sleep_for)
        if not presence.roster(code) and _end_deadline.get(code) == deadline:
            with app.app_context():
                _end_room(code)

    socketio.start_background_task(_runner, room_code, _end_deadline[room_code])


def _cancel_scheduled_end(room_code: str) -> None:
    _end_deadline.pop(room_code, None)


def reset() -> None:
    _end_deadline.clear()
    presence.clear()


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    namespaces = [NAMESPACE, '/'] if testing else [NAMESPACE]
    for namespace in namespaces:
        socketio.on_event('connect', handle_connect, namespace=namespace)
        socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
        socketio.on_event('join_room', handle_join_room, namespace=namespace)
        socketio.on_event('leave_room', handle_leave_room, namespace=namespace)
        socketio.on_event('broadcast', handle_broadcast, namespace=namespace)
        socketio.on_event('ping', handle_ping, namespace=namespace)
