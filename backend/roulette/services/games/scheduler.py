import threading
from contextlib import nullcontext
from typing import Dict, Optional

from flask import has_app_context
from sqlalchemy.exc import SQLAlchemyError

from roulette import db, socketio
from roulette.channel import publish_patch
from roulette.errors import RouletteError, StaleRoundError
from roulette.models import GUESSING, PLAYING, RESULTS

_DURATION_KEYS = {
    PLAYING: ('MEMORIZE_DURATION_SEC', 5),
    GUESSING: ('GUESS_DURATION_SEC', 10),
    RESULTS: ('RESULTS_HOLD_SEC', 60),
}

# One live timer per room; installing a new one cancels the previous one
_room_timers: Dict[str, 'TimerHandle'] = {}
_slots_lock = threading.Lock()


class TimerHandle:
    """Countdown for one phase of one room, at one-second resolution.

    The handle remembers the round token of the phase it was created for, so
    an expiry that arrives after the room moved on is rejected by the store.
    """

    def __init__(self, room_code: str, game_id: int, phase: str, token: int, duration: int):
        self.room_code = room_code
        self.game_id = game_id
        self.phase = phase
        self.token = token
        self.duration = duration
        self.remaining = duration
        self._cancelled = False
        self._expired = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._expired)

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True

    def tick(self) -> bool:
        """Count down one second. True only on the tick that reaches zero."""
        with self._lock:
            if self._cancelled or self._expired:
                return False
            self.remaining = max(0, self.remaining - 1)
            if self.remaining == 0:
                self._expired = True
                return True
            return False

    def __repr__(self):
        return f"<TimerHandle room={self.room_code} phase={self.phase} token={self.token} remaining={self.remaining}>"


def phase_duration(app, phase: str) -> Optional[int]:
    if phase not in _DURATION_KEYS:
        return None
    key, default = _DURATION_KEYS[phase]
    return int(app.config.get(key, default))


def current(room_code: str) -> Optional[TimerHandle]:
    with _slots_lock:
        return _room_timers.get(room_code)


def acquire(app, game) -> Optional[TimerHandle]:
    """Install the timer for the game's current phase, cancelling the room's previous one."""
    duration = phase_duration(app, game.status)
    if duration is None:
        release(game.room_code)
        return None

    handle = TimerHandle(game.room_code, game.id, game.status, game.round_token, duration)
    with _slots_lock:
        previous = _room_timers.get(game.room_code)
        _room_timers[game.room_code] = handle
    if previous is not None:
        previous.cancel()

    app.logger.info(
        f"[timer-set] room={handle.room_code} phase={handle.phase} token={handle.token} duration={duration}s"
    )

    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return handle
    socketio.start_background_task(_countdown, app, handle)
    return handle


def release(room_code: str, handle: Optional[TimerHandle] = None) -> None:
    """Cancel the room's timer. With ``handle``, only if it still owns the slot."""
    with _slots_lock:
        installed = _room_timers.get(room_code)
        if installed is None or (handle is not None and installed is not handle):
            installed = None
        else:
            _room_timers.pop(room_code, None)
    if installed is not None:
        installed.cancel()
    if handle is not None:
        handle.cancel()


def reset() -> None:
    with _slots_lock:
        handles = list(_room_timers.values())
        _room_timers.clear()
    for handle in handles:
        handle.cancel()


def _countdown(app, handle: TimerHandle) -> None:
    while handle.active:
        socketio.sleep(1)
        if handle.tick():
            expire(app, handle)
            return
        if handle.active and handle.phase != RESULTS:
            publish_patch(handle.room_code, time_remaining=handle.remaining, round_token=handle.token)


def expire(app, handle: TimerHandle) -> None:
    """Run the transition a handle's expiry stands for, at most once per round token.

    A store failure re-arms a short retry for the same token, so the room
    never sits in a timed phase with no timer behind it.
    """
    context = nullcontext() if has_app_context() else app.app_context()
    with context:
        if handle.cancelled:
            app.logger.info(f"[timer-abort] room={handle.room_code} phase={handle.phase} token={handle.token} cancelled")
            return
        release(handle.room_code, handle)
        app.logger.info(f"[timer-fire] room={handle.room_code} phase={handle.phase} token={handle.token}")

        from roulette.services.games.session import advance_on_timeout
        try:
            advance_on_timeout(handle.game_id, handle.phase, handle.token)
        except StaleRoundError:
            app.logger.info(f"[timer-abort] room={handle.room_code} phase={handle.phase} token={handle.token} stale")
        except (RouletteError, SQLAlchemyError):
            db.session.rollback()
            app.logger.exception(f"[timer-error] room={handle.room_code} phase={handle.phase} token={handle.token}")
            _rearm(app, handle)


def _rearm(app, handle: TimerHandle) -> Optional[TimerHandle]:
    retry = TimerHandle(
        handle.room_code, handle.game_id, handle.phase, handle.token,
        int(app.config.get('TIMER_RETRY_SEC', 1)),
    )
    with _slots_lock:
        if handle.room_code in _room_timers:
            # A newer phase already owns the slot
            return None
        _room_timers[handle.room_code] = retry
    app.logger.info(f"[timer-retry] room={retry.room_code} phase={retry.phase} token={retry.token} in={retry.duration}s")
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return retry
    socketio.start_background_task(_countdown, app, retry)
    return retry
