"""Room channel: Socket.IO rooms used as a per-room pub/sub topic.

Two primitives ride on it: presence (who is connected to a room, with a
little metadata each) and broadcast (best-effort envelopes to every current
subscriber, no replay for late joiners).
"""

import threading
from typing import Dict, List, Optional, Tuple

from roulette import socketio
from roulette.messages import JoinAnnounce, PresenceMeta, StatePatch, to_wire

NAMESPACE = '/ws'


def room_name(room_code: str) -> str:
    return f"room:{room_code}"


class PresenceRegistry:
    """Connected participants per room, keyed by socket id."""

    def __init__(self):
        self._rooms: Dict[str, Dict[str, dict]] = {}
        self._sid_rooms: Dict[str, str] = {}
        self._lock = threading.Lock()

    def track(self, room_code: str, sid: str, meta: PresenceMeta) -> Tuple[List[dict], Optional[str]]:
        """Record a member. Returns the room roster and the room the sid moved out of, if any."""
        with self._lock:
            previous = self._sid_rooms.get(sid)
            if previous == room_code:
                previous = None
            elif previous is not None:
                members = self._rooms.get(previous, {})
                members.pop(sid, None)
                if not members:
                    self._rooms.pop(previous, None)
            self._rooms.setdefault(room_code, {})[sid] = meta.model_dump()
            self._sid_rooms[sid] = room_code
            return list(self._rooms[room_code].values()), previous

    def untrack(self, sid: str) -> Tuple[Optional[str], List[dict]]:
        with self._lock:
            room_code = self._sid_rooms.pop(sid, None)
            if room_code is None:
                return None, []
            members = self._rooms.get(room_code, {})
            members.pop(sid, None)
            if not members:
                self._rooms.pop(room_code, None)
            return room_code, list(members.values())

    def roster(self, room_code: str) -> List[dict]:
        with self._lock:
            return list(self._rooms.get(room_code, {}).values())

    def room_of(self, sid: str) -> Optional[str]:
        with self._lock:
            return self._sid_rooms.get(sid)

    def clear(self, room_code: Optional[str] = None) -> None:
        with self._lock:
            if room_code is None:
                self._rooms.clear()
                self._sid_rooms.clear()
                return
            for sid in self._rooms.pop(room_code, {}):
                self._sid_rooms.pop(sid, None)


presence = PresenceRegistry()


def publish(room_code: str, envelope, skip_sid: Optional[str] = None) -> None:
    socketio.emit('broadcast', to_wire(envelope), to=room_name(room_code), namespace=NAMESPACE, skip_sid=skip_sid)


def publish_patch(room_code: str, **fields) -> StatePatch:
    patch = StatePatch(**fields)
    publish(room_code, patch)
    return patch


def announce_join(room_code: str, player_id: Optional[int], name: str, skip_sid: Optional[str] = None) -> None:
    publish(room_code, JoinAnnounce(player=PresenceMeta(id=player_id, name=name)), skip_sid=skip_sid)


def publish_presence(room_code: str) -> None:
    socketio.emit(
        'presence_sync',
        {'room_code': room_code, 'players': presence.roster(room_code)},
        to=room_name(room_code),
        namespace=NAMESPACE,
    )


def publish_session_ended(room_code: str) -> None:
    socketio.emit('session_ended', {'room_code': room_code}, to=room_name(room_code), namespace=NAMESPACE)
