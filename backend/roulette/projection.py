"""Per-connection mirror of room state.

A projection is never authoritative. It changes only through presence syncs
and broadcast envelopes, so every client that receives the same messages ends
up with the same view.
"""

from typing import Optional

from roulette.errors import ValidationError
from roulette.messages import JoinAnnounce, StatePatch, parse_envelope
from roulette.models import GUESSING, LOBBY
from roulette.validation import require_guess_target

_FIELDS = ('phase', 'round', 'time_remaining', 'current_photo', 'round_token', 'scores')


def _member_key(member: dict):
    # Members without an id are told apart by name
    if member.get('id') is not None:
        return member['id']
    return (None, member.get('name'))


class ClientProjection:
    def __init__(self, room_code: str, player_id: Optional[int] = None):
        self.room_code = room_code
        self.player_id = player_id
        self.reset()

    def reset(self) -> None:
        """Back to menu: forget everything learned about the room."""
        self.players = []
        self.phase = LOBBY
        self.round = 0
        self.time_remaining = 0
        self.current_photo = None
        self.round_token = None
        self.scores = {}

    def sync_presence(self, roster) -> None:
        self.players = [dict(member) for member in roster]

    def apply(self, patch) -> None:
        """Shallow merge; fields the patch does not carry are left alone."""
        if not isinstance(patch, StatePatch):
            patch = StatePatch.model_validate(patch)
        for field, value in patch.changes().items():
            if field == 'scores' and value is not None:
                value = dict(value)
            setattr(self, field, value)

    def handle(self, payload) -> None:
        envelope = parse_envelope(payload)
        if isinstance(envelope, JoinAnnounce):
            member = envelope.player.model_dump()
            if all(_member_key(p) != _member_key(member) for p in self.players):
                self.players.append(member)
        else:
            self.apply(envelope)

    def build_guess(self, target_player_id) -> dict:
        """Command payload for a guess, checked locally before anything is sent."""
        require_guess_target(target_player_id)
        if self.phase != GUESSING:
            raise ValidationError('Guesses are only accepted while guessing')
        if self.player_id is None:
            raise ValidationError('Join the room before guessing')
        return {
            'player_id': self.player_id,
            'guessed_player_id': target_player_id,
            'round_token': self.round_token,
        }

    def to_dict(self) -> dict:
        data = {'room_code': self.room_code, 'player_id': self.player_id, 'players': list(self.players)}
        for field in _FIELDS:
            data[field] = getattr(self, field)
        return data
