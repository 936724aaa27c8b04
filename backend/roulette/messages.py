"""Wire envelopes exchanged over the room channel.

Every broadcast is one of a closed set of message types, tagged by ``type``
and pinned to a protocol ``version``. Payloads are validated here, at the
channel boundary, before anything applies them to room state.
"""

from typing import Annotated, Dict, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from roulette.errors import MalformedMessageError
from roulette.validation import NAME_MAX_LENGTH, NAME_MIN_LENGTH

PROTOCOL_VERSION = 1

Phase = Literal['lobby', 'uploading', 'playing', 'guessing', 'results']


class _Message(BaseModel):
    model_config = ConfigDict(extra='forbid', populate_by_name=True)


class PresenceMeta(_Message):
    """Small metadata attached to a participant's presence."""
    model_config = ConfigDict(extra='forbid', populate_by_name=True, str_strip_whitespace=True)

    id: Optional[int] = None
    name: str = Field(min_length=NAME_MIN_LENGTH, max_length=NAME_MAX_LENGTH)


class PhotoRef(_Message):
    id: int
    url: str


class JoinAnnounce(_Message):
    type: Literal['join_announce'] = 'join_announce'
    version: Literal[1] = PROTOCOL_VERSION
    player: PresenceMeta


class StatePatch(_Message):
    """A partial update of room state; only the fields that were set are applied."""
    type: Literal['state_patch'] = 'state_patch'
    version: Literal[1] = PROTOCOL_VERSION
    phase: Optional[Phase] = None
    round: Optional[int] = Field(default=None, ge=0)
    time_remaining: Optional[int] = Field(default=None, ge=0, alias='timeRemaining')
    current_photo: Optional[PhotoRef] = Field(default=None, alias='currentPhoto')
    round_token: Optional[int] = Field(default=None, ge=0, alias='roundToken')
    scores: Optional[Dict[int, int]] = None

    def changes(self) -> dict:
        """The set fields, keyed by attribute name, without the envelope tag."""
        return self.model_dump(exclude_unset=True, exclude={'type', 'version'})


Envelope = Annotated[Union[JoinAnnounce, StatePatch], Field(discriminator='type')]

_envelope_adapter = TypeAdapter(Envelope)


def parse_envelope(payload) -> Union[JoinAnnounce, StatePatch]:
    try:
        return _envelope_adapter.validate_python(payload)
    except pydantic.ValidationError as exc:
        raise MalformedMessageError(f'Malformed message: {exc.error_count()} invalid field(s)') from exc


def to_wire(envelope) -> dict:
    payload = envelope.model_dump(mode='json', by_alias=True, exclude_unset=True)
    payload['type'] = envelope.type
    payload['version'] = envelope.version
    return payload
