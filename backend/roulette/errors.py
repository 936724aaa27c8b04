"""Error taxonomy shared by the HTTP routes, socket handlers and services.

Every error carries the HTTP status it maps to and a message that is safe to
show the player. Nothing here is fatal: a failed command leaves the room in
its current phase and the player may simply try again.
"""


class RouletteError(Exception):
    status_code = 400
    message = 'Something went wrong'

    def __init__(self, message=None):
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_dict(self):
        return {'error': self.message}


class ValidationError(RouletteError):
    """Bad input, rejected before touching the store or the channel."""
    status_code = 400


class NotFoundError(RouletteError):
    status_code = 404
    message = 'Not found'


class RoomClosedError(RouletteError):
    status_code = 403
    message = 'This room is not accepting players'


class StaleRoundError(RouletteError):
    """The command lost the race for the current round, or arrived in the wrong phase."""
    status_code = 409
    message = 'This round has already moved on'


class StoreError(RouletteError):
    status_code = 500
    message = 'Failed to save changes'


class ChannelError(RouletteError):
    status_code = 400
    message = 'Channel error'


class MalformedMessageError(ChannelError):
    message = 'Malformed message'
