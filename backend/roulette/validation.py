import string

from roulette.errors import ValidationError

ROOM_CODE_LENGTH = 6
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 20

_ROOM_CODE_ALPHABET = set(string.ascii_uppercase + string.digits)


def normalize_room_code(code) -> str:
    """Return the canonical (uppercase) room code or raise ValidationError."""
    if not isinstance(code, str):
        raise ValidationError('Room code is required')
    normalized = code.strip().upper()
    if len(normalized) != ROOM_CODE_LENGTH or not set(normalized) <= _ROOM_CODE_ALPHABET:
        raise ValidationError(f'Room code must be {ROOM_CODE_LENGTH} letters or digits')
    return normalized


def validate_player_name(name) -> str:
    if not isinstance(name, str):
        raise ValidationError(f'Please enter at least {NAME_MIN_LENGTH} characters for your name')
    trimmed = name.strip()
    if len(trimmed) < NAME_MIN_LENGTH:
        raise ValidationError(f'Please enter at least {NAME_MIN_LENGTH} characters for your name')
    if len(trimmed) > NAME_MAX_LENGTH:
        raise ValidationError(f'Names can be at most {NAME_MAX_LENGTH} characters')
    return trimmed


def validate_photo_batch(storage_paths, minimum: int, maximum: int) -> list:
    if not isinstance(storage_paths, list):
        raise ValidationError('storage_paths must be a list')
    if len(storage_paths) < minimum:
        raise ValidationError(f'Please select at least {minimum} photos')
    if len(storage_paths) > maximum:
        raise ValidationError(f'Please select no more than {maximum} photos')
    cleaned = []
    for path in storage_paths:
        if not isinstance(path, str) or not path.strip():
            raise ValidationError('Every photo needs a storage path')
        cleaned.append(path.strip())
    return cleaned


def require_guess_target(target):
    if target is None or target == '':
        raise ValidationError('Pick a player before guessing')
    return target


def require_int(value, field: str) -> int:
    # bool is an int subclass; a JSON true is not a player id
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')
