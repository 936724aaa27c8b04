"""Room/game-session state machine.

Phases run lobby -> uploading -> playing -> guessing -> (playing | results).
Every transition is a compare-and-set on the game row keyed by the phase it
leaves and the room's round token, and bumps that token. Whoever loses the
race (a second guess, a timer that fired after a guess, a second "start"
click) updates nothing and gets StaleRoundError.
"""

from contextlib import contextmanager
import time
from typing import Iterable, Tuple

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from roulette import channel, db
from roulette.errors import (
    NotFoundError,
    RoomClosedError,
    StaleRoundError,
    StoreError,
    ValidationError,
)
from roulette.models import (
    GUESSING,
    LOBBY,
    PLAYING,
    RESULTS,
    UPLOADING,
    Game,
    Guess,
    Photo,
    Player,
    generate_room_code,
    utcnow,
)
from roulette.validation import (
    normalize_room_code,
    require_guess_target,
    require_int,
    validate_photo_batch,
    validate_player_name,
)
from . import scheduler, scoring


@contextmanager
def _storing(failure_message: str):
    """Roll back and surface a generic StoreError on any database failure."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception(f"[store-error] {failure_message}")
        raise StoreError(failure_message) from exc


def _find_game(room_code: str):
    return Game.query.filter_by(room_code=room_code).first()


def get_game(room_code) -> Game:
    game = _find_game(normalize_room_code(room_code))
    if not game:
        raise NotFoundError('Game not found')
    return game


def get_player(game: Game, player_id) -> Player:
    player = Player.query.filter_by(id=require_int(player_id, 'player_id'), game_id=game.id).first()
    if not player:
        raise NotFoundError('You are not a player in this game')
    return player


def suggest_room_code() -> str:
    return generate_room_code()


def game_state(game: Game) -> dict:
    """Authoritative snapshot of a room, including derived scores."""
    scores = scoring.scoreboard(game)
    payload = game.to_dict()
    payload['round_limit'] = int(current_app.config.get('ROUND_LIMIT', 10))
    payload['players'] = [p.to_dict(score=scores.get(p.id, 0)) for p in game.players]
    return payload


def _transition(game: Game, expected: Iterable[str], token: int, **values) -> bool:
    result = db.session.execute(
        update(Game)
        .where(Game.id == game.id, Game.status.in_(tuple(expected)), Game.round_token == token)
        .values(round_token=Game.round_token + 1, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _claim_photo(photo_id: int) -> bool:
    result = db.session.execute(
        update(Photo)
        .where(Photo.id == photo_id, Photo.used.is_(False))
        .values(used=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _deadline(phase: str) -> float:
    return time.time() + scheduler.phase_duration(current_app, phase)


def _open_round(game: Game, expected: Tuple[str, ...], token: int, advance: bool) -> bool:
    """Move to `playing` with the next unused photo, or to `results` when none is left.

    Runs inside the caller's transaction; returns False when the
    compare-and-set lost.
    """
    next_round = game.current_round + (1 if advance else 0)
    limit = int(current_app.config.get('ROUND_LIMIT', 10))
    photo = None
    if next_round < limit:
        photo = Photo.query.filter_by(game_id=game.id, used=False).order_by(Photo.id).first()

    if photo is None:
        return _transition(
            game, expected, token,
            status=RESULTS, current_round=next_round, current_photo_id=None, phase_deadline=_deadline(RESULTS),
        )

    won = _transition(
        game, expected, token,
        status=PLAYING, current_round=next_round, current_photo_id=photo.id, phase_deadline=_deadline(PLAYING),
    )
    if won and not _claim_photo(photo.id):
        # The row lock on the game serializes selection, so this is a broken invariant
        db.session.rollback()
        current_app.logger.error(f"[store-error] room={game.room_code} photo={photo.id} already used")
        raise StoreError('Failed to start round')
    return won


def _announce_round(game: Game) -> None:
    """Install the timer for the phase just entered and fan the new state out."""
    app = current_app._get_current_object()
    handle = scheduler.acquire(app, game)
    if game.status == RESULTS:
        app.logger.info(f"[finish] room={game.room_code} round={game.current_round}")
    else:
        app.logger.info(
            f"[round-open] room={game.room_code} round={game.current_round} photo={game.current_photo_id} token={game.round_token}"
        )
    channel.publish_patch(
        game.room_code,
        phase=game.status,
        round=game.current_round,
        time_remaining=handle.duration if handle and game.status != RESULTS else 0,
        current_photo=game.current_photo.to_ref() if game.current_photo else None,
        round_token=game.round_token,
        scores=scoring.scoreboard(game),
    )


def _get_or_create_game(room_code: str) -> Game:
    game = _find_game(room_code)
    if game:
        return game
    game = Game(room_code=room_code)
    db.session.add(game)
    try:
        db.session.commit()
    except IntegrityError:
        # Someone created the same room between our read and our insert
        db.session.rollback()
        game = Game.query.filter_by(room_code=room_code).first()
        if game is None:
            raise
        current_app.logger.info(f"[join] room={room_code} created concurrently, reusing it")
        return game
    current_app.logger.info(f"[join] room={room_code} created game={game.id}")
    return game


def join_room(room_code, name) -> Tuple[Game, Player]:
    code = normalize_room_code(room_code)
    display_name = validate_player_name(name)

    with _storing('Failed to join game'):
        game = _get_or_create_game(code)
        if game.status == RESULTS:
            raise RoomClosedError('This game has already finished')
        max_players = int(current_app.config.get('MAX_PLAYERS', 8))
        if Player.query.filter_by(game_id=game.id).count() >= max_players:
            raise RoomClosedError(f'This room is full ({max_players} players)')
        player = Player(game_id=game.id, name=display_name)
        db.session.add(player)
        db.session.commit()

    current_app.logger.info(f"[join] room={code} player={player.id} name={player.name!r} phase={game.status}")
    channel.announce_join(code, player.id, player.name)
    return game, player


def complete_upload(game: Game, player_id, storage_paths) -> list:
    cfg = current_app.config
    paths = validate_photo_batch(
        storage_paths,
        int(cfg.get('PHOTOS_PER_BATCH_MIN', 10)),
        int(cfg.get('PHOTOS_PER_BATCH_MAX', 20)),
    )
    player = get_player(game, player_id)
    if game.status == RESULTS:
        raise RoomClosedError('This game has already finished')

    with _storing('Failed to upload photos'):
        photos = [Photo(game_id=game.id, player_id=player.id, storage_path=path) for path in paths]
        db.session.add_all(photos)
        player.ready = True
        db.session.add(player)
        # The label is advisory; losing this race to another upload is fine
        moved = game.status == LOBBY and _transition(game, (LOBBY,), game.round_token, status=UPLOADING)
        db.session.commit()

    current_app.logger.info(f"[upload] room={game.room_code} player={player.id} photos={len(photos)}")
    if moved:
        channel.publish_patch(game.room_code, phase=UPLOADING, round_token=game.round_token)
    return photos


def start_round(game: Game, player_id) -> Game:
    """Manual "start round" by any member of the room."""
    get_player(game, player_id)
    if game.status in (PLAYING, GUESSING):
        return game
    if game.status == RESULTS:
        raise RoomClosedError('This game has already finished')

    with _storing('Failed to start round'):
        won = _open_round(game, (LOBBY, UPLOADING), game.round_token, advance=False)
        if not won:
            db.session.rollback()
            db.session.refresh(game)
            if game.status in (PLAYING, GUESSING):
                return game
            raise StaleRoundError('The room changed while starting the round')
        db.session.commit()

    _announce_round(game)
    return game


def begin_guessing(game_id: int, token: int) -> Game:
    """Memorize countdown ran out: reveal is over, guesses open."""
    game = db.session.get(Game, game_id)
    if game is None:
        raise StaleRoundError('Room no longer exists')

    with _storing('Failed to open guessing'):
        if not _transition(game, (PLAYING,), token, status=GUESSING, phase_deadline=_deadline(GUESSING)):
            db.session.rollback()
            raise StaleRoundError()
        db.session.commit()

    handle = scheduler.acquire(current_app._get_current_object(), game)
    current_app.logger.info(f"[guessing] room={game.room_code} round={game.current_round} token={game.round_token}")
    channel.publish_patch(
        game.room_code,
        phase=GUESSING,
        time_remaining=handle.duration,
        round_token=game.round_token,
    )
    return game


def submit_guess(game: Game, player_id, guessed_player_id, round_token) -> Guess:
    """Log a guess on the current photo and advance the round.

    Only the first guess for a round token lands; later ones get StaleRoundError.
    The photo's owner may not guess on it, since they would always be right.
    """
    require_guess_target(guessed_player_id)
    token = require_int(round_token, 'round_token')
    guesser = get_player(game, player_id)
    target = Player.query.filter_by(id=require_int(guessed_player_id, 'guessed_player_id'), game_id=game.id).first()
    if not target:
        raise ValidationError('You can only guess a player in this room')

    if game.status != GUESSING or game.round_token != token:
        raise StaleRoundError('Not accepting guesses for this round')
    photo = game.current_photo
    if photo is None:
        raise StaleRoundError('There is no photo to guess on')
    if photo.player_id == guesser.id:
        raise ValidationError('You cannot guess your own photo')

    guess = Guess(
        game_id=game.id,
        round=game.current_round,
        photo_id=photo.id,
        player_id=guesser.id,
        guessed_player_id=target.id,
        correct=(target.id == photo.player_id),
    )
    with _storing('Failed to submit guess'):
        db.session.add(guess)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise StaleRoundError('You already guessed this round')
        if not _open_round(game, (GUESSING,), token, advance=True):
            db.session.rollback()
            raise StaleRoundError()
        db.session.commit()

    current_app.logger.info(
        f"[guess] room={game.room_code} round={guess.round} player={guess.player_id} correct={guess.correct}"
    )
    _announce_round(game)
    return guess


def expire_guessing(game_id: int, token: int) -> Game:
    """Guess countdown ran out with nobody answering; the round still advances."""
    game = db.session.get(Game, game_id)
    if game is None:
        raise StaleRoundError('Room no longer exists')

    with _storing('Failed to advance round'):
        if not _open_round(game, (GUESSING,), token, advance=True):
            db.session.rollback()
            raise StaleRoundError()
        db.session.commit()

    current_app.logger.info(f"[guess-timeout] room={game.room_code} round={game.current_round - 1} unanswered")
    _announce_round(game)
    return game


def advance_on_timeout(game_id: int, phase: str, token: int):
    if phase == PLAYING:
        return begin_guessing(game_id, token)
    if phase == GUESSING:
        return expire_guessing(game_id, token)
    if phase == RESULTS:
        game = db.session.get(Game, game_id)
        if game is None or game.status != RESULTS or game.round_token != token:
            raise StaleRoundError()
        end_session(game.room_code)
        return None
    raise StaleRoundError(f'No timer transition out of {phase}')


def end_session(room_code: str) -> None:
    """Notify the room and delete everything the game owns."""
    scheduler.release(room_code)
    channel.publish_session_ended(room_code)
    game = _find_game(room_code)
    if game:
        game_id = game.id
        with _storing('Failed to end session'):
            # Break the game -> photo reference before deleting photos
            db.session.execute(update(Game).where(Game.id == game_id).values(current_photo_id=None))
            for model in (Guess, Photo, Player):
                db.session.execute(delete(model).where(model.game_id == game_id))
            db.session.execute(delete(Game).where(Game.id == game_id))
            db.session.commit()
    channel.presence.clear(room_code)
    current_app.logger.info(f"[session-end] room={room_code}")
