from flask import Blueprint, jsonify, request, current_app

from roulette.errors import RouletteError, StaleRoundError
from roulette.services.games import scoring, session

rooms = Blueprint('rooms', __name__)


@rooms.errorhandler(RouletteError)
def handle_roulette_error(exc):
    current_app.logger.info(f"[rejected] {request.method} {request.path} status={exc.status_code} error={exc.message!r}")
    return jsonify(exc.to_dict()), exc.status_code


def _durations():
    cfg = current_app.config
    return {
        'playing': int(cfg.get('MEMORIZE_DURATION_SEC', 5)),
        'guessing': int(cfg.get('GUESS_DURATION_SEC', 10)),
        'results': int(cfg.get('RESULTS_HOLD_SEC', 60)),
    }


@rooms.route('/code', methods=['GET'])
def suggest_code():
    return jsonify({'room_code': session.suggest_room_code()})


@rooms.route('/join', methods=['POST'])
def join_room():
    data = request.get_json(silent=True) or {}
    game, player = session.join_room(data.get('room_code'), data.get('name'))
    return jsonify({
        'player': player.to_dict(score=scoring.score_for(game.id, player.id)),
        'game': session.game_state(game),
    }), 201


@rooms.route('/<string:room_code>/state', methods=['GET'])
def get_room_state(room_code):
    game = session.get_game(room_code)
    payload = session.game_state(game)
    # Include phase durations so clients can show countdowns
    payload['durations'] = _durations()
    return jsonify(payload)


@rooms.route('/<string:room_code>/photos', methods=['POST'])
def upload_photos(room_code):
    data = request.get_json(silent=True) or {}
    game = session.get_game(room_code)
    photos = session.complete_upload(game, data.get('player_id'), data.get('storage_paths'))
    return jsonify({
        'message': 'Photos uploaded successfully',
        'photo_count': len(photos),
        'game': session.game_state(game),
    }), 201


@rooms.route('/<string:room_code>/start', methods=['POST'])
def start_round(room_code):
    data = request.get_json(silent=True) or {}
    game = session.get_game(room_code)
    try:
        game = session.start_round(game, data.get('player_id'))
    except StaleRoundError:
        # Someone else's start won; report where the room is now
        game = session.get_game(room_code)
    return jsonify(session.game_state(game))


@rooms.route('/<string:room_code>/guess', methods=['POST'])
def submit_guess(room_code):
    data = request.get_json(silent=True) or {}
    game = session.get_game(room_code)
    guess = session.submit_guess(
        game,
        data.get('player_id'),
        data.get('guessed_player_id'),
        data.get('round_token'),
    )
    return jsonify({'guess': guess.to_dict(), 'game': session.game_state(game)})


@rooms.route('/<string:room_code>/leaderboard', methods=['GET'])
def get_leaderboard(room_code):
    game = session.get_game(room_code)
    return jsonify({
        'room_code': game.room_code,
        'phase': game.status,
        'leaderboard': scoring.leaderboard(game),
        'rounds': scoring.round_history(game),
    })
