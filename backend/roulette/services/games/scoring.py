from typing import Dict, List

from flask import current_app
from sqlalchemy import func

from roulette import db
from roulette.models import Game, Guess, Player


def _points() -> int:
    return int(current_app.config.get('POINTS_PER_CORRECT_GUESS', 100))


def score_for(game_id: int, player_id: int) -> int:
    """Score of one player, derived from their correct guesses."""
    correct = Guess.query.filter_by(game_id=game_id, player_id=player_id, correct=True).count()
    return correct * _points()


def correct_counts(game: Game) -> Dict[int, int]:
    rows = (
        db.session.query(Guess.player_id, func.count(Guess.id))
        .filter(Guess.game_id == game.id, Guess.correct.is_(True))
        .group_by(Guess.player_id)
        .all()
    )
    return {player_id: count for player_id, count in rows}


def scoreboard(game: Game) -> Dict[int, int]:
    """Score of every player in the game, 0 for players without a correct guess."""
    counts = correct_counts(game)
    points = _points()
    return {p.id: counts.get(p.id, 0) * points for p in game.players}


def leaderboard(game: Game) -> List[dict]:
    counts = correct_counts(game)
    points = _points()
    players = Player.query.filter_by(game_id=game.id).order_by(Player.id).all()
    entries = [
        {
            'player_id': p.id,
            'name': p.name,
            'correct_guesses': counts.get(p.id, 0),
            'score': counts.get(p.id, 0) * points,
        }
        for p in players
    ]
    # Stable sort keeps join order among ties
    entries.sort(key=lambda e: e['score'], reverse=True)
    for rank, entry in enumerate(entries, start=1):
        entry['rank'] = rank
    return entries


def round_history(game: Game) -> List[dict]:
    guesses = Guess.query.filter_by(game_id=game.id).order_by(Guess.round, Guess.id).all()
    return [g.to_dict() for g in guesses]
