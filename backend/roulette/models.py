from datetime import datetime, timezone
import random
import string
import time

from flask import current_app

from roulette import db

LOBBY = 'lobby'
UPLOADING = 'uploading'
PLAYING = 'playing'
GUESSING = 'guessing'
RESULTS = 'results'
PHASES = (LOBBY, UPLOADING, PLAYING, GUESSING, RESULTS)


def utcnow():
    return datetime.now(timezone.utc)


def generate_room_code(length=6):
    """Generate a short room code that no active game is using."""
    while True:
        code = ''.join(random.choices(string.ascii_uppercase + string.digits, k=length))
        if not Game.query.filter_by(room_code=code).first():
            return code


class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.Integer, primary_key=True)
    room_code = db.Column(db.String(6), unique=True, nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=LOBBY)
    current_round = db.Column(db.Integer, nullable=False, default=0)
    # Bumped by every phase transition; commands and timers carry the value they saw
    round_token = db.Column(db.Integer, nullable=False, default=0)
    current_photo_id = db.Column(db.Integer, db.ForeignKey('photo.id', name='fk_game_current_photo_id', use_alter=True), nullable=True)
    phase_deadline = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    players = db.relationship('Player', back_populates='game', order_by='Player.id')
    photos = db.relationship('Photo', foreign_keys='Photo.game_id', back_populates='game', lazy='dynamic')
    current_photo = db.relationship('Photo', foreign_keys=[current_photo_id], post_update=True)

    @property
    def time_remaining(self) -> int:
        if not self.phase_deadline or self.status not in (PLAYING, GUESSING):
            return 0
        return max(0, int(round(self.phase_deadline - time.time())))

    def to_dict(self):
        return {
            'id': self.id,
            'room_code': self.room_code,
            'phase': self.status,
            'current_round': self.current_round,
            'round_token': self.round_token,
            'current_photo': self.current_photo.to_ref() if self.current_photo else None,
            'phase_deadline': self.phase_deadline,
            'time_remaining': self.time_remaining,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class Player(db.Model):
    __tablename__ = 'player'
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False, index=True)
    name = db.Column(db.String(20), nullable=False)
    ready = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    game = db.relationship('Game', back_populates='players')

    def to_dict(self, score=None):
        data = {
            'id': self.id,
            'game_id': self.game_id,
            'name': self.name,
            'ready': self.ready,
        }
        if score is not None:
            data['score'] = score
        return data


class Photo(db.Model):
    __tablename__ = 'photo'
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False, index=True)
    player_id = db.Column(db.Integer, db.ForeignKey('player.id'), nullable=False)
    storage_path = db.Column(db.String(255), nullable=False)
    used = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    game = db.relationship('Game', foreign_keys=[game_id], back_populates='photos')
    owner = db.relationship('Player', foreign_keys=[player_id])

    @property
    def public_url(self) -> str:
        base = current_app.config.get('PHOTO_PUBLIC_BASE_URL', '').rstrip('/')
        return f"{base}/{self.storage_path.lstrip('/')}"

    def to_ref(self):
        """What players see of the mystery photo; the owner stays hidden."""
        return {'id': self.id, 'url': self.public_url}

    def to_dict(self):
        return {
            'id': self.id,
            'game_id': self.game_id,
            'player_id': self.player_id,
            'storage_path': self.storage_path,
            'url': self.public_url,
            'used': self.used,
        }


class Guess(db.Model):
    __tablename__ = 'guess'
    __table_args__ = (
        db.UniqueConstraint('game_id', 'round', 'player_id', name='uq_guess_game_round_player'),
    )
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False, index=True)
    round = db.Column(db.Integer, nullable=False)
    photo_id = db.Column(db.Integer, db.ForeignKey('photo.id'), nullable=False)
    player_id = db.Column(db.Integer, db.ForeignKey('player.id'), nullable=False)
    guessed_player_id = db.Column(db.Integer, db.ForeignKey('player.id'), nullable=False)
    correct = db.Column(db.Boolean, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    guesser = db.relationship('Player', foreign_keys=[player_id])
    guessed_player = db.relationship('Player', foreign_keys=[guessed_player_id])

    def to_dict(self):
        return {
            'id': self.id,
            'game_id': self.game_id,
            'round': self.round,
            'photo_id': self.photo_id,
            'player_id': self.player_id,
            'guessed_player_id': self.guessed_player_id,
            'correct': self.correct,
        }
