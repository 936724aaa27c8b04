import os
import sys
import pytest

# Ensure the backend root (containing the `roulette` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from roulette import create_app, db, socketio
from roulette import socketio_events
from roulette.services.games import scheduler


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    MEMORIZE_DURATION_SEC = 5
    GUESS_DURATION_SEC = 10
    RESULTS_HOLD_SEC = 60
    ROUND_LIMIT = 10
    POINTS_PER_CORRECT_GUESS = 100
    PHOTOS_PER_BATCH_MIN = 10
    PHOTOS_PER_BATCH_MAX = 20
    MAX_PLAYERS = 8
    EMPTY_ROOM_GRACE_SEC = 0.0
    TIMER_RETRY_SEC = 1
    PHOTO_PUBLIC_BASE_URL = 'https://cdn.test/game-photos'


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import roulette.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()
    scheduler.reset()
    socketio_events.reset()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


def photo_batch(owner: str, count: int = 10):
    return [f'{owner}/photo-{i:02d}.jpg' for i in range(count)]


@pytest.fixture()
def make_room(client):
    """Join players into a room and upload a batch for each, returning their player dicts."""
    def _make(code='ABC123', names=('Alice', 'Bob'), photos_each=10):
        players = []
        for name in names:
            res = client.post('/api/rooms/join', json={'room_code': code, 'name': name})
            assert res.status_code == 201, res.get_json()
            players.append(res.get_json()['player'])
        if photos_each:
            for p in players:
                res = client.post(
                    f'/api/rooms/{code}/photos',
                    json={'player_id': p['id'], 'storage_paths': photo_batch(f"{code}/{p['name']}", photos_each)},
                )
                assert res.status_code == 201, res.get_json()
        return players
    return _make
