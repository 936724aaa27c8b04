from conftest import photo_batch
from roulette import socketio
from roulette.channel import presence
from roulette.models import Game
from roulette.projection import ClientProjection


def _names(events):
    return [e['name'] for e in events]


def _feed(projection, events):
    for event in events:
        if event['name'] == 'presence_sync':
            projection.sync_presence(event['args'][0]['players'])
        elif event['name'] == 'broadcast':
            projection.handle(event['args'][0])


def test_socket_connect_and_join(sio_client):
    # Ensure we are connected to /ws
    if not sio_client.is_connected('/ws'):
        sio_client.connect(namespace='/ws')
    assert sio_client.is_connected('/ws')

    sio_client.emit('join_room', {'room_code': 'abcd12', 'player_id': 1, 'name': 'Alice'}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert 'joined' in _names(received)
    joined = next(e for e in received if e['name'] == 'joined')
    assert joined['args'][0] == {'room': 'room:ABCD12', 'room_code': 'ABCD12'}
    sync = next(e for e in received if e['name'] == 'presence_sync')
    assert sync['args'][0]['players'] == [{'id': 1, 'name': 'Alice'}]


def test_join_with_bad_room_code_reports_error(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('join_room', {'room_code': 'AB12', 'name': 'Alice'}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert _names(received) == ['error']
    assert 'Room code' in received[0]['args'][0]['message']


def test_presence_and_join_announce_reach_other_members(flask_app, sio_client):
    sio_client.emit('join_room', {'room_code': 'ROOM01', 'player_id': 1, 'name': 'Alice'}, namespace='/ws')
    sio_client.get_received('/ws')

    bob = socketio.test_client(flask_app, namespace='/ws')
    bob.emit('join_room', {'room_code': 'ROOM01', 'player_id': 2, 'name': 'Bob'}, namespace='/ws')

    seen_by_alice = sio_client.get_received('/ws')
    sync = [e for e in seen_by_alice if e['name'] == 'presence_sync'][-1]
    assert sorted(p['name'] for p in sync['args'][0]['players']) == ['Alice', 'Bob']
    announce = next(e for e in seen_by_alice if e['name'] == 'broadcast')
    assert announce['args'][0] == {'type': 'join_announce', 'version': 1, 'player': {'id': 2, 'name': 'Bob'}}

    # Bob does not hear his own announcement
    assert all(
        e['args'][0].get('type') != 'join_announce'
        for e in bob.get_received('/ws') if e['name'] == 'broadcast'
    )
    bob.disconnect(namespace='/ws')


def test_broadcast_is_validated_and_relayed(flask_app, sio_client):
    sio_client.emit('join_room', {'room_code': 'ROOM01', 'player_id': 1, 'name': 'Alice'}, namespace='/ws')
    bob = socketio.test_client(flask_app, namespace='/ws')
    bob.emit('join_room', {'room_code': 'ROOM01', 'player_id': 2, 'name': 'Bob'}, namespace='/ws')
    sio_client.get_received('/ws')
    bob.get_received('/ws')

    bob.emit('broadcast', {'type': 'state_patch', 'version': 1, 'timeRemaining': 3}, namespace='/ws')
    relayed = [e for e in sio_client.get_received('/ws') if e['name'] == 'broadcast']
    assert relayed[0]['args'][0] == {'type': 'state_patch', 'version': 1, 'timeRemaining': 3}
    assert not [e for e in bob.get_received('/ws') if e['name'] == 'broadcast']

    bob.emit('broadcast', {'type': 'state_patch', 'version': 1, 'phase': 'dancing'}, namespace='/ws')
    assert _names(bob.get_received('/ws')) == ['error']
    assert sio_client.get_received('/ws') == []
    bob.disconnect(namespace='/ws')


def test_broadcast_before_joining_is_refused(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('broadcast', {'type': 'state_patch', 'version': 1, 'round': 1}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert _names(received) == ['error']


def test_state_patches_drive_client_projection(client, sio_client):
    alice = client.post('/api/rooms/join', json={'room_code': 'SOCK01', 'name': 'Alice'}).get_json()['player']
    projection = ClientProjection('SOCK01', alice['id'])

    sio_client.emit('join_room', {'room_code': 'SOCK01', 'player_id': alice['id'], 'name': 'Alice'}, namespace='/ws')
    _feed(projection, sio_client.get_received('/ws'))
    assert projection.players == [{'id': alice['id'], 'name': 'Alice'}]

    client.post('/api/rooms/SOCK01/photos', json={'player_id': alice['id'], 'storage_paths': photo_batch('alice')})
    _feed(projection, sio_client.get_received('/ws'))
    assert projection.phase == 'uploading'

    state = client.post('/api/rooms/SOCK01/start', json={'player_id': alice['id']}).get_json()
    _feed(projection, sio_client.get_received('/ws'))
    assert projection.phase == 'playing'
    assert projection.round == 0
    assert projection.time_remaining == 5
    assert projection.current_photo == state['current_photo']
    assert projection.round_token == state['round_token']
    assert projection.scores == {alice['id']: 0}


def test_last_member_leaving_ends_the_room(flask_app, client, sio_client):
    alice = client.post('/api/rooms/join', json={'room_code': 'BYE001', 'name': 'Alice'}).get_json()['player']
    bob_player = client.post('/api/rooms/join', json={'room_code': 'BYE001', 'name': 'Bob'}).get_json()['player']

    sio_client.emit('join_room', {'room_code': 'BYE001', 'player_id': alice['id'], 'name': 'Alice'}, namespace='/ws')
    bob = socketio.test_client(flask_app, namespace='/ws')
    bob.emit('join_room', {'room_code': 'BYE001', 'player_id': bob_player['id'], 'name': 'Bob'}, namespace='/ws')
    bob.get_received('/ws')

    sio_client.emit('leave_room', {'room_code': 'BYE001'}, namespace='/ws')
    sync = [e for e in bob.get_received('/ws') if e['name'] == 'presence_sync'][-1]
    assert sync['args'][0]['players'] == [{'id': bob_player['id'], 'name': 'Bob'}]
    assert Game.query.filter_by(room_code='BYE001').count() == 1

    bob.disconnect(namespace='/ws')
    assert Game.query.filter_by(room_code='BYE001').count() == 0


def test_session_end_is_announced_to_members(flask_app, client, sio_client):
    alice = client.post('/api/rooms/join', json={'room_code': 'END001', 'name': 'Alice'}).get_json()['player']
    sio_client.emit('join_room', {'room_code': 'END001', 'player_id': alice['id'], 'name': 'Alice'}, namespace='/ws')
    sio_client.get_received('/ws')

    from roulette.services.games.session import end_session
    end_session('END001')

    events = sio_client.get_received('/ws')
    assert any(e['name'] == 'session_ended' and e['args'][0] == {'room_code': 'END001'} for e in events)
    assert Game.query.count() == 0


def test_leaving_another_room_keeps_membership(flask_app, client, sio_client):
    alice = client.post('/api/rooms/join', json={'room_code': 'ROOM01', 'name': 'Alice'}).get_json()['player']
    sio_client.emit('join_room', {'room_code': 'ROOM01', 'player_id': alice['id'], 'name': 'Alice'}, namespace='/ws')
    bob = socketio.test_client(flask_app, namespace='/ws')
    bob.emit('join_room', {'room_code': 'ROOM01', 'player_id': 2, 'name': 'Bob'}, namespace='/ws')
    sio_client.get_received('/ws')
    bob.get_received('/ws')

    sio_client.emit('leave_room', {'room_code': 'ZZZ999'}, namespace='/ws')
    assert _names(sio_client.get_received('/ws')) == ['error']
    assert presence.roster('ROOM01') == [{'id': alice['id'], 'name': 'Alice'}, {'id': 2, 'name': 'Bob'}]
    assert bob.get_received('/ws') == []
    bob.disconnect(namespace='/ws')


def test_moving_to_another_room_releases_the_previous_one(flask_app, client, sio_client):
    alice = client.post('/api/rooms/join', json={'room_code': 'OLD001', 'name': 'Alice'}).get_json()['player']
    sio_client.emit('join_room', {'room_code': 'OLD001', 'player_id': alice['id'], 'name': 'Alice'}, namespace='/ws')
    watcher = socketio.test_client(flask_app, namespace='/ws')
    watcher.emit('join_room', {'room_code': 'OLD001', 'player_id': 9, 'name': 'Watcher'}, namespace='/ws')
    watcher.get_received('/ws')

    sio_client.emit('join_room', {'room_code': 'NEW001', 'player_id': alice['id'], 'name': 'Alice'}, namespace='/ws')
    sync = [e for e in watcher.get_received('/ws') if e['name'] == 'presence_sync'][-1]
    assert sync['args'][0] == {'room_code': 'OLD001', 'players': [{'id': 9, 'name': 'Watcher'}]}
    assert Game.query.filter_by(room_code='OLD001').count() == 1

    # The watcher was the last one left in the old room
    watcher.disconnect(namespace='/ws')
    assert Game.query.filter_by(room_code='OLD001').count() == 0


def test_moving_out_of_an_empty_room_ends_it(client, sio_client):
    alice = client.post('/api/rooms/join', json={'room_code': 'OLD002', 'name': 'Alice'}).get_json()['player']
    sio_client.emit('join_room', {'room_code': 'OLD002', 'player_id': alice['id'], 'name': 'Alice'}, namespace='/ws')
    sio_client.emit('join_room', {'room_code': 'NEW002', 'player_id': alice['id'], 'name': 'Alice'}, namespace='/ws')

    assert Game.query.filter_by(room_code='OLD002').count() == 0
    assert presence.roster('OLD002') == []
    assert presence.roster('NEW002') == [{'id': alice['id'], 'name': 'Alice'}]


def test_presence_name_follows_player_name_rules(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('join_room', {'room_code': 'ROOM01', 'player_id': 1, 'name': 'A'}, namespace='/ws')
    assert _names(sio_client.get_received('/ws')) == ['error']
    assert presence.roster('ROOM01') == []
