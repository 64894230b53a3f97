from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine
from lastpress import crud
from lastpress import main as lastpress_main
from lastpress.config import Settings
from lastpress.main import app
from lastpress.service import GameService


def setup_db(tmp_path):
    db = tmp_path / 'ws.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine


def _receive_until(ws, kind, limit=25):
    for _ in range(limit):
        msg = ws.receive_json()
        if msg.get('type') == kind:
            return msg
    raise AssertionError(f"no {kind} message")


def _started_game(client):
    sid = client.post('/api/games').json()['id']
    for fid in (1, 2):
        client.post(f'/api/games/{sid}/join', json={"fid": fid, "username": f"p{fid}"})
    assert client.post(f'/api/games/{sid}/start').status_code == 200
    return sid


def test_ws_sends_snapshot_and_answers_ping(tmp_path):
    setup_db(tmp_path)
    lastpress_main.service = GameService(settings=Settings(countdown_seconds=30, poll_interval=0.2))
    with TestClient(app) as client:
        sid = _started_game(client)
        with client.websocket_connect(f'/ws/games/{sid}') as ws:
            players = _receive_until(ws, 'players')
            assert sorted(p['fid'] for p in players['players']) == [1, 2]
            session = _receive_until(ws, 'session')
            assert session['session']['status'] == 'starting'

            ws.send_json({"type": "ping"})
            assert _receive_until(ws, 'pong') == {"type": "pong"}

            ws.send_json({"type": "dance"})
            assert 'unknown' in _receive_until(ws, 'error')['detail']


def test_ws_press_starts_server_heartbeat_and_release_eliminates(tmp_path):
    setup_db(tmp_path)
    service = GameService(settings=Settings(countdown_seconds=30, poll_interval=0.2))
    lastpress_main.service = service
    with TestClient(app) as client:
        sid = _started_game(client)
        with client.websocket_connect(f'/ws/games/{sid}?fid=1') as ws:
            ws.send_json({"type": "press"})
            ack = _receive_until(ws, 'press')
            assert ack == {"type": "press", "ok": True, "fid": 1}
            assert service.presence.is_beating(sid, 1)

            ws.send_json({"type": "press", "fid": 2})
            assert _receive_until(ws, 'press')['ok'] is True

            ws.send_json({"type": "release", "fid": 2})
            assert _receive_until(ws, 'release') == {"type": "release", "ok": True, "fid": 2}

            # release of 2 leaves 1 as the only survivor
            session = _receive_until(ws, 'session')
            while session['session']['status'] != 'completed':
                session = _receive_until(ws, 'session')
            assert session['session']['winner_fid'] == 1

        # disconnect stops the local heartbeat loop
        assert not service.presence.is_beating(sid, 1)


def test_ws_disconnect_does_not_release(tmp_path):
    setup_db(tmp_path)
    service = GameService(settings=Settings(countdown_seconds=30, poll_interval=0.2))
    lastpress_main.service = service
    with TestClient(app) as client:
        sid = _started_game(client)
        with client.websocket_connect(f'/ws/games/{sid}') as ws:
            ws.send_json({"type": "press", "fid": 1})
            assert _receive_until(ws, 'press')['ok'] is True
        players = client.get(f'/api/games/{sid}/players').json()['players']
        holder = [p for p in players if p['fid'] == 1][0]
        assert holder['is_pressing'] is True
        assert holder['is_eliminated'] is False


def test_ws_requires_fid_and_existing_game(tmp_path):
    setup_db(tmp_path)
    with TestClient(app) as client:
        sid = client.post('/api/games').json()['id']
        with client.websocket_connect(f'/ws/games/{sid}') as ws:
            ws.send_json({"type": "press"})
            assert _receive_until(ws, 'error')['detail'] == 'fid is required'

        with client.websocket_connect('/ws/games/missing') as ws:
            assert ws.receive_json() == {'type': 'error', 'detail': 'Game not found'}
