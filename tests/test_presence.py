import asyncio
import time
from datetime import timedelta

from sqlmodel import SQLModel, create_engine
from lastpress import crud, models, presence
from lastpress.presence import PresenceTracker
from lastpress.timers import TimerRegistry


def setup_db(tmp_path):
    db = tmp_path / 'presence.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def _seed(status="active", fids=(1, 2, 3)):
    with crud.open_session() as s:
        gs = crud.insert_row(s, models.GameSession(status=status))
        for fid in fids:
            crud.insert_row(s, models.GamePlayer(session_id=gs.id, fid=fid, username=f"p{fid}"))
        return gs.id


def test_press_requires_game_in_play(tmp_path):
    setup_db(tmp_path)
    waiting = _seed(status="waiting")
    active = _seed(status="active")
    with crud.open_session() as s:
        assert presence.start_pressing(s, waiting, 1) is False
        assert presence.start_pressing(s, active, 1) is True
        assert crud.get_player(s, active, 1).is_pressing is True
        # unknown player
        assert presence.start_pressing(s, active, 99) is False


def test_heartbeat_only_applies_to_pressing_players(tmp_path):
    setup_db(tmp_path)
    sid = _seed()
    with crud.open_session() as s:
        assert presence.send_heartbeat(s, sid, 1) is False
        presence.start_pressing(s, sid, 1)
        before = crud.get_player(s, sid, 1).last_heartbeat
        assert presence.send_heartbeat(s, sid, 1) is True
        assert crud.get_player(s, sid, 1).last_heartbeat >= before


def test_heartbeat_never_applies_after_elimination(tmp_path):
    setup_db(tmp_path)
    sid = _seed()
    with crud.open_session() as s:
        presence.start_pressing(s, sid, 1)
        assert presence.eliminate_player(s, sid, 1) is True
        assert presence.send_heartbeat(s, sid, 1) is False
        # pressing again does not bring the player back
        assert presence.start_pressing(s, sid, 1) is False
        assert presence.send_heartbeat(s, sid, 1) is False
        p = crud.get_player(s, sid, 1)
        assert p.is_eliminated is True and p.is_pressing is False


def test_eliminated_at_is_written_once(tmp_path):
    setup_db(tmp_path)
    sid = _seed()
    with crud.open_session() as s:
        first = models.utcnow() - timedelta(seconds=30)
        assert presence.eliminate_player(s, sid, 2, now=first) is True
        assert presence.eliminate_player(s, sid, 2) is False
        assert models.as_utc(crud.get_player(s, sid, 2).eliminated_at) == first


def test_stop_pressing_eliminates_and_returns_true(tmp_path):
    setup_db(tmp_path)
    sid = _seed()
    with crud.open_session() as s:
        presence.start_pressing(s, sid, 1)
        assert presence.stop_pressing(s, sid, 1) is True
        assert crud.get_player(s, sid, 1).is_eliminated is True
        # already out: still a successful call, nothing changes
        assert presence.stop_pressing(s, sid, 1) is True
        assert crud.get_game_session(s, sid).status == "active"


def test_cleanup_stale_players(tmp_path):
    setup_db(tmp_path)
    sid = _seed()
    with crud.open_session() as s:
        for fid in (1, 2, 3):
            presence.start_pressing(s, sid, fid)
        later = models.utcnow() + timedelta(seconds=10)
        # player 3 renews "in the future" relative to the sweep cutoff
        crud.conditional_update(s, models.GamePlayer, {"session_id": sid, "fid": 3}, {"last_heartbeat": later})

        assert sorted(presence.cleanup_stale_players(s, sid, 6.0, now=later)) == [1, 2]
        gs = crud.get_game_session(s, sid)
        assert gs.status == "completed"
        assert gs.winner_fid == 3
        # a second sweep finds nothing
        assert presence.cleanup_stale_players(s, sid, 6.0, now=later) == []


def test_cleanup_ignores_fresh_and_non_pressing_players(tmp_path):
    setup_db(tmp_path)
    sid = _seed()
    with crud.open_session() as s:
        presence.start_pressing(s, sid, 1)
        assert presence.cleanup_stale_players(s, sid, 6.0) == []
        assert crud.get_game_session(s, sid).status == "active"


def test_heartbeat_loop_renews_then_reports_failure(tmp_path):
    setup_db(tmp_path)
    sid = _seed()
    with crud.open_session() as s:
        presence.start_pressing(s, sid, 1)

    failures = []

    async def scenario():
        tracker = PresenceTracker(TimerRegistry(), interval=0.02)
        assert tracker.start_heartbeat(sid, 1, on_failure=lambda: failures.append((sid, 1)))
        await asyncio.sleep(0.08)
        assert tracker.is_beating(sid, 1)
        assert failures == []
        with crud.open_session() as s:
            presence.eliminate_player(s, sid, 1)
        await asyncio.sleep(0.1)
        assert not tracker.is_beating(sid, 1)

    asyncio.run(scenario())
    assert failures == [(sid, 1)]


def test_stop_heartbeat_cancels_without_failure(tmp_path):
    setup_db(tmp_path)
    sid = _seed()
    with crud.open_session() as s:
        presence.start_pressing(s, sid, 1)
        presence.start_pressing(s, sid, 2)

    failures = []

    async def scenario():
        tracker = PresenceTracker(TimerRegistry(), interval=0.02)
        tracker.start_heartbeat(sid, 1, on_failure=lambda: failures.append(1))
        tracker.start_heartbeat(sid, 2, on_failure=lambda: failures.append(2))
        assert tracker.stop_heartbeat(sid, 1) is True
        assert tracker.stop_all(sid) == 1
        await asyncio.sleep(0.06)
        assert not tracker.is_beating(sid, 1)
        assert not tracker.is_beating(sid, 2)

    asyncio.run(scenario())
    assert failures == []


def test_slow_heartbeat_write_leaves_the_loop_free(tmp_path, monkeypatch):
    setup_db(tmp_path)
    sid = _seed()
    with crud.open_session() as s:
        presence.start_pressing(s, sid, 1)

    real_send = presence.send_heartbeat

    def slow_send(db, session_id, fid):
        time.sleep(0.5)
        return real_send(db, session_id, fid)

    monkeypatch.setattr(presence, "send_heartbeat", slow_send)

    async def scenario():
        tracker = PresenceTracker(TimerRegistry(), interval=0.01)
        tracker.start_heartbeat(sid, 1)
        await asyncio.sleep(0.02)
        started = time.monotonic()
        await asyncio.sleep(0.05)
        elapsed = time.monotonic() - started
        tracker.stop_heartbeat(sid, 1)
        return elapsed

    assert asyncio.run(scenario()) < 0.3
