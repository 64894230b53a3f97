import asyncio

from sqlmodel import SQLModel, create_engine
from lastpress import crud, lobby, models
from lastpress.changes import ChangeEvent, ChangeFeed, PLAYERS_TABLE, SESSIONS_TABLE
from lastpress.realtime import GameSnapshot, GameWatcher


def setup_db(tmp_path):
    db = tmp_path / 'watch.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def _event(session_id="s1", table=PLAYERS_TABLE):
    return ChangeEvent(table=table, change_type="update", session_id=session_id, row={})


def test_feed_filters_by_session_and_table():
    feed = ChangeFeed()
    players, sessions = [], []
    feed.subscribe("s1", [PLAYERS_TABLE], players.append)
    feed.subscribe("s1", [SESSIONS_TABLE], sessions.append)
    assert feed.publish(_event("s1", PLAYERS_TABLE)) == 1
    assert feed.publish(_event("s2", PLAYERS_TABLE)) == 0
    assert len(players) == 1 and sessions == []
    assert feed.subscriber_count("s1") == 2
    assert feed.subscriber_count() == 2


def test_failing_subscriber_does_not_block_others():
    feed = ChangeFeed()
    got = []

    def broken(event):
        raise RuntimeError("nope")

    feed.subscribe("s1", [PLAYERS_TABLE], broken)
    feed.subscribe("s1", [PLAYERS_TABLE], got.append)
    assert feed.publish(_event()) == 1
    assert len(got) == 1


def test_unsubscribe_and_forwarders():
    feed = ChangeFeed()
    got, forwarded = [], []
    sub = feed.subscribe("s1", [PLAYERS_TABLE], got.append)
    feed.add_forwarder(forwarded.append)
    feed.add_forwarder(forwarded.append)
    assert sub.active
    sub.unsubscribe()
    assert not sub.active
    feed.publish(_event("s1"))
    feed.publish(_event("s9"))
    assert got == []
    assert len(forwarded) == 2
    feed.remove_forwarder(forwarded.append)
    feed.publish(_event("s1"))
    assert len(forwarded) == 2


def test_snapshot_to_dict(tmp_path):
    setup_db(tmp_path)
    with crud.open_session() as s:
        gs = lobby.create_public_game(s)
        lobby.join_game(s, gs.id, 1, "a")
        snap = GameSnapshot(crud.get_game_session(s, gs.id), crud.get_all_players(s, gs.id))
    d = snap.to_dict()
    assert d["session"]["id"] == gs.id
    assert [p["fid"] for p in d["players"]] == [1]
    assert GameSnapshot(None).to_dict() == {"session": None, "players": []}


def test_watcher_refreshes_on_push_and_poll(tmp_path):
    setup_db(tmp_path)
    with crud.open_session() as s:
        gs = lobby.create_public_game(s)
    sid = gs.id
    seen_players, seen_sessions = [], []

    async def reconcile(session_id):
        with crud.open_session() as s:
            return GameSnapshot(crud.get_game_session(s, session_id), crud.get_all_players(s, session_id))

    async def scenario():
        watcher = GameWatcher(
            sid, reconcile,
            on_players=lambda players: seen_players.append([p.fid for p in players]),
            on_session=seen_sessions.append,
            poll_interval=60,
        )
        task = asyncio.get_running_loop().create_task(watcher.run())
        await asyncio.sleep(0.05)
        assert watcher.subscribed
        assert watcher.refreshes == 1

        with crud.open_session() as s:
            lobby.join_game(s, sid, 1, "a")
        await asyncio.sleep(0.05)
        assert seen_players[-1] == [1]

        # poll path: same reconcile, no change event needed
        watcher.poll_interval = 0.02
        watcher._poke()
        await asyncio.sleep(0.1)
        polled = watcher.refreshes

        watcher.stop()
        await asyncio.wait_for(task, timeout=1)
        assert not watcher.subscribed
        return polled

    polled = asyncio.run(scenario())
    assert polled >= 4
    assert seen_players[0] == []
    assert all(gs_.id == sid for gs_ in seen_sessions)


def test_watcher_refresh_skips_callbacks_without_snapshot():
    calls = []

    async def reconcile(session_id):
        return None

    async def scenario():
        watcher = GameWatcher("s1", reconcile, on_players=calls.append)
        return await watcher.refresh()

    assert asyncio.run(scenario()) is None
    assert calls == []
