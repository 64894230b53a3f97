"""
GameService: the operations clients call, plus the timers this process owns.

Every method opens its own store session, reads fresh state, and turns store
failures into False / None / [] so callers branch on results instead of
catching exceptions. Store calls run on worker threads so the loop stays free.
Timer work (countdowns, heartbeats, staleness sweeps, scheduled activation) lives
in one TimerRegistry and must run on an event loop.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from . import crud, elimination, lifecycle, lobby, models, presence, sessions
from .config import Settings, get_settings
from .logging_utils import get_logger
from .models import GameType, SessionStatus
from .presence import PresenceTracker
from .realtime import GameSnapshot, GameWatcher
from .timers import TimerRegistry

logger = get_logger("lastpress.service")

T = TypeVar("T")


class GameService:
    def __init__(self, settings: Optional[Settings] = None, timers: Optional[TimerRegistry] = None):
        self.settings = settings or get_settings()
        self.timers = timers or TimerRegistry()
        self.presence = PresenceTracker(self.timers, self.settings.heartbeat_interval)
        self._watchers: Dict[str, Tuple[GameWatcher, asyncio.Task]] = {}

    async def _run(
        self,
        op: str,
        fn: Callable[[Session], T],
        default: T,
        session_id: Optional[str] = None,
        fid: Optional[int] = None,
    ) -> T:
        """Run fn against a fresh store session on a worker thread."""
        return await run_in_threadpool(self._call, op, fn, default, session_id, fid)

    def _call(
        self,
        op: str,
        fn: Callable[[Session], T],
        default: T,
        session_id: Optional[str],
        fid: Optional[int],
    ) -> T:
        try:
            with crud.open_session() as db:
                return fn(db)
        except SQLAlchemyError as exc:
            logger.warning(
                "store_error",
                extra={"event": op, "session_id": session_id, "fid": fid, "error": str(exc)},
            )
            return default

    # ---- lobby ----

    async def create_public_game(self) -> Optional[models.GameSession]:
        return await self._run(
            "create_public_game",
            lambda db: lobby.create_public_game(db, max_players=self.settings.max_players),
            None,
        )

    async def create_private_game(self, creator_fid: int) -> Optional[models.GameSession]:
        return await self._run(
            "create_private_game",
            lambda db: lobby.create_private_game(
                db,
                creator_fid,
                max_players=self.settings.max_players,
                code_length=self.settings.share_code_length,
            ),
            None,
            fid=creator_fid,
        )

    async def get_todays_daily_game(self, create: bool = True) -> Optional[models.GameSession]:
        s = self.settings

        def _daily(db: Session) -> Optional[models.GameSession]:
            gs = lobby.get_todays_daily_game(db, s.daily_timezone, s.daily_start_hour)
            if gs is None and create:
                gs = lobby.create_todays_daily_game(db, s.daily_timezone, s.daily_start_hour, s.max_players)
            return gs

        return await self._run("daily_game", _daily, None)

    async def get_game(self, session_id: str) -> Optional[models.GameSession]:
        return await self._run("get_game", lambda db: crud.get_game_session(db, session_id), None, session_id)

    async def get_game_by_share_code(self, share_code: str) -> Optional[models.GameSession]:
        return await self._run("get_game_by_share_code", lambda db: lobby.get_game_by_share_code(db, share_code), None)

    async def get_active_games(
        self,
        game_type: Optional[GameType] = None,
        include_scheduled: bool = False,
    ) -> List[models.GameSession]:
        return await self._run(
            "get_active_games",
            lambda db: lobby.get_active_games(db, game_type, include_scheduled),
            [],
        )

    async def get_featured_games(self) -> List[models.GameSession]:
        return await self._run("get_featured_games", lobby.get_featured_games, [])

    async def get_all_players(self, session_id: str) -> List[models.GamePlayer]:
        return await self._run("get_all_players", lambda db: crud.get_all_players(db, session_id), [], session_id)

    async def get_active_players(self, session_id: str) -> List[models.GamePlayer]:
        return await self._run("get_active_players", lambda db: crud.get_active_players(db, session_id), [], session_id)

    async def get_user_game_history(self, fid: int) -> List[Tuple[models.GamePlayer, models.GameSession]]:
        return await self._run("get_user_game_history", lambda db: lobby.get_user_game_history(db, fid), [], fid=fid)

    async def join_game(
        self,
        session_id: str,
        fid: int,
        username: str,
        display_name: Optional[str] = None,
        pfp_url: Optional[str] = None,
    ) -> Optional[models.GamePlayer]:
        return await self._run(
            "join_game",
            lambda db: lobby.join_game(db, session_id, fid, username, display_name, pfp_url),
            None,
            session_id,
            fid,
        )

    # ---- presence ----

    async def start_pressing(self, session_id: str, fid: int) -> bool:
        return await self._run(
            "start_pressing",
            lambda db: presence.start_pressing(db, session_id, fid),
            False,
            session_id,
            fid,
        )

    async def send_heartbeat(self, session_id: str, fid: int) -> bool:
        return await self._run(
            "send_heartbeat",
            lambda db: presence.send_heartbeat(db, session_id, fid),
            False,
            session_id,
            fid,
        )

    async def stop_pressing(self, session_id: str, fid: int) -> bool:
        self.presence.stop_heartbeat(session_id, fid)
        return await self._run(
            "stop_pressing",
            lambda db: presence.stop_pressing(db, session_id, fid),
            False,
            session_id,
            fid,
        )

    async def press(
        self,
        session_id: str,
        fid: int,
        on_failure: Optional[Callable[[], Any]] = None,
    ) -> bool:
        """start_pressing plus a heartbeat loop owned by this process.

        When a heartbeat does not apply, on_failure runs; by default that releases the player.
        """
        if not await self.start_pressing(session_id, fid):
            return False
        if on_failure is None:
            on_failure = lambda: self.stop_pressing(session_id, fid)  # noqa: E731
        self.presence.start_heartbeat(session_id, fid, on_failure)
        return True

    async def cleanup_stale_players(self, session_id: str) -> List[int]:
        return await self._run(
            "cleanup_stale_players",
            lambda db: presence.cleanup_stale_players(db, session_id, self.settings.stale_after),
            [],
            session_id,
        )

    async def check_for_winner(self, session_id: str) -> Optional[models.GameSession]:
        return await self._run(
            "check_for_winner",
            lambda db: elimination.check_for_winner(db, session_id),
            None,
            session_id,
        )

    # ---- session state machine ----

    async def start_game(self, session_id: str) -> bool:
        gs = await self._run(
            "start_game",
            lambda db: sessions.start_game(db, session_id, self.settings.countdown_seconds),
            None,
            session_id,
        )
        if gs is None:
            return False
        self._arm_countdown(session_id, self.settings.countdown_seconds)
        self._arm_sweep(session_id)
        return True

    async def complete_countdown(self, session_id: str) -> bool:
        return await self._run(
            "complete_countdown",
            lambda db: sessions.complete_countdown(db, session_id),
            False,
            session_id,
        )

    async def activate_scheduled_games(self) -> List[str]:
        return await self._run("activate_scheduled_games", sessions.activate_scheduled_games, [])

    async def scheduler_tick(self) -> bool:
        """Make sure today's daily game exists and open any scheduled game that is due."""
        await self.get_todays_daily_game(create=True)
        opened = await self.activate_scheduled_games()
        if opened:
            logger.info("scheduled_games_opened", extra={"rows": len(opened)})
        return True

    def start_scheduler(self) -> bool:
        return self.timers.every(("scheduler",), self.settings.scheduler_interval, self.scheduler_tick)

    def _arm_countdown(self, session_id: str, delay: float) -> bool:
        return self.timers.schedule(("countdown", session_id), delay, lambda: self.complete_countdown(session_id))

    def _arm_sweep(self, session_id: str) -> bool:
        return self.timers.every(("sweep", session_id), self.settings.sweep_interval, lambda: self._sweep_tick(session_id))

    async def _sweep_tick(self, session_id: str) -> bool:
        gs = await self.get_game(session_id)
        if gs is None or gs.status == SessionStatus.COMPLETED.value:
            return False
        if gs.status in [s.value for s in lifecycle.IN_PLAY]:
            await self.cleanup_stale_players(session_id)
        return True

    # ---- reconciliation and fan-out ----

    async def reconcile(self, session_id: str) -> Optional[GameSnapshot]:
        """Fresh snapshot of the session; also heals a countdown or sweep this process lost."""

        def _reconcile(db: Session) -> GameSnapshot:
            gs = crud.get_game_session(db, session_id)
            if gs is None:
                return GameSnapshot(None, [])
            if sessions.countdown_due(gs):
                sessions.complete_countdown(db, session_id)
            return GameSnapshot(crud.get_game_session(db, session_id), crud.get_all_players(db, session_id))

        snapshot = await self._run("reconcile", _reconcile, None, session_id)
        if snapshot is not None and snapshot.session is not None:
            gs = snapshot.session
            if gs.status == SessionStatus.STARTING.value:
                self._arm_countdown(session_id, sessions.seconds_until_countdown_ends(gs))
            if gs.status in [s.value for s in lifecycle.IN_PLAY]:
                self._arm_sweep(session_id)
        return snapshot

    def subscribe_to_game(
        self,
        session_id: str,
        on_players: Optional[Callable[[List[models.GamePlayer]], Any]] = None,
        on_session: Optional[Callable[[models.GameSession], Any]] = None,
    ) -> GameWatcher:
        """Watch a session on behalf of this process; replaces any previous watcher for it."""
        self.unsubscribe_from_game(session_id)
        watcher = GameWatcher(
            session_id,
            self.reconcile,
            on_players=on_players,
            on_session=on_session,
            poll_interval=self.settings.poll_interval,
        )
        task = asyncio.get_running_loop().create_task(watcher.run())
        self._watchers[session_id] = (watcher, task)
        return watcher

    def unsubscribe_from_game(self, session_id: str) -> bool:
        entry = self._watchers.pop(session_id, None)
        if entry is None:
            return False
        watcher, task = entry
        watcher.stop()
        if not task.done() and not task.get_loop().is_closed():
            task.cancel()
        return True

    def leave_game(self, session_id: str, fid: int) -> None:
        """Stop local work for this player; store state is left for release or the sweep."""
        self.presence.stop_heartbeat(session_id, fid)
        self.unsubscribe_from_game(session_id)

    async def shutdown(self) -> None:
        for session_id in list(self._watchers):
            self.unsubscribe_from_game(session_id)
        cancelled = self.timers.cancel_all()
        logger.info("service_shutdown", extra={"rows": cancelled})
