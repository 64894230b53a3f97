"""
Player presence: pressing, heartbeats, release and the staleness sweep.

A pressing player proves they are still holding by renewing last_heartbeat.
Releasing, a failed heartbeat and a stale heartbeat all end the same way: the
player is eliminated and the winner check runs.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Hashable, List, Optional

from sqlalchemy import select as sa_select
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from . import crud, elimination, lifecycle, models
from .logging_utils import get_logger
from .models import utcnow
from .timers import TimerRegistry, run_callback

logger = get_logger("lastpress.presence")


def _session_in_play(session_id: str) -> Any:
    S = models.GameSession
    return sa_select(S.id).where(
        S.id == session_id,
        S.status.in_([s.value for s in lifecycle.IN_PLAY]),
    ).exists()


def _elimination_values(now: datetime) -> dict:
    return {"is_pressing": False, "is_eliminated": True, "eliminated_at": now}


def start_pressing(db: Session, session_id: str, fid: int) -> bool:
    """Mark the player as holding. Fails for missing or eliminated players."""
    rows = crud.conditional_update(
        db,
        models.GamePlayer,
        match={"session_id": session_id, "fid": fid},
        values={"is_pressing": True, "last_heartbeat": utcnow()},
        guard={"is_eliminated": False},
        where=[_session_in_play(session_id)],
    )
    if rows:
        logger.info("press_started", extra={"session_id": session_id, "fid": fid})
    else:
        logger.debug("press_rejected", extra={"session_id": session_id, "fid": fid})
    return rows > 0


def send_heartbeat(db: Session, session_id: str, fid: int) -> bool:
    """Renew last_heartbeat; only applies while the player is pressing and not eliminated."""
    rows = crud.conditional_update(
        db,
        models.GamePlayer,
        match={"session_id": session_id, "fid": fid},
        values={"last_heartbeat": utcnow()},
        guard={"is_pressing": True, "is_eliminated": False},
        where=[_session_in_play(session_id)],
    )
    return rows > 0


def eliminate_player(db: Session, session_id: str, fid: int, now: Optional[datetime] = None) -> bool:
    """Flip the player to eliminated. eliminated_at is written once; a finished game is left alone."""
    rows = crud.conditional_update(
        db,
        models.GamePlayer,
        match={"session_id": session_id, "fid": fid},
        values=_elimination_values(now or utcnow()),
        guard={"is_eliminated": False},
        where=[_session_in_play(session_id)],
    )
    if rows:
        logger.info("player_eliminated", extra={"session_id": session_id, "fid": fid})
    return rows > 0


def stop_pressing(db: Session, session_id: str, fid: int) -> bool:
    """Release: eliminate the player, then resolve the winner.

    Returns True once the release has been applied to the store, including when
    the player was already out.
    """
    eliminate_player(db, session_id, fid)
    elimination.check_for_winner(db, session_id)
    return True


def find_stale_players(db: Session, session_id: str, cutoff: datetime) -> List[models.GamePlayer]:
    return crud.query_rows(
        db,
        models.GamePlayer,
        {"session_id": session_id, "is_pressing": True, "is_eliminated": False},
        order_by=[models.GamePlayer.last_heartbeat],
        where=[models.GamePlayer.last_heartbeat < cutoff],
    )


def cleanup_stale_players(
    db: Session,
    session_id: str,
    stale_after: float,
    now: Optional[datetime] = None,
) -> List[int]:
    """Eliminate pressing players whose heartbeat is older than stale_after seconds.

    Returns the fids eliminated by this sweep. The winner check always runs.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=stale_after)
    candidates = [p.fid for p in find_stale_players(db, session_id, cutoff)]
    eliminated: List[int] = []
    for fid in candidates:
        # re-check staleness in the update itself; a heartbeat may have landed since the read
        rows = crud.conditional_update(
            db,
            models.GamePlayer,
            match={"session_id": session_id, "fid": fid},
            values=_elimination_values(now),
            guard={"is_pressing": True, "is_eliminated": False},
            where=[models.GamePlayer.last_heartbeat < cutoff, _session_in_play(session_id)],
        )
        if rows:
            eliminated.append(fid)
    if eliminated:
        logger.info(
            "stale_players_eliminated",
            extra={"session_id": session_id, "eliminated": eliminated},
        )
    elimination.check_for_winner(db, session_id)
    return eliminated


class PresenceTracker:
    """Owns the periodic heartbeat of every player this process is holding for."""

    def __init__(self, timers: TimerRegistry, interval: float = 2.0):
        self.timers = timers
        self.interval = interval

    @staticmethod
    def key(session_id: str, fid: int) -> Hashable:
        return ("heartbeat", session_id, fid)

    def is_beating(self, session_id: str, fid: int) -> bool:
        return self.timers.is_active(self.key(session_id, fid))

    def start_heartbeat(
        self,
        session_id: str,
        fid: int,
        on_failure: Optional[Callable[[], Any]] = None,
    ) -> bool:
        """Begin renewing the heartbeat every `interval` seconds.

        If a renewal does not apply, the loop stops itself and calls on_failure,
        which is expected to release the player.
        """
        self.stop_heartbeat(session_id, fid)
        return self.timers.start(
            self.key(session_id, fid),
            lambda: self._beat(session_id, fid, on_failure),
        )

    def stop_heartbeat(self, session_id: str, fid: int) -> bool:
        return self.timers.cancel(self.key(session_id, fid))

    def stop_all(self, session_id: Optional[str] = None) -> int:
        return self.timers.cancel_where(
            lambda k: isinstance(k, tuple) and k[0] == "heartbeat" and (session_id is None or k[1] == session_id)
        )

    def _send(self, session_id: str, fid: int) -> bool:
        try:
            with crud.open_session() as db:
                return send_heartbeat(db, session_id, fid)
        except SQLAlchemyError as exc:
            logger.warning("heartbeat_store_error", extra={"session_id": session_id, "fid": fid, "error": str(exc)})
            return False

    async def _beat(self, session_id: str, fid: int, on_failure: Optional[Callable[[], Any]]) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not await run_in_threadpool(self._send, session_id, fid):
                break
        logger.info("heartbeat_failed", extra={"session_id": session_id, "fid": fid})
        self.timers.detach(self.key(session_id, fid))
        if on_failure is not None:
            await run_callback(on_failure)
