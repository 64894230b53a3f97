"""
Time-gated session phases: starting the countdown, closing it, and opening
scheduled games.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select as sa_select
from sqlmodel import Session

from . import crud, elimination, lifecycle, models
from .logging_utils import get_logger
from .models import SessionStatus, as_utc, utcnow

logger = get_logger("lastpress.sessions")


def start_game(
    db: Session,
    session_id: str,
    countdown_seconds: float,
    now: Optional[datetime] = None,
) -> Optional[models.GameSession]:
    """waiting -> starting. Returns the session if this call started it.

    The minimum player count is the caller's concern; here only the status guard applies.
    """
    now = now or utcnow()
    started = lifecycle.transition(
        db,
        session_id,
        SessionStatus.WAITING,
        SessionStatus.STARTING,
        values={
            "started_at": now,
            "countdown_ends_at": now + timedelta(seconds=countdown_seconds),
        },
    )
    if not started:
        return None
    logger.info("countdown_started", extra={"session_id": session_id})
    return crud.get_game_session(db, session_id)


def complete_countdown(db: Session, session_id: str, now: Optional[datetime] = None) -> bool:
    """starting -> active. Everyone not holding at this moment is eliminated first.

    Returns True if this call moved the session to active.
    """
    gs = crud.get_game_session(db, session_id)
    if gs is None or gs.status != SessionStatus.STARTING.value:
        return False

    now = now or utcnow()
    S = models.GameSession
    still_starting = (
        sa_select(S.id).where(S.id == session_id, S.status == SessionStatus.STARTING.value).exists()
    )
    dropped = crud.conditional_update(
        db,
        models.GamePlayer,
        match={"session_id": session_id},
        values={"is_pressing": False, "is_eliminated": True, "eliminated_at": now},
        guard={"is_pressing": False, "is_eliminated": False},
        where=[still_starting],
    )
    if dropped:
        logger.info("countdown_eliminations", extra={"session_id": session_id, "rows": dropped})

    activated = lifecycle.transition(
        db,
        session_id,
        SessionStatus.STARTING,
        SessionStatus.ACTIVE,
        values={"countdown_ends_at": None},
    )
    if activated:
        logger.info("countdown_completed", extra={"session_id": session_id})
    elimination.check_for_winner(db, session_id)
    return activated


def countdown_due(gs: models.GameSession, now: Optional[datetime] = None) -> bool:
    if gs.status != SessionStatus.STARTING.value or gs.countdown_ends_at is None:
        return False
    return as_utc(gs.countdown_ends_at) <= (now or utcnow())


def seconds_until_countdown_ends(gs: models.GameSession, now: Optional[datetime] = None) -> float:
    if gs.countdown_ends_at is None:
        return 0.0
    return max(0.0, (as_utc(gs.countdown_ends_at) - (now or utcnow())).total_seconds())


def activate_scheduled_games(db: Session, now: Optional[datetime] = None) -> List[str]:
    """scheduled -> waiting for every session whose start time has passed."""
    now = now or utcnow()
    due = crud.query_rows(
        db,
        models.GameSession,
        {"status": SessionStatus.SCHEDULED.value},
        where=[models.GameSession.scheduled_start_time <= now],
    )
    opened: List[str] = []
    for session_id in [gs.id for gs in due]:
        if lifecycle.transition(db, session_id, SessionStatus.SCHEDULED, SessionStatus.WAITING):
            opened.append(session_id)
    return opened
