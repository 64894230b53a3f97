"""
Winner resolution.

`check_for_winner` may be called any number of times, from any trigger and from
concurrent writers. The only thing that makes it safe is the conditional status
update: the session flips to completed at most once, and the guard also
re-checks the survivor set inside the same statement, so a player eliminated
between our read and our write makes the update miss instead of crowning them.
"""

from typing import Any, List, Optional

from sqlalchemy import select as sa_select
from sqlmodel import Session

from . import crud, lifecycle, models
from .logging_utils import get_logger
from .models import SessionStatus, utcnow

logger = get_logger("lastpress.elimination")


def _still_in(session_id: str, fid: Optional[int] = None, exclude_fid: Optional[int] = None) -> Any:
    P = models.GamePlayer
    stmt = sa_select(P.id).where(P.session_id == session_id, P.is_eliminated == False)  # noqa: E712
    if fid is not None:
        stmt = stmt.where(P.fid == fid)
    if exclude_fid is not None:
        stmt = stmt.where(P.fid != exclude_fid)
    return stmt.exists()


def _completion_guard(session_id: str, winner_fid: Optional[int]) -> List[Any]:
    if winner_fid is None:
        return [~_still_in(session_id)]
    return [_still_in(session_id, fid=winner_fid), ~_still_in(session_id, exclude_fid=winner_fid)]


def check_for_winner(db: Session, session_id: str) -> Optional[models.GameSession]:
    """Complete the session if at most one player is left.

    Returns the completed session when this call performed the completion,
    otherwise None (still two or more players, not in play, or lost the race).
    """
    gs = crud.get_game_session(db, session_id)
    if gs is None or gs.status not in [s.value for s in lifecycle.IN_PLAY]:
        return None

    survivors = crud.get_active_players(db, session_id)
    if len(survivors) > 1:
        return None

    winner_fid = survivors[0].fid if survivors else None
    winner_row_id = survivors[0].id if survivors else None

    completed = lifecycle.transition(
        db,
        session_id,
        lifecycle.IN_PLAY,
        SessionStatus.COMPLETED,
        values={"ended_at": utcnow(), "winner_fid": winner_fid, "countdown_ends_at": None},
        where=_completion_guard(session_id, winner_fid),
    )
    if not completed:
        logger.debug("winner_check_superseded", extra={"session_id": session_id, "winner_fid": winner_fid})
        return None

    finalize_placements(db, session_id, winner_row_id)
    logger.info("session_completed", extra={"session_id": session_id, "winner_fid": winner_fid})
    return crud.get_game_session(db, session_id)


def finalize_placements(db: Session, session_id: str, winner_row_id: Optional[int]) -> int:
    """Winner takes 1; everyone else is ranked from 2 in reverse elimination order.

    With no winner, the last player eliminated takes 1 and winner_fid stays null.
    """
    if winner_row_id is None:
        return crud.assign_placements(db, session_id, start=1)
    placed = crud.conditional_update(
        db,
        models.GamePlayer,
        match={"id": winner_row_id},
        values={"placement": 1},
        guard={"placement": None},
    )
    return placed + crud.assign_placements(db, session_id, start=2)
