"""
Creating, listing and joining games.
"""

import random
import string
from datetime import datetime
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import crud, lifecycle, models
from .logging_utils import get_logger
from .models import GameType, SessionStatus, as_utc, utcnow

logger = get_logger("lastpress.lobby")

SHARE_CODE_ALPHABET = string.ascii_uppercase + string.digits
LISTED_STATUSES = (SessionStatus.WAITING, SessionStatus.STARTING, SessionStatus.ACTIVE)


def generate_share_code(length: int = 6) -> str:
    return "".join(random.choices(SHARE_CODE_ALPHABET, k=length))


def create_public_game(db: Session, max_players: int = 100) -> models.GameSession:
    gs = models.GameSession(
        status=SessionStatus.WAITING.value,
        game_type=GameType.PUBLIC.value,
        max_players=max_players,
    )
    crud.insert_row(db, gs)
    logger.info("game_created", extra={"session_id": gs.id, "event": "public"})
    return gs


def create_private_game(
    db: Session,
    creator_fid: int,
    max_players: int = 100,
    code_length: int = 6,
    attempts: int = 10,
) -> Optional[models.GameSession]:
    """Private game with a fresh share code; None if no free code was found."""
    for _ in range(attempts):
        code = generate_share_code(code_length)
        if crud.first_row(db, models.GameSession, {"share_code": code}) is not None:
            continue
        gs = models.GameSession(
            status=SessionStatus.WAITING.value,
            game_type=GameType.PRIVATE.value,
            share_code=code,
            created_by_fid=creator_fid,
            max_players=max_players,
        )
        try:
            crud.insert_row(db, gs)
        except IntegrityError:
            # lost a race for the same code
            continue
        logger.info("game_created", extra={"session_id": gs.id, "fid": creator_fid, "event": "private"})
        return gs
    logger.warning("share_code_exhausted", extra={"fid": creator_fid})
    return None


def daily_schedule(now: datetime, tz_name: str, start_hour: int) -> Tuple[str, datetime]:
    """Return (local date, UTC start time) of the daily game for the day containing `now`."""
    tz = ZoneInfo(tz_name)
    local_now = as_utc(now).astimezone(tz)
    local_start = local_now.replace(hour=start_hour, minute=0, second=0, microsecond=0)
    return local_now.date().isoformat(), as_utc(local_start)


def get_todays_daily_game(
    db: Session,
    tz_name: str = "America/New_York",
    start_hour: int = 12,
    now: Optional[datetime] = None,
) -> Optional[models.GameSession]:
    date_str, _ = daily_schedule(now or utcnow(), tz_name, start_hour)
    return crud.first_row(db, models.GameSession, {"daily_date": date_str})


def create_todays_daily_game(
    db: Session,
    tz_name: str = "America/New_York",
    start_hour: int = 12,
    max_players: int = 100,
    now: Optional[datetime] = None,
) -> models.GameSession:
    """Today's daily game, created once per local date. Scheduled until its start hour."""
    now = now or utcnow()
    date_str, start_at = daily_schedule(now, tz_name, start_hour)
    existing = crud.first_row(db, models.GameSession, {"daily_date": date_str})
    if existing is not None:
        return existing
    status = SessionStatus.SCHEDULED if as_utc(now) < start_at else SessionStatus.WAITING
    gs = models.GameSession(
        status=status.value,
        game_type=GameType.DAILY.value,
        daily_date=date_str,
        scheduled_start_time=start_at,
        max_players=max_players,
        is_featured=True,
    )
    try:
        crud.insert_row(db, gs)
    except IntegrityError:
        # another request created it first
        return crud.first_row(db, models.GameSession, {"daily_date": date_str})
    logger.info("game_created", extra={"session_id": gs.id, "event": "daily"})
    return gs


def get_game_by_share_code(db: Session, share_code: str) -> Optional[models.GameSession]:
    code = (share_code or "").strip().upper()
    if not code:
        return None
    return crud.first_row(db, models.GameSession, {"share_code": code})


def get_active_games(
    db: Session,
    game_type: Optional[GameType] = None,
    include_scheduled: bool = False,
) -> List[models.GameSession]:
    statuses = list(LISTED_STATUSES)
    if include_scheduled:
        statuses.append(SessionStatus.SCHEDULED)
    filters = {"status": [s.value for s in statuses]}
    if game_type is not None:
        filters["game_type"] = GameType(game_type).value
    return crud.query_rows(
        db,
        models.GameSession,
        filters,
        order_by=[models.GameSession.created_at.desc()],
    )


def get_featured_games(db: Session, limit: int = 5) -> List[models.GameSession]:
    return crud.query_rows(
        db,
        models.GameSession,
        {
            "is_featured": True,
            "status": [SessionStatus.WAITING.value, SessionStatus.ACTIVE.value],
        },
        order_by=[models.GameSession.created_at.desc()],
        limit=limit,
    )


def get_user_game_history(
    db: Session,
    fid: int,
    limit: int = 20,
) -> List[Tuple[models.GamePlayer, models.GameSession]]:
    stmt = (
        select(models.GamePlayer, models.GameSession)
        .join(models.GameSession, models.GameSession.id == models.GamePlayer.session_id)
        .where(models.GamePlayer.fid == fid)
        .order_by(models.GamePlayer.joined_at.desc())
        .limit(limit)
    )
    return [(player, gs) for player, gs in db.exec(stmt).all()]


def _reserve_seat(db: Session, session_id: str) -> bool:
    """Take one seat if the game is open and not full; the check and the increment are one statement."""
    S = models.GameSession
    return crud.conditional_update(
        db,
        S,
        match={"id": session_id},
        values={"total_players": S.total_players + 1},
        guard={"status": [s.value for s in lifecycle.PRE_GAME]},
        where=[S.total_players < S.max_players],
    ) > 0


def _release_seat(db: Session, session_id: str) -> None:
    S = models.GameSession
    crud.conditional_update(
        db,
        S,
        match={"id": session_id},
        values={"total_players": S.total_players - 1},
        where=[S.total_players > 0],
    )


def _admit(
    db: Session,
    session_id: str,
    fid: int,
    username: str,
    display_name: Optional[str] = None,
    pfp_url: Optional[str] = None,
) -> bool:
    """Insert the player row for a reserved seat. The seat is handed back unless a row was created."""
    created = False
    try:
        _, created = crud.insert_or_get_existing(
            db,
            models.GamePlayer,
            {"session_id": session_id, "fid": fid},
            {
                "username": username,
                "display_name": display_name,
                "pfp_url": pfp_url,
                "is_pressing": False,
                "is_eliminated": False,
            },
        )
    finally:
        if not created:
            _release_seat(db, session_id)
    return created


def join_game(
    db: Session,
    session_id: str,
    fid: int,
    username: str,
    display_name: Optional[str] = None,
    pfp_url: Optional[str] = None,
) -> Optional[models.GamePlayer]:
    """Add the participant to the session, or return their existing row.

    Rejoining keeps joined_at and elimination state and only refreshes the
    heartbeat and display fields. New players are admitted only before the game
    starts and while there is room.
    """
    gs = crud.get_game_session(db, session_id)
    if gs is None:
        return None

    existing = crud.get_player(db, session_id, fid)
    if existing is not None:
        if gs.status != SessionStatus.COMPLETED.value:
            crud.conditional_update(
                db,
                models.GamePlayer,
                match={"id": existing.id},
                values={
                    "last_heartbeat": utcnow(),
                    "username": username,
                    "display_name": display_name,
                    "pfp_url": pfp_url,
                },
            )
        logger.info("player_rejoined", extra={"session_id": session_id, "fid": fid})
        return crud.get_player(db, session_id, fid)

    if not _reserve_seat(db, session_id):
        logger.info("join_rejected", extra={"session_id": session_id, "fid": fid, "status": gs.status})
        return None

    if _admit(db, session_id, fid, username, display_name, pfp_url):
        logger.info("player_joined", extra={"session_id": session_id, "fid": fid})
    return crud.get_player(db, session_id, fid)


def players_needed(gs: models.GameSession, min_players: int) -> int:
    return max(0, min_players - (gs.total_players or 0))
