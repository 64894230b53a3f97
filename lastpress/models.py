import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlmodel import Field, SQLModel, UniqueConstraint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    WAITING = "waiting"
    STARTING = "starting"
    ACTIVE = "active"
    COMPLETED = "completed"


class GameType(str, Enum):
    PUBLIC = "public"
    DAILY = "daily"
    PRIVATE = "private"


class GameSession(SQLModel, table=True):
    __tablename__ = "game_sessions"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    status: str = Field(default=SessionStatus.WAITING.value, index=True)
    game_type: str = Field(default=GameType.PUBLIC.value, index=True)
    share_code: Optional[str] = Field(default=None, unique=True, index=True)
    daily_date: Optional[str] = Field(default=None, unique=True)  # YYYY-MM-DD, daily games only
    scheduled_start_time: Optional[datetime] = None
    started_at: Optional[datetime] = None
    countdown_ends_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    winner_fid: Optional[int] = None
    total_players: int = 0
    max_players: int = 100
    created_by_fid: Optional[int] = None
    is_featured: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class GamePlayer(SQLModel, table=True):
    __tablename__ = "game_players"
    __table_args__ = (
        UniqueConstraint("session_id", "fid", name="uq_game_player_session_fid"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(foreign_key="game_sessions.id", index=True)
    fid: int = Field(index=True)
    username: str
    display_name: Optional[str] = None
    pfp_url: Optional[str] = None
    joined_at: datetime = Field(default_factory=utcnow)
    last_heartbeat: datetime = Field(default_factory=utcnow)
    is_pressing: bool = False
    is_eliminated: bool = False
    eliminated_at: Optional[datetime] = None
    placement: Optional[int] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def session_to_dict(gs: GameSession) -> Dict[str, Any]:
    return {
        "id": gs.id,
        "status": gs.status,
        "game_type": gs.game_type,
        "share_code": gs.share_code,
        "daily_date": gs.daily_date,
        "scheduled_start_time": _iso(gs.scheduled_start_time),
        "started_at": _iso(gs.started_at),
        "countdown_ends_at": _iso(gs.countdown_ends_at),
        "ended_at": _iso(gs.ended_at),
        "winner_fid": gs.winner_fid,
        "total_players": gs.total_players,
        "max_players": gs.max_players,
        "created_by_fid": gs.created_by_fid,
        "is_featured": gs.is_featured,
    }


def player_to_dict(p: GamePlayer) -> Dict[str, Any]:
    return {
        "id": p.id,
        "session_id": p.session_id,
        "fid": p.fid,
        "username": p.username,
        "display_name": p.display_name,
        "pfp_url": p.pfp_url,
        "joined_at": _iso(p.joined_at),
        "last_heartbeat": _iso(p.last_heartbeat),
        "is_pressing": p.is_pressing,
        "is_eliminated": p.is_eliminated,
        "eliminated_at": _iso(p.eliminated_at),
        "placement": p.placement,
    }
