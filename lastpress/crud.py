"""
Durable store access for game sessions and players.

Every state change in the game goes through `conditional_update`, which applies
an UPDATE only where the match and guard predicates hold and reports how many
rows it touched. Zero means another writer got there first. Successful
mutations are published on the change feed after commit.
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type

from sqlalchemy import func, nulls_first, nulls_last, update
from sqlalchemy import select as sa_select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql.elements import ClauseElement
from sqlmodel import Session, SQLModel, select

from . import models
from .changes import ChangeEvent, feed
from .logging_utils import get_logger

logger = get_logger("lastpress.crud")

engine = None

Conditions = Optional[Dict[str, Any]]


def open_session() -> Session:
    """Session that keeps loaded attributes readable after commit and close."""
    return Session(engine, expire_on_commit=False)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _predicates(model: Type[SQLModel], conditions: Conditions) -> List[Any]:
    clauses: List[Any] = []
    for name, value in (conditions or {}).items():
        col = getattr(model, name)
        value = _plain(value)
        if value is None:
            clauses.append(col.is_(None))
        elif isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(col.in_([_plain(v) for v in value]))
        else:
            clauses.append(col == value)
    return clauses


def _row_session_id(row: SQLModel) -> str:
    if isinstance(row, models.GameSession):
        return row.id
    return getattr(row, "session_id")


def _row_dict(row: SQLModel) -> Dict[str, Any]:
    if isinstance(row, models.GameSession):
        return models.session_to_dict(row)
    if isinstance(row, models.GamePlayer):
        return models.player_to_dict(row)
    return row.model_dump()


def _emit(change_type: str, rows: Iterable[SQLModel]) -> None:
    for row in rows:
        feed.publish(ChangeEvent(
            table=row.__tablename__,
            change_type=change_type,
            session_id=_row_session_id(row),
            row=_row_dict(row),
        ))


def conditional_update(
    db: Session,
    model: Type[SQLModel],
    match: Dict[str, Any],
    values: Dict[str, Any],
    guard: Conditions = None,
    where: Sequence[Any] = (),
) -> int:
    """UPDATE model SET values WHERE match AND guard AND where; return rows affected.

    `match` selects the target rows, `guard` states the expected current state,
    `where` takes extra SQL clauses such as EXISTS subqueries.
    A value may be an SQL expression (e.g. a column increment).
    """
    clauses = _predicates(model, match) + _predicates(model, guard) + list(where)
    stmt = (
        update(model)
        .where(*clauses)
        .values(**{k: _plain(v) for k, v in values.items()})
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.expire_all()
    rows = result.rowcount or 0
    logger.debug(
        "conditional_update",
        extra={"table": model.__tablename__, "rows": rows},
    )
    if rows:
        # rows now holding the new literal values are exactly the ones just changed
        literal = {k: v for k, v in values.items() if not isinstance(v, ClauseElement)}
        changed = db.exec(
            select(model).where(*_predicates(model, match), *_predicates(model, literal))
        ).all()
        _emit("update", changed)
    return rows


def insert_row(db: Session, row: SQLModel) -> SQLModel:
    db.add(row)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(row)
    _emit("insert", [row])
    return row


def insert_or_get_existing(
    db: Session,
    model: Type[SQLModel],
    unique_key: Dict[str, Any],
    defaults: Dict[str, Any],
) -> Tuple[SQLModel, bool]:
    """Return (row, created). A concurrent insert of the same key yields the existing row."""
    existing = first_row(db, model, unique_key)
    if existing is not None:
        return existing, False
    row = model(**unique_key, **defaults)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = first_row(db, model, unique_key)
        if existing is None:
            raise
        return existing, False
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(row)
    _emit("insert", [row])
    return row, True


def query_rows(
    db: Session,
    model: Type[SQLModel],
    filters: Conditions = None,
    order_by: Sequence[Any] = (),
    limit: Optional[int] = None,
    where: Sequence[Any] = (),
) -> List[Any]:
    stmt = select(model).where(*_predicates(model, filters), *where)
    if order_by:
        stmt = stmt.order_by(*order_by)
    if limit:
        stmt = stmt.limit(limit)
    return list(db.exec(stmt).all())


def first_row(db: Session, model: Type[SQLModel], filters: Conditions) -> Optional[Any]:
    return db.exec(select(model).where(*_predicates(model, filters))).first()


def count_rows(db: Session, model: Type[SQLModel], filters: Conditions = None) -> int:
    stmt = sa_select(func.count()).select_from(model).where(*_predicates(model, filters))
    return int(db.execute(stmt).scalar() or 0)


# ---- Session and player reads ----

def get_game_session(db: Session, session_id: str) -> Optional[models.GameSession]:
    return first_row(db, models.GameSession, {"id": session_id})


def get_player(db: Session, session_id: str, fid: int) -> Optional[models.GamePlayer]:
    return first_row(db, models.GamePlayer, {"session_id": session_id, "fid": fid})


def get_active_players(db: Session, session_id: str) -> List[models.GamePlayer]:
    """Players still in contention, in join order."""
    return query_rows(
        db,
        models.GamePlayer,
        {"session_id": session_id, "is_eliminated": False},
        order_by=[models.GamePlayer.joined_at, models.GamePlayer.id],
    )


def get_all_players(db: Session, session_id: str) -> List[models.GamePlayer]:
    """All players: placed first by rank, then most recently eliminated, survivors leading."""
    return query_rows(
        db,
        models.GamePlayer,
        {"session_id": session_id},
        order_by=[
            nulls_last(models.GamePlayer.placement.asc()),
            nulls_first(models.GamePlayer.eliminated_at.desc()),
            models.GamePlayer.joined_at,
        ],
    )


def assign_placements(db: Session, session_id: str, start: int = 2) -> int:
    """Rank eliminated, unplaced players from `start` in reverse elimination order.

    The most recently eliminated player gets `start`; equal timestamps fall back
    to join order. Rows that already carry a placement are left alone.
    """
    pending = query_rows(
        db,
        models.GamePlayer,
        {"session_id": session_id, "is_eliminated": True, "placement": None},
        order_by=[
            models.GamePlayer.eliminated_at.desc(),
            models.GamePlayer.joined_at,
            models.GamePlayer.id,
        ],
    )
    placed = 0
    for offset, player in enumerate(pending):
        placed += conditional_update(
            db,
            models.GamePlayer,
            match={"id": player.id},
            values={"placement": start + offset},
            guard={"placement": None},
        )
    return placed
