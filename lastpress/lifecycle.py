"""Session status graph and the guarded transition primitive."""

from typing import Any, Dict, Iterable, Optional, Sequence, Union

from sqlmodel import Session

from . import crud, models
from .logging_utils import get_logger
from .models import SessionStatus

logger = get_logger("lastpress.lifecycle")

TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.SCHEDULED: frozenset({SessionStatus.WAITING}),
    SessionStatus.WAITING: frozenset({SessionStatus.STARTING}),
    SessionStatus.STARTING: frozenset({SessionStatus.ACTIVE, SessionStatus.COMPLETED}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.COMPLETED}),
    SessionStatus.COMPLETED: frozenset(),
}

# Statuses in which press state may change and a winner may be resolved
IN_PLAY = (SessionStatus.STARTING, SessionStatus.ACTIVE)
# Statuses in which new players may join
PRE_GAME = (SessionStatus.SCHEDULED, SessionStatus.WAITING)


def can_transition(src: Union[str, SessionStatus], dst: Union[str, SessionStatus]) -> bool:
    return SessionStatus(dst) in TRANSITIONS[SessionStatus(src)]


def transition(
    db: Session,
    session_id: str,
    src: Union[SessionStatus, Iterable[SessionStatus]],
    dst: SessionStatus,
    values: Optional[Dict[str, Any]] = None,
    where: Sequence[Any] = (),
) -> bool:
    """Move a session from any of `src` to `dst` if it is still in `src`.

    Returns False when the guard fails (someone else moved it first).
    Raises ValueError for an edge that is not part of the graph.
    """
    sources = (src,) if isinstance(src, (str, SessionStatus)) else tuple(src)
    for s in sources:
        if not can_transition(s, dst):
            raise ValueError(f"invalid session transition {SessionStatus(s).value} -> {SessionStatus(dst).value}")
    new_values = dict(values or {})
    new_values["status"] = SessionStatus(dst).value
    rows = crud.conditional_update(
        db,
        models.GameSession,
        match={"id": session_id},
        values=new_values,
        guard={"status": [SessionStatus(s).value for s in sources]},
        where=where,
    )
    if rows:
        logger.info(
            "session_transition",
            extra={
                "session_id": session_id,
                "from_status": ",".join(SessionStatus(s).value for s in sources),
                "to_status": SessionStatus(dst).value,
            },
        )
    else:
        logger.debug(
            "session_transition_skipped",
            extra={"session_id": session_id, "to_status": SessionStatus(dst).value},
        )
    return rows > 0
