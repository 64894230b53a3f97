"""
In-process change feed for session and player rows.
The store publishes one event per mutated row; subscribers register per session
and receive events for the tables they asked for.
"""

import itertools
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .logging_utils import get_logger

logger = get_logger("lastpress.changes")

SESSIONS_TABLE = "game_sessions"
PLAYERS_TABLE = "game_players"
ALL_TABLES = frozenset({SESSIONS_TABLE, PLAYERS_TABLE})


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    change_type: str  # insert | update | delete
    session_id: str
    row: Optional[Dict[str, Any]] = None


Callback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by ChangeFeed.subscribe; call unsubscribe() to stop delivery."""

    def __init__(self, feed: "ChangeFeed", sub_id: int, session_id: str):
        self._feed = feed
        self.id = sub_id
        self.session_id = session_id

    @property
    def active(self) -> bool:
        return self._feed.has_subscription(self.id)

    def unsubscribe(self) -> None:
        self._feed.unsubscribe(self.id)


class ChangeFeed:
    """Thread-safe registry of per-session subscribers."""

    def __init__(self):
        self._subs: Dict[int, Tuple[str, FrozenSet[str], Callback]] = {}
        self._forwarders: List[Callback] = []
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def subscribe(self, session_id: str, tables: Iterable[str], callback: Callback) -> Subscription:
        table_set = frozenset(tables) or ALL_TABLES
        with self._lock:
            sub_id = next(self._ids)
            self._subs[sub_id] = (session_id, table_set, callback)
        return Subscription(self, sub_id, session_id)

    def unsubscribe(self, sub_id: int) -> bool:
        with self._lock:
            return self._subs.pop(sub_id, None) is not None

    def has_subscription(self, sub_id: int) -> bool:
        with self._lock:
            return sub_id in self._subs

    def subscriber_count(self, session_id: Optional[str] = None) -> int:
        with self._lock:
            if session_id is None:
                return len(self._subs)
            return sum(1 for sid, _, _ in self._subs.values() if sid == session_id)

    def add_forwarder(self, forwarder: Callback) -> None:
        """Receive every event regardless of session (e.g. an external broker bridge)."""
        with self._lock:
            if forwarder not in self._forwarders:
                self._forwarders.append(forwarder)

    def remove_forwarder(self, forwarder: Callback) -> None:
        with self._lock:
            if forwarder in self._forwarders:
                self._forwarders.remove(forwarder)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event; returns how many subscribers received it."""
        with self._lock:
            targets = [
                cb for sid, tables, cb in self._subs.values()
                if sid == event.session_id and event.table in tables
            ]
            forwarders = list(self._forwarders)
        delivered = 0
        for cb in targets:
            if self._deliver(cb, event):
                delivered += 1
        for cb in forwarders:
            self._deliver(cb, event)
        return delivered

    def _deliver(self, cb: Callback, event: ChangeEvent) -> bool:
        try:
            cb(event)
            return True
        except Exception:
            logger.exception(
                "change_callback_failed",
                extra={"session_id": event.session_id, "table": event.table, "change_type": event.change_type},
            )
            return False

    def clear(self) -> None:
        with self._lock:
            self._subs.clear()
            self._forwarders.clear()


# Process-wide feed used by the store
feed = ChangeFeed()
