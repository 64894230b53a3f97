"""
Realtime fan-out for one observer of one session.

A GameWatcher subscribes to the change feed and also polls on an interval.
Both triggers only wake the same loop, which calls the reconcile function for a
fresh snapshot and hands it to the observer's callbacks. Bursts of change
events collapse into a single refresh.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import models
from .changes import ALL_TABLES, ChangeEvent, ChangeFeed, Subscription, feed
from .logging_utils import get_logger
from .timers import run_callback

logger = get_logger("lastpress.realtime")


@dataclass
class GameSnapshot:
    session: Optional[models.GameSession]
    players: List[models.GamePlayer] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": models.session_to_dict(self.session) if self.session is not None else None,
            "players": [models.player_to_dict(p) for p in self.players],
        }


Reconcile = Callable[[str], Awaitable[Optional[GameSnapshot]]]


class GameWatcher:
    def __init__(
        self,
        session_id: str,
        reconcile: Reconcile,
        on_players: Optional[Callable[[List[models.GamePlayer]], Any]] = None,
        on_session: Optional[Callable[[models.GameSession], Any]] = None,
        poll_interval: float = 5.0,
        changes: ChangeFeed = feed,
    ):
        self.session_id = session_id
        self.poll_interval = poll_interval
        self.refreshes = 0
        self._reconcile = reconcile
        self._on_players = on_players
        self._on_session = on_session
        self._changes = changes
        self._subscription: Optional[Subscription] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wake: Optional[asyncio.Event] = None
        self._stopped = False

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def _on_change(self, event: ChangeEvent) -> None:
        # called from whichever thread committed the change
        self._poke()

    def _poke(self) -> None:
        loop, wake = self._loop, self._wake
        if loop is None or wake is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wake.set()
        else:
            loop.call_soon_threadsafe(wake.set)

    async def refresh(self) -> Optional[GameSnapshot]:
        """Fetch a fresh snapshot and deliver it. Safe to call at any time."""
        snapshot = await self._reconcile(self.session_id)
        if snapshot is None:
            return None
        self.refreshes += 1
        if self._on_players is not None:
            await run_callback(lambda: self._on_players(snapshot.players))
        if self._on_session is not None and snapshot.session is not None:
            await run_callback(lambda: self._on_session(snapshot.session))
        return snapshot

    async def run(self) -> None:
        """Deliver an initial snapshot, then one per change burst or poll tick until stopped."""
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._subscription = self._changes.subscribe(self.session_id, ALL_TABLES, self._on_change)
        logger.debug("watcher_started", extra={"session_id": self.session_id})
        try:
            await self.refresh()
            while not self._stopped:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
                if self._stopped:
                    break
                await self.refresh()
        finally:
            self._subscription.unsubscribe()
            logger.debug("watcher_stopped", extra={"session_id": self.session_id})

    def stop(self) -> None:
        self._stopped = True
        self._poke()
