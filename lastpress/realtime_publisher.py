"""
Forwards change-feed events to NATS so other processes can fan them out.
Subject: game.<session_id>.<table>. Without NATS_URL every call is a no-op.
"""
from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timezone
from typing import Optional

from .changes import ChangeEvent
from .logging_utils import get_logger

logger = get_logger("lastpress.realtime_publisher")

_nc = None  # type: ignore
_loop: Optional[asyncio.AbstractEventLoop] = None

try:
    import nats
except ImportError:  # pragma: no cover - optional dep
    nats = None  # type: ignore


def subject_for(event: ChangeEvent) -> str:
    return f"game.{event.session_id}.{event.table}"


def envelope(event: ChangeEvent) -> dict:
    return {
        "v": 1,
        "type": event.change_type,
        "table": event.table,
        "session_id": event.session_id,
        "id": os.urandom(8).hex(),
        "ts": datetime.now(timezone.utc).isoformat(),
        "row": event.row,
    }


async def connect(url: Optional[str] = None) -> bool:
    global _nc, _loop
    if _nc or not nats:
        return _nc is not None
    url = url or os.getenv("NATS_URL")
    if not url:
        return False
    try:
        _nc = await nats.connect(url, name="lastpress")
        _loop = asyncio.get_running_loop()
        logger.info("nats_connected", extra={"url": url})
    except Exception as exc:
        _nc = None
        logger.warning("nats_connect_failed", extra={"url": url, "error": str(exc)})
    return _nc is not None


async def close() -> None:
    global _nc, _loop
    if _nc is None:
        return
    try:
        await _nc.drain()
    except Exception as exc:
        logger.warning("nats_close_failed", extra={"error": str(exc)})
    _nc = None
    _loop = None


async def publish_change(event: ChangeEvent) -> bool:
    if not _nc:
        return False
    try:
        await _nc.publish(subject_for(event), json.dumps(envelope(event), default=str).encode("utf-8"))
    except Exception as exc:
        logger.warning("nats_publish_failed", extra={"session_id": event.session_id, "error": str(exc)})
        return False
    return True


def publish_change_sync(event: ChangeEvent) -> None:
    """Change-feed forwarder. Hands the event to the loop that owns the NATS connection."""
    if not _nc or _loop is None or _loop.is_closed():
        return
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is _loop:
        _loop.create_task(publish_change(event))
    else:
        asyncio.run_coroutine_threadsafe(publish_change(event), _loop)
