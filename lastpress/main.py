from fastapi import FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware
from typing import List, Optional

from contextlib import asynccontextmanager
import asyncio
import logging
import os
import re
import time
import uuid

from . import crud, lobby, models, realtime_publisher
from .changes import feed
from .config import get_settings
from .deps import get_session
from .logging_utils import setup_logging, get_logger, request_id_ctx
from .models import GameType
from .realtime import GameWatcher
from .service import GameService


# Rate limiting - request times per client IP
_RATE_LIMIT_STORE: dict = {}


def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60) -> bool:
    """
    In-memory sliding window per IP address. Returns True if the request is allowed.
    """
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()
    cutoff_time = current_time - window_seconds
    _RATE_LIMIT_STORE[client_ip] = [
        req_time for req_time in _RATE_LIMIT_STORE.get(client_ip, [])
        if req_time > cutoff_time
    ]
    if len(_RATE_LIMIT_STORE[client_ip]) >= max_requests:
        return False
    _RATE_LIMIT_STORE[client_ip].append(current_time)
    return True


def rate_limit_dependency(max_requests: int = 30, window_seconds: int = 60):
    """Dependency that raises HTTP 429 once the client is over the limit"""
    def dependency(request: Request):
        if not check_rate_limit(request, max_requests, window_seconds):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds."
            )
    return dependency


# websocket -> {'session_id': str, 'fid': int|None, 'holding': set of fids with a live heartbeat}
_WS_CONNECTIONS: dict = {}


async def _send_to_websocket(ws: WebSocket, message: dict) -> bool:
    """Send a JSON message. Return False if the socket is gone."""
    try:
        await ws.send_json(message)
        return True
    except Exception as send_exc:
        logger.debug("ws_send_error", extra={"error": str(send_exc)})
        return False


setup_logging(logging.INFO)
logger = get_logger("lastpress")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from .init_db import make_engine
    from .migrations import run_migrations

    settings = get_settings()
    engine = crud.engine or make_engine(settings.database_url)
    try:
        run_migrations(engine)
    except Exception as e:
        logger.warning("migrations_failed", extra={"error": str(e)})
    crud.engine = engine

    if settings.nats_url and await realtime_publisher.connect(settings.nats_url):
        feed.add_forwarder(realtime_publisher.publish_change_sync)

    service.start_scheduler()
    logger.info("startup_complete")
    try:
        yield
    finally:
        await service.shutdown()
        feed.remove_forwarder(realtime_publisher.publish_change_sync)
        await realtime_publisher.close()


app = FastAPI(title="lastpress", lifespan=lifespan)
service = GameService()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        ua = request.headers.get("user-agent", "-")
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception(
                "request_error",
                extra={"path": str(request.url), "method": request.method},
            )
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                    "user_agent": ua,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Accept",
        "Accept-Language",
        "Content-Language",
        "Content-Type",
        "Authorization",
        "X-Requested-With",
        "X-Request-ID",
    ],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", extra={"method": request.method, "path": request.url.path, "errors": exc.errors()})
    return JSONResponse(
        status_code=422,
        content={
            "detail": exc.errors(),
            "message": "Input validation failed"
        }
    )


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


# ---- request bodies ----

_USERNAME_RE = re.compile(r'^[a-zA-Z0-9_.-]+$')


class PlayerRef(BaseModel):
    fid: int = Field(..., ge=1)


class JoinRequest(PlayerRef):
    username: str = Field(..., min_length=1, max_length=32)
    display_name: Optional[str] = Field(None, max_length=64)
    pfp_url: Optional[str] = Field(None, max_length=512)

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        v = v.strip()
        if len(v) == 0:
            raise ValueError('Username cannot be empty')
        if not _USERNAME_RE.match(v):
            raise ValueError('Username can only contain letters, numbers, dot, underscore, and hyphen')
        return v

    @field_validator('display_name')
    @classmethod
    def strip_display_name(cls, v):
        if v is None:
            return v
        return v.strip() or None


class CreatePrivateRequest(BaseModel):
    creator_fid: int = Field(..., ge=1)


# ---- helpers ----

def _require_game(db: Session, session_id: str) -> models.GameSession:
    gs = crud.get_game_session(db, session_id)
    if gs is None:
        raise HTTPException(status_code=404, detail="Game not found")
    return gs


async def _require_game_async(session_id: str) -> models.GameSession:
    gs = await service.get_game(session_id)
    if gs is None:
        raise HTTPException(status_code=404, detail="Game not found")
    return gs


def _sessions_payload(games: List[models.GameSession]) -> dict:
    return {"games": [models.session_to_dict(g) for g in games]}


# ---- lobby ----

@app.get("/api/games")
async def list_games(type: Optional[GameType] = None, include_scheduled: bool = False):
    games = await service.get_active_games(type, include_scheduled)
    return _sessions_payload(games)


@app.get("/api/games/featured")
async def featured_games():
    return _sessions_payload(await service.get_featured_games())


@app.get("/api/games/daily")
async def daily_game():
    gs = await service.get_todays_daily_game(create=True)
    if gs is None:
        raise HTTPException(status_code=503, detail="Daily game unavailable")
    return models.session_to_dict(gs)


@app.post("/api/games", status_code=201, dependencies=[Depends(rate_limit_dependency(10, 60))])
async def create_game():
    gs = await service.create_public_game()
    if gs is None:
        raise HTTPException(status_code=503, detail="Could not create game")
    return models.session_to_dict(gs)


@app.post("/api/games/private", status_code=201, dependencies=[Depends(rate_limit_dependency(10, 60))])
async def create_private_game(body: CreatePrivateRequest):
    gs = await service.create_private_game(body.creator_fid)
    if gs is None:
        raise HTTPException(status_code=503, detail="Could not allocate a share code")
    return models.session_to_dict(gs)


@app.get("/api/games/code/{share_code}")
def game_by_share_code(share_code: str, session: Session = Depends(get_session)):
    gs = lobby.get_game_by_share_code(session, share_code)
    if gs is None:
        raise HTTPException(status_code=404, detail="Game not found")
    return models.session_to_dict(gs)


@app.get("/api/games/{session_id}")
async def get_game(session_id: str):
    snapshot = await service.reconcile(session_id)
    if snapshot is None:
        raise HTTPException(status_code=503, detail="Store unavailable")
    if snapshot.session is None:
        raise HTTPException(status_code=404, detail="Game not found")
    return snapshot.to_dict()


@app.get("/api/games/{session_id}/players")
def list_players(session_id: str, active: bool = False, session: Session = Depends(get_session)):
    _require_game(session, session_id)
    if active:
        players = crud.get_active_players(session, session_id)
    else:
        players = crud.get_all_players(session, session_id)
    return {"players": [models.player_to_dict(p) for p in players]}


@app.get("/api/players/{fid}/history")
def player_history(fid: int, session: Session = Depends(get_session)):
    rows = lobby.get_user_game_history(session, fid)
    return {
        "history": [
            {"player": models.player_to_dict(p), "session": models.session_to_dict(gs)}
            for p, gs in rows
        ]
    }


@app.post("/api/games/{session_id}/join", dependencies=[Depends(rate_limit_dependency(30, 60))])
async def join_game(session_id: str, body: JoinRequest):
    gs = await _require_game_async(session_id)
    player = await service.join_game(session_id, body.fid, body.username, body.display_name, body.pfp_url)
    if player is None:
        raise HTTPException(status_code=409, detail=f"Game is not accepting players (status {gs.status})")
    return models.player_to_dict(player)


# ---- game play ----

@app.post("/api/games/{session_id}/start")
async def start_game(session_id: str):
    gs = await _require_game_async(session_id)
    needed = lobby.players_needed(gs, service.settings.min_players)
    if needed:
        raise HTTPException(status_code=409, detail=f"Need {needed} more player(s) to start")
    if not await service.start_game(session_id):
        raise HTTPException(status_code=409, detail=f"Game cannot start from status {gs.status}")
    started = await service.get_game(session_id)
    return models.session_to_dict(started or gs)


@app.post("/api/games/{session_id}/press")
async def press(session_id: str, body: PlayerRef):
    await _require_game_async(session_id)
    if not await service.start_pressing(session_id, body.fid):
        raise HTTPException(status_code=409, detail="Cannot press now")
    return {"ok": True}


@app.post("/api/games/{session_id}/heartbeat")
async def heartbeat(session_id: str, body: PlayerRef):
    await _require_game_async(session_id)
    if not await service.send_heartbeat(session_id, body.fid):
        raise HTTPException(status_code=409, detail="Player is not holding")
    return {"ok": True}


@app.post("/api/games/{session_id}/release")
async def release(session_id: str, body: PlayerRef):
    await _require_game_async(session_id)
    ok = await service.stop_pressing(session_id, body.fid)
    return {"ok": ok}


@app.post("/api/games/{session_id}/cleanup")
async def cleanup(session_id: str):
    await _require_game_async(session_id)
    eliminated = await service.cleanup_stale_players(session_id)
    return {"eliminated": eliminated}


# ---- realtime ----

async def _handle_ws_message(ws: WebSocket, meta: dict, msg: dict) -> None:
    session_id = meta['session_id']
    kind = msg.get('type')
    if kind == 'ping':
        await _send_to_websocket(ws, {'type': 'pong'})
        return
    if kind not in ('press', 'release'):
        await _send_to_websocket(ws, {'type': 'error', 'detail': f'unknown message type {kind!r}'})
        return
    try:
        fid = int(msg.get('fid') or meta.get('fid') or 0)
    except (TypeError, ValueError):
        fid = 0
    if fid < 1:
        await _send_to_websocket(ws, {'type': 'error', 'detail': 'fid is required'})
        return
    if kind == 'press':
        ok = await service.press(session_id, fid)
        if ok:
            meta['holding'].add(fid)
    else:
        ok = await service.stop_pressing(session_id, fid)
        meta['holding'].discard(fid)
    await _send_to_websocket(ws, {'type': kind, 'ok': ok, 'fid': fid})


@app.websocket("/ws/games/{session_id}")
async def game_websocket(ws: WebSocket, session_id: str, fid: Optional[int] = None):
    await ws.accept()
    if await service.get_game(session_id) is None:
        await _send_to_websocket(ws, {'type': 'error', 'detail': 'Game not found'})
        await ws.close(code=4404)
        return

    meta = {'session_id': session_id, 'fid': fid, 'holding': set()}
    _WS_CONNECTIONS[ws] = meta
    watcher = GameWatcher(
        session_id,
        service.reconcile,
        on_players=lambda players: _send_to_websocket(
            ws, {'type': 'players', 'players': [models.player_to_dict(p) for p in players]}
        ),
        on_session=lambda gs: _send_to_websocket(ws, {'type': 'session', 'session': models.session_to_dict(gs)}),
        poll_interval=service.settings.poll_interval,
    )
    watch_task = asyncio.get_running_loop().create_task(watcher.run())
    logger.info("ws_connected", extra={"session_id": session_id, "fid": fid})
    try:
        while True:
            try:
                msg = await ws.receive_json()
            except ValueError:
                await _send_to_websocket(ws, {'type': 'error', 'detail': 'invalid JSON'})
                continue
            if isinstance(msg, dict):
                await _handle_ws_message(ws, meta, msg)
    except WebSocketDisconnect:
        pass
    finally:
        _WS_CONNECTIONS.pop(ws, None)
        watcher.stop()
        watch_task.cancel()
        # holders are not released here; the staleness sweep decides
        for held in meta['holding']:
            service.presence.stop_heartbeat(session_id, held)
        logger.info("ws_disconnected", extra={"session_id": session_id, "fid": fid})


def run():
    import uvicorn

    uvicorn.run(
        "lastpress.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    run()
