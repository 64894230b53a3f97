import json
import logging
import os
import sys
import typing as _t
from contextvars import ContextVar
from typing import Any, Dict, Optional

# Request id carried through an HTTP request or websocket connection
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Structured fields passed through logger.extra and lifted into the output
GAME_FIELDS = (
    "session_id",
    "fid",
    "winner_fid",
    "rows",
    "eliminated",
    "table",
    "change_type",
    "from_status",
    "to_status",
)
REQUEST_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "client",
    "user_agent",
)
MISC_FIELDS = ("event", "subscribers", "url", "errors", "error")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        for key in GAME_FIELDS + REQUEST_FIELDS + MISC_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                payload[key] = val
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Human-friendly formatter for local development."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    GREY = "\033[90m"
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _color(self, text: str, color: str) -> str:
        if not self.use_color:
            return text
        return f"{color}{text}{self.RESET}"

    def _status_str(self, status: Any) -> Optional[str]:
        if not isinstance(status, int):
            return None
        if 200 <= status < 300:
            return self._color(str(status), "\033[32m")
        if 400 <= status < 500:
            return self._color(str(status), "\033[33m")
        if status >= 500:
            return self._color(str(status), "\033[31m")
        return str(status)

    def _request_line(self, record: logging.LogRecord) -> Optional[str]:
        parts: _t.List[str] = []
        method = getattr(record, "method", None)
        path = getattr(record, "path", None)
        if method:
            parts.append(self._color(method, self.BOLD))
        if path:
            parts.append(self._color(path, "\033[36m"))
        status_str = self._status_str(getattr(record, "status", None))
        if status_str:
            parts.append(status_str)
        duration_ms = getattr(record, "duration_ms", None)
        if duration_ms is not None:
            parts.append(self._color(f"{duration_ms}ms", self.GREY))
        return " ".join(parts) if parts else None

    def _game_context(self, record: logging.LogRecord) -> Optional[str]:
        ctx: _t.List[str] = []
        for key in GAME_FIELDS:
            val = getattr(record, key, None)
            if val is None:
                continue
            if key == "session_id":
                val = str(val)[:8]
            ctx.append(f"{key}={val}")
        return "[" + " ".join(ctx) + "]" if ctx else None

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        parts: _t.List[str] = [
            self._color(level, self.COLORS.get(level, "")),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        rid = request_id_ctx.get()
        if rid:
            parts.append(self._color(f"rid={rid[:8]}", "\033[35m"))
        parts.append(self._color(record.name, "\033[34m"))

        req_line = self._request_line(record)
        if req_line:
            parts.append(req_line)

        msg = record.getMessage()
        if msg:
            parts.extend(["-", msg])

        ctx = self._game_context(record)
        if ctx:
            parts.append(self._color(ctx, self.GREY))

        error = getattr(record, "error", None)
        if error:
            parts.append(self._color(f"error={error}", "\033[31m"))

        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))

        return " ".join(parts)


def _isatty(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure the root and uvicorn loggers.

    - LOG_FORMAT=pretty forces the colorized format
    - LOG_FORMAT=json forces JSON
    - otherwise: pretty if stdout is a TTY, else JSON
    - LOG_COLOR=0 disables ANSI colors in pretty mode
    - LOG_LEVEL overrides the level argument
    """
    env_level = os.getenv("LOG_LEVEL", "").upper()
    if env_level and isinstance(logging.getLevelName(env_level), int):
        level = logging.getLevelName(env_level)

    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    fmt_env = os.getenv("LOG_FORMAT", "").lower()
    color_env = os.getenv("LOG_COLOR", "1").lower()
    use_pretty = (fmt_env == "pretty") or (fmt_env == "" and _isatty(sys.stdout))
    use_color = use_pretty and color_env not in ("0", "false", "no")

    handler = logging.StreamHandler(sys.stdout)
    if use_pretty:
        handler.setFormatter(ColorFormatter(use_color=use_color))
    else:
        handler.setFormatter(JsonFormatter())
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False

    return root


def get_logger(name: str = "lastpress") -> logging.Logger:
    return logging.getLogger(name)
