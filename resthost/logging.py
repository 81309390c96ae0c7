# FILE: resthost/logging.py
"""
Structured JSON logging for resthost.

One compact JSON object per line. Request-scoped fields (request id, the
resource/action being dispatched, the authorization outcome) are bound into a
per-coroutine context and merged into every record emitted while the request
is in flight:

    bind(resource="widgets", action="list")
    log.info("dispatching")   # {"resource":"widgets","action":"list",...}

Environment:
  RESTHOST_LOG_SCHEMA, RESTHOST_SERVICE, RESTHOST_VERSION, RESTHOST_ENV
  RESTHOST_LOG_MAX_FIELD    per-field truncation (min 512, default 8192)
  RESTHOST_LOG_INCLUDE_STACK "0" drops stack traces from error lines
  RESTHOST_LOG_REDACT       comma separated header names to mask
  RESTHOST_LOG_LEVEL        level used by get_logger() auto configuration
"""

from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Dict, Iterable, Optional, Tuple


def _env(name: str, default: str) -> str:
    return os.environ.get("RESTHOST_" + name, default)


def _env_max_field() -> int:
    try:
        return max(512, int(_env("LOG_MAX_FIELD", "8192")))
    except ValueError:
        return 8192


_SCHEMA = _env("LOG_SCHEMA", "resthost.log.v1")
_SERVICE = _env("SERVICE", "resthost")
_VERSION = _env("VERSION", "0.0.0")
_ENVIRONMENT = _env("ENV", os.environ.get("ENV", "dev"))
_MAX_FIELD = _env_max_field()
_INCLUDE_STACK = _env("LOG_INCLUDE_STACK", "1") == "1"

_REDACTED = "***"
_REDACT_KEYS = frozenset(
    k.strip().lower() for k in _env("LOG_REDACT", "").split(",") if k.strip()
) or frozenset(
    ("authorization", "proxy-authorization", "cookie", "set-cookie", "x-api-key", "x-auth-token")
)

# Lifted to the top level of every line, from the record first, then the
# bound context.
REQUEST_FIELDS: Tuple[str, ...] = (
    "req_id",
    "method",
    "path",
    "status",
    "latency_ms",
    "bytes_in",
    "bytes_out",
    "resource",
    "action",
    "alias",
    "user",
    "granted",
)

# Attributes every LogRecord carries; anything else came in through extra=.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}


# ---------------------------------------------------------------------------
# Bound context
# ---------------------------------------------------------------------------

_bound: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("resthost_log", default={})


def bind(**fields: Any) -> None:
    """Add non-None fields to the context of the running coroutine."""
    merged = dict(_bound.get())
    merged.update((k, v) for k, v in fields.items() if v is not None)
    _bound.set(merged)


def unbind(*keys: str) -> None:
    current = _bound.get()
    _bound.set({k: v for k, v in current.items() if k not in keys})


def reset() -> None:
    _bound.set({})


def context() -> Dict[str, Any]:
    return dict(_bound.get())


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _clip(value: Any) -> Any:
    if isinstance(value, str) and len(value) > _MAX_FIELD:
        return value[:_MAX_FIELD] + "...<truncated>"
    return value


def scrub_dict(d: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Mask secret-bearing keys (case-insensitive), recursing into dicts."""
    out: Dict[str, Any] = {}
    for key, value in (d or {}).items():
        if key.lower() in _REDACT_KEYS:
            out[key] = _REDACTED
        elif isinstance(value, dict):
            out[key] = scrub_dict(value)
        else:
            out[key] = value
    return out


def _timestamp(created: float) -> str:
    ts = _dt.datetime.fromtimestamp(created, tz=_dt.timezone.utc)
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


class JSONFormatter(logging.Formatter):
    """
    Render a record as one JSON line.

    Top level: schema, service, version, env, ts, lvl, logger, msg, then any
    REQUEST_FIELDS present on the record or in the bound context. Errors add
    exc_type, exc_message and (unless disabled) stack. Remaining extra=
    attributes are grouped under "meta".
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        line: Dict[str, Any] = {
            "schema": _SCHEMA,
            "service": _SERVICE,
            "version": _VERSION,
            "env": _ENVIRONMENT,
            "ts": _timestamp(record.created),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _clip(record.getMessage()),
        }
        line.update(self._request_fields(record))
        if record.exc_info:
            line.update(self._error_fields(record))
        meta = {
            k: _clip(v)
            for k, v in vars(record).items()
            if k not in _RECORD_ATTRS and k not in line and not k.startswith("_")
        }
        if meta:
            line["meta"] = meta
        return json.dumps(line, ensure_ascii=False, separators=(",", ":"), default=str)

    @staticmethod
    def _request_fields(record: logging.LogRecord) -> Dict[str, Any]:
        bound = _bound.get()
        picked: Dict[str, Any] = {}
        for name in REQUEST_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                value = bound.get(name)
            if value is not None:
                picked[name] = _clip(value)
        return picked

    def _error_fields(self, record: logging.LogRecord) -> Dict[str, Any]:
        exc_type, exc, tb = record.exc_info  # type: ignore[misc]
        fields: Dict[str, Any] = {
            "exc_type": getattr(exc_type, "__name__", str(exc_type)),
            "exc_message": _clip(str(exc)),
        }
        if self.include_stack:
            fields["stack"] = _clip("".join(traceback.format_exception(exc_type, exc, tb)))
        return fields


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """Send root (and uvicorn's loggers) through one JSON stream handler."""
    numeric = logging.getLevelName((level or "INFO").upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(include_stack=include_stack))
    handler.setLevel(numeric)

    targets = [logging.getLogger()]
    if include_uvicorn:
        targets += [logging.getLogger(n) for n in ("uvicorn", "uvicorn.error", "uvicorn.access")]
    for lg in targets:
        lg.handlers = [handler]
        lg.setLevel(numeric)
        if lg.name != "root":
            lg.propagate = False
    return targets[0]


# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------


def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """Reuse an inbound x-request-id (or trace id) or mint one, and bind it."""
    headers = headers or {}
    rid = headers.get("x-request-id") or headers.get("x-amzn-trace-id") or uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


_REQUEST_SCOPED = ("req_id", "method", "path", "resource", "action", "alias", "user")


class RequestLogMiddleware:
    """
    ASGI middleware logging one "http.finish" line per request with status,
    latency and body sizes (never bodies). With ``log_headers`` an
    "http.start" line carries the scrubbed request headers.

        app.add_middleware(RequestLogMiddleware)
    """

    def __init__(self, app, *, logger_name: str = "resthost.http", log_headers: bool = False):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.log_headers = log_headers

    @staticmethod
    def _headers(raw: Iterable[Tuple[bytes, bytes]]) -> Dict[str, str]:
        return {k.decode("latin1").lower(): v.decode("latin1") for k, v in raw}

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = self._headers(scope.get("headers") or [])
        rid = ensure_request_id(headers)
        method, path = scope.get("method", ""), scope.get("path", "")
        bind(method=method, path=path)
        if self.log_headers:
            self.log.info("http.start", extra={"headers": scrub_dict(headers)})

        seen = {"status": None, "in": 0, "out": 0}

        async def receive_counted():
            message = await receive()
            if message["type"] == "http.request":
                seen["in"] += len(message.get("body") or b"")
            return message

        async def send_counted(message):
            if message["type"] == "http.response.start":
                seen["status"] = message.get("status")
            elif message["type"] == "http.response.body":
                seen["out"] += len(message.get("body") or b"")
            await send(message)

        started = time.perf_counter()
        try:
            await self.app(scope, receive_counted, send_counted)
        finally:
            self.log.info(
                "http.finish",
                extra={
                    "req_id": rid,
                    "status": seen["status"],
                    "latency_ms": round((time.perf_counter() - started) * 1000.0, 3),
                    "bytes_in": seen["in"],
                    "bytes_out": seen["out"],
                },
            )
            unbind(*_REQUEST_SCOPED)


_auto_configured = False


def get_logger(name: str = "resthost") -> logging.Logger:
    """
    Named logger. The first call installs JSON output when the root logger
    has no handlers yet; embedding applications keep their own setup.
    """
    global _auto_configured
    if not _auto_configured:
        _auto_configured = True
        if not logging.getLogger().handlers:
            configure_json_logging(_env("LOG_LEVEL", "INFO"))
    return logging.getLogger(name)


__all__ = [
    "REQUEST_FIELDS",
    "bind",
    "unbind",
    "reset",
    "context",
    "scrub_dict",
    "JSONFormatter",
    "configure_json_logging",
    "ensure_request_id",
    "RequestLogMiddleware",
    "get_logger",
]
