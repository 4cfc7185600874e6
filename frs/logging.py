# FILE: frs/logging.py
from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Set

from .utils import prune_large_values, sanitize_floats

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("FRS_LOG_SCHEMA", "frs.log.v1")
_LOG_SERVICE = os.environ.get("FRS_SERVICE", "frs")
_LOG_VERSION = os.environ.get("FRS_BUILD_VERSION", os.environ.get("FRS_VERSION", "0.0.0"))
_LOG_ENV = os.environ.get("FRS_ENV", os.environ.get("ENV", "dev"))
_LOG_INSTANCE = os.environ.get(
    "FRS_INSTANCE", os.uname().nodename if hasattr(os, "uname") else "unknown"
)

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = max(512, int(os.environ.get("FRS_LOG_MAX_FIELD", "8192")))
except ValueError:
    _MAX_FIELD = 8192

_INCLUDE_STACK = os.environ.get("FRS_LOG_INCLUDE_STACK", "1") == "1"

# Redaction keys (case-insensitive)
_DEFAULT_REDACT = {
    "authorization",
    "cookie",
    "x-api-key",
    "api_key",
    "compute_api_key",
    "private_key",
    "privatekey",
}
_REDACT_KEYS = {
    k.strip().lower()
    for k in os.environ.get("FRS_LOG_REDACT", "").split(",")
    if k.strip()
} or _DEFAULT_REDACT

# Domain fields lifted to the top level of the envelope
_ENVELOPE_FIELDS = (
    "req_id",
    "row_id",
    "asset_id",
    "period",
    "status",
    "attempt",
    "path",
    "token_id",
    "investor",
    "block_number",
    "tx_hash",
    "latency_ms",
)

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "frs_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-task)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _redact_key(k: str) -> bool:
    return k.lower() in _REDACT_KEYS


def scrub_dict(d: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Scrub obvious secrets from a dict (headers, settings, payload meta).

    Keys listed in `_REDACT_KEYS` get replaced by "***". Nested dictionaries
    are scrubbed recursively.
    """
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if _redact_key(str(k)):
            out[k] = "***"
        else:
            out[k] = v if not isinstance(v, Mapping) else scrub_dict(v)
    return out


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Optional[Dict[str, Any]]:
    """
    Collect `extra=` attributes that are not standard LogRecord fields and
    not already lifted into the envelope; scrub, sanitize and truncate them.
    """
    raw: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        raw[k] = v
    if not raw:
        return None
    meta = prune_large_values(sanitize_floats(scrub_dict(raw)), max_str_len=_MAX_FIELD)
    return meta or None


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Core envelope fields:
      - schema, service, version, env, instance
      - ts, lvl, logger, msg
      - settlement fields: req_id, row_id, asset_id, period, status, attempt, path
      - chain fields: token_id, investor, block_number, tx_hash
      - latency_ms
    Everything else passed via `extra=` lands in a sanitized "meta" object.
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()

        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _truncate(str(record.getMessage())),
        }

        # prefer record.<attr> (explicit extra=) over bound context
        for name in _ENVELOPE_FIELDS:
            v = getattr(record, name, None)
            if v is None:
                v = ctx.get(name)
            if v is not None:
                evt[name] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()))
        if meta:
            evt["meta"] = meta

        return json.dumps(evt, ensure_ascii=False, separators=(",", ":"), default=str)


# ---------- Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
    quiet: tuple = ("httpx", "httpcore", "web3", "websockets", "urllib3"),
) -> logging.Logger:
    """
    Configure the root logger for JSON output.

    Chatty transport libraries listed in `quiet` are capped at WARNING.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    for name in quiet:
        logging.getLogger(name).setLevel(max(lvl, logging.WARNING))

    return root


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "frs") -> logging.Logger:
    """
    Return a logger; the first call configures JSON output on the root
    logger using FRS_LOG_LEVEL.
    """
    global _configured
    if not _configured:
        configure_json_logging(level=os.environ.get("FRS_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "scrub_dict",
    "configure_json_logging",
    "get_logger",
    "JSONFormatter",
]
