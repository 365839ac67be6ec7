# =============================================================================
#  Copycord
#  Copyright (C) 2021 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
import os
import sys as _sys
import json as _json
import contextvars
from datetime import datetime, timezone

from common.constants import REDACT_KEYS


op_id_var = contextvars.ContextVar("op_id", default="-")
correlation_var = contextvars.ContextVar("correlation_id", default="-")
scope_var = contextvars.ContextVar("scope", default="-")

_EXTRA_KEYS = (
    "source_id",
    "target_id",
    "phase",
    "progress",
    "entity",
    "took_ms",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _redact_value(val):
    try:
        s = str(val)
        for k in REDACT_KEYS:
            envv = os.getenv(k)
            if envv and envv in s:
                s = s.replace(envv, "***REDACTED***")
        return s
    except Exception:
        return "<unprintable>"


def _redact_obj(obj):
    try:
        if isinstance(obj, dict):
            out = {}
            for k, v in obj.items():
                if str(k) in REDACT_KEYS and v:
                    out[k] = "***REDACTED***"
                else:
                    out[k] = v
            return out
        return obj
    except Exception:
        return {"_redact_error": True}


def bind_operation(op_id: str, correlation_id: str) -> None:
    """Tag every record emitted from the current task with the run's ids."""
    op_id_var.set(op_id)
    correlation_var.set(correlation_id)


class RedactFilter(logging.Filter):
    """Injects context + redacts secrets appearing in args/msg."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "op_id", None) is None:
            record.op_id = op_id_var.get()
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = correlation_var.get()
        record.scope = scope_var.get()
        try:
            if isinstance(record.args, dict):
                new_args = {}
                for k, v in record.args.items():
                    if isinstance(v, dict):
                        new_args[k] = _redact_obj(v)
                    elif isinstance(v, str):
                        new_args[k] = _redact_value(v)
                    else:
                        new_args[k] = v
                record.args = new_args
            elif isinstance(record.args, (tuple, list)):
                new_list = []
                for a in record.args:
                    if isinstance(a, dict):
                        new_list.append(_redact_obj(a))
                    elif isinstance(a, str):
                        new_list.append(_redact_value(a))
                    else:
                        new_list.append(a)
                record.args = (
                    tuple(new_list) if isinstance(record.args, tuple) else new_list
                )

            if isinstance(record.msg, str):
                record.msg = _redact_value(record.msg)
        except Exception:
            pass
        return True


LEVEL_MARK = {
    logging.DEBUG: "🧩",
    logging.INFO: "✅",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
}


class HumanFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        mark = LEVEL_MARK.get(record.levelno, "•")
        ts = _now_iso()
        scope = getattr(record, "scope", "-")
        op = getattr(record, "op_id", "-")
        cid = getattr(record, "correlation_id", "-")
        msg = super().format(record)
        extras = []
        for k in _EXTRA_KEYS:
            v = getattr(record, k, None)
            if v not in (None, "", []):
                extras.append(f"{k}={v}")
        extras_s = f" | {' '.join(extras)}" if extras else ""
        return f"{ts} {mark} {record.levelname:<8} [{scope}] (op={op} cid={cid}) {msg}{extras_s}"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "time": _now_iso(),
            "lvl": record.levelname,
            "msg": super().format(record),
            "scope": getattr(record, "scope", "-"),
            "op_id": getattr(record, "op_id", "-"),
            "correlation_id": getattr(record, "correlation_id", "-"),
            "logger": record.name,
        }
        for k in _EXTRA_KEYS:
            v = getattr(record, k, None)
            if v not in (None, "", []):
                base[k] = v
        return _json.dumps(base, separators=(",", ":"), default=str)


class ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        for k, v in self.extra.items():
            extra.setdefault(k, v)
        return msg, kwargs


def get_logger(name="cloner", **ctx):
    logger = logging.getLogger(name)
    return ContextAdapter(logger, dict(ctx))


def configure_app_logging(fmt: str | None = None, lvl: str | None = None):
    """
    Unified logging config with:
    - LOG_FORMAT: HUMAN (default) or JSON
    - LOG_LEVEL: DEBUG/INFO/etc.
    - redaction + run context
    - reuses uvicorn.error handlers when present
    """
    fmt = (fmt or os.getenv("LOG_FORMAT", "HUMAN")).strip().upper()
    lvl = (lvl or os.getenv("LOG_LEVEL", "INFO")).strip().upper()

    uvicorn_err = logging.getLogger("uvicorn.error")

    def _apply(h: logging.Handler):
        if fmt == "JSON":
            h.setFormatter(JSONFormatter("%(message)s"))
        else:
            h.setFormatter(HumanFormatter("%(message)s"))
        h.addFilter(RedactFilter())

    if uvicorn_err.handlers:
        handlers = uvicorn_err.handlers[:]
        for h in handlers:
            _apply(h)
    else:
        h = logging.StreamHandler(stream=_sys.stdout)
        _apply(h)
        handlers = [h]

    level = getattr(logging, lvl, logging.INFO)
    for name in ("cloner", "common", "admin"):
        lg = logging.getLogger(name)
        lg.handlers = handlers[:]
        lg.propagate = False
        lg.setLevel(level)

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    for lib in ("discord", "discord.client", "discord.gateway", "discord.http"):
        logging.getLogger(lib).setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(
        logging.WARNING if level > logging.DEBUG else logging.DEBUG
    )
    return get_logger("cloner")
