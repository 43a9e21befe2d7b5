import json
import logging
from typing import Any, Dict, Optional

from .clock import utc_now, to_iso


logger = logging.getLogger("uvicorn.error")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_structured = False


def configure_structured_logging(enabled: bool) -> None:
    global _structured
    _structured = bool(enabled)


def correlation_id(job_id: Any, step_index: Optional[Any] = None) -> str:
    if step_index is None:
        return str(job_id)
    return f"{job_id}:{step_index}"


def log_event(level: str, correlation: str, event: str, data: Optional[Dict[str, Any]] = None) -> None:
    log_level = _LEVELS.get(str(level).lower(), logging.INFO)
    if not logger.isEnabledFor(log_level):
        return
    payload = dict(data or {})
    if _structured:
        entry = {
            "level": str(level).lower(),
            "timestamp": to_iso(utc_now()),
            "correlationId": correlation,
            "event": event,
            **payload,
        }
        logger.log(log_level, json.dumps(entry, ensure_ascii=True, default=str))
        return
    if payload:
        details = " ".join(f"{k}={v}" for k, v in payload.items())
        logger.log(log_level, "[%s] %s %s", correlation, event, details)
    else:
        logger.log(log_level, "[%s] %s", correlation, event)
