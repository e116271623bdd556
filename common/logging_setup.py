from __future__ import annotations

"""
JSON line logging for the imagery/change engine.

Modules log with the stdlib API and hang structured fields off one key:

    log.warning("mosaic attempt failed", extra={"extra": {"zoom": 14, "missing": 3, "total": 12}})
    log.info("timeline probed", extra={"extra": {"probed": 40, "kept": 9, "deduped": 28, "failed": 3}})

which is written to stdout as

    {"t": 1700000000000, "lvl": "WARNING", "name": "imagery.mosaic",
     "msg": "mosaic attempt failed", "extra": {"zoom": 14, "missing": 3, "total": 12}}
"""

import json
import logging
import os
import sys
import time
from typing import Any, Dict, Optional

# Third-party loggers that log every request at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore", "urllib3")

_CONFIGURED_FLAG = "_geoproof_configured"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        row: Dict[str, Any] = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            row["extra"] = fields
        if record.exc_info:
            row["exc_info"] = self.formatException(record.exc_info)
        # dates, tile indices and the like fall back to str()
        return json.dumps(row, ensure_ascii=False, default=str)


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    lvl = logging.getLevelName(name)
    return lvl if isinstance(lvl, int) else logging.INFO


def setup_logging(level: Optional[str] = None) -> None:
    """
    Install the JSON handler on the root logger (first call wins).
    Level: explicit `level`, else env LOG_LEVEL, else INFO. HTTP client
    loggers are held at WARNING or above so tile fetches do not flood stdout.
    """
    root = logging.getLogger()
    if getattr(root, _CONFIGURED_FLAG, False):
        return

    lvl = _resolve_level(level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(lvl)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(lvl, logging.WARNING))
    setattr(root, _CONFIGURED_FLAG, True)


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
