"""Logging setup and rendering of errors for the terminal."""

from __future__ import annotations

import json
import logging
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any

from ._version import __version__
from .errors import SkillpmError

SERVICE_NAME = "skillpm"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict):
            payload.update(context)

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


def setup_logging(*, verbose: bool = False, json_output: bool | None = None) -> None:
    logger = logging.getLogger(SERVICE_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if logger.handlers:
        return

    if json_output is None:
        json_output = verbose

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False


def format_error(exc: BaseException, *, verbose: bool = False, context: dict[str, Any] | None = None) -> str:
    if not verbose:
        if isinstance(exc, SkillpmError):
            return f"{type(exc).__name__}: {exc}"
        return f"Error: {exc}"

    ctx = dict(context or {})
    payload: dict[str, Any] = {
        "correlationId": str(uuid.uuid4()),
        "service": SERVICE_NAME,
        "version": __version__,
        "command": ctx.pop("command", None),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error": {
            "name": type(exc).__name__,
            "message": getattr(exc, "message", str(exc)),
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        },
    }
    if isinstance(exc, SkillpmError):
        if exc.remedy:
            payload["error"]["remedy"] = exc.remedy
        payload["error"].update({k: v for k, v in exc.metadata().items() if v is not None})
    if ctx:
        payload["context"] = ctx
    return json.dumps(payload, indent=2, default=str)
