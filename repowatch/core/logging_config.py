"""Process-wide logging setup for repowatch.

``configure_logging()`` runs once from ``__main__``; modules only ever do::

    logger = logging.getLogger(__name__)

Records emitted while a dispatcher worker runs a job carry that job's id
(see :data:`JOB_ID_CTX`), so one job's lines can be grepped out of a busy
worker pool.  ``LOG_LEVEL`` and ``LOG_FORMAT`` are consulted when the caller
passes no explicit value.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, Final

__all__ = ["configure_logging", "JsonFormatter", "JOB_ID_CTX", "JobContextFilter"]

logger = logging.getLogger(__name__)

#: Id of the job the current task is executing; ``"-"`` outside any job.
JOB_ID_CTX: ContextVar[str] = ContextVar("job_id", default="-")

_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_FORMATS: Final[tuple[str, ...]] = ("text", "json")

_TEXT_FORMAT: Final[str] = "%(asctime)s %(levelname)-8s job=%(job_id)s %(name)s: %(message)s"
_TEXT_DATEFMT: Final[str] = "%Y-%m-%dT%H:%M:%S"

# Third-party loggers that are only useful when debugging.
_CHATTY_LOGGERS: Final[tuple[str, ...]] = ("httpx", "httpcore", "aiosqlite", "asyncio")

# Attributes every LogRecord has; anything else arrived through ``extra=``
# or a filter.
_STANDARD_ATTRS: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


class JobContextFilter(logging.Filter):
    """Stamp ``record.job_id`` from :data:`JOB_ID_CTX`."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.job_id = JOB_ID_CTX.get()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Keys: ``ts`` (UTC, millisecond precision, ``Z`` suffix), ``level``,
    ``logger``, ``message``, ``extra`` (everything passed via ``extra=``
    plus ``job_id``) and, when present, ``exc_info`` / ``stack_info``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        created = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "extra": {
                key: value
                for key, value in record.__dict__.items()
                if key not in _STANDARD_ATTRS
            },
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=str)


def _pick(explicit: str | None, env_var: str, default: str, allowed: tuple[str, ...]) -> str:
    value = explicit or os.environ.get(env_var) or default
    value = value.upper() if allowed[0].isupper() else value.lower()
    if value not in allowed:
        raise ValueError(f"Unknown {env_var} {value!r}; expected one of {', '.join(allowed)}.")
    return value


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        level: DEBUG/INFO/WARNING/ERROR/CRITICAL; ``$LOG_LEVEL`` or INFO if omitted.
        fmt: ``text`` or ``json``; ``$LOG_FORMAT`` or text if omitted.
        force: Replace existing root handlers.  Without it an already
            configured root logger only has its level adjusted.

    Raises:
        ValueError: On an unknown level or format.
    """
    resolved_level = _pick(level, "LOG_LEVEL", "INFO", _LEVELS)
    resolved_fmt = _pick(fmt, "LOG_FORMAT", "text", _FORMATS)

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(JobContextFilter())
    if resolved_fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt=_TEXT_DATEFMT))
    root.handlers[:] = [handler]

    quiet = logging.DEBUG if resolved_level == "DEBUG" else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)
    logger.debug("Logging configured (level=%s, format=%s).", resolved_level, resolved_fmt)
